# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Refresh channel: explicit publish/subscribe with subscription handles.

One ``RefreshBus`` is created by the application and handed to whoever
needs it; there is no module-level instance. Handlers run synchronously on
the publisher's thread (the event loop thread in practice) and their
exceptions are logged, never propagated, so one broken row cannot stop the
others from refreshing.

Example::

    bus = RefreshBus()
    sub = bus.subscribe(lambda event: resolver.start())
    bus.publish(reason="window shown")
    sub.cancel()
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from types import TracebackType
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class RefreshEvent:
    """Opaque marker; ``reason`` is for logs only."""

    reason: str = ""


class Subscription(Generic[T]):
    """Handle returned by ``subscribe()``; ``cancel()`` removes the handler.

    Idempotent, and usable as a context manager so registration and removal
    stay paired.
    """

    __slots__ = ("_handler", "_registry")

    def __init__(self, registry: list[Callable[[T], None]], handler: Callable[[T], None]) -> None:
        self._registry: list[Callable[[T], None]] | None = registry
        self._handler = handler

    @property
    def active(self) -> bool:
        return self._registry is not None

    def cancel(self) -> None:
        registry, self._registry = self._registry, None
        if registry is None:
            return
        # identity, not equality: the same bound method may be subscribed twice
        for i, handler in enumerate(registry):
            if handler is self._handler:
                del registry[i]
                break

    def __enter__(self) -> Subscription[T]:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.cancel()


class Observers(Generic[T]):
    """Ordered handler registry shared by the bus and resolver state watchers."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._handlers: list[Callable[[T], None]] = []

    def __len__(self) -> int:
        return len(self._handlers)

    def add(self, handler: Callable[[T], None]) -> Subscription[T]:
        self._handlers.append(handler)
        return Subscription(self._handlers, handler)

    def notify(self, value: T) -> int:
        """Call every handler with *value*; returns how many were called."""
        # snapshot: handlers may (un)subscribe while being notified
        called = 0
        for handler in list(self._handlers):
            if not any(h is handler for h in self._handlers):
                continue  # removed by an earlier handler
            called += 1
            try:
                handler(value)
            except Exception:
                logger.error(
                    "%s handler %s raised for %r",
                    self.name,
                    getattr(handler, "__qualname__", repr(handler)),
                    value,
                    exc_info=True,
                )
        return called

    def clear(self) -> None:
        self._handlers.clear()


class RefreshBus:
    """Process-wide refresh channel, passed around explicitly."""

    def __init__(self) -> None:
        self._observers: Observers[RefreshEvent] = Observers("refresh")

    @property
    def subscriber_count(self) -> int:
        return len(self._observers)

    def subscribe(self, handler: Callable[[RefreshEvent], None]) -> Subscription[RefreshEvent]:
        return self._observers.add(handler)

    def publish(self, event: RefreshEvent | None = None, *, reason: str = "") -> int:
        """Deliver a refresh to all current subscribers; returns the count reached."""
        event = event or RefreshEvent(reason=reason)
        delivered = self._observers.notify(event)
        logger.debug("Refresh published (reason=%r) to %d subscriber(s)", event.reason, delivered)
        return delivered

    def clear(self) -> None:
        """Remove every subscriber. Useful for cleanup in tests."""
        self._observers.clear()
