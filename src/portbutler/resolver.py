# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""TitleResolver: two-tier title resolution state machine for one port.

Phases::

    IDLE → FETCHING_LIGHT → (accept | FALLING_BACK) → IDLE
                                        └→ (accept | reject) → IDLE

Acceptance policy:
- lightweight title accepted when longer than 1 character
- rendered title accepted when longer than 2 characters
- a rejected candidate never overwrites a previous title; with no previous
  title the state falls back to the ``"-"`` sentinel

Threading: background tasks (fetch, fallback pump) never touch the state.
They post ``(cycle, message)`` onto the resolver's inbox; a single consumer
task applies messages in order. Cycle ids make anything posted by a cancelled
or superseded cycle a silent no-op.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from types import TracebackType
from typing import Protocol, runtime_checkable

import structlog

from . import SENTINEL_TITLE, Port, ResolutionState
from .browser_fallback import (
    TERMINAL_EVENTS,
    BrowserFallback,
    FallbackSession,
    NavigationFailed,
    NavigationFinished,
    ProgressUpdate,
    RenderingFallback,
)
from .config import ResolverConfig
from .errors import FetchError, UnreachableError
from .fetcher import LightweightFetcher
from .refresh_bus import Observers, RefreshBus, RefreshEvent, Subscription

logger = logging.getLogger(__name__)

FETCH_MIN_CHARS = 2  # lightweight: reject single-character titles
RENDER_MIN_CHARS = 3  # rendering: transient states often produce 1-2 char titles


def accepts_fetched_title(title: str | None) -> bool:
    return title is not None and len(title) >= FETCH_MIN_CHARS


def accepts_rendered_title(title: str | None) -> bool:
    return title is not None and len(title) >= RENDER_MIN_CHARS


class Phase(StrEnum):
    """Resolver lifecycle phase."""

    IDLE = "idle"
    FETCHING_LIGHT = "fetching_light"
    FALLING_BACK = "falling_back"


@runtime_checkable
class TitleFetcher(Protocol):
    """Lightweight tier: returns a title or raises FetchError."""

    async def fetch(self, port: Port | int) -> str: ...


# ── Inbox messages (fallback events are posted as-is) ─────────────


@dataclass(frozen=True, slots=True)
class _Fetched:
    title: str


@dataclass(frozen=True, slots=True)
class _FetchFailed:
    error: FetchError


_FETCH_MESSAGES = (_Fetched, _FetchFailed)


class TitleResolver:
    """Resolves and tracks the page title served on one local port.

    Typical lifecycle (presentation layer)::

        resolver = TitleResolver(port, config=config)
        resolver.watch(render_row)
        resolver.bind(bus)
        resolver.start()
        ...
        await resolver.aclose()  # row disappeared
    """

    def __init__(
        self,
        port: Port | int,
        *,
        config: ResolverConfig | None = None,
        fetcher: TitleFetcher | None = None,
        fallback: RenderingFallback | None = None,
    ) -> None:
        self.port = port if isinstance(port, Port) else Port(port)
        self.config = config or ResolverConfig()
        self._owned_fetcher = LightweightFetcher(self.config) if fetcher is None else None
        self._fetcher: TitleFetcher = fetcher or self._owned_fetcher
        self._fallback: RenderingFallback = fallback or BrowserFallback(self.config)

        self._state = ResolutionState()
        self._phase = Phase.IDLE
        self._cycle = 0
        self._idle = asyncio.Event()
        self._idle.set()

        self._inbox: asyncio.Queue | None = None
        self._consumer: asyncio.Task | None = None
        self._worker: asyncio.Task | None = None
        self._session: FallbackSession | None = None

        self._watchers: Observers[ResolutionState] = Observers("state")
        self._bus_subscription: Subscription[RefreshEvent] | None = None
        self._closed = False

    def __repr__(self) -> str:
        return f"TitleResolver(port={self.port.number}, phase={self._phase}, title={self._state.title!r})"

    # ── Observable state ──

    @property
    def state(self) -> ResolutionState:
        return self._state

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def cycle(self) -> int:
        return self._cycle

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def has_session(self) -> bool:
        return self._session is not None

    def watch(
        self,
        observer: Callable[[ResolutionState], None],
        *,
        replay: bool = False,
    ) -> Subscription[ResolutionState]:
        """Call *observer* with every new state snapshot (and the current one if *replay*)."""
        subscription = self._watchers.add(observer)
        if replay:
            observer(self._state)
        return subscription

    def _set_state(self, **changes) -> None:
        """Single write path for ResolutionState. Loop thread only."""
        new = dataclasses.replace(self._state, **changes)
        if new == self._state:
            return
        self._state = new
        self._watchers.notify(new)

    # ── Refresh bus ──

    def bind(self, bus: RefreshBus) -> Subscription[RefreshEvent]:
        """Re-run resolution on every refresh published on *bus*."""
        self.unbind()
        self._bus_subscription = bus.subscribe(self._on_refresh)
        return self._bus_subscription

    def unbind(self) -> None:
        subscription, self._bus_subscription = self._bus_subscription, None
        if subscription is not None:
            subscription.cancel()

    @property
    def is_bound(self) -> bool:
        return self._bus_subscription is not None and self._bus_subscription.active

    def _on_refresh(self, event: RefreshEvent) -> None:
        if self._closed:
            return
        started = self.start()
        logger.debug("Refresh (reason=%r) port=%d started=%s", event.reason, self.port.number, started)

    # ── Cycle control ──

    def start(self) -> bool:
        """Begin a resolution cycle without blocking.

        Returns False (and does nothing) while a cycle is already in flight.
        Must be called from the event loop thread.
        """
        if self._closed:
            raise RuntimeError(f"TitleResolver for port {self.port.number} is closed")
        if self._phase is not Phase.IDLE:
            logger.debug("Resolution in flight for port %d (phase=%s), start ignored", self.port.number, self._phase)
            return False

        self._ensure_consumer()
        self._cycle += 1
        cycle = self._cycle
        self._phase = Phase.FETCHING_LIGHT
        self._idle.clear()
        self._set_state(is_loading=True, is_done=False, progress=0.0)
        self._worker = asyncio.create_task(self._fetch(cycle), name=f"fetch-title:{self.port.number}")
        return True

    async def wait(self) -> ResolutionState:
        """Suspend until no cycle is in flight; returns the final state."""
        await self._idle.wait()
        return self._state

    async def resolve(self) -> ResolutionState:
        """``start()`` then ``wait()``; joins the current cycle if one is running."""
        self.start()
        return await self.wait()

    async def cancel(self) -> None:
        """Stop any in-flight work. Idempotent; never touches the title.

        State is settled before the first await, so nothing from the
        cancelled cycle can land even while the engine is being torn down.
        """
        session, self._session = self._session, None
        worker, self._worker = self._worker, None
        was_active = self._phase is not Phase.IDLE

        self._cycle += 1
        self._phase = Phase.IDLE
        self._set_state(is_done=True)
        self._idle.set()

        if worker is not None and not worker.done():
            worker.cancel()
        if session is not None:
            await session.stop()
        if worker is not None:
            await asyncio.wait({worker})
        if was_active:
            logger.info("Resolution cancelled for port %d", self.port.number)

    async def aclose(self) -> None:
        """Tear down for good: unbind, cancel, stop the inbox consumer."""
        if self._closed:
            return
        self._closed = True
        self.unbind()
        await self.cancel()

        consumer, self._consumer = self._consumer, None
        self._inbox = None
        if consumer is not None:
            consumer.cancel()
            await asyncio.wait({consumer})
        if self._owned_fetcher is not None:
            await self._owned_fetcher.aclose()
        self._watchers.clear()

    async def __aenter__(self) -> TitleResolver:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    # ── Inbox ──

    def _ensure_consumer(self) -> None:
        if self._consumer is None or self._consumer.done():
            self._inbox = asyncio.Queue()
            self._consumer = asyncio.create_task(self._consume(), name=f"resolver-inbox:{self.port.number}")

    def _post(self, cycle: int, message: object) -> None:
        """Hand a message to the consumer. Safe from any task on the loop."""
        if self._inbox is not None:
            self._inbox.put_nowait((cycle, message))

    async def _consume(self) -> None:
        while True:
            cycle, message = await self._inbox.get()
            if cycle != self._cycle or self._phase is Phase.IDLE:
                logger.debug("Dropping stale %s (cycle %d, current %d)", type(message).__name__, cycle, self._cycle)
                continue
            expected = Phase.FETCHING_LIGHT if isinstance(message, _FETCH_MESSAGES) else Phase.FALLING_BACK
            if self._phase is not expected:
                logger.debug("Dropping %s in phase %s", type(message).__name__, self._phase)
                continue
            try:
                await self._handle(cycle, message)
            except Exception:
                logger.error("Resolver failed handling %s for port %d", message, self.port.number, exc_info=True)
                if cycle == self._cycle and self._phase is not Phase.IDLE:
                    self._reject()
                    await self._finish()

    async def _handle(self, cycle: int, message: object) -> None:
        if isinstance(message, _Fetched):
            if accepts_fetched_title(message.title):
                self._accept(message.title, source="fetch")
                await self._finish()
            else:
                logger.debug("Fetched title %r too short, falling back", message.title)
                await self._fall_back(cycle)
        elif isinstance(message, _FetchFailed):
            logger.debug("Lightweight fetch failed (%s), falling back", message.error)
            await self._fall_back(cycle)
        elif isinstance(message, ProgressUpdate):
            fraction = min(max(message.fraction, 0.0), 1.0)
            self._set_state(progress=max(self._state.progress, fraction))
        elif isinstance(message, NavigationFinished):
            if accepts_rendered_title(message.title):
                self._accept(message.title, source="render")
            else:
                logger.debug("Rendered title %r rejected", message.title)
                self._reject()
            await self._finish()
        elif isinstance(message, NavigationFailed):
            logger.debug("Rendering fallback failed: %s", message.reason)
            self._reject()
            await self._finish()
        else:
            raise TypeError(f"unexpected resolver message: {message!r}")

    # ── Transitions ──

    def _accept(self, title: str, *, source: str) -> None:
        logger.info("Title resolved for port %d via %s: %.80s", self.port.number, source, title)
        self._set_state(title=title, source=source, is_loading=False, is_done=True)

    def _reject(self) -> None:
        """No usable candidate: keep a previous title, else show the sentinel."""
        if self._state.has_title:
            self._set_state(is_loading=False, is_done=True)
        else:
            self._set_state(title=SENTINEL_TITLE, source="", is_loading=False, is_done=True)

    async def _finish(self) -> None:
        """End the cycle, then tear down its session.

        The phase settles before the await: a cycle started while Chromium
        is shutting down must not be reset to IDLE afterwards.
        """
        session, self._session = self._session, None
        self._worker = None
        self._phase = Phase.IDLE
        self._idle.set()
        if session is not None:
            await session.stop()

    async def _fall_back(self, cycle: int) -> None:
        if not self.config.render_fallback:
            self._reject()
            await self._finish()
            return
        self._phase = Phase.FALLING_BACK
        session = self._fallback.render_and_watch(self.port)
        self._session = session
        self._worker = asyncio.create_task(self._pump(cycle, session), name=f"render-title:{self.port.number}")

    # ── Background tasks (post only, never mutate state) ──

    async def _fetch(self, cycle: int) -> None:
        structlog.contextvars.bind_contextvars(port=self.port.number, cycle=cycle)
        try:
            title = await self._fetcher.fetch(self.port)
        except FetchError as exc:
            self._post(cycle, _FetchFailed(exc))
        except Exception as exc:
            logger.warning("Lightweight fetcher raised unexpectedly for port %d", self.port.number, exc_info=True)
            self._post(cycle, _FetchFailed(UnreachableError(str(exc), port=self.port.number)))
        else:
            self._post(cycle, _Fetched(title))

    async def _pump(self, cycle: int, session: FallbackSession) -> None:
        structlog.contextvars.bind_contextvars(port=self.port.number, cycle=cycle)
        timeout = self.config.fallback_timeout
        try:
            async with asyncio.timeout(timeout):
                async for event in session:
                    self._post(cycle, event)
                    if isinstance(event, TERMINAL_EVENTS):
                        return
        except TimeoutError:
            logger.info("Rendering fallback timed out after %.1fs for port %d", timeout, self.port.number)
            self._post(cycle, NavigationFailed(f"timed out after {timeout:g}s"))
            return
        except Exception as exc:
            logger.warning("Rendering session raised for port %d", self.port.number, exc_info=True)
            self._post(cycle, NavigationFailed(f"{type(exc).__name__}: {exc}"))
            return
        self._post(cycle, NavigationFailed("rendering session ended without a result"))
