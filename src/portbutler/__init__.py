# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""PortButler: page titles for HTTP services listening on local ports.

Resolves a human-readable title per port in two tiers:
- lightweight fetch: one plain HTTP GET + HTML <title> parse
- rendering fallback: headless Chromium navigation, read document.title
"""

from __future__ import annotations

from dataclasses import dataclass, field

SENTINEL_TITLE = "-"  # no usable title could be determined


@dataclass(frozen=True)
class Port:
    """A listening local port as reported by port discovery."""

    number: int
    pid: int | None = field(default=None, compare=False)  # owning process, informational

    def __post_init__(self) -> None:
        if isinstance(self.number, bool) or not isinstance(self.number, int):
            raise TypeError(f"port number must be an int, got {type(self.number).__name__}")
        if not 1 <= self.number <= 65535:
            raise ValueError(f"port number out of range: {self.number}")

    def __str__(self) -> str:
        return str(self.number)


@dataclass(frozen=True, slots=True)
class ResolutionState:
    """Observable snapshot of one resolver's progress.

    Replaced wholesale on every change, never mutated in place.
    """

    title: str = ""
    is_loading: bool = False
    progress: float = 0.0  # only meaningful while rendering
    is_done: bool = False
    source: str = ""  # "fetch" | "render" | "" (which tier produced the title)

    @property
    def has_title(self) -> bool:
        return bool(self.title) and self.title != SENTINEL_TITLE

    @property
    def display_title(self) -> str:
        """Text for a list row: empty while loading, else the title."""
        return "" if self.is_loading else self.title


__all__ = ["SENTINEL_TITLE", "Port", "ResolutionState"]
