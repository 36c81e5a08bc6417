# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""PortButler exception hierarchy.

All PortButler-specific errors inherit from PortButlerError, allowing callers
to catch the base class for any failure or specific subclasses for targeted
handling. None of these reach the presentation layer: the resolver recovers
from every one of them.
"""

from __future__ import annotations


class PortButlerError(Exception):
    """Base exception for all PortButler errors."""


class FetchError(PortButlerError):
    """Lightweight fetch could not produce a title."""

    def __init__(self, message: str, *, port: int, url: str = "") -> None:
        super().__init__(message)
        self.port = port
        self.url = url


class UnreachableError(FetchError):
    """Connection failure, timeout, or non-2xx status."""

    def __init__(self, message: str, *, port: int, url: str = "", status_code: int | None = None) -> None:
        super().__init__(message, port=port, url=url)
        self.status_code = status_code


class NoTitleError(FetchError):
    """Server answered but the document has no usable <title>."""


class BrowserError(PortButlerError):
    """Chromium launch or navigation failure inside a rendering session."""
