# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Resolver configuration with ``PORTBUTLER_*`` environment overrides.

Leaf module: no portbutler imports besides the Port type.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass

from . import Port

logger = logging.getLogger(__name__)

DEFAULT_HOST = "localhost"
DEFAULT_FETCH_TIMEOUT = 5.0  # httpx default
DEFAULT_FALLBACK_TIMEOUT = 30.0
DEFAULT_MAX_BODY_BYTES = 2 * 1024 * 1024

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)

_TRUTHY = ("1", "true", "yes")


@dataclass(frozen=True)
class ResolverConfig:
    """Knobs shared by the fetcher, the rendering fallback and the resolver."""

    host: str = DEFAULT_HOST
    fetch_timeout: float = DEFAULT_FETCH_TIMEOUT
    max_body_bytes: int = DEFAULT_MAX_BODY_BYTES
    render_fallback: bool = True
    fallback_timeout: float = DEFAULT_FALLBACK_TIMEOUT
    headless: bool = True
    navigation_timeout_ms: int = 30000
    networkidle_budget_ms: int = 3000  # hybrid wait: networkidle attempt after load
    user_agent: str = DEFAULT_USER_AGENT

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, **overrides) -> ResolverConfig:
        """Build a config from ``PORTBUTLER_*`` variables, then apply *overrides*.

        Unparseable numeric values are logged and ignored.
        """
        env = os.environ if environ is None else environ
        values: dict = {}

        host = env.get("PORTBUTLER_HOST", "").strip()
        if host:
            values["host"] = host

        for name, key in (
            ("PORTBUTLER_FETCH_TIMEOUT", "fetch_timeout"),
            ("PORTBUTLER_FALLBACK_TIMEOUT", "fallback_timeout"),
        ):
            raw = env.get(name, "").strip()
            if not raw:
                continue
            try:
                value = float(raw)
            except ValueError:
                logger.warning("Ignoring %s=%r: not a number", name, raw)
                continue
            if value <= 0:
                logger.warning("Ignoring %s=%r: must be positive", name, raw)
                continue
            values[key] = value

        if env.get("PORTBUTLER_NO_RENDER", "").strip().lower() in _TRUTHY:
            values["render_fallback"] = False
        if env.get("PORTBUTLER_HEADFUL", "").strip().lower() in _TRUTHY:
            values["headless"] = False

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


def loopback_url(port: Port | int, host: str = DEFAULT_HOST) -> str:
    """``http://<host>:<port>/``: no path, query or TLS variant."""
    number = port.number if isinstance(port, Port) else Port(port).number
    if ":" in host and not host.startswith("["):
        host = f"[{host}]"  # bare IPv6 literal
    return f"http://{host}:{number}/"
