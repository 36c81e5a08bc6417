# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Log setup for the CLI: structlog rendering on top of stdlib ``logging``.

Library modules only ever call ``logging.getLogger(__name__)``; this module
decides how those records look. Resolver tasks bind ``port`` and ``cycle``
through structlog contextvars, so both renderers show them on every line.

Leaf module: no portbutler imports.
"""

from __future__ import annotations

import logging
import sys
from typing import TextIO

import structlog

# Chatty third-party loggers that drown out resolver output at DEBUG.
_QUIET_LOGGERS = ("httpx", "httpcore", "asyncio")


def _shared_processors() -> list:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]


def _renderer(json_output: bool, stream: TextIO):
    if json_output:
        return structlog.processors.JSONRenderer(ensure_ascii=False)
    # no ANSI codes when stderr is redirected to a file
    isatty = getattr(stream, "isatty", None)
    return structlog.dev.ConsoleRenderer(colors=bool(isatty and isatty()))


def configure(*, json_output: bool = False, level: str = "INFO", stream: TextIO | None = None) -> None:
    """Route all logging through one structlog-formatted handler.

    Args:
        json_output: JSON lines (``--json-logs``) instead of console output.
        level: Root logger level name; unknown names mean INFO.
        stream: Destination (default stderr, keeping stdout for command output).

    Calling it again replaces the previous handler.
    """
    stream = stream if stream is not None else sys.stderr
    shared = _shared_processors()

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(stream)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _renderer(json_output, stream),
            ],
            foreign_pre_chain=shared,
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root_level = getattr(logging, level.upper(), logging.INFO)
    if not isinstance(root_level, int):
        root_level = logging.INFO
    root.setLevel(root_level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(root_level, logging.WARNING))
