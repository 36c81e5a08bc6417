# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""PortButler CLI: titles, watch, open commands.

Usage:
    portbutler titles PORT [PORT ...] [--json] [--no-render] [--host HOST]
    portbutler watch PORT [PORT ...] [--interval SECONDS] [--cycles N]
    portbutler open PORT

Port discovery is not part of this tool; pass the ports you care about.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
import webbrowser
from collections.abc import Callable
from typing import TextIO

from . import Port, ResolutionState
from ._progress import print_step, status_spinner
from .config import DEFAULT_HOST, ResolverConfig, loopback_url
from .fetcher import LightweightFetcher
from .logging_config import configure as configure_logging
from .refresh_bus import RefreshBus
from .resolver import TitleResolver


def _port_arg(value: str) -> Port:
    try:
        return Port(int(value))
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid port {value!r}: expected 1-65535") from exc


def _positive_float(value: str) -> float:
    try:
        number = float(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"not a number: {value!r}") from exc
    if number <= 0:
        raise argparse.ArgumentTypeError(f"must be positive: {value!r}")
    return number


def _config_from_args(args: argparse.Namespace) -> ResolverConfig:
    """Env (``PORTBUTLER_*``) first, explicit flags win."""
    return ResolverConfig.from_env(
        host=args.host,
        fetch_timeout=args.fetch_timeout,
        fallback_timeout=args.fallback_timeout,
        render_fallback=False if args.no_render else None,
        headless=False if args.headful else None,
    )


# ── titles ───────────────────────────────────────────────────────────


async def resolve_titles(ports: list[Port], config: ResolverConfig) -> list[tuple[Port, ResolutionState]]:
    """Resolve every port concurrently, one resolver each, sharing one HTTP client."""
    async with LightweightFetcher(config) as fetcher:
        resolvers = [TitleResolver(port, config=config, fetcher=fetcher) for port in ports]
        try:
            states = await asyncio.gather(*(r.resolve() for r in resolvers))
        finally:
            for resolver in resolvers:
                await resolver.aclose()
    return list(zip(ports, states, strict=True))


def _format_results(
    results: list[tuple[Port, ResolutionState]],
    *,
    as_json: bool,
    host: str = DEFAULT_HOST,
) -> str:
    if as_json:
        payload = [
            {
                "port": port.number,
                "url": loopback_url(port, host),
                "title": state.title,
                "source": state.source or None,
            }
            for port, state in results
        ]
        return json.dumps(payload, ensure_ascii=False, indent=2)
    width = max((len(str(port.number)) for port, _ in results), default=4)
    return "\n".join(f"{port.number:>{width}}  {state.title}" for port, state in results)


def cmd_titles(args: argparse.Namespace, out: TextIO | None = None) -> int:
    config = _config_from_args(args)
    ports = list(dict.fromkeys(args.ports))  # dedupe by port number, keep order
    with status_spinner(f"Resolving {len(ports)} port(s)…"):
        results = asyncio.run(resolve_titles(ports, config))
    print(_format_results(results, as_json=args.json, host=config.host), file=out or sys.stdout)
    return 0


# ── watch ────────────────────────────────────────────────────────────


def _row_printer(port: Port, out: TextIO) -> Callable[[ResolutionState], None]:
    """Print a row whenever a cycle ends with a different title."""
    last: list[str | None] = [None]

    def _print(state: ResolutionState) -> None:
        title = state.display_title
        if not state.is_done or not title or title == last[0]:
            return
        last[0] = title
        print(f"{port.number:>5}  {title}", file=out, flush=True)

    return _print


async def watch_titles(
    ports: list[Port],
    config: ResolverConfig,
    *,
    interval: float,
    cycles: int = 0,
    out: TextIO | None = None,
) -> None:
    """Keep titles fresh: one refresh published on a shared bus per *interval*.

    ``cycles=0`` runs until cancelled (Ctrl-C).
    """
    out = out or sys.stdout
    bus = RefreshBus()
    async with LightweightFetcher(config) as fetcher:
        resolvers: list[TitleResolver] = []
        try:
            for port in ports:
                resolver = TitleResolver(port, config=config, fetcher=fetcher)
                resolver.watch(_row_printer(port, out))
                resolver.bind(bus)
                resolvers.append(resolver)

            published = 0
            while True:
                bus.publish(reason="initial" if published == 0 else "interval")
                published += 1
                await asyncio.gather(*(r.wait() for r in resolvers))
                if cycles and published >= cycles:
                    break
                await asyncio.sleep(interval)
        finally:
            for resolver in resolvers:
                await resolver.aclose()


def cmd_watch(args: argparse.Namespace) -> int:
    config = _config_from_args(args)
    ports = list(dict.fromkeys(args.ports))
    print_step(f"Watching {len(ports)} port(s) every {args.interval:g}s (Ctrl-C to stop)")
    asyncio.run(watch_titles(ports, config, interval=args.interval, cycles=args.cycles))
    return 0


# ── open ─────────────────────────────────────────────────────────────


def cmd_open(args: argparse.Namespace) -> int:
    config = ResolverConfig.from_env(host=args.host)
    url = loopback_url(args.port, config.host)
    if not webbrowser.open(url):
        print(f"Could not open a browser for {url}", file=sys.stderr)
        return 1
    return 0


# ── main ─────────────────────────────────────────────────────────────


def _add_resolver_options(p: argparse.ArgumentParser) -> None:
    p.add_argument("ports", nargs="+", type=_port_arg, metavar="PORT", help="Local port number(s)")
    p.add_argument("--host", type=str, default=None, help="Loopback host (default: localhost)")
    p.add_argument("--no-render", action="store_true", help="Skip the headless browser fallback")
    p.add_argument("--headful", action="store_true", help="Show the fallback browser window")
    p.add_argument(
        "--fetch-timeout", type=_positive_float, default=None, metavar="S", help="HTTP timeout (default: 5)"
    )
    p.add_argument(
        "--fallback-timeout",
        type=_positive_float,
        default=None,
        metavar="S",
        help="Rendering fallback timeout (default: 30)",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="portbutler",
        description="Show page titles of HTTP services on local ports",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging to stderr")
    parser.add_argument("--json-logs", action="store_true", help="Log as JSON lines")
    subparsers = parser.add_subparsers(dest="command", required=True)

    p_titles = subparsers.add_parser("titles", help="Resolve page titles once")
    _add_resolver_options(p_titles)
    p_titles.add_argument("--json", action="store_true", help="JSON output")

    p_watch = subparsers.add_parser("watch", help="Re-resolve titles periodically")
    _add_resolver_options(p_watch)
    p_watch.add_argument(
        "--interval", type=_positive_float, default=10.0, metavar="S", help="Refresh interval (default: 10)"
    )
    p_watch.add_argument("--cycles", type=int, default=0, metavar="N", help="Stop after N refreshes (default: never)")

    p_open = subparsers.add_parser("open", help="Open a port in the default browser")
    p_open.add_argument("port", type=_port_arg, metavar="PORT")
    p_open.add_argument("--host", type=str, default=None, help="Loopback host (default: localhost)")

    return parser


_COMMANDS = {"titles": cmd_titles, "watch": cmd_watch, "open": cmd_open}


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    configure_logging(json_output=args.json_logs, level="DEBUG" if args.verbose else "WARNING")

    try:
        code = _COMMANDS[args.command](args)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        sys.exit(130)
    except SystemExit:
        raise
    except Exception as e:
        print(f"Error: {type(e).__name__}: {e}", file=sys.stderr)
        if args.verbose:
            import traceback

            traceback.print_exc(file=sys.stderr)
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    main()
