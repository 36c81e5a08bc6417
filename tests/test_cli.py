# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Tests for the portbutler CLI: parsing, output formatting, commands, main()."""

from __future__ import annotations

import functools
import io
import json
from unittest.mock import MagicMock, patch

import httpx
import pytest

from portbutler import SENTINEL_TITLE, Port, ResolutionState
from portbutler.cli import (
    _config_from_args,
    _format_results,
    _row_printer,
    build_parser,
    cmd_open,
    cmd_titles,
    main,
    resolve_titles,
    watch_titles,
)
from portbutler.config import ResolverConfig
from portbutler.fetcher import LightweightFetcher
from portbutler.resolver import TitleResolver


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in (
        "PORTBUTLER_HOST",
        "PORTBUTLER_FETCH_TIMEOUT",
        "PORTBUTLER_FALLBACK_TIMEOUT",
        "PORTBUTLER_NO_RENDER",
        "PORTBUTLER_HEADFUL",
    ):
        monkeypatch.delenv(name, raising=False)


def _served(titles: dict[int, str]) -> httpx.MockTransport:
    """Loopback stand-in: ports in *titles* serve a page, the rest 404."""

    def handler(request: httpx.Request) -> httpx.Response:
        title = titles.get(request.url.port)
        if title is None:
            return httpx.Response(404)
        return httpx.Response(200, html=f"<html><head><title>{title}</title></head></html>")

    return httpx.MockTransport(handler)


# ── Parser ───────────────────────────────────────────────────────────


class TestParser:
    def test_titles_defaults(self):
        args = build_parser().parse_args(["titles", "3000", "5173"])
        assert args.command == "titles"
        assert args.ports == [Port(3000), Port(5173)]
        assert args.json is False
        assert args.no_render is False
        assert args.host is None

    def test_watch_options(self):
        args = build_parser().parse_args(["watch", "8080", "--interval", "2.5", "--cycles", "3"])
        assert args.interval == 2.5
        assert args.cycles == 3

    def test_open(self):
        args = build_parser().parse_args(["open", "3000", "--host", "127.0.0.1"])
        assert args.port == Port(3000)
        assert args.host == "127.0.0.1"

    @pytest.mark.parametrize("bad", ["0", "70000", "http", "-5"])
    def test_invalid_port_rejected(self, bad, capsys):
        with pytest.raises(SystemExit) as exc_info:
            build_parser().parse_args(["titles", bad])
        assert exc_info.value.code == 2
        assert "invalid" in capsys.readouterr().err

    @pytest.mark.parametrize("bad", ["0", "-1", "soon"])
    def test_invalid_interval_rejected(self, bad):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["watch", "3000", "--interval", bad])

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_flags_map_to_config(self):
        args = build_parser().parse_args(
            ["titles", "3000", "--no-render", "--headful", "--host", "127.0.0.1", "--fetch-timeout", "2"]
        )
        config = _config_from_args(args)
        assert config.render_fallback is False
        assert config.headless is False
        assert config.host == "127.0.0.1"
        assert config.fetch_timeout == 2.0

    def test_env_applies_without_flags(self, monkeypatch):
        monkeypatch.setenv("PORTBUTLER_NO_RENDER", "1")
        config = _config_from_args(build_parser().parse_args(["titles", "3000"]))
        assert config.render_fallback is False


# ── Output ───────────────────────────────────────────────────────────


class TestFormatResults:
    RESULTS = [
        (Port(80), ResolutionState(title="nginx", is_done=True, source="fetch")),
        (Port(5173), ResolutionState(title="My SPA", is_done=True, source="render")),
        (Port(9000), ResolutionState(title=SENTINEL_TITLE, is_done=True)),
    ]

    def test_text_aligned(self):
        text = _format_results(self.RESULTS, as_json=False)
        assert text.splitlines() == ["  80  nginx", "5173  My SPA", "9000  -"]

    def test_json(self):
        payload = json.loads(_format_results(self.RESULTS, as_json=True, host="127.0.0.1"))
        assert payload[0] == {"port": 80, "url": "http://127.0.0.1:80/", "title": "nginx", "source": "fetch"}
        assert payload[2]["title"] == "-"
        assert payload[2]["source"] is None

    def test_json_keeps_unicode(self):
        results = [(Port(3000), ResolutionState(title="ダッシュボード", source="fetch"))]
        assert "ダッシュボード" in _format_results(results, as_json=True)

    def test_empty(self):
        assert _format_results([], as_json=False) == ""
        assert json.loads(_format_results([], as_json=True)) == []


# ── titles ───────────────────────────────────────────────────────────


class TestResolveTitles:
    async def test_mixed_ports(self, monkeypatch):
        monkeypatch.setattr(
            "portbutler.cli.LightweightFetcher",
            functools.partial(LightweightFetcher, transport=_served({3000: "Vite App"})),
        )
        config = ResolverConfig(render_fallback=False)
        results = await resolve_titles([Port(3000), Port(4000)], config)

        assert [(p.number, s.title) for p, s in results] == [(3000, "Vite App"), (4000, SENTINEL_TITLE)]
        assert results[0][1].source == "fetch"


class TestCmdTitles:
    def test_prints_text_and_dedupes(self, monkeypatch):
        seen_ports = []

        async def fake_resolve(ports, config):
            seen_ports.extend(ports)
            return [(p, ResolutionState(title=f"App {p.number}", is_done=True, source="fetch")) for p in ports]

        monkeypatch.setattr("portbutler.cli.resolve_titles", fake_resolve)
        out = io.StringIO()
        args = build_parser().parse_args(["titles", "3000", "3000", "4000"])

        assert cmd_titles(args, out=out) == 0
        assert seen_ports == [Port(3000), Port(4000)]
        assert out.getvalue().splitlines() == ["3000  App 3000", "4000  App 4000"]

    def test_json_output(self, monkeypatch):
        async def fake_resolve(ports, config):
            return [(p, ResolutionState(title="-", is_done=True)) for p in ports]

        monkeypatch.setattr("portbutler.cli.resolve_titles", fake_resolve)
        out = io.StringIO()
        cmd_titles(build_parser().parse_args(["titles", "9999", "--json"]), out=out)
        assert json.loads(out.getvalue()) == [
            {"port": 9999, "url": "http://localhost:9999/", "title": "-", "source": None}
        ]


# ── watch ────────────────────────────────────────────────────────────


class _ScriptedFetcher:
    def __init__(self, titles):
        self.titles = list(titles)

    async def fetch(self, port):
        return self.titles.pop(0) if len(self.titles) > 1 else self.titles[0]


class TestRowPrinter:
    def test_skips_loading_and_repeats(self):
        out = io.StringIO()
        show = _row_printer(Port(3000), out)
        show(ResolutionState(is_loading=True))
        show(ResolutionState(title="Old", is_loading=True, is_done=True))  # cancelled mid-cycle
        show(ResolutionState(title="Vite App", is_done=True, source="fetch"))
        show(ResolutionState(title="Vite App", is_done=True, source="fetch"))
        show(ResolutionState(title=SENTINEL_TITLE, is_done=True))
        assert out.getvalue().splitlines() == [" 3000  Vite App", " 3000  -"]


class TestWatchTitles:
    async def test_prints_only_changes(self, monkeypatch):
        scripted = {3000: _ScriptedFetcher(["Vite App", "Vite App", "Vite App v2"])}

        def make_resolver(port, *, config, fetcher):
            return TitleResolver(port, config=config, fetcher=scripted[port.number], fallback=MagicMock())

        monkeypatch.setattr("portbutler.cli.TitleResolver", make_resolver)
        out = io.StringIO()
        await watch_titles([Port(3000)], ResolverConfig(), interval=0.001, cycles=3, out=out)

        assert out.getvalue().splitlines() == [" 3000  Vite App", " 3000  Vite App v2"]

    async def test_several_ports_share_one_bus(self, monkeypatch):
        created: list[TitleResolver] = []

        def make_resolver(port, *, config, fetcher):
            resolver = TitleResolver(
                port, config=config, fetcher=_ScriptedFetcher([f"App {port.number}"]), fallback=MagicMock()
            )
            created.append(resolver)
            return resolver

        monkeypatch.setattr("portbutler.cli.TitleResolver", make_resolver)
        out = io.StringIO()
        await watch_titles([Port(3000), Port(4000)], ResolverConfig(), interval=0.001, cycles=1, out=out)

        assert sorted(out.getvalue().splitlines()) == [" 3000  App 3000", " 4000  App 4000"]
        assert all(r.closed for r in created)
        assert all(not r.is_bound for r in created)


# ── open ─────────────────────────────────────────────────────────────


class TestCmdOpen:
    def test_opens_loopback_url(self, monkeypatch):
        opener = MagicMock(return_value=True)
        monkeypatch.setattr("portbutler.cli.webbrowser.open", opener)
        assert cmd_open(build_parser().parse_args(["open", "5173"])) == 0
        opener.assert_called_once_with("http://localhost:5173/")

    def test_no_browser_available(self, monkeypatch, capsys):
        monkeypatch.setattr("portbutler.cli.webbrowser.open", MagicMock(return_value=False))
        assert cmd_open(build_parser().parse_args(["open", "5173", "--host", "::1"])) == 1
        assert "http://[::1]:5173/" in capsys.readouterr().err


# ── main ─────────────────────────────────────────────────────────────


class TestMain:
    @pytest.fixture(autouse=True)
    def _no_logging_setup(self, monkeypatch):
        self.configure = MagicMock()
        monkeypatch.setattr("portbutler.cli.configure_logging", self.configure)

    def test_success_exit_code(self):
        with (
            patch.dict("portbutler.cli._COMMANDS", {"titles": MagicMock(return_value=0)}),
            pytest.raises(SystemExit) as exc_info,
        ):
            main(["titles", "3000"])
        assert exc_info.value.code == 0
        self.configure.assert_called_once_with(json_output=False, level="WARNING")

    def test_verbose_and_json_logs(self):
        with (
            patch.dict("portbutler.cli._COMMANDS", {"titles": MagicMock(return_value=0)}),
            pytest.raises(SystemExit),
        ):
            main(["-v", "--json-logs", "titles", "3000"])
        self.configure.assert_called_once_with(json_output=True, level="DEBUG")

    def test_command_return_code_propagates(self):
        with (
            patch.dict("portbutler.cli._COMMANDS", {"open": MagicMock(return_value=1)}),
            pytest.raises(SystemExit) as exc_info,
        ):
            main(["open", "3000"])
        assert exc_info.value.code == 1

    def test_keyboard_interrupt(self, capsys):
        with (
            patch.dict("portbutler.cli._COMMANDS", {"watch": MagicMock(side_effect=KeyboardInterrupt())}),
            pytest.raises(SystemExit) as exc_info,
        ):
            main(["watch", "3000"])
        assert exc_info.value.code == 130
        assert "Interrupted" in capsys.readouterr().err

    def test_unexpected_error(self, capsys):
        with (
            patch.dict("portbutler.cli._COMMANDS", {"titles": MagicMock(side_effect=RuntimeError("boom"))}),
            pytest.raises(SystemExit) as exc_info,
        ):
            main(["titles", "3000"])
        assert exc_info.value.code == 1
        err = capsys.readouterr().err
        assert "Error: RuntimeError: boom" in err
        assert "Traceback" not in err

    def test_unexpected_error_verbose_traceback(self, capsys):
        with (
            patch.dict("portbutler.cli._COMMANDS", {"titles": MagicMock(side_effect=RuntimeError("boom"))}),
            pytest.raises(SystemExit),
        ):
            main(["-v", "titles", "3000"])
        assert "Traceback" in capsys.readouterr().err

    def test_system_exit_passthrough(self):
        with (
            patch.dict("portbutler.cli._COMMANDS", {"titles": MagicMock(side_effect=SystemExit(42))}),
            pytest.raises(SystemExit) as exc_info,
        ):
            main(["titles", "3000"])
        assert exc_info.value.code == 42
