# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Rendering fallback: headless Chromium navigation streamed as events.

Used only when the lightweight fetch cannot produce a usable title, e.g.
single-page apps that set ``document.title`` from script. Each session owns
its own Playwright + Chromium instance; nothing is pooled across resolvers.

A session yields ``ProgressUpdate`` events (non-decreasing) followed by
exactly one terminal ``NavigationFinished`` or ``NavigationFailed``.
``stop()`` tears the engine down and ends iteration immediately.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from playwright.async_api import (
    Browser,
    BrowserContext,
    Dialog,
    Frame,
    Page,
    Playwright,
    Request,
    async_playwright,
)
from playwright.async_api import Error as PlaywrightError

from . import Port
from .config import ResolverConfig, loopback_url
from .errors import BrowserError

logger = logging.getLogger(__name__)


# ── Events ────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class ProgressUpdate:
    """Incremental load progress in [0.0, 1.0]."""

    fraction: float


@dataclass(frozen=True, slots=True)
class NavigationFinished:
    """Terminal: navigation completed; ``title`` is None when the page has none."""

    title: str | None


@dataclass(frozen=True, slots=True)
class NavigationFailed:
    """Terminal: the engine failed before navigation completed."""

    reason: str


FallbackEvent = ProgressUpdate | NavigationFinished | NavigationFailed

TERMINAL_EVENTS = (NavigationFinished, NavigationFailed)


@runtime_checkable
class FallbackSession(Protocol):
    """Cancellable stream of FallbackEvents for one navigation."""

    def __aiter__(self) -> FallbackSession: ...

    async def __anext__(self) -> FallbackEvent: ...

    async def stop(self) -> None: ...


@runtime_checkable
class RenderingFallback(Protocol):
    """Factory of rendering sessions, one per fallback attempt."""

    def render_and_watch(self, port: Port | int) -> FallbackSession: ...


# ── Progress ──────────────────────────────────────────────────────

# Milestone floors. Request accounting fills the gap between commit and load.
_MILESTONES: dict[str, float] = {
    "started": 0.05,
    "committed": 0.1,
    "domcontentloaded": 0.5,
    "load": 0.9,
    "settled": 1.0,
}
_REQUEST_SPAN = (0.1, 0.85)


class ProgressTracker:
    """Turns navigation milestones and request counts into a monotonic fraction.

    Every method returns the new fraction when progress advanced, else None,
    so callers only emit events that move forward.
    """

    def __init__(self) -> None:
        self._value = 0.0
        self._started = 0
        self._finished = 0

    @property
    def value(self) -> float:
        return self._value

    def milestone(self, name: str) -> float | None:
        return self._advance(_MILESTONES[name])

    def request_started(self) -> float | None:
        self._started += 1
        return None  # more outstanding work never moves the bar

    def request_done(self) -> float | None:
        self._finished = min(self._finished + 1, self._started)
        if not self._started:
            return None
        low, high = _REQUEST_SPAN
        return self._advance(low + (high - low) * self._finished / self._started)

    def _advance(self, candidate: float) -> float | None:
        candidate = min(max(candidate, 0.0), 1.0)
        if candidate <= self._value:
            return None
        self._value = candidate
        return candidate


# ── Chromium launch ───────────────────────────────────────────────

_BROWSER_DEAD_PATTERNS = (
    "target closed",
    "target page",
    "browser has been closed",
    "connection closed",
    "browser disconnected",
)

_chromium_install_attempted = False
_AUTO_INSTALL_TIMEOUT = 300  # seconds; Chromium is a ~140MB download


def _is_browser_dead_error(exc: BaseException) -> bool:
    """Detect browser crash/disconnect errors."""
    msg = str(exc).lower()
    return any(p in msg for p in _BROWSER_DEAD_PATTERNS)


async def _auto_install_chromium() -> bool:
    """Run ``playwright install chromium`` once per process.

    Returns True if install succeeded, False otherwise.
    """
    global _chromium_install_attempted  # noqa: PLW0603
    if _chromium_install_attempted:
        return False
    _chromium_install_attempted = True

    logger.info("Installing Chromium for the rendering fallback (playwright install chromium)")
    try:
        proc = await asyncio.create_subprocess_exec(
            sys.executable,
            "-m",
            "playwright",
            "install",
            "chromium",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        _stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=_AUTO_INSTALL_TIMEOUT)
    except TimeoutError:
        logger.warning("Chromium install gave up after %ds", _AUTO_INSTALL_TIMEOUT)
        return False
    except OSError:
        logger.warning("Chromium auto-install failed", exc_info=True)
        return False
    if proc.returncode == 0:
        logger.info("Chromium installed; retrying launch")
        return True
    logger.warning(
        "playwright install chromium failed (rc=%d): %s",
        proc.returncode,
        stderr.decode(errors="replace")[:500],
    )
    return False


def chromium_launch_args() -> list[str]:
    """Quiet Chromium: no background traffic, no prompts, no extensions."""
    return [
        "--disable-extensions",
        "--disable-plugins",
        "--disable-dev-shm-usage",
        "--disable-background-networking",
        "--disable-sync",
        "--disable-gpu",
        "--no-first-run",
        "--deny-permission-prompts",
        "--disable-breakpad",
        "--no-pings",
        "--disable-component-update",
        "--noerrdialogs",
        "--mute-audio",
    ]


# ── Session ───────────────────────────────────────────────────────

_STOP = object()  # wakes a consumer blocked in __anext__


class RenderSession:
    """One headless navigation to a loopback URL.

    Work starts on first iteration, so creating a session is free::

        session = BrowserFallback(config).render_and_watch(3000)
        try:
            async for event in session:
                ...
        finally:
            await session.stop()
    """

    def __init__(
        self,
        url: str,
        config: ResolverConfig | None = None,
        *,
        playwright_factory: Callable | None = None,
    ) -> None:
        self.url = url
        self.config = config or ResolverConfig()
        self._playwright_factory = playwright_factory
        self._queue: asyncio.Queue = asyncio.Queue()
        self._progress = ProgressTracker()
        self._task: asyncio.Task | None = None
        self._stopped = False
        self._terminated = False
        self._pw_manager = None  # async_playwright() handle, kept before start() returns
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._context: BrowserContext | None = None
        self._page: Page | None = None

    @property
    def stopped(self) -> bool:
        return self._stopped

    @property
    def progress(self) -> float:
        return self._progress.value

    def __aiter__(self) -> RenderSession:
        return self

    async def __anext__(self) -> FallbackEvent:
        if self._stopped or (self._terminated and self._queue.empty()):
            raise StopAsyncIteration
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"render {self.url}")
        event = await self._queue.get()
        if event is _STOP or self._stopped:
            raise StopAsyncIteration
        return event

    # ── event plumbing ──

    def _emit(self, event: FallbackEvent) -> None:
        if self._stopped or self._terminated:
            return
        if isinstance(event, TERMINAL_EVENTS):
            self._terminated = True
        self._queue.put_nowait(event)

    def _emit_progress(self, fraction: float | None) -> None:
        if fraction is not None:
            self._emit(ProgressUpdate(fraction))

    def _on_request(self, _request: Request) -> None:
        self._progress.request_started()

    def _on_request_done(self, _request: Request) -> None:
        self._emit_progress(self._progress.request_done())

    def _on_frame_navigated(self, frame: Frame) -> None:
        if self._page is not None and frame == self._page.main_frame:
            self._emit_progress(self._progress.milestone("committed"))

    def _on_crash(self, _page: Page) -> None:
        logger.warning("Renderer crashed: %s", self.url)
        self._emit(NavigationFailed("page crashed"))

    async def _on_dialog(self, dialog: Dialog) -> None:
        """Auto-handle JS dialogs; an unanswered dialog freezes the page.

        Policy: alert/beforeunload → accept, confirm/prompt → dismiss.
        """
        try:
            if dialog.type in ("alert", "beforeunload"):
                await dialog.accept()
            else:
                await dialog.dismiss()
            logger.debug("JS dialog auto-handled: type=%s message=%.100s", dialog.type, dialog.message)
        except PlaywrightError:
            logger.debug("JS dialog handler failed, attempting dismiss fallback", exc_info=True)
            with suppress(PlaywrightError):
                await dialog.dismiss()

    async def _on_popup(self, page: Page) -> None:
        """Close pages opened by the site; only the main page is rendered."""
        if self._page is None or page is self._page:
            return
        with suppress(PlaywrightError):
            await page.close()
        logger.debug("Popup closed: %s", page.url)

    # ── engine ──

    async def _launch_browser(self) -> Browser:
        """Launch Chromium, auto-installing on first 'executable not found' error."""
        launch = self._playwright.chromium.launch
        try:
            return await launch(headless=self.config.headless, args=chromium_launch_args())
        except PlaywrightError as exc:
            if "executable doesn't exist" not in str(exc).lower():
                raise
            logger.info("No Chromium build available to render %s", self.url)
            if await _auto_install_chromium():
                return await launch(headless=self.config.headless, args=chromium_launch_args())
            raise BrowserError(
                "Chromium is not installed and auto-install failed. Please run: playwright install chromium"
            ) from exc

    async def _launch(self) -> None:
        factory = self._playwright_factory or async_playwright
        self._pw_manager = factory()
        self._playwright = await self._pw_manager.start()
        self._browser = await self._launch_browser()
        self._context = await self._browser.new_context(
            user_agent=self.config.user_agent,
            service_workers="block",
            permissions=[],
            accept_downloads=False,
        )
        self._context.on("dialog", self._on_dialog)
        self._context.on("page", self._on_popup)

        page = await self._context.new_page()
        page.on("request", self._on_request)
        page.on("requestfinished", self._on_request_done)
        page.on("requestfailed", self._on_request_done)
        page.on("framenavigated", self._on_frame_navigated)
        page.on("domcontentloaded", lambda _p: self._emit_progress(self._progress.milestone("domcontentloaded")))
        page.on("load", lambda _p: self._emit_progress(self._progress.milestone("load")))
        page.on("crash", self._on_crash)
        self._page = page

    async def _wait_for_network_idle(self) -> None:
        """Give script-driven titles a bounded chance to settle after ``load``."""
        budget = self.config.networkidle_budget_ms / 1000
        if budget <= 0:
            return
        idle_task = asyncio.ensure_future(self._page.wait_for_load_state("networkidle"))
        done, _pending = await asyncio.wait({idle_task}, timeout=budget)
        if idle_task in done:
            exc = idle_task.exception()
            if exc is not None:
                if _is_browser_dead_error(exc):
                    raise exc
                logger.debug("networkidle completed with error: %s", exc)
            return
        idle_task.cancel()
        with suppress(asyncio.CancelledError, PlaywrightError):
            await idle_task
        logger.debug("networkidle budget exceeded (%.1fs): %s", budget, self.url)

    async def _run(self) -> None:
        try:
            await self._launch()
            self._emit_progress(self._progress.milestone("started"))
            response = await self._page.goto(
                self.url,
                wait_until="load",
                timeout=self.config.navigation_timeout_ms,
            )
            if response is not None and not response.ok:
                logger.debug("Rendered page answered HTTP %d: %s", response.status, self.url)
            await self._wait_for_network_idle()
            title = await self._page.title()
        except (PlaywrightError, BrowserError) as exc:
            reason = (str(exc).strip().splitlines() or [type(exc).__name__])[0]
            logger.info("Rendering failed for %s: %s", self.url, reason)
            self._emit(NavigationFailed(reason))
            return
        except Exception as exc:
            logger.warning("Rendering crashed for %s", self.url, exc_info=True)
            self._emit(NavigationFailed(f"{type(exc).__name__}: {exc}"))
            return
        self._emit_progress(self._progress.milestone("settled"))
        self._emit(NavigationFinished(title or None))

    async def stop(self) -> None:
        """Tear down the engine. Idempotent; no event is delivered afterwards."""
        if self._stopped:
            return
        self._stopped = True
        self._queue.put_nowait(_STOP)

        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            with suppress(asyncio.CancelledError, PlaywrightError, BrowserError):
                await task

        self._page = None
        if self._context is not None:
            with suppress(PlaywrightError):
                await self._context.close()
            self._context = None
        if self._browser is not None:
            with suppress(PlaywrightError):
                await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            with suppress(PlaywrightError):
                await self._playwright.stop()
            self._playwright = None
        elif self._pw_manager is not None:
            # cancelled inside start(): the driver process may already be up
            with suppress(PlaywrightError, AttributeError):
                await self._pw_manager.__aexit__(None, None, None)
        self._pw_manager = None
        logger.debug("Render session stopped: %s", self.url)


class BrowserFallback:
    """Creates a fresh RenderSession per fallback attempt."""

    def __init__(
        self,
        config: ResolverConfig | None = None,
        *,
        playwright_factory: Callable | None = None,
    ) -> None:
        self.config = config or ResolverConfig()
        self._playwright_factory = playwright_factory

    def render_and_watch(self, port: Port | int) -> RenderSession:
        url = loopback_url(port, self.config.host)
        return RenderSession(url, self.config, playwright_factory=self._playwright_factory)
