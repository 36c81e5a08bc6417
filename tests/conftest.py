# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Shared test configuration and fixtures."""

try:
    import portbutler  # noqa: F401
except ImportError:
    raise ImportError("portbutler is not installed. Run: pip install -e '.[dev]'") from None

import pytest


@pytest.fixture(autouse=True)
def _block_real_browser(request, monkeypatch):
    """Safety net: prevent real Chromium launches in unit tests.

    Tests that exercise RenderSession pass a mock ``playwright_factory``
    explicitly; that takes priority over this fixture. Anything that falls
    through to the real ``async_playwright`` gets a clear error instead of
    silently launching a browser.

    Opt out with::

        @pytest.mark.allow_real_browser
    """
    if "allow_real_browser" in request.keywords:
        return

    def _no_real_playwright():
        raise RuntimeError(
            "Test tried to launch a real browser. Pass playwright_factory= or a fake fallback in your test."
        )

    monkeypatch.setattr("portbutler.browser_fallback.async_playwright", _no_real_playwright)


def pytest_configure(config):
    config.addinivalue_line("markers", "allow_real_browser: let the test launch real Chromium")
