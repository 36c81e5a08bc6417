# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""HTML document text -> best-effort <title>. Pure, no I/O."""

from __future__ import annotations

import re

import lxml.html
from lxml import etree

_ASCII_WS = " \t\n\f\r"
_WS_RE = re.compile(r"[ \t\n\f\r]+")


def _normalize(text: str) -> str:
    """Strip and collapse whitespace runs, like ``document.title``."""
    return _WS_RE.sub(" ", text).strip(_ASCII_WS)


def _parse(html: str | bytes) -> lxml.html.HtmlElement | None:
    if isinstance(html, str):
        # lxml rejects str input carrying an XML encoding declaration
        data = html.encode("utf-8")
        parser = lxml.html.HTMLParser(recover=True, encoding="utf-8")
    else:
        data = html
        parser = lxml.html.HTMLParser(recover=True)
    try:
        return lxml.html.document_fromstring(data, parser=parser)
    except (etree.ParserError, ValueError):
        return None


def extract_title(html: str | bytes | None) -> str | None:
    """Return the first <title> text, trimmed; None when absent or blank."""
    if not html or not html.strip():
        return None
    doc = _parse(html)
    if doc is None:
        return None
    el = doc.find(".//title")
    if el is None:
        return None
    title = _normalize(el.text_content())
    return title or None
