# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Lightweight title fetch: one plain HTTP GET + <title> parse.

No rendering, no script execution. Covers the common case of simple dev
servers without paying for a browser launch. Exactly one attempt per call;
retrying is the resolver's decision, and it never does.
"""

from __future__ import annotations

import logging
from types import TracebackType

import httpx

from . import Port
from .config import ResolverConfig, loopback_url
from .errors import NoTitleError, UnreachableError
from .title_extractor import extract_title

logger = logging.getLogger(__name__)

_ACCEPT = "text/html,application/xhtml+xml;q=0.9,*/*;q=0.8"


def _decode(body: bytes, charset: str | None) -> str | bytes:
    """Decode with the header charset; without one, let lxml sniff <meta charset>."""
    if not charset:
        return body
    try:
        return body.decode(charset, errors="replace")
    except LookupError:
        return body


class LightweightFetcher:
    """Fetch ``http://<host>:<port>/`` and extract its title.

    Owns its ``httpx.AsyncClient`` unless one is injected. Usable as an
    async context manager; ``aclose()`` releases an owned client.
    """

    def __init__(
        self,
        config: ResolverConfig | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or ResolverConfig()
        self._transport = transport
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.config.fetch_timeout),
                follow_redirects=True,
                headers={"User-Agent": self.config.user_agent, "Accept": _ACCEPT},
                transport=self._transport,
            )
        return self._client

    async def fetch(self, port: Port | int) -> str:
        """Return the page title served on *port*.

        Raises:
            UnreachableError: transport failure, timeout, or non-2xx status.
            NoTitleError: 2xx response without a usable <title>.
        """
        number = port.number if isinstance(port, Port) else int(port)
        url = loopback_url(number, self.config.host)
        client = self._get_client()

        try:
            async with client.stream("GET", url) as response:
                if not response.is_success:
                    raise UnreachableError(
                        f"HTTP {response.status_code} from {url}",
                        port=number,
                        url=url,
                        status_code=response.status_code,
                    )
                body = await self._read_capped(response)
                charset = response.charset_encoding
        except httpx.TimeoutException as exc:
            raise UnreachableError(f"Timed out fetching {url}", port=number, url=url) from exc
        except httpx.HTTPError as exc:
            raise UnreachableError(f"Cannot reach {url}: {exc}", port=number, url=url) from exc

        title = extract_title(_decode(body, charset))
        if title is None:
            raise NoTitleError(f"No <title> in document at {url}", port=number, url=url)
        logger.debug("Lightweight fetch ok: port=%d title=%.80s", number, title)
        return title

    async def _read_capped(self, response: httpx.Response) -> bytes:
        """Read at most ``max_body_bytes``; <title> lives in <head>."""
        limit = self.config.max_body_bytes
        chunks: list[bytes] = []
        size = 0
        async for chunk in response.aiter_bytes():
            chunks.append(chunk)
            size += len(chunk)
            if size >= limit:
                logger.debug("Body truncated at %d bytes: %s", limit, response.url)
                break
        return b"".join(chunks)[:limit]

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> LightweightFetcher:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()
