"""Content fetchers that download the raw HTML of a bookmarked page.

The implementation is chosen once at construction (`get_fetcher`), callers
only see the `ContentFetcher` interface.
"""

from __future__ import annotations

import asyncio
import html as html_lib
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING

import httpx
import trafilatura
from trafilatura.settings import use_config

from bookmark_rag.core.errors import FetchError, FetchErrorType

if TYPE_CHECKING:
    from bookmark_rag.core.settings import Settings

logger = logging.getLogger(__name__)

# Maximum content size to fetch (10MB)
MAX_CONTENT_SIZE = 10 * 1024 * 1024

# HTTP timeout
FETCH_TIMEOUT = 30.0

USER_AGENT = "Mozilla/5.0 (compatible; BookmarkRAG/0.1)"

_TITLE_RE = re.compile(r"<title[^>]*>(.*?)</title>", re.IGNORECASE | re.DOTALL)


def extract_title_from_html(html: str) -> str:
    """Text of the first <title> tag with entities decoded, or ''."""
    match = _TITLE_RE.search(html or "")
    if not match:
        return ""
    return " ".join(html_lib.unescape(match.group(1)).split())


@dataclass
class FetchedPage:
    """Raw HTML downloaded for a URL."""

    url: str
    html: str
    http_status: int | None = None

    @property
    def title(self) -> str:
        return extract_title_from_html(self.html)


class ContentFetcher(ABC):
    """Downloads the HTML of a page."""

    @abstractmethod
    async def fetch_html(self, url: str) -> FetchedPage:
        """Fetch a page.

        Raises:
            FetchError: On timeout, connection failure, HTTP error or oversized body.
        """
        ...

    async def close(self) -> None:
        """Release held resources."""


class HttpContentFetcher(ContentFetcher):
    """Fetches pages with a shared httpx client."""

    def __init__(
        self,
        timeout: float = FETCH_TIMEOUT,
        max_size: int = MAX_CONTENT_SIZE,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._timeout = timeout
        self._max_size = max_size
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout),
                follow_redirects=True,
                limits=httpx.Limits(max_connections=10),
                transport=self._transport,
                headers={
                    "User-Agent": USER_AGENT,
                    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
                    "Accept-Language": "en-US,en;q=0.9",
                },
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def fetch_html(self, url: str) -> FetchedPage:
        client = await self._get_client()
        try:
            response = await client.get(url)
        except httpx.TimeoutException as e:
            raise FetchError(f"Request timed out after {self._timeout}s", FetchErrorType.TIMEOUT) from e
        except httpx.RequestError as e:
            raise FetchError(f"Connection error: {e}", FetchErrorType.CONNECTION_ERROR) from e

        if response.status_code >= 500:
            raise FetchError(
                f"HTTP {response.status_code}: {response.reason_phrase}",
                FetchErrorType.HTTP_5XX,
                http_status=response.status_code,
            )
        if response.status_code >= 400:
            raise FetchError(
                f"HTTP {response.status_code}: {response.reason_phrase}",
                FetchErrorType.HTTP_4XX,
                http_status=response.status_code,
            )

        content_length = response.headers.get("content-length")
        if (content_length and int(content_length) > self._max_size) or len(response.content) > self._max_size:
            raise FetchError(
                f"Content too large: {content_length or len(response.content)} bytes",
                FetchErrorType.TOO_LARGE,
                http_status=response.status_code,
            )

        html = response.text
        if not html.strip():
            raise FetchError("Empty response body", FetchErrorType.NO_CONTENT, http_status=response.status_code)

        return FetchedPage(url=str(response.url), html=html, http_status=response.status_code)


class TrafilaturaContentFetcher(ContentFetcher):
    """Fetches pages with trafilatura's downloader, run in a worker thread."""

    def __init__(self, timeout: float = FETCH_TIMEOUT) -> None:
        self._timeout = timeout
        self._config = use_config()
        self._config.set("DEFAULT", "DOWNLOAD_TIMEOUT", str(int(timeout)))
        self._config.set("DEFAULT", "MAX_FILE_SIZE", str(MAX_CONTENT_SIZE))

    async def fetch_html(self, url: str) -> FetchedPage:
        loop = asyncio.get_running_loop()
        try:
            html = await asyncio.wait_for(
                loop.run_in_executor(None, lambda: trafilatura.fetch_url(url, config=self._config)),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as e:
            raise FetchError(f"Request timed out after {self._timeout}s", FetchErrorType.TIMEOUT) from e

        if not html:
            raise FetchError(f"Could not download {url}", FetchErrorType.NO_CONTENT)
        return FetchedPage(url=url, html=html)


def get_fetcher(settings: Settings) -> ContentFetcher:
    """Select the fetcher implementation from settings (FETCH_BACKEND)."""
    if settings.fetch_backend == "trafilatura":
        return TrafilaturaContentFetcher(timeout=settings.fetch_timeout)
    if settings.fetch_backend != "httpx":
        logger.warning(f"Unknown fetch backend '{settings.fetch_backend}', using httpx")
    return HttpContentFetcher(timeout=settings.fetch_timeout)
