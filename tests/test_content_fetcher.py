"""Tests for content_fetcher.py"""

from dataclasses import replace

import httpx
import pytest

from bookmark_rag.core.content_fetcher import (
    FetchedPage,
    HttpContentFetcher,
    TrafilaturaContentFetcher,
    extract_title_from_html,
    get_fetcher,
)
from bookmark_rag.core.errors import FetchError, FetchErrorType
from bookmark_rag.core.settings import Settings


def _fetcher(handler, **kwargs) -> HttpContentFetcher:
    return HttpContentFetcher(transport=httpx.MockTransport(handler), **kwargs)


class TestTitle:
    def test_title_is_unescaped_and_collapsed(self):
        html = "<html><head><TITLE>\n  Tom &amp;   Jerry </TITLE></head></html>"
        assert extract_title_from_html(html) == "Tom & Jerry"

    def test_missing_title(self):
        assert extract_title_from_html("<p>no title</p>") == ""
        assert FetchedPage(url="https://a", html="").title == ""


class TestFetchErrors:
    """FetchError classification."""

    def test_retriable_timeout(self):
        assert FetchError("Request timed out", FetchErrorType.TIMEOUT).retriable is True

    def test_retriable_http_5xx(self):
        assert FetchError("HTTP 503", FetchErrorType.HTTP_5XX, http_status=503).retriable is True

    def test_not_retriable_http_4xx(self):
        assert FetchError("HTTP 404", FetchErrorType.HTTP_4XX, http_status=404).retriable is False

    def test_not_retriable_too_large(self):
        assert FetchError("Content too large", FetchErrorType.TOO_LARGE).retriable is False


class TestHttpContentFetcher:
    @pytest.mark.asyncio
    async def test_success(self):
        fetcher = _fetcher(lambda request: httpx.Response(200, html="<title>Hi</title><p>Body</p>"))

        page = await fetcher.fetch_html("https://example.com/a")
        await fetcher.close()

        assert page.http_status == 200
        assert page.title == "Hi"
        assert "Body" in page.html

    @pytest.mark.asyncio
    async def test_sends_browser_like_headers(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, html="<p>x</p>")

        fetcher = _fetcher(handler)
        await fetcher.fetch_html("https://example.com/a")
        await fetcher.close()

        assert "BookmarkRAG" in seen[0].headers["user-agent"]
        assert "text/html" in seen[0].headers["accept"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,error_type,message",
        [
            (404, FetchErrorType.HTTP_4XX, "HTTP 404: Not Found"),
            (503, FetchErrorType.HTTP_5XX, "HTTP 503: Service Unavailable"),
        ],
    )
    async def test_http_errors(self, status, error_type, message):
        fetcher = _fetcher(lambda request: httpx.Response(status))

        with pytest.raises(FetchError) as exc_info:
            await fetcher.fetch_html("https://example.com/a")

        assert exc_info.value.error_type == error_type
        assert exc_info.value.http_status == status
        assert str(exc_info.value) == message

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(FetchError) as exc_info:
            await _fetcher(handler, timeout=5).fetch_html("https://example.com/a")

        assert exc_info.value.error_type == FetchErrorType.TIMEOUT
        assert exc_info.value.retriable

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(FetchError) as exc_info:
            await _fetcher(handler).fetch_html("https://example.com/a")

        assert exc_info.value.error_type == FetchErrorType.CONNECTION_ERROR

    @pytest.mark.asyncio
    async def test_too_large(self):
        fetcher = _fetcher(lambda request: httpx.Response(200, html="<p>" + "x" * 200 + "</p>"), max_size=100)

        with pytest.raises(FetchError) as exc_info:
            await fetcher.fetch_html("https://example.com/a")

        assert exc_info.value.error_type == FetchErrorType.TOO_LARGE

    @pytest.mark.asyncio
    async def test_empty_body(self):
        fetcher = _fetcher(lambda request: httpx.Response(200, text="   "))

        with pytest.raises(FetchError) as exc_info:
            await fetcher.fetch_html("https://example.com/a")

        assert exc_info.value.error_type == FetchErrorType.NO_CONTENT


class TestGetFetcher:
    def test_backend_selection(self):
        settings = Settings.from_env()

        assert isinstance(get_fetcher(replace(settings, fetch_backend="httpx")), HttpContentFetcher)
        assert isinstance(get_fetcher(replace(settings, fetch_backend="trafilatura")), TrafilaturaContentFetcher)
        assert isinstance(get_fetcher(replace(settings, fetch_backend="other")), HttpContentFetcher)
