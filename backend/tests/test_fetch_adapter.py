"""
Tests for the fetch adapter and the shared browser pool.

The plain path runs against httpx.MockTransport; the browser path against a
stand-in pool whose pages are AsyncMocks. No browser is launched.
"""

import asyncio
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from konarae.connectors.adapters.browser_pool import BrowserPool
from konarae.connectors.adapters.fetch_adapter import (
    WAF_BLOCKED_DOMAINS,
    FetchAdapter,
    is_waf_blocked_domain,
)
from konarae.core.shared.errors import FetchError


def _adapter_with(handler, **kwargs) -> FetchAdapter:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return FetchAdapter(http_client=client, **kwargs)


class FakePage:
    def __init__(self, html="<html><table></table></html>", status=200, url=None, goto_error=None):
        self.url = url
        self._html = html
        response = MagicMock()
        response.status = status
        self.goto = AsyncMock(side_effect=goto_error, return_value=response)
        self.wait_for_selector = AsyncMock()
        self.content = AsyncMock(return_value=html)


class FakePool:
    """Hands out one prepared page per fetch."""

    def __init__(self, page: FakePage):
        self._page = page
        self.pages_opened = 0

    @asynccontextmanager
    async def page(self):
        self.pages_opened += 1
        yield self._page


# =============================================================================
# WAF DOMAIN DETECTION
# =============================================================================


class TestWafDomainDetection:

    @pytest.mark.parametrize("domain", sorted(WAF_BLOCKED_DOMAINS))
    def test_every_table_host_is_detected(self, domain):
        assert is_waf_blocked_domain(f"https://{domain}/board/list.do")
        assert is_waf_blocked_domain(f"https://www.{domain}/board/list.do?page=2#top")

    @pytest.mark.parametrize(
        "url",
        [
            "https://www.bizinfo.go.kr/web/list.do",
            "https://www.k-startup.go.kr/?q=gntp.or.kr",
            "https://example.com/gntp.or.kr/path",
            "https://notgntp.or.kr/list",
            "not a url",
            "",
        ],
    )
    def test_other_hosts_are_not_detected(self, url):
        assert not is_waf_blocked_domain(url)

    def test_subdomain_matches(self):
        assert is_waf_blocked_domain("https://biz.gntp.or.kr/apply")

    def test_host_is_case_insensitive(self):
        assert is_waf_blocked_domain("HTTPS://WWW.GNTP.OR.KR/Apply")

    def test_extra_domains_extend_table(self):
        url = "https://portal.example-waf.kr/list"
        assert not is_waf_blocked_domain(url)
        assert is_waf_blocked_domain(url, ["portal.example-waf.kr"])

    def test_adapter_uses_extra_domains(self):
        adapter = FetchAdapter(extra_waf_domains=["portal.example-waf.kr"])
        assert adapter.requires_browser("https://portal.example-waf.kr/x")
        assert adapter.requires_browser("https://gntp.or.kr/x")
        assert not adapter.requires_browser("https://www.bizinfo.go.kr/x")


# =============================================================================
# PLAIN HTTP PATH
# =============================================================================


class TestPlainFetch:

    @pytest.mark.asyncio
    async def test_returns_html_and_final_url(self):
        def handler(request):
            return httpx.Response(200, text="<html>목록</html>")

        adapter = _adapter_with(handler)
        result = await adapter.fetch("https://www.bizinfo.go.kr/list.do")

        assert result.html == "<html>목록</html>"
        assert result.final_url == "https://www.bizinfo.go.kr/list.do"
        assert result.rendered is False

    @pytest.mark.asyncio
    async def test_timeout_is_reported_as_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        adapter = _adapter_with(handler)
        with pytest.raises(FetchError) as exc_info:
            await adapter.fetch("https://www.bizinfo.go.kr/list.do")

        assert exc_info.value.kind == "timeout"
        assert exc_info.value.is_timeout

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        adapter = _adapter_with(handler)
        with pytest.raises(FetchError) as exc_info:
            await adapter.fetch("https://www.bizinfo.go.kr/list.do")

        assert exc_info.value.kind == "transient"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [403, 429])
    async def test_blocking_statuses(self, status):
        adapter = _adapter_with(lambda request: httpx.Response(status, text="denied"))
        with pytest.raises(FetchError) as exc_info:
            await adapter.fetch("https://www.bizinfo.go.kr/list.do")

        assert exc_info.value.kind == "blocked"
        assert exc_info.value.status_code == status

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self):
        adapter = _adapter_with(lambda request: httpx.Response(503, text="busy"))
        with pytest.raises(FetchError) as exc_info:
            await adapter.fetch("https://www.bizinfo.go.kr/list.do")

        assert exc_info.value.kind == "transient"
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_single_attempt(self):
        calls = []

        def handler(request):
            calls.append(request.url)
            return httpx.Response(500)

        adapter = _adapter_with(handler)
        with pytest.raises(FetchError):
            await adapter.fetch("https://www.bizinfo.go.kr/list.do")

        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_download_enforces_size_ceiling(self):
        adapter = _adapter_with(lambda request: httpx.Response(200, content=b"x" * 100))

        assert await adapter.download("https://www.bizinfo.go.kr/f.pdf", max_bytes=100) == b"x" * 100
        with pytest.raises(FetchError):
            await adapter.download("https://www.bizinfo.go.kr/f.pdf", max_bytes=99)

    @pytest.mark.asyncio
    async def test_download_sends_referer(self):
        seen = {}

        def handler(request):
            seen["referer"] = request.headers.get("referer")
            return httpx.Response(200, content=b"%PDF")

        adapter = _adapter_with(handler)
        await adapter.download("https://www.bizinfo.go.kr/f.pdf", referer="https://www.bizinfo.go.kr/v")

        assert seen["referer"] == "https://www.bizinfo.go.kr/v"


# =============================================================================
# BROWSER PATH
# =============================================================================


class TestBrowserFetch:

    @pytest.mark.asyncio
    async def test_waf_host_without_pool_is_blocked(self):
        adapter = FetchAdapter()
        with pytest.raises(FetchError) as exc_info:
            await adapter.fetch("https://www.gntp.or.kr/biz/apply")

        assert exc_info.value.kind == "blocked"

    @pytest.mark.asyncio
    async def test_waf_host_is_rendered(self):
        page = FakePage(html="<html><table>공고</table></html>", url="https://www.gntp.or.kr/biz/apply?page=1")
        pool = FakePool(page)
        adapter = FetchAdapter(browser_pool=pool)

        result = await adapter.fetch("https://www.gntp.or.kr/biz/apply", wait_for_selector="table")

        assert result.rendered is True
        assert result.html == "<html><table>공고</table></html>"
        assert result.final_url == "https://www.gntp.or.kr/biz/apply?page=1"
        assert pool.pages_opened == 1
        page.wait_for_selector.assert_awaited_once()
        assert page.goto.await_args.kwargs["timeout"] == adapter.timeout_ms

    @pytest.mark.asyncio
    async def test_force_browser_for_plain_host(self):
        page = FakePage(url="https://www.k-startup.go.kr/list")
        adapter = FetchAdapter(browser_pool=FakePool(page))

        result = await adapter.fetch("https://www.k-startup.go.kr/list", force_browser=True)

        assert result.rendered is True
        page.wait_for_selector.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_selector_is_tolerated(self):
        page = FakePage(url="https://gntp.or.kr/a")
        page.wait_for_selector.side_effect = PlaywrightTimeoutError("selector not found")
        adapter = FetchAdapter(browser_pool=FakePool(page))

        result = await adapter.fetch("https://gntp.or.kr/a", wait_for_selector=".board")

        assert result.html == page._html

    @pytest.mark.asyncio
    async def test_navigation_timeout(self):
        page = FakePage(goto_error=PlaywrightTimeoutError("Timeout 30000ms exceeded"))
        adapter = FetchAdapter(browser_pool=FakePool(page))

        with pytest.raises(FetchError) as exc_info:
            await adapter.fetch("https://gntp.or.kr/a")

        assert exc_info.value.kind == "timeout"

    @pytest.mark.asyncio
    async def test_error_status_with_short_page_fails(self):
        page = FakePage(html="<html>error</html>", status=500, url="https://gntp.or.kr/a")
        adapter = FetchAdapter(browser_pool=FakePool(page))

        with pytest.raises(FetchError) as exc_info:
            await adapter.fetch("https://gntp.or.kr/a")

        assert exc_info.value.status_code == 500

    @pytest.mark.asyncio
    async def test_error_status_with_listing_content_is_accepted(self):
        html = "<html><table><tr><td>공고</td></tr></table></html>"
        page = FakePage(html=html, status=403, url="https://gntp.or.kr/a")
        adapter = FetchAdapter(browser_pool=FakePool(page))

        result = await adapter.fetch("https://gntp.or.kr/a")

        assert result.status_code == 403
        assert result.html == html


# =============================================================================
# BROWSER POOL LIFECYCLE
# =============================================================================


class TestBrowserPool:

    @pytest.mark.asyncio
    async def test_release_without_start_is_noop(self):
        pool = BrowserPool()
        await pool.release()
        assert not pool.is_running

    @pytest.mark.asyncio
    async def test_batch_releases_on_error(self):
        pool = BrowserPool()
        pool.release = AsyncMock()

        with pytest.raises(RuntimeError):
            async with pool.batch():
                raise RuntimeError("job crashed")

        pool.release.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_pages_are_capped_and_closed(self):
        pool = BrowserPool(max_pages=2)
        opened = []

        async def new_page():
            page = MagicMock()
            page.close = AsyncMock()
            opened.append(page)
            return page

        context = MagicMock()
        context.new_page = new_page

        async def acquire():
            if pool._page_slots is None:
                pool._page_slots = asyncio.Semaphore(pool.max_pages)
            return context

        pool.acquire = acquire
        peak = 0

        async def use_page():
            nonlocal peak
            async with pool.page():
                peak = max(peak, pool.active_pages)
                await asyncio.sleep(0.01)

        await asyncio.gather(*(use_page() for _ in range(5)))

        assert peak == 2
        assert len(opened) == 5
        assert all(page.close.await_count == 1 for page in opened)
        assert pool.active_pages == 0
