# ============================================================================
# backend/konarae/connectors/adapters/fetch_adapter.py
# ============================================================================
"""
Fetch Adapter - resolve a URL to HTML.

Chooses between a plain HTTP GET (httpx) and a browser-rendered fetch through
the shared BrowserPool, based on a table of WAF-protected domains. Each call is
a single attempt: failures surface as FetchError and callers decide whether to
retry.

Failure mapping:
    - navigation/read timeout          -> FetchError(kind="timeout")
    - HTTP 403 / 429                   -> FetchError(kind="blocked")
    - other non-2xx, connection errors -> FetchError(kind="transient")

Usage:
    from konarae.connectors.adapters.fetch_adapter import FetchAdapter

    adapter = FetchAdapter(browser_pool=browser_pool)
    result = await adapter.fetch("https://www.gntp.or.kr/biz/apply")
    html = result.html
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Set
from urllib.parse import urlparse

import httpx
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from konarae.config import settings
from konarae.connectors.adapters.browser_pool import BrowserPool
from konarae.core.shared.errors import FetchError

logger = logging.getLogger("konarae.fetch_adapter")

# Regional technopark portals that reject non-browser clients.
WAF_BLOCKED_DOMAINS = frozenset({
    "gdtp.or.kr",
    "gntp.or.kr",
    "gbtp.or.kr",
    "gjtp.or.kr",
    "dgtp.or.kr",
    "djtp.or.kr",
    "sjtp.or.kr",
    "utp.or.kr",
    "jntp.or.kr",
    "jejutp.or.kr",
    "ptp.or.kr",
    "ctp.or.kr",
})

BLOCKED_STATUS_CODES = (403, 429)

# Some portals answer 4xx/5xx while still rendering the real listing.
ERROR_PAGE_MIN_CONTENT_BYTES = 10000
ERROR_PAGE_MAX_BYTES = 5000


def _host_of(url: str) -> str:
    host = (urlparse(url).hostname or "").lower()
    return host[4:] if host.startswith("www.") else host


def is_waf_blocked_domain(url: str, extra_domains: Optional[Iterable[str]] = None) -> bool:
    """
    Check whether a URL's host is WAF-protected.

    A host matches a table entry when it equals the entry or is a subdomain of
    it. Path and query are ignored.
    """
    host = _host_of(url)
    if not host:
        return False

    domains: Set[str] = set(WAF_BLOCKED_DOMAINS)
    if extra_domains:
        domains.update(d.lower().strip() for d in extra_domains if d and d.strip())

    return any(host == domain or host.endswith("." + domain) for domain in domains)


def _looks_like_content(html: str) -> bool:
    """Whether an error-status page still carries usable listing content."""
    if "error" in html.lower() and len(html) < ERROR_PAGE_MAX_BYTES:
        return False
    return "<table" in html or len(html) > ERROR_PAGE_MIN_CONTENT_BYTES


@dataclass
class FetchResult:
    """HTML resolved from a URL."""

    html: str
    final_url: str
    status_code: int = 200
    rendered: bool = False


class FetchAdapter:
    """
    Single-attempt fetch primitive for listing and detail pages.

    The browser pool is injected; the adapter never starts or releases the
    browser on its own beyond opening and closing one page per fetch.
    """

    def __init__(
        self,
        browser_pool: Optional[BrowserPool] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        extra_waf_domains: Optional[Iterable[str]] = None,
        timeout_ms: Optional[int] = None,
    ):
        self.browser_pool = browser_pool
        self.extra_waf_domains = list(extra_waf_domains or [])
        self.timeout_ms = timeout_ms or settings.crawler_timeout_ms
        self._http_client = http_client
        self._owns_http_client = http_client is None

    def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                timeout=self.timeout_ms / 1000.0,
                headers={
                    "User-Agent": settings.crawler_user_agent,
                    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
                    "Accept-Language": "ko-KR,ko;q=0.9,en-US;q=0.8,en;q=0.7",
                },
                follow_redirects=True,
                verify=False,
            )
            self._owns_http_client = True
        return self._http_client

    async def close(self) -> None:
        """Close the HTTP client if this adapter created it."""
        if self._owns_http_client and self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()
            self._http_client = None

    def requires_browser(self, url: str) -> bool:
        return is_waf_blocked_domain(url, self.extra_waf_domains)

    async def fetch(
        self,
        url: str,
        wait_for_selector: Optional[str] = None,
        force_browser: bool = False,
        timeout_ms: Optional[int] = None,
    ) -> FetchResult:
        """
        Fetch a page once.

        Args:
            url: Absolute URL
            wait_for_selector: Selector awaited after navigation (browser path only);
                its absence is tolerated
            force_browser: Render with the browser even for non-WAF hosts
            timeout_ms: Per-call override of the hard timeout

        Raises:
            FetchError: On timeout, blocking, non-2xx or connection failure
        """
        timeout_ms = timeout_ms or self.timeout_ms
        if force_browser or self.requires_browser(url):
            if self.browser_pool is None:
                raise FetchError(
                    f"Browser rendering required for {url} but no browser pool configured",
                    kind="blocked",
                    url=url,
                )
            return await self._fetch_with_browser(url, wait_for_selector, timeout_ms)
        return await self._fetch_plain(url, timeout_ms)

    async def _fetch_plain(self, url: str, timeout_ms: int) -> FetchResult:
        client = self._get_http_client()
        try:
            response = await client.get(url, timeout=timeout_ms / 1000.0)
        except httpx.TimeoutException as e:
            raise FetchError(f"Timed out fetching {url}: {e}", kind="timeout", url=url) from e
        except httpx.RequestError as e:
            raise FetchError(f"Request failed for {url}: {e}", kind="transient", url=url) from e

        status = response.status_code
        if status in BLOCKED_STATUS_CODES:
            raise FetchError(
                f"HTTP {status} (blocked) for {url}", kind="blocked", url=url, status_code=status
            )
        if status >= 400:
            raise FetchError(f"HTTP {status} for {url}", kind="transient", url=url, status_code=status)

        logger.debug(f"Fetched {url} via HTTP ({len(response.text)} chars)")
        return FetchResult(html=response.text, final_url=str(response.url), status_code=status)

    async def _fetch_with_browser(
        self,
        url: str,
        wait_for_selector: Optional[str],
        timeout_ms: int,
    ) -> FetchResult:
        logger.info(f"Rendering {url} with browser")
        try:
            async with self.browser_pool.page() as page:
                response = await page.goto(url, timeout=timeout_ms, wait_until="domcontentloaded")
                if response is None:
                    raise FetchError(f"No response received for {url}", kind="transient", url=url)

                status = response.status
                if wait_for_selector:
                    try:
                        await page.wait_for_selector(
                            wait_for_selector,
                            timeout=settings.browser_wait_selector_timeout_ms,
                        )
                    except PlaywrightTimeoutError:
                        logger.debug(f"Selector '{wait_for_selector}' not found on {url}, continuing")

                html = await page.content()
                final_url = page.url or url
        except PlaywrightTimeoutError as e:
            raise FetchError(f"Navigation timed out for {url}", kind="timeout", url=url) from e
        except PlaywrightError as e:
            raise FetchError(f"Browser fetch failed for {url}: {e}", kind="transient", url=url) from e

        if status in BLOCKED_STATUS_CODES and not _looks_like_content(html):
            raise FetchError(
                f"HTTP {status} (blocked) for {url}", kind="blocked", url=url, status_code=status
            )
        if status >= 400:
            if not _looks_like_content(html):
                raise FetchError(
                    f"HTTP {status} for {url}", kind="transient", url=url, status_code=status
                )
            logger.debug(f"Status {status} but page has content ({len(html)} chars), continuing")

        logger.info(f"Rendered {url} ({len(html)} chars)")
        return FetchResult(html=html, final_url=final_url, status_code=status, rendered=True)

    async def download(
        self,
        url: str,
        referer: Optional[str] = None,
        max_bytes: Optional[int] = None,
    ) -> bytes:
        """
        Download attachment bytes once.

        WAF hosts go through the browser context's request API so the session
        cookies collected while rendering the detail page are reused.

        Raises:
            FetchError: On timeout, non-2xx, connection failure or size overflow
        """
        headers = {"Referer": referer} if referer else None
        timeout_ms = self.timeout_ms

        if self.requires_browser(url) and self.browser_pool is not None:
            try:
                context = await self.browser_pool.acquire()
                response = await context.request.get(url, headers=headers, timeout=timeout_ms)
                status = response.status
                body = await response.body() if response.ok else b""
            except PlaywrightTimeoutError as e:
                raise FetchError(f"Download timed out for {url}", kind="timeout", url=url) from e
            except PlaywrightError as e:
                raise FetchError(f"Download failed for {url}: {e}", kind="transient", url=url) from e
        else:
            client = self._get_http_client()
            try:
                response = await client.get(url, headers=headers, timeout=timeout_ms / 1000.0)
            except httpx.TimeoutException as e:
                raise FetchError(f"Download timed out for {url}", kind="timeout", url=url) from e
            except httpx.RequestError as e:
                raise FetchError(f"Download failed for {url}: {e}", kind="transient", url=url) from e
            status = response.status_code
            body = response.content

        if status in BLOCKED_STATUS_CODES:
            raise FetchError(f"HTTP {status} (blocked) for {url}", kind="blocked", url=url, status_code=status)
        if status >= 400:
            raise FetchError(f"HTTP {status} for {url}", kind="transient", url=url, status_code=status)
        if max_bytes is not None and len(body) > max_bytes:
            raise FetchError(
                f"Attachment too large ({len(body)} bytes > {max_bytes})", kind="transient", url=url
            )
        return body
