"""
Shared browser resource.

One Chromium process per worker process, started lazily on first use and
torn down explicitly at the end of a batch run. Each fetch opens its own page
on a shared context (cookies survive between pages of the same batch) and
closes it afterwards; the browser itself is reused.

Usage:
    from konarae.connectors.adapters.browser_pool import browser_pool

    async with browser_pool.batch():
        async with browser_pool.page() as page:
            await page.goto(url)
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright

from konarae.config import settings

logger = logging.getLogger("konarae.browser_pool")

BROWSER_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--disable-web-security",
    "--disable-features=IsolateOrigins,site-per-process",
]


class BrowserPool:
    """
    Process-wide headless browser with an acquire/release lifecycle.

    ``acquire()`` launches the browser if needed; ``release()`` closes it.
    Concurrently open pages are capped by ``max_pages``.
    """

    def __init__(
        self,
        max_pages: int = 3,
        headless: bool = True,
        user_agent: Optional[str] = None,
    ):
        self.max_pages = max_pages
        self.headless = headless
        self.user_agent = user_agent or settings.crawler_user_agent
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._lock = asyncio.Lock()
        self._page_slots: Optional[asyncio.Semaphore] = None
        self._active_pages = 0

    async def acquire(self) -> BrowserContext:
        """Start the browser if it is not running and return the shared context."""
        async with self._lock:
            if self._browser is not None and self._browser.is_connected() and self._context:
                return self._context

            logger.info(f"Launching browser (headless={self.headless}, max_pages={self.max_pages})")

            if self._playwright is None:
                self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(
                headless=self.headless,
                args=BROWSER_ARGS,
            )
            self._context = await self._browser.new_context(
                user_agent=self.user_agent,
                viewport={"width": 1920, "height": 1080},
                locale="ko-KR",
                timezone_id="Asia/Seoul",
                java_script_enabled=True,
                ignore_https_errors=True,
                extra_http_headers={
                    "Accept-Language": "ko-KR,ko;q=0.9,en-US;q=0.8,en;q=0.7",
                },
            )
            self._page_slots = asyncio.Semaphore(self.max_pages)
            logger.info("Browser launched successfully")
            return self._context

    async def release(self) -> None:
        """Close the shared context and browser. Safe to call when not started."""
        async with self._lock:
            if self._context is not None:
                try:
                    await self._context.close()
                except Exception as e:
                    logger.warning(f"Error closing browser context: {e}")
                self._context = None

            if self._browser is not None:
                await self._browser.close()
                self._browser = None
                logger.info("Browser closed")

            if self._playwright is not None:
                await self._playwright.stop()
                self._playwright = None

            self._page_slots = None
            self._active_pages = 0

    @asynccontextmanager
    async def page(self) -> AsyncIterator[Page]:
        """Open one page on the shared browser, bounded by ``max_pages``."""
        context = await self.acquire()
        async with self._page_slots:
            page = await context.new_page()
            self._active_pages += 1
            try:
                yield page
            finally:
                self._active_pages = max(0, self._active_pages - 1)
                try:
                    await page.close()
                except Exception as e:
                    logger.warning(f"Error closing page: {e}")

    @asynccontextmanager
    async def batch(self) -> AsyncIterator["BrowserPool"]:
        """Scope a batch run: the browser is released on exit, including on error."""
        try:
            yield self
        finally:
            await self.release()

    @property
    def is_running(self) -> bool:
        return self._browser is not None

    @property
    def active_pages(self) -> int:
        return self._active_pages


# Singleton instance
browser_pool = BrowserPool(
    max_pages=settings.browser_max_pages,
    headless=settings.browser_headless,
)


async def close_browser() -> None:
    """Release the shared browser at the end of a batch run."""
    await browser_pool.release()
