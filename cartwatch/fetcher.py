"""Page fetching: a fast HTTP GET with a headless-browser fallback.

:class:`FallbackPageFetcher` is what the check pipeline uses. It tries
:class:`HttpPageFetcher` first and escalates to :class:`BrowserPageFetcher`
when the request fails, returns a non-2xx status, or lands on a bot-protection
interstitial. There is no third attempt.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Protocol

import requests
from playwright.async_api import Browser, Error as PlaywrightError, async_playwright

from cartwatch.errors import BlockedError, FetchError
from cartwatch.logging_config import get_logger
from cartwatch.playwright_env import (
    NAVIGATOR_OVERRIDES,
    apply_stealth,
    block_heavy_resources,
    close_browser,
    context_kwargs,
    launch_kwargs,
    user_agent,
)
from cartwatch.protection import detect_bot_protection

LOGGER = get_logger(__name__)

HTTP_TIMEOUT_SECONDS = 5.0
BROWSER_TIMEOUT_MS = 40000
BROWSER_SETTLE_MS = 1000
# Vendor reported when the HTTP attempt failed outright and the headless retry threw too.
CONNECTION_FAILED = "CONNECTION_FAILED"


@dataclass(frozen=True)
class FetchedPage:
    html: str
    http_status: int
    via: str

    @property
    def ok(self) -> bool:
        return 200 <= self.http_status < 300


class PageFetcher(Protocol):
    """URL in, HTML out, bounded by a timeout."""

    async def fetch(self, url: str) -> FetchedPage:
        ...


class HttpPageFetcher:
    """Plain GET with a desktop browser user agent.

    Non-2xx responses are returned, not raised, so the caller can inspect the
    body for protection markers. Only transport failures raise.
    """

    def __init__(
        self,
        *,
        timeout: float = HTTP_TIMEOUT_SECONDS,
        session: requests.Session | None = None,
    ) -> None:
        self.timeout = timeout
        self._session = session

    def _get(self, url: str) -> FetchedPage:
        try:
            client = self._session or requests
            response = client.get(
                url,
                headers={"User-Agent": user_agent()},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise FetchError(f"HTTP request failed: {exc}") from exc
        return FetchedPage(html=response.text, http_status=response.status_code, via="http")

    async def fetch(self, url: str) -> FetchedPage:
        return await asyncio.to_thread(self._get, url)


class BrowserPageFetcher:
    """Render the page in headless Chromium with stealth evasions applied.

    The browser is closed on every exit path.
    """

    def __init__(
        self,
        *,
        timeout_ms: int = BROWSER_TIMEOUT_MS,
        settle_ms: int = BROWSER_SETTLE_MS,
        wait_until: str = "networkidle",
    ) -> None:
        self.timeout_ms = timeout_ms
        self.settle_ms = settle_ms
        self.wait_until = wait_until

    async def fetch(self, url: str) -> FetchedPage:
        LOGGER.info("Launching headless browser | url=%s", url)
        async with async_playwright() as playwright:
            apply_stealth(playwright)
            browser: Browser | None = None
            try:
                browser = await playwright.chromium.launch(**launch_kwargs())
                context = await browser.new_context(**context_kwargs())
                await context.add_init_script(NAVIGATOR_OVERRIDES)
                page = await context.new_page()
                await page.route("**/*", block_heavy_resources)
                response = await page.goto(url, wait_until=self.wait_until, timeout=self.timeout_ms)
                if self.settle_ms > 0:
                    await page.wait_for_timeout(self.settle_ms)
                html = await page.content()
                status = response.status if response is not None else 0
            except PlaywrightError as exc:
                LOGGER.warning("Headless fetch failed | url=%s error=%s", url, exc)
                raise FetchError(f"Headless browser failed: {exc}") from exc
            finally:
                await close_browser(browser)

        LOGGER.info("Headless fetch succeeded | url=%s status=%s", url, status)
        return FetchedPage(html=html, http_status=status, via="browser")


class FallbackPageFetcher:
    """Try *primary*; escalate to *fallback* when blocked or failing."""

    def __init__(self, primary: PageFetcher, fallback: PageFetcher) -> None:
        self.primary = primary
        self.fallback = fallback

    async def fetch(self, url: str) -> FetchedPage:
        http_status = 0
        vendor: str | None = None
        try:
            page = await self.primary.fetch(url)
        except FetchError as exc:
            LOGGER.warning("HTTP fetch failed for %s (%s). Trying headless browser.", url, exc)
        else:
            http_status = page.http_status
            vendor = detect_bot_protection(page.html)
            if page.ok and vendor is None:
                return page
            if vendor is not None:
                LOGGER.warning(
                    "HTTP fetch got %s protection page for %s. Trying headless browser.",
                    vendor,
                    url,
                )
            else:
                LOGGER.warning(
                    "HTTP fetch returned status %s for %s. Trying headless browser.",
                    http_status,
                    url,
                )

        try:
            rendered = await self.fallback.fetch(url)
        except FetchError as exc:
            vendor = vendor or CONNECTION_FAILED
            raise BlockedError(
                vendor,
                http_status=http_status or exc.http_status,
                message=f"Blocked by {vendor}; headless retry failed: {exc}",
            ) from exc

        browser_vendor = detect_bot_protection(rendered.html)
        if browser_vendor is not None:
            LOGGER.warning("Headless browser also hit %s protection for %s", browser_vendor, url)
            raise BlockedError(browser_vendor, http_status=rendered.http_status)
        return rendered


def build_default_fetcher(
    *,
    http_timeout: float = HTTP_TIMEOUT_SECONDS,
    browser_timeout_ms: int = BROWSER_TIMEOUT_MS,
    settle_ms: int = BROWSER_SETTLE_MS,
) -> FallbackPageFetcher:
    return FallbackPageFetcher(
        HttpPageFetcher(timeout=http_timeout),
        BrowserPageFetcher(timeout_ms=browser_timeout_ms, settle_ms=settle_ms),
    )


__all__ = [
    "BrowserPageFetcher",
    "CONNECTION_FAILED",
    "FallbackPageFetcher",
    "FetchedPage",
    "HttpPageFetcher",
    "PageFetcher",
    "build_default_fetcher",
]
