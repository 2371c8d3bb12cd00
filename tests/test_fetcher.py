from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest
import requests
from playwright.async_api import Error as PlaywrightError

from cartwatch import fetcher as fetcher_module
from cartwatch.errors import BlockedError, FetchError
from cartwatch.fetcher import (
    CONNECTION_FAILED,
    BrowserPageFetcher,
    FallbackPageFetcher,
    FetchedPage,
    HttpPageFetcher,
)
from cartwatch.playwright_env import NAVIGATOR_OVERRIDES, block_heavy_resources

SHOP_URL = "https://shop.example.com/p/1"
PRODUCT_HTML = "<html><body><button>Add to Cart</button></body></html>"
BLOCK_HTML = "<html><title>Pardon Our Interruption</title></html>"


class StubFetcher:
    def __init__(self, outcome) -> None:
        self.outcome = outcome
        self.calls: list[str] = []

    async def fetch(self, url: str) -> FetchedPage:
        self.calls.append(url)
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


def _fetch(primary, fallback) -> FetchedPage:
    return asyncio.run(FallbackPageFetcher(primary, fallback).fetch(SHOP_URL))


def test_http_success_skips_browser() -> None:
    primary = StubFetcher(FetchedPage(PRODUCT_HTML, 200, "http"))
    fallback = StubFetcher(FetchedPage("unused", 200, "browser"))

    page = _fetch(primary, fallback)

    assert page.via == "http"
    assert fallback.calls == []


def test_blocked_http_escalates_to_browser() -> None:
    primary = StubFetcher(FetchedPage(BLOCK_HTML, 200, "http"))
    fallback = StubFetcher(FetchedPage(PRODUCT_HTML, 200, "browser"))

    page = _fetch(primary, fallback)

    assert page.via == "browser"
    assert fallback.calls == [SHOP_URL]


def test_non_2xx_escalates_to_browser() -> None:
    primary = StubFetcher(FetchedPage("<html>Server error</html>", 503, "http"))
    fallback = StubFetcher(FetchedPage(PRODUCT_HTML, 200, "browser"))
    assert _fetch(primary, fallback).http_status == 200


def test_network_failure_escalates_to_browser() -> None:
    primary = StubFetcher(FetchError("HTTP request failed: timed out"))
    fallback = StubFetcher(FetchedPage(PRODUCT_HTML, 200, "browser"))
    assert _fetch(primary, fallback).via == "browser"


def test_browser_still_blocked_raises_blocked_error() -> None:
    primary = StubFetcher(FetchedPage(BLOCK_HTML, 403, "http"))
    fallback = StubFetcher(FetchedPage(BLOCK_HTML, 403, "browser"))

    with pytest.raises(BlockedError) as excinfo:
        _fetch(primary, fallback)

    assert excinfo.value.vendor == "Cloudflare"
    assert excinfo.value.http_status == 403


def test_blocked_then_browser_failure_is_blocked() -> None:
    primary = StubFetcher(FetchedPage(BLOCK_HTML, 403, "http"))
    fallback = StubFetcher(FetchError("Headless browser failed: Timeout 40000ms exceeded"))

    with pytest.raises(BlockedError) as excinfo:
        _fetch(primary, fallback)

    assert excinfo.value.http_status == 403


def test_failed_http_then_browser_failure_is_blocked() -> None:
    primary = StubFetcher(FetchedPage("<html>Not found</html>", 404, "http"))
    fallback = StubFetcher(FetchError("Headless browser failed: net::ERR_NAME_NOT_RESOLVED"))

    with pytest.raises(BlockedError) as excinfo:
        _fetch(primary, fallback)

    assert excinfo.value.vendor == CONNECTION_FAILED
    assert excinfo.value.http_status == 404


def test_network_failure_then_browser_failure_is_blocked() -> None:
    primary = StubFetcher(FetchError("HTTP request failed: timed out"))
    fallback = StubFetcher(FetchError("Headless browser failed: Timeout 40000ms exceeded"))

    with pytest.raises(BlockedError) as excinfo:
        _fetch(primary, fallback)

    assert excinfo.value.vendor == CONNECTION_FAILED
    assert excinfo.value.http_status == 0


class _Response:
    def __init__(self, text: str, status_code: int) -> None:
        self.text = text
        self.status_code = status_code


class _Session:
    def __init__(self, outcome) -> None:
        self.outcome = outcome
        self.kwargs: dict = {}

    def get(self, url, **kwargs):
        self.kwargs = kwargs
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


def test_http_fetcher_returns_non_2xx_pages() -> None:
    session = _Session(_Response(BLOCK_HTML, 403))
    fetcher = HttpPageFetcher(timeout=2.5, session=session)

    page = asyncio.run(fetcher.fetch(SHOP_URL))

    assert page == FetchedPage(BLOCK_HTML, 403, "http")
    assert page.ok is False
    assert session.kwargs["timeout"] == 2.5
    assert "Mozilla/5.0" in session.kwargs["headers"]["User-Agent"]


def test_http_fetcher_wraps_transport_errors() -> None:
    fetcher = HttpPageFetcher(session=_Session(requests.ConnectTimeout("timed out")))
    with pytest.raises(FetchError):
        asyncio.run(fetcher.fetch(SHOP_URL))


def test_http_fetcher_honours_user_agent_override(monkeypatch) -> None:
    monkeypatch.setenv("CARTWATCH_USER_AGENT", "CartwatchTest/1.0")
    session = _Session(_Response(PRODUCT_HTML, 200))

    asyncio.run(HttpPageFetcher(session=session).fetch(SHOP_URL))

    assert session.kwargs["headers"]["User-Agent"] == "CartwatchTest/1.0"


class _Page:
    def __init__(self, goto_error: Exception | None) -> None:
        self.goto_error = goto_error
        self.routes: list[tuple[str, object]] = []
        self.goto_kwargs: dict = {}
        self.waited: list[int] = []

    async def route(self, pattern, handler) -> None:
        self.routes.append((pattern, handler))

    async def goto(self, url, **kwargs):
        self.goto_kwargs = kwargs
        if self.goto_error is not None:
            raise self.goto_error
        return SimpleNamespace(status=200)

    async def wait_for_timeout(self, ms: int) -> None:
        self.waited.append(ms)

    async def content(self) -> str:
        return PRODUCT_HTML


class _Context:
    def __init__(self, page: _Page) -> None:
        self.page = page
        self.init_scripts: list[str] = []

    async def add_init_script(self, script: str) -> None:
        self.init_scripts.append(script)

    async def new_page(self) -> _Page:
        return self.page


class _Browser:
    def __init__(self, context: _Context) -> None:
        self.context = context
        self.close_calls = 0

    async def new_context(self, **kwargs) -> _Context:
        return self.context

    async def close(self) -> None:
        self.close_calls += 1


class _Playwright:
    def __init__(self, browser: _Browser) -> None:
        self.browser = browser
        self.chromium = self

    async def launch(self, **kwargs) -> _Browser:
        return self.browser

    async def __aenter__(self) -> "_Playwright":
        return self

    async def __aexit__(self, *exc_info) -> None:
        return None


def _install_browser(monkeypatch, goto_error: Exception | None = None) -> _Browser:
    browser = _Browser(_Context(_Page(goto_error)))
    monkeypatch.setattr(fetcher_module, "async_playwright", lambda: _Playwright(browser))
    monkeypatch.setattr(fetcher_module, "apply_stealth", lambda playwright: None)
    return browser


def test_browser_fetch_closes_browser_after_success(monkeypatch) -> None:
    browser = _install_browser(monkeypatch)

    page = asyncio.run(BrowserPageFetcher(timeout_ms=1234, settle_ms=50).fetch(SHOP_URL))

    assert page == FetchedPage(PRODUCT_HTML, 200, "browser")
    assert browser.close_calls == 1
    assert browser.context.init_scripts == [NAVIGATOR_OVERRIDES]
    assert browser.context.page.routes == [("**/*", block_heavy_resources)]
    assert browser.context.page.goto_kwargs == {"wait_until": "networkidle", "timeout": 1234}
    assert browser.context.page.waited == [50]


def test_browser_fetch_closes_browser_when_navigation_fails(monkeypatch) -> None:
    browser = _install_browser(monkeypatch, PlaywrightError("Timeout 40000ms exceeded"))

    with pytest.raises(FetchError) as excinfo:
        asyncio.run(BrowserPageFetcher().fetch(SHOP_URL))

    assert "Timeout 40000ms exceeded" in str(excinfo.value)
    assert browser.close_calls == 1
