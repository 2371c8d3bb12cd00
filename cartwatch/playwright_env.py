"""Centralised helpers for Playwright launch + anti-bot configuration."""

from __future__ import annotations

import os
import shlex
from functools import lru_cache
from typing import Any
from urllib.parse import urlparse

from playwright.async_api import Browser, Playwright, Route
from playwright_stealth import Stealth

from cartwatch.config import _as_bool
from cartwatch.logging_config import get_logger

LOGGER = get_logger(__name__)

DESKTOP_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/121.0.0.0 Safari/537.36"
)
VIEWPORT = {"width": 1920, "height": 1080}

BROWSER_HEADERS = {
    "Accept-Language": "en-US,en;q=0.9",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,image/apng,*/*;q=0.8",
    "Cache-Control": "max-age=0",
    "Upgrade-Insecure-Requests": "1",
    "Sec-Ch-Ua": '" Not A;Brand";v="99", "Chromium";v="121", "Google Chrome";v="121"',
    "Sec-Ch-Ua-Mobile": "?0",
    "Sec-Ch-Ua-Platform": '"Windows"',
    "Sec-Fetch-Dest": "document",
    "Sec-Fetch-Mode": "navigate",
    "Sec-Fetch-Site": "none",
    "Sec-Fetch-User": "?1",
}

# Runs before any page script; hides the usual automation giveaways.
NAVIGATOR_OVERRIDES = """
Object.defineProperty(navigator, 'webdriver', { get: () => false });
Object.defineProperty(navigator, 'vendor', { get: () => 'Google Inc.' });
Object.defineProperty(navigator, 'plugins', { get: () => [1, 2, 3, 4, 5] });
Object.defineProperty(navigator, 'languages', { get: () => ['en-US', 'en'] });
Object.defineProperty(navigator, 'hardwareConcurrency', { get: () => 8 });
Object.defineProperty(navigator, 'deviceMemory', { get: () => 8 });
window.chrome = { runtime: {} };
"""

BLOCKED_RESOURCE_TYPES = frozenset({"image", "stylesheet", "font", "media"})


@lru_cache(maxsize=1)
def headless_enabled() -> bool:
    """Return True if Playwright should run in headless mode."""

    return _as_bool(os.getenv("CARTWATCH_HEADLESS"), True)


def stealth_enabled() -> bool:
    """Return True when stealth evasion scripts should be applied."""

    return _as_bool(os.getenv("CARTWATCH_STEALTH"), True)


def user_agent() -> str:
    value = (os.getenv("CARTWATCH_USER_AGENT") or "").strip()
    return value or DESKTOP_USER_AGENT


@lru_cache(maxsize=1)
def _stealth_instance() -> Stealth | None:
    if not stealth_enabled():
        return None
    return Stealth(
        navigator_languages_override=("en-US", "en"),
        navigator_platform_override=os.getenv("CARTWATCH_PLATFORM", "Win32"),
        navigator_user_agent_override=user_agent(),
        navigator_vendor_override="Google Inc.",
    )


def apply_stealth(playwright: Playwright) -> None:
    """Hook the provided Playwright object with stealth evasions when enabled."""

    instance = _stealth_instance()
    if instance is None:
        return
    instance.hook_playwright_context(playwright)


def _proxy_config() -> dict[str, str] | None:
    raw = os.getenv("CARTWATCH_PROXY")
    if not raw:
        return None
    parsed = urlparse(raw)
    if not parsed.scheme:
        return {"server": f"http://{raw}"}
    return {"server": raw}


def launch_kwargs() -> dict[str, Any]:
    """Return kwargs passed to ``chromium.launch``."""

    args = [
        "--disable-blink-features=AutomationControlled",
        "--disable-dev-shm-usage",
        "--disable-infobars",
        "--lang=en-US",
        "--no-default-browser-check",
        "--no-sandbox",
        f"--window-size={VIEWPORT['width']},{VIEWPORT['height']}",
    ]
    extra_args = os.getenv("CARTWATCH_CHROMIUM_ARGS")
    if extra_args:
        args.extend(shlex.split(extra_args))

    kwargs: dict[str, Any] = {
        "headless": headless_enabled(),
        "args": args,
    }

    channel = os.getenv("CARTWATCH_BROWSER_CHANNEL")
    if channel:
        kwargs["channel"] = channel

    proxy = _proxy_config()
    if proxy:
        kwargs["proxy"] = proxy

    return kwargs


def context_kwargs() -> dict[str, Any]:
    """Return kwargs for ``browser.new_context`` mimicking a desktop Chrome."""

    return {
        "viewport": dict(VIEWPORT),
        "user_agent": user_agent(),
        "locale": "en-US",
        "extra_http_headers": dict(BROWSER_HEADERS),
    }


async def block_heavy_resources(route: Route) -> None:
    """Abort image/font/style/media requests; let everything else through."""

    if route.request.resource_type in BLOCKED_RESOURCE_TYPES:
        await route.abort()
    else:
        await route.continue_()


async def close_browser(browser: Browser | None) -> None:
    """Close *browser*, logging rather than raising on failure."""

    if browser is None:
        return
    try:
        await browser.close()
    except Exception as exc:
        LOGGER.warning("Browser close failed: %s", exc)
