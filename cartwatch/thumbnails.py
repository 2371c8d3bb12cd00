"""Best-effort product image discovery."""

from __future__ import annotations

from urllib.parse import urlparse

from bs4 import BeautifulSoup

MIN_IMAGE_SRC_LENGTH = 10
_ICON_MARKERS = ("svg", "icon")

# (selector, attribute) pairs tried in order before falling back to <img> tags.
_META_CANDIDATES: tuple[tuple[str, str], ...] = (
    ('meta[property="og:image"]', "content"),
    ('meta[name="twitter:image"]', "content"),
    ('link[rel="image_src"]', "href"),
)


def _attr(soup: BeautifulSoup, selector: str, attribute: str) -> str | None:
    element = soup.select_one(selector)
    if element is None:
        return None
    value = element.get(attribute)
    if isinstance(value, list):
        value = " ".join(value)
    value = (value or "").strip()
    return value or None


def _first_plausible_image(soup: BeautifulSoup) -> str | None:
    for image in soup.find_all("img"):
        src = (image.get("src") or "").strip()
        if len(src) < MIN_IMAGE_SRC_LENGTH:
            continue
        if any(marker in src for marker in _ICON_MARKERS):
            continue
        return src
    return None


def resolve_image_url(candidate: str, page_url: str) -> str:
    """Resolve a root-relative (or scheme-relative) image path against *page_url*."""

    if not candidate.startswith("/"):
        return candidate
    parsed = urlparse(page_url)
    if candidate.startswith("//"):
        return f"{parsed.scheme or 'https'}:{candidate}"
    return f"{parsed.scheme}://{parsed.netloc}{candidate}"


def extract_thumbnail(soup: BeautifulSoup, page_url: str) -> str | None:
    """Return an image URL for the product page, or ``None``."""

    candidate = None
    for selector, attribute in _META_CANDIDATES:
        candidate = _attr(soup, selector, attribute)
        if candidate:
            break
    if not candidate:
        candidate = _first_plausible_image(soup)
    if not candidate:
        return None
    return resolve_image_url(candidate, page_url)


__all__ = ["extract_thumbnail", "resolve_image_url"]
