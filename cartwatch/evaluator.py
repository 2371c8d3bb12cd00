"""Decide stock status from an already fetched page."""

from __future__ import annotations

from dataclasses import dataclass

from bs4 import BeautifulSoup
from bs4.element import Tag

from cartwatch.errors import EvaluationError
from cartwatch.strategies import (
    CheckStrategy,
    Condition,
    KeywordMissingCheck,
    KeywordPresentCheck,
    SelectorCheck,
)


@dataclass(frozen=True)
class Evaluation:
    in_stock: bool
    message: str


def parse_html(html: str | None) -> BeautifulSoup:
    return BeautifulSoup(html or "", "html.parser")


def body_text(soup: BeautifulSoup) -> str:
    """Return the lowercase text content of the page body."""

    root = soup.body if soup.body is not None else soup
    return root.get_text().lower()


def _element_content(elements: list[Tag]) -> str:
    text = "".join(element.get_text() for element in elements).strip()
    if text or not elements:
        return text
    value = elements[0].get("value")
    if isinstance(value, list):
        value = " ".join(value)
    return (value or "").strip()


def _evaluate_selector(soup: BeautifulSoup, check: SelectorCheck) -> Evaluation:
    try:
        elements = soup.select(check.selector)
    except Exception as exc:
        raise EvaluationError(f"Invalid selector '{check.selector}': {exc}") from exc

    content = _element_content(elements)
    expected = check.expected_value
    label = f"Selector '{check.selector}' content '{content}'"

    if check.condition is Condition.EQUALS:
        return Evaluation(content == expected, f"{label} equals '{expected}'")
    if check.condition is Condition.NOT_EQUALS:
        return Evaluation(content != expected, f"{label} does NOT equal '{expected}'")
    if check.condition is Condition.CONTAINS:
        return Evaluation(expected in content, f"{label} contains '{expected}'")
    if check.condition is Condition.EXISTS:
        found = len(elements) > 0
        state = "exists" if found else "not found"
        return Evaluation(found, f"Selector '{check.selector}' {state}")
    raise EvaluationError(f"Unsupported condition: {check.condition}")


def _first_match(keywords: tuple[str, ...], text: str) -> str | None:
    for keyword in keywords:
        if keyword in text:
            return keyword
    return None


def evaluate_stock(soup: BeautifulSoup, strategy: CheckStrategy) -> Evaluation:
    """Apply *strategy* to *soup* and explain the verdict.

    Pure: identical input always yields an identical :class:`Evaluation`.
    """

    if isinstance(strategy, SelectorCheck):
        return _evaluate_selector(soup, strategy)

    if isinstance(strategy, KeywordPresentCheck):
        found = _first_match(strategy.keywords, body_text(soup))
        if found is not None:
            return Evaluation(True, f"Found keyword: '{found}'")
        return Evaluation(False, "No positive keywords found")

    if isinstance(strategy, KeywordMissingCheck):
        found = _first_match(strategy.keywords, body_text(soup))
        if found is not None:
            return Evaluation(False, f"Found negative keyword: '{found}'")
        return Evaluation(True, "No negative keywords found (Assumed In Stock)")

    raise EvaluationError(f"Unsupported check strategy: {type(strategy).__name__}")


__all__ = ["Evaluation", "body_text", "evaluate_stock", "parse_html"]
