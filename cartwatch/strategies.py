"""Stock check strategies and their construction from stored agent settings.

Agents persist ``check_type``/``condition`` as plain strings. They are parsed
into one of the strategy dataclasses below before any page is evaluated, so an
unknown value fails loudly with :class:`ConfigurationError` instead of quietly
falling back to another strategy.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Union

from cartwatch.errors import ConfigurationError

DEFAULT_PRESENT_KEYWORDS = "add to cart, in stock"
DEFAULT_MISSING_KEYWORDS = "out of stock, sold out, currently unavailable, notify me"


class CheckType(str, Enum):
    SELECTOR = "SELECTOR"
    KEYWORD_PRESENT = "KEYWORD_PRESENT"
    KEYWORD_MISSING = "KEYWORD_MISSING"


class Condition(str, Enum):
    EQUALS = "EQUALS"
    NOT_EQUALS = "NOT_EQUALS"
    CONTAINS = "CONTAINS"
    EXISTS = "EXISTS"


@dataclass(frozen=True)
class SelectorCheck:
    selector: str
    condition: Condition = Condition.EXISTS
    expected_value: str = ""


@dataclass(frozen=True)
class KeywordPresentCheck:
    keywords: tuple[str, ...]


@dataclass(frozen=True)
class KeywordMissingCheck:
    keywords: tuple[str, ...]


CheckStrategy = Union[SelectorCheck, KeywordPresentCheck, KeywordMissingCheck]


def parse_keywords(raw: str | None, default: str) -> tuple[str, ...]:
    """Split a comma separated keyword string into lowercase tokens."""

    source = raw if raw else default
    tokens = tuple(token.strip().lower() for token in source.split(","))
    return tuple(token for token in tokens if token)


def _parse_enum(enum_cls: type[Enum], value: Any, field_name: str) -> Any:
    text = str(value).strip().upper()
    try:
        return enum_cls(text)
    except ValueError as exc:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ConfigurationError(
            f"Unknown {field_name} '{value}' (expected one of: {allowed})"
        ) from exc


def build_strategy(
    check_type: str | None,
    *,
    selector: str | None = None,
    condition: str | None = None,
    expected_value: str | None = None,
    keywords: str | None = None,
) -> CheckStrategy:
    """Return the strategy described by an agent's stored settings."""

    kind = CheckType.KEYWORD_MISSING if not check_type else _parse_enum(CheckType, check_type, "check type")

    if kind is CheckType.SELECTOR:
        selector_text = (selector or "").strip()
        if not selector_text:
            raise ConfigurationError("A CSS selector is required for SELECTOR checks")
        parsed_condition = Condition.EXISTS if not condition else _parse_enum(Condition, condition, "condition")
        return SelectorCheck(
            selector=selector_text,
            condition=parsed_condition,
            expected_value=expected_value or "",
        )
    if kind is CheckType.KEYWORD_PRESENT:
        return KeywordPresentCheck(parse_keywords(keywords, DEFAULT_PRESENT_KEYWORDS))
    return KeywordMissingCheck(parse_keywords(keywords, DEFAULT_MISSING_KEYWORDS))


def strategy_for_agent(agent: Any) -> CheckStrategy:
    """Build the strategy for an agent record (ORM row or any attribute bag)."""

    return build_strategy(
        getattr(agent, "check_type", None),
        selector=getattr(agent, "selector", None),
        condition=getattr(agent, "condition", None),
        expected_value=getattr(agent, "expected_value", None),
        keywords=getattr(agent, "keywords", None),
    )
