"""Per-agent stock check pipeline and the due-agent cycle runner.

One cycle for one agent: fetch -> evaluate (skipped when blocked) ->
thumbnail -> auto-checkout hand-off -> notify (on change) -> persist.
Whatever branch is taken, the agent row is updated once and exactly one
result log entry is appended.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from bs4 import BeautifulSoup

from cartwatch.alerts.notifier import Notifier
from cartwatch.crypto import Cipher, decrypt_card_data
from cartwatch.errors import BlockedError, CheckoutError, EvaluationError, FetchError, PersistenceError
from cartwatch.evaluator import evaluate_stock, parse_html
from cartwatch.fetcher import PageFetcher
from cartwatch.logging_config import get_logger
from cartwatch.status import CheckResult
from cartwatch.storage.repo import AgentRepository, CheckUpdate, LogEntry, as_utc
from cartwatch.strategies import strategy_for_agent
from cartwatch.thumbnails import extract_thumbnail

LOGGER = get_logger(__name__)

DEFAULT_FREQUENCY_MINUTES = 5
DEFAULT_MAX_CONCURRENCY = 10
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
BOT_DETECTED_MESSAGE = "Bot detection (WAF/anti-scraping) blocked access to page. Real stock status unknown."


def next_check_time(agent: Any) -> datetime:
    """``last_checked + frequency``; agents never checked count from the epoch."""

    last_checked = as_utc(getattr(agent, "last_checked", None)) or EPOCH
    minutes = getattr(agent, "frequency", None) or DEFAULT_FREQUENCY_MINUTES
    return last_checked + timedelta(minutes=minutes)


def is_due(agent: Any, now: datetime) -> bool:
    return now >= next_check_time(agent)


def should_notify(previous: str | None, current: CheckResult) -> bool:
    """Alert on the first result or on a change, never around BOT_DETECTED."""

    if current in (CheckResult.BOT_DETECTED, CheckResult.ERROR):
        return False
    if previous == CheckResult.BOT_DETECTED.value:
        return False
    return previous is None or previous != current.value


@dataclass
class CycleSummary:
    enabled: int = 0
    due: int = 0
    failed: int = 0
    results: Counter[str] = field(default_factory=Counter)


class StockChecker:
    """Runs check cycles for agents against the injected collaborators."""

    def __init__(
        self,
        repository: AgentRepository,
        fetcher: PageFetcher,
        notifier: Notifier,
        cipher: Cipher,
        *,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.repository = repository
        self.fetcher = fetcher
        self.notifier = notifier
        self.cipher = cipher
        self.max_concurrency = max(1, max_concurrency)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def run_due_checks(self, now: datetime | None = None) -> CycleSummary:
        """Check every enabled agent that is due, concurrently.

        A failing agent never affects the others; failures that escape a
        pipeline (persistence errors) are counted and logged here.
        """

        now = now or self._clock()
        agents = await asyncio.to_thread(self.repository.list_enabled_agents)
        summary = CycleSummary(enabled=len(agents))
        LOGGER.info("Found %d enabled agents", len(agents))

        due = []
        for agent in agents:
            if not agent.user_id:
                LOGGER.warning("Agent %s has no owning user. Skipping.", agent.id)
                continue
            if is_due(agent, now):
                LOGGER.info("Agent %s due (user=%s)", agent.id, agent.user_id)
                due.append(agent)
        summary.due = len(due)

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def _guarded(agent: Any) -> CheckResult:
            async with semaphore:
                return await self.check_agent(agent.user_id, agent)

        outcomes = await asyncio.gather(*(_guarded(agent) for agent in due), return_exceptions=True)
        for agent, outcome in zip(due, outcomes):
            if isinstance(outcome, BaseException):
                summary.failed += 1
                LOGGER.error("Check task failed | agent=%s error=%s", agent.id, outcome)
            else:
                summary.results[outcome.value] += 1

        LOGGER.info(
            "Cycle finished | enabled=%d due=%d failed=%d results=%s",
            summary.enabled,
            summary.due,
            summary.failed,
            dict(summary.results),
        )
        return summary

    async def check_agent_by_id(self, user_id: str, agent_id: str) -> CheckResult:
        agent = await asyncio.to_thread(self.repository.get_agent, user_id, agent_id)
        if agent is None:
            raise PersistenceError(f"Agent {agent_id} not found for user {user_id}")
        return await self.check_agent(user_id, agent)

    async def check_agent(self, user_id: str, agent: Any) -> CheckResult:
        """Run one check cycle for *agent* and persist its outcome."""

        agent_id = agent.id
        timestamp = self._clock()
        http_status = 0
        thumbnail: str | None = None
        checkout_at: datetime | None = None

        try:
            strategy = strategy_for_agent(agent)
            soup: BeautifulSoup | None = None
            try:
                page = await self.fetcher.fetch(agent.url)
            except BlockedError as exc:
                http_status = exc.http_status
                result = CheckResult.BOT_DETECTED
                message = BOT_DETECTED_MESSAGE
                LOGGER.warning("%s | agent=%s vendor=%s", message, agent_id, exc.vendor)
            else:
                http_status = page.http_status
                soup = parse_html(page.html)
                evaluation = evaluate_stock(soup, strategy)
                result = CheckResult.from_stock(evaluation.in_stock)
                message = evaluation.message

            if soup is not None and not agent.thumbnail:
                thumbnail = self._find_thumbnail(soup, agent)

            if result is CheckResult.IN_STOCK and agent.auto_checkout and agent.auto_checkout_card_id:
                checkout_at = await self._attempt_checkout(user_id, agent, timestamp, http_status)
        except (FetchError, EvaluationError) as exc:
            return await self._record_error(user_id, agent, timestamp, exc)
        except Exception as exc:
            LOGGER.exception("Unexpected failure checking agent %s", agent_id)
            return await self._record_error(user_id, agent, timestamp, exc)

        if should_notify(agent.last_result, result):
            if agent.last_result is not None:
                LOGGER.info("Status changed for %s: %s -> %s", agent_id, agent.last_result, result.value)
            await self.notifier.notify_status_change(user_id, agent, result is CheckResult.IN_STOCK)

        update = CheckUpdate(
            last_checked=timestamp,
            last_result=result.value,
            last_http_status=http_status,
            thumbnail=thumbnail,
            last_checkout_attempt=checkout_at,
        )
        entry = LogEntry(ts_utc=timestamp, result=result.value, message=message, http_status=http_status)
        await asyncio.to_thread(self.repository.record_check, user_id, agent_id, update, entry)
        LOGGER.info("Check complete | agent=%s result=%s status=%s", agent_id, result.value, http_status)
        return result

    def _find_thumbnail(self, soup: BeautifulSoup, agent: Any) -> str | None:
        try:
            thumbnail = extract_thumbnail(soup, agent.url)
        except Exception as exc:
            LOGGER.debug("Thumbnail extraction failed for %s: %s", agent.id, exc)
            return None
        if thumbnail:
            LOGGER.info("Scraped thumbnail for %s: %s", agent.id, thumbnail)
        return thumbnail

    async def _attempt_checkout(
        self,
        user_id: str,
        agent: Any,
        timestamp: datetime,
        http_status: int,
    ) -> datetime | None:
        """Log an auto-checkout hand-off; no purchase is placed.

        Returns the attempt time on success. Failures are logged as
        ``CHECKOUT_FAILED`` and never abort the cycle.
        """

        LOGGER.info("Attempting auto-checkout for agent %s", agent.id)
        try:
            method = await asyncio.to_thread(
                self.repository.get_payment_method, user_id, agent.auto_checkout_card_id
            )
            if method is None:
                raise CheckoutError("Payment method not found")
            card = decrypt_card_data(self.cipher, method)
            # TODO: drive the retailer's checkout flow in the headless browser once a
            # per-site checkout script format exists.
            LOGGER.info("Would checkout using card ending in %s", card.last4)
            await asyncio.to_thread(
                self.repository.append_log,
                agent.id,
                LogEntry(
                    ts_utc=timestamp,
                    result=CheckResult.CHECKOUT_ATTEMPTED.value,
                    message=f"Auto-checkout attempted with card ending in {card.last4}",
                    http_status=http_status,
                ),
            )
            return timestamp
        except Exception as exc:
            LOGGER.error("Auto-checkout failed for %s: %s", agent.id, exc)
            try:
                await asyncio.to_thread(
                    self.repository.append_log,
                    agent.id,
                    LogEntry(
                        ts_utc=timestamp,
                        result=CheckResult.CHECKOUT_FAILED.value,
                        message=f"Auto-checkout failed: {exc}",
                        http_status=http_status,
                    ),
                )
            except PersistenceError as log_exc:
                LOGGER.error("Could not record checkout failure for %s: %s", agent.id, log_exc)
            return None

    async def _record_error(
        self,
        user_id: str,
        agent: Any,
        timestamp: datetime,
        exc: Exception,
    ) -> CheckResult:
        http_status = getattr(exc, "http_status", 0) or 0
        LOGGER.error("Failed to check url %s: %s", agent.url, exc)
        update = CheckUpdate(
            last_checked=timestamp,
            last_result=CheckResult.ERROR.value,
            last_http_status=http_status,
        )
        entry = LogEntry(
            ts_utc=timestamp,
            result=CheckResult.ERROR.value,
            message=str(exc),
            http_status=http_status,
        )
        await asyncio.to_thread(self.repository.record_check, user_id, agent.id, update, entry)
        return CheckResult.ERROR
