"""User-facing settings operations: agents, notification channels, cards.

These back the HTTP API and the CLI. Sensitive values (webhook URLs, card
numbers and CVCs) are encrypted before they reach the database.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterator
from urllib.parse import urlparse

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from cartwatch.alerts.notifier import Notifier
from cartwatch.crypto import Cipher, PaymentCard, encrypt_card_data
from cartwatch.errors import ConfigurationError, NotFoundError, PersistenceError
from cartwatch.logging_config import get_logger
from cartwatch.status import AgentStatus, NotificationChannel
from cartwatch.storage import repo
from cartwatch.storage.models_sql import Agent, CheckLog, PaymentMethod, User
from cartwatch.strategies import CheckType, SelectorCheck, build_strategy

LOGGER = get_logger(__name__)

DEFAULT_FREQUENCY_MINUTES = 5


@dataclass(frozen=True)
class AgentDraft:
    """Fields accepted when deploying a new agent."""

    url: str
    alias: str | None = None
    frequency: int = DEFAULT_FREQUENCY_MINUTES
    check_type: str | None = None
    selector: str | None = None
    condition: str | None = None
    expected_value: str | None = None
    keywords: str | None = None
    auto_checkout: bool = False
    auto_checkout_card_id: str | None = None
    webhook_url: str | None = None


def _validated_host(url: str) -> str:
    parsed = urlparse((url or "").strip())
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ConfigurationError(f"A valid http(s) URL is required, got '{url}'")
    return parsed.netloc


class SettingsService:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        cipher: Cipher,
        notifier: Notifier | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._cipher = cipher
        self._notifier = notifier
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @contextmanager
    def _transaction(self, action: str) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            LOGGER.error("%s failed: %s", action, exc)
            raise PersistenceError(f"{action} failed") from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # Agents -----------------------------------------------------------------

    def create_agent(self, user_id: str, draft: AgentDraft) -> Agent:
        """Validate *draft* and store it as an enabled agent."""

        host = _validated_host(draft.url)
        strategy = build_strategy(
            draft.check_type,
            selector=draft.selector,
            condition=draft.condition,
            expected_value=draft.expected_value,
            keywords=draft.keywords,
        )
        if draft.frequency < 1:
            raise ConfigurationError("Check frequency must be at least one minute")
        if draft.auto_checkout and not draft.auto_checkout_card_id:
            raise ConfigurationError("Auto-checkout requires a payment method")

        if isinstance(strategy, SelectorCheck):
            check_type = CheckType.SELECTOR.value
            selector, condition = strategy.selector, strategy.condition.value
        else:
            check_type = (draft.check_type or CheckType.KEYWORD_MISSING.value).strip().upper()
            selector, condition = None, None

        with self._transaction("create agent") as session:
            if draft.auto_checkout_card_id and repo.get_payment_method(
                session, user_id, draft.auto_checkout_card_id
            ) is None:
                raise NotFoundError("Payment method not found")
            agent = Agent(
                user_id=user_id,
                url=draft.url.strip(),
                name=host,
                alias=(draft.alias or "").strip() or host,
                frequency=draft.frequency,
                status=AgentStatus.ENABLED.value,
                check_type=check_type,
                selector=selector,
                condition=condition,
                expected_value=draft.expected_value or None,
                keywords=draft.keywords or None,
                auto_checkout=draft.auto_checkout,
                auto_checkout_card_id=draft.auto_checkout_card_id,
                webhook_url=self._cipher.encrypt(draft.webhook_url) if draft.webhook_url else None,
            )
            repo.insert_agent(session, agent)
        LOGGER.info("Agent created | user=%s agent=%s url=%s", user_id, agent.id, agent.url)
        return agent

    def list_agents(self, user_id: str) -> list[Agent]:
        with self._transaction("list agents") as session:
            return repo.list_agents_for_user(session, user_id)

    def set_agent_status(self, user_id: str, agent_id: str, status: AgentStatus) -> Agent:
        with self._transaction("update agent status") as session:
            agent = repo.set_agent_status(session, user_id, agent_id, status)
            if agent is None:
                raise NotFoundError("Agent not found")
        LOGGER.info("Agent %s set to %s", agent_id, status.value)
        return agent

    def delete_agent(self, user_id: str, agent_id: str) -> None:
        with self._transaction("delete agent") as session:
            if not repo.delete_agent(session, user_id, agent_id):
                raise NotFoundError("Agent not found")
        LOGGER.info("Agent deleted | user=%s agent=%s", user_id, agent_id)

    def agent_logs(self, user_id: str, agent_id: str, *, limit: int | None = None) -> list[CheckLog]:
        with self._transaction("list agent logs") as session:
            if repo.get_agent(session, user_id, agent_id) is None:
                raise NotFoundError("Agent not found")
            return repo.list_logs(session, agent_id, limit=limit)

    # Notification channels --------------------------------------------------

    def save_webhook(self, user_id: str, webhook_url: str | None) -> User:
        """Store the user's webhook URL encrypted; an empty value clears it."""

        webhook_url = (webhook_url or "").strip()
        if webhook_url:
            _validated_host(webhook_url)
        with self._transaction("save webhook") as session:
            user = repo.get_or_create_user(session, user_id)
            user.notification_webhook = self._cipher.encrypt(webhook_url) if webhook_url else None
            user.updated_at = self._clock()
        LOGGER.info("Webhook URL saved for user %s", user_id)
        return user

    async def test_webhook(self, webhook_url: str) -> str:
        _validated_host(webhook_url)
        kind = await self._require_notifier().send_test_webhook(webhook_url)
        LOGGER.info("Test webhook sent | type=%s", kind)
        return kind

    def save_telegram(self, user_id: str, chat_id: str | int | None) -> User:
        chat_text = str(chat_id).strip() if chat_id is not None else ""
        if not chat_text:
            raise ConfigurationError("Telegram user ID is required")
        now = self._clock()
        with self._transaction("save telegram") as session:
            user = repo.get_or_create_user(session, user_id)
            user.notification_type = NotificationChannel.TELEGRAM.value
            user.telegram_user_id = chat_text
            user.telegram_connected_at = now
            user.updated_at = now
        LOGGER.info("Telegram settings saved for user %s", user_id)
        return user

    async def test_telegram(self, chat_id: str | int | None) -> None:
        chat_text = str(chat_id).strip() if chat_id is not None else ""
        if not chat_text:
            raise ConfigurationError("Telegram user ID is required")
        await self._require_notifier().send_test_telegram(chat_text)
        LOGGER.info("Test Telegram message sent to %s", chat_text)

    def disconnect_telegram(self, user_id: str) -> User:
        with self._transaction("disconnect telegram") as session:
            user = repo.get_or_create_user(session, user_id)
            user.notification_type = NotificationChannel.WEBHOOK.value
            user.telegram_user_id = None
            user.telegram_connected_at = None
            user.updated_at = self._clock()
        LOGGER.info("Telegram disconnected for user %s", user_id)
        return user

    # Payment methods --------------------------------------------------------

    def add_payment_method(self, user_id: str, card: PaymentCard) -> PaymentMethod:
        if not card.card_number or not card.cvc:
            raise ConfigurationError("Card number and CVC are required")
        now = self._clock()
        with self._transaction("add payment method") as session:
            repo.get_or_create_user(session, user_id)
            method = PaymentMethod(
                user_id=user_id,
                created_at=now,
                updated_at=now,
                **encrypt_card_data(self._cipher, card),
            )
            session.add(method)
            session.flush()
        LOGGER.info("Payment method added for user %s", user_id)
        return method

    def update_payment_method(
        self,
        user_id: str,
        method_id: str,
        *,
        expiry: str | None = None,
        cardholder_name: str | None = None,
        is_prepaid: bool = False,
        balance: float | None = None,
        card_number: str | None = None,
        cvc: str | None = None,
        last4: str | None = None,
    ) -> PaymentMethod:
        """Update card details; the number and CVC change only when both are given."""

        with self._transaction("update payment method") as session:
            method = repo.get_payment_method(session, user_id, method_id)
            if method is None:
                raise NotFoundError("Payment method not found")
            method.expiry = expiry
            method.cardholder_name = cardholder_name
            method.is_prepaid = is_prepaid
            method.balance = balance if is_prepaid else None
            method.updated_at = self._clock()
            if card_number and cvc:
                encrypted = encrypt_card_data(
                    self._cipher,
                    PaymentCard(
                        card_number=card_number,
                        cvc=cvc,
                        expiry=expiry,
                        cardholder_name=cardholder_name,
                        last4=last4 or "",
                        is_prepaid=is_prepaid,
                        balance=balance,
                    ),
                )
                method.encrypted_number = encrypted["encrypted_number"]
                method.encrypted_cvc = encrypted["encrypted_cvc"]
                method.last4 = encrypted["last4"]
        LOGGER.info("Payment method updated for user %s", user_id)
        return method

    def _require_notifier(self) -> Notifier:
        if self._notifier is None:
            raise ConfigurationError("No notifier configured")
        return self._notifier
