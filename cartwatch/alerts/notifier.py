"""Alert notification delivery to webhooks and Telegram."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Callable
from urllib.parse import urlparse

import requests
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from cartwatch.alerts.payloads import (
    TELEGRAM_TEST_TEXT,
    build_webhook_payload,
    connection_test_payload,
    detect_webhook_type,
    telegram_alert_text,
)
from cartwatch.crypto import Cipher
from cartwatch.errors import NotificationError
from cartwatch.logging_config import get_logger
from cartwatch.secret_store import SecretsProvider
from cartwatch.status import NotificationChannel
from cartwatch.storage.repo import AgentRepository

LOGGER = get_logger(__name__)

TELEGRAM_TOKEN_SECRET = "TELEGRAM_BOT_TOKEN"
TELEGRAM_API_URL = "https://api.telegram.org/bot{token}/sendMessage"
DEFAULT_TIMEOUT = 5.0
DEFAULT_RETRY_ATTEMPTS = 3


class Notifier:
    """Route stock alerts to the user's configured channel.

    :meth:`notify_status_change` never raises; delivery problems are logged so
    that a failed alert cannot change the outcome of a stock check. The
    ``send_test_*`` helpers do raise, since their caller is waiting on them.
    """

    def __init__(
        self,
        repository: AgentRepository,
        cipher: Cipher,
        secrets: SecretsProvider,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        retry_attempts: int = DEFAULT_RETRY_ATTEMPTS,
        post: Callable[..., Any] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repository = repository
        self._cipher = cipher
        self._secrets = secrets
        self.timeout = timeout
        self.retry_attempts = max(1, retry_attempts)
        self._post = post or requests.post
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def notify_status_change(self, user_id: str, agent: Any, in_stock: bool) -> bool:
        """Deliver a status alert for *agent*; return True when one was sent."""

        try:
            preference = await asyncio.to_thread(self._repository.get_notification_preference, user_id)
            if preference is None:
                LOGGER.warning("User %s not found for notification", user_id)
                return False

            if preference.channel == NotificationChannel.TELEGRAM.value and preference.telegram_user_id:
                text = telegram_alert_text(agent, in_stock, self._clock())
                await asyncio.to_thread(self._send_telegram, preference.telegram_user_id, text)
                LOGGER.info("Telegram message sent | agent=%s", agent.id)
                return True

            ciphertext = agent.webhook_url or preference.webhook_ciphertext
            if not ciphertext:
                LOGGER.info("No notification configured for user %s", user_id)
                return False

            webhook_url = self._cipher.decrypt(ciphertext)
            payload = build_webhook_payload(webhook_url, agent, in_stock, self._clock())
            await asyncio.to_thread(self._post_json, webhook_url, payload)
            LOGGER.info(
                "Webhook fired | agent=%s type=%s",
                agent.id,
                detect_webhook_type(webhook_url),
            )
            return True
        except Exception as exc:
            LOGGER.error("Notification failed for agent %s: %s", getattr(agent, "id", "?"), exc)
            return False

    async def send_test_webhook(self, webhook_url: str) -> str:
        """Post a connection-check payload; return the detected webhook type."""

        payload = connection_test_payload(webhook_url, self._clock())
        await asyncio.to_thread(self._post_json, webhook_url, payload)
        return detect_webhook_type(webhook_url)

    async def send_test_telegram(self, chat_id: str) -> None:
        await asyncio.to_thread(self._send_telegram, chat_id, TELEGRAM_TEST_TEXT)

    async def send_telegram_text(self, chat_id: str | int, text: str) -> None:
        await asyncio.to_thread(self._send_telegram, chat_id, text)

    def _send_telegram(self, chat_id: str | int, text: str) -> None:
        token = self._secrets.get_secret(TELEGRAM_TOKEN_SECRET)
        payload = {
            "chat_id": chat_id,
            "text": text,
            "parse_mode": "Markdown",
        }
        self._post_json(TELEGRAM_API_URL.format(token=token), payload)

    def _post_json(self, url: str, payload: dict[str, Any]) -> None:
        # Only connection failures are retried; a timed-out POST may already
        # have been delivered.
        retrying = Retrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=0.5, max=4),
            retry=retry_if_exception_type(requests.ConnectionError),
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    response = self._post(
                        url,
                        json=payload,
                        headers={"Content-Type": "application/json"},
                        timeout=self.timeout,
                    )
        except requests.RequestException as exc:
            # The message may embed the bot token, so only the host is reported.
            host = urlparse(url).netloc
            raise NotificationError(f"POST to {host} failed: {type(exc).__name__}") from exc
        if response.status_code >= 400:
            raise NotificationError(f"HTTP {response.status_code}")
