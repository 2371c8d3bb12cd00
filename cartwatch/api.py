"""FastAPI surface for the dashboard's settings calls and the Telegram bot."""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

from cartwatch.alerts.notifier import Notifier
from cartwatch.alerts.payloads import telegram_start_text
from cartwatch.crypto import PaymentCard
from cartwatch.errors import (
    ConfigurationError,
    NotFoundError,
    NotificationError,
    PersistenceError,
    SecretResolutionError,
)
from cartwatch.logging_config import get_logger
from cartwatch.settings import DEFAULT_FREQUENCY_MINUTES, AgentDraft, SettingsService
from cartwatch.status import AgentStatus
from cartwatch.storage.models_sql import Agent, CheckLog, PaymentMethod
from cartwatch.storage.repo import as_utc

LOGGER = get_logger(__name__)


class AgentPayload(BaseModel):
    url: str = Field(..., description="Product page to monitor.")
    alias: str | None = None
    frequency: int = Field(default=DEFAULT_FREQUENCY_MINUTES, ge=1, description="Minutes between checks.")
    check_type: str | None = Field(default=None, description="SELECTOR, KEYWORD_PRESENT or KEYWORD_MISSING.")
    selector: str | None = None
    condition: str | None = None
    expected_value: str | None = None
    keywords: str | None = Field(default=None, description="Comma separated keywords.")
    auto_checkout: bool = False
    auto_checkout_card_id: str | None = None
    webhook_url: str | None = Field(default=None, description="Per-agent webhook override.")


class WebhookPayload(BaseModel):
    webhook_url: str | None = None


class TelegramPayload(BaseModel):
    chat_id: str | None = None


class PaymentMethodPayload(BaseModel):
    card_number: str | None = None
    cvc: str | None = None
    expiry: str | None = None
    cardholder_name: str | None = None
    last4: str | None = None
    is_prepaid: bool = False
    balance: float | None = None


def _isoformat(value: Any) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value is not None else None


def serialize_agent(agent: Agent) -> dict[str, Any]:
    """Public view of an agent; the encrypted webhook override is not exposed."""

    return {
        "id": agent.id,
        "url": agent.url,
        "name": agent.name,
        "alias": agent.alias,
        "frequency": agent.frequency,
        "status": agent.status,
        "check_type": agent.check_type,
        "selector": agent.selector,
        "condition": agent.condition,
        "expected_value": agent.expected_value,
        "keywords": agent.keywords,
        "auto_checkout": agent.auto_checkout,
        "auto_checkout_card_id": agent.auto_checkout_card_id,
        "has_webhook_override": bool(agent.webhook_url),
        "last_checked": _isoformat(agent.last_checked),
        "last_result": agent.last_result,
        "last_http_status": agent.last_http_status,
        "last_checkout_attempt": _isoformat(agent.last_checkout_attempt),
        "thumbnail": agent.thumbnail,
    }


def serialize_log(log: CheckLog) -> dict[str, Any]:
    return {
        "ts_utc": _isoformat(log.ts_utc),
        "result": log.result,
        "message": log.message,
        "http_status": log.http_status,
    }


def serialize_payment_method(method: PaymentMethod) -> dict[str, Any]:
    return {
        "id": method.id,
        "last4": method.last4,
        "expiry": method.expiry,
        "cardholder_name": method.cardholder_name,
        "is_prepaid": method.is_prepaid,
        "balance": method.balance,
    }


def create_app(settings: SettingsService, notifier: Notifier) -> FastAPI:
    """Build the API around already-wired services."""

    app = FastAPI(title="Cartwatch")

    @app.exception_handler(ConfigurationError)
    async def _configuration_error(request: Request, exc: ConfigurationError) -> JSONResponse:
        return JSONResponse({"detail": str(exc)}, status_code=400)

    @app.exception_handler(NotFoundError)
    async def _not_found(request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse({"detail": str(exc)}, status_code=404)

    @app.exception_handler(NotificationError)
    async def _notification_error(request: Request, exc: NotificationError) -> JSONResponse:
        return JSONResponse({"detail": f"Failed to send test notification: {exc}"}, status_code=502)

    @app.exception_handler(SecretResolutionError)
    async def _secret_error(request: Request, exc: SecretResolutionError) -> JSONResponse:
        LOGGER.error("Secret resolution failed: %s", exc)
        return JSONResponse({"detail": "Notification channel is not configured"}, status_code=503)

    @app.exception_handler(PersistenceError)
    async def _persistence_error(request: Request, exc: PersistenceError) -> JSONResponse:
        return JSONResponse({"detail": "Storage unavailable"}, status_code=503)

    @app.get("/healthz")
    def healthcheck() -> dict[str, str]:
        """Return application health information."""

        return {"status": "ok"}

    @app.get("/telegram/webhook")
    def telegram_webhook_get() -> PlainTextResponse:
        return PlainTextResponse("Only POST requests accepted", status_code=400)

    @app.post("/telegram/webhook")
    async def telegram_webhook(request: Request) -> PlainTextResponse:
        """Reply to ``/start`` with the sender's chat id.

        Always answers 200 so the bot platform does not redeliver the update.
        """

        try:
            update = await request.json()
            message = update.get("message") if isinstance(update, dict) else None
            if not message or not message.get("text"):
                return PlainTextResponse("OK")

            chat_id = message["chat"]["id"]
            text = message["text"].strip()
            LOGGER.info("Received Telegram message from chat %s: %s", chat_id, text)
            if text == "/start":
                await notifier.send_telegram_text(chat_id, telegram_start_text(chat_id))
                LOGGER.info("Sent Telegram ID to chat %s", chat_id)
        except Exception as exc:
            LOGGER.error("Telegram webhook error: %s", exc)
        return PlainTextResponse("OK")

    @app.get("/users/{user_id}/agents")
    def list_agents(user_id: str) -> dict[str, Any]:
        return {"agents": [serialize_agent(agent) for agent in settings.list_agents(user_id)]}

    @app.post("/users/{user_id}/agents", status_code=201)
    def create_agent(user_id: str, payload: AgentPayload) -> dict[str, Any]:
        agent = settings.create_agent(user_id, AgentDraft(**payload.model_dump()))
        return serialize_agent(agent)

    @app.post("/users/{user_id}/agents/{agent_id}/enable")
    def enable_agent(user_id: str, agent_id: str) -> dict[str, Any]:
        return serialize_agent(settings.set_agent_status(user_id, agent_id, AgentStatus.ENABLED))

    @app.post("/users/{user_id}/agents/{agent_id}/disable")
    def disable_agent(user_id: str, agent_id: str) -> dict[str, Any]:
        return serialize_agent(settings.set_agent_status(user_id, agent_id, AgentStatus.DISABLED))

    @app.delete("/users/{user_id}/agents/{agent_id}")
    def delete_agent(user_id: str, agent_id: str) -> dict[str, Any]:
        settings.delete_agent(user_id, agent_id)
        return {"ok": True}

    @app.get("/users/{user_id}/agents/{agent_id}/logs")
    def agent_logs(
        user_id: str,
        agent_id: str,
        limit: int | None = Query(default=None, ge=1, le=1000),
    ) -> dict[str, Any]:
        logs = settings.agent_logs(user_id, agent_id, limit=limit)
        return {"logs": [serialize_log(log) for log in logs]}

    @app.put("/users/{user_id}/webhook")
    def save_webhook(user_id: str, payload: WebhookPayload) -> dict[str, Any]:
        settings.save_webhook(user_id, payload.webhook_url)
        return {"ok": True, "message": "Webhook URL saved successfully"}

    @app.post("/users/{user_id}/webhook/test")
    async def test_webhook(user_id: str, payload: WebhookPayload) -> dict[str, Any]:
        if not payload.webhook_url:
            raise ConfigurationError("Webhook URL is required")
        kind = await settings.test_webhook(payload.webhook_url)
        return {"ok": True, "message": f"Test notification sent to {kind} webhook", "type": kind}

    @app.put("/users/{user_id}/telegram")
    def save_telegram(user_id: str, payload: TelegramPayload) -> dict[str, Any]:
        settings.save_telegram(user_id, payload.chat_id)
        return {"ok": True, "message": "Telegram connected successfully"}

    @app.post("/users/{user_id}/telegram/test")
    async def test_telegram(user_id: str, payload: TelegramPayload) -> dict[str, Any]:
        await settings.test_telegram(payload.chat_id)
        return {"ok": True, "message": "Test notification sent"}

    @app.delete("/users/{user_id}/telegram")
    def disconnect_telegram(user_id: str) -> dict[str, Any]:
        settings.disconnect_telegram(user_id)
        return {"ok": True, "message": "Telegram disconnected"}

    @app.post("/users/{user_id}/payment-methods", status_code=201)
    def add_payment_method(user_id: str, payload: PaymentMethodPayload) -> dict[str, Any]:
        card = PaymentCard(
            card_number=payload.card_number or "",
            cvc=payload.cvc or "",
            expiry=payload.expiry,
            cardholder_name=payload.cardholder_name,
            last4=payload.last4 or "",
            is_prepaid=payload.is_prepaid,
            balance=payload.balance,
        )
        return serialize_payment_method(settings.add_payment_method(user_id, card))

    @app.put("/users/{user_id}/payment-methods/{method_id}")
    def update_payment_method(user_id: str, method_id: str, payload: PaymentMethodPayload) -> dict[str, Any]:
        method = settings.update_payment_method(
            user_id,
            method_id,
            expiry=payload.expiry,
            cardholder_name=payload.cardholder_name,
            is_prepaid=payload.is_prepaid,
            balance=payload.balance,
            card_number=payload.card_number,
            cvc=payload.cvc,
            last4=payload.last4,
        )
        return serialize_payment_method(method)

    return app
