from __future__ import annotations

import pytest

pytest.importorskip("fastapi")

from cryptography.fernet import Fernet
from fastapi.testclient import TestClient

from cartwatch.api import create_app
from cartwatch.crypto import FernetCipher
from cartwatch.errors import NotificationError
from cartwatch.settings import SettingsService
from cartwatch.storage.db import get_engine, init_db_safe, make_session


class FakeNotifier:
    def __init__(self) -> None:
        self.messages: list[tuple[object, str]] = []
        self.fail_webhook = False

    async def send_telegram_text(self, chat_id, text: str) -> None:
        self.messages.append((chat_id, text))

    async def send_test_webhook(self, webhook_url: str) -> str:
        if self.fail_webhook:
            raise NotificationError("HTTP 404")
        return "discord"

    async def send_test_telegram(self, chat_id: str) -> None:
        self.messages.append((chat_id, "test"))


@pytest.fixture()
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture()
def client(tmp_path, notifier):
    engine = get_engine(str(tmp_path / "api.sqlite"))
    init_db_safe(engine)
    settings = SettingsService(make_session(engine), FernetCipher(Fernet.generate_key()), notifier)
    try:
        yield TestClient(create_app(settings, notifier))
    finally:
        engine.dispose()


def test_healthz(client) -> None:
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_telegram_start_replies_with_chat_id(client, notifier) -> None:
    update = {"message": {"chat": {"id": 5150}, "text": " /start "}}
    response = client.post("/telegram/webhook", json=update)

    assert response.status_code == 200
    assert response.text == "OK"
    chat_id, text = notifier.messages[0]
    assert chat_id == 5150
    assert "`5150`" in text


def test_telegram_webhook_always_acknowledges(client, notifier) -> None:
    assert client.post("/telegram/webhook", json={"update_id": 1}).status_code == 200
    assert client.post("/telegram/webhook", json={"message": {"chat": {"id": 1}, "text": "hi"}}).status_code == 200
    assert client.post("/telegram/webhook", content=b"not json").status_code == 200
    assert notifier.messages == []


def test_telegram_webhook_rejects_get(client) -> None:
    assert client.get("/telegram/webhook").status_code == 400


def test_agent_lifecycle(client) -> None:
    created = client.post(
        "/users/u1/agents",
        json={"url": "https://shop.example.com/p/1", "check_type": "KEYWORD_PRESENT", "keywords": "add to cart"},
    )
    assert created.status_code == 201
    agent = created.json()
    assert agent["alias"] == "shop.example.com"
    assert agent["has_webhook_override"] is False
    assert agent["last_result"] is None

    listed = client.get("/users/u1/agents").json()["agents"]
    assert [item["id"] for item in listed] == [agent["id"]]

    disabled = client.post(f"/users/u1/agents/{agent['id']}/disable")
    assert disabled.json()["status"] == "DISABLED"

    assert client.get(f"/users/u1/agents/{agent['id']}/logs").json() == {"logs": []}
    assert client.delete(f"/users/u1/agents/{agent['id']}").json() == {"ok": True}
    assert client.delete(f"/users/u1/agents/{agent['id']}").status_code == 404


def test_invalid_agent_is_a_bad_request(client) -> None:
    response = client.post("/users/u1/agents", json={"url": "https://shop.example.com", "check_type": "SELECTOR"})
    assert response.status_code == 400
    assert "selector" in response.json()["detail"]


def test_frequency_validation(client) -> None:
    response = client.post("/users/u1/agents", json={"url": "https://shop.example.com", "frequency": 0})
    assert response.status_code == 422


def test_notification_settings_endpoints(client, notifier) -> None:
    assert client.put("/users/u1/webhook", json={"webhook_url": "https://discord.com/api/webhooks/1/x"}).status_code == 200

    tested = client.post("/users/u1/webhook/test", json={"webhook_url": "https://discord.com/api/webhooks/1/x"})
    assert tested.json()["type"] == "discord"

    notifier.fail_webhook = True
    failed = client.post("/users/u1/webhook/test", json={"webhook_url": "https://example.org/hook"})
    assert failed.status_code == 502

    assert client.post("/users/u1/webhook/test", json={}).status_code == 400
    assert client.put("/users/u1/telegram", json={"chat_id": "99"}).status_code == 200
    assert client.post("/users/u1/telegram/test", json={"chat_id": "99"}).status_code == 200
    assert client.delete("/users/u1/telegram").json()["message"] == "Telegram disconnected"
    assert client.put("/users/u1/telegram", json={}).status_code == 400


def test_payment_method_endpoints(client) -> None:
    created = client.post(
        "/users/u1/payment-methods",
        json={"card_number": "4111111111111111", "cvc": "123", "expiry": "12/30"},
    )
    assert created.status_code == 201
    method = created.json()
    assert method["last4"] == "1111"
    assert "card_number" not in method

    updated = client.put(
        f"/users/u1/payment-methods/{method['id']}",
        json={"expiry": "01/31", "is_prepaid": True, "balance": 12.5},
    )
    assert updated.json()["balance"] == 12.5
    assert client.put("/users/u2/payment-methods/" + method["id"], json={}).status_code == 404
