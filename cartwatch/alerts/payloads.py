"""Webhook and chat message bodies for stock alerts."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from urllib.parse import urlparse

FOOTER_TEXT = "Cartwatch Stock Alert"
DISCORD_IN_STOCK_COLOR = 0x00FF00
DISCORD_OUT_OF_STOCK_COLOR = 0xFF0000
DISCORD_TEST_COLOR = 0x00AAFF

WEBHOOK_DISCORD = "discord"
WEBHOOK_SLACK = "slack"
WEBHOOK_GENERIC = "generic"


def detect_webhook_type(url: str | None) -> str:
    """Classify a webhook URL by its host."""

    if not url:
        return WEBHOOK_GENERIC
    host = (urlparse(url).netloc or "").lower()
    if "discord.com" in host:
        return WEBHOOK_DISCORD
    if "hooks.slack.com" in host:
        return WEBHOOK_SLACK
    return WEBHOOK_GENERIC


def agent_title(agent: Any) -> str:
    return getattr(agent, "alias", None) or getattr(agent, "name", None) or "Product"


def _status_text(in_stock: bool) -> str:
    return "✅ IN STOCK" if in_stock else "❌ OUT OF STOCK"


def _display_time(now: datetime) -> str:
    return now.strftime("%Y-%m-%d %H:%M:%S %Z").strip()


def discord_payload(agent: Any, in_stock: bool, now: datetime) -> dict[str, Any]:
    embed: dict[str, Any] = {
        "title": agent_title(agent),
        "url": agent.url,
        "description": f"Status: **{_status_text(in_stock)}**",
        "color": DISCORD_IN_STOCK_COLOR if in_stock else DISCORD_OUT_OF_STOCK_COLOR,
        "fields": [
            {"name": "URL", "value": agent.url, "inline": False},
            {"name": "Last Checked", "value": _display_time(now), "inline": True},
        ],
        "footer": {"text": FOOTER_TEXT},
        "timestamp": now.isoformat(),
    }
    if agent.thumbnail:
        embed["thumbnail"] = {"url": agent.thumbnail}
    return {"embeds": [embed]}


def slack_payload(agent: Any, in_stock: bool, now: datetime) -> dict[str, Any]:
    title = agent_title(agent)
    status_text = _status_text(in_stock)
    section: dict[str, Any] = {
        "type": "section",
        "text": {
            "type": "mrkdwn",
            "text": f"*Product:* {title}\n*Status:* {status_text}\n*URL:* <{agent.url}|View Product>",
        },
    }
    if agent.thumbnail:
        section["accessory"] = {
            "type": "image",
            "image_url": agent.thumbnail,
            "alt_text": title,
        }
    blocks = [
        {
            "type": "header",
            "text": {"type": "plain_text", "text": f"{status_text}: {title}", "emoji": True},
        },
        section,
        {
            "type": "context",
            "elements": [{"type": "mrkdwn", "text": f"Last checked: {_display_time(now)}"}],
        },
    ]
    return {
        "blocks": blocks,
        "attachments": [{"color": "good" if in_stock else "danger"}],
    }


def generic_payload(agent: Any, in_stock: bool, now: datetime) -> dict[str, Any]:
    title = agent_title(agent)
    return {
        "agent": {
            "id": agent.id,
            "name": title,
            "alias": agent.alias,
            "url": agent.url,
            "thumbnail": agent.thumbnail,
        },
        "status": "IN_STOCK" if in_stock else "OUT_OF_STOCK",
        "isInStock": in_stock,
        "timestamp": now.isoformat(),
        "message": f"{title} is now {_status_text(in_stock)}",
    }


_BUILDERS = {
    WEBHOOK_DISCORD: discord_payload,
    WEBHOOK_SLACK: slack_payload,
    WEBHOOK_GENERIC: generic_payload,
}


def build_webhook_payload(url: str, agent: Any, in_stock: bool, now: datetime) -> dict[str, Any]:
    return _BUILDERS[detect_webhook_type(url)](agent, in_stock, now)


def connection_test_payload(url: str, now: datetime) -> dict[str, Any]:
    """Connection-check message for a freshly configured webhook."""

    kind = detect_webhook_type(url)
    if kind == WEBHOOK_DISCORD:
        return {
            "embeds": [
                {
                    "title": "🧪 Test Notification",
                    "description": "Your Cartwatch webhook is working perfectly!",
                    "color": DISCORD_TEST_COLOR,
                    "fields": [
                        {"name": "Status", "value": "✅ Connected", "inline": True},
                        {"name": "Type", "value": "Discord Webhook", "inline": True},
                    ],
                    "footer": {"text": FOOTER_TEXT},
                    "timestamp": now.isoformat(),
                }
            ]
        }
    if kind == WEBHOOK_SLACK:
        return {
            "blocks": [
                {
                    "type": "header",
                    "text": {"type": "plain_text", "text": "🧪 Test Notification", "emoji": True},
                },
                {
                    "type": "section",
                    "text": {
                        "type": "mrkdwn",
                        "text": "*Your Cartwatch webhook is working perfectly!*\n\n"
                        "✅ Status: Connected\n🔔 Type: Slack Webhook",
                    },
                },
            ],
            "attachments": [{"color": "good"}],
        }
    return {
        "test": True,
        "message": "Your Cartwatch webhook is working perfectly!",
        "status": "connected",
        "type": "generic webhook",
        "timestamp": now.isoformat(),
    }


def telegram_alert_text(agent: Any, in_stock: bool, now: datetime) -> str:
    emoji = "✅" if in_stock else "❌"
    status = "IN STOCK ✅" if in_stock else "OUT OF STOCK ❌"
    return (
        f"{emoji} *{agent_title(agent)}*\n\n"
        f"Status: {status}\n\n"
        f"URL: {agent.url}\n\n"
        f"Time: {_display_time(now)}"
    )


TELEGRAM_TEST_TEXT = "🧪 *Cartwatch Test Notification*\n\nYour Telegram connection is working! ✅"


def telegram_start_text(chat_id: int | str) -> str:
    return (
        f"🎯 Your Telegram User ID:\n\n`{chat_id}`\n\n"
        "Paste this ID into Cartwatch Settings → Notifications → Telegram to connect your account!"
    )
