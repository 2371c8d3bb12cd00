"""Enumerations persisted on agent, log and user records."""

from __future__ import annotations

from enum import Enum


class AgentStatus(str, Enum):
    ENABLED = "ENABLED"
    DISABLED = "DISABLED"


class CheckResult(str, Enum):
    """Outcome codes written to ``agents.last_result`` and ``check_logs.result``."""

    IN_STOCK = "IN_STOCK"
    OUT_OF_STOCK = "OUT_OF_STOCK"
    BOT_DETECTED = "BOT_DETECTED"
    ERROR = "ERROR"
    CHECKOUT_ATTEMPTED = "CHECKOUT_ATTEMPTED"
    CHECKOUT_FAILED = "CHECKOUT_FAILED"

    @classmethod
    def from_stock(cls, in_stock: bool) -> "CheckResult":
        return cls.IN_STOCK if in_stock else cls.OUT_OF_STOCK


class NotificationChannel(str, Enum):
    WEBHOOK = "webhook"
    TELEGRAM = "telegram"
