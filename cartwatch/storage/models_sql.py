"""SQLAlchemy ORM models for application storage."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from cartwatch.status import AgentStatus, NotificationChannel
from cartwatch.strategies import CheckType


def _new_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Declarative base class for ORM models."""


class User(Base):
    """Account-level notification preference."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    notification_type: Mapped[str] = mapped_column(
        String, nullable=False, default=NotificationChannel.WEBHOOK.value
    )
    # Ciphertext; never stored in the clear.
    notification_webhook: Mapped[str | None] = mapped_column(Text, nullable=True)
    telegram_user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    telegram_connected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class Agent(Base):
    """One monitored product URL owned by one user."""

    __tablename__ = "agents"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    alias: Mapped[str | None] = mapped_column(String, nullable=True)
    frequency: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    status: Mapped[str] = mapped_column(String, nullable=False, default=AgentStatus.ENABLED.value)

    check_type: Mapped[str] = mapped_column(String, nullable=False, default=CheckType.KEYWORD_MISSING.value)
    selector: Mapped[str | None] = mapped_column(Text, nullable=True)
    condition: Mapped[str | None] = mapped_column(String, nullable=True)
    expected_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    keywords: Mapped[str | None] = mapped_column(Text, nullable=True)

    auto_checkout: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    auto_checkout_card_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Per-agent webhook override (ciphertext).
    webhook_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    last_checked: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_result: Mapped[str | None] = mapped_column(String, nullable=True)
    last_http_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_checkout_attempt: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    thumbnail: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        Index("ix_agents_status", "status"),
        Index("ix_agents_user", "user_id"),
    )


class CheckLog(Base):
    """Append-only record of one check outcome."""

    __tablename__ = "check_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    agent_id: Mapped[str] = mapped_column(String, ForeignKey("agents.id", ondelete="CASCADE"), nullable=False)
    ts_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    result: Mapped[str] = mapped_column(String, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False, default="")
    http_status: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index("ix_check_logs_agent_ts", "agent_id", "ts_utc"),
    )


class PaymentMethod(Base):
    """Stored card for the auto-checkout hand-off; sensitive fields are ciphertext."""

    __tablename__ = "payment_methods"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), nullable=False)
    encrypted_number: Mapped[str] = mapped_column(Text, nullable=False)
    encrypted_cvc: Mapped[str] = mapped_column(Text, nullable=False)
    last4: Mapped[str] = mapped_column(String, nullable=False)
    expiry: Mapped[str | None] = mapped_column(String, nullable=True)
    cardholder_name: Mapped[str | None] = mapped_column(String, nullable=True)
    is_prepaid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    balance: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
