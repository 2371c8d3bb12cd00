"""Repository helpers for interacting with persistent storage.

Module-level functions operate on a caller-owned :class:`Session`.
:class:`AgentRepository` wraps them in short transactions for the check
pipeline, which calls it from worker threads.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterator

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from cartwatch.errors import PersistenceError
from cartwatch.status import AgentStatus, NotificationChannel

from .models_sql import Agent, CheckLog, PaymentMethod, User


@dataclass(frozen=True)
class CheckUpdate:
    """Fields written to an agent at the end of a check cycle."""

    last_checked: datetime
    last_result: str
    last_http_status: int
    thumbnail: str | None = None
    last_checkout_attempt: datetime | None = None


@dataclass(frozen=True)
class LogEntry:
    ts_utc: datetime
    result: str
    message: str
    http_status: int = 0


@dataclass(frozen=True)
class NotificationPreference:
    channel: str
    webhook_ciphertext: str | None
    telegram_user_id: str | None


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def get_user(session: Session, user_id: str) -> User | None:
    return session.get(User, user_id)


def get_or_create_user(session: Session, user_id: str) -> User:
    user = session.get(User, user_id)
    if user is None:
        user = User(id=user_id, notification_type=NotificationChannel.WEBHOOK.value)
        session.add(user)
        session.flush()
    return user


def insert_agent(session: Session, agent: Agent) -> Agent:
    get_or_create_user(session, agent.user_id)
    session.add(agent)
    session.flush()
    return agent


def get_agent(session: Session, user_id: str, agent_id: str) -> Agent | None:
    agent = session.get(Agent, agent_id)
    if agent is None or agent.user_id != user_id:
        return None
    return agent


def list_enabled_agents(session: Session) -> list[Agent]:
    stmt = select(Agent).where(Agent.status == AgentStatus.ENABLED.value).order_by(Agent.created_at)
    return list(session.execute(stmt).scalars())


def list_agents_for_user(session: Session, user_id: str) -> list[Agent]:
    stmt = select(Agent).where(Agent.user_id == user_id).order_by(Agent.created_at)
    return list(session.execute(stmt).scalars())


def apply_check_update(session: Session, agent: Agent, update: CheckUpdate) -> Agent:
    """Write cycle results onto *agent*; an existing thumbnail is never replaced."""

    agent.last_checked = update.last_checked
    agent.last_result = update.last_result
    agent.last_http_status = update.last_http_status
    if update.thumbnail and not agent.thumbnail:
        agent.thumbnail = update.thumbnail
    if update.last_checkout_attempt is not None:
        agent.last_checkout_attempt = update.last_checkout_attempt
    session.flush()
    return agent


def append_log(session: Session, agent_id: str, entry: LogEntry) -> CheckLog:
    log = CheckLog(
        agent_id=agent_id,
        ts_utc=entry.ts_utc,
        result=entry.result,
        message=entry.message,
        http_status=entry.http_status,
    )
    session.add(log)
    session.flush()
    return log


def list_logs(session: Session, agent_id: str, *, limit: int | None = None) -> list[CheckLog]:
    stmt = select(CheckLog).where(CheckLog.agent_id == agent_id).order_by(CheckLog.ts_utc, CheckLog.id)
    if limit is not None:
        stmt = stmt.limit(limit)
    return list(session.execute(stmt).scalars())


def set_agent_status(session: Session, user_id: str, agent_id: str, status: AgentStatus) -> Agent | None:
    agent = get_agent(session, user_id, agent_id)
    if agent is None:
        return None
    agent.status = status.value
    session.flush()
    return agent


def delete_agent(session: Session, user_id: str, agent_id: str) -> bool:
    agent = get_agent(session, user_id, agent_id)
    if agent is None:
        return False
    session.execute(delete(CheckLog).where(CheckLog.agent_id == agent_id))
    session.delete(agent)
    session.flush()
    return True


def get_payment_method(session: Session, user_id: str, method_id: str) -> PaymentMethod | None:
    method = session.get(PaymentMethod, method_id)
    if method is None or method.user_id != user_id:
        return None
    return method


def notification_preference(user: User) -> NotificationPreference:
    return NotificationPreference(
        channel=user.notification_type or NotificationChannel.WEBHOOK.value,
        webhook_ciphertext=user.notification_webhook,
        telegram_user_id=user.telegram_user_id,
    )


class AgentRepository:
    """Transactional facade used by the check pipeline and notifier."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    @contextmanager
    def _transaction(self, action: str) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise PersistenceError(f"{action} failed: {exc}") from exc
        finally:
            session.close()

    def list_enabled_agents(self) -> list[Agent]:
        with self._transaction("list enabled agents") as session:
            return list_enabled_agents(session)

    def get_agent(self, user_id: str, agent_id: str) -> Agent | None:
        with self._transaction("load agent") as session:
            return get_agent(session, user_id, agent_id)

    def record_check(self, user_id: str, agent_id: str, update: CheckUpdate, entry: LogEntry) -> None:
        """Update one agent and append one log entry in a single transaction."""

        with self._transaction("record check") as session:
            agent = get_agent(session, user_id, agent_id)
            if agent is None:
                raise PersistenceError(f"Agent {agent_id} not found for user {user_id}")
            apply_check_update(session, agent, update)
            append_log(session, agent_id, entry)

    def append_log(self, agent_id: str, entry: LogEntry) -> None:
        with self._transaction("append log") as session:
            append_log(session, agent_id, entry)

    def get_notification_preference(self, user_id: str) -> NotificationPreference | None:
        with self._transaction("load notification preference") as session:
            user = get_user(session, user_id)
            return notification_preference(user) if user is not None else None

    def get_payment_method(self, user_id: str, method_id: str) -> PaymentMethod | None:
        with self._transaction("load payment method") as session:
            return get_payment_method(session, user_id, method_id)
