from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from cartwatch.errors import PersistenceError
from cartwatch.status import AgentStatus, CheckResult, NotificationChannel
from cartwatch.storage import repo
from cartwatch.storage.db import get_engine, init_db_safe, make_session
from cartwatch.storage.models_sql import Agent, CheckLog, User


@pytest.fixture()
def session_factory(tmp_path):
    engine = get_engine(str(tmp_path / "repo.sqlite"))
    init_db_safe(engine)
    try:
        yield make_session(engine)
    finally:
        engine.dispose()


def _seed_agent(session_factory, **overrides) -> Agent:
    fields = {
        "user_id": "user-1",
        "url": "https://shop.example.com/p/1",
        "name": "shop.example.com",
        "alias": "Widget",
    }
    fields.update(overrides)
    with session_factory() as session:
        agent = repo.insert_agent(session, Agent(**fields))
        session.commit()
        return agent


def test_insert_agent_creates_owner(session_factory) -> None:
    agent = _seed_agent(session_factory)
    with session_factory() as session:
        user = session.get(User, "user-1")
        assert user is not None
        assert user.notification_type == NotificationChannel.WEBHOOK.value
        stored = repo.get_agent(session, "user-1", agent.id)
        assert stored is not None
        assert stored.status == AgentStatus.ENABLED.value
        assert stored.frequency == 5


def test_get_agent_checks_ownership(session_factory) -> None:
    agent = _seed_agent(session_factory)
    with session_factory() as session:
        assert repo.get_agent(session, "someone-else", agent.id) is None


def test_list_enabled_agents_spans_users(session_factory) -> None:
    first = _seed_agent(session_factory)
    second = _seed_agent(session_factory, user_id="user-2")
    disabled = _seed_agent(session_factory, status=AgentStatus.DISABLED.value)

    repository = repo.AgentRepository(session_factory)
    ids = {agent.id for agent in repository.list_enabled_agents()}
    assert ids == {first.id, second.id}
    assert disabled.id not in ids


def test_record_check_updates_agent_and_appends_one_log(session_factory) -> None:
    agent = _seed_agent(session_factory)
    repository = repo.AgentRepository(session_factory)
    now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    repository.record_check(
        "user-1",
        agent.id,
        repo.CheckUpdate(
            last_checked=now,
            last_result=CheckResult.IN_STOCK.value,
            last_http_status=200,
            thumbnail="https://cdn.example.com/a.jpg",
        ),
        repo.LogEntry(ts_utc=now, result=CheckResult.IN_STOCK.value, message="Found keyword", http_status=200),
    )

    stored = repository.get_agent("user-1", agent.id)
    assert stored.last_result == CheckResult.IN_STOCK.value
    assert stored.last_http_status == 200
    assert repo.as_utc(stored.last_checked) == now
    assert stored.thumbnail == "https://cdn.example.com/a.jpg"
    with session_factory() as session:
        logs = repo.list_logs(session, agent.id)
    assert [(log.result, log.message, log.http_status) for log in logs] == [
        ("IN_STOCK", "Found keyword", 200)
    ]


def test_thumbnail_is_written_once(session_factory) -> None:
    agent = _seed_agent(session_factory, thumbnail="https://cdn.example.com/first.jpg")
    repository = repo.AgentRepository(session_factory)
    now = datetime.now(timezone.utc)
    repository.record_check(
        "user-1",
        agent.id,
        repo.CheckUpdate(
            last_checked=now,
            last_result="OUT_OF_STOCK",
            last_http_status=200,
            thumbnail="https://cdn.example.com/second.jpg",
        ),
        repo.LogEntry(ts_utc=now, result="OUT_OF_STOCK", message="x"),
    )
    assert repository.get_agent("user-1", agent.id).thumbnail == "https://cdn.example.com/first.jpg"


def test_record_check_for_unknown_agent_raises(session_factory) -> None:
    repository = repo.AgentRepository(session_factory)
    now = datetime.now(timezone.utc)
    with pytest.raises(PersistenceError):
        repository.record_check(
            "user-1",
            "missing",
            repo.CheckUpdate(last_checked=now, last_result="ERROR", last_http_status=0),
            repo.LogEntry(ts_utc=now, result="ERROR", message="boom"),
        )
    with session_factory() as session:
        assert session.execute(select(CheckLog)).first() is None


def test_list_logs_orders_and_limits(session_factory) -> None:
    agent = _seed_agent(session_factory)
    start = datetime(2024, 1, 1, tzinfo=timezone.utc)
    with session_factory() as session:
        for offset in (2, 0, 1):
            repo.append_log(
                session,
                agent.id,
                repo.LogEntry(ts_utc=start + timedelta(minutes=offset), result="OUT_OF_STOCK", message=str(offset)),
            )
        session.commit()
        assert [log.message for log in repo.list_logs(session, agent.id)] == ["0", "1", "2"]
        assert len(repo.list_logs(session, agent.id, limit=2)) == 2


def test_delete_agent_removes_logs(session_factory) -> None:
    agent = _seed_agent(session_factory)
    with session_factory() as session:
        repo.append_log(session, agent.id, repo.LogEntry(ts_utc=datetime.now(timezone.utc), result="ERROR", message="x"))
        session.commit()
        assert repo.delete_agent(session, "user-1", agent.id) is True
        session.commit()
        assert repo.list_logs(session, agent.id) == []
        assert repo.delete_agent(session, "user-1", agent.id) is False


def test_notification_preference_defaults(session_factory) -> None:
    _seed_agent(session_factory)
    repository = repo.AgentRepository(session_factory)
    preference = repository.get_notification_preference("user-1")
    assert preference == repo.NotificationPreference(
        channel=NotificationChannel.WEBHOOK.value,
        webhook_ciphertext=None,
        telegram_user_id=None,
    )
    assert repository.get_notification_preference("nobody") is None


def test_as_utc_attaches_timezone() -> None:
    naive = datetime(2024, 1, 1, 8, 30)
    assert repo.as_utc(naive).tzinfo is timezone.utc
    assert repo.as_utc(None) is None
