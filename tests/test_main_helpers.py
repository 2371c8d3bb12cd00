import pytest

pytest.importorskip("uvicorn")

from pathlib import Path

from cryptography.fernet import Fernet

from cartwatch.checker import StockChecker
from cartwatch.config import DEFAULT_CONFIG, _deep_merge
from cartwatch.main import _schedule_minutes, build_services, parse_args


def test_parse_args_defaults() -> None:
    args = parse_args([])
    assert args.once is False
    assert args.serve is False
    assert args.config == Path("cartwatch/config.yml")
    assert args.check_agent is None


def test_parse_args_check_agent_and_config() -> None:
    args = parse_args(["--check-agent", "user-1", "agent-9", "--config", "other.yml", "--once"])
    assert args.check_agent == ["user-1", "agent-9"]
    assert args.config == Path("other.yml")
    assert args.once is True


def test_parse_args_rejects_bad_concurrency() -> None:
    with pytest.raises(SystemExit):
        parse_args(["--concurrency", "0"])


def test_schedule_minutes_guards_bad_values() -> None:
    assert _schedule_minutes({"schedule": {"minutes": 5}}) == 5
    assert _schedule_minutes({"schedule": {"minutes": 0}}) == 1
    assert _schedule_minutes({"schedule": {"minutes": "soon"}}) == 1
    assert _schedule_minutes({}) == 1


def test_build_services_wires_checker(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("CARTWATCH_ENCRYPTION_KEY", Fernet.generate_key().decode())
    config = _deep_merge(DEFAULT_CONFIG, {"database": {"sqlite_path": str(tmp_path / "main.sqlite")}})

    services = build_services(config, max_concurrency=3)

    try:
        assert isinstance(services.checker, StockChecker)
        assert services.checker.max_concurrency == 3
        assert services.repository.list_enabled_agents() == []
    finally:
        services.engine.dispose()
