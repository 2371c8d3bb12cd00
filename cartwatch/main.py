"""Command line entry point: scheduled stock checks and the settings API."""

from __future__ import annotations

import argparse
import asyncio
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

import uvicorn
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from dotenv import load_dotenv
from fastapi import FastAPI
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from cartwatch.alerts.notifier import Notifier
from cartwatch.api import create_app
from cartwatch.checker import StockChecker
from cartwatch.config import DEFAULT_CONFIG_PATH, config_value, load_config
from cartwatch.crypto import FernetCipher
from cartwatch.errors import CartwatchError, PersistenceError
from cartwatch.fetcher import build_default_fetcher
from cartwatch.logging_config import get_logger
from cartwatch.secret_store import build_secrets_provider
from cartwatch.settings import SettingsService
from cartwatch.storage.db import get_engine, init_db_safe, make_session
from cartwatch.storage.repo import AgentRepository

LOGGER = get_logger(__name__)


@dataclass
class Services:
    engine: Engine
    session_factory: sessionmaker[Session]
    repository: AgentRepository
    notifier: Notifier
    checker: StockChecker
    settings: SettingsService


def parse_args(argv: Iterable[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the application."""

    parser = argparse.ArgumentParser(description="Run the Cartwatch stock monitoring service.")
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_PATH,
        help=f"Path to the YAML configuration file (default: {DEFAULT_CONFIG_PATH}).",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single check cycle instead of on a schedule.",
    )
    parser.add_argument(
        "--serve",
        action="store_true",
        help="Start the settings API in a background thread while checks run.",
    )
    parser.add_argument(
        "--init-db",
        action="store_true",
        help="Create missing database tables and exit.",
    )
    parser.add_argument(
        "--check-agent",
        nargs=2,
        metavar=("USER_ID", "AGENT_ID"),
        help="Check one agent immediately and exit.",
    )
    parser.add_argument(
        "--test-webhook",
        metavar="URL",
        help="Send a test notification to a webhook URL and exit.",
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        default=None,
        help="Override checks.max_concurrency for this run.",
    )

    args = parser.parse_args(list(argv) if argv is not None else None)
    if args.concurrency is not None and args.concurrency <= 0:
        parser.error("--concurrency must be a positive integer")
    return args


def _schedule_minutes(config: dict[str, Any]) -> int:
    try:
        minutes = int(config_value(config, "schedule", "minutes"))
    except (TypeError, ValueError):
        return 1
    return minutes if minutes > 0 else 1


def build_services(config: dict[str, Any], *, max_concurrency: int | None = None) -> Services:
    """Wire storage, capabilities and the check pipeline from *config*."""

    engine = get_engine(
        str(config_value(config, "database", "sqlite_path")),
        busy_timeout=config_value(config, "database", "busy_timeout"),
    )
    init_db_safe(engine)
    session_factory = make_session(engine)
    repository = AgentRepository(session_factory)
    cipher = FernetCipher.from_env()
    secrets = build_secrets_provider(ttl_seconds=config_value(config, "secrets", "ttl_seconds"))
    notifier = Notifier(
        repository,
        cipher,
        secrets,
        timeout=float(config_value(config, "notify", "timeout")),
        retry_attempts=int(config_value(config, "notify", "retry_attempts")),
    )
    fetcher = build_default_fetcher(
        http_timeout=float(config_value(config, "fetch", "http_timeout")),
        browser_timeout_ms=int(config_value(config, "fetch", "browser_timeout_ms")),
        settle_ms=int(config_value(config, "fetch", "settle_ms")),
    )
    checker = StockChecker(
        repository,
        fetcher,
        notifier,
        cipher,
        max_concurrency=max_concurrency or int(config_value(config, "checks", "max_concurrency")),
    )
    settings = SettingsService(session_factory, cipher, notifier)
    return Services(
        engine=engine,
        session_factory=session_factory,
        repository=repository,
        notifier=notifier,
        checker=checker,
        settings=settings,
    )


def _start_api_background(app: FastAPI, host: str, port: int) -> tuple[uvicorn.Server, threading.Thread]:
    LOGGER.info("Starting API thread | host=%s port=%s", host, port)
    config = uvicorn.Config(app, host=host, port=port, reload=False, log_config=None)
    server = uvicorn.Server(config)

    def run_api() -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        try:
            loop.run_until_complete(server.serve())
        finally:
            loop.close()

    thread = threading.Thread(target=run_api, name="api-server", daemon=True)
    thread.start()
    LOGGER.info("API thread launched (pid=%s)", os.getpid())
    return server, thread


def _stop_api_background(
    server: uvicorn.Server | None, thread: threading.Thread | None
) -> tuple[uvicorn.Server | None, threading.Thread | None]:
    if server is not None:
        server.should_exit = True
    if thread is not None:
        thread.join(timeout=5)
        LOGGER.info("API thread joined")
    return None, None


async def _run_cycle(checker: StockChecker) -> None:
    try:
        await checker.run_due_checks()
    except PersistenceError:
        LOGGER.exception("Check cycle could not read agents")


async def _async_main(argv: Iterable[str] | None = None) -> None:
    args = parse_args(argv)
    LOGGER.info(
        "Parsed arguments: config=%s once=%s serve=%s init_db=%s check_agent=%s",
        args.config,
        args.once,
        args.serve,
        args.init_db,
        args.check_agent,
    )

    load_dotenv()
    config = load_config(args.config)

    if args.init_db:
        engine = get_engine(
            str(config_value(config, "database", "sqlite_path")),
            busy_timeout=config_value(config, "database", "busy_timeout"),
        )
        init_db_safe(engine)
        LOGGER.info("Database initialized (existing tables preserved)")
        return

    services = build_services(config, max_concurrency=args.concurrency)

    if args.test_webhook:
        kind = await services.settings.test_webhook(args.test_webhook)
        print(f"Test notification sent to {kind} webhook")
        return

    if args.check_agent:
        user_id, agent_id = args.check_agent
        result = await services.checker.check_agent_by_id(user_id, agent_id)
        print(f"{agent_id}: {result.value}")
        return

    api_server: uvicorn.Server | None = None
    api_thread: threading.Thread | None = None
    if args.serve:
        app = create_app(services.settings, services.notifier)
        host = str(config_value(config, "api", "host"))
        port = int(config_value(config, "api", "port"))
        api_server, api_thread = _start_api_background(app, host, port)
        print(f"API running at http://{host}:{port}")

    if args.once:
        try:
            await _run_cycle(services.checker)
        finally:
            api_server, api_thread = _stop_api_background(api_server, api_thread)
        return

    interval_minutes = _schedule_minutes(config)
    scheduler = AsyncIOScheduler()
    # Overlapping cycles would check the same due agents twice.
    scheduler.add_job(
        _run_cycle,
        "interval",
        minutes=interval_minutes,
        args=[services.checker],
        max_instances=1,
        coalesce=True,
        next_run_time=datetime.now(timezone.utc),
    )
    scheduler.start()
    LOGGER.info("Scheduler started with interval=%s minutes", interval_minutes)

    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, SystemExit):
        LOGGER.info("Shutdown signal received; stopping scheduler")
    finally:
        scheduler.shutdown(wait=False)
        api_server, api_thread = _stop_api_background(api_server, api_thread)


def main() -> None:
    try:
        asyncio.run(_async_main())
    except CartwatchError as exc:
        LOGGER.error("Cartwatch failed: %s", exc)
        raise SystemExit(1) from exc
    except KeyboardInterrupt:  # pragma: no cover - interactive safety
        LOGGER.info("Interrupted by user")


if __name__ == "__main__":
    main()
