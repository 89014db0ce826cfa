from __future__ import annotations

import os
import uuid
from contextlib import suppress
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx
import pytest
from alembic.config import Config
from sqlalchemy import create_engine, text
from sqlalchemy.engine.url import URL, make_url
from sqlalchemy.orm import Session

from alembic import command

TEST_SECRETS = {
    "CRM_WEBHOOK_SECRET": "crm-test-secret",
    "TELEPHONY_WEBHOOK_BASIC_USER": "telephony",
    "TELEPHONY_WEBHOOK_BASIC_PASS": "telephony-test-pass",
    "MESSAGING_WEBHOOK_SECRET": "messaging-test-secret",
    "BROADCAST_WEBHOOK_SECRET": "broadcast-test-secret",
    "ADMIN_SECRET": "admin-test-secret",
}

_TABLES = (
    "sync_log",
    "bg_jobs",
    "quarantine_entries",
    "identity_mappings",
    "optout_registry",
    "webhook_events",
)


def _make_admin_url(url: URL) -> URL:
    # "postgres" is present in the official image and works for admin tasks.
    return url.set(database="postgres")


def _make_test_db_name() -> str:
    return f"syncrelay_test_{uuid.uuid4().hex}"


@pytest.fixture(scope="session", autouse=True)
def _test_database() -> None:
    # Default points at the dev DB, but we always create an isolated database for tests.
    if "DATABASE_URL" in os.environ:
        base_url = os.environ["DATABASE_URL"]
    else:
        # Load repo-root `.env` (via Settings) so local dev can move Postgres off :5432.
        from syncrelay.core.config import get_settings

        base_url = get_settings().DATABASE_URL
    url = make_url(base_url)

    if url.host not in {"localhost", "127.0.0.1", None}:
        raise RuntimeError(
            "Refusing to run tests against a non-local DATABASE_URL host. "
            "Set DATABASE_URL to a local/dev Postgres instance."
        )

    db_name = _make_test_db_name()
    admin_engine = create_engine(
        _make_admin_url(url), isolation_level="AUTOCOMMIT", pool_pre_ping=True
    )

    with admin_engine.connect() as conn:
        conn.execute(text(f'CREATE DATABASE "{db_name}"'))

    test_url = url.set(database=db_name).render_as_string(hide_password=False)
    os.environ["DATABASE_URL"] = test_url
    os.environ.setdefault("APP_ENV", "test")
    for key, value in TEST_SECRETS.items():
        os.environ.setdefault(key, value)

    # Clear cached settings/engines so imports inside the test session use the test DB.
    from syncrelay.core.config import get_settings
    from syncrelay.db.session import get_engine, get_sessionmaker

    get_settings.cache_clear()
    get_engine.cache_clear()
    get_sessionmaker.cache_clear()

    alembic_ini = Path(__file__).resolve().parents[1] / "alembic.ini"
    cfg = Config(str(alembic_ini))
    command.upgrade(cfg, "head")

    yield

    # Ensure connection pools to the test DB are closed before dropping.
    with suppress(Exception):
        get_engine().dispose()
    get_engine.cache_clear()
    get_sessionmaker.cache_clear()
    get_settings.cache_clear()

    with admin_engine.connect() as conn:
        conn.execute(
            text(
                """
                SELECT pg_terminate_backend(pid)
                FROM pg_stat_activity
                WHERE datname = :db_name AND pid <> pg_backend_pid();
                """
            ),
            {"db_name": db_name},
        )
        conn.execute(text(f'DROP DATABASE IF EXISTS "{db_name}"'))

    admin_engine.dispose()


@pytest.fixture()
def db_session() -> Session:
    from syncrelay.db.session import get_sessionmaker

    SessionLocal = get_sessionmaker()
    session = SessionLocal()
    # The worker claims jobs globally; every test starts from empty tables.
    session.execute(text(f"TRUNCATE {', '.join(_TABLES)} CASCADE"))
    session.commit()
    try:
        yield session
    finally:
        session.close()


@dataclass
class FakeSystem:
    """In-process stand-in for one external system, recording every call."""

    service: str
    records: dict[tuple[str, str], dict[str, Any]] = field(default_factory=dict)
    calls: list[tuple[Any, ...]] = field(default_factory=list)
    fail_with: Exception | None = None
    _next_id: int = 1000

    def _record(self, name: str, *args: Any) -> None:
        self.calls.append((name, *args))
        if self.fail_with is not None:
            raise self.fail_with

    def names(self) -> list[str]:
        return [c[0] for c in self.calls]

    def calls_named(self, name: str) -> list[tuple[Any, ...]]:
        return [c for c in self.calls if c[0] == name]

    def read(self, kind: str, record_id: str) -> dict[str, Any] | None:
        self._record("read", kind, record_id)
        rec = self.records.get((kind, str(record_id)))
        return dict(rec) if rec is not None else None

    def search(self, kind: str, *, phone: str | None = None, email: str | None = None) -> dict[str, Any] | None:
        self._record("search", kind, phone, email)
        for (rec_kind, _), rec in self.records.items():
            if rec_kind != kind:
                continue
            if phone and rec.get("phone") == phone:
                return dict(rec)
            if email and rec.get("email") == email:
                return dict(rec)
        return None

    def upsert(self, kind: str, record: dict[str, Any]) -> dict[str, Any]:
        self._record("upsert", kind, record)
        record_id = record.get("id")
        if not record_id:
            record_id = f"{self.service}-{self._next_id}"
            self._next_id += 1
        saved = {**record, "id": str(record_id)}
        self.records[(kind, str(record_id))] = saved
        return dict(saved)

    def add_tags(self, contact_id: str, tags: list[str]) -> None:
        self._record("add_tags", contact_id, list(tags))

    def add_note(self, contact_id: str, body: str) -> None:
        self._record("add_note", contact_id, body)

    def add_to_list(self, list_name: str, contact_id: str) -> None:
        self._record("add_to_list", list_name, contact_id)

    def send(self, message: dict[str, Any]) -> str:
        self._record("send", message)
        return f"msg-{len(self.calls_named('send'))}"


@pytest.fixture()
def fake_clients():
    from syncrelay.clients import ExternalClients

    return ExternalClients(
        crm=FakeSystem("crm"),
        telephony=FakeSystem("telephony"),
        messaging=FakeSystem("messaging"),
    )


@pytest.fixture()
def alert_requests() -> list[httpx.Request]:
    return []


@pytest.fixture()
def runtime(fake_clients, alert_requests):
    from syncrelay.core.config import get_settings
    from syncrelay.services.resilience import CircuitBreakerRegistry
    from syncrelay.sync.router import build_dispatch_table
    from syncrelay.worker.runtime import WorkerRuntime

    def handler(request: httpx.Request) -> httpx.Response:
        alert_requests.append(request)
        return httpx.Response(204)

    http = httpx.Client(transport=httpx.MockTransport(handler))
    rt = WorkerRuntime(
        settings=get_settings(),
        clients=fake_clients,
        dispatch_table=build_dispatch_table(),
        breakers=CircuitBreakerRegistry(),
        http=http,
    )
    try:
        yield rt
    finally:
        rt.close()
