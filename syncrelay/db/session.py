from __future__ import annotations

from collections.abc import Generator, Iterator
from contextlib import contextmanager
from functools import lru_cache
from typing import Any

import orjson
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from syncrelay.core.config import get_settings


def _json_dumps(value: Any) -> str:
    # JSONB columns (event and job payloads) share the key-sorted encoding used for fingerprints.
    return orjson.dumps(value, option=orjson.OPT_SORT_KEYS).decode("utf-8")


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    settings = get_settings()
    # application_name shows up in pg_stat_activity.
    return create_engine(
        settings.DATABASE_URL,
        pool_pre_ping=True,
        connect_args={"application_name": settings.OTEL_SERVICE_NAME},
        json_serializer=_json_dumps,
    )


@lru_cache(maxsize=1)
def get_sessionmaker() -> sessionmaker:
    return sessionmaker(bind=get_engine(), autoflush=False, autocommit=False, expire_on_commit=False)


def get_session() -> Generator[Session, None, None]:
    """FastAPI dependency; routes commit explicitly."""
    with session_scope() as session:
        yield session


@contextmanager
def session_scope() -> Iterator[Session]:
    """A session owned by the caller. Uncommitted work is rolled back on error."""
    session = get_sessionmaker()()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
