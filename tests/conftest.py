"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from sqlalchemy import BigInteger, Engine, create_engine, event
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from starling.constants import DEFAULT_TIMEZONE
from starling.database.models import Base
from starling.engine.calendar import set_default_timezone
from starling.services.fanout import Fanout


# ---------------------------------------------------------------------------
# Make JSONB columns work in SQLite for testing.
# SQLite renders JSONB as TEXT and BigInteger as INTEGER (so autoincrement
# works on the primary keys).
# ---------------------------------------------------------------------------
@compiles(PG_JSONB, "sqlite")
def _compile_jsonb_as_text(type_, compiler, **kw):
    return "TEXT"


@compiles(BigInteger, "sqlite")
def _compile_bigint_as_integer(type_, compiler, **kw):
    return "INTEGER"


# Fixed instant used by most tests: 2026-03-10 12:00 UTC (a Tuesday)
NOW = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def _restore_default_timezone():
    """Tests that install a configured zone must not leak it."""
    yield
    set_default_timezone(DEFAULT_TIMEZONE)


@pytest.fixture
def db_engine() -> Engine:
    """In-memory SQLite engine with all Starling tables.

    StaticPool shares one connection across threads (``run_db`` uses a
    worker thread).  pysqlite's own transaction handling is switched off
    so SAVEPOINTs nest inside the real transaction.
    """
    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def db_session(db_engine: Engine):
    """Provide a session that rolls back after each test."""
    with Session(db_engine) as session:
        yield session
        session.rollback()


class RecordingPublisher:
    """Collects published envelopes; optionally fails every call."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.envelopes: list[dict] = []

    def publish(self, envelope: dict) -> None:
        if self.fail:
            raise ConnectionError("publisher down")
        self.envelopes.append(envelope)

    def of_type(self, type_: str, user_id: int | None = None) -> list[dict]:
        return [
            e for e in self.envelopes
            if e["type"] == type_ and (user_id is None or e["userId"] == user_id)
        ]


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def fanout(db_engine, publisher) -> Fanout:
    return Fanout(db_engine, publisher)


@pytest.fixture
def make_user(db_engine):
    """Factory: ``make_user("alice", timezone="Europe/Berlin") -> id``."""
    from starling.services.post_service import provision_user

    def _make(username: str, *, timezone: str | None = None, avatar_ref: str | None = None) -> int:
        return provision_user(
            db_engine, username=username, timezone=timezone, avatar_ref=avatar_ref,
        ).id

    return _make


@pytest.fixture
def alice(make_user) -> int:
    return make_user("alice")


@pytest.fixture
def bob(make_user) -> int:
    return make_user("bob")


@pytest.fixture
def carol(make_user) -> int:
    return make_user("carol")
