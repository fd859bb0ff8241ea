"""
tests/test_database_engine.py — Transactions & Storage Error Translation
==========================================================================
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from sqlalchemy import exc as sa_exc
from sqlalchemy.orm import Session

from starling.database.engine import (
    create_db_engine,
    lock_or_create,
    transaction,
    translate_db_error,
)
from starling.database.models import Streak, User
from starling.errors import Conflict, StorageTimeout, StorageUnavailable


def _orig(pgcode=None):
    orig = MagicMock()
    orig.pgcode = pgcode
    return orig


class TestTranslateDbError:
    @pytest.mark.parametrize("pgcode", ["57014", "55P03"])
    def test_pg_timeouts(self, pgcode):
        exc = sa_exc.OperationalError("SELECT 1", {}, _orig(pgcode))
        assert isinstance(translate_db_error(exc), StorageTimeout)

    def test_pool_timeout(self):
        assert isinstance(translate_db_error(sa_exc.TimeoutError()), StorageTimeout)

    def test_operational_is_unavailable(self):
        exc = sa_exc.OperationalError("SELECT 1", {}, _orig("08006"))
        translated = translate_db_error(exc)
        assert isinstance(translated, StorageUnavailable)
        assert not isinstance(translated, StorageTimeout)

    def test_integrity_error_passes_through(self):
        exc = sa_exc.IntegrityError("INSERT", {}, _orig("23505"))
        assert translate_db_error(exc) is None

    def test_plain_exception_passes_through(self):
        assert translate_db_error(ValueError("x")) is None


class TestTransaction:
    def test_commits_on_success(self, db_engine):
        with transaction(db_engine) as session:
            session.add(User(username="ivy", username_key="ivy", timezone="UTC"))
        with Session(db_engine) as s:
            assert s.query(User).count() == 1

    def test_rolls_back_on_error(self, db_engine):
        with pytest.raises(KeyError):
            with transaction(db_engine) as session:
                session.add(User(username="ivy", username_key="ivy", timezone="UTC"))
                session.flush()
                raise KeyError("boom")
        with Session(db_engine) as s:
            assert s.query(User).count() == 0

    def test_driver_error_translated(self, db_engine):
        with pytest.raises(StorageUnavailable):
            with transaction(db_engine):
                raise sa_exc.OperationalError("SELECT 1", {}, _orig())


class TestLockOrCreate:
    def test_creates_then_reuses(self, db_engine, alice):
        with transaction(db_engine) as session:
            first = lock_or_create(session, Streak, alice, lambda: Streak(user_id=alice))
            first.current_streak = 2
            first.longest_streak = 2

        calls = []

        def _factory():
            calls.append(1)
            return Streak(user_id=alice)

        with transaction(db_engine) as session:
            again = lock_or_create(session, Streak, alice, _factory)
        assert again.current_streak == 2
        assert calls == []

    @pytest.fixture
    def winner(self, db_engine, alice) -> int:
        """A streak row another transaction already committed."""
        with transaction(db_engine) as session:
            row = lock_or_create(session, Streak, alice, lambda: Streak(user_id=alice))
            row.current_streak = 3
            row.longest_streak = 3
        return alice

    def test_lost_insert_race_reuses_winner(self, db_engine, monkeypatch, winner):
        reads = []

        with transaction(db_engine) as session:
            real_get = session.get

            def _get(model, ident, **kw):
                reads.append(kw)
                # First read happened before the winner committed
                return None if len(reads) == 1 else real_get(model, ident, **kw)

            monkeypatch.setattr(session, "get", _get)
            row = lock_or_create(session, Streak, winner, lambda: Streak(user_id=winner))

        assert row.current_streak == 3
        assert reads[1]["populate_existing"] is True
        with Session(db_engine) as s:
            assert s.query(Streak).count() == 1

    def test_vanished_row_is_conflict(self, db_engine, monkeypatch, winner):
        with pytest.raises(Conflict):
            with transaction(db_engine) as session:
                monkeypatch.setattr(session, "get", lambda *a, **kw: None)
                lock_or_create(session, Streak, winner, lambda: Streak(user_id=winner))
        with Session(db_engine) as s:
            assert s.get(Streak, winner).current_streak == 3


class TestCreateEngine:
    def test_requires_database_url(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        with pytest.raises(RuntimeError):
            create_db_engine()
