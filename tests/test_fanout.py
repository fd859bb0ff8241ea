"""
tests/test_fanout.py — Outbox, Publishers & Realtime Hub Tests
===============================================================
Fan-out is after commit and best-effort: a failing publisher never
breaks the mutation, and the relay sweep delivers what was missed.
"""

from __future__ import annotations

import asyncio
import json
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

from conftest import NOW, RecordingPublisher
from starling.config import StarlingConfig
from starling.database.engine import transaction
from starling.database.models import OutboxMessage
from starling.engine.calendar import utcnow
from starling.engine.events import FanoutType
from starling.engine.realtime import FANOUT_NOTIFY_CHANNEL, FanoutListener, RealtimeHub
from starling.services import friendship_service, post_service
from starling.services.fanout import (
    EnvelopeTooLarge,
    Fanout,
    LocalPublisher,
    PgNotifyPublisher,
    enqueue,
    pending_outbox,
    purge_outbox,
    relay_pending,
)
from starling.services.maintenance import MaintenanceLoop


def _outbox(engine) -> list[OutboxMessage]:
    with Session(engine) as s:
        return list(s.scalars(select(OutboxMessage).order_by(OutboxMessage.id)).all())


# ===========================================================================
# Outbox staging
# ===========================================================================
class TestEnqueue:
    def test_rows_visible_to_caller(self, db_engine, alice):
        with transaction(db_engine) as session:
            enqueue(session, user_id=alice, type=FanoutType.STREAK_CHANGED, payload={"a": 1})
            messages = pending_outbox(session)
        assert len(messages) == 1
        assert messages[0].id is not None
        assert messages[0].to_envelope() == {
            "type": "streak-changed", "userId": alice, "payload": {"a": 1},
        }

    def test_unknown_type_rejected(self, db_engine, alice):
        with pytest.raises(ValueError):
            with transaction(db_engine) as session:
                enqueue(session, user_id=alice, type="post-liked", payload={})

    def test_rolled_back_mutation_leaves_nothing(self, db_engine, alice):
        with pytest.raises(RuntimeError):
            with transaction(db_engine) as session:
                enqueue(session, user_id=alice, type=FanoutType.QUEST_PROGRESS, payload={})
                session.flush()
                raise RuntimeError("boom")
        assert _outbox(db_engine) == []


# ===========================================================================
# Delivery
# ===========================================================================
class TestFanoutDelivery:
    def test_publish_marks_delivered(self, db_engine, fanout, publisher, alice, bob):
        friendship_service.send_request(db_engine, fanout, sender_id=alice, receiver_id=bob)
        assert len(publisher.envelopes) == 2
        assert all(row.delivered_at is not None for row in _outbox(db_engine))

    def test_failing_publisher_does_not_break_mutation(self, db_engine, alice, bob):
        broken = Fanout(db_engine, RecordingPublisher(fail=True))
        row = friendship_service.send_request(db_engine, broken, sender_id=alice, receiver_id=bob)
        assert row.id is not None
        assert all(r.delivered_at is None for r in _outbox(db_engine))

    def test_relay_delivers_missed_rows(self, db_engine, alice, bob):
        friendship_service.send_request(
            db_engine, Fanout(db_engine, RecordingPublisher(fail=True)),
            sender_id=alice, receiver_id=bob,
        )
        later = RecordingPublisher()
        report = relay_pending(db_engine, later)

        assert report == {"checked": 2, "delivered": 2, "dropped": 0}
        assert {e["userId"] for e in later.envelopes} == {alice, bob}
        rows = _outbox(db_engine)
        assert all(r.delivered_at is not None for r in rows)
        assert all(r.attempts == 1 for r in rows)
        # Nothing left for the next sweep
        assert relay_pending(db_engine, later)["checked"] == 0

    def test_relay_counts_attempts_on_failure(self, db_engine, alice):
        post_service.create_post(db_engine, author_id=alice, self_rating=3, text="x", now=NOW)
        relay_pending(db_engine, RecordingPublisher(fail=True))
        relay_pending(db_engine, RecordingPublisher(fail=True))
        assert [r.attempts for r in _outbox(db_engine)] == [2]

    def test_relay_drops_row_after_max_attempts(self, db_engine, alice):
        post_service.create_post(db_engine, author_id=alice, self_rating=3, text="x", now=NOW)
        down = RecordingPublisher(fail=True)
        reports = [relay_pending(db_engine, down, max_attempts=3) for _ in range(5)]

        assert [r["dropped"] for r in reports] == [0, 0, 1, 0, 0]
        assert [r["checked"] for r in reports] == [1, 1, 1, 0, 0]
        (row,) = _outbox(db_engine)
        assert row.attempts == 3
        assert row.dropped_at is not None
        assert row.delivered_at is None

    def test_dropped_row_not_resent_when_publisher_recovers(self, db_engine, alice):
        post_service.create_post(db_engine, author_id=alice, self_rating=3, text="x", now=NOW)
        relay_pending(db_engine, RecordingPublisher(fail=True), max_attempts=1)
        healthy = RecordingPublisher()
        assert relay_pending(db_engine, healthy)["checked"] == 0
        assert healthy.envelopes == []

    def test_oversized_envelope_dropped_on_first_relay(self, db_engine, alice):
        with transaction(db_engine) as session:
            enqueue(
                session, user_id=alice, type=FanoutType.QUEST_PROGRESS,
                payload={"x": "y" * 9000},
            )
        engine = MagicMock()
        report = relay_pending(db_engine, PgNotifyPublisher(engine))

        assert report == {"checked": 1, "delivered": 0, "dropped": 1}
        assert [r.attempts for r in _outbox(db_engine)] == [1]
        engine.connect.assert_not_called()

    def test_no_publisher_is_noop(self, db_engine, alice, bob):
        silent = Fanout(db_engine, None)
        friendship_service.send_request(db_engine, silent, sender_id=alice, receiver_id=bob)
        assert silent.relay_pending() == {"checked": 0, "delivered": 0, "dropped": 0}
        assert len(_outbox(db_engine)) == 2


class TestPublishers:
    def test_local_publisher_hands_to_hub(self):
        hub = MagicMock(spec=RealtimeHub)
        LocalPublisher(hub).publish({"type": "quest-progress", "userId": 1, "payload": {}})
        hub.deliver.assert_called_once()

    def test_notify_publisher_uses_bound_params(self):
        engine = MagicMock()
        conn = engine.connect.return_value.__enter__.return_value
        envelope = {"type": "streak-changed", "userId": 3, "payload": {"currentStreak": 2}}

        PgNotifyPublisher(engine).publish(envelope)

        stmt, params = conn.execute.call_args.args
        assert "pg_notify" in str(stmt)
        assert params["channel"] == FANOUT_NOTIFY_CHANNEL
        assert json.loads(params["payload"]) == envelope
        conn.commit.assert_called_once()

    def test_notify_publisher_rejects_oversized(self):
        engine = MagicMock()
        with pytest.raises(EnvelopeTooLarge):
            PgNotifyPublisher(engine).publish(
                {"type": "quest-progress", "userId": 1, "payload": {"x": "y" * 9000}},
            )
        engine.connect.assert_not_called()


class TestOutboxPurge:
    def test_settled_rows_removed_after_retention(self, db_engine, fanout, alice, bob):
        friendship_service.send_request(db_engine, fanout, sender_id=alice, receiver_id=bob)
        later = utcnow() + timedelta(days=2)

        assert purge_outbox(db_engine, timedelta(hours=24), now=later) == 2
        assert _outbox(db_engine) == []

    def test_recent_rows_kept(self, db_engine, fanout, alice, bob):
        friendship_service.send_request(db_engine, fanout, sender_id=alice, receiver_id=bob)
        assert purge_outbox(db_engine, timedelta(hours=24)) == 0
        assert len(_outbox(db_engine)) == 2

    def test_pending_rows_never_purged(self, db_engine, alice, bob):
        friendship_service.send_request(
            db_engine, Fanout(db_engine, RecordingPublisher(fail=True)),
            sender_id=alice, receiver_id=bob,
        )
        later = utcnow() + timedelta(days=30)
        assert purge_outbox(db_engine, timedelta(hours=1), now=later) == 0
        assert len(_outbox(db_engine)) == 2

    def test_dropped_rows_purged(self, db_engine, alice):
        post_service.create_post(db_engine, author_id=alice, self_rating=3, text="x", now=NOW)
        relay_pending(db_engine, RecordingPublisher(fail=True), max_attempts=1)
        later = utcnow() + timedelta(days=2)
        assert purge_outbox(db_engine, timedelta(hours=24), now=later) == 1


# ===========================================================================
# Realtime hub
# ===========================================================================
class TestRealtimeHub:
    def test_delivers_only_to_recipient(self):
        hub = RealtimeHub()
        got_1, got_2 = [], []
        hub.subscribe(1, got_1.append)
        hub.subscribe(2, got_2.append)

        assert hub.deliver({"type": "quest-progress", "userId": 1, "payload": {}}) == 1
        assert len(got_1) == 1
        assert got_2 == []

    def test_unsubscribe(self):
        hub = RealtimeHub()
        unsubscribe = hub.subscribe(1, lambda e: None)
        assert hub.subscriber_count(1) == 1
        unsubscribe()
        assert hub.subscriber_count() == 0

    def test_failing_subscriber_is_dropped(self):
        hub = RealtimeHub()
        received = []

        def _boom(envelope):
            raise RuntimeError("client gone")

        hub.subscribe(1, _boom)
        hub.subscribe(1, received.append)
        assert hub.deliver({"type": "streak-changed", "userId": 1, "payload": {}}) == 1
        assert len(received) == 1

    def test_coroutine_subscriber_scheduled_on_loop(self):
        hub = RealtimeHub()
        received = []

        async def _consume(envelope):
            received.append(envelope)

        async def _run():
            hub.bind_loop(asyncio.get_running_loop())
            hub.subscribe(5, _consume)
            await asyncio.to_thread(
                hub.deliver, {"type": "quest-progress", "userId": 5, "payload": {}},
            )
            await asyncio.sleep(0.05)

        asyncio.run(_run())
        assert len(received) == 1


class TestFanoutListener:
    @pytest.fixture
    def received(self):
        return []

    @pytest.fixture
    def listener(self, received):
        hub = RealtimeHub()
        hub.subscribe(9, received.append)
        return FanoutListener(MagicMock(), hub)

    def test_valid_payload_relayed(self, listener, received):
        raw = json.dumps({"type": "friendship-changed", "userId": 9, "payload": {}})
        assert listener.handle_payload(raw) == 1
        assert received[0]["type"] == "friendship-changed"

    def test_invalid_json_ignored(self, listener, received):
        assert listener.handle_payload("not-json{") == 0
        assert received == []

    def test_missing_type_ignored(self, listener):
        assert listener.handle_payload(json.dumps({"userId": 9})) == 0

    def test_not_healthy_before_start(self, listener):
        assert not listener.healthy
        assert not listener.failed


# ===========================================================================
# Maintenance loop
# ===========================================================================
class TestMaintenanceLoop:
    def test_relay_once_uses_fanout(self, db_engine, alice, bob):
        friendship_service.send_request(
            db_engine, Fanout(db_engine, RecordingPublisher(fail=True)),
            sender_id=alice, receiver_id=bob,
        )
        recorder = RecordingPublisher()
        loop = MaintenanceLoop(db_engine, Fanout(db_engine, recorder), StarlingConfig())

        report = asyncio.run(loop.relay_once())
        assert report["delivered"] == 2
        assert len(recorder.envelopes) == 2

    def test_reconcile_once(self, db_engine, fanout):
        loop = MaintenanceLoop(db_engine, fanout, StarlingConfig())
        report = asyncio.run(loop.reconcile_once())
        assert report["checked"] == 0

    def test_purge_once(self, db_engine, fanout, alice, bob):
        friendship_service.send_request(db_engine, fanout, sender_id=alice, receiver_id=bob)
        loop = MaintenanceLoop(db_engine, fanout, StarlingConfig())
        # Freshly delivered rows are inside the retention window
        assert asyncio.run(loop.purge_once()) == 0
        assert len(_outbox(db_engine)) == 2

    def test_start_and_stop(self, db_engine, fanout):
        async def _run():
            loop = MaintenanceLoop(db_engine, fanout, StarlingConfig())
            loop.start(asyncio.get_running_loop())
            assert {t.get_name() for t in loop._tasks} == {
                "outbox-relay", "rating-reconcile", "outbox-purge",
            }
            loop.stop()
            assert loop._tasks == []

        asyncio.run(_run())
