"""
starling.services.fanout — Transactional Outbox & Best-Effort Delivery
=======================================================================

State deltas (``friendship-changed``, ``quest-progress``,
``streak-changed``) are written to ``fanout_outbox`` inside the mutation's
transaction via :func:`enqueue`.  Once that transaction has committed the
caller hands the rows to :meth:`Fanout.publish`, which pushes each
envelope through an :class:`OutboxPublisher` and stamps it delivered.

Delivery never reaches back into the mutation: a publisher failure is
logged, the row stays pending, and :meth:`Fanout.relay_pending` retries
it on later sweeps until the attempt cap dead-letters it.  Settled rows
are deleted by :func:`purge_outbox` once past retention.  Nothing is published for a rolled-back
transaction because nothing was committed to the outbox.

Flow::

    with transaction(engine) as session:
        ... mutate ...
        enqueue(session, user_id=7, type=FanoutType.QUEST_PROGRESS, payload=...)
        messages = pending_outbox(session)
    fanout.publish(messages)              # after commit, best-effort
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Protocol

from sqlalchemy import Engine, delete, or_, select, text, update

from starling.constants import OUTBOX_MAX_ATTEMPTS
from starling.database.engine import transaction
from starling.database.models import OutboxMessage
from starling.engine.calendar import utcnow
from starling.engine.events import FanoutType
from starling.engine.realtime import FANOUT_NOTIFY_CHANNEL, RealtimeHub

logger = logging.getLogger(__name__)

# Session.info key holding the rows enqueued in the current transaction
_OUTBOX_KEY = "starling.outbox"

# PostgreSQL rejects NOTIFY payloads at 8000 bytes
_NOTIFY_MAX_BYTES = 7900


class EnvelopeTooLarge(ValueError):
    """The envelope can never fit the publisher's transport."""


# ---------------------------------------------------------------------------
# Enqueue (inside the mutation's transaction)
# ---------------------------------------------------------------------------
def enqueue(session, *, user_id: int, type: str, payload: dict[str, Any]) -> OutboxMessage:
    """Stage a fan-out envelope for *user_id* in the caller's transaction."""
    if type not in FanoutType.ALL:
        raise ValueError(f"Unknown fan-out type: {type!r}")
    message = OutboxMessage(
        user_id=user_id,
        type=type,
        payload=payload,
        created_at=utcnow(),
        attempts=0,
    )
    session.add(message)
    session.info.setdefault(_OUTBOX_KEY, []).append(message)
    return message


def pending_outbox(session) -> list[OutboxMessage]:
    """Rows enqueued on *session* so far.  Call before the block commits."""
    session.flush()
    return list(session.info.get(_OUTBOX_KEY, []))


# ---------------------------------------------------------------------------
# Publishers
# ---------------------------------------------------------------------------
class OutboxPublisher(Protocol):
    def publish(self, envelope: dict) -> None: ...


class LocalPublisher:
    """Deliver straight into an in-process :class:`RealtimeHub`."""

    def __init__(self, hub: RealtimeHub) -> None:
        self._hub = hub

    def publish(self, envelope: dict) -> None:
        self._hub.deliver(envelope)


class PgNotifyPublisher:
    """``pg_notify`` the envelope so every API process can relay it.

    Each call uses its own short autocommit connection, so publishing
    can't be rolled back together with any caller transaction.
    """

    def __init__(self, engine: Engine, channel: str = FANOUT_NOTIFY_CHANNEL) -> None:
        self._engine = engine
        self._channel = channel

    def publish(self, envelope: dict) -> None:
        raw = json.dumps(envelope, default=str, separators=(",", ":"))
        if len(raw.encode()) > _NOTIFY_MAX_BYTES:
            raise EnvelopeTooLarge(
                f"Fan-out envelope too large for NOTIFY ({len(raw)} chars)"
            )
        with self._engine.connect() as conn:
            conn.execute(
                text("SELECT pg_notify(:channel, :payload)"),
                {"channel": self._channel, "payload": raw},
            )
            conn.commit()


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------
_DELIVERED = "delivered"
_FAILED = "failed"
_REJECTED = "rejected"


class Fanout:
    """Publishes committed outbox rows and marks them delivered.

    A row is retried by :meth:`relay_pending` until it has been attempted
    *max_attempts* times; then it is dead-lettered (``dropped_at`` set)
    and never sent again.  An envelope the publisher can never carry
    (:class:`EnvelopeTooLarge`) is dropped on its first relay attempt.
    """

    def __init__(
        self,
        engine: Engine,
        publisher: OutboxPublisher | None,
        *,
        max_attempts: int = OUTBOX_MAX_ATTEMPTS,
    ) -> None:
        self._engine = engine
        self._publisher = publisher
        self._max_attempts = max_attempts

    @property
    def publisher(self) -> OutboxPublisher | None:
        return self._publisher

    def publish(self, messages: list[OutboxMessage]) -> int:
        """Push *messages* out; returns how many were delivered.

        Never raises.  Failed rows stay pending for :meth:`relay_pending`.
        """
        if not messages or self._publisher is None:
            return 0

        delivered: list[int] = []
        for message in messages:
            if self._send(message.to_envelope()) == _DELIVERED:
                delivered.append(message.id)

        if delivered:
            try:
                self._mark_delivered(delivered)
            except Exception:
                # Already on the wire; a relay sweep may send these again.
                logger.exception("Could not mark %d outbox rows delivered", len(delivered))
        return len(delivered)

    def relay_pending(self, batch_size: int = 100) -> dict:
        """Retry undelivered rows, oldest first.

        Returns ``{"checked": n, "delivered": m, "dropped": k}``.
        """
        if self._publisher is None:
            return {"checked": 0, "delivered": 0, "dropped": 0}

        with transaction(self._engine) as session:
            rows = session.scalars(
                select(OutboxMessage)
                .where(
                    OutboxMessage.delivered_at.is_(None),
                    OutboxMessage.dropped_at.is_(None),
                )
                .order_by(OutboxMessage.id)
                .limit(batch_size)
                .with_for_update(skip_locked=True)
            ).all()

            delivered = dropped = 0
            now = utcnow()
            for row in rows:
                row.attempts += 1
                outcome = self._send(row.to_envelope())
                if outcome == _DELIVERED:
                    row.delivered_at = now
                    delivered += 1
                elif outcome == _REJECTED or row.attempts >= self._max_attempts:
                    row.dropped_at = now
                    dropped += 1
                    logger.warning(
                        "Dropped outbox row %s (type=%s user=%s) after %d attempts",
                        row.id, row.type, row.user_id, row.attempts,
                    )

        if rows:
            logger.info(
                "Outbox relay: %d pending, %d delivered, %d dropped",
                len(rows), delivered, dropped,
            )
        return {"checked": len(rows), "delivered": delivered, "dropped": dropped}

    def _send(self, envelope: dict) -> str:
        try:
            self._publisher.publish(envelope)
            return _DELIVERED
        except EnvelopeTooLarge:
            logger.error(
                "Fan-out envelope rejected: type=%s user=%s is too large",
                envelope.get("type"), envelope.get("userId"),
            )
            return _REJECTED
        except Exception:
            logger.exception(
                "Fan-out delivery failed: type=%s user=%s, left pending",
                envelope.get("type"), envelope.get("userId"),
            )
            return _FAILED

    def _mark_delivered(self, ids: list[int]) -> None:
        with transaction(self._engine) as session:
            session.execute(
                update(OutboxMessage)
                .where(OutboxMessage.id.in_(ids))
                .values(
                    delivered_at=utcnow(),
                    attempts=OutboxMessage.attempts + 1,
                )
            )


def relay_pending(
    engine: Engine,
    publisher: OutboxPublisher,
    batch_size: int = 100,
    *,
    max_attempts: int = OUTBOX_MAX_ATTEMPTS,
) -> dict:
    """Module-level entry point for the periodic relay task."""
    return Fanout(engine, publisher, max_attempts=max_attempts).relay_pending(batch_size)


# ---------------------------------------------------------------------------
# Retention
# ---------------------------------------------------------------------------
def purge_outbox(
    engine: Engine,
    retention: timedelta,
    *,
    now: datetime | None = None,
) -> int:
    """Delete delivered and dropped rows settled more than *retention* ago.

    Pending rows are never purged.  Returns the number of rows removed.
    """
    cutoff = (now or utcnow()) - retention
    with transaction(engine) as session:
        result = session.execute(
            delete(OutboxMessage)
            .where(
                or_(
                    OutboxMessage.delivered_at < cutoff,
                    OutboxMessage.dropped_at < cutoff,
                )
            )
            .execution_options(synchronize_session=False)
        )
    removed = result.rowcount or 0
    if removed:
        logger.info("Outbox purge: removed %d rows settled before %s", removed, cutoff)
    return removed
