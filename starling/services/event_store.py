"""
starling.services.event_store — Append-Only Event Log
======================================================

Every mutation appends one row to ``event_log`` inside the transaction
that performs it, so the log and the derived tables (vote summaries,
quest counters, streaks) commit or roll back together.  Rows are never
updated or deleted.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from starling.database.engine import transaction
from starling.database.models import EventLog
from starling.engine.calendar import utcnow

logger = logging.getLogger(__name__)


def append_event(
    session: Session,
    *,
    user_id: int,
    event_type: str,
    subject_id: int | None = None,
    activity_date: date | None = None,
    payload: dict[str, Any] | None = None,
    at: datetime | None = None,
) -> EventLog:
    """Add an event row to *session*; it commits with the caller's txn."""
    event = EventLog(
        user_id=user_id,
        event_type=event_type,
        subject_id=subject_id,
        activity_date=activity_date,
        payload=payload or {},
        created_at=at or utcnow(),
    )
    session.add(event)
    logger.debug(
        "Event appended: type=%s user=%s subject=%s", event_type, user_id, subject_id,
    )
    return event


def list_events(
    engine: Engine,
    *,
    user_id: int | None = None,
    event_type: str | None = None,
    subject_id: int | None = None,
    limit: int = 100,
) -> list[EventLog]:
    """Most recent events first, optionally filtered."""
    query = select(EventLog)
    if user_id is not None:
        query = query.where(EventLog.user_id == user_id)
    if event_type is not None:
        query = query.where(EventLog.event_type == event_type)
    if subject_id is not None:
        query = query.where(EventLog.subject_id == subject_id)
    query = query.order_by(EventLog.created_at.desc(), EventLog.id.desc()).limit(limit)

    with transaction(engine) as session:
        return list(session.scalars(query).all())
