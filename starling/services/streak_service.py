"""
starling.services.streak_service — Streak Bookkeeping
======================================================

The streak row is written only here, and only from inside the
transaction that flipped a quest day to completed.  Because that flip
happens at most once per ``(user, date)``, a day can never be counted
twice.  The per-user row lock taken by :func:`lock_or_create` serialises
two different days completing concurrently for the same user.
"""

from __future__ import annotations

import logging
from datetime import date, datetime

from sqlalchemy import Engine
from sqlalchemy.orm import Session

from starling.database.engine import lock_or_create, transaction
from starling.database.models import Streak, User
from starling.engine.events import EventType, FanoutType
from starling.engine.streak import StreakState, advance_streak
from starling.errors import NotFound
from starling.services.event_store import append_event
from starling.services.fanout import enqueue

logger = logging.getLogger(__name__)


def _state_of(row: Streak | None) -> StreakState:
    if row is None:
        return StreakState()
    return StreakState(
        current=row.current_streak,
        longest=row.longest_streak,
        last_completed=row.last_completed_date,
    )


def on_quest_completed(
    session: Session,
    user_id: int,
    completed_on: date,
    *,
    at: datetime | None = None,
) -> StreakState:
    """Advance *user_id*'s streak for a quest completed on *completed_on*.

    Runs in the caller's transaction.  Appends a ``streak_changed`` event
    and stages a ``streak-changed`` delta when the state actually moved.
    """
    row = lock_or_create(
        session,
        Streak,
        user_id,
        lambda: Streak(
            user_id=user_id,
            current_streak=0,
            longest_streak=0,
            last_completed_date=None,
        ),
    )
    before = _state_of(row)
    after = advance_streak(before, completed_on)
    if after == before:
        return before

    row.current_streak = after.current
    row.longest_streak = after.longest
    row.last_completed_date = after.last_completed

    append_event(
        session,
        user_id=user_id,
        event_type=EventType.STREAK_CHANGED,
        activity_date=completed_on,
        payload={
            "previous": before.current,
            "current": after.current,
            "longest": after.longest,
        },
        at=at,
    )
    enqueue(session, user_id=user_id, type=FanoutType.STREAK_CHANGED, payload=after.to_payload())

    logger.info(
        "Streak user=%s %d → %d (longest %d) on %s",
        user_id, before.current, after.current, after.longest, completed_on,
    )
    return after


def get_streak(engine: Engine, user_id: int) -> StreakState:
    """Stored streak for *user_id*; zeros before the first completion."""
    with transaction(engine) as session:
        if session.get(User, user_id) is None:
            raise NotFound(f"User {user_id} not found")
        return _state_of(session.get(Streak, user_id))
