"""
starling.services.quest_service — Daily Quest Tracker
======================================================

Counts posts and first-time votes per user per quest day and flips the
day to completed the moment both thresholds are met.

**Concurrency:**
``record_*`` run inside the transaction of the post or vote that
triggered them.  The ``daily_progress`` row is locked (or created) first,
so increments for the same ``(user, date)`` queue behind each other.  The
completion flip is a conditional ``UPDATE … WHERE completed = false``;
only the statement that actually changes the row (rowcount 1) emits the
``quest_completed`` event and advances the streak.

Counts never decrease.  Deleting a post or changing a vote does not
un-count anything, and a completed day stays completed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime

from sqlalchemy import Engine, update
from sqlalchemy.orm import Session

from starling.constants import QUEST_MIN_POSTS, QUEST_MIN_VOTES
from starling.database.engine import lock_or_create, transaction
from starling.database.models import DailyProgress, User
from starling.engine.calendar import stamp_action, utcnow
from starling.engine.events import EventType, FanoutType
from starling.engine.quest import QuestProgress, meets_quest
from starling.engine.streak import StreakState
from starling.errors import NotFound
from starling.services import streak_service
from starling.services.event_store import append_event
from starling.services.fanout import enqueue

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class QuestUpdate:
    """Result of one counter increment."""

    progress: QuestProgress
    just_completed: bool = False
    streak: StreakState | None = None   # set only when just_completed


def _progress_of(row: DailyProgress) -> QuestProgress:
    return QuestProgress(
        user_id=row.user_id,
        activity_date=row.activity_date,
        post_count=row.post_count,
        vote_count=row.vote_count,
        completed=row.completed,
    )


def _record(
    session: Session,
    user_id: int,
    activity_date: date,
    *,
    posts: int = 0,
    votes: int = 0,
    at: datetime | None = None,
) -> QuestUpdate:
    at = at or utcnow()
    row = lock_or_create(
        session,
        DailyProgress,
        (user_id, activity_date),
        lambda: DailyProgress(
            user_id=user_id,
            activity_date=activity_date,
            post_count=0,
            vote_count=0,
            completed=False,
        ),
    )
    row.post_count += posts
    row.vote_count += votes
    session.flush()

    just_completed = False
    if not row.completed and meets_quest(row.post_count, row.vote_count):
        result = session.execute(
            update(DailyProgress)
            .where(
                DailyProgress.user_id == user_id,
                DailyProgress.activity_date == activity_date,
                DailyProgress.completed.is_(False),
                DailyProgress.post_count >= QUEST_MIN_POSTS,
                DailyProgress.vote_count >= QUEST_MIN_VOTES,
            )
            .values(completed=True, completed_at=at)
            .execution_options(synchronize_session=False)
        )
        just_completed = result.rowcount == 1
        session.refresh(row)

    progress = _progress_of(row)
    payload = progress.to_payload()

    streak = None
    if just_completed:
        append_event(
            session,
            user_id=user_id,
            event_type=EventType.QUEST_COMPLETED,
            activity_date=activity_date,
            payload={"postCount": row.post_count, "voteCount": row.vote_count},
            at=at,
        )
        streak = streak_service.on_quest_completed(session, user_id, activity_date, at=at)
        payload["justCompleted"] = True
        logger.info("Quest completed: user=%s date=%s", user_id, activity_date)

    enqueue(session, user_id=user_id, type=FanoutType.QUEST_PROGRESS, payload=payload)
    return QuestUpdate(progress=progress, just_completed=just_completed, streak=streak)


def record_post(
    session: Session,
    user_id: int,
    activity_date: date,
    *,
    at: datetime | None = None,
) -> QuestUpdate:
    """Count a new post by *user_id* toward *activity_date*."""
    return _record(session, user_id, activity_date, posts=1, at=at)


def record_vote_cast(
    session: Session,
    user_id: int,
    activity_date: date,
    *,
    at: datetime | None = None,
) -> QuestUpdate:
    """Count a first-time vote by *user_id* toward *activity_date*.

    Vote changes must not call this.
    """
    return _record(session, user_id, activity_date, votes=1, at=at)


def get_daily_progress(
    engine: Engine,
    user_id: int,
    activity_date: date | None = None,
    *,
    now: datetime | None = None,
) -> QuestProgress:
    """Progress for one quest day; zeros if the user did nothing that day.

    Without *activity_date* the user's current local day is used.
    """
    with transaction(engine) as session:
        user = session.get(User, user_id)
        if user is None:
            raise NotFound(f"User {user_id} not found")
        if activity_date is None:
            activity_date = stamp_action(user.timezone, now).activity_date
        row = session.get(DailyProgress, (user_id, activity_date))
        if row is None:
            return QuestProgress(user_id=user_id, activity_date=activity_date)
        return _progress_of(row)
