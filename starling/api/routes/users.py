"""
starling.api.routes.users — Per-user read endpoints
====================================================

Friends, pending requests, relationship status, quest progress, streak,
profile counts and the user's recent activity log.
"""

from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, Query

from starling.api.deps import get_engine
from starling.services import (
    event_store,
    friendship_service,
    post_service,
    quest_service,
    streak_service,
)

router = APIRouter(prefix="/users", tags=["users"])


@router.get("/{user_id}/friends")
def list_friends(user_id: int, engine=Depends(get_engine)):
    return [f.to_dict() for f in friendship_service.list_friends(engine, user_id)]


@router.get("/{user_id}/friend-requests")
def list_friend_requests(user_id: int, engine=Depends(get_engine)):
    return [
        r.to_dict() for r in friendship_service.list_pending_received(engine, user_id)
    ]


@router.get("/{user_id}/relationship/{other_id}")
def relationship(user_id: int, other_id: int, engine=Depends(get_engine)):
    status = friendship_service.status_between(engine, user_id, other_id)
    return {"userId": user_id, "otherUserId": other_id, "status": status.value}


@router.get("/{user_id}/daily-progress")
def daily_progress(
    user_id: int,
    activity_date: date | None = Query(default=None, alias="date"),
    engine=Depends(get_engine),
):
    """Quest counters for a day (the user's local today by default)."""
    progress = quest_service.get_daily_progress(engine, user_id, activity_date)
    return {
        "userId": user_id,
        **progress.to_payload(),
        "needsPost": progress.needs_post,
        "needsVotes": progress.needs_votes,
        "votesRemaining": progress.votes_remaining,
    }


@router.get("/{user_id}/streak")
def streak(user_id: int, engine=Depends(get_engine)):
    return {"userId": user_id, **streak_service.get_streak(engine, user_id).to_payload()}


@router.get("/{user_id}/stats")
def profile_stats(user_id: int, engine=Depends(get_engine)):
    stats = post_service.get_profile_stats(engine, user_id)
    return {
        "userId": stats.user_id,
        "posts": stats.posts,
        "votes": stats.votes,
        "friends": stats.friends,
    }


@router.get("/{user_id}/activity")
def activity(
    user_id: int,
    limit: int = Query(default=50, ge=1, le=200),
    engine=Depends(get_engine),
):
    """Most recent event-log entries written for this user."""
    events = event_store.list_events(engine, user_id=user_id, limit=limit)
    return [
        {
            "id": e.id,
            "eventType": e.event_type,
            "subjectId": e.subject_id,
            "activityDate": e.activity_date.isoformat() if e.activity_date else None,
            "payload": e.payload,
            "createdAt": e.created_at.isoformat() if e.created_at else None,
        }
        for e in events
    ]
