"""
starling.engine.events — Event and Fan-out Type Constants
==========================================================

String constants shared by the event store, the outbox, and the API so
the wire and storage vocabularies are defined in one place.
"""

from __future__ import annotations

__all__ = ["EventType", "FanoutType"]


class EventType:
    """``event_log.event_type`` values."""
    POST_CREATED = "post_created"
    POST_DELETED = "post_deleted"
    VOTE_CAST = "vote_cast"
    VOTE_CHANGED = "vote_changed"
    FRIEND_REQUEST_SENT = "friend_request_sent"
    FRIEND_REQUEST_ACCEPTED = "friend_request_accepted"
    FRIEND_REQUEST_REJECTED = "friend_request_rejected"
    UNFRIENDED = "unfriended"
    QUEST_COMPLETED = "quest_completed"
    STREAK_CHANGED = "streak_changed"


class FanoutType:
    """``type`` field of the fan-out envelope ``{type, userId, payload}``."""
    FRIENDSHIP_CHANGED = "friendship-changed"
    QUEST_PROGRESS = "quest-progress"
    STREAK_CHANGED = "streak-changed"

    ALL = frozenset({FRIENDSHIP_CHANGED, QUEST_PROGRESS, STREAK_CHANGED})
