"""
starling.services.friendship_service — Friendship Graph
========================================================

Applies the transitions defined in :mod:`starling.engine.friendship` to
``friendships`` rows.

**Concurrency:**
The unique ``(user_low, user_high)`` constraint is the arbiter for a new
pair.  If A→B and B→A are sent at the same time, exactly one insert
wins; the other gets :class:`~starling.errors.Conflict`.  The engine
does not retry.  Accept/reject/unfriend lock the existing row
``FOR UPDATE`` before checking its state.

Every transition appends an event for the actor and stages a
``friendship-changed`` delta for *both* parties, each carrying that
party's own view of the relationship.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import Engine, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from starling.database.engine import transaction
from starling.database.models import Friendship, FriendshipStatus, User
from starling.engine.calendar import as_utc, utcnow
from starling.engine.events import EventType, FanoutType
from starling.engine.friendship import (
    FriendshipAction,
    RelationStatus,
    authorize_transition,
    normalize_pair,
    relation_for,
)
from starling.errors import Conflict, InvalidInput, NotFound
from starling.services.event_store import append_event
from starling.services.fanout import Fanout, enqueue, pending_outbox

logger = logging.getLogger(__name__)

_EVENT_FOR_ACTION = {
    FriendshipAction.ACCEPT: EventType.FRIEND_REQUEST_ACCEPTED,
    FriendshipAction.REJECT: EventType.FRIEND_REQUEST_REJECTED,
    FriendshipAction.UNFRIEND: EventType.UNFRIENDED,
}


@dataclass(frozen=True, slots=True)
class FriendView:
    """An accepted friend, as listed for one user."""

    friendship_id: int
    user_id: int
    username: str
    avatar_ref: str | None
    since: datetime | None

    def to_dict(self) -> dict:
        return {
            "friendshipId": self.friendship_id,
            "userId": self.user_id,
            "username": self.username,
            "avatarRef": self.avatar_ref,
            "since": self.since.isoformat() if self.since else None,
        }


@dataclass(frozen=True, slots=True)
class FriendRequestView:
    """A pending request waiting on the receiver."""

    friendship_id: int
    sender_id: int
    sender_username: str
    sender_avatar_ref: str | None
    created_at: datetime | None

    def to_dict(self) -> dict:
        return {
            "friendshipId": self.friendship_id,
            "senderId": self.sender_id,
            "senderUsername": self.sender_username,
            "senderAvatarRef": self.sender_avatar_ref,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


# ---------------------------------------------------------------------------
# Fan-out helper
# ---------------------------------------------------------------------------
def _notify_both(
    session: Session,
    *,
    friendship_id: int,
    sender_id: int,
    receiver_id: int,
    status: str | None,
    action: str,
) -> None:
    for user_id, other_id in ((sender_id, receiver_id), (receiver_id, sender_id)):
        if status is None:
            relation = RelationStatus.NONE
        else:
            relation = relation_for(
                user_id, sender_id=sender_id, receiver_id=receiver_id, status=status,
            )
        enqueue(
            session,
            user_id=user_id,
            type=FanoutType.FRIENDSHIP_CHANGED,
            payload={
                "friendshipId": friendship_id,
                "otherUserId": other_id,
                "action": action,
                "status": relation.value,
            },
        )


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------
def send_request(
    engine: Engine,
    fanout: Fanout | None = None,
    *,
    sender_id: int,
    receiver_id: int,
) -> Friendship:
    low, high = normalize_pair(sender_id, receiver_id)

    with transaction(engine) as session:
        for user_id in (sender_id, receiver_id):
            if session.get(User, user_id) is None:
                raise NotFound(f"User {user_id} not found")

        existing = session.scalar(
            select(Friendship).where(
                Friendship.user_low == low, Friendship.user_high == high,
            )
        )
        if existing is not None:
            raise Conflict(
                f"A {existing.status} friendship already exists between "
                f"users {sender_id} and {receiver_id}"
            )

        now = utcnow()
        row = Friendship(
            sender_id=sender_id,
            receiver_id=receiver_id,
            status=FriendshipStatus.PENDING.value,
            user_low=low,
            user_high=high,
            created_at=now,
            updated_at=now,
        )
        try:
            with session.begin_nested():
                session.add(row)
                session.flush()
        except IntegrityError:
            raise Conflict(
                f"A friendship between users {sender_id} and {receiver_id} "
                "was created concurrently"
            ) from None

        append_event(
            session,
            user_id=sender_id,
            event_type=EventType.FRIEND_REQUEST_SENT,
            subject_id=row.id,
            payload={"receiverId": receiver_id},
            at=now,
        )
        _notify_both(
            session,
            friendship_id=row.id,
            sender_id=sender_id,
            receiver_id=receiver_id,
            status=row.status,
            action="requested",
        )
        messages = pending_outbox(session)

    logger.info("Friend request %s: %s → %s", row.id, sender_id, receiver_id)
    if fanout is not None:
        fanout.publish(messages)
    return row


def _transition(
    engine: Engine,
    fanout: Fanout | None,
    action: FriendshipAction,
    friendship_id: int,
    acting_user_id: int,
) -> FriendshipStatus | None:
    with transaction(engine) as session:
        row = session.get(Friendship, friendship_id, with_for_update=True)
        if row is None:
            raise NotFound(f"Friendship {friendship_id} not found")

        next_status = authorize_transition(
            action,
            actor_id=acting_user_id,
            sender_id=row.sender_id,
            receiver_id=row.receiver_id,
            status=row.status,
        )
        sender_id, receiver_id = row.sender_id, row.receiver_id
        now = utcnow()

        if next_status is None:
            session.delete(row)
        else:
            row.status = next_status.value
            row.updated_at = now

        append_event(
            session,
            user_id=acting_user_id,
            event_type=_EVENT_FOR_ACTION[action],
            subject_id=friendship_id,
            payload={"senderId": sender_id, "receiverId": receiver_id},
            at=now,
        )
        _notify_both(
            session,
            friendship_id=friendship_id,
            sender_id=sender_id,
            receiver_id=receiver_id,
            status=next_status.value if next_status else None,
            action=action.value,
        )
        messages = pending_outbox(session)

    logger.info(
        "Friendship %s: %s by user %s", friendship_id, action.value, acting_user_id,
    )
    if fanout is not None:
        fanout.publish(messages)
    return next_status


def accept_request(
    engine: Engine,
    fanout: Fanout | None = None,
    *,
    request_id: int,
    acting_user_id: int,
) -> None:
    _transition(engine, fanout, FriendshipAction.ACCEPT, request_id, acting_user_id)


def reject_request(
    engine: Engine,
    fanout: Fanout | None = None,
    *,
    request_id: int,
    acting_user_id: int,
) -> None:
    _transition(engine, fanout, FriendshipAction.REJECT, request_id, acting_user_id)


def unfriend(
    engine: Engine,
    fanout: Fanout | None = None,
    *,
    friendship_id: int,
    acting_user_id: int,
) -> None:
    _transition(engine, fanout, FriendshipAction.UNFRIEND, friendship_id, acting_user_id)


def respond_to_request(
    engine: Engine,
    fanout: Fanout | None = None,
    *,
    request_id: int,
    acting_user_id: int,
    action: str,
) -> None:
    """Dispatch ``accept`` / ``reject`` by name, as the API receives it."""
    if action == FriendshipAction.ACCEPT:
        accept_request(engine, fanout, request_id=request_id, acting_user_id=acting_user_id)
    elif action == FriendshipAction.REJECT:
        reject_request(engine, fanout, request_id=request_id, acting_user_id=acting_user_id)
    else:
        raise InvalidInput("action must be 'accept' or 'reject'")


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------
def _require_user(session: Session, user_id: int) -> None:
    if session.get(User, user_id) is None:
        raise NotFound(f"User {user_id} not found")


def list_friends(engine: Engine, user_id: int) -> list[FriendView]:
    with transaction(engine) as session:
        _require_user(session, user_id)
        rows = session.scalars(
            select(Friendship)
            .options(joinedload(Friendship.sender), joinedload(Friendship.receiver))
            .where(
                Friendship.status == FriendshipStatus.ACCEPTED.value,
                or_(Friendship.sender_id == user_id, Friendship.receiver_id == user_id),
            )
            .order_by(Friendship.updated_at.desc(), Friendship.id.desc())
        ).all()

        friends = []
        for row in rows:
            other = row.receiver if row.sender_id == user_id else row.sender
            friends.append(FriendView(
                friendship_id=row.id,
                user_id=other.id,
                username=other.username,
                avatar_ref=other.avatar_ref,
                since=as_utc(row.updated_at) if row.updated_at else None,
            ))
    return friends


def list_pending_received(engine: Engine, user_id: int) -> list[FriendRequestView]:
    with transaction(engine) as session:
        _require_user(session, user_id)
        rows = session.scalars(
            select(Friendship)
            .options(joinedload(Friendship.sender))
            .where(
                Friendship.receiver_id == user_id,
                Friendship.status == FriendshipStatus.PENDING.value,
            )
            .order_by(Friendship.created_at.desc(), Friendship.id.desc())
        ).all()

        return [
            FriendRequestView(
                friendship_id=row.id,
                sender_id=row.sender_id,
                sender_username=row.sender.username,
                sender_avatar_ref=row.sender.avatar_ref,
                created_at=as_utc(row.created_at) if row.created_at else None,
            )
            for row in rows
        ]


def status_between(engine: Engine, viewer_id: int, other_id: int) -> RelationStatus:
    """How *viewer_id* sees their relationship with *other_id*."""
    low, high = normalize_pair(viewer_id, other_id)
    with transaction(engine) as session:
        row = session.scalar(
            select(Friendship).where(
                Friendship.user_low == low, Friendship.user_high == high,
            )
        )
        if row is None:
            return RelationStatus.NONE
        return relation_for(
            viewer_id,
            sender_id=row.sender_id,
            receiver_id=row.receiver_id,
            status=row.status,
        )
