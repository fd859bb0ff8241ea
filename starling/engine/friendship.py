"""
starling.engine.friendship — Relationship State Machine
========================================================

Per unordered pair the logical state is one of ``none``, ``pending`` or
``accepted``; ``none`` is simply "no row".  Rows keep their direction
(sender → receiver) and the viewer-relative status is derived from that
direction on read, never stored.

Transitions::

    none     ── send_request ──▶ pending
    pending  ── accept (receiver) ──▶ accepted
    pending  ── reject (receiver) ──▶ none   (row deleted)
    accepted ── unfriend (either) ──▶ none   (row deleted)
"""

from __future__ import annotations

import enum
from dataclasses import dataclass

from starling.database.models import FriendshipStatus
from starling.errors import Conflict, Forbidden, InvalidInput


class RelationStatus(enum.StrEnum):
    """Pair state as seen from one viewer."""
    NONE = "none"
    PENDING_SENT = "pending_sent"
    PENDING_RECEIVED = "pending_received"
    ACCEPTED = "accepted"


class FriendshipAction(enum.StrEnum):
    ACCEPT = "accept"
    REJECT = "reject"
    UNFRIEND = "unfriend"


@dataclass(frozen=True, slots=True)
class _Rule:
    from_status: FriendshipStatus
    receiver_only: bool
    to_status: FriendshipStatus | None  # None → row deleted


_RULES: dict[FriendshipAction, _Rule] = {
    FriendshipAction.ACCEPT: _Rule(
        FriendshipStatus.PENDING, receiver_only=True, to_status=FriendshipStatus.ACCEPTED,
    ),
    FriendshipAction.REJECT: _Rule(
        FriendshipStatus.PENDING, receiver_only=True, to_status=None,
    ),
    FriendshipAction.UNFRIEND: _Rule(
        FriendshipStatus.ACCEPTED, receiver_only=False, to_status=None,
    ),
}


def normalize_pair(a: int, b: int) -> tuple[int, int]:
    """Sorted ``(low, high)`` key for the unordered pair."""
    if a == b:
        raise InvalidInput("A user cannot befriend themselves")
    return (a, b) if a < b else (b, a)


def relation_for(
    viewer_id: int,
    *,
    sender_id: int,
    receiver_id: int,
    status: str,
) -> RelationStatus:
    """Derive the viewer-relative status of an existing row."""
    if status == FriendshipStatus.ACCEPTED:
        return RelationStatus.ACCEPTED
    if viewer_id == sender_id:
        return RelationStatus.PENDING_SENT
    if viewer_id == receiver_id:
        return RelationStatus.PENDING_RECEIVED
    return RelationStatus.NONE


def authorize_transition(
    action: FriendshipAction,
    *,
    actor_id: int,
    sender_id: int,
    receiver_id: int,
    status: str,
) -> FriendshipStatus | None:
    """Check *actor_id* may apply *action*; return the resulting status.

    Raises :class:`Forbidden` when the actor has no right to the action
    and :class:`Conflict` when the row is in the wrong state for it.
    Authorisation is checked first so outsiders learn nothing about the
    row's state.  ``None`` means the row is to be deleted.
    """
    rule = _RULES[action]

    if rule.receiver_only:
        if actor_id != receiver_id:
            raise Forbidden(f"Only the receiver can {action.value} this request")
    elif actor_id not in (sender_id, receiver_id):
        raise Forbidden("Only a member of this friendship can change it")

    if status != rule.from_status:
        raise Conflict(
            f"Cannot {action.value}: friendship is {status}, "
            f"expected {rule.from_status.value}"
        )
    return rule.to_status
