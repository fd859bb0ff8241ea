"""
starling.services.post_service — Posts, Feed & Profile Stats
=============================================================

Creating a post opens its (empty) rating summary, logs ``post_created``
and counts toward the author's quest for the local day the post was
made.  Deleting a post removes its votes and summary with it, but never
takes back quest progress already earned.

Also home to :func:`provision_user`, the minimal account seeding used by
the CLI and by tests.  Real account provisioning belongs to the auth
layer.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import Engine, delete, func, or_, select
from sqlalchemy.exc import IntegrityError

from starling.constants import FEED_DEFAULT_LIMIT, FEED_MAX_LIMIT, USERNAME_MAX_LENGTH
from starling.database.engine import transaction
from starling.database.models import Friendship, FriendshipStatus, Post, PostRating, User, Vote
from starling.engine.calendar import as_utc, resolve_zone, stamp_action, utcnow
from starling.engine.events import EventType
from starling.engine.feed import (
    is_post_visible,
    parse_kind,
    parse_scope,
    story_cutoff,
    validate_post,
)
from starling.engine.rating import average
from starling.errors import Conflict, Forbidden, InvalidInput, NotFound
from starling.services import quest_service
from starling.services.event_store import append_event
from starling.services.fanout import Fanout, pending_outbox
from starling.services.rating_service import votes_by

logger = logging.getLogger(__name__)

__all__ = [
    "FeedItem",
    "ProfileStats",
    "create_post",
    "delete_post",
    "get_profile_stats",
    "is_post_visible",
    "list_feed",
    "provision_user",
]


@dataclass(frozen=True, slots=True)
class FeedItem:
    post_id: int
    author_id: int
    author_username: str
    author_avatar_ref: str | None
    text: str | None
    image_ref: str | None
    self_rating: int
    kind: str
    created_at: datetime
    average_rating: float
    vote_count: int
    user_vote: int | None

    def to_dict(self) -> dict:
        return {
            "postId": self.post_id,
            "authorId": self.author_id,
            "authorUsername": self.author_username,
            "authorAvatarRef": self.author_avatar_ref,
            "text": self.text,
            "imageRef": self.image_ref,
            "selfRating": self.self_rating,
            "kind": self.kind,
            "createdAt": self.created_at.isoformat(),
            "averageRating": self.average_rating,
            "voteCount": self.vote_count,
            "userVote": self.user_vote,
        }


@dataclass(frozen=True, slots=True)
class ProfileStats:
    user_id: int
    posts: int
    votes: int
    friends: int


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------
def provision_user(
    engine: Engine,
    *,
    username: str,
    avatar_ref: str | None = None,
    timezone: str | None = None,
) -> User:
    """Create a user.  Usernames are unique ignoring case."""
    username = (username or "").strip()
    if not username or len(username) > USERNAME_MAX_LENGTH:
        raise InvalidInput(f"username must be 1–{USERNAME_MAX_LENGTH} characters")
    # Missing or unknown zones get the configured default
    tz_name = resolve_zone(timezone).key

    user = User(
        username=username,
        username_key=username.lower(),
        avatar_ref=avatar_ref,
        timezone=tz_name,
        created_at=utcnow(),
    )
    try:
        with transaction(engine) as session:
            session.add(user)
            session.flush()
    except IntegrityError:
        raise Conflict(f"Username {username!r} is taken") from None

    logger.info("Provisioned user %s (%s, tz=%s)", user.id, username, tz_name)
    return user


# ---------------------------------------------------------------------------
# Posts
# ---------------------------------------------------------------------------
def create_post(
    engine: Engine,
    fanout: Fanout | None = None,
    *,
    author_id: int,
    self_rating: int,
    kind: str = "global",
    text: str | None = None,
    image_ref: str | None = None,
    now: datetime | None = None,
) -> Post:
    post_kind = parse_kind(kind)
    text = validate_post(self_rating=self_rating, text=text, image_ref=image_ref)

    with transaction(engine) as session:
        author = session.get(User, author_id)
        if author is None:
            raise NotFound(f"User {author_id} not found")

        stamp = stamp_action(author.timezone, now)
        post = Post(
            author_id=author_id,
            text=text,
            image_ref=image_ref,
            self_rating=self_rating,
            kind=post_kind.value,
            created_at=stamp.at,
        )
        session.add(post)
        session.flush()
        session.add(PostRating(post_id=post.id, vote_count=0, star_total=0))

        append_event(
            session,
            user_id=author_id,
            event_type=EventType.POST_CREATED,
            subject_id=post.id,
            activity_date=stamp.activity_date,
            payload={"kind": post.kind, "selfRating": self_rating},
            at=stamp.at,
        )
        quest_service.record_post(session, author_id, stamp.activity_date, at=stamp.at)
        messages = pending_outbox(session)

    logger.info("Post %s created by user %s (%s)", post.id, author_id, post.kind)
    if fanout is not None:
        fanout.publish(messages)
    return post


def delete_post(
    engine: Engine,
    fanout: Fanout | None = None,
    *,
    post_id: int,
    acting_user_id: int,
) -> None:
    """Delete *post_id* and its votes.  Author only."""
    with transaction(engine) as session:
        # Same lock as voters take, so no vote lands on a half-deleted post.
        summary = session.get(PostRating, post_id, with_for_update=True)
        post = session.get(Post, post_id)
        if post is None:
            raise NotFound(f"Post {post_id} not found")
        if post.author_id != acting_user_id:
            raise Forbidden("Only the author can delete a post")

        removed = session.execute(
            delete(Vote).where(Vote.post_id == post_id)
        ).rowcount
        if summary is not None:
            session.delete(summary)
        session.delete(post)

        append_event(
            session,
            user_id=acting_user_id,
            event_type=EventType.POST_DELETED,
            subject_id=post_id,
            payload={"votesRemoved": removed},
        )
        messages = pending_outbox(session)

    logger.info("Post %s deleted by author (%d votes removed)", post_id, removed)
    if fanout is not None:
        fanout.publish(messages)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------
def list_feed(
    engine: Engine,
    *,
    viewer_id: int,
    scope: str = "all",
    limit: int = FEED_DEFAULT_LIMIT,
    now: datetime | None = None,
) -> list[FeedItem]:
    """Visible posts, newest first, with the viewer's own vote attached."""
    feed_scope = parse_scope(scope)
    if limit < 1 or limit > FEED_MAX_LIMIT:
        raise InvalidInput(f"limit must be between 1 and {FEED_MAX_LIMIT}")
    now = as_utc(now) if now is not None else utcnow()

    query = (
        select(Post, User, PostRating)
        .join(User, User.id == Post.author_id)
        .outerjoin(PostRating, PostRating.post_id == Post.id)
        .where(Post.kind.in_(feed_scope.kinds))
        .where(or_(Post.kind != "story", Post.created_at > story_cutoff(now)))
        .order_by(Post.created_at.desc(), Post.id.desc())
        .limit(limit)
    )

    with transaction(engine) as session:
        rows = session.execute(query).all()
        # SQLite compares timestamps as text; re-check with real datetimes.
        rows = [r for r in rows if is_post_visible(r.Post, now)]
        mine = votes_by(session, viewer_id, [r.Post.id for r in rows])

    items = []
    for post, author, summary in rows:
        count = summary.vote_count if summary else 0
        total = summary.star_total if summary else 0
        items.append(FeedItem(
            post_id=post.id,
            author_id=author.id,
            author_username=author.username,
            author_avatar_ref=author.avatar_ref,
            text=post.text,
            image_ref=post.image_ref,
            self_rating=post.self_rating,
            kind=post.kind,
            created_at=as_utc(post.created_at),
            average_rating=average(count, total),
            vote_count=count,
            user_vote=mine.get(post.id),
        ))
    return items


def get_profile_stats(engine: Engine, user_id: int) -> ProfileStats:
    with transaction(engine) as session:
        if session.get(User, user_id) is None:
            raise NotFound(f"User {user_id} not found")

        posts = session.scalar(
            select(func.count()).select_from(Post).where(Post.author_id == user_id)
        )
        votes = session.scalar(
            select(func.count()).select_from(Vote).where(Vote.voter_id == user_id)
        )
        friends = session.scalar(
            select(func.count()).select_from(Friendship).where(
                Friendship.status == FriendshipStatus.ACCEPTED.value,
                or_(Friendship.sender_id == user_id, Friendship.receiver_id == user_id),
            )
        )

    return ProfileStats(user_id=user_id, posts=posts or 0, votes=votes or 0, friends=friends or 0)
