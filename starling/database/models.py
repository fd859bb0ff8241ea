"""
starling.database.models — SQLAlchemy 2.0 Data Models
======================================================

Tables:
- users            — Account identity + reference timezone
- posts            — Global posts and 24h stories
- votes            — One live star rating per (post, voter)
- post_ratings     — Derived vote summary per post (also the per-post lock)
- friendships      — Directed request rows, unique per unordered pair
- daily_progress   — Per-user per-day quest counters + completion flag
- streaks          — Current / longest streak per user
- event_log        — Append-only record of every engine mutation
- fanout_outbox    — State deltas waiting for best-effort delivery
"""

from __future__ import annotations

import enum
from datetime import date, datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    SmallInteger,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from starling.constants import DEFAULT_TIMEZONE, IMAGE_REF_MAX_LENGTH, USERNAME_MAX_LENGTH


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Starling ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class PostKind(enum.StrEnum):
    """Visibility kind of a post."""
    GLOBAL = "global"
    STORY = "story"


class FriendshipStatus(enum.StrEnum):
    """Stored friendship states.  ``none`` is the absence of a row."""
    PENDING = "pending"
    ACCEPTED = "accepted"


# ---------------------------------------------------------------------------
# Users — provisioned by the auth layer, read here
# ---------------------------------------------------------------------------
class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(USERNAME_MAX_LENGTH), nullable=False)
    # Lower-cased copy of username, unique
    username_key: Mapped[str] = mapped_column(
        String(USERNAME_MAX_LENGTH), nullable=False, unique=True
    )
    avatar_ref: Mapped[str | None] = mapped_column(String(500), default=None)
    timezone: Mapped[str] = mapped_column(
        String(64), nullable=False, default=DEFAULT_TIMEZONE
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<User id={self.id} username={self.username!r}>"


# ---------------------------------------------------------------------------
# Posts
# ---------------------------------------------------------------------------
class Post(Base):
    __tablename__ = "posts"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    author_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    text: Mapped[str | None] = mapped_column(Text, default=None)
    image_ref: Mapped[str | None] = mapped_column(
        String(IMAGE_REF_MAX_LENGTH), default=None
    )
    self_rating: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    kind: Mapped[str] = mapped_column(
        String(10), nullable=False, default=PostKind.GLOBAL.value
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "self_rating BETWEEN 1 AND 5", name="ck_posts_self_rating_range"
        ),
        CheckConstraint("kind IN ('global', 'story')", name="ck_posts_kind"),
        Index("ix_posts_created_at", "created_at"),
        Index("ix_posts_author_created", "author_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Post id={self.id} author={self.author_id} kind={self.kind}>"


# ---------------------------------------------------------------------------
# Votes — the rating ledger
# ---------------------------------------------------------------------------
class Vote(Base):
    __tablename__ = "votes"

    post_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("posts.id", ondelete="CASCADE"), primary_key=True
    )
    voter_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    stars: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        CheckConstraint("stars BETWEEN 1 AND 5", name="ck_votes_stars_range"),
        Index("ix_votes_voter", "voter_id"),
    )

    def __repr__(self) -> str:
        return f"<Vote post={self.post_id} voter={self.voter_id} stars={self.stars}>"


# ---------------------------------------------------------------------------
# PostRating — derived summary of the ledger, updated in the same txn
# ---------------------------------------------------------------------------
class PostRating(Base):
    """Running vote total per post.

    Written in the same transaction as every ledger change, so the average
    is ``star_total / vote_count`` without scanning ``votes``.  The row is
    also what concurrent voters lock (``SELECT … FOR UPDATE``) to
    serialise per post.
    """
    __tablename__ = "post_ratings"

    post_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("posts.id", ondelete="CASCADE"), primary_key=True
    )
    vote_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    star_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        CheckConstraint("vote_count >= 0", name="ck_post_ratings_count"),
        CheckConstraint("star_total >= 0", name="ck_post_ratings_total"),
    )

    def __repr__(self) -> str:
        return (
            f"<PostRating post={self.post_id} "
            f"count={self.vote_count} total={self.star_total}>"
        )


# ---------------------------------------------------------------------------
# Friendships — directed rows, unique per unordered pair
# ---------------------------------------------------------------------------
class Friendship(Base):
    """One row per related pair.

    ``sender_id`` / ``receiver_id`` keep the direction for audit and for
    the viewer-relative status.  ``user_low`` / ``user_high`` are the same
    two ids sorted, and carry the uniqueness constraint so A→B and B→A
    cannot coexist.
    """
    __tablename__ = "friendships"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    sender_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    receiver_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(10), nullable=False, default=FriendshipStatus.PENDING.value
    )
    user_low: Mapped[int] = mapped_column(BigInteger, nullable=False)
    user_high: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    sender: Mapped[User] = relationship(foreign_keys=[sender_id])
    receiver: Mapped[User] = relationship(foreign_keys=[receiver_id])

    __table_args__ = (
        UniqueConstraint("user_low", "user_high", name="uq_friendships_pair"),
        CheckConstraint("sender_id <> receiver_id", name="ck_friendships_not_self"),
        CheckConstraint("user_low < user_high", name="ck_friendships_pair_order"),
        CheckConstraint(
            "status IN ('pending', 'accepted')", name="ck_friendships_status"
        ),
        Index("ix_friendships_receiver_status", "receiver_id", "status"),
        Index("ix_friendships_sender_status", "sender_id", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<Friendship id={self.id} {self.sender_id}->{self.receiver_id} "
            f"status={self.status}>"
        )


# ---------------------------------------------------------------------------
# DailyProgress — per-user per-day quest counters
# ---------------------------------------------------------------------------
class DailyProgress(Base):
    __tablename__ = "daily_progress"

    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    # Calendar date in the user's reference timezone, fixed at ingress
    activity_date: Mapped[date] = mapped_column(Date, primary_key=True)
    post_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    vote_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return (
            f"<DailyProgress user={self.user_id} date={self.activity_date} "
            f"posts={self.post_count} votes={self.vote_count} "
            f"completed={self.completed}>"
        )


# ---------------------------------------------------------------------------
# Streak — one row per user, written only by the streak engine
# ---------------------------------------------------------------------------
class Streak(Base):
    __tablename__ = "streaks"

    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    current_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    longest_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_completed_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        CheckConstraint("current_streak >= 0", name="ck_streaks_current"),
        CheckConstraint("longest_streak >= current_streak", name="ck_streaks_longest"),
    )

    def __repr__(self) -> str:
        return (
            f"<Streak user={self.user_id} current={self.current_streak} "
            f"longest={self.longest_streak} last={self.last_completed_date}>"
        )


# ---------------------------------------------------------------------------
# EventLog — append-only source of truth
# ---------------------------------------------------------------------------
class EventLog(Base):
    """Immutable record of every mutation the engine commits.

    Rows are written in the same transaction as the state change they
    describe and are never updated or deleted.
    """
    __tablename__ = "event_log"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    subject_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    activity_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    payload: Mapped[dict] = mapped_column(JSONB, nullable=False, server_default="{}")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("idx_event_log_user_ts", "user_id", created_at.desc()),
        Index("idx_event_log_type_ts", "event_type", created_at.desc()),
        Index(
            "idx_event_log_subject", "subject_id",
            postgresql_where=subject_id.isnot(None),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<EventLog id={self.id} type={self.event_type!r} "
            f"user={self.user_id} subject={self.subject_id}>"
        )


# ---------------------------------------------------------------------------
# OutboxMessage — fan-out deltas, delivered after commit
# ---------------------------------------------------------------------------
class OutboxMessage(Base):
    __tablename__ = "fanout_outbox"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)  # recipient
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONB, nullable=False, server_default="{}")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    delivered_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    # Set when the row is given up on; never sent again
    dropped_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index(
            "ix_fanout_outbox_pending", "id",
            postgresql_where=delivered_at.is_(None) & dropped_at.is_(None),
        ),
    )

    def to_envelope(self) -> dict:
        """The wire contract: ``{type, userId, payload}``."""
        return {"type": self.type, "userId": self.user_id, "payload": self.payload}

    def __repr__(self) -> str:
        return f"<OutboxMessage id={self.id} user={self.user_id} type={self.type!r}>"
