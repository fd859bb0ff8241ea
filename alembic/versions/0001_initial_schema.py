"""Initial schema: users, posts, votes, friendships, quests, streaks, event log, outbox

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-16 09:00:00.000000

"""
from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = '0001_initial_schema'
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamps(*names: str) -> list[sa.Column]:
    return [
        sa.Column(
            name, sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now(),
        )
        for name in names
    ]


def upgrade() -> None:
    """Create every Starling table."""

    # --- users ---
    op.create_table(
        "users",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("username", sa.String(50), nullable=False),
        sa.Column("username_key", sa.String(50), nullable=False, unique=True),
        sa.Column("avatar_ref", sa.String(500), nullable=True),
        sa.Column("timezone", sa.String(64), nullable=False, server_default="UTC"),
        *_timestamps("created_at"),
    )

    # --- posts ---
    op.create_table(
        "posts",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column(
            "author_id", sa.BigInteger,
            sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("text", sa.Text, nullable=True),
        sa.Column("image_ref", sa.String(500), nullable=True),
        sa.Column("self_rating", sa.SmallInteger, nullable=False),
        sa.Column("kind", sa.String(10), nullable=False, server_default="global"),
        *_timestamps("created_at"),
        sa.CheckConstraint("self_rating BETWEEN 1 AND 5", name="ck_posts_self_rating_range"),
        sa.CheckConstraint("kind IN ('global', 'story')", name="ck_posts_kind"),
    )
    op.create_index("ix_posts_created_at", "posts", ["created_at"])
    op.create_index("ix_posts_author_created", "posts", ["author_id", "created_at"])

    # --- votes (ledger) ---
    op.create_table(
        "votes",
        sa.Column(
            "post_id", sa.BigInteger,
            sa.ForeignKey("posts.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column(
            "voter_id", sa.BigInteger,
            sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column("stars", sa.SmallInteger, nullable=False),
        *_timestamps("created_at", "updated_at"),
        sa.CheckConstraint("stars BETWEEN 1 AND 5", name="ck_votes_stars_range"),
    )
    op.create_index("ix_votes_voter", "votes", ["voter_id"])

    # --- post_ratings (summary + per-post lock row) ---
    op.create_table(
        "post_ratings",
        sa.Column(
            "post_id", sa.BigInteger,
            sa.ForeignKey("posts.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column("vote_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("star_total", sa.Integer, nullable=False, server_default="0"),
        sa.CheckConstraint("vote_count >= 0", name="ck_post_ratings_count"),
        sa.CheckConstraint("star_total >= 0", name="ck_post_ratings_total"),
    )

    # --- friendships ---
    op.create_table(
        "friendships",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column(
            "sender_id", sa.BigInteger,
            sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column(
            "receiver_id", sa.BigInteger,
            sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("status", sa.String(10), nullable=False, server_default="pending"),
        sa.Column("user_low", sa.BigInteger, nullable=False),
        sa.Column("user_high", sa.BigInteger, nullable=False),
        *_timestamps("created_at", "updated_at"),
        sa.UniqueConstraint("user_low", "user_high", name="uq_friendships_pair"),
        sa.CheckConstraint("sender_id <> receiver_id", name="ck_friendships_not_self"),
        sa.CheckConstraint("user_low < user_high", name="ck_friendships_pair_order"),
        sa.CheckConstraint("status IN ('pending', 'accepted')", name="ck_friendships_status"),
    )
    op.create_index(
        "ix_friendships_receiver_status", "friendships", ["receiver_id", "status"],
    )
    op.create_index(
        "ix_friendships_sender_status", "friendships", ["sender_id", "status"],
    )

    # --- daily_progress ---
    op.create_table(
        "daily_progress",
        sa.Column(
            "user_id", sa.BigInteger,
            sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column("activity_date", sa.Date, primary_key=True),
        sa.Column("post_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("vote_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("completed", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps("updated_at"),
    )

    # --- streaks ---
    op.create_table(
        "streaks",
        sa.Column(
            "user_id", sa.BigInteger,
            sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column("current_streak", sa.Integer, nullable=False, server_default="0"),
        sa.Column("longest_streak", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_completed_date", sa.Date, nullable=True),
        *_timestamps("updated_at"),
        sa.CheckConstraint("current_streak >= 0", name="ck_streaks_current"),
        sa.CheckConstraint("longest_streak >= current_streak", name="ck_streaks_longest"),
    )

    # --- event_log ---
    op.create_table(
        "event_log",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.BigInteger, nullable=False),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("subject_id", sa.BigInteger, nullable=True),
        sa.Column("activity_date", sa.Date, nullable=True),
        sa.Column("payload", postgresql.JSONB, nullable=False, server_default="{}"),
        *_timestamps("created_at"),
    )
    op.create_index(
        "idx_event_log_user_ts", "event_log",
        ["user_id", sa.text("created_at DESC")],
    )
    op.create_index(
        "idx_event_log_type_ts", "event_log",
        ["event_type", sa.text("created_at DESC")],
    )
    op.create_index(
        "idx_event_log_subject", "event_log", ["subject_id"],
        postgresql_where=sa.text("subject_id IS NOT NULL"),
    )

    # --- fanout_outbox ---
    op.create_table(
        "fanout_outbox",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.BigInteger, nullable=False),
        sa.Column("type", sa.String(32), nullable=False),
        sa.Column("payload", postgresql.JSONB, nullable=False, server_default="{}"),
        *_timestamps("created_at"),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("dropped_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
    )
    op.create_index(
        "ix_fanout_outbox_pending", "fanout_outbox", ["id"],
        postgresql_where=sa.text("delivered_at IS NULL AND dropped_at IS NULL"),
    )


def downgrade() -> None:
    """Drop every Starling table (reverse dependency order)."""
    op.drop_index("ix_fanout_outbox_pending", table_name="fanout_outbox")
    op.drop_table("fanout_outbox")
    op.drop_index("idx_event_log_subject", table_name="event_log")
    op.drop_index("idx_event_log_type_ts", table_name="event_log")
    op.drop_index("idx_event_log_user_ts", table_name="event_log")
    op.drop_table("event_log")
    op.drop_table("streaks")
    op.drop_table("daily_progress")
    op.drop_index("ix_friendships_sender_status", table_name="friendships")
    op.drop_index("ix_friendships_receiver_status", table_name="friendships")
    op.drop_table("friendships")
    op.drop_table("post_ratings")
    op.drop_index("ix_votes_voter", table_name="votes")
    op.drop_table("votes")
    op.drop_index("ix_posts_author_created", table_name="posts")
    op.drop_index("ix_posts_created_at", table_name="posts")
    op.drop_table("posts")
    op.drop_table("users")
