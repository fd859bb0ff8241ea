"""
starling.constants — Shared Constants
======================================

Single source of truth for the domain limits.  Import from here instead of
duplicating literals in services, routes, and tests.
"""

from __future__ import annotations

from datetime import timedelta

# ---------------------------------------------------------------------------
# Ratings
# ---------------------------------------------------------------------------
MIN_STARS = 1
MAX_STARS = 5

# ---------------------------------------------------------------------------
# Posts
# ---------------------------------------------------------------------------
POST_TEXT_MAX_LENGTH = 500
IMAGE_REF_MAX_LENGTH = 500
STORY_TTL = timedelta(hours=24)
FEED_DEFAULT_LIMIT = 50
FEED_MAX_LIMIT = 100

# ---------------------------------------------------------------------------
# Daily quest: ≥1 post AND ≥3 votes on the same calendar day
# ---------------------------------------------------------------------------
QUEST_MIN_POSTS = 1
QUEST_MIN_VOTES = 3

# ---------------------------------------------------------------------------
# Fan-out outbox
# ---------------------------------------------------------------------------
OUTBOX_MAX_ATTEMPTS = 10
OUTBOX_RETENTION_HOURS = 24

# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------
DEFAULT_TIMEZONE = "UTC"
USERNAME_MAX_LENGTH = 50


def stars_in_range(value: int) -> bool:
    """True if *value* is a valid 1–5 star rating (bools rejected)."""
    return (
        isinstance(value, int)
        and not isinstance(value, bool)
        and MIN_STARS <= value <= MAX_STARS
    )
