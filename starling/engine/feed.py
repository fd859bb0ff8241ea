"""
starling.engine.feed — Post Rules & Story Visibility
=====================================================

Pure checks shared by the post and rating services:

* what a well-formed post looks like,
* whether a post is still visible (stories expire 24 h after creation),
* which kinds a feed scope selects.

Expiry is evaluated at read time against an explicit ``now``; nothing
sweeps expired stories out of the table.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Protocol

from starling.constants import (
    IMAGE_REF_MAX_LENGTH,
    MAX_STARS,
    MIN_STARS,
    POST_TEXT_MAX_LENGTH,
    STORY_TTL,
    stars_in_range,
)
from starling.database.models import PostKind
from starling.engine.calendar import as_utc, utcnow
from starling.errors import InvalidInput


class FeedScope(enum.StrEnum):
    ALL = "all"
    GLOBAL = "global"
    STORIES = "stories"

    @property
    def kinds(self) -> tuple[str, ...]:
        if self is FeedScope.GLOBAL:
            return (PostKind.GLOBAL.value,)
        if self is FeedScope.STORIES:
            return (PostKind.STORY.value,)
        return (PostKind.GLOBAL.value, PostKind.STORY.value)


class _PostLike(Protocol):
    kind: str
    created_at: datetime


def story_cutoff(now: datetime | None = None) -> datetime:
    """Stories created at or before this instant are expired."""
    return (as_utc(now) if now is not None else utcnow()) - STORY_TTL


def is_post_visible(post: _PostLike, now: datetime | None = None) -> bool:
    if post.kind != PostKind.STORY:
        return True
    return as_utc(post.created_at) > story_cutoff(now)


def parse_kind(kind: str) -> PostKind:
    try:
        return PostKind(kind)
    except ValueError:
        raise InvalidInput(f"kind must be one of: {', '.join(k.value for k in PostKind)}") from None


def parse_scope(scope: str) -> FeedScope:
    try:
        return FeedScope(scope)
    except ValueError:
        raise InvalidInput(f"scope must be one of: {', '.join(s.value for s in FeedScope)}") from None


def validate_post(
    *,
    self_rating: int,
    text: str | None,
    image_ref: str | None,
) -> str | None:
    """Check a new post's fields; return the normalised text.

    Blank text counts as no text.
    """
    if not stars_in_range(self_rating):
        raise InvalidInput(
            f"selfRating must be an integer between {MIN_STARS} and {MAX_STARS}"
        )
    if text is not None:
        text = text.strip() or None
    if text is not None and len(text) > POST_TEXT_MAX_LENGTH:
        raise InvalidInput(f"text must be at most {POST_TEXT_MAX_LENGTH} characters")
    if image_ref is not None and len(image_ref) > IMAGE_REF_MAX_LENGTH:
        raise InvalidInput(f"imageRef must be at most {IMAGE_REF_MAX_LENGTH} characters")
    return text
