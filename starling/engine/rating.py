"""
starling.engine.rating — Vote Ledger Arithmetic
================================================

Pure helpers for the ``post_ratings`` summary row.  The summary stores an
integer ``star_total`` and ``vote_count``; the average is only divided
out on read, at full precision.  Rounding is a presentation concern.
"""

from __future__ import annotations

from starling.constants import MAX_STARS, MIN_STARS, stars_in_range
from starling.errors import InvalidInput


def validate_stars(stars: int) -> int:
    """Return *stars* unchanged, or raise :class:`InvalidInput`."""
    if not stars_in_range(stars):
        raise InvalidInput(f"stars must be an integer between {MIN_STARS} and {MAX_STARS}")
    return stars


def apply_vote(
    vote_count: int,
    star_total: int,
    stars: int,
    previous: int | None = None,
) -> tuple[int, int]:
    """Return the new ``(vote_count, star_total)`` after a vote.

    *previous* is the voter's existing stars for this post, or None for a
    first vote.  A changed vote swaps its contribution without touching
    the count.
    """
    if previous is None:
        return vote_count + 1, star_total + stars
    return vote_count, star_total - previous + stars


def average(vote_count: int, star_total: int) -> float:
    """Mean stars, or ``0.0`` when nobody has voted."""
    if vote_count <= 0:
        return 0.0
    return star_total / vote_count
