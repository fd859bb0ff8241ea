"""
starling.services.rating_service — Star Votes & Average Ratings
================================================================

**Why this file exists:**
A vote is an upsert on the ``votes`` ledger keyed by ``(post, voter)``.
The ``post_ratings`` summary row is locked ``FOR UPDATE`` before the
ledger is touched, so concurrent voters on the same post are serialised
and the summary always equals the ledger it was derived from.

Only a *first* vote by a voter on a post counts toward the daily quest;
changing the stars later swaps the contribution in the average and
nothing else.

:func:`reconcile_ratings` recomputes every summary from the ledger and
repairs drift, the same way a periodic sweep would.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import Engine, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from starling.database.engine import transaction
from starling.database.models import Post, PostRating, User, Vote
from starling.engine.calendar import stamp_action, utcnow
from starling.engine.events import EventType
from starling.engine.feed import is_post_visible
from starling.engine.rating import apply_vote, average, validate_stars
from starling.errors import Conflict, NotFound, SelfVoteForbidden
from starling.services import quest_service
from starling.services.event_store import append_event
from starling.services.fanout import Fanout, pending_outbox

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RatingSummary:
    post_id: int
    vote_count: int
    average: float


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------
def cast_vote(
    engine: Engine,
    fanout: Fanout | None = None,
    *,
    voter_id: int,
    post_id: int,
    stars: int,
    now: datetime | None = None,
) -> float:
    """Record *voter_id*'s *stars* for *post_id*; return the new average.

    Raises
    ------
    InvalidInput
        *stars* outside 1–5.
    NotFound
        Unknown voter, unknown post, or an expired story.
    SelfVoteForbidden
        The voter wrote the post.
    Conflict
        A concurrent first vote by the same voter won the insert race.
    """
    validate_stars(stars)

    with transaction(engine) as session:
        # Lock order: post summary first, then the ledger row.
        summary = session.get(PostRating, post_id, with_for_update=True)
        post = session.get(Post, post_id)
        if post is None or summary is None:
            raise NotFound(f"Post {post_id} not found")

        voter = session.get(User, voter_id)
        if voter is None:
            raise NotFound(f"User {voter_id} not found")

        stamp = stamp_action(voter.timezone, now)
        if not is_post_visible(post, stamp.at):
            raise NotFound(f"Post {post_id} is no longer visible")
        if post.author_id == voter_id:
            raise SelfVoteForbidden("Authors cannot vote on their own posts")

        vote = session.get(Vote, (post_id, voter_id), with_for_update=True)
        previous = vote.stars if vote is not None else None

        if vote is None:
            try:
                with session.begin_nested():
                    session.add(Vote(
                        post_id=post_id,
                        voter_id=voter_id,
                        stars=stars,
                        created_at=stamp.at,
                        updated_at=stamp.at,
                    ))
                    session.flush()
            except IntegrityError:
                raise Conflict(
                    "A concurrent vote on this post was recorded first; re-read and retry"
                ) from None
        elif previous != stars:
            vote.stars = stars
            vote.updated_at = stamp.at

        summary.vote_count, summary.star_total = apply_vote(
            summary.vote_count, summary.star_total, stars, previous,
        )

        if previous is None:
            append_event(
                session,
                user_id=voter_id,
                event_type=EventType.VOTE_CAST,
                subject_id=post_id,
                activity_date=stamp.activity_date,
                payload={"stars": stars},
                at=stamp.at,
            )
            quest_service.record_vote_cast(
                session, voter_id, stamp.activity_date, at=stamp.at,
            )
        elif previous != stars:
            append_event(
                session,
                user_id=voter_id,
                event_type=EventType.VOTE_CHANGED,
                subject_id=post_id,
                activity_date=stamp.activity_date,
                payload={"stars": stars, "previous": previous},
                at=stamp.at,
            )

        result = average(summary.vote_count, summary.star_total)
        messages = pending_outbox(session)

    logger.info(
        "Vote post=%s voter=%s stars=%d (prev=%s) → avg %.3f",
        post_id, voter_id, stars, previous, result,
    )
    if fanout is not None:
        fanout.publish(messages)
    return result


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------
def get_rating(engine: Engine, post_id: int) -> RatingSummary:
    with transaction(engine) as session:
        summary = session.get(PostRating, post_id)
        if summary is None:
            raise NotFound(f"Post {post_id} not found")
        return RatingSummary(
            post_id=post_id,
            vote_count=summary.vote_count,
            average=average(summary.vote_count, summary.star_total),
        )


def get_average(engine: Engine, post_id: int) -> float:
    """Mean stars for *post_id*; ``0.0`` with no votes."""
    return get_rating(engine, post_id).average


def votes_by(session: Session, voter_id: int, post_ids: Iterable[int]) -> dict[int, int]:
    """``{post_id: stars}`` for the posts in *post_ids* that *voter_id* rated."""
    ids = list(post_ids)
    if not ids:
        return {}
    rows = session.execute(
        select(Vote.post_id, Vote.stars).where(
            Vote.voter_id == voter_id, Vote.post_id.in_(ids),
        )
    ).all()
    return {post_id: stars for post_id, stars in rows}


def get_user_votes(engine: Engine, voter_id: int, post_ids: Iterable[int]) -> dict[int, int]:
    with transaction(engine) as session:
        return votes_by(session, voter_id, post_ids)


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------
def reconcile_ratings(engine: Engine) -> dict:
    """Recompute every ``post_ratings`` row from the vote ledger.

    Returns ``{"checked", "corrected", "corrections", "timestamp"}``.
    """
    corrections: list[dict] = []

    with transaction(engine) as session:
        ledger = {
            post_id: (count, total)
            for post_id, count, total in session.execute(
                select(Vote.post_id, func.count(), func.coalesce(func.sum(Vote.stars), 0))
                .group_by(Vote.post_id)
            ).all()
        }

        summaries = session.scalars(
            select(PostRating).order_by(PostRating.post_id).with_for_update()
        ).all()

        for summary in summaries:
            count, total = ledger.get(summary.post_id, (0, 0))
            if (summary.vote_count, summary.star_total) == (count, total):
                continue
            corrections.append({
                "post_id": summary.post_id,
                "old_count": summary.vote_count,
                "old_total": summary.star_total,
                "new_count": count,
                "new_total": total,
            })
            summary.vote_count = count
            summary.star_total = total

    if corrections:
        logger.warning("Rating reconciliation corrected %d post(s)", len(corrections))
        for c in corrections:
            logger.info(
                "  Post %s: %s/%s → %s/%s",
                c["post_id"], c["old_total"], c["old_count"], c["new_total"], c["new_count"],
            )
    else:
        logger.info("Rating reconciliation: all %d summaries consistent", len(summaries))

    return {
        "checked": len(summaries),
        "corrected": len(corrections),
        "corrections": corrections,
        "timestamp": utcnow().isoformat(),
    }
