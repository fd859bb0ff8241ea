"""
starling.engine.quest — Daily Quest Rule
=========================================

A day is complete once the user has made at least one post and cast at
least three votes on it.  Counts only ever grow, so once the rule holds
it holds for the rest of that day.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date

from starling.constants import QUEST_MIN_POSTS, QUEST_MIN_VOTES


def meets_quest(post_count: int, vote_count: int) -> bool:
    return post_count >= QUEST_MIN_POSTS and vote_count >= QUEST_MIN_VOTES


@dataclass(frozen=True, slots=True)
class QuestProgress:
    """Read model for one user's quest day."""

    user_id: int
    activity_date: date
    post_count: int = 0
    vote_count: int = 0
    completed: bool = False

    @property
    def needs_post(self) -> bool:
        return self.post_count < QUEST_MIN_POSTS

    @property
    def needs_votes(self) -> bool:
        return self.vote_count < QUEST_MIN_VOTES

    @property
    def votes_remaining(self) -> int:
        return max(0, QUEST_MIN_VOTES - self.vote_count)

    def to_payload(self) -> dict:
        return {
            "date": self.activity_date.isoformat(),
            "postCount": self.post_count,
            "voteCount": self.vote_count,
            "completed": self.completed,
        }
