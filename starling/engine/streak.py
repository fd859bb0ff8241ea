"""
starling.engine.streak — Streak Transition
===========================================

Pure state transition applied on every ``quest_completed`` signal::

    last is None          → current = 1
    day == last + 1       → current += 1      (continuation)
    day == last           → no change         (duplicate signal)
    anything else         → current = 1       (gap, or backfilled day)

``longest`` is the running maximum and never decreases.  A skipped day is
not detected until the next completion arrives; reads show the stored
value until then.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta


@dataclass(frozen=True, slots=True)
class StreakState:
    current: int = 0
    longest: int = 0
    last_completed: date | None = None

    def to_payload(self) -> dict:
        return {
            "currentStreak": self.current,
            "longestStreak": self.longest,
            "lastCompletedDate": (
                self.last_completed.isoformat() if self.last_completed else None
            ),
        }


def advance_streak(state: StreakState, completed_on: date) -> StreakState:
    """Return the state after a quest completion on *completed_on*."""
    last = state.last_completed

    if last is not None and completed_on == last:
        return state

    if last is not None and completed_on == last + timedelta(days=1):
        current = state.current + 1
    else:
        current = 1

    return StreakState(
        current=current,
        longest=max(state.longest, current),
        last_completed=completed_on,
    )
