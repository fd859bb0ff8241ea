"""
starling.engine.calendar — Ingress Date Resolution
===================================================

A quest day is the calendar date in the *user's* reference timezone at
the moment the action happened.  It is resolved once, when the request
enters the engine, and the resulting :class:`ActionStamp` is threaded
through every later step.  Nothing downstream reads the clock again, so a
delayed or retried transaction cannot move an action to another day.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, date, datetime
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from starling.constants import DEFAULT_TIMEZONE

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ActionStamp:
    """When an action happened and which quest day it counts toward."""

    at: datetime
    activity_date: date


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


# ---------------------------------------------------------------------------
# Reference timezone for users without a usable one of their own.
# Set from ``StarlingConfig.default_timezone`` at startup.
# ---------------------------------------------------------------------------
_default_timezone = DEFAULT_TIMEZONE


def set_default_timezone(tz_name: str) -> None:
    """Install *tz_name* as the fallback zone.  Unknown names raise."""
    global _default_timezone
    if _zone(tz_name) is None:
        raise ValueError(f"Unknown timezone: {tz_name!r}")
    _default_timezone = tz_name
    logger.info("Default reference timezone: %s", tz_name)


def default_timezone() -> str:
    return _default_timezone


@lru_cache(maxsize=256)
def _zone(tz_name: str) -> ZoneInfo | None:
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        return None


def resolve_zone(tz_name: str | None) -> ZoneInfo:
    """Return the :class:`ZoneInfo` for *tz_name*, falling back to the
    configured default.

    An unknown name is logged, not raised: the action still has to land on
    *some* day.
    """
    if tz_name:
        zone = _zone(tz_name)
        if zone is not None:
            return zone
        logger.warning(
            "Unknown timezone %r, falling back to %s", tz_name, _default_timezone,
        )
    return _zone(_default_timezone)
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r — falling back to %s", tz_name, DEFAULT_TIMEZONE)
        return ZoneInfo(DEFAULT_TIMEZONE)


def local_date(moment: datetime, tz_name: str | None) -> date:
    """Calendar date of *moment* as seen in *tz_name*."""
    return as_utc(moment).astimezone(resolve_zone(tz_name)).date()


def stamp_action(tz_name: str | None, now: datetime | None = None) -> ActionStamp:
    """Resolve the ingress stamp for an action happening *now*."""
    at = as_utc(now) if now is not None else utcnow()
    return ActionStamp(at=at, activity_date=local_date(at, tz_name))
