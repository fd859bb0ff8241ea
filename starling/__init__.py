"""
Starling — Social Engagement Consistency Engine
================================================
Backend for a small social content-sharing app: posts with star ratings,
a friendship graph, and a daily "engagement quest" that builds streaks.
The engine keeps the vote ledger, the friendship state machine, and the
quest/streak counters consistent under concurrent requests, and fans out
state changes to live clients after each commit.

Package layout::

    starling/
    ├── __main__.py        # `python -m starling` → uvicorn
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Quest thresholds, rating bounds, story TTL
    ├── errors.py          # Error taxonomy surfaced to callers
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine, transaction helper, async bridge
    │   └── models.py      # All ORM models
    ├── engine/            # Pure logic — no DB I/O
    │   ├── calendar.py    # Ingress date resolution per user timezone
    │   ├── events.py      # Event-store and fan-out type constants
    │   ├── feed.py        # Post validation, story visibility, feed scopes
    │   ├── friendship.py  # Pair normalisation + relationship view
    │   ├── quest.py       # Daily quest rule
    │   ├── rating.py      # Running average maths
    │   ├── realtime.py    # Subscriber hub + PG LISTEN relay
    │   └── streak.py      # Streak transition function
    ├── services/
    │   ├── event_store.py       # Append-only event log
    │   ├── fanout.py            # Outbox + publishers
    │   ├── post_service.py      # Posts, feed, profile stats
    │   ├── rating_service.py    # Vote ledger + average aggregation
    │   ├── friendship_service.py
    │   ├── maintenance.py       # Periodic outbox relay + rating reconcile
    │   ├── quest_service.py     # DailyProgress counters + completion flip
    │   └── streak_service.py    # Streak rows
    └── api/
        ├── main.py        # FastAPI app
        ├── deps.py        # Dependency wiring
        ├── errors.py      # StarlingError → JSON response
        └── routes/        # posts, friendships, users
"""

__version__ = "0.1.0"
