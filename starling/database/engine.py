"""
starling.database.engine — Database Connection, Transactions & Async Helper
============================================================================

**Why this file exists:**
Every engine operation runs in exactly one SQLAlchemy transaction.  The
:func:`transaction` helper opens it, commits on success, rolls back on
*any* exception (including a cancelled caller), and translates driver
errors into :class:`~starling.errors.StorageTimeout` /
:class:`~starling.errors.StorageUnavailable` so callers never see raw
psycopg2 exceptions.

SQLAlchemy + psycopg2 is **synchronous**.  Async callers (FastAPI
background tasks, the outbox relay) go through :func:`run_db`, which ships
the sync function to a thread pool so the event loop stays free.

Usage::

    from starling.database.engine import create_db_engine, init_db, transaction

    engine = create_db_engine(cfg)       # reads DATABASE_URL from .env
    init_db(engine)                      # CREATE TABLE IF NOT EXISTS …

    with transaction(engine) as session:
        session.add(Post(author_id=1, self_rating=4))
        # commit happens automatically on block exit
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, ParamSpec, TypeVar

from sqlalchemy import Engine, create_engine
from sqlalchemy import exc as sa_exc
from sqlalchemy.engine import make_url
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from starling.database.models import Base
from starling.errors import Conflict, StarlingError, StorageTimeout, StorageUnavailable

if TYPE_CHECKING:
    from starling.config import StarlingConfig

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")
M = TypeVar("M", bound=Base)

# PostgreSQL SQLSTATEs raised by statement_timeout / lock_timeout
_PG_TIMEOUT_CODES = frozenset({
    "57014",  # query_canceled
    "55P03",  # lock_not_available
})


# ---------------------------------------------------------------------------
# Engine creation
# ---------------------------------------------------------------------------
def create_db_engine(cfg: StarlingConfig | None = None) -> Engine:
    """Build a SQLAlchemy :class:`Engine` from the ``DATABASE_URL`` env var.

    Bounded waits everywhere:
    * ``pool_timeout`` — fail if no connection frees up in time.
    * ``statement_timeout`` / ``lock_timeout`` — set per PostgreSQL
      connection, so a stuck row lock surfaces as ``StorageTimeout``.

    Raises
    ------
    RuntimeError
        If ``DATABASE_URL`` is not set.
    """
    url = os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError(
            "DATABASE_URL is not set.  "
            "Copy .env.example → .env and set a valid PostgreSQL URL."
        )

    statement_ms = cfg.statement_timeout_ms if cfg else 5000
    lock_ms = cfg.lock_timeout_ms if cfg else 3000
    pool_timeout = cfg.pool_timeout_seconds if cfg else 10

    connect_args: dict = {}
    if make_url(url).get_backend_name() == "postgresql":
        connect_args["options"] = (
            f"-c statement_timeout={statement_ms} -c lock_timeout={lock_ms}"
        )
        connect_args["connect_timeout"] = pool_timeout

    engine = create_engine(
        url,
        echo=False,        # Set True for SQL debugging
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,   # Reconnect stale connections automatically
        pool_timeout=pool_timeout,
        pool_recycle=3600,
        connect_args=connect_args,
    )
    logger.info("Database engine created → %s", engine.url.host)
    return engine


# ---------------------------------------------------------------------------
# Schema initialization
# ---------------------------------------------------------------------------
def init_db(engine: Engine) -> None:
    """Create all tables defined in :mod:`starling.database.models`.

    .. note::

        In production the schema is managed by Alembic (``alembic upgrade
        head``).  ``create_all`` is retained for dev/test environments.
    """
    Base.metadata.create_all(engine)
    logger.info("Database tables verified / created.")


# ---------------------------------------------------------------------------
# Error translation
# ---------------------------------------------------------------------------
def translate_db_error(exc: BaseException) -> StarlingError | None:
    """Map a SQLAlchemy/driver exception to the engine's storage errors.

    Returns None for anything that is not a storage availability problem
    (e.g. ``IntegrityError``), which callers re-raise unchanged.
    """
    if isinstance(exc, sa_exc.TimeoutError):
        return StorageTimeout("Timed out waiting for a database connection")
    if isinstance(exc, sa_exc.DBAPIError):
        pgcode = getattr(exc.orig, "pgcode", None)
        if pgcode in _PG_TIMEOUT_CODES:
            return StorageTimeout("Database statement or lock timed out")
        if isinstance(exc, sa_exc.OperationalError) or exc.connection_invalidated:
            return StorageUnavailable("Database is unavailable")
    return None


# ---------------------------------------------------------------------------
# Transaction helper
# ---------------------------------------------------------------------------
@contextmanager
def transaction(engine: Engine) -> Iterator[Session]:
    """Yield a :class:`Session` that commits on success and rolls back on
    any exception.

    ``expire_on_commit=False`` keeps returned ORM objects readable after
    the block exits.  ``BaseException`` is caught so a cancelled caller
    (``asyncio.CancelledError``, ``KeyboardInterrupt``) never leaves a
    partial write behind.
    """
    session = Session(engine, expire_on_commit=False)
    try:
        yield session
        session.commit()
    except BaseException as exc:
        session.rollback()
        translated = translate_db_error(exc)
        if translated is not None:
            logger.warning("Storage error: %s (%s)", translated.code, exc)
            raise translated from exc
        raise
    finally:
        session.close()


def lock_or_create(
    session: Session,
    model: type[M],
    ident: Any,
    factory: Callable[[], M],
) -> M:
    """Return the row for *ident* locked ``FOR UPDATE``, inserting it first
    if it does not exist yet.

    Two transactions may both miss the row and try to insert; the loser's
    SAVEPOINT is rolled back on the primary-key violation and it re-reads
    (and locks) the winner's row instead.
    """
    row = session.get(model, ident, with_for_update=True)
    if row is not None:
        return row
    try:
        with session.begin_nested():   # SAVEPOINT
            row = factory()
            session.add(row)
            session.flush()
        return row
    except IntegrityError:
        row = session.get(model, ident, with_for_update=True, populate_existing=True)
        if row is None:
            raise Conflict(f"Could not create or lock {model.__tablename__} row") from None
        logger.debug("Lost insert race on %s %s — using winner's row", model.__tablename__, ident)
        return row


# ---------------------------------------------------------------------------
# Async bridge
# ---------------------------------------------------------------------------
async def run_db(func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
    """Run a **synchronous** database function on a background thread.

    Every DB call made from async code should go through this wrapper::

        result = await run_db(relay_pending, engine, publisher)

    Under the hood it calls :func:`asyncio.to_thread`, which schedules
    *func* on the default ``ThreadPoolExecutor`` so the event loop is
    never blocked.
    """
    return await asyncio.to_thread(func, *args, **kwargs)
