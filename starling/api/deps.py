"""
starling.api.deps — FastAPI dependency injection
=================================================
"""

from __future__ import annotations

from functools import lru_cache

from sqlalchemy import Engine

from starling.config import StarlingConfig, load_config
from starling.database.engine import create_db_engine
from starling.engine.realtime import RealtimeHub
from starling.services.fanout import Fanout, LocalPublisher, PgNotifyPublisher


@lru_cache(maxsize=1)
def get_config() -> StarlingConfig:
    return load_config()


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_db_engine(get_config())


@lru_cache(maxsize=1)
def get_hub() -> RealtimeHub:
    return RealtimeHub()


@lru_cache(maxsize=1)
def get_fanout() -> Fanout:
    """Fan-out wired to the configured backend.

    ``notify`` publishes through PostgreSQL so every API process sees the
    delta; ``local`` delivers straight into this process's hub.
    """
    cfg = get_config()
    engine = get_engine()
    if cfg.fanout_backend == "local":
        publisher = LocalPublisher(get_hub())
    else:
        publisher = PgNotifyPublisher(engine)
    return Fanout(engine, publisher, max_attempts=cfg.outbox_max_attempts)
