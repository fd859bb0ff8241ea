"""
starling.services.maintenance — Periodic outbox relay, purge & rating reconcile
================================================================================

Three background chores run by the API process:

- every ``outbox_relay_seconds``: re-publish fan-out rows whose first
  delivery attempt failed;
- every ``reconcile_interval_seconds``: delete settled outbox rows older
  than ``outbox_retention_hours``;
- every ``reconcile_interval_seconds``: recompute vote summaries from the
  ledger and repair drift.

All are synchronous DB work and go through :func:`run_db`.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

from sqlalchemy import Engine

from starling.config import StarlingConfig
from starling.database.engine import run_db
from starling.services.fanout import Fanout, purge_outbox
from starling.services.rating_service import reconcile_ratings

logger = logging.getLogger(__name__)


class MaintenanceLoop:
    """Owns the relay, reconcile and purge background tasks."""

    def __init__(self, engine: Engine, fanout: Fanout, cfg: StarlingConfig) -> None:
        self._engine = engine
        self._fanout = fanout
        self._cfg = cfg
        self._tasks: list[asyncio.Task] = []

    async def relay_once(self) -> dict:
        return await run_db(self._fanout.relay_pending)

    async def reconcile_once(self) -> dict:
        return await run_db(reconcile_ratings, self._engine)

    async def purge_once(self) -> int:
        retention = timedelta(hours=self._cfg.outbox_retention_hours)
        return await run_db(purge_outbox, self._engine, retention)

    def start(self, loop: asyncio.AbstractEventLoop) -> None:
        if self._tasks:
            return

        async def _every(seconds: int, job, label: str) -> None:
            while True:
                await asyncio.sleep(seconds)
                try:
                    await job()
                except Exception:
                    logger.exception("%s failed", label)

        self._tasks = [
            loop.create_task(
                _every(self._cfg.outbox_relay_seconds, self.relay_once, "Outbox relay"),
                name="outbox-relay",
            ),
            loop.create_task(
                _every(
                    self._cfg.reconcile_interval_seconds,
                    self.reconcile_once,
                    "Rating reconciliation",
                ),
                name="rating-reconcile",
            ),
            loop.create_task(
                _every(
                    self._cfg.reconcile_interval_seconds,
                    self.purge_once,
                    "Outbox purge",
                ),
                name="outbox-purge",
            ),
        ]
        logger.info(
            "Maintenance started (relay every %ds, reconcile every %ds)",
            self._cfg.outbox_relay_seconds, self._cfg.reconcile_interval_seconds,
        )

    def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        self._tasks = []
