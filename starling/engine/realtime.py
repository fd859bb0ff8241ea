"""
starling.engine.realtime — Subscriber Hub with PG LISTEN Relay
===============================================================

Live clients subscribe to a user id and receive fan-out envelopes
``{type, userId, payload}`` for that user.  The transport that carries
envelopes to a phone or browser is outside this package; the hub is the
hand-off point.

Two ways in:

* :class:`~starling.services.fanout.LocalPublisher` calls
  :meth:`RealtimeHub.deliver` directly (single-process deployments).
* :class:`FanoutListener` LISTENs on the PostgreSQL channel that
  :class:`~starling.services.fanout.PgNotifyPublisher` NOTIFYs on, so every
  API process can feed its own hub.

Delivery is best-effort: a failing subscriber is logged and skipped, and
never affects the mutation that produced the envelope.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import random
import select as _select
import threading
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

# PG channel carrying fan-out envelopes between processes
FANOUT_NOTIFY_CHANNEL = "starling_fanout"

Subscriber = Callable[[dict], Any]


class RealtimeHub:
    """Thread-safe registry of live subscribers keyed by user id.

    Usage::

        hub = RealtimeHub()
        unsubscribe = hub.subscribe(42, on_envelope)
        hub.deliver({"type": "streak-changed", "userId": 42, "payload": {...}})
        unsubscribe()
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[int, list[Subscriber]] = {}
        self._loop: asyncio.AbstractEventLoop | None = None

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Event loop on which coroutine subscribers are scheduled."""
        self._loop = loop

    def subscribe(self, user_id: int, callback: Subscriber) -> Callable[[], None]:
        """Register *callback* for *user_id*; returns an unsubscribe function."""
        with self._lock:
            self._subscribers.setdefault(user_id, []).append(callback)
        logger.debug("Subscriber added for user %s", user_id)

        def _unsubscribe() -> None:
            with self._lock:
                callbacks = self._subscribers.get(user_id, [])
                if callback in callbacks:
                    callbacks.remove(callback)
                if not callbacks:
                    self._subscribers.pop(user_id, None)

        return _unsubscribe

    def subscriber_count(self, user_id: int | None = None) -> int:
        with self._lock:
            if user_id is not None:
                return len(self._subscribers.get(user_id, []))
            return sum(len(v) for v in self._subscribers.values())

    def deliver(self, envelope: dict) -> int:
        """Hand *envelope* to every subscriber of its ``userId``.

        Returns the number of subscribers that accepted it.
        """
        user_id = envelope.get("userId")
        with self._lock:
            callbacks = list(self._subscribers.get(user_id, []))

        delivered = 0
        for callback in callbacks:
            try:
                result = callback(envelope)
                if inspect.isawaitable(result):
                    self._schedule(result)
                delivered += 1
            except Exception:
                logger.exception(
                    "Subscriber for user %s failed on %s — dropped",
                    user_id, envelope.get("type"),
                )
        return delivered

    def _schedule(self, awaitable: Any) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.warning("Cannot schedule async subscriber — no event loop bound")
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        asyncio.run_coroutine_threadsafe(awaitable, loop)


class FanoutListener:
    """Background thread relaying PG NOTIFY envelopes into a hub.

    Uses a raw psycopg2 connection + ``select()`` so it never blocks the
    asyncio loop.  Reconnects with exponential backoff + jitter and gives
    up after ``max_reconnect_attempts`` consecutive failures.
    """

    def __init__(
        self,
        engine: Engine,
        hub: RealtimeHub,
        *,
        channel: str = FANOUT_NOTIFY_CHANNEL,
        max_reconnect_attempts: int = 10,
    ) -> None:
        self._engine = engine
        self._hub = hub
        self._channel = channel
        self._max_attempts = max_reconnect_attempts
        self._healthy = False
        self._failed = False
        self._thread: threading.Thread | None = None
        self._shutdown = threading.Event()

    @property
    def healthy(self) -> bool:
        return self._healthy and not self._failed

    @property
    def failed(self) -> bool:
        return self._failed

    def handle_payload(self, raw_payload: str) -> int:
        """Parse one NOTIFY payload and deliver it to the hub."""
        try:
            envelope = json.loads(raw_payload)
        except (json.JSONDecodeError, TypeError):
            logger.warning("Invalid fan-out payload (not JSON): %s", raw_payload)
            return 0
        if not isinstance(envelope, dict) or "type" not in envelope:
            logger.warning("Fan-out payload missing 'type': %s", raw_payload)
            return 0
        return self._hub.deliver(envelope)

    def start(self) -> None:
        import psycopg2

        max_backoff = 60.0
        base_backoff = 1.0

        def _listen_thread() -> None:
            # psycopg2 needs the real password, str(url) masks it
            raw_url = self._engine.url.render_as_string(hide_password=False)
            dsn = raw_url.replace("postgresql+psycopg2://", "postgresql://")
            attempt = 0

            while not self._shutdown.is_set():
                conn = None
                try:
                    conn = psycopg2.connect(dsn)
                    conn.set_isolation_level(0)  # autocommit
                    cur = conn.cursor()
                    cur.execute(f"LISTEN {self._channel};")
                    logger.info("PG LISTEN started on channel '%s'", self._channel)
                    attempt = 0
                    self._healthy = True

                    while not self._shutdown.is_set():
                        if _select.select([conn], [], [], 5.0) == ([], [], []):
                            continue
                        conn.poll()
                        while conn.notifies:
                            notify = conn.notifies.pop(0)
                            try:
                                self.handle_payload(notify.payload or "")
                            except Exception:
                                logger.exception(
                                    "Error relaying fan-out payload: %s", notify.payload,
                                )
                except Exception:
                    self._healthy = False
                    attempt += 1
                    if attempt >= self._max_attempts:
                        logger.critical(
                            "PG LISTEN exhausted %d retries. Fan-out relay disabled.",
                            self._max_attempts,
                        )
                        self._failed = True
                        break

                    backoff = min(base_backoff * (2 ** (attempt - 1)), max_backoff)
                    wait = backoff + random.uniform(0, backoff * 0.5)
                    logger.exception(
                        "PG LISTEN connection lost (attempt %d/%d). "
                        "Reconnecting in %.1fs…",
                        attempt, self._max_attempts, wait,
                    )
                    if self._shutdown.wait(timeout=wait):
                        break
                finally:
                    if conn is not None:
                        try:
                            conn.close()
                        except Exception:
                            logger.debug("Error closing LISTEN connection", exc_info=True)

        self._thread = threading.Thread(
            target=_listen_thread, daemon=True, name="fanout-listener",
        )
        self._thread.start()
        logger.info("Fan-out listener thread started")

    def stop(self) -> None:
        self._shutdown.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=5)
            logger.info("Fan-out listener thread stopped")
