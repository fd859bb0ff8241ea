"""
starling.config — YAML Configuration Loader
============================================

**Why this file exists:**
This module reads ``config.yaml`` for **infrastructure-only** settings
(API port, default timezone, storage timeouts, fan-out backend).  The
database URL is a secret and comes from ``DATABASE_URL`` in ``.env``.

Usage::

    from starling.config import load_config

    cfg = load_config()              # reads ./config.yaml by default
    print(cfg.default_timezone)      # "UTC" unless config.yaml sets one
    print(cfg.statement_timeout_ms)  # 5000
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from starling.constants import (
    DEFAULT_TIMEZONE,
    OUTBOX_MAX_ATTEMPTS,
    OUTBOX_RETENTION_HOURS,
)

FANOUT_BACKENDS = ("notify", "local")


# ---------------------------------------------------------------------------
# Typed settings object — infrastructure only.
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class StarlingConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    # Identity
    service_name: str = "starling"

    # API
    api_port: int = 8000

    # Calendar: used for users without an explicit timezone
    default_timezone: str = DEFAULT_TIMEZONE

    # Storage bounds (no operation waits forever)
    statement_timeout_ms: int = 5000
    lock_timeout_ms: int = 3000
    pool_timeout_seconds: int = 10

    # Fan-out
    fanout_backend: str = "notify"   # "notify" → PG NOTIFY, "local" → in-process hub
    outbox_relay_seconds: int = 15
    outbox_max_attempts: int = OUTBOX_MAX_ATTEMPTS
    outbox_retention_hours: int = OUTBOX_RETENTION_HOURS

    # Maintenance
    reconcile_interval_seconds: int = 3600


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def default_config_path() -> Path:
    """Config path from ``STARLING_CONFIG``, falling back to ``config.yaml``."""
    return Path(os.getenv("STARLING_CONFIG", "config.yaml"))


def load_config(path: str | Path | None = None) -> StarlingConfig:
    """Read *path* and return a :class:`StarlingConfig` instance.

    Parameters
    ----------
    path:
        Filesystem path to the YAML configuration file.
        Defaults to ``$STARLING_CONFIG`` or ``config.yaml`` in the
        current working directory.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    ValueError
        If a value is out of range (unknown timezone, bad backend, …).
    """
    config_path = Path(path) if path is not None else default_config_path()
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    defaults = StarlingConfig()
    cfg = StarlingConfig(
        service_name=str(raw.get("service_name", defaults.service_name)),
        api_port=int(raw.get("api_port", defaults.api_port)),
        default_timezone=str(raw.get("default_timezone", defaults.default_timezone)),
        statement_timeout_ms=int(
            raw.get("statement_timeout_ms", defaults.statement_timeout_ms)
        ),
        lock_timeout_ms=int(raw.get("lock_timeout_ms", defaults.lock_timeout_ms)),
        pool_timeout_seconds=int(
            raw.get("pool_timeout_seconds", defaults.pool_timeout_seconds)
        ),
        fanout_backend=str(raw.get("fanout_backend", defaults.fanout_backend)),
        outbox_relay_seconds=int(
            raw.get("outbox_relay_seconds", defaults.outbox_relay_seconds)
        ),
        outbox_max_attempts=int(
            raw.get("outbox_max_attempts", defaults.outbox_max_attempts)
        ),
        outbox_retention_hours=int(
            raw.get("outbox_retention_hours", defaults.outbox_retention_hours)
        ),
        reconcile_interval_seconds=int(
            raw.get("reconcile_interval_seconds", defaults.reconcile_interval_seconds)
        ),
    )
    _validate(cfg)
    return cfg


def _validate(cfg: StarlingConfig) -> None:
    try:
        ZoneInfo(cfg.default_timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown default_timezone: {cfg.default_timezone!r}") from exc

    if cfg.fanout_backend not in FANOUT_BACKENDS:
        raise ValueError(
            f"fanout_backend must be one of {FANOUT_BACKENDS}, "
            f"got {cfg.fanout_backend!r}"
        )

    for name in (
        "statement_timeout_ms",
        "lock_timeout_ms",
        "pool_timeout_seconds",
        "outbox_max_attempts",
        "outbox_retention_hours",
    ):
        if getattr(cfg, name) <= 0:
            raise ValueError(f"{name} must be positive")
