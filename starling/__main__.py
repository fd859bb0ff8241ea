"""
starling.__main__ — Entry point for ``python -m starling``
==========================================================

Wiring:
1. Load .env (DATABASE_URL and friends).
2. Load config.yaml (soft settings).
3. Create the SQLAlchemy engine and ensure tables exist.
4. Serve the API with uvicorn (blocking).

Run with::

    python -m starling
"""

from __future__ import annotations

import logging
import sys

import uvicorn
from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("starling")


def main() -> None:
    """Bootstrap and serve the Starling API."""
    load_dotenv()

    from starling.api.deps import get_config, get_engine
    from starling.database.engine import init_db

    try:
        cfg = get_config()
    except (FileNotFoundError, ValueError) as exc:
        logger.critical("Invalid configuration: %s", exc)
        sys.exit(1)

    try:
        engine = get_engine()
    except RuntimeError as exc:
        logger.critical("%s", exc)
        sys.exit(1)
    init_db(engine)

    logger.info("Starting %s on port %d", cfg.service_name, cfg.api_port)
    uvicorn.run("starling.api.main:app", host="0.0.0.0", port=cfg.api_port, log_config=None)


if __name__ == "__main__":
    main()
