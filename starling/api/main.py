"""
starling.api.main — FastAPI application entry point
====================================================

Run with::

    uvicorn starling.api.main:app --reload --port 8000
"""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

load_dotenv()

from starling import __version__  # noqa: E402
from starling.api.deps import get_config, get_engine, get_fanout, get_hub  # noqa: E402
from starling.api.errors import register_error_handlers  # noqa: E402
from starling.api.routes.friendships import router as friendships_router  # noqa: E402
from starling.api.routes.posts import router as posts_router  # noqa: E402
from starling.api.routes.users import router as users_router  # noqa: E402
from starling.engine.calendar import set_default_timezone  # noqa: E402
from starling.engine.realtime import FanoutListener  # noqa: E402
from starling.services.maintenance import MaintenanceLoop  # noqa: E402

logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    """Comma-separated ``CORS_ALLOW_ORIGINS``, or no cross-origin access."""
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]
    return []


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown — warm the engine, start relay + listener."""
    cfg = get_config()
    set_default_timezone(cfg.default_timezone)
    engine = get_engine()
    hub = get_hub()
    hub.bind_loop(asyncio.get_running_loop())

    listener = None
    if cfg.fanout_backend == "notify":
        listener = FanoutListener(engine, hub)
        listener.start()

    maintenance = MaintenanceLoop(engine, get_fanout(), cfg)
    maintenance.start(asyncio.get_running_loop())

    app.state.listener = listener
    logger.info("Starling API started — engine ready (%s)", engine.url.database)
    yield

    maintenance.stop()
    if listener is not None:
        listener.stop()
    logger.info("Starling API shutting down")


app = FastAPI(
    title="Starling API",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)

app.include_router(posts_router, prefix="/api")
app.include_router(friendships_router, prefix="/api")
app.include_router(users_router, prefix="/api")


@app.get("/api/health")
def health():
    return {"status": "ok"}


@app.get("/api/health/fanout")
def fanout_health(cfg=Depends(get_config), hub=Depends(get_hub)):
    """Whether the NOTIFY listener feeding this process is connected."""
    listener = getattr(app.state, "listener", None)
    return {
        "backend": cfg.fanout_backend,
        "listening": bool(listener and listener.healthy),
        "failed": bool(listener and listener.failed),
        "subscribers": hub.subscriber_count(),
    }
