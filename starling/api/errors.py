"""
starling.api.errors — Engine error → HTTP response mapping
===========================================================

Services raise :class:`~starling.errors.StarlingError` subclasses; this
module turns them into ``{"error": code, "detail": message}`` responses
with the status code each error class declares.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from starling.errors import StarlingError, StorageUnavailable

logger = logging.getLogger(__name__)


def register_error_handlers(app: FastAPI) -> None:
    """Attach the engine's exception handlers to *app*."""

    @app.exception_handler(StarlingError)
    async def starling_error_handler(request: Request, exc: StarlingError) -> JSONResponse:
        if isinstance(exc, StorageUnavailable):
            logger.warning(
                "%s %s failed: %s", request.method, request.url.path, exc.message,
            )
        else:
            logger.debug(
                "%s %s rejected: %s (%s)",
                request.method, request.url.path, exc.code, exc.message,
            )
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())
