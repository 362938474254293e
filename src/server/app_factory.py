"""Application factory for the automation engine service."""

from __future__ import annotations

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from src.config import get_settings
from src.utils.logger import setup_logging


def create_app() -> FastAPI:
    """Create FastAPI application with automation routes."""
    settings = get_settings()
    setup_logging(settings.logging)
    logger = logging.getLogger(__name__)

    from src.server.automation import (
        router as automation_router,
        start_tick_scheduler,
        stop_tick_scheduler,
    )

    logger.info(
        "Automation engine config loaded",
        extra={
            "automation_enabled": bool(settings.automation.enabled),
            "tick_scheduler_enabled": bool(settings.automation.tick_scheduler_enabled),
        },
    )

    @asynccontextmanager
    async def _lifespan(_: FastAPI):
        await start_tick_scheduler()
        try:
            yield
        finally:
            await stop_tick_scheduler()

    app = FastAPI(title="Automation Rule Engine", version="0.1.0", lifespan=_lifespan)

    @app.exception_handler(RequestValidationError)
    async def _validation_error(_request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": exc.errors()})

    @app.get("/")
    async def root() -> dict[str, str]:
        return {"status": "ok", "service": "automation-engine"}

    @app.get("/health")
    async def health() -> dict[str, object]:
        return {"status": "ok", "automation_enabled": bool(settings.automation.enabled)}

    app.include_router(automation_router)
    return app
