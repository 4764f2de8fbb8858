"""FastAPI application factory."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from trap_pipeline import __version__
from trap_pipeline.api.routers import get_api_router
from trap_pipeline.core.config import AppSettings, get_settings
from trap_pipeline.core.logging import configure_logging
from trap_pipeline.workers.supervisor import PipelineSupervisor

logger = logging.getLogger(__name__)


def create_app(settings: Optional[AppSettings] = None) -> FastAPI:
    """Application factory."""

    settings = settings or get_settings()
    configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):  # noqa: D401
        """Start the ingestion pipeline alongside the HTTP server."""

        supervisor: Optional[PipelineSupervisor] = None
        if settings.pipeline_enabled:
            supervisor = PipelineSupervisor(settings)
            await supervisor.start()
        else:
            logger.info("pipeline_disabled")
        app.state.supervisor = supervisor
        try:
            yield
        finally:
            if supervisor is not None:
                await supervisor.stop()

    app = FastAPI(
        title="Trap Telemetry Pipeline",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.supervisor = None
    app.include_router(get_api_router())
    return app
