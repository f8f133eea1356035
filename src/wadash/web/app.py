from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .. import __version__
from ..config import DashboardConfig
from ..service import DashboardService
from .routes import router, ws_router

logger = logging.getLogger(__name__)


def create_app(
    config: DashboardConfig | None = None,
    *,
    service: DashboardService | None = None,
) -> FastAPI:
    """
    Build the dashboard API.

    With `service` given the app uses it as-is (tests); otherwise the service is
    created from `config` when the app starts.
    """

    cfg = service.config if service is not None else (config or DashboardConfig.from_env())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        svc = service or await DashboardService.create(cfg)
        app.state.service = svc
        logger.info("Dashboard starting (bridge %s)", cfg.bridge.url)
        await svc.start()
        try:
            yield
        finally:
            await svc.stop()
            logger.info("Dashboard stopped")

    app = FastAPI(
        title="WhatsApp Dashboard API",
        description="Realtime bridge between a linked WhatsApp session and the dashboard UI",
        version=__version__,
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )
    app.include_router(router)
    app.include_router(ws_router)
    return app
