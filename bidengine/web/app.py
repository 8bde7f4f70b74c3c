from __future__ import annotations
import logging, os

from fastapi import FastAPI
from starlette.middleware.cors import CORSMiddleware

from bidengine.settings import Settings, configure_logging, load_settings
from bidengine.service import build_backend
from bidengine.scheduler import build_scheduler
from .api import build_api

logger = logging.getLogger("bidengine.web")


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or load_settings()
    configure_logging(settings)

    backend = build_backend(settings)
    app = build_api(backend)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=os.getenv("CORS_ALLOW_ORIGINS", "*").split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def _startup():
        if settings.sweeper.enabled:
            scheduler = build_scheduler(backend, settings)
            scheduler.start()
            app.state.scheduler = scheduler
            logger.info(
                "Expiration sweep every %ss", settings.sweeper.interval_seconds
            )
        logger.info("bidengine web started (%s)", settings.database.url)

    @app.on_event("shutdown")
    async def _shutdown():
        scheduler = getattr(app.state, "scheduler", None)
        if scheduler is not None and scheduler.running:
            scheduler.shutdown(wait=False)

    return app
