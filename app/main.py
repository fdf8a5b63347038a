import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.router import api_router
from app.core.config import get_settings
from app.services.conference_service import ConferenceService
from app.services.timeout_sweeper import TimeoutSweepScheduler


logger = logging.getLogger(__name__)


def _configure_logging() -> None:
    root_logger = logging.getLogger()
    if root_logger.handlers:
        return
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    scheduler: TimeoutSweepScheduler = app.state.timeout_sweep_scheduler
    if get_settings().timeout_sweeper_enabled:
        scheduler.start()
    else:
        logger.info("Timeout sweeper disabled, relying on the cron endpoint")
    try:
        yield
    finally:
        scheduler.stop()


def create_application() -> FastAPI:
    _configure_logging()
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        openapi_url=f"{settings.api_prefix}/openapi.json",
        docs_url=f"{settings.api_prefix}/docs",
        redoc_url=f"{settings.api_prefix}/redoc",
        lifespan=_lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router, prefix=settings.api_prefix)
    app.state.timeout_sweep_scheduler = TimeoutSweepScheduler(
        _run_scheduled_sweep,
        settings.sweep_interval_seconds,
    )

    return app


def _run_scheduled_sweep() -> None:
    ConferenceService(get_settings()).sweep_once()


app = create_application()
