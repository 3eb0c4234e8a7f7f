"""RecipeFlow API application."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from recipeflow.api.routes import register_exception_handlers, router
from recipeflow.config import Settings, get_settings
from recipeflow.services.admission import ExtractionJobService, create_job_service
from recipeflow.services.reaper import JobReaper

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_app(
    settings: Optional[Settings] = None,
    job_service_factory: Optional[Callable[[], ExtractionJobService]] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Settings to use instead of the environment
        job_service_factory: Builds the job service at startup; defaults to
            ``create_job_service`` with ``settings``
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        service = job_service_factory() if job_service_factory else create_job_service(settings)
        reaper = JobReaper(
            job_store=service.job_store,
            live_job_ids=service.active_job_ids,
            max_job_age_seconds=settings.max_job_age_seconds,
            temp_dir=settings.resolved_temp_dir,
            orphan_temp_max_age_seconds=settings.orphan_temp_max_age_seconds,
            interval_seconds=settings.reaper_interval_seconds,
            extraction_cache=service.runner.cache,
        )
        app.state.job_service = service
        reaper.start()
        logger.info(f"RecipeFlow started with {settings.max_concurrent_jobs} execution slots")
        try:
            yield
        finally:
            await reaper.stop()
            await service.shutdown(settings.shutdown_grace_seconds)
            app.state.job_service = None

    app = FastAPI(title="RecipeFlow API", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)
    app.include_router(router)
    return app


if __name__ == "__main__":
    configure_logging(get_settings().log_level)
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
