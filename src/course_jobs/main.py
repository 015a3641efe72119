from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from course_jobs.api import ops
from course_jobs.config.settings import get_config_dir, get_runtime_config, get_settings
from course_jobs.container import Services, build_services
from course_jobs.logging_config import configure_logging, logger
from course_jobs.models.database import Database


def build_default_services() -> Services:
    """Services for the configured environment."""
    settings = get_settings()
    config = get_runtime_config(get_config_dir(settings))
    return build_services(settings, config, database=Database(settings.database_url))


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Create the API application.

    Args:
        services: Prebuilt services; built from settings at startup when None

    Returns:
        FastAPI application
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging("api")
        logger.info("Course Jobs API starting up")
        if getattr(app.state, "services", None) is None:
            app.state.services = build_default_services()
        await app.state.services.startup()

        pool = None
        if app.state.services.settings.run_workers_in_app:
            pool = app.state.services.worker_pool()
            await pool.start()
        yield
        if pool is not None:
            await pool.stop()
        await app.state.services.shutdown()
        logger.info("Course Jobs API shutting down")

    app = FastAPI(
        title="Course Jobs API",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.services = services
    app.include_router(ops.router)

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    @app.get("/")
    async def root():
        return {
            "name": "Course Jobs API",
            "version": "1.0.0",
            "description": "Background jobs, pipelines and batches for the course platform",
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(app, host=settings.server_host, port=settings.server_port)
