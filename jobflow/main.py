from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from jobflow.config.logging import setup_logging
from jobflow.config.settings import settings
from jobflow.infra.database import get_database
from jobflow.v1.adapters.registry_init import register_adapters
from jobflow.v1.core.exceptions import (
    JobflowError,
    RequestContextMiddleware,
    general_exception_handler,
    http_exception_handler,
    jobflow_exception_handler,
)
from jobflow.v1.core.registries import adapter_registry, job_registry
from jobflow.v1.healthz import router as health_router
from jobflow.v1.infra.jobs.routes import router as jobs_router
from jobflow.v1.runs.routes import router as runs_router
from jobflow.v1.runs.routes import staged_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    database = get_database(settings)
    register_adapters(database, settings)

    # Freeze registries in non-development environments to prevent runtime modifications
    if settings.environment != "development":
        job_registry.freeze()
        adapter_registry.freeze()

    yield

    await database.close()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    # Initialize structured logging
    setup_logging(settings)

    app = FastAPI(
        title=settings.app_name,
        description="Administration API for idempotent workflow runs",
        version=settings.version,
        debug=settings.debug,
        lifespan=lifespan,
        # All endpoints will be under /v1/ prefix
        openapi_url="/v1/openapi.json" if settings.debug else None,
        docs_url="/v1/docs" if settings.debug else None,
        redoc_url="/v1/redoc" if settings.debug else None,
    )

    app.add_middleware(RequestContextMiddleware)

    # Add CORS middleware for development
    if settings.debug:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.add_exception_handler(JobflowError, jobflow_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    # Include routers with /v1 prefix
    app.include_router(health_router, prefix="/v1", tags=["health"])
    app.include_router(runs_router, prefix="/v1")
    app.include_router(staged_router, prefix="/v1")
    app.include_router(jobs_router, prefix="/v1")

    return app


# Create the app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "jobflow.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
