"""FastAPI application entry point."""

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any, cast

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.v1.router import api_router
from app.config import settings
from app.core.database import close_db, init_db
from app.core.logging import setup_logging
from app.core.redis import close_redis
from app.services.pipeline_task_manager import get_pipeline_task_manager

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    setup_logging(debug=settings.debug)

    logger.info(
        "Starting StrategyChain",
        extra={
            "environment": settings.environment,
            "version": settings.app_version,
            "store_backend": settings.submission_store_backend,
        },
    )

    if settings.environment == "development" and settings.submission_store_backend == "database":
        await init_db()
        logger.info("Development database initialized")

    yield

    logger.info("Shutting down StrategyChain")
    await close_redis()
    await close_db()


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed bodies are rejected with 400 before anything is written."""
    errors = exc.errors()
    message = "; ".join(
        str(error.get("msg", "Invalid request")).removeprefix("Value error, ") for error in errors
    )
    logger.info("Request validation failed", extra={"path": request.url.path, "errors": len(errors)})
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": message or "Invalid request"},
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description=(
            "Orchestrates a five-step chain of generation webhooks per submission, "
            "with callbacks, retry, regeneration and pollable status."
        ),
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    # CORS middleware
    app.add_middleware(
        cast(Any, CORSMiddleware),
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(RequestValidationError, cast(Any, request_validation_handler))

    # Include API router
    app.include_router(api_router, prefix=settings.api_v1_prefix)

    @app.get(
        "/health",
        summary="Health check",
        description="Return service health status and backend version information.",
    )
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "healthy", "version": settings.app_version}

    @app.get(
        "/health/queue",
        summary="Queue health check",
        description="Return Redis-backed queue length and delayed cascade count.",
    )
    async def queue_health_check() -> dict[str, Any]:
        """Queue health endpoint."""
        manager = get_pipeline_task_manager()
        queued, scheduled = await asyncio.gather(
            manager.get_queue_size(),
            manager.get_scheduled_size(),
        )
        return {
            "status": "healthy",
            "version": settings.app_version,
            "queue": {
                "queued": queued,
                "scheduled": scheduled,
                "limit": manager.queue_size_limit,
                "workers": manager.worker_count,
            },
        }

    return app


app = create_app()
