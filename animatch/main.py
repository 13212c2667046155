"""
AniMatch — FastAPI Application Entry Point

Standalone host for the matching trigger API:
- structlog JSON logging, configured once for the process
- Async lifespan: creates the document table for the SQL backend, waits
  for pending chat hooks and disposes the engine on shutdown
- Structured request-logging middleware
- Liveness and readiness endpoints

A larger application can skip this module and mount
``animatch.api.router.router`` itself.
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from fastapi import Depends, FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from animatch.api.matching import get_matching_service, peek_matching_service
from animatch.config import Settings, get_settings
from animatch.services.matching_service import MatchingService

# ---------------------------------------------------------------------------
# Structured logging configuration
# ---------------------------------------------------------------------------


def configure_logging(level: str | None = None) -> None:
    level_name = (level or get_settings().LOG_LEVEL).upper()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level_name)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()

logger = structlog.get_logger("animatch")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage startup and shutdown of long-lived resources."""
    settings = app.state.settings

    # -- Startup --------------------------------------------------------- #
    logger.info(
        "startup_begin",
        environment=settings.ENVIRONMENT,
        store_backend=settings.STORE_BACKEND,
    )

    if settings.STORE_BACKEND == "sql":
        from animatch.database import create_all

        await create_all()
        logger.info("document_table_ready")

    logger.info("startup_complete")

    yield

    # -- Shutdown -------------------------------------------------------- #
    logger.info("shutdown_begin")

    service = peek_matching_service()
    if service is not None:
        await service.propagator.wait_for_hooks()

    if settings.STORE_BACKEND == "sql":
        from animatch.database import get_engine

        await get_engine().dispose()
        logger.info("database_pool_closed")

    logger.info("shutdown_complete")


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------

class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    """Log every request with method, path, status code, and duration."""

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration_ms = (time.perf_counter() - start) * 1000
            logger.exception(
                "request_error",
                method=request.method,
                path=request.url.path,
                duration_ms=round(duration_ms, 2),
            )
            raise

        duration_ms = (time.perf_counter() - start) * 1000
        logger.info(
            "request_handled",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            duration_ms=round(duration_ms, 2),
        )
        return response


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()

    app = FastAPI(
        title="AniMatch",
        description="Interest-based, rate-limited fan matching",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs" if not settings.is_production else None,
        redoc_url="/redoc" if not settings.is_production else None,
    )
    app.state.settings = settings
    app.add_middleware(StructuredLoggingMiddleware)

    @app.get("/health", tags=["health"])
    async def health_liveness() -> dict:
        """Liveness probe; healthy whenever the process is running."""
        return {"status": "healthy"}

    @app.get("/health/deep", tags=["health"])
    async def health_deep(
        service: MatchingService = Depends(get_matching_service),
    ) -> dict:
        """Readiness probe: one read against the document store."""
        result: dict = {"status": "healthy", "store": settings.STORE_BACKEND}
        try:
            await service.store.get("health", "probe")
        except Exception as exc:
            logger.error("health_store_failure", error=str(exc))
            result["store_error"] = str(exc)
            result["status"] = "degraded"
        return result

    from animatch.api.router import router as api_router

    app.include_router(api_router, prefix="/api/v1")
    return app


app = create_app()
