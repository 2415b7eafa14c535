from __future__ import annotations

from contextlib import asynccontextmanager

import httpx
import redis.asyncio as aioredis
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError

from market_scan.api.v1.health import metrics_router
from market_scan.api.v1.router import v1_router
from market_scan.config import get_settings
from market_scan.db.session import close_db, init_db
from market_scan.middleware.cors import setup_cors
from market_scan.middleware.request_id import RequestIDMiddleware
from market_scan.utils.exceptions import ScanTrackerError
from market_scan.utils.logging import get_logger, setup_logging

logger = get_logger(__name__)


def create_redis_client(url: str):
    return aioredis.from_url(url)


def create_http_client(settings) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=settings.ANALYSIS_TIMEOUT)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown events."""
    settings = get_settings()
    app.state.settings = settings

    # Initialize logging
    setup_logging(settings.LOG_LEVEL, json_logs=not settings.DEBUG)

    # Initialize database
    await init_db()
    logger.info("Database initialized")

    # Initialize Redis (push channels + active scan pointers)
    try:
        app.state.redis = create_redis_client(settings.REDIS_URL)
        await app.state.redis.ping()
        logger.info("Redis connected")
    except (RedisError, OSError) as e:
        logger.warning("Redis not available, running without live updates", error=str(e))
        app.state.redis = None

    # Outbound client for the price analysis service
    app.state.http_client = create_http_client(settings)

    yield

    # Shutdown
    logger.info("Shutting down...")
    await app.state.http_client.aclose()
    if app.state.redis:
        await app.state.redis.aclose()
    await close_db()
    logger.info("Shutdown complete")


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Market price scans for dealer inventory: submission, live progress and history",
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url="/redoc" if settings.DEBUG else None,
        lifespan=lifespan,
    )

    # Middleware (order matters: last added = first executed)
    app.add_middleware(RequestIDMiddleware)
    setup_cors(app, settings.ALLOWED_ORIGINS)

    # Exception handlers
    @app.exception_handler(ScanTrackerError)
    async def scan_error_handler(request: Request, exc: ScanTrackerError):
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "success": False,
                "request_id": getattr(request.state, "request_id", ""),
                "error": {"code": type(exc).__name__, "message": exc.message},
            },
        )

    # API routes
    app.include_router(v1_router, prefix="/api/v1")
    app.include_router(metrics_router)

    return app
