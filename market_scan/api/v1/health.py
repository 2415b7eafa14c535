from __future__ import annotations

from fastapi import APIRouter, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from redis.exceptions import RedisError

from market_scan.schemas.common import APIResponse, HealthResponse, ReadinessResponse

router = APIRouter(prefix="/health", tags=["Health"])
metrics_router = APIRouter(tags=["Health"])


@router.get("", response_model=HealthResponse)
async def liveness(request: Request) -> HealthResponse:
    """Liveness probe. Returns 200 if the process is alive."""
    settings = request.app.state.settings
    return HealthResponse(
        status="alive",
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
    )


@router.get("/ready", response_model=APIResponse)
async def readiness(request: Request) -> APIResponse:
    """Readiness probe. Checks that the database and Redis are available."""
    from market_scan.db.session import check_db_health

    db_ok = await check_db_health()

    redis = getattr(request.app.state, "redis", None)
    redis_ok = False
    if redis:
        try:
            await redis.ping()
            redis_ok = True
        except (RedisError, OSError):
            redis_ok = False

    checks = ReadinessResponse(database=db_ok, redis=redis_ok)

    return APIResponse(
        success=checks.database and checks.redis,
        request_id="healthcheck",
        data=checks.model_dump(),
    )


@metrics_router.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    """Prometheus exposition."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
