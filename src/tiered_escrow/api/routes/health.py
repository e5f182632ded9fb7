"""Health check endpoint.

Verifies connectivity to the database and Redis, returns structured status.
Used by Docker healthchecks, load balancers, and monitoring systems.
Redis only carries event fan-out, so an unreachable Redis degrades the
service rather than failing it.
"""

from __future__ import annotations

from fastapi import APIRouter
from sqlalchemy import text

from tiered_escrow.infrastructure.database.engine import _get_engine
from tiered_escrow.infrastructure.redis_client import get_redis, redis_available
from tiered_escrow.logging_config import get_logger
from tiered_escrow.schemas.escrow import HealthResponse

router = APIRouter(tags=["Health"])
logger = get_logger(__name__)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Returns the health status of the application and its dependencies.",
)
async def health_check() -> HealthResponse:
    """Check connectivity to the database and Redis."""
    db_status = "unknown"
    redis_status = "disabled"

    try:
        async with _get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
        db_status = "healthy"
    except Exception as exc:
        db_status = f"unhealthy: {exc}"
        logger.error("health.db_check_failed", error=str(exc))

    if redis_available():
        try:
            await get_redis().ping()
            redis_status = "healthy"
        except Exception as exc:
            redis_status = f"unhealthy: {exc}"
            logger.error("health.redis_check_failed", error=str(exc))

    redis_ok = redis_status in ("healthy", "disabled")
    overall = "ok" if db_status == "healthy" and redis_ok else "degraded"

    return HealthResponse(
        status=overall,
        version="0.1.0",
        database=db_status,
        redis=redis_status,
    )
