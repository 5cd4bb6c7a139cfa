"""
Health check endpoints.

- GET /health       - basic liveness (always 200 if app running)
- GET /health/ready - readiness check (DB + Redis + worker heartbeats)
"""
import logging
from datetime import datetime, timezone
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
from marketsync.database import get_db

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])

HEARTBEAT_PREFIX = "marketsync:worker_health:"


@router.get("/health")
async def health_check():
    """Basic liveness check - returns 200 if the app is running."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": "0.1.0",
    }


@router.get("/health/ready")
async def readiness_check(
    db: AsyncSession = Depends(get_db),
):
    """
    Readiness check - verifies database and Redis connectivity and reports
    the last heartbeat of each background worker.
    """
    checks = {"database": False, "redis": False}
    workers: dict = {}

    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = True
    except Exception as e:
        logger.error("Database health check failed: %s", str(e))

    try:
        from marketsync.utils.dedup import get_redis
        redis = await get_redis()
        await redis.ping()
        checks["redis"] = True
        async for key in redis.scan_iter(match=f"{HEARTBEAT_PREFIX}*"):
            workers[key[len(HEARTBEAT_PREFIX):]] = await redis.get(key)
    except Exception as e:
        logger.warning("Redis health check failed: %s", str(e))

    all_healthy = all(checks.values())
    return {
        "status": "ready" if all_healthy else "degraded",
        "checks": checks,
        "workers": workers,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
