"""
Tests for marketsync/api/health.py - liveness and readiness endpoints.
"""
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock, patch

from marketsync.api.health import health_check, readiness_check


async def _aiter(items):
    for item in items:
        yield item


def _redis(keys=(), value="2026-03-01T12:00:00+00:00"):
    mock_redis = AsyncMock()
    mock_redis.ping = AsyncMock(return_value=True)
    mock_redis.scan_iter = MagicMock(return_value=_aiter(list(keys)))
    mock_redis.get = AsyncMock(return_value=value)
    return mock_redis


# ---------------------------------------------------------------------------
# GET /health - basic liveness
# ---------------------------------------------------------------------------


class TestHealthCheck:
    async def test_returns_healthy(self):
        """Liveness check always returns healthy with timestamp and version."""
        result = await health_check()
        assert result["status"] == "healthy"
        assert result["version"] == "0.1.0"

    async def test_timestamp_is_utc_iso(self):
        parsed = datetime.fromisoformat((await health_check())["timestamp"])
        assert parsed.tzinfo is not None


# ---------------------------------------------------------------------------
# GET /health/ready - readiness check (DB + Redis + heartbeats)
# ---------------------------------------------------------------------------


class TestReadinessCheck:
    async def test_all_healthy_returns_ready(self):
        mock_db = AsyncMock()
        with patch("marketsync.utils.dedup.get_redis", new_callable=AsyncMock, return_value=_redis()):
            result = await readiness_check(db=mock_db)

        assert result["status"] == "ready"
        assert result["checks"] == {"database": True, "redis": True}

    async def test_reports_worker_heartbeats(self):
        """Each heartbeat key shows up under its worker name."""
        keys = ["marketsync:worker_health:stale_job_sweeper", "marketsync:worker_health:job_worker:0"]
        with patch("marketsync.utils.dedup.get_redis", new_callable=AsyncMock, return_value=_redis(keys)):
            result = await readiness_check(db=AsyncMock())

        assert set(result["workers"]) == {"stale_job_sweeper", "job_worker:0"}
        assert result["workers"]["stale_job_sweeper"] == "2026-03-01T12:00:00+00:00"

    async def test_db_failure_returns_degraded(self):
        mock_db = AsyncMock()
        mock_db.execute = AsyncMock(side_effect=Exception("connection refused"))

        with patch("marketsync.utils.dedup.get_redis", new_callable=AsyncMock, return_value=_redis()):
            result = await readiness_check(db=mock_db)

        assert result["status"] == "degraded"
        assert result["checks"]["database"] is False
        assert result["checks"]["redis"] is True

    async def test_redis_failure_returns_degraded(self):
        with patch(
            "marketsync.utils.dedup.get_redis",
            new_callable=AsyncMock,
            side_effect=Exception("redis down"),
        ):
            result = await readiness_check(db=AsyncMock())

        assert result["status"] == "degraded"
        assert result["checks"]["redis"] is False
        assert result["workers"] == {}
