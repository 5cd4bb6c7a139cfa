"""
Per-connection locks - at most one job holds a connection at a time.

A busy connection is rejected immediately, never waited on, so backpressure
stays visible to the caller. Redis locks use SET NX PX with a unique token
and compare-and-delete release; the TTL frees a lock left behind by a
crashed process. The local backend serves single-process deployments and
tests.
"""
import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from marketsync.errors import ConnectionBusyError, LockBackendError

logger = logging.getLogger(__name__)

LOCK_KEY_PREFIX = "marketsync:lock:connection"

_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
else
    return 0
end
"""

_REFRESH_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('pexpire', KEYS[1], ARGV[2])
else
    return 0
end
"""


@dataclass(frozen=True)
class LockToken:
    connection_id: str
    value: str

    @property
    def key(self) -> str:
        return lock_key(self.connection_id)


def lock_key(connection_id: str) -> str:
    return f"{LOCK_KEY_PREFIX}:{connection_id}"


class RedisLockBackend:
    """Lock storage in Redis (shared across processes)."""

    async def _redis(self):
        from marketsync.utils.dedup import get_redis
        return await get_redis()

    async def try_acquire(self, key: str, value: str, ttl_ms: int) -> bool:
        redis = await self._redis()
        return bool(await redis.set(key, value, nx=True, px=ttl_ms))

    async def release(self, key: str, value: str) -> bool:
        redis = await self._redis()
        return bool(await redis.eval(_RELEASE_SCRIPT, 1, key, value))

    async def refresh(self, key: str, value: str, ttl_ms: int) -> bool:
        redis = await self._redis()
        return bool(await redis.eval(_REFRESH_SCRIPT, 1, key, value, ttl_ms))

    async def owner(self, key: str) -> Optional[str]:
        redis = await self._redis()
        return await redis.get(key)


class LocalLockBackend:
    """In-process lock storage; entries expire after their TTL like Redis keys."""

    def __init__(self):
        self._entries: dict[str, tuple[str, float]] = {}
        self._guard = asyncio.Lock()

    def _now(self) -> float:
        return asyncio.get_running_loop().time()

    def _live_value(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._now():
            del self._entries[key]
            return None
        return value

    async def try_acquire(self, key: str, value: str, ttl_ms: int) -> bool:
        async with self._guard:
            if self._live_value(key) is not None:
                return False
            self._entries[key] = (value, self._now() + ttl_ms / 1000.0)
            return True

    async def release(self, key: str, value: str) -> bool:
        async with self._guard:
            if self._live_value(key) != value:
                return False
            del self._entries[key]
            return True

    async def refresh(self, key: str, value: str, ttl_ms: int) -> bool:
        async with self._guard:
            if self._live_value(key) != value:
                return False
            self._entries[key] = (value, self._now() + ttl_ms / 1000.0)
            return True

    async def owner(self, key: str) -> Optional[str]:
        async with self._guard:
            return self._live_value(key)


class ConnectionLockManager:
    """
    Keyed mutex over connection ids.

    Usage:
        token = await manager.acquire(connection_id)   # None when busy
        ...
        await manager.release(token)

    or, scoped:
        async with manager.hold(connection_id):
            # exclusive access to the connection
    """

    def __init__(self, backend, ttl_seconds: int = 3600):
        self.backend = backend
        self.ttl_ms = int(ttl_seconds * 1000)

    async def acquire(self, connection_id: str) -> Optional[LockToken]:
        """Try once. Returns a token, or None if another holder has the connection."""
        token = LockToken(connection_id=str(connection_id), value=uuid.uuid4().hex)
        try:
            acquired = await self.backend.try_acquire(token.key, token.value, self.ttl_ms)
        except Exception as e:
            # Never proceed without the lock
            logger.error("Lock backend error acquiring %s: %s", token.key, str(e))
            raise LockBackendError(str(e)) from e

        if not acquired:
            logger.info("Connection %s busy, acquisition rejected", str(connection_id)[:8])
            return None
        return token

    async def release(self, token: LockToken) -> bool:
        """Release only if the token still owns the lock. Errors are logged, the TTL cleans up."""
        try:
            released = await self.backend.release(token.key, token.value)
        except Exception as e:
            logger.warning("Lock release error for %s: %s", token.key, str(e))
            return False
        if not released:
            logger.warning("Lock for connection %s was no longer held by this token", token.connection_id[:8])
        return released

    async def refresh(self, token: LockToken) -> bool:
        """Extend the TTL of a held lock. Returns False if ownership was lost."""
        try:
            return await self.backend.refresh(token.key, token.value, self.ttl_ms)
        except Exception as e:
            logger.warning("Lock refresh error for %s: %s", token.key, str(e))
            return False

    async def is_locked(self, connection_id: str) -> bool:
        return await self.backend.owner(lock_key(str(connection_id))) is not None

    @asynccontextmanager
    async def hold(self, connection_id: str):
        """Scoped acquisition. Raises ConnectionBusyError when busy; always releases."""
        token = await self.acquire(connection_id)
        if token is None:
            raise ConnectionBusyError(str(connection_id))
        try:
            yield token
        finally:
            await self.release(token)


_lock_manager: Optional[ConnectionLockManager] = None


def get_lock_manager() -> ConnectionLockManager:
    """Process-wide lock manager built from settings."""
    global _lock_manager
    if _lock_manager is None:
        from marketsync.config import get_settings
        settings = get_settings()
        backend = LocalLockBackend() if settings.lock_backend == "local" else RedisLockBackend()
        _lock_manager = ConnectionLockManager(backend, ttl_seconds=settings.lock_ttl_seconds)
    return _lock_manager
