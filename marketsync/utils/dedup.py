"""
Redis client access plus the content fingerprints used for dedup keys.

Fingerprints are computed over canonical JSON (sorted keys, compact
separators) so that transport formatting never changes a hash.
"""
import hashlib
import json
import logging
from typing import Any, Optional

logger = logging.getLogger(__name__)

# Redis client (lazily initialized)
_redis_client = None


async def get_redis():
    """Get or create Redis connection."""
    global _redis_client
    if _redis_client is None:
        import redis.asyncio as aioredis
        from marketsync.config import get_settings
        _redis_client = aioredis.from_url(
            get_settings().redis_url,
            decode_responses=True,
        )
    return _redis_client


def canonical_json(value: Any) -> str:
    """Stable JSON text for hashing."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def compute_body_hash(body: bytes) -> str:
    """
    SHA-256 of the normalized request body.
    JSON bodies are re-serialized canonically; anything else is hashed raw.
    """
    try:
        parsed = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return hashlib.sha256(body).hexdigest()
    return sha256_hex(canonical_json(parsed))


def make_event_key(
    provider: str,
    connection_id: Optional[str],
    event_type: Optional[str],
    remote_object_id: Optional[str],
    body_hash: str,
) -> str:
    """
    Deterministic webhook event fingerprint.
    Same occurrence (identifying fields + body) always yields the same key.
    """
    raw = "|".join([
        provider,
        connection_id or "",
        event_type or "",
        remote_object_id or "",
        body_hash,
    ])
    return f"{provider}:{sha256_hex(raw)[:64]}"


def derive_idempotency_key(prefix: str, *parts: Any) -> str:
    """Deterministic idempotency key for callers that do not supply one."""
    digest = sha256_hex(canonical_json(list(parts)))[:24]
    return f"{prefix}:{digest}"
