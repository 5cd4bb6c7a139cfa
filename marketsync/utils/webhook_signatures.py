"""
Webhook credential validation - verify incoming deliveries are authentic.

Supported schemes (configured per connection on WebhookSubscription):
- API key: `x-api-key` header, or `Authorization: ApiKey <key>` / `Bearer <key>`
- Basic auth: `Authorization: Basic base64(user:password)`

Secrets are stored as SHA-256 hex digests and compared in constant time.
"""
import base64
import binascii
import hashlib
import hmac
import logging
from typing import Iterable, Mapping, Optional

from marketsync.models.enums import WebhookAuthType

logger = logging.getLogger(__name__)


def hash_secret(secret: str) -> str:
    """SHA-256 hex digest used to store webhook secrets."""
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


def _header(headers: Mapping[str, str], name: str) -> str:
    for key, value in headers.items():
        if key.lower() == name:
            return value or ""
    return ""


def extract_api_key(headers: Mapping[str, str]) -> Optional[str]:
    """API key from x-api-key or an ApiKey/Bearer Authorization header."""
    key = _header(headers, "x-api-key").strip()
    if key:
        return key
    auth = _header(headers, "authorization").strip()
    for prefix in ("ApiKey ", "Bearer "):
        if auth.startswith(prefix):
            return auth[len(prefix):].strip() or None
    return None


def extract_basic_credentials(headers: Mapping[str, str]) -> Optional[tuple[str, str]]:
    """(username, password) from a Basic Authorization header."""
    auth = _header(headers, "authorization").strip()
    if not auth.startswith("Basic "):
        return None
    try:
        decoded = base64.b64decode(auth[len("Basic "):].strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        logger.warning("Malformed Basic authorization header")
        return None
    if ":" not in decoded:
        return None
    username, password = decoded.split(":", 1)
    return username, password


def _digest_matches(expected_hex: Optional[str], secret: str) -> bool:
    if not expected_hex:
        return False
    return hmac.compare_digest(expected_hex, hash_secret(secret))


def match_subscription(headers: Mapping[str, str], subscriptions: Iterable):
    """
    Return the first active subscription whose credentials match the
    request headers, or None.
    """
    api_key = extract_api_key(headers)
    basic = extract_basic_credentials(headers)

    for sub in subscriptions:
        if not sub.active:
            continue
        if sub.authentication_type == WebhookAuthType.API_KEY.value and api_key:
            if _digest_matches(sub.api_key_hash, api_key):
                return sub
        elif sub.authentication_type == WebhookAuthType.BASIC_AUTHENTICATION.value and basic:
            username, password = basic
            if hmac.compare_digest(sub.basic_username or "", username) and _digest_matches(
                sub.basic_password_hash, password
            ):
                return sub
    return None
