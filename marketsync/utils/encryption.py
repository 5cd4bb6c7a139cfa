"""
Encryption utilities for connection credentials (API key/secret).
Uses Fernet symmetric encryption with the configured ENCRYPTION_KEY.
"""
import json
import logging
from typing import Optional

logger = logging.getLogger(__name__)


def _get_fernet():
    """Get a Fernet cipher using the configured encryption key."""
    from cryptography.fernet import Fernet
    from marketsync.config import get_settings
    settings = get_settings()

    key = settings.encryption_key
    if not key:
        logger.warning("ENCRYPTION_KEY not configured; storing values as-is")
        return None

    return Fernet(key.encode() if isinstance(key, str) else key)


def encrypt_value(plaintext: str) -> str:
    """
    Encrypt a string value. Returns the encrypted token as a string.
    Falls back to storing plaintext if encryption key is not configured.
    """
    if not plaintext:
        return plaintext

    fernet = _get_fernet()
    if fernet is None:
        return plaintext

    return fernet.encrypt(plaintext.encode()).decode()


def decrypt_value(encrypted: str) -> Optional[str]:
    """
    Decrypt a string value. Returns the plaintext string.
    Falls back to returning the value as-is if decryption fails
    (handles values stored before a key was configured).
    """
    if not encrypted:
        return encrypted

    fernet = _get_fernet()
    if fernet is None:
        return encrypted

    from cryptography.fernet import InvalidToken
    try:
        return fernet.decrypt(encrypted.encode()).decode()
    except InvalidToken:
        return encrypted


def encrypt_config(config: dict) -> str:
    """Serialize and encrypt a connection config object."""
    return encrypt_value(json.dumps(config, sort_keys=True))


def decrypt_config(encrypted: Optional[str]) -> dict:
    """Decrypt a connection config object. Empty input yields an empty dict."""
    if not encrypted:
        return {}
    plaintext = decrypt_value(encrypted)
    try:
        data = json.loads(plaintext)
    except (TypeError, ValueError):
        logger.error("Connection config is not valid JSON after decryption")
        return {}
    return data if isinstance(data, dict) else {}
