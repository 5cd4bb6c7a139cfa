"""
Connection lookup and marketplace client construction.
"""
import logging
import uuid
from typing import Callable, Union

from sqlalchemy.ext.asyncio import AsyncSession

from marketsync.errors import ConnectionNotFoundError
from marketsync.integrations.marketplace_base import MarketplaceClient
from marketsync.integrations.trendyol import TrendyolClient
from marketsync.models.connection import Connection
from marketsync.utils.encryption import decrypt_config

logger = logging.getLogger(__name__)

ClientFactory = Callable[[Connection], MarketplaceClient]


def as_uuid(value: Union[str, uuid.UUID]) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


async def load_connection(db: AsyncSession, connection_id) -> Connection:
    try:
        key = as_uuid(connection_id)
    except ValueError:
        raise ConnectionNotFoundError(f"Invalid connection id: {connection_id}")
    connection = await db.get(Connection, key)
    if connection is None:
        raise ConnectionNotFoundError(f"Connection {str(connection_id)[:8]} not found")
    return connection


def build_client(connection: Connection) -> MarketplaceClient:
    """Build the marketplace client for a connection from its encrypted config."""
    from marketsync.config import get_settings
    settings = get_settings()

    if connection.marketplace != "trendyol":
        raise ValueError(f"Unsupported marketplace: {connection.marketplace}")

    config = decrypt_config(connection.config_encrypted)
    return TrendyolClient(
        seller_id=connection.seller_id,
        api_key=config.get("api_key", ""),
        api_secret=config.get("api_secret", ""),
        base_url=connection.base_url,
        integration_name=connection.integration_name or settings.marketplace_integration_name,
        timeout=settings.marketplace_timeout_seconds,
    )
