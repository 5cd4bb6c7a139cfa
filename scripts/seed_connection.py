"""
Seed a marketplace connection with encrypted credentials and a webhook
subscription.

Usage:
    python -m scripts.seed_connection --name "Main store" --seller-id 12345 \
        --api-key KEY --api-secret SECRET
    python -m scripts.seed_connection ... --webhook-basic-user hooks   # basic auth instead of API key

The generated webhook secret is printed once and only its hash is stored.
"""
import argparse
import asyncio
import logging
import secrets

from sqlalchemy import select

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)


async def seed(args: argparse.Namespace) -> None:
    from marketsync.database import async_session_factory
    from marketsync.integrations.trendyol import DEFAULT_BASE_URL
    from marketsync.models.connection import Connection
    from marketsync.models.enums import WebhookAuthType
    from marketsync.models.webhook import WebhookSubscription
    from marketsync.utils.encryption import encrypt_config
    from marketsync.utils.webhook_signatures import hash_secret

    async with async_session_factory() as db:
        result = await db.execute(
            select(Connection).where(
                Connection.marketplace == "trendyol",
                Connection.seller_id == args.seller_id,
            )
        )
        existing = result.scalar_one_or_none()
        if existing:
            logger.info("Connection for seller %s already exists (id=%s). Skipping.", args.seller_id, existing.id)
            return

        connection = Connection(
            name=args.name,
            marketplace="trendyol",
            base_url=args.base_url or DEFAULT_BASE_URL,
            seller_id=args.seller_id,
            integration_name=args.integration_name,
            config_encrypted=encrypt_config({"api_key": args.api_key, "api_secret": args.api_secret}),
        )
        db.add(connection)
        await db.flush()

        webhook_secret = secrets.token_urlsafe(32)
        if args.webhook_basic_user:
            subscription = WebhookSubscription(
                connection_id=connection.id,
                provider="trendyol",
                authentication_type=WebhookAuthType.BASIC_AUTHENTICATION.value,
                basic_username=args.webhook_basic_user,
                basic_password_hash=hash_secret(webhook_secret),
                event_resource=args.event_resource,
            )
        else:
            subscription = WebhookSubscription(
                connection_id=connection.id,
                provider="trendyol",
                authentication_type=WebhookAuthType.API_KEY.value,
                api_key_hash=hash_secret(webhook_secret),
                event_resource=args.event_resource,
            )
        db.add(subscription)
        await db.commit()

    logger.info("Created connection %s (%s)", connection.id, args.name)
    print(f"connection_id={connection.id}")
    print(f"webhook_secret={webhook_secret}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed a marketplace connection")
    parser.add_argument("--name", required=True)
    parser.add_argument("--seller-id", required=True)
    parser.add_argument("--api-key", required=True)
    parser.add_argument("--api-secret", required=True)
    parser.add_argument("--base-url", default=None)
    parser.add_argument("--integration-name", default=None)
    parser.add_argument("--event-resource", default="orders")
    parser.add_argument("--webhook-basic-user", default=None)
    asyncio.run(seed(parser.parse_args()))


if __name__ == "__main__":
    main()
