"""Initial schema - connections, jobs, cursors, mirrored entities, commands, audit, webhooks.

Revision ID: 001
Revises:
Create Date: 2026-10-17
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _entity_columns() -> list:
    """Columns shared by every table mirrored from the marketplace."""
    return [
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "connection_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("connections.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("marketplace", sa.String(30), nullable=False, server_default="trendyol"),
        sa.Column("remote_id", sa.String(100), nullable=False),
        sa.Column("raw", postgresql.JSONB, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def _natural_key(table: str) -> sa.UniqueConstraint:
    return sa.UniqueConstraint("connection_id", "marketplace", "remote_id", name=f"uq_{table}_natural_key")


def upgrade() -> None:
    # Connections
    op.create_table(
        "connections",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("marketplace", sa.String(30), nullable=False, server_default="trendyol"),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("base_url", sa.String(255), nullable=False),
        sa.Column("seller_id", sa.String(50), nullable=False),
        sa.Column("integration_name", sa.String(100)),
        sa.Column("config_encrypted", sa.Text),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Jobs
    op.create_table(
        "jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "connection_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("connections.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("job_type", sa.String(40), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="queued"),
        sa.Column("request_payload", postgresql.JSONB),
        sa.Column("result_summary", postgresql.JSONB),
        sa.Column("error", sa.Text),
        sa.Column("lock_token", sa.String(64)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("started_at", sa.DateTime(timezone=True)),
        sa.Column("finished_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_jobs_connection_created", "jobs", ["connection_id", "created_at"])
    op.create_index("ix_jobs_status_started", "jobs", ["status", "started_at"])

    # Sync cursors
    op.create_table(
        "sync_cursors",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "connection_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("connections.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("resource_type", sa.String(30), nullable=False),
        sa.Column("last_success_at", sa.DateTime(timezone=True)),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True)),
        sa.Column("last_status", sa.String(20)),
        sa.Column("last_job_id", postgresql.UUID(as_uuid=True)),
        sa.Column("last_error", sa.Text),
        sa.Column("last_summary", postgresql.JSONB),
        sa.UniqueConstraint("connection_id", "resource_type", name="uq_sync_cursors_connection_resource"),
    )

    # Orders
    op.create_table(
        "orders",
        *_entity_columns(),
        sa.Column("order_number", sa.String(50)),
        sa.Column("shipment_package_id", sa.String(50)),
        sa.Column("status", sa.String(40)),
        sa.Column("cargo_tracking_number", sa.String(100)),
        sa.Column("order_date", sa.DateTime(timezone=True)),
        sa.Column("last_modified_at", sa.DateTime(timezone=True)),
        _natural_key("orders"),
    )
    op.create_index("ix_orders_connection_id", "orders", ["connection_id"])
    op.create_index("ix_orders_shipment_package_id", "orders", ["shipment_package_id"])

    # Products
    op.create_table(
        "products",
        *_entity_columns(),
        sa.Column("barcode", sa.String(100)),
        sa.Column("title", sa.String(500)),
        sa.Column("stock_code", sa.String(100)),
        sa.Column("quantity", sa.Integer),
        sa.Column("sale_price", sa.Float),
        sa.Column("list_price", sa.Float),
        sa.Column("approved", sa.Boolean),
        _natural_key("products"),
    )
    op.create_index("ix_products_connection_id", "products", ["connection_id"])
    op.create_index("ix_products_barcode", "products", ["barcode"])

    # Claims and claim items
    op.create_table(
        "claims",
        *_entity_columns(),
        sa.Column("order_number", sa.String(50)),
        sa.Column("status", sa.String(40)),
        sa.Column("claim_date", sa.DateTime(timezone=True)),
        sa.Column("last_modified_at", sa.DateTime(timezone=True)),
        _natural_key("claims"),
    )
    op.create_index("ix_claims_connection_id", "claims", ["connection_id"])

    op.create_table(
        "claim_items",
        *_entity_columns(),
        sa.Column(
            "claim_db_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("claims.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("claim_remote_id", sa.String(100), nullable=False),
        sa.Column("barcode", sa.String(100)),
        sa.Column("quantity", sa.Integer),
        sa.Column("item_status", sa.String(40)),
        sa.Column("reason_code", sa.String(50)),
        sa.Column("reason_name", sa.String(255)),
        _natural_key("claim_items"),
    )
    op.create_index("ix_claim_items_connection_id", "claim_items", ["connection_id"])
    op.create_index("ix_claim_items_claim_db_id", "claim_items", ["claim_db_id"])

    # Questions and answers
    op.create_table(
        "questions",
        *_entity_columns(),
        sa.Column("status", sa.String(40)),
        sa.Column("text", sa.Text),
        sa.Column("asked_at", sa.DateTime(timezone=True)),
        sa.Column("product_name", sa.String(500)),
        sa.Column("product_main_id", sa.String(100)),
        sa.Column("customer_id", sa.String(50)),
        _natural_key("questions"),
    )
    op.create_index("ix_questions_connection_id", "questions", ["connection_id"])

    op.create_table(
        "answers",
        *_entity_columns(),
        sa.Column(
            "question_db_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("questions.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("text", sa.Text),
        sa.Column("answered_at", sa.DateTime(timezone=True)),
        _natural_key("answers"),
    )
    op.create_index("ix_answers_connection_id", "answers", ["connection_id"])
    op.create_index("ix_answers_question_db_id", "answers", ["question_db_id"])

    # Settlements
    op.create_table(
        "settlements",
        *_entity_columns(),
        sa.Column("transaction_type", sa.String(50)),
        sa.Column("amount", sa.Float),
        sa.Column("transaction_date", sa.DateTime(timezone=True)),
        sa.Column("order_number", sa.String(50)),
        _natural_key("settlements"),
    )
    op.create_index("ix_settlements_connection_id", "settlements", ["connection_id"])

    # Commands
    op.create_table(
        "commands",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "connection_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("connections.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("command_type", sa.String(40), nullable=False),
        sa.Column("target_id", sa.String(100)),
        sa.Column("idempotency_key", sa.String(200), nullable=False),
        sa.Column("write_mode", sa.String(10), nullable=False, server_default="live"),
        sa.Column("status", sa.String(20), nullable=False, server_default="queued"),
        sa.Column("job_id", postgresql.UUID(as_uuid=True)),
        sa.Column("request", postgresql.JSONB, nullable=False),
        sa.Column("response", postgresql.JSONB),
        sa.Column("error", postgresql.JSONB),
        sa.Column("attempt_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("executor_user", sa.String(100)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("connection_id", "idempotency_key", "write_mode", name="uq_commands_idempotency"),
    )
    op.create_index("ix_commands_status", "commands", ["status"])

    # Audit trail (append-only)
    op.create_table(
        "audit_entries",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "connection_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("connections.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("marketplace", sa.String(30), nullable=False, server_default="trendyol"),
        sa.Column("entity_type", sa.String(30), nullable=False),
        sa.Column("entity_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("field", sa.String(50), nullable=False, server_default="status"),
        sa.Column("previous_value", sa.String(255)),
        sa.Column("new_value", sa.String(255)),
        sa.Column("executor_app", sa.String(50), nullable=False),
        sa.Column("executor_user", sa.String(100)),
        sa.Column("command_id", postgresql.UUID(as_uuid=True)),
        sa.Column("evidence", postgresql.JSONB),
        sa.Column("occurred_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_audit_entries_entity", "audit_entries", ["entity_type", "entity_id"])
    op.create_index("ix_audit_entries_connection", "audit_entries", ["connection_id", "occurred_at"])

    # Webhook subscriptions and events
    op.create_table(
        "webhook_subscriptions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "connection_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("connections.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("provider", sa.String(30), nullable=False, server_default="trendyol"),
        sa.Column("authentication_type", sa.String(30), nullable=False),
        sa.Column("api_key_hash", sa.String(64)),
        sa.Column("basic_username", sa.String(100)),
        sa.Column("basic_password_hash", sa.String(64)),
        sa.Column("event_resource", sa.String(30), nullable=False, server_default="orders"),
        sa.Column("active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("connection_id", "provider", name="uq_webhook_subscriptions_connection_provider"),
    )
    op.create_index("ix_webhook_subscriptions_api_key_hash", "webhook_subscriptions", ["api_key_hash"])

    op.create_table(
        "webhook_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("event_key", sa.String(100), nullable=False, unique=True),
        sa.Column("body_hash", sa.String(64), nullable=False),
        sa.Column("provider", sa.String(30), nullable=False),
        sa.Column("event_type", sa.String(100)),
        sa.Column("remote_object_id", sa.String(100)),
        sa.Column(
            "connection_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("connections.id", ondelete="CASCADE"),
        ),
        sa.Column("verify_status", sa.String(20), nullable=False),
        sa.Column("dedup_hit", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("dedup_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("downstream_status", sa.String(30)),
        sa.Column("downstream_job_id", postgresql.UUID(as_uuid=True)),
        sa.Column("raw_body", postgresql.JSONB),
        sa.Column("error_message", sa.Text),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_webhook_events_body_hash", "webhook_events", ["body_hash"])
    op.create_index("ix_webhook_events_provider", "webhook_events", ["provider"])
    op.create_index("ix_webhook_events_connection_id", "webhook_events", ["connection_id"])

    # Confirmed price/stock state
    op.create_table(
        "inventory_confirmed_state",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "connection_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("connections.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("barcode", sa.String(100), nullable=False),
        sa.Column("quantity", sa.Integer),
        sa.Column("sale_price", sa.Float),
        sa.Column("list_price", sa.Float),
        sa.Column("batch_request_id", sa.String(100)),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("connection_id", "barcode", name="uq_inventory_confirmed_connection_barcode"),
    )


def downgrade() -> None:
    op.drop_table("inventory_confirmed_state")
    op.drop_table("webhook_events")
    op.drop_table("webhook_subscriptions")
    op.drop_table("audit_entries")
    op.drop_table("commands")
    op.drop_table("settlements")
    op.drop_table("answers")
    op.drop_table("questions")
    op.drop_table("claim_items")
    op.drop_table("claims")
    op.drop_table("products")
    op.drop_table("orders")
    op.drop_table("sync_cursors")
    op.drop_table("jobs")
    op.drop_table("connections")
