"""
Database models - import all models here so Alembic can discover them.
"""
from marketsync.models.connection import Connection
from marketsync.models.job import Job
from marketsync.models.sync_cursor import SyncCursor
from marketsync.models.order import Order
from marketsync.models.product import Product
from marketsync.models.claim import Claim, ClaimItem
from marketsync.models.question import Question, Answer
from marketsync.models.settlement import Settlement
from marketsync.models.command import Command
from marketsync.models.audit_entry import AuditEntry
from marketsync.models.webhook import WebhookSubscription, WebhookEvent
from marketsync.models.inventory_state import InventoryConfirmedState

__all__ = [
    "Connection",
    "Job",
    "SyncCursor",
    "Order",
    "Product",
    "Claim",
    "ClaimItem",
    "Question",
    "Answer",
    "Settlement",
    "Command",
    "AuditEntry",
    "WebhookSubscription",
    "WebhookEvent",
    "InventoryConfirmedState",
]
