"""
Shared FastAPI dependencies for the engine services.
Tests swap the queue through app.dependency_overrides[job_queue_dep].
"""
from fastapi import Depends

from marketsync.services.commands import CommandService
from marketsync.services.job_queue import JobQueue, get_job_queue
from marketsync.services.webhook_dedup import WebhookDedupProcessor


def job_queue_dep() -> JobQueue:
    return get_job_queue()


def command_service_dep(queue: JobQueue = Depends(job_queue_dep)) -> CommandService:
    return CommandService(queue)


def webhook_processor_dep(queue: JobQueue = Depends(job_queue_dep)) -> WebhookDedupProcessor:
    return WebhookDedupProcessor(queue)
