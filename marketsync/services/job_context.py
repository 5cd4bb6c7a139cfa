"""
What a job handler receives besides the Job row, and what it returns.
"""
import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from marketsync.models.enums import JobStatus


@dataclass
class JobContext:
    session_factory: Callable[[], Any]
    client_factory: Callable[[Any], Any]
    settings: Any
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep


@dataclass
class HandlerResult:
    status: JobStatus
    summary: dict = field(default_factory=dict)
    error: Optional[str] = None
