"""
Incremental sync window.

start = last_success_at - overlap, or now - bootstrap on the first run
end   = now - safety delay (the remote's list views lag behind writes)
The window is clamped to max_window and never empty.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional

MIN_WINDOW = timedelta(minutes=5)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def compute_sync_window(
    last_success_at: Optional[datetime],
    now: datetime,
    overlap: timedelta,
    safety_delay: timedelta,
    bootstrap: timedelta,
    max_window: timedelta,
) -> tuple[datetime, datetime]:
    now = as_utc(now)
    last_success_at = as_utc(last_success_at)

    end = now - safety_delay
    start = last_success_at - overlap if last_success_at else now - bootstrap

    if end - start > max_window:
        start = end - max_window
    if start >= end:
        start = end - min(MIN_WINDOW, max_window)
    return start, end


def window_from_settings(last_success_at: Optional[datetime], now: datetime, settings) -> tuple[datetime, datetime]:
    return compute_sync_window(
        last_success_at,
        now,
        overlap=timedelta(minutes=settings.sync_overlap_minutes),
        safety_delay=timedelta(minutes=settings.sync_safety_delay_minutes),
        bootstrap=timedelta(hours=settings.sync_bootstrap_hours),
        max_window=timedelta(days=settings.sync_max_window_days),
    )
