"""Shared helpers for mastery workers."""

import asyncio
from datetime import UTC, datetime


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """Normalize to an aware UTC datetime. Naive values are assumed to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def truncate(text: str | None, limit: int) -> str | None:
    if text is None or len(text) <= limit:
        return text
    return text[:limit]


async def wait_for_shutdown(shutdown: asyncio.Event, timeout: float) -> bool:
    """Sleep up to `timeout` seconds. Returns True if shutdown was requested."""
    if shutdown.is_set():
        return True
    if timeout <= 0:
        return False
    try:
        await asyncio.wait_for(shutdown.wait(), timeout=timeout)
        return True
    except TimeoutError:
        return False
