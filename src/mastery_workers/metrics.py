"""In-memory worker metrics.

Asyncio is single-threaded, so plain dicts need no locking.
"""

import time

_start_time = time.monotonic()

_metrics: dict = {
    "batches_processed": 0,
    "batches_failed": 0,
    "batches_skipped": 0,
    "messages_dead_lettered": 0,
    "window_signals_scheduled": 0,
    "window_signals_skipped": 0,
    "outbox_entries_relayed": 0,
    "tiers": {},
    "queues": {},
}


def record_queue_invocation(queue_name: str, duration_ms: float, success: bool) -> None:
    """Record a single message handled on a queue, with timing."""
    q = _metrics["queues"].setdefault(queue_name, {
        "invocations": 0,
        "successes": 0,
        "failures": 0,
        "total_duration_ms": 0.0,
    })
    q["invocations"] += 1
    q["total_duration_ms"] += duration_ms
    if success:
        q["successes"] += 1
    else:
        q["failures"] += 1


def record_batch_processed(final_tier_name: str) -> None:
    _metrics["batches_processed"] += 1
    _metrics["tiers"][final_tier_name] = _metrics["tiers"].get(final_tier_name, 0) + 1


def record_batch_failed() -> None:
    _metrics["batches_failed"] += 1


def record_batch_skipped() -> None:
    _metrics["batches_skipped"] += 1


def record_message_dead_lettered() -> None:
    _metrics["messages_dead_lettered"] += 1


def record_window_signals(scheduled: int, skipped: int) -> None:
    _metrics["window_signals_scheduled"] += scheduled
    _metrics["window_signals_skipped"] += skipped


def record_outbox_relayed(count: int) -> None:
    _metrics["outbox_entries_relayed"] += count


def get_metrics() -> dict:
    """Return a snapshot of current metrics."""
    return {
        "uptime_seconds": round(time.monotonic() - _start_time, 1),
        "batches_processed": _metrics["batches_processed"],
        "batches_failed": _metrics["batches_failed"],
        "batches_skipped": _metrics["batches_skipped"],
        "messages_dead_lettered": _metrics["messages_dead_lettered"],
        "window_signals_scheduled": _metrics["window_signals_scheduled"],
        "window_signals_skipped": _metrics["window_signals_skipped"],
        "outbox_entries_relayed": _metrics["outbox_entries_relayed"],
        "tiers": dict(_metrics["tiers"]),
        "queues": {
            name: dict(stats)
            for name, stats in _metrics["queues"].items()
        },
    }
