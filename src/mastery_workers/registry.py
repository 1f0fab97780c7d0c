import logging
from collections.abc import Awaitable, Callable
from typing import Any

import psycopg

logger = logging.getLogger(__name__)

# Handler signature: async def handler(conn: AsyncConnection, payload: dict) -> None
HandlerFn = Callable[[psycopg.AsyncConnection[Any], dict[str, Any]], Awaitable[None]]

# One handler per queue name, resolved by the queue worker at claim time
_registry: dict[str, HandlerFn] = {}


def register(queue_name: str) -> Callable[[HandlerFn], HandlerFn]:
    """Register the handler that consumes a queue (e.g. 'signals-urgent')."""

    def decorator(fn: HandlerFn) -> HandlerFn:
        if queue_name in _registry:
            raise ValueError(f"Duplicate handler for queue={queue_name!r}")
        _registry[queue_name] = fn
        logger.info("Registered handler %s for queue=%s", fn.__name__, queue_name)
        return fn

    return decorator


def get_handler(queue_name: str) -> HandlerFn | None:
    return _registry.get(queue_name)


def registered_queues() -> list[str]:
    return list(_registry.keys())


def clear_registry() -> None:
    """Drop every registration. Used on startup re-wiring and in tests."""
    _registry.clear()
