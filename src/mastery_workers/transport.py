"""Postgres-backed queue transport.

Messages live in ``queue_messages``. Delayed delivery is a ``visible_at`` in
the future; consumers only claim rows whose ``visible_at`` has passed.
Publishing sends ``pg_notify('signal_queue', <queue name>)`` so that idle
workers wake up without waiting for their next poll.

All functions run on the connection they are given and never commit on
their own: publishing inside a caller's ``conn.transaction()`` makes the
message part of that unit of work.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Json

from .messages import WireModel, encode_message
from .utils import truncate

logger = logging.getLogger(__name__)

NOTIFY_CHANNEL = "signal_queue"

DEAD_REASON_NO_HANDLER = "NoHandler"
DEAD_REASON_MAX_DELIVERIES = "MaxDeliveryCountExceeded"

_LAST_ERROR_MAX_LENGTH = 2000


class MessageBus(Protocol):
    async def publish(self, queue_name: str, message: WireModel) -> uuid.UUID: ...

    async def publish_scheduled(
        self, queue_name: str, message: WireModel, visible_at: datetime
    ) -> uuid.UUID: ...


@dataclass(frozen=True)
class QueueMessage:
    id: uuid.UUID
    queue_name: str
    message_type: str
    payload: dict[str, Any]
    attempt: int
    max_deliveries: int
    user_id: uuid.UUID | None = None
    correlation_id: str | None = None

    @property
    def deliveries_exhausted(self) -> bool:
        return self.attempt >= self.max_deliveries


async def enqueue(
    conn: psycopg.AsyncConnection[Any],
    queue_name: str,
    message: WireModel,
    *,
    visible_at: datetime | None = None,
    max_deliveries: int = 5,
) -> uuid.UUID:
    """Insert one message. ``visible_at=None`` means deliverable now."""
    payload = encode_message(message)
    user_id = getattr(message, "user_id", None)
    correlation_id = getattr(message, "correlation_id", None)

    async with conn.cursor() as cur:
        await cur.execute(
            """
            INSERT INTO queue_messages
                (queue_name, message_type, user_id, correlation_id, payload,
                 visible_at, max_deliveries)
            VALUES (%s, %s, %s, %s, %s, COALESCE(%s, NOW()), %s)
            RETURNING id
            """,
            (
                queue_name,
                type(message).__name__,
                user_id,
                correlation_id,
                Json(payload),
                visible_at,
                max_deliveries,
            ),
        )
        row = await cur.fetchone()
        await cur.execute("SELECT pg_notify(%s, %s)", (NOTIFY_CHANNEL, queue_name))

    message_id = row[0]
    logger.debug(
        "Enqueued %s on %s (id=%s, visible_at=%s)",
        type(message).__name__,
        queue_name,
        message_id,
        visible_at.isoformat() if visible_at else "now",
    )
    return message_id


class PostgresMessageBus:
    """MessageBus bound to one connection (and therefore to its transaction)."""

    def __init__(self, conn: psycopg.AsyncConnection[Any], *, max_deliveries: int = 5) -> None:
        self._conn = conn
        self._max_deliveries = max_deliveries

    async def publish(self, queue_name: str, message: WireModel) -> uuid.UUID:
        return await enqueue(
            self._conn, queue_name, message, max_deliveries=self._max_deliveries
        )

    async def publish_scheduled(
        self, queue_name: str, message: WireModel, visible_at: datetime
    ) -> uuid.UUID:
        return await enqueue(
            self._conn,
            queue_name,
            message,
            visible_at=visible_at,
            max_deliveries=self._max_deliveries,
        )


async def claim_messages(
    conn: psycopg.AsyncConnection[Any], queue_name: str, limit: int
) -> list[QueueMessage]:
    """Claim visible pending messages using SELECT FOR UPDATE SKIP LOCKED."""
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            UPDATE queue_messages
            SET status = 'processing', locked_at = NOW(), attempt = attempt + 1
            WHERE id IN (
                SELECT id FROM queue_messages
                WHERE queue_name = %s AND status = 'pending' AND visible_at <= NOW()
                ORDER BY visible_at, id
                LIMIT %s
                FOR UPDATE SKIP LOCKED
            )
            RETURNING id, queue_name, message_type, user_id, correlation_id,
                      payload, attempt, max_deliveries
            """,
            (queue_name, limit),
        )
        rows = await cur.fetchall()
    return [QueueMessage(**row) for row in rows]


async def complete_message(conn: psycopg.AsyncConnection[Any], message_id: uuid.UUID) -> None:
    await conn.execute(
        """
        UPDATE queue_messages
        SET status = 'completed', completed_at = NOW(), locked_at = NULL
        WHERE id = %s
        """,
        (message_id,),
    )


async def abandon_message(
    conn: psycopg.AsyncConnection[Any], message: QueueMessage, error: str
) -> bool:
    """Return a failed message for redelivery with exponential backoff.

    Returns False when the delivery budget is spent and the message was
    dead-lettered instead.
    """
    if message.deliveries_exhausted:
        await dead_letter_message(conn, message.id, DEAD_REASON_MAX_DELIVERIES, error)
        return False

    backoff_seconds = 2**message.attempt
    logger.info(
        "Message %s on %s retrying in %ds (attempt=%d/%d)",
        message.id,
        message.queue_name,
        backoff_seconds,
        message.attempt,
        message.max_deliveries,
    )
    await conn.execute(
        """
        UPDATE queue_messages
        SET status = 'pending',
            locked_at = NULL,
            last_error = %s,
            visible_at = NOW() + make_interval(secs => %s)
        WHERE id = %s
        """,
        (truncate(error, _LAST_ERROR_MAX_LENGTH), float(backoff_seconds), message.id),
    )
    return True


async def dead_letter_message(
    conn: psycopg.AsyncConnection[Any],
    message_id: uuid.UUID,
    reason_code: str,
    error: str,
) -> None:
    logger.error("Message %s dead-lettered (%s): %s", message_id, reason_code, error)
    await conn.execute(
        """
        UPDATE queue_messages
        SET status = 'dead', dead_reason = %s, last_error = %s,
            locked_at = NULL, completed_at = NOW()
        WHERE id = %s
        """,
        (reason_code, truncate(error, _LAST_ERROR_MAX_LENGTH), message_id),
    )


async def release_stale_claims(
    conn: psycopg.AsyncConnection[Any], queue_name: str, lease_seconds: int
) -> int:
    """Put back messages whose worker died mid-processing."""
    async with conn.cursor() as cur:
        await cur.execute(
            """
            UPDATE queue_messages
            SET status = 'pending', locked_at = NULL
            WHERE queue_name = %s
              AND status = 'processing'
              AND locked_at < NOW() - make_interval(secs => %s)
            """,
            (queue_name, float(lease_seconds)),
        )
        released = cur.rowcount
    if released:
        logger.warning("Released %d stale claim(s) on %s", released, queue_name)
    return released
