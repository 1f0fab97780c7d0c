"""Outbox relay: domain entity changes -> ``embeddings-pending``.

Domain services write ``outbox_entries`` in the same transaction as the
change itself. The relay leases a batch of pending rows, keeps only the
latest change per entity, publishes one EntityChangedBatchEvent and marks
every leased row processed. A failed publish returns the rows to pending
with a bumped retry count; rows that run out of retries are marked dead and
show up in the DLQ monitor.
"""

import asyncio
import logging
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import psycopg
from psycopg.rows import dict_row

from .config import Config
from .messages import EntityChangedBatchEvent, EntityChangedEvent
from .metrics import record_outbox_relayed
from .transport import enqueue
from .utils import as_utc, truncate, wait_for_shutdown

logger = logging.getLogger(__name__)

_LAST_ERROR_MAX_LENGTH = 2000


@dataclass(frozen=True)
class OutboxEntry:
    id: int
    entity_type: str
    entity_id: uuid.UUID
    user_id: uuid.UUID | None
    domain_event_type: str
    created_at: datetime
    attributes: dict[str, Any] = field(default_factory=dict)
    retry_count: int = 0

    def to_change_event(self) -> EntityChangedEvent:
        return EntityChangedEvent(
            entity_type=self.entity_type,
            entity_id=self.entity_id,
            user_id=self.user_id,
            domain_event_type=self.domain_event_type,
            occurred_at=as_utc(self.created_at),
            attributes=dict(self.attributes or {}),
        )


def latest_per_entity(entries: Sequence[OutboxEntry]) -> list[OutboxEntry]:
    """Keep the newest entry per (entity_type, entity_id), ordered by creation."""
    latest: dict[tuple[str, uuid.UUID], OutboxEntry] = {}
    for entry in entries:
        key = (entry.entity_type, entry.entity_id)
        current = latest.get(key)
        if current is None or (entry.created_at, entry.id) > (current.created_at, current.id):
            latest[key] = entry
    return sorted(latest.values(), key=lambda e: (e.created_at, e.id))


async def release_expired_leases(conn: psycopg.AsyncConnection[Any]) -> int:
    async with conn.cursor() as cur:
        await cur.execute(
            """
            UPDATE outbox_entries
            SET status = 'pending', leased_until = NULL, lease_holder = NULL
            WHERE status = 'processing' AND leased_until < NOW()
            """
        )
        released = cur.rowcount
    if released:
        logger.warning("Released %d expired outbox lease(s)", released)
    return released


async def acquire_batch(
    conn: psycopg.AsyncConnection[Any],
    lease_holder: str,
    lease_seconds: int,
    limit: int,
) -> list[OutboxEntry]:
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            UPDATE outbox_entries
            SET status = 'processing',
                lease_holder = %s,
                leased_until = NOW() + make_interval(secs => %s)
            WHERE id IN (
                SELECT id FROM outbox_entries
                WHERE status = 'pending'
                ORDER BY created_at, id
                LIMIT %s
                FOR UPDATE SKIP LOCKED
            )
            RETURNING id, entity_type, entity_id, user_id, domain_event_type,
                      attributes, created_at, retry_count
            """,
            (lease_holder, float(lease_seconds), limit),
        )
        rows = await cur.fetchall()
    return [OutboxEntry(**row) for row in rows]


async def mark_processed(conn: psycopg.AsyncConnection[Any], ids: Sequence[int]) -> None:
    await conn.execute(
        """
        UPDATE outbox_entries
        SET status = 'processed', processed_at = NOW(),
            leased_until = NULL, lease_holder = NULL
        WHERE id = ANY(%s)
        """,
        (list(ids),),
    )


async def mark_failed(
    conn: psycopg.AsyncConnection[Any], ids: Sequence[int], error: str, max_retries: int
) -> None:
    await conn.execute(
        """
        UPDATE outbox_entries
        SET retry_count = retry_count + 1,
            last_error = %s,
            leased_until = NULL,
            lease_holder = NULL,
            status = CASE WHEN retry_count + 1 >= %s THEN 'dead' ELSE 'pending' END
        WHERE id = ANY(%s)
        """,
        (truncate(error, _LAST_ERROR_MAX_LENGTH), max_retries, list(ids)),
    )


class OutboxRelay:
    def __init__(
        self,
        database_url: str,
        destination: str,
        *,
        poll_interval_seconds: float = 2.0,
        batch_size: int = 100,
        max_retries: int = 5,
        lease_seconds: int = 300,
        max_deliveries: int = 5,
    ) -> None:
        self._database_url = database_url
        self.destination = destination
        self._poll_interval_seconds = poll_interval_seconds
        self._batch_size = batch_size
        self._max_retries = max_retries
        self._lease_seconds = lease_seconds
        self._max_deliveries = max_deliveries
        self.worker_id = f"outbox-{uuid.uuid4().hex[:12]}"

    @classmethod
    def from_config(cls, config: Config) -> "OutboxRelay":
        return cls(
            config.database_url,
            config.queues.embeddings_pending,
            poll_interval_seconds=config.outbox_poll_interval_seconds,
            batch_size=config.outbox_batch_size,
            max_retries=config.outbox_max_retries,
            lease_seconds=config.claim_timeout_seconds,
            max_deliveries=config.max_deliveries,
        )

    async def relay_once(self, conn: psycopg.AsyncConnection[Any]) -> int:
        """Run one lease/publish cycle on an autocommit connection.

        Returns the number of outbox rows marked processed.
        """
        await release_expired_leases(conn)
        entries = await acquire_batch(conn, self.worker_id, self._lease_seconds, self._batch_size)
        if not entries:
            return 0

        unique = latest_per_entity(entries)
        if len(unique) < len(entries):
            logger.debug(
                "Deduplicated %d outbox entries to %d unique entities", len(entries), len(unique)
            )

        changes = []
        for entry in unique:
            if entry.user_id is None:
                logger.warning(
                    "Outbox entry %d (%s/%s) has no user, not routing",
                    entry.id,
                    entry.entity_type,
                    entry.entity_id,
                )
                continue
            changes.append(entry.to_change_event())

        ids = [e.id for e in entries]
        try:
            async with conn.transaction():
                if changes:
                    await enqueue(
                        conn,
                        self.destination,
                        EntityChangedBatchEvent(changes=tuple(changes)),
                        max_deliveries=self._max_deliveries,
                    )
                await mark_processed(conn, ids)
        except Exception as exc:
            logger.exception("Error relaying outbox batch of %d entries", len(entries))
            await mark_failed(conn, ids, str(exc) or type(exc).__name__, self._max_retries)
            return 0

        record_outbox_relayed(len(entries))
        logger.info(
            "Relayed %d outbox entries (%d unique entities) to %s",
            len(entries),
            len(unique),
            self.destination,
        )
        return len(entries)

    async def run(self, shutdown: asyncio.Event) -> None:
        logger.info(
            "Outbox relay started (id=%s, poll_interval=%.1fs, batch_size=%d)",
            self.worker_id,
            self._poll_interval_seconds,
            self._batch_size,
        )
        while not shutdown.is_set():
            try:
                async with await psycopg.AsyncConnection.connect(
                    self._database_url, autocommit=True
                ) as conn:
                    while not shutdown.is_set():
                        relayed = await self.relay_once(conn)
                        # Drain a backlog without waiting; sleep once caught up.
                        if relayed < self._batch_size and await wait_for_shutdown(
                            shutdown, self._poll_interval_seconds
                        ):
                            break
            except Exception:
                logger.exception("Unhandled error in outbox relay cycle")
                if await wait_for_shutdown(shutdown, self._poll_interval_seconds):
                    break

        logger.info("Outbox relay stopped")
