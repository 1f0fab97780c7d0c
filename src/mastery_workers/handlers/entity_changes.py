"""Entity-change consumer on the embeddings-pending queue.

Each batch is handed to the optional indexer first (embedding refresh lives
outside this package), then every change is classified and the resulting
signals are routed in groups of ``(priority, user)``. When one user's
signals in the batch look like overload or disengagement, an extra urgent
signal is routed for that user as well.
"""

import logging
import uuid
from collections.abc import Sequence
from typing import Any, Protocol

import psycopg

from ..classifier import classify, should_escalate_to_urgent, urgent_escalation_classification
from ..config import QueueNames
from ..messages import EntityChangedBatchEvent, EntityChangedEvent, decode_message
from ..models import Priority, SignalClassification
from ..registry import HandlerFn, register
from ..routing import SignalRouter
from ..schedule import PostgresScheduleResolver
from ..transport import PostgresMessageBus

logger = logging.getLogger(__name__)


class EntityIndexer(Protocol):
    async def index(self, changes: Sequence[EntityChangedEvent]) -> None: ...


def group_classifications(
    changes: Sequence[EntityChangedEvent],
) -> dict[tuple[Priority, uuid.UUID], list[SignalClassification]]:
    """Classify changes and group them by (priority, user), in arrival order."""
    groups: dict[tuple[Priority, uuid.UUID], list[SignalClassification]] = {}
    per_user: dict[uuid.UUID, list[SignalClassification]] = {}

    for change in changes:
        classification = classify(
            change.entity_type,
            change.entity_id,
            change.domain_event_type,
            change.user_id,
            change.attributes,
        )
        if classification is None:
            continue
        groups.setdefault((classification.priority, change.user_id), []).append(classification)
        per_user.setdefault(change.user_id, []).append(classification)

    for user_id, classifications in per_user.items():
        if should_escalate_to_urgent(classifications):
            logger.info("Escalating user %s to urgent: disengagement pattern detected", user_id)
            groups.setdefault((Priority.URGENT, user_id), []).append(
                urgent_escalation_classification()
            )

    return groups


async def route_entity_changes(
    router: SignalRouter,
    batch: EntityChangedBatchEvent,
) -> int:
    """Route every classified group. Returns the number of batches published."""
    routed = 0
    for (priority, user_id), classifications in group_classifications(batch.changes).items():
        result = await router.route_signals(
            classifications, priority, user_id, correlation_id=batch.correlation_id
        )
        if result is not None:
            routed += 1
    return routed


def make_entity_change_handler(
    queues: QueueNames,
    *,
    max_deliveries: int = 5,
    indexer: EntityIndexer | None = None,
) -> HandlerFn:
    async def handle_entity_changes(
        conn: psycopg.AsyncConnection[Any], payload: dict[str, Any]
    ) -> None:
        batch = decode_message(EntityChangedBatchEvent, payload)
        if not batch.changes:
            return

        if indexer is not None:
            await indexer.index(batch.changes)

        router = SignalRouter(
            PostgresMessageBus(conn, max_deliveries=max_deliveries),
            PostgresScheduleResolver(conn),
            queues,
        )
        async with conn.transaction():
            routed = await route_entity_changes(router, batch)

        logger.debug(
            "Routed %d signal batch(es) from %d entity change(s)", routed, len(batch.changes)
        )

    return handle_entity_changes


def register_entity_change_consumer(
    queues: QueueNames,
    *,
    max_deliveries: int = 5,
    indexer: EntityIndexer | None = None,
) -> None:
    register(queues.embeddings_pending)(
        make_entity_change_handler(queues, max_deliveries=max_deliveries, indexer=indexer)
    )
