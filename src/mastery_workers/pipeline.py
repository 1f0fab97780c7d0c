"""Consumer pipeline shared by the urgent, window and batch signal queues.

One batch becomes one assessment: state is assembled once, the tier ladder
runs once, and every signal in the batch is stamped with the same final
tier. Signal entries, the processing history row and new recommendations are
committed together; on failure only the history row (carrying the error) is
written, in its own transaction, and the exception propagates so the queue
redelivers the batch.
"""

import logging
import uuid
from collections.abc import Callable, Sequence
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

import psycopg

from .logging import batch_log_extra
from .metrics import record_batch_failed, record_batch_processed, record_batch_skipped
from .messages import SignalRoutedBatchEvent, SignalRoutedEvent
from .models import (
    AssessmentOutcome,
    AssessmentTier,
    Priority,
    Recommendation,
    SignalEntry,
    SignalProcessingHistory,
    WindowType,
)
from .repositories import (
    PostgresStateAssembler,
    ProcessingHistoryRepository,
    RecommendationRepository,
    SignalEntryRepository,
    StateAssembler,
)
from .state import UserState
from .utils import utcnow

logger = logging.getLogger(__name__)


class AssessmentEngine(Protocol):
    async def assess(
        self, state: UserState, signals: Sequence[SignalEntry]
    ) -> AssessmentOutcome: ...


@dataclass(frozen=True)
class ConsumerSpec:
    """What differs between the signal consumers. Everything else is shared."""

    queue_name: str
    window_type_of: Callable[[SignalRoutedBatchEvent], WindowType]
    include_scheduled_start: bool = False
    success_log_level: int = logging.INFO
    label_of: Callable[[SignalRoutedBatchEvent], str] = lambda batch: "signal"


@dataclass
class BatchDependencies:
    unit_of_work: Callable[[], AbstractAsyncContextManager[Any]]
    state_assembler: StateAssembler
    engine: AssessmentEngine
    signal_entries: SignalEntryRepository
    history: ProcessingHistoryRepository
    recommendations: RecommendationRepository
    clock: Callable[[], datetime] = utcnow

    @classmethod
    def for_connection(
        cls,
        conn: psycopg.AsyncConnection[Any],
        engine: AssessmentEngine,
        clock: Callable[[], datetime] = utcnow,
    ) -> "BatchDependencies":
        return cls(
            unit_of_work=conn.transaction,
            state_assembler=PostgresStateAssembler(conn, clock),
            engine=engine,
            signal_entries=SignalEntryRepository(conn),
            history=ProcessingHistoryRepository(conn),
            recommendations=RecommendationRepository(conn),
            clock=clock,
        )


def _to_entry(
    signal: SignalRoutedEvent,
    batch: SignalRoutedBatchEvent,
    include_scheduled_start: bool,
) -> SignalEntry:
    scheduled_start = None
    if include_scheduled_start:
        scheduled_start = signal.scheduled_window_start or batch.scheduled_window_start
    return SignalEntry(
        user_id=signal.user_id,
        event_type=signal.event_type,
        priority=Priority(signal.priority),
        window_type=signal.window_type,
        created_at=signal.created_at,
        target_entity_type=signal.target_entity_type,
        target_entity_id=signal.target_entity_id,
        scheduled_window_start=scheduled_start,
    )


async def _persist_recommendations(
    deps: BatchDependencies, recommendations: Sequence[Recommendation]
) -> list[uuid.UUID]:
    """Insert recommendations not already pending for the same target."""
    persisted: list[uuid.UUID] = []
    seen: set[tuple[Any, ...]] = set()
    for rec in recommendations:
        key = rec.dedup_key
        if key in seen:
            continue
        seen.add(key)
        if await deps.recommendations.exists_pending_for_target(*key):
            logger.debug("Skipping duplicate %s recommendation for user %s", rec.type, rec.user_id)
            continue
        await deps.recommendations.add(rec)
        persisted.append(rec.id)
    return persisted


async def _save_failed_history(deps: BatchDependencies, history: SignalProcessingHistory) -> None:
    try:
        async with deps.unit_of_work():
            await deps.history.add(history)
    except Exception:
        logger.exception(
            "Failed to save processing history %s for user %s", history.id, history.user_id
        )


async def process_batch(
    deps: BatchDependencies,
    spec: ConsumerSpec,
    batch: SignalRoutedBatchEvent,
) -> SignalProcessingHistory | None:
    """Run one routed batch through assessment and persist the audit trail.

    Returns the completed history row, or None when the batch was already
    processed successfully by an earlier delivery.
    """
    window_type = spec.window_type_of(batch)
    label = spec.label_of(batch)
    extra = batch_log_extra(batch, spec.queue_name)

    if await deps.history.exists_successful_batch(batch.batch_id):
        logger.info(
            "Batch %s for user %s already processed, skipping redelivery",
            batch.batch_id,
            batch.user_id,
            extra=extra,
        )
        record_batch_skipped()
        return None

    logger.debug(
        "Processing %d %s signal(s) for user %s",
        len(batch.signals),
        label,
        batch.user_id,
        extra=extra,
    )

    started_at = deps.clock()
    entries = [_to_entry(s, batch, spec.include_scheduled_start) for s in batch.signals]
    history = SignalProcessingHistory.start(
        batch.user_id,
        window_type,
        signals_received=len(entries),
        started_at=started_at,
        batch_id=batch.batch_id,
    )

    try:
        live: list[SignalEntry] = []
        for entry in entries:
            if entry.is_expired(started_at):
                entry.mark_expired(started_at)
            else:
                entry.mark_processing()
                live.append(entry)
        expired = len(entries) - len(live)

        if live:
            state = await deps.state_assembler.assemble(batch.user_id)
            outcome = await deps.engine.assess(state, live)
            history.record_tier0(outcome.tier0_triggered_rules)
            if outcome.tier1_result is not None:
                history.record_tier1(outcome.tier1_result)
            if outcome.tier2_executed:
                history.record_tier2()
            final_tier = outcome.final_tier
            recommendations = outcome.generated_recommendations
        else:
            logger.info(
                "All %d signal(s) for user %s expired before processing",
                expired,
                batch.user_id,
                extra=extra,
            )
            final_tier = AssessmentTier.SKIPPED
            recommendations = []

        async with deps.unit_of_work():
            history.record_recommendations(await _persist_recommendations(deps, recommendations))
            processed_at = deps.clock()
            for entry in live:
                entry.mark_processed(final_tier, processed_at)
            history.record_outcome(processed=len(live), skipped=expired)
            history.complete(deps.clock())
            await deps.signal_entries.add_many(entries, batch.batch_id)
            await deps.history.add(history)

    except Exception as exc:
        logger.exception(
            "Error processing %s batch for user %s", label, batch.user_id, extra=extra
        )
        history.record_recommendations([])
        history.record_error(str(exc) or type(exc).__name__)
        if not history.is_completed:
            history.complete(deps.clock())
        await _save_failed_history(deps, history)
        record_batch_failed()
        raise

    record_batch_processed(final_tier.name)
    logger.log(
        spec.success_log_level,
        "Processed %d %s signal(s) for user %s: tier=%s, %d recommendation(s), %dms",
        len(entries),
        label,
        batch.user_id,
        final_tier.name,
        history.recommendations_generated,
        history.duration_ms or 0,
        extra={**extra, "signal_final_tier": final_tier.name},
    )
    return history
