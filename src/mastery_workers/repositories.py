"""Persistence for the signal pipeline.

Repositories are thin wrappers over one connection. They never open or
commit transactions themselves; the caller's ``conn.transaction()`` is the
unit of work.
"""

import logging
import uuid
from collections.abc import Callable, Sequence
from datetime import date, datetime
from typing import Any, Protocol

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Json

from .models import Recommendation, SignalEntry, SignalProcessingHistory
from .state import UserState
from .utils import utcnow

logger = logging.getLogger(__name__)


class StateAssembler(Protocol):
    async def assemble(self, user_id: uuid.UUID) -> UserState: ...


class SignalEntryRepository:
    def __init__(self, conn: psycopg.AsyncConnection[Any]) -> None:
        self._conn = conn

    async def add_many(self, entries: Sequence[SignalEntry], batch_id: str | None = None) -> None:
        if not entries:
            return
        async with self._conn.cursor() as cur:
            await cur.executemany(
                """
                INSERT INTO signal_entries
                    (id, user_id, batch_id, event_type, priority, window_type, created_at,
                     target_entity_type, target_entity_id, scheduled_window_start,
                     status, processed_at, final_tier, expires_at, skip_reason, last_error)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                [
                    (
                        e.id,
                        e.user_id,
                        batch_id,
                        e.event_type,
                        int(e.priority),
                        e.window_type.value,
                        e.created_at,
                        e.target_entity_type,
                        e.target_entity_id,
                        e.scheduled_window_start,
                        e.status.value,
                        e.processed_at,
                        int(e.final_tier) if e.final_tier is not None else None,
                        e.expires_at,
                        e.skip_reason,
                        e.last_error,
                    )
                    for e in entries
                ],
            )

    async def lock_window(self, user_id: uuid.UUID, correlation_id: str) -> None:
        """Serialize concurrent schedulers on one (user, window) until commit."""
        await self._conn.execute(
            "SELECT pg_advisory_xact_lock(hashtext(%s)::bigint)",
            (f"{user_id}:{correlation_id}",),
        )

    async def exists_for_window(
        self,
        user_id: uuid.UUID,
        event_type: str,
        window_date: date,
        correlation_id: str | None = None,
    ) -> bool:
        """True when a window signal was already consumed or is still queued.

        Consumed signals are matched by the UTC date of their window start;
        queued ones by the deterministic window correlation id.
        """
        async with self._conn.cursor() as cur:
            await cur.execute(
                """
                SELECT EXISTS (
                    SELECT 1 FROM signal_entries
                    WHERE user_id = %s
                      AND event_type = %s
                      AND (COALESCE(scheduled_window_start, created_at) AT TIME ZONE 'UTC')::date = %s
                ) OR EXISTS (
                    SELECT 1 FROM queue_messages
                    WHERE user_id = %s
                      AND correlation_id = %s
                      AND status <> 'dead'
                )
                """,
                (user_id, event_type, window_date, user_id, correlation_id),
            )
            row = await cur.fetchone()
        return bool(row and row[0])


class ProcessingHistoryRepository:
    def __init__(self, conn: psycopg.AsyncConnection[Any]) -> None:
        self._conn = conn

    async def add(self, history: SignalProcessingHistory) -> None:
        await self._conn.execute(
            """
            INSERT INTO signal_processing_history
                (id, user_id, window_type, batch_id, started_at, signals_received,
                 signals_processed, signals_skipped, final_tier, tier0_rules_triggered,
                 tier1_combined_score, tier1_delta_summary, tier1_escalation_reason,
                 tier2_executed, recommendations_generated, recommendation_ids,
                 error_message, completed_at, duration_ms)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                history.id,
                history.user_id,
                history.window_type.value,
                history.batch_id,
                history.started_at,
                history.signals_received,
                history.signals_processed,
                history.signals_skipped,
                int(history.final_tier),
                list(history.tier0_rules_triggered),
                history.tier1_combined_score,
                Json(history.tier1_delta_summary) if history.tier1_delta_summary is not None else None,
                history.tier1_escalation_reason,
                history.tier2_executed,
                history.recommendations_generated,
                list(history.recommendation_ids),
                history.error_message,
                history.completed_at,
                history.duration_ms,
            ),
        )

    async def exists_successful_batch(self, batch_id: str) -> bool:
        async with self._conn.cursor() as cur:
            await cur.execute(
                """
                SELECT EXISTS (
                    SELECT 1 FROM signal_processing_history
                    WHERE batch_id = %s AND error_message IS NULL
                )
                """,
                (batch_id,),
            )
            row = await cur.fetchone()
        return bool(row and row[0])


class RecommendationRepository:
    def __init__(self, conn: psycopg.AsyncConnection[Any]) -> None:
        self._conn = conn

    async def exists_pending_for_target(
        self,
        user_id: uuid.UUID,
        recommendation_type: str,
        target_kind: str,
        target_entity_id: uuid.UUID | None,
    ) -> bool:
        async with self._conn.cursor() as cur:
            await cur.execute(
                """
                SELECT EXISTS (
                    SELECT 1 FROM recommendations
                    WHERE user_id = %s
                      AND type = %s
                      AND target_kind = %s
                      AND target_entity_id IS NOT DISTINCT FROM %s
                      AND status = 'pending'
                      AND expires_at > NOW()
                )
                """,
                (user_id, recommendation_type, target_kind, target_entity_id),
            )
            row = await cur.fetchone()
        return bool(row and row[0])

    async def add(self, recommendation: Recommendation) -> None:
        await self._conn.execute(
            """
            INSERT INTO recommendations
                (id, user_id, type, context, target_kind, target_entity_id, title,
                 rationale, score, source_tier, expires_at, signal_event_types)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                recommendation.id,
                recommendation.user_id,
                recommendation.type,
                recommendation.context,
                recommendation.target_kind,
                recommendation.target_entity_id,
                recommendation.title,
                recommendation.rationale,
                recommendation.score,
                int(recommendation.source_tier),
                recommendation.expires_at,
                list(recommendation.signal_event_types),
            ),
        )


class PostgresStateAssembler:
    """Builds UserState from the latest snapshot and the last successful run."""

    def __init__(
        self,
        conn: psycopg.AsyncConnection[Any],
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._conn = conn
        self._clock = clock

    async def assemble(self, user_id: uuid.UUID) -> UserState:
        async with self._conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                "SELECT state FROM user_state_snapshots WHERE user_id = %s",
                (user_id,),
            )
            snapshot = await cur.fetchone()
            await cur.execute(
                """
                SELECT MAX(completed_at) AS last_assessed_at
                FROM signal_processing_history
                WHERE user_id = %s AND error_message IS NULL
                """,
                (user_id,),
            )
            last_run = await cur.fetchone()

        today = self._clock().date()
        last_assessed_at = last_run["last_assessed_at"] if last_run else None
        if snapshot is None or not snapshot["state"]:
            logger.debug("No state snapshot for user %s, assessing empty state", user_id)
            return UserState(user_id=user_id, today=today, last_assessed_at=last_assessed_at)

        return UserState.from_dict(
            user_id, snapshot["state"], today=today, last_assessed_at=last_assessed_at
        )
