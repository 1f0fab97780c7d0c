"""Core types for signal routing and tiered assessment.

SignalEntry and SignalProcessingHistory are the durable audit records written
by the consumer pipeline. Everything else here is transient and batch-local.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum, IntEnum
from typing import Any

from .errors import InvalidTransitionError
from .utils import as_utc, truncate

ERROR_MESSAGE_MAX_LENGTH = 1000


class Priority(IntEnum):
    URGENT = 0
    WINDOW_ALIGNED = 1
    STANDARD = 2
    LOW = 3


class WindowType(str, Enum):
    IMMEDIATE = "Immediate"
    MORNING_WINDOW = "MorningWindow"
    EVENING_WINDOW = "EveningWindow"
    WEEKLY_REVIEW = "WeeklyReview"
    BATCH_WINDOW = "BatchWindow"


class SignalStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    SKIPPED = "skipped"
    FAILED = "failed"
    EXPIRED = "expired"


TERMINAL_STATUSES = frozenset(
    {SignalStatus.PROCESSED, SignalStatus.SKIPPED, SignalStatus.FAILED, SignalStatus.EXPIRED}
)


class AssessmentTier(IntEnum):
    SKIPPED = -1
    TIER0_DETERMINISTIC = 0
    TIER1_QUICK_ASSESSMENT = 1
    TIER2_FULL_PIPELINE = 2


# Time-to-live of a signal, keyed by priority.
SIGNAL_TTL: dict[Priority, timedelta] = {
    Priority.URGENT: timedelta(hours=1),
    Priority.WINDOW_ALIGNED: timedelta(hours=24),
    Priority.STANDARD: timedelta(hours=48),
    Priority.LOW: timedelta(hours=72),
}


@dataclass(frozen=True)
class SignalClassification:
    event_type: str
    priority: Priority
    window_type: WindowType
    target_entity_type: str | None = None
    target_entity_id: uuid.UUID | None = None


@dataclass
class SignalEntry:
    """Audit row for one routed signal, created when its batch is consumed."""

    user_id: uuid.UUID
    event_type: str
    priority: Priority
    window_type: WindowType
    created_at: datetime
    target_entity_type: str | None = None
    target_entity_id: uuid.UUID | None = None
    scheduled_window_start: datetime | None = None
    status: SignalStatus = SignalStatus.PENDING
    processed_at: datetime | None = None
    final_tier: AssessmentTier | None = None
    expires_at: datetime | None = None
    skip_reason: str | None = None
    last_error: str | None = None
    id: uuid.UUID = field(default_factory=uuid.uuid4)

    def __post_init__(self) -> None:
        self.created_at = as_utc(self.created_at)
        if self.scheduled_window_start is not None:
            self.scheduled_window_start = as_utc(self.scheduled_window_start)
        if self.expires_at is None:
            # Window signals live from their window start, not from when they were routed.
            base = self.scheduled_window_start or self.created_at
            self.expires_at = base + SIGNAL_TTL[Priority(self.priority)]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and as_utc(now) >= self.expires_at

    def _transition(self, target: SignalStatus) -> None:
        if self.is_terminal:
            raise InvalidTransitionError(
                f"signal {self.id} is {self.status.value}, cannot move to {target.value}"
            )
        self.status = target

    def mark_processing(self) -> None:
        if self.status is not SignalStatus.PENDING:
            raise InvalidTransitionError(
                f"signal {self.id} is {self.status.value}, expected pending"
            )
        self.status = SignalStatus.PROCESSING

    def mark_processed(self, final_tier: AssessmentTier, now: datetime) -> None:
        self._transition(SignalStatus.PROCESSED)
        self.final_tier = final_tier
        self.processed_at = now

    def mark_skipped(self, reason: str, now: datetime) -> None:
        self._transition(SignalStatus.SKIPPED)
        self.skip_reason = reason
        self.processed_at = now

    def mark_failed(self, error: str, now: datetime) -> None:
        self._transition(SignalStatus.FAILED)
        self.last_error = truncate(error, ERROR_MESSAGE_MAX_LENGTH)
        self.processed_at = now

    def mark_expired(self, now: datetime) -> None:
        self._transition(SignalStatus.EXPIRED)
        self.skip_reason = "expired"
        self.processed_at = now


@dataclass
class Recommendation:
    user_id: uuid.UUID
    type: str
    context: str
    target_kind: str
    title: str
    rationale: str
    score: float
    source_tier: AssessmentTier
    expires_at: datetime
    target_entity_id: uuid.UUID | None = None
    signal_event_types: tuple[str, ...] = ()
    id: uuid.UUID = field(default_factory=uuid.uuid4)

    @property
    def dedup_key(self) -> tuple[uuid.UUID, str, str, uuid.UUID | None]:
        return (self.user_id, self.type, self.target_kind, self.target_entity_id)


@dataclass(frozen=True)
class StateDeltaSummary:
    new_entities: int = 0
    modified_entities: int = 0
    completed_items: int = 0
    missed_items: int = 0
    changes_by_entity_type: dict[str, int] = field(default_factory=dict)

    @property
    def total_changes(self) -> int:
        return (
            self.new_entities
            + self.modified_entities
            + self.completed_items
            + self.missed_items
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "new_entities": self.new_entities,
            "modified_entities": self.modified_entities,
            "completed_items": self.completed_items,
            "missed_items": self.missed_items,
            "changes_by_entity_type": dict(self.changes_by_entity_type),
        }


@dataclass(frozen=True)
class QuickAssessmentResult:
    combined_score: float
    relevance_score: float
    delta_score: float
    urgency_score: float
    delta_summary: StateDeltaSummary
    should_escalate: bool
    escalation_reason: str | None = None


@dataclass
class AssessmentStatistics:
    tier0_rules_evaluated: int = 0
    tier0_rules_triggered: int = 0
    tier0_recommendations: int = 0
    tier1_executed: bool = False
    tier1_combined_score: float | None = None
    tier2_executed: bool = False
    tier2_recommendations: int = 0


@dataclass
class AssessmentOutcome:
    statistics: AssessmentStatistics
    tier0_triggered_rules: tuple[str, ...] = ()
    tier1_result: QuickAssessmentResult | None = None
    tier2_executed: bool = False
    generated_recommendations: list[Recommendation] = field(default_factory=list)

    @property
    def final_tier(self) -> AssessmentTier:
        """Highest tier that actually ran."""
        if self.tier2_executed:
            return AssessmentTier.TIER2_FULL_PIPELINE
        if self.tier1_result is not None:
            return AssessmentTier.TIER1_QUICK_ASSESSMENT
        return AssessmentTier.TIER0_DETERMINISTIC


@dataclass
class SignalProcessingHistory:
    """Per-batch audit row. Started once, completed exactly once."""

    user_id: uuid.UUID
    window_type: WindowType
    started_at: datetime
    signals_received: int
    batch_id: str | None = None
    signals_processed: int = 0
    signals_skipped: int = 0
    final_tier: AssessmentTier = AssessmentTier.SKIPPED
    tier0_rules_triggered: tuple[str, ...] = ()
    tier1_combined_score: float | None = None
    tier1_delta_summary: dict[str, Any] | None = None
    tier1_escalation_reason: str | None = None
    tier2_executed: bool = False
    recommendations_generated: int = 0
    recommendation_ids: list[uuid.UUID] = field(default_factory=list)
    error_message: str | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None
    id: uuid.UUID = field(default_factory=uuid.uuid4)

    @classmethod
    def start(
        cls,
        user_id: uuid.UUID,
        window_type: WindowType,
        signals_received: int,
        started_at: datetime,
        batch_id: str | None = None,
    ) -> "SignalProcessingHistory":
        return cls(
            user_id=user_id,
            window_type=window_type,
            started_at=started_at,
            signals_received=signals_received,
            batch_id=batch_id,
        )

    @property
    def is_completed(self) -> bool:
        return self.completed_at is not None

    def record_tier0(self, triggered_rules: tuple[str, ...]) -> None:
        self.tier0_rules_triggered = tuple(triggered_rules)
        self.final_tier = max(self.final_tier, AssessmentTier.TIER0_DETERMINISTIC)

    def record_tier1(self, result: QuickAssessmentResult) -> None:
        self.tier1_combined_score = result.combined_score
        self.tier1_delta_summary = result.delta_summary.to_dict()
        self.tier1_escalation_reason = result.escalation_reason
        self.final_tier = max(self.final_tier, AssessmentTier.TIER1_QUICK_ASSESSMENT)

    def record_tier2(self) -> None:
        self.tier2_executed = True
        self.final_tier = max(self.final_tier, AssessmentTier.TIER2_FULL_PIPELINE)

    def record_recommendations(self, ids: list[uuid.UUID]) -> None:
        self.recommendation_ids = list(ids)
        self.recommendations_generated = len(self.recommendation_ids)

    def record_outcome(self, processed: int, skipped: int) -> None:
        self.signals_processed = processed
        self.signals_skipped = skipped

    def record_error(self, message: str) -> None:
        self.error_message = truncate(message, ERROR_MESSAGE_MAX_LENGTH) or "unknown error"

    def complete(self, now: datetime) -> None:
        if self.completed_at is not None:
            raise InvalidTransitionError(f"processing history {self.id} already completed")
        self.completed_at = now
        self.duration_ms = max(0, int((now - self.started_at).total_seconds() * 1000))


@dataclass(frozen=True)
class DlqTopicStatus:
    topic_name: str
    failed_count: int
    table_source: str


@dataclass(frozen=True)
class DlqHealthStatus:
    topics: tuple[DlqTopicStatus, ...]
    checked_at: datetime | None

    @property
    def total_failed(self) -> int:
        return sum(t.failed_count for t in self.topics)

    def to_dict(self) -> dict[str, Any]:
        return {
            "checked_at": self.checked_at.isoformat() if self.checked_at else None,
            "total_failed": self.total_failed,
            "topics": [
                {
                    "topic_name": t.topic_name,
                    "failed_count": t.failed_count,
                    "table_source": t.table_source,
                }
                for t in self.topics
            ],
        }
