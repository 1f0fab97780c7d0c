"""Map domain events onto priority-tagged signals.

Classification is a pure table lookup: the domain event type decides the
priority and the processing window. Events not listed here (undo events,
recommendation feedback, internal bookkeeping) never become signals.
"""

import logging
import uuid
from collections.abc import Mapping, Sequence
from datetime import date
from typing import Any

from .models import Priority, SignalClassification, WindowType

logger = logging.getLogger(__name__)

MORNING_WINDOW_START = "MorningWindowStart"
EVENING_WINDOW_START = "EveningWindowStart"
DISENGAGEMENT_PATTERN_DETECTED = "DisengagementPatternDetected"

WINDOW_START_EVENT_TYPES: dict[WindowType, str] = {
    WindowType.MORNING_WINDOW: MORNING_WINDOW_START,
    WindowType.EVENING_WINDOW: EVENING_WINDOW_START,
}

# event type -> (window type, target entity kind)
_WINDOW_ALIGNED: dict[str, tuple[WindowType, str]] = {
    "MorningCheckInSubmittedEvent": (WindowType.MORNING_WINDOW, "CheckIn"),
    "EveningCheckInSubmittedEvent": (WindowType.EVENING_WINDOW, "CheckIn"),
}

_STANDARD: dict[str, str] = {
    "HabitCompletedEvent": "Habit",
    "HabitMissedEvent": "Habit",
    "HabitSkippedEvent": "Habit",
    "TaskCompletedEvent": "Task",
    "TaskRescheduledEvent": "Task",
    "GoalStatusChangedEvent": "Goal",
    "MetricObservationRecordedEvent": "MetricObservation",
    "ExperimentStartedEvent": "Experiment",
    "ExperimentCompletedEvent": "Experiment",
    "ProjectStatusChangedEvent": "Project",
    "HabitStreakMilestoneEvent": "Habit",
}

_LOW: dict[str, str] = {
    "HabitCreatedEvent": "Habit",
    "HabitUpdatedEvent": "Habit",
    "HabitStatusChangedEvent": "Habit",
    "HabitArchivedEvent": "Habit",
    "GoalCreatedEvent": "Goal",
    "GoalUpdatedEvent": "Goal",
    "TaskCreatedEvent": "Task",
    "TaskUpdatedEvent": "Task",
    "TaskArchivedEvent": "Task",
    "ProjectCreatedEvent": "Project",
    "ProjectUpdatedEvent": "Project",
    "ExperimentCreatedEvent": "Experiment",
    "UserProfileUpdatedEvent": "UserProfile",
    "SeasonCreatedEvent": "Season",
    "CheckInUpdatedEvent": "CheckIn",
}

# Profile-level signals have no single target entity.
_UNTARGETED = frozenset({"UserProfileUpdatedEvent"})


def classify(
    entity_type: str,
    entity_id: uuid.UUID | None,
    domain_event_type: str,
    user_id: uuid.UUID,
    attributes: Mapping[str, Any] | None = None,
) -> SignalClassification | None:
    """Classify one domain event. Returns None when it should not become a signal."""
    target_id = None if domain_event_type in _UNTARGETED else entity_id

    if domain_event_type in _WINDOW_ALIGNED:
        window, kind = _WINDOW_ALIGNED[domain_event_type]
        return SignalClassification(
            domain_event_type, Priority.WINDOW_ALIGNED, window, kind, target_id
        )

    if domain_event_type == "CheckInSkippedEvent":
        check_in_type = str((attributes or {}).get("checkInType", "")).lower()
        window = (
            WindowType.MORNING_WINDOW if check_in_type == "morning" else WindowType.EVENING_WINDOW
        )
        return SignalClassification(
            domain_event_type, Priority.WINDOW_ALIGNED, window, "CheckIn", target_id
        )

    if domain_event_type in _STANDARD:
        return SignalClassification(
            domain_event_type,
            Priority.STANDARD,
            WindowType.BATCH_WINDOW,
            _STANDARD[domain_event_type],
            target_id,
        )

    if domain_event_type in _LOW:
        return SignalClassification(
            domain_event_type,
            Priority.LOW,
            WindowType.BATCH_WINDOW,
            _LOW[domain_event_type],
            target_id,
        )

    logger.debug(
        "No signal for %s on %s (user=%s)",
        domain_event_type,
        entity_type,
        user_id,
        extra={"signal_event_type": domain_event_type},
    )
    return None


def should_escalate_to_urgent(pending: Sequence[SignalClassification]) -> bool:
    """Detect overload or disengagement patterns in one user's pending signals."""
    missed_habits = sum(1 for s in pending if s.event_type == "HabitMissedEvent")
    rescheduled_tasks = sum(1 for s in pending if s.event_type == "TaskRescheduledEvent")
    skipped_check_ins = sum(1 for s in pending if s.event_type == "CheckInSkippedEvent")

    if missed_habits >= 3:
        return True
    if rescheduled_tasks >= 3:
        return True
    return skipped_check_ins >= 2 and missed_habits >= 1


def urgent_escalation_classification() -> SignalClassification:
    return SignalClassification(
        DISENGAGEMENT_PATTERN_DETECTED, Priority.URGENT, WindowType.IMMEDIATE
    )


def window_start_classification(window_type: WindowType) -> SignalClassification:
    try:
        event_type = WINDOW_START_EVENT_TYPES[window_type]
    except KeyError:
        raise ValueError(f"{window_type.value} has no window-start signal") from None
    return SignalClassification(event_type, Priority.WINDOW_ALIGNED, window_type)


def window_correlation_id(event_type: str, window_date: date) -> str:
    return f"window-scheduler-{event_type}-{window_date:%Y-%m-%d}"
