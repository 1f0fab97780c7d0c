"""User state snapshot consumed by the assessment tiers.

The snapshot is assembled once per batch from ``user_state_snapshots.state``
(maintained by the domain services) and the last completed processing run.
Parsing is lenient: missing keys fall back to empty collections so that a
partially-populated snapshot still produces a usable state.
"""

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any


def _parse_date(value: Any) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _parse_uuid(value: Any) -> uuid.UUID | None:
    if value is None or value == "":
        return None
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


@dataclass(frozen=True)
class HabitSnapshot:
    id: uuid.UUID
    title: str
    status: str = "active"
    adherence_7d: float = 1.0
    current_streak: int = 0
    mode: str = "full"

    @property
    def is_active(self) -> bool:
        return self.status.lower() == "active"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HabitSnapshot":
        return cls(
            id=_parse_uuid(data["id"]),
            title=str(data.get("title") or ""),
            status=str(data.get("status") or "active"),
            adherence_7d=float(data.get("adherence_7d", 1.0)),
            current_streak=int(data.get("current_streak", 0)),
            mode=str(data.get("mode") or "full"),
        )


@dataclass(frozen=True)
class TaskSnapshot:
    id: uuid.UUID
    title: str
    status: str = "open"
    due_date: date | None = None
    reschedule_count: int = 0
    is_recurring: bool = False
    last_completed_on: date | None = None

    @property
    def is_open(self) -> bool:
        return self.status.lower() not in ("completed", "archived", "cancelled")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskSnapshot":
        return cls(
            id=_parse_uuid(data["id"]),
            title=str(data.get("title") or ""),
            status=str(data.get("status") or "open"),
            due_date=_parse_date(data.get("due_date")),
            reschedule_count=int(data.get("reschedule_count", 0)),
            is_recurring=bool(data.get("is_recurring", False)),
            last_completed_on=_parse_date(data.get("last_completed_on")),
        )


@dataclass(frozen=True)
class CheckInSnapshot:
    date: date
    type: str  # "morning" | "evening"


@dataclass(frozen=True)
class ChangesSinceLastAssessment:
    new: int = 0
    modified: int = 0
    completed: int = 0
    missed: int = 0
    by_entity_type: dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ChangesSinceLastAssessment":
        data = data or {}
        return cls(
            new=int(data.get("new", 0)),
            modified=int(data.get("modified", 0)),
            completed=int(data.get("completed", 0)),
            missed=int(data.get("missed", 0)),
            by_entity_type={
                str(k): int(v) for k, v in (data.get("by_entity_type") or {}).items()
            },
        )


@dataclass(frozen=True)
class UserState:
    user_id: uuid.UUID
    today: date
    habits: tuple[HabitSnapshot, ...] = ()
    tasks: tuple[TaskSnapshot, ...] = ()
    check_ins: tuple[CheckInSnapshot, ...] = ()
    check_in_streak: int = 0
    changes: ChangesSinceLastAssessment = field(default_factory=ChangesSinceLastAssessment)
    last_assessed_at: datetime | None = None

    @property
    def active_habits(self) -> tuple[HabitSnapshot, ...]:
        return tuple(h for h in self.habits if h.is_active)

    @property
    def open_tasks(self) -> tuple[TaskSnapshot, ...]:
        return tuple(t for t in self.tasks if t.is_open)

    def has_check_in(self, on: date, check_in_type: str) -> bool:
        return any(c.date == on and c.type == check_in_type for c in self.check_ins)

    @classmethod
    def from_dict(
        cls,
        user_id: uuid.UUID,
        data: dict[str, Any],
        *,
        today: date,
        last_assessed_at: datetime | None = None,
    ) -> "UserState":
        check_ins = []
        for item in data.get("check_ins") or []:
            parsed = _parse_date(item.get("date"))
            if parsed is None:
                continue
            check_ins.append(CheckInSnapshot(date=parsed, type=str(item.get("type", "")).lower()))

        return cls(
            user_id=user_id,
            today=_parse_date(data.get("today")) or today,
            habits=tuple(HabitSnapshot.from_dict(h) for h in data.get("habits") or []),
            tasks=tuple(TaskSnapshot.from_dict(t) for t in data.get("tasks") or []),
            check_ins=tuple(check_ins),
            check_in_streak=int(data.get("check_in_streak", 0)),
            changes=ChangesSinceLastAssessment.from_dict(
                data.get("changes_since_last_assessment")
            ),
            last_assessed_at=last_assessed_at,
        )
