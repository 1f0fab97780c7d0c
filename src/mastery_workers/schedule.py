"""Processing-window resolution per user.

A processing window is a recurring local-time period (morning, evening,
weekly review) in the user's IANA timezone. Everything returned from here
is UTC. Users without stored preferences get the default windows in UTC.
"""

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from typing import Any, Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import psycopg
from psycopg.rows import dict_row

from .models import WindowType
from .utils import as_utc, utcnow

logger = logging.getLogger(__name__)

BATCH_WINDOW_INTERVAL_HOURS = 3
IMMEDIATE_WINDOW_LENGTH = timedelta(minutes=5)

# Every known user, with preference columns NULL where no row is stored.
_USERS_WITH_WINDOWS_SQL = """
    SELECT COALESCE(w.user_id, s.user_id) AS user_id,
           w.timezone, w.morning_start, w.morning_end,
           w.evening_start, w.evening_end, w.weekly_review_day,
           w.weekly_review_start, w.weekly_review_end
    FROM user_state_snapshots s
    FULL OUTER JOIN user_processing_windows w ON w.user_id = s.user_id
    ORDER BY 1
"""


@dataclass(frozen=True)
class ProcessingWindowPreferences:
    morning_start: time = time(6, 0)
    morning_end: time = time(9, 0)
    evening_start: time = time(20, 0)
    evening_end: time = time(22, 0)
    weekly_review_day: int = 6  # Monday=0 .. Sunday=6
    weekly_review_start: time = time(17, 0)
    weekly_review_end: time = time(20, 0)

    def local_period(self, window_type: WindowType) -> tuple[time, time]:
        if window_type is WindowType.MORNING_WINDOW:
            return self.morning_start, self.morning_end
        if window_type is WindowType.EVENING_WINDOW:
            return self.evening_start, self.evening_end
        if window_type is WindowType.WEEKLY_REVIEW:
            return self.weekly_review_start, self.weekly_review_end
        raise ValueError(f"{window_type.value} is not a local-time window")

    def occurs_on(self, window_type: WindowType, local_date: date) -> bool:
        if window_type is WindowType.WEEKLY_REVIEW:
            return local_date.weekday() == self.weekly_review_day
        return True

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "ProcessingWindowPreferences":
        defaults = cls()
        values = {}
        for name in (
            "morning_start",
            "morning_end",
            "evening_start",
            "evening_end",
            "weekly_review_day",
            "weekly_review_start",
            "weekly_review_end",
        ):
            value = row.get(name)
            values[name] = getattr(defaults, name) if value is None else value
        return cls(**values)


@dataclass(frozen=True)
class WindowBoundaries:
    start_utc: datetime
    end_utc: datetime
    is_currently_active: bool


@dataclass(frozen=True)
class UserWindowInfo:
    user_id: uuid.UUID
    timezone: str
    window_start_utc: datetime
    window_end_utc: datetime


class ScheduleResolver(Protocol):
    async def get_next_window_start(
        self, user_id: uuid.UUID, window_type: WindowType
    ) -> datetime: ...

    async def get_users_in_window_range(
        self, window_type: WindowType, utc_start: datetime, utc_end: datetime
    ) -> list[UserWindowInfo]: ...


def resolve_timezone(name: str | None) -> ZoneInfo:
    if not name:
        return ZoneInfo("UTC")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, falling back to UTC", name)
        return ZoneInfo("UTC")


def _local_to_utc(local_date: date, local_time: time, tz: ZoneInfo) -> datetime:
    return datetime.combine(local_date, local_time, tzinfo=tz).astimezone(UTC)


def _period_utc(
    local_date: date, start: time, end: time, tz: ZoneInfo
) -> tuple[datetime, datetime]:
    # A window whose end is not after its start runs past local midnight.
    end_date = local_date if end > start else local_date + timedelta(days=1)
    return _local_to_utc(local_date, start, tz), _local_to_utc(end_date, end, tz)


def _batch_window(now: datetime) -> WindowBoundaries:
    next_hour = (now.hour // BATCH_WINDOW_INTERVAL_HOURS + 1) * BATCH_WINDOW_INTERVAL_HOURS
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    start = midnight + timedelta(hours=next_hour)
    end = start + timedelta(hours=1)
    active = start - timedelta(hours=BATCH_WINDOW_INTERVAL_HOURS) <= now <= end
    return WindowBoundaries(start, end, active)


def window_boundaries(
    window_type: WindowType,
    now: datetime,
    tz: ZoneInfo,
    prefs: ProcessingWindowPreferences,
) -> WindowBoundaries:
    """Boundaries of the current or next occurrence of a window.

    A window that is still open counts as the current occurrence; once its
    local end has passed, the next day's (or next week's) occurrence is used.
    """
    now = as_utc(now)
    if window_type is WindowType.IMMEDIATE:
        return WindowBoundaries(now, now + IMMEDIATE_WINDOW_LENGTH, True)
    if window_type is WindowType.BATCH_WINDOW:
        return _batch_window(now)

    local_now = now.astimezone(tz)
    start_t, end_t = prefs.local_period(window_type)
    # Start a day back: yesterday's window may still be open past local midnight.
    day = local_now.date() - timedelta(days=1)
    for _ in range(9):
        if prefs.occurs_on(window_type, day):
            start_utc, end_utc = _period_utc(day, start_t, end_t, tz)
            if now <= end_utc:
                return WindowBoundaries(start_utc, end_utc, start_utc <= now <= end_utc)
        day += timedelta(days=1)
    raise ValueError(f"no occurrence of {window_type.value} within a week")


def window_starts_between(
    window_type: WindowType,
    tz: ZoneInfo,
    prefs: ProcessingWindowPreferences,
    utc_start: datetime,
    utc_end: datetime,
) -> list[tuple[datetime, datetime]]:
    """All (start, end) occurrences whose start lies in [utc_start, utc_end)."""
    utc_start = as_utc(utc_start)
    utc_end = as_utc(utc_end)
    start_t, end_t = prefs.local_period(window_type)

    # Local dates around the range; offsets never exceed a day either way.
    first = utc_start.astimezone(tz).date() - timedelta(days=1)
    last = utc_end.astimezone(tz).date() + timedelta(days=1)

    found: list[tuple[datetime, datetime]] = []
    day = first
    while day <= last:
        if prefs.occurs_on(window_type, day):
            start_utc, end_utc = _period_utc(day, start_t, end_t, tz)
            if utc_start <= start_utc < utc_end:
                found.append((start_utc, end_utc))
        day += timedelta(days=1)
    return found


class PostgresScheduleResolver:
    """ScheduleResolver over ``user_processing_windows``.

    The window scan covers every user with a state snapshot or stored
    preferences.
    """

    def __init__(
        self,
        conn: psycopg.AsyncConnection[Any],
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._conn = conn
        self._clock = clock

    async def get_next_window_start(
        self, user_id: uuid.UUID, window_type: WindowType
    ) -> datetime:
        async with self._conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                "SELECT * FROM user_processing_windows WHERE user_id = %s",
                (user_id,),
            )
            row = await cur.fetchone()

        if row is None:
            tz, prefs = ZoneInfo("UTC"), ProcessingWindowPreferences()
        else:
            tz, prefs = resolve_timezone(row.get("timezone")), ProcessingWindowPreferences.from_row(row)
        return window_boundaries(window_type, self._clock(), tz, prefs).start_utc

    async def get_users_in_window_range(
        self, window_type: WindowType, utc_start: datetime, utc_end: datetime
    ) -> list[UserWindowInfo]:
        async with self._conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(_USERS_WITH_WINDOWS_SQL)
            rows = await cur.fetchall()

        results: list[UserWindowInfo] = []
        for row in rows:
            tz = resolve_timezone(row.get("timezone"))
            prefs = ProcessingWindowPreferences.from_row(row)
            for start_utc, end_utc in window_starts_between(
                window_type, tz, prefs, utc_start, utc_end
            ):
                results.append(UserWindowInfo(row["user_id"], tz.key, start_utc, end_utc))
        return results
