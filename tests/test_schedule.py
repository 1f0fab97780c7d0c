"""Tests for processing-window resolution across timezones."""

import uuid
from datetime import UTC, datetime, time
from unittest.mock import AsyncMock, MagicMock
from zoneinfo import ZoneInfo

import pytest

from mastery_workers.models import WindowType
from mastery_workers.schedule import (
    PostgresScheduleResolver,
    ProcessingWindowPreferences,
    resolve_timezone,
    window_boundaries,
    window_starts_between,
)

UTC_TZ = ZoneInfo("UTC")
NEW_YORK = ZoneInfo("America/New_York")
DEFAULTS = ProcessingWindowPreferences()
USER = uuid.UUID("00000000-0000-0000-0000-000000000001")


def _utc(*args):
    return datetime(*args, tzinfo=UTC)


class TestWindowBoundaries:
    def test_next_morning_window_in_new_york(self):
        # 2026-03-09 is a Monday, after the US switch to daylight time (UTC-4).
        b = window_boundaries(WindowType.MORNING_WINDOW, _utc(2026, 3, 9, 5, 30), NEW_YORK, DEFAULTS)
        assert b.start_utc == _utc(2026, 3, 9, 10, 0)
        assert b.end_utc == _utc(2026, 3, 9, 13, 0)
        assert not b.is_currently_active

    def test_open_window_is_current(self):
        b = window_boundaries(WindowType.MORNING_WINDOW, _utc(2026, 3, 9, 11, 0), NEW_YORK, DEFAULTS)
        assert b.start_utc == _utc(2026, 3, 9, 10, 0)
        assert b.is_currently_active

    def test_closed_window_rolls_to_next_day(self):
        b = window_boundaries(WindowType.MORNING_WINDOW, _utc(2026, 3, 9, 13, 30), NEW_YORK, DEFAULTS)
        assert b.start_utc == _utc(2026, 3, 10, 10, 0)

    def test_evening_window_defaults(self):
        b = window_boundaries(WindowType.EVENING_WINDOW, _utc(2026, 3, 9, 12, 0), UTC_TZ, DEFAULTS)
        assert b.start_utc == _utc(2026, 3, 9, 20, 0)
        assert b.end_utc == _utc(2026, 3, 9, 22, 0)

    def test_window_crossing_midnight_still_open(self):
        prefs = ProcessingWindowPreferences(evening_start=time(23, 0), evening_end=time(1, 0))
        b = window_boundaries(WindowType.EVENING_WINDOW, _utc(2026, 3, 10, 0, 30), UTC_TZ, prefs)
        assert b.start_utc == _utc(2026, 3, 9, 23, 0)
        assert b.end_utc == _utc(2026, 3, 10, 1, 0)
        assert b.is_currently_active

    def test_weekly_review_on_sunday(self):
        b = window_boundaries(WindowType.WEEKLY_REVIEW, _utc(2026, 3, 9, 5, 30), UTC_TZ, DEFAULTS)
        assert b.start_utc == _utc(2026, 3, 15, 17, 0)
        assert b.start_utc.weekday() == 6

    def test_immediate_window_starts_now(self):
        now = _utc(2026, 3, 9, 5, 30)
        b = window_boundaries(WindowType.IMMEDIATE, now, NEW_YORK, DEFAULTS)
        assert b.start_utc == now
        assert b.is_currently_active

    def test_batch_window_every_three_hours(self):
        b = window_boundaries(WindowType.BATCH_WINDOW, _utc(2026, 3, 9, 5, 30), UTC_TZ, DEFAULTS)
        assert b.start_utc == _utc(2026, 3, 9, 6, 0)
        assert b.end_utc == _utc(2026, 3, 9, 7, 0)

    def test_batch_window_wraps_past_midnight(self):
        b = window_boundaries(WindowType.BATCH_WINDOW, _utc(2026, 3, 9, 22, 10), UTC_TZ, DEFAULTS)
        assert b.start_utc == _utc(2026, 3, 10, 0, 0)


class TestWindowStartsBetween:
    def test_start_inside_range(self):
        found = window_starts_between(
            WindowType.MORNING_WINDOW, UTC_TZ, DEFAULTS, _utc(2026, 3, 9, 6, 0), _utc(2026, 3, 9, 6, 5)
        )
        assert found == [(_utc(2026, 3, 9, 6, 0), _utc(2026, 3, 9, 9, 0))]

    def test_range_is_half_open(self):
        found = window_starts_between(
            WindowType.MORNING_WINDOW, UTC_TZ, DEFAULTS, _utc(2026, 3, 9, 5, 55), _utc(2026, 3, 9, 6, 0)
        )
        assert found == []

    def test_start_after_range(self):
        found = window_starts_between(
            WindowType.MORNING_WINDOW, UTC_TZ, DEFAULTS, _utc(2026, 3, 9, 6, 5), _utc(2026, 3, 9, 6, 10)
        )
        assert found == []

    def test_timezone_offset_applied(self):
        found = window_starts_between(
            WindowType.MORNING_WINDOW, NEW_YORK, DEFAULTS, _utc(2026, 3, 9, 10, 0), _utc(2026, 3, 9, 10, 5)
        )
        assert [start for start, _ in found] == [_utc(2026, 3, 9, 10, 0)]

    def test_full_day_yields_one_start(self):
        found = window_starts_between(
            WindowType.EVENING_WINDOW, NEW_YORK, DEFAULTS, _utc(2026, 3, 9, 0, 0), _utc(2026, 3, 10, 0, 0)
        )
        assert len(found) == 1

    def test_batch_window_not_local(self):
        with pytest.raises(ValueError):
            window_starts_between(
                WindowType.BATCH_WINDOW, UTC_TZ, DEFAULTS, _utc(2026, 3, 9, 0, 0), _utc(2026, 3, 9, 1, 0)
            )


class TestResolveTimezone:
    def test_known_zone(self):
        assert resolve_timezone("Europe/Berlin").key == "Europe/Berlin"

    def test_unknown_zone_falls_back_to_utc(self):
        assert resolve_timezone("Mars/Olympus_Mons").key == "UTC"

    def test_missing_zone_is_utc(self):
        assert resolve_timezone(None).key == "UTC"
        assert resolve_timezone("").key == "UTC"


class _FakeCursor:
    def __init__(self, one=None, many=None):
        self.execute = AsyncMock()
        self.fetchone = AsyncMock(return_value=one)
        self.fetchall = AsyncMock(return_value=many or [])

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False


def _conn_with(cursor):
    conn = AsyncMock()
    conn.cursor = MagicMock(return_value=cursor)
    return conn


class TestPostgresScheduleResolver:
    @pytest.mark.asyncio
    async def test_missing_preferences_use_defaults_in_utc(self):
        conn = _conn_with(_FakeCursor(one=None))
        resolver = PostgresScheduleResolver(conn, clock=lambda: _utc(2026, 3, 9, 5, 30))

        start = await resolver.get_next_window_start(USER, WindowType.MORNING_WINDOW)

        assert start == _utc(2026, 3, 9, 6, 0)

    @pytest.mark.asyncio
    async def test_stored_preferences_and_timezone(self):
        row = {"user_id": USER, "timezone": "America/New_York", "morning_start": time(7, 0)}
        conn = _conn_with(_FakeCursor(one=row))
        resolver = PostgresScheduleResolver(conn, clock=lambda: _utc(2026, 3, 9, 5, 30))

        start = await resolver.get_next_window_start(USER, WindowType.MORNING_WINDOW)

        assert start == _utc(2026, 3, 9, 11, 0)

    @pytest.mark.asyncio
    async def test_users_in_window_range(self):
        other = uuid.uuid4()
        rows = [
            {"user_id": USER, "timezone": "UTC"},
            {"user_id": other, "timezone": "America/New_York"},
        ]
        conn = _conn_with(_FakeCursor(many=rows))
        resolver = PostgresScheduleResolver(conn)

        users = await resolver.get_users_in_window_range(
            WindowType.MORNING_WINDOW, _utc(2026, 3, 9, 6, 0), _utc(2026, 3, 9, 6, 5)
        )

        assert [u.user_id for u in users] == [USER]
        assert users[0].window_start_utc == _utc(2026, 3, 9, 6, 0)
        assert users[0].timezone == "UTC"

    @pytest.mark.asyncio
    async def test_users_without_preferences_scanned_with_defaults(self):
        rows = [
            {
                "user_id": USER,
                "timezone": None,
                "morning_start": None,
                "morning_end": None,
                "evening_start": None,
                "evening_end": None,
                "weekly_review_day": None,
                "weekly_review_start": None,
                "weekly_review_end": None,
            }
        ]
        cursor = _FakeCursor(many=rows)
        resolver = PostgresScheduleResolver(_conn_with(cursor))

        users = await resolver.get_users_in_window_range(
            WindowType.MORNING_WINDOW, _utc(2026, 3, 9, 6, 0), _utc(2026, 3, 9, 6, 5)
        )

        [user] = users
        assert (user.user_id, user.timezone) == (USER, "UTC")
        assert user.window_start_utc == _utc(2026, 3, 9, 6, 0)
        query = cursor.execute.await_args.args[0]
        assert "user_state_snapshots" in query
        assert "FULL OUTER JOIN user_processing_windows" in query
