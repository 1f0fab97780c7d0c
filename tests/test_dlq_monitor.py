"""Tests for dead-letter monitoring: counting, alert thresholds, health evaluation."""

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import psycopg
import pytest

from mastery_workers.dlq_monitor import (
    DEGRADED,
    HEALTHY,
    UNHEALTHY,
    DlqMonitor,
    evaluate_health,
    fetch_failed_counts,
)
from mastery_workers.models import DlqHealthStatus, DlqTopicStatus

NOW = datetime(2026, 3, 9, 12, 0, tzinfo=UTC)
INTERVAL = timedelta(minutes=15)


class _FakeCursor:
    def __init__(self, rows=None, error=None):
        self.execute = AsyncMock(side_effect=error)
        self.fetchall = AsyncMock(return_value=rows or [])

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False


def _conn(*cursors):
    conn = AsyncMock()
    conn.cursor = MagicMock(side_effect=list(cursors))
    return conn


def _topic(name, count, table="queue_messages"):
    return DlqTopicStatus(topic_name=name, failed_count=count, table_source=table)


class _Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


class TestFetchFailedCounts:
    @pytest.mark.asyncio
    async def test_rows_become_topic_statuses(self):
        conn = _conn(_FakeCursor(rows=[("signals-batch", 3), ("signals-urgent", 1)]))

        topics = await fetch_failed_counts(conn, "queue_messages", "queue_name")

        assert topics == [_topic("signals-batch", 3), _topic("signals-urgent", 1)]

    @pytest.mark.asyncio
    async def test_missing_table_counts_as_empty(self):
        conn = _conn(_FakeCursor(error=psycopg.errors.UndefinedTable("relation does not exist")))
        assert await fetch_failed_counts(conn, "outbox_entries", "destination") == []

    @pytest.mark.asyncio
    async def test_other_errors_propagate(self):
        conn = _conn(_FakeCursor(error=psycopg.OperationalError("connection lost")))
        with pytest.raises(psycopg.OperationalError):
            await fetch_failed_counts(conn, "queue_messages", "queue_name")


class TestDlqMonitorScan:
    @pytest.mark.asyncio
    async def test_scan_reads_both_sources(self):
        clock = _Clock(NOW)
        monitor = DlqMonitor("postgresql://unused", clock=clock)
        conn = _conn(
            _FakeCursor(rows=[("signals-batch", 2)]),
            _FakeCursor(rows=[("embeddings-pending", 4)]),
        )

        status = await monitor.scan_once(conn)

        assert status.checked_at == NOW
        assert status.total_failed == 6
        assert [t.table_source for t in status.topics] == ["queue_messages", "outbox_entries"]
        assert monitor.current_status() is status

    def test_status_starts_unchecked(self):
        monitor = DlqMonitor("postgresql://unused")
        assert monitor.current_status().checked_at is None
        assert monitor.health().status == DEGRADED

    def test_each_scan_advances_checked_at(self):
        clock = _Clock(NOW)
        monitor = DlqMonitor("postgresql://unused", clock=clock)

        first = monitor.record_scan([])
        clock.now += timedelta(minutes=15)
        second = monitor.record_scan([_topic("signals-batch", 1)])

        assert second.checked_at > first.checked_at
        assert monitor.current_status().topics == (_topic("signals-batch", 1),)

    @pytest.mark.parametrize(
        "count, level",
        [(49, None), (50, logging.WARNING), (99, logging.WARNING), (100, logging.CRITICAL)],
    )
    def test_alert_levels(self, count, level):
        assert DlqMonitor("postgresql://unused").alert_level(count) == level

    def test_below_warning_is_silent(self, caplog):
        monitor = DlqMonitor("postgresql://unused", clock=lambda: NOW)
        with caplog.at_level(logging.WARNING, logger="mastery_workers.dlq_monitor"):
            monitor.record_scan([_topic("signals-batch", 49)])
        assert caplog.records == []

    def test_warning_threshold_logs_warning(self, caplog):
        monitor = DlqMonitor("postgresql://unused", clock=lambda: NOW)
        with caplog.at_level(logging.WARNING, logger="mastery_workers.dlq_monitor"):
            monitor.record_scan([_topic("signals-batch", 50)])

        [record] = caplog.records
        assert record.levelno == logging.WARNING
        assert record.getMessage() == (
            "WARNING: DLQ for topic signals-batch in queue_messages has 50 messages (threshold: 50)"
        )

    def test_critical_threshold_logs_critical(self, caplog):
        monitor = DlqMonitor("postgresql://unused", clock=lambda: NOW)
        with caplog.at_level(logging.WARNING, logger="mastery_workers.dlq_monitor"):
            monitor.record_scan([_topic("embeddings-pending", 100, "outbox_entries")])

        [record] = caplog.records
        assert record.levelno == logging.CRITICAL
        assert "threshold: 100" in record.getMessage()
        assert record.signal_queue == "embeddings-pending"

    def test_custom_thresholds(self):
        monitor = DlqMonitor("postgresql://unused", warning_threshold=5, critical_threshold=10)
        assert monitor.alert_level(5) == logging.WARNING
        assert monitor.alert_level(10) == logging.CRITICAL


class TestEvaluateHealth:
    def test_healthy(self):
        status = DlqHealthStatus(topics=(_topic("signals-batch", 3),), checked_at=NOW)
        report = evaluate_health(status, NOW, INTERVAL)
        assert report.status == HEALTHY
        assert report.data["total_failed"] == 3
        assert report.data["critical_topics"] == 0

    def test_warning_topic_degrades(self):
        status = DlqHealthStatus(topics=(_topic("signals-batch", 60),), checked_at=NOW)
        report = evaluate_health(status, NOW, INTERVAL)
        assert report.status == DEGRADED
        assert "signals-batch=60" in report.description
        assert report.data["warning_topics"] == 1

    def test_critical_topic_is_unhealthy(self):
        status = DlqHealthStatus(
            topics=(_topic("signals-batch", 60), _topic("signals-urgent", 150)), checked_at=NOW
        )
        report = evaluate_health(status, NOW, INTERVAL)
        assert report.status == UNHEALTHY
        assert "signals-urgent=150" in report.description

    def test_never_checked_is_degraded(self):
        report = evaluate_health(DlqHealthStatus(topics=(), checked_at=None), NOW, INTERVAL)
        assert report.status == DEGRADED
        assert report.data["checked_at"] is None

    def test_stale_status_is_degraded(self):
        status = DlqHealthStatus(topics=(), checked_at=NOW - timedelta(minutes=31))
        report = evaluate_health(status, NOW, INTERVAL)
        assert report.status == DEGRADED
        assert report.data["staleness_minutes"] == 31.0

    def test_exactly_two_intervals_is_not_stale(self):
        status = DlqHealthStatus(topics=(), checked_at=NOW - 2 * INTERVAL)
        assert evaluate_health(status, NOW, INTERVAL).status == HEALTHY

    def test_staleness_wins_over_counts(self):
        status = DlqHealthStatus(
            topics=(_topic("signals-batch", 500),), checked_at=NOW - timedelta(hours=2)
        )
        assert evaluate_health(status, NOW, INTERVAL).status == DEGRADED


class TestDlqMonitorRun:
    @pytest.mark.asyncio
    async def test_shutdown_during_initial_delay(self):
        monitor = DlqMonitor("postgresql://unused", initial_delay_seconds=60)
        shutdown = asyncio.Event()
        shutdown.set()

        await asyncio.wait_for(monitor.run(shutdown), timeout=1)

        assert monitor.current_status().checked_at is None
