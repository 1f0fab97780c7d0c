"""Dead-letter monitor for the inbound queue and the outbound outbox.

Scans run on a fixed interval after a short warm-up. Each scan replaces a
cached DlqHealthStatus that ``/health/dlq`` reads without touching the
database. Topics at or above the warning threshold log a warning, at or
above the critical threshold a critical.
"""

import asyncio
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import psycopg
from psycopg import sql

from .config import Config
from .models import DlqHealthStatus, DlqTopicStatus
from .utils import as_utc, utcnow, wait_for_shutdown

logger = logging.getLogger(__name__)

DEFAULT_WARNING_THRESHOLD = 50
DEFAULT_CRITICAL_THRESHOLD = 100

# (table, column holding the topic name)
DLQ_SOURCES: tuple[tuple[str, str], ...] = (
    ("queue_messages", "queue_name"),
    ("outbox_entries", "destination"),
)

HEALTHY = "healthy"
DEGRADED = "degraded"
UNHEALTHY = "unhealthy"


async def fetch_failed_counts(
    conn: psycopg.AsyncConnection[Any], table: str, topic_column: str
) -> list[DlqTopicStatus]:
    """Count dead rows per topic. A table that does not exist yet counts as empty."""
    query = sql.SQL(
        """
        SELECT {column}, COUNT(*)
        FROM {table}
        WHERE status = 'dead'
        GROUP BY {column}
        HAVING COUNT(*) > 0
        ORDER BY {column}
        """
    ).format(column=sql.Identifier(topic_column), table=sql.Identifier(table))

    try:
        async with conn.cursor() as cur:
            await cur.execute(query)
            rows = await cur.fetchall()
    except psycopg.errors.UndefinedTable:
        logger.debug("Table %s does not exist yet, skipping DLQ check", table)
        return []
    return [DlqTopicStatus(topic_name=row[0], failed_count=int(row[1]), table_source=table) for row in rows]


@dataclass(frozen=True)
class DlqHealthReport:
    status: str
    description: str
    data: dict[str, Any]


def evaluate_health(
    status: DlqHealthStatus,
    now: datetime,
    check_interval: timedelta,
    *,
    warning_threshold: int = DEFAULT_WARNING_THRESHOLD,
    critical_threshold: int = DEFAULT_CRITICAL_THRESHOLD,
) -> DlqHealthReport:
    """Derive healthy/degraded/unhealthy from a cached status.

    A status older than twice the check interval (or never checked) is
    degraded regardless of its counts.
    """
    data: dict[str, Any] = status.to_dict()

    if status.checked_at is None:
        return DlqHealthReport(DEGRADED, "DLQ status has not been checked yet", data)

    staleness = as_utc(now) - status.checked_at
    if staleness > 2 * check_interval:
        data["staleness_minutes"] = round(staleness.total_seconds() / 60, 1)
        return DlqHealthReport(
            DEGRADED,
            f"DLQ status is stale (last checked {staleness.total_seconds() / 60:.0f} minutes ago)",
            data,
        )

    critical = [t for t in status.topics if t.failed_count >= critical_threshold]
    warning = [t for t in status.topics if warning_threshold <= t.failed_count < critical_threshold]
    data["critical_topics"] = len(critical)
    data["warning_topics"] = len(warning)

    if critical:
        listing = ", ".join(f"{t.topic_name}={t.failed_count}" for t in critical)
        return DlqHealthReport(UNHEALTHY, f"Critical DLQ backlog: {listing}", data)
    if warning:
        listing = ", ".join(f"{t.topic_name}={t.failed_count}" for t in warning)
        return DlqHealthReport(DEGRADED, f"DLQ backlog above warning threshold: {listing}", data)
    return DlqHealthReport(HEALTHY, "No DLQ backlog above thresholds", data)


class DlqMonitor:
    def __init__(
        self,
        database_url: str,
        *,
        check_interval_seconds: float = 900.0,
        initial_delay_seconds: float = 30.0,
        warning_threshold: int = DEFAULT_WARNING_THRESHOLD,
        critical_threshold: int = DEFAULT_CRITICAL_THRESHOLD,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._database_url = database_url
        self._check_interval_seconds = check_interval_seconds
        self._initial_delay_seconds = initial_delay_seconds
        self.warning_threshold = warning_threshold
        self.critical_threshold = critical_threshold
        self._clock = clock
        self._lock = threading.Lock()
        self._status = DlqHealthStatus(topics=(), checked_at=None)

    @classmethod
    def from_config(cls, config: Config) -> "DlqMonitor":
        return cls(
            config.database_url,
            check_interval_seconds=config.dlq_check_interval_seconds,
            initial_delay_seconds=config.dlq_initial_delay_seconds,
            warning_threshold=config.dlq_warning_threshold,
            critical_threshold=config.dlq_critical_threshold,
        )

    @property
    def check_interval(self) -> timedelta:
        return timedelta(seconds=self._check_interval_seconds)

    def current_status(self) -> DlqHealthStatus:
        with self._lock:
            return self._status

    def health(self) -> DlqHealthReport:
        return evaluate_health(
            self.current_status(),
            self._clock(),
            self.check_interval,
            warning_threshold=self.warning_threshold,
            critical_threshold=self.critical_threshold,
        )

    def alert_level(self, failed_count: int) -> int | None:
        if failed_count >= self.critical_threshold:
            return logging.CRITICAL
        if failed_count >= self.warning_threshold:
            return logging.WARNING
        return None

    async def scan_once(self, conn: psycopg.AsyncConnection[Any]) -> DlqHealthStatus:
        topics: list[DlqTopicStatus] = []
        for table, column in DLQ_SOURCES:
            topics.extend(await fetch_failed_counts(conn, table, column))
        return self.record_scan(topics)

    def record_scan(self, topics: list[DlqTopicStatus]) -> DlqHealthStatus:
        """Swap in a fresh status and log any topic over a threshold."""
        status = DlqHealthStatus(topics=tuple(topics), checked_at=self._clock())
        with self._lock:
            self._status = status

        for topic in status.topics:
            level = self.alert_level(topic.failed_count)
            if level is None:
                continue
            threshold = self.critical_threshold if level == logging.CRITICAL else self.warning_threshold
            logger.log(
                level,
                "%s: DLQ for topic %s in %s has %d messages (threshold: %d)",
                logging.getLevelName(level),
                topic.topic_name,
                topic.table_source,
                topic.failed_count,
                threshold,
                extra={"signal_queue": topic.topic_name, "signal_dlq_count": topic.failed_count},
            )

        if status.total_failed == 0:
            logger.debug("DLQ check completed, no failed messages")
        else:
            logger.debug(
                "DLQ check completed, %d failed messages across %d topics",
                status.total_failed,
                len(status.topics),
            )
        return status

    async def run(self, shutdown: asyncio.Event) -> None:
        logger.info(
            "DLQ monitor started, checking every %.0f minutes",
            self._check_interval_seconds / 60,
        )
        if await wait_for_shutdown(shutdown, self._initial_delay_seconds):
            logger.info("DLQ monitor stopped")
            return

        while not shutdown.is_set():
            try:
                async with await psycopg.AsyncConnection.connect(
                    self._database_url, autocommit=True
                ) as conn:
                    await self.scan_once(conn)
            except Exception:
                logger.exception("Error checking DLQ status")

            if await wait_for_shutdown(shutdown, self._check_interval_seconds):
                break

        logger.info("DLQ monitor stopped")
