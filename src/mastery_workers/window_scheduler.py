"""Wall-clock aligned scheduler for morning/evening window-start signals.

Time is cut into fixed buckets aligned to the hour (``:00, :05, :10`` for
5-minute buckets). The loop sleeps until the end of the next bucket, then
emits a window-start signal for every user whose window starts inside
``[bucket_start, bucket_end)``. The next target is always derived from the
previous bucket's end, never from when processing finished, so consecutive
buckets tile time without gaps or overlap even when a tick overruns.

On startup the last ``replay_buckets`` buckets are scanned again so that a
bucket interrupted by a crash is not lost. Replays are absorbed by the
per-(user, event type, window date) existence check.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta

import psycopg

from .classifier import WINDOW_START_EVENT_TYPES, window_correlation_id, window_start_classification
from .config import Config
from .metrics import record_window_signals
from .models import Priority, WindowType
from .repositories import SignalEntryRepository
from .routing import SignalRouter
from .schedule import PostgresScheduleResolver, ScheduleResolver, UserWindowInfo
from .transport import PostgresMessageBus
from .utils import as_utc, utcnow, wait_for_shutdown

logger = logging.getLogger(__name__)

SCHEDULED_WINDOWS = (WindowType.MORNING_WINDOW, WindowType.EVENING_WINDOW)


def floor_to_bucket(moment: datetime, bucket_minutes: int) -> datetime:
    """Start of the hour-aligned bucket containing ``moment``."""
    if bucket_minutes <= 0 or 60 % bucket_minutes != 0:
        raise ValueError("bucket_minutes must divide an hour evenly")
    moment = as_utc(moment)
    minute = moment.minute - moment.minute % bucket_minutes
    return moment.replace(minute=minute, second=0, microsecond=0)


@dataclass(frozen=True)
class Bucket:
    start: datetime
    end: datetime


@dataclass(frozen=True)
class BucketResult:
    scheduled: int = 0
    skipped: int = 0
    failed: int = 0


@dataclass
class SchedulerScope:
    """Collaborators for one bucket, sharing one connection."""

    schedule_resolver: ScheduleResolver
    signal_entries: SignalEntryRepository
    router: SignalRouter
    unit_of_work: Callable[[], AbstractAsyncContextManager]


ScopeFactory = Callable[[], AbstractAsyncContextManager[SchedulerScope]]
SleepFn = Callable[[asyncio.Event, float], Awaitable[bool]]


def postgres_scheduler_scope(config: Config) -> ScopeFactory:
    @asynccontextmanager
    async def open_scope() -> AsyncIterator[SchedulerScope]:
        async with await psycopg.AsyncConnection.connect(
            config.database_url, autocommit=True
        ) as conn:
            resolver = PostgresScheduleResolver(conn)
            router = SignalRouter(
                PostgresMessageBus(conn, max_deliveries=config.max_deliveries),
                resolver,
                config.queues,
            )
            yield SchedulerScope(
                schedule_resolver=resolver,
                signal_entries=SignalEntryRepository(conn),
                router=router,
                unit_of_work=conn.transaction,
            )

    return open_scope


class WindowBucketScheduler:
    def __init__(
        self,
        open_scope: ScopeFactory,
        *,
        bucket_minutes: int = 5,
        replay_buckets: int = 1,
        error_cooldown_seconds: float = 30.0,
        clock: Callable[[], datetime] = utcnow,
        sleep: SleepFn = wait_for_shutdown,
    ) -> None:
        if bucket_minutes <= 0 or 60 % bucket_minutes != 0:
            raise ValueError("bucket_minutes must divide an hour evenly")
        self._open_scope = open_scope
        self._bucket_minutes = bucket_minutes
        self._bucket_size = timedelta(minutes=bucket_minutes)
        self._replay_buckets = max(0, replay_buckets)
        self._error_cooldown_seconds = error_cooldown_seconds
        self._clock = clock
        self._sleep = sleep

    @property
    def bucket_size(self) -> timedelta:
        return self._bucket_size

    def initial_bucket_end(self, now: datetime) -> datetime:
        return floor_to_bucket(now, self._bucket_minutes) - self._replay_buckets * self._bucket_size

    def next_bucket(self, last_bucket_end: datetime) -> Bucket:
        return Bucket(last_bucket_end, last_bucket_end + self._bucket_size)

    async def run(self, shutdown: asyncio.Event) -> None:
        last_bucket_end = self.initial_bucket_end(self._clock())
        logger.info(
            "Window scheduler started (bucket=%dm, resuming from %s)",
            self._bucket_minutes,
            last_bucket_end.isoformat(),
        )

        while not shutdown.is_set():
            bucket = self.next_bucket(last_bucket_end)
            if not await self._sleep_until(bucket.end, shutdown):
                break
            if not await self._run_bucket(bucket, shutdown):
                break
            last_bucket_end = bucket.end

        logger.info("Window scheduler stopped")

    async def _sleep_until(self, target: datetime, shutdown: asyncio.Event) -> bool:
        """Wait until the clock reaches ``target``. False if shutdown came first."""
        while True:
            remaining = (target - self._clock()).total_seconds()
            if remaining <= 0:
                return not shutdown.is_set()
            if await self._sleep(shutdown, remaining):
                return False

    async def _run_bucket(self, bucket: Bucket, shutdown: asyncio.Event) -> bool:
        """Process a bucket, retrying after a cooldown until it succeeds.

        Returns False only when shutdown interrupts the retry cooldown; the
        bucket is then re-scanned by the next process's replay.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                await self.process_bucket(bucket)
                return True
            except Exception:
                logger.exception(
                    "Window bucket [%s, %s) failed (attempt %d), retrying in %.0fs",
                    bucket.start.isoformat(),
                    bucket.end.isoformat(),
                    attempt,
                    self._error_cooldown_seconds,
                )
            if await self._sleep(shutdown, self._error_cooldown_seconds):
                return False

    async def process_bucket(self, bucket: Bucket) -> BucketResult:
        scheduled = skipped = failed = 0
        async with self._open_scope() as scope:
            for window_type in SCHEDULED_WINDOWS:
                users = await scope.schedule_resolver.get_users_in_window_range(
                    window_type, bucket.start, bucket.end
                )
                for user in users:
                    try:
                        if await self._schedule_user(scope, window_type, user):
                            scheduled += 1
                        else:
                            skipped += 1
                    except Exception:
                        failed += 1
                        logger.exception(
                            "Error scheduling %s signal for user %s",
                            WINDOW_START_EVENT_TYPES[window_type],
                            user.user_id,
                        )

        record_window_signals(scheduled, skipped)
        if scheduled or skipped or failed:
            logger.info(
                "Window bucket [%s, %s): scheduled %d, skipped %d duplicates, %d failed",
                bucket.start.isoformat(),
                bucket.end.isoformat(),
                scheduled,
                skipped,
                failed,
                extra={"signal_window_scheduled": scheduled, "signal_window_skipped": skipped},
            )
        return BucketResult(scheduled, skipped, failed)

    async def _schedule_user(
        self, scope: SchedulerScope, window_type: WindowType, user: UserWindowInfo
    ) -> bool:
        event_type = WINDOW_START_EVENT_TYPES[window_type]
        window_date = as_utc(user.window_start_utc).date()
        correlation_id = window_correlation_id(event_type, window_date)

        async with scope.unit_of_work():
            await scope.signal_entries.lock_window(user.user_id, correlation_id)
            if await scope.signal_entries.exists_for_window(
                user.user_id, event_type, window_date, correlation_id
            ):
                logger.debug(
                    "Skipping duplicate %s signal for user %s on %s",
                    event_type,
                    user.user_id,
                    window_date,
                )
                return False
            await scope.router.route_signals(
                [window_start_classification(window_type)],
                Priority.WINDOW_ALIGNED,
                user.user_id,
                correlation_id=correlation_id,
                window_start=user.window_start_utc,
            )
        return True
