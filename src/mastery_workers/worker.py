import asyncio
import logging
import signal
import time
from collections.abc import Awaitable, Callable
from typing import Any

import psycopg

from .config import Config
from .errors import NonRetryableError
from .metrics import record_message_dead_lettered, record_queue_invocation
from .registry import HandlerFn, get_handler, registered_queues
from .transport import (
    DEAD_REASON_NO_HANDLER,
    NOTIFY_CHANNEL,
    QueueMessage,
    abandon_message,
    claim_messages,
    complete_message,
    dead_letter_message,
    release_stale_claims,
)

logger = logging.getLogger(__name__)

BackgroundTask = Callable[[asyncio.Event], Awaitable[None]]


class QueueWorker:
    """Claims and dispatches messages for one queue.

    Woken by NOTIFY through ``wake()``, with a fallback poll every
    ``poll_interval_seconds``. At most ``queue_concurrency`` messages are
    handled at once, each on its own connection.
    """

    def __init__(
        self,
        config: Config,
        queue_name: str,
        handler_lookup: Callable[[str], HandlerFn | None] = get_handler,
    ) -> None:
        self.config = config
        self.queue_name = queue_name
        self._handler_lookup = handler_lookup
        self._wake = asyncio.Event()
        self._semaphore = asyncio.Semaphore(config.queue_concurrency)

    def wake(self) -> None:
        self._wake.set()

    async def run(self, shutdown: asyncio.Event) -> None:
        logger.info(
            "Queue worker for %s starting (concurrency=%d, batch_size=%d)",
            self.queue_name,
            self.config.queue_concurrency,
            self.config.batch_size,
        )
        while not shutdown.is_set():
            try:
                claimed = await self.poll_once()
            except Exception:
                logger.exception("Error polling queue %s", self.queue_name)
                claimed = 0
            # Keep draining while there is work; otherwise wait for NOTIFY or the poll timer.
            if not claimed:
                await self._wait_for_work(shutdown)

        logger.info("Queue worker for %s stopped", self.queue_name)

    async def _wait_for_work(self, shutdown: asyncio.Event) -> None:
        waiters = [
            asyncio.ensure_future(self._wake.wait()),
            asyncio.ensure_future(shutdown.wait()),
        ]
        try:
            await asyncio.wait(
                waiters,
                timeout=self.config.poll_interval_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for waiter in waiters:
                waiter.cancel()
        self._wake.clear()

    async def poll_once(self) -> int:
        """Claim one batch and handle it. Returns the number of messages claimed."""
        async with await psycopg.AsyncConnection.connect(
            self.config.database_url, autocommit=True
        ) as conn:
            await release_stale_claims(conn, self.queue_name, self.config.claim_timeout_seconds)
            messages = await claim_messages(conn, self.queue_name, self.config.batch_size)

        if not messages:
            return 0

        async with asyncio.TaskGroup() as tg:
            for message in messages:
                tg.create_task(self._process_with_limit(message))
        return len(messages)

    async def _process_with_limit(self, message: QueueMessage) -> None:
        async with self._semaphore:
            try:
                async with await psycopg.AsyncConnection.connect(
                    self.config.database_url, autocommit=True
                ) as conn:
                    await self.process_message(conn, message)
            except Exception:
                # Settlement itself failed; the claim lease runs out and the message is redelivered.
                logger.exception(
                    "Could not settle message %s on %s", message.id, self.queue_name
                )

    async def process_message(
        self, conn: psycopg.AsyncConnection[Any], message: QueueMessage
    ) -> None:
        """Dispatch one message and settle it: complete, retry or dead-letter."""
        handler = self._handler_lookup(self.queue_name)
        if handler is None:
            logger.warning(
                "No handler for queue=%s (message_id=%s)", self.queue_name, message.id
            )
            await dead_letter_message(
                conn, message.id, DEAD_REASON_NO_HANDLER, f"No handler for queue={self.queue_name}"
            )
            record_message_dead_lettered()
            return

        extra = {
            "signal_queue": self.queue_name,
            "signal_message_id": str(message.id),
            "signal_attempt": message.attempt,
        }
        start = time.monotonic()
        try:
            await handler(conn, message.payload)
        except NonRetryableError as exc:
            elapsed_ms = (time.monotonic() - start) * 1000
            record_queue_invocation(self.queue_name, elapsed_ms, success=False)
            logger.error(
                "Message %s on %s is not retryable (%s): %s",
                message.id,
                self.queue_name,
                exc.reason_code,
                exc,
                extra=extra,
            )
            await dead_letter_message(conn, message.id, exc.reason_code, str(exc))
            record_message_dead_lettered()
            return
        except Exception as exc:
            elapsed_ms = (time.monotonic() - start) * 1000
            record_queue_invocation(self.queue_name, elapsed_ms, success=False)
            logger.exception(
                "Message %s failed on %s (attempt=%d)",
                message.id,
                self.queue_name,
                message.attempt,
                extra=extra,
            )
            if not await abandon_message(conn, message, str(exc) or type(exc).__name__):
                record_message_dead_lettered()
            return

        await complete_message(conn, message.id)
        elapsed_ms = (time.monotonic() - start) * 1000
        record_queue_invocation(self.queue_name, elapsed_ms, success=True)
        logger.debug(
            "Message %s completed on %s (%.0fms)",
            message.id,
            self.queue_name,
            elapsed_ms,
            extra={**extra, "signal_duration_ms": round(elapsed_ms, 1)},
        )


class Worker:
    """Runs every queue worker plus the background loops until shutdown."""

    def __init__(
        self,
        config: Config,
        background: list[BackgroundTask] | None = None,
    ) -> None:
        self.config = config
        self._shutdown = asyncio.Event()
        self._background = list(background or [])
        self.queue_workers = {
            queue_name: QueueWorker(config, queue_name) for queue_name in registered_queues()
        }

    @property
    def shutdown_event(self) -> asyncio.Event:
        return self._shutdown

    async def run(self) -> None:
        """Main entry point: run listen, queue and background loops until shutdown."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._request_shutdown)

        logger.info(
            "Worker starting (queues=%s, poll_interval=%.1fs, batch_size=%d)",
            sorted(self.queue_workers),
            self.config.poll_interval_seconds,
            self.config.batch_size,
        )
        if self.config.listen_database_url != self.config.database_url:
            logger.info("Worker LISTEN uses dedicated database URL")

        async with asyncio.TaskGroup() as tg:
            tg.create_task(self._listen_loop())
            for queue_worker in self.queue_workers.values():
                tg.create_task(queue_worker.run(self._shutdown))
            for task in self._background:
                tg.create_task(task(self._shutdown))

        logger.info("Worker stopped")

    def _request_shutdown(self) -> None:
        logger.info("Shutdown requested")
        self._shutdown.set()

    def dispatch_notification(self, payload: str) -> None:
        queue_worker = self.queue_workers.get(payload)
        if queue_worker is None:
            logger.debug("NOTIFY for unconsumed queue %s ignored", payload)
            return
        queue_worker.wake()

    async def _listen_loop(self) -> None:
        """LISTEN on the signal_queue channel for instant wake-up on new messages."""
        while not self._shutdown.is_set():
            try:
                async with await psycopg.AsyncConnection.connect(
                    self.config.listen_database_url, autocommit=True
                ) as conn:
                    await conn.execute(f"LISTEN {NOTIFY_CHANNEL}")
                    logger.info("Listening on %s channel", NOTIFY_CHANNEL)

                    # Keep connection alive across timeouts; only reconnect
                    # on actual connection loss (OperationalError).
                    while not self._shutdown.is_set():
                        gen = conn.notifies(timeout=self.config.poll_interval_seconds)
                        async for notify in gen:
                            logger.debug("NOTIFY received: %s", notify.payload)
                            self.dispatch_notification(notify.payload)
                            if self._shutdown.is_set():
                                break
            except psycopg.OperationalError:
                if self._shutdown.is_set():
                    break
                logger.warning("LISTEN connection lost, reconnecting in 5s")
                await asyncio.sleep(5)

        logger.info("Listen loop stopped")
