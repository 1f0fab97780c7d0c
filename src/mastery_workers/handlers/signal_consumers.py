"""Signal consumers for the urgent, window and batch queues.

The three consumers share ``pipeline.process_batch`` and differ only in
their ConsumerSpec.
"""

import logging
from typing import Any

import psycopg

from ..config import QueueNames
from ..messages import SignalRoutedBatchEvent, decode_message
from ..models import Priority, WindowType
from ..pipeline import AssessmentEngine, BatchDependencies, ConsumerSpec, process_batch
from ..registry import HandlerFn, register

logger = logging.getLogger(__name__)


def _first_signal_window(batch: SignalRoutedBatchEvent) -> WindowType:
    return batch.signals[0].window_type


def _first_signal_priority(batch: SignalRoutedBatchEvent) -> str:
    return Priority(batch.signals[0].priority).name.lower()


def consumer_specs(queues: QueueNames) -> tuple[ConsumerSpec, ...]:
    return (
        ConsumerSpec(
            queue_name=queues.signals_urgent,
            window_type_of=lambda batch: WindowType.IMMEDIATE,
            success_log_level=logging.INFO,
            label_of=lambda batch: "urgent",
        ),
        ConsumerSpec(
            queue_name=queues.signals_window,
            window_type_of=_first_signal_window,
            include_scheduled_start=True,
            success_log_level=logging.INFO,
            label_of=lambda batch: "window-aligned",
        ),
        ConsumerSpec(
            queue_name=queues.signals_batch,
            window_type_of=lambda batch: WindowType.BATCH_WINDOW,
            success_log_level=logging.DEBUG,
            label_of=_first_signal_priority,
        ),
    )


def make_signal_handler(spec: ConsumerSpec, engine: AssessmentEngine) -> HandlerFn:
    async def handle(conn: psycopg.AsyncConnection[Any], payload: dict[str, Any]) -> None:
        batch = decode_message(SignalRoutedBatchEvent, payload)
        deps = BatchDependencies.for_connection(conn, engine)
        await process_batch(deps, spec, batch)

    handle.__name__ = f"handle_{spec.queue_name.replace('-', '_')}"
    return handle


def register_signal_consumers(queues: QueueNames, engine: AssessmentEngine) -> None:
    for spec in consumer_specs(queues):
        register(spec.queue_name)(make_signal_handler(spec, engine))
