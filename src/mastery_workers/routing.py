"""Priority-based routing of classified signals onto the signal queues."""

import logging
import uuid
from collections.abc import Callable, Sequence
from datetime import datetime

from .config import QueueNames
from .errors import RoutingConfigurationError
from .messages import SignalRoutedBatchEvent, SignalRoutedEvent
from .models import Priority, SignalClassification
from .schedule import ScheduleResolver
from .transport import MessageBus
from .utils import utcnow

logger = logging.getLogger(__name__)


def queue_for_priority(priority: Priority | int, queues: QueueNames) -> str:
    """Destination queue for a priority. Total over Priority; anything else is fatal."""
    try:
        priority = Priority(priority)
    except ValueError:
        raise RoutingConfigurationError(f"no queue mapped for priority {priority!r}") from None

    if priority is Priority.URGENT:
        return queues.signals_urgent
    if priority is Priority.WINDOW_ALIGNED:
        return queues.signals_window
    if priority in (Priority.STANDARD, Priority.LOW):
        return queues.signals_batch
    raise RoutingConfigurationError(f"no queue mapped for priority {priority.name}")


class SignalRouter:
    """Publishes one batch per (priority, user) call.

    Holds no state between calls. Publish failures propagate to the caller,
    which owns retry.
    """

    def __init__(
        self,
        bus: MessageBus,
        schedule_resolver: ScheduleResolver,
        queues: QueueNames,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._bus = bus
        self._schedule = schedule_resolver
        self._queues = queues
        self._clock = clock

    async def route_signals(
        self,
        classifications: Sequence[SignalClassification],
        priority: Priority,
        user_id: uuid.UUID,
        correlation_id: str | None = None,
        window_start: datetime | None = None,
    ) -> SignalRoutedBatchEvent | None:
        """Route classifications of one priority for one user.

        ``window_start`` pins a window-aligned batch to a window the caller
        already resolved; otherwise the next window start is looked up.
        """
        if not classifications:
            return None

        queue_name = queue_for_priority(priority, self._queues)
        priority = Priority(priority)

        mismatched = [c.event_type for c in classifications if c.priority != priority]
        if mismatched:
            raise ValueError(
                f"route_signals called with priority {priority.name} "
                f"but got differently prioritized signals: {mismatched}"
            )

        now = self._clock()

        scheduled_start: datetime | None = None
        if priority == Priority.WINDOW_ALIGNED and window_start is not None:
            scheduled_start = window_start
        elif priority == Priority.WINDOW_ALIGNED:
            scheduled_start = await self._schedule.get_next_window_start(
                user_id, classifications[0].window_type
            )

        signals = tuple(
            SignalRoutedEvent.from_classification(
                c,
                user_id=user_id,
                created_at=now,
                correlation_id=correlation_id,
                scheduled_window_start=scheduled_start,
            )
            for c in classifications
        )
        batch = SignalRoutedBatchEvent(
            user_id=user_id,
            signals=signals,
            correlation_id=correlation_id,
            scheduled_window_start=scheduled_start,
        )

        if scheduled_start is not None and scheduled_start > now:
            await self._bus.publish_scheduled(queue_name, batch, scheduled_start)
            logger.debug(
                "Scheduled batch of %d window signals for user %s to %s at %s",
                len(signals),
                user_id,
                queue_name,
                scheduled_start.isoformat(),
            )
        else:
            await self._bus.publish(queue_name, batch)
            logger.debug(
                "Routed batch of %d %s signals for user %s to %s",
                len(signals),
                priority.name,
                user_id,
                queue_name,
            )
        return batch
