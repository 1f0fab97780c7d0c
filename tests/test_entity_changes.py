"""Tests for the entity-change consumer: classify, group, escalate, route."""

import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest

from mastery_workers.config import QueueNames
from mastery_workers.errors import MessageDecodeError
from mastery_workers.handlers.entity_changes import (
    group_classifications,
    make_entity_change_handler,
    route_entity_changes,
)
from mastery_workers.messages import EntityChangedBatchEvent, EntityChangedEvent
from mastery_workers.models import Priority, WindowType
from mastery_workers.routing import SignalRouter

USER = uuid.UUID("00000000-0000-0000-0000-000000000001")
OTHER = uuid.UUID("00000000-0000-0000-0000-000000000002")


class _FakeTransaction:
    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False


def _change(event, entity_type="Habit", user_id=USER, attributes=None):
    return EntityChangedEvent(
        entity_type=entity_type,
        entity_id=uuid.uuid4(),
        user_id=user_id,
        domain_event_type=event,
        occurred_at="2026-03-09T06:00:00Z",
        attributes=attributes or {},
    )


class TestGroupClassifications:
    def test_groups_by_priority_and_user(self):
        groups = group_classifications(
            [
                _change("HabitCompletedEvent"),
                _change("TaskCreatedEvent", "Task"),
                _change("HabitMissedEvent"),
                _change("HabitCompletedEvent", user_id=OTHER),
                _change("MorningCheckInSubmittedEvent", "CheckIn"),
            ]
        )

        assert [c.event_type for c in groups[(Priority.STANDARD, USER)]] == [
            "HabitCompletedEvent",
            "HabitMissedEvent",
        ]
        assert [c.event_type for c in groups[(Priority.LOW, USER)]] == ["TaskCreatedEvent"]
        assert len(groups[(Priority.STANDARD, OTHER)]) == 1
        assert groups[(Priority.WINDOW_ALIGNED, USER)][0].window_type is WindowType.MORNING_WINDOW
        assert (Priority.URGENT, USER) not in groups

    def test_unclassified_events_dropped(self):
        assert group_classifications([_change("RecommendationDismissedEvent")]) == {}

    def test_disengagement_adds_urgent_signal(self):
        groups = group_classifications([_change("HabitMissedEvent") for _ in range(3)])

        [urgent] = groups[(Priority.URGENT, USER)]
        assert urgent.event_type == "DisengagementPatternDetected"
        assert urgent.window_type is WindowType.IMMEDIATE
        assert len(groups[(Priority.STANDARD, USER)]) == 3

    def test_escalation_is_per_user(self):
        changes = [_change("HabitMissedEvent", user_id=USER) for _ in range(2)]
        changes.append(_change("HabitMissedEvent", user_id=OTHER))
        assert not any(p is Priority.URGENT for p, _ in group_classifications(changes))

    def test_skipped_check_in_uses_check_in_type(self):
        groups = group_classifications(
            [_change("CheckInSkippedEvent", "CheckIn", attributes={"checkInType": "Morning"})]
        )
        [classification] = groups[(Priority.WINDOW_ALIGNED, USER)]
        assert classification.window_type is WindowType.MORNING_WINDOW


class TestRouteEntityChanges:
    @pytest.mark.asyncio
    async def test_routes_each_group_with_correlation(self):
        router = AsyncMock()
        router.route_signals = AsyncMock(return_value=object())
        batch = EntityChangedBatchEvent(
            changes=(_change("HabitCompletedEvent"), _change("TaskCreatedEvent", "Task")),
            correlation_id="outbox-42",
        )

        assert await route_entity_changes(router, batch) == 2

        priorities = [call.args[1] for call in router.route_signals.await_args_list]
        assert priorities == [Priority.STANDARD, Priority.LOW]
        assert all(
            call.kwargs["correlation_id"] == "outbox-42"
            for call in router.route_signals.await_args_list
        )


class TestEntityChangeHandler:
    @pytest.mark.asyncio
    async def test_invalid_payload_is_non_retryable(self):
        handler = make_entity_change_handler(QueueNames())
        with pytest.raises(MessageDecodeError):
            await handler(AsyncMock(), {"changes": [{"entityType": "Habit"}]})

    @pytest.mark.asyncio
    async def test_empty_batch_does_nothing(self):
        indexer = AsyncMock()
        conn = AsyncMock()
        conn.transaction = MagicMock(return_value=_FakeTransaction())

        await make_entity_change_handler(QueueNames(), indexer=indexer)(conn, {"changes": []})

        indexer.index.assert_not_called()
        conn.transaction.assert_not_called()

    @pytest.mark.asyncio
    async def test_indexes_then_routes_in_one_transaction(self, monkeypatch):
        route = AsyncMock(return_value=1)
        monkeypatch.setattr("mastery_workers.handlers.entity_changes.route_entity_changes", route)
        indexer = AsyncMock()
        conn = AsyncMock()
        conn.transaction = MagicMock(return_value=_FakeTransaction())
        payload = {
            "changes": [
                {
                    "entityType": "Habit",
                    "entityId": str(uuid.uuid4()),
                    "userId": str(USER),
                    "domainEventType": "HabitMissedEvent",
                    "occurredAt": "2026-03-09T06:00:00Z",
                }
            ]
        }

        await make_entity_change_handler(QueueNames(), indexer=indexer)(conn, payload)

        [changes] = indexer.index.await_args.args
        assert changes[0].domain_event_type == "HabitMissedEvent"
        conn.transaction.assert_called_once()
        router, batch = route.await_args.args
        assert isinstance(router, SignalRouter)
        assert len(batch.changes) == 1
