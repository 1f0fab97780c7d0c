"""Wire contracts for queue payloads.

All payloads are camelCase JSON. Models accept either camelCase or
snake_case on input so tests and internal callers can build them directly.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .errors import MessageDecodeError
from .models import Priority, SignalClassification, WindowType
from .utils import as_utc


def _new_batch_id() -> str:
    return uuid.uuid4().hex


class WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


M = TypeVar("M", bound=WireModel)


class SignalRoutedEvent(WireModel):
    user_id: uuid.UUID
    event_type: str
    priority: Priority
    window_type: WindowType
    created_at: datetime
    target_entity_type: str | None = None
    target_entity_id: uuid.UUID | None = None
    scheduled_window_start: datetime | None = None
    correlation_id: str | None = None

    @field_validator("event_type")
    @classmethod
    def validate_event_type(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("event_type must not be empty")
        return normalized

    @field_validator("created_at", "scheduled_window_start")
    @classmethod
    def normalize_timestamps(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        return as_utc(value)

    @classmethod
    def from_classification(
        cls,
        classification: SignalClassification,
        *,
        user_id: uuid.UUID,
        created_at: datetime,
        correlation_id: str | None = None,
        scheduled_window_start: datetime | None = None,
    ) -> SignalRoutedEvent:
        return cls(
            user_id=user_id,
            event_type=classification.event_type,
            priority=classification.priority,
            window_type=classification.window_type,
            created_at=created_at,
            target_entity_type=classification.target_entity_type,
            target_entity_id=classification.target_entity_id,
            scheduled_window_start=scheduled_window_start,
            correlation_id=correlation_id,
        )


class SignalRoutedBatchEvent(WireModel):
    batch_id: str = Field(default_factory=_new_batch_id)
    user_id: uuid.UUID
    signals: tuple[SignalRoutedEvent, ...]
    correlation_id: str | None = None
    scheduled_window_start: datetime | None = None

    @model_validator(mode="after")
    def validate_single_user(self) -> SignalRoutedBatchEvent:
        if not self.signals:
            raise ValueError("a routed batch must carry at least one signal")
        foreign = {s.user_id for s in self.signals if s.user_id != self.user_id}
        if foreign:
            raise ValueError("all signals in a routed batch must belong to the batch user")
        return self


class EntityChangedEvent(WireModel):
    """One domain entity change, as written to the outbox by the domain services."""

    entity_type: str
    entity_id: uuid.UUID
    user_id: uuid.UUID
    domain_event_type: str
    occurred_at: datetime
    attributes: dict[str, Any] = Field(default_factory=dict)

    @field_validator("entity_type", "domain_event_type")
    @classmethod
    def validate_non_empty(cls, value: str, info: Any) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must not be empty")
        return normalized


class EntityChangedBatchEvent(WireModel):
    changes: tuple[EntityChangedEvent, ...]
    correlation_id: str | None = None


def decode_message(model: type[M], payload: dict[str, Any]) -> M:
    """Validate a raw queue payload. Invalid payloads are non-retryable."""
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise MessageDecodeError(
            f"invalid {model.__name__} payload: {exc.error_count()} error(s): {exc.errors()[0]['msg']}"
        ) from exc


def encode_message(message: WireModel) -> dict[str, Any]:
    return message.model_dump(mode="json", by_alias=True, exclude_none=True)
