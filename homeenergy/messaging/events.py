"""Wire schemas for the two event streams.

Lifecycle stream (``sync.events``) carries :class:`SyncEnvelope` messages from
the identity, device and preference services. Telemetry stream
(``device.measurements``) carries :class:`MeasurementMessage` readings.
Both are UTF-8 JSON.
"""

import enum
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class EventKind(str, enum.Enum):
    """Known lifecycle event tags plus an explicit fallback for everything else."""

    device_created = "DEVICE_CREATED"
    device_updated = "DEVICE_UPDATED"
    device_deleted = "DEVICE_DELETED"
    user_created = "USER_CREATED"
    user_updated = "USER_UPDATED"
    user_deleted = "USER_DELETED"
    unrecognized = "UNRECOGNIZED"

    @classmethod
    def parse(cls, event_type: str) -> "EventKind":
        try:
            return cls(event_type)
        except ValueError:
            return cls.unrecognized


DEVICE_UPSERT_KINDS = frozenset({EventKind.device_created, EventKind.device_updated})
USER_KINDS = frozenset({EventKind.user_created, EventKind.user_updated, EventKind.user_deleted})


class DevicePayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: uuid.UUID
    user_id: uuid.UUID | None = None
    name: str
    max_consumption: float | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("metadata", mode="before")
    @classmethod
    def null_metadata_is_empty(cls, v: Any) -> Any:
        return {} if v is None else v


class SyncEnvelope(BaseModel):
    """Outer lifecycle event. ``payload`` stays untyped until dispatch."""

    model_config = ConfigDict(frozen=True)

    event_type: str
    user_id: uuid.UUID | None = None
    device_id: uuid.UUID | None = None
    payload: dict[str, Any] | None = None

    @property
    def kind(self) -> EventKind:
        return EventKind.parse(self.event_type)


class MeasurementMessage(BaseModel):
    """One physical reading emitted by a metering device."""

    model_config = ConfigDict(frozen=True)

    device_id: uuid.UUID
    timestamp: datetime
    measurement_value: float

    @field_validator("timestamp")
    @classmethod
    def normalize_to_utc(cls, v: datetime) -> datetime:
        # Naive timestamps are taken as UTC; offsets are folded into UTC
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)


@dataclass(frozen=True)
class HourBucket:
    day: date
    hour: int

    @classmethod
    def from_timestamp(cls, ts: datetime) -> "HourBucket":
        if ts.tzinfo is not None:
            ts = ts.astimezone(timezone.utc)
        return cls(day=ts.date(), hour=ts.hour)


# ── Producer-side builders ─────────────────────────────────────────────────────

def device_event(kind: EventKind, device: DevicePayload) -> SyncEnvelope:
    """Envelope for a device create/update, as published by the device registry."""
    if kind not in DEVICE_UPSERT_KINDS:
        raise ValueError(f"{kind.value} is not a device upsert event")
    return SyncEnvelope(
        event_type=kind.value,
        user_id=device.user_id,
        device_id=device.id,
        payload=device.model_dump(mode="json"),
    )


def device_deleted(device_id: uuid.UUID) -> SyncEnvelope:
    return SyncEnvelope(
        event_type=EventKind.device_deleted.value,
        device_id=device_id,
    )


def user_event(
    kind: EventKind, user_id: uuid.UUID, payload: dict[str, Any] | None = None
) -> SyncEnvelope:
    """Envelope for identity / preference changes sharing the lifecycle queue."""
    if kind not in USER_KINDS:
        raise ValueError(f"{kind.value} is not a user event")
    return SyncEnvelope(event_type=kind.value, user_id=user_id, payload=payload)


def encode(event: BaseModel) -> bytes:
    return event.model_dump_json().encode("utf-8")
