"""Event envelope model and the wire codec used by the queue consumer."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from trap_pipeline.schemas.common import (
    camelize_keys,
    coerce_enum,
    ensure_utc,
    is_unset_timestamp,
    wire_field_names,
)

_EMPTY_GUID = "00000000-0000-0000-0000-000000000000"

ROUTING_ATTRIBUTES = ("EventType", "DeviceId", "LocationId")


class EnvelopeDecodeError(ValueError):
    """Raised when a queue message body cannot be decoded into an envelope."""


class EventType(str, Enum):
    """Closed set of telemetry event kinds emitted by field devices."""

    ACTIVATION = "Activation"
    CAPTURE = "Capture"
    BATTERY_LOW = "BatteryLow"
    MAINTENANCE = "Maintenance"
    MALFUNCTION = "Malfunction"
    RESET = "Reset"
    HEARTBEAT = "Heartbeat"


class EventEnvelope(BaseModel):
    """Wire-level telemetry event.

    ``event_type`` holds an :class:`EventType` when the name is recognised and
    the raw string otherwise; the reconciler decides what to do with the
    latter. ``additional_data`` is kept verbatim (object or JSON text).
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    device_id: str = Field(..., min_length=1, max_length=128)
    timestamp: datetime
    event_type: Union[EventType, str]
    location_id: Optional[str] = None
    location_name: Optional[str] = None
    customer_name: Optional[str] = None
    battery_level: int = Field(default=0, ge=0, le=100)
    additional_data: Any = None
    is_processed: bool = False
    processed_timestamp: Optional[datetime] = None

    @field_validator("event_id", mode="before")
    @classmethod
    def _assign_missing_id(cls, value: Any) -> Any:
        if value is None or str(value).strip() in ("", _EMPTY_GUID):
            return str(uuid4())
        return str(value)

    @field_validator("event_type", mode="before")
    @classmethod
    def _coerce_event_type(cls, value: Any) -> Any:
        coerced = coerce_enum(EventType, value)
        if isinstance(coerced, str) and not coerced:
            raise ValueError("eventType must not be empty")
        return coerced

    @field_validator("processed_timestamp", mode="before")
    @classmethod
    def _drop_unset_processed(cls, value: Any) -> Any:
        return None if is_unset_timestamp(value) else value

    @field_validator("timestamp", "processed_timestamp")
    @classmethod
    def _ensure_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    @property
    def event_type_name(self) -> str:
        if isinstance(self.event_type, EventType):
            return self.event_type.value
        return str(self.event_type)

    @property
    def is_known_type(self) -> bool:
        return isinstance(self.event_type, EventType)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


def decode_envelope(
    payload: Union[str, bytes, Mapping[str, Any]],
    *,
    attributes: Optional[Mapping[str, str]] = None,
    arrival_time: Optional[datetime] = None,
) -> EventEnvelope:
    """Decode a message body into an :class:`EventEnvelope`.

    Missing ``eventType``/``deviceId`` fall back to the routing attributes and
    a missing timestamp is set to ``arrival_time``.
    """

    if isinstance(payload, (str, bytes)):
        try:
            payload = json.loads(payload)
        except ValueError as exc:
            raise EnvelopeDecodeError(f"Message body is not valid JSON: {exc}") from exc

    if not isinstance(payload, Mapping):
        raise EnvelopeDecodeError(f"Envelope must be a JSON object, got {type(payload).__name__}")

    data = camelize_keys(payload, wire_field_names(EventEnvelope))
    attributes = attributes or {}
    if data.get("eventType") in (None, "") and attributes.get("EventType"):
        data["eventType"] = attributes["EventType"]
    if not data.get("deviceId") and attributes.get("DeviceId"):
        data["deviceId"] = attributes["DeviceId"]
    if not data.get("locationId") and attributes.get("LocationId"):
        data["locationId"] = attributes["LocationId"]
    if is_unset_timestamp(data.get("timestamp")):
        data["timestamp"] = arrival_time or datetime.now(timezone.utc)

    try:
        return EventEnvelope.model_validate(data)
    except ValidationError as exc:
        raise EnvelopeDecodeError(f"Envelope failed validation: {exc.error_count()} error(s)") from exc


def encode_envelope(envelope: EventEnvelope) -> str:
    """Serialize an envelope back to its JSON wire form."""

    return json.dumps(envelope.to_wire())


def routing_attributes(envelope: EventEnvelope) -> Dict[str, Dict[str, str]]:
    """SQS message attributes mirroring the envelope's routing fields."""

    values = {
        "EventType": envelope.event_type_name,
        "DeviceId": envelope.device_id,
        "LocationId": envelope.location_id,
    }
    return {
        name: {"DataType": "String", "StringValue": value}
        for name, value in values.items()
        if value
    }
