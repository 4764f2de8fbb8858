from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone

import pytest

from trap_pipeline.events_engine.schemas import (
    EnvelopeDecodeError,
    EventType,
    decode_envelope,
    encode_envelope,
    routing_attributes,
)

ARRIVAL = datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)


def _body(**overrides):
    body = {
        "eventId": "3f2b8c1e-0a4d-4c55-9b1e-7d1f2a9c0e11",
        "deviceId": "D1",
        "timestamp": "2024-05-01T10:00:00Z",
        "eventType": "Capture",
        "locationId": "L1",
        "locationName": "Warehouse",
        "customerName": "Acme Foods",
        "batteryLevel": 55,
        "additionalData": {"weight": 12.5, "sensor": {"id": 4, "tags": ["a", "b"]}},
    }
    body.update(overrides)
    return body


def test_decode_then_encode_preserves_fields_and_additional_data() -> None:
    envelope = decode_envelope(json.dumps(_body(firmware="1.4.2")))

    again = decode_envelope(encode_envelope(envelope))

    assert again.to_wire() == envelope.to_wire()
    assert again.additional_data == {"weight": 12.5, "sensor": {"id": 4, "tags": ["a", "b"]}}
    assert again.model_extra == {"firmware": "1.4.2"}
    assert again.event_type is EventType.CAPTURE
    assert again.timestamp == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)


def test_additional_data_as_json_text_is_kept_verbatim() -> None:
    raw = '{"temperature": 21.5}'
    envelope = decode_envelope(_body(additionalData=raw))

    assert envelope.additional_data == raw
    assert json.loads(encode_envelope(envelope))["additionalData"] == raw


def test_pascal_case_keys_and_ordinal_event_type() -> None:
    body = {
        "EventId": "e-7",
        "DeviceId": "D2",
        "Timestamp": "2024-05-01T10:00:00",
        "EventType": 6,
        "BatteryLevel": 20,
    }

    envelope = decode_envelope(body)

    assert envelope.event_id == "e-7"
    assert envelope.device_id == "D2"
    assert envelope.event_type is EventType.HEARTBEAT
    assert envelope.battery_level == 20
    assert envelope.timestamp.tzinfo == timezone.utc


def test_unknown_pascal_case_extras_keep_their_spelling() -> None:
    envelope = decode_envelope(_body(Foo="bar"))

    wire = json.loads(encode_envelope(envelope))

    assert envelope.model_extra == {"Foo": "bar"}
    assert wire["Foo"] == "bar"
    assert "foo" not in wire
    assert decode_envelope(encode_envelope(envelope)).to_wire() == envelope.to_wire()


def test_event_type_names_are_case_insensitive() -> None:
    assert decode_envelope(_body(eventType="batterylow")).event_type is EventType.BATTERY_LOW


@pytest.mark.parametrize("event_id", [None, "", "00000000-0000-0000-0000-000000000000"])
def test_missing_event_id_is_assigned(event_id) -> None:
    envelope = decode_envelope(_body(eventId=event_id))

    assert uuid.UUID(envelope.event_id)
    assert envelope.event_id != "00000000-0000-0000-0000-000000000000"


@pytest.mark.parametrize("timestamp", [None, "", "0001-01-01T00:00:00"])
def test_unset_timestamp_defaults_to_arrival_time(timestamp) -> None:
    envelope = decode_envelope(_body(timestamp=timestamp), arrival_time=ARRIVAL)

    assert envelope.timestamp == ARRIVAL


def test_routing_attributes_fill_missing_fields() -> None:
    body = _body()
    del body["eventType"]
    del body["deviceId"]
    del body["locationId"]

    envelope = decode_envelope(
        body,
        attributes={"EventType": "Malfunction", "DeviceId": "D9", "LocationId": "L4"},
    )

    assert envelope.event_type is EventType.MALFUNCTION
    assert envelope.device_id == "D9"
    assert envelope.location_id == "L4"


def test_body_values_win_over_routing_attributes() -> None:
    envelope = decode_envelope(_body(eventType=0), attributes={"EventType": "Heartbeat"})

    assert envelope.event_type is EventType.ACTIVATION


def test_unknown_event_type_is_kept_as_text() -> None:
    envelope = decode_envelope(_body(eventType="Flooded"))

    assert envelope.event_type == "Flooded"
    assert not envelope.is_known_type
    assert envelope.event_type_name == "Flooded"


@pytest.mark.parametrize(
    "payload",
    [
        "not json",
        "[1, 2, 3]",
        json.dumps(_body(deviceId="")),
        json.dumps(_body(batteryLevel=150)),
        json.dumps(_body(eventType="")),
        json.dumps({"deviceId": "D1"}),
    ],
)
def test_malformed_envelopes_raise_decode_error(payload) -> None:
    with pytest.raises(EnvelopeDecodeError):
        decode_envelope(payload)


def test_routing_attributes_mirror_envelope() -> None:
    envelope = decode_envelope(_body(locationId=None))

    attributes = routing_attributes(envelope)

    assert attributes == {
        "EventType": {"DataType": "String", "StringValue": "Capture"},
        "DeviceId": {"DataType": "String", "StringValue": "D1"},
    }
