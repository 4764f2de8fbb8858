from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from trap_pipeline.core.database import session_scope
from trap_pipeline.events_engine.schemas import EventEnvelope
from trap_pipeline.models.aggregates import AggregateDimension, DailyEventAggregate, LocationRiskScore, RiskLevel
from trap_pipeline.schemas.device import DeviceStatus
from trap_pipeline.services.aggregation import (
    DailyAggregationJob,
    LocationRiskJob,
    classify_risk,
    count_events,
    parse_events,
    score_locations,
)

NOW = datetime(2024, 5, 2, 12, 0, tzinfo=timezone.utc)


def _event(device_id: str, event_type: str, *, location_id: str = "L1", hours_ago: float = 1) -> dict:
    return {
        "deviceId": device_id,
        "eventType": event_type,
        "locationId": location_id,
        "timestamp": (NOW - timedelta(hours=hours_ago)).isoformat(),
        "batteryLevel": 50,
    }


def _envelopes(*events: dict):
    return parse_events(events, since=NOW - timedelta(hours=24))


def test_parse_events_drops_malformed_and_old_rows() -> None:
    events = parse_events(
        [
            _event("D1", "Capture"),
            _event("D1", "Capture", hours_ago=30),
            {"eventType": "Capture"},
        ],
        since=NOW - timedelta(hours=24),
    )

    assert len(events) == 1
    assert isinstance(events[0], EventEnvelope)


def test_count_events_groups_by_each_dimension(make_device) -> None:
    devices = [make_device("D1", device_type="MouseTrap"), make_device("D2", device_type="RatTrap")]
    events = _envelopes(
        _event("D1", "Capture"),
        _event("D1", "Capture"),
        _event("D2", "Heartbeat", location_id="L2"),
        _event("D3", "Capture", location_id="L2"),
    )

    counts = count_events(events, devices)

    assert counts[(AggregateDimension.LOCATION, "L1", "Capture")] == 2
    assert counts[(AggregateDimension.LOCATION, "L2", "Capture")] == 1
    assert counts[(AggregateDimension.DEVICE_TYPE, "MouseTrap", "Capture")] == 2
    assert counts[(AggregateDimension.DEVICE_TYPE, "RatTrap", "Heartbeat")] == 1
    assert counts[(AggregateDimension.DEVICE_TYPE, "unknown", "Capture")] == 1
    assert counts[(AggregateDimension.EVENT_TYPE, "Capture", "Capture")] == 3


@pytest.mark.parametrize(
    "score, level",
    [(0.0, RiskLevel.LOW), (0.99, RiskLevel.LOW), (1.0, RiskLevel.MEDIUM), (2.99, RiskLevel.MEDIUM), (3.0, RiskLevel.HIGH)],
)
def test_classify_risk_thresholds(score, level) -> None:
    assert classify_risk(score, medium_threshold=1.0, high_threshold=3.0) is level


def test_score_locations_flags_high_risk_and_alert_devices(make_device) -> None:
    devices = [
        make_device("D1", location_id="L1"),
        make_device("D2", location_id="L2", location_name="Kitchen", status=DeviceStatus.ALERT),
        make_device("D3", location_id="L3", location_name="Office"),
    ]
    events = _envelopes(
        *[_event("D1", "Capture") for _ in range(3)],
        _event("D1", "Activation"),
        _event("D2", "Heartbeat", location_id="L2"),
        _event("D3", "Capture", location_id="L3"),
    )

    risks = {risk.location_id: risk for risk in score_locations(events, devices, medium_threshold=1.0, high_threshold=3.0)}

    assert risks["L1"].capture_count == 4
    assert risks["L1"].risk_level is RiskLevel.HIGH
    assert risks["L1"].needs_attention
    assert risks["L2"].risk_level is RiskLevel.LOW
    assert risks["L2"].alert_device_count == 1
    assert risks["L2"].needs_attention
    assert risks["L3"].risk_level is RiskLevel.MEDIUM
    assert not risks["L3"].needs_attention


@pytest.mark.asyncio
async def test_daily_aggregation_job_persists_counts(make_device, fake_registry_cls) -> None:
    registry = fake_registry_cls(
        [make_device("D1")],
        events=[_event("D1", "Capture"), _event("D1", "Heartbeat"), _event("D1", "Capture", hours_ago=48)],
    )

    result = await DailyAggregationJob(registry, clock=lambda: NOW).run()

    with session_scope() as session:
        rows = session.execute(select(DailyEventAggregate)).scalars().all()
        by_key = {(row.dimension, row.dimension_value, row.event_type): row.event_count for row in rows}
        run_ids = {row.run_id for row in rows}

    assert result.rows_written == len(by_key) == 6
    assert result.details == {"events": 2, "devices": 1}
    assert by_key[(AggregateDimension.LOCATION, "L1", "Capture")] == 1
    assert by_key[(AggregateDimension.DEVICE_TYPE, "MouseTrap", "Heartbeat")] == 1
    assert run_ids == {result.run_id}


@pytest.mark.asyncio
async def test_location_risk_job_persists_scores(make_device, fake_registry_cls) -> None:
    registry = fake_registry_cls(
        [make_device("D1"), make_device("D2")],
        events=[_event("D1", "Capture") for _ in range(2)],
    )

    result = await LocationRiskJob(registry, clock=lambda: NOW).run()

    with session_scope() as session:
        row = session.execute(select(LocationRiskScore)).scalar_one()
        assert row.location_id == "L1"
        assert row.capture_count == 2
        assert row.device_count == 2
        assert row.risk_score == 1.0
        assert row.risk_level is RiskLevel.MEDIUM
        assert row.needs_attention is False
        assert row.window_hours == 24

    assert result.details == {"locations": 1, "flagged": []}


def test_location_risk_job_rejects_inverted_thresholds(fake_registry_cls) -> None:
    with pytest.raises(ValueError):
        LocationRiskJob(fake_registry_cls(), medium_threshold=5.0, high_threshold=3.0)
