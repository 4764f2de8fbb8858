"""Batch analytics jobs run by the aggregation scheduler."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, ContextManager, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence

from sqlalchemy.orm import Session

from trap_pipeline.core.database import session_scope
from trap_pipeline.events_engine.schemas import EnvelopeDecodeError, EventEnvelope, EventType, decode_envelope
from trap_pipeline.models.aggregates import AggregateDimension, DailyEventAggregate, LocationRiskScore, RiskLevel
from trap_pipeline.schemas.device import DeviceRecord, DeviceStatus
from trap_pipeline.services.registry_client import RegistryClient

LOGGER = logging.getLogger("trap_pipeline.services.aggregation")

CAPTURE_EVENT_TYPES = frozenset({EventType.ACTIVATION, EventType.CAPTURE})
UNKNOWN = "unknown"

SessionFactory = Callable[[], ContextManager[Session]]


@dataclass
class JobResult:
    job: str
    run_id: uuid.UUID
    started_at: datetime
    finished_at: datetime
    rows_written: int
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "job": self.job,
            "run_id": str(self.run_id),
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "rows_written": self.rows_written,
            "details": self.details,
        }


class AggregationJob(Protocol):
    name: str

    async def run(self) -> JobResult:
        ...


@dataclass(frozen=True)
class LocationRisk:
    location_id: str
    location_name: Optional[str]
    capture_count: int
    device_count: int
    alert_device_count: int
    risk_score: float
    risk_level: RiskLevel
    needs_attention: bool


def parse_events(items: Iterable[Mapping[str, Any]], *, since: datetime) -> List[EventEnvelope]:
    """Decode Registry event rows, dropping malformed ones and those before ``since``."""

    events: List[EventEnvelope] = []
    skipped = 0
    for item in items:
        try:
            envelope = decode_envelope(item)
        except EnvelopeDecodeError:
            skipped += 1
            continue
        if envelope.timestamp >= since:
            events.append(envelope)
    if skipped:
        LOGGER.warning("aggregation_events_skipped", extra={"skipped": skipped})
    return events


def count_events(
    events: Sequence[EventEnvelope],
    devices: Sequence[DeviceRecord],
) -> Counter:
    """Count events keyed by ``(dimension, dimension_value, event_type)``."""

    device_types = {device.device_id: device.device_type_name for device in devices}
    counts: Counter = Counter()
    for event in events:
        event_type = event.event_type_name
        counts[(AggregateDimension.LOCATION, event.location_id or UNKNOWN, event_type)] += 1
        counts[(AggregateDimension.DEVICE_TYPE, device_types.get(event.device_id, UNKNOWN), event_type)] += 1
        counts[(AggregateDimension.EVENT_TYPE, event_type, event_type)] += 1
    return counts


def classify_risk(score: float, *, medium_threshold: float, high_threshold: float) -> RiskLevel:
    if score >= high_threshold:
        return RiskLevel.HIGH
    if score >= medium_threshold:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def score_locations(
    events: Sequence[EventEnvelope],
    devices: Sequence[DeviceRecord],
    *,
    medium_threshold: float,
    high_threshold: float,
) -> List[LocationRisk]:
    """Risk per location from activation/capture frequency per installed device."""

    names: Dict[str, Optional[str]] = {}
    device_counts: Counter = Counter()
    alert_counts: Counter = Counter()
    for device in devices:
        location_id = device.location_id or UNKNOWN
        names.setdefault(location_id, device.location_name)
        device_counts[location_id] += 1
        if device.status is DeviceStatus.ALERT:
            alert_counts[location_id] += 1

    capture_counts: Counter = Counter()
    for event in events:
        location_id = event.location_id or UNKNOWN
        if not names.get(location_id):
            names[location_id] = event.location_name
        if event.event_type in CAPTURE_EVENT_TYPES:
            capture_counts[location_id] += 1

    risks: List[LocationRisk] = []
    for location_id in sorted(names):
        captures = capture_counts[location_id]
        installed = device_counts[location_id]
        score = round(captures / max(installed, 1), 3)
        level = classify_risk(score, medium_threshold=medium_threshold, high_threshold=high_threshold)
        risks.append(
            LocationRisk(
                location_id=location_id,
                location_name=names[location_id],
                capture_count=captures,
                device_count=installed,
                alert_device_count=alert_counts[location_id],
                risk_score=score,
                risk_level=level,
                needs_attention=level is RiskLevel.HIGH or alert_counts[location_id] > 0,
            )
        )
    return risks


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DailyAggregationJob:
    """Counts the trailing 24 hours of events by location, device type and event type."""

    name = "daily_aggregation"

    def __init__(
        self,
        registry: RegistryClient,
        *,
        window: timedelta = timedelta(hours=24),
        session_factory: SessionFactory = session_scope,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._registry = registry
        self._window = window
        self._session_factory = session_factory
        self._clock = clock

    async def run(self) -> JobResult:
        started_at = self._clock()
        window_start = started_at - self._window
        run_id = uuid.uuid4()

        events = parse_events(await self._registry.list_events(since=window_start), since=window_start)
        devices = await self._registry.list_devices()
        counts = count_events(events, devices)

        rows = [
            DailyEventAggregate(
                run_id=run_id,
                window_start=window_start,
                window_end=started_at,
                dimension=dimension,
                dimension_value=value,
                event_type=event_type,
                event_count=count,
            )
            for (dimension, value, event_type), count in sorted(counts.items(), key=lambda item: str(item[0]))
        ]
        await asyncio.to_thread(self._persist, rows)

        return JobResult(
            job=self.name,
            run_id=run_id,
            started_at=started_at,
            finished_at=self._clock(),
            rows_written=len(rows),
            details={"events": len(events), "devices": len(devices)},
        )

    def _persist(self, rows: List[DailyEventAggregate]) -> None:
        with self._session_factory() as session:
            session.add_all(rows)


class LocationRiskJob:
    """Scores each location and flags the ones needing attention."""

    name = "location_risk_analysis"

    def __init__(
        self,
        registry: RegistryClient,
        *,
        window: timedelta = timedelta(hours=24),
        medium_threshold: float = 1.0,
        high_threshold: float = 3.0,
        session_factory: SessionFactory = session_scope,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if medium_threshold > high_threshold:
            raise ValueError("medium_threshold must not exceed high_threshold")
        self._registry = registry
        self._window = window
        self._medium = medium_threshold
        self._high = high_threshold
        self._session_factory = session_factory
        self._clock = clock

    async def run(self) -> JobResult:
        started_at = self._clock()
        since = started_at - self._window
        run_id = uuid.uuid4()

        events = parse_events(await self._registry.list_events(since=since), since=since)
        devices = await self._registry.list_devices()
        risks = score_locations(events, devices, medium_threshold=self._medium, high_threshold=self._high)

        window_hours = int(self._window.total_seconds() // 3600)
        rows = [
            LocationRiskScore(
                run_id=run_id,
                computed_at=started_at,
                window_hours=window_hours,
                location_id=risk.location_id,
                location_name=risk.location_name,
                capture_count=risk.capture_count,
                device_count=risk.device_count,
                alert_device_count=risk.alert_device_count,
                risk_score=risk.risk_score,
                risk_level=risk.risk_level,
                needs_attention=risk.needs_attention,
                details={"medium_threshold": self._medium, "high_threshold": self._high},
            )
            for risk in risks
        ]
        await asyncio.to_thread(self._persist, rows)

        flagged = [risk.location_id for risk in risks if risk.needs_attention]
        if flagged:
            LOGGER.warning("locations_need_attention", extra={"locations": flagged})

        return JobResult(
            job=self.name,
            run_id=run_id,
            started_at=started_at,
            finished_at=self._clock(),
            rows_written=len(rows),
            details={"locations": len(risks), "flagged": flagged},
        )

    def _persist(self, rows: List[LocationRiskScore]) -> None:
        with self._session_factory() as session:
            session.add_all(rows)
