"""Device status state machine and Registry write-back."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, Mapping, Optional, Tuple

from trap_pipeline.events_engine.schemas import EventEnvelope, EventType
from trap_pipeline.schemas.device import DeviceRecord, DeviceStatus
from trap_pipeline.services.registry_client import RegistryClient, RegistryConflictError

LOGGER = logging.getLogger("trap_pipeline.services.reconciler")

# Statuses a heartbeat must not clear.
HEARTBEAT_STICKY_STATUSES: FrozenSet[DeviceStatus] = frozenset(
    {
        DeviceStatus.TRIGGERED,
        DeviceStatus.LOW_BATTERY,
        DeviceStatus.MAINTENANCE,
        DeviceStatus.ALERT,
    }
)

_UNCONDITIONAL: Mapping[EventType, DeviceStatus] = {
    EventType.ACTIVATION: DeviceStatus.TRIGGERED,
    EventType.CAPTURE: DeviceStatus.TRIGGERED,
    EventType.BATTERY_LOW: DeviceStatus.LOW_BATTERY,
    EventType.MAINTENANCE: DeviceStatus.ACTIVE,
    EventType.MALFUNCTION: DeviceStatus.ALERT,
    EventType.RESET: DeviceStatus.ACTIVE,
}


def _heartbeat_target(current: DeviceStatus) -> DeviceStatus:
    return current if current in HEARTBEAT_STICKY_STATUSES else DeviceStatus.ACTIVE


TRANSITIONS: Dict[Tuple[DeviceStatus, EventType], DeviceStatus] = {
    (current, event_type): (
        _heartbeat_target(current) if event_type is EventType.HEARTBEAT else _UNCONDITIONAL[event_type]
    )
    for current in DeviceStatus
    for event_type in EventType
}


def next_status(current: DeviceStatus, event_type: EventType) -> DeviceStatus:
    return TRANSITIONS[(current, event_type)]


def apply_event(device: DeviceRecord, envelope: EventEnvelope) -> DeviceRecord:
    """Return a copy of ``device`` with ``envelope`` applied.

    Battery level and last communication are updated for every event; the
    status only moves through :data:`TRANSITIONS`. Unknown event types leave
    the status unchanged.
    """

    updates: Dict[str, object] = {
        "battery_level": envelope.battery_level,
        "last_communication_date": envelope.timestamp,
    }
    if isinstance(envelope.event_type, EventType):
        updates["status"] = next_status(device.status, envelope.event_type)
        if envelope.event_type is EventType.MAINTENANCE:
            updates["last_maintenance_date"] = envelope.timestamp
    return device.model_copy(update=updates)


@dataclass(frozen=True)
class ReconcileOutcome:
    device_id: str
    previous_status: DeviceStatus
    status: DeviceStatus
    battery_level: int

    @property
    def status_changed(self) -> bool:
        return self.previous_status is not self.status


class DeviceStateReconciler:
    """Reads the device, applies the transition table and writes it back.

    Conflicts are fatal unless ``conflict_retries`` allows re-reading the
    current record and applying the event again.
    """

    def __init__(self, registry: RegistryClient, *, conflict_retries: int = 0) -> None:
        self._registry = registry
        self._conflict_retries = conflict_retries

    async def reconcile(self, envelope: EventEnvelope) -> Optional[ReconcileOutcome]:
        if not envelope.is_known_type:
            LOGGER.warning(
                "reconcile_unknown_event_type",
                extra={
                    "event_id": envelope.event_id,
                    "device_id": envelope.device_id,
                    "event_type": envelope.event_type_name,
                },
            )

        attempt = 0
        while True:
            device = await self._registry.get_device(envelope.device_id)
            if device is None:
                LOGGER.warning(
                    "reconcile_skipped_unknown_device",
                    extra={"event_id": envelope.event_id, "device_id": envelope.device_id},
                )
                return None

            updated = apply_event(device, envelope)
            try:
                await self._registry.put_device(envelope.device_id, updated)
            except RegistryConflictError:
                if attempt >= self._conflict_retries:
                    raise
                attempt += 1
                LOGGER.info(
                    "reconcile_conflict_retry",
                    extra={"device_id": envelope.device_id, "attempt": attempt},
                )
                continue

            outcome = ReconcileOutcome(
                device_id=envelope.device_id,
                previous_status=device.status,
                status=updated.status,
                battery_level=updated.battery_level,
            )
            LOGGER.info(
                "device_state_reconciled",
                extra={
                    "event_id": envelope.event_id,
                    "device_id": envelope.device_id,
                    "event_type": envelope.event_type_name,
                    "previous_status": outcome.previous_status.value,
                    "status": outcome.status.value,
                    "battery_level": outcome.battery_level,
                },
            )
            return outcome
