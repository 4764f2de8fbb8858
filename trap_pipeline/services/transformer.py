"""Turns decoded envelopes into flattened analytics records."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from trap_pipeline.events_engine.schemas import EventEnvelope
from trap_pipeline.schemas.processed import DATA_FIELD_PREFIX, ProcessedRecord
from trap_pipeline.services.blob_store import BlobStore

LOGGER = logging.getLogger("trap_pipeline.services.transformer")

_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1


class AdditionalDataError(ValueError):
    """Raised when ``additionalData`` is not a JSON object."""


def flatten_value(value: Any) -> Any:
    """Apply the analytics typing rules to a single ``additionalData`` value."""

    if value is None or isinstance(value, (str, bool)):
        return value
    if isinstance(value, int):
        if _INT64_MIN <= value <= _INT64_MAX:
            return value
        return float(value)
    if isinstance(value, float):
        return value
    return json.dumps(value, separators=(",", ":"))


def parse_additional_data(raw: Any) -> Dict[str, Any]:
    """Return ``additionalData`` as a mapping, decoding JSON text when needed."""

    if raw is None or raw == "":
        return {}
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError as exc:
            raise AdditionalDataError(f"additionalData is not valid JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise AdditionalDataError(f"additionalData must be an object, got {type(raw).__name__}")
    return raw


def flatten_additional_data(raw: Any) -> Dict[str, Any]:
    return {f"{DATA_FIELD_PREFIX}{key}": flatten_value(value) for key, value in parse_additional_data(raw).items()}


def transform_envelope(envelope: EventEnvelope, *, now: Optional[datetime] = None) -> ProcessedRecord:
    """Build the processed record for ``envelope``.

    A malformed ``additionalData`` is logged and the record is emitted without
    flattened fields.
    """

    try:
        data = flatten_additional_data(envelope.additional_data)
    except AdditionalDataError as exc:
        LOGGER.warning(
            "additional_data_unparseable",
            extra={"event_id": envelope.event_id, "device_id": envelope.device_id, "error": str(exc)},
        )
        data = {}

    return ProcessedRecord(
        event_id=envelope.event_id,
        event_type=envelope.event_type_name,
        device_id=envelope.device_id,
        location_id=envelope.location_id,
        location_name=envelope.location_name,
        customer_name=envelope.customer_name,
        battery_level=envelope.battery_level,
        timestamp=envelope.timestamp,
        processed_at=now or datetime.now(timezone.utc),
        data=data,
    )


def processed_record_path(record: ProcessedRecord) -> str:
    return f"{record.event_type}/{record.processed_at:%Y/%m/%d}/{record.record_id}.json"


class ProcessedRecordWriter:
    """Persists processed records to the processed store."""

    def __init__(self, store: BlobStore) -> None:
        self._store = store

    async def write(self, record: ProcessedRecord) -> str:
        path = processed_record_path(record)
        body = json.dumps(record.to_flat_dict()).encode("utf-8")
        await asyncio.to_thread(self._store.put, path, body)
        LOGGER.info(
            "processed_record_stored",
            extra={"path": path, "event_id": record.event_id, "event_type": record.event_type},
        )
        return path
