"""Flattened analytics record derived from a telemetry envelope."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

DATA_FIELD_PREFIX = "data_"


class ProcessedRecord(BaseModel):
    """Append-only record written to the processed store; never updated."""

    model_config = ConfigDict(frozen=True)

    record_id: str = Field(default_factory=lambda: str(uuid4()))
    event_id: str
    event_type: str
    device_id: str
    location_id: Optional[str] = None
    location_name: Optional[str] = None
    customer_name: Optional[str] = None
    battery_level: int
    timestamp: datetime
    processed_at: datetime
    data: Dict[str, Any] = Field(default_factory=dict)

    def to_flat_dict(self) -> Dict[str, Any]:
        """Top-level fields merged with the ``data_``-prefixed payload fields."""

        flat = self.model_dump(mode="json", exclude={"record_id", "data"})
        flat.update(self.data)
        return flat
