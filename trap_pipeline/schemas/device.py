"""Device records as exposed by the device registry."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from trap_pipeline.schemas.common import (
    camelize_keys,
    coerce_enum,
    ensure_utc,
    is_unset_timestamp,
    wire_field_names,
)


class DeviceStatus(str, Enum):
    """Operational status derived by the reconciler."""

    ACTIVE = "Active"
    INACTIVE = "Inactive"
    MAINTENANCE = "Maintenance"
    ALERT = "Alert"
    TRIGGERED = "Triggered"
    LOW_BATTERY = "LowBattery"
    OFFLINE = "Offline"


class DeviceType(str, Enum):
    MOUSE_TRAP = "MouseTrap"
    RAT_TRAP = "RatTrap"
    INSECT_MONITOR = "InsectMonitor"
    TEMPERATURE_SENSOR = "TemperatureSensor"
    HUMIDITY_SENSOR = "HumiditySensor"


class DeviceRecord(BaseModel):
    """Full device record; unknown registry fields are kept for write-back."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    device_id: str = Field(..., min_length=1)
    device_name: Optional[str] = None
    device_type: Optional[Union[DeviceType, str]] = None
    location_id: Optional[str] = None
    location_name: Optional[str] = None
    customer_name: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    installation_date: Optional[datetime] = None
    last_maintenance_date: Optional[datetime] = None
    last_communication_date: Optional[datetime] = None
    battery_level: int = 0
    status: DeviceStatus = DeviceStatus.ACTIVE
    firmware_version: Optional[str] = None
    is_active: bool = True
    version: Optional[str] = Field(default=None, exclude=True)

    @model_validator(mode="before")
    @classmethod
    def _normalize_keys(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return camelize_keys(data, wire_field_names(cls))
        return data

    @field_validator("status", mode="before")
    @classmethod
    def _coerce_status(cls, value: Any) -> Any:
        return coerce_enum(DeviceStatus, value)

    @field_validator("device_type", mode="before")
    @classmethod
    def _coerce_device_type(cls, value: Any) -> Any:
        return coerce_enum(DeviceType, value)

    @field_validator(
        "installation_date",
        "last_maintenance_date",
        "last_communication_date",
        mode="before",
    )
    @classmethod
    def _drop_unset_dates(cls, value: Any) -> Any:
        return None if is_unset_timestamp(value) else value

    @field_validator(
        "installation_date",
        "last_maintenance_date",
        "last_communication_date",
    )
    @classmethod
    def _ensure_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    @property
    def device_type_name(self) -> str:
        if isinstance(self.device_type, DeviceType):
            return self.device_type.value
        return self.device_type or "Unknown"

    def to_wire(self) -> Dict[str, Any]:
        """Serialize for a registry ``PUT``."""

        return self.model_dump(mode="json", by_alias=True)
