"""Pydantic schemas for registry and analytics payloads."""

from trap_pipeline.schemas.device import DeviceRecord, DeviceStatus, DeviceType
from trap_pipeline.schemas.processed import ProcessedRecord

__all__ = [
    "DeviceRecord",
    "DeviceStatus",
    "DeviceType",
    "ProcessedRecord",
]
