"""Trap telemetry ingestion and device-state reconciliation pipeline."""

__version__ = "0.1.0"
