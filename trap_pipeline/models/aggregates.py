"""Analytics rows produced by the periodic aggregation jobs."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import Boolean, Float, Index, Integer, String
from sqlalchemy import Enum as SqlEnum
from sqlalchemy.orm import Mapped, mapped_column

from trap_pipeline.models.base import AnalyticsRowMixin, Base


class AggregateDimension(str, Enum):
    """Dimension an event count is grouped by."""

    LOCATION = "location"
    DEVICE_TYPE = "device_type"
    EVENT_TYPE = "event_type"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class DailyEventAggregate(AnalyticsRowMixin, Base):
    """Event count for one dimension value over a trailing 24-hour window."""

    __tablename__ = "daily_event_aggregates"
    __table_args__ = (
        Index("ix_daily_event_aggregates_window_end", "window_end"),
        Index("ix_daily_event_aggregates_dimension", "dimension", "dimension_value"),
    )

    window_start: Mapped[datetime] = mapped_column(nullable=False)
    window_end: Mapped[datetime] = mapped_column(nullable=False)
    dimension: Mapped[AggregateDimension] = mapped_column(
        SqlEnum(AggregateDimension, name="aggregate_dimension", native_enum=False),
        nullable=False,
    )
    dimension_value: Mapped[str] = mapped_column(String(length=128), nullable=False)
    event_type: Mapped[str] = mapped_column(String(length=64), nullable=False)
    event_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class LocationRiskScore(AnalyticsRowMixin, Base):
    """Risk assessment for a single location at a point in time."""

    __tablename__ = "location_risk_scores"
    __table_args__ = (
        Index("ix_location_risk_scores_location_id", "location_id"),
        Index("ix_location_risk_scores_computed_at", "computed_at"),
    )

    computed_at: Mapped[datetime] = mapped_column(nullable=False)
    window_hours: Mapped[int] = mapped_column(Integer, nullable=False)
    location_id: Mapped[str] = mapped_column(String(length=128), nullable=False)
    location_name: Mapped[Optional[str]] = mapped_column(String(length=256), nullable=True)
    capture_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    device_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    alert_device_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    risk_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    risk_level: Mapped[RiskLevel] = mapped_column(
        SqlEnum(RiskLevel, name="location_risk_level", native_enum=False),
        nullable=False,
    )
    needs_attention: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    details: Mapped[Dict[str, Any]] = mapped_column(nullable=False, default=dict)
