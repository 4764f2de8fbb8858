"""SQLAlchemy ORM models for the analytics store."""

from trap_pipeline.models.base import Base  # noqa: F401
from trap_pipeline.models.aggregates import DailyEventAggregate, LocationRiskScore  # noqa: F401
