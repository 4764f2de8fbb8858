"""Helpers shared by the wire-level schemas."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Collection, Dict, FrozenSet, Mapping, Optional, Type, TypeVar

from pydantic import BaseModel
from pydantic.alias_generators import to_camel

E = TypeVar("E", bound=Enum)

# DateTime.MinValue as serialized by the .NET registry and producers.
_DOTNET_MIN_YEAR = 1


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def is_unset_timestamp(value: Any) -> bool:
    """True for missing timestamps, including the .NET ``default(DateTime)`` sentinel."""

    if value is None or value == "":
        return True
    if isinstance(value, datetime):
        return value.year == _DOTNET_MIN_YEAR
    if isinstance(value, str):
        return value.startswith("0001-01-01")
    return False


def camelize_keys(data: Mapping[str, Any], known: Collection[str]) -> Dict[str, Any]:
    """Lower the first letter of PascalCase keys so both producer styles decode alike.

    Only keys whose camelCase form is in ``known`` are rewritten; unknown
    extras keep their original spelling.
    """

    normalized: Dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(key, str) and key[:1].isupper():
            lowered = key[0].lower() + key[1:]
            if lowered in known:
                key = lowered
        normalized.setdefault(key, value)
    return normalized


def wire_field_names(model: Type[BaseModel]) -> FrozenSet[str]:
    """camelCase wire names of every declared field on ``model``."""

    return frozenset(to_camel(name) for name in model.model_fields)


def coerce_enum(enum_cls: Type[E], value: Any) -> Any:
    """Map ordinals and case-insensitive names onto ``enum_cls`` members.

    Values that match no member are returned unchanged so the caller's field
    type decides whether they are acceptable.
    """

    if isinstance(value, enum_cls):
        return value
    members = list(enum_cls)
    if isinstance(value, int) and not isinstance(value, bool):
        if 0 <= value < len(members):
            return members[value]
        return value
    if isinstance(value, str):
        candidate = value.strip()
        for member in members:
            if member.value.lower() == candidate.lower():
                return member
        return candidate
    return value
