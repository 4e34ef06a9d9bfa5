"""
Property value normalization and canonical value keys.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID


def normalize_value(value: Any) -> Any:
    """
    Normalize a property value into the closed JSON value space.

    Tuples become lists, sets become sorted lists, enums collapse to their
    value, datetimes to UTC ISO-8601 strings. Mapping keys are coerced to
    strings but keep their insertion order.
    """
    if isinstance(value, dict):
        return {str(k): normalize_value(v) for k, v in value.items()}

    if isinstance(value, (list, tuple)):
        return [normalize_value(item) for item in value]

    if isinstance(value, (set, frozenset)):
        return sorted(
            (normalize_value(item) for item in value),
            key=value_key,
        )

    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()

    if isinstance(value, UUID):
        return str(value)

    if isinstance(value, Enum):
        return normalize_value(value.value)

    if hasattr(value, "model_dump"):
        return normalize_value(value.model_dump(mode="json"))

    return value


def normalize_properties(properties: dict[str, Any] | None) -> dict[str, Any]:
    """Normalize a property mapping, preserving key order."""
    if not properties:
        return {}
    return {str(k): normalize_value(v) for k, v in properties.items()}


def value_key(value: Any) -> str:
    """
    Canonical text for a value, used as a hashable index key.

    Nested mappings are key-sorted so that two equal dicts written in a
    different order share a key. Distinct JSON types never collide:
    ``1``, ``1.0`` and ``true`` map to different keys.
    """
    return json.dumps(
        normalize_value(value),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=True,
    )


def value_text(value: Any) -> str:
    """Text used for substring matching: strings as-is, everything else as its key."""
    if isinstance(value, str):
        return value
    return value_key(value)
