"""
Attribute Query Models
======================

Condition records accepted by AttributeIndex.find_by_attributes, and the
persisted document shape of an index snapshot.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, JsonValue


class ConditionOperator(str, Enum):
    """How a condition's value is compared against indexed values."""

    EQUALS = "equals"
    """Exact value match (canonical JSON equality)."""

    EXISTS = "exists"
    """Entity has any value for the attribute; the condition value is ignored."""

    CONTAINS = "contains"
    """Value text contains the condition text (case-sensitive)."""

    STARTS_WITH = "starts_with"
    """Value text starts with the condition text (case-sensitive)."""


class BooleanMode(str, Enum):
    """How per-condition result sets are combined."""

    AND = "AND"
    OR = "OR"


class AttributeCondition(BaseModel):
    """
    One predicate in a composite attribute query.

    Example
    -------
    >>> AttributeCondition(attribute="level", value=2)
    >>> AttributeCondition(attribute="path", value="src/", operator="starts_with")
    """

    model_config = ConfigDict(frozen=True)

    attribute: str = Field(min_length=1)
    value: JsonValue = None
    operator: ConditionOperator = ConditionOperator.EQUALS


class IndexMetadata(BaseModel):
    entity_count: int = 0
    attribute_count: int = 0
    value_count: int = 0
    saved_at: str = ""


class SerializedIndex(BaseModel):
    """On-disk AttributeIndex document."""

    version: str = "1.0.0"
    entities: dict[str, dict[str, list[JsonValue]]] = Field(default_factory=dict)
    """Entity id -> attribute -> values in insertion order."""

    metadata: IndexMetadata = Field(default_factory=IndexMetadata)

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")
