"""
Trellis Index: Attribute Lookup
===============================

Secondary (entity, attribute, value) index with composite AND/OR queries
and JSON persistence. Independent of the graph store.

Public API:
- AttributeIndex: The index
- AttributeCondition: One query predicate
- ConditionOperator: equals / exists / contains / starts_with
- BooleanMode: AND / OR
"""

from trellis.index.query import (
    AttributeCondition,
    BooleanMode,
    ConditionOperator,
    SerializedIndex,
)
from trellis.index.attributes import AttributeIndex, IndexStatistics

__all__ = [
    "AttributeIndex",
    "IndexStatistics",
    "AttributeCondition",
    "BooleanMode",
    "ConditionOperator",
    "SerializedIndex",
]
