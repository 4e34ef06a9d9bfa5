"""
Attribute Index
===============

Secondary index over (entity, attribute, value) triples, independent of graph
structure. Used standalone or to pick traversal seeds.

Values are keyed by their canonical JSON text (see ``value_key``), so equal
nested structures match regardless of key order while ``1``, ``1.0`` and
``True`` stay distinct.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

from pydantic import ValidationError

from trellis.core.errors import SerializationError
from trellis.core.persistence import read_json_object, write_json_atomic
from trellis.core.schema import Node
from trellis.core.values import normalize_value, value_key, value_text
from trellis.index.query import (
    AttributeCondition,
    BooleanMode,
    ConditionOperator,
    IndexMetadata,
    SerializedIndex,
)


logger = logging.getLogger(__name__)

INDEX_FORMAT_VERSION = "1.0.0"

_MISSING = object()


@dataclass
class IndexStatistics:
    """Summary of current index contents."""

    total_entities: int
    total_attributes: int
    total_values: int
    average_attributes_per_entity: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalEntities": self.total_entities,
            "totalAttributes": self.total_attributes,
            "totalValues": self.total_values,
            "averageAttributesPerEntity": self.average_attributes_per_entity,
        }


class AttributeIndex:
    """
    Attribute-keyed lookup with composite boolean queries and persistence.

    Example
    -------
    >>> index = AttributeIndex()
    >>> index.add_attribute("doc-1", "type", "section")
    >>> index.add_attribute("doc-1", "level", 2)
    >>> index.find_by_attributes(
    ...     [{"attribute": "type", "value": "section"}, {"attribute": "level", "value": 2}],
    ...     mode="AND",
    ... )
    {'doc-1'}
    """

    def __init__(self, debug: bool = False):
        self.debug = debug
        # attribute -> value key -> entity ids
        self._index: dict[str, dict[str, set[str]]] = {}
        # attribute -> value key -> normalized value
        self._values: dict[str, dict[str, Any]] = {}
        # entity id -> attribute -> value keys in insertion order
        self._entities: dict[str, dict[str, list[str]]] = {}

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def add_attribute(self, entity_id: str, attribute: str, value: Any) -> None:
        """
        Record one (entity, attribute, value) triple.

        Re-adding an identical triple is a no-op. A new value under an
        existing (entity, attribute) pair accumulates.

        Raises
        ------
        ValueError
            If entity_id or attribute is not a non-empty string, or the value
            is not representable as JSON
        """
        self._check_name(entity_id, "Entity ID")
        self._check_name(attribute, "Attribute name")

        normalized = normalize_value(value)
        key = self._key_for(attribute, normalized)

        holders = self._index.setdefault(attribute, {}).setdefault(key, set())
        if entity_id in holders:
            return

        holders.add(entity_id)
        self._values.setdefault(attribute, {})[key] = normalized
        self._entities.setdefault(entity_id, {}).setdefault(attribute, []).append(key)
        self._debug("Indexed %s.%s = %s", entity_id, attribute, key)

    def remove_attribute(self, entity_id: str, attribute: str, value: Any = _MISSING) -> None:
        """Remove one value, or every value when ``value`` is omitted."""
        self._check_name(entity_id, "Entity ID")
        self._check_name(attribute, "Attribute name")

        keys = self._entities.get(entity_id, {}).get(attribute)
        if not keys:
            return

        if value is _MISSING:
            doomed = list(keys)
        else:
            key = self._key_for(attribute, value)
            doomed = [key] if key in keys else []

        for key in doomed:
            self._unlink(entity_id, attribute, key)

    def remove_entity(self, entity_id: str) -> None:
        """Remove every triple held by an entity."""
        self._check_name(entity_id, "Entity ID")

        attributes = self._entities.get(entity_id)
        if not attributes:
            return

        for attribute, keys in list(attributes.items()):
            for key in list(keys):
                self._unlink(entity_id, attribute, key)

    def clear(self) -> None:
        self._index.clear()
        self._values.clear()
        self._entities.clear()

    def index_nodes(self, nodes: Iterable[Node | dict[str, Any]]) -> int:
        """
        Index graph node records: ``type`` plus every property.

        List-valued properties are indexed element-wise. Records without a
        usable id are skipped with a warning.

        Returns
        -------
        int
            Number of nodes indexed
        """
        indexed = 0
        for raw in nodes:
            try:
                node = raw if isinstance(raw, Node) else Node.model_validate(raw)
            except ValidationError as exc:
                logger.warning("[AttributeIndex] Skipping unindexable record: %s", exc)
                continue

            self.add_attribute(node.id, "type", node.type)
            for name, value in node.properties.items():
                if isinstance(value, list):
                    for item in value:
                        self.add_attribute(node.id, name, item)
                else:
                    self.add_attribute(node.id, name, value)
            indexed += 1

        return indexed

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def find_by_attribute(self, attribute: str, value: Any = _MISSING) -> set[str]:
        """
        Entities holding ``value`` for ``attribute``.

        With ``value`` omitted, every entity that has any value for the
        attribute. Passing ``value=None`` matches stored nulls.
        """
        buckets = self._index.get(attribute)
        if not buckets:
            return set()

        if value is _MISSING:
            found: set[str] = set()
            for holders in buckets.values():
                found |= holders
            return found

        return set(buckets.get(self._key_for(attribute, value), ()))

    def find_by_attributes(
        self,
        conditions: Iterable[AttributeCondition | dict[str, Any]],
        mode: BooleanMode | str = BooleanMode.AND,
    ) -> set[str]:
        """
        Combine per-condition matches by intersection (AND) or union (OR).

        Parameters
        ----------
        conditions : iterable of AttributeCondition or dict
            Ordered predicates. An empty list matches nothing.
        mode : BooleanMode or str
            "AND" or "OR"

        Raises
        ------
        ValueError
            For an unknown mode or operator, or a condition without attribute
        """
        try:
            mode = BooleanMode(mode)
        except ValueError:
            raise ValueError(f"Invalid combinator: {mode!r}") from None

        parsed = [self._as_condition(c) for c in conditions]
        if not parsed:
            return set()

        result: Optional[set[str]] = None
        for condition in parsed:
            matches = self._match(condition)
            if result is None:
                result = matches
            elif mode == BooleanMode.AND:
                result &= matches
            else:
                result |= matches

            if mode == BooleanMode.AND and not result:
                break

        return result or set()

    def get_statistics(self) -> IndexStatistics:
        """
        Counts over current contents.

        ``total_attributes`` counts distinct attribute names,
        ``total_values`` distinct values summed per attribute, and the
        average counts (attribute, value) entries per entity.
        """
        total_entities = len(self._entities)
        entries = sum(
            len(keys) for attributes in self._entities.values() for keys in attributes.values()
        )
        return IndexStatistics(
            total_entities=total_entities,
            total_attributes=len(self._index),
            total_values=sum(len(buckets) for buckets in self._index.values()),
            average_attributes_per_entity=entries / total_entities if total_entities else 0.0,
        )

    def get_all_attributes(self) -> set[str]:
        return set(self._index)

    def get_values_for_attribute(self, attribute: str) -> list[Any]:
        """Distinct values of an attribute in first-seen order."""
        self._check_name(attribute, "Attribute name")
        return list(self._values.get(attribute, {}).values())

    def has_entity(self, entity_id: str) -> bool:
        return entity_id in self._entities

    @property
    def entity_count(self) -> int:
        return len(self._entities)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_document(self) -> SerializedIndex:
        """Snapshot the index as its persisted document model."""
        entities = {
            entity_id: {
                attribute: [self._values[attribute][key] for key in keys]
                for attribute, keys in attributes.items()
            }
            for entity_id, attributes in self._entities.items()
        }
        stats = self.get_statistics()
        return SerializedIndex(
            version=INDEX_FORMAT_VERSION,
            entities=entities,
            metadata=IndexMetadata(
                entity_count=stats.total_entities,
                attribute_count=stats.total_attributes,
                value_count=stats.total_values,
                saved_at=datetime.now(timezone.utc).isoformat(),
            ),
        )

    def save(self, path: Path | str) -> None:
        """
        Write the index to ``path`` atomically.

        Raises
        ------
        StorageIOError
            If the file cannot be written
        """
        document = self.to_document()
        write_json_atomic(path, document.to_json_dict())
        logger.info(
            "[AttributeIndex] Saved %d entities, %d attributes to %s",
            document.metadata.entity_count,
            document.metadata.attribute_count,
            path,
        )

    def load(self, path: Path | str) -> None:
        """
        Replace the index contents with the document at ``path``.

        On any failure the current contents are left untouched.

        Raises
        ------
        StorageIOError
            If the file is missing or unreadable
        SerializationError
            If the content is not a valid index document
        """
        raw = read_json_object(path)
        try:
            document = SerializedIndex.model_validate(raw)
        except ValidationError as exc:
            raise SerializationError(path, str(exc)) from exc

        staged = AttributeIndex(debug=self.debug)
        try:
            for entity_id, attributes in document.entities.items():
                for attribute, values in attributes.items():
                    for value in values:
                        staged.add_attribute(entity_id, attribute, value)
        except ValueError as exc:
            raise SerializationError(path, str(exc)) from exc

        self._index = staged._index
        self._values = staged._values
        self._entities = staged._entities
        logger.info(
            "[AttributeIndex] Loaded %d entities, %d attributes from %s",
            len(self._entities),
            len(self._index),
            path,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _match(self, condition: AttributeCondition) -> set[str]:
        op = condition.operator
        if op == ConditionOperator.EQUALS:
            return self.find_by_attribute(condition.attribute, condition.value)
        if op == ConditionOperator.EXISTS:
            return self.find_by_attribute(condition.attribute)

        needle = value_text(condition.value)
        found: set[str] = set()
        for key, holders in self._index.get(condition.attribute, {}).items():
            text = value_text(self._values[condition.attribute][key])
            if op == ConditionOperator.CONTAINS:
                hit = needle in text
            else:
                hit = text.startswith(needle)
            if hit:
                found |= holders
        return found

    @staticmethod
    def _as_condition(condition: AttributeCondition | dict[str, Any]) -> AttributeCondition:
        if isinstance(condition, AttributeCondition):
            return condition
        if not isinstance(condition, dict):
            raise ValueError(f"Invalid query object: {condition!r}")
        if not condition.get("attribute"):
            raise ValueError("Attribute name is required")
        try:
            return AttributeCondition.model_validate(condition)
        except ValidationError as exc:
            raise ValueError(f"Invalid query condition: {exc}") from exc

    def _unlink(self, entity_id: str, attribute: str, key: str) -> None:
        """Drop one triple and prune any bucket it leaves empty."""
        holders = self._index[attribute][key]
        holders.discard(entity_id)
        if not holders:
            del self._index[attribute][key]
            del self._values[attribute][key]
            if not self._index[attribute]:
                del self._index[attribute]
                del self._values[attribute]

        keys = self._entities[entity_id][attribute]
        keys.remove(key)
        if not keys:
            del self._entities[entity_id][attribute]
            if not self._entities[entity_id]:
                del self._entities[entity_id]

    @staticmethod
    def _key_for(attribute: str, value: Any) -> str:
        try:
            return value_key(value)
        except (TypeError, ValueError) as exc:
            raise ValueError(
                f"Attribute value for '{attribute}' is not JSON-serializable: {exc}"
            ) from exc

    @staticmethod
    def _check_name(name: Any, label: str) -> None:
        if not isinstance(name, str):
            raise ValueError(f"{label} must be a string")
        if not name:
            raise ValueError(f"{label} cannot be empty")

    def _debug(self, message: str, *args: Any) -> None:
        if self.debug:
            logger.debug("[AttributeIndex] " + message, *args)

    def __repr__(self) -> str:
        return (
            f"AttributeIndex(entities={len(self._entities)}, "
            f"attributes={len(self._index)})"
        )
