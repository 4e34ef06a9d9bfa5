"""
Tests for Configuration and Value Normalization
===============================================
"""

import json
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

import pytest
from pydantic import ValidationError

from trellis.core.config import StoreConfig
from trellis.core.schema import DuplicatePolicy, Node
from trellis.core.values import normalize_value, value_key, value_text


class Color(str, Enum):
    RED = "red"


# =============================================================================
# StoreConfig
# =============================================================================

class TestStoreConfig:

    def test_defaults(self):
        config = StoreConfig()

        assert config.database_path is None
        assert config.auto_create is False
        assert config.duplicate_policy == DuplicatePolicy.UPSERT
        assert config.placeholder_type == "placeholder"
        assert config.max_traversal_depth == 64

    def test_rejects_unknown_fields(self):
        with pytest.raises(ValidationError):
            StoreConfig(autocreate=True)

    def test_rejects_negative_depth_limit(self):
        with pytest.raises(ValidationError):
            StoreConfig(max_traversal_depth=-1)

    def test_is_frozen(self):
        config = StoreConfig()
        with pytest.raises(ValidationError):
            config.debug = True

    def test_from_json_file(self, tmp_path):
        path = tmp_path / "trellis.json"
        path.write_text(json.dumps({
            "database_path": str(tmp_path / "graph.json"),
            "auto_create": True,
            "duplicate_policy": "reject",
        }))

        config = StoreConfig.from_json_file(path)
        assert config.auto_create is True
        assert config.duplicate_policy == DuplicatePolicy.REJECT
        assert config.database_path == tmp_path / "graph.json"

    def test_from_env(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("TRELLIS_AUTO_CREATE", "yes")
        monkeypatch.setenv("TRELLIS_MAX_TRAVERSAL_DEPTH", "8")
        monkeypatch.setenv("TRELLIS_DATABASE_PATH", "data/graph.json")
        monkeypatch.delenv("TRELLIS_DEBUG", raising=False)

        config = StoreConfig.from_env()
        assert config.auto_create is True
        assert config.debug is False
        assert config.max_traversal_depth == 8
        assert config.database_path == Path("data/graph.json")

    def test_from_env_overrides_win(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("TRELLIS_DEBUG", "true")

        assert StoreConfig.from_env(debug=False).debug is False


# =============================================================================
# Value normalization
# =============================================================================

class TestValues:

    def test_tuples_and_sets_become_lists(self):
        assert normalize_value((1, 2)) == [1, 2]
        assert normalize_value({"b", "a"}) == ["a", "b"]

    def test_datetime_is_utc_iso(self):
        stamp = datetime(2024, 1, 2, 3, 4, 5)
        assert normalize_value(stamp) == "2024-01-02T03:04:05+00:00"
        assert normalize_value(stamp.replace(tzinfo=timezone.utc)) == "2024-01-02T03:04:05+00:00"

    def test_enum_collapses_to_value(self):
        assert normalize_value({"color": Color.RED}) == {"color": "red"}

    def test_value_key_sorts_mapping_keys(self):
        assert value_key({"b": 1, "a": 2}) == value_key({"a": 2, "b": 1})

    def test_value_key_distinguishes_types(self):
        keys = {value_key(1), value_key(1.0), value_key(True), value_key("1")}
        assert len(keys) == 4

    def test_value_text(self):
        assert value_text("abc") == "abc"
        assert value_text(42) == "42"
        assert value_text(None) == "null"

    def test_node_properties_are_normalized(self):
        node = Node(id="A", type="module", properties={"pair": (1, 2)})
        assert node.properties == {"pair": [1, 2]}
