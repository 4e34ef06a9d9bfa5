"""
Store Configuration
===================

Construction options for NodeEdgeStore. Loadable from a JSON file or from
TRELLIS_* environment variables (a local .env file is honoured).
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

from trellis.core.schema import DuplicatePolicy


_TRUTHY = {"1", "true", "yes", "on"}


class StoreConfig(BaseModel):
    """
    Options for a NodeEdgeStore instance.

    Example
    -------
    >>> config = StoreConfig(database_path="graph.json", auto_create=True)
    >>> config.duplicate_policy
    <DuplicatePolicy.UPSERT: 'upsert'>
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    database_path: Optional[Path] = None
    """Snapshot file. None keeps the store purely in memory."""

    auto_create: bool = False
    """Synthesize placeholder nodes for missing edge endpoints."""

    debug: bool = False
    """Emit per-operation debug log records."""

    duplicate_policy: DuplicatePolicy = DuplicatePolicy.UPSERT
    """Behaviour of add_node for an existing id."""

    auto_flush: bool = False
    """Flush after every mutating call instead of at flush()/close()."""

    placeholder_type: str = Field(default="placeholder", min_length=1)
    """Type tag given to synthesized endpoint nodes."""

    max_traversal_depth: int = Field(default=64, ge=0)
    """Largest max_depth a traversal accepts."""

    close_timeout: float = Field(default=5.0, gt=0)
    """Seconds close() waits for an in-flight write before skipping the final flush."""

    @classmethod
    def from_json_file(cls, path: Path | str) -> "StoreConfig":
        """Load configuration from a JSON file."""
        with open(path, encoding="utf-8") as f:
            config = json.load(f)
        return cls.model_validate(config)

    @classmethod
    def from_env(cls, prefix: str = "TRELLIS_", **overrides: Any) -> "StoreConfig":
        """
        Build a config from environment variables.

        Reads ``{prefix}DATABASE_PATH``, ``{prefix}AUTO_CREATE``,
        ``{prefix}DEBUG``, ``{prefix}DUPLICATE_POLICY``, ``{prefix}AUTO_FLUSH``,
        ``{prefix}PLACEHOLDER_TYPE``, ``{prefix}MAX_TRAVERSAL_DEPTH`` and
        ``{prefix}CLOSE_TIMEOUT``. Keyword overrides win over the environment.
        """
        load_dotenv()

        values: dict[str, Any] = {}
        for name, info in cls.model_fields.items():
            raw = os.environ.get(f"{prefix}{name.upper()}")
            if raw is None or raw == "":
                continue
            if info.annotation is bool:
                values[name] = raw.strip().lower() in _TRUTHY
            else:
                values[name] = raw

        values.update(overrides)
        return cls.model_validate(values)
