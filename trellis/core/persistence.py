"""
Atomic JSON document I/O shared by the store and the attribute index.
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any

from trellis.core.errors import SerializationError, StorageIOError


def write_json_atomic(path: Path | str, document: dict[str, Any]) -> None:
    """
    Write a JSON document so readers see either the old or the new file.

    The document goes to a temporary sibling first, is fsynced, then renamed
    over the target.

    Raises
    ------
    StorageIOError
        If any filesystem step fails
    """
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{path.name}.", suffix=".tmp", dir=path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(document, handle, indent=2)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
    except OSError as exc:
        raise StorageIOError(path, str(exc)) from exc


def read_json_object(path: Path | str) -> dict[str, Any]:
    """
    Read a JSON document whose root must be an object.

    Raises
    ------
    StorageIOError
        If the file is missing or unreadable
    SerializationError
        If the content is not JSON or the root is not an object
    """
    path = Path(path)
    try:
        with open(path, encoding="utf-8") as handle:
            raw = json.load(handle)
    except json.JSONDecodeError as exc:
        raise SerializationError(path, f"invalid JSON: {exc}") from exc
    except UnicodeDecodeError as exc:
        raise SerializationError(path, f"not UTF-8 text: {exc}") from exc
    except OSError as exc:
        raise StorageIOError(path, str(exc)) from exc

    if not isinstance(raw, dict):
        raise SerializationError(path, "document root must be an object")
    return raw
