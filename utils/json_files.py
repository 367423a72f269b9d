"""
JSON file helpers shared by the prompt cache and the repository cache store.
"""

import os
import json
import tempfile

from utils.errors import CachePersistenceFailure


def read_json(path: str):
    """Load a JSON document, raising CachePersistenceFailure on any I/O or parse error."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        raise CachePersistenceFailure(f"Failed to read {path}: {e}") from e


def write_json_atomic(path: str, data) -> None:
    """
    Write a JSON document through a temporary file and os.replace.

    A reader never sees a half-written file, even if the process is killed
    mid-write.
    """
    directory = os.path.dirname(os.path.abspath(path))
    try:
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".tmp_", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
    except (OSError, TypeError, ValueError) as e:
        raise CachePersistenceFailure(f"Failed to write {path}: {e}") from e
