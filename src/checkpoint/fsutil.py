"""
Small file helpers shared by the state, cache and manifest writers.

Every persisted JSON document is written with a temp file in the same
directory followed by a rename, so readers only ever see the previous
complete version or the new complete version.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

HASH_CHUNK_SIZE = 65536


def atomic_write_json(path: Path, data: Any, indent: int | None = 2) -> None:
    """
    Write JSON to a file atomically.

    Args:
        path: Destination file. Parent directories are created.
        data: JSON-serializable data.
        indent: Indentation passed to json.dump.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    temp_fd, temp_path = tempfile.mkstemp(
        prefix=f".{path.name}.",
        suffix=".tmp",
        dir=str(path.parent),
    )
    try:
        with os.fdopen(temp_fd, "w") as f:
            json.dump(data, f, indent=indent, default=str)
        os.replace(temp_path, path)
    except Exception:
        if os.path.exists(temp_path):
            os.unlink(temp_path)
        raise


def atomic_write_lines(path: Path, lines: list[str]) -> None:
    """Write text lines to a file atomically."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    temp_fd, temp_path = tempfile.mkstemp(
        prefix=f".{path.name}.",
        suffix=".tmp",
        dir=str(path.parent),
    )
    try:
        with os.fdopen(temp_fd, "w") as f:
            for line in lines:
                f.write(line.rstrip("\n") + "\n")
        os.replace(temp_path, path)
    except Exception:
        if os.path.exists(temp_path):
            os.unlink(temp_path)
        raise


def read_json(path: Path) -> Any | None:
    """
    Read a JSON document, returning None when it is missing or unparsable.

    Callers treat None as "unknown" state.
    """
    path = Path(path)
    if not path.exists():
        return None

    try:
        with open(path) as f:
            return json.load(f)
    except (json.JSONDecodeError, UnicodeDecodeError, OSError) as e:
        logger.warning("Could not read %s: %s", path, e)
        return None


def sha256_file(path: Path) -> str:
    """Compute the SHA-256 hex digest of a file."""
    hasher = hashlib.sha256()
    with open(path, "rb") as f:
        while chunk := f.read(HASH_CHUNK_SIZE):
            hasher.update(chunk)
    return hasher.hexdigest()
