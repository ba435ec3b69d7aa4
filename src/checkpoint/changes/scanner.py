"""Project tree scanning with exclude patterns."""

from __future__ import annotations

import fnmatch
import logging
import os
from collections.abc import Iterable, Iterator
from pathlib import Path

logger = logging.getLogger(__name__)


def is_excluded(relative_path: str, patterns: Iterable[str]) -> bool:
    """
    Check a relative path against exclude patterns.

    A pattern matches if it matches the whole relative path or any single
    component of it, so "node_modules" excludes every node_modules directory
    and "*.log" excludes log files at any depth.
    """
    parts = relative_path.replace(os.sep, "/").split("/")
    for pattern in patterns:
        if fnmatch.fnmatch(relative_path, pattern):
            return True
        if any(fnmatch.fnmatch(part, pattern) for part in parts):
            return True
    return False


def iter_project_files(
    root: Path,
    exclude: Iterable[str] = (),
    skip_dirs: Iterable[Path] = (),
    errors: list[tuple[str, OSError]] | None = None,
) -> Iterator[str]:
    """
    Yield relative paths of regular files under root, sorted per directory.

    Symlinks are not followed. Directories listed in skip_dirs (for example
    a backup directory nested inside the project) are never entered.
    Directories that cannot be read are appended to errors as
    (relative path, error) when a list is given.
    """
    root = Path(root)
    patterns = tuple(exclude)
    skipped = {os.path.abspath(p) for p in skip_dirs}

    def on_error(error: OSError) -> None:
        logger.warning("Cannot scan %s: %s", error.filename, error.strerror)
        if errors is not None:
            failed = os.path.relpath(error.filename or root, root)
            errors.append((failed, error))

    for dirpath, dirnames, filenames in os.walk(root, onerror=on_error):
        rel_dir = os.path.relpath(dirpath, root)
        rel_dir = "" if rel_dir == "." else rel_dir

        kept = []
        for name in sorted(dirnames):
            full = os.path.join(dirpath, name)
            rel = os.path.join(rel_dir, name) if rel_dir else name
            if os.path.abspath(full) in skipped or os.path.islink(full):
                continue
            if is_excluded(rel, patterns):
                continue
            kept.append(name)
        dirnames[:] = kept

        for name in sorted(filenames):
            rel = os.path.join(rel_dir, name) if rel_dir else name
            full = os.path.join(dirpath, name)
            if os.path.islink(full) or is_excluded(rel, patterns):
                continue
            yield rel
