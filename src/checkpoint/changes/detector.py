"""
Content-hash change detection with a persistent cache.

Hashing every file on every run is the dominant cost of an incremental
backup, so hashes are cached by absolute path and keyed on the file's
modification time in nanoseconds. A cached hash is reused only while the
mtime is unchanged; any change forces recomputation.

The cache is a JSON document replaced atomically on save:

    {"version": 1, "entries": {"/abs/path": {"mtime_ns": 1700000000000000000,
                                             "hash": "<sha256 hex>"}}}
"""

from __future__ import annotations

import logging
import os
import stat
from collections.abc import Iterator
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass
from pathlib import Path

from checkpoint.fsutil import atomic_write_json, read_json, sha256_file

logger = logging.getLogger(__name__)

CACHE_VERSION = 1
CACHE_FILE_NAME = ".hash-cache.json"


class HashUnavailableError(Exception):
    """Raised when a file cannot be hashed (missing or unreadable)."""

    pass


@dataclass
class CacheStats:
    """Hit and miss counters for one detector."""

    hits: int = 0
    misses: int = 0

    @property
    def lookups(self) -> int:
        return self.hits + self.misses


class HashCache:
    """
    Persistent mapping of path to (mtime_ns, hash).

    Args:
        path: Cache file location. None keeps the cache in memory only.
    """

    def __init__(self, path: Path | None = None) -> None:
        self.path = Path(path) if path is not None else None
        self._entries: dict[str, dict[str, object]] = {}
        self._dirty = False
        self._defer_depth = 0
        self.load()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def load(self) -> None:
        """Load entries from disk. A missing or corrupt cache starts empty."""
        self._entries = {}
        self._dirty = False
        if self.path is None:
            return

        data = read_json(self.path)
        if not isinstance(data, dict) or data.get("version") != CACHE_VERSION:
            if data is not None:
                logger.info("Discarding hash cache %s with unknown format", self.path)
            return

        entries = data.get("entries", {})
        if isinstance(entries, dict):
            for key, entry in entries.items():
                if (
                    isinstance(entry, dict)
                    and isinstance(entry.get("mtime_ns"), int)
                    and isinstance(entry.get("hash"), str)
                ):
                    self._entries[key] = entry

    def get(self, key: str, mtime_ns: int) -> str | None:
        """Return the cached hash if the entry matches this mtime."""
        entry = self._entries.get(key)
        if entry is None or entry["mtime_ns"] != mtime_ns:
            return None
        return str(entry["hash"])

    def put(self, key: str, mtime_ns: int, digest: str) -> None:
        self._entries[key] = {"mtime_ns": mtime_ns, "hash": digest}
        self._dirty = True
        self._maybe_save()

    def prune_missing(self) -> int:
        """Drop entries whose files no longer exist. Returns the count removed."""
        missing = [key for key in self._entries if not os.path.exists(key)]
        for key in missing:
            del self._entries[key]
        if missing:
            self._dirty = True
            self._maybe_save()
        return len(missing)

    def save(self) -> None:
        """Write the cache if it changed since the last save."""
        if not self._dirty or self.path is None:
            return
        atomic_write_json(
            self.path,
            {"version": CACHE_VERSION, "entries": self._entries},
            indent=None,
        )
        self._dirty = False

    @contextmanager
    def deferred(self) -> Iterator[HashCache]:
        """Batch updates and save once when the outermost block exits."""
        self._defer_depth += 1
        try:
            yield self
        finally:
            self._defer_depth -= 1
            if self._defer_depth == 0:
                self.save()

    def _maybe_save(self) -> None:
        if self._defer_depth == 0:
            self.save()


class ChangeDetector:
    """
    Hashes files through a HashCache and compares files by content.

    Example:
        detector = ChangeDetector(HashCache(backup_dir / ".hash-cache.json"))
        with detector.deferred_save():
            for path in files:
                digest = detector.hash(path)
    """

    def __init__(self, cache: HashCache | None = None) -> None:
        self.cache = cache if cache is not None else HashCache()
        self.stats = CacheStats()

    def hash(self, path: Path | str) -> str:
        """
        Return the SHA-256 of a file, reusing the cache when mtime is unchanged.

        Raises:
            HashUnavailableError: If the file is missing or unreadable.
        """
        key = os.path.abspath(path)
        try:
            st = os.stat(key)
        except OSError as e:
            raise HashUnavailableError(f"Cannot stat {path}: {e}") from e
        if not stat.S_ISREG(st.st_mode):
            raise HashUnavailableError(f"Not a regular file: {path}")

        cached = self.cache.get(key, st.st_mtime_ns)
        if cached is not None:
            self.stats.hits += 1
            return cached

        self.stats.misses += 1
        try:
            digest = sha256_file(Path(key))
        except OSError as e:
            raise HashUnavailableError(f"Cannot read {path}: {e}") from e

        self.cache.put(key, st.st_mtime_ns, digest)
        return digest

    def identical(self, a: Path | str, b: Path | str) -> bool:
        """
        True if both files exist and have the same content.

        Sizes are compared first; hashes are computed only for equal sizes.
        """
        try:
            if os.path.getsize(a) != os.path.getsize(b):
                return False
            return self.hash(a) == self.hash(b)
        except (OSError, HashUnavailableError):
            return False

    def deferred_save(self) -> AbstractContextManager[HashCache]:
        return self.cache.deferred()

    def save(self) -> None:
        self.cache.save()
