"""
Change detection for Checkpoint.

Usage:
    from checkpoint.changes import ChangeDetector, HashCache

    detector = ChangeDetector(HashCache(backup_dir / ".hash-cache.json"))
    digest = detector.hash(path)
    same = detector.identical(path, previous_copy)
"""

from checkpoint.changes.detector import (
    CACHE_FILE_NAME,
    CacheStats,
    ChangeDetector,
    HashCache,
    HashUnavailableError,
)
from checkpoint.changes.scanner import is_excluded, iter_project_files

__all__ = [
    "CACHE_FILE_NAME",
    "CacheStats",
    "ChangeDetector",
    "HashCache",
    "HashUnavailableError",
    "is_excluded",
    "iter_project_files",
]
