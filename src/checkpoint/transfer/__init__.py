"""
File and database transfer for Checkpoint.

Usage:
    from checkpoint.transfer import RetryExecutor

    executor = RetryExecutor(max_attempts=3)
    outcome = executor.copy_with_retry(source, destination)
    if not outcome.success:
        print(outcome.error_kind, outcome.message)
"""

from checkpoint.transfer.databases import (
    CommandDumper,
    DatabaseDumper,
    DumpResult,
    SqliteDumper,
    create_dumper,
)
from checkpoint.transfer.retry import (
    RetryExecutor,
    RetryOutcome,
    TransferError,
    classify_message,
    classify_os_error,
    copy_file,
)

__all__ = [
    "RetryExecutor",
    "RetryOutcome",
    "TransferError",
    "classify_message",
    "classify_os_error",
    "copy_file",
    "CommandDumper",
    "DatabaseDumper",
    "DumpResult",
    "SqliteDumper",
    "create_dumper",
]
