"""
Verification for Checkpoint.

Usage:
    from checkpoint.verify import Verifier, generate_manifest

    generate_manifest(snapshot_dir, "myproject")

    verifier = Verifier("myproject")
    report = verifier.verify_full(snapshot_dir)
    print(format_human(report))
    sys.exit(report.exit_code)
"""

from checkpoint.verify.manifest import (
    MANIFEST_VERSION,
    DatabaseEntry,
    FileEntry,
    Manifest,
    ManifestError,
    generate_manifest,
    load_manifest,
    write_manifest,
)
from checkpoint.verify.remote import (
    HttpRemote,
    RcloneRemote,
    RemoteStore,
    RemoteUnavailableError,
    create_remote,
)
from checkpoint.verify.verifier import (
    CheckResult,
    CheckStatus,
    VerificationReport,
    Verifier,
    VerifyMode,
    format_compact,
    format_human,
    format_json,
)

__all__ = [
    # Manifest
    "MANIFEST_VERSION",
    "DatabaseEntry",
    "FileEntry",
    "Manifest",
    "ManifestError",
    "generate_manifest",
    "load_manifest",
    "write_manifest",
    # Remote
    "HttpRemote",
    "RcloneRemote",
    "RemoteStore",
    "RemoteUnavailableError",
    "create_remote",
    # Verifier
    "CheckResult",
    "CheckStatus",
    "VerificationReport",
    "Verifier",
    "VerifyMode",
    "format_compact",
    "format_human",
    "format_json",
]
