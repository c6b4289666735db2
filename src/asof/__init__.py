from .core import (
    AsOfError,
    AsOfExtension,
    InstallationTracker,
    InSubtransaction,
    InternalError,
    InvalidArgument,
    MalformedSnapshot,
    NoActiveTransaction,
    PendingInstallation,
    SnapshotAlreadyFixed,
    SnapshotDescriptor,
    UnsupportedQuery,
    WrongIsolationLevel,
    build_synthetic_snapshot,
    check_installable,
    ensure_installable,
    exec_as_of,
    parse_snapshot,
)
from .engine import Database, EngineConfig, IsolationLevel, Session, SnapshotData
from .history import CommitHistory, CommitRecord, SQLiteCommitStore, snapshot_after_commit

__all__ = [
    "AsOfError",
    "AsOfExtension",
    "CommitHistory",
    "CommitRecord",
    "Database",
    "EngineConfig",
    "InSubtransaction",
    "InstallationTracker",
    "InternalError",
    "InvalidArgument",
    "IsolationLevel",
    "MalformedSnapshot",
    "NoActiveTransaction",
    "PendingInstallation",
    "SQLiteCommitStore",
    "Session",
    "SnapshotAlreadyFixed",
    "SnapshotData",
    "SnapshotDescriptor",
    "UnsupportedQuery",
    "WrongIsolationLevel",
    "build_synthetic_snapshot",
    "check_installable",
    "ensure_installable",
    "exec_as_of",
    "parse_snapshot",
    "snapshot_after_commit",
]
