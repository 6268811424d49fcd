"""Checkpoint snapshots and their file, SQLite and in-memory stores."""

from workflow_orchestrator.persistence.snapshots import (
    FileSnapshotStore,
    InMemorySnapshotStore,
    SnapshotNotFoundError,
    SnapshotStore,
    SqliteSnapshotStore,
    WorkflowSnapshot,
    open_snapshot_store,
)

__all__ = [
    "FileSnapshotStore",
    "InMemorySnapshotStore",
    "SnapshotNotFoundError",
    "SnapshotStore",
    "SqliteSnapshotStore",
    "WorkflowSnapshot",
    "open_snapshot_store",
]
