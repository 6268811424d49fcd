"""
workflow-orchestrator - workflow snapshots and checkpoint stores

File: src/workflow_orchestrator/persistence/snapshots.py

Purpose
- Serialize a workflow's graph, execution records, safety state and budget ledger
  into one opaque snapshot and rebuild identical runtime state from it.

Functional requirements
- ``SnapshotStore`` is the save/load contract used by the engine for checkpoints.
- ``FileSnapshotStore`` writes one JSON document per workflow with atomic replacement.
- ``SqliteSnapshotStore`` keeps the latest snapshot per workflow in SQLite.
- Loading validates the schema version and every nested record.
"""

from __future__ import annotations

import json
import re
import sqlite3
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Final, Protocol, runtime_checkable

from workflow_orchestrator.constants import SNAPSHOT_SCHEMA_VERSION
from workflow_orchestrator.control_plane.safety import SafetyState
from workflow_orchestrator.domain.models import (
    Budget,
    ExecutionRecord,
    _as_datetime,
    _as_int,
    _as_mapping,
    _as_str,
    _expect_object,
)
from workflow_orchestrator.planning.workflow_builder import WorkflowGraph
from workflow_orchestrator.utils.fs import atomic_write, ensure_directory

DEFAULT_BUSY_TIMEOUT_MS: Final[int] = 5_000
SQLITE_DEFAULT_FILENAME: Final[str] = "snapshots.sqlite3"
_SAFE_ID_RE: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")

_CREATE_TABLE_SQL: Final[str] = """
CREATE TABLE IF NOT EXISTS workflow_snapshots (
    workflow_id TEXT PRIMARY KEY,
    schema_version INTEGER NOT NULL CHECK (schema_version > 0),
    saved_at TEXT NOT NULL,
    payload TEXT NOT NULL
)
"""


class SnapshotNotFoundError(LookupError):
    """No snapshot is stored for the requested workflow."""


@dataclass(frozen=True, slots=True)
class WorkflowSnapshot:
    """Point-in-time copy of everything needed to resume a workflow."""

    workflow_id: str
    graph: WorkflowGraph
    records: Mapping[str, ExecutionRecord]
    safety: SafetyState
    resources: Mapping[str, object]
    next_level: int = 0
    saved_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))
    schema_version: int = SNAPSHOT_SCHEMA_VERSION

    def __post_init__(self) -> None:
        missing = sorted(set(self.graph.nodes) - set(self.records))
        if missing:
            raise ValueError(f"snapshot.records: missing records for {', '.join(missing)}")
        extra = sorted(set(self.records) - set(self.graph.nodes))
        if extra:
            raise ValueError(f"snapshot.records: unknown nodes {', '.join(extra)}")
        if self.next_level < 0:
            raise ValueError("snapshot.next_level: must be >= 0")

    @classmethod
    def capture(
        cls,
        *,
        workflow_id: str,
        graph: WorkflowGraph,
        records: Mapping[str, ExecutionRecord],
        safety: SafetyState,
        resources: Mapping[str, object],
        next_level: int = 0,
    ) -> WorkflowSnapshot:
        """Copy live state so later mutation does not leak into the snapshot."""
        return cls(
            workflow_id=workflow_id,
            graph=graph,
            records={
                node_id: ExecutionRecord.from_dict(record.to_dict())
                for node_id, record in records.items()
            },
            safety=SafetyState.from_dict(safety.to_dict()),
            resources=json.loads(json.dumps(dict(resources))),
            next_level=next_level,
        )

    @property
    def budget(self) -> Budget:
        return Budget.from_dict(_as_mapping(self.resources.get("budget"), "snapshot.budget"))

    def to_dict(self) -> dict[str, object]:
        return {
            "schema_version": self.schema_version,
            "workflow_id": self.workflow_id,
            "saved_at": self.saved_at.isoformat(),
            "next_level": self.next_level,
            "graph": self.graph.to_dict(),
            "records": {
                node_id: self.records[node_id].to_dict() for node_id in sorted(self.records)
            },
            "safety": self.safety.to_dict(),
            "resources": dict(self.resources),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> WorkflowSnapshot:
        parsed = _expect_object(
            data,
            "snapshot",
            required={
                "schema_version",
                "workflow_id",
                "saved_at",
                "graph",
                "records",
                "safety",
                "resources",
            },
            optional={"next_level"},
        )
        version = _as_int(parsed["schema_version"], "snapshot.schema_version", minimum=1)
        if version != SNAPSHOT_SCHEMA_VERSION:
            raise ValueError(
                f"snapshot.schema_version: unsupported version {version}; "
                f"expected {SNAPSHOT_SCHEMA_VERSION}"
            )
        raw_records = _as_mapping(parsed["records"], "snapshot.records")
        records = {
            str(node_id): ExecutionRecord.from_dict(
                _as_mapping(raw, f"snapshot.records.{node_id}"), f"snapshot.records.{node_id}"
            )
            for node_id, raw in raw_records.items()
        }
        for node_id, record in records.items():
            if record.node_id != node_id:
                raise ValueError(f"snapshot.records.{node_id}: node_id mismatch")
        return cls(
            workflow_id=_as_str(parsed["workflow_id"], "snapshot.workflow_id", max_len=128),
            graph=WorkflowGraph.from_dict(_as_mapping(parsed["graph"], "snapshot.graph")),
            records=records,
            safety=SafetyState.from_dict(_as_mapping(parsed["safety"], "snapshot.safety")),
            resources=_as_mapping(parsed["resources"], "snapshot.resources"),
            next_level=_as_int(parsed.get("next_level", 0), "snapshot.next_level", minimum=0),
            saved_at=_as_datetime(parsed["saved_at"], "snapshot.saved_at"),
            schema_version=version,
        )

    @classmethod
    def from_json(cls, raw: str) -> WorkflowSnapshot:
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValueError(f"snapshot: invalid JSON: {exc}") from exc
        if not isinstance(parsed, dict):
            raise ValueError("snapshot: JSON root must be an object")
        return cls.from_dict(parsed)


@runtime_checkable
class SnapshotStore(Protocol):
    def save(self, workflow_id: str, snapshot: WorkflowSnapshot) -> None: ...

    def load(self, workflow_id: str) -> WorkflowSnapshot: ...


class InMemorySnapshotStore:
    """Process-local store; snapshots are kept serialized so callers cannot mutate them."""

    def __init__(self) -> None:
        self._payloads: dict[str, str] = {}
        self._lock = threading.Lock()

    def save(self, workflow_id: str, snapshot: WorkflowSnapshot) -> None:
        payload = snapshot.to_json()
        with self._lock:
            self._payloads[_validate_workflow_id(workflow_id)] = payload

    def load(self, workflow_id: str) -> WorkflowSnapshot:
        with self._lock:
            payload = self._payloads.get(workflow_id)
        if payload is None:
            raise SnapshotNotFoundError(workflow_id)
        return WorkflowSnapshot.from_json(payload)

    def workflow_ids(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(sorted(self._payloads))

    def delete(self, workflow_id: str) -> bool:
        with self._lock:
            return self._payloads.pop(workflow_id, None) is not None


class FileSnapshotStore:
    """One ``<workflow_id>.json`` document per workflow under ``directory``."""

    def __init__(self, directory: str | Path) -> None:
        self._directory = Path(directory)

    @property
    def directory(self) -> Path:
        return self._directory

    def path_for(self, workflow_id: str) -> Path:
        return self._directory / f"{_validate_workflow_id(workflow_id)}.json"

    def save(self, workflow_id: str, snapshot: WorkflowSnapshot) -> None:
        ensure_directory(self._directory)
        atomic_write(self.path_for(workflow_id), snapshot.to_json() + "\n")

    def load(self, workflow_id: str) -> WorkflowSnapshot:
        path = self.path_for(workflow_id)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise SnapshotNotFoundError(workflow_id) from exc
        return WorkflowSnapshot.from_json(raw)

    def workflow_ids(self) -> tuple[str, ...]:
        if not self._directory.is_dir():
            return ()
        return tuple(sorted(path.stem for path in self._directory.glob("*.json")))

    def delete(self, workflow_id: str) -> bool:
        path = self.path_for(workflow_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True


class SqliteSnapshotStore:
    """Latest snapshot per workflow in a SQLite table, upserted in one transaction."""

    def __init__(
        self,
        path: str | Path,
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
    ) -> None:
        if busy_timeout_ms < 0:
            raise ValueError("busy_timeout_ms must be >= 0")
        self._path = Path(path)
        self._busy_timeout_ms = busy_timeout_ms
        with self.connection() as conn:
            conn.execute(_CREATE_TABLE_SQL)

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            self._path,
            timeout=self._busy_timeout_ms / 1000.0,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        try:
            conn.execute(f"PRAGMA busy_timeout={self._busy_timeout_ms}")
            conn.execute("PRAGMA journal_mode=WAL")
            yield conn
        finally:
            conn.close()

    def save(self, workflow_id: str, snapshot: WorkflowSnapshot) -> None:
        key = _validate_workflow_id(workflow_id)
        with self.connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.execute(
                    """
                    INSERT INTO workflow_snapshots (workflow_id, schema_version, saved_at, payload)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(workflow_id) DO UPDATE SET
                        schema_version = excluded.schema_version,
                        saved_at = excluded.saved_at,
                        payload = excluded.payload
                    """,
                    (
                        key,
                        snapshot.schema_version,
                        snapshot.saved_at.isoformat(),
                        snapshot.to_json(),
                    ),
                )
            except Exception:
                conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT")

    def load(self, workflow_id: str) -> WorkflowSnapshot:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT payload FROM workflow_snapshots WHERE workflow_id = ?",
                (workflow_id,),
            ).fetchone()
        if row is None:
            raise SnapshotNotFoundError(workflow_id)
        return WorkflowSnapshot.from_json(str(row["payload"]))

    def workflow_ids(self) -> tuple[str, ...]:
        with self.connection() as conn:
            rows = conn.execute(
                "SELECT workflow_id FROM workflow_snapshots ORDER BY workflow_id"
            ).fetchall()
        return tuple(str(row["workflow_id"]) for row in rows)

    def delete(self, workflow_id: str) -> bool:
        with self.connection() as conn:
            cursor = conn.execute(
                "DELETE FROM workflow_snapshots WHERE workflow_id = ?", (workflow_id,)
            )
        return cursor.rowcount > 0


def open_snapshot_store(backend: str, path: str | Path | None = None) -> SnapshotStore | None:
    """Build the store named by the ``[persistence]`` backend setting."""
    normalized = backend.strip().lower()
    if normalized == "none":
        return None
    if normalized == "memory":
        return InMemorySnapshotStore()
    if path is None:
        raise ValueError(f"persistence backend {backend!r} requires a path")
    if normalized == "file":
        return FileSnapshotStore(path)
    if normalized == "sqlite":
        resolved = Path(path)
        if not resolved.suffix:
            resolved = resolved / SQLITE_DEFAULT_FILENAME
        return SqliteSnapshotStore(resolved)
    raise ValueError(
        f"unknown persistence backend {backend!r}; expected none, memory, file or sqlite"
    )


def _validate_workflow_id(workflow_id: str) -> str:
    if not isinstance(workflow_id, str) or _SAFE_ID_RE.fullmatch(workflow_id) is None:
        raise ValueError(f"invalid workflow id for snapshot storage: {workflow_id!r}")
    return workflow_id


__all__ = [
    "FileSnapshotStore",
    "InMemorySnapshotStore",
    "SnapshotNotFoundError",
    "SQLITE_DEFAULT_FILENAME",
    "SnapshotStore",
    "SqliteSnapshotStore",
    "WorkflowSnapshot",
    "open_snapshot_store",
]
