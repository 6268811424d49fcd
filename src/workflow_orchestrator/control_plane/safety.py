"""
workflow-orchestrator - agent spawning safety envelope

File: src/workflow_orchestrator/control_plane/safety.py

Purpose
- Bound agent creation by hierarchy depth, per-parent and total count, and a
  sliding-window creation rate.

Functional requirements
- Check-and-register is one critical section; a rejected spawn leaves no trace.
- Agents live in a flat arena keyed by id with parent links; release cascades
  to descendants.
- State is an explicit object owned by one workflow run and is serializable.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Final

import structlog

from workflow_orchestrator.domain.errors import SafetyLimitExceeded, SafetyLimitKind
from workflow_orchestrator.domain.ids import generate_agent_id

ROOT_PARENT_KEY: Final[str] = "<root>"

Clock = Callable[[], int]


def _wall_clock_ms() -> int:
    return time.time_ns() // 1_000_000


@dataclass(frozen=True, slots=True)
class SafetyLimits:
    max_depth: int = 3
    max_agents_per_parent: int = 10
    max_total_agents: int = 50
    rate_window_ms: int = 60_000
    max_creations_per_window: int = 10
    timestamp_retention_ms: int = 300_000

    def __post_init__(self) -> None:
        _validate_positive_int(self.max_depth, "max_depth")
        _validate_positive_int(self.max_agents_per_parent, "max_agents_per_parent")
        _validate_positive_int(self.max_total_agents, "max_total_agents")
        _validate_positive_int(self.rate_window_ms, "rate_window_ms")
        _validate_positive_int(self.max_creations_per_window, "max_creations_per_window")
        _validate_positive_int(self.timestamp_retention_ms, "timestamp_retention_ms")
        if self.timestamp_retention_ms < self.rate_window_ms:
            raise ValueError("timestamp_retention_ms cannot be shorter than rate_window_ms")


@dataclass(frozen=True, slots=True)
class AgentRecord:
    agent_id: str
    parent_id: str | None
    depth: int
    created_at_ms: int

    def to_dict(self) -> dict[str, object]:
        return {
            "agent_id": self.agent_id,
            "parent_id": self.parent_id,
            "depth": self.depth,
            "created_at_ms": self.created_at_ms,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> AgentRecord:
        agent_id = data.get("agent_id")
        parent_id = data.get("parent_id")
        depth = data.get("depth")
        created = data.get("created_at_ms")
        if not isinstance(agent_id, str) or not agent_id:
            raise ValueError("agent.agent_id: expected non-empty string")
        if parent_id is not None and not isinstance(parent_id, str):
            raise ValueError("agent.parent_id: expected string or null")
        if isinstance(depth, bool) or not isinstance(depth, int) or depth < 0:
            raise ValueError("agent.depth: expected integer >= 0")
        if isinstance(created, bool) or not isinstance(created, int):
            raise ValueError("agent.created_at_ms: expected integer")
        return cls(agent_id=agent_id, parent_id=parent_id, depth=depth, created_at_ms=created)


@dataclass(slots=True)
class SafetyState:
    """Arena of live agents plus the counters the limits are checked against."""

    depth: dict[str, int] = field(default_factory=dict)
    count_by_parent: dict[str, int] = field(default_factory=dict)
    creation_timestamps: dict[str, list[int]] = field(default_factory=dict)
    agents: dict[str, AgentRecord] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        return {
            "depth": dict(sorted(self.depth.items())),
            "count_by_parent": dict(sorted(self.count_by_parent.items())),
            "creation_timestamps": {
                key: list(values) for key, values in sorted(self.creation_timestamps.items())
            },
            "agents": {key: self.agents[key].to_dict() for key in sorted(self.agents)},
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> SafetyState:
        depth = _int_mapping(data.get("depth", {}), "safety.depth")
        counts = _int_mapping(data.get("count_by_parent", {}), "safety.count_by_parent")
        raw_stamps = data.get("creation_timestamps", {})
        if not isinstance(raw_stamps, Mapping):
            raise ValueError("safety.creation_timestamps: expected object")
        stamps: dict[str, list[int]] = {}
        for key, values in raw_stamps.items():
            if not isinstance(values, list) or not all(
                isinstance(item, int) and not isinstance(item, bool) for item in values
            ):
                raise ValueError(f"safety.creation_timestamps.{key}: expected integer array")
            stamps[str(key)] = list(values)
        raw_agents = data.get("agents", {})
        if not isinstance(raw_agents, Mapping):
            raise ValueError("safety.agents: expected object")
        agents: dict[str, AgentRecord] = {}
        for key, value in raw_agents.items():
            if not isinstance(value, Mapping):
                raise ValueError(f"safety.agents.{key}: expected object")
            agents[str(key)] = AgentRecord.from_dict(value)
        return cls(depth=depth, count_by_parent=counts, creation_timestamps=stamps, agents=agents)


@dataclass(frozen=True, slots=True)
class SafetyMetrics:
    active_agents: int
    deepest_level: int
    registrations: int
    rejections: Mapping[str, int]
    agents_by_parent: Mapping[str, int]

    def to_dict(self) -> dict[str, object]:
        return {
            "active_agents": self.active_agents,
            "deepest_level": self.deepest_level,
            "registrations": self.registrations,
            "rejections": dict(self.rejections),
            "agents_by_parent": dict(self.agents_by_parent),
        }


class SafetyManager:
    """Depth, count and rate gate for agent spawning."""

    __slots__ = ("_limits", "_state", "_lock", "_clock", "_logger", "_registrations", "_rejections")

    def __init__(
        self,
        limits: SafetyLimits | None = None,
        *,
        state: SafetyState | None = None,
        clock: Clock | None = None,
        logger: Any | None = None,
    ) -> None:
        self._limits = limits if limits is not None else SafetyLimits()
        self._state = state if state is not None else SafetyState()
        self._lock = threading.RLock()
        self._clock = clock if clock is not None else _wall_clock_ms
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._registrations = 0
        self._rejections: dict[str, int] = {kind.value: 0 for kind in SafetyLimitKind}

    @property
    def limits(self) -> SafetyLimits:
        return self._limits

    @property
    def state(self) -> SafetyState:
        return self._state

    @property
    def active_agents(self) -> int:
        with self._lock:
            return len(self._state.agents)

    def check_depth(self, parent_id: str | None) -> int:
        """Return the depth a child of ``parent_id`` would get, or raise."""
        with self._lock:
            if parent_id is None:
                return 0
            child_depth = self._state.depth.get(parent_id, 0) + 1
            if child_depth > self._limits.max_depth:
                raise SafetyLimitExceeded(
                    SafetyLimitKind.DEPTH,
                    parent_id=parent_id,
                    limit=self._limits.max_depth,
                    observed=child_depth,
                )
            return child_depth

    def check_count(self, parent_id: str | None) -> None:
        with self._lock:
            key = _parent_key(parent_id)
            siblings = self._state.count_by_parent.get(key, 0)
            if siblings >= self._limits.max_agents_per_parent:
                raise SafetyLimitExceeded(
                    SafetyLimitKind.COUNT,
                    parent_id=parent_id,
                    limit=self._limits.max_agents_per_parent,
                    observed=siblings,
                )
            total = len(self._state.agents)
            if total >= self._limits.max_total_agents:
                raise SafetyLimitExceeded(
                    SafetyLimitKind.COUNT,
                    parent_id=parent_id,
                    limit=self._limits.max_total_agents,
                    observed=total,
                )

    def check_rate(self, parent_id: str | None) -> None:
        with self._lock:
            key = _parent_key(parent_id)
            now = self._clock()
            window_start = now - self._limits.rate_window_ms
            stamps = self._state.creation_timestamps.get(key, [])
            recent = [stamp for stamp in stamps if stamp > window_start]
            if recent:
                self._state.creation_timestamps[key] = recent
            else:
                self._state.creation_timestamps.pop(key, None)
            if len(recent) >= self._limits.max_creations_per_window:
                raise SafetyLimitExceeded(
                    SafetyLimitKind.RATE,
                    parent_id=parent_id,
                    limit=self._limits.max_creations_per_window,
                    observed=len(recent),
                )

    def can_spawn(self, parent_id: str | None) -> bool:
        with self._lock:
            try:
                self.check_depth(parent_id)
                self.check_count(parent_id)
                self.check_rate(parent_id)
            except SafetyLimitExceeded:
                return False
            return True

    def register(
        self,
        parent_id: str | None,
        child_id: str | None = None,
        *,
        workflow_id: str | None = None,
        node_id: str | None = None,
    ) -> AgentRecord:
        """Atomically check all limits and record a new agent under ``parent_id``."""
        with self._lock:
            self.prune_timestamps()
            try:
                depth = self.check_depth(parent_id)
                self.check_count(parent_id)
                self.check_rate(parent_id)
            except SafetyLimitExceeded as exc:
                self._rejections[exc.kind.value] += 1
                self._logger.warning(
                    "safety_registration_rejected",
                    kind=exc.kind.value,
                    parent_id=parent_id,
                    limit=exc.limit,
                    observed=exc.observed,
                    workflow_id=workflow_id,
                    node_id=node_id,
                )
                exc.with_context(workflow_id=workflow_id, node_id=node_id)
                raise

            agent_id = child_id if child_id is not None else generate_agent_id()
            if agent_id in self._state.agents:
                raise ValueError(f"agent already registered: {agent_id}")

            now = self._clock()
            key = _parent_key(parent_id)
            record = AgentRecord(
                agent_id=agent_id, parent_id=parent_id, depth=depth, created_at_ms=now
            )
            self._state.agents[agent_id] = record
            self._state.depth[agent_id] = depth
            self._state.count_by_parent[key] = self._state.count_by_parent.get(key, 0) + 1
            self._state.creation_timestamps.setdefault(key, []).append(now)
            self._registrations += 1

        self._logger.debug(
            "safety_agent_registered",
            agent_id=agent_id,
            parent_id=parent_id,
            depth=depth,
            workflow_id=workflow_id,
            node_id=node_id,
        )
        return record

    def release(self, agent_id: str, *, cascade: bool = True) -> tuple[str, ...]:
        """Release ``agent_id`` (and descendants when ``cascade``); unknown ids are a no-op."""
        with self._lock:
            if agent_id not in self._state.agents:
                return ()
            targets = [agent_id]
            if cascade:
                targets.extend(self._descendants(agent_id))
            released: list[str] = []
            for target in reversed(targets):
                record = self._state.agents.pop(target, None)
                if record is None:
                    continue
                self._state.depth.pop(target, None)
                key = _parent_key(record.parent_id)
                remaining = self._state.count_by_parent.get(key, 0) - 1
                if remaining > 0:
                    self._state.count_by_parent[key] = remaining
                else:
                    self._state.count_by_parent.pop(key, None)
                released.append(target)
            return tuple(sorted(released))

    def hierarchy(self, agent_id: str) -> tuple[str, ...]:
        """Ancestor chain from the root down to ``agent_id``."""
        with self._lock:
            if agent_id not in self._state.agents:
                raise KeyError(f"unknown agent: {agent_id}")
            chain: list[str] = []
            cursor: str | None = agent_id
            while cursor is not None and cursor in self._state.agents:
                chain.append(cursor)
                cursor = self._state.agents[cursor].parent_id
            chain.reverse()
            return tuple(chain)

    def children(self, agent_id: str) -> tuple[str, ...]:
        with self._lock:
            return tuple(
                sorted(
                    record.agent_id
                    for record in self._state.agents.values()
                    if record.parent_id == agent_id
                )
            )

    def prune_timestamps(self) -> int:
        """Drop creation timestamps older than the retention horizon; return how many."""
        with self._lock:
            horizon = self._clock() - self._limits.timestamp_retention_ms
            dropped = 0
            for key in list(self._state.creation_timestamps):
                stamps = self._state.creation_timestamps[key]
                kept = [stamp for stamp in stamps if stamp > horizon]
                dropped += len(stamps) - len(kept)
                if kept:
                    self._state.creation_timestamps[key] = kept
                else:
                    del self._state.creation_timestamps[key]
            return dropped

    def metrics(self) -> SafetyMetrics:
        with self._lock:
            return SafetyMetrics(
                active_agents=len(self._state.agents),
                deepest_level=max(self._state.depth.values(), default=0),
                registrations=self._registrations,
                rejections=dict(self._rejections),
                agents_by_parent=dict(sorted(self._state.count_by_parent.items())),
            )

    def clear(self) -> None:
        with self._lock:
            self._state.depth.clear()
            self._state.count_by_parent.clear()
            self._state.creation_timestamps.clear()
            self._state.agents.clear()

    def snapshot(self) -> dict[str, object]:
        with self._lock:
            return self._state.to_dict()

    def restore(self, payload: Mapping[str, object]) -> None:
        restored = SafetyState.from_dict(payload)
        with self._lock:
            self._state = restored

    def _descendants(self, agent_id: str) -> list[str]:
        children_by_parent: dict[str, list[str]] = {}
        for record in self._state.agents.values():
            if record.parent_id is not None:
                children_by_parent.setdefault(record.parent_id, []).append(record.agent_id)
        ordered: list[str] = []
        pending = sorted(children_by_parent.get(agent_id, ()))
        while pending:
            current = pending.pop(0)
            ordered.append(current)
            pending.extend(sorted(children_by_parent.get(current, ())))
        return ordered


def _parent_key(parent_id: str | None) -> str:
    return ROOT_PARENT_KEY if parent_id is None else parent_id


def _validate_positive_int(value: object, field_name: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{field_name} must be an integer")
    if value <= 0:
        raise ValueError(f"{field_name} must be > 0")


def _int_mapping(value: object, path: str) -> dict[str, int]:
    if not isinstance(value, Mapping):
        raise ValueError(f"{path}: expected object")
    out: dict[str, int] = {}
    for key, item in value.items():
        if isinstance(item, bool) or not isinstance(item, int):
            raise ValueError(f"{path}.{key}: expected integer")
        out[str(key)] = item
    return out


__all__ = [
    "ROOT_PARENT_KEY",
    "AgentRecord",
    "SafetyLimits",
    "SafetyManager",
    "SafetyMetrics",
    "SafetyState",
]
