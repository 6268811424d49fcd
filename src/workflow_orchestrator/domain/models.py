"""Dataclass domain models with strict validation and JSON-friendly serialization."""

from __future__ import annotations

import json
import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum, StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, NoReturn, TypeVar

import yaml

from workflow_orchestrator.constants import (
    DURATION_MS_PER_COMPLEXITY_POINT,
    MAX_COMPLEXITY,
    MIN_COMPLEXITY,
)
from workflow_orchestrator.domain.ids import validate_node_id

if TYPE_CHECKING:
    from collections.abc import Iterable

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

TEnum = TypeVar("TEnum", bound=Enum)

_MAX_TEXT = 8192
_MAX_JSON_DEPTH = 16


class ComplexityBand(StrEnum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"
    EXTREME = "extreme"


class DecompositionStrategy(StrEnum):
    DIRECT = "direct"
    DOMAIN = "domain"
    PHASE = "phase"
    CAPABILITY = "capability"
    GOAL = "goal"


class NodeStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    BLOCKED = "blocked"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: frozenset[NodeStatus] = frozenset(
    {NodeStatus.SUCCEEDED, NodeStatus.FAILED, NodeStatus.SKIPPED, NodeStatus.BLOCKED}
)

_ALLOWED_TRANSITIONS: dict[NodeStatus, frozenset[NodeStatus]] = {
    NodeStatus.PENDING: frozenset({NodeStatus.RUNNING, NodeStatus.SKIPPED, NodeStatus.BLOCKED}),
    NodeStatus.RUNNING: frozenset(
        {NodeStatus.SUCCEEDED, NodeStatus.FAILED, NodeStatus.SKIPPED, NodeStatus.BLOCKED}
    ),
}


class WorkflowStatus(StrEnum):
    COMPLETED = "completed"
    PARTIALLY_COMPLETED = "partially-completed"
    FAILED = "failed"


class BudgetPolicy(StrEnum):
    """Strategy used to trim or run a workflow against a cost ceiling."""

    ECONOMY = "economy"
    BALANCED = "balanced"
    PREMIUM = "premium"

    @classmethod
    def parse(cls, value: BudgetPolicy | str) -> BudgetPolicy:
        """Parse a policy name; ``performance`` is accepted as an alias of premium."""

        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            _fail("policy", f"expected string, got {type(value).__name__}")
        normalized = value.strip().lower()
        if normalized == "performance":
            return cls.PREMIUM
        return _as_enum(cls, normalized, "policy")


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class RequestConstraints:
    deadline: datetime | None = None
    budget: float | None = None

    def __post_init__(self) -> None:
        if self.deadline is not None:
            object.__setattr__(
                self, "deadline", _as_datetime(self.deadline, "constraints.deadline")
            )
        if self.budget is not None:
            object.__setattr__(
                self, "budget", _as_float(self.budget, "constraints.budget", minimum=0.0)
            )

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "deadline": _iso(self.deadline),
            "budget": self.budget,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object], path: str = "constraints") -> RequestConstraints:
        parsed = _expect_object(data, path, optional={"deadline", "budget"})
        deadline = parsed.get("deadline")
        budget = parsed.get("budget")
        return cls(
            deadline=None if deadline is None else _as_datetime(deadline, f"{path}.deadline"),
            budget=None if budget is None else _as_float(budget, f"{path}.budget", minimum=0.0),
        )


@dataclass(frozen=True, slots=True)
class RequestPreferences:
    parallel: bool | None = None
    thorough: bool | None = None

    def to_dict(self) -> dict[str, JSONValue]:
        return {"parallel": self.parallel, "thorough": self.thorough}

    @classmethod
    def from_dict(cls, data: Mapping[str, object], path: str = "preferences") -> RequestPreferences:
        parsed = _expect_object(data, path, optional={"parallel", "thorough"})
        return cls(
            parallel=_as_optional_bool(parsed.get("parallel"), f"{path}.parallel"),
            thorough=_as_optional_bool(parsed.get("thorough"), f"{path}.thorough"),
        )


@dataclass(frozen=True, slots=True)
class Goal:
    """A stated goal; ``depends_on`` lists goals whose output this goal consumes."""

    id: str
    description: str
    depends_on: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        validate_node_id(self.id)
        object.__setattr__(self, "description", _as_str(self.description, "goal.description"))
        object.__setattr__(
            self, "depends_on", _as_str_tuple(self.depends_on, f"goal[{self.id}].depends_on")
        )
        if self.id in self.depends_on:
            _fail(f"goal[{self.id}].depends_on", "goal cannot depend on itself")

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "id": self.id,
            "description": self.description,
            "depends_on": list(self.depends_on),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object], path: str = "goal") -> Goal:
        parsed = _expect_object(
            data,
            path,
            required={"id", "description"},
            optional={"depends_on", "dependsOn"},
        )
        raw_depends = parsed.get("depends_on", parsed.get("dependsOn", ()))
        return cls(
            id=_as_str(parsed["id"], f"{path}.id"),
            description=_as_str(parsed["description"], f"{path}.description"),
            depends_on=_as_str_tuple(raw_depends, f"{path}.depends_on"),
        )


@dataclass(frozen=True, slots=True)
class Request:
    """Immutable structured work request supplied by the caller."""

    description: str
    requirements: tuple[str, ...] = ()
    constraints: RequestConstraints = field(default_factory=RequestConstraints)
    preferences: RequestPreferences = field(default_factory=RequestPreferences)
    custom_phases: tuple[str, ...] | None = None
    goals: tuple[Goal | str, ...] | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.description, str):
            _fail("request.description", f"expected string, got {type(self.description).__name__}")
        object.__setattr__(self, "description", self.description.strip())
        object.__setattr__(
            self, "requirements", _as_str_tuple(self.requirements, "request.requirements")
        )
        if self.custom_phases is not None:
            phases = _as_str_tuple(self.custom_phases, "request.custom_phases")
            object.__setattr__(self, "custom_phases", phases or None)
        if self.goals is not None:
            goals: list[Goal | str] = []
            for index, goal in enumerate(self.goals):
                if isinstance(goal, Goal):
                    goals.append(goal)
                else:
                    goals.append(_as_str(goal, f"request.goals[{index}]"))
            object.__setattr__(self, "goals", tuple(goals) or None)

    @property
    def is_empty(self) -> bool:
        return not self.description and not self.requirements

    @property
    def text(self) -> str:
        """Description and requirements joined for keyword heuristics."""

        return "\n".join((self.description, *self.requirements))

    def to_dict(self) -> dict[str, JSONValue]:
        goals: list[JSONValue] | None = None
        if self.goals is not None:
            goals = [goal.to_dict() if isinstance(goal, Goal) else goal for goal in self.goals]
        return {
            "description": self.description,
            "requirements": list(self.requirements),
            "constraints": self.constraints.to_dict(),
            "preferences": self.preferences.to_dict(),
            "custom_phases": None if self.custom_phases is None else list(self.custom_phases),
            "goals": goals,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Request:
        parsed = _expect_object(
            data,
            "request",
            required={"description"},
            optional={
                "requirements",
                "constraints",
                "preferences",
                "custom_phases",
                "customPhases",
                "goals",
            },
        )
        raw_constraints = parsed.get("constraints")
        raw_preferences = parsed.get("preferences")
        raw_phases = parsed.get("custom_phases", parsed.get("customPhases"))
        raw_goals = parsed.get("goals")

        goals: tuple[Goal | str, ...] | None = None
        if raw_goals is not None:
            items: list[Goal | str] = []
            for index, raw_goal in enumerate(_as_sequence(raw_goals, "request.goals")):
                if isinstance(raw_goal, Mapping):
                    items.append(Goal.from_dict(raw_goal, f"request.goals[{index}]"))
                else:
                    items.append(_as_str(raw_goal, f"request.goals[{index}]"))
            goals = tuple(items)

        description = parsed["description"]
        if not isinstance(description, str):
            _fail("request.description", f"expected string, got {type(description).__name__}")

        return cls(
            description=description,
            requirements=_as_str_tuple(parsed.get("requirements", ()), "request.requirements"),
            constraints=(
                RequestConstraints()
                if raw_constraints is None
                else RequestConstraints.from_dict(_as_mapping(raw_constraints, "constraints"))
            ),
            preferences=(
                RequestPreferences()
                if raw_preferences is None
                else RequestPreferences.from_dict(_as_mapping(raw_preferences, "preferences"))
            ),
            custom_phases=(
                None
                if raw_phases is None
                else _as_str_tuple(raw_phases, "request.custom_phases")
            ),
            goals=goals,
        )


def load_request(path: str | Path) -> Request:
    """Load a request document from a YAML or JSON file."""

    source = Path(path)
    text = source.read_text(encoding="utf-8")
    if source.suffix.lower() == ".json":
        try:
            payload: object = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ValueError(f"{source}: invalid JSON: {exc}") from exc
    else:
        try:
            payload = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise ValueError(f"{source}: invalid YAML: {exc}") from exc
    if not isinstance(payload, Mapping):
        raise ValueError(f"{source}: request document root must be an object")
    return Request.from_dict(payload)


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ComplexityAnalysis:
    """Derived, read-only complexity assessment of a request."""

    score: int
    band: ComplexityBand
    domain_count: int
    domains: tuple[str, ...]
    required_capabilities: tuple[str, ...]
    suggested_executor_types: tuple[str, ...]
    uncertainty: float
    strategy: DecompositionStrategy
    factors: Mapping[str, float] = field(default_factory=dict)

    def __post_init__(self) -> None:
        _as_int(self.score, "analysis.score", minimum=MIN_COMPLEXITY, maximum=MAX_COMPLEXITY)
        _as_int(self.domain_count, "analysis.domain_count", minimum=0)
        uncertainty = _as_float(self.uncertainty, "analysis.uncertainty", minimum=0.0)
        if uncertainty > 10.0:
            _fail("analysis.uncertainty", "must be <= 10")

    @property
    def needs_escalation(self) -> bool:
        return self.band is ComplexityBand.EXTREME

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "score": self.score,
            "band": self.band.value,
            "domain_count": self.domain_count,
            "domains": list(self.domains),
            "required_capabilities": list(self.required_capabilities),
            "suggested_executor_types": list(self.suggested_executor_types),
            "uncertainty": self.uncertainty,
            "strategy": self.strategy.value,
            "factors": {key: self.factors[key] for key in sorted(self.factors)},
        }


# ---------------------------------------------------------------------------
# Executors and nodes
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class CostProfile:
    """Executor pricing in currency units per 1K input/output tokens."""

    input_rate: float
    output_rate: float

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "input_rate", _as_float(self.input_rate, "cost_profile.input_rate", minimum=0.0)
        )
        object.__setattr__(
            self,
            "output_rate",
            _as_float(self.output_rate, "cost_profile.output_rate", minimum=0.0),
        )

    @property
    def blended_rate(self) -> float:
        """Per-1K rate for the default 30/70 input/output split."""

        return self.input_rate * 0.3 + self.output_rate * 0.7

    def estimate(self, *, input_tokens: int, output_tokens: int) -> float:
        if input_tokens < 0 or output_tokens < 0:
            raise ValueError("token counts must be >= 0")
        return (input_tokens / 1000.0) * self.input_rate + (
            output_tokens / 1000.0
        ) * self.output_rate

    def to_dict(self) -> dict[str, JSONValue]:
        return {"input_rate": self.input_rate, "output_rate": self.output_rate}

    @classmethod
    def from_dict(cls, data: Mapping[str, object], path: str = "cost_profile") -> CostProfile:
        parsed = _expect_object(
            data,
            path,
            optional={"input_rate", "output_rate", "inputRate", "outputRate"},
        )
        return cls(
            input_rate=_as_float(
                parsed.get("input_rate", parsed.get("inputRate", 0.0)),
                f"{path}.input_rate",
                minimum=0.0,
            ),
            output_rate=_as_float(
                parsed.get("output_rate", parsed.get("outputRate", 0.0)),
                f"{path}.output_rate",
                minimum=0.0,
            ),
        )


@dataclass(frozen=True, slots=True)
class ExecutorDescriptor:
    """A kind of worker able to perform task nodes with given capabilities."""

    type: str
    name: str
    capabilities: tuple[str, ...] = ()
    tools: tuple[str, ...] = ()
    cost_profile: CostProfile = field(default_factory=lambda: CostProfile(0.0, 0.0))

    def __post_init__(self) -> None:
        object.__setattr__(self, "type", _as_str(self.type, "executor.type").lower())
        object.__setattr__(self, "name", _as_str(self.name, "executor.name"))
        object.__setattr__(
            self,
            "capabilities",
            tuple(
                item.lower()
                for item in _as_str_tuple(self.capabilities, f"executor[{self.name}].capabilities")
            ),
        )
        object.__setattr__(
            self, "tools", _as_str_tuple(self.tools, f"executor[{self.name}].tools")
        )
        if not isinstance(self.cost_profile, CostProfile):
            _fail(f"executor[{self.name}].cost_profile", "expected CostProfile")

    def covers(self, needs: Iterable[str]) -> bool:
        available = set(self.capabilities)
        return all(need in available for need in needs)

    def matched(self, needs: Iterable[str]) -> tuple[str, ...]:
        available = set(self.capabilities)
        return tuple(need for need in needs if need in available)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "type": self.type,
            "name": self.name,
            "capabilities": list(self.capabilities),
            "tools": list(self.tools),
            "cost_profile": self.cost_profile.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object], path: str = "executor") -> ExecutorDescriptor:
        parsed = _expect_object(
            data,
            path,
            required={"type", "name"},
            optional={"capabilities", "tools", "cost_profile", "costProfile"},
        )
        raw_profile = parsed.get("cost_profile", parsed.get("costProfile"))
        return cls(
            type=_as_str(parsed["type"], f"{path}.type"),
            name=_as_str(parsed["name"], f"{path}.name"),
            capabilities=_as_str_tuple(parsed.get("capabilities", ()), f"{path}.capabilities"),
            tools=_as_str_tuple(parsed.get("tools", ()), f"{path}.tools"),
            cost_profile=(
                CostProfile(0.0, 0.0)
                if raw_profile is None
                else CostProfile.from_dict(
                    _as_mapping(raw_profile, f"{path}.cost_profile"), f"{path}.cost_profile"
                )
            ),
        )


@dataclass(frozen=True, slots=True)
class TaskNode:
    """One unit of work. Identity is ``id``; immutable once the graph is frozen."""

    id: str
    description: str
    complexity: int
    capability_needs: tuple[str, ...] = ()
    critical: bool = False
    optional: bool = False
    executor: ExecutorDescriptor | None = None
    kind: str = "task"
    estimated_duration_ms: int | None = None

    def __post_init__(self) -> None:
        validate_node_id(self.id)
        path = f"node[{self.id}]"
        object.__setattr__(self, "description", _as_str(self.description, f"{path}.description"))
        _as_int(
            self.complexity,
            f"{path}.complexity",
            minimum=MIN_COMPLEXITY,
            maximum=MAX_COMPLEXITY,
        )
        object.__setattr__(
            self,
            "capability_needs",
            tuple(
                item.lower()
                for item in _as_str_tuple(self.capability_needs, f"{path}.capability_needs")
            ),
        )
        _as_bool(self.critical, f"{path}.critical")
        _as_bool(self.optional, f"{path}.optional")
        if self.critical and self.optional:
            _fail(path, "a node cannot be both critical and optional")
        if self.executor is not None and not isinstance(self.executor, ExecutorDescriptor):
            _fail(f"{path}.executor", "expected ExecutorDescriptor")
        if self.estimated_duration_ms is None:
            object.__setattr__(
                self,
                "estimated_duration_ms",
                self.complexity * DURATION_MS_PER_COMPLEXITY_POINT,
            )
        else:
            _as_int(self.estimated_duration_ms, f"{path}.estimated_duration_ms", minimum=0)

    @property
    def duration_ms(self) -> int:
        return self.estimated_duration_ms or 0

    def with_executor(self, executor: ExecutorDescriptor) -> TaskNode:
        return replace(self, executor=executor)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "id": self.id,
            "description": self.description,
            "complexity": self.complexity,
            "capability_needs": list(self.capability_needs),
            "critical": self.critical,
            "optional": self.optional,
            "executor": None if self.executor is None else self.executor.to_dict(),
            "kind": self.kind,
            "estimated_duration_ms": self.duration_ms,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object], path: str = "node") -> TaskNode:
        parsed = _expect_object(
            data,
            path,
            required={"id", "description", "complexity"},
            optional={
                "capability_needs",
                "critical",
                "optional",
                "executor",
                "kind",
                "estimated_duration_ms",
            },
        )
        raw_executor = parsed.get("executor")
        raw_duration = parsed.get("estimated_duration_ms")
        return cls(
            id=_as_str(parsed["id"], f"{path}.id"),
            description=_as_str(parsed["description"], f"{path}.description"),
            complexity=_as_int(parsed["complexity"], f"{path}.complexity"),
            capability_needs=_as_str_tuple(
                parsed.get("capability_needs", ()), f"{path}.capability_needs"
            ),
            critical=_as_bool(parsed.get("critical", False), f"{path}.critical"),
            optional=_as_bool(parsed.get("optional", False), f"{path}.optional"),
            executor=(
                None
                if raw_executor is None
                else ExecutorDescriptor.from_dict(
                    _as_mapping(raw_executor, f"{path}.executor"), f"{path}.executor"
                )
            ),
            kind=_as_str(parsed.get("kind", "task"), f"{path}.kind"),
            estimated_duration_ms=(
                None
                if raw_duration is None
                else _as_int(raw_duration, f"{path}.estimated_duration_ms", minimum=0)
            ),
        )


@dataclass(frozen=True, slots=True, order=True)
class Edge:
    """Directed dependency: ``child`` depends on ``parent``."""

    parent: str
    child: str

    def __post_init__(self) -> None:
        validate_node_id(self.parent)
        validate_node_id(self.child)
        if self.parent == self.child:
            _fail("edge", f"self-loop on {self.parent!r}")

    def to_list(self) -> list[JSONValue]:
        return [self.parent, self.child]


# ---------------------------------------------------------------------------
# Budget and execution state
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Budget:
    """Spend ceiling; ``total=None`` means unbounded."""

    total: float | None
    spent: float = 0.0
    policy: BudgetPolicy = BudgetPolicy.BALANCED

    def __post_init__(self) -> None:
        if self.total is not None:
            object.__setattr__(self, "total", _as_float(self.total, "budget.total", minimum=0.0))
        object.__setattr__(self, "spent", _as_float(self.spent, "budget.spent", minimum=0.0))
        object.__setattr__(self, "policy", BudgetPolicy.parse(self.policy))

    @property
    def bounded(self) -> bool:
        return self.total is not None

    @property
    def remaining(self) -> float | None:
        if self.total is None:
            return None
        return max(0.0, self.total - self.spent)

    @property
    def utilization(self) -> float:
        if self.total is None:
            return 0.0
        if self.total == 0:
            return 1.0 if self.spent > 0 else 0.0
        return self.spent / self.total

    def with_spent(self, spent: float) -> Budget:
        return replace(self, spent=spent)

    def to_dict(self) -> dict[str, JSONValue]:
        return {"total": self.total, "spent": self.spent, "policy": self.policy.value}

    @classmethod
    def from_dict(cls, data: Mapping[str, object], path: str = "budget") -> Budget:
        parsed = _expect_object(data, path, required={"total"}, optional={"spent", "policy"})
        total = parsed["total"]
        return cls(
            total=None if total is None else _as_float(total, f"{path}.total", minimum=0.0),
            spent=_as_float(parsed.get("spent", 0.0), f"{path}.spent", minimum=0.0),
            policy=BudgetPolicy.parse(_as_str(parsed.get("policy", "balanced"), f"{path}.policy")),
        )


@dataclass(frozen=True, slots=True)
class UsageHint:
    """Cost-accounting hint returned by a task executor alongside its output."""

    input_tokens: int = 0
    output_tokens: int = 0
    compute_units: float = 0.0
    api_calls: int = 0
    cost: float | None = None

    def __post_init__(self) -> None:
        _as_int(self.input_tokens, "usage.input_tokens", minimum=0)
        _as_int(self.output_tokens, "usage.output_tokens", minimum=0)
        _as_float(self.compute_units, "usage.compute_units", minimum=0.0)
        _as_int(self.api_calls, "usage.api_calls", minimum=0)
        if self.cost is not None:
            _as_float(self.cost, "usage.cost", minimum=0.0)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "compute_units": self.compute_units,
            "api_calls": self.api_calls,
            "cost": self.cost,
        }


@dataclass(frozen=True, slots=True)
class ExecutorResult:
    output: object = None
    usage: UsageHint = field(default_factory=UsageHint)


@dataclass(slots=True)
class ExecutionRecord:
    """Per-node mutable execution state; only the engine drives transitions."""

    node_id: str
    status: NodeStatus = NodeStatus.PENDING
    attempts: int = 0
    started_at: datetime | None = None
    ended_at: datetime | None = None
    error: dict[str, JSONValue] | None = None
    cost: float = 0.0
    executor_name: str | None = None
    output: JSONValue = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def duration_ms(self) -> float | None:
        if self.started_at is None or self.ended_at is None:
            return None
        return (self.ended_at - self.started_at).total_seconds() * 1000.0

    def transition(self, status: NodeStatus, *, at: datetime | None = None) -> None:
        """Move to ``status``; terminal records never change again."""

        if status is self.status and status is NodeStatus.RUNNING:
            return
        allowed = _ALLOWED_TRANSITIONS.get(self.status, frozenset())
        if status not in allowed:
            raise ValueError(
                f"record[{self.node_id}]: illegal transition {self.status.value} -> {status.value}"
            )
        now = at if at is not None else datetime.now(tz=UTC)
        if status is NodeStatus.RUNNING and self.started_at is None:
            self.started_at = now
        if status in TERMINAL_STATUSES:
            self.ended_at = now
        self.status = status

    def reset_for_resume(self) -> None:
        """Drop in-flight state so an interrupted node runs again after resume."""

        if self.status is NodeStatus.RUNNING:
            self.status = NodeStatus.PENDING
            self.started_at = None
            self.ended_at = None

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "node_id": self.node_id,
            "status": self.status.value,
            "attempts": self.attempts,
            "started_at": _iso(self.started_at),
            "ended_at": _iso(self.ended_at),
            "error": self.error,
            "cost": self.cost,
            "executor_name": self.executor_name,
            "output": self.output,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object], path: str = "record") -> ExecutionRecord:
        parsed = _expect_object(
            data,
            path,
            required={"node_id", "status"},
            optional={
                "attempts",
                "started_at",
                "ended_at",
                "error",
                "cost",
                "executor_name",
                "output",
            },
        )
        started = parsed.get("started_at")
        ended = parsed.get("ended_at")
        raw_error = parsed.get("error")
        return cls(
            node_id=_as_str(parsed["node_id"], f"{path}.node_id"),
            status=_as_enum(NodeStatus, parsed["status"], f"{path}.status"),
            attempts=_as_int(parsed.get("attempts", 0), f"{path}.attempts", minimum=0),
            started_at=None if started is None else _as_datetime(started, f"{path}.started_at"),
            ended_at=None if ended is None else _as_datetime(ended, f"{path}.ended_at"),
            error=None if raw_error is None else _as_json_object(raw_error, f"{path}.error"),
            cost=_as_float(parsed.get("cost", 0.0), f"{path}.cost", minimum=0.0),
            executor_name=_as_optional_str(parsed.get("executor_name"), f"{path}.executor_name"),
            output=_as_json_value(parsed.get("output"), f"{path}.output"),
        )


@dataclass(frozen=True, slots=True)
class EscalationPayload:
    """Structured hand-off of a failure to an external operator."""

    escalation_id: str
    workflow_id: str | None
    node_id: str
    error_class: str
    message: str
    attempts: int
    critical: bool
    executor: str | None
    suggested_actions: tuple[str, ...]
    created_at: datetime

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "escalation_id": self.escalation_id,
            "workflow_id": self.workflow_id,
            "node_id": self.node_id,
            "error_class": self.error_class,
            "message": self.message,
            "attempts": self.attempts,
            "critical": self.critical,
            "executor": self.executor,
            "suggested_actions": list(self.suggested_actions),
            "created_at": _iso(self.created_at),
        }


@dataclass(frozen=True, slots=True)
class WorkflowResult:
    """Aggregated outcome with a full per-node report."""

    workflow_id: str
    status: WorkflowStatus
    records: Mapping[str, ExecutionRecord]
    total_cost: float
    total_duration_ms: float
    escalations: tuple[EscalationPayload, ...] = ()
    cancelled: bool = False

    def nodes_with_status(self, status: NodeStatus) -> tuple[str, ...]:
        return tuple(
            sorted(node_id for node_id, record in self.records.items() if record.status is status)
        )

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "workflow_id": self.workflow_id,
            "status": self.status.value,
            "records": {
                node_id: self.records[node_id].to_dict() for node_id in sorted(self.records)
            },
            "total_cost": self.total_cost,
            "total_duration_ms": self.total_duration_ms,
            "escalations": [item.to_dict() for item in self.escalations],
            "cancelled": self.cancelled,
        }


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _expect_object(
    value: object,
    path: str,
    *,
    required: set[str] | None = None,
    optional: set[str] | None = None,
) -> dict[str, object]:
    parsed = _as_mapping(value, path)
    required_keys = required or set()
    allowed = required_keys | (optional or set())
    for key in sorted(parsed):
        if key not in allowed:
            _fail(f"{path}.{key}", "unknown field")
    for key in sorted(required_keys):
        if key not in parsed:
            _fail(f"{path}.{key}", "missing required field")
    return parsed


def _as_mapping(value: object, path: str) -> dict[str, object]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            _fail(path, f"object keys must be strings, got {type(key).__name__}")
        out[key] = item
    return out


def _as_str(value: object, path: str, *, max_len: int = _MAX_TEXT) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    normalized = value.strip()
    if not normalized:
        _fail(path, "must not be empty")
    if len(normalized) > max_len:
        _fail(path, f"must be at most {max_len} characters")
    return normalized


def _as_optional_str(value: object, path: str) -> str | None:
    if value is None:
        return None
    return _as_str(value, path)


def _as_bool(value: object, path: str) -> bool:
    if isinstance(value, bool):
        return value
    _fail(path, f"expected boolean, got {type(value).__name__}")


def _as_optional_bool(value: object, path: str) -> bool | None:
    if value is None:
        return None
    return _as_bool(value, path)


def _as_int(
    value: object,
    path: str,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {type(value).__name__}")
    if minimum is not None and value < minimum:
        _fail(path, f"must be >= {minimum}")
    if maximum is not None and value > maximum:
        _fail(path, f"must be <= {maximum}")
    return value


def _as_float(value: object, path: str, *, minimum: float | None = None) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        _fail(path, f"expected number, got {type(value).__name__}")
    parsed = float(value)
    if not math.isfinite(parsed):
        _fail(path, "must be finite")
    if minimum is not None and parsed < minimum:
        _fail(path, f"must be >= {minimum}")
    return parsed


def _as_datetime(value: object, path: str) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            _fail(path, f"invalid ISO-8601 datetime: {value!r} ({exc})")
    else:
        _fail(path, f"expected datetime or ISO-8601 string, got {type(value).__name__}")
    if parsed.tzinfo is None or parsed.utcoffset() is None:
        _fail(path, "datetime must be timezone-aware")
    return parsed.astimezone(UTC)


def _as_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum:
    if isinstance(value, enum_type):
        return value
    if not isinstance(value, str):
        _fail(path, f"expected string enum value, got {type(value).__name__}")
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(sorted(str(item.value) for item in enum_type))
        _fail(path, f"invalid value {value!r}; expected one of: {allowed}")


def _as_sequence(value: object, path: str) -> list[object]:
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return list(value)
    _fail(path, f"expected array, got {type(value).__name__}")


def _as_str_tuple(value: object, path: str) -> tuple[str, ...]:
    items: list[str] = []
    seen: set[str] = set()
    for index, item in enumerate(_as_sequence(value, path)):
        parsed = _as_str(item, f"{path}[{index}]")
        if parsed in seen:
            continue
        seen.add(parsed)
        items.append(parsed)
    return tuple(items)


def _as_json_object(value: object, path: str) -> dict[str, JSONValue]:
    parsed = _as_json_value(value, path)
    if not isinstance(parsed, dict):
        _fail(path, "expected object")
    return parsed


def _as_json_value(value: object, path: str, *, depth: int = 0) -> JSONValue:
    if depth > _MAX_JSON_DEPTH:
        _fail(path, "JSON nesting too deep")
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "float value must be finite")
        return value
    if isinstance(value, (list, tuple)):
        return [
            _as_json_value(item, f"{path}[{index}]", depth=depth + 1)
            for index, item in enumerate(value)
        ]
    if isinstance(value, Mapping):
        out: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                _fail(path, "object keys must be strings")
            out[key] = _as_json_value(item, f"{path}.{key}", depth=depth + 1)
        return out
    _fail(path, f"value is not JSON-serializable ({type(value).__name__})")


def to_json_value(value: object, path: str = "value") -> JSONValue:
    """Coerce executor output into a JSON value, falling back to ``repr`` for objects."""

    try:
        return _as_json_value(value, path)
    except ValueError:
        return repr(value)


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


__all__ = [
    "TERMINAL_STATUSES",
    "Budget",
    "BudgetPolicy",
    "ComplexityAnalysis",
    "ComplexityBand",
    "CostProfile",
    "DecompositionStrategy",
    "Edge",
    "EscalationPayload",
    "ExecutionRecord",
    "ExecutorDescriptor",
    "ExecutorResult",
    "Goal",
    "JSONValue",
    "NodeStatus",
    "Request",
    "RequestConstraints",
    "RequestPreferences",
    "TaskNode",
    "UsageHint",
    "WorkflowResult",
    "WorkflowStatus",
    "load_request",
    "to_json_value",
]
