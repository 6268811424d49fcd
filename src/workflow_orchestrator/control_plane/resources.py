"""
Cost model, spend ledger and budget alerts.

This module owns the single mutable budget of a workflow run:
- static cost estimation (``tokens = complexity * 1000``, split 30/70 input/output)
- actual cost derivation from executor usage hints
- serialized ledger writes with bounded history
- one-shot budget alerts at the warning, critical and exceeded thresholds

Alerts are delivered to an optional hook and logged through ``structlog``.
"""

from __future__ import annotations

import threading
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import structlog

from workflow_orchestrator.constants import (
    API_CALL_COST,
    COMPUTE_UNIT_COST,
    INPUT_TOKEN_SHARE,
    LEDGER_HISTORY_LIMIT,
    TOKENS_PER_COMPLEXITY_POINT,
)
from workflow_orchestrator.domain.models import Budget, CostProfile

if TYPE_CHECKING:
    from workflow_orchestrator.domain.models import ExecutorDescriptor, TaskNode, UsageHint
    from workflow_orchestrator.planning.workflow_builder import WorkflowGraph

DEFAULT_COST_PROFILE = CostProfile(input_rate=0.003, output_rate=0.008)


class AlertLevel(StrEnum):
    WARNING = "warning"
    CRITICAL = "critical"
    EXCEEDED = "exceeded"


@dataclass(frozen=True, slots=True)
class BudgetAlert:
    level: AlertLevel
    utilization: float
    spent: float
    total: float
    node_id: str | None

    def to_dict(self) -> dict[str, object]:
        return {
            "level": self.level.value,
            "utilization": self.utilization,
            "spent": self.spent,
            "total": self.total,
            "node_id": self.node_id,
        }


AlertHook = Callable[[BudgetAlert], None]


@dataclass(frozen=True, slots=True)
class NodeCostEstimate:
    node_id: str
    executor_name: str | None
    input_tokens: int
    output_tokens: int
    cost: float

    def to_dict(self) -> dict[str, object]:
        return {
            "node_id": self.node_id,
            "executor_name": self.executor_name,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cost": self.cost,
        }


@dataclass(frozen=True, slots=True)
class CostEstimate:
    """Static estimate for a whole graph."""

    total: float
    per_node: Mapping[str, NodeCostEstimate] = field(default_factory=dict)

    def cost_of(self, node_id: str) -> float:
        return self.per_node[node_id].cost

    def to_dict(self) -> dict[str, object]:
        return {
            "total": self.total,
            "per_node": {key: self.per_node[key].to_dict() for key in sorted(self.per_node)},
        }


@dataclass(frozen=True, slots=True)
class LedgerEntry:
    sequence: int
    node_id: str
    cost: float
    cumulative: float
    recorded_at: datetime

    def to_dict(self) -> dict[str, object]:
        return {
            "sequence": self.sequence,
            "node_id": self.node_id,
            "cost": self.cost,
            "cumulative": self.cumulative,
            "recorded_at": self.recorded_at.isoformat().replace("+00:00", "Z"),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> LedgerEntry:
        sequence = data.get("sequence")
        node_id = data.get("node_id")
        cost = data.get("cost")
        cumulative = data.get("cumulative")
        recorded_at = data.get("recorded_at")
        if isinstance(sequence, bool) or not isinstance(sequence, int):
            raise ValueError("ledger.sequence: expected integer")
        if not isinstance(node_id, str):
            raise ValueError("ledger.node_id: expected string")
        if not isinstance(cost, (int, float)) or not isinstance(cumulative, (int, float)):
            raise ValueError("ledger.cost/cumulative: expected numbers")
        if not isinstance(recorded_at, str):
            raise ValueError("ledger.recorded_at: expected ISO-8601 string")
        text = recorded_at[:-1] + "+00:00" if recorded_at.endswith("Z") else recorded_at
        return cls(
            sequence=sequence,
            node_id=node_id,
            cost=float(cost),
            cumulative=float(cumulative),
            recorded_at=datetime.fromisoformat(text).astimezone(UTC),
        )


@dataclass(frozen=True, slots=True)
class UsageReport:
    total: float | None
    spent: float
    remaining: float | None
    utilization: float
    entries: int
    cost_by_node: Mapping[str, float]
    alerts: tuple[str, ...]

    def to_dict(self) -> dict[str, object]:
        return {
            "total": self.total,
            "spent": self.spent,
            "remaining": self.remaining,
            "utilization": self.utilization,
            "entries": self.entries,
            "cost_by_node": dict(self.cost_by_node),
            "alerts": list(self.alerts),
        }


class ResourceManager:
    """Single-writer owner of a workflow's budget and spend ledger."""

    def __init__(
        self,
        budget: Budget | None = None,
        *,
        default_profile: CostProfile | None = None,
        warning_ratio: float = 0.8,
        critical_ratio: float = 0.95,
        history_limit: int = LEDGER_HISTORY_LIMIT,
        alert_hook: AlertHook | None = None,
        logger: Any | None = None,
    ) -> None:
        if not 0 < warning_ratio < critical_ratio <= 1:
            raise ValueError("alert ratios must satisfy 0 < warning < critical <= 1")
        if history_limit <= 0:
            raise ValueError("history_limit must be > 0")
        self._budget = budget if budget is not None else Budget(total=None)
        self._default_profile = (
            default_profile if default_profile is not None else DEFAULT_COST_PROFILE
        )
        self._warning_ratio = warning_ratio
        self._critical_ratio = critical_ratio
        self._history_limit = history_limit
        self._ledger: deque[LedgerEntry] = deque(maxlen=history_limit)
        self._cost_by_node: dict[str, float] = {}
        self._sequence = 0
        self._alerts_fired: set[AlertLevel] = set()
        self._alert_hook = alert_hook
        self._lock = threading.Lock()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def budget(self) -> Budget:
        with self._lock:
            return self._budget

    @property
    def spent(self) -> float:
        with self._lock:
            return self._budget.spent

    @property
    def ledger(self) -> tuple[LedgerEntry, ...]:
        with self._lock:
            return tuple(self._ledger)

    @property
    def alert_hook(self) -> AlertHook | None:
        return self._alert_hook

    def set_alert_hook(self, hook: AlertHook | None) -> AlertHook | None:
        """Install ``hook`` and return the one it replaces."""
        previous = self._alert_hook
        self._alert_hook = hook
        return previous

    def estimate_node(self, node: TaskNode) -> NodeCostEstimate:
        tokens = node.complexity * TOKENS_PER_COMPLEXITY_POINT
        input_tokens = round(tokens * INPUT_TOKEN_SHARE)
        output_tokens = tokens - input_tokens
        profile = node.executor.cost_profile if node.executor is not None else self._default_profile
        return NodeCostEstimate(
            node_id=node.id,
            executor_name=None if node.executor is None else node.executor.name,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost=_round_cost(
                profile.estimate(input_tokens=input_tokens, output_tokens=output_tokens)
            ),
        )

    def estimate(self, graph: WorkflowGraph) -> CostEstimate:
        per_node = {node_id: self.estimate_node(node) for node_id, node in graph.nodes.items()}
        return CostEstimate(
            total=_round_cost(sum(item.cost for item in per_node.values())),
            per_node=per_node,
        )

    def cost_for_usage(self, executor: ExecutorDescriptor | None, usage: UsageHint) -> float:
        """
        Actual cost of one executor call.

        An explicit ``usage.cost`` wins; otherwise tokens are priced with the
        executor's profile and compute units / API calls at flat rates.
        """
        if usage.cost is not None:
            return _round_cost(usage.cost)
        profile = executor.cost_profile if executor is not None else self._default_profile
        cost = profile.estimate(input_tokens=usage.input_tokens, output_tokens=usage.output_tokens)
        cost += usage.compute_units * COMPUTE_UNIT_COST
        cost += usage.api_calls * API_CALL_COST
        return _round_cost(cost)

    def record(self, node_id: str, actual_cost: float) -> LedgerEntry:
        if actual_cost < 0:
            raise ValueError("actual_cost must be >= 0")
        alerts: list[BudgetAlert] = []
        with self._lock:
            spent = _round_cost(self._budget.spent + actual_cost)
            self._budget = self._budget.with_spent(spent)
            self._sequence += 1
            entry = LedgerEntry(
                sequence=self._sequence,
                node_id=node_id,
                cost=_round_cost(actual_cost),
                cumulative=spent,
                recorded_at=datetime.now(tz=UTC),
            )
            self._ledger.append(entry)
            self._cost_by_node[node_id] = _round_cost(
                self._cost_by_node.get(node_id, 0.0) + actual_cost
            )
            alerts = self._pending_alerts(node_id)

        self._logger.debug(
            "resource_cost_recorded",
            node_id=node_id,
            cost=entry.cost,
            cumulative=entry.cumulative,
            total=self._budget.total,
        )
        for alert in alerts:
            self._emit_alert(alert)
        return entry

    def projected_total(self, completed: int, total: int) -> float:
        """Linear projection of final spend from ``completed`` of ``total`` nodes."""
        if completed < 0 or total < 0:
            raise ValueError("completed and total must be >= 0")
        with self._lock:
            spent = self._budget.spent
        if completed == 0 or total <= completed:
            return spent
        return _round_cost(spent * total / completed)

    def would_exceed(self, additional: float) -> bool:
        with self._lock:
            if self._budget.total is None:
                return False
            return self._budget.spent + additional > self._budget.total

    def usage_report(self) -> UsageReport:
        with self._lock:
            return UsageReport(
                total=self._budget.total,
                spent=self._budget.spent,
                remaining=self._budget.remaining,
                utilization=self._budget.utilization,
                entries=self._sequence,
                cost_by_node=dict(sorted(self._cost_by_node.items())),
                alerts=tuple(sorted(level.value for level in self._alerts_fired)),
            )

    def snapshot(self) -> dict[str, object]:
        with self._lock:
            return {
                "budget": self._budget.to_dict(),
                "sequence": self._sequence,
                "ledger": [entry.to_dict() for entry in self._ledger],
                "cost_by_node": dict(sorted(self._cost_by_node.items())),
                "alerts_fired": sorted(level.value for level in self._alerts_fired),
            }

    def restore(self, payload: Mapping[str, object]) -> None:
        raw_budget = payload.get("budget")
        raw_ledger = payload.get("ledger", [])
        raw_costs = payload.get("cost_by_node", {})
        raw_alerts = payload.get("alerts_fired", [])
        sequence = payload.get("sequence", 0)
        if not isinstance(raw_budget, Mapping):
            raise ValueError("resources.budget: expected object")
        if not isinstance(raw_ledger, list) or not isinstance(raw_alerts, list):
            raise ValueError("resources.ledger/alerts_fired: expected arrays")
        if not isinstance(raw_costs, Mapping):
            raise ValueError("resources.cost_by_node: expected object")
        if isinstance(sequence, bool) or not isinstance(sequence, int):
            raise ValueError("resources.sequence: expected integer")

        budget = Budget.from_dict(raw_budget)
        ledger = [LedgerEntry.from_dict(item) for item in raw_ledger if isinstance(item, Mapping)]
        costs = {str(key): float(value) for key, value in raw_costs.items()}
        alerts = {AlertLevel(str(item)) for item in raw_alerts}
        with self._lock:
            self._budget = budget
            self._ledger = deque(ledger, maxlen=self._history_limit)
            self._cost_by_node = costs
            self._sequence = sequence
            self._alerts_fired = alerts

    def _pending_alerts(self, node_id: str) -> list[BudgetAlert]:
        total = self._budget.total
        if total is None:
            return []
        utilization = self._budget.utilization
        thresholds = (
            (AlertLevel.WARNING, utilization >= self._warning_ratio),
            (AlertLevel.CRITICAL, utilization >= self._critical_ratio),
            (AlertLevel.EXCEEDED, self._budget.spent > total),
        )
        alerts: list[BudgetAlert] = []
        for level, crossed in thresholds:
            if crossed and level not in self._alerts_fired:
                self._alerts_fired.add(level)
                alerts.append(
                    BudgetAlert(
                        level=level,
                        utilization=utilization,
                        spent=self._budget.spent,
                        total=total,
                        node_id=node_id,
                    )
                )
        return alerts

    def _emit_alert(self, alert: BudgetAlert) -> None:
        log = self._logger.error if alert.level is AlertLevel.EXCEEDED else self._logger.warning
        log("resource_budget_alert", **alert.to_dict())
        if self._alert_hook is not None:
            self._alert_hook(alert)


def _round_cost(value: float) -> float:
    return float(round(value, 12))


__all__ = [
    "DEFAULT_COST_PROFILE",
    "AlertHook",
    "AlertLevel",
    "BudgetAlert",
    "CostEstimate",
    "LedgerEntry",
    "NodeCostEstimate",
    "ResourceManager",
    "UsageReport",
]
