"""Budget-aware graph fitting and mid-run spend review."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Final

import structlog

from workflow_orchestrator.domain.errors import BudgetExceededError
from workflow_orchestrator.domain.models import Budget, BudgetPolicy, NodeStatus

if TYPE_CHECKING:
    from collections.abc import Mapping

    from workflow_orchestrator.control_plane.resources import CostEstimate, ResourceManager
    from workflow_orchestrator.domain.models import ExecutionRecord, ExecutorDescriptor
    from workflow_orchestrator.planning.executors import ExecutorRegistry
    from workflow_orchestrator.planning.workflow_builder import WorkflowGraph

POLICY_MAX_CONCURRENCY: Final[Mapping[BudgetPolicy, int]] = {
    BudgetPolicy.ECONOMY: 5,
    BudgetPolicy.BALANCED: 10,
    BudgetPolicy.PREMIUM: 20,
}
_COUNTED_STATUSES = frozenset({NodeStatus.SUCCEEDED, NodeStatus.FAILED})


class AdjustmentKind(StrEnum):
    DROP_OPTIONAL = "drop-optional"
    DOWNGRADE = "downgrade"


@dataclass(frozen=True, slots=True)
class PolicyWeights:
    """Balanced-policy penalty coefficients."""

    alpha: float = 0.3
    beta: float = 0.4
    gamma: float = 0.3

    def __post_init__(self) -> None:
        for name in ("alpha", "beta", "gamma"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"{name} must be a number")
            if value < 0:
                raise ValueError(f"{name} must be >= 0")
        if self.alpha + self.beta + self.gamma <= 0:
            raise ValueError("alpha + beta + gamma must be > 0")


@dataclass(frozen=True, slots=True)
class ScheduleAdjustment:
    kind: AdjustmentKind
    node_id: str
    savings: float
    previous_executor: str | None = None
    new_executor: str | None = None
    penalty: float | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "kind": self.kind.value,
            "node_id": self.node_id,
            "savings": self.savings,
            "previous_executor": self.previous_executor,
            "new_executor": self.new_executor,
            "penalty": self.penalty,
        }


@dataclass(frozen=True, slots=True)
class ScheduleResult:
    """Graph fitted to a budget plus the changes that got it there."""

    graph: WorkflowGraph
    policy: BudgetPolicy
    estimate: CostEstimate
    original_estimate: CostEstimate
    adjustments: tuple[ScheduleAdjustment, ...]
    max_concurrency: int

    @property
    def changed(self) -> bool:
        return bool(self.adjustments)

    @property
    def dropped_nodes(self) -> tuple[str, ...]:
        return tuple(
            item.node_id for item in self.adjustments if item.kind is AdjustmentKind.DROP_OPTIONAL
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "graph_id": self.graph.id,
            "policy": self.policy.value,
            "estimate": self.estimate.total,
            "original_estimate": self.original_estimate.total,
            "adjustments": [item.to_dict() for item in self.adjustments],
            "max_concurrency": self.max_concurrency,
        }


@dataclass(frozen=True, slots=True)
class _Candidate:
    kind: AdjustmentKind
    node_id: str
    graph: WorkflowGraph
    estimate: CostEstimate
    savings: float
    complexity: int
    previous_executor: str | None = None
    new_executor: str | None = None
    capability_fit: float = 0.0


class ResourceAwareScheduler:
    """Fit a workflow graph under a budget using the economy, balanced or premium policy."""

    __slots__ = ("_resources", "_registry", "_weights", "_logger")

    def __init__(
        self,
        resources: ResourceManager,
        registry: ExecutorRegistry | None = None,
        *,
        weights: PolicyWeights | None = None,
        logger: Any | None = None,
    ) -> None:
        self._resources = resources
        self._registry = registry
        self._weights = weights if weights is not None else PolicyWeights()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def weights(self) -> PolicyWeights:
        return self._weights

    @staticmethod
    def max_concurrency_for(policy: BudgetPolicy | str) -> int:
        return POLICY_MAX_CONCURRENCY[BudgetPolicy.parse(policy)]

    def fit(
        self,
        graph: WorkflowGraph,
        budget: Budget | None = None,
        policy: BudgetPolicy | str | None = None,
    ) -> ScheduleResult:
        effective_budget = budget if budget is not None else self._resources.budget
        selected = BudgetPolicy.parse(policy) if policy is not None else effective_budget.policy
        original = self._resources.estimate(graph)
        original_duration_ms = graph.estimated_duration_ms
        limit = effective_budget.remaining
        concurrency = POLICY_MAX_CONCURRENCY[selected]

        if limit is None or original.total <= limit:
            self._log_decision(graph, selected, original, original, (), limit)
            return ScheduleResult(
                graph=graph,
                policy=selected,
                estimate=original,
                original_estimate=original,
                adjustments=(),
                max_concurrency=concurrency,
            )

        current = graph
        estimate = original
        adjustments: list[ScheduleAdjustment] = []
        while estimate.total > limit:
            candidate, penalty = self._next_change(
                selected, current, estimate, original, original_duration_ms
            )
            if candidate is None:
                break
            adjustments.append(
                ScheduleAdjustment(
                    kind=candidate.kind,
                    node_id=candidate.node_id,
                    savings=candidate.savings,
                    previous_executor=candidate.previous_executor,
                    new_executor=candidate.new_executor,
                    penalty=penalty,
                )
            )
            current = candidate.graph
            estimate = candidate.estimate

        self._log_decision(current, selected, original, estimate, adjustments, limit)

        if estimate.total > limit:
            shortfall = estimate.total - limit
            raise BudgetExceededError(
                shortfall=shortfall,
                unaccommodated=_unaccommodated(estimate, shortfall),
                estimate=estimate.total,
                budget=limit,
                workflow_id=graph.id,
            )

        return ScheduleResult(
            graph=current,
            policy=selected,
            estimate=estimate,
            original_estimate=original,
            adjustments=tuple(adjustments),
            max_concurrency=concurrency,
        )

    def review_progress(
        self,
        graph: WorkflowGraph,
        records: Mapping[str, ExecutionRecord],
        resources: ResourceManager | None = None,
    ) -> tuple[str, ...]:
        """Pending optional nodes to skip when projected spend exceeds the budget."""
        manager = resources if resources is not None else self._resources
        budget = manager.budget
        if budget.total is None:
            return ()
        completed = sum(1 for record in records.values() if record.status in _COUNTED_STATUSES)
        projected = manager.projected_total(completed, len(graph))
        if projected <= budget.total:
            return ()

        skipped = tuple(
            sorted(
                node_id
                for node_id, node in graph.nodes.items()
                if node.optional
                and records.get(node_id) is not None
                and records[node_id].status is NodeStatus.PENDING
            )
        )
        if skipped:
            self._logger.warning(
                "scheduler_projection_over_budget",
                workflow_id=graph.id,
                projected=projected,
                budget=budget.total,
                completed=completed,
                total=len(graph),
                skipped=list(skipped),
            )
        return skipped

    def _next_change(
        self,
        policy: BudgetPolicy,
        graph: WorkflowGraph,
        estimate: CostEstimate,
        original: CostEstimate,
        original_duration_ms: int,
    ) -> tuple[_Candidate | None, float | None]:
        drops = self._drop_candidates(graph, estimate)
        downgrades = self._downgrade_candidates(graph, estimate)

        if policy is BudgetPolicy.ECONOMY:
            ordered = _cheapest_drop_first(drops) + _largest_savings_first(downgrades)
            return (ordered[0] if ordered else None), None
        if policy is BudgetPolicy.PREMIUM:
            ordered = _largest_savings_first(downgrades) + _cheapest_drop_first(drops)
            return (ordered[0] if ordered else None), None

        scored = [
            (self._penalty(candidate, original, original_duration_ms), candidate)
            for candidate in drops + downgrades
        ]
        if not scored:
            return None, None
        penalty, best = min(
            scored,
            key=lambda item: (item[0], -item[1].savings, item[1].kind.value, item[1].node_id),
        )
        return best, penalty

    def _penalty(
        self,
        candidate: _Candidate,
        original: CostEstimate,
        original_duration_ms: int,
    ) -> float:
        cost_ratio = candidate.estimate.total / original.total if original.total > 0 else 0.0
        duration_ratio = (
            candidate.graph.estimated_duration_ms / original_duration_ms
            if original_duration_ms > 0
            else 1.0
        )
        return (
            self._weights.alpha * cost_ratio
            + self._weights.beta * duration_ratio
            + self._weights.gamma * (1.0 - candidate.capability_fit)
        )

    def _drop_candidates(self, graph: WorkflowGraph, estimate: CostEstimate) -> list[_Candidate]:
        if len(graph) <= 1:
            return []
        candidates: list[_Candidate] = []
        for node_id, node in graph.nodes.items():
            if not node.optional or node.critical:
                continue
            reduced = graph.without_nodes((node_id,))
            reduced_estimate = self._resources.estimate(reduced)
            candidates.append(
                _Candidate(
                    kind=AdjustmentKind.DROP_OPTIONAL,
                    node_id=node_id,
                    graph=reduced,
                    estimate=reduced_estimate,
                    savings=estimate.cost_of(node_id),
                    complexity=node.complexity,
                    previous_executor=None if node.executor is None else node.executor.name,
                )
            )
        return candidates

    def _downgrade_candidates(
        self,
        graph: WorkflowGraph,
        estimate: CostEstimate,
    ) -> list[_Candidate]:
        if self._registry is None:
            return []
        candidates: list[_Candidate] = []
        for node_id, node in graph.nodes.items():
            if node.executor is None:
                continue
            alternatives = self._registry.cheaper_alternatives(node.executor, node.capability_needs)
            if not alternatives:
                continue
            replacement: ExecutorDescriptor = alternatives[0]
            updated = graph.with_executor(node_id, replacement)
            updated_estimate = self._resources.estimate(updated)
            matched = replacement.matched(node.capability_needs)
            fit = len(matched) / len(node.capability_needs) if node.capability_needs else 1.0
            candidates.append(
                _Candidate(
                    kind=AdjustmentKind.DOWNGRADE,
                    node_id=node_id,
                    graph=updated,
                    estimate=updated_estimate,
                    savings=estimate.total - updated_estimate.total,
                    complexity=node.complexity,
                    previous_executor=node.executor.name,
                    new_executor=replacement.name,
                    capability_fit=fit,
                )
            )
        return [candidate for candidate in candidates if candidate.savings > 0]

    def _log_decision(
        self,
        graph: WorkflowGraph,
        policy: BudgetPolicy,
        original: CostEstimate,
        final: CostEstimate,
        adjustments: tuple[ScheduleAdjustment, ...] | list[ScheduleAdjustment],
        limit: float | None,
    ) -> None:
        self._logger.info(
            "scheduler_budget_decision",
            workflow_id=graph.id,
            policy=policy.value,
            budget=limit,
            original_estimate=original.total,
            final_estimate=final.total,
            within_budget=limit is None or final.total <= limit,
            adjustments=[item.to_dict() for item in adjustments],
        )


def _cheapest_drop_first(candidates: list[_Candidate]) -> list[_Candidate]:
    return sorted(candidates, key=lambda item: (item.savings, item.complexity, item.node_id))


def _largest_savings_first(candidates: list[_Candidate]) -> list[_Candidate]:
    return sorted(candidates, key=lambda item: (-item.savings, item.node_id))


def _unaccommodated(estimate: CostEstimate, shortfall: float) -> tuple[str, ...]:
    ranked = sorted(estimate.per_node.values(), key=lambda item: (-item.cost, item.node_id))
    selected: list[str] = []
    covered = 0.0
    for item in ranked:
        if covered >= shortfall:
            break
        selected.append(item.node_id)
        covered += item.cost
    return tuple(selected)


__all__ = [
    "POLICY_MAX_CONCURRENCY",
    "AdjustmentKind",
    "PolicyWeights",
    "ResourceAwareScheduler",
    "ScheduleAdjustment",
    "ScheduleResult",
]
