"""Unit tests for budget-aware graph fitting and mid-run spend review."""

from __future__ import annotations

import pytest

from workflow_orchestrator.control_plane.resources import ResourceManager
from workflow_orchestrator.control_plane.scheduler import (
    AdjustmentKind,
    PolicyWeights,
    ResourceAwareScheduler,
)
from workflow_orchestrator.domain.errors import BudgetExceededError
from workflow_orchestrator.domain.models import (
    Budget,
    BudgetPolicy,
    CostProfile,
    ExecutionRecord,
    ExecutorDescriptor,
    NodeStatus,
    TaskNode,
)
from workflow_orchestrator.planning.executors import ExecutorRegistry
from workflow_orchestrator.planning.workflow_builder import WorkflowGraph

# Flat rates make each node cost ``complexity * rate``.
_EXPENSIVE = ExecutorDescriptor(
    type="developer",
    name="expensive",
    capabilities=("implement",),
    cost_profile=CostProfile(1.0, 1.0),
)
_CHEAP = ExecutorDescriptor(
    type="developer",
    name="cheap",
    capabilities=("implement",),
    cost_profile=CostProfile(0.5, 0.5),
)


def _graph() -> WorkflowGraph:
    def node(node_id: str, complexity: int, **flags: bool) -> TaskNode:
        return TaskNode(
            id=node_id,
            description=node_id,
            complexity=complexity,
            capability_needs=("implement",),
            executor=_EXPENSIVE,
            **flags,
        )

    return WorkflowGraph(
        nodes=[
            node("core", 4, critical=True),
            node("extra", 2, optional=True),
            node("polish", 1, optional=True),
        ],
        edges=[("core", "extra"), ("core", "polish")],
        graph_id="wf-fit",
    )


def _scheduler(
    total: float | None, *, weights: PolicyWeights | None = None
) -> ResourceAwareScheduler:
    resources = ResourceManager(Budget(total=total))
    return ResourceAwareScheduler(
        resources, ExecutorRegistry([_EXPENSIVE, _CHEAP]), weights=weights
    )


def test_graph_within_budget_is_unchanged() -> None:
    result = _scheduler(None).fit(_graph())

    assert not result.changed
    assert result.estimate.total == pytest.approx(7.0)
    assert result.policy is BudgetPolicy.BALANCED
    assert result.max_concurrency == 10


def test_economy_drops_cheapest_optional_nodes_first() -> None:
    result = _scheduler(6.0).fit(_graph(), policy="economy")

    assert result.dropped_nodes == ("polish",)
    assert result.estimate.total == pytest.approx(6.0)
    assert "polish" not in result.graph
    assert result.max_concurrency == 5

    deeper = _scheduler(4.5).fit(_graph(), policy=BudgetPolicy.ECONOMY)
    assert deeper.dropped_nodes == ("polish", "extra")
    assert list(deeper.graph.nodes) == ["core"]


def test_economy_downgrades_after_drops_and_raises_when_still_over() -> None:
    with pytest.raises(BudgetExceededError) as excinfo:
        _scheduler(1.5).fit(_graph(), policy="economy")

    error = excinfo.value
    assert error.estimate == pytest.approx(2.0)
    assert error.budget == pytest.approx(1.5)
    assert error.shortfall == pytest.approx(0.5)
    assert error.unaccommodated == ("core",)
    assert error.workflow_id == "wf-fit"


def test_premium_downgrades_largest_savings_first_and_keeps_nodes() -> None:
    result = _scheduler(6.0).fit(_graph(), policy="premium")

    assert [item.kind for item in result.adjustments] == [AdjustmentKind.DOWNGRADE]
    assert result.adjustments[0].node_id == "core"
    assert result.adjustments[0].new_executor == "cheap"
    assert result.graph.node("core").executor == _CHEAP
    assert len(result.graph) == 3
    assert result.max_concurrency == 20

    tight = _scheduler(3.5).fit(_graph(), policy="premium")
    assert [item.node_id for item in tight.adjustments] == ["core", "extra", "polish"]
    assert tight.dropped_nodes == ()
    assert tight.estimate.total == pytest.approx(3.5)


def test_balanced_minimizes_the_weighted_penalty() -> None:
    result = _scheduler(6.0).fit(_graph())

    assert len(result.adjustments) == 1
    chosen = result.adjustments[0]
    assert chosen.kind is AdjustmentKind.DOWNGRADE
    assert chosen.node_id == "core"
    assert chosen.penalty == pytest.approx(0.3 * 5.0 / 7.0 + 0.4)


def test_balanced_weights_can_favor_shorter_duration() -> None:
    scheduler = _scheduler(6.0, weights=PolicyWeights(alpha=0.0, beta=1.0, gamma=0.0))

    result = scheduler.fit(_graph())

    assert result.dropped_nodes == ("extra",)
    assert result.adjustments[0].penalty == pytest.approx(150_000 / 180_000)


def test_explicit_budget_argument_overrides_manager_budget() -> None:
    scheduler = _scheduler(None)

    result = scheduler.fit(_graph(), Budget(total=6.0, policy="economy"))

    assert result.policy is BudgetPolicy.ECONOMY
    assert result.dropped_nodes == ("polish",)
    assert result.to_dict()["original_estimate"] == pytest.approx(7.0)


def test_review_progress_skips_pending_optional_nodes_when_projection_overshoots() -> None:
    resources = ResourceManager(Budget(total=10.0))
    scheduler = ResourceAwareScheduler(resources)
    graph = _graph()
    records = {node_id: ExecutionRecord(node_id=node_id) for node_id in graph.nodes}
    records["core"].status = NodeStatus.SUCCEEDED

    resources.record("core", 3.0)
    assert scheduler.review_progress(graph, records) == ()

    resources.record("core", 3.0)
    assert scheduler.review_progress(graph, records) == ("extra", "polish")

    records["polish"].status = NodeStatus.RUNNING
    assert scheduler.review_progress(graph, records) == ("extra",)


def test_review_progress_ignores_unbounded_budgets() -> None:
    scheduler = _scheduler(None)
    graph = _graph()
    records = {node_id: ExecutionRecord(node_id=node_id) for node_id in graph.nodes}

    assert scheduler.review_progress(graph, records) == ()


def test_policy_weights_validation_and_concurrency_table() -> None:
    with pytest.raises(ValueError, match="alpha must be >= 0"):
        PolicyWeights(alpha=-0.1)
    with pytest.raises(ValueError, match="must be > 0"):
        PolicyWeights(alpha=0, beta=0, gamma=0)
    assert ResourceAwareScheduler.max_concurrency_for("performance") == 20


def test_economy_drops_optional_node_to_fit_half_unit_budget() -> None:
    executor = ExecutorDescriptor(
        type="developer",
        name="standard",
        capabilities=("implement",),
        cost_profile=CostProfile(0.05, 0.05),
    )
    graph = WorkflowGraph(
        nodes=[
            TaskNode(
                id="optional-docs",
                description="Write docs",
                complexity=7,
                capability_needs=("implement",),
                optional=True,
                executor=executor,
            ),
            TaskNode(
                id="core",
                description="Build core",
                complexity=9,
                capability_needs=("implement",),
                critical=True,
                executor=executor,
            ),
        ],
        graph_id="wf-half",
    )
    resources = ResourceManager(Budget(total=0.5, policy="economy"))
    scheduler = ResourceAwareScheduler(resources, ExecutorRegistry([executor]))

    assert resources.estimate(graph).total == pytest.approx(0.8)
    result = scheduler.fit(graph)

    assert result.dropped_nodes == ("optional-docs",)
    assert result.estimate.total == pytest.approx(0.45)
    assert result.estimate.total <= 0.5
