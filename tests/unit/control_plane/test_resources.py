"""Unit tests for the cost model, spend ledger and budget alerts."""

from __future__ import annotations

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from workflow_orchestrator.control_plane.resources import (
    DEFAULT_COST_PROFILE,
    AlertLevel,
    BudgetAlert,
    ResourceManager,
)
from workflow_orchestrator.domain.models import (
    Budget,
    CostProfile,
    ExecutorDescriptor,
    TaskNode,
    UsageHint,
)
from workflow_orchestrator.planning.workflow_builder import WorkflowGraph

_EXECUTOR = ExecutorDescriptor(
    type="developer",
    name="dev",
    capabilities=("implement",),
    cost_profile=CostProfile(input_rate=0.01, output_rate=0.03),
)


def test_static_estimate_uses_complexity_tokens_and_executor_rates() -> None:
    manager = ResourceManager()
    priced = TaskNode(id="build", description="Build", complexity=4, executor=_EXECUTOR)
    unpriced = TaskNode(id="docs", description="Docs", complexity=1)

    estimate = manager.estimate_node(priced)
    assert (estimate.input_tokens, estimate.output_tokens) == (1200, 2800)
    assert estimate.cost == pytest.approx(0.096)
    assert estimate.executor_name == "dev"

    graph = WorkflowGraph(nodes=[priced, unpriced], edges=[("build", "docs")])
    total = manager.estimate(graph)
    expected_docs = DEFAULT_COST_PROFILE.estimate(input_tokens=300, output_tokens=700)
    assert total.cost_of("docs") == pytest.approx(expected_docs)
    assert total.total == pytest.approx(0.096 + expected_docs)


def test_cost_for_usage_prefers_explicit_cost() -> None:
    manager = ResourceManager()

    assert manager.cost_for_usage(_EXECUTOR, UsageHint(input_tokens=10_000, cost=0.5)) == 0.5
    priced = manager.cost_for_usage(
        _EXECUTOR,
        UsageHint(input_tokens=1000, output_tokens=1000, compute_units=2.0, api_calls=10),
    )
    assert priced == pytest.approx(0.01 + 0.03 + 0.2 + 0.001)


def test_alerts_fire_once_per_threshold_in_order() -> None:
    received: list[BudgetAlert] = []
    manager = ResourceManager(Budget(total=10.0), alert_hook=received.append)

    manager.record("a", 5.0)
    assert received == []
    manager.record("b", 3.5)
    manager.record("c", 1.0)
    manager.record("d", 1.0)
    manager.record("e", 4.0)

    assert [alert.level for alert in received] == [
        AlertLevel.WARNING,
        AlertLevel.CRITICAL,
        AlertLevel.EXCEEDED,
    ]
    assert received[0].node_id == "b"
    assert received[2].spent == pytest.approx(10.5)
    assert manager.usage_report().alerts == ("critical", "exceeded", "warning")


def test_single_large_spend_fires_every_crossed_threshold() -> None:
    received: list[BudgetAlert] = []
    manager = ResourceManager(Budget(total=1.0), alert_hook=received.append)

    manager.record("big", 2.0)

    assert [alert.level for alert in received] == list(AlertLevel)
    assert manager.would_exceed(0.0) is True


def test_unbounded_budget_never_alerts_or_exceeds() -> None:
    received: list[BudgetAlert] = []
    manager = ResourceManager(alert_hook=received.append)

    manager.record("a", 1_000.0)

    assert received == []
    assert not manager.would_exceed(1e9)
    assert manager.usage_report().remaining is None


def test_projection_and_would_exceed() -> None:
    manager = ResourceManager(Budget(total=10.0))
    assert manager.projected_total(0, 4) == 0.0

    manager.record("a", 2.0)

    assert manager.projected_total(1, 4) == pytest.approx(8.0)
    assert manager.projected_total(4, 4) == pytest.approx(2.0)
    assert manager.would_exceed(8.5)
    assert not manager.would_exceed(8.0)
    with pytest.raises(ValueError, match="must be >= 0"):
        manager.projected_total(-1, 4)


def test_record_rejects_negative_cost_and_bounds_history() -> None:
    manager = ResourceManager(Budget(total=None), history_limit=3)
    for index in range(5):
        manager.record(f"n{index}", 1.0)

    assert [entry.sequence for entry in manager.ledger] == [3, 4, 5]
    assert manager.usage_report().entries == 5
    with pytest.raises(ValueError, match="actual_cost"):
        manager.record("bad", -0.1)


def test_snapshot_restore_preserves_budget_ledger_and_fired_alerts() -> None:
    received: list[BudgetAlert] = []
    manager = ResourceManager(Budget(total=10.0), alert_hook=received.append)
    manager.record("a", 9.0)
    payload = manager.snapshot()

    restored = ResourceManager(Budget(total=1.0), alert_hook=received.append)
    restored.restore(payload)

    assert restored.snapshot() == payload
    assert restored.spent == pytest.approx(9.0)
    restored.record("b", 0.6)
    assert [alert.level for alert in received] == [AlertLevel.WARNING, AlertLevel.CRITICAL]


def test_set_alert_hook_returns_previous_hook() -> None:
    first: list[BudgetAlert] = []
    manager = ResourceManager(Budget(total=1.0), alert_hook=first.append)

    previous = manager.set_alert_hook(None)

    assert previous == first.append
    assert manager.alert_hook is None
    manager.record("a", 5.0)
    assert first == []


def test_invalid_ratios_are_rejected() -> None:
    with pytest.raises(ValueError, match="alert ratios"):
        ResourceManager(warning_ratio=0.9, critical_ratio=0.8)


@settings(max_examples=60, derandomize=True, deadline=None)
@given(st.lists(st.floats(min_value=0.0, max_value=50.0, allow_nan=False), max_size=30))
def test_spend_is_monotonic_and_matches_ledger(costs: list[float]) -> None:
    manager = ResourceManager(Budget(total=100.0))
    observed: list[float] = []

    for index, cost in enumerate(costs):
        manager.record(f"n{index}", cost)
        observed.append(manager.spent)

    assert observed == sorted(observed)
    assert manager.spent == pytest.approx(sum(costs), abs=1e-9)
    cumulative = [entry.cumulative for entry in manager.ledger]
    assert cumulative == sorted(cumulative)


@st.composite
def _random_graphs(draw: st.DrawFn) -> WorkflowGraph:
    size = draw(st.integers(min_value=1, max_value=8))
    priced = draw(st.lists(st.booleans(), min_size=size, max_size=size))
    complexities = draw(st.lists(st.integers(1, 10), min_size=size, max_size=size))
    nodes = [
        TaskNode(
            id=f"n{index}",
            description=f"Step {index}",
            complexity=complexities[index],
            executor=_EXECUTOR if priced[index] else None,
        )
        for index in range(size)
    ]
    pairs = [(f"n{low}", f"n{high}") for low in range(size) for high in range(low + 1, size)]
    keep = draw(st.lists(st.booleans(), min_size=len(pairs), max_size=len(pairs)))
    edges = [pair for pair, kept in zip(pairs, keep) if kept]
    return WorkflowGraph(nodes=nodes, edges=edges)


@settings(max_examples=60, derandomize=True, deadline=None)
@given(_random_graphs(), st.data())
def test_estimate_total_is_additive_over_nodes(graph: WorkflowGraph, data: st.DataObject) -> None:
    manager = ResourceManager()
    full = manager.estimate(graph)
    removed = data.draw(st.sampled_from(sorted(graph.nodes)))

    reduced = manager.estimate(graph.without_nodes([removed]))

    assert reduced.total == pytest.approx(full.total - full.cost_of(removed), abs=1e-9)
    # Putting the node back never lowers the total.
    assert full.total >= reduced.total - 1e-9
