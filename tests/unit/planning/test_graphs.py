"""Unit tests for planning.task_graph and the frozen workflow graph."""

from __future__ import annotations

import random

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from workflow_orchestrator.domain.errors import GraphValidationError
from workflow_orchestrator.domain.models import DecompositionStrategy, Edge, TaskNode
from workflow_orchestrator.planning.task_graph import CycleError, TaskGraph
from workflow_orchestrator.planning.workflow_builder import WorkflowGraph


def _node(node_id: str, complexity: int = 2, **kwargs: object) -> TaskNode:
    return TaskNode(id=node_id, description=f"Task {node_id}", complexity=complexity, **kwargs)


def test_diamond_levels_and_critical_path() -> None:
    graph = TaskGraph(
        nodes=("a", "b", "c", "d"),
        edges=(("a", "b"), ("a", "c"), ("b", "d"), ("c", "d")),
    )

    assert graph.levels() == (("a",), ("b", "c"), ("d",))
    assert graph.critical_path(weights={"a": 1.0, "b": 4.0, "c": 2.0, "d": 1.0}) == ("a", "b", "d")
    assert graph.dependencies("d", transitive=True) == ("a", "b", "c")
    assert graph.dependents("a") == ("b", "c")


def test_levels_use_longest_path_depth() -> None:
    graph = TaskGraph(nodes=("a", "b", "c"), edges=(("a", "b"), ("b", "c"), ("a", "c")))
    assert graph.levels() == (("a",), ("b",), ("c",))


def test_cycle_detection_and_error_details() -> None:
    graph = TaskGraph(
        nodes=("a", "b", "c", "d"),
        edges=(("a", "b"), ("b", "c"), ("c", "a"), ("c", "d")),
    )

    assert graph.detect_cycles() == (("a", "b", "c", "a"),)
    with pytest.raises(CycleError) as excinfo:
        graph.levels()
    assert excinfo.value.issues == ("a -> b -> c -> a",)
    assert excinfo.value.to_dict()["details"] == {"cycles": [["a", "b", "c", "a"]]}

    with pytest.raises(CycleError):
        graph.add_edge("d", "d")


def test_dangling_edges_are_rejected() -> None:
    graph = TaskGraph(nodes=("a",))
    with pytest.raises(GraphValidationError, match="unknown node"):
        graph.add_edge("a", "ghost")


def test_serialize_round_trip_and_remove_node() -> None:
    graph = TaskGraph(nodes=("b", "a", "c"), edges=(("a", "b"), ("b", "c")))
    payload = graph.serialize()

    assert payload == {"nodes": ["a", "b", "c"], "edges": [["a", "b"], ["b", "c"]]}
    assert TaskGraph.deserialize(payload).serialize() == payload

    graph.remove_node("b")
    assert graph.edges == ()
    assert graph.roots == ("a", "c")
    with pytest.raises(ValueError, match="duplicate node"):
        TaskGraph.deserialize({"nodes": ["a", "a"], "edges": []})


def test_seeded_random_dag_topological_order_respects_edges() -> None:
    rng = random.Random(20_260_214)
    node_ids = [f"task-{index:04d}" for index in range(300)]
    edges = []
    for child_index in range(1, len(node_ids)):
        for parent_index in rng.sample(range(child_index), k=min(3, child_index)):
            edges.append((node_ids[parent_index], node_ids[child_index]))
    graph = TaskGraph(nodes=node_ids, edges=edges)

    position = {node_id: index for index, node_id in enumerate(graph.topological_sort())}
    assert all(position[parent] < position[child] for parent, child in edges)


@st.composite
def _dags(draw: st.DrawFn) -> tuple[list[str], list[tuple[str, str]]]:
    size = draw(st.integers(min_value=1, max_value=25))
    node_ids = [f"n{index:02d}" for index in range(size)]
    pairs = [(parent, child) for child in range(size) for parent in range(child)]
    chosen = draw(st.lists(st.sampled_from(pairs), unique=True) if pairs else st.just([]))
    return node_ids, [(node_ids[parent], node_ids[child]) for parent, child in chosen]


@settings(max_examples=80, derandomize=True, deadline=None)
@given(_dags())
def test_levels_partition_nodes_and_order_every_edge(
    dag: tuple[list[str], list[tuple[str, str]]],
) -> None:
    node_ids, edges = dag
    graph = TaskGraph(nodes=node_ids, edges=edges)
    levels = graph.levels()

    flattened = [node_id for level in levels for node_id in level]
    assert sorted(flattened) == sorted(node_ids)
    level_of = {node_id: index for index, level in enumerate(levels) for node_id in level}
    assert all(level_of[parent] < level_of[child] for parent, child in edges)
    assert set(levels[0]) == set(graph.roots)
    for node_id in node_ids:
        parents = graph.parents(node_id)
        if parents:
            assert level_of[node_id] == 1 + max(level_of[parent] for parent in parents)


def test_workflow_graph_exposes_levels_and_durations() -> None:
    graph = WorkflowGraph(
        nodes=[_node("plan", 1), _node("build", 4), _node("docs", 2), _node("ship", 1)],
        edges=[Edge("plan", "build"), ("plan", "docs"), ("build", "ship"), ("docs", "ship")],
        graph_id="wf-graph",
        strategy=DecompositionStrategy.PHASE,
    )

    assert graph.levels == (("plan",), ("build", "docs"), ("ship",))
    assert [node.id for node in graph] == ["plan", "build", "docs", "ship"]
    assert graph.entry_points == ("plan",)
    assert graph.exit_points == ("ship",)
    assert graph.estimated_duration_ms == (1 + 4 + 1) * 30_000
    assert graph.critical_path() == ("plan", "build", "ship")
    assert graph.dependents("plan") == ("build", "docs", "ship")
    assert graph.level_of("docs") == 1
    assert "ship" in graph
    assert len(graph) == 4


def test_workflow_graph_rejects_duplicates_empty_and_cycles() -> None:
    with pytest.raises(GraphValidationError, match="duplicate node ids") as excinfo:
        WorkflowGraph(nodes=[_node("a"), _node("a")], graph_id="wf-dup")
    assert excinfo.value.workflow_id == "wf-dup"

    with pytest.raises(GraphValidationError, match="no nodes"):
        WorkflowGraph(nodes=[])

    with pytest.raises(CycleError):
        WorkflowGraph(nodes=[_node("a"), _node("b")], edges=[("a", "b"), ("b", "a")])

    with pytest.raises(GraphValidationError, match="unknown node"):
        WorkflowGraph(nodes=[_node("a")], edges=[("a", "ghost")])


def test_without_nodes_bridges_dependencies() -> None:
    graph = WorkflowGraph(
        nodes=[_node("a"), _node("b", optional=True), _node("c")],
        edges=[("a", "b"), ("b", "c")],
        graph_id="wf-trim",
    )

    trimmed = graph.without_nodes(["b"])

    assert trimmed.id == "wf-trim"
    assert trimmed.edges == (Edge("a", "c"),)
    assert trimmed.levels == (("a",), ("c",))
    assert len(graph) == 3
    with pytest.raises(KeyError, match="unknown node"):
        graph.without_nodes(["ghost"])


def test_workflow_graph_dict_round_trip() -> None:
    graph = WorkflowGraph(
        nodes=[_node("a", critical=True), _node("b", kind="testing")],
        edges=[("a", "b")],
        graph_id="wf-round",
        strategy="goal",
    )

    restored = WorkflowGraph.from_dict(graph.to_dict())

    assert restored.to_dict() == graph.to_dict()
    assert restored.strategy is DecompositionStrategy.GOAL
    assert restored.node("a").critical
    with pytest.raises(ValueError, match="expected \\[parent, child\\]"):
        WorkflowGraph.from_dict({"id": "wf-x", "nodes": [], "edges": [["a"]]})
