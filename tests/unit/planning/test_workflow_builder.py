"""Unit tests for band- and strategy-driven workflow graph construction."""

from __future__ import annotations

import pytest

from workflow_orchestrator.domain.errors import GraphValidationError
from workflow_orchestrator.domain.models import (
    ComplexityAnalysis,
    ComplexityBand,
    DecompositionStrategy,
    ExecutorDescriptor,
    Goal,
    Request,
    RequestPreferences,
)
from workflow_orchestrator.planning.complexity import CAPABILITY_ORDER, ComplexityAnalyzer
from workflow_orchestrator.planning.executors import ExecutorRegistry
from workflow_orchestrator.planning.workflow_builder import (
    DEFAULT_PHASES,
    WorkflowGraphBuilder,
    node_complexity,
)


def _analysis(
    band: ComplexityBand,
    *,
    score: int = 5,
    capabilities: tuple[str, ...] = ("implement",),
    domains: tuple[str, ...] = ("general",),
    strategy: DecompositionStrategy = DecompositionStrategy.CAPABILITY,
) -> ComplexityAnalysis:
    return ComplexityAnalysis(
        score=score,
        band=band,
        domain_count=sum(1 for domain in domains if domain != "general"),
        domains=domains,
        required_capabilities=capabilities,
        suggested_executor_types=(),
        uncertainty=3.0,
        strategy=strategy,
    )


def _builder() -> WorkflowGraphBuilder:
    return WorkflowGraphBuilder(id_factory=lambda: "wf-fixed")


def test_simple_band_builds_one_direct_node() -> None:
    request = Request(description="Fix typo in README")
    analysis = ComplexityAnalyzer().analyze(request)

    graph = _builder().build(request, analysis)

    assert graph.id == "wf-fixed"
    assert graph.strategy is DecompositionStrategy.DIRECT
    assert list(graph.nodes) == ["execute"]
    node = graph.node("execute")
    assert node.kind == "direct"
    assert node.critical
    assert node.description == "Fix typo in README"
    assert node.executor is not None
    assert node.executor.name == "junior-developer"


def test_moderate_band_builds_a_shallow_capability_chain() -> None:
    request = Request(description="Build a REST API service with database schema and tests")
    analysis = ComplexityAnalyzer().analyze(request)

    graph = _builder().build(request, analysis, workflow_id="wf-moderate")

    assert graph.id == "wf-moderate"
    assert graph.strategy is DecompositionStrategy.CAPABILITY
    assert graph.levels == (("implement",), ("test",))
    assert graph.node("implement").critical
    assert graph.node("test").executor is not None
    assert graph.node("test").executor.name == "qa-engineer"


def test_moderate_band_trims_to_three_nodes_by_priority() -> None:
    request = Request(description="Analyze, design, build, test and deploy")
    analysis = _analysis(ComplexityBand.MODERATE, capabilities=CAPABILITY_ORDER)

    graph = _builder().build(request, analysis)

    assert graph.levels == (("design",), ("implement",), ("test",))
    assert "coordinate" not in graph


def test_complex_capability_graph_adds_optional_coordinator() -> None:
    request = Request(description="Analyze, design, build, test and deploy")
    analysis = _analysis(ComplexityBand.COMPLEX, score=8, capabilities=CAPABILITY_ORDER)

    graph = _builder().build(request, analysis)

    assert graph.levels == (
        ("analyze",),
        ("design",),
        ("implement",),
        ("test",),
        ("deploy",),
        ("coordinate",),
    )
    coordinate = graph.node("coordinate")
    assert coordinate.optional
    assert coordinate.kind == "coordination"
    assert set(graph.predecessors("coordinate")) == set(CAPABILITY_ORDER)
    assert graph.node("deploy").optional
    assert coordinate.complexity == node_complexity(
        capabilities=1, dependencies=5, coordination=True, request_score=8
    )


def test_domain_strategy_designs_and_implements_per_domain() -> None:
    request = Request(
        description=(
            "Build a frontend and backend REST API service with database schema, "
            "tests and team coordination"
        )
    )
    analysis = ComplexityAnalyzer().analyze(request)

    graph = _builder().build(request, analysis)

    assert graph.strategy is DecompositionStrategy.DOMAIN
    assert graph.levels == (
        ("design-backend", "design-frontend"),
        ("implement-backend", "implement-frontend"),
        ("integrate",),
    )
    assert graph.node("design-frontend").capability_needs == ("design", "ui")
    assert graph.node("design-frontend").executor.name == "interface-designer"
    assert graph.node("design-backend").executor.name == "system-architect"
    assert graph.node("integrate").executor.name == "workflow-coordinator"
    assert graph.node("implement-backend").complexity == 6


def test_phase_strategy_chains_default_or_custom_phases() -> None:
    request = Request(description="Ship the release")
    analysis = _analysis(ComplexityBand.SIMPLE)

    default = _builder().build(request, analysis, strategy="phase")
    assert [node.id for node in default] == list(DEFAULT_PHASES)
    assert default.node("deployment").optional
    assert default.node("deployment").executor.name == "release-operator"

    custom_request = Request(description="Ship it", custom_phases=("Analysis", "Build it", "Ship"))
    custom = _builder().build(custom_request, analysis, strategy=DecompositionStrategy.PHASE)
    assert custom.levels == (("analysis",), ("build-it",), ("ship",))
    assert custom.node("build-it").capability_needs == ("implement", "build")
    assert custom.node("analysis").executor.name == "requirements-analyst"


def test_thorough_preference_makes_testing_critical() -> None:
    request = Request(description="Ship it", preferences=RequestPreferences(thorough=True))
    graph = _builder().build(request, _analysis(ComplexityBand.COMPLEX), strategy="phase")

    assert graph.node("testing").critical


def test_goal_strategy_expands_constructive_goals_and_wires_dependencies() -> None:
    request = Request(
        description="Deliver reporting",
        goals=(
            Goal(id="collect", description="Collect metrics"),
            Goal(id="report", description="Render report", depends_on=("collect",)),
            "Create a dashboard",
        ),
    )

    graph = _builder().build(request, _analysis(ComplexityBand.COMPLEX), strategy="goal")

    assert graph.strategy is DecompositionStrategy.GOAL
    assert graph.predecessors("report") == ("collect",)
    assert graph.successors("goal-3-understand") == ("goal-3-design",)
    assert graph.successors("goal-3-implement") == ("goal-3-verify",)
    assert graph.node("goal-3-verify").kind == "testing"
    assert len(graph) == 6


def test_goal_dependency_on_unknown_goal_is_rejected() -> None:
    request = Request(
        description="Deliver",
        goals=(Goal(id="report", description="Render report", depends_on=("missing",)),),
    )

    with pytest.raises(GraphValidationError) as excinfo:
        _builder().build(request, _analysis(ComplexityBand.COMPLEX), strategy="goal")

    assert excinfo.value.issues == ("goal report depends on unknown goal missing",)


def test_explicit_goal_ids_are_kept_verbatim() -> None:
    request = Request(
        description="Ship the service",
        goals=(
            Goal(id="build_api", description="Build the API"),
            Goal(id="ship", description="Ship it", depends_on=("build_api",)),
        ),
    )

    graph = _builder().build(request, _analysis(ComplexityBand.COMPLEX), strategy="goal")

    assert graph.node("build_api").description == "Build the API"
    assert graph.predecessors("ship") == ("build_api",)


def test_duplicate_explicit_goal_id_is_rejected() -> None:
    request = Request(
        description="Deliver",
        goals=(
            Goal(id="report", description="Render report"),
            Goal(id="report", description="Render it again"),
        ),
    )

    with pytest.raises(GraphValidationError, match="goal ids must be unique") as excinfo:
        _builder().build(request, _analysis(ComplexityBand.COMPLEX), strategy="goal")

    assert excinfo.value.issues == ("goal id report is declared more than once",)


def test_generated_goal_ids_skip_explicit_ids() -> None:
    request = Request(
        description="Investigate",
        goals=(
            "Document the system",
            Goal(id="goal-1", description="Analyze the logs"),
            Goal(id="x", description="Summarize findings", depends_on=("goal-1",)),
        ),
    )

    graph = _builder().build(request, _analysis(ComplexityBand.COMPLEX), strategy="goal")

    parents = graph.predecessors("x")
    assert [graph.node(parent).description for parent in parents] == ["Analyze the logs"]
    assert graph.node("goal-2").description == "Document the system"


def test_unresolved_capability_fails_with_workflow_context() -> None:
    registry = ExecutorRegistry(
        [ExecutorDescriptor(type="tester", name="qa", capabilities=("test",))]
    )
    builder = WorkflowGraphBuilder(registry, id_factory=lambda: "wf-unresolved")
    request = Request(description="Fix typo in README")

    with pytest.raises(GraphValidationError, match="unresolved capability") as excinfo:
        builder.build(request, ComplexityAnalyzer().analyze(request))

    assert excinfo.value.workflow_id == "wf-unresolved"


def test_node_complexity_formula_is_clamped() -> None:
    assert node_complexity(capabilities=1, dependencies=0, coordination=False, request_score=1) == 2
    assert (
        node_complexity(capabilities=4, dependencies=9, coordination=True, request_score=10)
        == 10
    )
