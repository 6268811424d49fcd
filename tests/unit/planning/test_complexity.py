"""Unit tests for request complexity analysis."""

from __future__ import annotations

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from workflow_orchestrator.domain.errors import AnalysisError
from workflow_orchestrator.domain.models import (
    ComplexityBand,
    DecompositionStrategy,
    Goal,
    Request,
)
from workflow_orchestrator.planning.complexity import (
    BandThresholds,
    ComplexityAnalyzer,
    FactorWeights,
    identify_capabilities,
    identify_domains,
    select_strategy,
    suggest_executor_types,
)

_TRIVIAL = Request(description="Fix typo in README")
_MODERATE = Request(description="Build a REST API service with database schema and tests")
_COMPLEX = Request(
    description=(
        "Build a frontend and backend REST API service with database schema, "
        "tests and team coordination"
    )
)
_EXTREME = Request(
    description=(
        "Build a distributed real-time machine learning platform with blockchain security, "
        "performance benchmark, API integration, database migration and OAuth authentication. "
        "Frontend and backend team must coordinate in phases; urgent MVP before deadline. "
        "Encrypt data for GDPR compliance, audit threat monitoring, sync with external "
        "third-party webhook, export data."
    )
)


def test_trivial_request_is_simple_and_general() -> None:
    analysis = ComplexityAnalyzer().analyze(_TRIVIAL)

    assert analysis.score == 3
    assert analysis.band is ComplexityBand.SIMPLE
    assert analysis.domains == ("general",)
    assert analysis.domain_count == 0
    assert analysis.required_capabilities == ("implement",)
    assert analysis.suggested_executor_types == ("developer",)
    assert analysis.strategy is DecompositionStrategy.CAPABILITY
    assert analysis.uncertainty == 3.0
    assert not analysis.needs_escalation


def test_single_domain_service_request_is_moderate() -> None:
    analysis = ComplexityAnalyzer().analyze(_MODERATE)

    assert analysis.score == 6
    assert analysis.band is ComplexityBand.MODERATE
    assert analysis.domains == ("backend",)
    assert analysis.required_capabilities == ("implement", "test")
    assert analysis.suggested_executor_types == ("developer", "tester")
    assert analysis.strategy is DecompositionStrategy.CAPABILITY


def test_multi_domain_request_is_complex_and_decomposed_by_domain() -> None:
    analysis = ComplexityAnalyzer().analyze(_COMPLEX)

    assert analysis.score == 8
    assert analysis.band is ComplexityBand.COMPLEX
    assert analysis.domains == ("frontend", "backend")
    assert analysis.domain_count == 2
    assert analysis.strategy is DecompositionStrategy.DOMAIN
    assert analysis.factors["coordination"] == 8.0


def test_broad_urgent_request_is_extreme_and_needs_escalation() -> None:
    analysis = ComplexityAnalyzer().analyze(_EXTREME)

    assert analysis.score == 10
    assert analysis.band is ComplexityBand.EXTREME
    assert analysis.needs_escalation
    assert analysis.suggested_executor_types[-1] == "coordinator"
    assert all(0.0 <= value <= 10.0 for value in analysis.factors.values())


@pytest.mark.parametrize(
    ("thresholds", "expected"),
    [
        (BandThresholds(simple=3, moderate=6, complex=8), ComplexityBand.SIMPLE),
        (BandThresholds(simple=2, moderate=3, complex=8), ComplexityBand.MODERATE),
        (BandThresholds(simple=1, moderate=2, complex=3), ComplexityBand.COMPLEX),
    ],
)
def test_band_follows_configured_thresholds(
    thresholds: BandThresholds, expected: ComplexityBand
) -> None:
    analysis = ComplexityAnalyzer(thresholds=thresholds).analyze(_TRIVIAL)
    assert analysis.score == 3
    assert analysis.band is expected


def test_factor_weights_drive_the_score() -> None:
    silent = FactorWeights(technical=0, integration=0, security=0, coordination=0, timeline=0)
    loud = FactorWeights(technical=4, integration=4, security=4, coordination=4, timeline=4)

    assert ComplexityAnalyzer(weights=silent).analyze(_MODERATE).score == 1
    assert ComplexityAnalyzer(weights=loud).analyze(_TRIVIAL).score == 10


def test_invalid_thresholds_and_weights_are_rejected() -> None:
    with pytest.raises(ValueError, match="simple < moderate < complex"):
        BandThresholds(simple=5, moderate=5, complex=8)
    with pytest.raises(ValueError, match=r"thresholds.complex: must be within 1..10"):
        BandThresholds(simple=3, moderate=6, complex=11)
    with pytest.raises(ValueError, match="weights.timeline: must be >= 0"):
        FactorWeights(timeline=-0.1)


def test_empty_and_malformed_requests_raise_analysis_error() -> None:
    analyzer = ComplexityAnalyzer()

    with pytest.raises(AnalysisError, match="empty request"):
        analyzer.analyze(Request(description="  "))
    with pytest.raises(AnalysisError, match="malformed request"):
        analyzer.analyze({"description": "x", "unexpected": True})
    with pytest.raises(AnalysisError, match="expected Request or mapping"):
        analyzer.analyze(["not", "a", "request"])  # type: ignore[arg-type]


def test_mapping_request_matches_parsed_request() -> None:
    analyzer = ComplexityAnalyzer()
    assert analyzer.analyze({"description": _MODERATE.description}) == analyzer.analyze(
        _MODERATE
    )


def test_strategy_prefers_explicit_structure() -> None:
    phased = Request(description="Build it", custom_phases=("plan", "ship"))
    goals = Request(description="Build it", goals=(Goal(id="g1", description="First"),))

    assert select_strategy(phased, ("frontend", "backend")) is DecompositionStrategy.PHASE
    assert select_strategy(goals, ("frontend", "backend")) is DecompositionStrategy.GOAL
    assert select_strategy(_TRIVIAL, ("frontend", "backend")) is DecompositionStrategy.DOMAIN
    assert select_strategy(_TRIVIAL, ("general",)) is DecompositionStrategy.CAPABILITY


def test_domain_capability_and_executor_type_detection() -> None:
    assert identify_domains("Deploy the ETL job to kubernetes") == ("infrastructure", "data")
    assert identify_capabilities("Research options, then release") == ("analyze", "deploy")
    assert suggest_executor_types(
        ("design", "implement"), ("frontend", "security"), ComplexityBand.COMPLEX
    ) == ("architect", "developer", "ui-designer", "security-specialist")


@settings(max_examples=60, derandomize=True, deadline=None)
@given(
    description=st.text(min_size=1, max_size=200).filter(lambda text: text.strip()),
    requirements=st.lists(st.text(min_size=1, max_size=40).filter(str.strip), max_size=8),
)
def test_analysis_is_bounded_and_deterministic(description: str, requirements: list[str]) -> None:
    analyzer = ComplexityAnalyzer()
    request = Request(description=description, requirements=tuple(requirements))

    first = analyzer.analyze(request)
    second = analyzer.analyze(request)

    assert first == second
    assert 1 <= first.score <= 10
    assert first.band is analyzer.thresholds.band_for(first.score)
    assert 0.0 <= first.uncertainty <= 10.0
    assert first.domains
    assert first.required_capabilities
