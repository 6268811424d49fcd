"""
workflow-orchestrator - complexity analysis

File: src/workflow_orchestrator/planning/complexity.py

Purpose
- Score a structured request on five weighted factors and derive the band,
  domains, required capabilities, suggested executor types, uncertainty and
  the default decomposition strategy.

Functional requirements
- Pure and deterministic: same request and configuration, same analysis.
- Empty requests raise ``AnalysisError``; no graph is built from them.
- Band thresholds and factor weights are configuration, not constants.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Final

import structlog

from workflow_orchestrator.constants import MAX_COMPLEXITY, MIN_COMPLEXITY
from workflow_orchestrator.domain.errors import AnalysisError
from workflow_orchestrator.domain.models import (
    ComplexityAnalysis,
    ComplexityBand,
    DecompositionStrategy,
    Request,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

# --- Technical depth indicators (pattern, weight) ---
_TECHNICAL_BASE: Final[float] = 3.0
_TECHNICAL_INDICATORS: Final[tuple[tuple[re.Pattern[str], float], ...]] = (
    (re.compile(r"\b(?:microservice|distributed|scalab)", re.IGNORECASE), 2.0),
    (re.compile(r"\b(?:real-?time|websocket|streaming)", re.IGNORECASE), 2.0),
    (re.compile(r"\b(?:machine learning|ai|neural)\b", re.IGNORECASE), 3.0),
    (re.compile(r"\b(?:blockchain|crypto|security)", re.IGNORECASE), 2.0),
    (re.compile(r"\b(?:performance|optimi[sz]ation|benchmark)", re.IGNORECASE), 1.5),
    (re.compile(r"\b(?:integration|apis?|webhook)\b", re.IGNORECASE), 1.5),
    (re.compile(r"\b(?:database|migration|schema)", re.IGNORECASE), 1.0),
    (re.compile(r"\b(?:authentication|authori[sz]ation|oauth)", re.IGNORECASE), 1.5),
)
_STRUCTURE_REQUIREMENT_COUNT: Final[int] = 5

# --- Integration, security, coordination and timeline patterns ---
_INTEGRATION_PATTERNS: Final[tuple[re.Pattern[str], ...]] = (
    re.compile(r"\b(?:integrat|connect|sync)", re.IGNORECASE),
    re.compile(r"\b(?:third.party|external|service)", re.IGNORECASE),
    re.compile(r"\b(?:apis?|webhook|endpoint)\b", re.IGNORECASE),
    re.compile(r"\b(?:import|export|migrat)", re.IGNORECASE),
)
_INTEGRATION_POINTS: Final[float] = 2.0

_SECURITY_PATTERNS: Final[tuple[re.Pattern[str], ...]] = (
    re.compile(r"\b(?:security|secure|encrypt)", re.IGNORECASE),
    re.compile(r"\b(?:authentication|authori[sz]ation|auth)\b", re.IGNORECASE),
    re.compile(r"\b(?:compliance|gdpr|hipaa|pci)\b", re.IGNORECASE),
    re.compile(r"\b(?:vulnerab|threat|attack)", re.IGNORECASE),
    re.compile(r"\b(?:audit|logging|monitoring)\b", re.IGNORECASE),
)
_SECURITY_POINTS: Final[float] = 2.5
_DEADLINE_PRESSURE_POINTS: Final[float] = 2.0

_COORDINATION_BASE: Final[float] = 2.0
_MULTI_COMPONENT_RE: Final[re.Pattern[str]] = re.compile(
    r"frontend.*backend|backend.*frontend|full.stack|end.to.end", re.IGNORECASE | re.DOTALL
)
_TEAM_RE: Final[re.Pattern[str]] = re.compile(r"\b(?:team|collaborat|coordinat)", re.IGNORECASE)
_PHASED_RE: Final[re.Pattern[str]] = re.compile(
    r"\b(?:phase|stage|step|workflow)", re.IGNORECASE
)

_TIMELINE_BASE: Final[float] = 3.0
_URGENCY_RE: Final[re.Pattern[str]] = re.compile(
    r"\b(?:urgent|asap|immediately|critical)\b", re.IGNORECASE
)
_PROTOTYPE_RE: Final[re.Pattern[str]] = re.compile(
    r"\b(?:mvp|prototype|poc|demo)\b", re.IGNORECASE
)
_DEADLINE_RE: Final[re.Pattern[str]] = re.compile(
    r"\b(?:deadline|before|within|due)\b", re.IGNORECASE
)

# --- Uncertainty ---
_UNCERTAINTY_BASE: Final[float] = 3.0
_EXPLORATORY_RE: Final[re.Pattern[str]] = re.compile(
    r"\b(?:explore|research|investigate|possible|maybe|unclear)\b", re.IGNORECASE
)
_NOVEL_RE: Final[re.Pattern[str]] = re.compile(
    r"\b(?:new|innovative|novel|experimental|poc)\b", re.IGNORECASE
)
_CONCRETE_RE: Final[re.Pattern[str]] = re.compile(
    r"\b(?:specific|defined|clear|standard|existing)\b", re.IGNORECASE
)

# --- Domains and capabilities, in canonical order ---
GENERAL_DOMAIN: Final[str] = "general"
DOMAIN_PATTERNS: Final[tuple[tuple[str, re.Pattern[str]], ...]] = (
    (
        "frontend",
        re.compile(r"\b(?:ui|ux|interfaces?|frontend|front-end|user experience)\b", re.IGNORECASE),
    ),
    ("backend", re.compile(r"\b(?:apis?|servers?|databases?|services?|backend)\b", re.IGNORECASE)),
    (
        "infrastructure",
        re.compile(
            r"\b(?:deploy\w*|cloud|devops|infrastructure|kubernetes|docker)\b", re.IGNORECASE
        ),
    ),
    ("data", re.compile(r"\b(?:data|analytics|ml|ai|etl)\b", re.IGNORECASE)),
    (
        "security",
        re.compile(r"\b(?:security|auth\w*|encryption|compliance)\b", re.IGNORECASE),
    ),
)

DEFAULT_CAPABILITY: Final[str] = "implement"
CAPABILITY_ORDER: Final[tuple[str, ...]] = ("analyze", "design", "implement", "test", "deploy")
CAPABILITY_PATTERNS: Final[Mapping[str, re.Pattern[str]]] = {
    "analyze": re.compile(r"\b(?:analy[sz]\w*|research\w*|investigat\w*|assess\w*)", re.IGNORECASE),
    "design": re.compile(r"\b(?:design\w*|architect\w*|plan|planning)\b", re.IGNORECASE),
    "implement": re.compile(
        r"\b(?:build\w*|creat\w*|develop\w*|cod(?:e|ing)|implement\w*)", re.IGNORECASE
    ),
    "test": re.compile(r"\b(?:test\w*|validat\w*|verif\w*)", re.IGNORECASE),
    "deploy": re.compile(r"\b(?:deploy\w*|releas\w*|launch\w*)", re.IGNORECASE),
}

_CAPABILITY_EXECUTOR_TYPES: Final[Mapping[str, str]] = {
    "analyze": "analyst",
    "design": "architect",
    "implement": "developer",
    "test": "tester",
    "deploy": "operator",
}
_DOMAIN_EXECUTOR_TYPES: Final[Mapping[str, str]] = {
    "frontend": "ui-designer",
    "infrastructure": "operator",
    "data": "data-engineer",
    "security": "security-specialist",
}
_COORDINATOR_TYPE: Final[str] = "coordinator"


@dataclass(frozen=True, slots=True)
class BandThresholds:
    """Upper score bounds for the ``simple``, ``moderate`` and ``complex`` bands."""

    simple: int = 3
    moderate: int = 6
    complex: int = 8

    def __post_init__(self) -> None:
        for name in ("simple", "moderate", "complex"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"thresholds.{name}: expected integer")
            if not MIN_COMPLEXITY <= value <= MAX_COMPLEXITY:
                raise ValueError(
                    f"thresholds.{name}: must be within {MIN_COMPLEXITY}..{MAX_COMPLEXITY}"
                )
        if not self.simple < self.moderate < self.complex:
            raise ValueError("thresholds: must satisfy simple < moderate < complex")

    def band_for(self, score: int) -> ComplexityBand:
        if score <= self.simple:
            return ComplexityBand.SIMPLE
        if score <= self.moderate:
            return ComplexityBand.MODERATE
        if score <= self.complex:
            return ComplexityBand.COMPLEX
        return ComplexityBand.EXTREME


@dataclass(frozen=True, slots=True)
class FactorWeights:
    technical: float = 1.0
    integration: float = 0.8
    security: float = 0.6
    coordination: float = 0.7
    timeline: float = 0.5

    def __post_init__(self) -> None:
        for name in ("technical", "integration", "security", "coordination", "timeline"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"weights.{name}: expected number")
            if value < 0:
                raise ValueError(f"weights.{name}: must be >= 0")

    def as_dict(self) -> dict[str, float]:
        return {
            "technical": float(self.technical),
            "integration": float(self.integration),
            "security": float(self.security),
            "coordination": float(self.coordination),
            "timeline": float(self.timeline),
        }


class ComplexityAnalyzer:
    """Deterministic keyword-weighted complexity scoring."""

    __slots__ = ("_thresholds", "_weights", "_logger")

    def __init__(
        self,
        *,
        thresholds: BandThresholds | None = None,
        weights: FactorWeights | None = None,
        logger: Any | None = None,
    ) -> None:
        self._thresholds = thresholds if thresholds is not None else BandThresholds()
        self._weights = weights if weights is not None else FactorWeights()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def thresholds(self) -> BandThresholds:
        return self._thresholds

    @property
    def weights(self) -> FactorWeights:
        return self._weights

    def analyze(self, request: Request | Mapping[str, object]) -> ComplexityAnalysis:
        parsed = self._coerce_request(request)
        text = parsed.text
        domains = identify_domains(text)

        factors = {
            "technical": _technical_depth(text, parsed.requirements),
            "integration": _integration_needs(text),
            "security": _security_pressure(
                text, has_deadline=parsed.constraints.deadline is not None
            ),
            "coordination": _coordination_needs(text, domain_count=_real_domain_count(domains)),
            "timeline": _timeline_pressure(text),
        }
        weights = self._weights.as_dict()
        weighted_sum = sum(weights[name] * value for name, value in factors.items())
        score = _clamp_score(round(weighted_sum / 2))
        band = self._thresholds.band_for(score)

        capabilities = identify_capabilities(text)
        analysis = ComplexityAnalysis(
            score=score,
            band=band,
            domain_count=_real_domain_count(domains),
            domains=domains,
            required_capabilities=capabilities,
            suggested_executor_types=suggest_executor_types(capabilities, domains, band),
            uncertainty=_uncertainty(text),
            strategy=select_strategy(parsed, domains),
            factors=factors,
        )
        self._logger.info(
            "complexity_analyzed",
            score=analysis.score,
            band=analysis.band.value,
            domains=list(analysis.domains),
            capabilities=list(analysis.required_capabilities),
            strategy=analysis.strategy.value,
            factors=factors,
        )
        return analysis

    @staticmethod
    def _coerce_request(request: Request | Mapping[str, object]) -> Request:
        if isinstance(request, Request):
            parsed = request
        elif isinstance(request, Mapping):
            try:
                parsed = Request.from_dict(request)
            except ValueError as exc:
                raise AnalysisError(f"malformed request: {exc}") from exc
        else:
            raise AnalysisError(
                f"malformed request: expected Request or mapping, got {type(request).__name__}"
            )
        if parsed.is_empty:
            raise AnalysisError("empty request: description and requirements are both empty")
        return parsed


def identify_domains(text: str) -> tuple[str, ...]:
    """Return matching domains in canonical order, or ``("general",)``."""
    matched = tuple(name for name, pattern in DOMAIN_PATTERNS if pattern.search(text))
    return matched if matched else (GENERAL_DOMAIN,)


def identify_capabilities(text: str) -> tuple[str, ...]:
    """Return matching capabilities in lifecycle order, or ``("implement",)``."""
    matched = tuple(name for name in CAPABILITY_ORDER if CAPABILITY_PATTERNS[name].search(text))
    return matched if matched else (DEFAULT_CAPABILITY,)


def suggest_executor_types(
    capabilities: Sequence[str],
    domains: Sequence[str],
    band: ComplexityBand,
) -> tuple[str, ...]:
    suggestions: list[str] = []
    for capability in capabilities:
        executor_type = _CAPABILITY_EXECUTOR_TYPES.get(capability)
        if executor_type is not None and executor_type not in suggestions:
            suggestions.append(executor_type)
    for domain in domains:
        executor_type = _DOMAIN_EXECUTOR_TYPES.get(domain)
        if executor_type is not None and executor_type not in suggestions:
            suggestions.append(executor_type)
    if band is ComplexityBand.EXTREME and _COORDINATOR_TYPE not in suggestions:
        suggestions.append(_COORDINATOR_TYPE)
    return tuple(suggestions)


def select_strategy(request: Request, domains: Sequence[str]) -> DecompositionStrategy:
    """Explicit structure first: custom phases, then goals, then domain breadth."""
    if request.custom_phases:
        return DecompositionStrategy.PHASE
    if request.goals:
        return DecompositionStrategy.GOAL
    if _real_domain_count(domains) > 1:
        return DecompositionStrategy.DOMAIN
    return DecompositionStrategy.CAPABILITY


def _technical_depth(text: str, requirements: Sequence[str]) -> float:
    score = _TECHNICAL_BASE
    for pattern, weight in _TECHNICAL_INDICATORS:
        if pattern.search(text):
            score += weight
    if len(requirements) > _STRUCTURE_REQUIREMENT_COUNT:
        score += 1.0
    return min(10.0, score)


def _integration_needs(text: str) -> float:
    hits = sum(1 for pattern in _INTEGRATION_PATTERNS if pattern.search(text))
    return min(10.0, hits * _INTEGRATION_POINTS)


def _security_pressure(text: str, *, has_deadline: bool) -> float:
    hits = sum(1 for pattern in _SECURITY_PATTERNS if pattern.search(text))
    score = hits * _SECURITY_POINTS
    if has_deadline:
        score += _DEADLINE_PRESSURE_POINTS
    return min(10.0, score)


def _coordination_needs(text: str, *, domain_count: int) -> float:
    score = _COORDINATION_BASE
    if _MULTI_COMPONENT_RE.search(text):
        score += 3.0
    if _TEAM_RE.search(text):
        score += 2.0
    if _PHASED_RE.search(text):
        score += 2.0
    score += max(0, domain_count - 1)
    return min(10.0, score)


def _timeline_pressure(text: str) -> float:
    score = _TIMELINE_BASE
    if _URGENCY_RE.search(text):
        score += 4.0
    if _PROTOTYPE_RE.search(text):
        score += 2.0
    if _DEADLINE_RE.search(text):
        score += 3.0
    return min(10.0, score)


def _uncertainty(text: str) -> float:
    score = _UNCERTAINTY_BASE
    if _EXPLORATORY_RE.search(text):
        score += 2.0
    if _NOVEL_RE.search(text):
        score += 2.0
    if _CONCRETE_RE.search(text):
        score -= 2.0
    return max(0.0, min(10.0, score))


def _real_domain_count(domains: Sequence[str]) -> int:
    return sum(1 for domain in domains if domain != GENERAL_DOMAIN)


def _clamp_score(value: float) -> int:
    return int(max(MIN_COMPLEXITY, min(MAX_COMPLEXITY, value)))


__all__ = [
    "CAPABILITY_ORDER",
    "BandThresholds",
    "ComplexityAnalyzer",
    "FactorWeights",
    "identify_capabilities",
    "identify_domains",
    "select_strategy",
    "suggest_executor_types",
]
