"""
workflow-orchestrator - executor catalog, matching and composition

File: src/workflow_orchestrator/planning/executors.py

Purpose
- Hold the catalog of executor descriptors, match task capability needs
  against it and compose hybrid descriptors with named merge strategies.

Functional requirements
- Matching tiers: exact (covers every need) > partial > generic fallback.
- Within a tier: higher keyword score wins, then lower blended cost, then name.
- Merge strategies are a closed set of pure functions selected by enum.
- Catalogs load from YAML; a bundled default catalog ships with the package.

Non-functional requirements
- Deterministic for a fixed catalog; no IO outside explicit loaders.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass
from enum import StrEnum
from functools import lru_cache
from pathlib import Path
from types import MappingProxyType
from typing import Any, Final

import structlog
import yaml

from workflow_orchestrator.domain.errors import GraphValidationError
from workflow_orchestrator.domain.models import CostProfile, ExecutorDescriptor

_CAPABILITY_POINTS: Final[int] = 3
_TYPE_POINTS: Final[int] = 5
_WEIGHTED_TOOL_THRESHOLD: Final[float] = 0.3
_BEST_FEATURES_PER_EXECUTOR: Final[int] = 3
HYBRID_TYPE: Final[str] = "hybrid"


class MatchTier(StrEnum):
    EXACT = "exact"
    HYBRID = "hybrid"
    PARTIAL = "partial"
    FALLBACK = "fallback"


_TIER_RANK: Final[Mapping[MatchTier, int]] = {
    MatchTier.EXACT: 0,
    MatchTier.HYBRID: 1,
    MatchTier.PARTIAL: 2,
    MatchTier.FALLBACK: 3,
}


class MergeStrategy(StrEnum):
    UNION = "union"
    INTERSECTION = "intersection"
    WEIGHTED = "weighted"
    BEST_FEATURES = "best_features"


@dataclass(frozen=True, slots=True)
class ExecutorMatch:
    """Outcome of matching one executor against a node's capability needs."""

    executor: ExecutorDescriptor
    tier: MatchTier
    score: int
    matched: tuple[str, ...]
    needs: tuple[str, ...]

    @property
    def capability_fit(self) -> float:
        if not self.needs:
            return 1.0
        return len(self.matched) / len(self.needs)

    def sort_key(self) -> tuple[int, int, float, str]:
        return (
            _TIER_RANK[self.tier],
            -self.score,
            self.executor.cost_profile.blended_rate,
            self.executor.name,
        )


@dataclass(frozen=True, slots=True)
class ExecutorCatalog:
    executors: tuple[ExecutorDescriptor, ...]
    fallback: ExecutorDescriptor | None = None


class ExecutorRegistry:
    """Name-keyed executor catalog with deterministic capability matching."""

    __slots__ = ("_executors", "_fallback", "_compose_hybrids", "_logger")

    def __init__(
        self,
        executors: Iterable[ExecutorDescriptor] = (),
        *,
        fallback: ExecutorDescriptor | None = None,
        compose_hybrids: bool = True,
        logger: Any | None = None,
    ) -> None:
        self._executors: dict[str, ExecutorDescriptor] = {}
        self._fallback = fallback
        self._compose_hybrids = compose_hybrids
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        for executor in executors:
            self.register(executor)

    @classmethod
    def from_catalog(
        cls,
        catalog: ExecutorCatalog,
        *,
        compose_hybrids: bool = True,
        logger: Any | None = None,
    ) -> ExecutorRegistry:
        return cls(
            catalog.executors,
            fallback=catalog.fallback,
            compose_hybrids=compose_hybrids,
            logger=logger,
        )

    @classmethod
    def default(
        cls, *, compose_hybrids: bool = True, logger: Any | None = None
    ) -> ExecutorRegistry:
        return cls.from_catalog(
            load_executor_catalog(), compose_hybrids=compose_hybrids, logger=logger
        )

    def __iter__(self) -> Iterator[ExecutorDescriptor]:
        for name in sorted(self._executors):
            yield self._executors[name]

    def __len__(self) -> int:
        return len(self._executors)

    def __contains__(self, name: object) -> bool:
        return name in self._executors

    @property
    def fallback(self) -> ExecutorDescriptor | None:
        return self._fallback

    def register(self, executor: ExecutorDescriptor) -> None:
        if not isinstance(executor, ExecutorDescriptor):
            raise TypeError("executor must be an ExecutorDescriptor")
        if executor.name in self._executors:
            raise ValueError(f"executor name already registered: {executor.name!r}")
        self._executors[executor.name] = executor

    def get(self, name: str) -> ExecutorDescriptor:
        if self._fallback is not None and name == self._fallback.name:
            return self._fallback
        try:
            return self._executors[name]
        except KeyError as exc:
            raise KeyError(f"unknown executor: {name}") from exc

    def candidates(
        self,
        needs: Sequence[str],
        *,
        preferred_type: str | None = None,
    ) -> tuple[ExecutorMatch, ...]:
        """Exact and partial matches for ``needs``, best first."""
        normalized = tuple(need.lower() for need in needs)
        matches: list[ExecutorMatch] = []
        for executor in self._executors.values():
            matched = executor.matched(normalized)
            if normalized and not matched:
                continue
            tier = MatchTier.EXACT if len(matched) == len(normalized) else MatchTier.PARTIAL
            matches.append(
                ExecutorMatch(
                    executor=executor,
                    tier=tier,
                    score=_keyword_score(executor, matched, preferred_type),
                    matched=matched,
                    needs=normalized,
                )
            )
        matches.sort(key=ExecutorMatch.sort_key)
        return tuple(matches)

    def select(
        self,
        needs: Sequence[str],
        *,
        preferred_type: str | None = None,
        node_id: str | None = None,
    ) -> ExecutorMatch:
        """Pick the executor for ``needs`` or raise ``GraphValidationError``."""
        normalized = tuple(need.lower() for need in needs)
        ranked = self.candidates(normalized, preferred_type=preferred_type)
        if ranked and ranked[0].tier is MatchTier.EXACT:
            return ranked[0]

        if ranked and self._compose_hybrids:
            hybrid = self._compose_hybrid(normalized, ranked)
            if hybrid is not None:
                self._logger.info(
                    "executor_hybrid_composed",
                    node_id=node_id,
                    executor=hybrid.executor.name,
                    needs=list(normalized),
                    matched=list(hybrid.matched),
                )
                return hybrid

        if ranked:
            return ranked[0]

        if self._fallback is not None:
            self._logger.info(
                "executor_fallback_selected",
                node_id=node_id,
                executor=self._fallback.name,
                needs=list(normalized),
            )
            return ExecutorMatch(
                executor=self._fallback,
                tier=MatchTier.FALLBACK,
                score=0,
                matched=self._fallback.matched(normalized),
                needs=normalized,
            )

        raise GraphValidationError(
            f"unresolved capability for node {node_id!r}: no executor covers {list(normalized)}",
            issues=(f"unresolved capability: {need}" for need in normalized),
        )

    def cheaper_alternatives(
        self,
        current: ExecutorDescriptor,
        needs: Sequence[str],
    ) -> tuple[ExecutorDescriptor, ...]:
        """Executors covering ``needs`` that are cheaper than ``current``, cheapest first."""
        normalized = tuple(need.lower() for need in needs)
        ceiling = current.cost_profile.blended_rate
        pool = list(self._executors.values())
        if self._fallback is not None:
            pool.append(self._fallback)
        options = [
            executor
            for executor in pool
            if executor.name != current.name
            and executor.covers(normalized)
            and executor.cost_profile.blended_rate < ceiling
        ]
        options.sort(key=lambda executor: (executor.cost_profile.blended_rate, executor.name))
        return tuple(options)

    def _compose_hybrid(
        self,
        needs: tuple[str, ...],
        ranked: Sequence[ExecutorMatch],
    ) -> ExecutorMatch | None:
        parts: list[ExecutorDescriptor] = []
        covered: set[str] = set()
        for match in ranked:
            contribution = set(match.matched) - covered
            if not contribution:
                continue
            parts.append(match.executor)
            covered.update(contribution)
            if covered.issuperset(needs):
                break
        if len(parts) < 2:
            return None

        hybrid = merge_union(parts)
        matched = hybrid.matched(needs)
        tier = MatchTier.HYBRID if len(matched) == len(needs) else MatchTier.PARTIAL
        return ExecutorMatch(
            executor=hybrid,
            tier=tier,
            score=_keyword_score(hybrid, matched, None),
            matched=matched,
            needs=needs,
        )


# ---------------------------------------------------------------------------
# Merge strategies
# ---------------------------------------------------------------------------

MergeFunction = Callable[..., ExecutorDescriptor]


def merge_union(
    executors: Sequence[ExecutorDescriptor],
    *,
    name: str | None = None,
    weights: Mapping[str, float] | None = None,
) -> ExecutorDescriptor:
    """All capabilities and tools; maximum cost rates."""
    parts = _require_parts(executors)
    return ExecutorDescriptor(
        type=_merged_type(parts),
        name=name or _merged_name(MergeStrategy.UNION, parts),
        capabilities=_ordered_union(executor.capabilities for executor in parts),
        tools=_ordered_union(executor.tools for executor in parts),
        cost_profile=CostProfile(
            input_rate=max(executor.cost_profile.input_rate for executor in parts),
            output_rate=max(executor.cost_profile.output_rate for executor in parts),
        ),
    )


def merge_intersection(
    executors: Sequence[ExecutorDescriptor],
    *,
    name: str | None = None,
    weights: Mapping[str, float] | None = None,
) -> ExecutorDescriptor:
    """Common capabilities and tools; minimum cost rates."""
    parts = _require_parts(executors)
    return ExecutorDescriptor(
        type=_merged_type(parts),
        name=name or _merged_name(MergeStrategy.INTERSECTION, parts),
        capabilities=_ordered_intersection([executor.capabilities for executor in parts]),
        tools=_ordered_intersection([executor.tools for executor in parts]),
        cost_profile=CostProfile(
            input_rate=min(executor.cost_profile.input_rate for executor in parts),
            output_rate=min(executor.cost_profile.output_rate for executor in parts),
        ),
    )


def merge_weighted(
    executors: Sequence[ExecutorDescriptor],
    *,
    name: str | None = None,
    weights: Mapping[str, float] | None = None,
) -> ExecutorDescriptor:
    """
    Primary-led merge driven by per-executor weights (keyed by name).

    The highest-weighted executor is primary. Others contribute tools when their
    weight is at least 0.3 and capabilities when their weight is positive. Cost
    rates are the weight-averaged rates. Without ``weights`` every executor weighs
    1.0; executors absent from a given mapping weigh 0.
    """
    parts = _require_parts(executors)
    resolved = _resolve_weights(parts, weights)
    primary_index = max(range(len(parts)), key=lambda index: (resolved[index], -index))
    primary = parts[primary_index]

    capability_sources = [primary.capabilities]
    tool_sources = [primary.tools]
    for index, executor in enumerate(parts):
        if index == primary_index:
            continue
        if resolved[index] > 0:
            capability_sources.append(executor.capabilities)
        if resolved[index] >= _WEIGHTED_TOOL_THRESHOLD:
            tool_sources.append(executor.tools)

    total_weight = sum(resolved)
    if total_weight <= 0:
        shares = [1.0 / len(parts)] * len(parts)
    else:
        shares = [weight / total_weight for weight in resolved]

    return ExecutorDescriptor(
        type=primary.type,
        name=name or _merged_name(MergeStrategy.WEIGHTED, parts),
        capabilities=_ordered_union(capability_sources),
        tools=_ordered_union(tool_sources),
        cost_profile=CostProfile(
            input_rate=sum(
                share * executor.cost_profile.input_rate for share, executor in zip(shares, parts)
            ),
            output_rate=sum(
                share * executor.cost_profile.output_rate for share, executor in zip(shares, parts)
            ),
        ),
    )


def merge_best_features(
    executors: Sequence[ExecutorDescriptor],
    *,
    name: str | None = None,
    weights: Mapping[str, float] | None = None,
) -> ExecutorDescriptor:
    """Top three capabilities of each executor plus tools unique to one executor; mean rates."""
    parts = _require_parts(executors)
    tool_owners: dict[str, int] = {}
    for executor in parts:
        for tool in set(executor.tools):
            tool_owners[tool] = tool_owners.get(tool, 0) + 1

    count = len(parts)
    return ExecutorDescriptor(
        type=_merged_type(parts),
        name=name or _merged_name(MergeStrategy.BEST_FEATURES, parts),
        capabilities=_ordered_union(
            executor.capabilities[:_BEST_FEATURES_PER_EXECUTOR] for executor in parts
        ),
        tools=_ordered_union(
            tuple(tool for tool in executor.tools if tool_owners[tool] == 1) for executor in parts
        ),
        cost_profile=CostProfile(
            input_rate=sum(executor.cost_profile.input_rate for executor in parts) / count,
            output_rate=sum(executor.cost_profile.output_rate for executor in parts) / count,
        ),
    )


MERGE_STRATEGIES: Final[Mapping[MergeStrategy, MergeFunction]] = MappingProxyType(
    {
        MergeStrategy.UNION: merge_union,
        MergeStrategy.INTERSECTION: merge_intersection,
        MergeStrategy.WEIGHTED: merge_weighted,
        MergeStrategy.BEST_FEATURES: merge_best_features,
    }
)


def merge_executors(
    strategy: MergeStrategy | str,
    executors: Sequence[ExecutorDescriptor],
    *,
    name: str | None = None,
    weights: Mapping[str, float] | None = None,
) -> ExecutorDescriptor:
    try:
        selected = MergeStrategy(strategy)
    except ValueError as exc:
        allowed = ", ".join(item.value for item in MergeStrategy)
        raise ValueError(
            f"unknown merge strategy {strategy!r}; expected one of: {allowed}"
        ) from exc
    return MERGE_STRATEGIES[selected](executors, name=name, weights=weights)


# ---------------------------------------------------------------------------
# Catalog loading
# ---------------------------------------------------------------------------


def _bundled_catalog_path() -> Path:
    return Path(__file__).resolve().with_name("default_executors.yaml")


@lru_cache(maxsize=8)
def load_executor_catalog(path: str | Path | None = None) -> ExecutorCatalog:
    """Load an executor catalog YAML document (bundled default when ``path`` is None)."""
    resolved = _bundled_catalog_path() if path is None else Path(path).expanduser().resolve()
    try:
        with resolved.open("r", encoding="utf-8") as handle:
            payload = yaml.safe_load(handle)
    except OSError as exc:
        raise ValueError(f"failed to read executor catalog {resolved.as_posix()}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ValueError(f"invalid YAML in {resolved.as_posix()}: {exc}") from exc
    return parse_executor_catalog(payload, source=resolved.as_posix())


def parse_executor_catalog(payload: object, *, source: str = "catalog") -> ExecutorCatalog:
    records: object
    fallback_raw: object = None
    if isinstance(payload, list):
        records = payload
    elif isinstance(payload, Mapping):
        unknown = sorted(str(key) for key in payload if key not in {"executors", "fallback"})
        if unknown:
            raise ValueError(f"{source}: unexpected top-level keys: {unknown}")
        records = payload.get("executors", [])
        fallback_raw = payload.get("fallback")
    else:
        raise ValueError(f"{source}: catalog must be a list or contain an 'executors' list")

    if not isinstance(records, list):
        raise ValueError(f"{source}: 'executors' must be a list")

    executors: list[ExecutorDescriptor] = []
    seen: set[str] = set()
    for index, record in enumerate(records):
        if not isinstance(record, Mapping):
            raise ValueError(f"{source}: executors[{index}] must be an object")
        executor = ExecutorDescriptor.from_dict(record, f"{source}.executors[{index}]")
        if executor.name in seen:
            raise ValueError(f"{source}: duplicate executor name {executor.name!r}")
        seen.add(executor.name)
        executors.append(executor)

    fallback: ExecutorDescriptor | None = None
    if fallback_raw is not None:
        if not isinstance(fallback_raw, Mapping):
            raise ValueError(f"{source}: 'fallback' must be an object")
        fallback = ExecutorDescriptor.from_dict(fallback_raw, f"{source}.fallback")
    return ExecutorCatalog(executors=tuple(executors), fallback=fallback)


def _keyword_score(
    executor: ExecutorDescriptor,
    matched: Sequence[str],
    preferred_type: str | None,
) -> int:
    score = _CAPABILITY_POINTS * len(matched)
    if preferred_type is not None and executor.type == preferred_type.lower():
        score += _TYPE_POINTS
    return score


def _require_parts(executors: Sequence[ExecutorDescriptor]) -> tuple[ExecutorDescriptor, ...]:
    parts = tuple(executors)
    if not parts:
        raise ValueError("merge requires at least one executor")
    for executor in parts:
        if not isinstance(executor, ExecutorDescriptor):
            raise TypeError("merge inputs must be ExecutorDescriptor instances")
    return parts


def _merged_type(parts: Sequence[ExecutorDescriptor]) -> str:
    types = {executor.type for executor in parts}
    return parts[0].type if len(types) == 1 else HYBRID_TYPE


def _merged_name(strategy: MergeStrategy, parts: Sequence[ExecutorDescriptor]) -> str:
    return f"{strategy.value}:" + "+".join(executor.name for executor in parts)


def _ordered_union(groups: Iterable[Sequence[str]]) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for group in groups:
        for item in group:
            seen.setdefault(item, None)
    return tuple(seen)


def _ordered_intersection(groups: Sequence[Sequence[str]]) -> tuple[str, ...]:
    if not groups:
        return ()
    common = set(groups[0])
    for group in groups[1:]:
        common &= set(group)
    return tuple(item for item in dict.fromkeys(groups[0]) if item in common)


def _resolve_weights(
    parts: Sequence[ExecutorDescriptor],
    weights: Mapping[str, float] | None,
) -> list[float]:
    if weights is None:
        return [1.0] * len(parts)
    resolved: list[float] = []
    for executor in parts:
        raw = weights.get(executor.name, 0.0)
        if isinstance(raw, bool) or not isinstance(raw, (int, float)):
            raise ValueError(f"weights[{executor.name}]: expected number")
        if raw < 0:
            raise ValueError(f"weights[{executor.name}]: must be >= 0")
        resolved.append(float(raw))
    return resolved


__all__ = [
    "HYBRID_TYPE",
    "MERGE_STRATEGIES",
    "ExecutorCatalog",
    "ExecutorMatch",
    "ExecutorRegistry",
    "MatchTier",
    "MergeStrategy",
    "load_executor_catalog",
    "merge_best_features",
    "merge_executors",
    "merge_intersection",
    "merge_union",
    "merge_weighted",
    "parse_executor_catalog",
]
