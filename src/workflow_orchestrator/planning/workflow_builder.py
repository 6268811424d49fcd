"""
workflow-orchestrator - workflow graph construction

File: src/workflow_orchestrator/planning/workflow_builder.py

Purpose
- Turn a request plus its complexity analysis into a validated, frozen
  ``WorkflowGraph`` of executor-assigned task nodes.

Functional requirements
- Band behavior: ``simple`` yields one direct node, ``moderate`` a shallow
  capability graph of at most three nodes, ``complex``/``extreme`` the full
  decomposition for the selected strategy.
- Strategies: domain, phase, capability and goal.
- Edges referencing missing nodes and cycles raise ``GraphValidationError``;
  a graph is never returned partially built.
- Levels follow longest-path depth from the roots and are deterministic.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Final

import structlog

from workflow_orchestrator.constants import MAX_COMPLEXITY, MIN_COMPLEXITY
from workflow_orchestrator.domain.errors import GraphValidationError
from workflow_orchestrator.domain.ids import generate_workflow_id, slugify
from workflow_orchestrator.domain.models import (
    ComplexityAnalysis,
    ComplexityBand,
    DecompositionStrategy,
    Edge,
    Goal,
    Request,
    TaskNode,
)
from workflow_orchestrator.planning.complexity import (
    CAPABILITY_ORDER,
    GENERAL_DOMAIN,
    identify_capabilities,
)
from workflow_orchestrator.planning.executors import ExecutorRegistry
from workflow_orchestrator.planning.task_graph import TaskGraph

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from workflow_orchestrator.domain.models import ExecutorDescriptor, JSONValue

DEFAULT_PHASES: Final[tuple[str, ...]] = (
    "analysis",
    "design",
    "implementation",
    "testing",
    "deployment",
)
MODERATE_MAX_NODES: Final[int] = 3

# Node kinds keyed by capability.
_KIND_BY_CAPABILITY: Final[Mapping[str, str]] = {
    "analyze": "analysis",
    "design": "design",
    "implement": "implementation",
    "test": "testing",
    "deploy": "deployment",
}
_PHASE_NEEDS: Final[Mapping[str, tuple[str, ...]]] = {
    "analysis": ("analyze", "research"),
    "design": ("design", "architect"),
    "implementation": ("implement", "build"),
    "testing": ("test", "validate"),
    "deployment": ("deploy", "configure"),
}
_PREFERRED_TYPE_BY_KIND: Final[Mapping[str, str]] = {
    "analysis": "analyst",
    "design": "architect",
    "implementation": "developer",
    "testing": "tester",
    "deployment": "operator",
    "coordination": "coordinator",
}
_DOMAIN_CAPABILITY: Final[Mapping[str, str]] = {
    "frontend": "ui",
    "backend": "api",
    "infrastructure": "configure",
    "data": "data",
    "security": "security",
}
_DOMAIN_PREFERRED_TYPES: Final[Mapping[tuple[str, str], str]] = {
    ("frontend", "design"): "ui-designer",
    ("data", "implementation"): "data-engineer",
    ("security", "design"): "security-specialist",
}
_CRITICAL_KINDS: Final[frozenset[str]] = frozenset({"implementation", "direct"})
_OPTIONAL_KINDS: Final[frozenset[str]] = frozenset({"deployment", "coordination"})
# Priority used to trim the capability graph of the moderate band.
_MODERATE_PRIORITY: Final[tuple[str, ...]] = ("implement", "test", "design", "analyze", "deploy")
_CONSTRUCTIVE_GOAL_RE: Final[re.Pattern[str]] = re.compile(r"\b(?:build|create)", re.IGNORECASE)
_GOAL_STEPS: Final[tuple[tuple[str, str, tuple[str, ...]], ...]] = (
    ("understand", "analysis", ("analyze",)),
    ("design", "design", ("design",)),
    ("implement", "implementation", ("implement",)),
    ("verify", "testing", ("test",)),
)


class WorkflowGraph:
    """Frozen DAG of task nodes with precomputed longest-path levels."""

    __slots__ = ("_id", "_nodes", "_dag", "_levels", "_level_of", "_strategy")

    def __init__(
        self,
        *,
        nodes: Iterable[TaskNode],
        edges: Iterable[Edge | tuple[str, str]] = (),
        graph_id: str | None = None,
        strategy: DecompositionStrategy = DecompositionStrategy.CAPABILITY,
    ) -> None:
        node_map: dict[str, TaskNode] = {}
        duplicates: list[str] = []
        for node in nodes:
            if not isinstance(node, TaskNode):
                raise TypeError("nodes must be TaskNode instances")
            if node.id in node_map:
                duplicates.append(node.id)
            node_map[node.id] = node
        if duplicates:
            raise GraphValidationError(
                f"duplicate node ids: {sorted(set(duplicates))}",
                issues=(f"duplicate node {node_id}" for node_id in sorted(set(duplicates))),
                workflow_id=graph_id,
            )
        if not node_map:
            raise GraphValidationError("workflow graph has no nodes", workflow_id=graph_id)

        dag = TaskGraph(nodes=node_map)
        for raw in edges:
            parent, child = (raw.parent, raw.child) if isinstance(raw, Edge) else raw
            dag.add_edge(parent, child)
        levels = dag.levels()

        self._id = graph_id if graph_id is not None else generate_workflow_id()
        self._nodes: Mapping[str, TaskNode] = MappingProxyType(node_map)
        self._dag = dag
        self._levels = levels
        self._level_of = {node_id: index for index, level in enumerate(levels) for node_id in level}
        self._strategy = DecompositionStrategy(strategy)

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __iter__(self) -> Iterator[TaskNode]:
        for level in self._levels:
            for node_id in level:
                yield self._nodes[node_id]

    @property
    def id(self) -> str:
        return self._id

    @property
    def strategy(self) -> DecompositionStrategy:
        return self._strategy

    @property
    def nodes(self) -> Mapping[str, TaskNode]:
        return self._nodes

    @property
    def edges(self) -> tuple[Edge, ...]:
        return tuple(Edge(parent, child) for parent, child in self._dag.edges)

    @property
    def levels(self) -> tuple[tuple[str, ...], ...]:
        return self._levels

    @property
    def entry_points(self) -> tuple[str, ...]:
        return self._dag.roots

    @property
    def exit_points(self) -> tuple[str, ...]:
        return self._dag.leaves

    @property
    def estimated_duration_ms(self) -> int:
        """Sum over levels of the slowest node in each level."""
        return sum(
            max(self._nodes[node_id].duration_ms for node_id in level) for level in self._levels
        )

    def node(self, node_id: str) -> TaskNode:
        try:
            return self._nodes[node_id]
        except KeyError as exc:
            raise KeyError(f"unknown node: {node_id}") from exc

    def level_of(self, node_id: str) -> int:
        return self._level_of[node_id]

    def predecessors(self, node_id: str) -> tuple[str, ...]:
        return self._dag.parents(node_id)

    def successors(self, node_id: str) -> tuple[str, ...]:
        return self._dag.children(node_id)

    def dependents(self, node_id: str, *, transitive: bool = True) -> tuple[str, ...]:
        return self._dag.dependents(node_id, transitive=transitive)

    def critical_path(self) -> tuple[str, ...]:
        weights = {node_id: float(node.duration_ms) for node_id, node in self._nodes.items()}
        return self._dag.critical_path(weights)

    def without_nodes(self, node_ids: Iterable[str]) -> WorkflowGraph:
        """Drop ``node_ids``, bridging each removed node's parents to its children."""
        removed = sorted(set(node_ids))
        dag = self._dag.copy()
        for node_id in removed:
            if node_id not in dag:
                raise KeyError(f"unknown node: {node_id}")
            parents = dag.parents(node_id)
            children = dag.children(node_id)
            dag.remove_node(node_id)
            for parent in parents:
                for child in children:
                    dag.add_edge(parent, child)
        return WorkflowGraph(
            nodes=(node for node_id, node in self._nodes.items() if node_id not in removed),
            edges=dag.edges,
            graph_id=self._id,
            strategy=self._strategy,
        )

    def with_executor(self, node_id: str, executor: ExecutorDescriptor) -> WorkflowGraph:
        updated = dict(self._nodes)
        updated[node_id] = self.node(node_id).with_executor(executor)
        return WorkflowGraph(
            nodes=updated.values(),
            edges=self._dag.edges,
            graph_id=self._id,
            strategy=self._strategy,
        )

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "id": self._id,
            "strategy": self._strategy.value,
            "nodes": [self._nodes[node_id].to_dict() for node_id in sorted(self._nodes)],
            "edges": [edge.to_list() for edge in self.edges],
            "levels": [list(level) for level in self._levels],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> WorkflowGraph:
        raw_nodes = data.get("nodes")
        raw_edges = data.get("edges", [])
        graph_id = data.get("id")
        if not isinstance(raw_nodes, list) or not isinstance(raw_edges, list):
            raise ValueError("graph: 'nodes' and 'edges' must be arrays")
        if not isinstance(graph_id, str):
            raise ValueError("graph.id: expected string")
        edges: list[tuple[str, str]] = []
        for index, raw_edge in enumerate(raw_edges):
            if not isinstance(raw_edge, list) or len(raw_edge) != 2:
                raise ValueError(f"graph.edges[{index}]: expected [parent, child]")
            edges.append((str(raw_edge[0]), str(raw_edge[1])))
        nodes = []
        for index, raw_node in enumerate(raw_nodes):
            if not isinstance(raw_node, Mapping):
                raise ValueError(f"graph.nodes[{index}]: expected object")
            nodes.append(TaskNode.from_dict(raw_node, f"graph.nodes[{index}]"))
        return cls(
            nodes=nodes,
            edges=edges,
            graph_id=graph_id,
            strategy=DecompositionStrategy(str(data.get("strategy", "capability"))),
        )


@dataclass(frozen=True, slots=True)
class _Draft:
    id: str
    description: str
    needs: tuple[str, ...]
    kind: str
    preferred_type: str | None = None
    coordination: bool = False


class WorkflowGraphBuilder:
    """Build executor-assigned workflow graphs from analyzed requests."""

    __slots__ = ("_registry", "_logger", "_id_factory")

    def __init__(
        self,
        registry: ExecutorRegistry | None = None,
        *,
        logger: Any | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._registry = registry if registry is not None else ExecutorRegistry.default()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._id_factory = id_factory if id_factory is not None else generate_workflow_id

    @property
    def registry(self) -> ExecutorRegistry:
        return self._registry

    def build(
        self,
        request: Request,
        analysis: ComplexityAnalysis,
        *,
        strategy: DecompositionStrategy | str | None = None,
        workflow_id: str | None = None,
    ) -> WorkflowGraph:
        """
        Decompose ``request`` into a validated graph.

        An explicit ``strategy`` forces the full decomposition regardless of band.
        """
        graph_id = workflow_id if workflow_id is not None else self._id_factory()
        chosen = None if strategy is None else DecompositionStrategy(strategy)

        if chosen is None and analysis.band is ComplexityBand.SIMPLE:
            chosen = DecompositionStrategy.DIRECT
            drafts, edges = self._direct(request, analysis)
        elif chosen is None and analysis.band is ComplexityBand.MODERATE:
            chosen = DecompositionStrategy.CAPABILITY
            drafts, edges = self._capability(analysis, limit=MODERATE_MAX_NODES)
        else:
            chosen = chosen if chosen is not None else analysis.strategy
            drafts, edges = self._decompose(chosen, request, analysis)

        try:
            nodes = self._materialize(drafts, edges, request, analysis)
            graph = WorkflowGraph(nodes=nodes, edges=edges, graph_id=graph_id, strategy=chosen)
        except GraphValidationError as exc:
            self._logger.warning(
                "workflow_graph_rejected",
                workflow_id=graph_id,
                strategy=chosen.value,
                error=exc.message,
            )
            exc.with_context(workflow_id=graph_id)
            raise

        self._logger.info(
            "workflow_graph_built",
            workflow_id=graph.id,
            strategy=chosen.value,
            band=analysis.band.value,
            nodes=len(graph),
            levels=len(graph.levels),
            estimated_duration_ms=graph.estimated_duration_ms,
        )
        return graph

    def _decompose(
        self,
        strategy: DecompositionStrategy,
        request: Request,
        analysis: ComplexityAnalysis,
    ) -> tuple[list[_Draft], list[tuple[str, str]]]:
        if strategy is DecompositionStrategy.DOMAIN:
            return self._domain(analysis)
        if strategy is DecompositionStrategy.PHASE:
            return self._phase(request)
        if strategy is DecompositionStrategy.GOAL:
            return self._goal(request)
        if strategy is DecompositionStrategy.DIRECT:
            return self._direct(request, analysis)
        return self._capability(analysis)

    @staticmethod
    def _direct(
        request: Request,
        analysis: ComplexityAnalysis,
    ) -> tuple[list[_Draft], list[tuple[str, str]]]:
        description = request.description or request.requirements[0]
        suggested = analysis.suggested_executor_types
        preferred = suggested[0] if suggested else None
        draft = _Draft(
            id="execute",
            description=description,
            needs=analysis.required_capabilities,
            kind="direct",
            preferred_type=preferred,
        )
        return [draft], []

    @staticmethod
    def _domain(analysis: ComplexityAnalysis) -> tuple[list[_Draft], list[tuple[str, str]]]:
        domains = [domain for domain in analysis.domains if domain != GENERAL_DOMAIN]
        if not domains:
            domains = [GENERAL_DOMAIN]

        drafts: list[_Draft] = []
        edges: list[tuple[str, str]] = []
        implement_ids: list[str] = []
        for domain in domains:
            extra = _DOMAIN_CAPABILITY.get(domain)
            design_id = slugify("design", domain)
            implement_id = slugify("implement", domain)
            drafts.append(
                _Draft(
                    id=design_id,
                    description=f"Design the {domain} solution",
                    needs=("design", extra) if extra else ("design",),
                    kind="design",
                    preferred_type=_DOMAIN_PREFERRED_TYPES.get((domain, "design"), "architect"),
                )
            )
            drafts.append(
                _Draft(
                    id=implement_id,
                    description=f"Implement the {domain} solution",
                    needs=("implement", extra) if extra else ("implement",),
                    kind="implementation",
                    preferred_type=_DOMAIN_PREFERRED_TYPES.get(
                        (domain, "implementation"), "developer"
                    ),
                )
            )
            edges.append((design_id, implement_id))
            implement_ids.append(implement_id)

        if len(domains) > 1:
            drafts.append(
                _Draft(
                    id="integrate",
                    description=f"Integrate {', '.join(domains)} deliverables",
                    needs=("integrate",),
                    kind="integration",
                )
            )
            edges.extend((implement_id, "integrate") for implement_id in implement_ids)
        return drafts, edges

    @staticmethod
    def _phase(request: Request) -> tuple[list[_Draft], list[tuple[str, str]]]:
        phases = request.custom_phases or DEFAULT_PHASES
        drafts: list[_Draft] = []
        used: set[str] = set()
        for phase in phases:
            node_id = _unique_id(slugify(phase), used)
            lowered = phase.strip().lower()
            if lowered in _PHASE_NEEDS:
                needs = _PHASE_NEEDS[lowered]
                kind = lowered
            else:
                capability = identify_capabilities(phase)[0]
                kind = _KIND_BY_CAPABILITY[capability]
                needs = _PHASE_NEEDS[kind]
            drafts.append(
                _Draft(
                    id=node_id,
                    description=f"{phase.strip()} phase",
                    needs=needs,
                    kind=kind,
                    preferred_type=_PREFERRED_TYPE_BY_KIND.get(kind),
                )
            )
        edges = [(drafts[index].id, drafts[index + 1].id) for index in range(len(drafts) - 1)]
        return drafts, edges

    @staticmethod
    def _capability(
        analysis: ComplexityAnalysis,
        *,
        limit: int | None = None,
    ) -> tuple[list[_Draft], list[tuple[str, str]]]:
        capabilities = [cap for cap in CAPABILITY_ORDER if cap in analysis.required_capabilities]
        if not capabilities:
            capabilities = ["implement"]
        if limit is not None and len(capabilities) > limit:
            kept = set(sorted(capabilities, key=_MODERATE_PRIORITY.index)[:limit])
            capabilities = [cap for cap in capabilities if cap in kept]

        drafts: list[_Draft] = []
        edges: list[tuple[str, str]] = []
        for index, capability in enumerate(capabilities):
            kind = _KIND_BY_CAPABILITY[capability]
            drafts.append(
                _Draft(
                    id=capability,
                    description=f"Perform {kind} work",
                    needs=(capability,),
                    kind=kind,
                    preferred_type=_PREFERRED_TYPE_BY_KIND.get(kind),
                )
            )
            # Nearest present producer in lifecycle order.
            if index > 0:
                edges.append((capabilities[index - 1], capability))

        if limit is None and len(capabilities) > 2:
            drafts.append(
                _Draft(
                    id="coordinate",
                    description="Coordinate hand-offs between capability streams",
                    needs=("coordinate",),
                    kind="coordination",
                    preferred_type="coordinator",
                    coordination=True,
                )
            )
            edges.extend((capability, "coordinate") for capability in capabilities)
        return drafts, edges

    @staticmethod
    def _goal(request: Request) -> tuple[list[_Draft], list[tuple[str, str]]]:
        drafts: list[_Draft] = []
        edges: list[tuple[str, str]] = []
        # goal id -> (entry node, exit node)
        anchors: dict[str, tuple[str, str]] = {}
        depends: list[tuple[str, tuple[str, ...]]] = []
        goals = tuple(request.goals or ())

        # Explicit ids are kept verbatim and reserved before any id is generated.
        used: set[str] = set()
        duplicates: list[str] = []
        for raw in goals:
            if not isinstance(raw, Goal):
                continue
            if raw.id in used and raw.id not in duplicates:
                duplicates.append(raw.id)
            used.add(raw.id)
        if duplicates:
            raise GraphValidationError(
                "goal ids must be unique",
                issues=[f"goal id {goal_id} is declared more than once" for goal_id in duplicates],
            )

        for index, raw in enumerate(goals):
            if isinstance(raw, Goal):
                goal_id = raw.id
                description = raw.description
                depends.append((goal_id, raw.depends_on))
            else:
                goal_id = _unique_id(f"goal-{index + 1}", used)
                description = raw

            if not isinstance(raw, Goal) and _CONSTRUCTIVE_GOAL_RE.search(description):
                step_ids: list[str] = []
                for step, kind, needs in _GOAL_STEPS:
                    step_id = _unique_id(f"{goal_id}-{step}", used)
                    drafts.append(
                        _Draft(
                            id=step_id,
                            description=f"{step.capitalize()}: {description}",
                            needs=needs,
                            kind=kind,
                            preferred_type=_PREFERRED_TYPE_BY_KIND.get(kind),
                        )
                    )
                    step_ids.append(step_id)
                edges.extend(zip(step_ids, step_ids[1:]))
                anchors[goal_id] = (step_ids[0], step_ids[-1])
                continue

            needs = identify_capabilities(description)
            primary = "implement" if "implement" in needs else needs[0]
            kind = _KIND_BY_CAPABILITY[primary]
            drafts.append(
                _Draft(
                    id=goal_id,
                    description=description,
                    needs=needs,
                    kind=kind,
                    preferred_type=_PREFERRED_TYPE_BY_KIND.get(kind),
                )
            )
            anchors[goal_id] = (goal_id, goal_id)

        missing: list[str] = []
        for goal_id, references in depends:
            for reference in references:
                if reference not in anchors:
                    missing.append(f"goal {goal_id} depends on unknown goal {reference}")
                    continue
                edges.append((anchors[reference][1], anchors[goal_id][0]))
        if missing:
            raise GraphValidationError("goal dependencies reference unknown goals", issues=missing)
        return drafts, edges

    def _materialize(
        self,
        drafts: Sequence[_Draft],
        edges: Sequence[tuple[str, str]],
        request: Request,
        analysis: ComplexityAnalysis,
    ) -> list[TaskNode]:
        parent_counts: dict[str, int] = {draft.id: 0 for draft in drafts}
        for _parent, child in edges:
            if child in parent_counts:
                parent_counts[child] += 1

        thorough = bool(request.preferences.thorough)
        nodes: list[TaskNode] = []
        for draft in drafts:
            match = self._registry.select(
                draft.needs, preferred_type=draft.preferred_type, node_id=draft.id
            )
            critical = draft.kind in _CRITICAL_KINDS or (draft.kind == "testing" and thorough)
            nodes.append(
                TaskNode(
                    id=draft.id,
                    description=draft.description,
                    complexity=node_complexity(
                        capabilities=len(draft.needs),
                        dependencies=parent_counts[draft.id],
                        coordination=draft.coordination,
                        request_score=analysis.score,
                    ),
                    capability_needs=draft.needs,
                    critical=critical,
                    optional=not critical and draft.kind in _OPTIONAL_KINDS,
                    executor=match.executor,
                    kind=draft.kind,
                )
            )
        return nodes


def node_complexity(
    *,
    capabilities: int,
    dependencies: int,
    coordination: bool,
    request_score: int,
) -> int:
    """``1 + 0.5*capabilities + 0.3*dependencies + 2*coordination + score/2``, clamped."""
    raw = 1.0 + 0.5 * capabilities + 0.3 * dependencies + request_score / 2.0
    if coordination:
        raw += 2.0
    return int(max(MIN_COMPLEXITY, min(MAX_COMPLEXITY, round(raw))))


def _unique_id(candidate: str, used: set[str]) -> str:
    base = slugify(candidate)
    node_id = base
    suffix = 2
    while node_id in used:
        node_id = f"{base}-{suffix}"
        suffix += 1
    used.add(node_id)
    return node_id


__all__ = [
    "DEFAULT_PHASES",
    "MODERATE_MAX_NODES",
    "WorkflowGraph",
    "WorkflowGraphBuilder",
    "node_complexity",
]
