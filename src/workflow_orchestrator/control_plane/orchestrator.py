"""
workflow-orchestrator - pipeline facade

File: src/workflow_orchestrator/control_plane/orchestrator.py

Purpose
- Wire analysis, graph construction, budget fitting and execution into one entrypoint.

Functional requirements
- ``plan`` analyzes, builds and fits a request without dispatching anything.
- ``run`` executes a plan under a correlation scope; extreme-band requests need an
  approval callback (sync or async) before any node is dispatched.
- ``from_config`` builds every component from a validated config mapping.
"""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog

from workflow_orchestrator.control_plane.engine import (
    EngineConfig,
    ExecuteFn,
    ExecutionEngine,
    TaskExecutor,
)
from workflow_orchestrator.control_plane.recovery import RecoveryManager, RecoveryPolicy
from workflow_orchestrator.control_plane.resources import AlertHook, ResourceManager
from workflow_orchestrator.control_plane.safety import SafetyLimits, SafetyManager
from workflow_orchestrator.control_plane.scheduler import (
    PolicyWeights,
    ResourceAwareScheduler,
    ScheduleResult,
)
from workflow_orchestrator.domain.errors import EscalationRequiredError
from workflow_orchestrator.domain.models import (
    Budget,
    BudgetPolicy,
    ComplexityAnalysis,
    Request,
    WorkflowResult,
)
from workflow_orchestrator.observability.events import ProgressBus
from workflow_orchestrator.observability.logging import correlation_scope
from workflow_orchestrator.persistence.snapshots import SnapshotStore, open_snapshot_store
from workflow_orchestrator.planning.complexity import (
    BandThresholds,
    ComplexityAnalyzer,
    FactorWeights,
)
from workflow_orchestrator.planning.executors import ExecutorRegistry, load_executor_catalog
from workflow_orchestrator.planning.workflow_builder import WorkflowGraph, WorkflowGraphBuilder
from workflow_orchestrator.utils.concurrency import CancellationToken

ApprovalCallback = Callable[["WorkflowPlan"], bool | Awaitable[bool]]


@dataclass(frozen=True, slots=True)
class WorkflowPlan:
    """Analyzed, decomposed and budget-fitted request ready for dispatch."""

    request: Request
    analysis: ComplexityAnalysis
    graph: WorkflowGraph
    schedule: ScheduleResult
    budget: Budget

    @property
    def workflow_id(self) -> str:
        return self.graph.id

    @property
    def needs_approval(self) -> bool:
        return self.analysis.needs_escalation

    def to_dict(self) -> dict[str, object]:
        return {
            "workflow_id": self.workflow_id,
            "analysis": self.analysis.to_dict(),
            "graph": self.graph.to_dict(),
            "schedule": self.schedule.to_dict(),
            "budget": self.budget.to_dict(),
        }


class WorkflowOrchestrator:
    """Analyze, plan and execute work requests end to end."""

    def __init__(
        self,
        executor: TaskExecutor | ExecuteFn,
        *,
        analyzer: ComplexityAnalyzer | None = None,
        registry: ExecutorRegistry | None = None,
        builder: WorkflowGraphBuilder | None = None,
        safety_limits: SafetyLimits | None = None,
        safety: SafetyManager | None = None,
        recovery_policy: RecoveryPolicy | None = None,
        scheduler_weights: PolicyWeights | None = None,
        engine_config: EngineConfig | None = None,
        default_budget: Budget | None = None,
        warning_ratio: float = 0.8,
        critical_ratio: float = 0.95,
        bus: ProgressBus | None = None,
        store: SnapshotStore | None = None,
        alert_hook: AlertHook | None = None,
        logger: Any | None = None,
    ) -> None:
        self._executor = executor
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._analyzer = analyzer if analyzer is not None else ComplexityAnalyzer()
        if registry is None:
            registry = builder.registry if builder is not None else ExecutorRegistry.default()
        self._registry = registry
        self._builder = builder if builder is not None else WorkflowGraphBuilder(registry)
        self._safety_limits = safety_limits if safety_limits is not None else SafetyLimits()
        self._safety = safety
        self._recovery_policy = recovery_policy if recovery_policy is not None else RecoveryPolicy()
        self._scheduler_weights = (
            scheduler_weights if scheduler_weights is not None else PolicyWeights()
        )
        self._engine_config = engine_config if engine_config is not None else EngineConfig()
        self._default_budget = default_budget if default_budget is not None else Budget(total=None)
        self._warning_ratio = warning_ratio
        self._critical_ratio = critical_ratio
        self._bus = bus
        self._store = store
        self._alert_hook = alert_hook

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, Any],
        *,
        executor: TaskExecutor | ExecuteFn,
        bus: ProgressBus | None = None,
        store: SnapshotStore | None = None,
        logger: Any | None = None,
    ) -> WorkflowOrchestrator:
        """Build an orchestrator from a loaded config (see ``config.load_config``)."""

        analysis = config["analysis"]
        planning = config["planning"]
        budget = config["budget"]
        engine = config["engine"]
        persistence = config["persistence"]
        observability = config["observability"]

        catalog_path = planning.get("executor_catalog")
        registry = ExecutorRegistry.from_catalog(
            load_executor_catalog(catalog_path),
            compose_hybrids=bool(planning.get("compose_hybrids", True)),
        )
        if store is None:
            store = open_snapshot_store(str(persistence["backend"]), Path(persistence["path"]))
        if bus is None:
            bus = ProgressBus(
                buffer_size=int(observability["event_buffer_size"]),
                redact=bool(observability["redact_events"]),
            )

        return cls(
            executor,
            analyzer=ComplexityAnalyzer(
                thresholds=BandThresholds(**analysis["thresholds"]),
                weights=FactorWeights(**analysis["weights"]),
            ),
            registry=registry,
            builder=WorkflowGraphBuilder(registry),
            safety_limits=SafetyLimits(**config["safety"]),
            recovery_policy=RecoveryPolicy(**config["recovery"]),
            scheduler_weights=PolicyWeights(**config["scheduler"]),
            engine_config=EngineConfig(
                max_concurrency=engine.get("max_concurrency"),
                node_timeout_seconds=float(engine["node_timeout_seconds"]),
                checkpoint_each_level=bool(engine["checkpoint_each_level"]),
            ),
            default_budget=Budget(
                total=budget.get("total"), policy=BudgetPolicy.parse(str(budget["policy"]))
            ),
            warning_ratio=float(budget["warning_ratio"]),
            critical_ratio=float(budget["critical_ratio"]),
            bus=bus,
            store=store,
            logger=logger,
        )

    @property
    def registry(self) -> ExecutorRegistry:
        return self._registry

    @property
    def bus(self) -> ProgressBus | None:
        return self._bus

    @property
    def store(self) -> SnapshotStore | None:
        return self._store

    def plan(
        self,
        request: Request | Mapping[str, object],
        budget: Budget | float | None = None,
    ) -> WorkflowPlan:
        """Analyze and decompose ``request`` and fit the graph to the budget.

        Raises ``AnalysisError``, ``GraphValidationError`` or ``BudgetExceededError``;
        nothing is dispatched in any case.
        """

        parsed = request if isinstance(request, Request) else Request.from_dict(request)
        analysis = self._analyzer.analyze(parsed)
        graph = self._builder.build(parsed, analysis)
        effective_budget = self._resolve_budget(parsed, budget)
        resources = self._resources(effective_budget)
        schedule = self._scheduler(resources).fit(graph, effective_budget)

        self._logger.info(
            "orchestrator_plan_ready",
            workflow_id=graph.id,
            score=analysis.score,
            band=analysis.band.value,
            strategy=graph.strategy.value,
            nodes=len(schedule.graph),
            dropped=list(schedule.dropped_nodes),
            estimate=schedule.estimate.total,
            budget_total=effective_budget.total,
            policy=schedule.policy.value,
        )
        return WorkflowPlan(
            request=parsed,
            analysis=analysis,
            graph=schedule.graph,
            schedule=schedule,
            budget=effective_budget,
        )

    async def run(
        self,
        request: Request | Mapping[str, object] | WorkflowPlan,
        *,
        budget: Budget | float | None = None,
        cancel_token: CancellationToken | None = None,
        approve: ApprovalCallback | None = None,
    ) -> WorkflowResult:
        """Plan (unless given a plan) and execute a request."""

        plan = request if isinstance(request, WorkflowPlan) else self.plan(request, budget)
        with correlation_scope(workflow_id=plan.workflow_id):
            if plan.needs_approval:
                await self._require_approval(plan, approve)
            engine = self._engine(self._resources(plan.budget))
            return await engine.run(
                plan.graph,
                workflow_id=plan.workflow_id,
                cancel_token=cancel_token,
                budget_policy=plan.schedule.policy,
            )

    async def resume(
        self,
        workflow_id: str,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> WorkflowResult:
        """Continue a workflow from the last checkpoint in the configured store."""

        if self._store is None:
            raise RuntimeError("resume requires a snapshot store")
        snapshot = self._store.load(workflow_id)
        with correlation_scope(workflow_id=workflow_id):
            engine = self._engine(self._resources(snapshot.budget))
            return await engine.resume(snapshot, cancel_token=cancel_token)

    async def _require_approval(
        self, plan: WorkflowPlan, approve: ApprovalCallback | None
    ) -> None:
        if approve is None:
            self._logger.warning(
                "orchestrator_approval_missing",
                workflow_id=plan.workflow_id,
                score=plan.analysis.score,
            )
            raise EscalationRequiredError(
                f"complexity score {plan.analysis.score} is in the extreme band; "
                "an approval callback is required before dispatch",
                workflow_id=plan.workflow_id,
            )
        decision = approve(plan)
        if inspect.isawaitable(decision):
            decision = await decision
        approved = bool(decision)
        self._logger.info(
            "orchestrator_approval_decided",
            workflow_id=plan.workflow_id,
            approved=approved,
        )
        if not approved:
            raise EscalationRequiredError(
                f"workflow with complexity score {plan.analysis.score} was not approved",
                workflow_id=plan.workflow_id,
            )

    def _resolve_budget(self, request: Request, budget: Budget | float | None) -> Budget:
        if isinstance(budget, Budget):
            return budget
        policy: BudgetPolicy = self._default_budget.policy
        if budget is not None:
            return Budget(total=float(budget), policy=policy)
        if request.constraints.budget is not None:
            return Budget(total=request.constraints.budget, policy=policy)
        return Budget(total=self._default_budget.total, policy=policy)

    def _resources(self, budget: Budget) -> ResourceManager:
        return ResourceManager(
            budget,
            warning_ratio=self._warning_ratio,
            critical_ratio=self._critical_ratio,
            alert_hook=self._alert_hook,
        )

    def _scheduler(self, resources: ResourceManager) -> ResourceAwareScheduler:
        return ResourceAwareScheduler(resources, self._registry, weights=self._scheduler_weights)

    def _engine(self, resources: ResourceManager) -> ExecutionEngine:
        return ExecutionEngine(
            self._executor,
            resources=resources,
            safety=self._safety,
            safety_limits=self._safety_limits,
            recovery=RecoveryManager(self._recovery_policy, registry=self._registry),
            scheduler=self._scheduler(resources),
            bus=self._bus,
            store=self._store,
            config=self._engine_config,
        )


__all__ = ["ApprovalCallback", "WorkflowOrchestrator", "WorkflowPlan"]
