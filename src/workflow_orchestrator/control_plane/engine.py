"""
workflow-orchestrator - level-barrier execution engine

File: src/workflow_orchestrator/control_plane/engine.py

Purpose
- Execute a frozen workflow graph level by level, dispatching each node to a
  task executor under safety, budget, timeout and recovery supervision.

Functional requirements
- A level starts only after every node of the previous level is terminal.
- Nodes within a level run concurrently, bounded by ``max_concurrency``.
- Every dispatch registers an agent with the SafetyManager first; rejections
  block the node (critical nodes fail the workflow).
- Failures go through the RecoveryManager before the level closes.
- Failed or blocked non-optional nodes block all transitive dependents.
- Cancellation stops dispatch, cancels in-flight calls and skips every non-terminal node.
- Progress is published on the ProgressBus; checkpoints go to the SnapshotStore.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import structlog

from workflow_orchestrator.control_plane.recovery import RecoveryAction, RecoveryManager
from workflow_orchestrator.control_plane.resources import ResourceManager
from workflow_orchestrator.control_plane.safety import AgentRecord, SafetyLimits, SafetyManager
from workflow_orchestrator.control_plane.scheduler import ResourceAwareScheduler
from workflow_orchestrator.domain.errors import (
    BudgetExceededError,
    ExecutorUnavailableError,
    NodeExecutionError,
    NodeTimeoutError,
    OrchestrationError,
    SafetyLimitExceeded,
)
from workflow_orchestrator.domain.events import ProgressEventType
from workflow_orchestrator.domain.models import (
    BudgetPolicy,
    EscalationPayload,
    ExecutionRecord,
    ExecutorResult,
    NodeStatus,
    WorkflowResult,
    WorkflowStatus,
    to_json_value,
)
from workflow_orchestrator.persistence.snapshots import WorkflowSnapshot
from workflow_orchestrator.utils.concurrency import (
    CancellationToken,
    WorkerPool,
    run_with_timeout,
    sleep_unless_cancelled,
)

if TYPE_CHECKING:
    from workflow_orchestrator.domain.models import ExecutorDescriptor, TaskNode
    from workflow_orchestrator.observability.events import ProgressBus
    from workflow_orchestrator.persistence.snapshots import SnapshotStore
    from workflow_orchestrator.planning.workflow_builder import WorkflowGraph


@runtime_checkable
class TaskExecutor(Protocol):
    """Performs the work of one node; must honour ``ctx.cancel_token`` and return usage."""

    async def execute(
        self,
        node: TaskNode,
        executor: ExecutorDescriptor,
        ctx: ExecutionContext,
    ) -> ExecutorResult: ...


ExecuteFn = Callable[["TaskNode", "ExecutorDescriptor", "ExecutionContext"], Awaitable[object]]


class CallableExecutor:
    """Adapt a plain ``async def fn(node, executor, ctx)`` to the TaskExecutor protocol."""

    __slots__ = ("_fn",)

    def __init__(self, fn: ExecuteFn) -> None:
        self._fn = fn

    async def execute(
        self,
        node: TaskNode,
        executor: ExecutorDescriptor,
        ctx: ExecutionContext,
    ) -> ExecutorResult:
        return _as_executor_result(await self._fn(node, executor, ctx))


@dataclass(slots=True)
class ExecutionContext:
    """Per-attempt context handed to the task executor."""

    workflow_id: str
    node_id: str
    attempt: int
    timeout_seconds: float
    cancel_token: CancellationToken
    agent_id: str
    simplified: bool = False
    _safety: SafetyManager | None = field(default=None, repr=False)
    _spawned: list[str] = field(default_factory=list, repr=False)

    @property
    def spawned_agents(self) -> tuple[str, ...]:
        return tuple(self._spawned)

    def spawn_agent(
        self,
        parent_id: str | None = None,
        child_id: str | None = None,
    ) -> AgentRecord:
        """Register a nested agent under this node's agent (or ``parent_id``)."""
        if self._safety is None:
            raise RuntimeError("spawn_agent requires a safety manager")
        record = self._safety.register(
            parent_id if parent_id is not None else self.agent_id,
            child_id,
            workflow_id=self.workflow_id,
            node_id=self.node_id,
        )
        self._spawned.append(record.agent_id)
        return record

    def release_agent(self, agent_id: str) -> tuple[str, ...]:
        if self._safety is None:
            return ()
        return self._safety.release(agent_id)


@dataclass(frozen=True, slots=True)
class EngineConfig:
    max_concurrency: int | None = None
    node_timeout_seconds: float = 300.0
    checkpoint_each_level: bool = True

    def __post_init__(self) -> None:
        if self.max_concurrency is not None and self.max_concurrency <= 0:
            raise ValueError("max_concurrency must be > 0")
        if self.node_timeout_seconds <= 0:
            raise ValueError("node_timeout_seconds must be > 0")


class _RunState:
    __slots__ = (
        "workflow_id",
        "graph",
        "records",
        "safety",
        "owns_safety",
        "root_agent_id",
        "cancel_token",
        "max_concurrency",
        "escalations",
        "started",
        "policy",
        "next_level",
        "halted_by",
    )

    def __init__(
        self,
        *,
        workflow_id: str,
        graph: WorkflowGraph,
        records: dict[str, ExecutionRecord],
        safety: SafetyManager,
        owns_safety: bool,
        cancel_token: CancellationToken,
        max_concurrency: int,
        policy: BudgetPolicy,
    ) -> None:
        self.workflow_id = workflow_id
        self.graph = graph
        self.records = records
        self.safety = safety
        self.owns_safety = owns_safety
        self.root_agent_id: str | None = None
        self.cancel_token = cancel_token
        self.max_concurrency = max_concurrency
        self.escalations: list[EscalationPayload] = []
        self.started = time.monotonic()
        self.policy = policy
        self.next_level = 0
        # Id of a critical node the gates refused; no further work is dispatched.
        self.halted_by: str | None = None


class ExecutionEngine:
    """Run workflow graphs with level barriers, safety gating and recovery."""

    def __init__(
        self,
        executor: TaskExecutor | ExecuteFn,
        *,
        resources: ResourceManager | None = None,
        safety: SafetyManager | None = None,
        safety_limits: SafetyLimits | None = None,
        recovery: RecoveryManager | None = None,
        scheduler: ResourceAwareScheduler | None = None,
        bus: ProgressBus | None = None,
        store: SnapshotStore | None = None,
        config: EngineConfig | None = None,
        logger: Any | None = None,
    ) -> None:
        self._executor: TaskExecutor = (
            executor if isinstance(executor, TaskExecutor) else CallableExecutor(executor)
        )
        self._resources = resources if resources is not None else ResourceManager()
        self._safety = safety
        self._safety_limits = safety_limits if safety_limits is not None else SafetyLimits()
        self._recovery = recovery if recovery is not None else RecoveryManager()
        self._scheduler = (
            scheduler if scheduler is not None else ResourceAwareScheduler(self._resources)
        )
        self._bus = bus
        self._store = store
        self._config = config if config is not None else EngineConfig()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def resources(self) -> ResourceManager:
        return self._resources

    @property
    def recovery(self) -> RecoveryManager:
        return self._recovery

    @property
    def config(self) -> EngineConfig:
        return self._config

    async def run(
        self,
        graph: WorkflowGraph,
        *,
        workflow_id: str | None = None,
        cancel_token: CancellationToken | None = None,
        budget_policy: BudgetPolicy | str | None = None,
        records: Mapping[str, ExecutionRecord] | None = None,
    ) -> WorkflowResult:
        """Execute ``graph`` and return the per-node report.

        ``records`` seeds prior state; nodes already terminal are not dispatched again.
        """

        owns_safety = self._safety is None
        safety = self._safety if self._safety is not None else SafetyManager(self._safety_limits)
        state = self._new_state(
            graph,
            workflow_id=workflow_id if workflow_id is not None else graph.id,
            records=records,
            safety=safety,
            owns_safety=owns_safety,
            cancel_token=cancel_token,
            budget_policy=budget_policy,
        )
        return await self._execute(state, start_level=0)

    async def resume(
        self,
        snapshot: WorkflowSnapshot,
        *,
        cancel_token: CancellationToken | None = None,
        budget_policy: BudgetPolicy | str | None = None,
    ) -> WorkflowResult:
        """Continue a checkpointed workflow; interrupted nodes run again.

        Spend is restored from the snapshot. Spawn history is restored only into
        an engine-owned safety manager; agents left over from the interrupted run
        are released so that they no longer count against the limits.
        """

        records = {
            node_id: ExecutionRecord.from_dict(record.to_dict())
            for node_id, record in snapshot.records.items()
        }
        for record in records.values():
            record.reset_for_resume()
        self._resources.restore(snapshot.resources)

        owns_safety = self._safety is None
        if self._safety is not None:
            safety = self._safety
        else:
            safety = SafetyManager(self._safety_limits)
            safety.restore(snapshot.safety.to_dict())
            for agent_id, agent in list(safety.state.agents.items()):
                if agent.parent_id is None:
                    safety.release(agent_id)

        start_level = _resume_level(snapshot.graph, records, snapshot.next_level)
        self._logger.info(
            "engine_workflow_resumed",
            workflow_id=snapshot.workflow_id,
            next_level=snapshot.next_level,
            start_level=start_level,
            pending=sum(1 for item in records.values() if item.status is NodeStatus.PENDING),
        )
        state = self._new_state(
            snapshot.graph,
            workflow_id=snapshot.workflow_id,
            records=records,
            safety=safety,
            owns_safety=owns_safety,
            cancel_token=cancel_token,
            budget_policy=budget_policy,
        )
        return await self._execute(state, start_level=start_level)

    def _new_state(
        self,
        graph: WorkflowGraph,
        *,
        workflow_id: str,
        records: Mapping[str, ExecutionRecord] | None,
        safety: SafetyManager,
        owns_safety: bool,
        cancel_token: CancellationToken | None,
        budget_policy: BudgetPolicy | str | None,
    ) -> _RunState:
        policy = (
            BudgetPolicy.parse(budget_policy)
            if budget_policy is not None
            else self._resources.budget.policy
        )
        return _RunState(
            workflow_id=workflow_id,
            graph=graph,
            records=_initial_records(graph, records),
            safety=safety,
            owns_safety=owns_safety,
            cancel_token=cancel_token if cancel_token is not None else CancellationToken(),
            max_concurrency=(
                self._config.max_concurrency
                if self._config.max_concurrency is not None
                else ResourceAwareScheduler.max_concurrency_for(policy)
            ),
            policy=policy,
        )

    async def _execute(self, state: _RunState, *, start_level: int) -> WorkflowResult:
        graph = state.graph
        previous_hook = self._install_alert_hook(state)
        try:
            await self._emit(
                ProgressEventType.WORKFLOW_STARTED,
                state,
                payload={
                    "nodes": len(graph),
                    "levels": len(graph.levels),
                    "max_concurrency": state.max_concurrency,
                    "policy": state.policy.value,
                    "start_level": start_level,
                },
            )
            self._logger.info(
                "engine_workflow_started",
                workflow_id=state.workflow_id,
                nodes=len(graph),
                levels=len(graph.levels),
                max_concurrency=state.max_concurrency,
                start_level=start_level,
            )

            state.next_level = start_level
            if await self._register_root(state):
                for level_index in range(start_level, len(graph.levels)):
                    if state.cancel_token.is_cancelled:
                        break
                    await self._run_level(state, level_index)
                    if state.cancel_token.is_cancelled or state.halted_by is not None:
                        break
                    state.next_level = level_index + 1
                    await self._after_level(state, level_index)

            if state.cancel_token.is_cancelled:
                self._logger.warning(
                    "engine_workflow_cancelled",
                    workflow_id=state.workflow_id,
                    reason=state.cancel_token.reason,
                    next_level=state.next_level,
                )
                # Checkpoint before the sweep so the interrupted level can be resumed.
                await self._checkpoint(state, state.next_level)
                await self._skip_remaining(state, reason="cancelled")
            elif state.halted_by is not None:
                await self._skip_remaining(state, reason="critical-node-rejected")
            return await self._finish(state)
        finally:
            if self._bus is not None:
                self._resources.set_alert_hook(previous_hook)

    def _capture(self, state: _RunState, next_level: int) -> WorkflowSnapshot:
        return WorkflowSnapshot.capture(
            workflow_id=state.workflow_id,
            graph=state.graph,
            records=state.records,
            safety=state.safety.state,
            resources=self._resources.snapshot(),
            next_level=next_level,
        )

    async def _register_root(self, state: _RunState) -> bool:
        try:
            root = state.safety.register(None, workflow_id=state.workflow_id)
        except SafetyLimitExceeded as exc:
            self._logger.error(
                "engine_root_registration_rejected",
                workflow_id=state.workflow_id,
                error=exc.to_dict(),
            )
            for node_id in state.graph.nodes:
                record = state.records[node_id]
                if record.status is NodeStatus.PENDING:
                    record.error = _json_error(exc)
                    record.transition(NodeStatus.BLOCKED)
                    await self._emit(
                        ProgressEventType.NODE_BLOCKED, state, node_id=node_id, status="blocked"
                    )
            return False
        state.root_agent_id = root.agent_id
        return True

    async def _run_level(self, state: _RunState, level_index: int) -> None:
        level = state.graph.levels[level_index]
        runnable = [
            node_id for node_id in level if state.records[node_id].status is NodeStatus.PENDING
        ]
        await self._emit(
            ProgressEventType.LEVEL_STARTED,
            state,
            payload={"level": level_index, "nodes": list(level), "runnable": list(runnable)},
        )
        if not runnable:
            return

        pool: WorkerPool[None] = WorkerPool(max_concurrency=state.max_concurrency)
        async for _ in pool.run(self._run_node(state, node_id) for node_id in runnable):
            pass

    async def _after_level(self, state: _RunState, level_index: int) -> None:
        for node_id in self._scheduler.review_progress(
            state.graph, state.records, self._resources
        ):
            record = state.records[node_id]
            if record.status is not NodeStatus.PENDING:
                continue
            record.transition(NodeStatus.SKIPPED)
            await self._emit(
                ProgressEventType.NODE_SKIPPED,
                state,
                node_id=node_id,
                status=NodeStatus.SKIPPED.value,
                payload={"reason": "projected-over-budget"},
            )

        if self._store is not None and self._config.checkpoint_each_level:
            await self._checkpoint(state, level_index + 1)

        await self._emit(
            ProgressEventType.LEVEL_COMPLETED,
            state,
            payload={
                "level": level_index,
                "statuses": {
                    node_id: state.records[node_id].status.value
                    for node_id in state.graph.levels[level_index]
                },
            },
        )

    async def _run_node(self, state: _RunState, node_id: str) -> None:
        node = state.graph.node(node_id)
        record = state.records[node_id]
        executor = node.executor
        timeout = self._config.node_timeout_seconds
        simplified = False

        while True:
            if state.cancel_token.is_cancelled or state.halted_by is not None:
                return

            gate_error = self._gate(state, node)
            if gate_error is not None:
                await self._reject(state, node, record, gate_error, executor)
                return
            agent = self._register_agent(state, node)
            if isinstance(agent, SafetyLimitExceeded):
                await self._reject(state, node, record, agent, executor)
                return

            record.attempts += 1
            attempt = record.attempts
            record.transition(NodeStatus.RUNNING)
            if executor is not None:
                record.executor_name = executor.name
            await self._emit(
                ProgressEventType.NODE_STARTED,
                state,
                node_id=node_id,
                status=NodeStatus.RUNNING.value,
                payload={
                    "attempt": attempt,
                    "executor": None if executor is None else executor.name,
                    "agent_id": agent.agent_id,
                },
            )
            self._logger.info(
                "engine_node_dispatched",
                workflow_id=state.workflow_id,
                node_id=node_id,
                attempt=attempt,
                executor=None if executor is None else executor.name,
                agent_id=agent.agent_id,
                timeout_seconds=timeout,
            )

            ctx = ExecutionContext(
                workflow_id=state.workflow_id,
                node_id=node_id,
                attempt=attempt,
                timeout_seconds=timeout,
                cancel_token=state.cancel_token,
                agent_id=agent.agent_id,
                simplified=simplified,
                _safety=state.safety,
            )
            try:
                result = await self._dispatch(node, executor, ctx)
            except asyncio.CancelledError:
                if state.cancel_token.is_cancelled:
                    self._logger.info(
                        "engine_node_cancelled", workflow_id=state.workflow_id, node_id=node_id
                    )
                    return
                raise
            except OrchestrationError as exc:
                error: OrchestrationError = exc.with_context(
                    workflow_id=state.workflow_id, node_id=node_id, attempt=attempt
                )
            except TimeoutError:
                error = NodeTimeoutError(
                    timeout, workflow_id=state.workflow_id, node_id=node_id, attempt=attempt
                )
            except Exception as exc:  # noqa: BLE001
                error = NodeExecutionError(
                    str(exc) or type(exc).__name__,
                    cause=exc,
                    workflow_id=state.workflow_id,
                    node_id=node_id,
                    attempt=attempt,
                )
            else:
                await self._succeed(state, node, record, executor, result)
                return
            finally:
                state.safety.release(agent.agent_id)

            decision = self._recovery.handle(
                node,
                error,
                workflow_id=state.workflow_id,
                executor=executor,
                attempt=attempt,
                timeout_seconds=timeout,
            )
            record.error = _json_error(error)

            if decision.action.dispatches_again and not state.cancel_token.is_cancelled:
                if decision.substitute is not None:
                    executor = decision.substitute
                if decision.timeout_seconds is not None:
                    timeout = decision.timeout_seconds
                simplified = decision.simplified
                await self._emit(
                    ProgressEventType.NODE_RETRYING,
                    state,
                    node_id=node_id,
                    status=NodeStatus.RUNNING.value,
                    payload={
                        "attempt": attempt,
                        "next_attempt": decision.attempt,
                        "action": decision.action.value,
                        "error_class": decision.error_class.value,
                        "delay_seconds": decision.delay_seconds,
                        "executor": None if executor is None else executor.name,
                    },
                )
                if not await sleep_unless_cancelled(decision.delay_seconds, state.cancel_token):
                    return
                continue

            if state.cancel_token.is_cancelled:
                return

            if decision.action is RecoveryAction.SKIP:
                record.transition(NodeStatus.SKIPPED)
                await self._emit(
                    ProgressEventType.NODE_SKIPPED,
                    state,
                    node_id=node_id,
                    status=NodeStatus.SKIPPED.value,
                    payload={"reason": decision.error_class.value},
                )
                return

            if decision.error is not None:
                record.error = _json_error(decision.error)
            record.transition(NodeStatus.FAILED)
            await self._emit(
                ProgressEventType.NODE_FAILED,
                state,
                node_id=node_id,
                status=NodeStatus.FAILED.value,
                payload={
                    "attempts": record.attempts,
                    "action": decision.action.value,
                    "error_class": decision.error_class.value,
                },
            )
            await self._escalate(state, decision.escalation)
            if not node.optional:
                await self._block_dependents(state, node_id)
            return

    async def _dispatch(
        self,
        node: TaskNode,
        executor: ExecutorDescriptor | None,
        ctx: ExecutionContext,
    ) -> ExecutorResult:
        if executor is None:
            raise ExecutorUnavailableError(f"no executor assigned to node {node.id!r}")
        raw = await run_with_timeout(
            self._executor.execute(node, executor, ctx),
            ctx.timeout_seconds,
            ctx.cancel_token,
        )
        return _as_executor_result(raw)

    def _gate(self, state: _RunState, node: TaskNode) -> OrchestrationError | None:
        budget = self._resources.budget
        if budget.total is not None and self._resources.would_exceed(0.0):
            return BudgetExceededError(
                shortfall=budget.spent - budget.total,
                unaccommodated=(node.id,),
                estimate=budget.spent,
                budget=budget.total,
                workflow_id=state.workflow_id,
            )
        return None

    def _register_agent(
        self, state: _RunState, node: TaskNode
    ) -> AgentRecord | SafetyLimitExceeded:
        try:
            return state.safety.register(
                state.root_agent_id, workflow_id=state.workflow_id, node_id=node.id
            )
        except SafetyLimitExceeded as exc:
            return exc

    async def _reject(
        self,
        state: _RunState,
        node: TaskNode,
        record: ExecutionRecord,
        error: OrchestrationError,
        executor: ExecutorDescriptor | None,
    ) -> None:
        """Resolve a node that was never dispatched: safety or budget gate refused it."""
        error.with_context(workflow_id=state.workflow_id, node_id=node.id, attempt=record.attempts)
        decision = self._recovery.handle(
            node,
            error,
            workflow_id=state.workflow_id,
            executor=executor,
            attempt=max(record.attempts, 1),
        )
        record.error = _json_error(error)
        if decision.action is RecoveryAction.SKIP:
            record.transition(NodeStatus.SKIPPED)
            await self._emit(
                ProgressEventType.NODE_SKIPPED,
                state,
                node_id=node.id,
                status=NodeStatus.SKIPPED.value,
                payload={"reason": decision.error_class.value},
            )
            return

        record.transition(NodeStatus.BLOCKED)
        self._logger.warning(
            "engine_node_blocked",
            workflow_id=state.workflow_id,
            node_id=node.id,
            critical=node.critical,
            error=error.to_dict(),
        )
        await self._emit(
            ProgressEventType.NODE_BLOCKED,
            state,
            node_id=node.id,
            status=NodeStatus.BLOCKED.value,
            payload={"reason": decision.error_class.value, "critical": node.critical},
        )
        await self._escalate(state, decision.escalation)
        if not node.optional:
            await self._block_dependents(state, node.id)
        if node.critical and state.halted_by is None:
            state.halted_by = node.id
            self._logger.error(
                "engine_workflow_halted",
                workflow_id=state.workflow_id,
                node_id=node.id,
                error_class=decision.error_class.value,
            )

    async def _succeed(
        self,
        state: _RunState,
        node: TaskNode,
        record: ExecutionRecord,
        executor: ExecutorDescriptor | None,
        result: ExecutorResult,
    ) -> None:
        cost = self._resources.cost_for_usage(executor, result.usage)
        self._resources.record(node.id, cost)
        record.cost = round(record.cost + cost, 10)
        record.output = to_json_value(result.output, f"{node.id}.output")
        record.error = None
        record.transition(NodeStatus.SUCCEEDED)
        await self._emit(
            ProgressEventType.NODE_SUCCEEDED,
            state,
            node_id=node.id,
            status=NodeStatus.SUCCEEDED.value,
            payload={"attempts": record.attempts, "cost": cost},
        )
        self._logger.info(
            "engine_node_succeeded",
            workflow_id=state.workflow_id,
            node_id=node.id,
            attempts=record.attempts,
            cost=cost,
        )

    async def _block_dependents(self, state: _RunState, node_id: str) -> None:
        for dependent in state.graph.dependents(node_id, transitive=True):
            record = state.records[dependent]
            if record.status is not NodeStatus.PENDING:
                continue
            record.error = {
                "type": "DependencyFailed",
                "message": f"dependency {node_id} did not succeed",
            }
            record.transition(NodeStatus.BLOCKED)
            await self._emit(
                ProgressEventType.NODE_BLOCKED,
                state,
                node_id=dependent,
                status=NodeStatus.BLOCKED.value,
                payload={"reason": "dependency", "dependency": node_id},
            )

    async def _escalate(self, state: _RunState, escalation: EscalationPayload | None) -> None:
        if escalation is None:
            return
        state.escalations.append(escalation)
        await self._emit(
            ProgressEventType.NODE_ESCALATED,
            state,
            node_id=escalation.node_id,
            payload=escalation.to_dict(),
        )

    async def _skip_remaining(self, state: _RunState, *, reason: str) -> None:
        for node_id in state.graph.nodes:
            record = state.records[node_id]
            if record.is_terminal:
                continue
            record.transition(NodeStatus.SKIPPED)
            await self._emit(
                ProgressEventType.NODE_SKIPPED,
                state,
                node_id=node_id,
                status=NodeStatus.SKIPPED.value,
                payload={"reason": reason},
            )

    async def _checkpoint(self, state: _RunState, next_level: int) -> None:
        if self._store is None:
            return
        snapshot = self._capture(state, next_level)
        self._store.save(state.workflow_id, snapshot)
        await self._emit(
            ProgressEventType.CHECKPOINT_SAVED,
            state,
            payload={"next_level": next_level},
        )

    async def _finish(self, state: _RunState) -> WorkflowResult:
        cancelled = state.cancel_token.is_cancelled
        status = workflow_status(state.graph, state.records)

        if not cancelled:
            await self._checkpoint(state, len(state.graph.levels))
        if state.root_agent_id is not None:
            state.safety.release(state.root_agent_id)
        if state.owns_safety:
            state.safety.clear()

        result = WorkflowResult(
            workflow_id=state.workflow_id,
            status=status,
            records=dict(state.records),
            total_cost=round(sum(record.cost for record in state.records.values()), 10),
            total_duration_ms=round((time.monotonic() - state.started) * 1000.0, 3),
            escalations=tuple(state.escalations),
            cancelled=cancelled,
        )

        if cancelled:
            event_type = ProgressEventType.WORKFLOW_CANCELLED
        elif status is WorkflowStatus.FAILED:
            event_type = ProgressEventType.WORKFLOW_FAILED
        else:
            event_type = ProgressEventType.WORKFLOW_COMPLETED
        await self._emit(
            event_type,
            state,
            status=status.value,
            payload={
                "total_cost": result.total_cost,
                "total_duration_ms": result.total_duration_ms,
                "escalations": len(result.escalations),
            },
        )
        self._logger.info(
            "engine_workflow_finished",
            workflow_id=state.workflow_id,
            status=status.value,
            cancelled=cancelled,
            total_cost=result.total_cost,
            total_duration_ms=result.total_duration_ms,
            succeeded=len(result.nodes_with_status(NodeStatus.SUCCEEDED)),
            failed=len(result.nodes_with_status(NodeStatus.FAILED)),
            blocked=len(result.nodes_with_status(NodeStatus.BLOCKED)),
            skipped=len(result.nodes_with_status(NodeStatus.SKIPPED)),
        )
        return result

    def _install_alert_hook(self, state: _RunState) -> Any:
        if self._bus is None:
            return None
        bus = self._bus
        previous = self._resources.alert_hook

        def publish_alert(alert: Any) -> None:
            if previous is not None:
                previous(alert)
            bus.emit(
                ProgressEventType.BUDGET_ALERT,
                state.workflow_id,
                node_id=alert.node_id,
                status=alert.level.value,
                payload=alert.to_dict(),
            )

        return self._resources.set_alert_hook(publish_alert)

    async def _emit(
        self,
        event_type: ProgressEventType,
        state: _RunState,
        *,
        node_id: str | None = None,
        status: str | None = None,
        payload: Mapping[str, object] | None = None,
    ) -> None:
        if self._bus is None:
            return
        await self._bus.emit_async(
            event_type,
            state.workflow_id,
            node_id=node_id,
            status=status,
            payload=payload,
        )


def workflow_status(
    graph: WorkflowGraph,
    records: Mapping[str, ExecutionRecord],
) -> WorkflowStatus:
    """Failed when a critical node or every node missed success; otherwise complete or partial."""
    statuses = {node_id: records[node_id].status for node_id in graph.nodes}
    if any(
        node.critical and statuses[node_id] is not NodeStatus.SUCCEEDED
        for node_id, node in graph.nodes.items()
    ):
        return WorkflowStatus.FAILED
    succeeded = sum(1 for status in statuses.values() if status is NodeStatus.SUCCEEDED)
    if succeeded == 0:
        return WorkflowStatus.FAILED
    if succeeded == len(statuses):
        return WorkflowStatus.COMPLETED
    return WorkflowStatus.PARTIALLY_COMPLETED


def _initial_records(
    graph: WorkflowGraph,
    records: Mapping[str, ExecutionRecord] | None,
) -> dict[str, ExecutionRecord]:
    provided = dict(records) if records is not None else {}
    unknown = sorted(set(provided) - set(graph.nodes))
    if unknown:
        raise ValueError(f"records for unknown nodes: {', '.join(unknown)}")
    return {
        node_id: provided.get(node_id, ExecutionRecord(node_id=node_id))
        for node_id in graph.nodes
    }


def _resume_level(
    graph: WorkflowGraph,
    records: Mapping[str, ExecutionRecord],
    next_level: int,
) -> int:
    # Resume from the first level still holding pending work, never later than the checkpoint.
    for index, level in enumerate(graph.levels):
        if any(records[node_id].status is NodeStatus.PENDING for node_id in level):
            return min(index, next_level)
    return len(graph.levels)


def _as_executor_result(raw: object) -> ExecutorResult:
    if isinstance(raw, ExecutorResult):
        return raw
    return ExecutorResult(output=raw)


def _json_error(error: OrchestrationError) -> dict[str, Any]:
    return {key: to_json_value(value) for key, value in error.to_dict().items()}


__all__ = [
    "CallableExecutor",
    "EngineConfig",
    "ExecuteFn",
    "ExecutionContext",
    "ExecutionEngine",
    "TaskExecutor",
    "workflow_status",
]
