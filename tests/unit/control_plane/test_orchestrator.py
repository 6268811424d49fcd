"""Unit tests for the end-to-end orchestration facade."""

from __future__ import annotations

import pytest

from workflow_orchestrator.config.loader import load_config
from workflow_orchestrator.control_plane.orchestrator import WorkflowOrchestrator, WorkflowPlan
from workflow_orchestrator.control_plane.safety import SafetyLimits
from workflow_orchestrator.domain.errors import BudgetExceededError, EscalationRequiredError
from workflow_orchestrator.domain.models import (
    Budget,
    BudgetPolicy,
    ExecutorResult,
    NodeStatus,
    Request,
    UsageHint,
    WorkflowStatus,
)
from workflow_orchestrator.observability.events import ProgressBus
from workflow_orchestrator.persistence.snapshots import InMemorySnapshotStore

_TRIVIAL = {"description": "Fix typo in README"}
_EXTREME = {
    "description": (
        "Build a distributed real-time machine learning platform with blockchain security, "
        "performance benchmark, API integration, database migration and OAuth authentication. "
        "Frontend and backend team must coordinate in phases; urgent MVP before deadline. "
        "Encrypt data for GDPR compliance, audit threat monitoring, sync with external "
        "third-party webhook, export data."
    )
}
_ROOMY_LIMITS = SafetyLimits(
    max_agents_per_parent=100,
    max_total_agents=200,
    max_creations_per_window=200,
)


class _RecordingExecutor:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []

    async def execute(self, node, executor, ctx) -> ExecutorResult:
        self.calls.append((node.id, executor.name))
        return ExecutorResult(output=f"{node.id} done", usage=UsageHint(cost=0.01))


def test_plan_for_trivial_request_is_a_single_direct_node() -> None:
    orchestrator = WorkflowOrchestrator(_RecordingExecutor())

    plan = orchestrator.plan(_TRIVIAL)

    assert isinstance(plan, WorkflowPlan)
    assert list(plan.graph.nodes) == ["execute"]
    assert plan.graph.node("execute").executor is not None
    assert plan.graph.node("execute").executor.name == "junior-developer"
    assert plan.needs_approval is False
    assert plan.budget.total is None
    assert plan.schedule.dropped_nodes == ()
    assert set(plan.to_dict()) == {"workflow_id", "analysis", "graph", "schedule", "budget"}


def test_plan_budget_resolution_order() -> None:
    orchestrator = WorkflowOrchestrator(
        _RecordingExecutor(), default_budget=Budget(total=None, policy="economy")
    )
    request = Request.from_dict({"description": "Fix typo in README", "constraints": {"budget": 5}})

    from_request = orchestrator.plan(request)
    assert from_request.budget.total == 5.0
    assert from_request.budget.policy is BudgetPolicy.ECONOMY

    from_argument = orchestrator.plan(request, 3.0)
    assert from_argument.budget.total == 3.0

    explicit = Budget(total=2.0, policy="premium")
    assert orchestrator.plan(request, explicit).budget is explicit


def test_plan_raises_when_budget_cannot_be_met() -> None:
    orchestrator = WorkflowOrchestrator(_RecordingExecutor())

    with pytest.raises(BudgetExceededError) as excinfo:
        orchestrator.plan(_TRIVIAL, 0.0001)

    assert excinfo.value.unaccommodated == ("execute",)


@pytest.mark.asyncio
async def test_run_executes_plan_and_reports_progress() -> None:
    executor = _RecordingExecutor()
    bus = ProgressBus()
    orchestrator = WorkflowOrchestrator(executor, bus=bus)

    result = await orchestrator.run(_TRIVIAL)

    assert executor.calls == [("execute", "junior-developer")]
    assert result.status is WorkflowStatus.COMPLETED
    assert result.records["execute"].output == "execute done"
    assert result.total_cost == pytest.approx(0.01)
    assert bus.replay(workflow_id=result.workflow_id)


@pytest.mark.asyncio
async def test_extreme_request_requires_an_approval_callback() -> None:
    executor = _RecordingExecutor()
    orchestrator = WorkflowOrchestrator(executor, safety_limits=_ROOMY_LIMITS)

    with pytest.raises(EscalationRequiredError, match="approval callback is required"):
        await orchestrator.run(_EXTREME)

    with pytest.raises(EscalationRequiredError, match="was not approved"):
        await orchestrator.run(_EXTREME, approve=lambda plan: False)

    assert executor.calls == []


@pytest.mark.asyncio
async def test_extreme_request_runs_after_async_approval() -> None:
    executor = _RecordingExecutor()
    orchestrator = WorkflowOrchestrator(executor, safety_limits=_ROOMY_LIMITS)
    approved: list[WorkflowPlan] = []

    async def approve(plan: WorkflowPlan) -> bool:
        approved.append(plan)
        return True

    result = await orchestrator.run(_EXTREME, approve=approve)

    assert len(approved) == 1
    assert approved[0].needs_approval
    assert approved[0].analysis.score == 10
    assert result.workflow_id == approved[0].workflow_id
    assert result.status is WorkflowStatus.COMPLETED
    assert len(executor.calls) == len(approved[0].graph)


@pytest.mark.asyncio
async def test_from_config_wires_store_and_supports_resume(tmp_path) -> None:
    config_path = tmp_path / "workflow.toml"
    config_path.write_text(
        '[persistence]\nbackend = "memory"\n\n[recovery]\nmax_retries = 0\n',
        encoding="utf-8",
    )
    config = load_config(config_path, environ={})
    executor = _RecordingExecutor()

    orchestrator = WorkflowOrchestrator.from_config(config, executor=executor)

    assert isinstance(orchestrator.store, InMemorySnapshotStore)
    assert isinstance(orchestrator.bus, ProgressBus)
    assert orchestrator.registry.fallback is not None

    first = await orchestrator.run(_TRIVIAL)
    assert first.status is WorkflowStatus.COMPLETED

    executor.calls.clear()
    resumed = await orchestrator.resume(first.workflow_id)

    assert executor.calls == []
    assert resumed.status is WorkflowStatus.COMPLETED
    assert resumed.records["execute"].status is NodeStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_resume_requires_a_store() -> None:
    orchestrator = WorkflowOrchestrator(_RecordingExecutor())

    with pytest.raises(RuntimeError, match="snapshot store"):
        await orchestrator.resume("wf-missing")
