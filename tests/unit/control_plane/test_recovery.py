"""Unit tests for failure classification and recovery decisions."""

from __future__ import annotations

import pytest

from workflow_orchestrator.control_plane.recovery import (
    STRATEGY_TABLE,
    ErrorClass,
    RecoveryAction,
    RecoveryManager,
    RecoveryPolicy,
    Strategy,
    classify_error,
)
from workflow_orchestrator.domain.errors import (
    BudgetExceededError,
    ExecutorUnavailableError,
    HandoffError,
    NodeExecutionError,
    NodeTimeoutError,
    OrchestrationError,
    RecoveryExhaustedError,
    SafetyLimitExceeded,
    SafetyLimitKind,
)
from workflow_orchestrator.domain.models import ExecutorDescriptor, TaskNode
from workflow_orchestrator.planning.executors import ExecutorRegistry

_PRIMARY = ExecutorDescriptor(type="developer", name="primary", capabilities=("implement",))
_BACKUP = ExecutorDescriptor(type="developer", name="backup", capabilities=("implement",))


def _node(*, critical: bool = False, optional: bool = False) -> TaskNode:
    return TaskNode(
        id="impl",
        description="Implement the feature",
        complexity=3,
        capability_needs=("implement",),
        critical=critical,
        optional=optional,
        executor=_PRIMARY,
    )


def _error_for(error_class: ErrorClass) -> BaseException:
    return {
        ErrorClass.EXECUTOR_UNAVAILABLE: ExecutorUnavailableError("offline"),
        ErrorClass.HANDOFF_FAILED: HandoffError("context lost"),
        ErrorClass.EXECUTION_ERROR: NodeExecutionError("boom"),
        ErrorClass.TIMEOUT: NodeTimeoutError(5.0),
        ErrorClass.SAFETY_LIMIT: SafetyLimitExceeded(
            SafetyLimitKind.DEPTH, parent_id="agent-root", limit=3, observed=4
        ),
        ErrorClass.BUDGET_EXCEEDED: BudgetExceededError(
            shortfall=1.0, unaccommodated=("impl",), estimate=2.0, budget=1.0
        ),
        ErrorClass.UNKNOWN: OrchestrationError("mystery"),
    }[error_class]


def test_classify_error_maps_taxonomy_and_unwraps_causes() -> None:
    for error_class in ErrorClass:
        assert classify_error(_error_for(error_class)) is error_class

    assert classify_error(TimeoutError()) is ErrorClass.TIMEOUT
    assert classify_error(ValueError("bad")) is ErrorClass.UNKNOWN
    assert classify_error(NodeExecutionError("x", cause=TimeoutError())) is ErrorClass.TIMEOUT
    assert classify_error(NodeExecutionError("x", cause=ValueError())) is ErrorClass.EXECUTION_ERROR


def test_strategy_table_covers_every_error_class() -> None:
    assert set(STRATEGY_TABLE) == set(ErrorClass)
    assert STRATEGY_TABLE[ErrorClass.UNKNOWN] == ()
    assert STRATEGY_TABLE[ErrorClass.SAFETY_LIMIT] == (Strategy.SKIP_OPTIONAL, Strategy.ESCALATE)


def test_policy_backoff_doubles_and_caps() -> None:
    policy = RecoveryPolicy(base_delay_seconds=2.0, max_delay_seconds=10.0)

    assert [policy.backoff(attempt) for attempt in (1, 2, 3, 4, 5)] == [2.0, 4.0, 8.0, 10.0, 10.0]
    assert policy.backoff(0) == 2.0


@pytest.mark.parametrize(
    ("kwargs", "message"),
    [
        ({"max_retries": -1}, "max_retries must be >= 0"),
        ({"max_retries": True}, "max_retries must be an integer"),
        ({"base_delay_seconds": -1.0}, "base_delay_seconds"),
        ({"base_delay_seconds": 5.0, "max_delay_seconds": 1.0}, "max_delay_seconds"),
        ({"timeout_multiplier": 0.5}, "timeout_multiplier"),
    ],
)
def test_policy_rejects_invalid_values(kwargs: dict[str, object], message: str) -> None:
    with pytest.raises(ValueError, match=message):
        RecoveryPolicy(**kwargs)  # type: ignore[arg-type]


def test_execution_error_retries_with_backoff_then_escalates_when_exhausted() -> None:
    manager = RecoveryManager(RecoveryPolicy(max_retries=2, base_delay_seconds=1.0))
    node = _node(critical=True)

    first = manager.handle(node, NodeExecutionError("boom"), workflow_id="wf-1", attempt=1)
    assert first.action is RecoveryAction.RETRY
    assert first.strategy is Strategy.RETRY_BACKOFF
    assert first.attempt == 2
    assert first.delay_seconds == 1.0

    second = manager.handle(node, NodeExecutionError("boom"), workflow_id="wf-1", attempt=2)
    assert second.action is RecoveryAction.RETRY
    assert second.delay_seconds == 2.0

    final = manager.handle(
        node, NodeExecutionError("boom"), workflow_id="wf-1", executor=_PRIMARY, attempt=3
    )
    assert final.action is RecoveryAction.ESCALATE
    assert final.exhausted
    assert isinstance(final.error, RecoveryExhaustedError)
    assert final.error.attempts == 3
    assert final.escalation is not None
    assert final.escalation.node_id == "impl"
    assert final.escalation.workflow_id == "wf-1"
    assert final.escalation.critical is True
    assert final.escalation.executor == "primary"
    assert final.escalation.error_class == "execution-error"
    assert final.escalation.suggested_actions
    assert manager.escalations == (final.escalation,)
    assert manager.attempts("impl") == 3


def test_exhausted_optional_node_is_skipped() -> None:
    manager = RecoveryManager(RecoveryPolicy(max_retries=0))

    decision = manager.handle(_node(optional=True), NodeExecutionError("boom"), attempt=1)

    assert decision.action is RecoveryAction.SKIP
    assert decision.strategy is Strategy.SKIP_OPTIONAL
    assert decision.exhausted
    assert decision.escalation is None


def test_timeout_retry_extends_timeout() -> None:
    manager = RecoveryManager(RecoveryPolicy(timeout_multiplier=2.0))

    decision = manager.handle(_node(), TimeoutError(), attempt=1, timeout_seconds=10.0)

    assert decision.action is RecoveryAction.RETRY
    assert decision.strategy is Strategy.RETRY_EXTENDED_TIMEOUT
    assert decision.timeout_seconds == 20.0
    assert isinstance(decision.error, NodeTimeoutError)
    assert decision.error.timeout_seconds == 10.0


def test_executor_unavailable_retries_simplified_then_substitutes() -> None:
    registry = ExecutorRegistry([_PRIMARY, _BACKUP])
    manager = RecoveryManager(RecoveryPolicy(max_retries=1), registry=registry)
    node = _node(critical=True)

    retry = manager.handle(node, ExecutorUnavailableError("offline"), executor=_PRIMARY, attempt=1)
    assert retry.action is RecoveryAction.RETRY
    assert retry.simplified is True

    swap = manager.handle(node, ExecutorUnavailableError("offline"), executor=_PRIMARY, attempt=2)
    assert swap.action is RecoveryAction.SUBSTITUTE
    assert swap.substitute == _BACKUP
    assert swap.action.dispatches_again

    # Every capable executor has now been tried once.
    last = manager.handle(node, ExecutorUnavailableError("offline"), executor=_BACKUP, attempt=3)
    assert last.action is RecoveryAction.ESCALATE
    assert last.exhausted


def test_substitution_falls_back_to_registry_fallback() -> None:
    generic = ExecutorDescriptor(type="generalist", name="generic", capabilities=())
    registry = ExecutorRegistry([_PRIMARY], fallback=generic)
    manager = RecoveryManager(RecoveryPolicy(max_retries=0), registry=registry)

    decision = manager.handle(_node(), NodeExecutionError("boom"), executor=_PRIMARY, attempt=1)

    assert decision.action is RecoveryAction.SUBSTITUTE
    assert decision.substitute == generic


def test_handoff_failure_degrades_non_critical_and_escalates_critical() -> None:
    manager = RecoveryManager(RecoveryPolicy(max_retries=0))

    degraded = manager.handle(_node(), HandoffError("context lost"), attempt=1)
    assert degraded.action is RecoveryAction.DEGRADE
    assert degraded.exhausted

    escalated = manager.handle(_node(critical=True), HandoffError("context lost"), attempt=1)
    assert escalated.action is RecoveryAction.ESCALATE


def test_safety_and_budget_rejections_are_not_retried() -> None:
    manager = RecoveryManager()

    for error_class in (ErrorClass.SAFETY_LIMIT, ErrorClass.BUDGET_EXCEEDED):
        skipped = manager.handle(_node(optional=True), _error_for(error_class), attempt=1)
        assert skipped.action is RecoveryAction.SKIP
        assert not skipped.exhausted

        escalated = manager.handle(_node(), _error_for(error_class), attempt=1)
        assert escalated.action is RecoveryAction.ESCALATE
        assert escalated.error_class is error_class
        assert not escalated.exhausted


def test_unknown_errors_fail_with_structured_error() -> None:
    manager = RecoveryManager()

    decision = manager.handle(_node(), ValueError("bad input"), workflow_id="wf-2", attempt=1)

    assert decision.action is RecoveryAction.FAIL
    assert decision.error_class is ErrorClass.UNKNOWN
    assert isinstance(decision.error, NodeExecutionError)
    assert decision.error.workflow_id == "wf-2"
    assert decision.error.node_id == "impl"
    assert decision.to_dict()["error"]["type"] == "NodeExecutionError"


@pytest.mark.parametrize("error_class", list(ErrorClass))
@pytest.mark.parametrize("flags", [{}, {"critical": True}, {"optional": True}])
@pytest.mark.parametrize("attempt", [1, 4])
def test_handle_always_returns_a_decision(
    error_class: ErrorClass, flags: dict[str, bool], attempt: int
) -> None:
    registry = ExecutorRegistry([_PRIMARY, _BACKUP])
    manager = RecoveryManager(registry=registry)
    node = _node(**flags)

    decision = manager.handle(
        node, _error_for(error_class), executor=_PRIMARY, attempt=attempt, timeout_seconds=1.0
    )

    assert decision.node_id == "impl"
    assert decision.error_class is error_class
    assert decision.error is not None
    if decision.action is RecoveryAction.SKIP:
        assert node.optional
    if decision.action is RecoveryAction.DEGRADE:
        assert not node.critical
    if decision.action is RecoveryAction.RETRY:
        assert attempt <= manager.policy.max_retries
    if decision.action is RecoveryAction.ESCALATE:
        assert decision.escalation is not None
    else:
        assert decision.escalation is None


def test_internal_failure_still_yields_fail_decision() -> None:
    class _BrokenRegistry:
        fallback = None

        def candidates(self, needs, *, preferred_type=None):
            raise RuntimeError("registry offline")

    manager = RecoveryManager(
        RecoveryPolicy(max_retries=0),
        registry=_BrokenRegistry(),  # type: ignore[arg-type]
    )

    decision = manager.handle(_node(), NodeExecutionError("boom"), attempt=1)

    assert decision.action is RecoveryAction.FAIL
    assert decision.error_class is ErrorClass.UNKNOWN
    assert manager.history("impl") == (decision,)


def test_history_statistics_and_reset() -> None:
    manager = RecoveryManager(RecoveryPolicy(max_retries=1))
    other = TaskNode(id="other", description="Other", complexity=1)

    manager.handle(_node(), NodeExecutionError("boom"))
    manager.handle(_node(), NodeExecutionError("boom"))
    manager.handle(other, OrchestrationError("mystery"))

    assert manager.attempts("impl") == 2
    assert len(manager.history()) == 3
    assert [item.action for item in manager.history("impl")] == [
        RecoveryAction.RETRY,
        RecoveryAction.ESCALATE,
    ]
    stats = manager.statistics()
    assert stats["total"] == 3
    assert stats["by_error_class"] == {"execution-error": 2, "unknown": 1}
    assert stats["by_action"] == {"escalate": 1, "fail": 1, "retry": 1}
    assert stats["escalations"] == 1

    manager.reset("impl")
    assert manager.attempts("impl") == 0
    assert len(manager.history()) == 1
    assert len(manager.escalations) == 1

    manager.reset()
    assert manager.history() == ()
    assert manager.escalations == ()
