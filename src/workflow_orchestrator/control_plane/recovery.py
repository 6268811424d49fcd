"""
workflow-orchestrator - failure recovery

File: src/workflow_orchestrator/control_plane/recovery.py

Purpose
- Classify node failures into a fixed taxonomy and pick the first applicable
  remediation from an ordered strategy table.

Functional requirements
- ``handle`` always returns a structured ``RecoveryDecision``; it never raises.
- Retries are bounded by ``max_retries`` with exponential backoff capped at ``max_delay_seconds``.
- Once retries are exhausted only substitution with an untried executor, skip, degrade,
  escalate or fail remain; terminal decisions carry ``RecoveryExhaustedError``.
- Escalations carry a structured ``EscalationPayload`` for an external operator.
- Attempts and decisions are tracked per node for reporting and replay.
"""

from __future__ import annotations

import threading
from collections import Counter
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Final

import structlog

from workflow_orchestrator.domain.errors import (
    BudgetExceededError,
    ExecutorUnavailableError,
    HandoffError,
    NodeExecutionError,
    NodeTimeoutError,
    OrchestrationError,
    RecoveryExhaustedError,
    SafetyLimitExceeded,
)
from workflow_orchestrator.domain.ids import generate_escalation_id
from workflow_orchestrator.domain.models import EscalationPayload

if TYPE_CHECKING:
    from workflow_orchestrator.domain.models import ExecutorDescriptor, TaskNode
    from workflow_orchestrator.planning.executors import ExecutorRegistry


class ErrorClass(StrEnum):
    EXECUTOR_UNAVAILABLE = "executor-unavailable"
    HANDOFF_FAILED = "handoff-failed"
    EXECUTION_ERROR = "execution-error"
    TIMEOUT = "timeout"
    SAFETY_LIMIT = "safety-limit"
    BUDGET_EXCEEDED = "budget-exceeded"
    UNKNOWN = "unknown"


class RecoveryAction(StrEnum):
    RETRY = "retry"
    SUBSTITUTE = "substitute"
    SKIP = "skip"
    ESCALATE = "escalate"
    DEGRADE = "degrade"
    FAIL = "fail"

    @property
    def dispatches_again(self) -> bool:
        return self in (RecoveryAction.RETRY, RecoveryAction.SUBSTITUTE)


class Strategy(StrEnum):
    RETRY = "retry"
    RETRY_BACKOFF = "retry-with-backoff"
    RETRY_SIMPLIFIED = "retry-simplified"
    RETRY_EXTENDED_TIMEOUT = "retry-extended-timeout"
    SUBSTITUTE_EXECUTOR = "substitute-executor"
    SKIP_OPTIONAL = "skip-optional"
    DEGRADE = "degrade"
    ESCALATE = "escalate"


STRATEGY_TABLE: Final[Mapping[ErrorClass, tuple[Strategy, ...]]] = MappingProxyType(
    {
        ErrorClass.EXECUTOR_UNAVAILABLE: (
            Strategy.RETRY_SIMPLIFIED,
            Strategy.SUBSTITUTE_EXECUTOR,
            Strategy.SKIP_OPTIONAL,
            Strategy.ESCALATE,
        ),
        ErrorClass.HANDOFF_FAILED: (
            Strategy.RETRY,
            Strategy.DEGRADE,
            Strategy.ESCALATE,
        ),
        ErrorClass.EXECUTION_ERROR: (
            Strategy.RETRY_BACKOFF,
            Strategy.SUBSTITUTE_EXECUTOR,
            Strategy.SKIP_OPTIONAL,
            Strategy.ESCALATE,
        ),
        ErrorClass.TIMEOUT: (
            Strategy.RETRY_EXTENDED_TIMEOUT,
            Strategy.SKIP_OPTIONAL,
            Strategy.ESCALATE,
        ),
        ErrorClass.SAFETY_LIMIT: (Strategy.SKIP_OPTIONAL, Strategy.ESCALATE),
        ErrorClass.BUDGET_EXCEEDED: (Strategy.SKIP_OPTIONAL, Strategy.ESCALATE),
        ErrorClass.UNKNOWN: (),
    }
)

_SUGGESTED_ACTIONS: Final[Mapping[ErrorClass, tuple[str, ...]]] = MappingProxyType(
    {
        ErrorClass.EXECUTOR_UNAVAILABLE: (
            "register an executor covering the node's capabilities",
            "check executor availability and credentials",
        ),
        ErrorClass.HANDOFF_FAILED: (
            "inspect the context passed between executors",
            "re-run the upstream node",
        ),
        ErrorClass.EXECUTION_ERROR: (
            "review the executor error output",
            "split the node into smaller tasks",
        ),
        ErrorClass.TIMEOUT: (
            "raise the node timeout",
            "split the node into smaller tasks",
        ),
        ErrorClass.SAFETY_LIMIT: (
            "raise the safety limits for this workflow",
            "reduce nested agent spawning",
        ),
        ErrorClass.BUDGET_EXCEEDED: (
            "raise the workflow budget",
            "switch to the economy budget policy",
        ),
        ErrorClass.UNKNOWN: ("investigate the failure manually",),
    }
)

_RETRY_STRATEGIES: Final[frozenset[Strategy]] = frozenset(
    {
        Strategy.RETRY,
        Strategy.RETRY_BACKOFF,
        Strategy.RETRY_SIMPLIFIED,
        Strategy.RETRY_EXTENDED_TIMEOUT,
    }
)


@dataclass(frozen=True, slots=True)
class RecoveryPolicy:
    """Retry bounds and backoff parameters."""

    max_retries: int = 3
    base_delay_seconds: float = 2.0
    max_delay_seconds: float = 30.0
    timeout_multiplier: float = 2.0

    def __post_init__(self) -> None:
        if isinstance(self.max_retries, bool) or not isinstance(self.max_retries, int):
            raise ValueError("max_retries must be an integer")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay_seconds < 0:
            raise ValueError("base_delay_seconds must be >= 0")
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        if self.timeout_multiplier < 1:
            raise ValueError("timeout_multiplier must be >= 1")

    def backoff(self, attempt: int) -> float:
        """Delay before the retry that follows failed attempt ``attempt`` (1-based)."""
        exponent = max(attempt, 1) - 1
        return min(self.base_delay_seconds * (2**exponent), self.max_delay_seconds)


@dataclass(frozen=True, slots=True)
class RecoveryDecision:
    """Outcome of one recovery consultation for one failed attempt."""

    action: RecoveryAction
    error_class: ErrorClass
    node_id: str
    attempt: int
    strategy: Strategy | None = None
    delay_seconds: float = 0.0
    timeout_seconds: float | None = None
    simplified: bool = False
    substitute: ExecutorDescriptor | None = None
    escalation: EscalationPayload | None = None
    error: OrchestrationError | None = None
    decided_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))

    @property
    def exhausted(self) -> bool:
        return isinstance(self.error, RecoveryExhaustedError)

    def to_dict(self) -> dict[str, object]:
        return {
            "action": self.action.value,
            "error_class": self.error_class.value,
            "node_id": self.node_id,
            "attempt": self.attempt,
            "strategy": None if self.strategy is None else self.strategy.value,
            "delay_seconds": self.delay_seconds,
            "timeout_seconds": self.timeout_seconds,
            "simplified": self.simplified,
            "substitute": None if self.substitute is None else self.substitute.name,
            "escalation": None if self.escalation is None else self.escalation.to_dict(),
            "error": None if self.error is None else self.error.to_dict(),
            "decided_at": self.decided_at.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class _Failure:
    node: TaskNode
    error: OrchestrationError
    error_class: ErrorClass
    workflow_id: str | None
    executor: ExecutorDescriptor | None
    attempt: int
    timeout_seconds: float | None
    retries_left: bool


def classify_error(error: BaseException) -> ErrorClass:
    """Map an exception onto the recovery taxonomy."""
    if isinstance(error, NodeExecutionError) and error.cause is not None:
        nested = classify_error(error.cause)
        if nested is not ErrorClass.UNKNOWN:
            return nested
        return ErrorClass.EXECUTION_ERROR
    if isinstance(error, ExecutorUnavailableError):
        return ErrorClass.EXECUTOR_UNAVAILABLE
    if isinstance(error, HandoffError):
        return ErrorClass.HANDOFF_FAILED
    if isinstance(error, (NodeTimeoutError, TimeoutError)):
        return ErrorClass.TIMEOUT
    if isinstance(error, SafetyLimitExceeded):
        return ErrorClass.SAFETY_LIMIT
    if isinstance(error, BudgetExceededError):
        return ErrorClass.BUDGET_EXCEEDED
    if isinstance(error, NodeExecutionError):
        return ErrorClass.EXECUTION_ERROR
    return ErrorClass.UNKNOWN


class RecoveryManager:
    """Pick a remediation for each node failure and keep per-node bookkeeping."""

    __slots__ = (
        "_policy",
        "_registry",
        "_logger",
        "_lock",
        "_attempts",
        "_history",
        "_tried_executors",
        "_escalations",
    )

    def __init__(
        self,
        policy: RecoveryPolicy | None = None,
        *,
        registry: ExecutorRegistry | None = None,
        logger: Any | None = None,
    ) -> None:
        self._policy = policy if policy is not None else RecoveryPolicy()
        self._registry = registry
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._lock = threading.Lock()
        self._attempts: dict[str, int] = {}
        self._history: list[RecoveryDecision] = []
        self._tried_executors: dict[str, set[str]] = {}
        self._escalations: list[EscalationPayload] = []

    @property
    def policy(self) -> RecoveryPolicy:
        return self._policy

    @property
    def escalations(self) -> tuple[EscalationPayload, ...]:
        with self._lock:
            return tuple(self._escalations)

    def attempts(self, node_id: str) -> int:
        with self._lock:
            return self._attempts.get(node_id, 0)

    def history(self, node_id: str | None = None) -> tuple[RecoveryDecision, ...]:
        with self._lock:
            if node_id is None:
                return tuple(self._history)
            return tuple(item for item in self._history if item.node_id == node_id)

    def statistics(self) -> dict[str, object]:
        with self._lock:
            by_class = Counter(item.error_class.value for item in self._history)
            by_action = Counter(item.action.value for item in self._history)
            return {
                "total": len(self._history),
                "by_error_class": dict(sorted(by_class.items())),
                "by_action": dict(sorted(by_action.items())),
                "escalations": len(self._escalations),
            }

    def reset(self, node_id: str | None = None) -> None:
        with self._lock:
            if node_id is None:
                self._attempts.clear()
                self._history.clear()
                self._tried_executors.clear()
                self._escalations.clear()
                return
            self._attempts.pop(node_id, None)
            self._tried_executors.pop(node_id, None)
            self._history = [item for item in self._history if item.node_id != node_id]

    def handle(
        self,
        node: TaskNode,
        error: BaseException,
        *,
        workflow_id: str | None = None,
        executor: ExecutorDescriptor | None = None,
        attempt: int | None = None,
        timeout_seconds: float | None = None,
    ) -> RecoveryDecision:
        """Choose what happens after ``node`` failed on ``attempt``; never raises."""
        try:
            decision = self._decide(
                node,
                error,
                workflow_id=workflow_id,
                executor=executor,
                attempt=attempt,
                timeout_seconds=timeout_seconds,
            )
        except Exception as exc:  # noqa: BLE001
            self._logger.error(
                "recovery_decision_failed",
                workflow_id=workflow_id,
                node_id=node.id,
                error_type=type(exc).__name__,
                detail=str(exc),
            )
            decision = RecoveryDecision(
                action=RecoveryAction.FAIL,
                error_class=ErrorClass.UNKNOWN,
                node_id=node.id,
                attempt=attempt if attempt is not None else 0,
                error=_as_orchestration_error(error, workflow_id, node.id, attempt),
            )

        with self._lock:
            self._history.append(decision)
            if decision.escalation is not None:
                self._escalations.append(decision.escalation)

        self._logger.info(
            "recovery_decision",
            workflow_id=workflow_id,
            node_id=node.id,
            attempt=decision.attempt,
            error_class=decision.error_class.value,
            action=decision.action.value,
            strategy=None if decision.strategy is None else decision.strategy.value,
            delay_seconds=decision.delay_seconds,
            exhausted=decision.exhausted,
        )
        return decision

    def _decide(
        self,
        node: TaskNode,
        error: BaseException,
        *,
        workflow_id: str | None,
        executor: ExecutorDescriptor | None,
        attempt: int | None,
        timeout_seconds: float | None,
    ) -> RecoveryDecision:
        with self._lock:
            counted = self._attempts.get(node.id, 0) + 1
            failed_attempt = attempt if attempt is not None else counted
            self._attempts[node.id] = max(counted, failed_attempt)
            if executor is not None:
                self._tried_executors.setdefault(node.id, set()).add(executor.name)

        wrapped = _as_orchestration_error(
            error, workflow_id, node.id, failed_attempt, timeout_seconds
        )
        failure = _Failure(
            node=node,
            error=wrapped,
            error_class=classify_error(error),
            workflow_id=workflow_id,
            executor=executor,
            attempt=failed_attempt,
            timeout_seconds=timeout_seconds,
            retries_left=failed_attempt <= self._policy.max_retries,
        )

        for strategy in STRATEGY_TABLE[failure.error_class]:
            decision = self._apply(strategy, failure)
            if decision is not None:
                return decision

        return RecoveryDecision(
            action=RecoveryAction.FAIL,
            error_class=failure.error_class,
            node_id=node.id,
            attempt=failed_attempt,
            error=self._terminal_error(failure),
        )

    def _apply(self, strategy: Strategy, failure: _Failure) -> RecoveryDecision | None:
        node = failure.node
        if strategy in _RETRY_STRATEGIES:
            if not failure.retries_left:
                return None
            timeout = failure.timeout_seconds
            if strategy is Strategy.RETRY_EXTENDED_TIMEOUT and timeout is not None:
                timeout = timeout * self._policy.timeout_multiplier
            return RecoveryDecision(
                action=RecoveryAction.RETRY,
                error_class=failure.error_class,
                node_id=node.id,
                attempt=failure.attempt + 1,
                strategy=strategy,
                delay_seconds=self._policy.backoff(failure.attempt),
                timeout_seconds=timeout,
                simplified=strategy is Strategy.RETRY_SIMPLIFIED,
                error=failure.error,
            )

        if strategy is Strategy.SUBSTITUTE_EXECUTOR:
            # Each executor is tried at most once per node, after the retry allowance.
            replacement = self._substitute_for(node)
            if replacement is None:
                return None
            with self._lock:
                self._tried_executors.setdefault(node.id, set()).add(replacement.name)
            return RecoveryDecision(
                action=RecoveryAction.SUBSTITUTE,
                error_class=failure.error_class,
                node_id=node.id,
                attempt=failure.attempt + 1,
                strategy=strategy,
                timeout_seconds=failure.timeout_seconds,
                substitute=replacement,
                error=failure.error,
            )

        if strategy is Strategy.SKIP_OPTIONAL:
            if not node.optional:
                return None
            return RecoveryDecision(
                action=RecoveryAction.SKIP,
                error_class=failure.error_class,
                node_id=node.id,
                attempt=failure.attempt,
                strategy=strategy,
                error=self._terminal_error(failure),
            )

        if strategy is Strategy.DEGRADE:
            if node.critical:
                return None
            return RecoveryDecision(
                action=RecoveryAction.DEGRADE,
                error_class=failure.error_class,
                node_id=node.id,
                attempt=failure.attempt,
                strategy=strategy,
                error=self._terminal_error(failure),
            )

        terminal = self._terminal_error(failure)
        return RecoveryDecision(
            action=RecoveryAction.ESCALATE,
            error_class=failure.error_class,
            node_id=node.id,
            attempt=failure.attempt,
            strategy=strategy,
            escalation=_escalation_payload(failure, terminal),
            error=terminal,
        )

    def _substitute_for(self, node: TaskNode) -> ExecutorDescriptor | None:
        if self._registry is None:
            return None
        with self._lock:
            tried = set(self._tried_executors.get(node.id, ()))
        preferred = None if node.executor is None else node.executor.type
        for match in self._registry.candidates(node.capability_needs, preferred_type=preferred):
            if match.executor.name not in tried and match.executor.covers(node.capability_needs):
                return match.executor
        fallback = self._registry.fallback
        if fallback is not None and fallback.name not in tried:
            return fallback
        return None

    def _terminal_error(self, failure: _Failure) -> OrchestrationError:
        if failure.error_class is ErrorClass.UNKNOWN or failure.retries_left:
            return failure.error
        if failure.error_class not in (
            ErrorClass.EXECUTOR_UNAVAILABLE,
            ErrorClass.HANDOFF_FAILED,
            ErrorClass.EXECUTION_ERROR,
            ErrorClass.TIMEOUT,
        ):
            return failure.error
        return RecoveryExhaustedError(
            f"recovery exhausted after {failure.attempt} attempts: {failure.error.message}",
            attempts=failure.attempt,
            last_error=failure.error,
            workflow_id=failure.workflow_id,
            node_id=failure.node.id,
        )


def _escalation_payload(failure: _Failure, error: OrchestrationError) -> EscalationPayload:
    return EscalationPayload(
        escalation_id=generate_escalation_id(),
        workflow_id=failure.workflow_id,
        node_id=failure.node.id,
        error_class=failure.error_class.value,
        message=error.message,
        attempts=failure.attempt,
        critical=failure.node.critical,
        executor=None if failure.executor is None else failure.executor.name,
        suggested_actions=_SUGGESTED_ACTIONS[failure.error_class],
        created_at=datetime.now(tz=UTC),
    )


def _as_orchestration_error(
    error: BaseException,
    workflow_id: str | None,
    node_id: str,
    attempt: int | None,
    timeout_seconds: float | None = None,
) -> OrchestrationError:
    if isinstance(error, OrchestrationError):
        return error.with_context(workflow_id=workflow_id, node_id=node_id, attempt=attempt)
    if isinstance(error, TimeoutError):
        return NodeTimeoutError(
            timeout_seconds if timeout_seconds is not None else 0.0,
            workflow_id=workflow_id,
            node_id=node_id,
            attempt=attempt,
        )
    return NodeExecutionError(
        str(error) or type(error).__name__,
        cause=error,
        workflow_id=workflow_id,
        node_id=node_id,
        attempt=attempt,
    )


__all__ = [
    "STRATEGY_TABLE",
    "ErrorClass",
    "RecoveryAction",
    "RecoveryDecision",
    "RecoveryManager",
    "RecoveryPolicy",
    "Strategy",
    "classify_error",
]
