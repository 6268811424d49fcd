"""
workflow-orchestrator - error taxonomy

File: src/workflow_orchestrator/domain/errors.py

Purpose
- Structured error types raised and routed by the orchestration pipeline.

Functional requirements
- Every error carries workflow/node/attempt context and renders via ``to_dict()``
  so it can be logged, snapshotted and replayed.
- ``AnalysisError`` and ``GraphValidationError`` are fatal before dispatch.
- ``SafetyLimitExceeded`` is local to a node unless the node is critical.
- ``NodeTimeoutError``/``NodeExecutionError`` are routed through recovery first.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from enum import StrEnum


class SafetyLimitKind(StrEnum):
    """Which safety envelope limit rejected a spawn."""

    DEPTH = "depth"
    COUNT = "count"
    RATE = "rate"


class OrchestrationError(Exception):
    """Base class for all orchestration failures."""

    def __init__(
        self,
        message: str,
        *,
        workflow_id: str | None = None,
        node_id: str | None = None,
        attempt: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.workflow_id = workflow_id
        self.node_id = node_id
        self.attempt = attempt

    def with_context(
        self,
        *,
        workflow_id: str | None = None,
        node_id: str | None = None,
        attempt: int | None = None,
    ) -> OrchestrationError:
        """Fill in missing context fields in place and return ``self``."""

        if self.workflow_id is None:
            self.workflow_id = workflow_id
        if self.node_id is None:
            self.node_id = node_id
        if self.attempt is None:
            self.attempt = attempt
        return self

    def details(self) -> dict[str, object]:
        return {}

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "type": self.__class__.__name__,
            "message": self.message,
            "workflow_id": self.workflow_id,
            "node_id": self.node_id,
            "attempt": self.attempt,
        }
        details = self.details()
        if details:
            payload["details"] = details
        return payload


class AnalysisError(OrchestrationError):
    """Malformed or empty request; no graph is built."""


class GraphValidationError(OrchestrationError, ValueError):
    """Invalid graph: cycle, dangling edge, duplicate node or unresolved capability."""

    def __init__(
        self,
        message: str,
        *,
        issues: Iterable[str] = (),
        workflow_id: str | None = None,
    ) -> None:
        super().__init__(message, workflow_id=workflow_id)
        self.issues: tuple[str, ...] = tuple(issues)

    def details(self) -> dict[str, object]:
        return {"issues": list(self.issues)}


class SafetyLimitExceeded(OrchestrationError):
    """A spawn was rejected by the depth, count or rate limit."""

    def __init__(
        self,
        kind: SafetyLimitKind | str,
        *,
        parent_id: str | None,
        limit: int,
        observed: int,
        workflow_id: str | None = None,
        node_id: str | None = None,
    ) -> None:
        self.kind = SafetyLimitKind(kind)
        self.parent_id = parent_id
        self.limit = limit
        self.observed = observed
        super().__init__(
            f"safety limit exceeded ({self.kind.value}): parent={parent_id!r} "
            f"observed={observed} limit={limit}",
            workflow_id=workflow_id,
            node_id=node_id,
        )

    def details(self) -> dict[str, object]:
        return {
            "kind": self.kind.value,
            "parent_id": self.parent_id,
            "limit": self.limit,
            "observed": self.observed,
        }


class BudgetExceededError(OrchestrationError):
    """The graph cannot fit the budget after automatic mitigation."""

    def __init__(
        self,
        *,
        shortfall: float,
        unaccommodated: Sequence[str],
        estimate: float,
        budget: float,
        workflow_id: str | None = None,
    ) -> None:
        self.shortfall = shortfall
        self.unaccommodated: tuple[str, ...] = tuple(unaccommodated)
        self.estimate = estimate
        self.budget = budget
        super().__init__(
            f"estimated cost {estimate:.6f} exceeds budget {budget:.6f} "
            f"by {shortfall:.6f}; unaccommodated nodes: {', '.join(self.unaccommodated) or '-'}",
            workflow_id=workflow_id,
        )

    def details(self) -> dict[str, object]:
        return {
            "shortfall": self.shortfall,
            "unaccommodated": list(self.unaccommodated),
            "estimate": self.estimate,
            "budget": self.budget,
        }


class NodeTimeoutError(OrchestrationError):
    """A node exceeded its per-node timeout."""

    def __init__(
        self,
        timeout_seconds: float,
        *,
        workflow_id: str | None = None,
        node_id: str | None = None,
        attempt: int | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"node timed out after {timeout_seconds} seconds",
            workflow_id=workflow_id,
            node_id=node_id,
            attempt=attempt,
        )

    def details(self) -> dict[str, object]:
        return {"timeout_seconds": self.timeout_seconds}


class NodeExecutionError(OrchestrationError):
    """The task executor raised or reported a failure."""

    def __init__(
        self,
        message: str,
        *,
        cause: BaseException | None = None,
        workflow_id: str | None = None,
        node_id: str | None = None,
        attempt: int | None = None,
    ) -> None:
        super().__init__(message, workflow_id=workflow_id, node_id=node_id, attempt=attempt)
        self.cause = cause

    def details(self) -> dict[str, object]:
        if self.cause is None:
            return {}
        return {"cause_type": type(self.cause).__name__, "cause": str(self.cause)}


class ExecutorUnavailableError(OrchestrationError):
    """The assigned executor could not be reached or refused the work."""


class HandoffError(OrchestrationError):
    """Passing work or context between executors failed."""


class RecoveryExhaustedError(OrchestrationError):
    """Recovery gave up on a node after its retry allowance."""

    def __init__(
        self,
        message: str,
        *,
        attempts: int,
        last_error: OrchestrationError | None = None,
        workflow_id: str | None = None,
        node_id: str | None = None,
    ) -> None:
        super().__init__(message, workflow_id=workflow_id, node_id=node_id, attempt=attempts)
        self.attempts = attempts
        self.last_error = last_error

    def details(self) -> dict[str, object]:
        details: dict[str, object] = {"attempts": self.attempts}
        if self.last_error is not None:
            details["last_error"] = self.last_error.to_dict()
        return details


class EscalationRequiredError(OrchestrationError):
    """An extreme-complexity workflow was not approved for dispatch."""


__all__ = [
    "AnalysisError",
    "BudgetExceededError",
    "EscalationRequiredError",
    "ExecutorUnavailableError",
    "GraphValidationError",
    "HandoffError",
    "NodeExecutionError",
    "NodeTimeoutError",
    "OrchestrationError",
    "RecoveryExhaustedError",
    "SafetyLimitExceeded",
    "SafetyLimitKind",
]
