"""
workflow-orchestrator - domain layer

File: src/workflow_orchestrator/domain/__init__.py

Purpose
- Domain types shared across planes: Request, TaskNode, ExecutorDescriptor, Budget,
  ExecutionRecord, WorkflowResult, progress events and the error taxonomy.

Functional requirements
- Domain objects must be serializable and carry no IO side effects.
"""

from workflow_orchestrator.domain.errors import (
    AnalysisError,
    BudgetExceededError,
    EscalationRequiredError,
    ExecutorUnavailableError,
    GraphValidationError,
    HandoffError,
    NodeExecutionError,
    NodeTimeoutError,
    OrchestrationError,
    RecoveryExhaustedError,
    SafetyLimitExceeded,
    SafetyLimitKind,
)
from workflow_orchestrator.domain.events import ProgressEvent, ProgressEventType
from workflow_orchestrator.domain.models import (
    Budget,
    BudgetPolicy,
    ComplexityAnalysis,
    ComplexityBand,
    CostProfile,
    DecompositionStrategy,
    Edge,
    EscalationPayload,
    ExecutionRecord,
    ExecutorDescriptor,
    ExecutorResult,
    Goal,
    NodeStatus,
    Request,
    TaskNode,
    UsageHint,
    WorkflowResult,
    WorkflowStatus,
    load_request,
)

__all__ = [
    "AnalysisError",
    "Budget",
    "BudgetExceededError",
    "BudgetPolicy",
    "ComplexityAnalysis",
    "ComplexityBand",
    "CostProfile",
    "DecompositionStrategy",
    "Edge",
    "EscalationPayload",
    "EscalationRequiredError",
    "ExecutionRecord",
    "ExecutorDescriptor",
    "ExecutorResult",
    "ExecutorUnavailableError",
    "Goal",
    "GraphValidationError",
    "HandoffError",
    "NodeExecutionError",
    "NodeStatus",
    "NodeTimeoutError",
    "OrchestrationError",
    "ProgressEvent",
    "ProgressEventType",
    "RecoveryExhaustedError",
    "Request",
    "SafetyLimitExceeded",
    "SafetyLimitKind",
    "TaskNode",
    "UsageHint",
    "WorkflowResult",
    "WorkflowStatus",
    "load_request",
]
