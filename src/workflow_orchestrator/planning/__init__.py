"""Planning plane: complexity analysis, executor matching and graph construction."""

from workflow_orchestrator.planning.complexity import (
    BandThresholds,
    ComplexityAnalyzer,
    FactorWeights,
)
from workflow_orchestrator.planning.executors import (
    ExecutorRegistry,
    MergeStrategy,
    load_executor_catalog,
    merge_executors,
)
from workflow_orchestrator.planning.task_graph import CycleError, TaskGraph
from workflow_orchestrator.planning.workflow_builder import WorkflowGraph, WorkflowGraphBuilder

__all__ = [
    "BandThresholds",
    "ComplexityAnalyzer",
    "CycleError",
    "ExecutorRegistry",
    "FactorWeights",
    "MergeStrategy",
    "TaskGraph",
    "WorkflowGraph",
    "WorkflowGraphBuilder",
    "load_executor_catalog",
    "merge_executors",
]
