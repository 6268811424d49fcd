"""Utility exports for filesystem and concurrency helpers."""

from workflow_orchestrator.utils.concurrency import (
    BoundedSemaphore,
    CancellationToken,
    WorkerPool,
    run_with_timeout,
    sleep_unless_cancelled,
)
from workflow_orchestrator.utils.fs import atomic_write, ensure_directory

__all__ = [
    "BoundedSemaphore",
    "CancellationToken",
    "WorkerPool",
    "atomic_write",
    "ensure_directory",
    "run_with_timeout",
    "sleep_unless_cancelled",
]
