"""Progress bus and structured logging."""

from workflow_orchestrator.observability.events import (
    DispatchError,
    ProgressBus,
    ProgressChannel,
    Subscriber,
)
from workflow_orchestrator.observability.logging import (
    LoggingConfig,
    StructuredLoggingHandle,
    configure_structlog,
    correlation_scope,
    flush_logging,
    get_correlation_context,
    setup_logging,
    setup_structured_logging,
    shutdown_logging,
)

__all__ = [
    "DispatchError",
    "LoggingConfig",
    "ProgressBus",
    "ProgressChannel",
    "StructuredLoggingHandle",
    "Subscriber",
    "configure_structlog",
    "correlation_scope",
    "flush_logging",
    "get_correlation_context",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
