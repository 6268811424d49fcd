"""Progress event envelope, serialization and payload redaction helpers."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum

from workflow_orchestrator.domain import ids
from workflow_orchestrator.domain.models import (
    JSONValue,
    _as_datetime,
    _as_enum,
    _as_json_object,
    _as_optional_str,
    _as_str,
    _expect_object,
)

_SENSITIVE_KEY_TERMS = ("secret", "key", "password", "token", "credential")
_REDACTED_VALUE = "***REDACTED***"


class ProgressEventType(StrEnum):
    """Lifecycle events published while a workflow runs."""

    WORKFLOW_STARTED = "workflow.started"
    WORKFLOW_COMPLETED = "workflow.completed"
    WORKFLOW_FAILED = "workflow.failed"
    WORKFLOW_CANCELLED = "workflow.cancelled"

    LEVEL_STARTED = "level.started"
    LEVEL_COMPLETED = "level.completed"

    NODE_STARTED = "node.started"
    NODE_SUCCEEDED = "node.succeeded"
    NODE_FAILED = "node.failed"
    NODE_RETRYING = "node.retrying"
    NODE_SKIPPED = "node.skipped"
    NODE_BLOCKED = "node.blocked"
    NODE_ESCALATED = "node.escalated"

    BUDGET_ALERT = "budget.alert"
    CHECKPOINT_SAVED = "checkpoint.saved"


@dataclass(slots=True)
class ProgressEvent:
    """Serializable progress envelope delivered to subscribers."""

    event_type: ProgressEventType
    workflow_id: str
    node_id: str | None = None
    status: str | None = None
    payload: dict[str, JSONValue] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(tz=UTC))
    event_id: str = field(default_factory=ids.generate_event_id)

    def __post_init__(self) -> None:
        ids.validate_prefixed_id(self.event_id, ids.EVENT_ID_PREFIX)
        self.event_type = _as_enum(ProgressEventType, self.event_type, "ProgressEvent.event_type")
        self.workflow_id = _as_str(self.workflow_id, "ProgressEvent.workflow_id", max_len=128)
        self.node_id = _as_optional_str(self.node_id, "ProgressEvent.node_id")
        self.status = _as_optional_str(self.status, "ProgressEvent.status")
        self.timestamp = _as_datetime(self.timestamp, "ProgressEvent.timestamp")
        self.payload = _as_json_object(self.payload, "ProgressEvent.payload")

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "workflow_id": self.workflow_id,
            "node_id": self.node_id,
            "status": self.status,
            "timestamp": self.timestamp.isoformat(timespec="microseconds").replace(
                "+00:00", "Z"
            ),
            "payload": self.payload,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> ProgressEvent:
        parsed = _expect_object(
            data,
            "ProgressEvent",
            required={"event_id", "event_type", "workflow_id", "timestamp"},
            optional={"node_id", "status", "payload"},
        )
        return cls(
            event_id=_as_str(parsed["event_id"], "ProgressEvent.event_id", max_len=128),
            event_type=_as_enum(
                ProgressEventType, parsed["event_type"], "ProgressEvent.event_type"
            ),
            workflow_id=_as_str(parsed["workflow_id"], "ProgressEvent.workflow_id"),
            node_id=_as_optional_str(parsed.get("node_id"), "ProgressEvent.node_id"),
            status=_as_optional_str(parsed.get("status"), "ProgressEvent.status"),
            timestamp=_as_datetime(parsed["timestamp"], "ProgressEvent.timestamp"),
            payload=_as_json_object(parsed.get("payload", {}), "ProgressEvent.payload"),
        )

    @classmethod
    def from_json(cls, raw: str) -> ProgressEvent:
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValueError(f"ProgressEvent: invalid JSON: {exc}") from exc
        if not isinstance(parsed, dict):
            raise ValueError("ProgressEvent: JSON root must be an object")
        return cls.from_dict(parsed)


def redact_sensitive(event: ProgressEvent) -> ProgressEvent:
    """Return a copy of ``event`` with sensitive payload keys deeply redacted."""
    redacted = _redact_value(event.payload, key_context=None)
    if not isinstance(redacted, dict):
        raise ValueError("redacted payload must remain a JSON object")
    return ProgressEvent(
        event_type=event.event_type,
        workflow_id=event.workflow_id,
        node_id=event.node_id,
        status=event.status,
        payload=redacted,
        timestamp=event.timestamp,
        event_id=event.event_id,
    )


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(term in lowered for term in _SENSITIVE_KEY_TERMS)


def _redact_value(value: JSONValue, key_context: str | None) -> JSONValue:
    if key_context is not None and _is_sensitive_key(key_context):
        return _REDACTED_VALUE
    if isinstance(value, list):
        return [_redact_value(item, key_context=None) for item in value]
    if isinstance(value, dict):
        return {key: _redact_value(item, key_context=key) for key, item in value.items()}
    return value


__all__ = ["ProgressEvent", "ProgressEventType", "redact_sensitive"]
