"""Identifiers: ``<prefix>-<ULID>`` for runtime entities, lowercase slugs for graph nodes.

ULIDs sort by creation time, which keeps event logs and snapshot listings ordered
without a separate sequence counter.
"""

from __future__ import annotations

import re
import secrets
import time
from collections.abc import Callable
from typing import Final

CROCKFORD_BASE32_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_LENGTH: Final[int] = 26
ULID_MAX_TIMESTAMP_MS: Final[int] = (1 << 48) - 1
_RANDOM_BITS: Final[int] = 80

WORKFLOW_ID_PREFIX: Final[str] = "wf"
AGENT_ID_PREFIX: Final[str] = "agent"
EVENT_ID_PREFIX: Final[str] = "evt"
ESCALATION_ID_PREFIX: Final[str] = "esc"

_ULID_RE: Final[re.Pattern[str]] = re.compile(
    rf"[0-7][{CROCKFORD_BASE32_ALPHABET}]{{{ULID_LENGTH - 1}}}", re.IGNORECASE
)
_NODE_ID_RE: Final[re.Pattern[str]] = re.compile(r"^[a-z0-9][a-z0-9._-]{0,127}$")
_NON_SLUG_RE: Final[re.Pattern[str]] = re.compile(r"[^a-z0-9]+")

EntropySource = Callable[[int], bytes]


def generate_ulid(
    *,
    timestamp_ms: int | None = None,
    randbytes: EntropySource | None = None,
) -> str:
    """Return a 26-character Crockford Base32 ULID.

    ``timestamp_ms`` and ``randbytes`` exist so tests can pin the output.
    """
    if timestamp_ms is None:
        timestamp_ms = time.time_ns() // 1_000_000
    if isinstance(timestamp_ms, bool) or not isinstance(timestamp_ms, int):
        raise ValueError(f"timestamp_ms must be an int, got {type(timestamp_ms).__name__}")
    if timestamp_ms < 0 or timestamp_ms > ULID_MAX_TIMESTAMP_MS:
        raise ValueError(
            f"timestamp_ms out of range: expected 0..{ULID_MAX_TIMESTAMP_MS}, got {timestamp_ms}"
        )

    entropy = (randbytes or secrets.token_bytes)(_RANDOM_BITS // 8)
    if len(entropy) != _RANDOM_BITS // 8:
        raise ValueError(f"randbytes must return exactly {_RANDOM_BITS // 8} bytes")

    number = (timestamp_ms << _RANDOM_BITS) | int.from_bytes(entropy, "big")
    digits: list[str] = []
    for _ in range(ULID_LENGTH):
        number, digit = divmod(number, 32)
        digits.append(CROCKFORD_BASE32_ALPHABET[digit])
    return "".join(reversed(digits))


def validate_ulid(value: str) -> None:
    if not isinstance(value, str):
        raise ValueError(f"ulid must be a string, got {type(value).__name__}")
    if len(value) != ULID_LENGTH:
        raise ValueError(f"ulid length must be {ULID_LENGTH}, got {len(value)}")
    if _ULID_RE.fullmatch(value) is not None:
        return
    if value[0] not in CROCKFORD_BASE32_ALPHABET[:8]:
        raise ValueError("ulid overflow: first character must be 0-7 for a 128-bit value")
    bad = next(char for char in value if char.upper() not in CROCKFORD_BASE32_ALPHABET)
    raise ValueError(f"invalid ULID character {bad!r} at index {value.index(bad)}")


def generate_prefixed_id(
    prefix: str,
    *,
    timestamp_ms: int | None = None,
    randbytes: EntropySource | None = None,
) -> str:
    _check_prefix(prefix)
    return f"{prefix}-{generate_ulid(timestamp_ms=timestamp_ms, randbytes=randbytes)}"


def validate_prefixed_id(id_str: str, expected_prefix: str) -> None:
    """Raise ``ValueError`` unless ``id_str`` is ``<expected_prefix>-<ulid>``."""
    _check_prefix(expected_prefix)
    if not isinstance(id_str, str):
        raise ValueError(f"prefixed id must be a string, got {type(id_str).__name__}")
    prefix, separator, ulid = id_str.partition("-")
    if not separator or prefix != expected_prefix:
        raise ValueError(f"expected prefix '{expected_prefix}-' in {id_str!r}")
    try:
        validate_ulid(ulid)
    except ValueError as exc:
        raise ValueError(f"invalid ULID part of {expected_prefix} id: {exc}") from exc


def generate_workflow_id(*, timestamp_ms: int | None = None) -> str:
    return generate_prefixed_id(WORKFLOW_ID_PREFIX, timestamp_ms=timestamp_ms)


def generate_agent_id() -> str:
    return generate_prefixed_id(AGENT_ID_PREFIX)


def generate_event_id() -> str:
    return generate_prefixed_id(EVENT_ID_PREFIX)


def generate_escalation_id() -> str:
    return generate_prefixed_id(ESCALATION_ID_PREFIX)


def validate_node_id(node_id: str) -> None:
    if not isinstance(node_id, str):
        raise ValueError(f"node id must be a string, got {type(node_id).__name__}")
    if _NODE_ID_RE.fullmatch(node_id) is None:
        raise ValueError(f"node id must match {_NODE_ID_RE.pattern} (got {node_id!r})")


def slugify(*parts: str) -> str:
    """Join ``parts`` into a node-id-safe slug of at most 128 characters."""
    slug = _NON_SLUG_RE.sub("-", " ".join(parts).lower()).strip("-")
    if not slug:
        raise ValueError("slug parts must contain at least one alphanumeric character")
    return slug[:128].rstrip("-")


def _check_prefix(prefix: str) -> None:
    if not isinstance(prefix, str) or not prefix or "-" in prefix:
        raise ValueError(f"prefix must be a non-empty string without '-', got {prefix!r}")


__all__ = [
    "AGENT_ID_PREFIX",
    "CROCKFORD_BASE32_ALPHABET",
    "ESCALATION_ID_PREFIX",
    "EVENT_ID_PREFIX",
    "EntropySource",
    "ULID_LENGTH",
    "ULID_MAX_TIMESTAMP_MS",
    "WORKFLOW_ID_PREFIX",
    "generate_agent_id",
    "generate_escalation_id",
    "generate_event_id",
    "generate_prefixed_id",
    "generate_ulid",
    "generate_workflow_id",
    "slugify",
    "validate_node_id",
    "validate_prefixed_id",
    "validate_ulid",
]
