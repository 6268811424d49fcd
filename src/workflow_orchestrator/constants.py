"""Stable constants shared across orchestrator planes."""

from __future__ import annotations

from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
SNAPSHOT_SCHEMA_VERSION: Final[int] = 1

# Cost model: estimated tokens per complexity point and the input/output split.
TOKENS_PER_COMPLEXITY_POINT: Final[int] = 1000
INPUT_TOKEN_SHARE: Final[float] = 0.3
OUTPUT_TOKEN_SHARE: Final[float] = 0.7

# Compute and API call pricing used for non-token usage hints.
COMPUTE_UNIT_COST: Final[float] = 0.10
API_CALL_COST: Final[float] = 0.0001

# Duration model for task nodes.
DURATION_MS_PER_COMPLEXITY_POINT: Final[int] = 30_000

MIN_COMPLEXITY: Final[int] = 1
MAX_COMPLEXITY: Final[int] = 10

LEDGER_HISTORY_LIMIT: Final[int] = 1000

__all__ = [
    "API_CALL_COST",
    "COMPUTE_UNIT_COST",
    "CONFIG_SCHEMA_VERSION",
    "DURATION_MS_PER_COMPLEXITY_POINT",
    "INPUT_TOKEN_SHARE",
    "LEDGER_HISTORY_LIMIT",
    "MAX_COMPLEXITY",
    "MIN_COMPLEXITY",
    "OUTPUT_TOKEN_SHARE",
    "SNAPSHOT_SCHEMA_VERSION",
    "TOKENS_PER_COMPLEXITY_POINT",
]
