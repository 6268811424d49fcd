"""Unit tests for the agent spawning safety envelope."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

from workflow_orchestrator.control_plane.safety import (
    ROOT_PARENT_KEY,
    SafetyLimits,
    SafetyManager,
)
from workflow_orchestrator.domain.errors import SafetyLimitExceeded, SafetyLimitKind


class _Clock:
    def __init__(self, start_ms: int = 1_000_000) -> None:
        self.now_ms = start_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, delta_ms: int) -> None:
        self.now_ms += delta_ms


def _manager(clock: _Clock | None = None, **limits: int) -> SafetyManager:
    return SafetyManager(SafetyLimits(**limits), clock=clock or _Clock())


def test_depth_limit_allows_chain_to_max_depth_and_rejects_one_deeper() -> None:
    manager = _manager(max_depth=3)

    manager.register(None, "a0")
    for depth in range(1, 4):
        record = manager.register(f"a{depth - 1}", f"a{depth}")
        assert record.depth == depth

    with pytest.raises(SafetyLimitExceeded) as excinfo:
        manager.register("a3", "a4", workflow_id="wf-depth", node_id="deep")

    error = excinfo.value
    assert error.kind is SafetyLimitKind.DEPTH
    assert error.limit == 3
    assert error.observed == 4
    assert error.workflow_id == "wf-depth"
    assert error.node_id == "deep"
    assert "a4" not in manager.state.agents
    assert manager.hierarchy("a3") == ("a0", "a1", "a2", "a3")


def test_per_parent_and_total_count_limits() -> None:
    manager = _manager(max_agents_per_parent=2, max_total_agents=4)
    manager.register(None, "root")
    manager.register("root", "c1")
    manager.register("root", "c2")

    with pytest.raises(SafetyLimitExceeded) as per_parent:
        manager.register("root", "c3")
    assert per_parent.value.kind is SafetyLimitKind.COUNT
    assert per_parent.value.limit == 2

    manager.register("c1", "g1")
    with pytest.raises(SafetyLimitExceeded) as total:
        manager.register("c1", "g2")
    assert total.value.limit == 4
    assert total.value.observed == 4


def test_rate_limit_uses_a_sliding_window() -> None:
    clock = _Clock()
    manager = _manager(clock, rate_window_ms=1_000, max_creations_per_window=2)

    manager.register(None, "a")
    clock.advance(400)
    manager.register(None, "b")
    with pytest.raises(SafetyLimitExceeded) as excinfo:
        manager.register(None, "c")
    assert excinfo.value.kind is SafetyLimitKind.RATE

    clock.advance(601)
    manager.register(None, "c")
    assert manager.metrics().rejections == {"depth": 0, "count": 0, "rate": 1}


def test_release_cascades_to_descendants_and_frees_slots() -> None:
    manager = _manager(max_agents_per_parent=2)
    manager.register(None, "root")
    manager.register("root", "child")
    manager.register("child", "grandchild")
    manager.register("root", "sibling")

    released = manager.release("child")

    assert released == ("child", "grandchild")
    assert manager.children("root") == ("sibling",)
    assert manager.release("missing") == ()
    manager.register("root", "replacement")
    assert manager.release("root", cascade=False) == ("root",)
    assert "replacement" in manager.state.agents


def test_rejected_spawn_leaves_no_trace() -> None:
    manager = _manager(max_agents_per_parent=1)
    manager.register(None, "root")
    before = manager.snapshot()

    assert not manager.can_spawn(None)
    with pytest.raises(SafetyLimitExceeded):
        manager.register(None, "second")

    assert manager.snapshot() == before
    assert manager.metrics().registrations == 1


def test_duplicate_agent_id_is_rejected() -> None:
    manager = _manager()
    manager.register(None, "a")
    with pytest.raises(ValueError, match="already registered"):
        manager.register(None, "a")


def test_prune_timestamps_drops_entries_past_retention() -> None:
    clock = _Clock()
    manager = _manager(clock, rate_window_ms=1_000, timestamp_retention_ms=5_000)
    manager.register(None, "a")
    manager.register(None, "b")

    clock.advance(5_001)

    assert manager.prune_timestamps() == 2
    assert ROOT_PARENT_KEY not in manager.state.creation_timestamps
    assert manager.active_agents == 2


def test_snapshot_restore_round_trip_and_metrics() -> None:
    manager = _manager()
    manager.register(None, "root")
    manager.register("root", "child")
    payload = manager.snapshot()

    restored = _manager()
    restored.restore(payload)

    assert restored.snapshot() == payload
    assert restored.hierarchy("child") == ("root", "child")
    metrics = restored.metrics()
    assert metrics.active_agents == 2
    assert metrics.deepest_level == 1
    assert metrics.agents_by_parent == {ROOT_PARENT_KEY: 1, "root": 1}

    restored.clear()
    assert restored.active_agents == 0
    with pytest.raises(ValueError, match="safety.depth.root: expected integer"):
        restored.restore({"depth": {"root": "zero"}})


def test_concurrent_registration_never_exceeds_total_limit() -> None:
    manager = _manager(
        max_agents_per_parent=100, max_total_agents=25, max_creations_per_window=100
    )

    def _attempt(index: int) -> bool:
        try:
            manager.register(None, f"agent-{index}")
        except SafetyLimitExceeded:
            return False
        return True

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(_attempt, range(60)))

    assert sum(outcomes) == 25
    assert manager.active_agents == 25


def test_limits_validation() -> None:
    with pytest.raises(ValueError, match="max_depth must be > 0"):
        SafetyLimits(max_depth=0)
    with pytest.raises(ValueError, match="cannot be shorter"):
        SafetyLimits(rate_window_ms=10_000, timestamp_retention_ms=5_000)
