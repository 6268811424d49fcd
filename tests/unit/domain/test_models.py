"""Unit tests for domain model validation and serialization."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from workflow_orchestrator.domain.models import (
    Budget,
    BudgetPolicy,
    CostProfile,
    Edge,
    ExecutionRecord,
    ExecutorDescriptor,
    Goal,
    NodeStatus,
    Request,
    TaskNode,
    UsageHint,
    WorkflowResult,
    WorkflowStatus,
    load_request,
    to_json_value,
)


def test_request_from_dict_accepts_camel_case_phases_and_goal_objects() -> None:
    request = Request.from_dict(
        {
            "description": "  Build a reporting service  ",
            "requirements": ["api", "api", "dashboard"],
            "constraints": {"budget": 12, "deadline": "2026-03-01T00:00:00Z"},
            "preferences": {"parallel": True},
            "customPhases": ["plan", "ship"],
            "goals": [
                {"id": "collect", "description": "Collect metrics"},
                {"id": "report", "description": "Render report", "dependsOn": ["collect"]},
                "free-form goal",
            ],
        }
    )

    assert request.description == "Build a reporting service"
    assert request.requirements == ("api", "dashboard")
    assert request.constraints.budget == 12.0
    assert request.constraints.deadline == datetime(2026, 3, 1, tzinfo=UTC)
    assert request.preferences.parallel is True
    assert request.preferences.thorough is None
    assert request.custom_phases == ("plan", "ship")
    assert request.goals is not None
    assert request.goals[1] == Goal(
        id="report", description="Render report", depends_on=("collect",)
    )
    assert request.goals[2] == "free-form goal"
    assert "dashboard" in request.text


def test_request_rejects_unknown_fields_and_bad_types() -> None:
    with pytest.raises(ValueError, match="request.priority: unknown field"):
        Request.from_dict({"description": "x", "priority": 1})
    with pytest.raises(ValueError, match="missing required field"):
        Request.from_dict({"requirements": []})
    with pytest.raises(ValueError, match="request.description: expected string"):
        Request.from_dict({"description": 5})
    with pytest.raises(ValueError, match="constraints.budget: must be >= 0"):
        Request.from_dict({"description": "x", "constraints": {"budget": -1}})
    with pytest.raises(ValueError, match="timezone-aware"):
        Request.from_dict({"description": "x", "constraints": {"deadline": "2026-03-01T00:00:00"}})


def test_request_is_empty_and_empty_phases_collapse_to_none() -> None:
    assert Request(description="   ").is_empty
    assert not Request(description="", requirements=("one",)).is_empty
    assert Request(description="x", custom_phases=()).custom_phases is None
    assert Request(description="x", goals=()).goals is None


def test_goal_cannot_depend_on_itself() -> None:
    with pytest.raises(ValueError, match="goal cannot depend on itself"):
        Goal(id="loop", description="Loop", depends_on=("loop",))


def test_load_request_reads_yaml_and_json(tmp_path) -> None:
    yaml_path = tmp_path / "request.yaml"
    yaml_path.write_text("description: Ship it\nrequirements:\n  - tests\n", encoding="utf-8")
    json_path = tmp_path / "request.json"
    json_path.write_text('{"description": "Ship it", "customPhases": ["one"]}', encoding="utf-8")

    assert load_request(yaml_path).requirements == ("tests",)
    assert load_request(json_path).custom_phases == ("one",)

    broken = tmp_path / "broken.json"
    broken.write_text("{", encoding="utf-8")
    with pytest.raises(ValueError, match="invalid JSON"):
        load_request(broken)

    listing = tmp_path / "list.yaml"
    listing.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ValueError, match="root must be an object"):
        load_request(listing)


def test_cost_profile_blended_rate_and_estimate() -> None:
    profile = CostProfile(input_rate=0.01, output_rate=0.03)

    assert profile.blended_rate == pytest.approx(0.01 * 0.3 + 0.03 * 0.7)
    assert profile.estimate(input_tokens=2000, output_tokens=1000) == pytest.approx(0.05)
    with pytest.raises(ValueError, match="token counts"):
        profile.estimate(input_tokens=-1, output_tokens=0)
    with pytest.raises(ValueError, match="input_rate: must be >= 0"):
        CostProfile(input_rate=-0.1, output_rate=0.0)


def test_executor_descriptor_normalizes_and_matches_capabilities() -> None:
    executor = ExecutorDescriptor(
        type="Developer",
        name="Dev",
        capabilities=("Implement", "BUILD"),
    )

    assert executor.type == "developer"
    assert executor.capabilities == ("implement", "build")
    assert executor.covers(("implement",))
    assert not executor.covers(("implement", "test"))
    assert executor.matched(("test", "build")) == ("build",)

    parsed = ExecutorDescriptor.from_dict(
        {"type": "tester", "name": "QA", "costProfile": {"inputRate": 0.5, "outputRate": 1.0}}
    )
    assert parsed.cost_profile == CostProfile(0.5, 1.0)


def test_task_node_defaults_and_validation() -> None:
    node = TaskNode(id="impl", description="Implement", complexity=4)

    assert node.duration_ms == 4 * 30_000
    assert TaskNode.from_dict(node.to_dict()) == node

    with pytest.raises(ValueError, match="both critical and optional"):
        TaskNode(id="x", description="x", complexity=1, critical=True, optional=True)
    with pytest.raises(ValueError, match="must be <= 10"):
        TaskNode(id="x", description="x", complexity=11)
    with pytest.raises(ValueError, match="node id must match"):
        TaskNode(id="Upper", description="x", complexity=1)
    with pytest.raises(ValueError, match="expected integer"):
        TaskNode(id="x", description="x", complexity=True)


def test_edge_rejects_self_loop() -> None:
    with pytest.raises(ValueError, match="self-loop"):
        Edge("a", "a")
    assert Edge("a", "b").to_list() == ["a", "b"]


def test_budget_remaining_utilization_and_policy_alias() -> None:
    unbounded = Budget(total=None, spent=3.0)
    assert not unbounded.bounded
    assert unbounded.remaining is None
    assert unbounded.utilization == 0.0

    budget = Budget(total=10.0, spent=12.0, policy="performance")
    assert budget.policy is BudgetPolicy.PREMIUM
    assert budget.remaining == 0.0
    assert budget.utilization == pytest.approx(1.2)
    assert Budget(total=0.0, spent=0.5).utilization == 1.0
    assert Budget.from_dict(budget.to_dict()) == budget

    with pytest.raises(ValueError, match="invalid value 'lavish'"):
        BudgetPolicy.parse("lavish")


def test_usage_hint_rejects_negative_values() -> None:
    with pytest.raises(ValueError, match="usage.input_tokens: must be >= 0"):
        UsageHint(input_tokens=-1)
    with pytest.raises(ValueError, match="usage.cost"):
        UsageHint(cost=-0.5)


def test_execution_record_transitions_are_monotonic() -> None:
    start = datetime(2026, 1, 1, tzinfo=UTC)
    record = ExecutionRecord(node_id="impl")

    record.transition(NodeStatus.RUNNING, at=start)
    record.transition(NodeStatus.RUNNING, at=start + timedelta(seconds=5))
    assert record.started_at == start

    record.transition(NodeStatus.SUCCEEDED, at=start + timedelta(seconds=2))
    assert record.is_terminal
    assert record.duration_ms == pytest.approx(2000.0)

    with pytest.raises(ValueError, match="illegal transition succeeded -> running"):
        record.transition(NodeStatus.RUNNING)

    pending = ExecutionRecord(node_id="other")
    with pytest.raises(ValueError, match="illegal transition pending -> succeeded"):
        pending.transition(NodeStatus.SUCCEEDED)
    pending.transition(NodeStatus.BLOCKED)
    assert pending.is_terminal


def test_execution_record_reset_for_resume_only_touches_running() -> None:
    running = ExecutionRecord(node_id="a")
    running.transition(NodeStatus.RUNNING)
    running.reset_for_resume()
    assert running.status is NodeStatus.PENDING
    assert running.started_at is None

    done = ExecutionRecord(node_id="b", status=NodeStatus.SUCCEEDED, cost=1.5)
    done.reset_for_resume()
    assert done.status is NodeStatus.SUCCEEDED

    restored = ExecutionRecord.from_dict(done.to_dict())
    assert restored.status is NodeStatus.SUCCEEDED
    assert restored.cost == 1.5


def test_workflow_result_groups_nodes_by_status() -> None:
    records = {
        "b": ExecutionRecord(node_id="b", status=NodeStatus.FAILED),
        "a": ExecutionRecord(node_id="a", status=NodeStatus.SUCCEEDED),
        "c": ExecutionRecord(node_id="c", status=NodeStatus.SUCCEEDED),
    }
    result = WorkflowResult(
        workflow_id="wf-test",
        status=WorkflowStatus.PARTIALLY_COMPLETED,
        records=records,
        total_cost=0.0,
        total_duration_ms=0.0,
    )

    assert result.nodes_with_status(NodeStatus.SUCCEEDED) == ("a", "c")
    assert list(result.to_dict()["records"]) == ["a", "b", "c"]


def test_to_json_value_falls_back_to_repr() -> None:
    marker = object()
    assert to_json_value({"a": (1, 2)}) == {"a": [1, 2]}
    assert to_json_value(marker) == repr(marker)
