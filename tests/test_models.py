"""Tests for data models."""

import dataclasses

import pytest
from specflow.models import (
    Approval,
    Card,
    CardScenarios,
    Category,
    Phase,
    Requirement,
    RunReport,
    Scenario,
    ScenarioKind,
    Task,
    TaskGraph,
    TaskStatus,
    TERMINAL_STATUSES,
    WorkflowRun,
)


def test_status_values():
    """TaskStatus enum values match the persisted strings."""
    assert TaskStatus.PENDING.value == "pending"
    assert TaskStatus.IN_PROGRESS.value == "in_progress"
    assert TaskStatus("blocked") is TaskStatus.BLOCKED


def test_terminal_statuses():
    """Only completed and failed are terminal."""
    assert TERMINAL_STATUSES == {TaskStatus.COMPLETED, TaskStatus.FAILED}


def test_category_is_str():
    """Category compares equal to its string value."""
    assert Category.EDGE_CASE == "edge-case"
    assert Phase.SUMMARY == "summary"


def test_requirement_is_frozen():
    """Requirements cannot be mutated once extracted."""
    req = Requirement(id="R1", text="Do it", category=Category.FUNCTIONAL, source_offset=0)
    with pytest.raises(dataclasses.FrozenInstanceError):
        req.text = "Do something else"


def test_task_defaults():
    """Task defaults to pending, planned work."""
    task = Task(id="task-1", title="T", description="d")
    assert task.status == TaskStatus.PENDING
    assert task.depends_on == frozenset()
    assert task.approval == Approval.NOT_REQUIRED
    assert task.executable is True


def test_task_executable_follows_approval():
    """Pending or rejected scope creep is not executable."""
    task = Task(id="task-9", title="T", description="d", scope_creep=True)
    task.approval = Approval.PENDING
    assert task.executable is False
    task.approval = Approval.REJECTED
    assert task.executable is False
    task.approval = Approval.APPROVED
    assert task.executable is True


def test_run_lists_independent():
    """Mutable defaults are not shared between runs."""
    a = WorkflowRun(id="a")
    b = WorkflowRun(id="b")
    a.tasks.append(Task(id="task-1", title="T", description="d"))
    assert b.tasks == []
    assert a.phase == Phase.ANALYSIS


def test_run_task_lookup():
    """WorkflowRun.task returns None for unknown ids."""
    run = WorkflowRun(id="r", tasks=[Task(id="task-1", title="T", description="d")])
    assert run.task("task-1").title == "T"
    assert run.task("task-2") is None


def test_graph_get_unknown_raises():
    """TaskGraph.get raises KeyError for unknown ids."""
    graph = TaskGraph(tasks=(Task(id="task-1", title="T", description="d"),), order=("task-1",))
    assert graph.get("task-1").id == "task-1"
    with pytest.raises(KeyError):
        graph.get("task-2")


def test_report_scenarios_flattened():
    """RunReport.scenarios flattens scenarios across cards."""
    card = Card(id="card-task-1", title="T", task_id="task-1")
    scenarios = [
        Scenario(id=f"card-task-1-s{i}", card_id=card.id, kind=ScenarioKind.HAPPY_PATH,
                 given="g", when="w", then="t")
        for i in (1, 2)
    ]
    report = RunReport(
        run_id="r", phase=Phase.SUMMARY, abandoned=False, counts={},
        cards=[CardScenarios(card=card, scenarios=scenarios)],
    )
    assert [s.id for s in report.scenarios] == ["card-task-1-s1", "card-task-1-s2"]
