"""Workflow state machine over an explicitly owned WorkflowRun.

Every transition validates first and mutates second, so a rejected call
leaves the run exactly as it was. Transitions return a TransitionResult
carrying the run, its phase and the tasks that became eligible.

Usage:
    run = plan_document(text)
    begin_implementation(run)
    while (result := claim_next_task(run)).task:
        ...  # external executor does the work
        report_outcome(run, result.task.id, TaskStatus.COMPLETED)
    finish_run(run)
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Iterable

from .config import Config, PlanningConfig
from .dag import build_dag, check_dag, dependents_of
from .errors import (
    AmbiguousDependency,
    ConcurrentTaskViolation,
    DependencyNotMet,
    InvalidPhase,
    InvalidTransition,
    ScopeCreepUnapproved,
    TaskNotFound,
)
from .extractor import extract
from .models import (
    TERMINAL_STATUSES,
    Approval,
    Phase,
    Task,
    TaskGraph,
    TaskStatus,
    TransitionEvent,
    TransitionResult,
    WorkflowRun,
)
from .planner import GroupingStrategy, build, estimate_points

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _record(run: WorkflowRun, event: str, task_id: str = "", detail: str = "") -> None:
    run.history.append(TransitionEvent(at=_now(), event=event, task_id=task_id, detail=detail))
    suffix = f" {task_id}" if task_id else ""
    reason = f" ({detail})" if detail else ""
    logger.info(f"[RUN] {run.id}: {event}{suffix}{reason}")


def _require_phase(run: WorkflowRun, *phases: Phase, action: str) -> None:
    if run.phase not in phases:
        logger.warning(f"[RUN] {run.id}: refused to {action} in {run.phase.value} phase")
        raise InvalidPhase(
            f"Cannot {action} while run '{run.id}' is in the {run.phase.value} phase"
        )


def _get(run: WorkflowRun, task_id: str) -> Task:
    task = run.task(task_id)
    if task is None:
        raise TaskNotFound(task_id)
    return task


def _ordered(run: WorkflowRun) -> list[Task]:
    position = {tid: i for i, tid in enumerate(run.order)}
    return sorted(run.tasks, key=lambda t: position.get(t.id, len(position)))


def _eligible(run: WorkflowRun) -> list[Task]:
    done = {t.id for t in run.tasks if t.status == TaskStatus.COMPLETED}
    return [
        t for t in _ordered(run)
        if t.status == TaskStatus.PENDING
        and t.executable
        and t.depends_on <= done
    ]


def _result(run: WorkflowRun, task: Task | None = None, before: Iterable[str] = ()) -> TransitionResult:
    seen = set(before)
    return TransitionResult(
        run=run,
        phase=run.phase,
        task=task,
        newly_eligible=[t for t in _eligible(run) if t.id not in seen],
    )


def _is_valid_order(order: list[str], tasks: list[Task]) -> bool:
    ids = [t.id for t in tasks]
    if sorted(order) != sorted(ids) or len(set(order)) != len(order):
        return False
    position = {tid: i for i, tid in enumerate(order)}
    return all(position[dep] < position[t.id] for t in tasks for dep in t.depends_on)


def _block_downstream(run: WorkflowRun, task_id: str) -> None:
    graph = build_dag(run.tasks)
    for dep_id in sorted(dependents_of(graph, task_id)):
        dependent = run.task(dep_id)
        if dependent is not None and dependent.status == TaskStatus.PENDING:
            dependent.status = TaskStatus.BLOCKED
            _record(run, "task.blocked", dep_id, f"upstream {task_id} failed")


def update_blocked(run: WorkflowRun) -> None:
    """Return BLOCKED tasks to PENDING once all their dependencies completed."""
    done = {t.id for t in run.tasks if t.status == TaskStatus.COMPLETED}
    for task in run.tasks:
        if task.status == TaskStatus.BLOCKED and task.depends_on <= done:
            task.status = TaskStatus.PENDING
            _record(run, "task.unblocked", task.id)


# -------------------------------------------------------------------
# Run construction and phase transitions
# -------------------------------------------------------------------

def create_run(graph: TaskGraph, run_id: str | None = None) -> WorkflowRun:
    """Create a run in the analysis phase that owns copies of the graph's tasks."""
    position = {tid: i for i, tid in enumerate(graph.order)}
    tasks = sorted((replace(t) for t in graph.tasks), key=lambda t: position[t.id])
    run = WorkflowRun(
        id=run_id or f"run-{uuid.uuid4().hex[:8]}",
        tasks=tasks,
        requirements=list(graph.requirements),
        order=list(graph.order),
        non_goals=list(graph.non_goals),
        started_at=_now(),
    )
    _record(run, "run.created", detail=f"{len(tasks)} tasks")
    return run


def begin_planning(run: WorkflowRun) -> TransitionResult:
    """analysis → planning."""
    _require_phase(run, Phase.ANALYSIS, action="begin planning")
    if not run.requirements:
        raise InvalidTransition(run.phase.value, Phase.PLANNING.value, "no requirements extracted")
    if not run.tasks:
        raise InvalidTransition(run.phase.value, Phase.PLANNING.value, "task graph is empty")
    check_dag(build_dag(run.tasks))
    run.phase = Phase.PLANNING
    _record(run, "run.planning")
    return _result(run)


def begin_implementation(run: WorkflowRun) -> TransitionResult:
    """planning → implementation; freezes the planned task set."""
    _require_phase(run, Phase.PLANNING, action="begin implementation")
    not_pending = [t.id for t in run.tasks if t.status != TaskStatus.PENDING]
    if not_pending:
        raise InvalidTransition(
            run.phase.value, Phase.IMPLEMENTATION.value,
            f"tasks not pending: {', '.join(not_pending)}",
        )
    if not _is_valid_order(run.order, run.tasks):
        raise InvalidTransition(
            run.phase.value, Phase.IMPLEMENTATION.value, "no valid execution order fixed"
        )
    run.planned_task_ids = [t.id for t in run.tasks]
    run.phase = Phase.IMPLEMENTATION
    _record(run, "run.implementation")
    return _result(run)


def finish_run(run: WorkflowRun) -> TransitionResult:
    """implementation → summary, once every executable task is terminal."""
    _require_phase(run, Phase.IMPLEMENTATION, action="finish the run")
    undecided = [t.id for t in _ordered(run) if t.approval == Approval.PENDING]
    if undecided:
        raise InvalidTransition(
            run.phase.value, Phase.SUMMARY.value,
            f"scope creep awaiting approve or reject: {', '.join(undecided)}",
        )
    open_tasks = [
        f"{t.id} ({t.status.value})"
        for t in _ordered(run)
        if t.executable and t.status not in TERMINAL_STATUSES
    ]
    if open_tasks:
        raise InvalidTransition(
            run.phase.value, Phase.SUMMARY.value,
            f"non-terminal tasks: {', '.join(open_tasks)}",
        )
    run.phase = Phase.SUMMARY
    run.completed_at = _now()
    _record(run, "run.summary")
    return _result(run)


def abandon_run(run: WorkflowRun, reason: str = "cancelled") -> TransitionResult:
    """Force a run to summary from any non-terminal phase."""
    _require_phase(
        run, Phase.ANALYSIS, Phase.PLANNING, Phase.IMPLEMENTATION, action="abandon the run"
    )
    active = run.task(run.current_task_id) if run.current_task_id else None
    if active is not None:
        active.status = TaskStatus.FAILED
        active.failure_reason = reason
        _record(run, "task.failed", active.id, reason)
        _block_downstream(run, active.id)
    run.current_task_id = None
    run.abandoned = True
    run.phase = Phase.SUMMARY
    run.completed_at = _now()
    _record(run, "run.abandoned", detail=reason)
    return _result(run, task=active)


# -------------------------------------------------------------------
# Task execution boundary
# -------------------------------------------------------------------

def next_eligible_task(run: WorkflowRun) -> Task | None:
    """Lowest-ordered pending task whose dependencies are all completed.

    Only dependency readiness is considered; starting it still fails while
    another task is in progress.
    """
    _require_phase(run, Phase.IMPLEMENTATION, action="select a task")
    eligible = _eligible(run)
    return eligible[0] if eligible else None


def start_task(run: WorkflowRun, task_id: str | None = None) -> TransitionResult:
    """pending → in_progress. Without ``task_id`` the next eligible task is started."""
    _require_phase(run, Phase.IMPLEMENTATION, action="start a task")
    if task_id is None:
        if run.current_task_id:
            raise ConcurrentTaskViolation(run.current_task_id, "next eligible task")
        eligible = _eligible(run)
        if not eligible:
            raise InvalidTransition(
                TaskStatus.PENDING.value, TaskStatus.IN_PROGRESS.value, "no eligible task"
            )
        task_id = eligible[0].id
    task = _get(run, task_id)
    if run.current_task_id and run.current_task_id != task_id:
        logger.warning(f"[RUN] {run.id}: {task_id} refused, {run.current_task_id} is active")
        raise ConcurrentTaskViolation(run.current_task_id, task_id)
    if not task.executable:
        raise ScopeCreepUnapproved(task_id)
    if task.status != TaskStatus.PENDING:
        raise InvalidTransition(task.status.value, TaskStatus.IN_PROGRESS.value, f"task {task_id}")

    position = {tid: i for i, tid in enumerate(run.order)}
    missing = sorted(
        (d for d in task.depends_on if _get(run, d).status != TaskStatus.COMPLETED),
        key=lambda d: position.get(d, len(position)),
    )
    if missing:
        raise DependencyNotMet(task_id, missing)

    task.status = TaskStatus.IN_PROGRESS
    task.attempts += 1
    run.current_task_id = task_id
    _record(run, "task.started", task_id)
    return _result(run, task=task)


def claim_next_task(run: WorkflowRun) -> TransitionResult:
    """Select the next eligible task and start it; ``task`` is None when nothing is ready."""
    task = next_eligible_task(run)
    if task is None:
        return _result(run)
    return start_task(run, task.id)


def report_outcome(
    run: WorkflowRun,
    task_id: str,
    status: TaskStatus | str,
    detail: str = "",
) -> TransitionResult:
    """Record the executor's result for the in-progress task."""
    _require_phase(run, Phase.IMPLEMENTATION, action="report an outcome")
    task = _get(run, task_id)
    try:
        status = TaskStatus(status)
    except ValueError:
        raise InvalidTransition(task.status.value, str(status), "unknown status") from None
    if task.status != TaskStatus.IN_PROGRESS:
        raise InvalidTransition(task.status.value, status.value, f"task {task_id} is not in progress")
    if status not in TERMINAL_STATUSES:
        raise InvalidTransition(
            task.status.value, status.value, "outcome must be completed or failed"
        )

    before = [t.id for t in _eligible(run)]
    task.status = status
    task.detail = detail
    run.current_task_id = None
    if status == TaskStatus.FAILED:
        task.failure_reason = detail or "failed"
        _record(run, "task.failed", task_id, task.failure_reason)
        _block_downstream(run, task_id)
    else:
        task.failure_reason = ""
        _record(run, "task.completed", task_id, detail)
        update_blocked(run)
    return _result(run, task=task, before=before)


def retry_task(run: WorkflowRun, task_id: str) -> TransitionResult:
    """Manual retry: failed → pending. The engine never retries on its own."""
    _require_phase(run, Phase.IMPLEMENTATION, action="retry a task")
    task = _get(run, task_id)
    if task.status != TaskStatus.FAILED:
        raise InvalidTransition(task.status.value, TaskStatus.PENDING.value, f"task {task_id} has not failed")
    before = [t.id for t in _eligible(run)]
    task.status = TaskStatus.PENDING
    _record(run, "task.retried", task_id, task.failure_reason)
    task.failure_reason = ""
    return _result(run, task=task, before=before)


# -------------------------------------------------------------------
# New work
# -------------------------------------------------------------------

def propose_task(
    run: WorkflowRun,
    title: str,
    description: str = "",
    depends_on: Iterable[str] = (),
    requirement_ids: Iterable[str] = (),
    handles_external_input: bool = False,
    idempotent: bool = False,
) -> TransitionResult:
    """Append a task that depends only on existing tasks.

    During implementation the task is scope creep: it is held for approval
    and excluded from execution until approve_scope_creep() is called.
    """
    _require_phase(
        run, Phase.ANALYSIS, Phase.PLANNING, Phase.IMPLEMENTATION, action="add a task"
    )
    existing = {t.id for t in run.tasks}
    n = len(run.tasks) + 1
    while f"task-{n}" in existing:
        n += 1
    task_id = f"task-{n}"

    deps = frozenset(depends_on)
    for dep in sorted(deps):
        if dep not in existing:
            raise AmbiguousDependency(task_id, dep)

    task = Task(
        id=task_id,
        title=title,
        description=description or title,
        depends_on=deps,
        estimate=estimate_points(description or title, PlanningConfig().words_per_point),
        requirement_ids=tuple(requirement_ids),
        handles_external_input=handles_external_input,
        idempotent=idempotent,
    )
    if any(_get(run, d).status in (TaskStatus.FAILED, TaskStatus.BLOCKED) for d in deps):
        task.status = TaskStatus.BLOCKED

    if run.phase == Phase.IMPLEMENTATION:
        task.scope_creep = True
        task.approval = Approval.PENDING
        logger.warning(f"[RUN] {run.id}: {task_id} proposed outside the plan, awaiting approval")

    run.tasks.append(task)
    run.order.append(task_id)
    _record(run, "task.scope_creep" if task.scope_creep else "task.added", task_id, title)
    return _result(run, task=task)


def approve_scope_creep(run: WorkflowRun, task_id: str) -> bool:
    """Admit a held scope-creep task; False when there was nothing to approve."""
    _require_phase(run, Phase.IMPLEMENTATION, action="approve scope creep")
    task = _get(run, task_id)
    if not task.scope_creep or task.approval == Approval.APPROVED:
        return False
    if task.approval == Approval.REJECTED:
        raise InvalidTransition(task.approval.value, Approval.APPROVED.value, f"task {task_id}")
    task.approval = Approval.APPROVED
    _record(run, "task.approved", task_id)
    return True


def reject_scope_creep(run: WorkflowRun, task_id: str) -> bool:
    _require_phase(run, Phase.IMPLEMENTATION, action="reject scope creep")
    task = _get(run, task_id)
    if not task.scope_creep or task.approval != Approval.PENDING:
        return False
    task.approval = Approval.REJECTED
    _record(run, "task.rejected", task_id)
    return True


# -------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------

def check_invariants(run: WorkflowRun) -> None:
    """Raise if the single-active-task or dependency invariants are broken."""
    active = [t for t in run.tasks if t.status == TaskStatus.IN_PROGRESS]
    if len(active) > 1:
        raise ConcurrentTaskViolation(active[0].id, active[1].id)
    for task in active:
        missing = [d for d in sorted(task.depends_on) if _get(run, d).status != TaskStatus.COMPLETED]
        if missing:
            raise DependencyNotMet(task.id, missing)


def plan_document(
    text: str,
    config: Config | None = None,
    run_id: str | None = None,
    grouping: GroupingStrategy | None = None,
) -> WorkflowRun:
    """Extract, build and create a run already moved to the planning phase."""
    doc = extract(text, config).document()
    graph = build(doc.requirements, config, grouping=grouping, non_goals=doc.non_goals)
    run = create_run(graph, run_id)
    begin_planning(run)
    return run
