"""Run aggregation: per-status counts, deviations and scenario hand-off."""

from __future__ import annotations

from collections import Counter

from .cards import generate_all
from .config import Config
from .errors import InvalidPhase
from .models import Approval, Phase, RunReport, ScenarioKind, TaskStatus, WorkflowRun


def aggregate(run: WorkflowRun, config: Config | None = None) -> RunReport:
    """Summarise a run that reached the summary phase.

    Read-only over the run; calling it twice gives equal reports.
    """
    if run.phase != Phase.SUMMARY:
        raise InvalidPhase(
            f"Run '{run.id}' is in the {run.phase.value} phase; reports need the summary phase"
        )

    position = {tid: i for i, tid in enumerate(run.order)}
    tasks = sorted(run.tasks, key=lambda t: position.get(t.id, len(position)))
    executable = [t for t in tasks if t.executable]

    tally = Counter(t.status.value for t in executable)
    counts = {status.value: tally.get(status.value, 0) for status in TaskStatus}

    failed = [
        {"task_id": t.id, "title": t.title, "reason": t.failure_reason or "failed"}
        for t in executable if t.status == TaskStatus.FAILED
    ]
    blocked = [
        {"task_id": t.id, "title": t.title, "waiting_on": sorted(t.depends_on)}
        for t in executable if t.status == TaskStatus.BLOCKED
    ]
    scope_creep = [
        {"task_id": t.id, "title": t.title, "approval": t.approval.value, "status": t.status.value}
        for t in tasks if t.scope_creep
    ]

    deviations: list[str] = []
    if run.abandoned:
        deviations.append("Run was abandoned before all tasks finished")
    for item in failed:
        deviations.append(f"{item['task_id']} failed: {item['reason']}")
    for item in blocked:
        deviations.append(f"{item['task_id']} never ran: blocked on {', '.join(item['waiting_on'])}")
    for t in tasks:
        if t.executable and t.status == TaskStatus.PENDING:
            deviations.append(f"{t.id} never ran")
    for item in scope_creep:
        if item["approval"] == Approval.APPROVED.value:
            deviations.append(f"{item['task_id']} was added outside the plan")
        else:
            deviations.append(f"{item['task_id']} was proposed outside the plan ({item['approval']})")

    cards = generate_all(run, config)

    manual: list[str] = []
    for req in run.requirements:
        if req.low_confidence:
            manual.append(
                f"{req.id} was classified as {req.category.value} by default; confirm its category"
            )
    for entry in cards:
        for scenario in entry.scenarios:
            if scenario.kind == ScenarioKind.SECURITY:
                manual.append(f"{scenario.id}: review handling of external input for {entry.card.task_id}")
    if run.abandoned:
        manual.append("Check work left partially applied by the cancelled task")

    return RunReport(
        run_id=run.id,
        phase=run.phase,
        abandoned=run.abandoned,
        counts=counts,
        failed=failed,
        blocked=blocked,
        scope_creep=scope_creep,
        deviations=deviations,
        manual_verification=manual,
        cards=cards,
    )


def report_to_dict(report: RunReport) -> dict:
    return {
        "run_id": report.run_id,
        "phase": report.phase.value,
        "abandoned": report.abandoned,
        "summary": dict(report.counts),
        "failed": [dict(f) for f in report.failed],
        "blocked": [dict(b) for b in report.blocked],
        "scope_creep": [dict(s) for s in report.scope_creep],
        "deviations": list(report.deviations),
        "manual_verification": list(report.manual_verification),
        "cards": [
            {
                "id": entry.card.id,
                "task_id": entry.card.task_id,
                "title": entry.card.title,
                "scope_in": list(entry.card.scope_in),
                "scope_out": list(entry.card.scope_out),
                "scenarios": [
                    {
                        "id": s.id,
                        "kind": s.kind.value,
                        "given": s.given,
                        "when": s.when,
                        "then": s.then,
                    }
                    for s in entry.scenarios
                ],
            }
            for entry in report.cards
        ],
    }


def render_markdown(report: RunReport) -> str:
    parts = [f"# Run report: {report.run_id}\n\n"]
    if report.abandoned:
        parts.append("**Abandoned**\n\n")

    parts.append("## Summary\n")
    for status, count in report.counts.items():
        parts.append(f"- {status}: {count}\n")

    if report.failed:
        parts.append("\n## Failed tasks\n")
        for item in report.failed:
            parts.append(f"- {item['task_id']} ({item['title']}): {item['reason']}\n")

    if report.scope_creep:
        parts.append("\n## Scope creep\n")
        for item in report.scope_creep:
            parts.append(f"- {item['task_id']} ({item['title']}): {item['approval']}\n")

    if report.deviations:
        parts.append("\n## Deviations\n")
        parts.extend(f"- {d}\n" for d in report.deviations)

    if report.manual_verification:
        parts.append("\n## Manual verification\n")
        parts.extend(f"- [ ] {m}\n" for m in report.manual_verification)

    parts.append("\n## Scenarios\n")
    for entry in report.cards:
        parts.append(f"\n### {entry.card.id}: {entry.card.title}\n")
        for s in entry.scenarios:
            parts.append(f"\n**{s.id}** ({s.kind.value})\n")
            parts.append(f"- Given {s.given}\n- When {s.when}\n- Then {s.then}\n")

    return "".join(parts)
