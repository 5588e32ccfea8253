"""Task → Card + acceptance Scenarios."""

from __future__ import annotations

import re
from typing import Sequence

from .config import Config, ScenarioConfig
from .dag import build_dag
from .errors import IncompleteCard
from .models import (
    Card,
    CardScenarios,
    Category,
    Requirement,
    Scenario,
    ScenarioKind,
    Task,
    WorkflowRun,
)

_CLEAN_RE = re.compile(r"\s*(?<![\w@])@[A-Za-z][\w-]*")


def _clean(text: str) -> str:
    return re.sub(r"\s+", " ", _CLEAN_RE.sub("", text)).strip()


def _matches(text: str, keywords: Sequence[str]) -> bool:
    lowered = text.lower()
    return any(re.search(rf"\b{re.escape(k.lower())}\b", lowered) for k in keywords)


def needs_edge_scenarios(req: Requirement, cfg: ScenarioConfig) -> bool:
    """Edge-case category, or boundary/validation language in the text."""
    return (
        req.category == Category.EDGE_CASE
        or _matches(req.text, cfg.boundary_keywords)
        or _matches(req.text, cfg.validation_keywords)
    )


def generate(
    task: Task,
    requirements: Sequence[Requirement] = (),
    non_goals: Sequence[str] = (),
    dependents: Sequence[Task] = (),
    config: Config | None = None,
) -> tuple[Card, list[Scenario]]:
    """Build the Card for ``task`` and its Scenarios.

    ``requirements`` are the task's own requirements (others are ignored).
    Raises IncompleteCard when no happy path can be derived.
    """
    cfg = (config or Config()).scenarios
    own = set(task.requirement_ids)
    reqs = [r for r in requirements if r.id in own]
    primary = [r for r in reqs if r.category in (Category.FUNCTIONAL, Category.NON_FUNCTIONAL)]
    acceptance = [r for r in reqs if r.category == Category.ACCEPTANCE]

    card_id = f"card-{task.id}"
    action = _clean(primary[0].text if primary else task.description or "")
    if not action:
        raise IncompleteCard(f"Task '{task.id}' has no text to derive a happy-path scenario from")

    scope_out = [_clean(g) for g in non_goals]
    scope_out.extend(f"{d.id}: {d.title}" for d in dependents)
    card = Card(
        id=card_id,
        title=task.title,
        task_id=task.id,
        scope_in=tuple(_clean(r.text) for r in reqs) or (_clean(task.description),),
        scope_out=tuple(scope_out),
    )

    scenarios: list[Scenario] = []

    def _add(kind: ScenarioKind, given: str, when: str, then: str) -> None:
        scenarios.append(Scenario(
            id=f"{card_id}-s{len(scenarios) + 1}",
            card_id=card_id,
            kind=kind,
            given=given,
            when=when,
            then=then,
        ))

    prerequisites = ", ".join(sorted(task.depends_on))
    _add(
        ScenarioKind.HAPPY_PATH,
        given=(
            f"the work of {prerequisites} is complete" if prerequisites
            else "the system is in its initial state"
        ),
        when=action,
        then=(
            "; ".join(_clean(r.text) for r in acceptance) if acceptance
            else f"the outcome of '{task.title}' is observable"
        ),
    )

    for req in reqs:
        if not needs_edge_scenarios(req, cfg):
            continue
        text = _clean(req.text)
        _add(
            ScenarioKind.EDGE_CASE,
            given=f"input at the boundary described by {req.id}",
            when=action,
            then=text,
        )
        _add(
            ScenarioKind.ERROR_CASE,
            given=f"input that violates {req.id}: {text}",
            when=action,
            then="the request is rejected with a specific error and no state changes",
        )

    if task.handles_external_input:
        _add(
            ScenarioKind.SECURITY,
            given="untrusted input or credentials supplied from outside the system",
            when=action,
            then="the input is validated before use and credentials are never exposed",
        )

    if task.idempotent:
        _add(
            ScenarioKind.IDEMPOTENCY,
            given=f"'{task.title}' has already been carried out once",
            when=f"the same action is repeated: {action}",
            then="the result is unchanged and no duplicate side effects occur",
        )

    return card, scenarios


def generate_all(run: WorkflowRun, config: Config | None = None) -> list[CardScenarios]:
    """Cards for every planned or approved task of a run, in execution order."""
    graph = build_dag(run.tasks)
    position = {tid: i for i, tid in enumerate(run.order)}
    direct: dict[str, list[Task]] = {}
    for task in run.tasks:
        for dep in graph[task.id]:
            direct.setdefault(dep, []).append(task)

    result: list[CardScenarios] = []
    for task in sorted(run.tasks, key=lambda t: position.get(t.id, len(position))):
        if not task.executable:
            continue
        dependents = sorted(direct.get(task.id, []), key=lambda t: position.get(t.id, 0))
        card, scenarios = generate(task, run.requirements, run.non_goals, dependents, config)
        result.append(CardScenarios(card=card, scenarios=scenarios))
    return result
