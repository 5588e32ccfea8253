"""Requirements → Task DAG."""

from __future__ import annotations

import logging
import re
from dataclasses import replace
from math import ceil
from typing import Callable, Iterable, Sequence

from .config import Config, PlanningConfig
from .dag import build_dag, topological_order
from .errors import AmbiguousDependency
from .models import Category, Requirement, Task, TaskGraph

logger = logging.getLogger(__name__)

GroupingStrategy = Callable[[Sequence[Requirement]], "list[list[Requirement]]"]

_INPUT_TAGS = {"input", "external-input", "auth", "credentials"}
_SENTENCE_RE = re.compile(r"(?<=[.!?;])\s+")
_TAG_STRIP_RE = re.compile(r"\s*(?<![\w@])@[A-Za-z][\w-]*")


# -------------------------------------------------------------------
# Grouping strategies
# -------------------------------------------------------------------

def group_by_requirement(requirements: Sequence[Requirement]) -> list[list[Requirement]]:
    """One group per functional/non-functional requirement.

    Edge-case and acceptance requirements that reference a requirement
    join that requirement's group; the rest form groups of their own.
    """
    groups: list[list[Requirement]] = []
    owner: dict[str, int] = {}
    for req in requirements:
        if req.category in (Category.FUNCTIONAL, Category.NON_FUNCTIONAL):
            owner[req.id] = len(groups)
            groups.append([req])

    for req in requirements:
        if req.category not in (Category.EDGE_CASE, Category.ACCEPTANCE):
            continue
        target = next((owner[r] for r in req.references if r in owner), None)
        if target is None:
            owner[req.id] = len(groups)
            groups.append([req])
        else:
            groups[target].append(req)
            owner[req.id] = target

    groups.sort(key=lambda g: g[0].source_offset)
    return groups


def group_by_section(requirements: Sequence[Requirement]) -> list[list[Requirement]]:
    """One group per heading section, in order of first appearance."""
    groups: dict[str, list[Requirement]] = {}
    for req in requirements:
        groups.setdefault(req.section, []).append(req)
    return list(groups.values())


GROUPING_STRATEGIES: dict[str, GroupingStrategy] = {
    "requirement": group_by_requirement,
    "section": group_by_section,
}


# -------------------------------------------------------------------
# Sizing
# -------------------------------------------------------------------

def estimate_points(text: str, words_per_point: int) -> int:
    return max(1, ceil(len(text.split()) / max(1, words_per_point)))


def _title(text: str, limit: int = 72) -> str:
    first = (_SENTENCE_RE.split(text.strip(), maxsplit=1)[0].splitlines() or [""])[0]
    first = _TAG_STRIP_RE.sub("", first).strip().rstrip(".;")
    if len(first) > limit:
        first = first[: limit - 3].rstrip() + "..."
    return first or "Untitled task"


def _chunk_text(text: str, word_limit: int) -> list[str]:
    """Split text into sentence-aligned chunks of at most ``word_limit`` words."""
    chunks: list[str] = []
    current: list[str] = []
    for sentence in _SENTENCE_RE.split(text.strip()):
        words = sentence.split()
        while len(words) > word_limit:
            if current:
                chunks.append(" ".join(current))
                current = []
            chunks.append(" ".join(words[:word_limit]))
            words = words[word_limit:]
        if current and len(current) + len(words) > word_limit:
            chunks.append(" ".join(current))
            current = []
        current.extend(words)
    if current:
        chunks.append(" ".join(current))
    return chunks


def _split_task(task: Task, group: list[Requirement], cfg: PlanningConfig) -> list[Task]:
    if task.estimate <= cfg.max_estimate:
        return [task]

    word_limit = cfg.max_estimate * cfg.words_per_point
    pieces: list[tuple[str, str]] = []
    for req in group:
        for chunk in _chunk_text(req.text, word_limit):
            pieces.append((req.id, chunk))

    parts: list[list[tuple[str, str]]] = []
    words = 0
    for piece in pieces:
        size = len(piece[1].split())
        if parts and words + size <= word_limit:
            parts[-1].append(piece)
            words += size
        else:
            parts.append([piece])
            words = size

    if len(parts) == 1:
        return [task]

    logger.debug(f"Splitting {task.id} (estimate {task.estimate}) into {len(parts)} parts")
    children: list[Task] = []
    for idx, part in enumerate(parts, 1):
        description = "\n".join(text for _, text in part)
        children.append(replace(
            task,
            id=f"{task.id}.{idx}",
            title=f"{task.title} (part {idx} of {len(parts)})",
            description=description,
            depends_on=task.depends_on if idx == 1 else frozenset({children[-1].id}),
            estimate=estimate_points(description, cfg.words_per_point),
            requirement_ids=tuple(dict.fromkeys(rid for rid, _ in part)),
            parent_id=task.id,
        ))
    return children


# -------------------------------------------------------------------
# Edges
# -------------------------------------------------------------------

def _reference_edges(
    groups: list[list[Requirement]], task_ids: list[str]
) -> list[set[str]]:
    req_task: dict[str, str] = {}
    providers: dict[str, set[str]] = {}
    for task_id, group in zip(task_ids, groups):
        for req in group:
            req_task[req.id] = task_id
            for artifact in req.provides:
                providers.setdefault(artifact, set()).add(task_id)

    edges: list[set[str]] = []
    for task_id, group in zip(task_ids, groups):
        deps: set[str] = set()
        for req in group:
            for ref in req.references:
                if ref not in req_task:
                    raise AmbiguousDependency(req.id, ref)
                if req_task[ref] != task_id:
                    deps.add(req_task[ref])
            for artifact in req.consumes:
                owners = providers.get(artifact, set())
                if task_id in owners or not owners:
                    continue
                if len(owners) > 1:
                    raise AmbiguousDependency(req.id, artifact, sorted(owners))
                deps.add(next(iter(owners)))
        edges.append(deps)
    return edges


def _stage_edges(stages: list[str], cfg: PlanningConfig) -> list[set[int]]:
    """Every task depends on all tasks of the nearest earlier non-empty stage."""
    ranks = {name: i for i, name in enumerate(cfg.stages)}
    default = ranks.get("core", 0)
    by_rank: dict[int, list[int]] = {}
    for idx, stage in enumerate(stages):
        by_rank.setdefault(ranks.get(stage, default), []).append(idx)

    edges: list[set[int]] = [set() for _ in stages]
    present = sorted(by_rank)
    for prev, rank in zip(present, present[1:]):
        for idx in by_rank[rank]:
            edges[idx].update(by_rank[prev])
    return edges


# -------------------------------------------------------------------
# Build
# -------------------------------------------------------------------

def build(
    requirements: Iterable[Requirement],
    config: Config | None = None,
    grouping: GroupingStrategy | None = None,
    non_goals: Sequence[str] = (),
) -> TaskGraph:
    """Group requirements into Tasks and order them as a DAG.

    Raises CyclicDependency or AmbiguousDependency; never drops an edge to
    make a cycle go away.
    """
    config = config or Config()
    cfg = config.planning
    requirements = list(requirements)
    if grouping is None:
        try:
            grouping = GROUPING_STRATEGIES[cfg.grouping]
        except KeyError:
            raise ValueError(f"Unknown grouping strategy: {cfg.grouping!r}") from None

    groups = [g for g in grouping(requirements) if g]
    task_ids = [f"task-{i}" for i in range(1, len(groups) + 1)]

    ref_edges = _reference_edges(groups, task_ids)
    stages = [_group_stage(g) for g in groups]
    stage_edges = _stage_edges(stages, cfg)

    tasks: list[Task] = []
    for idx, (task_id, group) in enumerate(zip(task_ids, groups)):
        deps = ref_edges[idx] | {task_ids[j] for j in stage_edges[idx]}
        tags = {t for req in group for t in req.tags}
        description = "\n".join(req.text for req in group)
        tasks.append(Task(
            id=task_id,
            title=_title(group[0].text),
            description=description,
            depends_on=frozenset(deps),
            estimate=estimate_points(description, cfg.words_per_point),
            requirement_ids=tuple(req.id for req in group),
            stage=stages[idx],
            handles_external_input=bool(tags & _INPUT_TAGS),
            idempotent="idempotent" in tags,
        ))

    # Oversized tasks become chains; dependents wait on the last part.
    sized: list[Task] = []
    last_part: dict[str, str] = {}
    for task, group in zip(tasks, groups):
        parts = _split_task(task, group, cfg)
        last_part[task.id] = parts[-1].id
        sized.extend(parts)
    sized = [
        replace(t, depends_on=frozenset(last_part.get(d, d) for d in t.depends_on))
        for t in sized
    ]

    graph = build_dag(sized)
    order = topological_order(graph, {t.id: i for i, t in enumerate(sized)})
    edges = sum(len(deps) for deps in graph.values())
    logger.info(f"Built task graph: {len(sized)} tasks, {edges} edges")
    return TaskGraph(
        tasks=tuple(sized),
        order=tuple(order),
        requirements=tuple(requirements),
        non_goals=tuple(non_goals),
    )


def _group_stage(group: list[Requirement]) -> str:
    for req in group:
        if req.stage != "core":
            return req.stage
    return "core"
