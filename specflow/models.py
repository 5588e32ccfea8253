"""Core data models for specflow."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class Category(str, Enum):
    FUNCTIONAL = "functional"
    NON_FUNCTIONAL = "non-functional"
    EDGE_CASE = "edge-case"
    ACCEPTANCE = "acceptance"


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED})


class Phase(str, Enum):
    ANALYSIS = "analysis"
    PLANNING = "planning"
    IMPLEMENTATION = "implementation"
    SUMMARY = "summary"


class Approval(str, Enum):
    NOT_REQUIRED = "not_required"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ScenarioKind(str, Enum):
    HAPPY_PATH = "happy_path"
    EDGE_CASE = "edge_case"
    ERROR_CASE = "error_case"
    SECURITY = "security"
    IDEMPOTENCY = "idempotency"


@dataclass(frozen=True)
class Requirement:
    """An atomic, classified span of the source document."""

    id: str
    text: str
    category: Category
    source_offset: int
    section: str = ""
    stage: str = "core"
    low_confidence: bool = False
    references: tuple[str, ...] = ()
    provides: tuple[str, ...] = ()
    consumes: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()


@dataclass
class RequirementsDocument:
    """Everything the extractor recovered from one document."""

    requirements: list[Requirement]
    overview: str = ""
    non_goals: list[str] = field(default_factory=list)
    metadata: dict = field(default_factory=dict)


@dataclass
class Task:
    """A schedulable unit of work derived from one or more Requirements."""

    id: str
    title: str
    description: str
    depends_on: frozenset[str] = frozenset()
    estimate: int = 1
    status: TaskStatus = TaskStatus.PENDING
    requirement_ids: tuple[str, ...] = ()
    stage: str = "core"
    handles_external_input: bool = False
    idempotent: bool = False
    parent_id: str = ""

    # Runtime
    scope_creep: bool = False
    approval: Approval = Approval.NOT_REQUIRED
    failure_reason: str = ""
    detail: str = ""
    attempts: int = 0

    @property
    def executable(self) -> bool:
        """False while the task is unapproved scope creep."""
        return self.approval in (Approval.NOT_REQUIRED, Approval.APPROVED)


@dataclass(frozen=True)
class TaskGraph:
    """Immutable output of the task graph builder."""

    tasks: tuple[Task, ...]
    order: tuple[str, ...]
    requirements: tuple[Requirement, ...] = ()
    non_goals: tuple[str, ...] = ()

    def get(self, task_id: str) -> Task:
        for task in self.tasks:
            if task.id == task_id:
                return task
        raise KeyError(task_id)


@dataclass
class TransitionEvent:
    at: str
    event: str
    task_id: str = ""
    detail: str = ""


@dataclass
class WorkflowRun:
    """One execution lifecycle over a Task DAG."""

    id: str
    tasks: list[Task] = field(default_factory=list)
    requirements: list[Requirement] = field(default_factory=list)
    order: list[str] = field(default_factory=list)
    non_goals: list[str] = field(default_factory=list)
    phase: Phase = Phase.ANALYSIS
    current_task_id: str | None = None
    planned_task_ids: list[str] = field(default_factory=list)
    abandoned: bool = False
    started_at: str = ""
    completed_at: str = ""
    history: list[TransitionEvent] = field(default_factory=list)

    def task(self, task_id: str) -> Task | None:
        return next((t for t in self.tasks if t.id == task_id), None)


@dataclass
class TransitionResult:
    """New state of a run after a transition."""

    run: WorkflowRun
    phase: Phase
    task: Task | None = None
    newly_eligible: list[Task] = field(default_factory=list)


@dataclass(frozen=True)
class Card:
    id: str
    title: str
    task_id: str
    scope_in: tuple[str, ...] = ()
    scope_out: tuple[str, ...] = ()


@dataclass(frozen=True)
class Scenario:
    id: str
    card_id: str
    kind: ScenarioKind
    given: str
    when: str
    then: str


@dataclass
class CardScenarios:
    card: Card
    scenarios: list[Scenario] = field(default_factory=list)


@dataclass
class RunReport:
    """Final structured hand-off of a run."""

    run_id: str
    phase: Phase
    abandoned: bool
    counts: dict[str, int]
    failed: list[dict] = field(default_factory=list)
    blocked: list[dict] = field(default_factory=list)
    scope_creep: list[dict] = field(default_factory=list)
    deviations: list[str] = field(default_factory=list)
    manual_verification: list[str] = field(default_factory=list)
    cards: list[CardScenarios] = field(default_factory=list)

    @property
    def scenarios(self) -> list[Scenario]:
        return [s for c in self.cards for s in c.scenarios]
