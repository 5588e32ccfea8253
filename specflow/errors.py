"""Error kinds raised by the orchestration core."""

from __future__ import annotations


class SpecflowError(Exception):
    """Base class for every error surfaced by specflow."""


class MalformedDocument(SpecflowError):
    """The document has no recognisable structural sections."""


class CyclicDependency(SpecflowError):
    """Raised when task dependencies form a cycle."""

    def __init__(self, cycle: list[str]):
        self.cycle = list(cycle)
        super().__init__(f"Dependency cycle detected: {' -> '.join(self.cycle)}")


class AmbiguousDependency(SpecflowError):
    """A reference resolves to no task or to more than one task."""

    def __init__(self, source: str, reference: str, candidates: list[str] | None = None):
        self.source = source
        self.reference = reference
        self.candidates = list(candidates or [])
        if self.candidates:
            msg = (
                f"'{source}' references '{reference}', which is provided by "
                f"several tasks: {', '.join(self.candidates)}"
            )
        else:
            msg = f"'{source}' references unknown '{reference}'"
        super().__init__(msg)


class InvalidTransition(SpecflowError):
    """Raised when attempting a transition the state machine does not allow."""

    def __init__(self, current: str, target: str, reason: str = ""):
        self.current = current
        self.target = target
        super().__init__(
            f"Invalid transition: {current} -> {target}"
            + (f" ({reason})" if reason else "")
        )


class InvalidPhase(SpecflowError):
    """An operation was called in a phase that does not permit it."""


class ConcurrentTaskViolation(SpecflowError):
    def __init__(self, active_task_id: str, requested_task_id: str):
        self.active_task_id = active_task_id
        self.requested_task_id = requested_task_id
        super().__init__(
            f"Cannot start '{requested_task_id}': '{active_task_id}' is already in progress"
        )


class DependencyNotMet(SpecflowError):
    def __init__(self, task_id: str, missing: list[str]):
        self.task_id = task_id
        self.missing = list(missing)
        super().__init__(
            f"Cannot start '{task_id}': dependencies not completed: {', '.join(self.missing)}"
        )


class IncompleteCard(SpecflowError):
    """No test scenario can be derived for a task."""


class ScopeCreepUnapproved(SpecflowError):
    """Unplanned work is held until it is explicitly approved."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task '{task_id}' was not in the plan and awaits approval")


class TaskNotFound(SpecflowError, KeyError):
    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Unknown task '{task_id}'")

    def __str__(self) -> str:
        return self.args[0]
