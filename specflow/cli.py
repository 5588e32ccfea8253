"""specflow CLI — typer-based command interface."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Callable, Optional

import typer

from .errors import SpecflowError

app = typer.Typer(
    name="specflow",
    help="specflow — requirements document to tracked tasks and acceptance scenarios",
    no_args_is_help=True,
)

# -------------------------------------------------------------------
# Templates
# -------------------------------------------------------------------

DEFAULT_CONFIG_TEMPLATE = """\
# .specflow/config.yaml — team-shared configuration
state_path: .specflow/state.db

planning:
  grouping: requirement   # requirement | section
  max_estimate: 8         # points; larger tasks are split into a chain
  words_per_point: 25
  stages:
    setup: [setup, foundation, scaffolding, prerequisites]
    core: [core, implementation]
    polish: [polish, cleanup, documentation, hardening]

# extraction:
#   heading_aliases:
#     must haves: functional

notify:
  webhook_url: ""
  events:
    - task.failed
    - task.scope_creep
    - run.summary

logging:
  level: WARNING
"""

DEFAULT_LOCAL_CONFIG_TEMPLATE = """\
# .specflow/local.config.yaml — personal overrides (DO NOT commit)
# logging:
#   level: INFO
"""

EXAMPLE_REQUIREMENTS = """\
# Example Feature

## Overview
Replace with the feature you are planning.

## Requirements
### Setup
- [R1] Create the storage schema; provides `schema`.
### Core
- [R2] Users can register with an email and password; uses `schema`. @input
- [R3] Registered users can log in and receive a session token.

## Edge Cases
- [E1] Registration with an empty or invalid email is rejected for [R2].

## Acceptance Criteria
- [A1] A newly registered user can log in for [R3].

## Non-goals
- Single sign-on.
"""

GITIGNORE_ENTRIES = [
    ".specflow/local.config.yaml",
    ".specflow/state.db",
    ".specflow/state.db-wal",
    ".specflow/state.db-shm",
]

STATUS_ICONS = {
    "completed": "✅", "in_progress": "🔄", "pending": "⏳",
    "blocked": "⛔", "failed": "❌",
}


# -------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------

def _get_project_root() -> Path:
    return Path.cwd()


def _run_async(coro):
    """Run an async coroutine from sync context."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None
    if loop and loop.is_running():
        import concurrent.futures
        with concurrent.futures.ThreadPoolExecutor() as pool:
            return pool.submit(asyncio.run, coro).result()
    return asyncio.run(coro)


async def _get_db(config):
    from .config import state_db_path
    from .db import Database
    db_path = state_db_path(config)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    db = Database(str(db_path))
    await db.init()
    return db


def _fail(message: str) -> None:
    typer.echo(f"  Error: {message}", err=True)
    raise typer.Exit(1)


def _read_document(path: Path) -> str:
    if not path.exists():
        _fail(f"{path} not found")
    return path.read_text(encoding="utf-8")


def _mutate_run(
    run_id: Optional[str],
    action: Callable,
    events: Callable | None = None,
    save: bool = True,
):
    """Load a run, apply ``action(run)``, persist it and send notifications.

    ``events(run, outcome)`` returns (event, task) pairs to notify.
    """
    root = _get_project_root()

    async def _go():
        from .config import load_config
        from .notifier import Notifier

        config = load_config(root)
        db = await _get_db(config)
        notifier = Notifier(config.notify.webhook_url, config.notify.events)
        try:
            run = await db.get_run(run_id) if run_id else await db.latest_run()
            if run is None:
                _fail(f"run '{run_id}' not found" if run_id else "no runs yet; use `specflow start`")
            try:
                outcome = action(run)
            except SpecflowError as e:
                _fail(str(e))
            if save:
                await db.save_run(run)
            for event, task in (events(run, outcome) if events else []):
                await notifier.notify(event, run, task)
            return outcome
        finally:
            await notifier.close()
            await db.close()

    return _run_async(_go())


def _print_tasks(run) -> None:
    position = {tid: i for i, tid in enumerate(run.order)}
    typer.echo(f"\n  {run.id} — phase: {run.phase.value}")
    typer.echo("  " + "─" * 60)
    for task in sorted(run.tasks, key=lambda t: position.get(t.id, len(position))):
        icon = STATUS_ICONS.get(task.status.value, "  ")
        flag = ""
        if task.scope_creep:
            flag = f" [scope creep: {task.approval.value}]"
        deps = f" ← {', '.join(sorted(task.depends_on))}" if task.depends_on else ""
        typer.echo(f"  {icon} {task.id:<10} {task.status.value:<12} {task.title}{deps}{flag}")
    typer.echo("")


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Log transitions")):
    """Configure logging before any command runs."""
    from .config import load_config

    try:
        level = load_config(_get_project_root()).logging.level
    except ValueError:
        level = "WARNING"
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, level, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# -------------------------------------------------------------------
# Commands
# -------------------------------------------------------------------

@app.command()
def init():
    """Initialize specflow in the current project."""
    root = _get_project_root()

    config_dir = root / ".specflow"
    config_dir.mkdir(exist_ok=True)

    config_path = config_dir / "config.yaml"
    if not config_path.exists():
        config_path.write_text(DEFAULT_CONFIG_TEMPLATE)
        typer.echo(f"  Created {config_path.relative_to(root)}")
    else:
        typer.echo(f"  Exists  {config_path.relative_to(root)}")

    local_path = config_dir / "local.config.yaml"
    if not local_path.exists():
        local_path.write_text(DEFAULT_LOCAL_CONFIG_TEMPLATE)
        typer.echo(f"  Created {local_path.relative_to(root)}")

    example = root / "requirements.md"
    if not example.exists():
        example.write_text(EXAMPLE_REQUIREMENTS)
        typer.echo(f"  Created {example.relative_to(root)}")

    gitignore_path = root / ".gitignore"
    existing = ""
    if gitignore_path.exists():
        existing = gitignore_path.read_text()
    additions = [e for e in GITIGNORE_ENTRIES if e not in existing]
    if additions:
        with open(gitignore_path, "a") as f:
            if existing and not existing.endswith("\n"):
                f.write("\n")
            f.write("# specflow\n")
            for entry in additions:
                f.write(f"{entry}\n")
        typer.echo("  Updated .gitignore")

    typer.echo("\n  specflow initialized. Run `specflow plan requirements.md` to preview.")


@app.command()
def extract(document: Path = typer.Argument(..., help="Requirements document")):
    """List the requirements found in a document."""
    from .config import load_config
    from .extractor import extract as extract_requirements

    config = load_config(_get_project_root())
    try:
        requirements = list(extract_requirements(_read_document(document), config))
    except SpecflowError as e:
        _fail(str(e))

    typer.echo(f"\n  Found {len(requirements)} requirement(s):")
    for req in requirements:
        marker = " (?)" if req.low_confidence else ""
        typer.echo(f"  - {req.id:<6} {req.category.value:<15}{marker} {req.text}")
    typer.echo("")


@app.command()
def plan(document: Path = typer.Argument(..., help="Requirements document")):
    """Show execution plan (dry-run)."""
    from .config import load_config
    from .workflow import plan_document

    config = load_config(_get_project_root())
    try:
        run = plan_document(_read_document(document), config, run_id="dry-run")
    except SpecflowError as e:
        _fail(f"Plan Error: {e}")

    typer.echo("")
    typer.echo("  specflow — Execution Plan")
    typer.echo(f"  Requirements: {len(run.requirements)} · Tasks: {len(run.tasks)} · DAG: valid")
    typer.echo("")
    typer.echo(f"  {'#':<3} {'ID':<10} {'Stage':<8} {'Est':<4} {'Deps':<20} {'Title'}")
    typer.echo(f"  {'---':<3} {'---':<10} {'---':<8} {'---':<4} {'---':<20} {'---'}")
    for i, task in enumerate(run.tasks, 1):
        deps_str = ", ".join(sorted(task.depends_on)) if task.depends_on else "—"
        typer.echo(
            f"  {i:<3} {task.id:<10} {task.stage:<8} {task.estimate:<4} {deps_str:<20} {task.title}"
        )
    typer.echo("")


@app.command()
def start(
    document: Path = typer.Argument(..., help="Requirements document"),
    run_id: str = typer.Option(None, "--run-id", help="Explicit run id"),
):
    """Plan a document and open a run in the implementation phase."""
    root = _get_project_root()

    async def _start():
        from .config import load_config
        from .workflow import begin_implementation, plan_document

        config = load_config(root)
        try:
            run = plan_document(_read_document(document), config, run_id=run_id)
            result = begin_implementation(run)
        except SpecflowError as e:
            _fail(str(e))
        db = await _get_db(config)
        try:
            await db.save_run(run)
        finally:
            await db.close()
        typer.echo(f"  Started {run.id} with {len(run.tasks)} task(s).")
        if result.newly_eligible:
            typer.echo(f"  Ready: {', '.join(t.id for t in result.newly_eligible)}")

    _run_async(_start())


@app.command("next")
def next_task(run_id: str = typer.Option(None, "--run", help="Run id (default: latest)")):
    """Start the next eligible task."""
    from .workflow import claim_next_task

    result = _mutate_run(run_id, claim_next_task)
    if result.task is None:
        typer.echo("  No eligible task.")
        return
    typer.echo(f"  🔄 {result.task.id}: {result.task.title}")
    typer.echo(f"     {result.task.description}")


@app.command()
def done(
    task_id: str = typer.Argument(..., help="Task ID"),
    detail: str = typer.Option("", "--detail", help="Outcome notes"),
    run_id: str = typer.Option(None, "--run", help="Run id (default: latest)"),
):
    """Report the active task as completed."""
    from .models import TaskStatus
    from .workflow import report_outcome

    result = _mutate_run(
        run_id, lambda run: report_outcome(run, task_id, TaskStatus.COMPLETED, detail)
    )
    typer.echo(f"  ✅ {task_id} completed.")
    if result.newly_eligible:
        typer.echo(f"  Ready: {', '.join(t.id for t in result.newly_eligible)}")


@app.command()
def fail(
    task_id: str = typer.Argument(..., help="Task ID"),
    reason: str = typer.Option(..., "--reason", help="Why the task failed"),
    run_id: str = typer.Option(None, "--run", help="Run id (default: latest)"),
):
    """Report the active task as failed; dependents become blocked."""
    from .models import TaskStatus
    from .workflow import report_outcome

    _mutate_run(
        run_id,
        lambda run: report_outcome(run, task_id, TaskStatus.FAILED, reason),
        lambda run, result: [("task.failed", result.task)],
    )
    typer.echo(f"  ❌ {task_id} failed: {reason}")


@app.command()
def retry(
    task_id: str = typer.Argument(..., help="Task ID to retry"),
    run_id: str = typer.Option(None, "--run", help="Run id (default: latest)"),
):
    """Retry a failed task."""
    from .workflow import retry_task

    _mutate_run(run_id, lambda run: retry_task(run, task_id))
    typer.echo(f"  🔄 {task_id} set to pending for retry.")


@app.command()
def propose(
    title: str = typer.Argument(..., help="Task title"),
    description: str = typer.Option("", "--description", help="Task description"),
    after: list[str] = typer.Option([], "--after", help="Existing task this depends on"),
    run_id: str = typer.Option(None, "--run", help="Run id (default: latest)"),
):
    """Add a task; during implementation it waits for approval."""
    from .workflow import propose_task

    result = _mutate_run(
        run_id,
        lambda run: propose_task(run, title, description, depends_on=after),
        lambda run, res: [("task.scope_creep", res.task)] if res.task.scope_creep else [],
    )
    if result.task.scope_creep:
        typer.echo(f"  ⚠️  {result.task.id} is scope creep; run `specflow approve {result.task.id}`.")
    else:
        typer.echo(f"  Added {result.task.id}.")


@app.command()
def approve(
    task_id: str = typer.Argument(..., help="Scope-creep task ID"),
    run_id: str = typer.Option(None, "--run", help="Run id (default: latest)"),
):
    """Approve a scope-creep task for execution."""
    from .workflow import approve_scope_creep

    if _mutate_run(run_id, lambda run: approve_scope_creep(run, task_id)):
        typer.echo(f"  ✅ {task_id} approved.")
    else:
        typer.echo(f"  {task_id} needs no approval.")


@app.command()
def reject(
    task_id: str = typer.Argument(..., help="Scope-creep task ID"),
    run_id: str = typer.Option(None, "--run", help="Run id (default: latest)"),
):
    """Reject a scope-creep task; it never runs."""
    from .workflow import reject_scope_creep

    if _mutate_run(run_id, lambda run: reject_scope_creep(run, task_id)):
        typer.echo(f"  ❌ {task_id} rejected.")
    else:
        typer.echo(f"  {task_id} is not awaiting approval.")


@app.command()
def finish(run_id: str = typer.Option(None, "--run", help="Run id (default: latest)")):
    """Move the run to the summary phase."""
    from .workflow import finish_run

    _mutate_run(run_id, finish_run, lambda run, result: [("run.summary", None)])
    typer.echo("  Run finished. Use `specflow report` for the hand-off.")


@app.command()
def abandon(
    reason: str = typer.Option("cancelled", "--reason", help="Recorded on the active task"),
    run_id: str = typer.Option(None, "--run", help="Run id (default: latest)"),
):
    """Abandon the run; a partial report stays available."""
    from .workflow import abandon_run

    _mutate_run(
        run_id,
        lambda run: abandon_run(run, reason),
        lambda run, result: [("run.summary", result.task)],
    )
    typer.echo("  Run abandoned.")


@app.command()
def status(run_id: str = typer.Option(None, "--run", help="Run id (default: latest)")):
    """Show task status for a run."""
    _mutate_run(run_id, _print_tasks, save=False)


@app.command()
def runs():
    """List stored runs."""
    root = _get_project_root()

    async def _runs():
        from .config import load_config
        db = await _get_db(load_config(root))
        try:
            entries = await db.list_runs()
        finally:
            await db.close()
        if not entries:
            typer.echo("  No runs yet.")
            return
        for entry in entries:
            flag = " (abandoned)" if entry["abandoned"] else ""
            typer.echo(f"  {entry['id']:<14} {entry['phase']:<15} {entry['started_at']}{flag}")

    _run_async(_runs())


@app.command()
def report(
    fmt: str = typer.Option("markdown", "--format", help="markdown | yaml | json"),
    run_id: str = typer.Option(None, "--run", help="Run id (default: latest)"),
):
    """Print the run report (summary phase only)."""
    import yaml

    from .config import load_config
    from .report import aggregate, render_markdown, report_to_dict

    config = load_config(_get_project_root())
    result = _mutate_run(run_id, lambda run: aggregate(run, config), save=False)
    if fmt == "json":
        typer.echo(json.dumps(report_to_dict(result), indent=2, ensure_ascii=False))
    elif fmt == "yaml":
        typer.echo(yaml.safe_dump(report_to_dict(result), sort_keys=False, allow_unicode=True))
    else:
        typer.echo(render_markdown(result))


@app.command()
def log(run_id: str = typer.Option(None, "--run", help="Run id (default: latest)")):
    """Show the transition log of a run."""
    root = _get_project_root()

    async def _log():
        from .config import load_config
        db = await _get_db(load_config(root))
        try:
            run = await db.get_run(run_id) if run_id else await db.latest_run()
            if run is None:
                typer.echo("  No runs yet.")
                return
            entries = await db.get_logs(run.id)
        finally:
            await db.close()
        typer.echo(f"\n  Log — {run.id}")
        typer.echo("  " + "─" * 50)
        for entry in entries:
            task = f" {entry['task_id']}" if entry["task_id"] else ""
            detail = f" ({entry['detail']})" if entry["detail"] else ""
            typer.echo(f"  [{entry['created_at']}] {entry['event']}{task}{detail}")

    _run_async(_log())


@app.command("config")
def config_show():
    """Show merged configuration."""
    root = _get_project_root()

    from dataclasses import asdict

    import yaml

    from .config import load_config

    config = load_config(root)
    typer.echo("\n  specflow — Merged Configuration")
    typer.echo("  " + "─" * 40)
    typer.echo(yaml.dump(asdict(config), default_flow_style=False, allow_unicode=True))


if __name__ == "__main__":
    app()
