"""SQLite state persistence with WAL mode."""

from __future__ import annotations

import json
from dataclasses import asdict
from datetime import datetime, timezone

import aiosqlite

from .models import (
    Approval,
    Category,
    Phase,
    Requirement,
    Task,
    TaskStatus,
    TransitionEvent,
    WorkflowRun,
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS runs (
    id TEXT PRIMARY KEY,
    phase TEXT NOT NULL DEFAULT 'analysis',
    abandoned INTEGER DEFAULT 0,
    snapshot TEXT NOT NULL,
    started_at TEXT NOT NULL,
    completed_at TEXT DEFAULT '',
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS run_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT NOT NULL REFERENCES runs(id),
    seq INTEGER NOT NULL,
    event TEXT NOT NULL,
    task_id TEXT DEFAULT '',
    detail TEXT DEFAULT '',
    created_at TEXT NOT NULL,
    UNIQUE (run_id, seq)
);

CREATE INDEX IF NOT EXISTS idx_runs_phase ON runs(phase);
CREATE INDEX IF NOT EXISTS idx_run_log_run ON run_log(run_id);
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------
# Snapshot (de)serialisation
# ---------------------------------------------------------------

def run_to_dict(run: WorkflowRun) -> dict:
    """Plain structured document for a run; enums become their values."""
    data = asdict(run)
    data["phase"] = run.phase.value
    for task, raw in zip(run.tasks, data["tasks"]):
        raw["status"] = task.status.value
        raw["approval"] = task.approval.value
        raw["depends_on"] = sorted(task.depends_on)
        raw["requirement_ids"] = list(task.requirement_ids)
    for req, raw in zip(run.requirements, data["requirements"]):
        raw["category"] = req.category.value
        for key in ("references", "provides", "consumes", "tags"):
            raw[key] = list(raw[key])
    return data


def run_from_dict(data: dict) -> WorkflowRun:
    tasks = [
        Task(**{
            **raw,
            "status": TaskStatus(raw["status"]),
            "approval": Approval(raw["approval"]),
            "depends_on": frozenset(raw.get("depends_on", [])),
            "requirement_ids": tuple(raw.get("requirement_ids", [])),
        })
        for raw in data.get("tasks", [])
    ]
    requirements = [
        Requirement(**{
            **raw,
            "category": Category(raw["category"]),
            **{k: tuple(raw.get(k, [])) for k in ("references", "provides", "consumes", "tags")},
        })
        for raw in data.get("requirements", [])
    ]
    return WorkflowRun(
        id=data["id"],
        tasks=tasks,
        requirements=requirements,
        order=list(data.get("order", [])),
        non_goals=list(data.get("non_goals", [])),
        phase=Phase(data.get("phase", Phase.ANALYSIS.value)),
        current_task_id=data.get("current_task_id"),
        planned_task_ids=list(data.get("planned_task_ids", [])),
        abandoned=bool(data.get("abandoned", False)),
        started_at=data.get("started_at", ""),
        completed_at=data.get("completed_at", ""),
        history=[TransitionEvent(**e) for e in data.get("history", [])],
    )


class Database:
    def __init__(self, db_path: str):
        self.db_path = db_path
        self._conn: aiosqlite.Connection | None = None

    async def init(self) -> None:
        self._conn = await aiosqlite.connect(self.db_path)
        self._conn.row_factory = aiosqlite.Row
        if self.db_path != ":memory:":
            await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.executescript(_SCHEMA)
        await self._conn.commit()

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    # ---------------------------------------------------------------
    # Runs
    # ---------------------------------------------------------------

    async def save_run(self, run: WorkflowRun) -> None:
        """Upsert the run snapshot and append history not yet logged."""
        await self._conn.execute(
            """INSERT INTO runs
               (id, phase, abandoned, snapshot, started_at, completed_at, updated_at)
               VALUES (?,?,?,?,?,?,?)
               ON CONFLICT(id) DO UPDATE SET
                 phase=excluded.phase,
                 abandoned=excluded.abandoned,
                 snapshot=excluded.snapshot,
                 completed_at=excluded.completed_at,
                 updated_at=excluded.updated_at
            """,
            (
                run.id, run.phase.value, int(run.abandoned),
                json.dumps(run_to_dict(run), ensure_ascii=False),
                run.started_at or _now(), run.completed_at, _now(),
            ),
        )
        cursor = await self._conn.execute(
            "SELECT COALESCE(MAX(seq), -1) AS last FROM run_log WHERE run_id = ?",
            (run.id,),
        )
        row = await cursor.fetchone()
        for seq, event in enumerate(run.history):
            if seq <= row["last"]:
                continue
            await self._conn.execute(
                """INSERT INTO run_log (run_id, seq, event, task_id, detail, created_at)
                   VALUES (?,?,?,?,?,?)""",
                (run.id, seq, event.event, event.task_id, event.detail, event.at),
            )
        await self._conn.commit()

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        cursor = await self._conn.execute(
            "SELECT snapshot FROM runs WHERE id = ?", (run_id,)
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return run_from_dict(json.loads(row["snapshot"]))

    async def latest_run(self) -> WorkflowRun | None:
        cursor = await self._conn.execute(
            "SELECT snapshot FROM runs ORDER BY started_at DESC, rowid DESC LIMIT 1"
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return run_from_dict(json.loads(row["snapshot"]))

    async def list_runs(self) -> list[dict]:
        cursor = await self._conn.execute(
            "SELECT id, phase, abandoned, started_at, completed_at FROM runs ORDER BY started_at"
        )
        rows = await cursor.fetchall()
        return [
            {
                "id": r["id"],
                "phase": r["phase"],
                "abandoned": bool(r["abandoned"]),
                "started_at": r["started_at"],
                "completed_at": r["completed_at"] or "",
            }
            for r in rows
        ]

    async def list_by_phase(self, phase: Phase) -> list[str]:
        cursor = await self._conn.execute(
            "SELECT id FROM runs WHERE phase = ? ORDER BY started_at", (phase.value,)
        )
        rows = await cursor.fetchall()
        return [r["id"] for r in rows]

    # ---------------------------------------------------------------
    # Run Log
    # ---------------------------------------------------------------

    async def get_logs(self, run_id: str) -> list[dict]:
        cursor = await self._conn.execute(
            "SELECT * FROM run_log WHERE run_id = ? ORDER BY seq",
            (run_id,),
        )
        rows = await cursor.fetchall()
        return [
            {
                "event": r["event"],
                "task_id": r["task_id"] or "",
                "detail": r["detail"] or "",
                "created_at": r["created_at"],
            }
            for r in rows
        ]
