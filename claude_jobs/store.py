from __future__ import annotations

import asyncio
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any

from claude_jobs.tasks import RunRecord, RunStatus, ScheduleKind, Task, iso_utc, now_utc, parse_iso

_SCHEMA = """
CREATE TABLE IF NOT EXISTS tasks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    prompt TEXT NOT NULL,
    schedule_kind TEXT NOT NULL,
    hour INTEGER NOT NULL,
    minute INTEGER NOT NULL,
    day_of_week INTEGER NOT NULL,
    interval_hours INTEGER NOT NULL,
    run_at TEXT,
    enabled INTEGER NOT NULL,
    job_name TEXT NOT NULL DEFAULT '',
    system_prompt TEXT NOT NULL DEFAULT '',
    max_tokens INTEGER NOT NULL,
    enable_web_search INTEGER NOT NULL DEFAULT 0,
    enable_web_fetch INTEGER NOT NULL DEFAULT 0,
    enable_code_execution INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    last_run_at TEXT
);

-- No foreign key to tasks: run history outlives the task it came from.
CREATE TABLE IF NOT EXISTS task_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id INTEGER NOT NULL,
    task_name TEXT NOT NULL,
    prompt TEXT NOT NULL,
    status TEXT NOT NULL,
    response_text TEXT NOT NULL DEFAULT '',
    error_message TEXT NOT NULL DEFAULT '',
    executed_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_task_runs_task_id ON task_runs(task_id);
"""


class _SqliteStore:
    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()
        with self._connect() as conn:
            conn.executescript(_SCHEMA)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn


class TaskStore(_SqliteStore):
    async def list_tasks(self) -> list[Task]:
        async with self._lock:
            return await asyncio.to_thread(self._list_tasks_sync)

    def _list_tasks_sync(self) -> list[Task]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM tasks ORDER BY created_at DESC, id DESC").fetchall()
        return [self._row_to_task(row) for row in rows]

    async def get_task(self, task_id: int) -> Task | None:
        async with self._lock:
            return await asyncio.to_thread(self._get_task_sync, task_id)

    def _get_task_sync(self, task_id: int) -> Task | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    async def insert_task(self, task: Task) -> int:
        async with self._lock:
            return await asyncio.to_thread(self._insert_task_sync, task)

    def _insert_task_sync(self, task: Task) -> int:
        payload = self._task_to_row(task)
        columns = ", ".join(payload.keys())
        placeholders = ", ".join(["?"] * len(payload))
        with self._connect() as conn:
            cursor = conn.execute(
                f"INSERT INTO tasks ({columns}) VALUES ({placeholders})",
                list(payload.values()),
            )
            return int(cursor.lastrowid)

    async def update_task(self, task: Task) -> Task | None:
        async with self._lock:
            return await asyncio.to_thread(self._update_task_sync, task)

    def _update_task_sync(self, task: Task) -> Task | None:
        # last_run_at is owned by update_last_run.
        payload = self._task_to_row(task)
        assignments = ", ".join([f"{key} = ?" for key in payload.keys()])
        values = list(payload.values())
        values.append(task.id)
        with self._connect() as conn:
            cursor = conn.execute(f"UPDATE tasks SET {assignments} WHERE id = ?", values)
            if cursor.rowcount == 0:
                return None
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task.id,)).fetchone()
        return self._row_to_task(row)

    async def update_last_run(self, task_id: int, last_run_at: datetime) -> bool:
        async with self._lock:
            return await asyncio.to_thread(self._update_last_run_sync, task_id, last_run_at)

    def _update_last_run_sync(self, task_id: int, last_run_at: datetime) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE tasks SET last_run_at = ? WHERE id = ?",
                (iso_utc(last_run_at), task_id),
            )
            return cursor.rowcount > 0

    async def delete_task(self, task_id: int) -> None:
        async with self._lock:
            await asyncio.to_thread(self._delete_task_sync, task_id)

    def _delete_task_sync(self, task_id: int) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))

    def _row_to_task(self, row: sqlite3.Row) -> Task:
        return Task(
            id=row["id"],
            name=row["name"],
            prompt=row["prompt"],
            schedule_kind=ScheduleKind(row["schedule_kind"]),
            hour=row["hour"],
            minute=row["minute"],
            day_of_week=row["day_of_week"],
            interval_hours=row["interval_hours"],
            run_at=parse_iso(row["run_at"]),
            enabled=bool(row["enabled"]),
            job_name=row["job_name"] or "",
            system_prompt=row["system_prompt"] or "",
            max_tokens=row["max_tokens"],
            enable_web_search=bool(row["enable_web_search"]),
            enable_web_fetch=bool(row["enable_web_fetch"]),
            enable_code_execution=bool(row["enable_code_execution"]),
            created_at=parse_iso(row["created_at"]) or now_utc(),
            last_run_at=parse_iso(row["last_run_at"]),
        )

    def _task_to_row(self, task: Task) -> dict[str, Any]:
        return {
            "name": task.name,
            "prompt": task.prompt,
            "schedule_kind": task.schedule_kind.value,
            "hour": task.hour,
            "minute": task.minute,
            "day_of_week": task.day_of_week,
            "interval_hours": task.interval_hours,
            "run_at": iso_utc(task.run_at),
            "enabled": 1 if task.enabled else 0,
            "job_name": task.job_name,
            "system_prompt": task.system_prompt,
            "max_tokens": task.max_tokens,
            "enable_web_search": 1 if task.enable_web_search else 0,
            "enable_web_fetch": 1 if task.enable_web_fetch else 0,
            "enable_code_execution": 1 if task.enable_code_execution else 0,
            "created_at": iso_utc(task.created_at or now_utc()),
        }


class RunStore(_SqliteStore):
    async def insert_run(self, run: RunRecord) -> int:
        async with self._lock:
            return await asyncio.to_thread(self._insert_run_sync, run)

    def _insert_run_sync(self, run: RunRecord) -> int:
        payload = {
            "task_id": run.task_id,
            "task_name": run.task_name,
            "prompt": run.prompt,
            "status": run.status.value,
            "response_text": run.response_text,
            "error_message": run.error_message,
            "executed_at": iso_utc(run.executed_at),
        }
        columns = ", ".join(payload.keys())
        placeholders = ", ".join(["?"] * len(payload))
        with self._connect() as conn:
            cursor = conn.execute(
                f"INSERT INTO task_runs ({columns}) VALUES ({placeholders})",
                list(payload.values()),
            )
            return int(cursor.lastrowid)

    async def list_runs(self, *, task_id: int | None = None) -> list[RunRecord]:
        async with self._lock:
            return await asyncio.to_thread(self._list_runs_sync, task_id)

    def _list_runs_sync(self, task_id: int | None) -> list[RunRecord]:
        query = "SELECT * FROM task_runs"
        params: list[Any] = []
        if task_id is not None:
            query += " WHERE task_id = ?"
            params.append(task_id)
        query += " ORDER BY executed_at DESC, id DESC"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_run(row) for row in rows]

    async def get_run(self, run_id: int) -> RunRecord | None:
        async with self._lock:
            return await asyncio.to_thread(self._get_run_sync, run_id)

    def _get_run_sync(self, run_id: int) -> RunRecord | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM task_runs WHERE id = ?", (run_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_run(row)

    async def latest_run_for_task(self, task_id: int) -> RunRecord | None:
        runs = await self.list_runs(task_id=task_id)
        return runs[0] if runs else None

    async def delete_run(self, run_id: int) -> bool:
        async with self._lock:
            return await asyncio.to_thread(self._delete_run_sync, run_id)

    def _delete_run_sync(self, run_id: int) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM task_runs WHERE id = ?", (run_id,))
            return cursor.rowcount > 0

    def _row_to_run(self, row: sqlite3.Row) -> RunRecord:
        return RunRecord(
            id=row["id"],
            task_id=row["task_id"],
            task_name=row["task_name"],
            prompt=row["prompt"],
            status=RunStatus(row["status"]),
            response_text=row["response_text"] or "",
            error_message=row["error_message"] or "",
            executed_at=parse_iso(row["executed_at"]) or now_utc(),
        )
