from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from claude_jobs.delay_calculator import daily_delay, weekly_delay
from claude_jobs.job_executor import JobExecutor, JobFailed
from claude_jobs.store import TaskStore
from claude_jobs.tasks import ScheduleKind, Task, now_utc
from claude_jobs.util import job_name_for

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3
RETRY_BACKOFF = timedelta(seconds=30)
MISFIRE_GRACE_SECONDS = 300
RUN_NOW_PREFIX = "run-now-"


def retry_delay(attempt: int) -> timedelta:
    """Wait before the attempt that follows failed attempt number ``attempt`` (1-based)."""
    return RETRY_BACKOFF * (2 ** (attempt - 1))


def _retry_prefix(group: str) -> str:
    return f"{group}:retry:"


class TaskScheduler:
    """Keeps at most one APScheduler job per task, keyed by the task's ``job_name``.

    Mutations for one task id are serialized so a cancel is never interleaved with
    another mutation's schedule. Fired jobs carry only the task id; the executor
    reads the current task from the store.
    """

    def __init__(
        self,
        *,
        store: TaskStore,
        executor: JobExecutor,
        time_zone: tzinfo = timezone.utc,
        scheduler: AsyncIOScheduler | None = None,
    ) -> None:
        self._store = store
        self._executor = executor
        self._tz = time_zone
        self._scheduler = scheduler or AsyncIOScheduler(timezone=timezone.utc)
        self._lock = asyncio.Lock()
        self._task_locks: dict[int, asyncio.Lock] = {}
        self._started = False

    async def start(self) -> None:
        async with self._lock:
            if self._started:
                return
            self._scheduler.start()
            await self.reload()
            self._started = True

    async def shutdown(self) -> None:
        async with self._lock:
            if not self._started:
                return
            self._scheduler.shutdown(wait=False)
            self._started = False

    async def reload(self) -> None:
        tasks = await self._store.list_tasks()
        self._scheduler.remove_all_jobs()
        now = now_utc()
        for task in tasks:
            if not task.enabled:
                continue
            if task.schedule_kind is ScheduleKind.ONE_TIME and task.run_at is not None:
                if task.last_run_at is not None and task.last_run_at >= task.run_at:
                    logger.info("Not restoring one-time task %s: already ran at %s", task.id, task.last_run_at)
                    continue
                if task.run_at < now - timedelta(seconds=MISFIRE_GRACE_SECONDS):
                    logger.info("Not restoring one-time task %s: run_at %s has passed", task.id, task.run_at)
                    continue
            self._arm(task, now=now, restoring=True)

    def _lock_for(self, task_id: int) -> asyncio.Lock:
        return self._task_locks.setdefault(task_id, asyncio.Lock())

    async def create_task(self, task: Task) -> Task:
        task_id = await self._store.insert_task(replace(task, id=0, job_name=""))
        stored = replace(task, id=task_id, job_name=job_name_for(task_id))
        async with self._lock_for(task_id):
            await self._store.update_task(stored)
            self.schedule(stored)
        return stored

    async def update_task(self, task: Task) -> Task | None:
        """Persist and re-arm ``task``. Returns ``None`` if it was deleted meanwhile."""
        async with self._lock_for(task.id):
            existing = await self._store.get_task(task.id)
            if existing is None:
                return None
            self.cancel(existing.job_name)
            stored = await self._store.update_task(replace(task, job_name=task.job_name or job_name_for(task.id)))
            if stored is None:
                return None
            self.schedule(stored)
        return stored

    async def delete_task(self, task_id: int) -> bool:
        async with self._lock_for(task_id):
            task = await self._store.get_task(task_id)
            if task is None:
                return False
            self.cancel(task.job_name)
            await self._store.delete_task(task_id)
        self._task_locks.pop(task_id, None)
        return True

    async def run_now(self, task_id: int) -> bool:
        if await self._store.get_task(task_id) is None:
            return False
        group = f"{RUN_NOW_PREFIX}{uuid.uuid4().hex}"
        self._scheduler.add_job(
            self._run_task_job,
            trigger=DateTrigger(run_date=now_utc()),
            args=[task_id],
            kwargs={"retry_group": group},
            id=group,
            misfire_grace_time=MISFIRE_GRACE_SECONDS,
        )
        return True

    def schedule(self, task: Task, *, now: datetime | None = None) -> None:
        self._arm(task, now=now or now_utc(), restoring=False)

    def cancel(self, job_name: str) -> None:
        if not job_name:
            return
        self._remove_job(job_name)
        prefix = _retry_prefix(job_name)
        for job in self._scheduler.get_jobs():
            if job.id.startswith(prefix):
                self._remove_job(job.id)

    def next_run_time(self, job_name: str) -> datetime | None:
        if not job_name:
            return None
        job = self._scheduler.get_job(job_name)
        if job is None:
            return None
        return getattr(job, "next_run_time", None)

    def _remove_job(self, job_id: str) -> None:
        try:
            self._scheduler.remove_job(job_id)
        except JobLookupError:
            pass

    def _arm(self, task: Task, *, now: datetime, restoring: bool) -> None:
        if not task.enabled or not task.job_name:
            return

        kind = task.schedule_kind
        if kind is ScheduleKind.ONE_TIME:
            run_at = task.run_at or now
            delay = max(timedelta(0), run_at - now)
            self._add_job(task, DateTrigger(run_date=now + delay, timezone=timezone.utc))
        elif kind is ScheduleKind.INTERVAL:
            hours = max(1, task.interval_hours)
            existing = self._scheduler.get_job(task.job_name)
            existing_next = getattr(existing, "next_run_time", None) if existing is not None else None
            if existing_next is not None:
                next_run = existing_next
            elif restoring:
                next_run = now + timedelta(hours=hours)
            else:
                next_run = now
            trigger = IntervalTrigger(hours=hours, start_date=now, timezone=timezone.utc)
            self._add_job(task, trigger, next_run_time=next_run)
        elif kind is ScheduleKind.DAILY:
            local_now = now.astimezone(self._tz)
            start = now + daily_delay(task.hour, task.minute, now=local_now)
            self._add_job(task, IntervalTrigger(hours=24, start_date=start, timezone=timezone.utc))
        elif kind is ScheduleKind.WEEKLY:
            local_now = now.astimezone(self._tz)
            start = now + weekly_delay(task.day_of_week, task.hour, task.minute, now=local_now)
            self._add_job(task, IntervalTrigger(weeks=1, start_date=start, timezone=timezone.utc))

    def _add_job(self, task: Task, trigger: BaseTrigger, **extra: Any) -> None:
        self._scheduler.add_job(
            self._run_task_job,
            trigger=trigger,
            args=[task.id],
            kwargs={"retry_group": task.job_name},
            id=task.job_name,
            replace_existing=True,
            misfire_grace_time=MISFIRE_GRACE_SECONDS,
            coalesce=True,
            **extra,
        )

    async def _run_task_job(self, task_id: int, *, retry_group: str, attempt: int = 1) -> None:
        await self._store.update_last_run(task_id, now_utc())
        try:
            outcome = await self._executor.run(task_id)
        except Exception:
            logger.exception("Task run crashed: %s", task_id)
            return

        if not isinstance(outcome, JobFailed) or not outcome.retryable:
            return
        if attempt >= MAX_ATTEMPTS:
            logger.error("Task %s failed after %s attempts: %s", task_id, attempt, outcome.message)
            return

        task = await self._store.get_task(task_id)
        if task is None or not task.enabled:
            logger.info("Task %s was deleted or disabled, not retrying", task_id)
            return

        delay = retry_delay(attempt)
        logger.info("Task %s attempt %s failed, retrying in %ss", task_id, attempt, int(delay.total_seconds()))
        self._scheduler.add_job(
            self._run_task_job,
            trigger=DateTrigger(run_date=now_utc() + delay, timezone=timezone.utc),
            args=[task_id],
            kwargs={"retry_group": retry_group, "attempt": attempt + 1},
            id=f"{_retry_prefix(retry_group)}{attempt + 1}",
            replace_existing=True,
            misfire_grace_time=MISFIRE_GRACE_SECONDS,
        )
