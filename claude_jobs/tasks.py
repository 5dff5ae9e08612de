from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any

MIN_MAX_TOKENS = 256
MAX_MAX_TOKENS = 128_000
DEFAULT_MAX_TOKENS = 4096


class ScheduleKind(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    INTERVAL = "interval"
    ONE_TIME = "one_time"


class RunStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def iso_utc(value: datetime | None) -> str | None:
    if value is None:
        return None
    normalized = value.astimezone(timezone.utc).replace(microsecond=0)
    return normalized.isoformat().replace("+00:00", "Z")


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        if value.endswith("Z"):
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        else:
            parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class Task:
    id: int
    name: str
    prompt: str
    schedule_kind: ScheduleKind
    hour: int = 9
    minute: int = 0
    day_of_week: int = 1
    interval_hours: int = 6
    run_at: datetime | None = None
    enabled: bool = True
    job_name: str = ""
    system_prompt: str = ""
    max_tokens: int = DEFAULT_MAX_TOKENS
    enable_web_search: bool = False
    enable_web_fetch: bool = False
    enable_code_execution: bool = False
    created_at: datetime | None = None
    last_run_at: datetime | None = None


@dataclass(frozen=True)
class RunRecord:
    id: int
    task_id: int
    task_name: str
    prompt: str
    status: RunStatus
    executed_at: datetime
    response_text: str = ""
    error_message: str = ""


class TaskValidationError(ValueError):
    pass


def _normalize_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "y", "on"}
    return default


def _normalize_int(value: Any, field_name: str, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise TaskValidationError(f"{field_name} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            pass
    raise TaskValidationError(f"{field_name} must be an integer")


def _sanitize_string(value: Any, field_name: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise TaskValidationError(f"{field_name} must be a string")
    trimmed = value.strip()
    if not trimmed:
        return None
    return trimmed


def _normalize_kind(value: Any) -> ScheduleKind:
    raw = str(value or ScheduleKind.DAILY.value).strip().lower()
    try:
        return ScheduleKind(raw)
    except ValueError as exc:
        allowed = ", ".join(kind.value for kind in ScheduleKind)
        raise TaskValidationError(f"schedule_kind must be one of: {allowed}") from exc


def _normalize_run_at(value: Any) -> datetime | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise TaskValidationError("run_at must be an ISO-8601 string")
    parsed = parse_iso(value.strip())
    if parsed is None:
        raise TaskValidationError(f"Invalid run_at: {value}")
    return parsed


def _validate(task: Task) -> Task:
    if not task.name:
        raise TaskValidationError("name is required")
    if not task.prompt:
        raise TaskValidationError("prompt is required")
    if task.hour not in range(0, 24):
        raise TaskValidationError("hour must be between 0 and 23")
    if task.minute not in range(0, 60):
        raise TaskValidationError("minute must be between 0 and 59")
    if task.day_of_week not in range(1, 8):
        raise TaskValidationError("day_of_week must be between 1 (Monday) and 7 (Sunday)")
    if task.interval_hours < 1:
        raise TaskValidationError("interval_hours must be at least 1")
    if task.schedule_kind is ScheduleKind.ONE_TIME and task.run_at is None:
        raise TaskValidationError("run_at is required for one_time tasks")
    return replace(task, max_tokens=min(max(task.max_tokens, MIN_MAX_TOKENS), MAX_MAX_TOKENS))


def parse_task_payload(payload: dict[str, Any]) -> Task:
    if not isinstance(payload, dict):
        raise TaskValidationError("Payload must be an object")

    task = Task(
        id=0,
        name=_sanitize_string(payload.get("name"), "name") or "",
        prompt=_sanitize_string(payload.get("prompt"), "prompt") or "",
        schedule_kind=_normalize_kind(payload.get("schedule_kind")),
        hour=_normalize_int(payload.get("hour"), "hour", 9),
        minute=_normalize_int(payload.get("minute"), "minute", 0),
        day_of_week=_normalize_int(payload.get("day_of_week"), "day_of_week", 1),
        interval_hours=_normalize_int(payload.get("interval_hours"), "interval_hours", 6),
        run_at=_normalize_run_at(payload.get("run_at")),
        enabled=_normalize_bool(payload.get("enabled"), True),
        system_prompt=_sanitize_string(payload.get("system_prompt"), "system_prompt") or "",
        max_tokens=_normalize_int(payload.get("max_tokens"), "max_tokens", DEFAULT_MAX_TOKENS),
        enable_web_search=_normalize_bool(payload.get("enable_web_search"), False),
        enable_web_fetch=_normalize_bool(payload.get("enable_web_fetch"), False),
        enable_code_execution=_normalize_bool(payload.get("enable_code_execution"), False),
        created_at=now_utc(),
    )
    return _validate(task)


def update_task_from_payload(existing: Task, payload: dict[str, Any]) -> Task:
    if not isinstance(payload, dict):
        raise TaskValidationError("Payload must be an object")

    changes: dict[str, Any] = {}
    for key in ("name", "prompt"):
        if key in payload:
            changes[key] = _sanitize_string(payload.get(key), key) or ""
    if "system_prompt" in payload:
        changes["system_prompt"] = _sanitize_string(payload.get("system_prompt"), "system_prompt") or ""
    if "schedule_kind" in payload:
        changes["schedule_kind"] = _normalize_kind(payload.get("schedule_kind"))
    for key in ("hour", "minute", "day_of_week", "interval_hours", "max_tokens"):
        if key in payload:
            changes[key] = _normalize_int(payload.get(key), key, getattr(existing, key))
    if "run_at" in payload:
        changes["run_at"] = _normalize_run_at(payload.get("run_at"))
    for key in ("enabled", "enable_web_search", "enable_web_fetch", "enable_code_execution"):
        if key in payload:
            changes[key] = _normalize_bool(payload.get(key), getattr(existing, key))

    return _validate(replace(existing, **changes))


def serialize_task(task: Task) -> dict[str, Any]:
    return {
        "id": task.id,
        "name": task.name,
        "prompt": task.prompt,
        "schedule_kind": task.schedule_kind.value,
        "hour": task.hour,
        "minute": task.minute,
        "day_of_week": task.day_of_week,
        "interval_hours": task.interval_hours,
        "run_at": iso_utc(task.run_at),
        "enabled": task.enabled,
        "job_name": task.job_name,
        "system_prompt": task.system_prompt,
        "max_tokens": task.max_tokens,
        "enable_web_search": task.enable_web_search,
        "enable_web_fetch": task.enable_web_fetch,
        "enable_code_execution": task.enable_code_execution,
        "created_at": iso_utc(task.created_at),
        "last_run_at": iso_utc(task.last_run_at),
    }


def serialize_run(run: RunRecord) -> dict[str, Any]:
    return {
        "id": run.id,
        "task_id": run.task_id,
        "task_name": run.task_name,
        "prompt": run.prompt,
        "status": run.status.value,
        "response_text": run.response_text,
        "error_message": run.error_message,
        "executed_at": iso_utc(run.executed_at),
    }
