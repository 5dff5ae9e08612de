from __future__ import annotations


JOB_NAME_PREFIX = "task_"


def job_name_for(task_id: int) -> str:
    if task_id <= 0:
        raise ValueError("Task id must be assigned before a job name exists.")
    return f"{JOB_NAME_PREFIX}{task_id}"


def parse_int(value: str | None, *, default: int) -> int | None:
    if value is None:
        return default
    value = value.strip()
    if value == "":
        return default
    try:
        parsed = int(value, 10)
    except ValueError:
        return None
    if parsed < 0:
        return None
    return parsed


def parse_float(value: str | None, *, default: float) -> float:
    if value is None or not value.strip():
        return default
    try:
        parsed = float(value.strip())
    except ValueError:
        return default
    if parsed <= 0:
        return default
    return parsed
