"""Initial delays for recurring tasks.

Every function takes ``now`` explicitly so results are deterministic for a given
input. Wall-clock targets are built in ``now``'s timezone; the returned delay is the
real elapsed time until that target, so a DST change between ``now`` and the target
shortens or lengthens it by the offset difference.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone


def _check_time_of_day(hour: int, minute: int) -> None:
    if hour not in range(0, 24):
        raise ValueError(f"hour must be in 0..23, got {hour}")
    if minute not in range(0, 60):
        raise ValueError(f"minute must be in 0..59, got {minute}")


def _at_time_of_day(now: datetime, hour: int, minute: int) -> datetime:
    return now.replace(hour=hour, minute=minute, second=0, microsecond=0)


def _elapsed(target: datetime, now: datetime) -> timedelta:
    return target.astimezone(timezone.utc) - now.astimezone(timezone.utc)


def daily_delay(hour: int, minute: int, *, now: datetime) -> timedelta:
    """Time until the next ``hour:minute``, today or tomorrow.

    A target equal to ``now`` counts as already passed and rolls to tomorrow.
    """
    _check_time_of_day(hour, minute)
    target = _at_time_of_day(now, hour, minute)
    if target <= now:
        target += timedelta(days=1)
    return _elapsed(target, now)


def weekly_delay(day_of_week: int, hour: int, minute: int, *, now: datetime) -> timedelta:
    """Time until the next ISO ``day_of_week`` (1 = Monday ... 7 = Sunday) at ``hour:minute``.

    When the target is today but not after ``now``, it moves a full week ahead.
    """
    if day_of_week not in range(1, 8):
        raise ValueError(f"day_of_week must be in 1..7, got {day_of_week}")
    _check_time_of_day(hour, minute)

    target = _at_time_of_day(now, hour, minute)
    days_to_add = (day_of_week - now.isoweekday() + 7) % 7
    if days_to_add == 0 and target <= now:
        days_to_add = 7
    target += timedelta(days=days_to_add)
    return _elapsed(target, now)
