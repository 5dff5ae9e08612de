"""Service settings read from ``CLAUDE_JOBS_*`` environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from zoneinfo import ZoneInfo

from claude_jobs.util import parse_float, parse_int

ENV_PREFIX = "CLAUDE_JOBS"

DEFAULT_API_BASE_URL = "https://api.anthropic.com"


def _k(suffix: str) -> str:
    return f"{ENV_PREFIX}_{suffix}"


def _env(name: str) -> str | None:
    value = os.environ.get(name)
    if not value:
        return None
    trimmed = value.strip()
    return trimmed or None


@dataclass(frozen=True)
class Settings:
    store_dir: Path = Path("data")
    api_base_url: str = DEFAULT_API_BASE_URL
    connect_timeout_seconds: float = 30.0
    # Server-side tools can keep a single request open for tens of seconds.
    read_timeout_seconds: float = 120.0
    write_timeout_seconds: float = 30.0
    time_zone: str = "UTC"
    push_gateway_base_url: str | None = None
    push_secret: str | None = None
    log_level: str = "INFO"
    host: str = "127.0.0.1"
    port: int = 8000

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.time_zone)


def _time_zone_from_env() -> str:
    zone = _env(_k("TIME_ZONE"))
    if not zone:
        return "UTC"
    try:
        ZoneInfo(zone)
    except Exception as exc:
        raise ValueError(f"Invalid {_k('TIME_ZONE')}: {zone}") from exc
    return zone


def load_settings() -> Settings:
    port = parse_int(_env(_k("PORT")), default=8000)
    return Settings(
        store_dir=Path(_env(_k("STORE_DIR")) or "data"),
        api_base_url=_env(_k("API_BASE_URL")) or DEFAULT_API_BASE_URL,
        connect_timeout_seconds=parse_float(_env(_k("CONNECT_TIMEOUT_SECONDS")), default=30.0),
        read_timeout_seconds=parse_float(_env(_k("READ_TIMEOUT_SECONDS")), default=120.0),
        write_timeout_seconds=parse_float(_env(_k("WRITE_TIMEOUT_SECONDS")), default=30.0),
        time_zone=_time_zone_from_env(),
        push_gateway_base_url=_env(_k("PUSH_GATEWAY_BASE_URL")),
        push_secret=_env(_k("PUSH_SECRET")),
        log_level=(_env(_k("LOG_LEVEL")) or "INFO").upper(),
        host=_env(_k("HOST")) or "127.0.0.1",
        port=port if port else 8000,
    )
