from __future__ import annotations

import functools
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from claude_jobs.completion_client import CompletionClient
from claude_jobs.config import Settings, load_settings
from claude_jobs.credentials import AVAILABLE_MODELS, CredentialStore
from claude_jobs.job_executor import ClientFactory, JobExecutor, NotificationSink
from claude_jobs.logging_setup import setup_logging
from claude_jobs.push_notifications import PushNotificationSink
from claude_jobs.store import RunStore, TaskStore
from claude_jobs.task_scheduler import TaskScheduler
from claude_jobs.tasks import (
    Task,
    TaskValidationError,
    iso_utc,
    parse_task_payload,
    serialize_run,
    serialize_task,
    update_task_from_payload,
)

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _default_client_factory(settings: Settings) -> ClientFactory:
    timeout = httpx.Timeout(
        connect=settings.connect_timeout_seconds,
        read=settings.read_timeout_seconds,
        write=settings.write_timeout_seconds,
        pool=settings.connect_timeout_seconds,
    )
    return functools.partial(CompletionClient, base_url=settings.api_base_url, timeout=timeout)


def create_app(
    *,
    store_dir: Path | None = None,
    settings: Settings | None = None,
    client_factory: ClientFactory | None = None,
    notifier: NotificationSink | None = None,
) -> FastAPI:
    settings = settings or Settings()
    data_dir = (store_dir or settings.store_dir).resolve()

    app = FastAPI()
    task_store = TaskStore(data_dir / "tasks.db")
    run_store = RunStore(data_dir / "tasks.db")
    credentials = CredentialStore(data_dir / "credentials.json")
    executor = JobExecutor(
        tasks=task_store,
        runs=run_store,
        credentials=credentials,
        notifier=notifier
        or PushNotificationSink(base_url=settings.push_gateway_base_url, secret=settings.push_secret),
        client_factory=client_factory or _default_client_factory(settings),
    )
    scheduler = TaskScheduler(store=task_store, executor=executor, time_zone=settings.tz)
    started_at = _now_iso()

    app.state.scheduler = scheduler
    app.state.task_store = task_store
    app.state.run_store = run_store
    app.state.credentials = credentials
    app.state.executor = executor

    def service_headers() -> dict[str, str]:
        return {"X-Service-Started-At": started_at}

    @app.on_event("startup")
    async def _startup() -> None:
        await scheduler.start()
        logger.info("Scheduler started with data dir %s", data_dir)

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await scheduler.shutdown()

    def json_ok(content: Any, *, status_code: int = 200) -> JSONResponse:
        return JSONResponse(status_code=status_code, content=content, headers=service_headers())

    def json_error(status_code: int, *, error: str, **extra: Any) -> JSONResponse:
        return JSONResponse(
            status_code=status_code,
            content={"error": error, **extra},
            headers=service_headers(),
        )

    async def read_object(request: Request) -> dict[str, Any] | None:
        try:
            body = await request.json()
        except ValueError:
            return None
        return body if isinstance(body, dict) else None

    def task_view(task: Task) -> dict[str, Any]:
        payload = serialize_task(task)
        payload["next_run_at"] = iso_utc(scheduler.next_run_time(task.job_name))
        return payload

    @app.get("/healthz")
    async def healthz() -> JSONResponse:
        return json_ok({"status": "ok", "started_at": started_at})

    @app.get("/v1/tasks")
    async def list_tasks() -> JSONResponse:
        tasks = await task_store.list_tasks()
        return json_ok({"tasks": [task_view(task) for task in tasks]})

    @app.post("/v1/tasks")
    async def create_task(request: Request) -> JSONResponse:
        body = await read_object(request)
        if body is None:
            return json_error(400, error="bad_request", message="Body must be a JSON object.")
        try:
            record = parse_task_payload(body)
        except TaskValidationError as exc:
            return json_error(400, error="bad_request", message=str(exc))
        stored = await scheduler.create_task(record)
        return json_ok(task_view(stored), status_code=201)

    @app.get("/v1/tasks/{task_id}")
    async def get_task(task_id: int) -> JSONResponse:
        task = await task_store.get_task(task_id)
        if task is None:
            return json_error(404, error="task_not_found", task_id=task_id)
        return json_ok(task_view(task))

    @app.patch("/v1/tasks/{task_id}")
    async def update_task(task_id: int, request: Request) -> JSONResponse:
        body = await read_object(request)
        if body is None:
            return json_error(400, error="bad_request", message="Body must be a JSON object.")
        existing = await task_store.get_task(task_id)
        if existing is None:
            return json_error(404, error="task_not_found", task_id=task_id)
        try:
            record = update_task_from_payload(existing, body)
        except TaskValidationError as exc:
            return json_error(400, error="bad_request", message=str(exc))
        stored = await scheduler.update_task(record)
        if stored is None:
            return json_error(404, error="task_not_found", task_id=task_id)
        return json_ok(task_view(stored))

    @app.delete("/v1/tasks/{task_id}")
    async def delete_task(task_id: int) -> JSONResponse:
        if not await scheduler.delete_task(task_id):
            return json_error(404, error="task_not_found", task_id=task_id)
        return json_ok({"deleted": True, "task_id": task_id})

    @app.post("/v1/tasks/{task_id}/run")
    async def run_task_now(task_id: int) -> JSONResponse:
        if not await scheduler.run_now(task_id):
            return json_error(404, error="task_not_found", task_id=task_id)
        return json_ok({"queued": True, "task_id": task_id}, status_code=202)

    @app.get("/v1/tasks/{task_id}/runs")
    async def list_task_runs(task_id: int) -> JSONResponse:
        runs = await run_store.list_runs(task_id=task_id)
        return json_ok({"runs": [serialize_run(run) for run in runs]})

    @app.get("/v1/runs")
    async def list_runs() -> JSONResponse:
        runs = await run_store.list_runs()
        return json_ok({"runs": [serialize_run(run) for run in runs]})

    @app.get("/v1/runs/{run_id}")
    async def get_run(run_id: int) -> JSONResponse:
        run = await run_store.get_run(run_id)
        if run is None:
            return json_error(404, error="run_not_found", run_id=run_id)
        return json_ok(serialize_run(run))

    @app.delete("/v1/runs/{run_id}")
    async def delete_run(run_id: int) -> JSONResponse:
        if not await run_store.delete_run(run_id):
            return json_error(404, error="run_not_found", run_id=run_id)
        return json_ok({"deleted": True, "run_id": run_id})

    @app.get("/v1/settings")
    async def get_settings() -> JSONResponse:
        return json_ok(
            {
                "api_key_configured": bool(credentials.get_api_key()),
                "model": credentials.get_model(),
                "available_models": list(AVAILABLE_MODELS),
            }
        )

    @app.put("/v1/settings")
    async def put_settings(request: Request) -> JSONResponse:
        body = await read_object(request)
        if body is None:
            return json_error(400, error="bad_request", message="Body must be a JSON object.")

        api_key = body.get("api_key")
        if api_key is not None and not isinstance(api_key, str):
            return json_error(400, error="bad_request", message="api_key must be a string.")
        model = body.get("model")
        if model is not None and (not isinstance(model, str) or not model.strip()):
            return json_error(400, error="bad_request", message="model must be a non-empty string.")

        if api_key is not None:
            credentials.save_api_key(api_key)
        if model is not None:
            credentials.save_model(model)
        return await get_settings()

    return app


def main() -> None:
    settings = load_settings()
    setup_logging(settings.log_level)
    uvicorn.run(create_app(settings=settings), host=settings.host, port=settings.port, log_config=None)


app = create_app(settings=load_settings())
