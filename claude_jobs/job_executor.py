from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol, Union

from claude_jobs.completion_client import CompletionClient
from claude_jobs.credentials import CredentialStore
from claude_jobs.messages import (
    CODE_EXECUTION_TOOL,
    CODE_EXECUTION_WEB_TOOLS_BETA,
    STOP_END_TURN,
    STOP_MAX_TOKENS,
    STOP_PAUSE_TURN,
    STOP_SEQUENCE,
    WEB_FETCH_TOOL,
    WEB_SEARCH_TOOL,
    ApiMessage,
    Blocks,
    MessageRequest,
    MessageResponse,
    PlainText,
    ToolDefinition,
)
from claude_jobs.store import RunStore, TaskStore
from claude_jobs.tasks import RunRecord, RunStatus, Task, now_utc

logger = logging.getLogger(__name__)

# Requests per invocation, first request included.
MAX_ROUNDS = 5

PREVIEW_LENGTH = 150
CONTINUE_PROMPT = "Continue."
MISSING_API_KEY_MESSAGE = "API key not configured. Open Settings to add it."

_FINAL_STOP_REASONS = frozenset({STOP_END_TURN, STOP_MAX_TOKENS, STOP_SEQUENCE})


class ConfigurationError(RuntimeError):
    pass


class MessageSender(Protocol):
    async def __aenter__(self) -> MessageSender: ...

    async def __aexit__(self, *exc_info: object) -> None: ...

    async def send(self, request: MessageRequest) -> MessageResponse: ...


ClientFactory = Callable[..., MessageSender]


class NotificationSink(Protocol):
    async def post_success(self, task_name: str, preview: str, run_id: int) -> None: ...

    async def post_error(self, task_name: str, error: str) -> None: ...


@dataclass(frozen=True)
class JobSucceeded:
    run_id: int
    text: str


@dataclass(frozen=True)
class JobFailed:
    message: str
    retryable: bool
    run_id: int | None = None


JobOutcome = Union[JobSucceeded, JobFailed]


def build_tools(task: Task) -> list[ToolDefinition]:
    tools: list[ToolDefinition] = []
    if task.enable_web_search:
        tools.append(WEB_SEARCH_TOOL)
    if task.enable_web_fetch:
        tools.append(WEB_FETCH_TOOL)
    if task.enable_code_execution:
        tools.append(CODE_EXECUTION_TOOL)
    return tools


def beta_header_for(task: Task) -> str | None:
    if task.enable_code_execution and (task.enable_web_search or task.enable_web_fetch):
        return CODE_EXECUTION_WEB_TOOLS_BETA
    return None


class JobExecutor:
    def __init__(
        self,
        *,
        tasks: TaskStore,
        runs: RunStore,
        credentials: CredentialStore,
        notifier: NotificationSink,
        client_factory: ClientFactory = CompletionClient,
    ) -> None:
        self._tasks = tasks
        self._runs = runs
        self._credentials = credentials
        self._notifier = notifier
        self._client_factory = client_factory

    async def run(self, task_id: int) -> JobOutcome:
        task = await self._tasks.get_task(task_id)
        if task is None:
            logger.warning("Task %s no longer exists; nothing to run", task_id)
            return JobFailed(message=f"Task {task_id} not found", retryable=False)

        executed_at = now_utc()
        try:
            api_key, model = await asyncio.to_thread(self._load_credentials)
        except ConfigurationError as exc:
            run_id = await self._record_failure(task, str(exc), executed_at)
            return JobFailed(message=str(exc), retryable=False, run_id=run_id)

        try:
            text = await self._converse(task, api_key=api_key, model=model)
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            logger.warning("Task run failed: %s: %s", task.id, message)
            run_id = await self._record_failure(task, message, executed_at)
            return JobFailed(message=message, retryable=True, run_id=run_id)

        run_id = await self._runs.insert_run(
            RunRecord(
                id=0,
                task_id=task.id,
                task_name=task.name,
                prompt=task.prompt,
                status=RunStatus.SUCCESS,
                response_text=text,
                executed_at=executed_at,
            )
        )
        await self._notifier.post_success(task.name, text[:PREVIEW_LENGTH], run_id)
        return JobSucceeded(run_id=run_id, text=text)

    def _load_credentials(self) -> tuple[str, str]:
        api_key = self._credentials.get_api_key()
        if not api_key.strip():
            raise ConfigurationError(MISSING_API_KEY_MESSAGE)
        return api_key, self._credentials.get_model()

    async def _converse(self, task: Task, *, api_key: str, model: str) -> str:
        tools = build_tools(task)
        transcript: list[ApiMessage] = [ApiMessage(role="user", content=PlainText(task.prompt))]
        accumulated: list[str] = []
        stop_reason = STOP_END_TURN

        async with self._client_factory(api_key, beta_header=beta_header_for(task)) as client:
            for round_number in range(1, MAX_ROUNDS + 1):
                request = MessageRequest(
                    model=model,
                    max_tokens=task.max_tokens,
                    system=task.system_prompt or None,
                    tools=tools,
                    messages=list(transcript),
                )
                response = await client.send(request)
                accumulated.append(response.text)
                stop_reason = response.stop_reason

                if stop_reason in _FINAL_STOP_REASONS:
                    break
                if stop_reason != STOP_PAUSE_TURN:
                    logger.warning("Task %s: unrecognized stop_reason %r, keeping text so far", task.id, stop_reason)
                    break

                transcript.append(ApiMessage(role="assistant", content=Blocks(list(response.content))))
                transcript.append(ApiMessage(role="user", content=PlainText(CONTINUE_PROMPT)))
                if round_number == MAX_ROUNDS:
                    logger.info("Task %s: stopping after %s continuation rounds", task.id, MAX_ROUNDS)

        text = "".join(accumulated).strip()
        return text or f"(No text response, stop_reason: {stop_reason})"

    async def _record_failure(self, task: Task, message: str, executed_at: datetime) -> int:
        run_id = await self._runs.insert_run(
            RunRecord(
                id=0,
                task_id=task.id,
                task_name=task.name,
                prompt=task.prompt,
                status=RunStatus.FAILED,
                error_message=message,
                executed_at=executed_at,
            )
        )
        await self._notifier.post_error(task.name, message)
        return run_id
