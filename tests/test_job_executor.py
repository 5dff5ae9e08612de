import asyncio

import pytest

from claude_jobs.completion_client import TransportError
from claude_jobs.credentials import DEFAULT_MODEL, CredentialStore
from claude_jobs.job_executor import (
    MAX_ROUNDS,
    MISSING_API_KEY_MESSAGE,
    JobExecutor,
    JobFailed,
    JobSucceeded,
    beta_header_for,
    build_tools,
)
from claude_jobs.messages import Blocks, ContentBlock, MessageResponse, PlainText
from claude_jobs.store import RunStore, TaskStore
from claude_jobs.tasks import RunStatus, ScheduleKind, Task


def _response(text: str | None, stop_reason: str = "end_turn") -> MessageResponse:
    content = []
    if text is not None:
        content.append(ContentBlock(type="text", text=text, payload={"type": "text", "text": text}))
    content.append(
        ContentBlock(
            type="server_tool_use",
            payload={"type": "server_tool_use", "id": "srvtoolu_1", "name": "web_search", "input": {}},
        )
    )
    return MessageResponse(
        id="msg",
        type="message",
        role="assistant",
        content=content,
        model="claude-test",
        stop_reason=stop_reason,
    )


class _ScriptedClient:
    def __init__(self, script):
        self._script = list(script)
        self.requests = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return None

    async def send(self, request):
        self.requests.append(request)
        item = self._script.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class _ClientFactory:
    def __init__(self, *scripts):
        self._scripts = list(scripts)
        self.clients = []
        self.calls = []

    def __call__(self, api_key, *, beta_header=None):
        self.calls.append((api_key, beta_header))
        client = _ScriptedClient(self._scripts.pop(0))
        self.clients.append(client)
        return client


class _RecordingNotifier:
    def __init__(self):
        self.successes = []
        self.errors = []

    async def post_success(self, task_name, preview, run_id):
        self.successes.append((task_name, preview, run_id))

    async def post_error(self, task_name, error):
        self.errors.append((task_name, error))


async def _setup(tmp_path, factory, *, api_key="sk-test", **task_fields):
    tasks = TaskStore(tmp_path / "tasks.db")
    runs = RunStore(tmp_path / "tasks.db")
    credentials = CredentialStore(tmp_path / "credentials.json")
    if api_key:
        credentials.save_api_key(api_key)
    notifier = _RecordingNotifier()
    executor = JobExecutor(
        tasks=tasks,
        runs=runs,
        credentials=credentials,
        notifier=notifier,
        client_factory=factory,
    )
    fields = {"name": "Morning brief", "prompt": "Summarize the news", "schedule_kind": ScheduleKind.DAILY}
    fields.update(task_fields)
    task_id = await tasks.insert_task(Task(id=0, **fields))
    return executor, runs, notifier, task_id


@pytest.mark.asyncio
async def test_single_round_success(tmp_path):
    factory = _ClientFactory([_response("  All quiet today.  ")])
    executor, runs, notifier, task_id = await _setup(tmp_path, factory, system_prompt="Be brief.", max_tokens=1024)

    outcome = await executor.run(task_id)

    assert isinstance(outcome, JobSucceeded)
    assert outcome.text == "All quiet today."
    request = factory.clients[0].requests[0]
    assert request.model == DEFAULT_MODEL
    assert request.system == "Be brief."
    assert request.max_tokens == 1024
    assert request.tools == []
    assert request.messages[0].content == PlainText("Summarize the news")

    stored = await runs.get_run(outcome.run_id)
    assert stored.status is RunStatus.SUCCESS
    assert stored.response_text == "All quiet today."
    assert stored.task_name == "Morning brief"
    assert stored.prompt == "Summarize the news"
    assert notifier.successes == [("Morning brief", "All quiet today.", outcome.run_id)]
    assert notifier.errors == []


@pytest.mark.asyncio
async def test_pause_turn_continues_with_growing_transcript(tmp_path):
    script = [_response(f"part{i} ", "pause_turn") for i in range(4)] + [_response("done", "end_turn")]
    factory = _ClientFactory(script)
    executor, _runs, _notifier, task_id = await _setup(tmp_path, factory, enable_web_search=True)

    outcome = await executor.run(task_id)

    assert isinstance(outcome, JobSucceeded)
    assert outcome.text == "part0 part1 part2 part3 done"
    requests = factory.clients[0].requests
    assert len(requests) == 5
    assert [len(request.messages) for request in requests] == [1, 3, 5, 7, 9]

    second = requests[1].messages
    assert second[1].role == "assistant"
    assert isinstance(second[1].content, Blocks)
    assert [block.type for block in second[1].content.blocks] == ["text", "server_tool_use"]
    assert second[2].role == "user"
    assert second[2].content == PlainText("Continue.")


@pytest.mark.asyncio
async def test_round_limit_ends_with_success(tmp_path):
    script = [_response("x", "pause_turn") for _ in range(MAX_ROUNDS + 1)]
    factory = _ClientFactory(script)
    executor, runs, _notifier, task_id = await _setup(tmp_path, factory)

    outcome = await executor.run(task_id)

    assert isinstance(outcome, JobSucceeded)
    assert outcome.text == "x" * MAX_ROUNDS
    assert len(factory.clients[0].requests) == MAX_ROUNDS
    assert (await runs.get_run(outcome.run_id)).status is RunStatus.SUCCESS


@pytest.mark.asyncio
async def test_placeholder_when_no_text(tmp_path):
    factory = _ClientFactory([_response(None, "max_tokens")])
    executor, _runs, _notifier, task_id = await _setup(tmp_path, factory)

    outcome = await executor.run(task_id)

    assert outcome.text == "(No text response, stop_reason: max_tokens)"


@pytest.mark.asyncio
async def test_unknown_stop_reason_keeps_text(tmp_path):
    factory = _ClientFactory([_response("partial", "refusal"), _response("never sent")])
    executor, _runs, _notifier, task_id = await _setup(tmp_path, factory)

    outcome = await executor.run(task_id)

    assert isinstance(outcome, JobSucceeded)
    assert outcome.text == "partial"
    assert len(factory.clients[0].requests) == 1


@pytest.mark.asyncio
async def test_missing_api_key_makes_no_request(tmp_path, monkeypatch):
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    factory = _ClientFactory()
    executor, runs, notifier, task_id = await _setup(tmp_path, factory, api_key="")

    outcome = await executor.run(task_id)

    assert isinstance(outcome, JobFailed)
    assert outcome.retryable is False
    assert outcome.message == MISSING_API_KEY_MESSAGE
    assert factory.calls == []
    records = await runs.list_runs(task_id=task_id)
    assert len(records) == 1
    assert records[0].status is RunStatus.FAILED
    assert records[0].error_message == MISSING_API_KEY_MESSAGE
    assert notifier.errors == [("Morning brief", MISSING_API_KEY_MESSAGE)]


@pytest.mark.asyncio
async def test_api_key_from_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-env")
    factory = _ClientFactory([_response("ok")])
    executor, _runs, _notifier, task_id = await _setup(tmp_path, factory, api_key="")

    outcome = await executor.run(task_id)

    assert isinstance(outcome, JobSucceeded)
    assert factory.calls == [("sk-env", None)]


@pytest.mark.asyncio
async def test_http_error_is_recorded_and_retryable(tmp_path):
    error = TransportError("HTTP 400: max_tokens: field required", status_code=400)
    factory = _ClientFactory([error])
    executor, runs, notifier, task_id = await _setup(tmp_path, factory)

    outcome = await executor.run(task_id)

    assert isinstance(outcome, JobFailed)
    assert outcome.retryable is True
    assert outcome.message == "HTTP 400: max_tokens: field required"
    record = await runs.get_run(outcome.run_id)
    assert record.status is RunStatus.FAILED
    assert "max_tokens: field required" in record.error_message
    assert notifier.errors == [("Morning brief", "HTTP 400: max_tokens: field required")]
    assert notifier.successes == []


@pytest.mark.asyncio
async def test_error_mid_conversation_discards_partial_text(tmp_path):
    factory = _ClientFactory([_response("half", "pause_turn"), TransportError("ReadTimeout: timed out")])
    executor, runs, _notifier, task_id = await _setup(tmp_path, factory)

    outcome = await executor.run(task_id)

    assert isinstance(outcome, JobFailed)
    records = await runs.list_runs(task_id=task_id)
    assert [record.status for record in records] == [RunStatus.FAILED]
    assert records[0].response_text == ""


@pytest.mark.asyncio
async def test_missing_task_writes_no_record(tmp_path):
    factory = _ClientFactory()
    executor, runs, notifier, _task_id = await _setup(tmp_path, factory)

    outcome = await executor.run(999)

    assert isinstance(outcome, JobFailed)
    assert outcome.retryable is False
    assert await runs.list_runs() == []
    assert notifier.errors == []
    assert factory.calls == []


@pytest.mark.asyncio
async def test_preview_is_truncated(tmp_path):
    factory = _ClientFactory([_response("a" * 400)])
    executor, _runs, notifier, task_id = await _setup(tmp_path, factory)

    await executor.run(task_id)

    assert notifier.successes[0][1] == "a" * 150


@pytest.mark.asyncio
async def test_concurrent_runs_each_write_a_record(tmp_path):
    factory = _ClientFactory([_response("first")], [_response("second")])
    executor, runs, _notifier, task_id = await _setup(tmp_path, factory)

    outcomes = await asyncio.gather(executor.run(task_id), executor.run(task_id))

    assert all(isinstance(outcome, JobSucceeded) for outcome in outcomes)
    assert len(await runs.list_runs(task_id=task_id)) == 2


def _task(**flags) -> Task:
    return Task(id=1, name="n", prompt="p", schedule_kind=ScheduleKind.DAILY, **flags)


def test_tool_manifest_order():
    tools = build_tools(_task(enable_web_search=True, enable_web_fetch=True, enable_code_execution=True))
    assert [(tool.type, tool.name) for tool in tools] == [
        ("web_search_20260209", "web_search"),
        ("web_fetch_20260209", "web_fetch"),
        ("code_execution_20260120", "code_execution"),
    ]
    assert build_tools(_task()) == []


@pytest.mark.parametrize(
    "flags, expected",
    [
        ({}, None),
        ({"enable_code_execution": True}, None),
        ({"enable_web_search": True, "enable_web_fetch": True}, None),
        ({"enable_code_execution": True, "enable_web_search": True}, "code-execution-web-tools-2026-02-09"),
        ({"enable_code_execution": True, "enable_web_fetch": True}, "code-execution-web-tools-2026-02-09"),
    ],
)
def test_beta_header_only_for_code_execution_with_web_tools(flags, expected):
    assert beta_header_for(_task(**flags)) == expected


@pytest.mark.asyncio
async def test_beta_header_passed_to_client(tmp_path):
    factory = _ClientFactory([_response("ok")])
    executor, _runs, _notifier, task_id = await _setup(
        tmp_path, factory, enable_code_execution=True, enable_web_fetch=True
    )

    await executor.run(task_id)

    assert factory.calls == [("sk-test", "code-execution-web-tools-2026-02-09")]
    assert [tool.name for tool in factory.clients[0].requests[0].tools] == ["web_fetch", "code_execution"]
