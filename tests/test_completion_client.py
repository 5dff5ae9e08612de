import json

import httpx
import pytest

from claude_jobs.completion_client import CompletionClient, TransportError
from claude_jobs.messages import CODE_EXECUTION_WEB_TOOLS_BETA, ApiMessage, MessageRequest, PlainText


def _request() -> MessageRequest:
    return MessageRequest(model="claude-test", messages=[ApiMessage(role="user", content=PlainText("ping"))])


def _ok_body(text: str = "pong", stop_reason: str = "end_turn") -> dict:
    return {
        "id": "msg_1",
        "type": "message",
        "role": "assistant",
        "model": "claude-test",
        "stop_reason": stop_reason,
        "content": [{"type": "text", "text": text}],
    }


async def _send(handler, **kwargs):
    async with CompletionClient("sk-test", transport=httpx.MockTransport(handler), **kwargs) as client:
        return await client.send(_request())


@pytest.mark.asyncio
async def test_send_posts_messages_with_headers():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=_ok_body())

    response = await _send(handler)

    assert response.text == "pong"
    assert response.stop_reason == "end_turn"
    request = seen[0]
    assert request.method == "POST"
    assert request.url.path == "/v1/messages"
    assert request.headers["x-api-key"] == "sk-test"
    assert request.headers["anthropic-version"] == "2023-06-01"
    assert request.headers["content-type"] == "application/json"
    assert "anthropic-beta" not in request.headers
    body = json.loads(request.content)
    assert body == {
        "model": "claude-test",
        "max_tokens": 4096,
        "messages": [{"role": "user", "content": "ping"}],
    }


@pytest.mark.asyncio
async def test_beta_header_is_sent_when_given():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=_ok_body())

    await _send(handler, beta_header=CODE_EXECUTION_WEB_TOOLS_BETA)
    assert seen[0].headers["anthropic-beta"] == "code-execution-web-tools-2026-02-09"


@pytest.mark.asyncio
async def test_structured_error_message():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            400,
            json={"type": "error", "error": {"type": "invalid_request_error", "message": "max_tokens: field required"}},
        )

    with pytest.raises(TransportError) as excinfo:
        await _send(handler)
    assert str(excinfo.value) == "HTTP 400: max_tokens: field required"
    assert excinfo.value.status_code == 400


@pytest.mark.asyncio
async def test_raw_body_used_when_not_structured():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="upstream unavailable")

    with pytest.raises(TransportError) as excinfo:
        await _send(handler)
    assert str(excinfo.value) == "HTTP 502: upstream unavailable"


@pytest.mark.asyncio
async def test_reason_phrase_used_when_body_empty():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503)

    with pytest.raises(TransportError) as excinfo:
        await _send(handler)
    assert str(excinfo.value) == "HTTP 503: Service Unavailable"


@pytest.mark.asyncio
async def test_empty_success_body():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"")

    with pytest.raises(TransportError, match="Empty response body from API"):
        await _send(handler)


@pytest.mark.asyncio
async def test_malformed_success_body():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>oops</html>")

    with pytest.raises(TransportError, match="Malformed response body from API"):
        await _send(handler)


@pytest.mark.asyncio
async def test_network_failure_names_exception_type():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransportError) as excinfo:
        await _send(handler)
    assert str(excinfo.value) == "ConnectError: connection refused"
    assert excinfo.value.status_code is None


@pytest.mark.asyncio
async def test_unknown_status_without_body_or_reason():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(599)

    with pytest.raises(TransportError) as excinfo:
        await _send(handler)
    assert str(excinfo.value) == "HTTP 599: Unknown error"
    assert excinfo.value.status_code == 599
