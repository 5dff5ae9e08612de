from __future__ import annotations

import json
from typing import Any

from claude_jobs.messages import (
    ApiMessage,
    Blocks,
    ContentBlock,
    MessageContent,
    MessageRequest,
    MessageResponse,
    PlainText,
    ToolDefinition,
)


def serialize_request(request: MessageRequest) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "model": request.model,
        "max_tokens": request.max_tokens,
    }
    if request.system is not None and request.system.strip():
        payload["system"] = request.system
    if request.tools:
        payload["tools"] = [_serialize_tool(tool) for tool in request.tools]
    payload["messages"] = [serialize_message(message) for message in request.messages]
    return payload


def serialize_message(message: ApiMessage) -> dict[str, Any]:
    return {"role": message.role, "content": _serialize_content(message.content)}


def _serialize_content(content: MessageContent) -> str | list[dict[str, Any]]:
    if isinstance(content, PlainText):
        return content.text
    if isinstance(content, Blocks):
        return _serialize_blocks(content.blocks)
    raise TypeError(f"Unsupported message content: {type(content).__name__}")


def _serialize_tool(tool: ToolDefinition) -> dict[str, Any]:
    return {"type": tool.type, "name": tool.name}


def _serialize_blocks(blocks: list[ContentBlock]) -> list[dict[str, Any]]:
    encoded: list[dict[str, Any]] = []
    for block in blocks:
        if block.payload:
            encoded.append(dict(block.payload))
        elif block.type == "text":
            encoded.append({"type": "text", "text": block.text or ""})
        else:
            encoded.append({"type": block.type})
    return encoded


def parse_response(payload: Any) -> MessageResponse:
    if not isinstance(payload, dict):
        raise ValueError("Response body must be a JSON object")

    raw_content = payload.get("content")
    content: list[ContentBlock] = []
    if isinstance(raw_content, list):
        for raw in raw_content:
            if isinstance(raw, dict):
                content.append(_parse_block(raw))

    return MessageResponse(
        id=_str_field(payload, "id"),
        type=_str_field(payload, "type"),
        role=_str_field(payload, "role"),
        content=content,
        model=_str_field(payload, "model"),
        stop_reason=_str_field(payload, "stop_reason"),
    )


def _parse_block(raw: dict[str, Any]) -> ContentBlock:
    text = raw.get("text")
    return ContentBlock(
        type=_str_field(raw, "type"),
        text=text if isinstance(text, str) else None,
        payload=dict(raw),
    )


def _str_field(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    return value if isinstance(value, str) else ""


def extract_error_detail(raw_body: str | None) -> str | None:
    """Best available detail from an error body: ``error.message``, else the raw text."""
    if raw_body is None:
        return None
    try:
        parsed = json.loads(raw_body)
    except ValueError:
        parsed = None

    if isinstance(parsed, dict):
        error = parsed.get("error")
        if isinstance(error, dict):
            message = error.get("message")
            if isinstance(message, str) and message.strip():
                return message

    if raw_body.strip():
        return raw_body
    return None
