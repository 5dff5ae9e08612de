from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

ANTHROPIC_VERSION = "2023-06-01"

# Enables dynamic filtering between code execution and the web tools.
CODE_EXECUTION_WEB_TOOLS_BETA = "code-execution-web-tools-2026-02-09"

STOP_END_TURN = "end_turn"
STOP_MAX_TOKENS = "max_tokens"
STOP_SEQUENCE = "stop_sequence"
STOP_PAUSE_TURN = "pause_turn"


@dataclass(frozen=True)
class ToolDefinition:
    type: str
    name: str


WEB_SEARCH_TOOL = ToolDefinition(type="web_search_20260209", name="web_search")
WEB_FETCH_TOOL = ToolDefinition(type="web_fetch_20260209", name="web_fetch")
CODE_EXECUTION_TOOL = ToolDefinition(type="code_execution_20260120", name="code_execution")


@dataclass(frozen=True)
class ContentBlock:
    """One block of an assistant response.

    ``payload`` is the block exactly as the API returned it. Only ``text`` blocks are
    shown to the user, but every block is sent back unchanged on continuation.
    """

    type: str
    text: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PlainText:
    text: str


@dataclass(frozen=True)
class Blocks:
    blocks: list[ContentBlock]


MessageContent = Union[PlainText, Blocks]


@dataclass(frozen=True)
class ApiMessage:
    role: str
    content: MessageContent


@dataclass(frozen=True)
class MessageRequest:
    model: str
    messages: list[ApiMessage]
    max_tokens: int = 4096
    system: str | None = None
    tools: list[ToolDefinition] = field(default_factory=list)


@dataclass(frozen=True)
class MessageResponse:
    id: str
    type: str
    role: str
    content: list[ContentBlock]
    model: str
    stop_reason: str

    @property
    def text(self) -> str:
        return "".join(block.text or "" for block in self.content if block.type == "text")
