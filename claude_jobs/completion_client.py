from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from claude_jobs.config import DEFAULT_API_BASE_URL
from claude_jobs.messages import ANTHROPIC_VERSION, MessageRequest, MessageResponse
from claude_jobs.serialization import extract_error_detail, parse_response, serialize_request

logger = logging.getLogger(__name__)

MESSAGES_PATH = "/v1/messages"
UNKNOWN_ERROR_DETAIL = "Unknown error"

DEFAULT_TIMEOUT = httpx.Timeout(connect=30.0, read=120.0, write=30.0, pool=30.0)


class TransportError(RuntimeError):
    """The request did not produce a usable response: network failure, non-2xx or bad body."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class CompletionClient:
    def __init__(
        self,
        api_key: str,
        *,
        beta_header: str | None = None,
        base_url: str = DEFAULT_API_BASE_URL,
        timeout: httpx.Timeout = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {
            "x-api-key": api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }
        if beta_header:
            headers["anthropic-beta"] = beta_header
        self._http = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> CompletionClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def send(self, request: MessageRequest) -> MessageResponse:
        body = json.dumps(serialize_request(request), separators=(",", ":"), ensure_ascii=False)
        try:
            response = await self._http.post(MESSAGES_PATH, content=body.encode("utf-8"))
        except httpx.HTTPError as exc:
            raise TransportError(f"{type(exc).__name__}: {exc}") from exc

        logger.info("POST %s -> %s", MESSAGES_PATH, response.status_code)

        if not response.is_success:
            detail = extract_error_detail(response.text) or response.reason_phrase or UNKNOWN_ERROR_DETAIL
            raise TransportError(f"HTTP {response.status_code}: {detail}", status_code=response.status_code)

        if not response.content.strip():
            raise TransportError("Empty response body from API", status_code=response.status_code)
        try:
            payload = response.json()
            return parse_response(payload)
        except ValueError as exc:
            raise TransportError("Malformed response body from API", status_code=response.status_code) from exc
