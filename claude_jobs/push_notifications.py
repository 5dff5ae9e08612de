from __future__ import annotations

import asyncio
import json
import logging
import urllib.error
import urllib.request
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 2.5


def _build_url(base: str, path: str) -> str:
    return base.rstrip("/") + "/" + path.lstrip("/")


def _normalize_preview(text: str, max_len: int = 600) -> str | None:
    trimmed = text.strip()
    if not trimmed:
        return None

    collapsed = " ".join(trimmed.split())
    if not collapsed:
        return None

    if len(collapsed) <= max_len:
        return collapsed

    slice_len = max(0, max_len - 1)
    return collapsed[:slice_len].rstrip() + "…"


def _post_json(url: str, *, secret: str, payload: dict[str, Any], timeout: float) -> None:
    data = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    request = urllib.request.Request(
        url=url,
        data=data,
        method="POST",
        headers={
            "Content-Type": "application/json",
            "Authorization": f"Bearer {secret}",
        },
    )
    with urllib.request.urlopen(request, timeout=timeout) as response:
        _ = response.read()


class PushNotificationSink:
    """Reports run outcomes to the log and, when configured, to a push gateway.

    Delivery problems are logged and never raised to the caller.
    """

    def __init__(
        self,
        *,
        base_url: str | None = None,
        secret: str | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self._base_url = base_url
        self._secret = secret
        self._timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self._base_url and self._secret)

    async def post_success(self, task_name: str, preview: str, run_id: int) -> None:
        logger.info("%s completed (run %s)", task_name, run_id)
        payload: dict[str, Any] = {"title": f"{task_name} completed", "run_id": run_id}
        normalized = _normalize_preview(preview)
        if normalized:
            payload["message_preview"] = normalized
        await self._trigger("triggerTaskSucceeded", payload)

    async def post_error(self, task_name: str, error: str) -> None:
        logger.warning("%s failed: %s", task_name, error)
        payload: dict[str, Any] = {"title": f"{task_name} failed"}
        normalized = _normalize_preview(error)
        if normalized:
            payload["message_preview"] = normalized
        await self._trigger("triggerTaskFailed", payload)

    async def _trigger(self, path: str, payload: dict[str, Any]) -> None:
        if not self.enabled:
            return

        url = _build_url(self._base_url, path)
        try:
            await asyncio.to_thread(_post_json, url, secret=self._secret, payload=payload, timeout=self._timeout)
        except urllib.error.HTTPError as exc:
            logger.warning("Push trigger HTTP error: %s", getattr(exc, "code", "unknown"))
        except Exception:
            logger.exception("Push trigger failed")
