from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-haiku-4-5-20251001"
MODEL_SONNET = "claude-sonnet-4-6"
AVAILABLE_MODELS = (DEFAULT_MODEL, MODEL_SONNET)

API_KEY_ENV = "ANTHROPIC_API_KEY"


class CredentialStore:
    """API key and model selection kept in a small JSON file.

    An empty string from :meth:`get_api_key` means no key is configured. When the file
    holds no key, the ``ANTHROPIC_API_KEY`` environment variable is used instead.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()

    def get_api_key(self) -> str:
        stored = self._read().get("api_key")
        if isinstance(stored, str) and stored.strip():
            return stored.strip()
        return (os.environ.get(API_KEY_ENV) or "").strip()

    def save_api_key(self, api_key: str) -> None:
        self._update(api_key=api_key.strip())

    def get_model(self) -> str:
        model = self._read().get("model")
        if isinstance(model, str) and model.strip():
            return model.strip()
        return DEFAULT_MODEL

    def save_model(self, model: str) -> None:
        model = model.strip()
        if not model:
            raise ValueError("model must be a non-empty string.")
        self._update(model=model)

    def _read(self) -> dict[str, Any]:
        with self._lock:
            if not self._path.exists():
                return {}
            try:
                payload = json.loads(self._path.read_text(encoding="utf-8"))
            except (OSError, ValueError):
                logger.warning("Unreadable credential file: %s", self._path)
                return {}
        return payload if isinstance(payload, dict) else {}

    def _update(self, **values: str) -> None:
        payload = self._read()
        payload.update(values)
        with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self._path.with_suffix(".json.tmp")
            tmp_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2) + "\n", encoding="utf-8")
            try:
                os.chmod(tmp_path, 0o600)
            except OSError:
                pass
            tmp_path.replace(self._path)
