"""Durable key/value settings backed by a JSON file."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

SELECTED_MODEL_KEY = "SelectedModelFilename"


class JsonKeyValueStore:
    """Small settings store persisted as a flat JSON object.

    Every mutation rewrites the whole file through a temporary sibling and
    ``os.replace`` so a crash never leaves a half-written settings file.
    """

    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def get(self, key: str) -> str | None:
        value = self._read().get(key)
        return value if isinstance(value, str) else None

    def set(self, key: str, value: str) -> None:
        data = self._read()
        data[key] = value
        self._write(data)

    def clear(self, key: str) -> None:
        data = self._read()
        if data.pop(key, None) is not None:
            self._write(data)

    def _read(self) -> dict[str, Any]:
        if not self._path.is_file():
            return {}
        try:
            with open(self._path, encoding="utf-8") as f:
                raw = json.load(f)
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Corrupt settings file %s: %s", self._path, exc)
            return {}
        if not isinstance(raw, dict):
            logger.warning("Settings file %s does not hold an object; ignoring", self._path)
            return {}
        return raw

    def _write(self, data: dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_path, self._path)
