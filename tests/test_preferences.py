"""Tests for the JSON-backed settings store."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from chatllm.core.protocols import KeyValueStore
from chatllm.preferences import SELECTED_MODEL_KEY, JsonKeyValueStore


class TestJsonKeyValueStore:
    """get / set / clear persistence."""

    def test_satisfies_protocol(self, tmp_path: Path) -> None:
        assert isinstance(JsonKeyValueStore(tmp_path / "s.json"), KeyValueStore)

    def test_missing_file_reads_none(self, tmp_path: Path) -> None:
        assert JsonKeyValueStore(tmp_path / "s.json").get(SELECTED_MODEL_KEY) is None

    def test_set_persists_across_instances(self, tmp_path: Path) -> None:
        path = tmp_path / "nested" / "s.json"
        JsonKeyValueStore(path).set(SELECTED_MODEL_KEY, "a.gguf")

        assert JsonKeyValueStore(path).get(SELECTED_MODEL_KEY) == "a.gguf"
        assert json.loads(path.read_text(encoding="utf-8")) == {SELECTED_MODEL_KEY: "a.gguf"}

    def test_clear(self, tmp_path: Path) -> None:
        store = JsonKeyValueStore(tmp_path / "s.json")
        store.set(SELECTED_MODEL_KEY, "a.gguf")
        store.set("other", "keep")
        store.clear(SELECTED_MODEL_KEY)
        assert store.get(SELECTED_MODEL_KEY) is None
        assert store.get("other") == "keep"

    def test_no_temp_file_left(self, tmp_path: Path) -> None:
        store = JsonKeyValueStore(tmp_path / "s.json")
        store.set("k", "v")
        assert [p.name for p in tmp_path.iterdir()] == ["s.json"]

    def test_non_string_value_ignored(self, tmp_path: Path) -> None:
        path = tmp_path / "s.json"
        path.write_text(json.dumps({SELECTED_MODEL_KEY: 3}), encoding="utf-8")
        assert JsonKeyValueStore(path).get(SELECTED_MODEL_KEY) is None

    def test_corrupt_file_warns(self, tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
        path = tmp_path / "s.json"
        path.write_text("{not json", encoding="utf-8")
        store = JsonKeyValueStore(path)

        with caplog.at_level(logging.WARNING, logger="chatllm.preferences"):
            assert store.get(SELECTED_MODEL_KEY) is None
        assert any("Corrupt settings file" in r.message for r in caplog.records)

        # Writing recovers the file
        store.set(SELECTED_MODEL_KEY, "a.gguf")
        assert store.get(SELECTED_MODEL_KEY) == "a.gguf"
