"""CLI integration tests using Click's CliRunner."""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from pathlib import Path
from unittest.mock import patch

import pytest
from click.testing import CliRunner, Result
from conftest import MODEL_BYTES, make_descriptor

from chatllm.cli import main
from chatllm.models.manager import LifecycleController
from chatllm.preferences import SELECTED_MODEL_KEY, JsonKeyValueStore
from chatllm.store import ModelStore

Invoke = Callable[..., Result]


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def fake_controllers(make_controller: Callable[..., LifecycleController]) -> Iterator[None]:
    """Every CLI command gets a fresh controller over the test fixtures."""
    descriptors = [make_descriptor("m1"), make_descriptor("m2"), make_descriptor("missing")]
    with patch(
        "chatllm.cli._build_controller",
        side_effect=lambda _config: make_controller(descriptors),
    ):
        yield


@pytest.fixture
def invoke(runner: CliRunner, data_dir: Path, fake_controllers: None) -> Invoke:
    def _invoke(*args: str, input: str | None = None) -> Result:
        return runner.invoke(main, ["--data-dir", str(data_dir), *args], input=input)

    return _invoke


def _place(store: ModelStore, filename: str) -> Path:
    path = store.resolve_path(filename)
    path.write_bytes(MODEL_BYTES)
    return path


class TestMainGroup:
    """Top-level CLI group."""

    def test_version(self, runner: CliRunner) -> None:
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert "chatllm" in result.output.lower()

    def test_help(self, runner: CliRunner) -> None:
        result = runner.invoke(main, ["--help"])
        assert result.exit_code == 0
        for command in ("models", "download", "delete", "select", "ask", "chat", "config"):
            assert command in result.output


class TestModelsCommand:
    """models subcommand."""

    def test_json_listing(
        self, invoke: Invoke, store: ModelStore, preferences: JsonKeyValueStore
    ) -> None:
        _place(store, "m1.bin")
        preferences.set(SELECTED_MODEL_KEY, "m1.bin")

        result = invoke("models", "--output-format", "json")

        assert result.exit_code == 0
        rows = {row["id"]: row for row in json.loads(result.stdout)}
        assert rows["m1"]["state"]["status"] == "downloaded"
        assert rows["m1"]["is_selected"] is True
        assert rows["m2"]["state"] == {"status": "not_downloaded"}
        assert rows["m2"]["is_selected"] is False

    def test_table_listing(self, invoke: Invoke) -> None:
        result = invoke("models")
        assert result.exit_code == 0
        assert "m1" in result.output
        assert "Models" in result.output


class TestDownloadCommand:
    """download subcommand."""

    def test_success(self, invoke: Invoke, store: ModelStore) -> None:
        result = invoke("download", "m1")

        assert result.exit_code == 0, result.output
        assert "Saved:" in result.output
        assert store.exists("m1.bin")

    def test_accepts_filename(self, invoke: Invoke, store: ModelStore) -> None:
        result = invoke("download", "m2.bin")
        assert result.exit_code == 0
        assert store.exists("m2.bin")

    def test_http_failure(self, invoke: Invoke, store: ModelStore) -> None:
        result = invoke("download", "missing")

        assert result.exit_code == 1
        assert "404" in result.output
        assert not store.exists("missing.bin")

    def test_unknown_model(self, invoke: Invoke) -> None:
        result = invoke("download", "nope")
        assert result.exit_code == 2
        assert "Unknown model" in result.output


class TestDeleteCommand:
    """delete subcommand."""

    def test_delete_with_yes(self, invoke: Invoke, store: ModelStore) -> None:
        _place(store, "m1.bin")
        result = invoke("delete", "m1", "--yes")
        assert result.exit_code == 0
        assert "Deleted" in result.output
        assert not store.exists("m1.bin")

    def test_confirmation_declined(self, invoke: Invoke, store: ModelStore) -> None:
        _place(store, "m1.bin")
        result = invoke("delete", "m1", input="n\n")
        assert result.exit_code == 1
        assert store.exists("m1.bin")

    def test_not_downloaded(self, invoke: Invoke) -> None:
        result = invoke("delete", "m1", "--yes")
        assert result.exit_code == 1
        assert "not downloaded" in result.output


class TestSelectCommand:
    """select subcommand."""

    def test_select_persists(
        self, invoke: Invoke, store: ModelStore, preferences: JsonKeyValueStore
    ) -> None:
        _place(store, "m1.bin")
        result = invoke("select", "m1")
        assert result.exit_code == 0
        assert "Selected: Model m1" in result.output
        assert preferences.get(SELECTED_MODEL_KEY) == "m1.bin"

    def test_not_downloaded(self, invoke: Invoke, preferences: JsonKeyValueStore) -> None:
        result = invoke("select", "m1")
        assert result.exit_code == 1
        assert "chatllm download m1" in result.output
        assert preferences.get(SELECTED_MODEL_KEY) is None


class TestAskAndChat:
    """Generation commands."""

    def test_ask_without_model(self, invoke: Invoke) -> None:
        result = invoke("ask", "hi")
        assert result.exit_code == 0
        assert "No model selected." in result.output

    def test_ask_streams_reply(
        self, invoke: Invoke, store: ModelStore, preferences: JsonKeyValueStore
    ) -> None:
        _place(store, "m1.bin")
        preferences.set(SELECTED_MODEL_KEY, "m1.bin")

        result = invoke("ask", "hi", "there")

        assert result.exit_code == 0
        assert "Hello" in result.output

    def test_chat_session(
        self, invoke: Invoke, store: ModelStore, preferences: JsonKeyValueStore
    ) -> None:
        _place(store, "m1.bin")
        preferences.set(SELECTED_MODEL_KEY, "m1.bin")

        result = invoke("chat", input="hi\n/reset\nagain\n/exit\n")

        assert result.exit_code == 0, result.output
        assert result.output.count("Hello") == 2

    def test_chat_without_model(self, invoke: Invoke) -> None:
        result = invoke("chat", input="/exit\n")
        assert result.exit_code == 1
        assert "No model selected" in result.output


class TestConfigCommand:
    """config subcommand."""

    def test_shows_resolved_paths(self, invoke: Invoke, data_dir: Path) -> None:
        result = invoke("config")
        assert result.exit_code == 0
        assert "LLM_Models" in result.output
        assert "n_ctx" in result.output

    def test_set_keeps_group_options(
        self, runner: CliRunner, fake_controllers: None, tmp_path: Path
    ) -> None:
        data_dir = tmp_path / "2024"
        user = tmp_path / "config.toml"
        user.write_text("[inference]\ntemperature = 0.2\n", encoding="utf-8")

        result = runner.invoke(
            main,
            [
                "--config", str(user),
                "--data-dir", str(data_dir),
                "config", "--set", "inference.n_ctx", "4096",
            ],
        )

        assert result.exit_code == 0, result.output
        output = "".join(result.output.split())
        assert "".join(str(data_dir / "LLM_Models").split()) in output
        assert '"n_ctx":4096' in output
        assert '"temperature":0.2' in output
