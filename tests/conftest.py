"""Shared test fixtures."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from pathlib import Path

import httpx
import pytest

from chatllm.catalog import ModelDescriptor
from chatllm.models.download import DownloadManager
from chatllm.models.manager import LifecycleController
from chatllm.preferences import JsonKeyValueStore
from chatllm.store import ModelStore

MODEL_BYTES = b"GGUF" + b"\x00" * 96


class FakeHandle:
    """Inference handle that replays a fixed list of text increments."""

    def __init__(
        self,
        tokens: Iterable[str] = ("He", "llo"),
        error: Exception | None = None,
        error_after: int = 0,
        gate: threading.Event | None = None,
    ) -> None:
        self.tokens = list(tokens)
        self.error = error
        self.error_after = error_after
        self.gate = gate
        self.prompts: list[str] = []
        self.resets = 0
        self.closed = False
        self._stop = threading.Event()

    def respond(self, prompt: str, on_token: Callable[[str], bool]) -> None:
        self.prompts.append(prompt)
        for i, token in enumerate(self.tokens):
            if self.error is not None and i == self.error_after:
                raise self.error
            if self._stop.is_set() or not on_token(token):
                return
            if self.gate is not None:
                self.gate.wait(timeout=5)
        if self.error is not None and self.error_after >= len(self.tokens):
            raise self.error

    def stop(self) -> None:
        self._stop.set()
        if self.gate is not None:
            self.gate.set()

    def reset(self) -> None:
        self.resets += 1
        self._stop.clear()

    def close(self) -> None:
        self.closed = True


class FakeFactory:
    """Handle factory recording every path it was asked to load."""

    def __init__(self, handle_cls: Callable[[], FakeHandle] = FakeHandle) -> None:
        self.handle_cls = handle_cls
        self.loaded: list[Path] = []
        self.handles: list[FakeHandle] = []
        self.fail_with: Exception | None = None

    def __call__(self, path: Path) -> FakeHandle:
        self.loaded.append(path)
        if self.fail_with is not None:
            raise self.fail_with
        handle = self.handle_cls()
        self.handles.append(handle)
        return handle


def make_descriptor(model_id: str = "m1", **overrides: str) -> ModelDescriptor:
    fields = {
        "id": model_id,
        "name": f"Model {model_id}",
        "filename": f"{model_id}.bin",
        "description": "test model",
        "size": "100 B",
        "url": f"https://host/{model_id}.bin",
    }
    fields.update(overrides)
    return ModelDescriptor(**fields)


def serve_models(request: httpx.Request) -> httpx.Response:
    """Serve ``MODEL_BYTES`` for every ``/<id>.bin`` path; 404 for ``/missing.bin``."""
    if request.url.path == "/missing.bin":
        return httpx.Response(404)
    return httpx.Response(200, content=MODEL_BYTES)


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    d = tmp_path / "data"
    d.mkdir()
    return d


@pytest.fixture
def store(data_dir: Path) -> ModelStore:
    return ModelStore(data_dir / "LLM_Models")


@pytest.fixture
def preferences(data_dir: Path) -> JsonKeyValueStore:
    return JsonKeyValueStore(data_dir / "settings.json")


@pytest.fixture
def factory() -> FakeFactory:
    return FakeFactory()


@pytest.fixture
def make_controller(
    data_dir: Path,
    store: ModelStore,
    preferences: JsonKeyValueStore,
    factory: FakeFactory,
) -> Callable[..., LifecycleController]:
    """Build a controller over temp dirs, a mock HTTP transport, and fake handles."""

    def _make(
        descriptors: Iterable[ModelDescriptor] | None = None,
        handler: Callable[[httpx.Request], httpx.Response] = serve_models,
        system_prompt: str | None = None,
    ) -> LifecycleController:
        if descriptors is None:
            descriptors = [make_descriptor("m1"), make_descriptor("m2")]
        downloader = DownloadManager(
            staging_dir=data_dir / ".staging",
            transport=httpx.MockTransport(handler),
        )
        return LifecycleController(
            catalog=descriptors,
            store=store,
            downloader=downloader,
            preferences=preferences,
            handle_factory=factory,
            system_prompt=system_prompt,
        )

    return _make
