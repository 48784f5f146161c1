"""Interface contracts for ChatLLM's swappable collaborators.

The lifecycle controller and inference session depend only on these
protocols, so the inference engine and the settings backend can be
replaced with fakes in tests.
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Protocol, runtime_checkable


@runtime_checkable
class InferenceHandle(Protocol):
    """An opaque loaded model that turns a prompt into incremental text.

    ``respond`` blocks until the model signals completion or ``stop`` is
    called. Each increment is passed to ``on_token``; returning False from
    the callback asks the handle to halt.
    """

    def respond(self, prompt: str, on_token: Callable[[str], bool]) -> None: ...

    def stop(self) -> None: ...

    def reset(self) -> None: ...

    def close(self) -> None: ...


HandleFactory = Callable[[Path], InferenceHandle]
"""Build an inference handle from a model file. Raises on failure."""


@runtime_checkable
class KeyValueStore(Protocol):
    """Durable string settings keyed by name."""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def clear(self, key: str) -> None: ...
