"""Static catalog of downloadable GGUF models."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import PurePath
from typing import Any

_REQUIRED_FIELDS = ("name", "filename", "url")


@dataclass(frozen=True, slots=True)
class ModelDescriptor:
    """Immutable description of one downloadable model.

    Args:
        id: Stable identity used by the lifecycle controller.
        name: Display name.
        filename: On-disk filename inside the models directory.
        description: Short human description.
        size: Declared size label (e.g. ``"637 MB"``), informational only.
        url: Remote download location.
    """

    id: str
    name: str
    filename: str
    description: str
    size: str
    url: str

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("Model id must not be empty")
        if not self.filename or PurePath(self.filename).name != self.filename:
            raise ValueError(f"filename must be a bare file name, got {self.filename!r}")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ModelDescriptor:
        """Build a descriptor from a config table; ``id`` defaults to the filename stem."""
        missing = [key for key in _REQUIRED_FIELDS if not data.get(key)]
        if missing:
            raise ValueError(f"Catalog entry missing required fields: {', '.join(missing)}")
        filename = str(data["filename"])
        return cls(
            id=str(data.get("id") or PurePath(filename).stem),
            name=str(data["name"]),
            filename=filename,
            description=str(data.get("description", "")),
            size=str(data.get("size", "")),
            url=str(data["url"]),
        )


def _hf(repo: str, filename: str) -> str:
    return f"https://huggingface.co/{repo}/resolve/main/{filename}"


DEFAULT_CATALOG: tuple[ModelDescriptor, ...] = (
    ModelDescriptor(
        id="tinyllama-1.1b-chat",
        name="TinyLlama 1.1B Chat",
        filename="tinyllama-1.1b-chat-v1.0.Q4_K_M.gguf",
        description="Fastest, simple chats.",
        size="637 MB",
        url=_hf("TheBloke/TinyLlama-1.1B-Chat-v1.0-GGUF", "tinyllama-1.1b-chat-v1.0.Q4_K_M.gguf"),
    ),
    ModelDescriptor(
        id="deepseek-coder-1.3b",
        name="Deepseek-Coder 1.3B",
        filename="deepseek-coder-1.3b-instruct.Q4_K_M.gguf",
        description="Highly optimized.",
        size="833 MB",
        url=_hf(
            "TheBloke/deepseek-coder-1.3b-instruct-GGUF",
            "deepseek-coder-1.3b-instruct.Q4_K_M.gguf",
        ),
    ),
    ModelDescriptor(
        id="qwen2-1.5b-instruct",
        name="Qwen2 1.5B Instruct",
        filename="qwen2-1_5b-instruct-q4_k_m.gguf",
        description="Best small model, balanced.",
        size="800 MB",
        url=_hf("Qwen/Qwen2-1.5B-Instruct-GGUF", "qwen2-1_5b-instruct-q4_k_m.gguf"),
    ),
    ModelDescriptor(
        id="gemma-2-2b-it",
        name="Gemma 2B Instruct",
        filename="gemma-2-2b-it-Q4_K_M.gguf",
        description="Best speed & reasoning.",
        size="1.6 GB",
        url=_hf("bartowski/gemma-2-2b-it-GGUF", "gemma-2-2b-it-Q4_K_M.gguf"),
    ),
    ModelDescriptor(
        id="qwen2.5-coder-3b",
        name="Qwen2.5-Coder 3B",
        filename="Qwen2.5-Coder-3B-Q3_K_M.gguf",
        description="Best coding and math.",
        size="1.59 GB",
        url=_hf("bartowski/Qwen2.5-Coder-3B-GGUF", "Qwen2.5-Coder-3B-Q3_K_M.gguf"),
    ),
)


def build_catalog(entries: Iterable[Mapping[str, Any]] = ()) -> tuple[ModelDescriptor, ...]:
    """Return the configured catalog, or the default one when none is configured.

    Raises:
        ValueError: On a malformed entry or a duplicate id/filename.
    """
    descriptors = tuple(ModelDescriptor.from_dict(e) for e in entries) or DEFAULT_CATALOG

    seen_ids: set[str] = set()
    seen_files: set[str] = set()
    for d in descriptors:
        if d.id in seen_ids:
            raise ValueError(f"Duplicate model id in catalog: {d.id!r}")
        if d.filename in seen_files:
            raise ValueError(f"Duplicate filename in catalog: {d.filename!r}")
        seen_ids.add(d.id)
        seen_files.add(d.filename)
    return descriptors
