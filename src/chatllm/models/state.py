"""Download state variants and the per-model entry held by the lifecycle controller."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from chatllm.catalog import ModelDescriptor


@dataclass(frozen=True, slots=True)
class NotDownloaded:
    """No file for the model is present in the models directory."""

    def to_dict(self) -> dict[str, Any]:
        return {"status": "not_downloaded"}


@dataclass(frozen=True, slots=True)
class Downloading:
    """Transfer in progress.

    Args:
        progress: Fraction of bytes received, in [0.0, 1.0].
    """

    progress: float = 0.0

    def __post_init__(self) -> None:
        if not (0.0 <= self.progress <= 1.0):
            raise ValueError(f"progress must be in [0.0, 1.0], got {self.progress}")

    def to_dict(self) -> dict[str, Any]:
        return {"status": "downloading", "progress": self.progress}


@dataclass(frozen=True, slots=True)
class Downloaded:
    """The model file is committed at ``path``."""

    path: Path

    def to_dict(self) -> dict[str, Any]:
        return {"status": "downloaded", "path": str(self.path)}


@dataclass(frozen=True, slots=True)
class Failed:
    """The last download attempt failed with a human-readable ``message``."""

    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"status": "failed", "message": self.message}


DownloadState = NotDownloaded | Downloading | Downloaded | Failed


def describe_state(state: DownloadState) -> str:
    """Short display label for a state."""
    if isinstance(state, Downloading):
        return f"Downloading {state.progress:.0%}"
    if isinstance(state, Downloaded):
        return "Downloaded"
    if isinstance(state, Failed):
        return f"Failed: {state.message}"
    return "Not downloaded"


@dataclass
class ModelEntry:
    """A catalog descriptor paired with its mutable lifecycle state.

    Only the lifecycle controller mutates entries.
    """

    descriptor: ModelDescriptor
    state: DownloadState = field(default_factory=NotDownloaded)
    is_selected: bool = False

    @property
    def id(self) -> str:
        return self.descriptor.id

    @property
    def is_downloaded(self) -> bool:
        return isinstance(self.state, Downloaded)

    @property
    def is_downloading(self) -> bool:
        return isinstance(self.state, Downloading)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "id": self.descriptor.id,
            "name": self.descriptor.name,
            "filename": self.descriptor.filename,
            "size": self.descriptor.size,
            "state": self.state.to_dict(),
            "is_selected": self.is_selected,
        }
