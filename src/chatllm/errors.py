"""Exception hierarchy shared across the model lifecycle and inference layers."""

from __future__ import annotations


class ChatLLMError(Exception):
    """Base exception for ChatLLM errors."""


class DownloadError(ChatLLMError):
    """Transfer failed: network, non-2xx response, or disk write during relocation."""


class DownloadCancelled(DownloadError):
    """The transfer was cancelled before completion."""


class StoreError(ChatLLMError):
    """Filesystem move or delete failed inside the models directory."""


class LoadError(ChatLLMError):
    """A model file could not be turned into a usable inference handle.

    Attributes:
        path: The model file that was being loaded.
    """

    def __init__(self, path: object, reason: str) -> None:
        self.path = path
        super().__init__(f"Failed to load model {path}: {reason}")


class GenerationFault(ChatLLMError):
    """Generation could not run or was interrupted by a handle error."""
