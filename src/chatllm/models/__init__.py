"""Model download state and lifecycle management."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from chatllm.models.download import DownloadJob, DownloadManager
    from chatllm.models.manager import LifecycleController

__all__ = ["DownloadJob", "DownloadManager", "LifecycleController"]


def __getattr__(name: str) -> type:
    """Lazy-load lifecycle classes on first access."""
    if name == "LifecycleController":
        from chatllm.models.manager import LifecycleController

        return LifecycleController
    if name == "DownloadManager":
        from chatllm.models.download import DownloadManager

        return DownloadManager
    if name == "DownloadJob":
        from chatllm.models.download import DownloadJob

        return DownloadJob
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
