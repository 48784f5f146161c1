"""Filesystem placement of model weight files."""

from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path

from chatllm.errors import StoreError

logger = logging.getLogger(__name__)

_PARTIAL_SUFFIX = ".partial"


class ModelStore:
    """Resolve, check, delete, and atomically commit files in the models directory.

    The directory is created lazily on first path resolution. The store knows
    nothing about download state; it only mutates the filesystem.

    Args:
        models_dir: Directory dedicated to model binaries.
    """

    def __init__(self, models_dir: Path) -> None:
        self._models_dir = models_dir

    @property
    def models_dir(self) -> Path:
        return self._models_dir

    def resolve_path(self, filename: str) -> Path:
        """Return ``models_dir / filename``, creating the directory if absent."""
        self._models_dir.mkdir(parents=True, exist_ok=True)
        return self._models_dir / filename

    def exists(self, filename: str) -> bool:
        return (self._models_dir / filename).is_file()

    def delete(self, filename: str) -> None:
        """Remove a model file. Absent files are a successful no-op.

        Raises:
            StoreError: The file exists but could not be removed.
        """
        path = self._models_dir / filename
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            raise StoreError(f"Could not delete {path}: {exc}") from exc
        logger.info("Deleted model file %s", path)

    def commit(self, temp_path: Path, filename: str) -> Path:
        """Move a fully written temp file onto its final name.

        The data is first moved next to the destination under a hidden
        ``.partial`` name (so the final step is a same-directory rename even
        when ``temp_path`` lives on another filesystem), then ``os.replace``
        swaps it over any existing file.

        Returns:
            The final path, equal to ``resolve_path(filename)``.

        Raises:
            StoreError: The move failed. No partial file is left behind.
        """
        dest = self.resolve_path(filename)
        staged = dest.with_name(f".{filename}{_PARTIAL_SUFFIX}")
        try:
            shutil.move(temp_path, staged)
            os.replace(staged, dest)
        except OSError as exc:
            staged.unlink(missing_ok=True)
            raise StoreError(f"Could not move {temp_path} to {dest}: {exc}") from exc
        logger.info("Committed model file %s", dest)
        return dest
