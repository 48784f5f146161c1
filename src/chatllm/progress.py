"""Progress reporting for model downloads."""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING

from rich.console import Console
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from chatllm.models.state import Downloading, describe_state

if TYPE_CHECKING:
    from rich.progress import TaskID

    from chatllm.models.state import ModelEntry


class DownloadProgressReporter:
    """Rich-based progress display for one model download.

    Subscribe ``callback`` to the lifecycle controller. Renders a live
    progress bar on TTY stderr and falls back to log lines every 10% when
    stderr is not a terminal.
    """

    def __init__(self, console: Console, quiet: bool = False) -> None:
        self._console = console
        self._quiet = quiet
        self._progress: Progress | None = None
        self._task_id: TaskID | None = None
        self._model_id: str | None = None
        self._last_logged: int = -1
        self._is_tty: bool = sys.stderr.isatty()
        self._logger: logging.Logger = logging.getLogger("chatllm.progress")

    def start(self, entry: ModelEntry) -> None:
        """Start tracking ``entry``."""
        self._model_id = entry.id
        self._last_logged = -1
        if self._quiet:
            return

        if self._is_tty:
            self._progress = Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                TaskProgressColumn(),
                TimeElapsedColumn(),
                console=self._console,
            )
            self._progress.start()
            self._task_id = self._progress.add_task(
                f"[cyan]{entry.descriptor.name}", total=100.0
            )
        else:
            self._logger.info(
                "Downloading %s (%s)", entry.descriptor.name, entry.descriptor.size or "?"
            )

    def callback(self, entry: ModelEntry) -> None:
        """Handle a controller state change for the tracked entry."""
        if self._quiet or entry.id != self._model_id:
            return
        if not isinstance(entry.state, Downloading):
            return

        percent = entry.state.progress * 100
        if self._progress is not None and self._task_id is not None:
            self._progress.update(self._task_id, completed=percent)
        elif not self._is_tty:
            decile = int(percent // 10)
            if decile > self._last_logged:
                self._last_logged = decile
                self._logger.info("%s %3.0f%%", entry.descriptor.name, percent)

    def finish(self, entry: ModelEntry) -> None:
        """Stop the progress display and print the final state."""
        if self._progress is not None:
            self._progress.stop()
            self._progress = None
            self._task_id = None
        self._model_id = None

        if self._quiet:
            return

        table = Table(title="Download Summary", show_header=True)
        table.add_column("Model", style="cyan")
        table.add_column("State", style="green")
        table.add_row(entry.descriptor.name, describe_state(entry.state))
        self._console.print(table)
