"""CLI progress display for backup runs.

This module provides a Rich-based progress display that consumes the
ProgressEvents streamed by a RunHandle.
"""

import logging
from typing import Callable, Optional

from rich.console import Console
from rich.markup import escape
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
)

from .sync.engine import RunHandle
from .sync.progress import (
    Outcome,
    ProgressEvent,
    ProgressEventType,
    RunSummary,
)
from .utils import format_size

logger = logging.getLogger(__name__)


class RunProgressDisplay:
    """Rich-based progress display for a run.

    Shows two bars: bytes processed by uploads and operations finished.
    Bytes of an upload in flight are counted as they are sent and replaced
    by the file size once the upload finishes (or fails).
    """

    def __init__(
        self,
        upload_bytes: int,
        total_operations: int,
        console: Optional[Console] = None,
    ) -> None:
        """Initialize the progress display.

        Args:
            upload_bytes: Total size of planned uploads
            total_operations: Number of planned uploads and purges
            console: Console to draw on (stderr by default)
        """
        self.upload_bytes = upload_bytes
        self.total_operations = total_operations
        self.console = console or Console(stderr=True)
        self._progress: Optional[Progress] = None
        self._bytes_task: Optional[TaskID] = None
        self._ops_task: Optional[TaskID] = None
        self._finished_bytes = 0
        self._in_flight: dict[str, int] = {}
        self._done_ops = 0
        self.failed_keys: list[str] = []

    def handle_event(self, event: ProgressEvent) -> None:
        """Update the display for one event."""
        if self._progress is None:
            return

        if event.type == ProgressEventType.OPERATION_STARTED and event.key:
            self._progress.update(self._ops_task, description=escape(event.key))

        elif event.type == ProgressEventType.OPERATION_PROGRESS and event.key:
            self._in_flight[event.key] = event.bytes_done
            self._update_bytes()

        elif event.type == ProgressEventType.OPERATION_COMPLETE:
            if event.key:
                self._in_flight.pop(event.key, None)
            self._finished_bytes += event.bytes_total
            self._update_bytes()
            self._done_ops += 1
            self._progress.update(
                self._ops_task,
                completed=self._done_ops,
                detail=f"{self._done_ops}/{self.total_operations}",
            )
            if event.result is not None and event.result.outcome == Outcome.FAILED:
                self.failed_keys.append(event.result.key)
                self._progress.console.print(
                    f"[red]✗[/red] {escape(str(event.result.error))}"
                )

        elif event.type == ProgressEventType.RUN_FINISHED:
            self._progress.update(self._ops_task, description="Done")

    def _update_bytes(self) -> None:
        completed = self._finished_bytes + sum(self._in_flight.values())
        completed = min(completed, self.upload_bytes)
        self._progress.update(
            self._bytes_task,
            completed=completed,
            detail=f"{format_size(completed)}/{format_size(self.upload_bytes)}",
        )

    def __enter__(self) -> "RunProgressDisplay":
        """Enter context manager - start progress display."""
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold blue]{task.description}"),
            BarColumn(),
            TextColumn("{task.fields[detail]}"),
            TimeElapsedColumn(),
            console=self.console,
            refresh_per_second=4,
        )
        self._progress.__enter__()

        self._bytes_task = self._progress.add_task(
            "Uploading",
            total=self.upload_bytes or None,
            detail=f"0 B/{format_size(self.upload_bytes)}",
        )
        self._ops_task = self._progress.add_task(
            "Starting...",
            total=self.total_operations,
            detail=f"0/{self.total_operations}",
        )
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit context manager - stop progress display."""
        if self._progress is not None:
            self._progress.__exit__(exc_type, exc_val, exc_tb)
            self._progress = None


def wait_with_progress(
    handle: RunHandle,
    show_progress: bool = True,
    console: Optional[Console] = None,
) -> RunSummary:
    """Wait for a run, showing progress and cancelling on Ctrl-C.

    Ctrl-C cancels the run cooperatively; in-flight operations still
    finish and the summary is returned as usual.

    Args:
        handle: Started run
        show_progress: Draw a progress bar
        console: Console to draw on

    Returns:
        Final run summary
    """
    display: Optional[RunProgressDisplay] = None
    if show_progress:
        display = RunProgressDisplay(
            handle.plan.upload_bytes, handle.plan.total_operations, console=console
        )

    def consume() -> None:
        for event in handle.iter_events():
            if display is not None:
                display.handle_event(event)

    if display is not None:
        with display:
            _consume_until_done(handle, consume)
    else:
        _consume_until_done(handle, consume)

    return handle.wait()


def _consume_until_done(handle: RunHandle, consume: Callable[[], None]) -> None:
    while True:
        try:
            consume()
            return
        except KeyboardInterrupt:
            logger.debug("Interrupted, cancelling run")
            handle.cancel()
