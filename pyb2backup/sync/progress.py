"""Results, events and summaries produced while a run executes."""

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from ..exceptions import OperationError


class OperationType(str, Enum):
    """Kind of remote operation."""

    UPLOAD = "upload"
    """Upload a local file"""

    PURGE = "purge"
    """Hide a remote object"""


class Outcome(str, Enum):
    """Terminal outcome of one operation."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RunState(str, Enum):
    """Lifecycle of a run."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RunState.COMPLETED, RunState.CANCELLED, RunState.FAILED)


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of a single upload or purge."""

    operation: OperationType
    """Upload or purge"""

    key: str
    """Relative key the operation targeted"""

    outcome: Outcome
    """Terminal outcome"""

    error: Optional[OperationError] = None
    """Set when the outcome is FAILED"""

    attempts: int = 0
    """Number of remote calls made"""

    file_id: Optional[str] = None
    """B2 file ID of the version created by the operation"""

    elapsed: float = 0.0
    """Wall time spent on the operation in seconds"""


class ProgressEventType(str, Enum):
    """Kinds of events streamed from a run."""

    RUN_STARTED = "run_started"
    OPERATION_STARTED = "operation_started"
    OPERATION_PROGRESS = "operation_progress"
    OPERATION_COMPLETE = "operation_complete"
    RUN_FINISHED = "run_finished"


@dataclass(frozen=True)
class ProgressEvent:
    """A progress notification.

    Which fields are set depends on ``type``: operation events carry
    ``operation`` and ``key``, OPERATION_PROGRESS adds byte counts,
    OPERATION_COMPLETE adds ``result`` and RUN_FINISHED adds ``summary``.
    """

    type: ProgressEventType
    operation: Optional[OperationType] = None
    key: Optional[str] = None
    bytes_done: int = 0
    bytes_total: int = 0
    total_operations: int = 0
    result: Optional[ExecutionResult] = None
    summary: Optional["RunSummary"] = None


@dataclass
class RunSummary:
    """Aggregated outcome of a run."""

    state: RunState = RunState.IDLE
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    cancelled: int = 0
    unchanged: int = 0
    uploaded: int = 0
    purged: int = 0
    uploaded_bytes: int = 0
    failures: list[tuple[str, OperationError]] = field(default_factory=list)
    elapsed: float = 0.0

    @property
    def has_failures(self) -> bool:
        return self.failed > 0 or self.state == RunState.FAILED

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "unchanged": self.unchanged,
            "uploaded": self.uploaded,
            "purged": self.purged,
            "uploaded_bytes": self.uploaded_bytes,
            "failures": [
                {"key": key, "error": str(error)} for key, error in self.failures
            ],
            "elapsed": round(self.elapsed, 3),
        }


class ResultAggregator:
    """Thread-safe collector of ExecutionResults for one run."""

    def __init__(self, total: int, unchanged: int = 0):
        self._lock = threading.RLock()
        self._results: list[ExecutionResult] = []
        self._start = time.time()
        self._summary = RunSummary(
            state=RunState.RUNNING, total=total, unchanged=unchanged
        )

    def add(self, result: ExecutionResult, size: int = 0) -> None:
        with self._lock:
            self._results.append(result)
            summary = self._summary
            if result.outcome == Outcome.SUCCEEDED:
                summary.succeeded += 1
                if result.operation == OperationType.UPLOAD:
                    summary.uploaded += 1
                    summary.uploaded_bytes += size
                else:
                    summary.purged += 1
            elif result.outcome == Outcome.FAILED:
                summary.failed += 1
                if result.error is not None:
                    summary.failures.append((result.key, result.error))
            else:
                summary.cancelled += 1

    @property
    def results(self) -> list[ExecutionResult]:
        with self._lock:
            return list(self._results)

    def finish(self, state: RunState) -> RunSummary:
        """Freeze the summary with its final state."""
        with self._lock:
            self._summary.state = state
            self._summary.elapsed = time.time() - self._start
            self._summary.failures.sort(key=lambda item: item[0])
            return self.snapshot()

    def snapshot(self) -> RunSummary:
        """Copy of the summary as it stands now."""
        with self._lock:
            summary = self._summary
            return RunSummary(
                state=summary.state,
                total=summary.total,
                succeeded=summary.succeeded,
                failed=summary.failed,
                cancelled=summary.cancelled,
                unchanged=summary.unchanged,
                uploaded=summary.uploaded,
                purged=summary.purged,
                uploaded_bytes=summary.uploaded_bytes,
                failures=list(summary.failures),
                elapsed=summary.elapsed,
            )
