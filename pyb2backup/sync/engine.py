"""Core backup engine: runs a SyncPlan against the bucket."""

import logging
import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Callable, Iterable, Iterator, Optional, Union

from ..exceptions import AlreadyRunningError, HideError, UploadError
from ..protocols import StorageClientProtocol
from ..utils import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_PAGE_SIZE,
    DEFAULT_RETRY_DELAY,
    DEFAULT_WORKERS,
    normalize_prefix,
)
from .operations import OperationCancelled, SyncOperations
from .planner import PlannedUpload, SyncPlan, SyncPlanner
from .progress import (
    ExecutionResult,
    OperationType,
    Outcome,
    ProgressEvent,
    ProgressEventType,
    ResultAggregator,
    RunState,
    RunSummary,
)
from .scanner import DirectoryScanner, FileNode
from .snapshot import RemoteSnapshot
from .tree import FileTreeModel

logger = logging.getLogger(__name__)

EventCallback = Callable[[ProgressEvent], None]
WorkItem = Union[PlannedUpload, str]


class RunHandle:
    """Handle on a run executing in the background.

    Events are delivered to subscribers on worker threads and also queued
    for :meth:`iter_events`. Every planned operation ends with exactly one
    OPERATION_COMPLETE event, so ``succeeded + failed + cancelled == total``
    once the run has finished.
    """

    def __init__(
        self,
        plan: SyncPlan,
        operations: SyncOperations,
        concurrency_limit: int,
        subscribers: Iterable[EventCallback] = (),
        on_finish: Optional[Callable[["RunHandle"], None]] = None,
    ):
        self.plan = plan
        self.operations = operations
        self.concurrency_limit = concurrency_limit
        self._cancel_event = operations.cancel_event
        self._subscribers: list[EventCallback] = list(subscribers)
        self._subscribers_lock = threading.Lock()
        self._events: "queue.Queue[ProgressEvent]" = queue.Queue()
        self._done = threading.Event()
        self._on_finish = on_finish
        self._state = RunState.IDLE
        self._aggregator = ResultAggregator(
            total=plan.total_operations, unchanged=plan.unchanged_count
        )
        self._summary: Optional[RunSummary] = None
        self._thread = threading.Thread(
            target=self._run, name="pyb2backup-run", daemon=True
        )

    # =========================
    # Public API
    # =========================

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def is_done(self) -> bool:
        return self._done.is_set()

    @property
    def results(self) -> list[ExecutionResult]:
        return self._aggregator.results

    def start(self) -> None:
        self._state = RunState.RUNNING
        self._thread.start()

    def subscribe(self, callback: EventCallback) -> None:
        """Register a callback for events emitted from now on."""
        with self._subscribers_lock:
            self._subscribers.append(callback)

    def cancel(self) -> None:
        """Request cooperative cancellation.

        Operations not yet started end as CANCELLED; in-flight calls finish.
        """
        if not self._done.is_set():
            logger.debug("Cancellation requested")
        self._cancel_event.set()

    def iter_events(self, poll_interval: float = 0.1) -> Iterator[ProgressEvent]:
        """Yield queued events until RUN_FINISHED has been yielded.

        Intended for a single consumer.
        """
        while True:
            try:
                event = self._events.get(timeout=poll_interval)
            except queue.Empty:
                if self._done.is_set() and self._events.empty():
                    return
                continue
            yield event
            if event.type == ProgressEventType.RUN_FINISHED:
                return

    def wait(self, timeout: Optional[float] = None) -> RunSummary:
        """Block until the run finishes or ``timeout`` elapses.

        Returns:
            Final summary, or the summary so far (state RUNNING) on timeout
        """
        if self._done.wait(timeout) and self._summary is not None:
            return self._summary
        return self._aggregator.snapshot()

    # =========================
    # Execution
    # =========================

    def _emit(self, event: ProgressEvent) -> None:
        self._events.put(event)
        with self._subscribers_lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception("Progress subscriber raised")

    def _work_items(self) -> list[WorkItem]:
        return [*self.plan.uploads, *self.plan.purges]

    def _run(self) -> None:
        items = self._work_items()
        logger.debug(
            f"Executing {len(items)} operation(s) with "
            f"{self.concurrency_limit} worker(s)"
        )
        self._emit(
            ProgressEvent(
                type=ProgressEventType.RUN_STARTED, total_operations=len(items)
            )
        )

        try:
            with ThreadPoolExecutor(max_workers=self.concurrency_limit) as executor:
                futures = {
                    executor.submit(self._execute_item, item): item for item in items
                }
                for future in as_completed(futures):
                    try:
                        future.result()
                    except Exception as e:
                        # _execute_item records every expected failure itself
                        logger.exception("Unexpected error in parallel execution")
                        self._record_unexpected(futures[future], e)
            if self._cancel_event.is_set():
                final_state = RunState.CANCELLED
            else:
                final_state = RunState.COMPLETED
        except Exception:
            logger.exception("Run aborted")
            final_state = RunState.FAILED

        self._finish(final_state)

    def _finish(self, state: RunState) -> None:
        summary = self._aggregator.finish(state)
        self._summary = summary
        self._state = state
        logger.debug(
            "Run %s: %d succeeded, %d failed, %d cancelled in %.2fs",
            state.value,
            summary.succeeded,
            summary.failed,
            summary.cancelled,
            summary.elapsed,
        )
        if self._on_finish is not None:
            self._on_finish(self)
        self._emit(ProgressEvent(type=ProgressEventType.RUN_FINISHED, summary=summary))
        self._done.set()

    def _execute_item(self, item: WorkItem) -> ExecutionResult:
        if isinstance(item, PlannedUpload):
            operation, key, size = OperationType.UPLOAD, item.key, item.file.size
        else:
            operation, key, size = OperationType.PURGE, item, 0

        if self._cancel_event.is_set():
            return self._complete(
                ExecutionResult(operation, key, Outcome.CANCELLED), size
            )

        self._emit(
            ProgressEvent(
                type=ProgressEventType.OPERATION_STARTED,
                operation=operation,
                key=key,
                bytes_total=size,
            )
        )

        start = time.time()
        try:
            if isinstance(item, PlannedUpload):
                version, attempts = self.operations.upload(
                    item.file, progress_callback=self._progress_reporter(key)
                )
            else:
                version, attempts = self.operations.hide(key)
            result = ExecutionResult(
                operation,
                key,
                Outcome.SUCCEEDED,
                attempts=attempts,
                file_id=version.file_id,
                elapsed=time.time() - start,
            )
            logger.debug(f"Completed {key} in {result.elapsed:.2f}s")
        except OperationCancelled as e:
            result = ExecutionResult(
                operation,
                key,
                Outcome.CANCELLED,
                attempts=e.attempts,
                elapsed=time.time() - start,
            )
        except (UploadError, HideError) as e:
            logger.debug(f"Failed {key} after {e.attempts} attempt(s): {e.cause}")
            result = ExecutionResult(
                operation,
                key,
                Outcome.FAILED,
                error=e,
                attempts=e.attempts,
                elapsed=time.time() - start,
            )

        return self._complete(result, size)

    def _complete(self, result: ExecutionResult, size: int) -> ExecutionResult:
        self._aggregator.add(result, size)
        self._emit(
            ProgressEvent(
                type=ProgressEventType.OPERATION_COMPLETE,
                operation=result.operation,
                key=result.key,
                bytes_done=size if result.outcome == Outcome.SUCCEEDED else 0,
                bytes_total=size,
                result=result,
            )
        )
        return result

    def _record_unexpected(self, item: WorkItem, error: Exception) -> None:
        if isinstance(item, PlannedUpload):
            self._complete(
                ExecutionResult(
                    OperationType.UPLOAD,
                    item.key,
                    Outcome.FAILED,
                    error=UploadError(item.key, error),
                ),
                item.file.size,
            )
        else:
            self._complete(
                ExecutionResult(
                    OperationType.PURGE,
                    item,
                    Outcome.FAILED,
                    error=HideError(item, error),
                ),
                0,
            )

    def _progress_reporter(self, key: str) -> Callable[[int, int], None]:
        def report(bytes_done: int, bytes_total: int) -> None:
            self._emit(
                ProgressEvent(
                    type=ProgressEventType.OPERATION_PROGRESS,
                    operation=OperationType.UPLOAD,
                    key=key,
                    bytes_done=bytes_done,
                    bytes_total=bytes_total,
                )
            )

        return report


class ExecutionCoordinator:
    """Executes SyncPlans, one run at a time.

    Examples:
        >>> coordinator = ExecutionCoordinator(bucket_id="abc123")
        >>> handle = coordinator.execute(plan, client, concurrency_limit=4)
        >>> summary = handle.wait()
    """

    def __init__(
        self,
        bucket_id: str,
        prefix: str = "",
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
    ):
        """Initialize the coordinator.

        Args:
            bucket_id: Target bucket
            prefix: Remote prefix the local root maps to
            max_retries: Attempt ceiling per operation (total calls, at least 1)
            retry_delay: Base delay for exponential backoff (seconds)

        Raises:
            ValueError: If max_retries is less than 1
        """
        if max_retries < 1:
            raise ValueError(f"max_retries must be >= 1, got {max_retries}")
        self.bucket_id = bucket_id
        self.prefix = normalize_prefix(prefix)
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._lock = threading.Lock()
        self._active: Optional[RunHandle] = None

    @property
    def active_run(self) -> Optional[RunHandle]:
        with self._lock:
            return self._active

    @property
    def is_running(self) -> bool:
        return self.active_run is not None

    def execute(
        self,
        plan: SyncPlan,
        storage_client: StorageClientProtocol,
        concurrency_limit: int = DEFAULT_WORKERS,
        subscribers: Iterable[EventCallback] = (),
    ) -> RunHandle:
        """Start executing ``plan`` in the background.

        Args:
            plan: Plan to execute; consumed by this run
            storage_client: Client used for uploads and hides
            concurrency_limit: Maximum operations in flight
            subscribers: Callbacks registered before the first event

        Returns:
            Handle of the started run

        Raises:
            AlreadyRunningError: If a run is still active
            ValueError: If concurrency_limit is less than 1
        """
        if concurrency_limit < 1:
            raise ValueError(f"concurrency_limit must be >= 1, got {concurrency_limit}")

        with self._lock:
            if self._active is not None:
                raise AlreadyRunningError("A run is already in progress")
            operations = SyncOperations(
                storage_client,
                self.bucket_id,
                prefix=self.prefix,
                max_retries=self.max_retries,
                retry_delay=self.retry_delay,
                cancel_event=threading.Event(),
            )
            handle = RunHandle(
                plan,
                operations,
                concurrency_limit,
                subscribers=subscribers,
                on_finish=self._release,
            )
            self._active = handle

        handle.start()
        return handle

    def cancel(self) -> bool:
        """Cancel the active run.

        Returns:
            True if a run was active
        """
        handle = self.active_run
        if handle is None:
            return False
        handle.cancel()
        return True

    def _release(self, handle: RunHandle) -> None:
        with self._lock:
            if self._active is handle:
                self._active = None


class BackupEngine:
    """Owns the local tree and runs backups of its selection.

    This is the surface a user interface drives: query and change the
    selection, preview a plan, start or cancel runs and observe progress.
    """

    def __init__(
        self,
        client: StorageClientProtocol,
        bucket_id: str,
        tree: FileTreeModel,
        prefix: str = "",
        workers: int = DEFAULT_WORKERS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        page_size: int = DEFAULT_PAGE_SIZE,
    ):
        """Initialize backup engine.

        Args:
            client: Storage client
            bucket_id: Target bucket
            tree: Local tree with the user's selection
            prefix: Remote prefix the local root maps to
            workers: Concurrency limit for runs
            max_retries: Attempt ceiling per operation (total calls, at least 1)
            retry_delay: Base delay for exponential backoff (seconds)
            page_size: File names requested per list call
        """
        self.client = client
        self.bucket_id = bucket_id
        self._tree = tree
        self.prefix = normalize_prefix(prefix)
        self.workers = workers
        self.page_size = page_size
        self.planner = SyncPlanner()
        self.coordinator = ExecutionCoordinator(
            bucket_id,
            prefix=self.prefix,
            max_retries=max_retries,
            retry_delay=retry_delay,
        )
        self._subscribers: list[EventCallback] = []

    @classmethod
    def from_path(
        cls,
        client: StorageClientProtocol,
        bucket_id: str,
        root_path: Path,
        scanner: Optional[DirectoryScanner] = None,
        **kwargs,
    ) -> "BackupEngine":
        """Scan ``root_path`` and create an engine for it.

        Raises:
            ValueError: If root_path is not an existing directory
        """
        tree = FileTreeModel.build(root_path, scanner=scanner)
        return cls(client, bucket_id, tree, **kwargs)

    # =========================
    # Tree
    # =========================

    @property
    def tree(self) -> FileTreeModel:
        return self._tree

    def iter_nodes(self) -> Iterator[tuple[str, FileNode, bool]]:
        return self._tree.iter_nodes()

    def toggle_inclusion(self, node_path: str) -> bool:
        """Flip inclusion of a node.

        Raises:
            AlreadyRunningError: While a run is active
            NodeNotFoundError: If no node exists at that path
        """
        self._ensure_idle()
        return self._tree.toggle_inclusion(node_path)

    def set_inclusion(self, node_path: str, included: bool) -> None:
        """Set inclusion of a node.

        Raises:
            AlreadyRunningError: While a run is active
            NodeNotFoundError: If no node exists at that path
        """
        self._ensure_idle()
        self._tree.set_inclusion(node_path, included)

    # =========================
    # Planning and runs
    # =========================

    def fetch_snapshot(self) -> RemoteSnapshot:
        """Fetch the current remote objects under the prefix.

        Raises:
            ListError: If listing failed
        """
        return RemoteSnapshot.fetch(
            self.client, self.bucket_id, prefix=self.prefix, page_size=self.page_size
        )

    def plan(self) -> SyncPlan:
        """Compute what a full run (uploads and purges) would do.

        Remote keys under directories that could not be scanned are never
        purged.

        Raises:
            ListError: If listing failed
        """
        snapshot = self.fetch_snapshot()
        return self.planner.plan(
            self._tree.effective_included_files(),
            snapshot,
            keep_prefixes=self._tree.unreadable_paths(),
        )

    def start_upload(self, purge: bool = False) -> RunHandle:
        """Upload new and changed files, optionally purging as well.

        Args:
            purge: Also hide remote objects with no included local file

        Raises:
            AlreadyRunningError: If a run is active
            ListError: If listing failed (no run is started)
        """
        self._ensure_idle()
        plan = self.plan()
        return self._execute(plan if purge else plan.uploads_only())

    def start_purge(self) -> RunHandle:
        """Hide remote objects with no included local file.

        Raises:
            AlreadyRunningError: If a run is active
            ListError: If listing failed (no run is started)
        """
        self._ensure_idle()
        return self._execute(self.plan().purges_only())

    def cancel(self) -> bool:
        """Cancel the active run, if any."""
        return self.coordinator.cancel()

    def subscribe(self, callback: EventCallback) -> None:
        """Register a callback for events of the active and all future runs."""
        self._subscribers.append(callback)
        handle = self.coordinator.active_run
        if handle is not None:
            handle.subscribe(callback)

    @property
    def active_run(self) -> Optional[RunHandle]:
        return self.coordinator.active_run

    def _execute(self, plan: SyncPlan) -> RunHandle:
        return self.coordinator.execute(
            plan, self.client, self.workers, subscribers=self._subscribers
        )

    def _ensure_idle(self) -> None:
        if self.coordinator.is_running:
            raise AlreadyRunningError("Cannot change or start while a run is active")
