"""Tests for the execution coordinator and BackupEngine."""

import threading
from pathlib import Path

import pytest

from pyb2backup.exceptions import (
    AlreadyRunningError,
    B2AuthenticationError,
    B2NetworkError,
    ListError,
    ScanError,
    UploadError,
)
from pyb2backup.models import B2FileVersion
from pyb2backup.sync import (
    BackupEngine,
    EntryKind,
    ExecutionCoordinator,
    FileNode,
    FileTreeModel,
    OperationType,
    Outcome,
    ProgressEventType,
    RemoteSnapshot,
    RunState,
    SyncPlan,
    SyncPlanner,
)
from pyb2backup.sync.progress import ExecutionResult, ResultAggregator

FAR_FUTURE_MS = 4_000_000_000_000


class FakeStorage:
    """In-memory storage client.

    Uploads of names in ``errors`` raise the mapped exception. Names in
    ``flaky`` fail with a network error that many times, then succeed. When
    ``gate`` is given, every upload blocks until it is set.
    """

    def __init__(self, files=(), errors=None, gate=None, flaky=None):
        self.files = {version.file_name: version for version in files}
        self.errors = errors or {}
        self.flaky = dict(flaky or {})
        self.gate = gate
        self.upload_calls = []
        self.hide_calls = []
        self.list_error = None
        self._lock = threading.Lock()

    def iter_file_names(self, bucket_id, prefix="", page_size=1000):
        if self.list_error is not None:
            raise self.list_error
        yield [
            version
            for name, version in sorted(self.files.items())
            if name.startswith(prefix)
        ]

    def upload_file(
        self,
        bucket_id,
        file_name,
        stream,
        size,
        sha1,
        last_modified_millis=None,
        progress_callback=None,
    ):
        if self.gate is not None:
            self.gate.wait(5)
        with self._lock:
            self.upload_calls.append(file_name)
        error = self.errors.get(file_name)
        if error is not None:
            raise error
        with self._lock:
            remaining = self.flaky.get(file_name, 0)
            if remaining:
                self.flaky[file_name] = remaining - 1
        if remaining:
            raise B2NetworkError("connection reset")
        data = stream.read()
        if progress_callback:
            progress_callback(len(data), size)
        version = B2FileVersion(
            file_name=file_name,
            file_id=f"id-{file_name}",
            content_length=size,
            content_sha1=sha1,
            upload_timestamp=FAR_FUTURE_MS,
        )
        with self._lock:
            self.files[file_name] = version
        return version

    def hide_file(self, bucket_id, file_name):
        with self._lock:
            self.hide_calls.append(file_name)
            self.files.pop(file_name, None)
        return B2FileVersion(
            file_name=file_name, file_id=f"hide-{file_name}", action="hide"
        )


def remote_version(name, size, uploaded_at=FAR_FUTURE_MS):
    return B2FileVersion(
        file_name=name,
        file_id=f"id-{name}",
        content_length=size,
        content_sha1="a" * 40,
        upload_timestamp=uploaded_at,
    )


@pytest.fixture
def root_dir(tmp_path):
    root = tmp_path / "root"
    root.mkdir()
    for name in ("a.txt", "b.txt", "x.txt"):
        (root / name).write_bytes(name.encode() * 3)
    return root


def plan_for(root, purges=()):
    tree = FileTreeModel.build(root)
    plan = SyncPlanner().plan(
        tree.effective_included_files(), RemoteSnapshot.from_objects([])
    )
    return SyncPlan(uploads=plan.uploads, purges=tuple(purges))


def collect(events):
    def callback(event):
        events.append(event)

    return callback


class TestExecutionCoordinator:
    """Tests for ExecutionCoordinator.execute."""

    def test_successful_run(self, root_dir):
        """Test that every item succeeds and counts add up."""
        storage = FakeStorage()
        coordinator = ExecutionCoordinator("bucket1", retry_delay=0)
        plan = plan_for(root_dir, purges=["old.txt"])

        handle = coordinator.execute(plan, storage, concurrency_limit=2)
        summary = handle.wait(timeout=10)

        assert summary.state == RunState.COMPLETED
        assert summary.total == 4
        assert summary.succeeded == 4
        assert summary.uploaded == 3
        assert summary.purged == 1
        assert summary.uploaded_bytes == plan.upload_bytes
        assert sorted(storage.upload_calls) == ["a.txt", "b.txt", "x.txt"]
        assert storage.hide_calls == ["old.txt"]
        assert not coordinator.is_running

    def test_retry_ceiling_fails_one_item(self, root_dir):
        """Test that a key failing on every attempt fails alone."""
        storage = FakeStorage(errors={"x.txt": B2NetworkError("connection reset")})
        coordinator = ExecutionCoordinator("bucket1", max_retries=3, retry_delay=0)

        handle = coordinator.execute(plan_for(root_dir), storage, concurrency_limit=3)
        summary = handle.wait(timeout=10)

        results = {result.key: result for result in handle.results}
        assert results["a.txt"].outcome == Outcome.SUCCEEDED
        assert results["b.txt"].outcome == Outcome.SUCCEEDED
        failed = results["x.txt"]
        assert failed.outcome == Outcome.FAILED
        assert isinstance(failed.error, UploadError)
        assert failed.attempts == 3
        assert storage.upload_calls.count("x.txt") == 3
        assert summary.state == RunState.COMPLETED
        assert summary.failed == 1
        assert summary.has_failures
        assert [key for key, _ in summary.failures] == ["x.txt"]

    def test_retry_ceiling_is_total_attempts(self, root_dir):
        """Test that a ceiling of 3 fails a key whose first 3 attempts fail."""
        storage = FakeStorage(flaky={"x.txt": 3})
        coordinator = ExecutionCoordinator("bucket1", max_retries=3, retry_delay=0)

        handle = coordinator.execute(plan_for(root_dir), storage, concurrency_limit=1)
        handle.wait(timeout=10)

        results = {result.key: result for result in handle.results}
        assert results["x.txt"].outcome == Outcome.FAILED
        assert results["x.txt"].attempts == 3
        assert storage.upload_calls.count("x.txt") == 3

    def test_flaky_key_succeeds_within_ceiling(self, root_dir):
        """Test that a key recovering on its last allowed attempt succeeds."""
        storage = FakeStorage(flaky={"x.txt": 2})
        coordinator = ExecutionCoordinator("bucket1", max_retries=3, retry_delay=0)

        handle = coordinator.execute(plan_for(root_dir), storage, concurrency_limit=1)
        summary = handle.wait(timeout=10)

        results = {result.key: result for result in handle.results}
        assert results["x.txt"].outcome == Outcome.SUCCEEDED
        assert results["x.txt"].attempts == 3
        assert summary.succeeded == 3

    def test_attempt_ceiling_below_one_rejected(self):
        """Test that a coordinator allowing no attempts cannot be built."""
        with pytest.raises(ValueError):
            ExecutionCoordinator("bucket1", max_retries=0)

    def test_auth_error_recorded_per_item(self, root_dir):
        """Test that a rejected credential fails the item without retries."""
        storage = FakeStorage(
            errors={"a.txt": B2AuthenticationError("expired", status_code=401)}
        )
        coordinator = ExecutionCoordinator("bucket1", max_retries=5, retry_delay=0)

        handle = coordinator.execute(plan_for(root_dir), storage, concurrency_limit=1)
        summary = handle.wait(timeout=10)

        assert storage.upload_calls.count("a.txt") == 1
        assert summary.failed == 1
        assert summary.succeeded == 2

    def test_remote_names_use_prefix(self, root_dir):
        """Test that the coordinator's prefix is applied to every call."""
        storage = FakeStorage()
        coordinator = ExecutionCoordinator("bucket1", prefix="/laptop", retry_delay=0)

        handle = coordinator.execute(
            plan_for(root_dir, purges=["gone.txt"]), storage, concurrency_limit=1
        )
        handle.wait(timeout=10)

        assert sorted(storage.upload_calls) == [
            "laptop/a.txt",
            "laptop/b.txt",
            "laptop/x.txt",
        ]
        assert storage.hide_calls == ["laptop/gone.txt"]

    def test_event_order(self, root_dir):
        """Test RUN_STARTED first, RUN_FINISHED last, one completion per item."""
        events = []
        coordinator = ExecutionCoordinator("bucket1", retry_delay=0)
        plan = plan_for(root_dir, purges=["old.txt"])

        handle = coordinator.execute(
            plan, FakeStorage(), concurrency_limit=2, subscribers=[collect(events)]
        )
        handle.wait(timeout=10)

        assert events[0].type == ProgressEventType.RUN_STARTED
        assert events[0].total_operations == 4
        assert events[-1].type == ProgressEventType.RUN_FINISHED
        assert events[-1].summary.state == RunState.COMPLETED
        completed = [
            e for e in events if e.type == ProgressEventType.OPERATION_COMPLETE
        ]
        assert sorted(e.key for e in completed) == [
            "a.txt",
            "b.txt",
            "old.txt",
            "x.txt",
        ]
        progress = [e for e in events if e.type == ProgressEventType.OPERATION_PROGRESS]
        assert {e.key for e in progress} == {"a.txt", "b.txt", "x.txt"}
        for key in ("a.txt", "old.txt"):
            kinds = [e.type for e in events if e.key == key]
            assert kinds[0] == ProgressEventType.OPERATION_STARTED
            assert kinds[-1] == ProgressEventType.OPERATION_COMPLETE

    def test_iter_events_ends_with_run_finished(self, root_dir):
        """Test that the event iterator stops after RUN_FINISHED."""
        coordinator = ExecutionCoordinator("bucket1", retry_delay=0)
        handle = coordinator.execute(
            plan_for(root_dir), FakeStorage(), concurrency_limit=1
        )

        events = list(handle.iter_events(poll_interval=0.01))

        assert events[0].type == ProgressEventType.RUN_STARTED
        assert events[-1].type == ProgressEventType.RUN_FINISHED
        assert handle.is_done

    def test_empty_plan(self):
        """Test that an empty plan completes with no operations."""
        coordinator = ExecutionCoordinator("bucket1", retry_delay=0)
        handle = coordinator.execute(SyncPlan(unchanged_count=2), FakeStorage())

        summary = handle.wait(timeout=10)

        assert summary.state == RunState.COMPLETED
        assert summary.total == 0
        assert summary.unchanged == 2

    def test_cancel_marks_unstarted_items(self, root_dir):
        """Test that cancelling mid-run leaves every item accounted for."""
        gate = threading.Event()
        started = threading.Event()
        storage = FakeStorage(gate=gate)
        coordinator = ExecutionCoordinator("bucket1", retry_delay=0)

        def on_event(event):
            if event.type == ProgressEventType.OPERATION_STARTED:
                started.set()

        plan = plan_for(root_dir, purges=["p1", "p2"])
        handle = coordinator.execute(
            plan, storage, concurrency_limit=1, subscribers=[on_event]
        )
        assert started.wait(5)
        assert coordinator.cancel() is True
        gate.set()
        summary = handle.wait(timeout=10)

        assert summary.state == RunState.CANCELLED
        assert summary.succeeded == 1
        assert summary.cancelled == 4
        assert summary.succeeded + summary.failed + summary.cancelled == summary.total
        assert len(storage.upload_calls) == 1
        assert storage.hide_calls == []

    def test_cancel_without_run(self):
        """Test that cancel reports when nothing is running."""
        assert ExecutionCoordinator("bucket1").cancel() is False

    def test_second_execute_rejected(self, root_dir):
        """Test that only one run may be active at a time."""
        gate = threading.Event()
        coordinator = ExecutionCoordinator("bucket1", retry_delay=0)
        handle = coordinator.execute(
            plan_for(root_dir), FakeStorage(gate=gate), concurrency_limit=1
        )

        with pytest.raises(AlreadyRunningError):
            coordinator.execute(plan_for(root_dir), FakeStorage())

        gate.set()
        handle.wait(timeout=10)
        assert coordinator.active_run is None
        second = coordinator.execute(SyncPlan(), FakeStorage())
        assert second.wait(timeout=10).state == RunState.COMPLETED

    def test_wait_timeout_returns_running_snapshot(self, root_dir):
        """Test that waiting with a timeout does not block forever."""
        gate = threading.Event()
        coordinator = ExecutionCoordinator("bucket1", retry_delay=0)
        handle = coordinator.execute(
            plan_for(root_dir), FakeStorage(gate=gate), concurrency_limit=1
        )

        try:
            summary = handle.wait(timeout=0.01)
            assert summary.state == RunState.RUNNING
            assert not handle.is_done
        finally:
            gate.set()
            handle.wait(timeout=10)

    @pytest.mark.parametrize("limit", [0, -1])
    def test_invalid_concurrency_limit(self, limit):
        """Test that a concurrency limit below one is rejected."""
        coordinator = ExecutionCoordinator("bucket1")
        with pytest.raises(ValueError):
            coordinator.execute(SyncPlan(), FakeStorage(), concurrency_limit=limit)
        assert not coordinator.is_running

    def test_subscriber_errors_do_not_stop_run(self, root_dir):
        """Test that a failing subscriber does not affect results."""

        def broken(event):
            raise RuntimeError("display closed")

        coordinator = ExecutionCoordinator("bucket1", retry_delay=0)
        handle = coordinator.execute(
            plan_for(root_dir), FakeStorage(), subscribers=[broken]
        )

        assert handle.wait(timeout=10).succeeded == 3


class TestResultAggregator:
    """Tests for ResultAggregator."""

    def test_counts_and_failures_sorted(self):
        """Test counting by outcome and sorted failures."""
        aggregator = ResultAggregator(total=4, unchanged=1)
        error_b = UploadError("b", B2NetworkError("reset"), attempts=2)
        error_a = UploadError("a", B2NetworkError("reset"), attempts=2)
        aggregator.add(
            ExecutionResult(OperationType.UPLOAD, "ok", Outcome.SUCCEEDED), 10
        )
        aggregator.add(
            ExecutionResult(OperationType.UPLOAD, "b", Outcome.FAILED, error=error_b)
        )
        aggregator.add(
            ExecutionResult(OperationType.UPLOAD, "a", Outcome.FAILED, error=error_a)
        )
        aggregator.add(ExecutionResult(OperationType.PURGE, "p", Outcome.CANCELLED))

        running = aggregator.snapshot()
        summary = aggregator.finish(RunState.COMPLETED)

        assert running.state == RunState.RUNNING
        assert summary.succeeded == 1
        assert summary.uploaded_bytes == 10
        assert summary.failed == 2
        assert summary.cancelled == 1
        assert [key for key, _ in summary.failures] == ["a", "b"]
        data = summary.to_dict()
        assert data["state"] == "completed"
        assert data["unchanged"] == 1
        assert data["failures"][0]["key"] == "a"


class TestBackupEngine:
    """Tests for BackupEngine."""

    @pytest.fixture
    def storage(self):
        return FakeStorage(
            files=[
                remote_version("backup/a.txt", size=15),
                remote_version("backup/stale.txt", size=1),
                remote_version("elsewhere/c.txt", size=1),
            ]
        )

    @pytest.fixture
    def engine(self, storage, root_dir):
        return BackupEngine.from_path(
            storage, "bucket1", root_dir, prefix="backup", retry_delay=0
        )

    def test_plan(self, engine):
        """Test planning against the prefixed remote listing."""
        plan = engine.plan()

        assert [u.key for u in plan.uploads] == ["b.txt", "x.txt"]
        assert plan.purges == ("stale.txt",)
        assert plan.unchanged_count == 1

    def test_start_upload_without_purge(self, engine, storage):
        """Test that a plain upload run never hides objects."""
        summary = engine.start_upload().wait(timeout=10)

        assert summary.state == RunState.COMPLETED
        assert sorted(storage.upload_calls) == ["backup/b.txt", "backup/x.txt"]
        assert storage.hide_calls == []
        assert summary.unchanged == 1

    def test_start_upload_with_purge(self, engine, storage):
        """Test an upload run that also purges."""
        summary = engine.start_upload(purge=True).wait(timeout=10)

        assert summary.total == 3
        assert storage.hide_calls == ["backup/stale.txt"]

    def test_excluded_file_is_purged(self, engine, storage):
        """Test that excluding a backed-up file makes it a purge candidate."""
        engine.toggle_inclusion("a.txt")

        summary = engine.start_purge().wait(timeout=10)

        assert summary.purged == 2
        assert sorted(storage.hide_calls) == ["backup/a.txt", "backup/stale.txt"]
        assert storage.upload_calls == []
        assert "elsewhere/c.txt" in storage.files

    def test_second_run_is_no_op(self, engine, storage):
        """Test that uploaded files are unchanged on the next plan."""
        engine.start_upload(purge=True).wait(timeout=10)

        assert engine.plan().is_empty

    def test_list_error_starts_no_run(self, engine, storage):
        """Test that a failed listing raises before any run starts."""
        storage.list_error = B2AuthenticationError("bad key", status_code=401)

        with pytest.raises(ListError) as exc_info:
            engine.start_upload()

        assert exc_info.value.__cause__ is storage.list_error
        assert engine.active_run is None
        assert storage.upload_calls == []

    def test_selection_locked_while_running(self, root_dir):
        """Test that toggling and starting fail while a run is active."""
        gate = threading.Event()
        engine = BackupEngine.from_path(
            FakeStorage(gate=gate), "bucket1", root_dir, retry_delay=0
        )
        handle = engine.start_upload()

        try:
            with pytest.raises(AlreadyRunningError):
                engine.toggle_inclusion("a.txt")
            with pytest.raises(AlreadyRunningError):
                engine.set_inclusion("a.txt", False)
            with pytest.raises(AlreadyRunningError):
                engine.start_purge()
        finally:
            gate.set()
            handle.wait(timeout=10)

        assert engine.toggle_inclusion("a.txt") is False

    def test_subscribe_receives_every_run(self, engine):
        """Test that engine subscribers see events of each run."""
        events = []
        engine.subscribe(collect(events))

        engine.start_upload().wait(timeout=10)
        engine.start_purge().wait(timeout=10)

        finished = [e for e in events if e.type == ProgressEventType.RUN_FINISHED]
        assert len(finished) == 2

    def test_cancel_without_run(self, engine):
        """Test cancel when idle."""
        assert engine.cancel() is False

    def test_unreadable_directory_protects_remote_keys(self, root_dir):
        """Test that keys under an unscanned directory are never purged."""
        storage = FakeStorage(files=[remote_version("locked/secret.txt", size=3)])
        engine = BackupEngine.from_path(storage, "bucket1", root_dir, retry_delay=0)
        engine.tree.root.add_child(
            FileNode(
                name="locked",
                kind=EntryKind.DIRECTORY,
                scan_error=ScanError("locked", PermissionError("denied")),
            )
        )

        plan = engine.plan()

        assert plan.purges == ()
        assert plan.protected == ("locked/secret.txt",)

    def test_unreadable_file_keeps_its_backup(self, root_dir, monkeypatch):
        """Test that a file failing to stat is neither uploaded nor purged."""
        storage = FakeStorage(files=[remote_version("b.txt", size=15)])
        real_stat = Path.stat

        def stat(self, *args, **kwargs):
            if self.name == "b.txt":
                raise PermissionError(13, "Permission denied", str(self))
            return real_stat(self, *args, **kwargs)

        monkeypatch.setattr(Path, "stat", stat)
        engine = BackupEngine.from_path(storage, "bucket1", root_dir, retry_delay=0)
        monkeypatch.undo()

        plan = engine.plan()

        assert [error.path for error in engine.tree.scan_errors] == ["b.txt"]
        assert [u.key for u in plan.uploads] == ["a.txt", "x.txt"]
        assert plan.purges == ()
        assert plan.protected == ("b.txt",)
