"""Backup engine for pyb2backup - local tree, planning and execution."""

from .engine import BackupEngine, ExecutionCoordinator, RunHandle
from .operations import OperationCancelled, SyncOperations
from .planner import PlannedUpload, SyncPlan, SyncPlanner, UploadReason
from .progress import (
    ExecutionResult,
    OperationType,
    Outcome,
    ProgressEvent,
    ProgressEventType,
    RunState,
    RunSummary,
)
from .scanner import DirectoryScanner, EntryKind, FileNode, LocalFile
from .snapshot import RemoteObject, RemoteSnapshot
from .state import SelectionState, SelectionStateManager
from .tree import FileTreeModel

__all__ = [
    "BackupEngine",
    "ExecutionCoordinator",
    "RunHandle",
    "SyncOperations",
    "OperationCancelled",
    "SyncPlanner",
    "SyncPlan",
    "PlannedUpload",
    "UploadReason",
    "ExecutionResult",
    "OperationType",
    "Outcome",
    "ProgressEvent",
    "ProgressEventType",
    "RunState",
    "RunSummary",
    "DirectoryScanner",
    "EntryKind",
    "FileNode",
    "LocalFile",
    "FileTreeModel",
    "RemoteObject",
    "RemoteSnapshot",
    "SelectionState",
    "SelectionStateManager",
]
