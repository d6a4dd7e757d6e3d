"""Run records, snapshots and their durable store.

The executor lives in :mod:`taskforge.runs.executor`; it depends on the
planning package, which in turn imports the records defined here.
"""

from .schema import (
    LogLevel,
    RunLock,
    RunStatus,
    TaskItem,
    TaskLogEntry,
    TaskRunState,
    TaskStatus,
    TaskVerification,
    TypeErrorItem,
    compute_run_status,
)
from .snapshot import FileSnapshot, GitSnapshot, SnapshotStrategy, capture_snapshot
from .store import RunLockedError, RunStateStore, StoreError

__all__ = [
    "FileSnapshot",
    "GitSnapshot",
    "LogLevel",
    "RunLock",
    "RunLockedError",
    "RunStateStore",
    "RunStatus",
    "SnapshotStrategy",
    "StoreError",
    "TaskItem",
    "TaskLogEntry",
    "TaskRunState",
    "TaskStatus",
    "TaskVerification",
    "TypeErrorItem",
    "capture_snapshot",
    "compute_run_status",
]
