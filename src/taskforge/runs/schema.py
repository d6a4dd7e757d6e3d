"""Typed records persisted by the run state store."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

LOG_MESSAGE_LIMIT = 4000


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def _truncate(message: str, limit: int = LOG_MESSAGE_LIMIT) -> str:
    if len(message) <= limit:
        return message
    return message[:limit] + f"... (truncated, original length {len(message)})"


class RecordModel(BaseModel):
    """Base model serialised with camelCase keys on disk."""

    model_config = ConfigDict(
        extra="forbid",
        frozen=False,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def to_document(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)


class RunStatus(str, Enum):
    """Lifecycle states for a task run."""

    DRAFT = "draft"
    APPROVED = "approved"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


class TaskStatus(str, Enum):
    """Lifecycle states for a single task item."""

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class LogLevel(str, Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class TaskLogEntry(RecordModel):
    at: datetime = Field(default_factory=utc_now)
    type: LogLevel = LogLevel.INFO
    message: str


class TypeErrorItem(RecordModel):
    file: str
    line: int
    column: int = 0
    code: str = "error"
    message: str


class TaskVerification(RecordModel):
    ok: bool
    notes: List[str] = Field(default_factory=list)
    type_errors: List[TypeErrorItem] = Field(default_factory=list)


class TaskItem(RecordModel):
    """One executable unit of a run, restricted to its ``files`` allow-list."""

    id: str
    title: str
    status: TaskStatus = TaskStatus.PENDING
    files: List[str] = Field(default_factory=list)
    description: str = ""
    attempts: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_error: Optional[str] = None
    logs: List[TaskLogEntry] = Field(default_factory=list)
    changed_files: List[str] = Field(default_factory=list)
    verification: Optional[TaskVerification] = None
    reverted: Optional[bool] = None

    def log(self, level: LogLevel, message: str) -> TaskLogEntry:
        entry = TaskLogEntry(type=level, message=_truncate(message))
        self.logs.append(entry)
        return entry


class RunLock(RecordModel):
    """Advisory lock stored inside the run record.

    Timestamps stay raw strings so a corrupted value reads as a stale lock
    instead of making the whole record unreadable.
    """

    held_by: str
    acquired_at: str
    expires_at: str

    @classmethod
    def create(cls, holder: str, ttl: timedelta, *, now: datetime | None = None) -> "RunLock":
        moment = now or utc_now()
        return cls(
            held_by=holder,
            acquired_at=moment.isoformat(),
            expires_at=(moment + ttl).isoformat(),
        )

    def is_stale(self, now: datetime | None = None) -> bool:
        moment = now or utc_now()
        try:
            acquired = datetime.fromisoformat(self.acquired_at)
            expires = datetime.fromisoformat(self.expires_at)
        except (TypeError, ValueError):
            return True
        if expires.tzinfo is None or acquired.tzinfo is None:
            return True
        return expires <= moment


class TaskRunState(RecordModel):
    """Durable record of one run: its plan items and their progress."""

    run_id: str
    task_path: str
    project_root: str
    role: str = "coder"
    status: RunStatus = RunStatus.DRAFT
    created_at: datetime = Field(default_factory=utc_now)
    approved_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utc_now)
    lock: Optional[RunLock] = None
    tasks: List[TaskItem] = Field(default_factory=list)

    def task(self, task_id: str) -> TaskItem | None:
        for item in self.tasks:
            if item.id == task_id:
                return item
        return None

    def next_pending(self) -> TaskItem | None:
        for item in self.tasks:
            if item.status is TaskStatus.PENDING:
                return item
        return None

    def refresh_status(self) -> RunStatus:
        self.status = compute_run_status(self.tasks, self.status)
        self.updated_at = utc_now()
        return self.status


_COMPLETE = frozenset({TaskStatus.DONE, TaskStatus.SKIPPED})


def compute_run_status(tasks: Iterable[TaskItem], current: RunStatus = RunStatus.APPROVED) -> RunStatus:
    """Derive a run's status purely from its items.

    A draft run stays a draft until it is explicitly approved.
    """

    if current is RunStatus.DRAFT:
        return RunStatus.DRAFT
    statuses = [item.status for item in tasks]
    if any(status is TaskStatus.FAILED for status in statuses):
        return RunStatus.FAILED
    if statuses and all(status in _COMPLETE for status in statuses):
        return RunStatus.DONE
    if any(status is TaskStatus.IN_PROGRESS for status in statuses):
        return RunStatus.RUNNING
    return RunStatus.APPROVED


__all__ = [
    "LOG_MESSAGE_LIMIT",
    "LogLevel",
    "RecordModel",
    "RunLock",
    "RunStatus",
    "TaskItem",
    "TaskLogEntry",
    "TaskRunState",
    "TaskStatus",
    "TaskVerification",
    "TypeErrorItem",
    "compute_run_status",
    "utc_now",
]
