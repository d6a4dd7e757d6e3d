"""Durable JSON storage for task runs and their plan documents.

Each run lives in ``<workspace>/plans/<run_id>.tasks.json`` next to the human
readable ``<run_id>.tasks.md``. Writes go through a temporary file and an
atomic ``os.replace`` so readers never observe a partially written record.
The advisory run lock is stored inside the record itself; its
read-modify-write is serialised by a short-lived exclusive guard file.
"""

from __future__ import annotations

import errno
import logging
import os
import re
import shutil
import tempfile
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Iterator, List

from pydantic import ValidationError

from .schema import RunLock, TaskRunState, utc_now

LOGGER = logging.getLogger(__name__)

_RUN_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
_TRANSIENT_ERRNOS = frozenset({errno.EBUSY, errno.EACCES, errno.EPERM})
_GUARD_STALE_SECONDS = 30.0
_GUARD_TIMEOUT_SECONDS = 10.0
_GUARD_POLL_SECONDS = 0.02
_BASE_BACKOFF_SECONDS = 0.05


class StoreError(RuntimeError):
    """Raised when run state cannot be read or written."""


class RunLockedError(StoreError):
    """Raised when another holder owns a live lock on the run."""

    def __init__(self, run_id: str, lock: RunLock) -> None:
        super().__init__(f"Run {run_id} is locked by {lock.held_by} until {lock.expires_at}")
        self.run_id = run_id
        self.held_by = lock.held_by
        self.acquired_at = lock.acquired_at
        self.expires_at = lock.expires_at


def _is_transient(error: OSError) -> bool:
    return isinstance(error, PermissionError) or error.errno in _TRANSIENT_ERRNOS


class RunStateStore:
    """File-backed store for :class:`TaskRunState` records."""

    def __init__(
        self,
        workspace_dir: Path | str,
        *,
        lock_ttl: timedelta = timedelta(minutes=10),
        save_attempts: int = 5,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
        replace: Callable[[str, str], None] = os.replace,
    ) -> None:
        self.workspace_dir = Path(workspace_dir)
        self.plans_dir = self.workspace_dir / "plans"
        self.lock_ttl = lock_ttl
        self.save_attempts = max(1, save_attempts)
        self._sleep = sleep
        self._clock = clock
        self._replace = replace

    # ------------------------------------------------------------------ paths
    def _checked(self, run_id: str) -> str:
        if not _RUN_ID_RE.match(run_id or ""):
            raise StoreError(f"Invalid run id: {run_id!r}")
        return run_id

    def state_path(self, run_id: str) -> Path:
        return self.plans_dir / f"{self._checked(run_id)}.tasks.json"

    def plan_path(self, run_id: str) -> Path:
        return self.plans_dir / f"{self._checked(run_id)}.tasks.md"

    # ------------------------------------------------------------- records
    def load(self, run_id: str) -> TaskRunState | None:
        path = self.state_path(run_id)
        if not path.exists():
            return None
        try:
            return TaskRunState.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as error:
            raise StoreError(f"Failed to read run {run_id}: {error}") from error

    def save(self, state: TaskRunState) -> None:
        self._atomic_write(self.state_path(state.run_id), state.to_document())

    def save_plan_document(self, run_id: str, text: str) -> Path:
        path = self.plan_path(run_id)
        self._atomic_write(path, text)
        return path

    def load_plan_document(self, run_id: str) -> str | None:
        path = self.plan_path(run_id)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def list_runs(self) -> List[TaskRunState]:
        if not self.plans_dir.is_dir():
            return []
        runs: List[TaskRunState] = []
        for path in sorted(self.plans_dir.glob("*.tasks.json")):
            run_id = path.name[: -len(".tasks.json")]
            try:
                state = self.load(run_id)
            except StoreError as error:
                LOGGER.warning("Skipping unreadable run record %s: %s", path, error)
                continue
            if state is not None:
                runs.append(state)
        runs.sort(key=lambda item: item.created_at)
        return runs

    def _atomic_write(self, path: Path, text: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(text)
                handle.flush()
                os.fsync(handle.fileno())
        except OSError as error:
            Path(tmp_name).unlink(missing_ok=True)
            raise StoreError(f"Failed to write {path}: {error}") from error

        delay = _BASE_BACKOFF_SECONDS
        for attempt in range(1, self.save_attempts + 1):
            try:
                self._replace(tmp_name, str(path))
                return
            except OSError as error:
                if not _is_transient(error):
                    Path(tmp_name).unlink(missing_ok=True)
                    raise StoreError(f"Failed to replace {path}: {error}") from error
                LOGGER.warning(
                    "Replacing %s failed (attempt %d/%d): %s",
                    path,
                    attempt,
                    self.save_attempts,
                    error,
                )
                if attempt < self.save_attempts:
                    self._sleep(delay)
                    delay *= 2

        LOGGER.warning("Falling back to copy-then-delete for %s", path)
        try:
            shutil.copyfile(tmp_name, path)
        except OSError as error:
            raise StoreError(f"Failed to save {path}: {error}") from error
        finally:
            Path(tmp_name).unlink(missing_ok=True)

    # ------------------------------------------------------------------ locks
    @contextmanager
    def _guard(self, run_id: str) -> Iterator[None]:
        """Hold ``<run_id>.guard`` exclusively for a read-modify-write."""

        guard = self.plans_dir / f"{self._checked(run_id)}.guard"
        guard.parent.mkdir(parents=True, exist_ok=True)
        deadline = time.monotonic() + _GUARD_TIMEOUT_SECONDS
        while True:
            try:
                fd = os.open(guard, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                try:
                    age = time.time() - guard.stat().st_mtime
                except FileNotFoundError:
                    continue
                if age > _GUARD_STALE_SECONDS:
                    LOGGER.warning("Removing stale lock guard %s", guard)
                    guard.unlink(missing_ok=True)
                    continue
                if time.monotonic() > deadline:
                    raise StoreError(f"Timed out waiting for lock guard on run {run_id}")
                time.sleep(_GUARD_POLL_SECONDS)
                continue
            break
        try:
            os.write(fd, str(os.getpid()).encode("ascii"))
            os.close(fd)
            yield
        finally:
            guard.unlink(missing_ok=True)

    def acquire(self, run_id: str, holder: str | None = None) -> str:
        """Take the run lock and return the holder token.

        Stale or unparsable locks are cleared first. Acquiring again with the
        current holder's token refreshes the expiry.
        """

        with self._guard(run_id):
            state = self.load(run_id)
            if state is None:
                raise StoreError(f"Run not found: {run_id}")
            now = self._clock()
            lock = state.lock
            if lock is not None and lock.is_stale(now):
                LOGGER.info("Clearing stale lock on run %s held by %s", run_id, lock.held_by)
                lock = None
            if lock is not None and lock.held_by != holder:
                raise RunLockedError(run_id, lock)
            token = holder or uuid.uuid4().hex
            state.lock = RunLock.create(token, self.lock_ttl, now=now)
            self.save(state)
            return token

    def release(self, run_id: str, token: str) -> bool:
        """Clear the lock if ``token`` holds it or it has gone stale."""

        with self._guard(run_id):
            state = self.load(run_id)
            if state is None or state.lock is None:
                return False
            if state.lock.held_by != token and not state.lock.is_stale(self._clock()):
                LOGGER.warning(
                    "Not releasing lock on run %s: held by %s, not %s",
                    run_id,
                    state.lock.held_by,
                    token,
                )
                return False
            state.lock = None
            self.save(state)
            return True


__all__ = ["RunLockedError", "RunStateStore", "StoreError"]
