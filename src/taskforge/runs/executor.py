"""Execute one task item per call with verify-or-revert semantics.

Every call to :meth:`TaskExecutor.execute_next` holds the run lock for its
whole duration, advances at most one item and always persists the recomputed
run status before the lock is released.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List

from ..agent.loop import LoopExhaustedError, LoopResult
from ..agent.runner import AgentRunner
from ..config import Settings
from ..models.llm_client import LLMClientError
from ..planning.compiler import mark_task_done, render_task_block
from ..prompts import render_execution_prompt
from ..telemetry import emit_event
from ..tools.static_analysis import PythonStaticAnalyzer, StaticAnalysisError
from ..tools.vcs import GitError
from .schema import (
    LOG_MESSAGE_LIMIT,
    LogLevel,
    RunStatus,
    TaskItem,
    TaskRunState,
    TaskStatus,
    TaskVerification,
    TypeErrorItem,
    utc_now,
)
from .snapshot import SnapshotStrategy, capture_snapshot
from .store import RunLockedError, RunStateStore, StoreError

LOGGER = logging.getLogger(__name__)

SUCCESS_NOTES = ("type check passed", "scope ok")
API_CHANGE_NOTE = "Public API exports changed in allowed files (not permitted)."
VERIFICATION_FAILED = "Task verification failed; changes were reverted."
_EXECUTABLE = frozenset({RunStatus.APPROVED, RunStatus.RUNNING})
_RUN_LOG_LIMIT = 20000


@dataclass(slots=True)
class ExecutionOutcome:
    """Result of one executor call.

    ``outcome`` is one of ``executed``, ``failed``, ``conflict``,
    ``no_pending``, ``not_found``, ``rejected``, ``skipped`` or ``recovered``.
    """

    outcome: str
    ok: bool
    run_id: str
    task_id: str | None = None
    status: TaskStatus | None = None
    run_status: RunStatus | None = None
    error: str | None = None
    notes: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome,
            "ok": self.ok,
            "runId": self.run_id,
            "taskId": self.task_id,
            "status": self.status.value if self.status else None,
            "runStatus": self.run_status.value if self.run_status else None,
            "error": self.error,
            "notes": list(self.notes),
        }


@dataclass(slots=True)
class _Verification:
    changed: List[str]
    notes: List[str]
    type_errors: List[TypeErrorItem]
    ok: bool


def render_run_log(state: TaskRunState, limit: int = _RUN_LOG_LIMIT) -> str:
    """Plain-text history of the run, newest entries last."""

    lines: List[str] = [f"Run {state.run_id} ({state.status.value})"]
    for item in state.tasks:
        lines.append(f"[{item.status.value}] {item.id}: {item.title}")
        for entry in item.logs:
            lines.append(f"  {entry.at.isoformat()} {entry.type.value}: {entry.message}")
    text = "\n".join(lines)
    return text if len(text) <= limit else text[-limit:]


def is_allowed(path: str, allow_list: List[str]) -> bool:
    """True when ``path`` is listed, or lies under a listed directory."""

    for entry in allow_list:
        cleaned = entry.strip().replace("\\", "/")
        if cleaned.startswith("./"):
            cleaned = cleaned[2:]
        if not cleaned:
            continue
        if path == cleaned.rstrip("/"):
            return True
        if cleaned.endswith("/") and path.startswith(cleaned):
            return True
    return False


class TaskExecutor:
    """Lock, snapshot, run, verify and then commit or revert one task item."""

    def __init__(
        self,
        store: RunStateStore,
        runner: AgentRunner,
        settings: Settings,
        *,
        analyzer: PythonStaticAnalyzer | None = None,
    ) -> None:
        self.store = store
        self.runner = runner
        self.settings = settings
        self.analyzer = analyzer or runner.analyzer

    # ---------------------------------------------------------------- execute
    def execute_next(self, run_id: str) -> ExecutionOutcome:
        state = self.store.load(run_id)
        if state is None:
            return ExecutionOutcome("not_found", False, run_id, error=f"Run not found: {run_id}")
        if state.status not in _EXECUTABLE:
            return ExecutionOutcome(
                "rejected",
                False,
                run_id,
                run_status=state.status,
                error=f"run must be approved to execute. current={state.status.value}",
            )

        try:
            token = self.store.acquire(run_id)
        except RunLockedError as error:
            emit_event("run_conflict", run_id=run_id, held_by=error.held_by)
            return ExecutionOutcome(
                "conflict",
                False,
                run_id,
                run_status=state.status,
                error=f"run is locked (heldBy={error.held_by}, acquiredAt={error.acquired_at})",
            )

        try:
            return self._execute_locked(run_id)
        finally:
            if not self.store.release(run_id, token):
                LOGGER.warning("Lock on run %s was not released by %s", run_id, token)

    def _execute_locked(self, run_id: str) -> ExecutionOutcome:
        # Reload under the lock; the record may have moved on since the gate.
        state = self.store.load(run_id)
        if state is None:
            return ExecutionOutcome("not_found", False, run_id, error=f"Run not found: {run_id}")
        if state.status not in _EXECUTABLE:
            return ExecutionOutcome(
                "rejected",
                False,
                run_id,
                run_status=state.status,
                error=f"run must be approved to execute. current={state.status.value}",
            )

        stalled = [entry.id for entry in state.tasks if entry.status is TaskStatus.IN_PROGRESS]
        if stalled:
            return ExecutionOutcome(
                "rejected",
                False,
                run_id,
                stalled[0],
                TaskStatus.IN_PROGRESS,
                state.status,
                error=f"task {stalled[0]} is still IN_PROGRESS; recover the run first",
            )

        item = state.next_pending()
        if item is None:
            run_status = state.refresh_status()
            self.store.save(state)
            emit_event("run_no_pending", run_id=run_id, run_status=run_status)
            return ExecutionOutcome("no_pending", True, run_id, run_status=run_status)

        item.status = TaskStatus.IN_PROGRESS
        item.started_at = utc_now()
        item.completed_at = None
        item.attempts += 1
        item.log(LogLevel.INFO, f"Attempt {item.attempts} started")
        state.refresh_status()
        self.store.save(state)
        emit_event("task_started", run_id=run_id, task_id=item.id, attempt=item.attempts)

        root = Path(state.project_root)
        outcome = self._run_item(state, item, root)

        outcome.run_status = state.refresh_status()
        self.store.save(state)
        emit_event(
            "task_finished",
            run_id=run_id,
            task_id=item.id,
            status=item.status,
            run_status=outcome.run_status,
            reverted=item.reverted,
        )
        return outcome

    def _run_item(self, state: TaskRunState, item: TaskItem, root: Path) -> ExecutionOutcome:
        try:
            snapshot = capture_snapshot(root, item.files, workspace=self.settings.store.workspace)
            before = self.analyzer.fingerprint(self.analyzer.exported_outline(root, item.files))
        except (OSError, GitError) as error:
            return self._fail(state, item, f"Snapshot failed: {error}")

        prompt = render_execution_prompt(render_task_block(item), state.task_path)
        try:
            result = self.runner.run(
                state.role,
                prompt,
                root,
                "execute",
                run_log=lambda: render_run_log(state),
            )
        except LoopExhaustedError as error:
            return self._fail(state, item, f"{error} (rounds used: {error.rounds_used})")
        except LLMClientError as error:
            return self._fail(state, item, f"{type(error).__name__}: {error}")
        except Exception as error:  # noqa: BLE001 - any agent crash fails the item
            LOGGER.exception("Agent run for task %s crashed", item.id)
            return self._fail(state, item, f"{type(error).__name__}: {error}")

        try:
            verification = self._verify(item, root, snapshot, before)
        except (OSError, GitError) as error:
            return self._fail(state, item, f"Verification could not run: {error}")
        if not verification.ok:
            return self._revert(state, item, snapshot, verification)
        return self._commit(state, item, result, verification)

    # ----------------------------------------------------------- transitions
    def _fail(self, state: TaskRunState, item: TaskItem, message: str) -> ExecutionOutcome:
        LOGGER.warning("Task %s failed: %s", item.id, message)
        item.status = TaskStatus.FAILED
        item.completed_at = utc_now()
        item.last_error = message[:LOG_MESSAGE_LIMIT]
        item.log(LogLevel.ERROR, message)
        return ExecutionOutcome("failed", False, state.run_id, item.id, item.status, error=item.last_error)

    def _verify(
        self,
        item: TaskItem,
        root: Path,
        snapshot: SnapshotStrategy,
        fingerprint_before: str,
    ) -> _Verification:
        notes: List[str] = []
        changed = snapshot.changed_files()

        disallowed = [path for path in changed if not is_allowed(path, item.files)]
        if disallowed:
            notes.append(f"Disallowed file changes detected: {', '.join(disallowed)}")

        type_errors: List[TypeErrorItem] = []
        try:
            report = self.analyzer.diagnostics(root)
        except StaticAnalysisError as error:
            notes.append(f"Type check could not run: {error}")
        else:
            type_errors = [
                TypeErrorItem(
                    file=diagnostic.file,
                    line=diagnostic.line,
                    column=diagnostic.column,
                    code=diagnostic.code,
                    message=diagnostic.message,
                )
                for diagnostic in report.diagnostics
            ]
            if type_errors:
                notes.append(f"Type errors: {len(type_errors)}")
            elif report.skipped:
                LOGGER.info("Type check skipped for task %s: %s", item.id, report.reason)

        marker = self.settings.execution.api_change_marker
        if marker not in item.description and marker not in item.title:
            after = self.analyzer.fingerprint(self.analyzer.exported_outline(root, item.files))
            if after != fingerprint_before:
                notes.append(API_CHANGE_NOTE)

        return _Verification(changed=changed, notes=notes, type_errors=type_errors, ok=not notes)

    def _revert(
        self,
        state: TaskRunState,
        item: TaskItem,
        snapshot: SnapshotStrategy,
        verification: _Verification,
    ) -> ExecutionOutcome:
        notes = list(verification.notes)
        try:
            revert_notes = snapshot.revert(verification.changed)
        except (OSError, GitError) as error:
            revert_notes = [f"Revert failed: {error}"]
        for note in revert_notes:
            LOGGER.error("Revert of task %s incomplete: %s", item.id, note)
        notes.extend(revert_notes)

        item.status = TaskStatus.FAILED
        item.completed_at = utc_now()
        item.changed_files = list(verification.changed)
        item.reverted = True
        item.verification = TaskVerification(ok=False, notes=notes, type_errors=verification.type_errors)
        item.last_error = VERIFICATION_FAILED
        item.log(LogLevel.ERROR, " | ".join(notes))
        emit_event("task_reverted", run_id=state.run_id, task_id=item.id, files=verification.changed)
        return ExecutionOutcome(
            "failed",
            False,
            state.run_id,
            item.id,
            item.status,
            error=VERIFICATION_FAILED,
            notes=notes,
        )

    def _commit(
        self,
        state: TaskRunState,
        item: TaskItem,
        result: LoopResult,
        verification: _Verification,
    ) -> ExecutionOutcome:
        notes = list(SUCCESS_NOTES)
        item.status = TaskStatus.DONE
        item.completed_at = utc_now()
        item.changed_files = list(verification.changed)
        item.reverted = False
        item.last_error = None
        item.verification = TaskVerification(ok=True, notes=notes)
        item.log(LogLevel.INFO, result.output or "(no output)")
        LOGGER.info(
            "Task %s done in %d rounds; changed %s (cost %.4f USD)",
            item.id,
            result.rounds_used,
            ", ".join(verification.changed) or "nothing",
            result.cost.usd,
        )
        self._update_plan_document(state.run_id, item.id, result.output)
        return ExecutionOutcome("executed", True, state.run_id, item.id, item.status, notes=notes)

    def _update_plan_document(self, run_id: str, task_id: str, output: str) -> None:
        try:
            document = self.store.load_plan_document(run_id)
            if document is None:
                return
            self.store.save_plan_document(run_id, mark_task_done(document, task_id, output))
        except (OSError, StoreError) as error:
            LOGGER.warning("Could not update plan document for run %s: %s", run_id, error)

    # ----------------------------------------------------------- maintenance
    def skip(self, run_id: str, task_id: str) -> ExecutionOutcome:
        """Mark a PENDING item SKIPPED so execution moves past it."""

        state = self.store.load(run_id)
        if state is None:
            return ExecutionOutcome("not_found", False, run_id, error=f"Run not found: {run_id}")
        try:
            token = self.store.acquire(run_id)
        except RunLockedError as error:
            return ExecutionOutcome(
                "conflict",
                False,
                run_id,
                task_id,
                error=f"run is locked (heldBy={error.held_by}, acquiredAt={error.acquired_at})",
            )
        try:
            state = self.store.load(run_id)
            if state is None:
                return ExecutionOutcome("not_found", False, run_id, error=f"Run not found: {run_id}")
            item = state.task(task_id)
            if item is None:
                return ExecutionOutcome("not_found", False, run_id, task_id, error=f"Task not found: {task_id}")
            if item.status is not TaskStatus.PENDING:
                return ExecutionOutcome(
                    "rejected",
                    False,
                    run_id,
                    task_id,
                    item.status,
                    state.status,
                    error=f"only PENDING tasks can be skipped. current={item.status.value}",
                )
            item.status = TaskStatus.SKIPPED
            item.completed_at = utc_now()
            item.log(LogLevel.WARN, "Skipped by request")
            run_status = state.refresh_status()
            self.store.save(state)
            emit_event("task_skipped", run_id=run_id, task_id=task_id, run_status=run_status)
            return ExecutionOutcome("skipped", True, run_id, task_id, item.status, run_status)
        finally:
            self.store.release(run_id, token)

    def recover_stalled(self, run_id: str) -> ExecutionOutcome:
        """Return items left IN_PROGRESS by an interrupted call to PENDING.

        Only possible once the lock can be taken, so a live execution is
        never disturbed.
        """

        if self.store.load(run_id) is None:
            return ExecutionOutcome("not_found", False, run_id, error=f"Run not found: {run_id}")
        try:
            token = self.store.acquire(run_id)
        except RunLockedError as error:
            return ExecutionOutcome(
                "conflict",
                False,
                run_id,
                error=f"run is locked (heldBy={error.held_by}, acquiredAt={error.acquired_at})",
            )
        try:
            state = self.store.load(run_id)
            if state is None:
                return ExecutionOutcome("not_found", False, run_id, error=f"Run not found: {run_id}")
            recovered: List[str] = []
            for item in state.tasks:
                if item.status is TaskStatus.IN_PROGRESS:
                    item.status = TaskStatus.PENDING
                    item.log(LogLevel.WARN, "Recovered from an interrupted execution")
                    recovered.append(item.id)
            run_status = state.refresh_status()
            self.store.save(state)
            if recovered:
                LOGGER.warning("Recovered stalled tasks on run %s: %s", run_id, ", ".join(recovered))
                emit_event("tasks_recovered", run_id=run_id, task_ids=recovered)
            return ExecutionOutcome("recovered", True, run_id, run_status=run_status, notes=recovered)
        finally:
            self.store.release(run_id, token)


__all__ = [
    "API_CHANGE_NOTE",
    "ExecutionOutcome",
    "SUCCESS_NOTES",
    "TaskExecutor",
    "VERIFICATION_FAILED",
    "is_allowed",
    "render_run_log",
]
