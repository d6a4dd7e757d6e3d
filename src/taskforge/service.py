"""Façade wiring the planner, store, runner and executor for one project."""

from __future__ import annotations

import logging
import secrets
import time
from datetime import timedelta
from pathlib import Path
from typing import Callable, List

from .agent.loop import LoopExhaustedError, LoopResult
from .agent.runner import AgentRunner, ClientFactory
from .config import RunMode, Settings
from .models.llm_client import LLMClientError
from .planning.compiler import PlanCompiler, render_plan_document
from .prompts import BREAKDOWN_SYSTEM_PROMPT
from .runs.executor import ExecutionOutcome, TaskExecutor
from .runs.schema import RunStatus, TaskRunState, utc_now
from .runs.store import RunStateStore
from .telemetry import emit_event
from .tools.static_analysis import PythonStaticAnalyzer

LOGGER = logging.getLogger(__name__)


class ServiceError(RuntimeError):
    """Raised for requests that cannot be served (unknown run, bad state)."""


class TaskService:
    """High-level operations used by the CLI.

    The run store lives under ``<project_root>/<store.workspace>`` so runs
    travel with the repository they were planned against.
    """

    def __init__(
        self,
        project_root: Path | str,
        settings: Settings,
        *,
        client_factory: ClientFactory | None = None,
        analyzer: PythonStaticAnalyzer | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.project_root = Path(project_root).resolve()
        self.settings = settings
        self.runner = AgentRunner(settings, client_factory=client_factory, analyzer=analyzer, sleep=sleep)
        self.store = RunStateStore(
            self.project_root / settings.store.workspace,
            lock_ttl=timedelta(minutes=settings.store.lock_ttl_minutes),
            save_attempts=settings.store.save_attempts,
        )
        self.executor = TaskExecutor(self.store, self.runner, settings)

    # ---------------------------------------------------------------- planning
    def _breakdown_model(self, text: str) -> str:
        result = self.runner.one_shot("planner", BREAKDOWN_SYSTEM_PROMPT, text, self.project_root)
        return result.output

    def create_plan(self, task_path: Path | str, *, role: str = "coder", breakdown: bool = True) -> TaskRunState:
        """Compile the task document at ``task_path`` into a new draft run."""

        self.settings.role(role)
        path = Path(task_path)
        source = path if path.is_absolute() else self.project_root / path
        try:
            text = source.read_text(encoding="utf-8")
        except OSError as error:
            raise ServiceError(f"Cannot read task document {source}: {error}") from error
        if not text.strip():
            raise ServiceError(f"Task document {source} is empty")

        compiler = PlanCompiler(self._breakdown_model if breakdown else None)
        try:
            items = compiler.breakdown(text)
        except (LLMClientError, LoopExhaustedError) as error:
            LOGGER.warning("Breakdown failed (%s); compiling the task document as written", error)
            items = compiler.compile(text)

        state = TaskRunState(
            run_id=secrets.token_hex(8),
            task_path=str(task_path),
            project_root=str(self.project_root),
            role=role,
            tasks=items,
        )
        self.store.save(state)
        self.store.save_plan_document(state.run_id, render_plan_document(state, text))
        LOGGER.info("Created run %s with %d task(s)", state.run_id, len(items))
        emit_event("run_created", run_id=state.run_id, tasks=len(items), role=role)
        return state

    def approve(self, run_id: str) -> TaskRunState:
        token = self.store.acquire(run_id)
        try:
            state = self._require(run_id)
            if state.status is not RunStatus.DRAFT:
                raise ServiceError(f"run must be a draft to approve. current={state.status.value}")
            state.status = RunStatus.APPROVED
            state.approved_at = utc_now()
            state.refresh_status()
            self.store.save(state)
        finally:
            self.store.release(run_id, token)
        emit_event("run_approved", run_id=run_id, run_status=state.status)
        return state

    # --------------------------------------------------------------- execution
    def execute_next(self, run_id: str) -> ExecutionOutcome:
        return self.executor.execute_next(run_id)

    def execute_all(self, run_id: str) -> List[ExecutionOutcome]:
        """Advance the run one item at a time until an item does not succeed."""

        outcomes: List[ExecutionOutcome] = []
        while True:
            outcome = self.executor.execute_next(run_id)
            outcomes.append(outcome)
            if outcome.outcome != "executed":
                return outcomes

    def skip(self, run_id: str, task_id: str) -> ExecutionOutcome:
        return self.executor.skip(run_id, task_id)

    def recover_stalled(self, run_id: str) -> ExecutionOutcome:
        return self.executor.recover_stalled(run_id)

    # ---------------------------------------------------------------- queries
    def status(self, run_id: str) -> TaskRunState:
        return self._require(run_id)

    def list_runs(self) -> List[TaskRunState]:
        return self.store.list_runs()

    def plan_document(self, run_id: str) -> str | None:
        return self.store.load_plan_document(run_id)

    def ask(self, message: str, *, role: str = "planner", mode: RunMode = "plan") -> LoopResult:
        """Run the agent once outside any task run."""

        return self.runner.run(role, message, self.project_root, mode)

    def _require(self, run_id: str) -> TaskRunState:
        state = self.store.load(run_id)
        if state is None:
            raise ServiceError(f"Run not found: {run_id}")
        return state


__all__ = ["ServiceError", "TaskService"]
