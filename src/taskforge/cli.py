"""Command line interface for planning and executing task runs."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import NoReturn, Optional

import typer

from .agent.loop import LoopExhaustedError
from .config import DEFAULT_CONFIG_NAME, ConfigError, Settings, load_config
from .models.llm_client import LLMClientError
from .runs.executor import ExecutionOutcome
from .runs.schema import TaskRunState
from .runs.store import RunLockedError, StoreError
from .service import ServiceError, TaskService

APP_HELP = "Plan a task document into small items and execute them one at a time."
EXIT_FAILURE = 1
EXIT_CONFLICT = 2

app = typer.Typer(help=APP_HELP, no_args_is_help=True)


class _State:
    root: Path = Path(".")
    config: Optional[Path] = None


_STATE = _State()


@app.callback()
def main(
    root: Path = typer.Option(
        Path("."),
        "--root",
        "-r",
        help="Project root the runs operate on.",
    ),
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help=f"Configuration file (defaults to <root>/{DEFAULT_CONFIG_NAME} when present).",
    ),
    log_level: str = typer.Option(
        "WARNING",
        "--log-level",
        help="Logging level (DEBUG, INFO, WARNING, ERROR).",
    ),
) -> None:
    """Configure logging and remember the project location."""
    level = getattr(logging, log_level.upper(), None)
    if not isinstance(level, int):
        typer.echo(f"Unknown log level: {log_level}")
        raise typer.Exit(code=EXIT_FAILURE)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    _STATE.root = root
    _STATE.config = config


def _service() -> TaskService:
    config_path = _STATE.config or (_STATE.root / DEFAULT_CONFIG_NAME)
    try:
        settings = Settings.from_mapping(load_config(config_path))
    except ConfigError as error:
        typer.echo(f"Failed to load config: {error}")
        raise typer.Exit(code=EXIT_FAILURE) from error
    return TaskService(_STATE.root, settings)


def _print_run(state: TaskRunState) -> None:
    typer.echo(f"Run {state.run_id} [{state.status.value}] role={state.role}")
    typer.echo(f"Task document: {state.task_path}")
    for item in state.tasks:
        typer.echo(f"- [{item.status.value}] {item.id}: {item.title}")
        if item.files:
            typer.echo(f"    files: {', '.join(item.files)}")
        if item.last_error:
            typer.echo(f"    error: {item.last_error}")
        if item.verification is not None and item.verification.notes:
            for note in item.verification.notes:
                typer.echo(f"    ! {note}")


def _print_outcome(outcome: ExecutionOutcome) -> None:
    label = f"{outcome.task_id}: " if outcome.task_id else ""
    status = outcome.status.value if outcome.status else "-"
    run_status = outcome.run_status.value if outcome.run_status else "-"
    typer.echo(f"{outcome.outcome}: {label}{status} (run {run_status})")
    if outcome.error:
        typer.echo(f"  error: {outcome.error}")
    for note in outcome.notes:
        typer.echo(f"  - {note}")


def _exit_for(outcome: ExecutionOutcome) -> None:
    if outcome.outcome == "conflict":
        raise typer.Exit(code=EXIT_CONFLICT)
    if not outcome.ok:
        raise typer.Exit(code=EXIT_FAILURE)


def _fail(message: str, code: int = EXIT_FAILURE) -> NoReturn:
    typer.echo(message)
    raise typer.Exit(code=code)


@app.command()
def plan(
    task_path: Path = typer.Argument(..., help="Markdown task document, relative to the root."),
    role: str = typer.Option("coder", "--role", help="Role whose policy executes the items."),
    breakdown: bool = typer.Option(
        True,
        "--breakdown/--no-breakdown",
        help="Ask the planning model to split the document before compiling it.",
    ),
) -> None:
    """Compile a task document into a draft run."""
    service = _service()
    try:
        state = service.create_plan(task_path, role=role, breakdown=breakdown)
    except (ServiceError, StoreError, ConfigError) as error:
        _fail(str(error))
    _print_run(state)
    typer.echo(f"Plan written to {service.store.plan_path(state.run_id)}")


@app.command()
def approve(run_id: str = typer.Argument(..., help="Run to approve.")) -> None:
    """Approve a draft run for execution."""
    try:
        state = _service().approve(run_id)
    except RunLockedError as error:
        _fail(f"run is locked (heldBy={error.held_by}, acquiredAt={error.acquired_at})", EXIT_CONFLICT)
    except (ServiceError, StoreError) as error:
        _fail(str(error))
    typer.echo(f"Run {state.run_id} is {state.status.value}.")


@app.command()
def execute(
    run_id: str = typer.Argument(..., help="Run to advance."),
    all_items: bool = typer.Option(False, "--all", help="Keep executing until an item does not succeed."),
) -> None:
    """Execute the next pending item of a run."""
    service = _service()
    try:
        outcomes = service.execute_all(run_id) if all_items else [service.execute_next(run_id)]
    except StoreError as error:
        _fail(str(error))
    for outcome in outcomes:
        _print_outcome(outcome)
    _exit_for(outcomes[-1])


@app.command()
def status(
    run_id: str = typer.Argument(..., help="Run to show."),
    as_json: bool = typer.Option(False, "--json", help="Print the stored record as JSON."),
) -> None:
    """Show a run and its items."""
    try:
        state = _service().status(run_id)
    except (ServiceError, StoreError) as error:
        _fail(str(error))
    if as_json:
        typer.echo(state.to_document())
        return
    _print_run(state)


@app.command()
def skip(
    run_id: str = typer.Argument(..., help="Run containing the item."),
    task_id: str = typer.Argument(..., help="Pending item to skip."),
) -> None:
    """Mark a pending item as skipped."""
    try:
        outcome = _service().skip(run_id, task_id)
    except StoreError as error:
        _fail(str(error))
    _print_outcome(outcome)
    _exit_for(outcome)


@app.command()
def recover(run_id: str = typer.Argument(..., help="Run to recover.")) -> None:
    """Reset items left IN_PROGRESS by an interrupted execution."""
    try:
        outcome = _service().recover_stalled(run_id)
    except StoreError as error:
        _fail(str(error))
    _print_outcome(outcome)
    _exit_for(outcome)


@app.command()
def ask(
    message: str = typer.Argument(..., help="Question or instruction for the agent."),
    role: str = typer.Option("planner", "--role", help="Role whose tools and prompt are used."),
    mode: str = typer.Option("plan", "--mode", help="plan (read-only) or execute."),
) -> None:
    """Run the agent once against the project, outside any run."""
    if mode not in ("plan", "execute"):
        _fail(f"Unknown mode: {mode}")
    try:
        result = _service().ask(message, role=role, mode=mode)  # type: ignore[arg-type]
    except (LLMClientError, LoopExhaustedError, ConfigError) as error:
        _fail(f"Agent run failed: {error}")
    typer.echo(result.output)
    typer.echo(
        json.dumps(
            {"roundsUsed": result.rounds_used, "usage": result.usage.to_dict(), "cost": result.cost.to_dict()},
        ),
        err=True,
    )


@app.command()
def runs() -> None:
    """List stored runs."""
    found = _service().list_runs()
    if not found:
        typer.echo("No runs found.")
        return
    for state in found:
        done = sum(1 for item in state.tasks if item.status.value in ("DONE", "SKIPPED"))
        typer.echo(
            f"{state.run_id} [{state.status.value}] {done}/{len(state.tasks)} "
            f"{state.task_path} ({state.created_at.isoformat()})"
        )


if __name__ == "__main__":
    app()
