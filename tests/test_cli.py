from __future__ import annotations

import json
from pathlib import Path
from typing import List

import pytest
from typer.testing import CliRunner

from taskforge.cli import EXIT_CONFLICT, EXIT_FAILURE, app
from taskforge.runs import RunStateStore

TASKS = "## Task\nId: 1\nTitle: Tidy calc\nFiles:\n- src/app/calc.py\n\nDescription:\nTidy up add().\n"


@pytest.fixture()
def cli() -> CliRunner:
    return CliRunner()


def _invoke(cli: CliRunner, root: Path, args: List[str]):
    return cli.invoke(app, ["--root", str(root), *args])


def _planned_run(cli: CliRunner, root: Path) -> str:
    (root / "tasks.md").write_text(TASKS, encoding="utf-8")
    result = _invoke(cli, root, ["plan", "tasks.md", "--no-breakdown"])
    assert result.exit_code == 0, result.output
    return RunStateStore(root / ".taskforge").list_runs()[0].run_id


def test_plan_creates_a_draft_run(cli: CliRunner, plain_repo: Path) -> None:
    (plain_repo / "tasks.md").write_text(TASKS, encoding="utf-8")

    result = _invoke(cli, plain_repo, ["plan", "tasks.md", "--no-breakdown"])

    assert result.exit_code == 0, result.output
    assert "[draft] role=coder" in result.output
    assert "- [PENDING] 1: Tidy calc" in result.output
    assert "Plan written to" in result.output
    assert len(list((plain_repo / ".taskforge" / "plans").glob("*.tasks.md"))) == 1


def test_plan_with_missing_document_fails(cli: CliRunner, plain_repo: Path) -> None:
    result = _invoke(cli, plain_repo, ["plan", "missing.md", "--no-breakdown"])

    assert result.exit_code == EXIT_FAILURE
    assert "Cannot read task document" in result.output


def test_approve_status_skip_and_list(cli: CliRunner, plain_repo: Path) -> None:
    run_id = _planned_run(cli, plain_repo)

    approved = _invoke(cli, plain_repo, ["approve", run_id])
    again = _invoke(cli, plain_repo, ["approve", run_id])
    as_json = _invoke(cli, plain_repo, ["status", run_id, "--json"])
    skipped = _invoke(cli, plain_repo, ["skip", run_id, "1"])
    listing = _invoke(cli, plain_repo, ["runs"])

    assert approved.exit_code == 0
    assert f"Run {run_id} is approved." in approved.output
    assert again.exit_code == EXIT_FAILURE
    assert "run must be a draft to approve. current=approved" in again.output
    assert json.loads(as_json.output)["status"] == "approved"
    assert skipped.exit_code == 0
    assert "skipped: 1: SKIPPED (run done)" in skipped.output
    assert f"{run_id} [done] 1/1 tasks.md" in listing.output


def test_execute_draft_run_is_rejected(cli: CliRunner, plain_repo: Path) -> None:
    run_id = _planned_run(cli, plain_repo)

    result = _invoke(cli, plain_repo, ["execute", run_id])

    assert result.exit_code == EXIT_FAILURE
    assert "run must be approved to execute. current=draft" in result.output


def test_locked_run_exits_with_conflict_code(cli: CliRunner, plain_repo: Path) -> None:
    run_id = _planned_run(cli, plain_repo)
    token = RunStateStore(plain_repo / ".taskforge").acquire(run_id)

    result = _invoke(cli, plain_repo, ["approve", run_id])

    assert result.exit_code == EXIT_CONFLICT
    assert f"heldBy={token}" in result.output


def test_unknown_run(cli: CliRunner, plain_repo: Path) -> None:
    status = _invoke(cli, plain_repo, ["status", "nope"])
    execute = _invoke(cli, plain_repo, ["execute", "nope"])

    assert status.exit_code == EXIT_FAILURE
    assert "Run not found: nope" in status.output
    assert execute.exit_code == EXIT_FAILURE
    assert "not_found" in execute.output


def test_empty_listing(cli: CliRunner, plain_repo: Path) -> None:
    result = _invoke(cli, plain_repo, ["runs"])

    assert result.exit_code == 0
    assert "No runs found." in result.output


def test_malformed_config_is_reported(cli: CliRunner, plain_repo: Path) -> None:
    (plain_repo / "config.yaml").write_text("models: [unclosed\n", encoding="utf-8")

    result = _invoke(cli, plain_repo, ["runs"])

    assert result.exit_code == EXIT_FAILURE
    assert "Failed to load config" in result.output
