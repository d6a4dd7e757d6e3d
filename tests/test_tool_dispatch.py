from __future__ import annotations

import json
import logging
import os
from pathlib import Path

import pytest

from taskforge.config import READ_ONLY_TOOLS
from taskforge.policy import PolicyConfig
from taskforge.tools import ToolDispatcher
from taskforge.tools.files import NEW_FILE_HASH
from taskforge.tools.schemas import TOOL_SCHEMAS

ALL_TOOLS = frozenset(TOOL_SCHEMAS)


def _dispatcher(root: Path, **overrides) -> ToolDispatcher:
    values = {
        "project_root": root,
        "allowed_paths": ("src/", "tests/", "README.md", "data.json"),
        "read_only_paths": ("README.md",),
        "max_files_changed": 5,
        "max_total_changed_lines": 50,
        "allowed_tools": ALL_TOOLS,
    }
    values.update(overrides)
    return ToolDispatcher(PolicyConfig(**values), blocked_segments=[".taskforge"])


def test_read_file_returns_range_and_hash(plain_repo: Path) -> None:
    dispatcher = _dispatcher(plain_repo)

    result = dispatcher.execute("read_file", {"path": "src/app/calc.py", "fromLine": 6, "toLine": 7})

    assert result["ok"] is True
    assert result["content"] == "def add(left: int, right: int) -> int:\n    return left + right\n"
    assert result["fromLine"] == 6
    assert result["toLine"] == 7
    assert result["totalLines"] == 7
    assert len(result["hash"]) == 64


def test_unknown_and_disallowed_tools_are_denied(plain_repo: Path) -> None:
    dispatcher = _dispatcher(plain_repo, allowed_tools=READ_ONLY_TOOLS)

    unknown = dispatcher.execute("rm_rf", {})
    denied = dispatcher.execute("write_file", {"path": "src/app/new.py", "content": "x = 1\n"})

    assert unknown == {"ok": False, "error": "Unknown tool 'rm_rf'"}
    assert denied["ok"] is False
    assert denied["denied"] is True
    assert not (plain_repo / "src" / "app" / "new.py").exists()
    assert "write_file" not in dispatcher.tool_names
    assert {schema.name for schema in dispatcher.schemas()} <= READ_ONLY_TOOLS


@pytest.mark.parametrize(
    "raw",
    [
        "/etc/passwd",
        "../outside.txt",
        "src/../../outside.txt",
        "src/app/\0calc.py",
        "C:/Windows/win.ini",
        "",
    ],
)
def test_paths_outside_root_are_rejected(plain_repo: Path, raw: str) -> None:
    dispatcher = _dispatcher(plain_repo)

    result = dispatcher.execute("read_file", {"path": raw})

    assert result["ok"] is False
    assert result["error"]


@pytest.mark.parametrize("raw", [".git/config", "src/__pycache__/x.pyc", ".env", ".env.local", ".taskforge/plans/a.json"])
def test_blocked_locations_are_rejected(plain_repo: Path, raw: str) -> None:
    dispatcher = _dispatcher(plain_repo, allowed_paths=("*",))

    result = dispatcher.execute("read_file", {"path": raw})

    assert result["ok"] is False
    assert "blocked" in result["error"]


@pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks unsupported")
def test_symlink_escape_is_rejected(plain_repo: Path, tmp_path: Path) -> None:
    outside = tmp_path / "secret.txt"
    outside.write_text("secret\n", encoding="utf-8")
    link = plain_repo / "src" / "link.txt"
    try:
        link.symlink_to(outside)
    except OSError:
        pytest.skip("cannot create symlinks here")
    dispatcher = _dispatcher(plain_repo)

    result = dispatcher.execute("read_file", {"path": "src/link.txt"})

    assert result["ok"] is False
    assert "escapes" in result["error"]


def test_policy_violations_come_back_as_values(plain_repo: Path) -> None:
    dispatcher = _dispatcher(plain_repo)

    outside = dispatcher.execute("write_file", {"path": "setup.py", "content": "print()\n"})
    read_only = dispatcher.execute("write_file", {"path": "README.md", "content": "changed\n"})

    assert outside["ok"] is False
    assert outside["violations"] == ["setup.py: path not allowed"]
    assert read_only["violations"] == ["README.md: read-only path"]
    assert (plain_repo / "README.md").read_text(encoding="utf-8") == "# Sample\n"


def test_write_then_patch_with_hash_precondition(plain_repo: Path) -> None:
    dispatcher = _dispatcher(plain_repo)

    written = dispatcher.execute("write_file", {"path": "src/app/notes.py", "content": "A = 1\nB = 2\n"})
    patch = "--- a/src/app/notes.py\n+++ b/src/app/notes.py\n@@ -1,2 +1,2 @@\n A = 1\n-B = 2\n+B = 3\n"
    applied = dispatcher.execute(
        "apply_patch",
        {"filePath": "src/app/notes.py", "originalHash": written["hash"], "patch": patch},
    )
    stale = dispatcher.execute(
        "apply_patch",
        {"filePath": "src/app/notes.py", "originalHash": written["hash"], "patch": patch},
    )

    assert written["created"] is True
    assert applied["ok"] is True
    assert applied["changed"] is True
    assert (plain_repo / "src" / "app" / "notes.py").read_text(encoding="utf-8") == "A = 1\nB = 3\n"
    assert stale["ok"] is False
    assert stale["error"] == "Original hash does not match, file has changed on disk."
    assert stale["newHash"] == applied["newHash"]


def test_patch_budget_uses_counted_lines(plain_repo: Path) -> None:
    dispatcher = _dispatcher(plain_repo, max_total_changed_lines=1)
    patch = "@@ -0,0 +1,2 @@\n+x = 1\n+y = 2\n"

    result = dispatcher.execute(
        "apply_patch",
        {"filePath": "src/app/new.py", "originalHash": NEW_FILE_HASH, "patch": patch, "estimatedChangedLines": 0},
    )

    assert result["ok"] is False
    assert result["violations"] == ["estimated 2 changed lines exceeds limit of 1"]
    assert not (plain_repo / "src" / "app" / "new.py").exists()


def test_search_list_and_find(plain_repo: Path) -> None:
    dispatcher = _dispatcher(plain_repo)

    listed = dispatcher.execute("list_files", {"pattern": "src/**/*.py"})
    found = dispatcher.execute("find_files_by_name", {"query": "calc"})
    searched = dispatcher.execute("search_in_files", {"query": "def add"})

    assert "src/app/calc.py" in listed["files"]
    assert found["matches"][0]["path"].endswith("calc.py")
    assert [match["path"] for match in searched["matches"]] == ["src/app/calc.py"]


def test_search_skips_files_outside_allowed_paths(plain_repo: Path) -> None:
    (plain_repo / "config.yaml").write_text("api_key: sk-live-123\n", encoding="utf-8")
    dispatcher = _dispatcher(plain_repo)

    searched = dispatcher.execute("search_in_files", {"query": "api_key"})
    listed = dispatcher.execute("list_files", {})
    found = dispatcher.execute("find_files_by_name", {"query": "config"})

    assert dispatcher.execute("read_file", {"path": "config.yaml"})["ok"] is False
    assert searched["matches"] == []
    assert "config.yaml" not in listed["files"]
    assert "src/app/calc.py" in listed["files"]
    assert found["matches"] == []


@pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks unsupported")
def test_search_does_not_follow_symlinks_out_of_root(plain_repo: Path, tmp_path: Path) -> None:
    outside = tmp_path / "outside.txt"
    outside.write_text("TOPSECRET=hunter2\n", encoding="utf-8")
    try:
        (plain_repo / "src" / "leak.txt").symlink_to(outside)
    except OSError:
        pytest.skip("cannot create symlinks here")
    dispatcher = _dispatcher(plain_repo)

    searched = dispatcher.execute("search_in_files", {"query": "TOPSECRET"})
    listed = dispatcher.execute("list_files", {"pattern": "src/**"})

    assert searched["ok"] is True
    assert searched["matches"] == []
    assert "src/leak.txt" not in listed["files"]


def test_handler_errors_do_not_escape(plain_repo: Path) -> None:
    dispatcher = _dispatcher(plain_repo)

    missing = dispatcher.execute("read_file", {"path": "src/app/missing.py"})
    bad_args = dispatcher.execute("read_file", ["not", "a", "mapping"])  # type: ignore[arg-type]
    no_command = dispatcher.execute("run_tests", {})

    assert missing["ok"] is False
    assert bad_args == {"ok": False, "error": "Tool arguments must be a JSON object"}
    assert no_command == {"ok": False, "error": "No tests command configured"}


def test_read_json_compact_and_run_log(plain_repo: Path) -> None:
    (plain_repo / "data.json").write_text(json.dumps({"name": "x" * 300, "n": 1}), encoding="utf-8")
    policy = PolicyConfig(
        project_root=plain_repo,
        allowed_paths=("data.json",),
        allowed_tools=ALL_TOOLS,
    )
    dispatcher = ToolDispatcher(policy, run_log=lambda: "line one\nline two")

    compact = dispatcher.execute("read_json_compact", {"path": "data.json", "pickKeys": ["name"]})
    log = dispatcher.execute("get_run_log", {"maxChars": 8})

    assert compact["ok"] is True
    assert compact["data"] == {"name": "x" * 200 + "... (truncated, original length 300)"}
    assert log == {"ok": True, "log": "line two", "totalChars": 17}


def test_every_call_emits_telemetry(plain_repo: Path, caplog: pytest.LogCaptureFixture) -> None:
    dispatcher = _dispatcher(plain_repo)

    with caplog.at_level(logging.INFO, logger="taskforge.telemetry"):
        dispatcher.execute("read_file", {"path": "README.md"})
        dispatcher.execute("read_file", {"path": "../x"})

    events = [json.loads(record.getMessage()) for record in caplog.records if record.name == "taskforge.telemetry"]
    assert [event["event"] for event in events] == ["tool_call", "tool_call"]
    assert [event["ok"] for event in events] == [True, False]
