from __future__ import annotations

import re
import textwrap
from datetime import datetime, timezone

from taskforge.planning import (
    PlanCompiler,
    mark_task_done,
    render_plan_document,
    render_task_block,
)
from taskforge.runs.schema import TaskItem, TaskRunState, TaskStatus

DOCUMENT = textwrap.dedent(
    """
    Intro text that is not part of any task.

    ## Task
    Id: 1
    Title: Add subtract
    Status: PENDING
    Files:
    - src/app/calc.py
    - ./tests/test_calc.py

    Description:
    Add a subtract function.
    Cover it with a test.

    ## Task
    Id: 2
    Title: Document it
    Status: DONE
    Files:
    - README.md

    Description:
    Mention subtract in the README.
    """
)


def test_compile_extracts_every_field() -> None:
    items = PlanCompiler().compile(DOCUMENT)

    assert [item.id for item in items] == ["1", "2"]
    first = items[0]
    assert first.title == "Add subtract"
    assert first.status is TaskStatus.PENDING
    assert first.files == ["src/app/calc.py", "tests/test_calc.py"]
    assert first.description == "Add a subtract function.\nCover it with a test."
    assert items[1].status is TaskStatus.DONE


def test_block_without_id_and_title_is_discarded() -> None:
    text = "## Task\nFiles:\n- a.py\n\nDescription:\nnothing\n\n## Task\nId: 7\nTitle: Keep me\n"

    items = PlanCompiler().compile(text)

    assert [(item.id, item.title) for item in items] == [("7", "Keep me")]


def test_partial_blocks_get_generated_values() -> None:
    text = "## Task\nTitle: Only a title\n\n## Task\nId: x1\n"

    items = PlanCompiler().compile(text)

    assert re.fullmatch(r"[0-9a-f]{6}", items[0].id)
    assert items[0].title == "Only a title"
    assert items[1].id == "x1"
    assert items[1].title == "Untitled task"


def test_unknown_and_in_progress_status_become_pending() -> None:
    text = "## Task\nId: 1\nTitle: A\nStatus: WHATEVER\n\n## Task\nId: 2\nTitle: B\nStatus: in progress\n"

    items = PlanCompiler().compile(text)

    assert [item.status for item in items] == [TaskStatus.PENDING, TaskStatus.PENDING]


def test_document_without_blocks_yields_single_fallback() -> None:
    items = PlanCompiler().compile("  Just make the tests pass.\n")

    assert len(items) == 1
    fallback = items[0]
    assert (fallback.id, fallback.title, fallback.status) == ("1", "Task", TaskStatus.PENDING)
    assert fallback.files == []
    assert fallback.description == "Just make the tests pass."


def test_breakdown_compiles_model_output() -> None:
    seen = []

    def model(text: str) -> str:
        seen.append(text)
        return "## Task\nId: a\nTitle: From model\nFiles:\n- src/x.py\n\nDescription:\nDo x.\n"

    items = PlanCompiler(model).breakdown("raw request")

    assert seen == ["raw request"]
    assert [(item.id, item.files) for item in items] == [("a", ["src/x.py"])]


def test_breakdown_falls_back_to_raw_input_on_empty_output() -> None:
    items = PlanCompiler(lambda text: "   ").breakdown(DOCUMENT)

    assert [item.id for item in items] == ["1", "2"]


def test_rendered_block_round_trips_through_compiler() -> None:
    item = TaskItem(id="9", title="Render", files=["src/a.py"], description="Body text.")

    block = render_task_block(item)
    parsed = PlanCompiler().compile(block)[0]

    assert block.startswith("## Task\nId: 9\nTitle: Render\nStatus: PENDING\nFiles:\n- src/a.py\n")
    assert (parsed.id, parsed.title, parsed.files, parsed.description) == ("9", "Render", ["src/a.py"], "Body text.")


def test_plan_document_and_mark_done() -> None:
    state = TaskRunState(
        run_id="abc123",
        task_path="tasks.md",
        project_root="/repo",
        tasks=PlanCompiler().compile(DOCUMENT),
    )

    document = render_plan_document(state, DOCUMENT)
    updated = mark_task_done(
        document,
        "1",
        "x" * 2500,
        now=datetime(2024, 1, 2, tzinfo=timezone.utc),
    )

    assert document.startswith("# Task Plan\nRunId: abc123\n")
    assert "## Tasks (2)\n- [ ] 1: Add subtract\n- [x] 2: Document it\n" in document
    assert "## Source Task File\n" in document
    assert "- [x] 1: Add subtract" in updated
    block = updated.split("## Task\nId: 1\n", 1)[1]
    assert block.split("\n")[1] == "Status: DONE"
    assert "Log 1 (2024-01-02T00:00:00+00:00):\n\n" + "x" * 2000 + "\n" in updated
    assert "x" * 2001 not in updated
