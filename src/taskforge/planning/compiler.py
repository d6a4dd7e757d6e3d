"""Compile a task document into ordered task items.

The accepted document is a sequence of blocks of the form::

    ## Task
    Id: 2
    Title: Add the parser
    Status: PENDING
    Files:
    - src/app/parser.py
    - tests/test_parser.py

    Description:
    Free text until the next block.

Anything before the first ``## Task`` heading is ignored. A document with no
usable block compiles to a single item carrying the whole text.
"""

from __future__ import annotations

import logging
import re
import secrets
from datetime import datetime
from typing import Callable, List, Optional

from ..runs.schema import TaskItem, TaskRunState, TaskStatus, utc_now

LOGGER = logging.getLogger(__name__)

BreakdownModel = Callable[[str], str]

_BLOCK_SPLIT = re.compile(r"\n(?=##[ \t]+Task\b)")
_HEADING = re.compile(r"^##[ \t]+Task\b")
_FIELD = {
    "id": re.compile(r"^[ \t]*Id:[ \t]*(.*)$", re.MULTILINE),
    "title": re.compile(r"^[ \t]*Title:[ \t]*(.*)$", re.MULTILINE),
    "status": re.compile(r"^[ \t]*Status:[ \t]*(.*)$", re.MULTILINE),
}
_FILES_HEADER = re.compile(r"^[ \t]*Files:[ \t]*$", re.MULTILINE | re.IGNORECASE)
_DESCRIPTION_HEADER = re.compile(r"^[ \t]*Description:[ \t]*$", re.MULTILINE | re.IGNORECASE)
_PLAN_LOG_LIMIT = 2000


def _field(block: str, name: str) -> str:
    match = _FIELD[name].search(block)
    return match.group(1).strip() if match else ""


def _files(block: str) -> List[str]:
    header = _FILES_HEADER.search(block)
    if header is None:
        return []
    section = block[header.end():]
    description = _DESCRIPTION_HEADER.search(section)
    if description is not None:
        section = section[: description.start()]
    files: List[str] = []
    for raw in section.splitlines():
        line = raw.strip()
        if not line.startswith("- "):
            continue
        entry = line[2:].strip().strip("`").replace("\\", "/")
        if entry.startswith("./"):
            entry = entry[2:]
        if entry and entry not in files:
            files.append(entry)
    return files


def _description(block: str) -> str:
    header = _DESCRIPTION_HEADER.search(block)
    if header is None:
        return ""
    return block[header.end():].strip()


def _status(raw: str) -> TaskStatus:
    value = raw.strip().upper().replace("-", "_").replace(" ", "_")
    try:
        status = TaskStatus(value)
    except ValueError:
        return TaskStatus.PENDING
    # Nothing can be mid-execution at compile time.
    return TaskStatus.PENDING if status is TaskStatus.IN_PROGRESS else status


class PlanCompiler:
    """Turn task documents into :class:`TaskItem` lists."""

    def __init__(self, breakdown_model: Optional[BreakdownModel] = None) -> None:
        self._breakdown_model = breakdown_model

    def compile(self, text: str) -> List[TaskItem]:
        """Parse ``## Task`` blocks; never returns an empty list."""

        items: List[TaskItem] = []
        seen: set[str] = set()
        for raw_block in _BLOCK_SPLIT.split(text.replace("\r\n", "\n")):
            block = raw_block.strip()
            if not _HEADING.match(block):
                continue
            task_id = _field(block, "id")
            title = _field(block, "title")
            if not task_id and not title:
                LOGGER.debug("Discarding task block without id or title")
                continue
            if not task_id or task_id in seen:
                task_id = secrets.token_hex(3)
            seen.add(task_id)
            items.append(
                TaskItem(
                    id=task_id,
                    title=title or "Untitled task",
                    status=_status(_field(block, "status")),
                    files=_files(block),
                    description=_description(block),
                )
            )
        if not items:
            items.append(TaskItem(id="1", title="Task", description=text.strip()))
        return items

    def breakdown(self, text: str) -> List[TaskItem]:
        """Ask the model to split ``text`` into task blocks, then compile.

        Empty model output falls back to compiling the raw input.
        """

        if self._breakdown_model is None:
            return self.compile(text)
        output = self._breakdown_model(text) or ""
        if not output.strip():
            LOGGER.warning("Breakdown returned no text; compiling the task document as written")
            return self.compile(text)
        return self.compile(output)


def render_task_block(item: TaskItem) -> str:
    files = "\n".join(f"- {path}" for path in item.files)
    return (
        "## Task\n"
        f"Id: {item.id}\n"
        f"Title: {item.title}\n"
        f"Status: {item.status.value}\n"
        "Files:\n"
        f"{files}\n"
        "\n"
        "Description:\n"
        f"{item.description}\n"
    )


def render_plan_document(state: TaskRunState, source_text: str) -> str:
    """Human-readable plan stored next to the run record."""

    checklist = "\n".join(
        f"- [{'x' if item.status is TaskStatus.DONE else ' '}] {item.id}: {item.title}"
        for item in state.tasks
    )
    blocks = "\n".join(render_task_block(item) for item in state.tasks)
    return (
        "# Task Plan\n"
        f"RunId: {state.run_id}\n"
        f"Role: {state.role}\n"
        f"ProjectRoot: {state.project_root}\n"
        f"TaskPath: {state.task_path}\n"
        f"CreatedAt: {state.created_at.isoformat()}\n"
        "\n"
        f"## Tasks ({len(state.tasks)})\n"
        f"{checklist}\n"
        "\n"
        "---\n"
        "\n"
        f"{blocks}\n"
        "---\n"
        "\n"
        "## Source Task File\n"
        f"{source_text.strip()}\n"
    )


def mark_task_done(document: str, task_id: str, log: str, *, now: datetime | None = None) -> str:
    """Mark ``task_id`` done in a plan document and append its log."""

    lines = document.split("\n")
    in_task = False
    for index, line in enumerate(lines):
        if line.strip() == f"- [ ] {task_id}:" or line.startswith(f"- [ ] {task_id}: "):
            lines[index] = "- [x]" + line[len("- [ ]"):]
            continue
        if line.strip() == "## Task" and index + 1 < len(lines) and lines[index + 1].strip() == f"Id: {task_id}":
            in_task = True
            continue
        if in_task and line.startswith("Status:"):
            lines[index] = "Status: DONE"
            in_task = False
    stamp = (now or utc_now()).isoformat()
    safe_log = (log or "")[:_PLAN_LOG_LIMIT]
    return "\n".join(lines).rstrip("\n") + f"\n\n---\nLog {task_id} ({stamp}):\n\n{safe_log}\n"


__all__ = [
    "BreakdownModel",
    "PlanCompiler",
    "mark_task_done",
    "render_plan_document",
    "render_task_block",
]
