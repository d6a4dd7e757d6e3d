"""Prompt templates shared by the planner and the executor."""

from __future__ import annotations

BREAKDOWN_SYSTEM_PROMPT = """
You split a software task description into small, independently verifiable
tasks for a Python project. Reply with markdown only, using one block per task:

## Task
Id: <short id>
Title: <one line>
Status: PENDING
Files:
- <repository-relative path the task may touch>

Description:
<what to change and how to verify it>

List every file a task needs under Files:, including new files and tests.
Keep tasks in execution order. Do not add any text outside the task blocks.
""".strip()


def render_execution_prompt(task_block: str, task_path: str) -> str:
    """Build the user message for executing exactly one task item."""

    return (
        "YOU ARE EXECUTING EXACTLY ONE TASK.\n"
        "Do not create new tasks. Do not change scope.\n"
        "\n"
        "TASK BLOCK (SOURCE OF TRUTH):\n"
        f"{task_block}\n"
        "\n"
        "CONTEXT:\n"
        f"TASK FILE PATH: {task_path}\n"
        "\n"
        "Instructions:\n"
        "- Implement ONLY what is described in TASK BLOCK.\n"
        "- Touch ONLY files listed under Files:. Changes to any other file are reverted.\n"
        "- Keep the public names exported by those files unchanged unless the task says otherwise.\n"
        "- Keep changes minimal and focused.\n"
        "- At the end, output a short summary of what changed and which files."
    )


__all__ = ["BREAKDOWN_SYSTEM_PROMPT", "render_execution_prompt"]
