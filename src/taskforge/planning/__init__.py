"""Task document compilation and plan rendering."""

from .compiler import (
    BreakdownModel,
    PlanCompiler,
    mark_task_done,
    render_plan_document,
    render_task_block,
)

__all__ = [
    "BreakdownModel",
    "PlanCompiler",
    "mark_task_done",
    "render_plan_document",
    "render_task_block",
]
