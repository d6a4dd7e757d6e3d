"""Tool-calling agent loop and the role-aware runner around it."""

from .loop import LoopExhaustedError, LoopResult, ToolCallingLoop, ToolUsage
from .runner import AgentRunner

__all__ = ["AgentRunner", "LoopExhaustedError", "LoopResult", "ToolCallingLoop", "ToolUsage"]
