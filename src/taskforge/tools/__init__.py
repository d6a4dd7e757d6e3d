"""Tool integrations exposed to the model through the dispatcher."""

from .dispatch import ToolDenied, ToolDispatcher
from .patch import PatchError, PatchResult, apply_unified_patch
from .process import CommandResult, ProcessLaunchError, ProcessTimeoutError, run_command
from .schemas import TOOL_SCHEMAS, ToolSchema
from .static_analysis import Diagnostic, OutlineEntry, PythonStaticAnalyzer, StaticAnalysisError
from .vcs import GitError, GitRepository, StatusEntry

__all__ = [
    "CommandResult",
    "Diagnostic",
    "GitError",
    "GitRepository",
    "OutlineEntry",
    "PatchError",
    "PatchResult",
    "ProcessLaunchError",
    "ProcessTimeoutError",
    "PythonStaticAnalyzer",
    "StaticAnalysisError",
    "StatusEntry",
    "TOOL_SCHEMAS",
    "ToolDenied",
    "ToolDispatcher",
    "ToolSchema",
    "apply_unified_patch",
    "run_command",
]
