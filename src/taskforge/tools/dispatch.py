"""Tool dispatch table guarded by path containment and the policy engine.

:class:`ToolDispatcher` is the only way model-issued tool calls reach the
filesystem or a subprocess. Every call goes through the same sequence: the
tool must be in the mode's allowed set, path arguments must resolve inside
the project root and outside blocked locations, and the policy engine must
approve the action. Failures of any kind come back as ``{"ok": False, ...}``
payloads so the model can adapt within the same conversation.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path, PurePosixPath
from typing import Any, Callable, Dict, List, Mapping, Sequence

from ..policy.engine import ActionKind, PolicyAction, PolicyConfig, evaluate
from ..telemetry import emit_event
from . import files
from .patch import apply_unified_patch, count_changed_lines
from .process import run_command
from .project import get_project_info, read_json_compact
from .schemas import TOOL_SCHEMAS, ToolSchema
from .static_analysis import PythonStaticAnalyzer

LOGGER = logging.getLogger(__name__)

Handler = Callable[[Mapping[str, Any]], Dict[str, Any]]
RunLogProvider = Callable[[], str]

_DEFAULT_RUN_LOG_CHARS = 4000


class ToolDenied(RuntimeError):
    """Raised inside handlers when a call is refused before touching anything."""

    def __init__(self, message: str, *, violations: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.violations = list(violations)


def _int_arg(args: Mapping[str, Any], key: str) -> int | None:
    value = args.get(key)
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as error:
        raise ToolDenied(f"Argument '{key}' must be an integer") from error


def _str_arg(args: Mapping[str, Any], key: str, *, required: bool = True) -> str:
    value = args.get(key)
    if value is None:
        if required:
            raise ToolDenied(f"Missing required argument '{key}'")
        return ""
    if not isinstance(value, str):
        raise ToolDenied(f"Argument '{key}' must be a string")
    return value


class ToolDispatcher:
    """Closed table of tool handlers bound to one project root and policy."""

    def __init__(
        self,
        policy: PolicyConfig,
        *,
        analyzer: PythonStaticAnalyzer | None = None,
        commands: Mapping[str, Sequence[str]] | None = None,
        command_timeout: float | None = 600,
        run_log: RunLogProvider | None = None,
        blocked_segments: Sequence[str] = (),
    ) -> None:
        self.policy = policy
        self.root = policy.project_root.resolve()
        self.analyzer = analyzer or PythonStaticAnalyzer()
        self.commands = {key: list(value) for key, value in (commands or {}).items()}
        self.command_timeout = command_timeout
        self._run_log = run_log
        self._extra_segments = frozenset(segment for segment in blocked_segments if segment)
        self._handlers: Dict[str, Handler] = {
            "read_file": self._read_file,
            "write_file": self._write_file,
            "list_files": self._list_files,
            "find_files_by_name": self._find_files_by_name,
            "search_in_files": self._search_in_files,
            "apply_patch": self._apply_patch,
            "get_outline": self._get_outline,
            "type_check": self._type_check,
            "run_tests": lambda args: self._run_named("tests", ActionKind.RUN_TESTS),
            "run_build": lambda args: self._run_named("build", ActionKind.RUN_BUILD),
            "run_lint": lambda args: self._run_named("lint", ActionKind.RUN_LINT),
            "get_project_info": lambda args: get_project_info(self.root),
            "read_json_compact": self._read_json_compact,
            "get_run_log": self._get_run_log,
        }

    # ----------------------------------------------------------------- public
    @property
    def tool_names(self) -> List[str]:
        return [name for name in self._handlers if self.policy.allows_tool(name)]

    def schemas(self) -> List[ToolSchema]:
        """Schemas of the tools this dispatcher will actually serve."""

        return [TOOL_SCHEMAS[name] for name in self.tool_names]

    def execute(self, tool_name: str, args: Mapping[str, Any] | None) -> Dict[str, Any]:
        """Run one tool call; never raises."""

        started = time.monotonic()
        handler = self._handlers.get(tool_name)
        if handler is None:
            result: Dict[str, Any] = {"ok": False, "error": f"Unknown tool '{tool_name}'"}
        elif not self.policy.allows_tool(tool_name):
            result = {
                "ok": False,
                "error": f"Tool '{tool_name}' is not allowed for this role and mode",
                "denied": True,
            }
        elif args is not None and not isinstance(args, Mapping):
            result = {"ok": False, "error": "Tool arguments must be a JSON object"}
        else:
            try:
                result = {"ok": True, **handler(args or {})}
            except ToolDenied as denial:
                result = {"ok": False, "error": str(denial)}
                if denial.violations:
                    result["violations"] = denial.violations
            except Exception as error:  # noqa: BLE001 - tool failures are reported to the model
                LOGGER.warning("Tool %s failed: %s", tool_name, error)
                result = {"ok": False, "error": f"{type(error).__name__}: {error}"}
        emit_event(
            "tool_call",
            tool=tool_name,
            ok=bool(result.get("ok")),
            error=result.get("error"),
            duration_ms=round((time.monotonic() - started) * 1000, 2),
        )
        return result

    # ------------------------------------------------------------ containment
    def resolve_path(self, raw: Any) -> Path:
        """Resolve a model-supplied path inside the project root.

        Symlinks are resolved at call time so a link pointing outside the
        root is rejected even if it was created after the dispatcher.
        """

        if not isinstance(raw, str) or not raw.strip():
            raise ToolDenied("A non-empty relative path is required")
        if "\0" in raw:
            raise ToolDenied("Path contains a null byte")
        normalised = raw.strip().replace("\\", "/")
        if PurePosixPath(normalised).is_absolute() or Path(raw).is_absolute() or (
            len(normalised) > 1 and normalised[1] == ":"
        ):
            raise ToolDenied(f"Absolute paths are not permitted: {raw}")
        if files.is_blocked(normalised, extra_segments=self._extra_segments):
            raise ToolDenied(f"Access to '{raw}' is blocked")
        resolved = (self.root / normalised).resolve()
        if not resolved.is_relative_to(self.root):
            raise ToolDenied(f"Path escapes the project root: {raw}")
        relative = resolved.relative_to(self.root).as_posix()
        if files.is_blocked(relative, extra_segments=self._extra_segments):
            raise ToolDenied(f"Access to '{raw}' is blocked")
        return resolved

    def _check(self, kind: ActionKind, targets: Sequence[Path], estimated: int | None = None) -> None:
        decision = evaluate(
            PolicyAction(kind=kind, targets=tuple(targets), estimated_changed_lines=estimated),
            self.policy,
        )
        if not decision.allowed:
            raise ToolDenied("Policy violation: " + "; ".join(decision.violations), violations=decision.violations)

    def _readable(self, path: Path) -> bool:
        """Policy filter for listing and search results."""

        return evaluate(PolicyAction(kind=ActionKind.READ_FILE, targets=(path,)), self.policy).allowed

    # --------------------------------------------------------------- handlers
    def _read_file(self, args: Mapping[str, Any]) -> Dict[str, Any]:
        path = self.resolve_path(args.get("path"))
        self._check(ActionKind.READ_FILE, [path])
        if not path.is_file():
            raise ToolDenied(f"File not found: {args.get('path')}")
        return files.read_file_range(
            path,
            root=self.root,
            from_line=_int_arg(args, "fromLine"),
            to_line=_int_arg(args, "toLine"),
            max_bytes=_int_arg(args, "maxBytes"),
        )

    def _write_file(self, args: Mapping[str, Any]) -> Dict[str, Any]:
        path = self.resolve_path(args.get("path"))
        content = _str_arg(args, "content")
        self._check(ActionKind.WRITE_FILE, [path])
        if path.is_dir():
            raise ToolDenied(f"Cannot overwrite a directory: {args.get('path')}")
        return files.write_file(path, content, root=self.root)

    def _list_files(self, args: Mapping[str, Any]) -> Dict[str, Any]:
        pattern = _str_arg(args, "pattern", required=False)
        limit = _int_arg(args, "maxResults") or 300
        return files.list_files(
            self.root,
            pattern,
            max_results=limit,
            extra_segments=self._extra_segments,
            include=self._readable,
        )

    def _find_files_by_name(self, args: Mapping[str, Any]) -> Dict[str, Any]:
        query = _str_arg(args, "query")
        limit = _int_arg(args, "maxResults") or 50
        return files.find_files_by_name(
            self.root,
            query,
            max_results=limit,
            extra_segments=self._extra_segments,
            include=self._readable,
        )

    def _search_in_files(self, args: Mapping[str, Any]) -> Dict[str, Any]:
        query = _str_arg(args, "query")
        if not query:
            raise ToolDenied("Search query must not be empty")
        return files.search_in_files(
            self.root,
            query,
            is_regex=bool(args.get("isRegex", False)),
            glob=_str_arg(args, "glob", required=False) or None,
            case_sensitive=bool(args.get("caseSensitive", False)),
            max_results=_int_arg(args, "maxResults") or 200,
            extra_segments=self._extra_segments,
            include=self._readable,
        )

    def _apply_patch(self, args: Mapping[str, Any]) -> Dict[str, Any]:
        path = self.resolve_path(args.get("filePath"))
        original_hash = _str_arg(args, "originalHash")
        patch = _str_arg(args, "patch")
        counted = count_changed_lines(patch)
        estimated = max(_int_arg(args, "estimatedChangedLines") or 0, counted)
        self._check(ActionKind.APPLY_PATCH, [path], estimated)
        result = apply_unified_patch(
            path,
            patch,
            original_hash,
            root=self.root,
            dry_run=bool(args.get("dryRun", False)),
        )
        payload = result.to_dict()
        if result.rejected:
            payload["ok"] = False
            payload["error"] = result.preview
        return payload

    def _get_outline(self, args: Mapping[str, Any]) -> Dict[str, Any]:
        path = self.resolve_path(args.get("path"))
        self._check(ActionKind.READ_FILE, [path])
        if not path.is_file():
            raise ToolDenied(f"File not found: {args.get('path')}")
        return self.analyzer.file_outline(path, path.relative_to(self.root).as_posix())

    def _type_check(self, args: Mapping[str, Any]) -> Dict[str, Any]:
        return self.analyzer.diagnostics(self.root).to_dict()

    def _run_named(self, key: str, kind: ActionKind) -> Dict[str, Any]:
        self._check(kind, [])
        command = self.commands.get(key) or []
        if not command:
            raise ToolDenied(f"No {key} command configured")
        return run_command(command, self.root, timeout=self.command_timeout).to_dict()

    def _read_json_compact(self, args: Mapping[str, Any]) -> Dict[str, Any]:
        path = self.resolve_path(args.get("path"))
        self._check(ActionKind.READ_FILE, [path])
        if not path.is_file():
            raise ToolDenied(f"File not found: {args.get('path')}")
        pick = args.get("pickKeys")
        keys = [str(item) for item in pick] if isinstance(pick, list) else None
        return read_json_compact(
            path,
            root=self.root,
            pick_keys=keys,
            max_string_length=_int_arg(args, "maxStringLength") or 200,
        )

    def _get_run_log(self, args: Mapping[str, Any]) -> Dict[str, Any]:
        limit = _int_arg(args, "maxChars") or _DEFAULT_RUN_LOG_CHARS
        text = self._run_log() if self._run_log is not None else ""
        return {"log": text[-limit:] if limit > 0 else "", "totalChars": len(text)}


__all__ = ["Handler", "ToolDenied", "ToolDispatcher"]
