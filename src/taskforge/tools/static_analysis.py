"""Static analysis for Python projects.

Type diagnostics come from an external checker (``mypy`` by default) whose
``path:line:col: error: message [code]`` lines are parsed into
:class:`Diagnostic` records. The exported-symbol outline is computed with
:mod:`ast` so it works without any third-party tooling installed.
"""

from __future__ import annotations

import ast
import hashlib
import logging
import re
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Sequence

LOGGER = logging.getLogger(__name__)

_DIAGNOSTIC_RE = re.compile(
    r"^(?P<file>[^:\n]+?):(?P<line>\d+)(?::(?P<column>\d+))?:\s*error:\s*"
    r"(?P<message>.*?)(?:\s+\[(?P<code>[\w-]+)\])?\s*$"
)


class StaticAnalysisError(RuntimeError):
    """Raised when a required checker cannot be run."""


@dataclass(frozen=True, slots=True)
class Diagnostic:
    file: str
    line: int
    column: int
    code: str
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "file": self.file,
            "line": self.line,
            "column": self.column,
            "code": self.code,
            "message": self.message,
        }


@dataclass(frozen=True, slots=True)
class OutlineEntry:
    file: str
    kind: str
    name: str

    def to_dict(self) -> Dict[str, str]:
        return {"file": self.file, "kind": self.kind, "name": self.name}


@dataclass(slots=True)
class DiagnosticsReport:
    diagnostics: List[Diagnostic] = field(default_factory=list)
    skipped: bool = False
    reason: str = ""

    @property
    def ok(self) -> bool:
        return not self.diagnostics

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passed": self.ok,
            "skipped": self.skipped,
            "reason": self.reason,
            "errorCount": len(self.diagnostics),
            "errors": [item.to_dict() for item in self.diagnostics[:50]],
        }


def parse_diagnostics(output: str) -> List[Diagnostic]:
    """Extract error lines from checker output, ignoring notes and summaries."""

    diagnostics: List[Diagnostic] = []
    seen: set[tuple[str, int, int, str]] = set()
    for raw_line in output.splitlines():
        match = _DIAGNOSTIC_RE.match(raw_line.strip())
        if not match:
            continue
        file = match.group("file").strip().replace("\\", "/")
        line = int(match.group("line"))
        column = int(match.group("column") or 0)
        message = match.group("message").strip()
        key = (file, line, column, message)
        if key in seen:
            continue
        seen.add(key)
        diagnostics.append(
            Diagnostic(
                file=file,
                line=line,
                column=column,
                code=match.group("code") or "error",
                message=message,
            )
        )
    return diagnostics


def _target_names(node: ast.AST) -> Iterable[str]:
    if isinstance(node, ast.Name):
        yield node.id
    elif isinstance(node, (ast.Tuple, ast.List)):
        for element in node.elts:
            yield from _target_names(element)


def _declared_all(tree: ast.Module) -> List[str] | None:
    for node in tree.body:
        targets: List[ast.AST] = []
        value: ast.AST | None = None
        if isinstance(node, ast.Assign):
            targets = list(node.targets)
            value = node.value
        elif isinstance(node, ast.AnnAssign) and node.value is not None:
            targets = [node.target]
            value = node.value
        if not any(isinstance(target, ast.Name) and target.id == "__all__" for target in targets):
            continue
        if isinstance(value, (ast.List, ast.Tuple)):
            names = [
                element.value
                for element in value.elts
                if isinstance(element, ast.Constant) and isinstance(element.value, str)
            ]
            return names
    return None


def module_outline(source: str, relative: str) -> List[OutlineEntry]:
    """Return the exported symbols of one module.

    ``__all__`` wins when declared; otherwise every public top-level function,
    class and assignment counts as exported.
    """

    tree = ast.parse(source, filename=relative)
    public: Dict[str, str] = {}
    for node in tree.body:
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
            public[node.name] = "function"
        elif isinstance(node, ast.ClassDef):
            public[node.name] = "class"
        elif isinstance(node, ast.Assign):
            for target in node.targets:
                for name in _target_names(target):
                    public.setdefault(name, "variable")
        elif isinstance(node, ast.AnnAssign):
            for name in _target_names(node.target):
                public.setdefault(name, "variable")
        elif isinstance(node, (ast.Import, ast.ImportFrom)):
            for alias in node.names:
                bound = alias.asname or alias.name.split(".")[0]
                public.setdefault(bound, "import")

    exported = _declared_all(tree)
    if exported is None:
        return [
            OutlineEntry(relative, kind, name)
            for name, kind in public.items()
            if not name.startswith("_") and kind != "import"
        ]
    return [OutlineEntry(relative, public.get(name, "unknown"), name) for name in exported]


class PythonStaticAnalyzer:
    """Type diagnostics and exported-API fingerprints for a Python project."""

    def __init__(
        self,
        command: Sequence[str] | None = None,
        *,
        required: bool = False,
        timeout: float | None = 600,
    ) -> None:
        self.command = list(command or [])
        self.required = required
        self.timeout = timeout

    def diagnostics(self, project_root: Path) -> DiagnosticsReport:
        if not self.command:
            return DiagnosticsReport(skipped=True, reason="No type checker configured.")
        executable = self.command[0]
        if shutil.which(executable) is None:
            reason = f"Executable not available: {executable}"
            if self.required:
                raise StaticAnalysisError(reason)
            LOGGER.warning("Skipping type check: %s", reason)
            return DiagnosticsReport(skipped=True, reason=reason)
        try:
            process = subprocess.run(  # noqa: S603 - command is sourced from config
                self.command,
                cwd=project_root,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as error:
            raise StaticAnalysisError(f"Type checker timed out after {self.timeout} seconds") from error
        diagnostics = parse_diagnostics(f"{process.stdout}\n{process.stderr}")
        if process.returncode not in (0, 1) and not diagnostics:
            # mypy exits 2 on crashes and usage errors.
            message = (process.stderr or process.stdout).strip() or f"exit code {process.returncode}"
            raise StaticAnalysisError(f"Type checker failed: {message}")
        return DiagnosticsReport(diagnostics=diagnostics)

    def exported_outline(self, project_root: Path, files: Iterable[str]) -> List[OutlineEntry]:
        """Outline of the exported symbols of ``files``.

        Missing and non-Python files contribute nothing; a module that does
        not parse contributes a single marker entry.
        """

        entries: List[OutlineEntry] = []
        for relative in sorted(set(files)):
            path = project_root / relative
            if not path.is_file() or path.suffix not in {".py", ".pyi"}:
                continue
            source = path.read_text(encoding="utf-8", errors="replace")
            try:
                entries.extend(module_outline(source, relative))
            except SyntaxError:
                entries.append(OutlineEntry(relative, "unparsable", ""))
        return entries

    @staticmethod
    def fingerprint(outline: Iterable[OutlineEntry]) -> str:
        lines = sorted({f"{entry.file}|{entry.kind}|{entry.name}" for entry in outline})
        return hashlib.sha256("\n".join(lines).encode("utf-8")).hexdigest()

    def file_outline(self, path: Path, relative: str) -> Dict[str, Any]:
        """Full structural outline of a single module for the ``get_outline`` tool."""

        source = path.read_text(encoding="utf-8", errors="replace")
        tree = ast.parse(source, filename=relative)
        symbols: List[Dict[str, Any]] = []
        for node in tree.body:
            if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
                symbols.append(_symbol("function", node))
            elif isinstance(node, ast.ClassDef):
                entry = _symbol("class", node)
                entry["members"] = [
                    _symbol("method", child)
                    for child in node.body
                    if isinstance(child, (ast.FunctionDef, ast.AsyncFunctionDef))
                ]
                symbols.append(entry)
        exported = [entry.name for entry in module_outline(source, relative)]
        return {"path": relative, "symbols": symbols, "exports": exported}


def _symbol(kind: str, node: ast.FunctionDef | ast.AsyncFunctionDef | ast.ClassDef) -> Dict[str, Any]:
    return {
        "kind": kind,
        "name": node.name,
        "line": node.lineno,
        "endLine": getattr(node, "end_lineno", node.lineno),
        "doc": (ast.get_docstring(node) or "").split("\n", 1)[0],
    }


__all__ = [
    "Diagnostic",
    "DiagnosticsReport",
    "OutlineEntry",
    "PythonStaticAnalyzer",
    "StaticAnalysisError",
    "module_outline",
    "parse_diagnostics",
]
