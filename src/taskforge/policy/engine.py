"""Pure allow/deny evaluation of tool actions against a role policy.

The engine never touches the filesystem beyond resolving paths and holds no
state between calls; the dispatcher builds a :class:`PolicyConfig` per request
and asks :func:`evaluate` about every path-bearing action.
"""

from __future__ import annotations

import fnmatch
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import List, Sequence, Tuple

__all__ = [
    "ActionKind",
    "PolicyAction",
    "PolicyConfig",
    "PolicyDecision",
    "evaluate",
]

_GLOB_CHARS = frozenset("*?[")


class ActionKind(str, Enum):
    """Kinds of actions the policy engine knows how to judge."""

    READ_FILE = "readFile"
    WRITE_FILE = "writeFile"
    APPLY_PATCH = "applyPatch"
    RUN_TESTS = "runTests"
    RUN_BUILD = "runBuild"
    RUN_LINT = "runLint"

    @property
    def mutating(self) -> bool:
        return self in (ActionKind.WRITE_FILE, ActionKind.APPLY_PATCH)


@dataclass(frozen=True, slots=True)
class PolicyConfig:
    """Per-request access policy derived from a role and a run mode."""

    project_root: Path
    allowed_paths: Tuple[str, ...] = ()
    read_only_paths: Tuple[str, ...] = ()
    max_files_changed: int = 0
    max_total_changed_lines: int = 0
    allowed_tools: frozenset[str] = frozenset()

    def allows_tool(self, name: str) -> bool:
        return name in self.allowed_tools


@dataclass(frozen=True, slots=True)
class PolicyAction:
    kind: ActionKind
    targets: Tuple[Path, ...] = ()
    estimated_changed_lines: int | None = None


@dataclass(slots=True)
class PolicyDecision:
    allowed: bool
    violations: List[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {"allowed": self.allowed, "violations": list(self.violations)}


def _is_glob(entry: str) -> bool:
    return any(char in _GLOB_CHARS for char in entry)


def _relative_posix(root: Path, target: Path) -> str | None:
    try:
        return target.relative_to(root).as_posix()
    except ValueError:
        return None


def _matches(root: Path, target: Path, entries: Sequence[str]) -> bool:
    """Return ``True`` when ``target`` falls under any of ``entries``.

    Plain entries are treated as directory/file prefixes compared component by
    component, so ``src`` matches ``src/app.py`` but not ``srcfoo/app.py``.
    """

    relative = _relative_posix(root, target)
    for entry in entries:
        cleaned = entry.strip()
        if not cleaned:
            continue
        if _is_glob(cleaned):
            if relative is not None and (
                fnmatch.fnmatchcase(relative, cleaned)
                or fnmatch.fnmatchcase(f"{relative}/", cleaned)
            ):
                return True
            continue
        candidate = Path(cleaned)
        if not candidate.is_absolute():
            candidate = root / PurePosixPath(cleaned.rstrip("/") or ".")
        candidate = candidate.resolve()
        if target == candidate or candidate in target.parents:
            return True
    return False


def evaluate(action: PolicyAction, policy: PolicyConfig) -> PolicyDecision:
    """Evaluate ``action`` against ``policy`` and collect every violation."""

    root = policy.project_root.resolve()
    targets = [Path(target).resolve() for target in action.targets]
    violations: List[str] = []

    for target in targets:
        label = _relative_posix(root, target) or target.as_posix()
        if not _matches(root, target, policy.allowed_paths):
            violations.append(f"{label}: path not allowed")
        if action.kind.mutating and _matches(root, target, policy.read_only_paths):
            violations.append(f"{label}: read-only path")

    if action.kind is ActionKind.APPLY_PATCH:
        estimated = action.estimated_changed_lines or 0
        if estimated > policy.max_total_changed_lines:
            violations.append(
                f"estimated {estimated} changed lines exceeds limit of {policy.max_total_changed_lines}"
            )
        if len(targets) > policy.max_files_changed:
            violations.append(
                f"{len(targets)} files exceeds limit of {policy.max_files_changed} changed files"
            )

    return PolicyDecision(allowed=not violations, violations=violations)
