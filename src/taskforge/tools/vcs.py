"""Git work tree access for change detection and rollback.

Just enough of ``git`` to detect a work tree, list pending changes and put
individual files back the way ``HEAD`` has them.
"""

from __future__ import annotations

import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence


class GitError(RuntimeError):
    """Raised when a git command fails or the repository cannot be used."""


@dataclass(frozen=True, slots=True)
class StatusEntry:
    """One ``git status --porcelain`` line."""

    code: str
    path: str

    @property
    def is_untracked(self) -> bool:
        return self.code == "??"


def _run(args: Sequence[str], cwd: Path, *, check: bool = True) -> subprocess.CompletedProcess[str]:
    command = ["git", *args]
    try:
        process = subprocess.run(
            command,
            cwd=cwd,
            capture_output=True,
            text=False,
            check=False,
        )
    except OSError as error:
        raise GitError(f"Unable to launch git: {error}") from error
    stdout = process.stdout.decode("utf-8", errors="replace") if process.stdout else ""
    stderr = process.stderr.decode("utf-8", errors="replace") if process.stderr else ""
    result = subprocess.CompletedProcess(process.args, process.returncode, stdout, stderr)
    if check and result.returncode != 0:
        message = result.stderr.strip() or result.stdout.strip() or "unknown git error"
        raise GitError(f"git {' '.join(args)} failed: {message}")
    return result


class GitRepository:
    """Lightweight wrapper around ``git`` commands."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()
        if not self.is_repository(self.root):
            raise GitError(f"Not a git repository: {self.root}")

    @staticmethod
    def is_repository(root: Path | str) -> bool:
        """Return ``True`` when ``root`` is inside a git work tree."""

        path = Path(root)
        if shutil.which("git") is None or not path.is_dir():
            return False
        try:
            result = _run(["rev-parse", "--is-inside-work-tree"], path, check=False)
        except GitError:
            return False
        return result.returncode == 0 and result.stdout.strip() == "true"

    # ------------------------------------------------------------------ git IO
    def _run_git(self, args: Sequence[str], *, check: bool = True) -> subprocess.CompletedProcess[str]:
        return _run(args, self.root, check=check)

    # ------------------------------------------------------------- repo status
    def _prefix(self) -> str:
        result = self._run_git(["rev-parse", "--show-prefix"], check=False)
        return result.stdout.strip() if result.returncode == 0 else ""

    def status(self) -> List[StatusEntry]:
        """Return porcelain status entries below the root, relative to it.

        Untracked directories are expanded into their individual files.
        """

        prefix = self._prefix()
        result = self._run_git(
            ["status", "--porcelain", "-z", "--untracked-files=all", "--", "."], check=True
        )
        entries: List[StatusEntry] = []
        tokens = result.stdout.split("\0")
        index = 0
        while index < len(tokens):
            token = tokens[index]
            index += 1
            if not token:
                continue
            code = token[:2]
            path = token[3:]
            if code[0] in {"R", "C"}:
                # -z emits the rename source as the following token.
                index += 1
            if prefix:
                if not path.startswith(prefix):
                    continue
                path = path[len(prefix):]
            entries.append(StatusEntry(code=code.strip() or code, path=path))
        return entries

    def _current_head(self) -> str | None:
        result = self._run_git(["rev-parse", "--verify", "HEAD"], check=False)
        if result.returncode != 0:
            return None
        head = result.stdout.strip()
        return head or None

    # ------------------------------------------------------------- restoring
    def revert(self, paths: Sequence[str]) -> None:
        """Restore tracked ``paths`` (index and work tree) to ``HEAD``."""

        if not paths:
            return
        head = self._current_head()
        if head is None:
            raise GitError("Cannot revert files in a repository without commits.")
        self._run_git(["restore", "--worktree", "--staged", "--source", head, "--", *paths], check=True)

    def delete_untracked(self, paths: Sequence[str]) -> None:
        """Remove untracked ``paths`` from the work tree, deepest first."""

        ordered = sorted(paths, key=lambda item: len(Path(item).parts), reverse=True)
        for relative in ordered:
            target = self.root / relative
            if target.is_dir() and not target.is_symlink():
                shutil.rmtree(target, ignore_errors=True)
            elif target.exists() or target.is_symlink():
                target.unlink(missing_ok=True)


__all__ = ["GitError", "GitRepository", "StatusEntry"]
