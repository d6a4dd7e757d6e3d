"""Pre-execution snapshots used to detect and undo a task's changes.

:func:`capture_snapshot` picks the strategy once per execution: a
:class:`GitSnapshot` when the project root is a git work tree, otherwise a
:class:`FileSnapshot` of raw bytes. Both report the files changed since the
snapshot and can put them back.
"""

from __future__ import annotations

import abc
import logging
import os
from pathlib import Path
from typing import Dict, Iterable, List, Sequence, Tuple

from ..tools.files import sha256_bytes
from ..tools.vcs import GitError, GitRepository, StatusEntry

LOGGER = logging.getLogger(__name__)

# Byproducts of running tests or type checkers; never counted as task changes.
_NOISE_SEGMENTS = frozenset(
    {"__pycache__", ".pytest_cache", ".mypy_cache", ".ruff_cache", ".tox", ".git"}
)
_NOISE_SUFFIXES = (".pyc", ".pyo")


def _is_noise(relative: str, workspace: str) -> bool:
    parts = relative.split("/")
    if workspace and parts and parts[0] == workspace:
        return True
    if any(part in _NOISE_SEGMENTS for part in parts):
        return True
    return relative.endswith(_NOISE_SUFFIXES)


def _read(path: Path) -> bytes | None:
    try:
        return path.read_bytes() if path.is_file() else None
    except OSError:
        return None


def _digest(data: bytes | None) -> str | None:
    return None if data is None else sha256_bytes(data)


def _restore_bytes(path: Path, data: bytes | None) -> None:
    if data is None:
        if path.is_file() or path.is_symlink():
            path.unlink()
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)


class SnapshotStrategy(abc.ABC):
    """Change detection and rollback for one execution."""

    def __init__(self, root: Path, files: Sequence[str], *, workspace: str = ".taskforge") -> None:
        self.root = root
        self.files = list(files)
        self.workspace = workspace
        self.saved: Dict[str, bytes | None] = {
            relative: _read(root / relative) for relative in self.files
        }

    @abc.abstractmethod
    def changed_files(self) -> List[str]:
        """Paths (relative, posix) whose content differs from the snapshot."""

    @abc.abstractmethod
    def revert(self, paths: Iterable[str]) -> List[str]:
        """Undo changes to ``paths``; return human-readable failure notes."""


class GitSnapshot(SnapshotStrategy):
    """Snapshot backed by ``git status``.

    Files that were already dirty before execution are recorded byte for byte
    so a later revert restores the pre-execution content instead of ``HEAD``.
    """

    def __init__(
        self,
        root: Path,
        files: Sequence[str],
        *,
        workspace: str = ".taskforge",
        repo: GitRepository | None = None,
    ) -> None:
        super().__init__(root, files, workspace=workspace)
        self.repo = repo or GitRepository(root)
        self.baseline: Dict[str, str | None] = {}
        for entry in self._entries():
            data = _read(root / entry.path)
            self.saved.setdefault(entry.path, data)
            self.baseline[entry.path] = _digest(data)

    def _entries(self) -> List[StatusEntry]:
        return [entry for entry in self.repo.status() if not _is_noise(entry.path, self.workspace)]

    def changed_files(self) -> List[str]:
        changed: set[str] = set()
        current = {entry.path for entry in self._entries()}
        for path in current:
            if path not in self.baseline:
                changed.add(path)
            elif _digest(_read(self.root / path)) != self.baseline[path]:
                changed.add(path)
        for path, digest in self.baseline.items():
            # Previously dirty file brought back to HEAD is a change too.
            if path not in current and _digest(_read(self.root / path)) != digest:
                changed.add(path)
        for path in self.files:
            if path not in changed and _read(self.root / path) != self.saved.get(path):
                changed.add(path)
        return sorted(changed)

    def revert(self, paths: Iterable[str]) -> List[str]:
        notes: List[str] = []
        remaining: List[str] = []
        # Saved bytes first; they need no git call.
        for path in paths:
            if path not in self.saved:
                remaining.append(path)
                continue
            try:
                _restore_bytes(self.root / path, self.saved[path])
            except OSError as error:
                notes.append(f"Failed to restore {path}: {error}")
        if not remaining:
            return notes

        try:
            codes = {entry.path: entry for entry in self._entries()}
        except GitError as error:
            notes.append(f"git status failed, not reverted: {', '.join(remaining)} ({error})")
            return notes
        tracked: List[str] = []
        untracked: List[str] = []
        for path in remaining:
            entry = codes.get(path)
            if entry is not None and entry.is_untracked:
                untracked.append(path)
            else:
                tracked.append(path)
        if tracked:
            try:
                self.repo.revert(tracked)
            except GitError as error:
                notes.append(f"git revert failed for {', '.join(tracked)}: {error}")
        if untracked:
            try:
                self.repo.delete_untracked(untracked)
            except OSError as error:
                notes.append(f"Failed to delete {', '.join(untracked)}: {error}")
        return notes


class FileSnapshot(SnapshotStrategy):
    """Snapshot for projects without version control.

    Allow-listed files are kept as raw bytes; the rest of the tree is tracked
    by size and modification time so stray edits are still detected. Only
    allow-listed files and newly created files can be reverted.
    """

    def __init__(self, root: Path, files: Sequence[str], *, workspace: str = ".taskforge") -> None:
        super().__init__(root, files, workspace=workspace)
        self.manifest = self._scan()

    def _scan(self) -> Dict[str, Tuple[int, int]]:
        manifest: Dict[str, Tuple[int, int]] = {}
        for current, dirnames, filenames in os.walk(self.root):
            base = Path(current)
            relative_dir = base.relative_to(self.root).as_posix()
            dirnames[:] = sorted(
                name
                for name in dirnames
                if not _is_noise(name if relative_dir == "." else f"{relative_dir}/{name}", self.workspace)
            )
            for name in filenames:
                path = base / name
                relative = path.relative_to(self.root).as_posix()
                if _is_noise(relative, self.workspace):
                    continue
                try:
                    stat = path.stat()
                except OSError:
                    continue
                manifest[relative] = (stat.st_size, stat.st_mtime_ns)
        return manifest

    def changed_files(self) -> List[str]:
        changed: set[str] = set()
        current = self._scan()
        for path, data in self.saved.items():
            if _read(self.root / path) != data:
                changed.add(path)
        for path, signature in current.items():
            if path in self.saved:
                continue
            if self.manifest.get(path) != signature:
                changed.add(path)
        for path in self.manifest:
            if path not in current and path not in self.saved:
                changed.add(path)
        return sorted(changed)

    def revert(self, paths: Iterable[str]) -> List[str]:
        notes: List[str] = []
        for path in paths:
            target = self.root / path
            try:
                if path in self.saved:
                    _restore_bytes(target, self.saved[path])
                elif path not in self.manifest:
                    _restore_bytes(target, None)
                else:
                    notes.append(f"Cannot restore {path}: no snapshot of its content")
            except OSError as error:
                notes.append(f"Failed to restore {path}: {error}")
        return notes


def capture_snapshot(root: Path, files: Sequence[str], *, workspace: str = ".taskforge") -> SnapshotStrategy:
    """Choose and capture the snapshot strategy for ``root``."""

    if GitRepository.is_repository(root):
        LOGGER.debug("Using git snapshot for %s", root)
        return GitSnapshot(root, files, workspace=workspace)
    LOGGER.debug("Using file snapshot for %s", root)
    return FileSnapshot(root, files, workspace=workspace)


__all__ = ["FileSnapshot", "GitSnapshot", "SnapshotStrategy", "capture_snapshot"]
