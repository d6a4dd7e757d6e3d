"""Filesystem and search primitives used by the tool dispatcher.

Every function here works on paths that the dispatcher has already resolved
and contained within the project root; they return plain dictionaries so the
results can be handed to the model without further conversion.
"""

from __future__ import annotations

import fnmatch
import hashlib
import os
import re
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List

__all__ = [
    "BLOCKED_SEGMENTS",
    "NEW_FILE_HASH",
    "PathFilter",
    "find_files_by_name",
    "is_blocked",
    "iter_project_files",
    "list_files",
    "read_file_range",
    "search_in_files",
    "sha256_bytes",
    "write_file",
]

NEW_FILE_HASH = "new-file"

BLOCKED_SEGMENTS = frozenset(
    {
        ".git",
        "node_modules",
        "dist",
        "build",
        ".next",
        "coverage",
        "migrations",
        ".venv",
        "venv",
        "__pycache__",
        ".mypy_cache",
        ".pytest_cache",
        ".ruff_cache",
        ".tox",
        ".taskforge",
    }
)

_DEFAULT_LIST_LIMIT = 300
_DEFAULT_FIND_LIMIT = 50
_DEFAULT_SEARCH_LIMIT = 200
_MATCHES_PER_FILE = 5
_EXCERPT_RADIUS = 20
_MAX_SEARCH_FILE_BYTES = 1_000_000

PathFilter = Callable[[Path], bool]


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def is_blocked(relative: str, *, extra_segments: frozenset[str] = frozenset()) -> bool:
    """Return ``True`` for paths inside build output, VCS metadata or secrets."""

    parts = [part for part in relative.replace("\\", "/").split("/") if part]
    segments = BLOCKED_SEGMENTS | extra_segments
    for part in parts:
        if part in segments:
            return True
    if parts:
        name = parts[-1]
        if name == ".env" or name.startswith(".env."):
            return True
    return False


def iter_project_files(
    root: Path,
    *,
    extra_segments: frozenset[str] = frozenset(),
    include: PathFilter | None = None,
) -> Iterator[Path]:
    """Yield files below ``root`` in a stable order, skipping blocked folders.

    Files whose real location lies outside ``root`` (symlinks) are skipped, as
    are files that ``include`` rejects. ``include`` receives the resolved path.
    """

    segments = BLOCKED_SEGMENTS | extra_segments
    real_root = root.resolve()
    for current, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(name for name in dirnames if name not in segments)
        base = Path(current)
        for name in sorted(filenames):
            relative = (base / name).relative_to(root).as_posix()
            if is_blocked(relative, extra_segments=extra_segments):
                continue
            try:
                resolved = (base / name).resolve()
            except (OSError, RuntimeError):
                continue
            if not resolved.is_relative_to(real_root):
                continue
            if include is not None and not include(resolved):
                continue
            yield base / name


def read_file_range(
    path: Path,
    *,
    root: Path,
    from_line: int | None = None,
    to_line: int | None = None,
    max_bytes: int | None = None,
) -> Dict[str, Any]:
    """Read ``path`` optionally limited to a 1-based inclusive line range.

    The hash always covers the raw bytes of the whole file so that it can be
    passed back to ``apply_patch`` as the original-content precondition.
    """

    raw = path.read_bytes()
    text = raw.decode("utf-8", errors="replace")
    lines = text.splitlines(keepends=True)
    total = len(lines)
    start = max(1, int(from_line or 1))
    end = total if to_line is None else min(total, int(to_line))
    if end < start:
        selected = ""
    else:
        selected = "".join(lines[start - 1 : end])
    truncated = False
    if max_bytes is not None and max_bytes > 0:
        encoded = selected.encode("utf-8")
        if len(encoded) > max_bytes:
            selected = encoded[:max_bytes].decode("utf-8", errors="ignore")
            truncated = True
    return {
        "path": path.relative_to(root).as_posix(),
        "content": selected,
        "fromLine": start,
        "toLine": max(start - 1, end),
        "totalLines": total,
        "truncated": truncated,
        "hash": sha256_bytes(raw),
    }


def write_file(path: Path, content: str, *, root: Path) -> Dict[str, Any]:
    existed = path.exists()
    path.parent.mkdir(parents=True, exist_ok=True)
    data = content.encode("utf-8")
    path.write_bytes(data)
    return {
        "path": path.relative_to(root).as_posix(),
        "created": not existed,
        "bytesWritten": len(data),
        "hash": sha256_bytes(data),
    }


def _normalise_pattern(pattern: str | None) -> str:
    cleaned = (pattern or "").strip()
    if cleaned in {"", "*", ".", "./", "**", "*.*"}:
        return "**/*"
    return cleaned[2:] if cleaned.startswith("./") else cleaned


def _glob_match(relative: str, pattern: str) -> bool:
    if pattern == "**/*":
        return True
    if fnmatch.fnmatchcase(relative, pattern):
        return True
    # ``**/x`` should also match ``x`` at the root.
    if pattern.startswith("**/") and fnmatch.fnmatchcase(relative, pattern[3:]):
        return True
    if "/" not in pattern and fnmatch.fnmatchcase(relative.rsplit("/", 1)[-1], pattern):
        return True
    return False


def list_files(
    root: Path,
    pattern: str | None = None,
    *,
    max_results: int = _DEFAULT_LIST_LIMIT,
    extra_segments: frozenset[str] = frozenset(),
    include: PathFilter | None = None,
) -> Dict[str, Any]:
    """List project files matching a glob, capped at ``max_results``."""

    glob = _normalise_pattern(pattern)
    limit = max(1, min(int(max_results), _DEFAULT_LIST_LIMIT))
    files: List[str] = []
    truncated = False
    for path in iter_project_files(root, extra_segments=extra_segments, include=include):
        relative = path.relative_to(root).as_posix()
        if not _glob_match(relative, glob):
            continue
        if len(files) >= limit:
            truncated = True
            break
        files.append(relative)
    return {"pattern": glob, "files": files, "truncated": truncated}


def find_files_by_name(
    root: Path,
    query: str,
    *,
    max_results: int = _DEFAULT_FIND_LIMIT,
    extra_segments: frozenset[str] = frozenset(),
    include: PathFilter | None = None,
) -> Dict[str, Any]:
    """Fuzzy file lookup: exact basename first, then substring matches."""

    needle = query.strip().lower()
    if not needle:
        return {"query": query, "matches": []}
    scored: List[tuple[int, str]] = []
    for path in iter_project_files(root, extra_segments=extra_segments, include=include):
        relative = path.relative_to(root).as_posix()
        name = path.name.lower()
        if name == needle:
            scored.append((0, relative))
        elif needle in name or needle in relative.lower():
            scored.append((1, relative))
    scored.sort(key=lambda item: (item[0], len(item[1]), item[1]))
    limit = max(1, min(int(max_results), _DEFAULT_FIND_LIMIT))
    return {
        "query": query,
        "matches": [{"path": relative, "score": score} for score, relative in scored[:limit]],
    }


def search_in_files(
    root: Path,
    query: str,
    *,
    is_regex: bool = False,
    glob: str | None = None,
    case_sensitive: bool = False,
    max_results: int = _DEFAULT_SEARCH_LIMIT,
    extra_segments: frozenset[str] = frozenset(),
    include: PathFilter | None = None,
) -> Dict[str, Any]:
    """Search text (or a regex) across project files.

    At most five matches are reported per file, each with a short excerpt
    around the hit.
    """

    flags = 0 if case_sensitive else re.IGNORECASE
    pattern = re.compile(query if is_regex else re.escape(query), flags)
    file_glob = _normalise_pattern(glob)
    matches: List[Dict[str, Any]] = []
    truncated = False
    for path in iter_project_files(root, extra_segments=extra_segments, include=include):
        relative = path.relative_to(root).as_posix()
        if not _glob_match(relative, file_glob):
            continue
        try:
            if path.stat().st_size > _MAX_SEARCH_FILE_BYTES:
                continue
            raw = path.read_bytes()
        except OSError:
            continue
        if b"\0" in raw[:1024]:
            continue
        text = raw.decode("utf-8", errors="replace")
        per_file = 0
        for line_number, line in enumerate(text.splitlines(), start=1):
            hit = pattern.search(line)
            if hit is None:
                continue
            start = max(0, hit.start() - _EXCERPT_RADIUS)
            end = min(len(line), hit.end() + _EXCERPT_RADIUS)
            matches.append(
                {
                    "path": relative,
                    "line": line_number,
                    "excerpt": line[start:end],
                }
            )
            per_file += 1
            if len(matches) >= max_results:
                truncated = True
                break
            if per_file >= _MATCHES_PER_FILE:
                break
        if truncated:
            break
    return {"query": query, "matches": matches, "truncated": truncated}
