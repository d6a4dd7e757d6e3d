"""Single-file unified diff application with a content-hash precondition.

Patches are applied in memory: hunks are located at their declared position
first and then searched for nearby when the file has drifted, the way
``patch`` applies with offset. The write only happens when every hunk matched.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Mapping

from .files import NEW_FILE_HASH, sha256_bytes

__all__ = [
    "HASH_MISMATCH_MESSAGE",
    "Hunk",
    "PatchError",
    "PatchResult",
    "apply_unified_patch",
    "count_changed_lines",
    "parse_hunks",
]

HASH_MISMATCH_MESSAGE = "Original hash does not match, file has changed on disk."

_HUNK_HEADER = re.compile(
    r"^@@ -(?P<old_start>\d+)(?:,(?P<old_count>\d+))? "
    r"\+(?P<new_start>\d+)(?:,(?P<new_count>\d+))? @@"
)
_PREVIEW_LIMIT = 4000


class PatchError(RuntimeError):
    """Raised when a patch is malformed or cannot be applied."""

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details: dict[str, Any] = dict(details or {})


@dataclass(slots=True)
class Hunk:
    old_start: int
    old_count: int
    new_start: int
    new_count: int
    lines: List[str] = field(default_factory=list)

    @property
    def before(self) -> List[str]:
        return [line[1:] for line in self.lines if line[:1] in {" ", "-"}]

    @property
    def after(self) -> List[str]:
        return [line[1:] for line in self.lines if line[:1] in {" ", "+"}]


@dataclass(slots=True)
class PatchResult:
    """Outcome reported back to the model for ``apply_patch``."""

    file_path: str
    changed: bool
    new_hash: str
    preview: str
    applied_hunks: int = 0
    rejected: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "filePath": self.file_path,
            "changed": self.changed,
            "newHash": self.new_hash,
            "preview": self.preview,
            "appliedHunks": self.applied_hunks,
        }


def _default_count(value: str | None) -> int:
    return int(value) if value is not None else 1


def parse_hunks(patch: str) -> List[Hunk]:
    """Parse the hunks of a single-file unified diff.

    File headers (``diff --git``, ``---``, ``+++``, ``index``) are ignored; a
    patch without any ``@@`` header raises :class:`PatchError`.
    """

    hunks: List[Hunk] = []
    current: Hunk | None = None
    for raw in patch.splitlines():
        if raw.startswith("@@"):
            match = _HUNK_HEADER.match(raw)
            if not match:
                raise PatchError(f"Malformed hunk header: {raw}")
            current = Hunk(
                old_start=int(match.group("old_start")),
                old_count=_default_count(match.group("old_count")),
                new_start=int(match.group("new_start")),
                new_count=_default_count(match.group("new_count")),
            )
            hunks.append(current)
            continue
        if current is None:
            continue
        if raw.startswith("\\"):
            continue
        if raw.startswith(("diff --git ", "--- ", "+++ ")) and not current.lines:
            continue
        prefix = raw[:1]
        if prefix in {" ", "+", "-"}:
            current.lines.append(raw)
        elif raw == "":
            # Editors often strip the single space of blank context lines.
            current.lines.append(" ")
        else:
            raise PatchError(f"Unexpected line in hunk: {raw!r}")
    if not hunks:
        raise PatchError("Patch does not contain any hunks.")
    return hunks


def count_changed_lines(patch: str) -> int:
    """Count added plus removed lines in ``patch``."""

    total = 0
    for raw in patch.splitlines():
        if raw.startswith(("+++", "---")):
            continue
        if raw.startswith(("+", "-")):
            total += 1
    return total


def _locate(lines: List[str], expected: List[str], hint: int) -> int | None:
    """Find ``expected`` in ``lines`` closest to ``hint`` (0-based)."""

    if not expected:
        return max(0, min(hint, len(lines)))
    width = len(expected)
    last = len(lines) - width
    if last < 0:
        return None
    hint = max(0, min(hint, last))
    for offset in range(0, last + 1):
        for candidate in (hint - offset, hint + offset):
            if 0 <= candidate <= last and lines[candidate : candidate + width] == expected:
                return candidate
    return None


def _preview(before: str, after: str) -> str:
    removed = [f"-{line}" for line in before.splitlines() if line not in after.splitlines()]
    added = [f"+{line}" for line in after.splitlines() if line not in before.splitlines()]
    text = "\n".join([*removed, *added])
    if len(text) > _PREVIEW_LIMIT:
        text = text[:_PREVIEW_LIMIT] + "\n... (preview truncated)"
    return text


def apply_unified_patch(
    path: Path,
    patch: str,
    original_hash: str,
    *,
    root: Path,
    dry_run: bool = False,
) -> PatchResult:
    """Apply ``patch`` to ``path`` when its current hash equals ``original_hash``.

    ``original_hash`` of ``"new-file"`` requires that the file does not yet
    exist. A stale hash leaves the file untouched and reports the current hash.
    """

    relative = path.relative_to(root).as_posix()
    exists = path.exists()
    raw = path.read_bytes() if exists else b""
    current_hash = sha256_bytes(raw) if exists else NEW_FILE_HASH

    if original_hash == NEW_FILE_HASH:
        if exists:
            return PatchResult(relative, False, current_hash, HASH_MISMATCH_MESSAGE, rejected=True)
    elif not exists or original_hash != current_hash:
        return PatchResult(relative, False, current_hash, HASH_MISMATCH_MESSAGE, rejected=True)

    text = raw.decode("utf-8")
    trailing_newline = text.endswith("\n") or not exists
    newline = "\r\n" if "\r\n" in text else "\n"
    lines = text.splitlines()
    hunks = parse_hunks(patch)

    shift = 0
    for index, hunk in enumerate(hunks, start=1):
        hint = max(0, hunk.old_start - 1 + shift)
        position = _locate(lines, hunk.before, hint)
        if position is None:
            raise PatchError(
                f"Hunk #{index} does not apply to {relative}",
                details={"hunk": index, "old_start": hunk.old_start},
            )
        after = hunk.after
        lines[position : position + len(hunk.before)] = after
        shift = position - (hunk.old_start - 1) + len(after) - len(hunk.before)

    new_text = newline.join(lines)
    if lines and trailing_newline:
        new_text += newline
    data = new_text.encode("utf-8")
    new_hash = sha256_bytes(data)
    changed = data != raw or not exists

    if changed and not dry_run:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    return PatchResult(
        file_path=relative,
        changed=changed,
        new_hash=new_hash if not dry_run else current_hash,
        preview=_preview(text, new_text),
        applied_hunks=len(hunks),
    )
