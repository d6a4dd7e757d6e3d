from __future__ import annotations

import textwrap
from pathlib import Path

import pytest

from taskforge.tools.files import NEW_FILE_HASH, sha256_bytes
from taskforge.tools.patch import (
    HASH_MISMATCH_MESSAGE,
    PatchError,
    apply_unified_patch,
    count_changed_lines,
    parse_hunks,
)


def _write(path: Path, text: str) -> str:
    path.parent.mkdir(parents=True, exist_ok=True)
    data = text.encode("utf-8")
    path.write_bytes(data)
    return sha256_bytes(data)


def test_apply_patch_updates_file_and_reports_new_hash(tmp_path: Path) -> None:
    target = tmp_path / "module.py"
    original = _write(target, "alpha\nbeta\ngamma\n")
    patch = textwrap.dedent(
        """
        --- a/module.py
        +++ b/module.py
        @@ -1,3 +1,3 @@
         alpha
        -beta
        +BETA
         gamma
        """
    ).lstrip()

    result = apply_unified_patch(target, patch, original, root=tmp_path)

    assert result.changed is True
    assert result.applied_hunks == 1
    assert target.read_text(encoding="utf-8") == "alpha\nBETA\ngamma\n"
    assert result.new_hash == sha256_bytes(target.read_bytes())
    assert "-beta" in result.preview and "+BETA" in result.preview


def test_patch_keeps_crlf_line_endings(tmp_path: Path) -> None:
    target = tmp_path / "module.py"
    original = _write(target, "alpha\r\nbeta\r\ngamma\r\n")
    patch = "@@ -1,3 +1,4 @@\n alpha\n-beta\n+BETA\n+delta\n gamma\n"

    result = apply_unified_patch(target, patch, original, root=tmp_path)

    assert result.changed is True
    assert target.read_bytes() == b"alpha\r\nBETA\r\ndelta\r\ngamma\r\n"


def test_stale_hash_leaves_file_untouched(tmp_path: Path) -> None:
    target = tmp_path / "module.py"
    _write(target, "alpha\n")
    current = sha256_bytes(target.read_bytes())

    result = apply_unified_patch(target, "@@ -1 +1 @@\n-alpha\n+omega\n", "0" * 64, root=tmp_path)

    assert result.rejected is True
    assert result.changed is False
    assert result.preview == HASH_MISMATCH_MESSAGE
    assert result.new_hash == current
    assert target.read_text(encoding="utf-8") == "alpha\n"


def test_new_file_requires_absence(tmp_path: Path) -> None:
    target = tmp_path / "pkg" / "fresh.py"
    patch = "@@ -0,0 +1,2 @@\n+x = 1\n+y = 2\n"

    created = apply_unified_patch(target, patch, NEW_FILE_HASH, root=tmp_path)
    again = apply_unified_patch(target, patch, NEW_FILE_HASH, root=tmp_path)

    assert created.changed is True
    assert target.read_text(encoding="utf-8") == "x = 1\ny = 2\n"
    assert again.rejected is True


def test_hunk_located_with_offset(tmp_path: Path) -> None:
    target = tmp_path / "module.py"
    original = _write(target, "header\nextra\nalpha\nbeta\n")

    result = apply_unified_patch(target, "@@ -1,2 +1,2 @@\n alpha\n-beta\n+beta2\n", original, root=tmp_path)

    assert result.changed is True
    assert target.read_text(encoding="utf-8") == "header\nextra\nalpha\nbeta2\n"


def test_dry_run_does_not_write(tmp_path: Path) -> None:
    target = tmp_path / "module.py"
    original = _write(target, "alpha\n")

    result = apply_unified_patch(target, "@@ -1 +1 @@\n-alpha\n+omega\n", original, root=tmp_path, dry_run=True)

    assert result.changed is True
    assert result.new_hash == original
    assert target.read_text(encoding="utf-8") == "alpha\n"


def test_mismatched_context_raises(tmp_path: Path) -> None:
    target = tmp_path / "module.py"
    original = _write(target, "alpha\n")

    with pytest.raises(PatchError) as excinfo:
        apply_unified_patch(target, "@@ -1 +1 @@\n-missing\n+omega\n", original, root=tmp_path)

    assert excinfo.value.details["hunk"] == 1
    assert target.read_text(encoding="utf-8") == "alpha\n"


def test_parse_rejects_patches_without_hunks() -> None:
    with pytest.raises(PatchError):
        parse_hunks("--- a/x\n+++ b/x\n")


def test_count_changed_lines_ignores_file_headers() -> None:
    patch = "--- a/x\n+++ b/x\n@@ -1,2 +1,2 @@\n keep\n-old\n+new\n+more\n"

    assert count_changed_lines(patch) == 3
