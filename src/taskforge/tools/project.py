"""Project metadata helpers exposed as read-only tools."""

from __future__ import annotations

import json
import tomllib
from pathlib import Path
from typing import Any, Dict, Iterable, List

from .files import is_blocked

_MAX_STRING_LENGTH = 200
_TOP_LEVEL_LIMIT = 60
_MARKERS = (
    "pyproject.toml",
    "setup.cfg",
    "setup.py",
    "requirements.txt",
    "requirements-dev.txt",
    "tox.ini",
    "noxfile.py",
    "pytest.ini",
    "mypy.ini",
    "ruff.toml",
    "Makefile",
    "README.md",
)


def _load_pyproject(root: Path) -> Dict[str, Any]:
    path = root / "pyproject.toml"
    if not path.is_file():
        return {}
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except (OSError, tomllib.TOMLDecodeError):
        return {}


def _package_dirs(root: Path) -> List[str]:
    candidates: List[str] = []
    for base in (root / "src", root):
        if not base.is_dir():
            continue
        for child in sorted(base.iterdir()):
            if child.is_dir() and (child / "__init__.py").is_file():
                relative = child.relative_to(root).as_posix()
                if not is_blocked(relative):
                    candidates.append(relative)
    return candidates


def get_project_info(root: Path) -> Dict[str, Any]:
    """Summarise the project: metadata, dependencies, layout and tooling."""

    pyproject = _load_pyproject(root)
    project = pyproject.get("project") or {}
    optional = project.get("optional-dependencies") or {}
    top_level = sorted(
        child.name + ("/" if child.is_dir() else "")
        for child in root.iterdir()
        if not is_blocked(child.name)
    )
    tool_sections = sorted((pyproject.get("tool") or {}).keys())
    return {
        "root": root.name,
        "name": project.get("name"),
        "version": project.get("version"),
        "description": project.get("description"),
        "requiresPython": project.get("requires-python"),
        "dependencies": list(project.get("dependencies") or []),
        "optionalDependencies": {key: list(value) for key, value in optional.items()},
        "scripts": dict(project.get("scripts") or {}),
        "tools": tool_sections,
        "markers": [marker for marker in _MARKERS if (root / marker).exists()],
        "packages": _package_dirs(root),
        "hasTests": (root / "tests").is_dir(),
        "topLevel": top_level[:_TOP_LEVEL_LIMIT],
    }


def _compact(value: Any, max_string_length: int) -> Any:
    if isinstance(value, str):
        if len(value) > max_string_length:
            return f"{value[:max_string_length]}... (truncated, original length {len(value)})"
        return value
    if isinstance(value, list):
        return [_compact(item, max_string_length) for item in value]
    if isinstance(value, dict):
        return {key: _compact(item, max_string_length) for key, item in value.items()}
    return value


def read_json_compact(
    path: Path,
    *,
    root: Path,
    pick_keys: Iterable[str] | None = None,
    max_string_length: int = _MAX_STRING_LENGTH,
) -> Dict[str, Any]:
    """Load a JSON file, optionally keeping only ``pick_keys``, truncating long strings."""

    data = json.loads(path.read_text(encoding="utf-8"))
    keys = [key for key in (pick_keys or []) if key]
    if keys and isinstance(data, dict):
        data = {key: data[key] for key in keys if key in data}
    return {
        "path": path.relative_to(root).as_posix(),
        "data": _compact(data, max(1, int(max_string_length))),
    }


__all__ = ["get_project_info", "read_json_compact"]
