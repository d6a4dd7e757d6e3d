"""Provider-neutral JSON schemas for every tool the dispatcher serves."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List


@dataclass(frozen=True, slots=True)
class ToolSchema:
    name: str
    description: str
    parameters: Dict[str, Any]


def _object(properties: Dict[str, Any], required: List[str] | None = None) -> Dict[str, Any]:
    return {
        "type": "object",
        "properties": properties,
        "required": list(required or []),
        "additionalProperties": False,
    }


_STRING = {"type": "string"}
_INTEGER = {"type": "integer"}
_BOOLEAN = {"type": "boolean"}

TOOL_SCHEMAS: Dict[str, ToolSchema] = {
    schema.name: schema
    for schema in (
        ToolSchema(
            "read_file",
            "Read a project file, optionally a 1-based line range. Returns content and the sha256 hash "
            "of the whole file, which apply_patch needs as originalHash.",
            _object(
                {
                    "path": _STRING,
                    "fromLine": _INTEGER,
                    "toLine": _INTEGER,
                    "maxBytes": _INTEGER,
                },
                ["path"],
            ),
        ),
        ToolSchema(
            "write_file",
            "Create or overwrite a project file with the given content.",
            _object({"path": _STRING, "content": _STRING}, ["path", "content"]),
        ),
        ToolSchema(
            "list_files",
            "List project files matching a glob pattern such as 'src/**/*.py'.",
            _object({"pattern": _STRING, "maxResults": _INTEGER}),
        ),
        ToolSchema(
            "find_files_by_name",
            "Find files whose name contains the query; exact file name matches come first.",
            _object({"query": _STRING, "maxResults": _INTEGER}, ["query"]),
        ),
        ToolSchema(
            "search_in_files",
            "Search file contents for text or a regular expression.",
            _object(
                {
                    "query": _STRING,
                    "isRegex": _BOOLEAN,
                    "glob": _STRING,
                    "caseSensitive": _BOOLEAN,
                    "maxResults": _INTEGER,
                },
                ["query"],
            ),
        ),
        ToolSchema(
            "apply_patch",
            "Apply a unified diff to one file. originalHash must be the hash returned by read_file, "
            "or 'new-file' when creating a file.",
            _object(
                {
                    "filePath": _STRING,
                    "originalHash": _STRING,
                    "patch": _STRING,
                    "estimatedChangedLines": _INTEGER,
                    "dryRun": _BOOLEAN,
                },
                ["filePath", "originalHash", "patch"],
            ),
        ),
        ToolSchema(
            "get_outline",
            "Return the classes, functions and exported names of a Python module.",
            _object({"path": _STRING}, ["path"]),
        ),
        ToolSchema(
            "type_check",
            "Run the project's type checker and return the reported errors.",
            _object({}),
        ),
        ToolSchema("run_tests", "Run the project's test command.", _object({})),
        ToolSchema("run_build", "Run the project's build command.", _object({})),
        ToolSchema("run_lint", "Run the project's lint command.", _object({})),
        ToolSchema(
            "get_project_info",
            "Summarise project metadata, dependencies, packages and tooling.",
            _object({}),
        ),
        ToolSchema(
            "read_json_compact",
            "Read a JSON file, optionally keeping only some top-level keys; long strings are truncated.",
            _object(
                {
                    "path": _STRING,
                    "pickKeys": {"type": "array", "items": _STRING},
                    "maxStringLength": _INTEGER,
                },
                ["path"],
            ),
        ),
        ToolSchema(
            "get_run_log",
            "Return the tail of the current run's log.",
            _object({"maxChars": _INTEGER}),
        ),
    )
}


__all__ = ["TOOL_SCHEMAS", "ToolSchema"]
