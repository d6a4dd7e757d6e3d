"""Configuration loading and typed settings for the taskforge runtime."""

from __future__ import annotations

import copy
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Literal

import yaml

__all__ = [
    "DEFAULT_CONFIG",
    "DEFAULT_CONFIG_NAME",
    "ConfigError",
    "ExecutionSettings",
    "ModelProfile",
    "ModelSettings",
    "READ_ONLY_TOOLS",
    "RoleSettings",
    "RunMode",
    "Settings",
    "StoreSettings",
    "load_config",
]

RunMode = Literal["plan", "execute"]

DEFAULT_CONFIG_NAME = "config.yaml"

_BASE_READ_TOOLS = [
    "read_file",
    "list_files",
    "find_files_by_name",
    "search_in_files",
    "get_project_info",
    "read_json_compact",
    "get_run_log",
]

_CODER_TOOLS = [
    *_BASE_READ_TOOLS,
    "apply_patch",
    "write_file",
    "get_outline",
    "type_check",
    "run_tests",
    "run_build",
    "run_lint",
]

_CODER_PROMPT = """
You are a coding assistant working inside a real Python project.

You have tools for listing and searching files, reading files or line ranges,
applying unified-diff patches, writing files, running the type checker, tests,
build and lint, and inspecting project metadata.

When asked to fix a bug, refactor code, or add a feature:
1) Locate the relevant files with "find_files_by_name" and/or "list_files".
2) Read only the needed parts with "read_file" (use fromLine/toLine/maxBytes).
3) Apply minimal patches with "apply_patch", passing the hash returned by read_file.
4) Run "type_check" and "run_tests" when appropriate.
5) Finish with a short summary of what changed and why.
""".strip()

_DOCUMENTER_PROMPT = """
You are a documentation assistant for a Python project.

Inspect the project with "get_project_info", "list_files" and targeted
"read_file" calls, then write or update README.md and docs/*.md only when
explicitly asked. Say so when something is unclear instead of inventing
features. Prefer project-info tools and targeted reads over dumping files.
""".strip()

_REVIEW_PROMPT = """
You are a read-only reviewer for a Python project. Inspect the code with the
available tools and report findings. Never attempt to modify files.
""".strip()

DEFAULT_CONFIG: Dict[str, Any] = {
    "models": {
        "plan": "claude-opus-4.1",
        "execute": "gpt-4.1-mini",
        "roles": {"documenter": "gpt-4.1-mini"},
        "timeout": 120,
        "max_tokens": 4096,
        "usd_to_eur": 0.93,
        "profiles": {
            "gpt-4.1": {
                "provider": "openai",
                "deployment": "gpt-4.1",
                "input_cost_per_1m": 10.0,
                "output_cost_per_1m": 30.0,
            },
            "gpt-4.1-mini": {
                "provider": "openai",
                "deployment": "gpt-4.1-mini",
                "input_cost_per_1m": 0.5,
                "output_cost_per_1m": 1.5,
            },
            "claude-opus-4.1": {
                "provider": "anthropic",
                "deployment": "claude-opus-4-1",
                "input_cost_per_1m": 25.0,
                "output_cost_per_1m": 100.0,
            },
        },
        "providers": {
            "openai": {
                "base_url": "https://api.openai.com/v1/chat/completions",
                "api_key_env": "OPENAI_API_KEY",
            },
            "anthropic": {
                "base_url": "https://api.anthropic.com/v1/messages",
                "api_key_env": "ANTHROPIC_API_KEY",
                "version": "2023-06-01",
            },
        },
    },
    "execution": {
        "max_rounds": {"plan": 20, "execute": 8},
        "max_retries": 3,
        "initial_backoff": 1.5,
        "api_change_marker": "[ALLOW_API_CHANGES]",
    },
    "store": {
        "workspace": ".taskforge",
        "lock_ttl_minutes": 10,
        "save_attempts": 5,
    },
    "commands": {
        "tests": ["pytest", "-q"],
        "build": ["python", "-m", "build"],
        "lint": ["ruff", "check", "."],
        "timeout": 600,
    },
    "static_analysis": {
        "command": [
            "mypy",
            "--show-column-numbers",
            "--no-error-summary",
            "--no-color-output",
            "--hide-error-context",
            ".",
        ],
        "required": False,
    },
    "roles": {
        "planner": {
            "allowed_paths": ["src/", "tests/", "docs/", "README.md", "pyproject.toml"],
            "read_only_paths": ["src/", "tests/", "docs/", "README.md", "pyproject.toml"],
            "allowed_tools": list(_BASE_READ_TOOLS),
            "max_files_changed": 0,
            "max_total_changed_lines": 0,
            "system_prompt": _REVIEW_PROMPT,
        },
        "coder": {
            "allowed_paths": ["src/", "tests/", "docs/", "README.md", "pyproject.toml"],
            "read_only_paths": ["docs/", "pyproject.toml"],
            "allowed_tools": list(_CODER_TOOLS),
            "max_files_changed": 50,
            "max_total_changed_lines": 2000,
            "system_prompt": _CODER_PROMPT,
        },
        "tester": {
            "allowed_paths": ["src/", "tests/"],
            "read_only_paths": ["src/", "tests/"],
            "allowed_tools": [*_BASE_READ_TOOLS, "get_outline", "type_check", "run_tests"],
            "max_files_changed": 0,
            "max_total_changed_lines": 0,
            "system_prompt": _REVIEW_PROMPT,
        },
        "critic": {
            "allowed_paths": ["src/", "tests/"],
            "read_only_paths": ["src/", "tests/"],
            "allowed_tools": [*_BASE_READ_TOOLS, "get_outline", "type_check"],
            "max_files_changed": 0,
            "max_total_changed_lines": 0,
            "system_prompt": _REVIEW_PROMPT,
        },
        "documenter": {
            "allowed_paths": ["src/", "docs/", "README.md"],
            "read_only_paths": ["src/"],
            "allowed_tools": [*_BASE_READ_TOOLS, "apply_patch", "write_file"],
            "max_files_changed": 10,
            "max_total_changed_lines": 800,
            "system_prompt": _DOCUMENTER_PROMPT,
        },
    },
}

# Tools that never mutate the repository; plan mode is restricted to these.
READ_ONLY_TOOLS = frozenset(
    [*_BASE_READ_TOOLS, "get_outline", "type_check"]
)


class ConfigError(ValueError):
    """Raised when configuration values are missing or malformed."""


def _deep_merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            merged[key] = _deep_merge(current, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def load_config(config_path: Path | str | None = None) -> Dict[str, Any]:
    """Load a YAML configuration merged over :data:`DEFAULT_CONFIG`.

    A missing file yields the defaults; a malformed one raises
    :class:`ConfigError`.
    """

    if config_path is None:
        return copy.deepcopy(DEFAULT_CONFIG)
    path = Path(config_path)
    if not path.exists():
        return copy.deepcopy(DEFAULT_CONFIG)
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        raise ConfigError(f"Failed to parse config {path}: {error}") from error
    if not isinstance(data, Mapping):
        raise ConfigError(f"Expected mapping at top level of {path}")
    return _deep_merge(DEFAULT_CONFIG, data)


def _string_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return [str(item) for item in value]


@dataclass(frozen=True, slots=True)
class ModelProfile:
    """Pricing and routing metadata for a single model id."""

    id: str
    provider: str
    deployment: str
    input_cost_per_1m: float
    output_cost_per_1m: float


@dataclass(slots=True)
class ModelSettings:
    plan: str
    execute: str
    role_overrides: Dict[str, str]
    profiles: Dict[str, ModelProfile]
    providers: Dict[str, Dict[str, Any]]
    timeout: float
    max_tokens: int
    usd_to_eur: float

    def resolve(self, role: str, mode: RunMode) -> ModelProfile:
        """Pick the model for a role/mode pair.

        Plan mode always uses the planning model; execute mode honours a
        per-role override before falling back to the execute model.
        """

        if mode == "plan":
            model_id = self.plan
        else:
            model_id = self.role_overrides.get(role, self.execute)
        try:
            return self.profiles[model_id]
        except KeyError as error:
            raise ConfigError(f"No model profile configured for '{model_id}'") from error

    def api_key(self, provider: str) -> str | None:
        provider_cfg = self.providers.get(provider) or {}
        explicit = provider_cfg.get("api_key")
        if isinstance(explicit, str) and explicit.strip():
            return explicit.strip()
        env_name = provider_cfg.get("api_key_env")
        if isinstance(env_name, str) and env_name:
            value = os.getenv(env_name)
            if value:
                return value
        return os.getenv(f"TASKFORGE_{provider.upper()}_API_KEY")


@dataclass(slots=True)
class ExecutionSettings:
    max_rounds_plan: int
    max_rounds_execute: int
    max_retries: int
    initial_backoff: float
    api_change_marker: str

    def max_rounds(self, mode: RunMode) -> int:
        return self.max_rounds_plan if mode == "plan" else self.max_rounds_execute


@dataclass(slots=True)
class StoreSettings:
    workspace: str
    lock_ttl_minutes: float
    save_attempts: int


@dataclass(slots=True)
class RoleSettings:
    name: str
    allowed_paths: List[str]
    read_only_paths: List[str]
    allowed_tools: List[str]
    max_files_changed: int
    max_total_changed_lines: int
    system_prompt: str


@dataclass(slots=True)
class Settings:
    """Typed view over the merged configuration mapping."""

    models: ModelSettings
    execution: ExecutionSettings
    store: StoreSettings
    roles: Dict[str, RoleSettings]
    commands: Dict[str, List[str]]
    command_timeout: float
    static_command: List[str]
    static_required: bool
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_mapping(cls, config: Mapping[str, Any] | None = None) -> "Settings":
        data = _deep_merge(DEFAULT_CONFIG, config or {})

        models_cfg = data["models"]
        profiles: Dict[str, ModelProfile] = {}
        for model_id, entry in (models_cfg.get("profiles") or {}).items():
            if not isinstance(entry, Mapping):
                raise ConfigError(f"Model profile '{model_id}' must be a mapping")
            profiles[str(model_id)] = ModelProfile(
                id=str(model_id),
                provider=str(entry.get("provider", "openai")),
                deployment=str(entry.get("deployment", model_id)),
                input_cost_per_1m=float(entry.get("input_cost_per_1m", 0.0)),
                output_cost_per_1m=float(entry.get("output_cost_per_1m", 0.0)),
            )
        models = ModelSettings(
            plan=str(models_cfg["plan"]),
            execute=str(models_cfg["execute"]),
            role_overrides={str(k): str(v) for k, v in (models_cfg.get("roles") or {}).items()},
            profiles=profiles,
            providers={str(k): dict(v or {}) for k, v in (models_cfg.get("providers") or {}).items()},
            timeout=float(models_cfg.get("timeout", 120)),
            max_tokens=int(models_cfg.get("max_tokens", 4096)),
            usd_to_eur=float(models_cfg.get("usd_to_eur", 0.93)),
        )

        exec_cfg = data["execution"]
        rounds = exec_cfg.get("max_rounds") or {}
        execution = ExecutionSettings(
            max_rounds_plan=int(rounds.get("plan", 20)),
            max_rounds_execute=int(rounds.get("execute", 8)),
            max_retries=int(exec_cfg.get("max_retries", 3)),
            initial_backoff=float(exec_cfg.get("initial_backoff", 1.5)),
            api_change_marker=str(exec_cfg.get("api_change_marker", "[ALLOW_API_CHANGES]")),
        )
        if execution.max_rounds_plan < 1 or execution.max_rounds_execute < 1:
            raise ConfigError("execution.max_rounds values must be positive")

        store_cfg = data["store"]
        store = StoreSettings(
            workspace=str(store_cfg.get("workspace", ".taskforge")),
            lock_ttl_minutes=float(store_cfg.get("lock_ttl_minutes", 10)),
            save_attempts=max(1, int(store_cfg.get("save_attempts", 5))),
        )

        roles: Dict[str, RoleSettings] = {}
        for name, entry in (data.get("roles") or {}).items():
            if not isinstance(entry, Mapping):
                raise ConfigError(f"Role '{name}' must be a mapping")
            roles[str(name)] = RoleSettings(
                name=str(name),
                allowed_paths=_string_list(entry.get("allowed_paths")),
                read_only_paths=_string_list(entry.get("read_only_paths")),
                allowed_tools=_string_list(entry.get("allowed_tools")),
                max_files_changed=int(entry.get("max_files_changed", 0)),
                max_total_changed_lines=int(entry.get("max_total_changed_lines", 0)),
                system_prompt=str(entry.get("system_prompt") or ""),
            )

        commands_cfg = data.get("commands") or {}
        commands = {
            key: _string_list(commands_cfg.get(key))
            for key in ("tests", "build", "lint")
        }
        static_cfg = data.get("static_analysis") or {}

        return cls(
            models=models,
            execution=execution,
            store=store,
            roles=roles,
            commands=commands,
            command_timeout=float(commands_cfg.get("timeout", 600)),
            static_command=_string_list(static_cfg.get("command")),
            static_required=bool(static_cfg.get("required", False)),
            raw=data,
        )

    def role(self, name: str) -> RoleSettings:
        try:
            return self.roles[name]
        except KeyError as error:
            known = ", ".join(sorted(self.roles))
            raise ConfigError(f"Unknown role '{name}' (known roles: {known})") from error
