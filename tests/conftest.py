from __future__ import annotations

import json
import shutil
import subprocess
import sys
import textwrap
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from taskforge.config import ModelProfile, Settings  # noqa: E402
from taskforge.models.llm_client import ChatModelClient  # noqa: E402
from taskforge.models.providers import PROVIDERS  # noqa: E402


def _write_sample_project(root: Path) -> None:
    package = root / "src" / "app"
    package.mkdir(parents=True)
    (package / "__init__.py").write_text(
        textwrap.dedent(
            """
            from .calc import add

            __all__ = ["add"]
            """
        ).lstrip(),
        encoding="utf-8",
    )
    (package / "calc.py").write_text(
        textwrap.dedent(
            """
            from __future__ import annotations

            __all__ = ["add"]


            def add(left: int, right: int) -> int:
                return left + right
            """
        ).lstrip(),
        encoding="utf-8",
    )
    tests_dir = root / "tests"
    tests_dir.mkdir()
    (tests_dir / "test_calc.py").write_text(
        "from app import add\n\n\ndef test_add() -> None:\n    assert add(2, 3) == 5\n",
        encoding="utf-8",
    )
    (root / "README.md").write_text("# Sample\n", encoding="utf-8")


def run_git(root: Path, *args: str) -> str:
    completed = subprocess.run(
        ["git", *args],
        cwd=root,
        check=True,
        capture_output=True,
        text=True,
    )
    return completed.stdout


@pytest.fixture()
def git_repo(tmp_path: Path) -> Path:
    """Small committed Python project inside a git work tree."""

    if shutil.which("git") is None:
        pytest.skip("git is not installed")
    root = tmp_path / "git-repo"
    root.mkdir()
    run_git(root, "init")
    run_git(root, "config", "user.email", "dev@example.com")
    run_git(root, "config", "user.name", "Taskforge Tests")
    _write_sample_project(root)
    (root / ".gitignore").write_text(".taskforge/\n__pycache__/\n", encoding="utf-8")
    run_git(root, "add", ".")
    run_git(root, "commit", "-m", "Initial sample project")
    return root


@pytest.fixture()
def plain_repo(tmp_path: Path) -> Path:
    """Same project without version control."""

    root = tmp_path / "plain-repo"
    root.mkdir()
    _write_sample_project(root)
    return root


@pytest.fixture()
def settings() -> Settings:
    """Defaults with external checkers disabled and no backoff delay."""

    return Settings.from_mapping(
        {
            "static_analysis": {"command": []},
            "commands": {"tests": [], "build": [], "lint": []},
            "execution": {"initial_backoff": 0},
        }
    )


@dataclass(slots=True)
class ScriptedTransport:
    """Transport replaying canned responses and recording every payload."""

    responses: List[Any]
    payloads: List[Dict[str, Any]] = field(default_factory=list)

    def __call__(self, payload: Dict[str, Any]) -> str:
        self.payloads.append(json.loads(json.dumps(payload)))
        if not self.responses:
            raise AssertionError("Transport called more often than scripted")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(payload)
        return response if isinstance(response, str) else json.dumps(response)


def openai_text(text: str, prompt_tokens: int = 10, completion_tokens: int = 5) -> Dict[str, Any]:
    return {
        "choices": [{"message": {"role": "assistant", "content": text}, "finish_reason": "stop"}],
        "usage": {"prompt_tokens": prompt_tokens, "completion_tokens": completion_tokens},
    }


def openai_tool_call(name: str, arguments: Dict[str, Any], call_id: str = "call_1") -> Dict[str, Any]:
    return {
        "choices": [
            {
                "message": {
                    "role": "assistant",
                    "content": None,
                    "tool_calls": [
                        {
                            "id": call_id,
                            "type": "function",
                            "function": {"name": name, "arguments": json.dumps(arguments)},
                        }
                    ],
                },
                "finish_reason": "tool_calls",
            }
        ],
        "usage": {"prompt_tokens": 20, "completion_tokens": 10},
    }


ClientFactoryBuilder = Callable[[ScriptedTransport], Callable[[ModelProfile], ChatModelClient]]


@pytest.fixture()
def client_factory_for() -> ClientFactoryBuilder:
    """Build a runner ``client_factory`` that always uses ``transport``."""

    def _build(transport: ScriptedTransport) -> Callable[[ModelProfile], ChatModelClient]:
        def _factory(profile: ModelProfile) -> ChatModelClient:
            return ChatModelClient(PROVIDERS[profile.provider], model=profile.deployment, transport=transport)

        return _factory

    return _build
