from __future__ import annotations

import json
from pathlib import Path
from typing import List

import pytest

from conftest import ScriptedTransport, openai_text, openai_tool_call
from taskforge.agent import LoopExhaustedError, ToolCallingLoop
from taskforge.config import ModelProfile, Settings
from taskforge.models import (
    AnthropicMessagesAdapter,
    ChatModelClient,
    LLMRateLimitError,
    LLMResponseFormatError,
    LLMTransportError,
    OpenAIChatAdapter,
)
from taskforge.models.providers import error_from_http
from taskforge.policy import PolicyConfig
from taskforge.tools import ToolDispatcher
from taskforge.tools.schemas import TOOL_SCHEMAS

PROFILE = ModelProfile(
    id="test-model",
    provider="openai",
    deployment="test-model",
    input_cost_per_1m=1_000_000.0,
    output_cost_per_1m=2_000_000.0,
)


def _dispatcher(root: Path) -> ToolDispatcher:
    policy = PolicyConfig(
        project_root=root,
        allowed_paths=("src/", "tests/", "README.md"),
        max_files_changed=5,
        max_total_changed_lines=100,
        allowed_tools=frozenset(TOOL_SCHEMAS),
    )
    return ToolDispatcher(policy)


def _loop(transport: ScriptedTransport, adapter=None, sleeps: List[float] | None = None, **kwargs) -> ToolCallingLoop:
    client = ChatModelClient(adapter or OpenAIChatAdapter(), model="test-model", transport=transport)
    recorder = sleeps if sleeps is not None else []
    return ToolCallingLoop(client, profile=PROFILE, usd_to_eur=0.5, sleep=recorder.append, **kwargs)


def _anthropic_tool_use(name: str, arguments: dict, block_id: str = "toolu_1") -> dict:
    return {
        "type": "message",
        "role": "assistant",
        "content": [
            {"type": "text", "text": "Reading the file."},
            {"type": "tool_use", "id": block_id, "name": name, "input": arguments},
        ],
        "stop_reason": "tool_use",
        "usage": {"input_tokens": 7, "output_tokens": 3},
    }


def _anthropic_text(text: str) -> dict:
    return {
        "type": "message",
        "role": "assistant",
        "content": [{"type": "text", "text": text}],
        "stop_reason": "end_turn",
        "usage": {"input_tokens": 5, "output_tokens": 2},
    }


def test_openai_loop_runs_tools_then_answers(plain_repo: Path) -> None:
    transport = ScriptedTransport(
        [openai_tool_call("read_file", {"path": "src/app/calc.py"}), openai_text("All done.")]
    )

    result = _loop(transport).run("system", "Explain calc.py", _dispatcher(plain_repo), max_rounds=4)

    assert result.output == "All done."
    assert result.rounds_used == 2
    assert [(usage.name, usage.ok) for usage in result.tool_usage] == [("read_file", True)]
    assert result.usage.prompt_tokens == 30
    assert result.usage.completion_tokens == 15
    assert result.cost.usd == pytest.approx(30 + 30)
    assert result.cost.eur == pytest.approx(30)

    second = transport.payloads[1]["messages"]
    assert second[0] == {"role": "system", "content": "system"}
    assert second[2]["tool_calls"][0]["function"]["name"] == "read_file"
    assert second[3]["role"] == "tool"
    assert second[3]["tool_call_id"] == "call_1"
    assert json.loads(second[3]["content"])["ok"] is True


def test_anthropic_loop_uses_content_blocks(plain_repo: Path) -> None:
    transport = ScriptedTransport(
        [_anthropic_tool_use("read_file", {"path": "README.md"}), _anthropic_text("Summary.")]
    )

    result = _loop(transport, AnthropicMessagesAdapter()).run(
        "be brief", "Summarise README", _dispatcher(plain_repo), max_rounds=3
    )

    assert result.output == "Summary."
    assert result.usage.total_tokens == 17
    payload = transport.payloads[1]
    assert payload["system"] == "be brief"
    roles = [message["role"] for message in payload["messages"]]
    assert roles == ["user", "assistant", "user"]
    tool_use = payload["messages"][1]["content"][1]
    assert tool_use == {"type": "tool_use", "id": "toolu_1", "name": "read_file", "input": {"path": "README.md"}}
    tool_result = payload["messages"][2]["content"][0]
    assert tool_result["type"] == "tool_result"
    assert tool_result["tool_use_id"] == "toolu_1"
    assert "is_error" not in tool_result
    assert payload["tools"][0].keys() == {"name", "description", "input_schema"}


def test_failed_tool_is_fed_back_as_error(plain_repo: Path) -> None:
    transport = ScriptedTransport(
        [_anthropic_tool_use("read_file", {"path": "../escape.txt"}), _anthropic_text("Could not read it.")]
    )

    result = _loop(transport, AnthropicMessagesAdapter()).run("s", "u", _dispatcher(plain_repo), max_rounds=3)

    assert result.tool_usage[0].ok is False
    assert result.tool_usage[0].error
    assert transport.payloads[1]["messages"][2]["content"][0]["is_error"] is True


def test_rate_limit_is_retried_with_backoff(plain_repo: Path) -> None:
    sleeps: List[float] = []
    transport = ScriptedTransport(
        [
            LLMRateLimitError("slow down"),
            LLMRateLimitError("slow down", retry_after=7),
            openai_text("Recovered."),
        ]
    )

    result = _loop(transport, sleeps=sleeps, initial_backoff=1.5).run(
        "s", "u", _dispatcher(plain_repo), max_rounds=1
    )

    assert result.output == "Recovered."
    assert result.rounds_used == 1
    assert sleeps == [1.5, 7]


def test_rate_limit_gives_up_after_max_retries(plain_repo: Path) -> None:
    sleeps: List[float] = []
    transport = ScriptedTransport([LLMRateLimitError("busy") for _ in range(4)])

    with pytest.raises(LLMRateLimitError):
        _loop(transport, sleeps=sleeps, max_retries=3, initial_backoff=1.0).run(
            "s", "u", _dispatcher(plain_repo), max_rounds=2
        )

    assert sleeps == [1.0, 2.0, 4.0]


def test_other_errors_are_not_retried(plain_repo: Path) -> None:
    sleeps: List[float] = []
    transport = ScriptedTransport([LLMTransportError("HTTP 500: boom", status=500)])

    with pytest.raises(LLMTransportError):
        _loop(transport, sleeps=sleeps).run("s", "u", _dispatcher(plain_repo), max_rounds=2)

    assert sleeps == []


def test_round_budget_exhaustion_carries_usage(plain_repo: Path) -> None:
    transport = ScriptedTransport(
        [openai_tool_call("list_files", {}, call_id=f"call_{index}") for index in range(2)]
    )

    with pytest.raises(LoopExhaustedError) as excinfo:
        _loop(transport).run("s", "u", _dispatcher(plain_repo), max_rounds=2)

    error = excinfo.value
    assert error.rounds_used == 2
    assert error.usage.prompt_tokens == 40
    assert error.cost.usd > 0
    assert len(error.tool_usage) == 2


def test_invalid_tool_arguments_are_a_format_error(plain_repo: Path) -> None:
    broken = openai_tool_call("read_file", {})
    broken["choices"][0]["message"]["tool_calls"][0]["function"]["arguments"] = "{not json"
    transport = ScriptedTransport([broken])

    with pytest.raises(LLMResponseFormatError):
        _loop(transport).run("s", "u", _dispatcher(plain_repo), max_rounds=2)


@pytest.mark.parametrize(
    ("status", "body", "expected"),
    [
        (429, "", LLMRateLimitError),
        (400, json.dumps({"error": {"code": "rate_limit_exceeded", "message": "x"}}), LLMRateLimitError),
        (None, json.dumps({"error": {"code": "RateLimitReached"}}), LLMRateLimitError),
        (529, json.dumps({"type": "error", "error": {"type": "rate_limit_error"}}), LLMRateLimitError),
        (500, json.dumps({"error": {"code": "server_error", "message": "x"}}), LLMTransportError),
    ],
)
def test_rate_limit_detection(status, body, expected) -> None:
    error = error_from_http(status, body, {"retry-after": "3"})

    assert type(error) is expected
    if expected is LLMRateLimitError:
        assert error.retry_after == 3.0


def test_error_body_in_successful_response_is_classified() -> None:
    adapter = OpenAIChatAdapter()

    with pytest.raises(LLMRateLimitError):
        adapter.parse_response(json.dumps({"error": {"code": "rate_limit_exceeded", "message": "later"}}))


def test_settings_drive_client_selection() -> None:
    settings = Settings.from_mapping({"models": {"plan": "gpt-4.1", "execute": "claude-opus-4.1"}})

    assert settings.models.resolve("coder", "plan").provider == "openai"
    assert settings.models.resolve("coder", "execute").provider == "anthropic"
    assert settings.models.resolve("documenter", "execute").id == "gpt-4.1-mini"


def test_adapters_report_stop_reasons() -> None:
    openai_turn = OpenAIChatAdapter().parse_response(json.dumps(openai_tool_call("list_files", {})))
    anthropic_turn = AnthropicMessagesAdapter().parse_response(json.dumps(_anthropic_text("done")))

    assert (openai_turn.stop_reason, [call.name for call in openai_turn.invocations]) == ("tool_calls", ["list_files"])
    assert (anthropic_turn.stop_reason, anthropic_turn.text) == ("end_turn", "done")
