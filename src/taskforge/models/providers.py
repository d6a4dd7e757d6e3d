"""Wire-format adapters for the supported chat providers.

Two families are supported:

* ``openai``: a flat, role-tagged message list, ``tool_calls`` entries whose
  ``function.arguments`` is a JSON string, and ``role: tool`` results.
* ``anthropic``: a top-level ``system`` field, messages whose content is a
  list of blocks, ``tool_use`` blocks from the assistant and ``tool_result``
  blocks sent back inside a user turn.

Only this module knows either format.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Mapping, Sequence

from ..config import ModelProfile, ModelSettings
from ..pricing import UsageSnapshot
from ..tools.schemas import ToolSchema
from .llm_client import (
    ChatMessage,
    ChatModelClient,
    LLMClientError,
    LLMRateLimitError,
    LLMResponseFormatError,
    LLMTransportError,
    ModelTurn,
    ToolInvocation,
    Transport,
)

LOGGER = logging.getLogger(__name__)

RATE_LIMIT_CODES = frozenset({"rate_limit_exceeded", "RateLimitReached", "rate_limit_error"})


def _parse_retry_after(value: Any) -> float | None:
    if value is None:
        return None
    try:
        seconds = float(str(value).strip())
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


def _error_code(body: Any) -> str | None:
    if not isinstance(body, Mapping):
        return None
    error = body.get("error")
    if isinstance(error, Mapping):
        for key in ("code", "type"):
            value = error.get(key)
            if isinstance(value, str) and value:
                return value
    elif isinstance(error, str) and error:
        return error
    code = body.get("code")
    return code if isinstance(code, str) else None


def _error_message(body: Any, fallback: str) -> str:
    if isinstance(body, Mapping):
        error = body.get("error")
        if isinstance(error, Mapping) and isinstance(error.get("message"), str):
            return error["message"]
    return fallback


def error_from_http(status: int | None, body: str, headers: Mapping[str, Any] | None = None) -> LLMTransportError:
    """Classify an HTTP failure, recognising every rate-limit signal."""

    try:
        parsed: Any = json.loads(body) if body else None
    except json.JSONDecodeError:
        parsed = None
    code = _error_code(parsed)
    message = _error_message(parsed, body.strip()[:500] or "no response body")
    retry_after = None
    if headers is not None:
        retry_after = _parse_retry_after(headers.get("retry-after") or headers.get("Retry-After"))
    if status == 429 or (code is not None and code in RATE_LIMIT_CODES):
        return LLMRateLimitError(
            f"Rate limited (HTTP {status}): {message}",
            status=status,
            code=code,
            retry_after=retry_after,
        )
    return LLMTransportError(f"HTTP {status}: {message}", status=status, code=code)


def _load_body(raw: str) -> Dict[str, Any]:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as error:
        raise LLMResponseFormatError(f"Model response is not JSON: {error}") from error
    if not isinstance(data, dict):
        raise LLMResponseFormatError("Model response must be a JSON object.")
    if data.get("error") or data.get("type") == "error":
        raise error_from_http(None, raw)
    return data


def _as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


class ProviderAdapter:
    """Translate between provider-neutral messages and one wire format."""

    name = "base"

    def build_payload(
        self,
        *,
        model: str,
        system_prompt: str,
        messages: Sequence[ChatMessage],
        tools: Sequence[ToolSchema],
        max_tokens: int,
        temperature: float,
    ) -> Dict[str, Any]:
        raise NotImplementedError

    def parse_response(self, raw: str) -> ModelTurn:
        raise NotImplementedError

    def headers(self, api_key: str, config: Mapping[str, Any]) -> Dict[str, str]:
        raise NotImplementedError


class OpenAIChatAdapter(ProviderAdapter):
    name = "openai"

    def build_payload(
        self,
        *,
        model: str,
        system_prompt: str,
        messages: Sequence[ChatMessage],
        tools: Sequence[ToolSchema],
        max_tokens: int,
        temperature: float,
    ) -> Dict[str, Any]:
        wire: List[Dict[str, Any]] = []
        if system_prompt:
            wire.append({"role": "system", "content": system_prompt})
        for message in messages:
            if message.role == "tool":
                wire.append(
                    {
                        "role": "tool",
                        "tool_call_id": message.tool_call_id,
                        "content": message.content,
                    }
                )
            elif message.role == "assistant":
                entry: Dict[str, Any] = {"role": "assistant", "content": message.content or None}
                if message.invocations:
                    entry["tool_calls"] = [
                        {
                            "id": invocation.id,
                            "type": "function",
                            "function": {
                                "name": invocation.name,
                                "arguments": json.dumps(invocation.arguments),
                            },
                        }
                        for invocation in message.invocations
                    ]
                wire.append(entry)
            else:
                wire.append({"role": "user", "content": message.content})

        payload: Dict[str, Any] = {
            "model": model,
            "messages": wire,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": schema.name,
                        "description": schema.description,
                        "parameters": schema.parameters,
                    },
                }
                for schema in tools
            ]
            payload["tool_choice"] = "auto"
        return payload

    def parse_response(self, raw: str) -> ModelTurn:
        data = _load_body(raw)
        choices = data.get("choices")
        if not isinstance(choices, list) or not choices:
            raise LLMResponseFormatError("Chat completion response has no choices.")
        choice = choices[0] if isinstance(choices[0], dict) else {}
        message = choice.get("message") or {}
        text = message.get("content") or ""
        if not isinstance(text, str):
            text = json.dumps(text)

        invocations: List[ToolInvocation] = []
        for call in message.get("tool_calls") or []:
            function = call.get("function") or {}
            raw_arguments = function.get("arguments") or "{}"
            if isinstance(raw_arguments, str):
                try:
                    arguments = json.loads(raw_arguments) if raw_arguments.strip() else {}
                except json.JSONDecodeError as error:
                    raise LLMResponseFormatError(
                        f"Tool call {function.get('name')!r} has invalid JSON arguments: {error}"
                    ) from error
            else:
                arguments = raw_arguments
            invocations.append(
                ToolInvocation(
                    id=str(call.get("id") or f"call_{len(invocations)}"),
                    name=str(function.get("name") or ""),
                    arguments=arguments if isinstance(arguments, dict) else {"value": arguments},
                )
            )

        usage_data = data.get("usage") or {}
        prompt = _as_int(usage_data.get("prompt_tokens"))
        completion = _as_int(usage_data.get("completion_tokens"))
        usage = UsageSnapshot(
            prompt_tokens=prompt,
            completion_tokens=completion,
            total_tokens=_as_int(usage_data.get("total_tokens")) or prompt + completion,
        )
        return ModelTurn(
            text=text,
            invocations=invocations,
            usage=usage,
            stop_reason=choice.get("finish_reason"),
        )

    def headers(self, api_key: str, config: Mapping[str, Any]) -> Dict[str, str]:
        if config.get("auth") == "api-key":
            # Azure-hosted deployments authenticate with an ``api-key`` header.
            return {"api-key": api_key}
        return {"Authorization": f"Bearer {api_key}"}


class AnthropicMessagesAdapter(ProviderAdapter):
    name = "anthropic"

    def build_payload(
        self,
        *,
        model: str,
        system_prompt: str,
        messages: Sequence[ChatMessage],
        tools: Sequence[ToolSchema],
        max_tokens: int,
        temperature: float,
    ) -> Dict[str, Any]:
        wire: List[Dict[str, Any]] = []

        def _append(role: str, blocks: List[Dict[str, Any]]) -> None:
            # Consecutive turns of the same role are merged into one.
            if wire and wire[-1]["role"] == role:
                wire[-1]["content"].extend(blocks)
            else:
                wire.append({"role": role, "content": blocks})

        for message in messages:
            if message.role == "tool":
                block: Dict[str, Any] = {
                    "type": "tool_result",
                    "tool_use_id": message.tool_call_id,
                    "content": message.content,
                }
                if message.is_error:
                    block["is_error"] = True
                _append("user", [block])
            elif message.role == "assistant":
                blocks: List[Dict[str, Any]] = []
                if message.content:
                    blocks.append({"type": "text", "text": message.content})
                for invocation in message.invocations:
                    blocks.append(
                        {
                            "type": "tool_use",
                            "id": invocation.id,
                            "name": invocation.name,
                            "input": invocation.arguments,
                        }
                    )
                _append("assistant", blocks)
            else:
                _append("user", [{"type": "text", "text": message.content}])

        payload: Dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": wire,
        }
        if system_prompt:
            payload["system"] = system_prompt
        if tools:
            payload["tools"] = [
                {
                    "name": schema.name,
                    "description": schema.description,
                    "input_schema": schema.parameters,
                }
                for schema in tools
            ]
        return payload

    def parse_response(self, raw: str) -> ModelTurn:
        data = _load_body(raw)
        content = data.get("content")
        if not isinstance(content, list):
            raise LLMResponseFormatError("Messages response has no content blocks.")
        texts: List[str] = []
        invocations: List[ToolInvocation] = []
        for block in content:
            if not isinstance(block, dict):
                continue
            kind = block.get("type")
            if kind == "text" and isinstance(block.get("text"), str):
                texts.append(block["text"])
            elif kind == "tool_use":
                arguments = block.get("input")
                invocations.append(
                    ToolInvocation(
                        id=str(block.get("id") or f"toolu_{len(invocations)}"),
                        name=str(block.get("name") or ""),
                        arguments=arguments if isinstance(arguments, dict) else {},
                    )
                )
        usage_data = data.get("usage") or {}
        prompt = _as_int(usage_data.get("input_tokens"))
        completion = _as_int(usage_data.get("output_tokens"))
        return ModelTurn(
            text="\n".join(texts),
            invocations=invocations,
            usage=UsageSnapshot(
                prompt_tokens=prompt,
                completion_tokens=completion,
                total_tokens=prompt + completion,
            ),
            stop_reason=data.get("stop_reason"),
        )

    def headers(self, api_key: str, config: Mapping[str, Any]) -> Dict[str, str]:
        return {
            "x-api-key": api_key,
            "anthropic-version": str(config.get("version") or "2023-06-01"),
        }


PROVIDERS: Dict[str, ProviderAdapter] = {
    adapter.name: adapter for adapter in (OpenAIChatAdapter(), AnthropicMessagesAdapter())
}


def http_transport(url: str, headers: Mapping[str, str], *, timeout: float = 120.0) -> Transport:
    """Default HTTP transport posting JSON payloads with :mod:`urllib`."""

    import urllib.error
    import urllib.request

    def _send(payload: Dict[str, Any]) -> str:
        data = json.dumps(payload).encode("utf-8")
        request = urllib.request.Request(
            url,
            data=data,
            headers={"Content-Type": "application/json", **headers},
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=timeout) as response:
                raw = response.read()
                status = getattr(response, "status", 200)
        except TimeoutError as error:  # pragma: no cover - network-dependent
            raise LLMTransportError("Model endpoint timed out.") from error
        except urllib.error.HTTPError as error:  # pragma: no cover - network-dependent
            body = error.read().decode("utf-8", errors="ignore")
            raise error_from_http(error.code, body, error.headers) from error
        except urllib.error.URLError as error:  # pragma: no cover - network-dependent
            raise LLMTransportError(f"Failed to reach model endpoint: {error.reason}") from error

        if status >= 400:
            raise LLMTransportError(f"Unexpected HTTP status {status}", status=status)
        return raw.decode("utf-8")

    return _send


def build_client(
    profile: ModelProfile,
    models: ModelSettings,
    *,
    transport: Transport | None = None,
) -> ChatModelClient:
    """Create a :class:`ChatModelClient` for ``profile``.

    Without an explicit ``transport`` the provider endpoint and API key are
    read from configuration.
    """

    try:
        adapter = PROVIDERS[profile.provider]
    except KeyError as error:
        raise LLMClientError(f"Unsupported provider '{profile.provider}' for model '{profile.id}'") from error
    if transport is None:
        provider_cfg = models.providers.get(profile.provider) or {}
        api_key = models.api_key(profile.provider)
        if not api_key:
            raise LLMClientError(f"No API key configured for provider '{profile.provider}'")
        base_url = provider_cfg.get("base_url")
        if not base_url:
            raise LLMClientError(f"No endpoint configured for provider '{profile.provider}'")
        transport = http_transport(
            str(base_url),
            adapter.headers(api_key, provider_cfg),
            timeout=models.timeout,
        )
    return ChatModelClient(
        adapter,
        model=profile.deployment,
        transport=transport,
        max_tokens=models.max_tokens,
    )


__all__ = [
    "AnthropicMessagesAdapter",
    "OpenAIChatAdapter",
    "PROVIDERS",
    "ProviderAdapter",
    "RATE_LIMIT_CODES",
    "build_client",
    "error_from_http",
    "http_transport",
]
