"""Provider-neutral chat client used by the tool-calling loop.

The loop only ever sees :class:`ChatMessage`, :class:`ToolInvocation` and
:class:`ModelTurn`; translating them to and from a provider's wire format is
the job of a :class:`~taskforge.models.providers.ProviderAdapter`.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Literal, Mapping, Optional, Sequence

from ..pricing import UsageSnapshot

if TYPE_CHECKING:
    from ..tools.schemas import ToolSchema
    from .providers import ProviderAdapter

__all__ = [
    "ChatMessage",
    "ChatModelClient",
    "LLMClientError",
    "LLMRateLimitError",
    "LLMResponseFormatError",
    "LLMTransportError",
    "ModelTurn",
    "ToolInvocation",
    "Transport",
]

LOGGER = logging.getLogger(__name__)

Transport = Callable[[Dict[str, Any]], str]


class LLMClientError(RuntimeError):
    """Base error raised for language-model client failures."""


class LLMTransportError(LLMClientError):
    """Raised when the underlying transport fails to return a response."""

    def __init__(self, message: str, *, status: int | None = None, code: str | None = None) -> None:
        super().__init__(message)
        self.status = status
        self.code = code


class LLMRateLimitError(LLMTransportError):
    """Raised when the endpoint signals rate limiting."""

    def __init__(
        self,
        message: str,
        *,
        status: int | None = 429,
        code: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, status=status, code=code)
        self.retry_after = retry_after


class LLMResponseFormatError(LLMClientError):
    """Raised when the endpoint returns a payload the adapter cannot read."""


@dataclass(frozen=True, slots=True)
class ToolInvocation:
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ChatMessage:
    """One turn of the provider-neutral conversation.

    Assistant turns may carry ``invocations``; tool turns answer exactly one
    invocation identified by ``tool_call_id``.
    """

    role: Literal["user", "assistant", "tool"]
    content: str = ""
    invocations: List[ToolInvocation] = field(default_factory=list)
    tool_call_id: Optional[str] = None
    is_error: bool = False

    @classmethod
    def user(cls, content: str) -> "ChatMessage":
        return cls(role="user", content=content)

    @classmethod
    def assistant(cls, content: str, invocations: Sequence[ToolInvocation] = ()) -> "ChatMessage":
        return cls(role="assistant", content=content, invocations=list(invocations))

    @classmethod
    def tool_result(cls, invocation: ToolInvocation, result: Mapping[str, Any]) -> "ChatMessage":
        return cls(
            role="tool",
            content=json.dumps(result, default=str),
            tool_call_id=invocation.id,
            is_error=result.get("ok") is False,
        )


@dataclass(slots=True)
class ModelTurn:
    text: str
    invocations: List[ToolInvocation] = field(default_factory=list)
    usage: UsageSnapshot = field(default_factory=UsageSnapshot)
    stop_reason: Optional[str] = None


class ChatModelClient:
    """Send conversations to one deployed model through a provider adapter."""

    def __init__(
        self,
        adapter: "ProviderAdapter",
        *,
        model: str,
        transport: Transport,
        max_tokens: int = 4096,
        temperature: float = 0.0,
    ) -> None:
        self.adapter = adapter
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self._transport = transport

    def complete(
        self,
        system_prompt: str,
        messages: Sequence[ChatMessage],
        tools: Sequence["ToolSchema"] = (),
    ) -> ModelTurn:
        payload = self.adapter.build_payload(
            model=self.model,
            system_prompt=system_prompt,
            messages=messages,
            tools=tools,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
        )
        try:
            raw = self._transport(payload)
        except LLMClientError:
            raise
        except Exception as error:  # noqa: BLE001 - any transport failure becomes LLMTransportError
            raise LLMTransportError(f"Transport rejected the request: {error}") from error
        turn = self.adapter.parse_response(raw)
        LOGGER.debug(
            "Model %s returned %d tool call(s), %d tokens",
            self.model,
            len(turn.invocations),
            turn.usage.total_tokens,
        )
        return turn
