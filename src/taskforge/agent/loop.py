"""Bounded tool-calling conversation against a chat model."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List

from ..config import ModelProfile
from ..pricing import DEFAULT_USD_TO_EUR, Cost, UsageSnapshot, calculate_cost
from ..tools.dispatch import ToolDispatcher
from ..models.llm_client import ChatMessage, ChatModelClient, LLMRateLimitError, ModelTurn

LOGGER = logging.getLogger(__name__)

_RESULT_PREVIEW = 300


@dataclass(slots=True)
class ToolUsage:
    round: int
    id: str
    name: str
    arguments: Dict[str, Any]
    ok: bool
    error: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "round": self.round,
            "id": self.id,
            "name": self.name,
            "arguments": self.arguments,
            "ok": self.ok,
            "error": self.error,
        }


@dataclass(slots=True)
class LoopResult:
    output: str
    rounds_used: int
    tool_usage: List[ToolUsage] = field(default_factory=list)
    usage: UsageSnapshot = field(default_factory=UsageSnapshot)
    cost: Cost = field(default_factory=lambda: Cost(0.0, 0.0))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "output": self.output,
            "roundsUsed": self.rounds_used,
            "toolUsage": [entry.to_dict() for entry in self.tool_usage],
            "usage": self.usage.to_dict(),
            "cost": self.cost.to_dict(),
        }


class LoopExhaustedError(RuntimeError):
    """Raised when the model keeps calling tools past the round budget."""

    def __init__(
        self,
        message: str,
        *,
        rounds_used: int,
        usage: UsageSnapshot,
        cost: Cost,
        tool_usage: List[ToolUsage] | None = None,
    ) -> None:
        super().__init__(message)
        self.rounds_used = rounds_used
        self.usage = usage
        self.cost = cost
        self.tool_usage = list(tool_usage or [])


class ToolCallingLoop:
    """Drive a model through rounds of tool calls until it answers in text.

    Rate-limit errors are retried with exponential backoff (honouring any
    retry-after hint); every other client error propagates unchanged.
    Retried attempts do not count against ``max_rounds``.
    """

    def __init__(
        self,
        client: ChatModelClient,
        *,
        profile: ModelProfile | None = None,
        usd_to_eur: float = DEFAULT_USD_TO_EUR,
        max_retries: int = 3,
        initial_backoff: float = 1.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.client = client
        self.profile = profile
        self.usd_to_eur = usd_to_eur
        self.max_retries = max(0, max_retries)
        self.initial_backoff = initial_backoff
        self._sleep = sleep

    def _complete_with_retry(self, system_prompt: str, messages: List[ChatMessage], dispatcher: ToolDispatcher) -> ModelTurn:
        delay = self.initial_backoff
        attempt = 0
        while True:
            try:
                return self.client.complete(system_prompt, messages, dispatcher.schemas())
            except LLMRateLimitError as error:
                if attempt >= self.max_retries:
                    raise
                attempt += 1
                wait = error.retry_after if error.retry_after is not None else delay
                LOGGER.warning(
                    "Rate limited by model endpoint (attempt %d/%d); retrying in %.2fs",
                    attempt,
                    self.max_retries,
                    wait,
                )
                self._sleep(wait)
                delay *= 2

    def run(
        self,
        system_prompt: str,
        user_message: str,
        dispatcher: ToolDispatcher,
        max_rounds: int,
    ) -> LoopResult:
        messages: List[ChatMessage] = [ChatMessage.user(user_message)]
        usage = UsageSnapshot()
        tool_usage: List[ToolUsage] = []
        rounds_used = 0

        while rounds_used < max_rounds:
            turn = self._complete_with_retry(system_prompt, messages, dispatcher)
            rounds_used += 1
            usage.add(turn.usage)
            LOGGER.debug(
                "Round %d ended (%s) with %d tool call(s)",
                rounds_used,
                turn.stop_reason or "unknown",
                len(turn.invocations),
            )

            if not turn.invocations:
                return LoopResult(
                    output=turn.text,
                    rounds_used=rounds_used,
                    tool_usage=tool_usage,
                    usage=usage,
                    cost=calculate_cost(self.profile, usage, usd_to_eur=self.usd_to_eur),
                )

            messages.append(ChatMessage.assistant(turn.text, turn.invocations))
            for invocation in turn.invocations:
                result = dispatcher.execute(invocation.name, invocation.arguments)
                ok = bool(result.get("ok"))
                error = result.get("error") if not ok else None
                tool_usage.append(
                    ToolUsage(
                        round=rounds_used,
                        id=invocation.id,
                        name=invocation.name,
                        arguments=dict(invocation.arguments),
                        ok=ok,
                        error=str(error) if error is not None else None,
                    )
                )
                LOGGER.debug(
                    "Round %d tool %s -> %s",
                    rounds_used,
                    invocation.name,
                    str(result)[:_RESULT_PREVIEW],
                )
                messages.append(ChatMessage.tool_result(invocation, result))

        cost = calculate_cost(self.profile, usage, usd_to_eur=self.usd_to_eur)
        raise LoopExhaustedError(
            f"Model did not finish within {max_rounds} rounds",
            rounds_used=rounds_used,
            usage=usage,
            cost=cost,
            tool_usage=tool_usage,
        )


__all__ = ["LoopExhaustedError", "LoopResult", "ToolCallingLoop", "ToolUsage"]
