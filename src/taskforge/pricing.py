"""Token usage accounting and per-model cost calculation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict

from .config import ModelProfile

DEFAULT_USD_TO_EUR = 0.93


@dataclass(slots=True)
class UsageSnapshot:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def add(self, other: "UsageSnapshot") -> None:
        self.prompt_tokens += other.prompt_tokens
        self.completion_tokens += other.completion_tokens
        self.total_tokens += other.total_tokens

    def to_dict(self) -> Dict[str, int]:
        return {
            "promptTokens": self.prompt_tokens,
            "completionTokens": self.completion_tokens,
            "totalTokens": self.total_tokens,
        }


@dataclass(frozen=True, slots=True)
class Cost:
    usd: float
    eur: float

    def to_dict(self) -> Dict[str, Any]:
        return {"usd": self.usd, "eur": self.eur}


def calculate_cost(
    profile: ModelProfile | None,
    usage: UsageSnapshot,
    *,
    usd_to_eur: float = DEFAULT_USD_TO_EUR,
) -> Cost:
    """Price ``usage`` with the per-1M-token rates of ``profile``.

    Unknown models cost nothing rather than failing the run.
    """

    if profile is None:
        return Cost(usd=0.0, eur=0.0)
    usd = (
        usage.prompt_tokens / 1_000_000 * profile.input_cost_per_1m
        + usage.completion_tokens / 1_000_000 * profile.output_cost_per_1m
    )
    usd = round(usd, 6)
    return Cost(usd=usd, eur=round(usd * usd_to_eur, 6))


__all__ = ["Cost", "UsageSnapshot", "calculate_cost"]
