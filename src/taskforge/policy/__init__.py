"""Access policy evaluation for tool calls."""

from .engine import ActionKind, PolicyAction, PolicyConfig, PolicyDecision, evaluate

__all__ = ["ActionKind", "PolicyAction", "PolicyConfig", "PolicyDecision", "evaluate"]
