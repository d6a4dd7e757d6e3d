"""Language-model clients and provider adapters."""

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
from .providers import (
    PROVIDERS,
    AnthropicMessagesAdapter,
    OpenAIChatAdapter,
    ProviderAdapter,
    build_client,
)

__all__ = [
    "AnthropicMessagesAdapter",
    "ChatMessage",
    "ChatModelClient",
    "LLMClientError",
    "LLMRateLimitError",
    "LLMResponseFormatError",
    "LLMTransportError",
    "ModelTurn",
    "OpenAIChatAdapter",
    "PROVIDERS",
    "ProviderAdapter",
    "ToolInvocation",
    "Transport",
    "build_client",
]
