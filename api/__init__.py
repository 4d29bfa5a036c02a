# API module - Model providers and web collaborators
# One client per service, secrets from the environment only

from .client import APIClient, APIConfig, APIResponse, APIStatus
from .providers import (
    Provider, ModelResponse, FinalText, ToolCalls, ToolCallRequest,
    OpenAIChatProvider, AnthropicProvider, create_provider,
)
from .search import WebSearchClient

__all__ = [
    "APIClient", "APIConfig", "APIResponse", "APIStatus",
    "Provider", "ModelResponse", "FinalText", "ToolCalls", "ToolCallRequest",
    "OpenAIChatProvider", "AnthropicProvider", "create_provider",
    "WebSearchClient",
]
