"""
Model Providers
---------------
Adapters that submit a conversation plus the visible tool schemas to a
language model backend and return a ModelResponse.

Contract:
- submit(history, tools) -> FinalText | ToolCalls
- Transport and HTTP failures raise ProviderError (no retries here)
- A payload that does not match the expected shape becomes FinalText
"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Protocol, Sequence, Union
import json
import logging
import uuid

import httpx
from pydantic import BaseModel, ValidationError

from core.errors import ProviderError
from memory.conversation import ConversationTurn, TurnRole

from .client import APIClient, APIConfig

if TYPE_CHECKING:
    from infra.config import ProviderSettings, SecretManager
    from tools.registry import ToolSchema


DEFAULT_BASE_URLS: Dict[str, str] = {
    "openai": "https://api.openai.com/v1",
    "groq": "https://api.groq.com/openai/v1",
    "together": "https://api.together.xyz/v1",
    "ollama": "http://localhost:11434/v1",
    "anthropic": "https://api.anthropic.com/v1",
}

OPENAI_COMPATIBLE = ("openai", "groq", "together", "ollama", "custom")
KEYLESS_PROVIDERS = ("ollama",)

ANTHROPIC_VERSION = "2023-06-01"

logger = logging.getLogger("toolsmith.api.providers")


# ----- Model responses -----

@dataclass
class ToolCallRequest:
    """One tool call requested by the model."""
    name: str
    arguments: Any = field(default_factory=dict)
    call_id: str = field(default_factory=lambda: f"call_{uuid.uuid4().hex[:12]}")

    def to_dict(self) -> Dict[str, Any]:
        return {"call_id": self.call_id, "name": self.name, "arguments": self.arguments}


@dataclass
class FinalText:
    """The model answered without calling tools."""
    text: str


@dataclass
class ToolCalls:
    """The model asked for one or more tool calls."""
    calls: List[ToolCallRequest]
    text: str = ""


ModelResponse = Union[FinalText, ToolCalls]


class Provider(Protocol):
    """Anything that can turn history + tools into a ModelResponse."""
    name: str
    model: str

    async def submit(
        self,
        history: Sequence[ConversationTurn],
        tools: Sequence["ToolSchema"],
    ) -> ModelResponse:
        ...


def decode_arguments(raw: Any) -> Any:
    """Tool-call arguments arrive as a JSON string; undecodable text is kept as _raw."""
    if raw is None or raw == "":
        return {}
    if not isinstance(raw, str):
        return raw
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return {"_raw": raw}


# ----- OpenAI-compatible payloads -----

class _OpenAIFunction(BaseModel):
    name: str
    arguments: Optional[Any] = None


class _OpenAIToolCall(BaseModel):
    id: Optional[str] = None
    function: _OpenAIFunction


class _OpenAIMessage(BaseModel):
    content: Optional[str] = None
    tool_calls: Optional[List[_OpenAIToolCall]] = None


class _OpenAIChoice(BaseModel):
    message: _OpenAIMessage
    finish_reason: Optional[str] = None


class _OpenAIChatCompletion(BaseModel):
    choices: List[_OpenAIChoice]


class _BaseProvider:
    """Shared plumbing: an APIClient and the request/parse hooks."""

    endpoint = ""

    def __init__(
        self,
        name: str,
        model: str,
        base_url: str,
        api_key: Optional[str] = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
        timeout_seconds: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.name = name
        self.model = model
        self.base_url = base_url
        self.max_tokens = max_tokens
        self.temperature = temperature
        self._client = APIClient(
            self._api_config(name, base_url, timeout_seconds, requires_key=name not in KEYLESS_PROVIDERS),
            api_key=api_key,
            transport=transport,
        )

    def _api_config(self, name: str, base_url: str, timeout: float, requires_key: bool) -> APIConfig:
        return APIConfig(name=name, base_url=base_url, timeout_seconds=timeout, requires_key=requires_key)

    def build_payload(self, history: Sequence[ConversationTurn], tools: Sequence["ToolSchema"]) -> Dict:
        raise NotImplementedError

    def parse_response(self, data: Any) -> ModelResponse:
        raise NotImplementedError

    async def submit(
        self,
        history: Sequence[ConversationTurn],
        tools: Sequence["ToolSchema"],
    ) -> ModelResponse:
        payload = self.build_payload(history, tools)
        response = await self._client.post(self.endpoint, payload)
        if not response.success:
            raise ProviderError(
                f"{self.name} request failed: {response.error}",
                provider=self.name,
                status_code=response.status_code,
            )
        logger.debug(f"{self.name} responded in {response.response_time_ms:.0f}ms")
        return self.parse_response(response.data)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name}, model={self.model})"


class OpenAIChatProvider(_BaseProvider):
    """Chat Completions API with native function calling."""

    endpoint = "chat/completions"

    @staticmethod
    def to_messages(history: Sequence[ConversationTurn]) -> List[Dict[str, Any]]:
        messages: List[Dict[str, Any]] = []
        for turn in history:
            if turn.role == TurnRole.ASSISTANT and turn.tool_calls:
                messages.append({
                    "role": "assistant",
                    "content": turn.content or None,
                    "tool_calls": [
                        {
                            "id": call["call_id"],
                            "type": "function",
                            "function": {
                                "name": call["name"],
                                "arguments": json.dumps(call.get("arguments", {}), default=str),
                            },
                        }
                        for call in turn.tool_calls
                    ],
                })
            elif turn.role == TurnRole.TOOL and turn.tool_call_id:
                messages.append({
                    "role": "tool",
                    "tool_call_id": turn.tool_call_id,
                    "content": turn.content,
                })
            elif turn.role == TurnRole.TOOL:
                messages.append({"role": "user", "content": turn.content})
            else:
                messages.append({"role": turn.role.value, "content": turn.content})
        return messages

    def build_payload(self, history: Sequence[ConversationTurn], tools: Sequence["ToolSchema"]) -> Dict:
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": self.to_messages(history),
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
        }
        if tools:
            payload["tools"] = [schema.to_openai_function() for schema in tools]
            payload["tool_choice"] = "auto"
        return payload

    def parse_response(self, data: Any) -> ModelResponse:
        try:
            completion = _OpenAIChatCompletion.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Malformed {self.name} response: {e.error_count()} validation errors")
            return FinalText(text="")

        if not completion.choices:
            logger.warning(f"{self.name} response has no choices")
            return FinalText(text="")

        message = completion.choices[0].message
        text = message.content or ""
        if not message.tool_calls:
            return FinalText(text=text)

        calls = []
        for raw_call in message.tool_calls:
            call = ToolCallRequest(
                name=raw_call.function.name,
                arguments=decode_arguments(raw_call.function.arguments),
            )
            if raw_call.id:
                call.call_id = raw_call.id
            calls.append(call)
        return ToolCalls(calls=calls, text=text)


# ----- Anthropic payloads -----

class _AnthropicBlock(BaseModel):
    type: str
    text: Optional[str] = None
    id: Optional[str] = None
    name: Optional[str] = None
    input: Optional[Any] = None


class _AnthropicMessage(BaseModel):
    content: List[_AnthropicBlock]
    stop_reason: Optional[str] = None


class AnthropicProvider(_BaseProvider):
    """Messages API with tool_use blocks."""

    endpoint = "messages"

    def _api_config(self, name: str, base_url: str, timeout: float, requires_key: bool) -> APIConfig:
        return APIConfig(
            name=name,
            base_url=base_url,
            timeout_seconds=timeout,
            auth_header="x-api-key",
            auth_scheme=None,
            headers={"anthropic-version": ANTHROPIC_VERSION},
        )

    @staticmethod
    def to_messages(history: Sequence[ConversationTurn]) -> List[Dict[str, Any]]:
        """Convert turns; consecutive same-role messages are merged into one."""
        messages: List[Dict[str, Any]] = []

        def push(role: str, blocks: List[Dict[str, Any]]) -> None:
            if messages and messages[-1]["role"] == role:
                messages[-1]["content"].extend(blocks)
            else:
                messages.append({"role": role, "content": blocks})

        for turn in history:
            if turn.role == TurnRole.SYSTEM:
                continue
            if turn.role == TurnRole.USER:
                push("user", [{"type": "text", "text": turn.content}])
            elif turn.role == TurnRole.TOOL and turn.tool_call_id:
                push("user", [{
                    "type": "tool_result",
                    "tool_use_id": turn.tool_call_id,
                    "content": turn.content,
                }])
            elif turn.role == TurnRole.TOOL:
                push("user", [{"type": "text", "text": turn.content}])
            else:
                blocks: List[Dict[str, Any]] = []
                if turn.content:
                    blocks.append({"type": "text", "text": turn.content})
                for call in turn.tool_calls:
                    blocks.append({
                        "type": "tool_use",
                        "id": call["call_id"],
                        "name": call["name"],
                        "input": call.get("arguments", {}),
                    })
                if blocks:
                    push("assistant", blocks)
        return messages

    def build_payload(self, history: Sequence[ConversationTurn], tools: Sequence["ToolSchema"]) -> Dict:
        system = "\n\n".join(t.content for t in history if t.role == TurnRole.SYSTEM)
        payload: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "messages": self.to_messages(history),
        }
        if system:
            payload["system"] = system
        if tools:
            payload["tools"] = [
                {
                    "name": schema.name,
                    "description": schema.description,
                    "input_schema": schema.to_json_schema(),
                }
                for schema in tools
            ]
        return payload

    def parse_response(self, data: Any) -> ModelResponse:
        try:
            message = _AnthropicMessage.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Malformed anthropic response: {e.error_count()} validation errors")
            return FinalText(text="")

        text = "\n".join(b.text for b in message.content if b.type == "text" and b.text)
        calls = [
            ToolCallRequest(
                name=block.name,
                arguments=decode_arguments(block.input),
                call_id=block.id or f"call_{uuid.uuid4().hex[:12]}",
            )
            for block in message.content
            if block.type == "tool_use" and block.name
        ]
        if calls:
            return ToolCalls(calls=calls, text=text)
        return FinalText(text=text)


def create_provider(
    settings: "ProviderSettings",
    secrets: "SecretManager",
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> _BaseProvider:
    """
    Build the provider named in settings.

    Raises:
        ProviderError: unknown provider, missing base_url for `custom`,
            or a missing API key where one is required
    """
    name = settings.name
    if name != "anthropic" and name not in OPENAI_COMPATIBLE:
        known = ", ".join(sorted(set(OPENAI_COMPATIBLE) | {"anthropic"}))
        raise ProviderError(f"Unknown provider '{name}' (known: {known})", provider=name)

    base_url = settings.base_url or DEFAULT_BASE_URLS.get(name)
    if not base_url:
        raise ProviderError(f"Provider '{name}' needs a base_url", provider=name)

    api_key = secrets.get_api_key(name, settings.api_key_env)
    if not api_key and name not in KEYLESS_PROVIDERS:
        env_var = secrets.env_var_for(name, settings.api_key_env)
        raise ProviderError(f"API key for '{name}' not set (expected in {env_var})", provider=name)

    cls = AnthropicProvider if name == "anthropic" else OpenAIChatProvider
    provider = cls(
        name=name,
        model=settings.model,
        base_url=base_url,
        api_key=api_key,
        max_tokens=settings.max_tokens,
        temperature=settings.temperature,
        timeout_seconds=settings.timeout_seconds,
        transport=transport,
    )
    logger.info(f"Using provider {name} with model {settings.model}")
    return provider
