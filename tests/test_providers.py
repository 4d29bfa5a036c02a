"""
Provider Tests
--------------
Payload building and response parsing for the OpenAI-compatible and
Anthropic adapters, served through httpx.MockTransport.
"""

import asyncio
import json

import httpx
import pytest

from api.client import APIClient, APIConfig, APIStatus, classify_status
from api.providers import (
    AnthropicProvider,
    FinalText,
    OpenAIChatProvider,
    ToolCalls,
    create_provider,
    decode_arguments,
)
from core.errors import ProviderError
from infra.config import ProviderSettings, SecretManager
from memory.conversation import ConversationHistory
from tools.registry import ParameterType, ToolParameter, ToolSchema


TOOLS = [
    ToolSchema("calculate", "Evaluate math", [ToolParameter("expression", ParameterType.STRING)]),
]


def _history():
    history = ConversationHistory()
    history.add_system_turn("be brief")
    history.add_user_turn("what is 2+2")
    history.add_assistant_turn("", tool_calls=[
        {"call_id": "call_1", "name": "calculate", "arguments": {"expression": "2+2"}},
    ])
    history.add_tool_turn("calculate", "Tool 'calculate' returned:\nResult: 4", tool_call_id="call_1")
    return history.turns


class Recorder:
    """MockTransport handler that records requests and replays one response."""

    def __init__(self, status=200, body=None, text=None):
        self.status = status
        self.body = body
        self.text = text
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.text is not None:
            return httpx.Response(self.status, text=self.text)
        return httpx.Response(self.status, json=self.body)

    @property
    def payload(self):
        return json.loads(self.requests[-1].content)


def _openai(recorder, name="openai"):
    return OpenAIChatProvider(
        name=name, model="gpt-test", base_url="https://api.test/v1",
        api_key="sk-test", transport=httpx.MockTransport(recorder),
    )


def _anthropic(recorder):
    return AnthropicProvider(
        name="anthropic", model="claude-test", base_url="https://api.anthropic.test/v1",
        api_key="ak-test", transport=httpx.MockTransport(recorder),
    )


def _submit(provider, history=None):
    return asyncio.run(provider.submit(history if history is not None else _history(), TOOLS))


class TestDecodeArguments:

    def test_json_string(self):
        assert decode_arguments('{"a": 1}') == {"a": 1}

    def test_empty(self):
        assert decode_arguments("") == {}
        assert decode_arguments(None) == {}

    def test_already_decoded(self):
        assert decode_arguments({"a": 1}) == {"a": 1}

    def test_malformed_kept_raw(self):
        assert decode_arguments("{not json") == {"_raw": "{not json"}


class TestOpenAIProvider:

    def test_request_shape(self):
        recorder = Recorder(body={"choices": [{"message": {"content": "4"}}]})
        _submit(_openai(recorder))

        request = recorder.requests[0]
        assert str(request.url) == "https://api.test/v1/chat/completions"
        assert request.headers["Authorization"] == "Bearer sk-test"

        payload = recorder.payload
        assert payload["model"] == "gpt-test"
        assert payload["tool_choice"] == "auto"
        assert payload["tools"][0]["function"]["name"] == "calculate"
        roles = [m["role"] for m in payload["messages"]]
        assert roles == ["system", "user", "assistant", "tool"]
        assert payload["messages"][2]["tool_calls"][0]["id"] == "call_1"
        assert json.loads(payload["messages"][2]["tool_calls"][0]["function"]["arguments"]) == {
            "expression": "2+2"
        }
        assert payload["messages"][3]["tool_call_id"] == "call_1"

    def test_final_text(self):
        recorder = Recorder(body={"choices": [{"message": {"content": "It is 4."}}]})
        assert _submit(_openai(recorder)) == FinalText("It is 4.")

    def test_tool_calls(self):
        recorder = Recorder(body={"choices": [{"message": {
            "content": None,
            "tool_calls": [
                {"id": "call_a", "type": "function",
                 "function": {"name": "calculate", "arguments": '{"expression": "1+1"}'}},
                {"id": "call_b", "type": "function",
                 "function": {"name": "calculate", "arguments": "oops"}},
            ],
        }}]})
        response = _submit(_openai(recorder))

        assert isinstance(response, ToolCalls)
        assert [c.call_id for c in response.calls] == ["call_a", "call_b"]
        assert response.calls[0].arguments == {"expression": "1+1"}
        assert response.calls[1].arguments == {"_raw": "oops"}

    def test_malformed_payload_is_empty_final_text(self):
        recorder = Recorder(body={"unexpected": True})
        assert _submit(_openai(recorder)) == FinalText("")

    def test_no_choices(self):
        recorder = Recorder(body={"choices": []})
        assert _submit(_openai(recorder)) == FinalText("")

    def test_http_error_raises_provider_error(self):
        recorder = Recorder(status=401, body={"error": {"message": "bad key"}})
        with pytest.raises(ProviderError) as exc_info:
            _submit(_openai(recorder))

        assert exc_info.value.status_code == 401
        assert "Authentication failed: bad key" in exc_info.value.message
        assert "sk-test" not in exc_info.value.message

    def test_invalid_json_body_raises_provider_error(self):
        recorder = Recorder(text="<html>gateway</html>")
        with pytest.raises(ProviderError):
            _submit(_openai(recorder))

    def test_network_error_raises_provider_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        provider = OpenAIChatProvider(
            name="openai", model="m", base_url="https://api.test/v1",
            api_key="k", transport=httpx.MockTransport(handler),
        )
        with pytest.raises(ProviderError, match="Network error"):
            _submit(provider)


class TestAnthropicProvider:

    def test_request_shape(self):
        recorder = Recorder(body={"content": [{"type": "text", "text": "4"}], "stop_reason": "end_turn"})
        _submit(_anthropic(recorder))

        request = recorder.requests[0]
        assert str(request.url) == "https://api.anthropic.test/v1/messages"
        assert request.headers["x-api-key"] == "ak-test"
        assert request.headers["anthropic-version"] == "2023-06-01"
        assert "authorization" not in request.headers

        payload = recorder.payload
        assert payload["system"] == "be brief"
        assert payload["tools"][0]["input_schema"]["properties"]["expression"]["type"] == "string"
        assert [m["role"] for m in payload["messages"]] == ["user", "assistant", "user"]
        assert payload["messages"][1]["content"][0] == {
            "type": "tool_use", "id": "call_1", "name": "calculate", "input": {"expression": "2+2"},
        }
        assert payload["messages"][2]["content"][0]["type"] == "tool_result"

    def test_consecutive_tool_results_merged(self):
        history = ConversationHistory()
        history.add_user_turn("go")
        history.add_assistant_turn("", tool_calls=[
            {"call_id": "a", "name": "calculate", "arguments": {}},
            {"call_id": "b", "name": "calculate", "arguments": {}},
        ])
        history.add_tool_turn("calculate", "one", tool_call_id="a")
        history.add_tool_turn("calculate", "two", tool_call_id="b")

        messages = AnthropicProvider.to_messages(history.turns)
        assert [m["role"] for m in messages] == ["user", "assistant", "user"]
        assert [b["tool_use_id"] for b in messages[2]["content"]] == ["a", "b"]

    def test_tool_use_response(self):
        recorder = Recorder(body={"content": [
            {"type": "text", "text": "Let me check."},
            {"type": "tool_use", "id": "toolu_1", "name": "calculate", "input": {"expression": "2+2"}},
        ]})
        response = _submit(_anthropic(recorder))

        assert isinstance(response, ToolCalls)
        assert response.text == "Let me check."
        assert response.calls[0].call_id == "toolu_1"
        assert response.calls[0].arguments == {"expression": "2+2"}

    def test_malformed_payload(self):
        recorder = Recorder(body={"content": "not a list"})
        assert _submit(_anthropic(recorder)) == FinalText("")

    def test_server_error(self):
        recorder = Recorder(status=529, body={"error": {"message": "overloaded"}})
        with pytest.raises(ProviderError) as exc_info:
            _submit(_anthropic(recorder))
        assert exc_info.value.status_code == 529


class TestCreateProvider:

    def test_openai_with_key(self):
        provider = create_provider(
            ProviderSettings(name="openai", model="gpt-x"),
            SecretManager(environ={"OPENAI_API_KEY": "sk-1"}),
        )
        assert isinstance(provider, OpenAIChatProvider)
        assert provider.model == "gpt-x"
        assert provider.base_url == "https://api.openai.com/v1"

    def test_anthropic(self):
        provider = create_provider(
            ProviderSettings(name="Anthropic"),
            SecretManager(environ={"ANTHROPIC_API_KEY": "ak-1"}),
        )
        assert isinstance(provider, AnthropicProvider)

    def test_missing_key(self):
        with pytest.raises(ProviderError, match="OPENAI_API_KEY"):
            create_provider(ProviderSettings(name="openai"), SecretManager(environ={}))

    def test_custom_key_variable(self):
        provider = create_provider(
            ProviderSettings(name="groq", api_key_env="MY_GROQ"),
            SecretManager(environ={"MY_GROQ": "g-1"}),
        )
        assert provider.name == "groq"

    def test_ollama_needs_no_key(self):
        provider = create_provider(ProviderSettings(name="ollama", model="llama3"), SecretManager(environ={}))
        assert provider.base_url == "http://localhost:11434/v1"

    def test_custom_needs_base_url(self):
        with pytest.raises(ProviderError, match="base_url"):
            create_provider(ProviderSettings(name="custom"), SecretManager(environ={"TOOLSMITH_API_KEY": "x"}))

    def test_unknown_provider(self):
        with pytest.raises(ProviderError, match="Unknown provider"):
            create_provider(ProviderSettings(name="skynet"), SecretManager(environ={}))


class TestAPIClient:

    @pytest.mark.parametrize("code,status", [
        (200, APIStatus.SUCCESS),
        (401, APIStatus.AUTH_ERROR),
        (404, APIStatus.NOT_FOUND),
        (422, APIStatus.BAD_REQUEST),
        (429, APIStatus.RATE_LIMITED),
        (503, APIStatus.SERVER_ERROR),
    ])
    def test_classify_status(self, code, status):
        assert classify_status(code)[0] == status

    def test_missing_key_short_circuits(self):
        recorder = Recorder(body={})
        client = APIClient(APIConfig(name="x", base_url="https://api.test"),
                           transport=httpx.MockTransport(recorder))
        response = asyncio.run(client.get("ping"))
        assert response.status == APIStatus.AUTH_ERROR
        assert recorder.requests == []

    def test_get_with_params(self):
        recorder = Recorder(body={"ok": True})
        client = APIClient(APIConfig(name="x", base_url="https://api.test/", requires_key=False),
                           transport=httpx.MockTransport(recorder))
        response = asyncio.run(client.get("/ping", params={"q": "1"}))
        assert response.success
        assert response.data == {"ok": True}
        assert str(recorder.requests[0].url) == "https://api.test/ping?q=1"
