"""Tests for agent providers."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import httpx
import pytest
import requests

from devloop.anthropic_provider import AnthropicProvider, to_messages
from devloop.config import Config
from devloop.grok_provider import GrokProvider, to_chat_messages
from devloop.ollama_provider import OllamaProvider
from devloop.providers import (
    MockProvider,
    ProviderError,
    ProviderErrorKind,
    ProviderResponse,
    StopReason,
    TokenUsage,
    ToolCall,
    ToolSpec,
    Turn,
    create_provider,
    parse_tool_arguments,
)

ANTHROPIC_REQUEST = httpx.Request("POST", "https://api.anthropic.com/v1/messages")

CONVERSATION = [
    Turn(role="user", content="Add a file"),
    Turn(
        role="assistant",
        content="Writing it",
        tool_calls=[
            ToolCall(id="c1", name="write_file", arguments={"path": "a.py", "content": "x"}),
            ToolCall(id="c2", name="list_files", arguments={}),
        ],
    ),
    Turn(role="tool", content="Wrote 1 characters", tool_call_id="c1"),
    Turn(role="tool", content="Unknown tool", tool_call_id="c2", is_error=True),
]

READ_TOOL = ToolSpec(
    name="read_file",
    description="Read a file",
    parameters={"type": "object", "properties": {"path": {"type": "string"}}},
)


class TestTokenUsage:
    def test_add_accumulates(self):
        usage = TokenUsage(10, 5, 1)
        usage.add(TokenUsage(1, 2, 1))
        assert (usage.input_tokens, usage.output_tokens, usage.invocations) == (11, 7, 2)
        assert usage.total_tokens == 18

    def test_sum_operator(self):
        assert (TokenUsage(1, 1, 1) + TokenUsage(2, 2, 1)).to_dict() == {
            "input": 3,
            "output": 3,
            "total": 6,
            "invocations": 2,
        }


class TestErrorKinds:
    @pytest.mark.parametrize(
        "kind,retryable",
        [
            (ProviderErrorKind.TIMEOUT, True),
            (ProviderErrorKind.RATE_LIMIT, True),
            (ProviderErrorKind.NETWORK, True),
            (ProviderErrorKind.INVALID_REQUEST, False),
            (ProviderErrorKind.PROVIDER, False),
        ],
    )
    def test_retryable(self, kind, retryable):
        assert ProviderError("x", kind).retryable is retryable


class TestParseToolArguments:
    """Tests for parse_tool_arguments."""

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ({"path": "."}, {"path": "."}),
            ('{"path": "src"}', {"path": "src"}),
            (None, {}),
            ("", {}),
            ("[1, 2]", {"value": [1, 2]}),
            ("not json", {"_raw": "not json"}),
        ],
    )
    def test_normalizes(self, raw, expected):
        assert parse_tool_arguments(raw) == expected


class TestMockProvider:
    """Tests for MockProvider."""

    def test_default_response(self):
        provider = MockProvider()
        response = provider.complete([Turn(role="user", content="hi")])
        assert response.stop_reason is StopReason.END_TURN
        assert response.usage.total_tokens == 100
        assert provider.call_count == 1

    def test_script_plays_in_order(self):
        error = ProviderError("boom", ProviderErrorKind.NETWORK)
        provider = MockProvider(script=[ProviderResponse(content="first"), error])

        assert provider.complete([]).content == "first"
        with pytest.raises(ProviderError) as exc_info:
            provider.complete([])
        assert exc_info.value is error
        assert provider.complete([]).content.startswith("Mock implementation")


class TestAnthropicProvider:
    """Tests for AnthropicProvider with a mocked SDK client."""

    def test_to_messages_groups_tool_results(self):
        messages = to_messages(CONVERSATION)

        assert [m["role"] for m in messages] == ["user", "assistant", "user"]
        assert [b["type"] for b in messages[1]["content"]] == ["text", "tool_use", "tool_use"]
        results = messages[2]["content"]
        assert [r["tool_use_id"] for r in results] == ["c1", "c2"]
        assert results[1]["is_error"] is True

    @patch("anthropic.Anthropic")
    def test_complete_parses_tool_calls_and_usage(self, mock_anthropic):
        mock_client = MagicMock()
        mock_anthropic.return_value = mock_client
        mock_client.messages.create.return_value = SimpleNamespace(
            content=[
                SimpleNamespace(type="text", text="Let me look."),
                SimpleNamespace(type="tool_use", id="tu1", name="read_file", input={"path": "a.py"}),
            ],
            stop_reason="tool_use",
            usage=SimpleNamespace(input_tokens=100, output_tokens=50),
        )

        provider = AnthropicProvider(api_key="test-key")
        response = provider.complete(
            [Turn(role="user", content="hi")],
            tools=[READ_TOOL],
            system="Be brief",
            overrides={"model": "claude-test", "timeout": 30},
        )

        assert response.content == "Let me look."
        assert response.tool_calls == [ToolCall(id="tu1", name="read_file", arguments={"path": "a.py"})]
        assert response.stop_reason is StopReason.TOOL_USE
        assert response.usage.total_tokens == 150

        request = mock_client.messages.create.call_args.kwargs
        assert request["model"] == "claude-test"
        assert request["system"] == "Be brief"
        assert request["timeout"] == 30
        assert request["tools"][0]["input_schema"] == READ_TOOL.parameters

    @patch("anthropic.Anthropic")
    def test_max_tokens_stop(self, mock_anthropic):
        mock_client = MagicMock()
        mock_anthropic.return_value = mock_client
        mock_client.messages.create.return_value = SimpleNamespace(
            content=[SimpleNamespace(type="text", text="partial")],
            stop_reason="max_tokens",
            usage=SimpleNamespace(input_tokens=1, output_tokens=1),
        )

        response = AnthropicProvider(api_key="k").complete([Turn(role="user", content="hi")])

        assert response.stop_reason is StopReason.MAX_TOKENS

    @pytest.mark.parametrize(
        "error,kind",
        [
            (
                lambda anthropic: anthropic.RateLimitError(
                    "slow down",
                    response=httpx.Response(429, request=ANTHROPIC_REQUEST),
                    body=None,
                ),
                ProviderErrorKind.RATE_LIMIT,
            ),
            (
                lambda anthropic: anthropic.APITimeoutError(request=ANTHROPIC_REQUEST),
                ProviderErrorKind.TIMEOUT,
            ),
            (
                lambda anthropic: anthropic.APIConnectionError(request=ANTHROPIC_REQUEST),
                ProviderErrorKind.NETWORK,
            ),
            (
                lambda anthropic: anthropic.BadRequestError(
                    "bad",
                    response=httpx.Response(400, request=ANTHROPIC_REQUEST),
                    body=None,
                ),
                ProviderErrorKind.INVALID_REQUEST,
            ),
            (
                lambda anthropic: anthropic.InternalServerError(
                    "oops",
                    response=httpx.Response(500, request=ANTHROPIC_REQUEST),
                    body=None,
                ),
                ProviderErrorKind.PROVIDER,
            ),
        ],
    )
    @patch("anthropic.Anthropic")
    def test_error_classification(self, mock_anthropic, error, kind):
        import anthropic

        mock_client = MagicMock()
        mock_anthropic.return_value = mock_client
        mock_client.messages.create.side_effect = error(anthropic)

        with pytest.raises(ProviderError) as exc_info:
            AnthropicProvider(api_key="k").complete([Turn(role="user", content="hi")])

        assert exc_info.value.kind is kind


def _grok_response(status=200, payload=None):
    mock_response = MagicMock()
    mock_response.status_code = status
    mock_response.ok = status < 400
    mock_response.headers = {}
    mock_response.text = "error"
    mock_response.json.return_value = payload or {}
    return mock_response


class TestGrokProvider:
    """Tests for GrokProvider."""

    def test_chat_messages_format(self):
        messages = to_chat_messages(CONVERSATION, system="sys")

        assert messages[0] == {"role": "system", "content": "sys"}
        assert messages[2]["tool_calls"][0]["function"]["arguments"] == '{"path": "a.py", "content": "x"}'
        assert messages[3] == {"role": "tool", "tool_call_id": "c1", "content": "Wrote 1 characters"}

    @patch("devloop.grok_provider.requests.post")
    @patch.dict("os.environ", {"GROK_API_KEY": "test-key"})
    def test_successful_completion(self, mock_post):
        mock_post.return_value = _grok_response(
            payload={
                "choices": [
                    {
                        "message": {
                            "content": None,
                            "tool_calls": [
                                {
                                    "id": "call_1",
                                    "type": "function",
                                    "function": {"name": "read_file", "arguments": '{"path": "a.py"}'},
                                }
                            ],
                        },
                        "finish_reason": "tool_calls",
                    }
                ],
                "usage": {"prompt_tokens": 10, "completion_tokens": 5},
            }
        )

        response = GrokProvider().complete([Turn(role="user", content="hi")], tools=[READ_TOOL])

        assert response.content == ""
        assert response.tool_calls[0].arguments == {"path": "a.py"}
        assert response.stop_reason is StopReason.TOOL_USE
        assert response.usage.total_tokens == 15
        call_args = mock_post.call_args
        assert call_args.kwargs["headers"]["Authorization"] == "Bearer test-key"
        assert call_args.kwargs["json"]["model"] == "grok-3-latest"
        assert call_args.args[0] == "https://api.x.ai/v1/chat/completions"

    @patch("devloop.grok_provider.load_dotenv")
    @patch.dict("os.environ", {}, clear=True)
    def test_missing_api_key(self, mock_dotenv):
        with pytest.raises(ProviderError) as exc_info:
            GrokProvider().complete([Turn(role="user", content="hi")])

        assert "GROK_API_KEY" in str(exc_info.value)
        assert exc_info.value.kind is ProviderErrorKind.INVALID_REQUEST

    @pytest.mark.parametrize(
        "side_effect,kind",
        [
            (requests.Timeout("slow"), ProviderErrorKind.TIMEOUT),
            (requests.ConnectionError("down"), ProviderErrorKind.NETWORK),
        ],
    )
    @patch("devloop.grok_provider.requests.post")
    @patch.dict("os.environ", {"GROK_API_KEY": "test-key"})
    def test_transport_errors(self, mock_post, side_effect, kind):
        mock_post.side_effect = side_effect

        with pytest.raises(ProviderError) as exc_info:
            GrokProvider().complete([Turn(role="user", content="hi")])

        assert exc_info.value.kind is kind
        assert exc_info.value.retryable

    @pytest.mark.parametrize(
        "status,kind",
        [
            (429, ProviderErrorKind.RATE_LIMIT),
            (400, ProviderErrorKind.INVALID_REQUEST),
            (503, ProviderErrorKind.PROVIDER),
        ],
    )
    @patch("devloop.grok_provider.requests.post")
    @patch.dict("os.environ", {"GROK_API_KEY": "test-key"})
    def test_http_errors(self, mock_post, status, kind):
        mock_post.return_value = _grok_response(status=status, payload={"error": {"message": "nope"}})

        with pytest.raises(ProviderError) as exc_info:
            GrokProvider().complete([Turn(role="user", content="hi")])

        assert exc_info.value.kind is kind


class TestOllamaProvider:
    """Tests for OllamaProvider."""

    @patch("devloop.ollama_provider.httpx.post")
    def test_completion_with_tool_calls(self, mock_post):
        mock_post.return_value = httpx.Response(
            200,
            json={
                "message": {
                    "content": "",
                    "tool_calls": [{"function": {"name": "list_files", "arguments": {"path": "."}}}],
                },
                "prompt_eval_count": 20,
                "eval_count": 7,
            },
        )

        response = OllamaProvider().complete([Turn(role="user", content="hi")], tools=[READ_TOOL])

        assert response.stop_reason is StopReason.TOOL_USE
        assert response.tool_calls[0].name == "list_files"
        assert response.tool_calls[0].id.startswith("call_")
        assert response.usage.total_tokens == 27
        payload = mock_post.call_args.kwargs["json"]
        assert payload["stream"] is False
        assert payload["model"] == "qwen2.5:7b"

    @patch("devloop.ollama_provider.httpx.post")
    def test_string_arguments_are_decoded(self, mock_post):
        """OpenAI-style servers send arguments as a JSON string."""
        mock_post.return_value = httpx.Response(
            200,
            json={
                "message": {
                    "content": "",
                    "tool_calls": [{"function": {"name": "read_file", "arguments": '{"path": "app.py"}'}}],
                },
            },
        )

        response = OllamaProvider().complete([Turn(role="user", content="hi")], tools=[READ_TOOL])

        assert response.tool_calls[0].arguments == {"path": "app.py"}

    @patch("devloop.ollama_provider.httpx.post")
    def test_length_is_truncation(self, mock_post):
        mock_post.return_value = httpx.Response(
            200, json={"message": {"content": "partial"}, "done_reason": "length"}
        )

        response = OllamaProvider().complete([Turn(role="user", content="hi")])

        assert response.stop_reason is StopReason.MAX_TOKENS

    @pytest.mark.parametrize(
        "side_effect,kind",
        [
            (httpx.ReadTimeout("slow"), ProviderErrorKind.TIMEOUT),
            (httpx.ConnectError("refused"), ProviderErrorKind.NETWORK),
        ],
    )
    @patch("devloop.ollama_provider.httpx.post")
    def test_transport_errors(self, mock_post, side_effect, kind):
        mock_post.side_effect = side_effect

        with pytest.raises(ProviderError) as exc_info:
            OllamaProvider().complete([Turn(role="user", content="hi")])

        assert exc_info.value.kind is kind

    @patch("devloop.ollama_provider.httpx.post")
    def test_missing_model_is_invalid_request(self, mock_post):
        mock_post.return_value = httpx.Response(404, text="model not found")

        with pytest.raises(ProviderError) as exc_info:
            OllamaProvider().complete([Turn(role="user", content="hi")])

        assert exc_info.value.kind is ProviderErrorKind.INVALID_REQUEST


class TestCreateProvider:
    def test_mock_mode(self, tmp_path):
        config = Config(repo_path=tmp_path, mock_mode=True)
        assert isinstance(create_provider(config), MockProvider)

    def test_named_providers(self, tmp_path):
        config = Config(repo_path=tmp_path)

        config.loop.provider.name = "grok"
        assert isinstance(create_provider(config), GrokProvider)

        config.loop.provider.name = "ollama"
        assert isinstance(create_provider(config), OllamaProvider)

        config.loop.provider.name = "anthropic"
        assert isinstance(create_provider(config), AnthropicProvider)
