"""Anthropic Messages API provider for the dispatch loop.

Translates conversations into Messages API requests with tool definitions,
and maps responses and SDK exceptions back to provider types.
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Sequence

from .providers import (
    AgentProvider,
    ProviderError,
    ProviderErrorKind,
    ProviderResponse,
    StopReason,
    TokenUsage,
    ToolCall,
    ToolSpec,
    Turn,
)

logger = logging.getLogger(__name__)

STOP_REASONS = {
    "end_turn": StopReason.END_TURN,
    "stop_sequence": StopReason.END_TURN,
    "tool_use": StopReason.TOOL_USE,
    "max_tokens": StopReason.MAX_TOKENS,
}


def to_messages(conversation: Sequence[Turn]) -> list[dict[str, Any]]:
    """Convert turns to Messages API format.

    Consecutive tool results are grouped into a single user message, as the
    API requires every tool_result to follow the assistant turn that asked
    for it.
    """
    messages: list[dict[str, Any]] = []
    for turn in conversation:
        if turn.role == "tool":
            block = {
                "type": "tool_result",
                "tool_use_id": turn.tool_call_id,
                "content": turn.content,
                "is_error": turn.is_error,
            }
            last = messages[-1] if messages else None
            if last and last["role"] == "user" and isinstance(last["content"], list):
                last["content"].append(block)
            else:
                messages.append({"role": "user", "content": [block]})
        elif turn.role == "assistant":
            blocks: list[dict[str, Any]] = []
            if turn.content:
                blocks.append({"type": "text", "text": turn.content})
            for call in turn.tool_calls:
                blocks.append({
                    "type": "tool_use",
                    "id": call.id,
                    "name": call.name,
                    "input": call.arguments,
                })
            messages.append({"role": "assistant", "content": blocks})
        else:
            messages.append({"role": "user", "content": turn.content})
    return messages


class AnthropicProvider(AgentProvider):
    """Client for Claude via the Anthropic API."""

    name = "anthropic"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "claude-sonnet-4-20250514",
        max_tokens: int = 8192,
        temperature: float = 0.2,
        timeout: int = 120,
    ):
        """Initialize the provider.

        Args:
            api_key: Anthropic API key. If None, reads from environment.
            model: Claude model to use.
            max_tokens: Maximum tokens in response.
            temperature: Sampling temperature.
            timeout: Request timeout in seconds.
        """
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.timeout = timeout
        self._client = None
        self._api_key = api_key

    @property
    def client(self):
        """Lazy initialization of Anthropic client."""
        if self._client is None:
            import anthropic

            self._client = anthropic.Anthropic(
                api_key=self._api_key,
                timeout=self.timeout,
                max_retries=0,
            )
        return self._client

    def complete(
        self,
        conversation: Sequence[Turn],
        tools: Sequence[ToolSpec] = (),
        system: Optional[str] = None,
        overrides: Optional[dict[str, Any]] = None,
    ) -> ProviderResponse:
        import anthropic

        overrides = overrides or {}
        request: dict[str, Any] = {
            "model": overrides.get("model", self.model),
            "max_tokens": overrides.get("max_tokens", self.max_tokens),
            "temperature": overrides.get("temperature", self.temperature),
            "messages": to_messages(conversation),
        }
        if system:
            request["system"] = system
        if tools:
            request["tools"] = [
                {"name": t.name, "description": t.description, "input_schema": t.parameters}
                for t in tools
            ]
        if "timeout" in overrides:
            request["timeout"] = overrides["timeout"]

        try:
            response = self.client.messages.create(**request)
        except anthropic.RateLimitError as e:
            raise ProviderError(f"Anthropic rate limit exceeded: {e}", ProviderErrorKind.RATE_LIMIT) from e
        except anthropic.APITimeoutError as e:
            raise ProviderError(f"Anthropic request timed out: {e}", ProviderErrorKind.TIMEOUT) from e
        except anthropic.APIConnectionError as e:
            raise ProviderError(f"Failed to connect to Anthropic API: {e}", ProviderErrorKind.NETWORK) from e
        except (anthropic.BadRequestError, anthropic.UnprocessableEntityError) as e:
            raise ProviderError(f"Invalid Anthropic request: {e}", ProviderErrorKind.INVALID_REQUEST) from e
        except anthropic.APIError as e:
            raise ProviderError(f"Anthropic API error: {e}", ProviderErrorKind.PROVIDER) from e

        text_parts = []
        tool_calls = []
        for block in response.content:
            if block.type == "text":
                text_parts.append(block.text)
            elif block.type == "tool_use":
                tool_calls.append(ToolCall(id=block.id, name=block.name, arguments=dict(block.input)))

        stop_reason = STOP_REASONS.get(response.stop_reason or "end_turn", StopReason.END_TURN)
        if tool_calls and stop_reason is StopReason.END_TURN:
            stop_reason = StopReason.TOOL_USE

        return ProviderResponse(
            content="".join(text_parts),
            tool_calls=tool_calls,
            usage=TokenUsage(
                input_tokens=response.usage.input_tokens,
                output_tokens=response.usage.output_tokens,
            ),
            stop_reason=stop_reason,
        )
