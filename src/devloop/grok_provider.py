"""Grok provider for the dispatch loop.

Talks to the xAI chat completions endpoint (OpenAI-compatible) with function
tools. Any other OpenAI-compatible server can be used through ``base_url``.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, List, Optional, Sequence

import requests
from dotenv import load_dotenv

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
    parse_tool_arguments,
)

logger = logging.getLogger(__name__)

# Grok API endpoint
GROK_BASE_URL = "https://api.x.ai/v1"

# Default settings
DEFAULT_MODEL = "grok-3-latest"
DEFAULT_TEMPERATURE = 0.3
DEFAULT_MAX_TOKENS = 4096
DEFAULT_TIMEOUT = 120

FINISH_REASONS = {
    "stop": StopReason.END_TURN,
    "tool_calls": StopReason.TOOL_USE,
    "length": StopReason.MAX_TOKENS,
}


def to_chat_messages(conversation: Sequence[Turn], system: Optional[str] = None) -> List[Dict[str, Any]]:
    """Convert turns to chat-completions messages."""
    messages: List[Dict[str, Any]] = []
    if system:
        messages.append({"role": "system", "content": system})
    for turn in conversation:
        if turn.role == "tool":
            messages.append({
                "role": "tool",
                "tool_call_id": turn.tool_call_id,
                "content": turn.content,
            })
        elif turn.role == "assistant" and turn.tool_calls:
            messages.append({
                "role": "assistant",
                "content": turn.content or None,
                "tool_calls": [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
                    }
                    for call in turn.tool_calls
                ],
            })
        else:
            messages.append({"role": turn.role, "content": turn.content})
    return messages


class GrokProvider(AgentProvider):
    """Provider wrapper for the Grok API with configurable defaults."""

    name = "grok"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = DEFAULT_MODEL,
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        timeout: int = DEFAULT_TIMEOUT,
        base_url: Optional[str] = None,
    ):
        """Initialize the Grok provider.

        Args:
            api_key: Optional API key. If not provided, uses GROK_API_KEY env var.
            model: Default model to use.
            temperature: Default sampling temperature.
            max_tokens: Default maximum tokens in response.
            timeout: Default request timeout in seconds.
            base_url: Override for the API base URL.
        """
        self.api_key = api_key
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout
        self.base_url = (base_url or GROK_BASE_URL).rstrip("/")

    def _resolve_key(self) -> str:
        load_dotenv()
        key = self.api_key or os.getenv("GROK_API_KEY")
        if not key:
            raise ProviderError(
                "GROK_API_KEY environment variable is not set. "
                "Set it in your .env file or pass api_key parameter.",
                ProviderErrorKind.INVALID_REQUEST,
            )
        return key

    def complete(
        self,
        conversation: Sequence[Turn],
        tools: Sequence[ToolSpec] = (),
        system: Optional[str] = None,
        overrides: Optional[Dict[str, Any]] = None,
    ) -> ProviderResponse:
        overrides = overrides or {}
        timeout = overrides.get("timeout", self.timeout)
        headers = {
            "Authorization": f"Bearer {self._resolve_key()}",
            "Content-Type": "application/json",
        }
        payload: Dict[str, Any] = {
            "model": overrides.get("model", self.model),
            "messages": to_chat_messages(conversation, system),
            "temperature": overrides.get("temperature", self.temperature),
            "max_tokens": overrides.get("max_tokens", self.max_tokens),
        }
        if tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": t.name,
                        "description": t.description,
                        "parameters": t.parameters,
                    },
                }
                for t in tools
            ]

        logger.debug(f"Querying Grok API with model={payload['model']}")

        try:
            response = requests.post(
                f"{self.base_url}/chat/completions",
                json=payload,
                headers=headers,
                timeout=timeout,
            )
        except requests.Timeout as exc:
            raise ProviderError(
                f"Grok API request timed out after {timeout} seconds",
                ProviderErrorKind.TIMEOUT,
            ) from exc
        except requests.ConnectionError as exc:
            raise ProviderError(
                f"Failed to connect to Grok API: {exc}", ProviderErrorKind.NETWORK
            ) from exc
        except requests.RequestException as exc:
            raise ProviderError(f"Grok API request failed: {exc}") from exc

        # Handle rate limiting
        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After", "unknown")
            raise ProviderError(
                f"Grok API rate limit exceeded (HTTP 429). Retry after: {retry_after}",
                ProviderErrorKind.RATE_LIMIT,
            )

        if not response.ok:
            try:
                error_detail = response.json().get("error", {}).get("message", response.text)
            except (ValueError, AttributeError):
                error_detail = response.text[:500]
            kind = (
                ProviderErrorKind.INVALID_REQUEST
                if response.status_code in (400, 422)
                else ProviderErrorKind.PROVIDER
            )
            raise ProviderError(f"Grok API error {response.status_code}: {error_detail}", kind)

        try:
            data = response.json()
            choice = data["choices"][0]
            message = choice["message"]
            usage = data.get("usage") or {}
            tool_calls = [
                ToolCall(
                    id=call["id"],
                    name=call["function"]["name"],
                    arguments=parse_tool_arguments(call["function"].get("arguments")),
                )
                for call in message.get("tool_calls") or []
            ]
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise ProviderError(f"Unexpected Grok API response format: {exc}") from exc

        token_usage = TokenUsage(
            input_tokens=usage.get("prompt_tokens", 0),
            output_tokens=usage.get("completion_tokens", 0),
        )
        logger.debug(
            f"Grok API usage: {token_usage.input_tokens} input, "
            f"{token_usage.output_tokens} output tokens"
        )
        stop_reason = FINISH_REASONS.get(choice.get("finish_reason") or "stop", StopReason.END_TURN)
        if tool_calls and stop_reason is StopReason.END_TURN:
            stop_reason = StopReason.TOOL_USE

        return ProviderResponse(
            content=message.get("content") or "",
            tool_calls=tool_calls,
            usage=token_usage,
            stop_reason=stop_reason,
        )
