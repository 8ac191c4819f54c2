"""Ollama integration for running the dispatch loop on a local model."""

from __future__ import annotations

import logging
import uuid
from typing import Any, Optional, Sequence

import httpx

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

# Default Ollama endpoint
OLLAMA_BASE_URL = "http://localhost:11434"


class OllamaProvider(AgentProvider):
    """Provider backed by the Ollama /api/chat endpoint."""

    name = "ollama"

    def __init__(
        self,
        model: str = "qwen2.5:7b",
        base_url: str = OLLAMA_BASE_URL,
        timeout: int = 300,
        temperature: float = 0.1,
        max_tokens: int = 4096,
    ):
        """Initialize the Ollama provider.

        Args:
            model: The Ollama model to use.
            base_url: Ollama API base URL.
            timeout: Request timeout in seconds.
            temperature: Sampling temperature.
            max_tokens: Maximum tokens to generate per response.
        """
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.temperature = temperature
        self.max_tokens = max_tokens

    def _messages(self, conversation: Sequence[Turn], system: Optional[str]) -> list[dict]:
        messages: list[dict] = []
        if system:
            messages.append({"role": "system", "content": system})
        for turn in conversation:
            message: dict[str, Any] = {"role": turn.role, "content": turn.content}
            if turn.tool_calls:
                message["tool_calls"] = [
                    {"function": {"name": c.name, "arguments": c.arguments}}
                    for c in turn.tool_calls
                ]
            messages.append(message)
        return messages

    def complete(
        self,
        conversation: Sequence[Turn],
        tools: Sequence[ToolSpec] = (),
        system: Optional[str] = None,
        overrides: Optional[dict[str, Any]] = None,
    ) -> ProviderResponse:
        overrides = overrides or {}
        timeout = overrides.get("timeout", self.timeout)
        payload: dict[str, Any] = {
            "model": overrides.get("model", self.model),
            "messages": self._messages(conversation, system),
            "stream": False,
            "options": {
                "temperature": overrides.get("temperature", self.temperature),
                "num_predict": overrides.get("max_tokens", self.max_tokens),
            },
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

        try:
            response = httpx.post(f"{self.base_url}/api/chat", json=payload, timeout=timeout)
        except httpx.TimeoutException as e:
            raise ProviderError(
                f"Ollama request timed out after {timeout}s", ProviderErrorKind.TIMEOUT
            ) from e
        except httpx.NetworkError as e:
            raise ProviderError(
                f"Ollama not reachable at {self.base_url}: {e}", ProviderErrorKind.NETWORK
            ) from e
        except httpx.HTTPError as e:
            raise ProviderError(f"Ollama request failed: {e}") from e

        if response.status_code == 429:
            raise ProviderError("Ollama is overloaded (HTTP 429)", ProviderErrorKind.RATE_LIMIT)
        if response.status_code in (400, 404):
            # 404 means the model has not been pulled
            raise ProviderError(
                f"Ollama returned status {response.status_code}: {response.text}",
                ProviderErrorKind.INVALID_REQUEST,
            )
        if response.status_code != 200:
            raise ProviderError(f"Ollama returned status {response.status_code}: {response.text}")

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(f"Ollama returned invalid JSON: {e}") from e

        message = data.get("message") or {}
        tool_calls = []
        for call in message.get("tool_calls") or []:
            function = call.get("function", {})
            tool_calls.append(
                ToolCall(
                    id=call.get("id") or f"call_{uuid.uuid4().hex[:12]}",
                    name=function.get("name", ""),
                    arguments=parse_tool_arguments(function.get("arguments")),
                )
            )

        if tool_calls:
            stop_reason = StopReason.TOOL_USE
        elif data.get("done_reason") == "length":
            stop_reason = StopReason.MAX_TOKENS
        else:
            stop_reason = StopReason.END_TURN

        return ProviderResponse(
            content=message.get("content", ""),
            tool_calls=tool_calls,
            usage=TokenUsage(
                input_tokens=data.get("prompt_eval_count", 0),
                output_tokens=data.get("eval_count", 0),
            ),
            stop_reason=stop_reason,
        )
