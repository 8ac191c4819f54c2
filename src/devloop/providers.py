"""Agent provider interface and conversation types.

A provider takes the conversation so far plus the available tool
definitions and returns one assistant response: text, requested tool calls,
token usage and a stop indicator. Failures are raised as ProviderError with a
classified kind so callers can decide on retry policy.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Sequence, Union

logger = logging.getLogger(__name__)


class StopReason(str, Enum):
    """Why the provider stopped generating."""

    END_TURN = "end_turn"
    TOOL_USE = "tool_use"
    MAX_TOKENS = "max_tokens"


class ProviderErrorKind(str, Enum):
    """Classification of provider failures."""

    PROVIDER = "provider_error"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    NETWORK = "network"
    INVALID_REQUEST = "invalid_request"

    @property
    def retryable(self) -> bool:
        return self in (
            ProviderErrorKind.TIMEOUT,
            ProviderErrorKind.RATE_LIMIT,
            ProviderErrorKind.NETWORK,
        )


@dataclass
class TokenUsage:
    """Token counts and number of provider invocations."""

    input_tokens: int = 0
    output_tokens: int = 0
    invocations: int = 0

    @property
    def total_tokens(self) -> int:
        """Get total tokens used."""
        return self.input_tokens + self.output_tokens

    def add(self, other: TokenUsage) -> None:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.invocations += other.invocations

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            invocations=self.invocations + other.invocations,
        )

    def to_dict(self) -> dict:
        return {
            "input": self.input_tokens,
            "output": self.output_tokens,
            "total": self.total_tokens,
            "invocations": self.invocations,
        }


class ProviderError(Exception):
    """Exception raised for agent provider failures."""

    def __init__(
        self,
        message: str,
        kind: ProviderErrorKind = ProviderErrorKind.PROVIDER,
        usage: Optional[TokenUsage] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.usage = usage or TokenUsage()

    @property
    def retryable(self) -> bool:
        return self.kind.retryable


@dataclass
class ToolCall:
    """A tool invocation requested by the agent."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


def parse_tool_arguments(raw: Any) -> dict[str, Any]:
    """Normalize tool-call arguments sent either as an object or a JSON string."""
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    if not isinstance(raw, str):
        return {"value": raw}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning(f"Tool call arguments are not valid JSON: {raw[:200]}")
        return {"_raw": raw}
    return parsed if isinstance(parsed, dict) else {"value": parsed}


@dataclass
class Turn:
    """One entry of a conversation."""

    role: str  # "user", "assistant" or "tool"
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: Optional[str] = None
    is_error: bool = False


@dataclass
class ToolSpec:
    """Tool definition advertised to the provider."""

    name: str
    description: str
    parameters: dict[str, Any]


@dataclass
class ProviderResponse:
    """One assistant response."""

    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    stop_reason: StopReason = StopReason.END_TURN


class AgentProvider(ABC):
    """Base class for agent providers."""

    name: str = "provider"

    @abstractmethod
    def complete(
        self,
        conversation: Sequence[Turn],
        tools: Sequence[ToolSpec] = (),
        system: Optional[str] = None,
        overrides: Optional[dict[str, Any]] = None,
    ) -> ProviderResponse:
        """Send the conversation and return the next assistant response.

        Args:
            conversation: Turns so far, oldest first.
            tools: Tool definitions the agent may call.
            system: Optional system prompt.
            overrides: Per-call settings (model, max_tokens, temperature, timeout).

        Raises:
            ProviderError: Classified provider failure.
        """


ScriptStep = Union[ProviderResponse, ProviderError]


class MockProvider(AgentProvider):
    """Mock provider for testing and --mock runs.

    Plays back a script of responses and errors in order. When the script
    runs out, it answers with a plain completion.
    """

    name = "mock"

    def __init__(self, script: Optional[list[ScriptStep]] = None, default_tokens: int = 50):
        """Initialize with optional scripted responses."""
        self.script: list[ScriptStep] = list(script or [])
        self.default_tokens = default_tokens
        self.calls: list[list[Turn]] = []

    @property
    def call_count(self) -> int:
        return len(self.calls)

    def complete(
        self,
        conversation: Sequence[Turn],
        tools: Sequence[ToolSpec] = (),
        system: Optional[str] = None,
        overrides: Optional[dict[str, Any]] = None,
    ) -> ProviderResponse:
        """Return the next scripted step."""
        self.calls.append(list(conversation))
        if self.script:
            step = self.script.pop(0)
            if isinstance(step, ProviderError):
                raise step
            return step
        return ProviderResponse(
            content="Mock implementation completed successfully.",
            usage=TokenUsage(self.default_tokens, self.default_tokens),
        )


def create_provider(config) -> AgentProvider:
    """Build the provider named in the loop configuration.

    Args:
        config: A devloop Config. Mock mode always yields a MockProvider.
    """
    settings = config.loop.provider
    if config.mock_mode or settings.name == "mock":
        logger.info("Using mock agent provider")
        return MockProvider()

    if settings.name == "grok":
        from .grok_provider import GrokProvider

        return GrokProvider(
            api_key=config.grok_api_key,
            model=settings.model,
            temperature=settings.temperature,
            max_tokens=settings.max_tokens,
            timeout=settings.timeout,
            base_url=settings.base_url,
        )
    if settings.name == "ollama":
        from .ollama_provider import OLLAMA_BASE_URL, OllamaProvider

        return OllamaProvider(
            model=settings.model,
            base_url=settings.base_url or OLLAMA_BASE_URL,
            timeout=settings.timeout,
            temperature=settings.temperature,
            max_tokens=settings.max_tokens,
        )

    from .anthropic_provider import AnthropicProvider

    return AnthropicProvider(
        api_key=config.anthropic_api_key,
        model=settings.model,
        max_tokens=settings.max_tokens,
        temperature=settings.temperature,
        timeout=settings.timeout,
    )
