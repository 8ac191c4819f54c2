"""Multi-turn agent conversation loop.

A dispatch sends the conversation to the provider, executes any tool calls
the agent makes, feeds the results back and repeats until the agent answers
without tool calls. The loop is an explicit state machine:

    SENDING -> AWAITING_TOOLS -> SENDING -> ... -> COMPLETED
    SENDING -> ERRORED      (provider error)
    SENDING -> TIMED_OUT    (cancellation observed between turns)

Usage is accumulated over every turn, including the one that terminates the
loop, so callers always see what a dispatch cost even when it fails.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .cancellation import CancelToken
from .providers import (
    AgentProvider,
    ProviderError,
    ProviderErrorKind,
    ProviderResponse,
    StopReason,
    TokenUsage,
    Turn,
)
from .tools import ToolRegistry

logger = logging.getLogger(__name__)


class DispatchState(str, Enum):
    SENDING = "sending"
    AWAITING_TOOLS = "awaiting_tools"
    COMPLETED = "completed"
    ERRORED = "errored"
    TIMED_OUT = "timed_out"


TERMINAL_STATES = frozenset(
    {DispatchState.COMPLETED, DispatchState.ERRORED, DispatchState.TIMED_OUT}
)


class DispatchError(Exception):
    """The provider failed. Carries the error kind and the usage so far."""

    def __init__(self, message: str, kind: ProviderErrorKind, usage: TokenUsage):
        super().__init__(message)
        self.kind = kind
        self.usage = usage

    @property
    def retryable(self) -> bool:
        return self.kind.retryable


class DispatchTimeout(Exception):
    """The dispatch was cancelled or ran past its deadline."""

    def __init__(self, message: str, usage: TokenUsage):
        super().__init__(message)
        self.usage = usage


@dataclass
class Conversation:
    """Turns exchanged during one dispatch plus cumulative usage."""

    turns: List[Turn] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    stop_reason: Optional[StopReason] = None
    sends: int = 0

    def add(self, turn: Turn) -> None:
        self.turns.append(turn)

    @property
    def last_assistant(self) -> Optional[Turn]:
        for turn in reversed(self.turns):
            if turn.role == "assistant":
                return turn
        return None


@dataclass
class DispatchResult:
    """Successful outcome of a dispatch."""

    content: str
    usage: TokenUsage
    conversation: Conversation
    truncated: bool = False
    turn_limit_reached: bool = False

    @property
    def turns(self) -> int:
        return self.conversation.sends


def _one_turn(usage: TokenUsage) -> TokenUsage:
    # Invocations are counted here, one per send, whatever the provider reports.
    return TokenUsage(usage.input_tokens, usage.output_tokens, 1)


@dataclass
class _RunState:
    conversation: Conversation
    cancel: CancelToken
    response: Optional[ProviderResponse] = None
    error: Optional[ProviderError] = None
    turn_limit_reached: bool = False


class DispatchLoop:
    """Drives one agent conversation to completion."""

    def __init__(
        self,
        provider: AgentProvider,
        tools: Optional[ToolRegistry] = None,
        max_turns: int = 50,
        overrides: Optional[Dict[str, Any]] = None,
        system: Optional[str] = None,
    ):
        """Initialize the dispatch loop.

        Args:
            provider: Agent provider to talk to.
            tools: Tools the agent may call. Empty registry if omitted.
            max_turns: Maximum provider calls before the dispatch is cut off.
            overrides: Per-call provider settings (model, max_tokens, ...).
            system: Optional system prompt sent with every call.
        """
        self.provider = provider
        self.tools = tools or ToolRegistry()
        self.max_turns = max_turns
        self.overrides = dict(overrides or {})
        self.system = system
        self._handlers: Dict[DispatchState, Callable[[_RunState], DispatchState]] = {
            DispatchState.SENDING: self._send,
            DispatchState.AWAITING_TOOLS: self._run_tools,
        }

    def run(self, prompt: str, cancel: Optional[CancelToken] = None) -> DispatchResult:
        """Run a conversation that starts with ``prompt``.

        Returns:
            DispatchResult with the agent's final content and total usage.

        Raises:
            DispatchError: The provider failed.
            DispatchTimeout: Cancellation or the deadline was observed.
        """
        run = _RunState(conversation=Conversation(), cancel=cancel or CancelToken())
        run.conversation.add(Turn(role="user", content=prompt))

        state = DispatchState.SENDING
        while state not in TERMINAL_STATES:
            state = self._handlers[state](run)

        usage = run.conversation.usage
        if state is DispatchState.ERRORED:
            error = run.error
            raise DispatchError(str(error), error.kind, usage) from error
        if state is DispatchState.TIMED_OUT:
            raise DispatchTimeout("Dispatch cancelled or deadline exceeded", usage)

        last = run.conversation.last_assistant
        truncated = run.conversation.stop_reason is StopReason.MAX_TOKENS
        logger.info(
            f"Dispatch completed after {run.conversation.sends} turns "
            f"({usage.total_tokens} tokens)"
        )
        return DispatchResult(
            content=last.content if last else "",
            usage=usage,
            conversation=run.conversation,
            truncated=truncated,
            turn_limit_reached=run.turn_limit_reached,
        )

    def _send(self, run: _RunState) -> DispatchState:
        conversation = run.conversation
        if run.cancel.cancelled:
            return DispatchState.TIMED_OUT
        if conversation.sends >= self.max_turns:
            logger.warning(f"Dispatch reached max_turns={self.max_turns}")
            run.turn_limit_reached = True
            return DispatchState.COMPLETED

        overrides = dict(self.overrides)
        timeout = run.cancel.timeout_for(overrides.get("timeout"))
        if timeout is not None:
            overrides["timeout"] = timeout

        conversation.sends += 1
        try:
            response = self.provider.complete(
                conversation.turns,
                tools=self.tools.specs(),
                system=self.system,
                overrides=overrides,
            )
        except ProviderError as e:
            conversation.usage.add(_one_turn(e.usage))
            if run.cancel.cancelled:
                return DispatchState.TIMED_OUT
            logger.warning(f"Provider error ({e.kind.value}): {e}")
            run.error = e
            return DispatchState.ERRORED

        conversation.usage.add(_one_turn(response.usage))
        conversation.stop_reason = response.stop_reason
        conversation.add(
            Turn(role="assistant", content=response.content, tool_calls=list(response.tool_calls))
        )
        run.response = response

        if response.tool_calls:
            return DispatchState.AWAITING_TOOLS
        return DispatchState.COMPLETED

    def _run_tools(self, run: _RunState) -> DispatchState:
        for call in run.response.tool_calls:
            content, is_error = self.tools.execute(call)
            run.conversation.add(
                Turn(role="tool", content=content, tool_call_id=call.id, is_error=is_error)
            )
        return DispatchState.SENDING
