"""Tests for the multi-turn dispatch loop."""

from __future__ import annotations

import pytest

from devloop.cancellation import CancelToken
from devloop.dispatch import DispatchError, DispatchLoop, DispatchTimeout
from devloop.providers import (
    MockProvider,
    ProviderError,
    ProviderErrorKind,
    ProviderResponse,
    StopReason,
    TokenUsage,
    ToolCall,
)
from devloop.tools import default_tools


def tool_turn(*calls: ToolCall, tokens: int = 10) -> ProviderResponse:
    return ProviderResponse(
        content="",
        tool_calls=list(calls),
        usage=TokenUsage(tokens, tokens),
        stop_reason=StopReason.TOOL_USE,
    )


def final_turn(content: str = "done", tokens: int = 10, stop=StopReason.END_TURN) -> ProviderResponse:
    return ProviderResponse(content=content, usage=TokenUsage(tokens, tokens), stop_reason=stop)


class TestDispatchLoop:
    """Tests for DispatchLoop."""

    def test_single_turn(self):
        provider = MockProvider(script=[final_turn("all good", tokens=7)])

        result = DispatchLoop(provider).run("do it")

        assert result.content == "all good"
        assert result.turns == 1
        assert result.usage == TokenUsage(7, 7, 1)
        assert not result.truncated

    def test_tool_loop_executes_and_feeds_back(self, tmp_path):
        provider = MockProvider(
            script=[
                tool_turn(ToolCall(id="c1", name="write_file", arguments={"path": "a.txt", "content": "hi"})),
                tool_turn(ToolCall(id="c2", name="missing_tool")),
                final_turn("finished"),
            ]
        )

        result = DispatchLoop(provider, tools=default_tools(tmp_path)).run("write a file")

        assert (tmp_path / "a.txt").read_text() == "hi"
        assert result.content == "finished"
        assert result.turns == 3
        assert result.usage == TokenUsage(30, 30, 3)

        second_request = provider.calls[1]
        assert second_request[-1].role == "tool"
        assert second_request[-1].tool_call_id == "c1"
        assert not second_request[-1].is_error
        third_request = provider.calls[2]
        assert third_request[-1].is_error

    def test_error_carries_usage_of_all_turns(self, tmp_path):
        provider = MockProvider(
            script=[
                tool_turn(ToolCall(id="c1", name="list_files"), tokens=20),
                ProviderError("rate limited", ProviderErrorKind.RATE_LIMIT, usage=TokenUsage(3, 0)),
            ]
        )

        with pytest.raises(DispatchError) as exc_info:
            DispatchLoop(provider, tools=default_tools(tmp_path)).run("go")

        error = exc_info.value
        assert error.kind is ProviderErrorKind.RATE_LIMIT
        assert error.retryable
        assert error.usage == TokenUsage(23, 20, 2)

    def test_non_retryable_error(self):
        provider = MockProvider(script=[ProviderError("bad request", ProviderErrorKind.INVALID_REQUEST)])

        with pytest.raises(DispatchError) as exc_info:
            DispatchLoop(provider).run("go")

        assert not exc_info.value.retryable
        assert exc_info.value.usage.invocations == 1

    def test_cancelled_before_first_send(self):
        provider = MockProvider()
        cancel = CancelToken()
        cancel.cancel()

        with pytest.raises(DispatchTimeout) as exc_info:
            DispatchLoop(provider).run("go", cancel)

        assert provider.call_count == 0
        assert exc_info.value.usage == TokenUsage()

    def test_cancellation_between_turns(self, tmp_path):
        cancel = CancelToken()

        class CancellingProvider(MockProvider):
            def complete(self, conversation, tools=(), system=None, overrides=None):
                response = super().complete(conversation, tools, system, overrides)
                cancel.cancel()
                return response

        provider = CancellingProvider(script=[tool_turn(ToolCall(id="c1", name="list_files"))])

        with pytest.raises(DispatchTimeout) as exc_info:
            DispatchLoop(provider, tools=default_tools(tmp_path)).run("go", cancel)

        assert provider.call_count == 1
        assert exc_info.value.usage == TokenUsage(10, 10, 1)

    def test_max_turns_stops_loop(self, tmp_path):
        provider = MockProvider(
            script=[tool_turn(ToolCall(id=f"c{i}", name="list_files")) for i in range(5)]
        )

        result = DispatchLoop(provider, tools=default_tools(tmp_path), max_turns=2).run("go")

        assert result.turn_limit_reached
        assert result.turns == 2
        assert provider.call_count == 2

    def test_truncated_response(self):
        provider = MockProvider(script=[final_turn("partial", stop=StopReason.MAX_TOKENS)])

        result = DispatchLoop(provider).run("go")

        assert result.truncated
        assert result.content == "partial"

    def test_overrides_and_system_are_passed(self):
        seen = {}

        class RecordingProvider(MockProvider):
            def complete(self, conversation, tools=(), system=None, overrides=None):
                seen["system"] = system
                seen["overrides"] = overrides
                return super().complete(conversation, tools, system, overrides)

        DispatchLoop(
            RecordingProvider(), overrides={"model": "m", "timeout": 300}, system="sys"
        ).run("go", CancelToken(timeout=60))

        assert seen["system"] == "sys"
        assert seen["overrides"]["model"] == "m"
        assert seen["overrides"]["timeout"] <= 60
