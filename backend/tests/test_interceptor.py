"""
Tests for the tool-use interceptor state machine.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from errors import ExternalServiceError, LLMError
from routers.chat_orchestration.events import ChatEvent, EventType
from routers.chat_orchestration.interceptor import (
    BlockBuilder,
    InterceptorState,
    ToolUseInterceptor,
    make_search_executor,
)
from services.provider_client import ToolChoice

MESSAGES = [{"role": "user", "content": "What happened today?"}]


async def _collect(agen):
    return [e async for e in agen]


def _interceptor(provider, execute_tool=None):
    return ToolUseInterceptor(provider, execute_tool or AsyncMock(return_value="result"), list(MESSAGES))


class TestBlockBuilder:
    """Test tool argument parsing."""

    def test_parses_accumulated_json(self):
        block = BlockBuilder(0, "tool_use", id="t1", name="web_search", partial_json='{"query": "x"}')
        block.close()
        assert block.input == {"query": "x"}

    def test_invalid_json_becomes_empty(self):
        block = BlockBuilder(0, "tool_use", id="t1", name="web_search", partial_json='{"query": ')
        block.close()
        assert block.input == {}

    def test_non_object_becomes_empty(self):
        block = BlockBuilder(0, "tool_use", id="t1", name="web_search", partial_json="[1, 2]")
        block.close()
        assert block.input == {}

    def test_close_is_idempotent(self):
        block = BlockBuilder(0, "tool_use", id="t1", name="web_search", partial_json='{"query": "x"}')
        block.close()
        block.partial_json = "garbage"
        block.close()
        assert block.input == {"query": "x"}


class TestHandleEvent:
    """Test transitions driven by individual provider events."""

    def test_text_forwarded_while_streaming(self, make_provider, events):
        interceptor = _interceptor(make_provider())
        out = []
        for event in events.text("Hel", "lo"):
            out += interceptor.handle_event(event)

        assert out == [ChatEvent.content("Hel"), ChatEvent.content("lo")]
        assert interceptor.state == InterceptorState.STREAMING_TEXT
        assert interceptor.streamed_text == "Hello"

    def test_tool_block_announces_search_once(self, make_provider, events):
        interceptor = _interceptor(make_provider())
        out = []
        for event in events.tool(0, "a", {"query": "one"}) + events.tool(1, "b", {"query": "two"}):
            out += interceptor.handle_event(event)

        assert out == [ChatEvent.web_search_start()]
        assert out[0].to_dict() == {"type": "web_search_start", "queries": []}
        assert interceptor.state == InterceptorState.BUFFERING_TOOL
        assert [b.input for b in interceptor.tool_blocks] == [{"query": "one"}, {"query": "two"}]

    def test_text_after_tool_is_buffered(self, make_provider, events):
        interceptor = _interceptor(make_provider())
        for event in events.tool(0, "a", {"query": "one"}):
            interceptor.handle_event(event)

        assert interceptor.handle_event(
            {"type": "content_block_delta", "index": 1, "delta": {"type": "text_delta", "text": "late"}}
        ) == []
        assert interceptor.blocks[1].text == "late"
        assert interceptor.streamed_text == ""

    def test_stop_reason_recorded(self, make_provider, events):
        interceptor = _interceptor(make_provider())
        for event in events.end("tool_use"):
            interceptor.handle_event(event)
        assert interceptor.stop_reason == "tool_use"

    def test_unknown_events_ignored(self, make_provider):
        interceptor = _interceptor(make_provider())
        assert interceptor.handle_event({"type": "ping"}) == []
        assert interceptor.handle_event({"type": "message_start", "message": {}}) == []


class TestRun:
    """Test the full interceptor driver."""

    def test_text_only_turn(self, make_provider, events):
        provider = make_provider(events=events.text("Hi", " there") + events.end())
        interceptor = _interceptor(provider)

        out = asyncio.run(_collect(interceptor.run(ToolChoice.AUTO)))

        assert [e.payload["content"] for e in out] == ["Hi", " there"]
        assert interceptor.state == InterceptorState.DONE
        assert interceptor.full_text == "Hi there"
        assert provider.invoke_calls == []

    def test_tool_turn_event_order(self, make_provider, events):
        provider = make_provider(
            events=events.tool(0, "a", {"query": "news"}) + events.end("tool_use"),
            follow_up_text="Here is the news.",
        )
        interceptor = _interceptor(provider)

        out = asyncio.run(_collect(interceptor.run(ToolChoice.AUTO)))

        assert [e.type for e in out] == [EventType.WEB_SEARCH_START, EventType.CONTENT]
        assert out[1].payload["content"] == "Here is the news."
        assert interceptor.state == InterceptorState.DONE
        assert interceptor.full_text == "Here is the news."

    def test_follow_up_forbids_tools_and_carries_results(self, make_provider, events):
        provider = make_provider(
            events=events.text("Let me check.") + events.tool(1, "a", {"query": "news"}) + events.end("tool_use"),
            follow_up_text="Done.",
        )
        execute = AsyncMock(return_value="Headline: rain")
        interceptor = _interceptor(provider, execute)

        asyncio.run(_collect(interceptor.run(ToolChoice.AUTO)))

        execute.assert_awaited_once_with("web_search", {"query": "news"})
        call = provider.invoke_calls[0]
        assert call["tool_choice"] == ToolChoice.NONE
        assistant, tool_results = call["messages"][-2:]
        assert assistant == {
            "role": "assistant",
            "content": [
                {"type": "text", "text": "Let me check."},
                {"type": "tool_use", "id": "a", "name": "web_search", "input": {"query": "news"}},
            ],
        }
        assert tool_results == {
            "role": "user",
            "content": [
                {"type": "tool_result", "tool_use_id": "a", "content": [{"type": "text", "text": "Headline: rain"}]}
            ],
        }
        assert interceptor.full_text == "Let me check.Done."

    def test_results_keep_invocation_order(self, make_provider, events):
        """b resolves before a; tool results still follow invocation order."""
        provider = make_provider(
            events=events.tool(0, "a", {"query": "slow"}) + events.tool(1, "b", {"query": "fast"}) + events.end("tool_use"),
            follow_up_text="ok",
        )
        finished = []

        async def execute(name, arguments):
            await asyncio.sleep(0.05 if arguments["query"] == "slow" else 0)
            finished.append(arguments["query"])
            return f"result for {arguments['query']}"

        interceptor = _interceptor(provider, execute)
        asyncio.run(_collect(interceptor.run(ToolChoice.AUTO)))

        assert finished == ["fast", "slow"]
        results = provider.invoke_calls[0]["messages"][-1]["content"]
        assert [r["tool_use_id"] for r in results] == ["a", "b"]
        assert [r["content"][0]["text"] for r in results] == ["result for slow", "result for fast"]

    def test_invocations_run_concurrently(self, make_provider, events):
        provider = make_provider(
            events=events.tool(0, "a", {"query": "1"}) + events.tool(1, "b", {"query": "2"}) + events.end("tool_use"),
        )
        running = {"now": 0, "peak": 0}

        async def execute(name, arguments):
            running["now"] += 1
            running["peak"] = max(running["peak"], running["now"])
            await asyncio.sleep(0.01)
            running["now"] -= 1
            return "r"

        asyncio.run(_collect(_interceptor(provider, execute).run(ToolChoice.AUTO)))
        assert running["peak"] == 2

    def test_failed_invocation_becomes_placeholder(self, make_provider, events):
        provider = make_provider(events=events.tool(0, "a", {"query": "x"}) + events.end("tool_use"), follow_up_text="ok")
        execute = AsyncMock(side_effect=ExternalServiceError("Search service timed out", service="search"))

        out = asyncio.run(_collect(_interceptor(provider, execute).run(ToolChoice.AUTO)))

        assert out[-1] == ChatEvent.content("ok")
        result_text = provider.invoke_calls[0]["messages"][-1]["content"][0]["content"][0]["text"]
        assert result_text == "Search failed: Search service timed out"

    def test_unparseable_arguments_still_invoked(self, make_provider, events):
        provider = make_provider(events=events.tool(0, "a", '{"query": "unterminated') + events.end("tool_use"))
        execute = AsyncMock(return_value="r")

        asyncio.run(_collect(_interceptor(provider, execute).run(ToolChoice.AUTO)))
        execute.assert_awaited_once_with("web_search", {})

    def test_stream_failure_raises_and_marks_error(self, make_provider, events):
        provider = make_provider(events=events.text("a", "b", "c") + events.end(), fail_after=4)
        interceptor = _interceptor(provider)
        received = []

        async def run():
            async for event in interceptor.run(ToolChoice.AUTO):
                received.append(event)

        with pytest.raises(LLMError):
            asyncio.run(run())
        assert [e.payload["content"] for e in received] == ["a", "b", "c"]
        assert interceptor.state == InterceptorState.ERROR

    def test_follow_up_failure_raises(self, make_provider, events):
        provider = make_provider(
            events=events.tool(0, "a", {"query": "x"}) + events.end("tool_use"),
            invoke_error=LLMError("AI Core API error: 500", status_code=500),
        )
        interceptor = _interceptor(provider)

        with pytest.raises(LLMError, match="AI Core API error: 500"):
            asyncio.run(_collect(interceptor.run(ToolChoice.AUTO)))
        assert interceptor.state == InterceptorState.ERROR

    def test_token_failure_before_searches_fails_turn(self, make_provider, events):
        provider = make_provider(
            events=events.tool(0, "a", {"query": "x"}) + events.end("tool_use"),
            token_error=LLMError("Token request rejected", error_type="auth"),
        )
        execute = AsyncMock(return_value="r")

        with pytest.raises(LLMError, match="Token request rejected"):
            asyncio.run(_collect(_interceptor(provider, execute).run(ToolChoice.AUTO)))
        execute.assert_not_awaited()


class TestSearchExecutor:
    """Test make_search_executor()."""

    def test_success_returns_content(self):
        execute_search = AsyncMock(return_value={"success": True, "content": "answer"})
        execute = make_search_executor("client", execute_search)

        assert asyncio.run(execute("web_search", {"query": "q"})) == "answer"
        execute_search.assert_awaited_once_with("client", "q")

    def test_error_response_becomes_placeholder(self):
        execute_search = AsyncMock(return_value={
            "success": False,
            "error": {"message": "Search service timed out", "details": "The search request took too long. Try again."},
        })
        execute = make_search_executor("client", execute_search)

        assert asyncio.run(execute("web_search", {"query": "q"})) == (
            "Search failed: Search service timed out (The search request took too long. Try again.)"
        )

    def test_unknown_tool(self):
        execute_search = AsyncMock()
        execute = make_search_executor("client", execute_search)

        assert asyncio.run(execute("calculator", {})) == "Tool 'calculator' is not available."
        execute_search.assert_not_awaited()
