"""
Tool-use interceptor - turns one provider event stream into chat events.

State machine:
    STREAMING_TEXT -> BUFFERING_TOOL -> AWAITING_TOOL_RESULT -> FINALIZING -> DONE
    STREAMING_TEXT -> DONE                    (no tool blocks seen)
    any state      -> ERROR                   (transport / follow-up failure)

Text deltas are forwarded the moment they arrive while STREAMING_TEXT.
The first tool_use block switches to BUFFERING_TOOL and immediately yields a
single web_search_start event. Tool arguments are accumulated as JSON
fragments and parsed when the block closes ({} on parse failure). When the
stream ends with tool blocks pending, all invocations run concurrently,
results are matched back by invocation id, and one non-streaming follow-up
call (tools declared but forbidden) produces the final answer, emitted as
exactly one content event.

handle_event() is synchronous and network-free so the transitions can be
unit tested by feeding it provider event dicts.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from errors import format_error_for_llm
from logging_config import log_stream
from services.provider_client import ProviderClient, ToolChoice, extract_text

from .events import ChatEvent

logger = logging.getLogger(__name__)

ToolExecutor = Callable[[str, Dict[str, Any]], Awaitable[str]]


class InterceptorState(str, Enum):
    STREAMING_TEXT = "streaming_text"
    BUFFERING_TOOL = "buffering_tool"
    AWAITING_TOOL_RESULT = "awaiting_tool_result"
    FINALIZING = "finalizing"
    DONE = "done"
    ERROR = "error"


@dataclass
class BlockBuilder:
    """One content block being assembled from stream events, keyed by index."""

    index: int
    type: str  # "text" | "tool_use"
    text: str = ""
    id: Optional[str] = None
    name: Optional[str] = None
    partial_json: str = ""
    input: Dict[str, Any] = field(default_factory=dict)
    closed: bool = False

    @property
    def is_tool(self) -> bool:
        return self.type == "tool_use"

    def close(self) -> None:
        if self.closed:
            return
        if self.is_tool:
            try:
                parsed = json.loads(self.partial_json) if self.partial_json.strip() else {}
            except ValueError:
                logger.warning(f"Unparseable arguments for tool {self.name} ({self.id}), using {{}}")
                parsed = {}
            self.input = parsed if isinstance(parsed, dict) else {}
        self.closed = True

    def to_content_block(self) -> Dict[str, Any]:
        """Provider content block without the streaming bookkeeping fields."""
        if self.is_tool:
            return {"type": "tool_use", "id": self.id, "name": self.name, "input": self.input}
        return {"type": "text", "text": self.text}


class ToolUseInterceptor:
    """Consumes one streamed provider turn and yields client chat events.

    Args:
        provider: ProviderClient used for the stream and the follow-up call
        execute_tool: async (name, input) -> result text for one invocation
        messages: The assembled message list the turn was started with
    """

    def __init__(self, provider: ProviderClient, execute_tool: ToolExecutor, messages: List[Dict[str, Any]]):
        self.provider = provider
        self.execute_tool = execute_tool
        self.messages = messages
        self.state = InterceptorState.STREAMING_TEXT
        self.blocks: Dict[int, BlockBuilder] = {}
        self.streamed_text = ""
        self.follow_up_text = ""
        self.search_announced = False
        self.stop_reason: Optional[str] = None

    # === Accumulated results ===

    @property
    def tool_blocks(self) -> List[BlockBuilder]:
        return [b for _, b in sorted(self.blocks.items()) if b.is_tool]

    @property
    def full_text(self) -> str:
        return self.streamed_text + self.follow_up_text

    @property
    def tools_used(self) -> List[Dict[str, Any]]:
        return [{"id": b.id, "name": b.name, "input": b.input} for b in self.tool_blocks]

    def _transition(self, state: InterceptorState, **context) -> None:
        log_stream(logger, f"{self.state.value} -> {state.value}", **context)
        self.state = state

    # === Event handling ===

    def handle_event(self, event: Dict[str, Any]) -> List[ChatEvent]:
        """Apply one provider event; return the chat events to forward now."""
        kind = event.get("type")
        index = event.get("index", 0)

        if kind == "content_block_start":
            block = event.get("content_block") or {}
            if block.get("type") == "tool_use":
                self.blocks[index] = BlockBuilder(index, "tool_use", id=block.get("id"), name=block.get("name"))
                if self.state == InterceptorState.STREAMING_TEXT:
                    self._transition(InterceptorState.BUFFERING_TOOL, tool=block.get("name"))
                if not self.search_announced:
                    self.search_announced = True
                    return [ChatEvent.web_search_start()]
                return []
            self.blocks[index] = BlockBuilder(index, "text")
            return self._append_text(index, block.get("text") or "")

        if kind == "content_block_delta":
            delta = event.get("delta") or {}
            if delta.get("type") == "input_json_delta":
                builder = self.blocks.get(index)
                if builder is not None and builder.is_tool:
                    builder.partial_json += delta.get("partial_json") or ""
                return []
            if delta.get("type") == "text_delta":
                return self._append_text(index, delta.get("text") or "")
            return []

        if kind == "content_block_stop":
            builder = self.blocks.get(index)
            if builder is not None:
                builder.close()
            return []

        if kind == "message_delta":
            self.stop_reason = (event.get("delta") or {}).get("stop_reason") or self.stop_reason
        return []

    def _append_text(self, index: int, text: str) -> List[ChatEvent]:
        if not text:
            return []
        builder = self.blocks.setdefault(index, BlockBuilder(index, "text"))
        builder.text += text
        if self.state != InterceptorState.STREAMING_TEXT:
            return []
        self.streamed_text += text
        return [ChatEvent.content(text)]

    # === Tool path ===

    async def _run_one(self, block: BlockBuilder) -> str:
        try:
            return await self.execute_tool(block.name, block.input)
        except Exception as e:
            logger.warning(f"Tool invocation {block.name} ({block.id}) failed: {e}")
            return format_error_for_llm(e, block.name)

    async def execute_tools(self) -> Dict[str, str]:
        """Run every pending invocation concurrently.

        Returns:
            Mapping of tool_use id -> result text (placeholder on failure)
        """
        blocks = self.tool_blocks
        results = await asyncio.gather(*(self._run_one(b) for b in blocks))
        return {b.id: result for b, result in zip(blocks, results)}

    def follow_up_messages(self, results: Dict[str, str]) -> List[Dict[str, Any]]:
        """Original messages + the reconstructed assistant turn + tool results."""
        assistant_blocks = []
        for _, builder in sorted(self.blocks.items()):
            block = builder.to_content_block()
            if block["type"] == "text" and not block["text"]:
                continue
            assistant_blocks.append(block)

        tool_results = [
            {
                "type": "tool_result",
                "tool_use_id": b.id,
                "content": [{"type": "text", "text": results.get(b.id, "")}],
            }
            for b in self.tool_blocks
        ]
        return self.messages + [
            {"role": "assistant", "content": assistant_blocks},
            {"role": "user", "content": tool_results},
        ]

    async def follow_up(self, results: Dict[str, str]) -> str:
        response = await self.provider.invoke(self.follow_up_messages(results), tool_choice=ToolChoice.NONE)
        return extract_text(response)

    # === Driver ===

    async def run(self, tool_choice: ToolChoice = ToolChoice.AUTO) -> AsyncIterator[ChatEvent]:
        """Stream the turn, yielding content / web_search_start events.

        The terminal done/error event is left to the caller.

        Raises:
            LLMError: provider stream failure, search provider unreachable,
                or follow-up call failure
        """
        try:
            async for event in self.provider.stream_events(self.messages, tool_choice=tool_choice):
                for out in self.handle_event(event):
                    yield out

            if not self.tool_blocks:
                self._transition(InterceptorState.DONE, chars=len(self.streamed_text))
                return

            for block in self.tool_blocks:
                block.close()
            self._transition(InterceptorState.AWAITING_TOOL_RESULT, tools=len(self.tool_blocks))
            # Credentials for the search calls; failing here fails the turn
            await self.provider.auth_headers()
            results = await self.execute_tools()

            self._transition(InterceptorState.FINALIZING)
            self.follow_up_text = await self.follow_up(results)
            yield ChatEvent.content(self.follow_up_text)
            self._transition(InterceptorState.DONE, chars=len(self.full_text))
        except Exception as e:
            self._transition(InterceptorState.ERROR, error=type(e).__name__)
            raise


def unknown_tool_result(name: Optional[str]) -> str:
    return f"Tool '{name}' is not available."


def make_search_executor(search_client, execute_search) -> ToolExecutor:
    """Bind the web_search tool to a SearchClient.

    Args:
        search_client: SearchClient for the configured search deployment
        execute_search: async (client, query) -> standard tool response dict

    Returns:
        ToolExecutor returning the answer text or a placeholder string
    """

    async def execute(name: str, arguments: Dict[str, Any]) -> str:
        if name != "web_search":
            return unknown_tool_result(name)
        response = await execute_search(search_client, arguments.get("query", ""))
        if response.get("success"):
            return response.get("content") or ""
        error = response.get("error") or {}
        message = error.get("message") or "unknown error"
        if error.get("details"):
            message = f"{message} ({error['details']})"
        return f"Search failed: {message}"

    return execute
