"""
chatrelay Chat Orchestration - transport-agnostic streaming chat core

Components:
- ContextAssembler: bounded message window (history, memory, attachments)
- ToolUseInterceptor: provider stream -> chat events, web_search interception
- TurnOrchestrator: prepare + stream one turn, persistence at turn end
- DetachedTurn: runs a turn to completion regardless of the listener
- ChatEvent: the event payloads shared by the WebSocket and SSE channels

Flow per turn:
    client message -> ContextAssembler -> ProviderClient.stream_events ->
    ToolUseInterceptor -> ChatEvent -> channel framing -> client
"""

from .attachments import validate_and_normalize_attachments
from .context import AssembledContext, ContextAssembler, TruncationResult, estimate_tokens
from .events import ChatEvent, EventType, encode_payload, sse_frame
from .interceptor import BlockBuilder, InterceptorState, ToolUseInterceptor
from .orchestrator import (
    ChatRequest,
    PreparedTurn,
    TurnOrchestrator,
    TurnRequest,
    generate_title,
    get_turn_orchestrator,
)
from .relay import DetachedTurn, relay_to_sse, relay_to_websocket, spawn

__all__ = [
    "validate_and_normalize_attachments",
    "AssembledContext",
    "ContextAssembler",
    "TruncationResult",
    "estimate_tokens",
    "ChatEvent",
    "EventType",
    "encode_payload",
    "sse_frame",
    "BlockBuilder",
    "InterceptorState",
    "ToolUseInterceptor",
    "ChatRequest",
    "PreparedTurn",
    "TurnOrchestrator",
    "TurnRequest",
    "generate_title",
    "get_turn_orchestrator",
    "DetachedTurn",
    "relay_to_sse",
    "relay_to_websocket",
    "spawn",
]
