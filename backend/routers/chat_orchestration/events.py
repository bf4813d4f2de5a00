"""
Client-facing chat events.

One ChatEvent per occurrence, serialized once by encode_payload() so the
WebSocket and SSE channels carry byte-identical payloads; only the framing
differs (a discrete text message vs. a `data: ...` block).
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class EventType(str, Enum):
    USER_MESSAGE = "user_message"
    ASSISTANT_START = "assistant_start"
    CONTENT = "content"
    WEB_SEARCH_START = "web_search_start"
    DONE = "done"
    ERROR = "error"
    # Out-of-band, persistent channel only
    CONNECTED = "connected"
    PONG = "pong"


TERMINAL_EVENTS = (EventType.DONE, EventType.ERROR)


@dataclass(frozen=True)
class ChatEvent:
    type: EventType
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, **self.payload}

    @classmethod
    def user_message(cls, message_id: str) -> "ChatEvent":
        return cls(EventType.USER_MESSAGE, {"id": message_id})

    @classmethod
    def assistant_start(cls, message_id: str) -> "ChatEvent":
        return cls(EventType.ASSISTANT_START, {"id": message_id})

    @classmethod
    def content(cls, text: str) -> "ChatEvent":
        return cls(EventType.CONTENT, {"content": text})

    @classmethod
    def web_search_start(cls, queries: Optional[List[str]] = None) -> "ChatEvent":
        return cls(EventType.WEB_SEARCH_START, {"queries": list(queries or [])})

    @classmethod
    def done(cls, message_id: str) -> "ChatEvent":
        return cls(EventType.DONE, {"id": message_id})

    @classmethod
    def error(cls, message: str) -> "ChatEvent":
        return cls(EventType.ERROR, {"message": message})

    @classmethod
    def connected(cls, user_id: str) -> "ChatEvent":
        return cls(EventType.CONNECTED, {"userId": user_id})

    @classmethod
    def pong(cls) -> "ChatEvent":
        return cls(EventType.PONG)


def encode_payload(event: ChatEvent) -> str:
    """The single JSON serialization of an event shared by both channels."""
    return json.dumps(event.to_dict(), separators=(",", ":"), ensure_ascii=False)


def sse_frame(event: ChatEvent) -> str:
    return f"data: {encode_payload(event)}\n\n"


def decode_payload(raw: str) -> Dict[str, Any]:
    """Parse a payload received on either channel (client side)."""
    return json.loads(raw)
