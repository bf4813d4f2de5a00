"""
chatrelay Chat Router - WebSocket channel (primary transport)

Protocol (JSON text frames):
    server -> {"type": "connected", "userId": ...}      after authentication
    client -> {"type": "ping"}                          server -> {"type": "pong"}
    client -> {"type": "chat", "conversationId", "content", "attachments"}
    server -> user_message, assistant_start, content*, web_search_start,
              done | error                              (one turn)

Turns on one connection are processed one at a time: the next frame
(including a ping) is only read once the current turn's terminal event has
been sent, so heartbeats never land inside a turn.

Authentication failure sends an error event and closes with 1008 (policy
violation), which the client supervisor treats as session expiry.
"""

import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from errors import AuthenticationError, ChatRelayError
from services.identity import resolve_channel_user

from .chat_orchestration import (
    ChatEvent,
    DetachedTurn,
    TurnRequest,
    encode_payload,
    get_turn_orchestrator,
    relay_to_websocket,
)

logger = logging.getLogger(__name__)

router = APIRouter()

POLICY_VIOLATION = 1008


async def _send(websocket: WebSocket, event: ChatEvent) -> None:
    await websocket.send_text(encode_payload(event))


@router.websocket("/ws/chat")
async def chat_websocket(websocket: WebSocket):
    """WebSocket endpoint for chat."""
    await websocket.accept()

    try:
        user = resolve_channel_user(websocket.headers)
    except AuthenticationError as e:
        logger.warning(f"WebSocket authentication failed: {e.message}")
        await _send(websocket, ChatEvent.error(e.message))
        await websocket.close(code=POLICY_VIOLATION, reason="Unauthorized")
        return

    logger.info(f"Chat connected: {user.id}")
    await _send(websocket, ChatEvent.connected(user.id))

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except ValueError:
                await _send(websocket, ChatEvent.error("Invalid message format"))
                continue
            if not isinstance(data, dict):
                await _send(websocket, ChatEvent.error("Invalid message format"))
                continue

            msg_type = data.get("type")
            if msg_type == "ping":
                await _send(websocket, ChatEvent.pong())
                continue
            if msg_type != "chat":
                await _send(websocket, ChatEvent.error(f"Unknown message type: {msg_type}"))
                continue

            orchestrator = await get_turn_orchestrator()
            try:
                prepared = await orchestrator.prepare(TurnRequest.from_payload(user.id, data))
            except ChatRelayError as e:
                await _send(websocket, ChatEvent.error(e.message))
                continue
            except Exception as e:
                logger.error(f"Chat request failed: {e}", exc_info=True)
                await _send(websocket, ChatEvent.error(orchestrator.error_message(e)))
                continue

            turn = DetachedTurn(orchestrator.stream(prepared))
            await relay_to_websocket(websocket, turn.events())

    except WebSocketDisconnect:
        logger.info(f"Chat disconnected: {user.id}")
