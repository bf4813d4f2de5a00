"""
chatrelay Chat Streaming - SSE channel (fallback transport)

POST /api/chat/stream with {conversationId, content, attachments} answers
with a text/event-stream of `data: {json}\\n\\n` frames carrying the same
payloads as the WebSocket channel.

Validation and ownership failures are raised before the response starts,
so they come back as plain JSON errors (400 / 404) from the exception
handlers instead of as stream events.
"""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from services.identity import UserIdentity

from .chat_orchestration import ChatRequest, DetachedTurn, TurnRequest, get_turn_orchestrator, relay_to_sse
from .dependencies import get_current_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/chat", tags=["chat"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@router.post("/stream")
async def chat_stream(body: ChatRequest, user: UserIdentity = Depends(get_current_user)):
    """Run one chat turn and stream its events as SSE."""
    orchestrator = await get_turn_orchestrator()
    prepared = await orchestrator.prepare(
        TurnRequest(
            user_id=user.id,
            conversation_id=body.conversationId,
            content=body.content,
            attachments=body.attachments,
        )
    )
    logger.info(f"SSE turn started: conversation={prepared.conversation.id}")

    turn = DetachedTurn(orchestrator.stream(prepared))
    return StreamingResponse(relay_to_sse(turn.events()), media_type="text/event-stream", headers=SSE_HEADERS)
