"""
chatrelay REST Router
Conversations, attachments, memories, user and model info.

Every conversation-scoped route re-checks ownership through the store;
nothing here caches an authorization decision.
"""

import base64
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from config import runtime_config
from errors import LLMError, NotFoundError, ValidationError, success_response
from services.chat_store import ChatStore
from services.identity import UserIdentity, resolve_request_user
from utils.llm import get_memory_service, get_provider_client

from .chat_orchestration.attachments import is_valid_uuid
from .dependencies import get_current_user, get_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["conversations"])


class CreateConversationRequest(BaseModel):
    title: Optional[str] = None


@router.get("/health")
async def health(request: Request):
    """Liveness probe.

    Anonymous calls always succeed. When a bearer credential is presented it
    must still be valid, which lets a client tell an expired session (401)
    from a network problem.
    """
    if request.headers.get("authorization"):
        resolve_request_user(request.headers)
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}


@router.get("/userinfo")
async def userinfo(user: UserIdentity = Depends(get_current_user)):
    if user.given_name:
        name = f"{user.given_name} {user.family_name or ''}".strip()
    else:
        name = user.name or user.email or "User"
    return {
        "id": user.id,
        "email": user.email,
        "name": name,
        "given_name": user.given_name,
        "family_name": user.family_name,
    }


@router.post("/conversation")
async def create_conversation(
    body: Optional[CreateConversationRequest] = None,
    user: UserIdentity = Depends(get_current_user),
    store: ChatStore = Depends(get_store),
):
    title = (body.title if body else None) or "New Conversation"
    conversation = await store.create_conversation(user.id, title)
    logger.info(f"Conversation created: {conversation.id}")
    return {"ID": conversation.id, "title": conversation.title, "createdAt": conversation.created_at.isoformat()}


@router.get("/conversations")
async def list_conversations(user: UserIdentity = Depends(get_current_user), store: ChatStore = Depends(get_store)):
    conversations = await store.list_conversations(user.id)
    return {"conversations": [c.to_dict() for c in conversations]}


@router.get("/conversation/{conversation_id}/messages")
async def get_conversation_messages(
    conversation_id: str,
    user: UserIdentity = Depends(get_current_user),
    store: ChatStore = Depends(get_store),
):
    if await store.get_conversation(conversation_id, user.id) is None:
        raise NotFoundError("Conversation not found or access denied", resource_type="conversation")
    messages = await store.get_messages(conversation_id, limit=1000, order="asc")
    return {"messages": [m.to_dict() for m in messages]}


@router.delete("/conversation/{conversation_id}")
async def delete_conversation(
    conversation_id: str,
    user: UserIdentity = Depends(get_current_user),
    store: ChatStore = Depends(get_store),
):
    if not is_valid_uuid(conversation_id) or not await store.delete_conversation(conversation_id, user.id):
        raise NotFoundError("Conversation not found or access denied", resource_type="conversation")
    logger.info(f"Conversation deleted: {conversation_id}")
    return success_response()


@router.get("/attachment/{attachment_id}")
async def get_attachment(
    attachment_id: str,
    user: UserIdentity = Depends(get_current_user),
    store: ChatStore = Depends(get_store),
):
    if not is_valid_uuid(attachment_id):
        raise ValidationError("Invalid attachment ID", parameter="attachment_id", received=attachment_id)

    attachment = await store.get_attachment(attachment_id, user.id)
    if attachment is None:
        raise NotFoundError("Attachment not found", resource_type="attachment")

    data = None
    if attachment.content:
        data = f"data:{attachment.mime_type};base64,{base64.b64encode(attachment.content).decode('ascii')}"
    return {"ID": attachment.id, "name": attachment.filename, "type": attachment.mime_type, "data": data}


# =============================================================================
# Memories
# =============================================================================


@router.get("/memories")
async def list_memories(user: UserIdentity = Depends(get_current_user)):
    memories = await get_memory_service().get_all_memories(user.id)
    return {"memories": [m.to_dict() for m in memories]}


@router.delete("/memories/{memory_id}")
async def delete_memory(memory_id: str, user: UserIdentity = Depends(get_current_user)):
    if not await get_memory_service().delete_memory(memory_id, user.id):
        raise NotFoundError("Memory not found or access denied", resource_type="memory")
    return success_response()


@router.delete("/memories")
async def clear_memories(user: UserIdentity = Depends(get_current_user)):
    success = await get_memory_service().clear_all_memories(user.id)
    return {"success": success}


# =============================================================================
# Model info
# =============================================================================


@router.get("/model")
async def model_info():
    """Deployment name, model family and id of the chat deployment."""
    client = get_provider_client()
    model_name = runtime_config.model_name
    try:
        info = await client.get_deployment_info()
        model_name = info.get("configurationName") or model_name
    except LLMError as e:
        logger.info(f"Could not fetch deployment info, using default model name: {e.message}")
    return {"model": model_name, "type": client.model_type, "deploymentId": client.config.deployment_id}
