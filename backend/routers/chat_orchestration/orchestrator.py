"""
Turn orchestrator - the transport-agnostic chat core.

One chat request becomes one Streamed Turn:

    prepare()  validate -> verify ownership -> persist user message ->
               assemble context            (raises before any stream)
    stream()   user_message, assistant_start, content* | web_search_start +
               content, then exactly one done or error

The assistant message is persisted only when the turn completes cleanly;
partial text from a failed turn is never written. Memory extraction is
scheduled after `done` and never affects the visible turn.

Both channel adapters (routers/chat.py, routers/chat_streaming.py) call the
same two methods and only differ in framing.
"""

import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

from pydantic import BaseModel

from config import runtime_config
from errors import NotFoundError, ValidationError, sanitize_error_message
from logging_config import log_message_in, log_message_out
from services.chat_store import Attachment, ChatStore, Conversation, Message
from services.memory import MemoryService, NullMemoryService
from services.provider_client import ProviderClient, ToolChoice
from services.search_client import SearchClient, execute_web_search

from .attachments import validate_and_normalize_attachments
from .context import AssembledContext, ContextAssembler
from .events import ChatEvent
from .interceptor import ToolUseInterceptor, make_search_executor
from .relay import spawn

logger = logging.getLogger(__name__)

TURN_FAILED_MESSAGE = "Failed to get AI response"
TITLE_MAX_CHARS = 50

_HEADING_RE = re.compile(r"^#+\s*")


class ChatRequest(BaseModel):
    """Body of a chat request on either channel."""

    conversationId: Optional[str] = None
    content: Optional[str] = ""
    attachments: Optional[Any] = None


@dataclass
class TurnRequest:
    user_id: str
    conversation_id: Optional[str]
    content: Optional[str]
    attachments: Any = None

    @classmethod
    def from_payload(cls, user_id: str, payload: Dict[str, Any]) -> "TurnRequest":
        return cls(
            user_id=user_id,
            conversation_id=payload.get("conversationId"),
            content=payload.get("content"),
            attachments=payload.get("attachments"),
        )


@dataclass
class PreparedTurn:
    user_id: str
    conversation: Conversation
    user_message: Message
    assistant_message_id: str
    context: AssembledContext
    attachments: List[Attachment] = field(default_factory=list)

    @property
    def content(self) -> str:
        return self.user_message.content


def generate_title(content: str, attachments: List[Attachment], reply: str) -> Optional[str]:
    """Derive a conversation title from the first exchange.

    Uses the user's text, else the attachment names, else the first line of
    the reply without markdown heading marks. None when nothing is usable.
    """
    source = ""
    if content and content.strip():
        source = content.strip()
    else:
        names = [a.name for a in attachments or [] if a.name]
        if names:
            source = names[0] if len(names) == 1 else f"{names[0]} (+{len(names) - 1} more)"
    if not source and reply:
        first_line = reply.split("\n")[0].strip()
        source = _HEADING_RE.sub("", first_line).strip()

    if not source:
        return None
    return source[:TITLE_MAX_CHARS] + ("..." if len(source) > TITLE_MAX_CHARS else "")


class TurnOrchestrator:
    """Runs chat turns against the provider on behalf of a channel.

    Args:
        store: ChatStore for ownership checks and persistence
        provider: ProviderClient for the chat deployment
        search: SearchClient for web_search invocations (None disables tools)
        memory: MemoryService for personalization and post-turn extraction
        config: RuntimeConfig (defaults to runtime_config)
    """

    def __init__(
        self,
        store: ChatStore,
        provider: ProviderClient,
        search: Optional[SearchClient] = None,
        memory: Optional[MemoryService] = None,
        config=None,
    ):
        self.store = store
        self.provider = provider
        self.search = search
        self.memory = memory or NullMemoryService()
        self.config = config or runtime_config
        self.assembler = ContextAssembler(store, self.memory, self.config)
        self.execute_tool = make_search_executor(search, execute_web_search)

    @property
    def tool_choice(self) -> ToolChoice:
        if self.search is not None and self.search.enabled and self.provider.model_type == "anthropic":
            return ToolChoice.AUTO
        return ToolChoice.DISABLED

    async def prepare(self, request: TurnRequest) -> PreparedTurn:
        """Validate the request and persist the user message.

        Raises:
            ValidationError: missing conversation id / content or bad attachments
            NotFoundError: conversation missing or owned by someone else
        """
        content = request.content if isinstance(request.content, str) else ""
        raw_attachments = request.attachments
        if not request.conversation_id or (not content and not raw_attachments):
            raise ValidationError("Missing conversationId or content", parameter="conversationId")

        attachments = validate_and_normalize_attachments(raw_attachments, self.config)

        conversation = await self.store.get_conversation(str(request.conversation_id), request.user_id)
        if conversation is None:
            raise NotFoundError("Conversation not found or access denied", resource_type="conversation")

        log_message_in(logger, content, user=request.user_id, attachments=len(attachments))
        user_message = await self.store.insert_message(
            Message(id=str(uuid.uuid4()), conversation_id=conversation.id, role="user", content=content)
        )
        if attachments:
            await self.store.save_attachments(user_message.id, attachments)

        context = await self.assembler.assemble(
            request.user_id,
            conversation.id,
            content,
            attachments,
            current_message_id=user_message.id,
        )
        return PreparedTurn(
            user_id=request.user_id,
            conversation=conversation,
            user_message=user_message,
            assistant_message_id=str(uuid.uuid4()),
            context=context,
            attachments=attachments,
        )

    async def stream(self, turn: PreparedTurn) -> AsyncIterator[ChatEvent]:
        """Yield the turn's events, ending with exactly one done or error."""
        yield ChatEvent.user_message(turn.user_message.id)
        yield ChatEvent.assistant_start(turn.assistant_message_id)

        interceptor = ToolUseInterceptor(self.provider, self.execute_tool, turn.context.messages)
        try:
            async for event in interceptor.run(self.tool_choice):
                yield event
            await self._persist(turn, interceptor.full_text)
        except Exception as e:
            logger.error(f"Chat turn failed for conversation {turn.conversation.id}: {e}")
            yield ChatEvent.error(self.error_message(e))
            return

        yield ChatEvent.done(turn.assistant_message_id)
        log_message_out(logger, [t["name"] for t in interceptor.tools_used], len(interceptor.full_text))
        self._schedule_memory(turn, interceptor.full_text)

    def error_message(self, error: Exception) -> str:
        return sanitize_error_message(error, self.config.is_production, fallback=TURN_FAILED_MESSAGE)

    async def _persist(self, turn: PreparedTurn, reply: str) -> None:
        await self.store.insert_message(
            Message(
                id=turn.assistant_message_id,
                conversation_id=turn.conversation.id,
                role="assistant",
                content=reply,
            )
        )
        if turn.conversation.has_default_title:
            title = generate_title(turn.content, turn.attachments, reply)
            if title:
                # The reply is already stored; a failed rename must not fail the turn
                try:
                    await self.store.update_title(turn.conversation.id, title)
                    turn.conversation.title = title
                except Exception as e:
                    logger.warning(f"Title update failed for conversation {turn.conversation.id}: {e}")

    def _schedule_memory(self, turn: PreparedTurn, reply: str) -> None:
        messages = [
            {"role": "user", "content": turn.content},
            {"role": "assistant", "content": reply},
        ]
        spawn(
            self.memory.process_conversation_turn(turn.user_id, turn.conversation.id, messages),
            name="memory-extraction",
        )


# Singleton instance
_turn_orchestrator: Optional[TurnOrchestrator] = None


async def get_turn_orchestrator() -> TurnOrchestrator:
    """Get the process-wide orchestrator, wiring collaborators on first use."""
    global _turn_orchestrator
    if _turn_orchestrator is None:
        from utils.llm import get_chat_store, get_memory_service, get_provider_client, get_search_client

        _turn_orchestrator = TurnOrchestrator(
            store=await get_chat_store(),
            provider=get_provider_client(),
            search=get_search_client(),
            memory=get_memory_service(),
        )
    return _turn_orchestrator


def reset_turn_orchestrator() -> None:
    global _turn_orchestrator
    _turn_orchestrator = None
