"""
Conversation persistence.

Provides:
- Conversation / Message / Attachment / StoredAttachment records
- ChatStore: the persistence interface the chat core talks to
- InMemoryChatStore: process-local store (development, tests, DB fallback)
- PostgresChatStore: asyncpg-backed store on top of services.database

Ownership is checked on every lookup that takes a user id; nothing here
caches authorization decisions.
"""

import asyncio
import base64
import binascii
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_TITLES = ("", "New Conversation", "New Chat")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Attachment:
    """Transient attachment as received from the client (base64 payload)."""

    name: str
    type: str
    data: str = ""


@dataclass
class StoredAttachment:
    id: str
    message_id: str
    filename: str
    mime_type: str
    content: Optional[bytes]
    created_at: datetime = field(default_factory=_now)


@dataclass
class Message:
    id: str
    conversation_id: str
    role: str  # user | assistant | system
    content: str
    created_at: datetime = field(default_factory=_now)
    attachments: List[StoredAttachment] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "conversationId": self.conversation_id,
            "role": self.role,
            "content": self.content,
            "createdAt": self.created_at.isoformat(),
            "attachments": [
                {"id": a.id, "filename": a.filename, "mimeType": a.mime_type} for a in self.attachments
            ],
        }


@dataclass
class Conversation:
    id: str
    user_id: str
    title: str = "New Conversation"
    created_at: datetime = field(default_factory=_now)
    modified_at: datetime = field(default_factory=_now)

    @property
    def has_default_title(self) -> bool:
        return (self.title or "") in DEFAULT_TITLES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "createdAt": self.created_at.isoformat(),
            "modifiedAt": self.modified_at.isoformat(),
        }


def decode_attachment_bytes(data: str) -> Optional[bytes]:
    """Decode a base64 payload, stripping any data-URL prefix."""
    if not data:
        return None
    if "," in data:
        data = data.split(",", 1)[1]
    try:
        return base64.b64decode(data)
    except (binascii.Error, ValueError):
        return None


class ChatStore(ABC):
    """Persistence interface used by the chat core and REST routes."""

    @abstractmethod
    async def create_conversation(self, user_id: str, title: str = "New Conversation") -> Conversation:
        ...

    @abstractmethod
    async def get_conversation(self, conversation_id: str, user_id: str) -> Optional[Conversation]:
        """Return the conversation only if user_id owns it."""

    @abstractmethod
    async def list_conversations(self, user_id: str) -> List[Conversation]:
        ...

    @abstractmethod
    async def delete_conversation(self, conversation_id: str, user_id: str) -> bool:
        ...

    @abstractmethod
    async def get_messages(self, conversation_id: str, limit: int = 20, order: str = "desc") -> List[Message]:
        """Messages ordered by creation time; "desc" returns the newest first."""

    @abstractmethod
    async def insert_message(self, message: Message) -> Message:
        ...

    @abstractmethod
    async def update_title(self, conversation_id: str, title: str) -> None:
        ...

    @abstractmethod
    async def save_attachments(self, message_id: str, attachments: List[Attachment]) -> List[StoredAttachment]:
        ...

    @abstractmethod
    async def get_attachment(self, attachment_id: str, user_id: str) -> Optional[StoredAttachment]:
        """Return the attachment only if its conversation belongs to user_id."""


class InMemoryChatStore(ChatStore):
    """Dict-backed store. State lives for the lifetime of the process."""

    def __init__(self):
        self._conversations: Dict[str, Conversation] = {}
        self._messages: Dict[str, List[Message]] = {}
        self._attachments: Dict[str, StoredAttachment] = {}
        self._message_conversation: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def create_conversation(self, user_id: str, title: str = "New Conversation") -> Conversation:
        conversation = Conversation(id=_new_id(), user_id=user_id, title=title)
        async with self._lock:
            self._conversations[conversation.id] = conversation
            self._messages[conversation.id] = []
        return conversation

    async def get_conversation(self, conversation_id: str, user_id: str) -> Optional[Conversation]:
        conversation = self._conversations.get(conversation_id)
        if conversation is None or conversation.user_id != user_id:
            return None
        return conversation

    async def list_conversations(self, user_id: str) -> List[Conversation]:
        owned = [c for c in self._conversations.values() if c.user_id == user_id]
        return sorted(owned, key=lambda c: c.modified_at, reverse=True)

    async def delete_conversation(self, conversation_id: str, user_id: str) -> bool:
        async with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None or conversation.user_id != user_id:
                return False
            del self._conversations[conversation_id]
            for message in self._messages.pop(conversation_id, []):
                self._message_conversation.pop(message.id, None)
                for attachment in message.attachments:
                    self._attachments.pop(attachment.id, None)
        return True

    async def get_messages(self, conversation_id: str, limit: int = 20, order: str = "desc") -> List[Message]:
        messages = sorted(self._messages.get(conversation_id, []), key=lambda m: m.created_at)
        if order == "desc":
            return list(reversed(messages))[:limit]
        return messages[:limit]

    async def insert_message(self, message: Message) -> Message:
        async with self._lock:
            self._messages.setdefault(message.conversation_id, []).append(message)
            self._message_conversation[message.id] = message.conversation_id
            conversation = self._conversations.get(message.conversation_id)
            if conversation is not None:
                conversation.modified_at = _now()
        return message

    async def update_title(self, conversation_id: str, title: str) -> None:
        conversation = self._conversations.get(conversation_id)
        if conversation is not None:
            conversation.title = title
            conversation.modified_at = _now()

    async def save_attachments(self, message_id: str, attachments: List[Attachment]) -> List[StoredAttachment]:
        stored = []
        conversation_id = self._message_conversation.get(message_id)
        message = None
        if conversation_id:
            message = next((m for m in self._messages.get(conversation_id, []) if m.id == message_id), None)
        for att in attachments:
            record = StoredAttachment(
                id=_new_id(),
                message_id=message_id,
                filename=att.name or "attachment",
                mime_type=att.type or "application/octet-stream",
                content=decode_attachment_bytes(att.data),
            )
            self._attachments[record.id] = record
            if message is not None:
                message.attachments.append(record)
            stored.append(record)
        return stored

    async def get_attachment(self, attachment_id: str, user_id: str) -> Optional[StoredAttachment]:
        record = self._attachments.get(attachment_id)
        if record is None:
            return None
        conversation_id = self._message_conversation.get(record.message_id)
        if conversation_id is None or await self.get_conversation(conversation_id, user_id) is None:
            return None
        return record


class PostgresChatStore(ChatStore):
    """ChatStore over the pooled DatabaseManager (tables from CHAT_SCHEMA)."""

    def __init__(self, db):
        self.db = db

    @staticmethod
    def _conversation(row: dict) -> Conversation:
        return Conversation(
            id=str(row["id"]),
            user_id=row["user_id"],
            title=row["title"] or "",
            created_at=row["created_at"],
            modified_at=row["modified_at"],
        )

    async def create_conversation(self, user_id: str, title: str = "New Conversation") -> Conversation:
        row = await self.db.fetchrow(
            "INSERT INTO conversations (id, user_id, title) VALUES ($1, $2, $3) "
            "RETURNING id, user_id, title, created_at, modified_at",
            _new_id(), user_id, title,
        )
        return self._conversation(row)

    async def get_conversation(self, conversation_id: str, user_id: str) -> Optional[Conversation]:
        row = await self.db.fetchrow(
            "SELECT id, user_id, title, created_at, modified_at FROM conversations "
            "WHERE id::text = $1 AND user_id = $2",
            conversation_id, user_id,
        )
        return self._conversation(row) if row else None

    async def list_conversations(self, user_id: str) -> List[Conversation]:
        rows = await self.db.fetch(
            "SELECT id, user_id, title, created_at, modified_at FROM conversations "
            "WHERE user_id = $1 ORDER BY modified_at DESC",
            user_id,
        )
        return [self._conversation(r) for r in rows]

    async def delete_conversation(self, conversation_id: str, user_id: str) -> bool:
        status = await self.db.execute(
            "DELETE FROM conversations WHERE id::text = $1 AND user_id = $2",
            conversation_id, user_id,
        )
        return status.endswith(" 1")

    async def get_messages(self, conversation_id: str, limit: int = 20, order: str = "desc") -> List[Message]:
        direction = "DESC" if order == "desc" else "ASC"
        rows = await self.db.fetch(
            "SELECT id, conversation_id, role, content, created_at FROM messages "
            f"WHERE conversation_id::text = $1 ORDER BY created_at {direction} LIMIT $2",
            conversation_id, limit,
        )
        return [
            Message(
                id=str(r["id"]),
                conversation_id=str(r["conversation_id"]),
                role=r["role"],
                content=r["content"] or "",
                created_at=r["created_at"],
            )
            for r in rows
        ]

    async def insert_message(self, message: Message) -> Message:
        await self.db.execute(
            "INSERT INTO messages (id, conversation_id, role, content, created_at) VALUES ($1, $2, $3, $4, $5)",
            message.id, message.conversation_id, message.role, message.content, message.created_at,
        )
        await self.db.execute(
            "UPDATE conversations SET modified_at = NOW() WHERE id::text = $1",
            message.conversation_id,
        )
        return message

    async def update_title(self, conversation_id: str, title: str) -> None:
        await self.db.execute(
            "UPDATE conversations SET title = $2, modified_at = NOW() WHERE id::text = $1",
            conversation_id, title,
        )

    async def save_attachments(self, message_id: str, attachments: List[Attachment]) -> List[StoredAttachment]:
        stored = []
        for att in attachments:
            record = StoredAttachment(
                id=_new_id(),
                message_id=message_id,
                filename=att.name or "attachment",
                mime_type=att.type or "application/octet-stream",
                content=decode_attachment_bytes(att.data),
            )
            await self.db.execute(
                "INSERT INTO message_attachments (id, message_id, filename, mime_type, content) "
                "VALUES ($1, $2, $3, $4, $5)",
                record.id, message_id, record.filename, record.mime_type, record.content,
            )
            stored.append(record)
        return stored

    async def get_attachment(self, attachment_id: str, user_id: str) -> Optional[StoredAttachment]:
        row = await self.db.fetchrow(
            "SELECT a.id, a.message_id, a.filename, a.mime_type, a.content, a.created_at "
            "FROM message_attachments a "
            "JOIN messages m ON m.id = a.message_id "
            "JOIN conversations c ON c.id = m.conversation_id "
            "WHERE a.id::text = $1 AND c.user_id = $2",
            attachment_id, user_id,
        )
        if not row:
            return None
        return StoredAttachment(
            id=str(row["id"]),
            message_id=str(row["message_id"]),
            filename=row["filename"],
            mime_type=row["mime_type"],
            content=row["content"],
            created_at=row["created_at"],
        )
