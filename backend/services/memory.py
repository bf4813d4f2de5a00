"""
User memory collaborator.

Two operations matter to the chat core:
- retrieve_relevant_memories(user_id, query) -> list of short facts
- process_conversation_turn(user_id, conversation_id, messages) -> None,
  run fire-and-forget after a turn finished

LocalMemoryService keeps memories in process memory, extracts them with a
non-streaming provider call (tools disabled) and ranks them by word overlap.
All thresholds are constructor inputs sourced from RuntimeConfig.
"""

import json
import logging
import re
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

from services.provider_client import ToolChoice

logger = logging.getLogger(__name__)

EXTRACTION_PROMPT = (
    "Extract 0-3 important personal facts, preferences, goals or ongoing projects about the user "
    "from the conversation I provide. Only keep information that will still be useful in future "
    "conversations. Return JSON: "
    '{"memories": [{"content": "fact", "category": "personal_fact", "confidence": 0.9}]}\n\n'
    "Your response (JSON only):"
)

_MEMORIES_JSON_RE = re.compile(r'\{[\s\S]*"memories"[\s\S]*\}')
_WORD_RE = re.compile(r"[^\w\s]")


def format_memories_for_prompt(memories: List[str]) -> str:
    """Render memories as an addition to the system prompt ("" when there are none)."""
    if not memories:
        return ""
    memory_list = "\n".join(f"- {m}" for m in memories)
    return (
        "\n\nHere is what you remember about this user from previous conversations:\n"
        f"{memory_list}\n\n"
        "Use this context to personalize your responses when relevant, but don't explicitly "
        'mention that you "remember" things unless asked.'
    )


def _words(text: str) -> Set[str]:
    return set(_WORD_RE.sub("", (text or "").lower()).split())


def word_similarity(a: str, b: str) -> float:
    """Jaccard word overlap on normalized tokens (0.0-1.0)."""
    words_a, words_b = _words(a), _words(b)
    if not words_a or not words_b:
        return 0.0
    return len(words_a & words_b) / len(words_a | words_b)


def parse_extraction_response(text: str, limit: int) -> List[Dict[str, Any]]:
    """Pull the memories list out of a free-text model reply.

    Accepts both plain strings and {content, category, confidence} objects;
    confidence is clamped to [0, 1].
    """
    match = _MEMORIES_JSON_RE.search(text or "")
    if not match:
        return []
    try:
        parsed = json.loads(match.group(0))
    except ValueError:
        logger.warning("Failed to parse memory extraction response")
        return []

    memories = []
    for item in parsed.get("memories") or []:
        if isinstance(item, str) and item.strip():
            memories.append({"content": item.strip(), "category": None, "confidence": 1.0})
        elif isinstance(item, dict) and isinstance(item.get("content"), str) and item["content"].strip():
            confidence = item.get("confidence")
            confidence = min(1.0, max(0.0, float(confidence))) if isinstance(confidence, (int, float)) else 1.0
            memories.append({
                "content": item["content"].strip(),
                "category": item.get("category"),
                "confidence": confidence,
            })
    return memories[:limit]


@dataclass
class MemoryRecord:
    content: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    conversation_id: str = ""
    category: Optional[str] = None
    confidence: float = 1.0
    access_count: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "category": self.category,
            "confidence": self.confidence,
            "conversationId": self.conversation_id,
            "createdAt": self.created_at.isoformat(),
        }


class MemoryService(ABC):
    """Interface the context assembler and turn orchestrator depend on."""

    async def get_all_memories(self, user_id: str) -> List[MemoryRecord]:
        return []

    async def delete_memory(self, memory_id: str, user_id: str) -> bool:
        return False

    async def clear_all_memories(self, user_id: str) -> bool:
        return True

    @abstractmethod
    async def retrieve_relevant_memories(self, user_id: str, query: str) -> List[str]:
        ...

    @abstractmethod
    async def process_conversation_turn(
        self, user_id: str, conversation_id: str, messages: List[Dict[str, str]]
    ) -> None:
        ...


class NullMemoryService(MemoryService):
    """Memory disabled."""

    async def retrieve_relevant_memories(self, user_id: str, query: str) -> List[str]:
        return []

    async def process_conversation_turn(
        self, user_id: str, conversation_id: str, messages: List[Dict[str, str]]
    ) -> None:
        return None


class LocalMemoryService(MemoryService):
    """Process-local memory store with model-driven extraction."""

    def __init__(
        self,
        provider,
        similarity_threshold: float = 0.85,
        max_per_extraction: int = 3,
        max_retrieved: int = 5,
        min_retrieval_score: float = 0.4,
    ):
        self.provider = provider
        self.similarity_threshold = similarity_threshold
        self.max_per_extraction = max_per_extraction
        self.max_retrieved = max_retrieved
        self.min_retrieval_score = min_retrieval_score
        self._memories: Dict[str, List[MemoryRecord]] = {}

    @classmethod
    def from_config(cls, provider, config) -> "LocalMemoryService":
        return cls(
            provider,
            similarity_threshold=config.memory_similarity_threshold,
            max_per_extraction=config.memory_max_per_extraction,
            max_retrieved=config.memory_max_retrieved,
            min_retrieval_score=config.memory_min_retrieval_score,
        )

    async def get_all_memories(self, user_id: str) -> List[MemoryRecord]:
        return sorted(self._memories.get(user_id, []), key=lambda r: r.created_at, reverse=True)

    async def delete_memory(self, memory_id: str, user_id: str) -> bool:
        records = self._memories.get(user_id, [])
        for i, record in enumerate(records):
            if record.id == memory_id:
                del records[i]
                return True
        return False

    async def clear_all_memories(self, user_id: str) -> bool:
        self._memories.pop(user_id, None)
        return True

    def store_memory(self, user_id: str, content: str, conversation_id: str, category=None, confidence=1.0) -> bool:
        """Store a memory unless a near-duplicate already exists.

        Returns:
            True if stored, False if skipped as duplicate
        """
        existing = self._memories.setdefault(user_id, [])
        for record in existing:
            if word_similarity(record.content, content) >= self.similarity_threshold:
                logger.debug(f"Skipping duplicate memory for {user_id}: {content[:60]}")
                return False
        existing.append(
            MemoryRecord(content=content, conversation_id=conversation_id, category=category, confidence=confidence)
        )
        return True

    async def retrieve_relevant_memories(self, user_id: str, query: str) -> List[str]:
        records = self._memories.get(user_id, [])
        keywords = [w for w in _words(query) if len(w) > 3]
        if not records or not keywords:
            return []

        scored = []
        for record in records:
            content_words = _words(record.content)
            hits = sum(1 for kw in keywords if kw in content_words)
            score = hits / len(keywords) + record.access_count * 0.01
            if score >= self.min_retrieval_score:
                scored.append((score, record))

        scored.sort(key=lambda pair: pair[0], reverse=True)
        selected = [record for _, record in scored[: self.max_retrieved]]
        for record in selected:
            record.access_count += 1
        return [record.content for record in selected]

    async def extract_memories(self, messages: List[Dict[str, str]]) -> List[Dict[str, Any]]:
        conversation_text = "\n\n".join(f"{m['role'].upper()}: {m['content']}" for m in messages)
        reply = await self.provider.chat(
            [
                {"role": "system", "content": EXTRACTION_PROMPT},
                {"role": "user", "content": conversation_text},
            ],
            tool_choice=ToolChoice.DISABLED,
            max_tokens=500,
            temperature=0.3,
        )
        return parse_extraction_response(reply, self.max_per_extraction)

    async def process_conversation_turn(
        self, user_id: str, conversation_id: str, messages: List[Dict[str, str]]
    ) -> None:
        roles = {m.get("role") for m in messages}
        if "user" not in roles or "assistant" not in roles:
            return
        try:
            extracted = await self.extract_memories(messages)
        except Exception as e:
            logger.error(f"Error processing conversation turn for memories: {e}")
            return

        stored = 0
        for memory in extracted:
            if self.store_memory(user_id, memory["content"], conversation_id, memory["category"], memory["confidence"]):
                stored += 1
        logger.info(f"Extracted {len(extracted)} memories ({stored} new) from conversation {conversation_id}")
