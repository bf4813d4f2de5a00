"""
Context assembly - bounded message list for one upstream call.

Builds [memory system message] + history window + current user message,
keeping the estimated input under RuntimeConfig.max_input_tokens:
- history: newest `history_limit` messages, oldest first, each capped at
  `history_message_max_tokens`
- file attachments: decoded and inlined as text, truncated to the remaining
  budget (50K token hard cap, 0.5 chars per token)
- images: provider image blocks charged a flat `image_token_estimate`
- if still over the ceiling, the oldest history is dropped first

Truncation is deterministic and idempotent: re-truncating an already
truncated text with the same budget returns it unchanged.
"""

import base64
import binascii
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from config import runtime_config
from services.chat_store import Attachment, ChatStore
from services.memory import MemoryService, format_memories_for_prompt

logger = logging.getLogger(__name__)

_DATA_URL_RE = re.compile(r"^data:([^;]+);base64,(.+)$", re.DOTALL)
_HISTORY_NOTICE_RE = re.compile(r"\n\n\[\.\.\. content truncated from [\d,]+ to [\d,]+ tokens \.\.\.\]\Z")
# One trailing notice only: quoted name within the attachment name cap, one-line tail
_DOCUMENT_NOTICE_RE = re.compile(
    r'\n\n\[⚠️ DOCUMENT TRUNCATED: "[^"\n]{0,255}" was [\d,]+ tokens, truncated to [\d,]+ tokens [^\]\n]{0,200}\]\Z'
)

# Room left for the truncation notice when the user text itself is shrunk
NOTICE_ALLOWANCE_CHARS = 64


def estimate_tokens(text: Optional[str], chars_per_token: float = None) -> int:
    """Conservative token estimate from character count."""
    if not text:
        return 0
    return math.ceil(len(text) / (chars_per_token or runtime_config.chars_per_token))


@dataclass
class TruncationResult:
    text: str
    truncated: bool = False
    original_tokens: int = 0
    truncated_tokens: int = 0
    name: Optional[str] = None


def find_cut_point(text: str, max_chars: int) -> int:
    """Where to cut `text` so at most `max_chars` characters remain.

    Prefers the last paragraph break, then the last sentence end, as long as
    it falls in the final 20% of the allowed length; otherwise a hard cut.
    """
    floor = max_chars * 0.8
    paragraph = text.rfind("\n\n", 0, max_chars + 2)
    if paragraph > floor:
        return paragraph
    sentence = text.rfind(". ", 0, max_chars + 1)
    if sentence > floor:
        return sentence + 1
    return max_chars


def _already_truncated(text: str, max_chars: int, notice_re: re.Pattern) -> bool:
    match = notice_re.search(text)
    return bool(match) and match.start() <= max_chars


def truncate_history_message(text: str, max_chars: int, chars_per_token: float = None) -> TruncationResult:
    """Cap one historical message body, appending a short notice."""
    max_chars = max(0, int(max_chars))
    if not text or len(text) <= max_chars or _already_truncated(text, max_chars, _HISTORY_NOTICE_RE):
        return TruncationResult(text=text or "")

    kept = text[: find_cut_point(text, max_chars)]
    original = estimate_tokens(text, chars_per_token)
    truncated = estimate_tokens(kept, chars_per_token)
    notice = f"\n\n[... content truncated from {original:,} to {truncated:,} tokens ...]"
    return TruncationResult(kept + notice, True, original, truncated)


def truncate_document(name: str, text: str, max_chars: int, chars_per_token: float = None) -> TruncationResult:
    """Cap an inlined document, appending a notice the model can relay to the user."""
    max_chars = max(0, int(max_chars))
    if not text or len(text) <= max_chars or _already_truncated(text, max_chars, _DOCUMENT_NOTICE_RE):
        return TruncationResult(text=text or "", name=name)

    kept = text[: find_cut_point(text, max_chars)]
    original = estimate_tokens(text, chars_per_token)
    truncated = estimate_tokens(kept, chars_per_token)
    percent = round(truncated / original * 100) if original else 0
    notice = (
        f'\n\n[⚠️ DOCUMENT TRUNCATED: "{name}" was {original:,} tokens, truncated to {truncated:,} tokens '
        f"({percent}% of original) to fit model context limit. "
        "Consider summarizing in sections or using a smaller document.]"
    )
    return TruncationResult(kept + notice, True, original, truncated, name=name)


def image_block(attachment: Attachment) -> Dict[str, Any]:
    """Provider image block; a data URL overrides the declared media type."""
    media_type, data = attachment.type, attachment.data
    match = _DATA_URL_RE.match(data or "")
    if match:
        media_type, data = match.group(1), match.group(2)
    return {"type": "image", "source": {"type": "base64", "media_type": media_type, "data": data}}


def decode_document(attachment: Attachment) -> str:
    raw = attachment.data or ""
    match = _DATA_URL_RE.match(raw)
    if match:
        raw = match.group(2)
    try:
        return base64.b64decode(raw).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError):
        return "[Binary file content]"


@dataclass
class AssembledContext:
    messages: List[Dict[str, Any]]
    estimated_tokens: int = 0
    truncations: List[TruncationResult] = field(default_factory=list)
    memories_used: List[str] = field(default_factory=list)
    dropped_history: int = 0


class ContextAssembler:
    """Builds the bounded message list sent upstream for one turn.

    Args:
        store: ChatStore used to read the history window
        memory: MemoryService queried for personalization snippets
        config: RuntimeConfig with the budget settings
    """

    def __init__(self, store: ChatStore, memory: Optional[MemoryService] = None, config=None):
        self.store = store
        self.memory = memory
        self.config = config or runtime_config

    def _tokens(self, text: Optional[str]) -> int:
        return estimate_tokens(text, self.config.chars_per_token)

    async def _memories(self, user_id: str, query: str) -> List[str]:
        if self.memory is None or not query:
            return []
        try:
            return list(await self.memory.retrieve_relevant_memories(user_id, query))
        except Exception as e:
            logger.warning(f"Memory retrieval failed, continuing without memory context: {e}")
            return []

    async def _history(self, conversation_id: str, exclude_id: Optional[str]) -> List[Dict[str, Any]]:
        cfg = self.config
        rows = await self.store.get_messages(conversation_id, limit=cfg.history_limit, order="desc")
        history = []
        for row in reversed(rows):
            if row.id == exclude_id or row.role not in ("user", "assistant") or not row.content:
                continue
            history.append({"role": row.role, "content": row.content})
        return history

    async def assemble(
        self,
        user_id: str,
        conversation_id: str,
        content: str,
        attachments: Optional[List[Attachment]] = None,
        current_message_id: Optional[str] = None,
    ) -> AssembledContext:
        """Build the message list for one turn.

        Args:
            user_id: Owner of the conversation (memory lookup key)
            conversation_id: Conversation whose history is read
            content: The new user text (may be empty when attachments exist)
            attachments: Validated attachments for the new message
            current_message_id: Id of the already persisted user message,
                excluded from the history window

        Returns:
            AssembledContext with messages, estimate and truncation notes
        """
        cfg = self.config
        ceiling = cfg.max_input_tokens
        result = AssembledContext(messages=[])

        system_message = None
        memories = await self._memories(user_id, content)
        if memories:
            result.memories_used = memories
            system_message = {
                "role": "system",
                "content": cfg.default_system_prompt + format_memories_for_prompt(memories),
            }
        system_tokens = self._tokens(system_message["content"]) if system_message else 0

        history = []
        history_tokens = []
        for msg in await self._history(conversation_id, current_message_id):
            capped = truncate_history_message(msg["content"], cfg.history_message_max_chars, cfg.chars_per_token)
            if capped.truncated:
                logger.warning(
                    f"Truncated {msg['role']} message from {capped.original_tokens} "
                    f"to {capped.truncated_tokens} tokens in conversation history"
                )
                result.truncations.append(capped)
            history.append({"role": msg["role"], "content": capped.text})
            history_tokens.append(self._tokens(capped.text))

        total = system_tokens + sum(history_tokens)
        current, current_tokens = self._current_message(content, attachments or [], total, result)
        total += current_tokens

        # Oldest history goes first when the window does not fit
        while total > ceiling and history:
            history.pop(0)
            total -= history_tokens.pop(0)
            result.dropped_history += 1
        if result.dropped_history:
            logger.warning(f"Dropped {result.dropped_history} history messages to fit context ceiling")

        if total > ceiling:
            total = self._shrink_current(current, total - ceiling, total)

        if system_message:
            result.messages.append(system_message)
        result.messages.extend(history)
        result.messages.append(current)
        result.estimated_tokens = total
        logger.info(f"Total estimated input tokens: {total:,} / {ceiling:,}")
        return result

    def _current_message(
        self, content: str, attachments: List[Attachment], used_tokens: int, result: AssembledContext
    ):
        cfg = self.config
        if not attachments:
            return {"role": "user", "content": content}, self._tokens(content)

        parts = []
        tokens = 0
        for att in attachments:
            if (att.type or "").startswith("image/"):
                parts.append(image_block(att))
                tokens += cfg.image_token_estimate
                continue

            budget = min(
                cfg.max_input_tokens - used_tokens - tokens - cfg.file_budget_headroom_tokens,
                cfg.file_token_cap,
            )
            char_budget = max(0, int(budget * cfg.file_chars_per_token))
            doc = truncate_document(att.name, decode_document(att), char_budget, cfg.chars_per_token)
            if doc.truncated:
                logger.warning(
                    f'Document "{att.name}" truncated from {doc.original_tokens} to {doc.truncated_tokens} tokens'
                )
                result.truncations.append(doc)
            text = f"[File: {att.name}]\n```\n{doc.text}\n```"
            parts.append({"type": "text", "text": text})
            tokens += self._tokens(text)

        if content:
            parts.append({"type": "text", "text": content})
            tokens += self._tokens(content)
        return {"role": "user", "content": parts}, tokens

    def _shrink_current(self, current: Dict[str, Any], excess_tokens: int, total: int) -> int:
        """Truncate the user's own text when it alone overflows the ceiling."""
        cfg = self.config
        body = current["content"]
        if isinstance(body, str):
            text = body
        elif body and body[-1].get("type") == "text" and not body[-1]["text"].startswith("[File: "):
            text = body[-1]["text"]
        else:
            return total

        allowed = max(0, int((self._tokens(text) - excess_tokens) * cfg.chars_per_token) - NOTICE_ALLOWANCE_CHARS)
        shrunk = truncate_history_message(text, allowed, cfg.chars_per_token)
        if isinstance(body, str):
            current["content"] = shrunk.text
        else:
            body[-1]["text"] = shrunk.text
        return total - self._tokens(text) + self._tokens(shrunk.text)
