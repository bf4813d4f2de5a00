"""
chatrelay Services - Shared infrastructure services.

- token_cache: OAuth client-credentials token with coalesced refresh
- provider_client: model deployment client (invoke + event streaming)
- search_client: web_search tool backend
- identity: bearer / forwarded-header user resolution
- chat_store: conversation, message and attachment persistence
- database: asyncpg pool manager
- memory: per-user long-term memory
"""

from .chat_store import ChatStore, InMemoryChatStore, PostgresChatStore
from .provider_client import ProviderClient, ToolChoice
from .search_client import SearchClient
from .token_cache import TokenCache

__all__ = [
    "ChatStore",
    "InMemoryChatStore",
    "PostgresChatStore",
    "ProviderClient",
    "ToolChoice",
    "SearchClient",
    "TokenCache",
]
