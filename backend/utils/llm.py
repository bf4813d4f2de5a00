"""Collaborator singletons shared by the routers (provider, search, memory, store)."""

import logging
from typing import Optional

from config import runtime_config
from services.chat_store import ChatStore, InMemoryChatStore, PostgresChatStore
from services.database import get_database
from services.memory import LocalMemoryService, MemoryService, NullMemoryService
from services.provider_client import ProviderClient
from services.search_client import SearchClient

logger = logging.getLogger(__name__)

_provider_client: Optional[ProviderClient] = None
_search_client: Optional[SearchClient] = None
_memory_service: Optional[MemoryService] = None
_chat_store: Optional[ChatStore] = None


def get_provider_client() -> ProviderClient:
    """Get the provider client (one token cache per process)."""
    global _provider_client
    if _provider_client is None:
        _provider_client = ProviderClient(runtime_config)
    return _provider_client


def get_search_client() -> SearchClient:
    """Search client sharing the provider's HTTP client and token."""
    global _search_client
    if _search_client is None:
        _search_client = SearchClient(get_provider_client())
    return _search_client


def get_memory_service() -> MemoryService:
    global _memory_service
    if _memory_service is None:
        if runtime_config.memory_enabled:
            _memory_service = LocalMemoryService.from_config(get_provider_client(), runtime_config)
        else:
            _memory_service = NullMemoryService()
    return _memory_service


async def get_chat_store() -> ChatStore:
    """PostgreSQL store when the database connected, in-memory otherwise."""
    global _chat_store
    if _chat_store is None:
        db = await get_database()
        if db.available:
            _chat_store = PostgresChatStore(db)
        else:
            logger.info("Using in-memory chat store")
            _chat_store = InMemoryChatStore()
    return _chat_store


async def close_clients() -> None:
    """Release HTTP connections and drop singletons (call on shutdown)."""
    global _provider_client, _search_client, _memory_service, _chat_store
    if _provider_client is not None:
        await _provider_client.close()
    _provider_client = None
    _search_client = None
    _memory_service = None
    _chat_store = None
