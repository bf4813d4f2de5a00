"""
PostgreSQL Connection Manager - Async database infrastructure.

Provides:
- Connection pooling with asyncpg
- Schema bootstrap for the conversation tables
- Health checks and reconnection
- Fallback flag the store factory uses to pick the in-memory store

Usage:
    from services.database import get_database

    db = await get_database()
    if db.available:
        rows = await db.fetch("SELECT * FROM conversations LIMIT 10")
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import asyncpg

from errors import ExternalServiceError

logger = logging.getLogger(__name__)

CHAT_SCHEMA = """
CREATE TABLE IF NOT EXISTS conversations (
    id UUID PRIMARY KEY,
    user_id TEXT NOT NULL,
    title TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    modified_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_conversations_user ON conversations (user_id, modified_at DESC);

CREATE TABLE IF NOT EXISTS messages (
    id UUID PRIMARY KEY,
    conversation_id UUID NOT NULL REFERENCES conversations (id) ON DELETE CASCADE,
    role TEXT NOT NULL,
    content TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages (conversation_id, created_at);

CREATE TABLE IF NOT EXISTS message_attachments (
    id UUID PRIMARY KEY,
    message_id UUID NOT NULL REFERENCES messages (id) ON DELETE CASCADE,
    filename TEXT NOT NULL,
    mime_type TEXT NOT NULL,
    content BYTEA,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""

_TRANSIENT_PATTERNS = (
    "connection refused",
    "the database system is starting up",
    "server closed the connection unexpectedly",
    "connection reset by peer",
    "connection timed out",
    "could not connect to server",
)


def _looks_like_transient_connect_error(error_text: str) -> bool:
    text = (error_text or "").lower()
    return any(p in text for p in _TRANSIENT_PATTERNS)


@dataclass
class DatabaseManager:
    """
    PostgreSQL connection manager with fallback support.

    Maintains connection state and reports fallback mode when PostgreSQL
    is disabled or unreachable, so callers can degrade to memory.
    """

    url: str = ""
    enabled: bool = True
    pool_size: int = 10
    connect_retries: int = 5
    retry_delay_s: float = 2.0

    # Connection state
    _pool: Any = field(default=None, repr=False)
    _available: bool = field(default=False, repr=False)
    _fallback_mode: bool = field(default=False, repr=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    _last_error: Optional[str] = field(default=None, repr=False)

    @property
    def available(self) -> bool:
        """Check if PostgreSQL is available."""
        return self._available and not self._fallback_mode

    async def connect(self) -> bool:
        """
        Establish PostgreSQL connection pool.

        Returns:
            True if connected, False if fallback mode activated
        """
        if not self.enabled or not self.url:
            logger.info("PostgreSQL disabled by config, using in-memory store")
            self._fallback_mode = True
            return False

        async with self._lock:
            if self._available:
                return True

            last_error: Optional[Exception] = None
            for attempt in range(self.connect_retries + 1):
                try:
                    self._pool = await asyncpg.create_pool(
                        self.url,
                        min_size=1,
                        max_size=self.pool_size,
                        command_timeout=30.0,
                    )
                    async with self._pool.acquire() as conn:
                        await conn.execute(CHAT_SCHEMA)

                    self._available = True
                    self._fallback_mode = False
                    self._last_error = None
                    logger.info(f"PostgreSQL connected: pool_size={self.pool_size}")
                    return True
                except (OSError, asyncpg.PostgresError) as e:
                    last_error = e
                    if attempt < self.connect_retries and _looks_like_transient_connect_error(str(e)):
                        if attempt == 0:
                            logger.info(
                                "PostgreSQL not ready yet; retrying startup connection "
                                f"(max_retries={self.connect_retries}, delay={self.retry_delay_s:.1f}s)"
                            )
                        await asyncio.sleep(self.retry_delay_s)
                        continue
                    break

            logger.warning(f"PostgreSQL connection failed: {last_error}, using in-memory store")
            self._last_error = str(last_error)
            self._fallback_mode = True
            self._available = False
            return False

    async def disconnect(self) -> None:
        """Close PostgreSQL connection pool."""
        async with self._lock:
            if self._pool:
                try:
                    await self._pool.close()
                except (OSError, asyncpg.PostgresError) as e:
                    logger.warning(f"Error closing PostgreSQL pool: {e}")
                finally:
                    self._pool = None
                    self._available = False

    async def health_check(self) -> Dict[str, Any]:
        """
        Check PostgreSQL health status.

        Returns:
            Dict with status, mode, and pool info
        """
        if self._fallback_mode:
            return {"status": "fallback", "mode": "memory", "error": self._last_error}

        if not self._pool:
            return {"status": "disconnected", "mode": "none"}

        try:
            start = time.monotonic()
            async with self._pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            latency_ms = (time.monotonic() - start) * 1000
            return {
                "status": "connected",
                "mode": "postgresql",
                "latency_ms": round(latency_ms, 2),
                "pool_size": self._pool.get_size(),
                "pool_free": self._pool.get_idle_size(),
            }
        except (OSError, asyncpg.PostgresError) as e:
            logger.warning(f"PostgreSQL health check failed: {e}")
            return {"status": "error", "mode": "postgresql", "error": str(e)}

    # === Query Operations ===

    def _require_pool(self) -> None:
        if not self.available:
            raise ExternalServiceError("Database not connected", service="database")

    @asynccontextmanager
    async def _connection(self):
        self._require_pool()
        try:
            async with self._pool.acquire() as conn:
                yield conn
        except (OSError, asyncpg.PostgresError) as e:
            logger.error(f"PostgreSQL query failed: {e}")
            raise ExternalServiceError("Database request failed", details=str(e), service="database") from e

    async def execute(self, query: str, *args) -> str:
        """Execute a statement that returns no rows.

        Returns:
            Status string (e.g., "DELETE 1")
        """
        async with self._connection() as conn:
            return await conn.execute(query, *args)

    async def fetch(self, query: str, *args) -> List[Dict[str, Any]]:
        """Fetch multiple rows as list of dicts."""
        async with self._connection() as conn:
            rows = await conn.fetch(query, *args)
        return [dict(row) for row in rows]

    async def fetchrow(self, query: str, *args) -> Optional[Dict[str, Any]]:
        """Fetch a single row as dict."""
        async with self._connection() as conn:
            row = await conn.fetchrow(query, *args)
        return dict(row) if row else None


# Singleton instance
_database_manager: Optional[DatabaseManager] = None


async def get_database() -> DatabaseManager:
    """
    Get the database manager singleton.

    Lazily initializes connection on first call.
    """
    global _database_manager

    if _database_manager is None:
        from config import runtime_config

        _database_manager = DatabaseManager(
            url=runtime_config.database_url,
            enabled=runtime_config.database_enabled,
            pool_size=runtime_config.database_pool_size,
        )
        await _database_manager.connect()

    return _database_manager


async def close_database() -> None:
    """Close the database connection (call on shutdown)."""
    global _database_manager
    if _database_manager:
        await _database_manager.disconnect()
        _database_manager = None
