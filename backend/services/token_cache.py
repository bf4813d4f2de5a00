"""
OAuth token cache with request coalescing.

A cached token is reused until `refresh_margin_s` before it expires. When a
refresh is needed, the first caller starts the fetch and every concurrent
caller awaits the same in-flight future, so N waiters cost one
authentication round-trip.

Usage:
    cache = TokenCache(fetch=fetch_oauth_token)
    token = await cache.get_token()
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, Tuple

logger = logging.getLogger(__name__)

# fetch() returns (access_token, expires_in_seconds)
TokenFetcher = Callable[[], Awaitable[Tuple[str, float]]]


class TokenCache:
    """Process-wide cached bearer token owned by one provider client."""

    def __init__(
        self,
        fetch: TokenFetcher,
        refresh_margin_s: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._fetch = fetch
        self.refresh_margin_s = refresh_margin_s
        self._clock = clock
        self._token: Optional[str] = None
        self._expires_at: float = 0.0
        self._margin_s: float = refresh_margin_s
        self._pending: Optional[asyncio.Future] = None

    @property
    def is_valid(self) -> bool:
        return bool(self._token) and self._clock() < self._expires_at - self._margin_s

    async def get_token(self) -> str:
        """Return a cached token or fetch a new one, sharing any in-flight fetch."""
        if self.is_valid:
            return self._token

        if self._pending is None:
            self._pending = asyncio.ensure_future(self._refresh())

        # shield: a cancelled waiter must not cancel the fetch other waiters share
        return await asyncio.shield(self._pending)

    def invalidate(self) -> None:
        """Drop the cached token (e.g. after the provider rejected it)."""
        self._token = None
        self._expires_at = 0.0

    async def _refresh(self) -> str:
        try:
            token, expires_in = await self._fetch()
            self._token = token
            self._expires_at = self._clock() + float(expires_in)
            # Short-lived tokens still get half their lifetime before a refresh
            self._margin_s = min(self.refresh_margin_s, float(expires_in) / 2)
            logger.debug(f"Provider token refreshed (expires in {expires_in:.0f}s)")
            return token
        finally:
            self._pending = None
