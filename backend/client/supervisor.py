"""
Transport supervisor - client side of the chat channels.

Keeps one WebSocket to /ws/chat alive and falls back to the SSE endpoint
when it is not available, so callers see the same event sequence either way.

Channel lifecycle: CONNECTING -> OPEN -> CLOSED. On close:
- 1000 (normal): nothing to do
- 1008 (policy violation): the server rejected our credentials, the
  session has expired; no probe, no reconnect
- anything else: probe GET /api/health with our credentials; a 401 means
  the session expired, any other outcome (including a network error)
  reconnects after `reconnect_delay_s`

The session-expired callback fires at most once per supervisor. While the
channel is CONNECTING, one outgoing chat request is held and flushed on
open; a newer request replaces it.

Usage:
    supervisor = TransportSupervisor(
        ws_url="wss://chat.example.com/ws/chat",
        http_base_url="https://chat.example.com",
        headers={"Authorization": f"Bearer {token}"},
        on_event=handle_event,
        on_session_expired=show_login,
    )
    await supervisor.start()
    await supervisor.send_chat(conversation_id, "Hello")
"""

import asyncio
import inspect
import json
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

import httpx
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from config import runtime_config

logger = logging.getLogger(__name__)

NORMAL_CLOSURE = 1000
ABNORMAL_CLOSURE = 1006
POLICY_VIOLATION = 1008


class ChannelState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class CloseDecision(str, Enum):
    IGNORED = "ignored"
    EXPIRED = "expired"
    RECONNECT = "reconnect"


async def _maybe_await(result: Any) -> None:
    if inspect.isawaitable(result):
        await result


class TransportSupervisor:
    """Supervises the chat WebSocket and the SSE fallback.

    Args:
        ws_url: WebSocket URL of the chat channel
        http_base_url: Base URL for /api/health and /api/chat/stream
        headers: Credentials sent on the handshake, the probe and SSE requests
        on_event: Called with every event dict received on either channel
        on_session_expired: Called once when the session is known to be expired
        connect: WebSocket connect factory (websockets.connect by default)
        http: Optional httpx.AsyncClient for probe and SSE requests
        heartbeat_interval_s: Seconds between pings while OPEN
        reconnect_delay_s: Delay before reconnecting after an unexpected close
        sleep: Awaitable sleep (tests replace it)
    """

    def __init__(
        self,
        ws_url: str,
        http_base_url: str,
        headers: Optional[Dict[str, str]] = None,
        on_event: Optional[Callable[[Dict[str, Any]], Any]] = None,
        on_session_expired: Optional[Callable[[], Any]] = None,
        connect: Optional[Callable[..., Any]] = None,
        http: Optional[httpx.AsyncClient] = None,
        heartbeat_interval_s: Optional[float] = None,
        reconnect_delay_s: Optional[float] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.ws_url = ws_url
        self.http_base_url = http_base_url.rstrip("/")
        self.headers = dict(headers or {})
        self.on_event = on_event
        self.on_session_expired = on_session_expired
        self._connect = connect or websockets.connect
        self._http = http
        self._owns_http = http is None
        self.heartbeat_interval_s = heartbeat_interval_s or runtime_config.heartbeat_interval_s
        self.reconnect_delay_s = reconnect_delay_s if reconnect_delay_s is not None else runtime_config.reconnect_delay_s
        self._sleep = sleep

        self.state = ChannelState.CLOSED
        self.user_id: Optional[str] = None
        self.session_expired = False
        self.probe_count = 0
        self.reconnect_count = 0
        self._ws = None
        self._pending: Optional[Dict[str, Any]] = None
        self._stopped = False
        self._tasks: Set[asyncio.Task] = set()
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(base_url=self.http_base_url, timeout=None)
        return self._http

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # === Lifecycle ===

    async def start(self) -> None:
        """Open the channel in the background."""
        self._stopped = False
        self._spawn(self.connect())

    async def connect(self) -> None:
        """Connect once and read until the channel closes."""
        if self._stopped or self.session_expired:
            return
        self.state = ChannelState.CONNECTING
        try:
            ws = await self._connect(self.ws_url, additional_headers=self.headers, ping_interval=None)
        except (OSError, WebSocketException, asyncio.TimeoutError) as e:
            logger.warning(f"WebSocket connect failed: {e}")
            self.state = ChannelState.CLOSED
            await self.handle_close(ABNORMAL_CLOSURE)
            return

        self._ws = ws
        self.state = ChannelState.OPEN
        logger.info(f"WebSocket connected: {self.ws_url}")
        self._heartbeat_task = self._spawn(self._heartbeat())
        await self._flush_pending()

        code = await self._read(ws)
        self.state = ChannelState.CLOSED
        self._ws = None
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None
        logger.info(f"WebSocket closed: {code}")
        await self.handle_close(code)

    async def _read(self, ws) -> int:
        try:
            async for raw in ws:
                try:
                    event = json.loads(raw)
                except ValueError:
                    logger.error(f"Failed to parse WebSocket message: {raw[:120]}")
                    continue
                await self._dispatch(event)
        except ConnectionClosed as e:
            return e.rcvd.code if e.rcvd is not None else ABNORMAL_CLOSURE
        code = getattr(ws, "close_code", None)
        return code if code is not None else NORMAL_CLOSURE

    async def _dispatch(self, event: Dict[str, Any]) -> None:
        if event.get("type") == "connected":
            self.user_id = event.get("userId")
            logger.info(f"WebSocket authenticated as: {self.user_id}")
        if event.get("type") == "pong":
            return
        if self.on_event is not None:
            await _maybe_await(self.on_event(event))

    async def _heartbeat(self) -> None:
        while True:
            await self._sleep(self.heartbeat_interval_s)
            if self.state != ChannelState.OPEN or self._ws is None:
                return
            try:
                await self._ws.send(json.dumps({"type": "ping"}))
            except ConnectionClosed:
                return

    async def close(self) -> None:
        """Close the channel normally; no reconnect follows."""
        self._stopped = True
        for task in (self._heartbeat_task, self._reconnect_task):
            if task is not None:
                task.cancel()
        if self._ws is not None:
            await self._ws.close(code=NORMAL_CLOSURE, reason="Client closing")
        self.state = ChannelState.CLOSED
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None

    # === Close handling ===

    async def handle_close(self, code: int) -> CloseDecision:
        """Decide what an unexpected close means.

        Returns:
            IGNORED for normal closes (or after close()), EXPIRED when the
            session is gone, RECONNECT when a reconnect was scheduled
        """
        self.state = ChannelState.CLOSED
        if self._stopped or self.session_expired or code == NORMAL_CLOSURE:
            return CloseDecision.IGNORED

        if code == POLICY_VIOLATION:
            await self._expire()
            return CloseDecision.EXPIRED

        status = await self.probe()
        if status == 401:
            await self._expire()
            return CloseDecision.EXPIRED

        self._reconnect_task = self._spawn(self._reconnect_later())
        return CloseDecision.RECONNECT

    async def probe(self) -> Optional[int]:
        """Liveness probe with our credentials; None on network failure."""
        self.probe_count += 1
        try:
            response = await self.http.get(f"{self.http_base_url}/api/health", headers=self.headers)
        except httpx.HTTPError as e:
            logger.warning(f"Health probe failed: {e}")
            return None
        return response.status_code

    async def _reconnect_later(self) -> None:
        await self._sleep(self.reconnect_delay_s)
        if self._stopped or self.session_expired:
            return
        self.reconnect_count += 1
        await self.connect()

    async def _expire(self) -> None:
        if self.session_expired:
            return
        self.session_expired = True
        self._pending = None
        logger.warning("Session expired")
        if self.on_session_expired is not None:
            await _maybe_await(self.on_session_expired())

    # === Sending ===

    async def send_chat(
        self, conversation_id: str, content: str, attachments: Optional[List[Dict[str, Any]]] = None
    ) -> str:
        """Send one chat request over whichever channel is usable.

        Returns:
            "websocket", "queued" (flushed on open) or "sse"
        """
        payload = {
            "type": "chat",
            "conversationId": conversation_id,
            "content": content,
            "attachments": attachments or [],
        }
        if self.state == ChannelState.OPEN and self._ws is not None:
            await self._ws.send(json.dumps(payload))
            return "websocket"
        if self.state == ChannelState.CONNECTING:
            self._pending = payload
            return "queued"

        logger.info("WebSocket not available, using SSE fallback")
        await self.stream_via_sse(payload)
        return "sse"

    async def _flush_pending(self) -> None:
        if self._pending is None or self._ws is None:
            return
        payload, self._pending = self._pending, None
        await self._ws.send(json.dumps(payload))

    async def stream_via_sse(self, payload: Dict[str, Any]) -> None:
        """POST the request to the SSE endpoint and dispatch its events."""
        body = {k: v for k, v in payload.items() if k != "type"}
        try:
            async with self.http.stream(
                "POST", f"{self.http_base_url}/api/chat/stream", json=body, headers=self.headers
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    if response.status_code == 401:
                        await self._expire()
                    await self._dispatch({"type": "error", "message": _error_message(response)})
                    return

                async for line in response.aiter_lines():
                    if not line.startswith("data: "):
                        continue
                    try:
                        event = json.loads(line[len("data: "):])
                    except ValueError:
                        continue
                    await self._dispatch(event)
        except httpx.HTTPError as e:
            logger.error(f"SSE request failed: {e}")
            await self._dispatch({"type": "error", "message": "Connection failed"})


def _error_message(response: httpx.Response) -> str:
    try:
        return response.json().get("error") or f"HTTP {response.status_code}"
    except ValueError:
        return f"HTTP {response.status_code}"
