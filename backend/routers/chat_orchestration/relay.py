"""
Event relay - runs a turn independently of whoever is listening.

A client that stops reading (closed tab, "stop" button, dropped socket) only
stops consuming events; the turn itself keeps running server-side so the
upstream call, any searches it triggered and the final persistence still
complete. Fire-and-forget work (memory extraction) goes through spawn() so
the task is referenced until it finishes.
"""

import asyncio
import logging
from typing import AsyncIterator, Awaitable, Optional, Set

from fastapi import WebSocket

from .events import ChatEvent, encode_payload, sse_frame

logger = logging.getLogger(__name__)

_END = object()
_background_tasks: Set[asyncio.Task] = set()


def spawn(coro: Awaitable, name: Optional[str] = None) -> asyncio.Task:
    """Start a background task and keep a reference until it is done."""
    task = asyncio.ensure_future(coro)
    if name:
        task.set_name(name)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


def pending_background_tasks() -> int:
    return len(_background_tasks)


class DetachedTurn:
    """Pumps a turn's event generator into a queue on its own task.

    Usage:
        turn = DetachedTurn(orchestrator.stream(prepared))
        async for event in turn.events():
            await send(event)
    """

    def __init__(self, events: AsyncIterator[ChatEvent]):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._task = spawn(self._pump(events), name="chat-turn")

    async def _pump(self, events: AsyncIterator[ChatEvent]) -> None:
        try:
            async for event in events:
                await self._queue.put(event)
        except Exception as e:
            logger.error(f"Turn generator failed: {e}", exc_info=True)
            await self._queue.put(ChatEvent.error("Failed to get AI response"))
        finally:
            await self._queue.put(_END)

    async def events(self) -> AsyncIterator[ChatEvent]:
        while True:
            item = await self._queue.get()
            if item is _END:
                return
            yield item

    async def wait(self) -> None:
        """Block until the turn has fully finished server-side."""
        await self._task


async def relay_to_websocket(websocket: WebSocket, events: AsyncIterator[ChatEvent]) -> int:
    """Send every event of a turn as one text message each.

    Returns:
        Number of events sent
    """
    sent = 0
    async for event in events:
        await websocket.send_text(encode_payload(event))
        sent += 1
    return sent


async def relay_to_sse(events: AsyncIterator[ChatEvent]) -> AsyncIterator[str]:
    """Frame every event of a turn as a `data:` block."""
    async for event in events:
        yield sse_frame(event)
