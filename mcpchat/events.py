"""In-process event sink for live conversation events.

The conversation core emits (role, content) pairs as soon as they are
produced. emit() never blocks: events are queued and fanned out by a
background asyncio task to per-subscriber queues (one per connected SSE
client). A full subscriber queue drops the event for that subscriber only.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from mcpchat.api.models import ContentBlock

logger = logging.getLogger(__name__)


@dataclass
class ChatEvent:
    """A single live event: assistant text, tool_use or tool_result."""

    role: str
    content: str | list[ContentBlock]
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        content: Any = self.content
        if not isinstance(content, str):
            content = [block.to_dict() for block in content]
        return {"role": self.role, "content": content}


class EventBroadcaster:
    """Order-preserving, non-blocking fan-out of ChatEvents.

    Use as the core's event sink: ``await broadcaster.emit(role, content)``.
    """

    def __init__(self, max_queue: int = 1000, subscriber_queue: int = 200) -> None:
        self._subscribers: set[asyncio.Queue[ChatEvent]] = set()
        self._queue: asyncio.Queue[ChatEvent] = asyncio.Queue(maxsize=max_queue)
        self._subscriber_queue = subscriber_queue
        self._task: asyncio.Task | None = None
        self._running = False

    def subscribe(self) -> asyncio.Queue[ChatEvent]:
        """Create a queue that receives every subsequent event."""
        queue: asyncio.Queue[ChatEvent] = asyncio.Queue(maxsize=self._subscriber_queue)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[ChatEvent]) -> None:
        self._subscribers.discard(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def emit(self, role: str, content: str | list[ContentBlock]) -> None:
        """Queue an event. Never blocks; drops the event if the queue is full."""
        event = ChatEvent(role=role, content=content)
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Event queue full, dropping %s event", role)

    async def start(self) -> None:
        """Start the background processing loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._process_loop(), name="event-broadcaster")
        logger.info("Event broadcaster started")

    async def stop(self) -> None:
        """Stop the loop, then deliver whatever is still queued."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            while not self._queue.empty():
                try:
                    event = self._queue.get_nowait()
                    await self._dispatch(event)
                except asyncio.QueueEmpty:
                    break
        logger.info("Event broadcaster stopped")

    async def _process_loop(self) -> None:
        while self._running:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=1.0)
                await self._dispatch(event)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Unexpected error in event broadcaster loop")

    async def _dispatch(self, event: ChatEvent) -> None:
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("Subscriber queue full, dropping %s event", event.role)

    @property
    def pending(self) -> int:
        """Number of events waiting in queue."""
        return self._queue.qsize()
