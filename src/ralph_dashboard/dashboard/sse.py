"""Server-Sent Events broadcaster.

One writer, many lossy subscribers. Each subscriber owns a bounded
asyncio.Queue; a full queue drops the message with a warning. There is no
replay: a new connection starts with a status event and only sees messages
broadcast after it subscribed.

Usage:
    broadcaster = SSEBroadcaster()

    async for message in broadcaster.subscribe():
        yield message  # already SSE-formatted

    await broadcaster.broadcast_event("run_state", state.model_dump(mode="json"))
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncGenerator
from dataclasses import dataclass
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

QUEUE_SIZE = 500
RETRY_MS = 3000


class EventType(str, Enum):
    """SSE event names."""

    OUTPUT = "output"
    STATUS = "status"
    HEARTBEAT = "heartbeat"
    RUN_STATE = "run_state"
    STORY_UPDATE = "story_update"
    METRICS = "metrics"
    TASK_UPDATE = "task_update"


@dataclass
class SSEMessage:
    """One SSE frame.

    Attributes:
        event: Event name.
        data: JSON-serializable payload.
        id: Optional event id.
        retry: Optional reconnect delay in milliseconds.

    """

    event: str
    data: Any
    id: str | None = None
    retry: int | None = None

    def format(self) -> str:
        """Render as SSE wire format (id, retry, event, data, blank line)."""
        lines: list[str] = []
        if self.id is not None:
            lines.append(f"id: {self.id}")
        if self.retry is not None:
            lines.append(f"retry: {self.retry}")
        lines.append(f"event: {self.event}")
        payload = json.dumps(self.data, default=str)
        for line in payload.splitlines() or [""]:
            lines.append(f"data: {line}")
        return "\n".join(lines) + "\n\n"


class SSEBroadcaster:
    """Fan-out of dashboard events to all connected SSE clients.

    Args:
        heartbeat_interval: Seconds without traffic before a heartbeat.
        queue_size: Per-subscriber queue bound.

    """

    def __init__(self, heartbeat_interval: float = 30.0, queue_size: int = QUEUE_SIZE) -> None:
        self.heartbeat_interval = heartbeat_interval
        self.queue_size = queue_size
        self._queues: set[asyncio.Queue[SSEMessage | None]] = set()
        self._lock = asyncio.Lock()
        self._next_id = 0

    @property
    def connection_count(self) -> int:
        return len(self._queues)

    async def subscribe(self) -> AsyncGenerator[str, None]:
        """Yield formatted SSE messages until shutdown or disconnect."""
        queue: asyncio.Queue[SSEMessage | None] = asyncio.Queue(maxsize=self.queue_size)
        async with self._lock:
            self._queues.add(queue)
        logger.debug("SSE client connected (%d total)", len(self._queues))

        try:
            yield SSEMessage(
                event=EventType.STATUS.value,
                data={"connected": True, "timestamp": time.time()},
                retry=RETRY_MS,
            ).format()

            while True:
                try:
                    message = await asyncio.wait_for(queue.get(), timeout=self.heartbeat_interval)
                except TimeoutError:
                    yield SSEMessage(
                        event=EventType.HEARTBEAT.value, data={"timestamp": time.time()}
                    ).format()
                    continue
                if message is None:
                    break
                yield message.format()
        finally:
            async with self._lock:
                self._queues.discard(queue)
            logger.debug("SSE client disconnected (%d remaining)", len(self._queues))

    async def broadcast(self, message: SSEMessage) -> int:
        """Queue a message for every subscriber.

        Returns:
            Number of subscribers the message was queued for.

        """
        async with self._lock:
            queues = list(self._queues)
        delivered = 0
        for queue in queues:
            try:
                queue.put_nowait(message)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning("SSE client queue full, dropping %s event", message.event)
        return delivered

    async def broadcast_output(self, line: str, provider: str | None = None) -> int:
        """Broadcast one line of agent output."""
        self._next_id += 1
        return await self.broadcast(
            SSEMessage(
                event=EventType.OUTPUT.value,
                data={"line": line, "provider": provider, "timestamp": time.time()},
                id=str(self._next_id),
            )
        )

    async def broadcast_event(self, event_type: str | EventType, data: Any) -> int:
        """Broadcast a ``{type, data}`` frame (run_state, story_update, ...)."""
        name = event_type.value if isinstance(event_type, EventType) else event_type
        self._next_id += 1
        return await self.broadcast(
            SSEMessage(event=name, data={"type": name, "data": data}, id=str(self._next_id))
        )

    async def shutdown(self) -> None:
        """Signal every subscriber to finish."""
        async with self._lock:
            queues = list(self._queues)
            self._queues.clear()
        for queue in queues:
            try:
                queue.put_nowait(None)
            except asyncio.QueueFull:
                # Make room for the shutdown sentinel
                queue.get_nowait()
                queue.put_nowait(None)
        logger.info("SSE broadcaster shut down (%d client(s))", len(queues))
