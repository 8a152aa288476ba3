"""In-process registry of live event-stream connections.

Connections are grouped by request id; several may be open for the same
request (one per browser tab). Workers call :meth:`ConnectionRegistry.broadcast`
right after each state transition is committed. Nothing is persisted: after a
restart clients reconnect and receive the current state in ``task:init``.
"""

from __future__ import annotations

import asyncio
import enum
import json
from collections.abc import AsyncIterator
from functools import lru_cache
from typing import Any

from fastapi.encoders import jsonable_encoder

from app.core.config import get_settings
from app.core.logging import get_logger
from app.models.base import utcnow

logger = get_logger("modelforge.notifications")

HEARTBEAT_FRAME = ":keep-alive\n\n"


class EventType(str, enum.Enum):
    TASK_INIT = "task:init"
    TASK_UPDATED = "task:updated"
    IMAGE_GENERATING = "image:generating"
    IMAGE_COMPLETED = "image:completed"
    IMAGE_FAILED = "image:failed"
    MODEL_GENERATING = "model:generating"
    MODEL_PROGRESS = "model:progress"
    MODEL_COMPLETED = "model:completed"
    MODEL_FAILED = "model:failed"


def format_event(event_type: EventType | str, payload: Any) -> str:
    name = event_type.value if isinstance(event_type, EventType) else event_type
    data = json.dumps(jsonable_encoder(payload), ensure_ascii=False)
    return f"event: {name}\ndata: {data}\n\n"


class ConnectionClosedError(Exception):
    pass


_CLOSE = object()


class Connection:
    """One open push stream: a bounded frame queue plus its text encoding."""

    def __init__(
        self, request_id: str, *, max_queue_size: int, encoding: str = "utf-8"
    ) -> None:
        self.request_id = request_id
        self.encoding = encoding
        self.connected_at = utcnow()
        self.closed = False
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=max_queue_size)

    def write(self, frame: str) -> None:
        if self.closed:
            raise ConnectionClosedError(self.request_id)
        self._queue.put_nowait(frame.encode(self.encoding))

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self._queue.put_nowait(_CLOSE)
        except asyncio.QueueFull:
            pass

    async def read(self, timeout: float) -> bytes | None:
        item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        if item is _CLOSE:
            return None
        return item


class ConnectionRegistry:
    def __init__(self, *, max_queue_size: int = 256) -> None:
        self._max_queue_size = max_queue_size
        self._connections: dict[str, set[Connection]] = {}

    def add_connection(self, request_id: object) -> Connection:
        key = str(request_id)
        connection = Connection(key, max_queue_size=self._max_queue_size)
        self._connections.setdefault(key, set()).add(connection)
        logger.info(
            "notifications.connection_added",
            request_id=key,
            connections=len(self._connections[key]),
        )
        return connection

    def remove_connection(self, connection: Connection) -> None:
        connection.close()
        connections = self._connections.get(connection.request_id)
        if connections is None:
            return
        connections.discard(connection)
        if not connections:
            del self._connections[connection.request_id]
        logger.info(
            "notifications.connection_removed",
            request_id=connection.request_id,
            remaining=len(connections),
        )

    def broadcast(
        self, request_id: object, event_type: EventType, payload: Any
    ) -> int:
        """Write one event to every open connection of ``request_id``.

        Returns the number of connections that accepted the frame. Connections
        whose write fails are pruned without affecting the others.
        """
        key = str(request_id)
        connections = self._connections.get(key)
        if not connections:
            logger.debug(
                "notifications.no_listeners", request_id=key, event_name=event_type.value
            )
            return 0

        frame = format_event(event_type, payload)
        delivered = 0
        failed: list[Connection] = []
        for connection in list(connections):
            try:
                connection.write(frame)
            except (ConnectionClosedError, asyncio.QueueFull):
                failed.append(connection)
            else:
                delivered += 1

        for connection in failed:
            logger.warning(
                "notifications.write_failed", request_id=key, event_name=event_type.value
            )
            self.remove_connection(connection)

        logger.info(
            "notifications.broadcast",
            request_id=key,
            event_name=event_type.value,
            delivered=delivered,
        )
        return delivered

    def send_heartbeat(self, connection: Connection) -> bool:
        try:
            connection.write(HEARTBEAT_FRAME)
        except (ConnectionClosedError, asyncio.QueueFull):
            self.remove_connection(connection)
            return False
        return True

    async def stream(
        self, connection: Connection, *, heartbeat_interval: float
    ) -> AsyncIterator[bytes]:
        """Yield encoded frames until the connection is closed.

        A heartbeat is written whenever nothing was sent for
        ``heartbeat_interval`` seconds. The connection is deregistered when the
        consumer stops iterating, which is how client disconnects surface.
        """
        try:
            while not connection.closed:
                try:
                    chunk = await connection.read(timeout=heartbeat_interval)
                except asyncio.TimeoutError:
                    self.send_heartbeat(connection)
                    continue
                if chunk is None:
                    break
                yield chunk
        finally:
            self.remove_connection(connection)

    def connection_count(self, request_id: object) -> int:
        return len(self._connections.get(str(request_id), ()))

    def stats(self) -> dict[str, int]:
        return {
            "requests": len(self._connections),
            "connections": sum(len(c) for c in self._connections.values()),
        }

    def close_all(self) -> None:
        for connections in list(self._connections.values()):
            for connection in list(connections):
                self.remove_connection(connection)


@lru_cache(maxsize=1)
def get_registry() -> ConnectionRegistry:
    return ConnectionRegistry(max_queue_size=get_settings().sse_queue_size)
