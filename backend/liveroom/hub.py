"""Per-connection outbound queues and channel subscriptions."""

import asyncio
import logging
from typing import Any

logger = logging.getLogger(__name__)


def _frame(event: str, data: Any, ack_id: int | str | None = None) -> dict[str, Any]:
    frame: dict[str, Any] = {"event": event, "data": data}
    if ack_id is not None:
        frame["ackId"] = ack_id
    return frame


class Hub:
    """Fan-out transport for live events.

    Each connection owns one bounded queue; the socket endpoint drains it.
    Channels are plain string keys (a room channel, ``user:<id>``,
    ``chat:<room>:<session>``...). Publishing never blocks: a full queue drops
    the event for that connection only.
    """

    def __init__(self, queue_size: int = 256) -> None:
        self._queue_size = queue_size
        self._queues: dict[str, asyncio.Queue[dict[str, Any]]] = {}
        # channel -> connection ids, and the reverse for cleanup
        self._channels: dict[str, set[str]] = {}
        self._memberships: dict[str, set[str]] = {}

    def connect(self, connection_id: str) -> asyncio.Queue[dict[str, Any]]:
        """Register a connection. Returns the queue to await outbound frames from."""
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=self._queue_size)
        self._queues[connection_id] = queue
        self._memberships[connection_id] = set()
        return queue

    def disconnect(self, connection_id: str) -> None:
        """Forget the connection and all of its subscriptions."""
        for channel in self._memberships.pop(connection_id, set()):
            self._discard(channel, connection_id)
        self._queues.pop(connection_id, None)

    def is_connected(self, connection_id: str) -> bool:
        return connection_id in self._queues

    def subscribe(self, channel: str, connection_id: str) -> None:
        if connection_id not in self._queues:
            logger.warning("Ignoring subscribe of unknown connection %s to %s", connection_id, channel)
            return
        self._channels.setdefault(channel, set()).add(connection_id)
        self._memberships[connection_id].add(channel)

    def unsubscribe(self, channel: str, connection_id: str) -> None:
        self._discard(channel, connection_id)
        if connection_id in self._memberships:
            self._memberships[connection_id].discard(channel)

    def _discard(self, channel: str, connection_id: str) -> None:
        if channel in self._channels:
            self._channels[channel].discard(connection_id)
            if not self._channels[channel]:
                del self._channels[channel]

    def subscribers(self, channel: str) -> set[str]:
        return set(self._channels.get(channel, set()))

    def has_subscribers(self, channel: str) -> bool:
        return bool(self._channels.get(channel))

    def _deliver(self, connection_id: str, frame: dict[str, Any]) -> bool:
        queue = self._queues.get(connection_id)
        if queue is None:
            return False
        try:
            queue.put_nowait(frame)
        except asyncio.QueueFull:
            logger.warning(
                "Outbound queue full for connection %s, dropping %s", connection_id, frame["event"]
            )
            return False
        return True

    async def emit(self, channel: str, event: str, data: Any, exclude: str | None = None) -> int:
        """Push an event to every subscriber of *channel* except *exclude*.

        Returns how many got it.
        """
        frame = _frame(event, data)
        delivered = 0
        for connection_id in self.subscribers(channel):
            if connection_id == exclude:
                continue
            if self._deliver(connection_id, frame):
                delivered += 1
        return delivered

    async def send(
        self,
        connection_id: str,
        event: str,
        data: Any,
        ack_id: int | str | None = None,
    ) -> bool:
        """Push an event to a single connection."""
        return self._deliver(connection_id, _frame(event, data, ack_id))
