"""In-memory registry of live room state, keyed by channel id."""

import logging

from .models import RoomState

logger = logging.getLogger(__name__)


class RoomRegistry:
    """Owns every RoomState of this process.

    Rooms are created lazily on first join and dropped as soon as their roster
    is empty. A secondary index maps each bound connection to its channel so a
    disconnect can be resolved without scanning every room.
    """

    def __init__(self) -> None:
        self._rooms: dict[str, RoomState] = {}
        self._connections: dict[str, str] = {}

    def get_or_create(self, channel_id: str) -> RoomState:
        room = self._rooms.get(channel_id)
        if room is None:
            room = RoomState(channel_id=channel_id)
            self._rooms[channel_id] = room
            logger.debug("Created room state for channel %s", channel_id)
        return room

    def get(self, channel_id: str) -> RoomState | None:
        return self._rooms.get(channel_id)

    def remove_if_empty(self, channel_id: str) -> bool:
        room = self._rooms.get(channel_id)
        if room is None or not room.is_empty:
            return False
        del self._rooms[channel_id]
        stale = [c for c, ch in self._connections.items() if ch == channel_id]
        for connection_id in stale:
            del self._connections[connection_id]
        logger.debug("Removed empty room state for channel %s", channel_id)
        return True

    # -- connection index ---------------------------------------------------

    def bind(self, connection_id: str, channel_id: str) -> None:
        self._connections[connection_id] = channel_id

    def channel_for(self, connection_id: str) -> str | None:
        return self._connections.get(connection_id)

    def unbind(self, connection_id: str, channel_id: str | None = None) -> None:
        """Drop the index entry. With *channel_id*, only if it still points there."""
        if channel_id is not None and self._connections.get(connection_id) != channel_id:
            return
        self._connections.pop(connection_id, None)

    def channels(self) -> list[str]:
        return list(self._rooms.keys())

    def __contains__(self, channel_id: object) -> bool:
        return channel_id in self._rooms

    def __len__(self) -> int:
        return len(self._rooms)
