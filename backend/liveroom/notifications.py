"""Push notifications from other backend services to connected users."""

import logging
from typing import Awaitable, Callable

from .errors import RecordNotFound, StoreError
from .hub import Hub
from .models import Notification

logger = logging.getLogger(__name__)

RecipientResolver = Callable[[str], Awaitable[list[str]]]


def user_channel(user_id: str) -> str:
    return f"user:{user_id}"


class NotificationFanout:
    """Delivers a notification to a user's channel or to everyone tied to a room.

    Real-time only: recipients without a live connection miss the push.
    """

    def __init__(self, hub: Hub, resolve_recipients: RecipientResolver) -> None:
        self._hub = hub
        self._resolve_recipients = resolve_recipients

    async def send_to_user(self, user_id: str, notification: Notification) -> bool:
        channel = user_channel(user_id)
        if not self._hub.has_subscribers(channel):
            logger.debug("User %s not connected, dropping notification %r", user_id, notification.title)
            return False
        delivered = await self._hub.emit(channel, "notification", notification.to_wire())
        return delivered > 0

    async def send_to_room_participants(self, room_id: str, notification: Notification) -> int:
        """Notify the room host and enrolled users. Returns the number reached."""
        try:
            recipients = await self._resolve_recipients(room_id)
        except RecordNotFound:
            logger.warning("Room %s not found, notification %r not sent", room_id, notification.title)
            return 0
        except StoreError as e:
            logger.error("Could not resolve recipients for room %s: %s", room_id, e)
            return 0

        reached = 0
        for user_id in dict.fromkeys(recipients):
            if await self.send_to_user(user_id, notification):
                reached += 1
        return reached
