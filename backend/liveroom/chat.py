"""Chat relay: durable append first, broadcast second."""

import logging

from .errors import EventValidationError
from .hub import Hub
from .models import ChatMessage
from .store import Store

logger = logging.getLogger(__name__)


def chat_channel(room_id: str, session_id: str | None = None) -> str:
    if session_id:
        return f"chat:{room_id}:{session_id}"
    return f"chat:{room_id}"


def history_payload(room_id: str, session_id: str | None, messages: list[ChatMessage]) -> dict:
    return {
        "roomId": room_id,
        "sessionId": session_id,
        "messages": [m.to_wire() for m in messages],
    }


class ChatRelay:
    """Append-only chat logs keyed by (room_id, session_id).

    A message is only broadcast once the store has accepted it; store errors
    propagate to the caller so the sender can be told.
    """

    def __init__(self, store: Store, hub: Hub, history_limit: int | None = None) -> None:
        self._store = store
        self._hub = hub
        self._history_limit = history_limit

    async def send_message(
        self,
        room_id: str,
        session_id: str | None,
        user_id: str,
        user_name: str,
        text: str,
        *,
        room_name: str | None = None,
    ) -> ChatMessage:
        """Persist *text* and broadcast it to everyone on the log's chat channel.

        Live room participants are subscribed to the same channel, so REST,
        standalone and in-room senders all reach the same audience.
        """
        if not room_id:
            raise EventValidationError("roomId required")
        text = (text or "").strip()
        if not text:
            raise EventValidationError("Message required")

        message = await self._store.append_chat_message(
            room_id,
            session_id,
            user_id=user_id,
            user_name=user_name or "Unknown",
            message=text,
            room_name=room_name,
        )
        await self._hub.emit(chat_channel(room_id, session_id), "chatMessage", message.to_wire())
        return message

    async def fetch_history(self, room_id: str, session_id: str | None) -> list[ChatMessage]:
        return await self._store.fetch_chat_history(room_id, session_id, limit=self._history_limit)

    async def subscribe(
        self, room_id: str, session_id: str | None, connection_id: str
    ) -> list[ChatMessage]:
        """Join the standalone chat channel and replay its history to this connection."""
        channel = chat_channel(room_id, session_id)
        self._hub.subscribe(channel, connection_id)
        messages = await self.fetch_history(room_id, session_id)
        if self._hub.is_connected(connection_id):
            await self._hub.send(
                connection_id, "chatHistory", history_payload(room_id, session_id, messages)
            )
        return messages

    def unsubscribe(self, room_id: str, session_id: str | None, connection_id: str) -> None:
        self._hub.unsubscribe(chat_channel(room_id, session_id), connection_id)

    async def react(
        self,
        room_id: str,
        session_id: str | None,
        connection_id: str,
        user_id: str,
        message_id: str,
        emoji: str,
    ) -> dict[str, str]:
        """Relay an emoji reaction on a message. Not persisted."""
        channel = chat_channel(room_id, session_id)
        if connection_id not in self._hub.subscribers(channel):
            raise EventValidationError("Join the chat before reacting")
        payload = {"messageId": message_id, "emoji": emoji, "userId": user_id}
        await self._hub.emit(channel, "chat:reaction", payload)
        return payload
