"""Wires the live room components together and dispatches socket events."""

import asyncio
import functools
import logging
import uuid
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, ValidationError

from auth import AuthUser

from .attendance import AttendanceTracker, attendance_channel
from .chat import ChatRelay
from .errors import EventValidationError, StoreError
from .hub import Hub
from .media import MediaState
from .models import (
    Attendee,
    AttendancePayload,
    ChannelPayload,
    ChatReactPayload,
    ChatScopePayload,
    ChatSendPayload,
    ChatTextPayload,
    JoinPayload,
    RaiseHandPayload,
    ReactionPayload,
    ScreenSharePayload,
    SessionPayload,
    SignalPayload,
    ToggleMediaPayload,
)
from .notifications import NotificationFanout, user_channel
from .presence import PresenceManager
from .registry import RoomRegistry
from .store import Store

logger = logging.getLogger(__name__)

Handler = Callable[[str, Any], Awaitable[dict[str, Any] | None]]


def _validation_message(e: ValidationError) -> str:
    err = e.errors()[0]
    loc = ".".join(str(part) for part in err.get("loc", ()))
    return f"{loc}: {err['msg']}" if loc else err["msg"]


def _parse(model: type[BaseModel], data: Any, scalar_field: str | None = None) -> Any:
    """Validate an event payload. Some legacy clients send a bare value."""
    if data is None:
        data = {}
    elif not isinstance(data, dict) and scalar_field is not None:
        data = {scalar_field: data}
    return model.model_validate(data)


class LiveCoordinator:
    """One instance per process; owns the registry, hub and components.

    ``dispatch`` handles one inbound event and returns the ack body. The socket
    endpoint awaits it before reading the next frame, which keeps events from
    one connection strictly ordered.
    """

    def __init__(
        self,
        store: Store,
        *,
        registry: RoomRegistry | None = None,
        hub: Hub | None = None,
        queue_size: int = 256,
        history_limit: int | None = None,
    ) -> None:
        self.store = store
        self.registry = registry or RoomRegistry()
        self.hub = hub or Hub(queue_size)
        self.attendance = AttendanceTracker(store)
        self.chat = ChatRelay(store, self.hub, history_limit)
        self.presence = PresenceManager(self.registry, self.hub, self.attendance, self.chat)
        self.media = MediaState(self.registry, self.hub)
        self.notifications = NotificationFanout(self.hub, store.get_room_recipients)
        self._users: dict[str, AuthUser] = {}
        self._handlers: dict[str, Handler] = {
            "join": self._on_join,
            "leave": self._on_leave,
            "toggleMedia": self._on_toggle_media,
            "raiseHand": self._on_raise_hand,
            "reaction": self._on_reaction,
            "chatMessage": self._on_chat_message,
            "screenShareStart": self._on_screen_share_start,
            "screenShareStop": self._on_screen_share_stop,
            "requestRoomState": self._on_request_room_state,
            "offer": functools.partial(self._on_signal, event="offer", field="offer"),
            "answer": functools.partial(self._on_signal, event="answer", field="answer"),
            "ice-candidate": functools.partial(self._on_signal, event="ice-candidate", field="candidate"),
            "session-start": self._on_session_start,
            "session-end": self._on_session_end,
            "chat:join": self._on_chat_join,
            "chat:leave": self._on_chat_leave,
            "chat:sendMessage": self._on_chat_send,
            "chat:react": self._on_chat_react,
            "attendance:subscribe": self._on_attendance_subscribe,
            "attendance:join": self._on_attendance_join,
            "attendance:leave": self._on_attendance_leave,
        }

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def connect(self, user: AuthUser, connection_id: str | None = None) -> tuple[str, asyncio.Queue]:
        """Register an authenticated connection and subscribe it to its user channel."""
        connection_id = connection_id or uuid.uuid4().hex
        queue = self.hub.connect(connection_id)
        self._users[connection_id] = user
        self.hub.subscribe(user_channel(user.id), connection_id)
        logger.debug("Connection %s opened for user %s", connection_id, user.id)
        return connection_id, queue

    async def disconnect(self, connection_id: str) -> None:
        try:
            await self.presence.disconnect(connection_id)
        finally:
            self.hub.disconnect(connection_id)
            self._users.pop(connection_id, None)
            logger.debug("Connection %s closed", connection_id)

    def user_for(self, connection_id: str) -> AuthUser:
        user = self._users.get(connection_id)
        if user is None:
            raise EventValidationError("Not connected")
        return user

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def dispatch(self, connection_id: str, event: str, data: Any = None) -> dict[str, Any]:
        handler = self._handlers.get(event)
        if handler is None:
            return {"error": f"Unknown event: {event}"}
        try:
            result = await handler(connection_id, data)
        except ValidationError as e:
            return {"error": _validation_message(e)}
        except EventValidationError as e:
            return {"error": str(e)}
        except StoreError as e:
            logger.error("Store failure while handling %s from %s: %s", event, connection_id, e)
            return {"error": "Failed to save, please retry"}
        except Exception:
            logger.exception("Unhandled error in %s handler", event)
            return {"error": "Internal error"}
        return {"success": True, **(result or {})}

    def _channel(self, connection_id: str, explicit: str | None = None) -> str:
        channel_id = explicit or self.registry.channel_for(connection_id)
        if not channel_id:
            raise EventValidationError("Not in a room")
        return channel_id

    # ------------------------------------------------------------------
    # Live room events
    # ------------------------------------------------------------------

    async def _on_join(self, connection_id: str, data: Any) -> dict[str, Any]:
        payload = _parse(JoinPayload, data)
        user = self.user_for(connection_id)
        user_id = payload.user_id or user.id
        descriptor = Attendee(
            participant_id=payload.participant_id,
            user_id=user_id,
            username=payload.username or user.name or f"User{user_id}",
            role=payload.role,
        )
        participant = await self.presence.join(
            payload.channel_id, descriptor, connection_id, room_id=payload.room_id
        )
        return {"participant": participant.to_wire(), "channelId": payload.channel_id}

    async def _on_leave(self, connection_id: str, data: Any) -> dict[str, Any]:
        payload = _parse(ChannelPayload, data)
        channel_id = self._channel(connection_id, payload.channel_id)
        participant = await self.presence.leave(channel_id, connection_id)
        return {"left": participant is not None}

    async def _on_toggle_media(self, connection_id: str, data: Any) -> None:
        payload = _parse(ToggleMediaPayload, data)
        await self.media.toggle_media(
            self._channel(connection_id, payload.channel_id),
            connection_id,
            payload.kind,
            payload.enabled,
            participant_ref=payload.user_id,
            acting_user=self.user_for(connection_id).id,
        )

    async def _on_raise_hand(self, connection_id: str, data: Any) -> None:
        payload = _parse(RaiseHandPayload, data, scalar_field="isRaised")
        await self.media.raise_hand(
            self._channel(connection_id, payload.channel_id), connection_id, payload.is_raised
        )

    async def _on_reaction(self, connection_id: str, data: Any) -> dict[str, Any]:
        payload = _parse(ReactionPayload, data, scalar_field="type")
        reaction = await self.media.reaction(
            self._channel(connection_id, payload.channel_id), connection_id, payload.type
        )
        return {"reaction": reaction}

    async def _on_screen_share_start(self, connection_id: str, data: Any) -> None:
        payload = _parse(ScreenSharePayload, data)
        await self.media.screen_share_start(
            self._channel(connection_id, payload.channel_id),
            connection_id,
            display_name=payload.username,
            participant_ref=payload.user_id,
            acting_user=self.user_for(connection_id).id,
        )

    async def _on_screen_share_stop(self, connection_id: str, data: Any) -> dict[str, Any]:
        payload = _parse(ScreenSharePayload, data)
        stopped = await self.media.screen_share_stop(
            self._channel(connection_id, payload.channel_id),
            connection_id,
            participant_ref=payload.user_id,
            acting_user=self.user_for(connection_id).id,
        )
        return {"stopped": stopped}

    async def _on_request_room_state(self, connection_id: str, data: Any) -> dict[str, Any]:
        payload = _parse(ChannelPayload, data)
        state = self.media.request_room_state(self._channel(connection_id, payload.channel_id))
        await self.hub.send(connection_id, "roomState", state)
        return {"roomState": state}

    async def _on_chat_message(self, connection_id: str, data: Any) -> dict[str, Any]:
        payload = _parse(ChatTextPayload, data, scalar_field="text")
        channel_id = self._channel(connection_id, payload.channel_id)
        room = self.registry.get(channel_id)
        sender = room.find_by_connection(connection_id) if room else None
        if room is None or sender is None:
            raise EventValidationError("Join the room before chatting")
        chat_room_id, session_id = room.chat_scope
        message = await self.chat.send_message(
            chat_room_id,
            session_id,
            user_id=sender.user_id,
            user_name=sender.username,
            text=payload.text,
        )
        return {"message": message.to_wire()}

    # ------------------------------------------------------------------
    # WebRTC signalling and session lifecycle
    # ------------------------------------------------------------------

    def _member_channel(self, connection_id: str, explicit: str | None) -> str:
        """The caller's room, which must be the one it names (if it names one)."""
        channel_id = self.registry.channel_for(connection_id)
        if channel_id is None or (explicit and explicit != channel_id):
            raise EventValidationError("Not in a room")
        return channel_id

    async def _on_signal(self, connection_id: str, data: Any, *, event: str, field: str) -> dict[str, Any]:
        payload = _parse(SignalPayload, data)
        value = getattr(payload, field)
        if value is None:
            raise EventValidationError(f"{field} required")
        channel_id = self._member_channel(connection_id, payload.channel_id)
        delivered = await self.hub.emit(
            channel_id,
            event,
            {"from": self.user_for(connection_id).id, field: value, "to": payload.to},
            exclude=connection_id,
        )
        return {"delivered": delivered}

    async def _on_session_start(self, connection_id: str, data: Any) -> dict[str, Any]:
        payload = _parse(SessionPayload, data)
        channel_id = self._member_channel(connection_id, payload.channel_id)
        room = await self.presence.start_session(channel_id, connection_id)
        return {"status": room.status.value}

    async def _on_session_end(self, connection_id: str, data: Any) -> dict[str, Any]:
        payload = _parse(SessionPayload, data)
        channel_id = self._member_channel(connection_id, payload.channel_id)
        removed = await self.presence.end_session(channel_id, connection_id)
        return {"removed": removed}

    # ------------------------------------------------------------------
    # Standalone chat channels
    # ------------------------------------------------------------------

    async def _on_chat_join(self, connection_id: str, data: Any) -> dict[str, Any]:
        payload = _parse(ChatScopePayload, data)
        messages = await self.chat.subscribe(payload.room_id, payload.session_id, connection_id)
        return {"count": len(messages)}

    async def _on_chat_leave(self, connection_id: str, data: Any) -> None:
        payload = _parse(ChatScopePayload, data)
        self.chat.unsubscribe(payload.room_id, payload.session_id, connection_id)

    async def _on_chat_send(self, connection_id: str, data: Any) -> dict[str, Any]:
        payload = _parse(ChatSendPayload, data)
        user = self.user_for(connection_id)
        message = await self.chat.send_message(
            payload.room_id,
            payload.session_id,
            user_id=user.id,
            user_name=user.name,
            text=payload.message,
            room_name=payload.room_name,
        )
        return {"message": message.to_wire()}

    async def _on_chat_react(self, connection_id: str, data: Any) -> dict[str, Any]:
        payload = _parse(ChatReactPayload, data)
        reaction = await self.chat.react(
            payload.room_id,
            payload.session_id,
            connection_id,
            user_id=self.user_for(connection_id).id,
            message_id=payload.message_id,
            emoji=payload.emoji,
        )
        return {"reaction": reaction}

    # ------------------------------------------------------------------
    # Attendance
    # ------------------------------------------------------------------

    async def _broadcast_attendance(self, session_id: str) -> list[dict[str, Any]]:
        attendees = [a.to_wire() for a in await self.attendance.attendees(session_id)]
        await self.hub.emit(
            attendance_channel(session_id),
            "attendance:update",
            {"sessionId": session_id, "attendees": attendees},
        )
        return attendees

    async def _on_attendance_subscribe(self, connection_id: str, data: Any) -> None:
        payload = _parse(AttendancePayload, data)
        self.hub.subscribe(attendance_channel(payload.session_id), connection_id)

    async def _on_attendance_join(self, connection_id: str, data: Any) -> dict[str, Any]:
        payload = _parse(AttendancePayload, data)
        user = self.user_for(connection_id)
        user_id = payload.user_id or user.id
        room = self.registry.get(payload.session_id)
        participant = room.find_by_user(user_id) if room else None
        if participant is not None:
            attendee = participant.to_attendee()
        else:
            attendee = Attendee(participant_id=user_id, user_id=user_id, username=user.name)
        recorded = await self.attendance.record_join(payload.session_id, attendee)
        attendees = await self._broadcast_attendance(payload.session_id)
        return {"recorded": recorded, "attendees": attendees}

    async def _on_attendance_leave(self, connection_id: str, data: Any) -> dict[str, Any]:
        payload = _parse(AttendancePayload, data)
        user_id = payload.user_id or self.user_for(connection_id).id
        removed = await self.attendance.record_leave(payload.session_id, user_id)
        attendees = await self._broadcast_attendance(payload.session_id)
        return {"removed": removed, "attendees": attendees}

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def live_rooms(self) -> list[dict[str, Any]]:
        rooms = []
        for channel_id in self.registry.channels():
            room = self.registry.get(channel_id)
            if room is None:
                continue
            rooms.append({
                "channelId": channel_id,
                "status": room.status.value,
                "participants": len(room.participants),
            })
        return rooms
