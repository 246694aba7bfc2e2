"""Presence: who is in which live room."""

import logging

from .attendance import AttendanceTracker
from .chat import ChatRelay, chat_channel, history_payload
from .errors import EventValidationError, StoreError
from .hub import Hub
from .models import HOST_JOINED, SESSION_STARTED, Attendee, Participant, Role, RoomState
from .registry import RoomRegistry

logger = logging.getLogger(__name__)


class PresenceManager:
    """Join/leave/disconnect handling for live rooms.

    Roster changes happen synchronously before the first await, so the live
    view never waits on the durable store. Every await is followed by a check
    that the room and participant are still there.
    """

    def __init__(
        self,
        registry: RoomRegistry,
        hub: Hub,
        attendance: AttendanceTracker,
        chat: ChatRelay,
    ) -> None:
        self._registry = registry
        self._hub = hub
        self._attendance = attendance
        self._chat = chat

    def _still_present(self, channel_id: str, connection_id: str) -> RoomState | None:
        room = self._registry.get(channel_id)
        if room is None or room.find_by_connection(connection_id) is None:
            return None
        return room

    async def join(
        self,
        channel_id: str,
        descriptor: Attendee,
        connection_id: str,
        room_id: str | None = None,
    ) -> Participant:
        if not channel_id:
            raise EventValidationError("channelId required")

        current = self._registry.channel_for(connection_id)
        if current is not None and current != channel_id:
            await self.leave(current, connection_id)

        room = self._registry.get_or_create(channel_id)
        if room_id and room.is_empty:
            # the first joiner fixes the chat scope for the room's lifetime
            room.room_id = room_id
        chat = chat_channel(*room.chat_scope)

        participant = Participant.joining(descriptor, connection_id)
        # one participant per connection: re-joining under a new id drops the old entry
        displaced = room.find_by_connection(connection_id)
        if displaced is not None and displaced.participant_id != participant.participant_id:
            room.remove_by_connection(connection_id)
        else:
            displaced = None

        lost_share = room.active_screen_share == participant.participant_id
        replaced = room.upsert(participant)
        if replaced is not None and replaced.connection_id != connection_id:
            # same identity from a new connection: the old socket is detached
            self._registry.unbind(replaced.connection_id, channel_id)
            self._hub.unsubscribe(channel_id, replaced.connection_id)
            self._hub.unsubscribe(chat, replaced.connection_id)
            await self._hub.send(
                replaced.connection_id,
                "sessionReplaced",
                {"channelId": channel_id, "userId": replaced.participant_id},
            )
            logger.info(
                "Participant %s in %s moved from connection %s to %s",
                participant.participant_id, channel_id, replaced.connection_id, connection_id,
            )

        self._registry.bind(connection_id, channel_id)
        self._hub.subscribe(channel_id, connection_id)
        self._hub.subscribe(chat, connection_id)
        if participant.role == Role.HOST and room.apply(HOST_JOINED):
            logger.info("Channel %s is now live", channel_id)
        logger.info(
            "%s %s (%s) joined %s", participant.role.value, participant.participant_id,
            participant.user_id, channel_id,
        )
        if displaced is not None:
            logger.info(
                "Connection %s switched from %s to %s in %s",
                connection_id, displaced.participant_id, participant.participant_id, channel_id,
            )
            await self._announce_departure(channel_id, displaced)

        await self._attendance.record_join(channel_id, participant.to_attendee())

        room = self._still_present(channel_id, connection_id)
        if room is None:
            logger.info("Connection %s left %s before its join completed", connection_id, channel_id)
            return participant

        if lost_share:
            await self._hub.emit(channel_id, "screenShareStop", {"userId": participant.participant_id})
        await self._hub.emit(channel_id, "userJoined", participant.to_wire())
        await self._hub.emit(channel_id, "userList", room.roster())
        await self._hub.emit(channel_id, "meetingStatus", {"status": room.status.value})
        await self._hub.send(
            connection_id, "joined", {"userId": participant.participant_id, "channelId": channel_id}
        )

        chat_room_id, session_id = room.chat_scope
        try:
            history = await self._chat.fetch_history(chat_room_id, session_id)
        except StoreError as e:
            logger.error("Could not load chat history for %s: %s", channel_id, e)
            history = None

        room = self._still_present(channel_id, connection_id)
        if room is None:
            return participant
        if history is not None:
            await self._hub.send(
                connection_id, "chatHistory", history_payload(chat_room_id, session_id, history)
            )
        if room.active_screen_share:
            sharer = room.find(room.active_screen_share)
            await self._hub.send(
                connection_id,
                "screenShareStart",
                {
                    "userId": room.active_screen_share,
                    "username": sharer.username if sharer else "",
                },
            )
        return participant

    async def leave(self, channel_id: str, connection_id: str) -> Participant | None:
        """Remove the participant on *connection_id* from *channel_id*."""
        self._registry.unbind(connection_id, channel_id)
        self._hub.unsubscribe(channel_id, connection_id)
        room = self._registry.get(channel_id)
        if room is None:
            return None

        self._hub.unsubscribe(chat_channel(*room.chat_scope), connection_id)
        participant = room.remove_by_connection(connection_id)
        self._registry.remove_if_empty(channel_id)
        if participant is None:
            return None

        logger.info("%s left %s", participant.participant_id, channel_id)
        await self._announce_departure(channel_id, participant)
        return participant

    async def _announce_departure(self, channel_id: str, participant: Participant) -> None:
        await self._hub.emit(channel_id, "userLeft", {"userId": participant.participant_id})
        if participant.is_screen_sharing:
            participant.is_screen_sharing = False
            await self._hub.emit(channel_id, "screenShareStop", {"userId": participant.participant_id})

    async def disconnect(self, connection_id: str) -> Participant | None:
        """Transport loss: treated as a leave of whatever room the connection was in."""
        channel_id = self._registry.channel_for(connection_id)
        if channel_id is None:
            return None
        return await self.leave(channel_id, connection_id)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def _host(self, channel_id: str, connection_id: str) -> RoomState:
        room = self._registry.get(channel_id)
        participant = room.find_by_connection(connection_id) if room else None
        if room is None or participant is None:
            raise EventValidationError("Not in a room")
        if participant.role != Role.HOST:
            raise EventValidationError("Only the host can do that")
        return room

    async def start_session(self, channel_id: str, connection_id: str) -> RoomState:
        """Host announces the session is starting; the room goes live if it wasn't."""
        room = self._host(channel_id, connection_id)
        changed = room.apply(SESSION_STARTED)
        await self._hub.emit(channel_id, "session-start", {"roomId": channel_id})
        if changed:
            await self._hub.emit(channel_id, "meetingStatus", {"status": room.status.value})
        return room

    async def end_session(self, channel_id: str, connection_id: str) -> int:
        """Host ends the session: everyone is told, then removed from the room.

        Durable attendance is left as recorded. Returns how many participants
        were removed.
        """
        room = self._host(channel_id, connection_id)
        await self._hub.emit(channel_id, "session-end", {"roomId": channel_id})

        chat = chat_channel(*room.chat_scope)
        removed = list(room.participants)
        for p in removed:
            self._registry.unbind(p.connection_id, channel_id)
            self._hub.unsubscribe(channel_id, p.connection_id)
            self._hub.unsubscribe(chat, p.connection_id)
        room.participants.clear()
        room.active_screen_share = None
        self._registry.remove_if_empty(channel_id)
        logger.info("Session %s ended, %d participants removed", channel_id, len(removed))
        return len(removed)
