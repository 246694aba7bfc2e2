"""Per-participant media flags, hand raising, reactions and screen-share arbitration."""

import logging
import uuid
from typing import Any

from .errors import EventValidationError
from .hub import Hub
from .models import MediaKind, Participant, RoomState, RoomStatus
from .registry import RoomRegistry

logger = logging.getLogger(__name__)


def _empty_room_state() -> dict[str, Any]:
    return {
        "screenShareUserId": None,
        "meetingStatus": RoomStatus.LOBBY.value,
        "users": [],
    }


class MediaState:
    """Mutates participant flags and broadcasts the result.

    Participants are resolved by connection id first. The explicit reference
    (participant id, then user id) is only consulted when the connection has
    no participant in that room, e.g. after a reconnect the client has not
    re-joined yet, and it must belong to the authenticated sender.
    """

    def __init__(self, registry: RoomRegistry, hub: Hub) -> None:
        self._registry = registry
        self._hub = hub

    def resolve(
        self,
        channel_id: str,
        connection_id: str,
        participant_ref: str | None = None,
        acting_user: str | None = None,
    ) -> tuple[RoomState, Participant]:
        room = self._registry.get(channel_id)
        if room is None:
            raise EventValidationError("Room not found")
        participant = room.find_by_connection(connection_id)
        if participant is None and participant_ref:
            participant = room.find(participant_ref) or room.find_by_user(participant_ref)
            if participant is not None and participant.user_id != acting_user:
                logger.warning(
                    "User %s on %s tried to act as %s in %s",
                    acting_user, connection_id, participant.participant_id, channel_id,
                )
                raise EventValidationError("Cannot act for another participant")
        if participant is None:
            raise EventValidationError("Participant not found")
        return room, participant

    async def toggle_media(
        self,
        channel_id: str,
        connection_id: str,
        kind: MediaKind,
        enabled: bool,
        participant_ref: str | None = None,
        acting_user: str | None = None,
    ) -> Participant:
        room, participant = self.resolve(channel_id, connection_id, participant_ref, acting_user)
        if kind == MediaKind.AUDIO:
            participant.is_muted = not enabled
        else:
            participant.is_camera_on = enabled
        await self._hub.emit(
            channel_id,
            "mediaStateChange",
            {
                "userId": participant.participant_id,
                "type": kind.value,
                "enabled": enabled,
                "availableAttendees": room.roster(),
            },
        )
        return participant

    async def raise_hand(
        self,
        channel_id: str,
        connection_id: str,
        is_raised: bool,
        participant_ref: str | None = None,
        acting_user: str | None = None,
    ) -> Participant:
        _, participant = self.resolve(channel_id, connection_id, participant_ref, acting_user)
        participant.is_hand_raised = is_raised
        await self._hub.emit(
            channel_id,
            "handUpdate",
            {"userId": participant.participant_id, "isHandRaised": is_raised},
        )
        return participant

    async def reaction(
        self,
        channel_id: str,
        connection_id: str,
        reaction_type: str,
        participant_ref: str | None = None,
        acting_user: str | None = None,
    ) -> dict[str, Any]:
        """Ephemeral; nothing is stored."""
        _, participant = self.resolve(channel_id, connection_id, participant_ref, acting_user)
        payload = {
            "id": uuid.uuid4().hex[:9],
            "senderId": participant.participant_id,
            "type": reaction_type,
        }
        await self._hub.emit(channel_id, "reaction", payload)
        return payload

    async def screen_share_start(
        self,
        channel_id: str,
        connection_id: str,
        display_name: str | None = None,
        participant_ref: str | None = None,
        acting_user: str | None = None,
    ) -> Participant:
        """Grant the screen share to the requester, stopping whoever had it."""
        room, participant = self.resolve(channel_id, connection_id, participant_ref, acting_user)
        preempted = room.grant_screen_share(participant)
        if preempted is not None:
            logger.info(
                "Screen share in %s preempted: %s -> %s",
                channel_id, preempted.participant_id, participant.participant_id,
            )
            await self._hub.emit(channel_id, "screenShareStop", {"userId": preempted.participant_id})
        await self._hub.emit(
            channel_id,
            "screenShareStart",
            {
                "userId": participant.participant_id,
                "username": display_name or participant.username,
            },
        )
        return participant

    async def screen_share_stop(
        self,
        channel_id: str,
        connection_id: str,
        participant_ref: str | None = None,
        acting_user: str | None = None,
    ) -> bool:
        room, participant = self.resolve(channel_id, connection_id, participant_ref, acting_user)
        if not room.release_screen_share(participant):
            return False
        await self._hub.emit(channel_id, "screenShareStop", {"userId": participant.participant_id})
        return True

    def request_room_state(self, channel_id: str) -> dict[str, Any]:
        """Snapshot for late joiners and reconnects. Never creates a room."""
        room = self._registry.get(channel_id)
        if room is None:
            return _empty_room_state()
        return room.snapshot()
