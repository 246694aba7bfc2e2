"""Pydantic models for live rooms: participants, room state, chat and event payloads."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Anything exchanged with clients. camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class Role(str, Enum):
    HOST = "host"
    AUDIENCE = "audience"


class RoomStatus(str, Enum):
    LOBBY = "lobby"
    LIVE = "live"


class MediaKind(str, Enum):
    AUDIO = "audio"
    VIDEO = "video"


# ---------------------------------------------------------------------------
# Room status state machine
# ---------------------------------------------------------------------------

HOST_JOINED = "host_joined"
SESSION_STARTED = "session_started"

_STATUS_TRANSITIONS: dict[tuple[RoomStatus, str], RoomStatus] = {
    (RoomStatus.LOBBY, HOST_JOINED): RoomStatus.LIVE,
    (RoomStatus.LOBBY, SESSION_STARTED): RoomStatus.LIVE,
}


def next_status(status: RoomStatus, trigger: str) -> RoomStatus:
    """Return the status after *trigger*. Pairs without a transition keep the
    current status, so LIVE never goes back to LOBBY."""
    return _STATUS_TRANSITIONS.get((status, trigger), status)


# ---------------------------------------------------------------------------
# Participants
# ---------------------------------------------------------------------------


class Attendee(WireModel):
    """A participant as the durable attendance record and the roster see it."""
    participant_id: str
    user_id: str
    username: str = ""
    role: Role = Role.AUDIENCE
    is_muted: bool = True
    is_camera_on: bool = False
    is_hand_raised: bool = False
    is_screen_sharing: bool = False


class Participant(Attendee):
    """An Attendee bound to one live connection."""
    connection_id: str = Field(exclude=True)

    @classmethod
    def joining(cls, descriptor: Attendee, connection_id: str) -> "Participant":
        """New participant with default media flags."""
        return cls(
            participant_id=descriptor.participant_id,
            user_id=descriptor.user_id,
            username=descriptor.username,
            role=descriptor.role,
            connection_id=connection_id,
        )

    def to_attendee(self) -> Attendee:
        return Attendee.model_validate(self.model_dump())


class RoomState(BaseModel):
    """Live view of one channel. Owned by the RoomRegistry."""
    channel_id: str
    room_id: str | None = None  # parent room when the channel is a session
    participants: list[Participant] = []
    status: RoomStatus = RoomStatus.LOBBY
    active_screen_share: str | None = None

    @property
    def is_empty(self) -> bool:
        return not self.participants

    @property
    def chat_scope(self) -> tuple[str, str | None]:
        """(room_id, session_id) key of this channel's chat log."""
        if self.room_id:
            return self.room_id, self.channel_id
        return self.channel_id, None

    def find(self, participant_id: str) -> Participant | None:
        for p in self.participants:
            if p.participant_id == participant_id:
                return p
        return None

    def find_by_connection(self, connection_id: str) -> Participant | None:
        for p in self.participants:
            if p.connection_id == connection_id:
                return p
        return None

    def find_by_user(self, user_id: str) -> Participant | None:
        for p in self.participants:
            if p.user_id == user_id:
                return p
        return None

    def upsert(self, participant: Participant) -> Participant | None:
        """Add *participant*, replacing in place any entry with the same id.

        Returns the replaced entry. A replaced screen sharer loses the share.
        """
        for i, existing in enumerate(self.participants):
            if existing.participant_id == participant.participant_id:
                self.participants[i] = participant
                if self.active_screen_share == participant.participant_id:
                    self.active_screen_share = None
                return existing
        self.participants.append(participant)
        return None

    def remove_by_connection(self, connection_id: str) -> Participant | None:
        for i, p in enumerate(self.participants):
            if p.connection_id == connection_id:
                del self.participants[i]
                if self.active_screen_share == p.participant_id:
                    self.active_screen_share = None
                return p
        return None

    def apply(self, trigger: str) -> bool:
        """Run the status machine. Returns True if the status changed."""
        new_status = next_status(self.status, trigger)
        changed = new_status != self.status
        self.status = new_status
        return changed

    def grant_screen_share(self, participant: Participant) -> Participant | None:
        """Give the share to *participant*; returns the preempted sharer, if any."""
        preempted = None
        if self.active_screen_share and self.active_screen_share != participant.participant_id:
            preempted = self.find(self.active_screen_share)
            if preempted is not None:
                preempted.is_screen_sharing = False
        for p in self.participants:
            # keeps the single-sharer invariant even if a stale flag slipped through
            if p is not participant:
                p.is_screen_sharing = False
        participant.is_screen_sharing = True
        self.active_screen_share = participant.participant_id
        return preempted

    def release_screen_share(self, participant: Participant) -> bool:
        """Stop *participant*'s share. Never clears somebody else's."""
        if self.active_screen_share != participant.participant_id:
            return False
        participant.is_screen_sharing = False
        self.active_screen_share = None
        return True

    def roster(self) -> list[dict[str, Any]]:
        return [p.to_wire() for p in self.participants]

    def snapshot(self) -> dict[str, Any]:
        return {
            "screenShareUserId": self.active_screen_share,
            "meetingStatus": self.status.value,
            "users": self.roster(),
        }


# ---------------------------------------------------------------------------
# Chat / notifications
# ---------------------------------------------------------------------------


class ChatMessage(WireModel):
    id: str
    room_id: str
    session_id: str | None = None
    user_id: str
    user_name: str
    message: str
    created_at: datetime


class Notification(WireModel):
    title: str
    message: str
    type: str = "session"
    data: dict[str, Any] | None = None


# ---------------------------------------------------------------------------
# Inbound socket frames and event payloads
# ---------------------------------------------------------------------------

_CHANNEL = AliasChoices("channelId", "channelName", "channel_id")


class InboundFrame(WireModel):
    event: str = Field(min_length=1)
    data: Any = None
    ack_id: int | str | None = None


class JoinPayload(WireModel):
    participant_id: str = Field(min_length=1, validation_alias=AliasChoices("participantId", "id", "participant_id"))
    channel_id: str = Field(min_length=1, validation_alias=_CHANNEL)
    user_id: str | None = None
    username: str | None = None
    role: Role = Role.AUDIENCE
    room_id: str | None = None


class ChannelPayload(WireModel):
    channel_id: str | None = Field(default=None, validation_alias=_CHANNEL)


class ToggleMediaPayload(ChannelPayload):
    kind: MediaKind = Field(validation_alias=AliasChoices("type", "kind"))
    enabled: bool
    user_id: str | None = None


class RaiseHandPayload(ChannelPayload):
    is_raised: bool


class ChatTextPayload(ChannelPayload):
    text: str


class ReactionPayload(ChannelPayload):
    type: str = Field(min_length=1)


class ScreenSharePayload(ChannelPayload):
    user_id: str | None = None
    username: str | None = None


class ChatScopePayload(WireModel):
    room_id: str = Field(min_length=1)
    session_id: str | None = None


class ChatSendPayload(ChatScopePayload):
    message: str
    room_name: str | None = None


class AttendancePayload(WireModel):
    session_id: str = Field(min_length=1)
    user_id: str | None = None


# Signalling and session events also accept the legacy ``roomId`` key
_ROOM_CHANNEL = AliasChoices("channelId", "roomId", "channelName", "channel_id")


class SignalPayload(WireModel):
    """WebRTC offer/answer/ICE candidate relayed verbatim to the room."""
    channel_id: str | None = Field(default=None, validation_alias=_ROOM_CHANNEL)
    to: str | None = None
    offer: Any = None
    answer: Any = None
    candidate: Any = None


class SessionPayload(WireModel):
    channel_id: str | None = Field(default=None, validation_alias=_ROOM_CHANNEL)


class ChatReactPayload(ChatScopePayload):
    message_id: str = Field(min_length=1)
    emoji: str = Field(min_length=1)
