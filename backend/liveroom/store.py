"""Durable storage for attendance and chat.

``SupabaseStore`` is the production backend. ``MemoryStore`` keeps the same
contract in process memory and is used when Supabase is not configured and
in tests.

Tables (Supabase / Postgres):

* ``sessions``       id, attendees jsonb[]
* ``rooms``          id, host_id, enrolled_users text[]
* ``chat_rooms``     id, room_id, session_id (nullable), room_name;
                     unique (room_id, session_id) nulls not distinct
* ``chat_messages``  id, chat_room_id, room_id, session_id, user_id,
                     user_name, message, created_at default now()
"""

import asyncio
import itertools
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator

from supabase import Client

from .errors import RecordNotFound, StoreError
from .models import Attendee, ChatMessage

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class KeyedLock:
    """One asyncio.Lock per key, released from memory once nobody holds it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if not self._holders[key]:
                del self._holders[key]
                del self._locks[key]


def _parse_ts(ts: str | None) -> datetime:
    """Convert an ISO-8601 timestamp string (from Supabase) to an aware datetime."""
    if not ts:
        return datetime.now(timezone.utc)
    try:
        return datetime.fromisoformat(ts.replace("Z", "+00:00"))
    except ValueError:
        return datetime.now(timezone.utc)


def _row_to_attendee(entry: Any) -> Attendee:
    """Convert one element of sessions.attendees to an Attendee.

    Older rows stored bare user ids instead of descriptors.
    """
    if isinstance(entry, str):
        return Attendee(participant_id=entry, user_id=entry)
    return Attendee.model_validate(entry)


def _row_to_message(row: dict) -> ChatMessage:
    return ChatMessage(
        id=str(row["id"]),
        room_id=str(row["room_id"]),
        session_id=str(row["session_id"]) if row.get("session_id") else None,
        user_id=str(row["user_id"]),
        user_name=row.get("user_name") or "Unknown",
        message=row["message"],
        created_at=_parse_ts(row.get("created_at")),
    )


def _merge_attendee(attendees: list[Attendee], attendee: Attendee) -> list[Attendee]:
    """Upsert by user_id; the newer descriptor wins."""
    merged = [a for a in attendees if a.user_id != attendee.user_id]
    for i, a in enumerate(attendees):
        if a.user_id == attendee.user_id:
            merged.insert(i, attendee)
            return merged
    merged.append(attendee)
    return merged


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------


class Store:
    """Async durable-store contract. Every method is a suspension point."""

    async def upsert_attendee(self, session_id: str, attendee: Attendee) -> list[Attendee]:
        raise NotImplementedError

    async def remove_attendee(self, session_id: str, user_id: str) -> list[Attendee]:
        raise NotImplementedError

    async def list_attendees(self, session_id: str) -> list[Attendee]:
        raise NotImplementedError

    async def append_chat_message(
        self,
        room_id: str,
        session_id: str | None,
        user_id: str,
        user_name: str,
        message: str,
        room_name: str | None = None,
    ) -> ChatMessage:
        raise NotImplementedError

    async def fetch_chat_history(
        self, room_id: str, session_id: str | None, limit: int | None = None
    ) -> list[ChatMessage]:
        raise NotImplementedError

    async def get_room_recipients(self, room_id: str) -> list[str]:
        """User ids to notify for a room: host first, then enrolled users."""
        raise NotImplementedError


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


class MemoryStore(Store):
    """Process-local store. Data is lost on restart.

    With ``strict_sessions`` attendance writes to unknown sessions raise
    RecordNotFound, like the database does; otherwise sessions spring into
    existence on first write.
    """

    def __init__(self, strict_sessions: bool = False) -> None:
        self.strict_sessions = strict_sessions
        self.sessions: dict[str, list[Attendee]] = {}
        self.rooms: dict[str, tuple[str, list[str]]] = {}
        self.chat_logs: dict[tuple[str, str | None], dict[str, Any]] = {}
        self._ids = itertools.count(1)

    def add_session(self, session_id: str) -> None:
        self.sessions.setdefault(session_id, [])

    def add_room(self, room_id: str, host_id: str, enrolled_users: list[str] | None = None) -> None:
        self.rooms[room_id] = (host_id, list(enrolled_users or []))

    def _session(self, session_id: str) -> list[Attendee]:
        if session_id not in self.sessions:
            if self.strict_sessions:
                raise RecordNotFound(f"Session {session_id} not found")
            self.sessions[session_id] = []
        return self.sessions[session_id]

    async def upsert_attendee(self, session_id: str, attendee: Attendee) -> list[Attendee]:
        merged = _merge_attendee(self._session(session_id), attendee)
        self.sessions[session_id] = merged
        return list(merged)

    async def remove_attendee(self, session_id: str, user_id: str) -> list[Attendee]:
        remaining = [a for a in self._session(session_id) if a.user_id != user_id]
        self.sessions[session_id] = remaining
        return list(remaining)

    async def list_attendees(self, session_id: str) -> list[Attendee]:
        return list(self._session(session_id))

    async def append_chat_message(
        self,
        room_id: str,
        session_id: str | None,
        user_id: str,
        user_name: str,
        message: str,
        room_name: str | None = None,
    ) -> ChatMessage:
        log = self.chat_logs.setdefault(
            (room_id, session_id),
            {"room_name": room_name or room_id, "messages": []},
        )
        msg = ChatMessage(
            id=str(next(self._ids)),
            room_id=room_id,
            session_id=session_id,
            user_id=user_id,
            user_name=user_name,
            message=message,
            created_at=datetime.now(timezone.utc),
        )
        log["messages"].append(msg)
        return msg

    async def fetch_chat_history(
        self, room_id: str, session_id: str | None, limit: int | None = None
    ) -> list[ChatMessage]:
        log = self.chat_logs.get((room_id, session_id))
        if log is None:
            return []
        messages = list(log["messages"])
        return messages[-limit:] if limit else messages

    async def get_room_recipients(self, room_id: str) -> list[str]:
        if room_id not in self.rooms:
            raise RecordNotFound(f"Room {room_id} not found")
        host_id, enrolled = self.rooms[room_id]
        return [host_id, *enrolled]


# ---------------------------------------------------------------------------
# Supabase
# ---------------------------------------------------------------------------


class SupabaseStore(Store):
    """Supabase-backed store. The client is synchronous, so every query runs
    in a worker thread to keep the event loop free."""

    def __init__(
        self,
        client: Client,
        sessions_table: str = "sessions",
        rooms_table: str = "rooms",
        chat_rooms_table: str = "chat_rooms",
        chat_messages_table: str = "chat_messages",
    ) -> None:
        self._client = client
        self._sessions = sessions_table
        self._rooms = rooms_table
        self._chat_rooms = chat_rooms_table
        self._chat_messages = chat_messages_table
        self._locks = KeyedLock()

    async def _execute(self, query: Any) -> Any:
        try:
            return await asyncio.to_thread(query.execute)
        except Exception as e:
            raise StoreError(str(e)) from e

    # -- attendance ---------------------------------------------------------

    async def _load_attendees(self, session_id: str) -> list[Attendee]:
        response = await self._execute(
            self._client.table(self._sessions)
            .select("attendees")
            .eq("id", session_id)
            .limit(1)
        )
        if not response.data:
            raise RecordNotFound(f"Session {session_id} not found")
        return [_row_to_attendee(a) for a in (response.data[0].get("attendees") or [])]

    async def _save_attendees(self, session_id: str, attendees: list[Attendee]) -> None:
        await self._execute(
            self._client.table(self._sessions)
            .update({"attendees": [a.to_wire() for a in attendees]})
            .eq("id", session_id)
        )

    async def upsert_attendee(self, session_id: str, attendee: Attendee) -> list[Attendee]:
        # read-modify-write of a jsonb column; serialise writers per session
        async with self._locks.hold(f"session:{session_id}"):
            merged = _merge_attendee(await self._load_attendees(session_id), attendee)
            await self._save_attendees(session_id, merged)
        return merged

    async def remove_attendee(self, session_id: str, user_id: str) -> list[Attendee]:
        async with self._locks.hold(f"session:{session_id}"):
            attendees = await self._load_attendees(session_id)
            remaining = [a for a in attendees if a.user_id != user_id]
            if len(remaining) != len(attendees):
                await self._save_attendees(session_id, remaining)
        return remaining

    async def list_attendees(self, session_id: str) -> list[Attendee]:
        return await self._load_attendees(session_id)

    # -- chat ---------------------------------------------------------------

    def _chat_room_query(self, room_id: str, session_id: str | None) -> Any:
        query = self._client.table(self._chat_rooms).select("id").eq("room_id", room_id)
        if session_id is None:
            return query.is_("session_id", "null").limit(1)
        return query.eq("session_id", session_id).limit(1)

    async def _find_chat_room(self, room_id: str, session_id: str | None) -> str | None:
        response = await self._execute(self._chat_room_query(room_id, session_id))
        if response.data:
            return str(response.data[0]["id"])
        return None

    async def _get_or_create_chat_room(
        self, room_id: str, session_id: str | None, room_name: str | None
    ) -> str:
        async with self._locks.hold(f"chat:{room_id}:{session_id}"):
            chat_room_id = await self._find_chat_room(room_id, session_id)
            if chat_room_id is not None:
                return chat_room_id
            response = await self._execute(
                self._client.table(self._chat_rooms).insert({
                    "id": str(uuid.uuid4()),
                    "room_id": room_id,
                    "session_id": session_id,
                    "room_name": room_name or room_id,
                })
            )
            if not response.data:
                raise StoreError(f"Failed to create chat room for {room_id}/{session_id}")
            logger.info("Created chat room for room %s session %s", room_id, session_id)
            return str(response.data[0]["id"])

    async def append_chat_message(
        self,
        room_id: str,
        session_id: str | None,
        user_id: str,
        user_name: str,
        message: str,
        room_name: str | None = None,
    ) -> ChatMessage:
        chat_room_id = await self._get_or_create_chat_room(room_id, session_id, room_name)
        response = await self._execute(
            self._client.table(self._chat_messages).insert({
                "chat_room_id": chat_room_id,
                "room_id": room_id,
                "session_id": session_id,
                "user_id": user_id,
                "user_name": user_name,
                "message": message,
            })
        )
        if not response.data:
            raise StoreError("Chat message insert returned no row")
        return _row_to_message(response.data[0])

    async def fetch_chat_history(
        self, room_id: str, session_id: str | None, limit: int | None = None
    ) -> list[ChatMessage]:
        chat_room_id = await self._find_chat_room(room_id, session_id)
        if chat_room_id is None:
            return []
        query = (
            self._client.table(self._chat_messages)
            .select("*")
            .eq("chat_room_id", chat_room_id)
        )
        if limit:
            # newest N, flipped back to ascending below
            query = query.order("created_at", desc=True).order("id", desc=True).limit(limit)
            response = await self._execute(query)
            return [_row_to_message(row) for row in reversed(response.data or [])]
        response = await self._execute(query.order("created_at").order("id"))
        return [_row_to_message(row) for row in (response.data or [])]

    # -- rooms --------------------------------------------------------------

    async def get_room_recipients(self, room_id: str) -> list[str]:
        response = await self._execute(
            self._client.table(self._rooms)
            .select("host_id, enrolled_users")
            .eq("id", room_id)
            .limit(1)
        )
        if not response.data:
            raise RecordNotFound(f"Room {room_id} not found")
        row = response.data[0]
        recipients = [str(row["host_id"])] if row.get("host_id") else []
        recipients.extend(str(u) for u in (row.get("enrolled_users") or []))
        return recipients
