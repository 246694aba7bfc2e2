"""Tests for the durable stores.

SupabaseStore runs against a small in-memory stand-in for the supabase-py
query builder, so the query chains and row conversion are exercised without
a database.
"""

import itertools
from typing import Any

import pytest

from liveroom.errors import RecordNotFound, StoreError
from liveroom.models import Attendee, Role
from liveroom.store import MemoryStore, SupabaseStore


class FakeResponse:
    def __init__(self, data: list[dict]) -> None:
        self.data = data


class FakeQuery:
    """Just enough of the postgrest builder for SupabaseStore."""

    def __init__(self, db: "FakeSupabase", table: str) -> None:
        self._db = db
        self._table = table
        self._op = "select"
        self._values: dict[str, Any] = {}
        self._filters: list[tuple[str, Any]] = []
        self._orders: list[tuple[str, bool]] = []
        self._limit: int | None = None

    def select(self, _columns: str = "*") -> "FakeQuery":
        self._op = "select"
        return self

    def insert(self, values: dict[str, Any]) -> "FakeQuery":
        self._op, self._values = "insert", dict(values)
        return self

    def update(self, values: dict[str, Any]) -> "FakeQuery":
        self._op, self._values = "update", dict(values)
        return self

    def eq(self, column: str, value: Any) -> "FakeQuery":
        self._filters.append((column, value))
        return self

    def is_(self, column: str, value: str) -> "FakeQuery":
        assert value == "null"
        self._filters.append((column, None))
        return self

    def order(self, column: str, desc: bool = False) -> "FakeQuery":
        self._orders.append((column, desc))
        return self

    def limit(self, n: int) -> "FakeQuery":
        self._limit = n
        return self

    def execute(self) -> FakeResponse:
        self._db.calls.append((self._table, self._op, list(self._filters)))
        if self._db.fail:
            raise RuntimeError("connection reset")
        rows = self._db.tables.setdefault(self._table, [])
        if self._op == "insert":
            row = {"id": next(self._db.ids), "created_at": self._db.next_ts(), **self._values}
            rows.append(row)
            return FakeResponse([dict(row)])

        matched = [r for r in rows if all(r.get(c) == v for c, v in self._filters)]
        if self._op == "update":
            for r in matched:
                r.update(self._values)
            return FakeResponse([dict(r) for r in matched])

        for column, desc in reversed(self._orders):
            matched.sort(key=lambda r: r[column], reverse=desc)
        if self._limit is not None:
            matched = matched[: self._limit]
        return FakeResponse([dict(r) for r in matched])


class FakeSupabase:
    def __init__(self) -> None:
        self.tables: dict[str, list[dict]] = {}
        self.calls: list[tuple] = []
        self.fail = False
        self.ids = itertools.count(1)
        self._ticks = itertools.count(0)

    def next_ts(self) -> str:
        return f"2026-03-01T10:00:{next(self._ticks):02d}Z"

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)


@pytest.fixture
def db() -> FakeSupabase:
    return FakeSupabase()


@pytest.fixture
def supabase_store(db: FakeSupabase) -> SupabaseStore:
    return SupabaseStore(db)


# ---------------------------------------------------------------------------
# SupabaseStore: attendance
# ---------------------------------------------------------------------------


@pytest.mark.anyio
async def test_upsert_attendee_merges_into_session_row(db: FakeSupabase, supabase_store: SupabaseStore):
    # older rows hold bare user ids
    db.tables["sessions"] = [{"id": "S1", "attendees": ["u1"]}]

    await supabase_store.upsert_attendee(
        "S1", Attendee(participant_id="p2", user_id="u2", username="Bo", role=Role.HOST)
    )
    attendees = await supabase_store.upsert_attendee(
        "S1", Attendee(participant_id="p1", user_id="u1", username="Ada")
    )

    assert [(a.user_id, a.username) for a in attendees] == [("u1", "Ada"), ("u2", "Bo")]
    saved = db.tables["sessions"][0]["attendees"]
    assert saved[1]["participantId"] == "p2"
    assert saved[1]["role"] == "host"


@pytest.mark.anyio
async def test_remove_attendee_only_writes_on_change(db: FakeSupabase, supabase_store: SupabaseStore):
    db.tables["sessions"] = [{"id": "S1", "attendees": [{"participantId": "p1", "userId": "u1"}]}]

    assert await supabase_store.remove_attendee("S1", "nobody") != []
    assert not any(op == "update" for _, op, _ in db.calls)

    assert await supabase_store.remove_attendee("S1", "u1") == []
    assert db.tables["sessions"][0]["attendees"] == []


@pytest.mark.anyio
async def test_unknown_session_raises_record_not_found(supabase_store: SupabaseStore):
    with pytest.raises(RecordNotFound):
        await supabase_store.list_attendees("ghost")


@pytest.mark.anyio
async def test_client_failure_becomes_store_error(db: FakeSupabase, supabase_store: SupabaseStore):
    db.fail = True
    with pytest.raises(StoreError):
        await supabase_store.append_chat_message("ROOM1", None, "u1", "Ada", "hi")


# ---------------------------------------------------------------------------
# SupabaseStore: chat
# ---------------------------------------------------------------------------


@pytest.mark.anyio
async def test_chat_room_created_once_per_scope(db: FakeSupabase, supabase_store: SupabaseStore):
    await supabase_store.append_chat_message("ROOM1", None, "u1", "Ada", "one", room_name="Pottery")
    await supabase_store.append_chat_message("ROOM1", None, "u2", "Bo", "two")
    await supabase_store.append_chat_message("ROOM1", "S1", "u1", "Ada", "in session")

    chat_rooms = db.tables["chat_rooms"]
    assert [(r["room_id"], r["session_id"], r["room_name"]) for r in chat_rooms] == [
        ("ROOM1", None, "Pottery"),
        ("ROOM1", "S1", "ROOM1"),
    ]
    # the room-wide log is looked up with an IS NULL filter, not eq(None)
    lookups = [f for table, op, f in db.calls if table == "chat_rooms" and op == "select"]
    assert ("session_id", None) in lookups[0]


@pytest.mark.anyio
async def test_history_is_ordered_and_converted(db: FakeSupabase, supabase_store: SupabaseStore):
    for text in ["one", "two", "three"]:
        await supabase_store.append_chat_message("ROOM1", "S1", "u1", "", text)

    history = await supabase_store.fetch_chat_history("ROOM1", "S1")

    assert [m.message for m in history] == ["one", "two", "three"]
    assert history[0].session_id == "S1"
    assert history[0].user_name == "Unknown"
    assert history[0].created_at.tzinfo is not None
    assert history[0].created_at < history[2].created_at
    assert await supabase_store.fetch_chat_history("ROOM1", None) == []


@pytest.mark.anyio
async def test_history_limit_returns_newest_in_order(supabase_store: SupabaseStore):
    for text in ["one", "two", "three", "four"]:
        await supabase_store.append_chat_message("ROOM1", None, "u1", "Ada", text)

    history = await supabase_store.fetch_chat_history("ROOM1", None, limit=2)

    assert [m.message for m in history] == ["three", "four"]


# ---------------------------------------------------------------------------
# SupabaseStore: rooms
# ---------------------------------------------------------------------------


@pytest.mark.anyio
async def test_room_recipients(db: FakeSupabase, supabase_store: SupabaseStore):
    db.tables["rooms"] = [{"id": "ROOM1", "host_id": "h1", "enrolled_users": ["s1", "s2"]}]

    assert await supabase_store.get_room_recipients("ROOM1") == ["h1", "s1", "s2"]
    with pytest.raises(RecordNotFound):
        await supabase_store.get_room_recipients("missing")


# ---------------------------------------------------------------------------
# MemoryStore
# ---------------------------------------------------------------------------


@pytest.mark.anyio
async def test_strict_memory_store_only_knows_added_sessions():
    store = MemoryStore(strict_sessions=True)
    store.add_session("S1")

    await store.upsert_attendee("S1", Attendee(participant_id="p1", user_id="u1"))

    assert [a.user_id for a in await store.list_attendees("S1")] == ["u1"]
    with pytest.raises(RecordNotFound):
        await store.upsert_attendee("S2", Attendee(participant_id="p1", user_id="u1"))
