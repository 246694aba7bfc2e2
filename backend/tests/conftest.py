"""Shared fixtures for live room tests."""

import asyncio
from typing import Any

import jwt
import pytest
from httpx import ASGITransport, AsyncClient
from limits.storage import MemoryStorage
from limits.strategies import FixedWindowRateLimiter

from auth import AuthUser
from config import limiter, settings
from liveroom import LiveCoordinator
from liveroom.store import MemoryStore
from main import app

TEST_JWT_SECRET = "test-secret"
TEST_INTERNAL_SECRET = "internal-test-secret"
MOCK_USER_ID = "test|user123"


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def _reset_state(monkeypatch):
    """Reset rate-limiter storage, secrets and the app coordinator between tests."""
    fresh = MemoryStorage()
    limiter._storage = fresh
    limiter._limiter = FixedWindowRateLimiter(fresh)
    monkeypatch.setattr(settings, "jwt_access_secret", TEST_JWT_SECRET)
    monkeypatch.setattr(settings, "internal_api_secret", TEST_INTERNAL_SECRET)
    app.state.coordinator = LiveCoordinator(MemoryStore())
    yield
    app.dependency_overrides.clear()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def coordinator(store: MemoryStore) -> LiveCoordinator:
    return LiveCoordinator(store)


@pytest.fixture
async def client():
    """Unauthenticated async HTTP client against the FastAPI app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac


@pytest.fixture
async def auth_client():
    """Async HTTP client carrying a valid access token for MOCK_USER_ID."""
    transport = ASGITransport(app=app)
    headers = {"Authorization": f"Bearer {make_token(MOCK_USER_ID, 'Test User')}"}
    async with AsyncClient(transport=transport, base_url="http://testserver", headers=headers) as ac:
        yield ac


def make_token(user_id: str, name: str = "") -> str:
    return jwt.encode({"id": user_id, "name": name}, TEST_JWT_SECRET, algorithm="HS256")


def connect(coordinator: LiveCoordinator, user_id: str, name: str = "") -> tuple[str, asyncio.Queue]:
    return coordinator.connect(AuthUser(id=user_id, name=name or user_id.title()))


def drain(queue: asyncio.Queue) -> list[dict[str, Any]]:
    """Everything queued for a connection so far, in order."""
    frames = []
    while not queue.empty():
        frames.append(queue.get_nowait())
    return frames


def events(frames: list[dict[str, Any]], name: str) -> list[Any]:
    return [f["data"] for f in frames if f["event"] == name]


def names(frames: list[dict[str, Any]]) -> list[str]:
    return [f["event"] for f in frames]


async def join(
    coordinator: LiveCoordinator,
    connection_id: str,
    participant_id: str,
    channel_id: str = "R1",
    role: str = "audience",
    **extra: Any,
) -> dict[str, Any]:
    ack = await coordinator.dispatch(
        connection_id,
        "join",
        {"participantId": participant_id, "channelId": channel_id, "role": role, **extra},
    )
    assert ack.get("success"), ack
    return ack
