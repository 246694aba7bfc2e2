"""Tests that verify authentication gates on protected endpoints and the socket.

Each REST test sends an unauthenticated request and asserts a 401 response,
then repeats it with a valid access token and asserts a non-401 response.
"""

import time

import jwt
import pytest
from fastapi import HTTPException
from httpx import AsyncClient

from auth import authenticate_socket, get_current_user
from main import app
from tests.conftest import MOCK_USER_ID, TEST_INTERNAL_SECRET, TEST_JWT_SECRET, make_token


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def _assert_requires_auth(
    client: AsyncClient,
    method: str,
    url: str,
    *,
    json: dict | None = None,
):
    """Verify endpoint returns 401 without auth and non-401 with auth."""
    resp_no_auth = await client.request(method.upper(), url, json=json)
    assert resp_no_auth.status_code == 401, (
        f"Expected 401 without auth, got {resp_no_auth.status_code} on {method.upper()} {url}"
    )

    headers = {"Authorization": f"Bearer {make_token(MOCK_USER_ID)}"}
    resp_auth = await client.request(method.upper(), url, json=json, headers=headers)
    assert resp_auth.status_code != 401, (
        f"Authenticated request should not return 401 on {method.upper()} {url}"
    )


# ---------------------------------------------------------------------------
# Auth-gated endpoint tests
# ---------------------------------------------------------------------------


@pytest.mark.anyio
async def test_list_messages_requires_auth(client: AsyncClient):
    await _assert_requires_auth(client, "get", "/api/chatrooms/ROOM1/messages")


@pytest.mark.anyio
async def test_post_message_requires_auth(client: AsyncClient):
    await _assert_requires_auth(
        client, "post",
        "/api/chatrooms/ROOM1/messages",
        json={"message": "hello"},
    )


@pytest.mark.anyio
async def test_expired_token_rejected(client: AsyncClient):
    token = jwt.encode(
        {"id": MOCK_USER_ID, "exp": int(time.time()) - 60}, TEST_JWT_SECRET, algorithm="HS256"
    )
    resp = await client.get(
        "/api/chatrooms/ROOM1/messages", headers={"Authorization": f"Bearer {token}"}
    )
    assert resp.status_code == 401
    assert resp.json()["detail"] == "Token has expired."


@pytest.mark.anyio
async def test_token_signed_with_other_secret_rejected(client: AsyncClient):
    token = jwt.encode({"id": MOCK_USER_ID}, "not-the-secret", algorithm="HS256")
    resp = await client.get(
        "/api/chatrooms/ROOM1/messages", headers={"Authorization": f"Bearer {token}"}
    )
    assert resp.status_code == 401


@pytest.mark.anyio
async def test_dependency_override_still_works(client: AsyncClient):
    from auth import AuthUser

    async def _mock_current_user() -> AuthUser:
        return AuthUser(id=MOCK_USER_ID, name="Mock")

    app.dependency_overrides[get_current_user] = _mock_current_user
    resp = await client.get("/api/chatrooms/ROOM1/messages")
    assert resp.status_code == 200


# ---------------------------------------------------------------------------
# Internal notification endpoints
# ---------------------------------------------------------------------------


@pytest.mark.anyio
@pytest.mark.parametrize("url", ["/api/notifications/users/u1", "/api/notifications/rooms/ROOM1"])
async def test_notification_endpoints_require_internal_secret(client: AsyncClient, url: str):
    body = {"title": "Hi", "message": "there"}

    resp = await client.post(url, json=body)
    assert resp.status_code == 401

    resp = await client.post(url, json=body, headers={"X-Internal-Secret": "wrong"})
    assert resp.status_code == 401

    resp = await client.post(url, json=body, headers={"X-Internal-Secret": TEST_INTERNAL_SECRET})
    assert resp.status_code == 200


@pytest.mark.anyio
async def test_user_token_is_not_an_internal_secret(client: AsyncClient):
    resp = await client.post(
        "/api/notifications/users/u1",
        json={"title": "Hi", "message": "there"},
        headers={"Authorization": f"Bearer {make_token(MOCK_USER_ID)}"},
    )
    assert resp.status_code == 401


@pytest.mark.anyio
async def test_internal_api_disabled_without_secret(client: AsyncClient, monkeypatch):
    from config import settings

    monkeypatch.setattr(settings, "internal_api_secret", "")
    resp = await client.post(
        "/api/notifications/users/u1",
        json={"title": "Hi", "message": "there"},
        headers={"X-Internal-Secret": TEST_INTERNAL_SECRET},
    )
    assert resp.status_code == 503


# ---------------------------------------------------------------------------
# Socket token
# ---------------------------------------------------------------------------


def test_socket_token_accepted():
    user = authenticate_socket(make_token("u7", "Grace"))
    assert user is not None
    assert (user.id, user.name) == ("u7", "Grace")


def test_socket_token_falls_back_to_sub_claim():
    token = jwt.encode({"sub": "u8", "email": "a@b.c"}, TEST_JWT_SECRET, algorithm="HS256")
    user = authenticate_socket(token)
    assert (user.id, user.name) == ("u8", "a@b.c")


@pytest.mark.parametrize("token", [None, "", "garbage"])
def test_socket_token_rejected(token):
    assert authenticate_socket(token) is None


def test_token_without_user_id_rejected():
    token = jwt.encode({"name": "nobody"}, TEST_JWT_SECRET, algorithm="HS256")
    assert authenticate_socket(token) is None


def test_unconfigured_secret_is_a_server_error(monkeypatch):
    from auth import _decode_token
    from config import settings

    monkeypatch.setattr(settings, "jwt_access_secret", "")
    with pytest.raises(HTTPException) as exc:
        _decode_token(make_token("u1"))
    assert exc.value.status_code == 500
