"""Access-token validation for the REST API and the live WebSocket."""

import jwt
import logging

from fastapi import HTTPException, Request
from pydantic import BaseModel

from config import settings

logger = logging.getLogger(__name__)


class AuthUser(BaseModel):
    """Identity carried by a verified access token."""
    id: str
    name: str = ""


def _decode_token(token: str) -> dict:
    """Validate and decode an HS256 access token issued by the auth service."""
    if not settings.jwt_access_secret:
        raise HTTPException(
            status_code=500,
            detail="JWT verification is not configured on the server.",
        )

    try:
        return jwt.decode(
            token,
            settings.jwt_access_secret,
            algorithms=[settings.jwt_algorithm],
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token has expired.")
    except jwt.PyJWTError as e:
        logger.warning("JWT validation failed: %s", e)
        raise HTTPException(status_code=401, detail="Invalid token.")


def _user_from_payload(payload: dict) -> AuthUser:
    user_id = payload.get("id") or payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Token missing user id.")
    # Older tokens carry the display name under different claims
    name = payload.get("name") or payload.get("userName") or payload.get("email") or ""
    return AuthUser(id=str(user_id), name=name)


def _extract_bearer_token(request: Request) -> str | None:
    """Extract the Bearer token from the Authorization header."""
    auth = request.headers.get("Authorization", "")
    if auth.startswith("Bearer "):
        return auth[7:]
    return None


async def get_current_user(request: Request) -> AuthUser:
    """FastAPI dependency: validate JWT and return the caller's identity."""
    token = _extract_bearer_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated.")
    return _user_from_payload(_decode_token(token))


def authenticate_socket(token: str | None) -> AuthUser | None:
    """Verify the token presented when a WebSocket connects. Returns None if rejected."""
    if not token:
        return None
    try:
        return _user_from_payload(_decode_token(token))
    except HTTPException as e:
        logger.info("Rejected socket token: %s", e.detail)
        return None


def require_internal_secret(request: Request) -> None:
    """FastAPI dependency for server-to-server calls from other backend services."""
    secret = settings.internal_api_secret
    if not secret:
        raise HTTPException(status_code=503, detail="Internal API is disabled.")
    token = request.headers.get("X-Internal-Secret") or _extract_bearer_token(request)
    if token != secret:
        raise HTTPException(status_code=401, detail="Invalid or missing internal secret")
