"""FastAPI routes for live rooms: the WebSocket endpoint plus chat and notification REST."""

import asyncio
import contextlib
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, WebSocket, WebSocketDisconnect
from pydantic import Field, ValidationError

from auth import AuthUser, authenticate_socket, get_current_user, require_internal_secret
from config import limiter, settings

from .coordinator import LiveCoordinator
from .errors import EventValidationError, StoreError
from .models import InboundFrame, Notification, WireModel

logger = logging.getLogger(__name__)

router = APIRouter(tags=["live"])

# Close code sent when the socket token is missing or invalid
WS_UNAUTHORIZED = 4401


def get_coordinator(request: Request) -> LiveCoordinator:
    return request.app.state.coordinator


class ChatPostRequest(WireModel):
    message: str = Field(min_length=1)
    session_id: str | None = None
    room_name: str | None = None


# ---------------------------------------------------------------------------
# WebSocket
# ---------------------------------------------------------------------------


async def _pump(ws: WebSocket, queue: asyncio.Queue) -> None:
    """Forward queued frames to the socket until it goes away."""
    while True:
        frame = await queue.get()
        try:
            await ws.send_json(frame)
        except (WebSocketDisconnect, RuntimeError):
            return


@router.websocket("/ws")
async def live_socket(ws: WebSocket, token: str | None = None):
    coordinator: LiveCoordinator = ws.app.state.coordinator
    user = authenticate_socket(token)
    if user is None:
        await ws.close(code=WS_UNAUTHORIZED)
        return

    await ws.accept()
    connection_id, queue = coordinator.connect(user)
    sender = asyncio.create_task(_pump(ws, queue))
    logger.info("Socket %s connected for user %s", connection_id, user.id)

    try:
        while True:
            message = await ws.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            # text frames normally; binary frames must carry the same JSON
            raw = message.get("text") or message.get("bytes")
            frame = None
            if raw is not None:
                try:
                    frame = InboundFrame.model_validate_json(raw)
                except ValidationError as e:
                    logger.debug("Bad frame from %s: %s", connection_id, e)
            if frame is None:
                await coordinator.hub.send(connection_id, "error", {"message": "Malformed frame"})
                continue

            ack = await coordinator.dispatch(connection_id, frame.event, frame.data)
            if frame.ack_id is not None:
                await coordinator.hub.send(connection_id, "ack", ack, ack_id=frame.ack_id)
            elif "error" in ack:
                await coordinator.hub.send(
                    connection_id, "error", {"event": frame.event, "message": ack["error"]}
                )
    except WebSocketDisconnect:
        pass
    finally:
        await coordinator.disconnect(connection_id)
        sender.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sender
        logger.info("Socket %s disconnected", connection_id)


# ---------------------------------------------------------------------------
# Chat history (REST)
# ---------------------------------------------------------------------------


@router.get("/api/chatrooms/{room_id}/messages")
async def list_messages(
    room_id: str,
    session_id: str | None = None,
    user: AuthUser = Depends(get_current_user),
    coordinator: LiveCoordinator = Depends(get_coordinator),
):
    """All messages of a room (or room session), oldest first."""
    try:
        messages = await coordinator.chat.fetch_history(room_id, session_id)
    except StoreError as e:
        logger.error("Error fetching chat history for %s/%s: %s", room_id, session_id, e)
        raise HTTPException(status_code=502, detail="Chat history unavailable")
    return {"messages": [m.to_wire() for m in messages]}


@router.post("/api/chatrooms/{room_id}/messages", status_code=201)
@limiter.limit(settings.chat_post_rate_limit)
async def post_message(
    request: Request,
    room_id: str,
    body: ChatPostRequest,
    user: AuthUser = Depends(get_current_user),
    coordinator: LiveCoordinator = Depends(get_coordinator),
):
    try:
        message = await coordinator.chat.send_message(
            room_id,
            body.session_id,
            user_id=user.id,
            user_name=user.name,
            text=body.message,
            room_name=body.room_name,
        )
    except EventValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StoreError as e:
        logger.error("Error saving chat message for %s: %s", room_id, e)
        raise HTTPException(status_code=502, detail="Failed to send message")
    return {"message": message.to_wire()}


# ---------------------------------------------------------------------------
# Notifications (server-to-server)
# ---------------------------------------------------------------------------


@router.post(
    "/api/notifications/users/{user_id}",
    dependencies=[Depends(require_internal_secret)],
)
async def notify_user(
    user_id: str,
    notification: Notification,
    coordinator: LiveCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    delivered = await coordinator.notifications.send_to_user(user_id, notification)
    return {"delivered": int(delivered)}


@router.post(
    "/api/notifications/rooms/{room_id}",
    dependencies=[Depends(require_internal_secret)],
)
async def notify_room(
    room_id: str,
    notification: Notification,
    coordinator: LiveCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    delivered = await coordinator.notifications.send_to_room_participants(room_id, notification)
    return {"delivered": delivered}


# ---------------------------------------------------------------------------
# Introspection
# ---------------------------------------------------------------------------


@router.get("/api/live/rooms")
async def list_live_rooms(coordinator: LiveCoordinator = Depends(get_coordinator)):
    return {"rooms": coordinator.live_rooms()}
