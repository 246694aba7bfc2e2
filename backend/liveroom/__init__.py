"""Live session rooms: presence, media state, screen share, chat, attendance and notifications."""

from .coordinator import LiveCoordinator
from .router import router as live_router

__all__ = ["LiveCoordinator", "live_router"]
