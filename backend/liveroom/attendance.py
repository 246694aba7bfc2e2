"""Durable attendance: the set of users recorded against a session."""

import logging

from .errors import RecordNotFound, StoreError
from .models import Attendee
from .store import Store

logger = logging.getLogger(__name__)


def attendance_channel(session_id: str) -> str:
    return f"attendance:{session_id}"


class AttendanceTracker:
    """Writes the attendance-of-record.

    Independent of the live roster: failures are logged and reported as
    ``False``, never raised, so the live path keeps going.
    """

    def __init__(self, store: Store) -> None:
        self._store = store

    async def record_join(self, session_id: str, attendee: Attendee) -> bool:
        try:
            await self._store.upsert_attendee(session_id, attendee)
        except RecordNotFound:
            logger.warning(
                "No session %s to record attendee %s against", session_id, attendee.user_id
            )
            return False
        except StoreError as e:
            logger.error("Failed to add attendee %s to session %s: %s", attendee.user_id, session_id, e)
            return False
        return True

    async def record_leave(self, session_id: str, user_id: str) -> bool:
        try:
            await self._store.remove_attendee(session_id, user_id)
        except RecordNotFound:
            logger.warning("No session %s to remove attendee %s from", session_id, user_id)
            return False
        except StoreError as e:
            logger.error("Failed to remove attendee %s from session %s: %s", user_id, session_id, e)
            return False
        return True

    async def attendees(self, session_id: str) -> list[Attendee]:
        try:
            return await self._store.list_attendees(session_id)
        except StoreError as e:
            logger.warning("Could not load attendees for session %s: %s", session_id, e)
            return []
