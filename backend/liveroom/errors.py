"""Exceptions raised inside the live room coordinator."""


class LiveRoomError(Exception):
    """Base class for coordinator errors."""


class EventValidationError(LiveRoomError):
    """An inbound event was rejected before any state was touched.

    The message is returned verbatim to the sender in the ack.
    """


class StoreError(LiveRoomError):
    """The durable store failed to read or write."""


class RecordNotFound(StoreError):
    """The durable record an operation expects (session, room) is absent."""
