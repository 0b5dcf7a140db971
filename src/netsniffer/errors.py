"""Error taxonomy for the ingestion and retrieval pipeline."""

from __future__ import annotations

from typing import Any


class NetSnifferError(RuntimeError):
    """Base class for netsniffer failures."""


class EventValidationError(NetSnifferError):
    """Raw event is missing required fields or carries an invalid phase.

    Surfaced to the producer as a rejected request (HTTP 400). Never retried
    server-side.
    """

    def __init__(self, message: str, *, details: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.details = details or []


class StorageError(NetSnifferError):
    """The persistence engine failed to execute a read or write."""


class EventNotFoundError(NetSnifferError):
    """No event exists with the requested id."""

    def __init__(self, event_id: int) -> None:
        super().__init__(f"Event not found: {event_id}")
        self.event_id = event_id


class BroadcastError(NetSnifferError):
    """A single observer channel could not accept a message.

    Always handled inside the broadcaster; never reaches the ingestion caller.
    """
