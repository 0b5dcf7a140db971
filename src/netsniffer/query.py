"""Read side: filtered, paginated retrieval over stored events."""

from __future__ import annotations

import math

from netsniffer.logging import get_logger
from netsniffer.models import EventFilters, EventPage, EventRecord
from netsniffer.store import EventStore

logger = get_logger(__name__)


class QueryService:
    """Translate retrieval criteria into store queries.

    ``page`` is 1-based and is not re-clamped here; the HTTP layer validates
    it before calling in.
    """

    def __init__(self, *, store: EventStore) -> None:
        self.store = store

    def list(
        self,
        filters: EventFilters | None = None,
        page: int = 1,
        page_size: int = 100,
        *,
        now_ms: int | None = None,
    ) -> EventPage:
        """Return one page of events (newest first) with pagination totals."""
        records, total = self.store.query(filters, page, page_size, now_ms=now_ms)
        return EventPage(
            events=records,
            page=page,
            page_size=page_size,
            total=total,
            total_pages=math.ceil(total / page_size) if page_size > 0 else 0,
        )

    def get(self, event_id: int) -> EventRecord:
        """Fetch one event; raises EventNotFoundError when absent."""
        return self.store.get(event_id)

    def list_hosts(self) -> list[str]:
        """Return the distinct hosts seen so far, sorted."""
        return self.store.list_hosts()

    def clear(self) -> int:
        """Delete every stored event. Confirmation is the caller's concern."""
        deleted = self.store.clear_all()
        logger.warning("events_cleared", deleted=deleted)
        return deleted
