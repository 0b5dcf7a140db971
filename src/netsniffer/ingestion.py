"""Ingestion pipeline: normalize, persist, then broadcast."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from netsniffer.errors import EventValidationError, StorageError
from netsniffer.events import hydrate_record, normalize_event
from netsniffer.logging import get_logger
from netsniffer.metrics import MetricsRegistry
from netsniffer.models import EventRecord, IncomingEvent
from netsniffer.realtime import Broadcaster
from netsniffer.store import EventStore

logger = get_logger(__name__)


class IngestionService:
    """Accept raw producer events and turn them into stored records.

    Validation failures and storage failures propagate to the caller so the
    producer gets an explicit rejection. Once the row is committed the
    broadcast step is best-effort: anything it raises is logged and the
    assigned id is still returned.
    """

    def __init__(
        self,
        *,
        store: EventStore,
        broadcaster: Broadcaster,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        self.store = store
        self.broadcaster = broadcaster
        self.metrics = metrics or broadcaster.metrics

    def ingest(self, raw: IncomingEvent | Mapping[str, Any]) -> int:
        """Normalize, persist and publish one event; return its id."""
        try:
            event = normalize_event(raw)
        except EventValidationError as exc:
            self.metrics.ingest_failures_total.inc("validation")
            logger.info("event_rejected", error=str(exc))
            raise

        try:
            event_id = self.store.insert(event)
        except StorageError as exc:
            self.metrics.ingest_failures_total.inc("storage")
            logger.error("event_store_failed", phase=event.phase, error=str(exc))
            raise

        self.metrics.events_ingested_total.inc(event.phase)
        if event.truncated:
            self.metrics.events_truncated_total.inc()
        logger.info(
            "event_ingested",
            event_id=event_id,
            phase=event.phase,
            method=event.method,
            host=event.host,
            status=event.status,
            truncated=event.truncated,
        )

        self._publish(hydrate_record(event_id, event))
        return event_id

    def _publish(self, record: EventRecord) -> None:
        try:
            delivered = self.broadcaster.publish(record)
        except Exception as exc:
            # The event is already durable; a broadcast fault must not fail ingestion.
            logger.error("event_broadcast_failed", event_id=record.id, error=str(exc))
            return
        logger.debug("event_broadcast", event_id=record.id, observers=delivered)
