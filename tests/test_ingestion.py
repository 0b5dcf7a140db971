"""Ingestion pipeline tests."""

from __future__ import annotations

import pytest

from netsniffer.errors import EventValidationError, StorageError
from netsniffer.ingestion import IngestionService
from netsniffer.metrics import MetricsRegistry
from netsniffer.models import EventRecord
from netsniffer.realtime import NEW_EVENT_TYPE, Broadcaster
from netsniffer.store import EventStore

SCENARIO_EVENT = {
    "phase": "response",
    "method": "get",
    "url": "https://api.example.com/v1/x?y=1",
    "status": 404,
    "reqHeaders": {"Authorization": "Bearer abc"},
}


class ExplodingBroadcaster(Broadcaster):
    def publish(self, record: EventRecord) -> int:
        raise RuntimeError("observer registry unavailable")


@pytest.fixture()
def service(store: EventStore, broadcaster: Broadcaster, metrics: MetricsRegistry):
    return IngestionService(store=store, broadcaster=broadcaster, metrics=metrics)


def _new_events(channel) -> list[dict]:
    return [m for m in channel.drain() if m["type"] == NEW_EVENT_TYPE]


def test_ingest_stores_normalized_record(service: IngestionService, store: EventStore) -> None:
    event_id = service.ingest(SCENARIO_EVENT)
    record = store.get(event_id)
    assert record.method == "GET"
    assert record.host == "api.example.com"
    assert record.path == "/v1/x?y=1"
    assert record.req_headers == {"Authorization": "[redacted]"}


def test_ingest_unparseable_url_still_succeeds(
    service: IngestionService, store: EventStore
) -> None:
    event_id = service.ingest({"phase": "error", "url": "not a url"})
    record = store.get(event_id)
    assert record.host is None
    assert record.path == "not a url"


def test_ingest_returns_increasing_ids(service: IngestionService) -> None:
    ids = [service.ingest({"phase": "request", "url": f"https://x.io/{i}"}) for i in range(5)]
    assert ids == sorted(set(ids))


def test_ingest_records_metrics(service: IngestionService, metrics: MetricsRegistry) -> None:
    service.ingest(SCENARIO_EVENT)
    service.ingest({"phase": "response", "url": "https://x.io", "responseBody": "b" * 300_000})
    assert metrics.events_ingested_total.get("response") == 2
    assert metrics.events_truncated_total.get() == 1


def test_validation_failure_propagates_and_stores_nothing(
    service: IngestionService, store: EventStore, broadcaster: Broadcaster, metrics
) -> None:
    channel = broadcaster.subscribe()
    with pytest.raises(EventValidationError):
        service.ingest({"url": "https://x.io"})
    assert store.count() == 0
    assert _new_events(channel) == []
    assert metrics.ingest_failures_total.get("validation") == 1


def test_storage_failure_propagates_without_broadcast(
    service: IngestionService, store: EventStore, broadcaster: Broadcaster, metrics
) -> None:
    channel = broadcaster.subscribe()
    store.close()
    with pytest.raises(StorageError):
        service.ingest(SCENARIO_EVENT)
    assert _new_events(channel) == []
    assert metrics.ingest_failures_total.get("storage") == 1


def test_broadcast_failure_does_not_fail_ingestion(store: EventStore) -> None:
    service = IngestionService(store=store, broadcaster=ExplodingBroadcaster())
    event_id = service.ingest(SCENARIO_EVENT)
    assert store.get(event_id).status == 404


def test_two_observers_then_one_disconnects(
    service: IngestionService, broadcaster: Broadcaster
) -> None:
    staying = broadcaster.subscribe()
    leaving = broadcaster.subscribe()

    first_id = service.ingest(SCENARIO_EVENT)
    for channel in (staying, leaving):
        messages = _new_events(channel)
        assert len(messages) == 1
        assert messages[0]["event"]["id"] == first_id

    broadcaster.unsubscribe(leaving)
    assert leaving not in broadcaster

    second_id = service.ingest({"phase": "request", "url": "https://api.example.com/v2"})
    staying_messages = _new_events(staying)
    assert [m["event"]["id"] for m in staying_messages] == [second_id]
    assert _new_events(leaving) == []
    assert len(broadcaster) == 1
