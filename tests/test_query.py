"""Query service tests."""

from __future__ import annotations

import pytest

from conftest import make_event
from netsniffer.errors import EventNotFoundError
from netsniffer.models import EventFilters
from netsniffer.query import QueryService
from netsniffer.store import EventStore


@pytest.fixture()
def queries(store: EventStore) -> QueryService:
    return QueryService(store=store)


def test_list_reports_pagination_totals(queries: QueryService, store: EventStore) -> None:
    for index in range(7):
        store.insert(make_event(url=f"https://api.example.com/{index}"))

    page = queries.list(EventFilters(), page=2, page_size=3)
    assert page.total == 7
    assert page.total_pages == 3
    assert len(page.events) == 3

    beyond = queries.list(page=5, page_size=3)
    assert beyond.events == []
    assert beyond.total == 7


def test_list_empty_store(queries: QueryService) -> None:
    page = queries.list()
    assert page.total == 0
    assert page.total_pages == 0
    assert page.to_response() == {
        "events": [],
        "pagination": {"page": 1, "limit": 100, "total": 0, "totalPages": 0},
    }


def test_response_shape_includes_hydrated_and_raw_columns(
    queries: QueryService, store: EventStore
) -> None:
    event_id = store.insert(make_event(requestBody={"q": 1}))
    (event,) = queries.list().to_response()["events"]
    assert list(event)[0] == "id"
    assert event["id"] == event_id
    assert event["request_body"] == {"q": 1}
    assert event["request_body_json"] == '{"q":1}'


def test_get_and_hosts(queries: QueryService, store: EventStore) -> None:
    event_id = store.insert(make_event(url="https://b.example.com"))
    store.insert(make_event(url="https://a.example.com"))
    assert queries.get(event_id).host == "b.example.com"
    assert queries.list_hosts() == ["a.example.com", "b.example.com"]
    with pytest.raises(EventNotFoundError):
        queries.get(event_id + 100)


def test_clear(queries: QueryService, store: EventStore) -> None:
    store.insert(make_event())
    store.insert(make_event())
    assert queries.clear() == 2
    assert queries.list().total == 0
