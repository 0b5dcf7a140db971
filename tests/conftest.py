"""pytest fixtures for netsniffer."""

from __future__ import annotations

import os
import sys
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

ROOT_DIR = Path(__file__).resolve().parents[1]
SRC_DIR = ROOT_DIR / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

# The module-level app in netsniffer.main must not create a database file.
os.environ.setdefault("NETSNIFFER_DB_PATH", ":memory:")

from netsniffer.config import Settings
from netsniffer.events import normalize_event
from netsniffer.main import create_app
from netsniffer.metrics import MetricsRegistry
from netsniffer.models import CanonicalEvent
from netsniffer.realtime import Broadcaster
from netsniffer.store import EventStore


def make_event(**overrides: Any) -> CanonicalEvent:
    """Build a canonical event from a raw payload with sensible defaults."""
    raw: dict[str, Any] = {
        "ts": "2026-01-01T00:00:00.000Z",
        "phase": "response",
        "method": "GET",
        "url": "https://api.example.com/v1/items",
        "status": 200,
    }
    raw.update(overrides)
    return normalize_event(raw)


@pytest.fixture()
def store(tmp_path: Path) -> EventStore:
    return EventStore(str(tmp_path / "events.db"))


@pytest.fixture()
def metrics() -> MetricsRegistry:
    return MetricsRegistry()


@pytest.fixture()
def broadcaster(metrics: MetricsRegistry) -> Broadcaster:
    return Broadcaster(max_queue_size=100, metrics=metrics)


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        db_path=str(tmp_path / "events.db"),
        log_level="WARNING",
        host="127.0.0.1",
        port=9432,
        max_request_bytes=1024 * 1024,
        observer_queue_size=100,
    )


@pytest.fixture()
def app(store: EventStore, broadcaster: Broadcaster, settings: Settings) -> FastAPI:
    return create_app(
        store=store,
        broadcaster=broadcaster,
        settings=settings,
        keepalive_seconds=0.05,
    )


@pytest.fixture()
def client(app: FastAPI) -> TestClient:
    return TestClient(app)


@pytest.fixture()
async def async_client(app: FastAPI) -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client
