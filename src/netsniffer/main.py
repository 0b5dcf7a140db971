"""FastAPI entrypoint for netsniffer.

This module provides the HTTP surface of the local traffic recorder.
Producers post request/response/error events; viewers query them and
subscribe to a live stream.

Key endpoints:
    - POST /events: Ingest one raw event
    - GET /events: Filtered, paginated retrieval (newest first)
    - GET /events/stream: Server-Sent Events feed of newly stored events
    - GET /events/{id}: Fetch a single event
    - GET /hosts: Distinct hosts seen so far
    - POST /clear: Delete every stored event
    - GET /health: Liveness probe
    - GET /metrics: Prometheus metrics endpoint
"""

from __future__ import annotations

import json
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from starlette.background import BackgroundTask

from netsniffer import __version__
from netsniffer.config import Settings
from netsniffer.errors import EventNotFoundError, EventValidationError, StorageError
from netsniffer.ingestion import IngestionService
from netsniffer.logging import configure_logging, correlation_scope, get_logger
from netsniffer.metrics import MetricsRegistry
from netsniffer.models import SQLITE_MAX_INTEGER, SQLITE_MIN_INTEGER, EventFilters
from netsniffer.query import QueryService
from netsniffer.realtime import Broadcaster
from netsniffer.store import EventStore

logger = get_logger(__name__)

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _parse_optional_int(value: str | None) -> int | None:
    """Parse an integer that fits an SQLite column; anything else is None."""
    if value is None:
        return None
    try:
        parsed = int(value.strip())
    except ValueError:
        return None
    if not SQLITE_MIN_INTEGER <= parsed <= SQLITE_MAX_INTEGER:
        return None
    return parsed


def create_app(
    *,
    store: EventStore | None = None,
    broadcaster: Broadcaster | None = None,
    settings: Settings | None = None,
    keepalive_seconds: float = 15.0,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("server_started", db_path=app.state.store.db_path)
        yield
        app.state.broadcaster.close()
        app.state.store.close()
        logger.info("server_stopped")

    app = FastAPI(
        title="netsniffer",
        version=__version__,
        description="Local HTTP traffic recorder: ingestion, retrieval and live streaming",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    metrics = broadcaster.metrics if broadcaster is not None else MetricsRegistry()
    store = store or EventStore(settings.db_path)
    broadcaster = broadcaster or Broadcaster(
        max_queue_size=settings.observer_queue_size, metrics=metrics
    )
    ingestion = IngestionService(store=store, broadcaster=broadcaster, metrics=metrics)
    queries = QueryService(store=store)

    # Store components in app state
    app.state.settings = settings
    app.state.store = store
    app.state.broadcaster = broadcaster
    app.state.metrics = metrics
    app.state.ingestion = ingestion
    app.state.queries = queries

    @app.middleware("http")
    async def request_size_middleware(
        request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        """Reject requests that exceed the maximum allowed size."""
        content_length = _parse_optional_int(request.headers.get("content-length"))
        if content_length is not None and content_length > settings.max_request_bytes:
            return JSONResponse({"error": "Request body too large"}, status_code=413)
        return await call_next(request)

    @app.middleware("http")
    async def timing_middleware(
        request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        """Record handling latency per route template."""
        start = time.perf_counter()
        response = await call_next(request)
        route = request.scope.get("route")
        endpoint = getattr(route, "path", "unmatched")
        metrics.request_duration_seconds.observe(time.perf_counter() - start, endpoint)
        return response

    @app.middleware("http")
    async def correlation_middleware(
        request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        """Add correlation ID to requests for log correlation."""
        correlation_id = request.headers.get("X-Correlation-ID") or str(uuid.uuid4())
        with correlation_scope(correlation_id):
            response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        return response

    @app.exception_handler(EventValidationError)
    async def event_validation_handler(
        request: Request, exc: EventValidationError
    ) -> JSONResponse:
        detail = json.loads(json.dumps(exc.details, default=str))
        payload: dict[str, Any] = {"error": str(exc)}
        if detail:
            payload["detail"] = detail
        return JSONResponse(payload, status_code=400)

    @app.exception_handler(EventNotFoundError)
    async def not_found_handler(request: Request, exc: EventNotFoundError) -> JSONResponse:
        return JSONResponse({"error": "Event not found"}, status_code=404)

    @app.exception_handler(StorageError)
    async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
        logger.error("storage_error", path=request.url.path, error=str(exc))
        return JSONResponse({"error": str(exc)}, status_code=500)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Return query/path validation errors with actionable guidance."""
        detail = json.loads(json.dumps(exc.errors(), default=str))
        return JSONResponse(
            {
                "error": "Invalid request",
                "hint": "page must be >= 1 and limit between 1 and 1000.",
                "detail": detail,
            },
            status_code=422,
        )

    @app.get("/health")
    async def health() -> JSONResponse:
        """Liveness probe."""
        return JSONResponse({"ok": True, "version": app.version})

    @app.get("/metrics")
    async def metrics_endpoint() -> PlainTextResponse:
        """Expose Prometheus metrics."""
        return PlainTextResponse(
            metrics.collect_all(),
            media_type="text/plain; version=0.0.4; charset=utf-8",
        )

    @app.post("/events")
    async def ingest_event(request: Request) -> JSONResponse:
        """Normalize, store and broadcast one producer event."""
        try:
            payload = await request.json()
        except ValueError:
            return JSONResponse({"error": "Request body must be valid JSON"}, status_code=400)
        event_id = app.state.ingestion.ingest(payload)
        return JSONResponse({"id": event_id, "success": True})

    @app.get("/events")
    async def list_events(
        page: int = Query(1, ge=1),
        limit: int = Query(100, ge=1, le=1000),
        method: str | None = None,
        status: str | None = None,
        phase: str | None = None,
        host: str | None = None,
        search: str | None = None,
        status_category: str | None = Query(None, alias="statusCategory"),
        time_range: str | None = Query(None, alias="timeRange"),
    ) -> JSONResponse:
        """List stored events, newest first."""
        filters = EventFilters(
            method=method,
            status=_parse_optional_int(status),
            phase=phase,
            host=host,
            search=search,
            status_category=status_category,
            time_range=time_range,
        )
        result = app.state.queries.list(filters, page, limit)
        return JSONResponse(result.to_response())

    @app.get("/events/stream")
    async def stream_events(request: Request) -> StreamingResponse:
        """Server-Sent Events feed; the first frame is a connected acknowledgement."""
        channel = app.state.broadcaster.subscribe()
        return StreamingResponse(
            app.state.broadcaster.stream(
                channel,
                request.is_disconnected,
                keepalive_seconds=keepalive_seconds,
            ),
            media_type="text/event-stream",
            headers=STREAM_HEADERS,
            background=BackgroundTask(app.state.broadcaster.unsubscribe, channel),
        )

    @app.get("/events/{event_id}")
    async def get_event(event_id: str) -> JSONResponse:
        """Fetch a single event by id."""
        parsed_id = _parse_optional_int(event_id)
        if parsed_id is None:
            return JSONResponse({"error": "Event not found"}, status_code=404)
        record = app.state.queries.get(parsed_id)
        return JSONResponse(record.to_wire())

    @app.get("/hosts")
    async def list_hosts() -> JSONResponse:
        """Distinct hosts, sorted ascending."""
        return JSONResponse(app.state.queries.list_hosts())

    @app.post("/clear")
    async def clear_events() -> JSONResponse:
        """Delete every stored event (irreversible)."""
        deleted = app.state.queries.clear()
        return JSONResponse({"success": True, "deleted": deleted})

    return app


app = create_app()
