"""Pydantic models for netsniffer.

This module defines the data structures that flow through the pipeline:
- IncomingEvent: the raw payload a producer posts
- CanonicalEvent: the normalized, redacted, size-bounded row to persist
- EventRecord: a stored row with its JSON columns hydrated for readers
- EventFilters / EventPage: retrieval criteria and paginated results
"""

from __future__ import annotations

import math
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

Phase = Literal["request", "response", "error"]
PHASES: tuple[str, ...] = ("request", "response", "error")

STATUS_CATEGORIES: dict[str, tuple[int, int]] = {
    "2xx": (200, 300),
    "3xx": (300, 400),
    "4xx": (400, 500),
    "5xx": (500, 600),
}
ERRORS_CATEGORY = "errors"

TIME_RANGES_MS: dict[str, int] = {
    "15m": 15 * 60 * 1000,
    "1h": 60 * 60 * 1000,
    "24h": 24 * 60 * 60 * 1000,
}

# SQLite stores INTEGER columns as signed 64-bit values.
SQLITE_MIN_INTEGER = -(2**63)
SQLITE_MAX_INTEGER = 2**63 - 1

STORAGE_COLUMNS = (
    "req_headers_json",
    "res_headers_json",
    "request_body_json",
    "response_body_json",
)


class IncomingEvent(BaseModel):
    """Raw event reported by a producer.

    Only ``phase`` and ``url`` are mandatory. Wire names are camelCase
    (``durationMs``, ``reqHeaders``...); snake_case names are accepted too.
    Header and body fields are left untyped on purpose: malformed headers
    degrade to an empty mapping during normalization instead of rejecting
    the event.

    Example:
        ```python
        event = IncomingEvent.model_validate(
            {
                "phase": "response",
                "method": "get",
                "url": "https://api.example.com/v1/x?y=1",
                "status": 404,
                "reqHeaders": {"Authorization": "Bearer abc"},
            }
        )
        ```
    """

    model_config = ConfigDict(
        populate_by_name=True,
        extra="ignore",
        coerce_numbers_to_str=True,
    )

    ts: str | None = Field(default=None, description="ISO-8601 capture time")
    phase: Phase = Field(..., description="request, response or error")
    method: str | None = Field(default=None, description="HTTP verb")
    url: str = Field(..., description="Full URL as issued by the producer")
    status: int | None = Field(
        default=None, ge=0, le=SQLITE_MAX_INTEGER, description="HTTP status code"
    )
    duration_ms: int | None = Field(
        default=None,
        alias="durationMs",
        ge=0,
        le=SQLITE_MAX_INTEGER,
        description="Round-trip time in ms",
    )
    req_headers: Any = Field(default=None, alias="reqHeaders")
    res_headers: Any = Field(default=None, alias="resHeaders")
    request_body: Any = Field(default=None, alias="requestBody")
    response_body: Any = Field(default=None, alias="responseBody")
    error_message: str | None = Field(default=None, alias="errorMessage")
    service: str | None = Field(default=None, description="Producer service name")
    runtime: str | None = Field(default=None, description="Producer runtime")
    trace_id: str | None = Field(default=None, alias="traceId")
    request_id: str | None = Field(default=None, alias="requestId")

    @field_validator("duration_ms", mode="before")
    @classmethod
    def round_duration(cls, value: Any) -> Any:
        """Accept fractional millisecond timings from high-resolution clocks."""
        if isinstance(value, float) and math.isfinite(value):
            return round(value)
        return value


class CanonicalEvent(BaseModel):
    """Normalized event ready for insertion.

    Headers and bodies are held in their serialized JSON text form, exactly
    as they are stored.
    """

    ts: str
    ts_ms: int
    phase: Phase
    method: str | None = None
    url: str
    host: str | None = None
    path: str | None = None
    status: int | None = None
    duration_ms: int | None = None
    service: str | None = None
    runtime: str | None = None
    trace_id: str | None = None
    request_id: str | None = None
    req_headers_json: str = "{}"
    res_headers_json: str = "{}"
    request_body_json: str = "null"
    response_body_json: str = "null"
    error_message: str | None = None
    truncated: bool = False


class EventRecord(CanonicalEvent):
    """Persisted event with its JSON columns decoded for transport."""

    id: int
    req_headers: dict[str, Any] | None = None
    res_headers: dict[str, Any] | None = None
    request_body: Any = None
    response_body: Any = None

    def to_wire(self, *, include_storage_columns: bool = True) -> dict[str, Any]:
        """Return the JSON-ready form served to viewers.

        Broadcast payloads drop the raw ``*_json`` columns; the retrieval
        endpoints keep them alongside the decoded values.
        """
        exclude = None if include_storage_columns else set(STORAGE_COLUMNS)
        payload = self.model_dump(mode="json", exclude=exclude)
        ordered: dict[str, Any] = {"id": payload.pop("id")}
        ordered.update(payload)
        return ordered


class EventFilters(BaseModel):
    """Retrieval criteria.

    Every field is optional; empty strings are treated as absent. Values that
    are not recognized for ``phase``, ``status_category`` and ``time_range``
    impose no filtering.
    """

    method: str | None = None
    status: int | None = None
    phase: str | None = None
    host: str | None = None
    search: str | None = None
    status_category: str | None = None
    time_range: str | None = None

    @field_validator(
        "method", "phase", "host", "search", "status_category", "time_range", mode="before"
    )
    @classmethod
    def blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value


class EventPage(BaseModel):
    """One page of retrieval results."""

    events: list[EventRecord] = Field(default_factory=list)
    page: int
    page_size: int
    total: int
    total_pages: int

    def to_response(self) -> dict[str, Any]:
        """Render the page in the HTTP response shape."""
        return {
            "events": [event.to_wire() for event in self.events],
            "pagination": {
                "page": self.page,
                "limit": self.page_size,
                "total": self.total,
                "totalPages": self.total_pages,
            },
        }
