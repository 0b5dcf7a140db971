"""Event normalization: raw producer payloads to canonical records."""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import urlsplit

from pydantic import ValidationError

from netsniffer.errors import EventValidationError
from netsniffer.models import CanonicalEvent, EventRecord, IncomingEvent
from netsniffer.redaction import redact_headers

MAX_BODY_SIZE = 200 * 1024
TRUNCATION_MARKER = '..."[TRUNCATED]'

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)
_DEFAULT_PORTS = {"http": 80, "https": 443, "ws": 80, "wss": 443}


def format_timestamp(moment: datetime) -> str:
    """Render an instant as ISO-8601 UTC with millisecond precision."""
    utc = moment.astimezone(UTC)
    return utc.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are read as UTC."""
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def to_epoch_ms(moment: datetime) -> int:
    """Return epoch milliseconds for an aware datetime."""
    return (moment - _EPOCH) // timedelta(milliseconds=1)


def split_url(url: str) -> tuple[str | None, str]:
    """Decompose a URL into (host, path+query).

    Only absolute URLs (scheme and authority) count as parseable. Anything
    else yields ``(None, url)`` so the raw value is still searchable.
    """
    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError:
        return None, url
    if not parts.scheme or not parts.netloc:
        return None, url

    host = parts.netloc.rpartition("@")[2].lower()
    if port is not None and _DEFAULT_PORTS.get(parts.scheme.lower()) == port:
        host = host.rsplit(":", 1)[0]
    path = parts.path or "/"
    if parts.query:
        path = f"{path}?{parts.query}"
    return host, path


def serialize_body(value: Any, max_size: int = MAX_BODY_SIZE) -> tuple[str, bool]:
    """Serialize a body to JSON text, truncating past ``max_size`` characters."""
    if value is None:
        return "null", False

    text = json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=str)
    if len(text) <= max_size:
        return text, False
    return text[: max_size - 50] + TRUNCATION_MARKER, True


def _blank_to_none(value: str | None) -> str | None:
    return value if value else None


def _coerce_incoming(raw: IncomingEvent | Mapping[str, Any]) -> IncomingEvent:
    if isinstance(raw, IncomingEvent):
        return raw
    if not isinstance(raw, Mapping):
        raise EventValidationError("Event payload must be a JSON object")
    try:
        return IncomingEvent.model_validate(dict(raw))
    except ValidationError as exc:
        details = exc.errors(include_url=False, include_input=False)
        summary = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in details
        )
        raise EventValidationError(
            f"Invalid event: {summary}", details=details
        ) from exc


def normalize_event(
    raw: IncomingEvent | Mapping[str, Any],
    *,
    now: datetime | None = None,
) -> CanonicalEvent:
    """Transform a producer payload into a canonical event.

    Malformed URLs, missing optional fields and oversized bodies degrade
    gracefully. Only a missing ``phase``/``url``, an unknown phase or an
    unparseable ``ts`` raise :class:`EventValidationError`.
    """
    event = _coerce_incoming(raw)

    if event.ts:
        try:
            moment = parse_timestamp(event.ts)
        except ValueError as exc:
            raise EventValidationError(f"Invalid event: ts: {event.ts!r} is not ISO-8601") from exc
        ts = event.ts
    else:
        moment = now or datetime.now(UTC)
        ts = format_timestamp(moment)

    host, path = split_url(event.url)
    request_body_json, request_truncated = serialize_body(event.request_body)
    response_body_json, response_truncated = serialize_body(event.response_body)

    return CanonicalEvent(
        ts=ts,
        ts_ms=to_epoch_ms(moment),
        phase=event.phase,
        method=event.method.upper() if event.method else None,
        url=event.url,
        host=host,
        path=path,
        status=event.status,
        duration_ms=event.duration_ms,
        service=_blank_to_none(event.service),
        runtime=_blank_to_none(event.runtime),
        trace_id=_blank_to_none(event.trace_id),
        request_id=_blank_to_none(event.request_id),
        req_headers_json=json.dumps(redact_headers(event.req_headers), default=str),
        res_headers_json=json.dumps(redact_headers(event.res_headers), default=str),
        request_body_json=request_body_json,
        response_body_json=response_body_json,
        error_message=_blank_to_none(event.error_message),
        truncated=request_truncated or response_truncated,
    )


def _decode_json(text: str | None) -> Any:
    if text is None:
        return None
    try:
        return json.loads(text)
    except ValueError:
        # Truncated bodies are no longer valid JSON; serve the stored text.
        return text


def _decode_headers(text: str | None) -> dict[str, Any] | None:
    decoded = _decode_json(text)
    return decoded if isinstance(decoded, dict) else None


def hydrate_record(event_id: int, event: CanonicalEvent) -> EventRecord:
    """Attach an id to a canonical event and decode its JSON columns."""
    return EventRecord(
        id=event_id,
        **event.model_dump(),
        req_headers=_decode_headers(event.req_headers_json),
        res_headers=_decode_headers(event.res_headers_json),
        request_body=_decode_json(event.request_body_json),
        response_body=_decode_json(event.response_body_json),
    )


def record_from_row(row: sqlite3.Row | Mapping[str, Any]) -> EventRecord:
    """Build a hydrated record from a stored ``events`` row."""
    event = CanonicalEvent(
        ts=row["ts"],
        ts_ms=int(row["ts_ms"]),
        phase=row["phase"],
        method=row["method"],
        url=row["url"],
        host=row["host"],
        path=row["path"],
        status=row["status"],
        duration_ms=row["duration_ms"],
        service=row["service"],
        runtime=row["runtime"],
        trace_id=row["trace_id"],
        request_id=row["request_id"],
        req_headers_json=row["req_headers_json"] or "{}",
        res_headers_json=row["res_headers_json"] or "{}",
        request_body_json=row["request_body_json"] or "null",
        response_body_json=row["response_body_json"] or "null",
        error_message=row["error_message"],
        truncated=bool(row["truncated"]),
    )
    return hydrate_record(int(row["id"]), event)
