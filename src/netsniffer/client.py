"""HTTP client for the netsniffer ingestion server."""

from __future__ import annotations

from collections.abc import Mapping
from types import TracebackType
from typing import Any, cast

import httpx

from netsniffer.config import get_base_url
from netsniffer.logging import get_logger
from netsniffer.models import IncomingEvent

logger = get_logger(__name__)

_FILTER_PARAMS = {
    "method": "method",
    "status": "status",
    "phase": "phase",
    "host": "host",
    "search": "search",
    "status_category": "statusCategory",
    "time_range": "timeRange",
}


class NetSnifferAPIError(RuntimeError):
    """Structured API error raised for non-2xx responses."""

    def __init__(
        self,
        *,
        method: str,
        path: str,
        status_code: int,
        payload: dict[str, Any] | list[Any] | str | None,
    ) -> None:
        self.method = method
        self.path = path
        self.status_code = status_code
        self.payload = payload
        message = f"{method} {path} failed with status {status_code}"
        if isinstance(payload, dict) and isinstance(payload.get("error"), str):
            message = f"{message}: {payload['error']}"
        elif isinstance(payload, str) and payload:
            message = f"{message}: {payload}"
        super().__init__(message)


def _event_payload(event: IncomingEvent | Mapping[str, Any]) -> dict[str, Any]:
    if isinstance(event, IncomingEvent):
        return event.model_dump(mode="json", by_alias=True, exclude_none=True)
    return dict(event)


class NetSnifferClient:
    """Async client for the netsniffer HTTP API."""

    def __init__(
        self,
        base_url: str | None = None,
        *,
        timeout: float = 10.0,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        self.base_url = (base_url or get_base_url()).rstrip("/")
        self._headers: dict[str, str] = dict(headers or {})
        self._client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    @staticmethod
    def _decode_payload(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: Any = None,
        params: Mapping[str, Any] | None = None,
    ) -> Any:
        response = await self._client.request(
            method=method,
            url=path,
            json=json_body,
            params=params,
            headers=self._headers or None,
        )
        payload = self._decode_payload(response)
        if response.status_code >= 400:
            raise NetSnifferAPIError(
                method=method,
                path=path,
                status_code=response.status_code,
                payload=payload,
            )
        return payload

    async def health(self) -> dict[str, Any]:
        """Fetch the liveness probe."""
        return cast(dict[str, Any], await self._request("GET", "/health"))

    async def post_event(self, event: IncomingEvent | Mapping[str, Any]) -> dict[str, Any]:
        """Submit one raw event; returns ``{"id": ..., "success": true}``."""
        return cast(
            dict[str, Any],
            await self._request("POST", "/events", json_body=_event_payload(event)),
        )

    async def list_events(
        self,
        *,
        page: int = 1,
        limit: int = 100,
        **filters: Any,
    ) -> dict[str, Any]:
        """Query stored events. Filter keywords use snake_case names."""
        params: dict[str, Any] = {"page": page, "limit": limit}
        for name, value in filters.items():
            if name not in _FILTER_PARAMS:
                raise ValueError(f"Unknown event filter: {name}")
            if value is not None:
                params[_FILTER_PARAMS[name]] = value
        return cast(dict[str, Any], await self._request("GET", "/events", params=params))

    async def get_event(self, event_id: int) -> dict[str, Any]:
        """Fetch one event by id."""
        return cast(dict[str, Any], await self._request("GET", f"/events/{event_id}"))

    async def list_hosts(self) -> list[str]:
        """Return the distinct hosts recorded so far."""
        return cast(list[str], await self._request("GET", "/hosts"))

    async def clear(self) -> dict[str, Any]:
        """Delete every stored event."""
        return cast(dict[str, Any], await self._request("POST", "/clear"))

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> NetSnifferClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()


class EventReporter:
    """Fire-and-forget producer helper.

    Reporting must never interfere with the instrumented application: every
    transport or API failure is logged at debug level and swallowed. A
    reporter built without a URL is disabled and does nothing.
    """

    def __init__(
        self,
        base_url: str | None = None,
        *,
        service: str | None = None,
        runtime: str | None = None,
        timeout: float = 2.0,
    ) -> None:
        self.service = service
        self.runtime = runtime
        self._enabled = bool(base_url)
        self._client = NetSnifferClient(base_url, timeout=timeout) if base_url else None

    @property
    def enabled(self) -> bool:
        """Return True if a target URL is configured."""
        return self._enabled

    async def report(self, event: IncomingEvent | Mapping[str, Any]) -> int | None:
        """Send one event; returns its id, or None if it could not be delivered."""
        if self._client is None:
            return None
        payload = _event_payload(event)
        if self.service:
            payload.setdefault("service", self.service)
        if self.runtime:
            payload.setdefault("runtime", self.runtime)
        try:
            result = await self._client.post_event(payload)
        except (httpx.HTTPError, NetSnifferAPIError) as exc:
            logger.debug("event_report_failed", url=payload.get("url"), error=str(exc))
            return None
        event_id = result.get("id") if isinstance(result, dict) else None
        return int(event_id) if isinstance(event_id, int) else None

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
