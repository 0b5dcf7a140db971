"""netsniffer CLI entrypoint.

Usage:
    python -m netsniffer                  # Start the ingestion server
    python -m netsniffer --emit-sample    # Post sample traffic to a running server
    python -m netsniffer --self-check     # Probe a running server
    python -m netsniffer --version        # Print version
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
from rich import box
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from netsniffer.client import NetSnifferAPIError, NetSnifferClient
from netsniffer.config import get_base_url, get_host, get_port
from netsniffer.events import format_timestamp


def build_sample_events(now: datetime | None = None) -> list[dict[str, Any]]:
    """Return a small realistic session: two exchanges, a 404 and a timeout."""
    start = now or datetime.now(UTC)

    def at(offset_ms: int) -> str:
        return format_timestamp(start + timedelta(milliseconds=offset_ms))

    common = {"service": "sample", "runtime": "server"}
    return [
        {
            **common,
            "ts": at(0),
            "phase": "request",
            "method": "GET",
            "url": "https://api.example.com/users?page=1&limit=10",
            "reqHeaders": {
                "Content-Type": "application/json",
                "Authorization": "Bearer secret-token-12345",
                "User-Agent": "netsniffer-sample/1.0",
            },
            "traceId": "trace-001",
            "requestId": "req-001",
        },
        {
            **common,
            "ts": at(100),
            "phase": "response",
            "method": "GET",
            "url": "https://api.example.com/users?page=1&limit=10",
            "status": 200,
            "durationMs": 145,
            "reqHeaders": {"Content-Type": "application/json", "Authorization": "[redacted]"},
            "resHeaders": {"content-type": "application/json", "x-ratelimit-remaining": "99"},
            "responseBody": {
                "users": [
                    {"id": 1, "name": "John Doe"},
                    {"id": 2, "name": "Jane Smith"},
                ],
                "pagination": {"page": 1, "limit": 10, "total": 2},
            },
            "traceId": "trace-001",
            "requestId": "req-001",
        },
        {
            **common,
            "ts": at(200),
            "phase": "request",
            "method": "POST",
            "url": "https://api.example.com/users",
            "reqHeaders": {"Content-Type": "application/json", "X-API-Key": "api-key-123"},
            "requestBody": {"name": "New User", "email": "newuser@example.com"},
            "traceId": "trace-002",
            "requestId": "req-002",
        },
        {
            **common,
            "ts": at(350),
            "phase": "response",
            "method": "POST",
            "url": "https://api.example.com/users",
            "status": 201,
            "durationMs": 234,
            "resHeaders": {"content-type": "application/json", "location": "/users/123"},
            "responseBody": {"id": 123, "name": "New User"},
            "traceId": "trace-002",
            "requestId": "req-002",
        },
        {
            **common,
            "ts": at(550),
            "phase": "error",
            "method": "GET",
            "url": "https://api.example.com/users/999",
            "status": 404,
            "durationMs": 150,
            "responseBody": {"error": "User not found", "code": "USER_NOT_FOUND"},
            "errorMessage": "User with id 999 not found",
            "traceId": "trace-003",
            "requestId": "req-003",
        },
        {
            **common,
            "ts": at(600),
            "phase": "error",
            "method": "POST",
            "url": "https://api.example.com/orders",
            "reqHeaders": {"Content-Type": "application/json", "Cookie": "session=abc123"},
            "requestBody": {"items": [{"productId": 1, "quantity": 2}]},
            "errorMessage": "Request timeout after 5000ms",
            "traceId": "trace-004",
            "requestId": "req-004",
        },
    ]


async def emit_samples(base_url: str) -> int:
    """Post the sample events; returns a process exit code."""
    console = Console(soft_wrap=True)
    error_console = Console(stderr=True, soft_wrap=True)
    summary = Table(box=box.ASCII, show_header=True, header_style="bold")
    for column in ("Id", "Phase", "Method", "Status", "URL"):
        summary.add_column(column)

    async with NetSnifferClient(base_url) as client:
        try:
            await client.health()
        except (httpx.HTTPError, NetSnifferAPIError) as exc:
            error_console.print(f"Server health check failed: {escape(str(exc))}")
            error_console.print(f"Make sure netsniffer is running at {escape(base_url)}")
            return 1
        for event in build_sample_events():
            try:
                result = await client.post_event(event)
            except (httpx.HTTPError, NetSnifferAPIError) as exc:
                error_console.print(f"Failed to post event: {escape(str(exc))}")
                return 1
            console.print(
                f"Posted #{result['id']}: {event['phase']} {event['method']} {event['url']}",
                markup=False,
            )
            summary.add_row(
                str(result["id"]),
                event["phase"],
                event["method"],
                str(event.get("status", "-")),
                event["url"],
            )

    console.print("")
    console.print(summary)
    return 0


def run_self_check(base_url: str, output_json: bool = False) -> int:
    """Probe a running server and report reachability."""
    status = "fail"
    detail = f"Could not reach {base_url}/health"
    try:
        with httpx.Client(timeout=2.0) as client:
            response = client.get(f"{base_url}/health")
        if response.status_code == 200 and response.json().get("ok") is True:
            status = "pass"
            detail = f"version={response.json().get('version')}"
        else:
            detail = f"HTTP {response.status_code}"
    except (httpx.HTTPError, ValueError) as exc:
        detail = str(exc)

    payload = {"status": status, "base_url": base_url, "detail": detail}
    if output_json:
        print(json.dumps(payload, indent=2))
    else:
        print(f"server_health: {status} | {detail}")
    return 0 if status == "pass" else 1


def main() -> None:
    """CLI entrypoint."""
    from netsniffer import __version__

    parser = argparse.ArgumentParser(
        prog="netsniffer",
        description="netsniffer: local HTTP traffic recorder",
    )
    parser.add_argument(
        "--version", "-v", action="version", version=f"netsniffer {__version__}"
    )
    mode_group = parser.add_mutually_exclusive_group()
    mode_group.add_argument(
        "--emit-sample",
        action="store_true",
        help="Post sample events to a running server",
    )
    mode_group.add_argument(
        "--self-check",
        action="store_true",
        help="Check that a running server answers its health probe",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Emit JSON output for --self-check mode",
    )
    parser.add_argument(
        "--base-url",
        default=get_base_url(),
        help="Server URL for --emit-sample/--self-check (default: $NETSNIFFER_URL)",
    )
    parser.add_argument(
        "--db-path",
        default=None,
        help="SQLite database file for the server (default: $NETSNIFFER_DB_PATH)",
    )
    parser.add_argument("--host", default=get_host(), help="Host to bind to")
    parser.add_argument("--port", type=int, default=get_port(), help="Port to bind to")

    args = parser.parse_args()

    if args.json and not args.self_check:
        parser.error("--json requires --self-check")

    if args.emit_sample:
        sys.exit(asyncio.run(emit_samples(args.base_url)))
    elif args.self_check:
        sys.exit(run_self_check(args.base_url, output_json=args.json))
    else:
        if args.db_path:
            os.environ["NETSNIFFER_DB_PATH"] = args.db_path
        import uvicorn

        uvicorn.run(
            "netsniffer.main:app",
            host=args.host,
            port=args.port,
            reload=False,
        )


if __name__ == "__main__":
    main()
