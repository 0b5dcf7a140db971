"""netsniffer: local HTTP traffic recorder.

Instrumented client libraries report outbound request, response and error
events to a single-machine ingestion endpoint. netsniffer normalizes each
event into a canonical record, redacts sensitive headers, persists it to
SQLite and republishes it in real time to connected observers.

Key features:
    - Canonical event normalization (URL decomposition, body size bounds)
    - Idempotent header redaction (authorization, cookies, API keys)
    - Filtered, paginated retrieval over the recorded traffic
    - Live Server-Sent Events stream for viewers
    - Prometheus metrics for observability

Example:
    >>> from netsniffer.client import NetSnifferClient
    >>> async with NetSnifferClient("http://127.0.0.1:9432") as client:
    ...     created = await client.post_event(
    ...         {"phase": "request", "method": "GET", "url": "https://api.example.com/"}
    ...     )
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
