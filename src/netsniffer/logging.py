"""structlog setup for the recorder.

Every log line is a JSON object stamped with ``service`` and ``version`` so
recorder output can be told apart from the instrumented application's own
logs when both write to the same terminal. Request-scoped fields (the
correlation id) travel through contextvars.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, MutableMapping
from contextlib import contextmanager
from typing import Any, cast

import structlog
from structlog.contextvars import bound_contextvars

from netsniffer import __version__

SERVICE_NAME = "netsniffer"


def add_service_fields(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Stamp the recorder's identity onto every event."""
    event_dict.setdefault("service", SERVICE_NAME)
    event_dict.setdefault("version", __version__)
    return event_dict


def resolve_level(level: str) -> int:
    """Map a level name such as ``debug`` to its numeric value (INFO if unknown)."""
    return logging.getLevelNamesMapping().get(level.strip().upper(), logging.INFO)


def configure_logging(level: str) -> None:
    """Route structlog through stdlib logging as JSON at ``level``."""
    numeric_level = resolve_level(level)
    logging.basicConfig(format="%(message)s", level=numeric_level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            add_service_fields,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(sort_keys=True),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


@contextmanager
def correlation_scope(correlation_id: str) -> Iterator[None]:
    """Bind ``correlation_id`` to every log line emitted while handling a request."""
    with bound_contextvars(correlation_id=correlation_id):
        yield


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    return cast(structlog.BoundLogger, structlog.get_logger(name))
