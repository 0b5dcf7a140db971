"""Environment-driven configuration."""

from __future__ import annotations

import os
from dataclasses import dataclass

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 9432
DEFAULT_DB_PATH = "./netsniffer.db"
DEFAULT_MAX_REQUEST_BYTES = 10 * 1024 * 1024
DEFAULT_OBSERVER_QUEUE_SIZE = 1000


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        return default
    return value if value > 0 else default


def get_db_path() -> str:
    return os.getenv("NETSNIFFER_DB_PATH", DEFAULT_DB_PATH)


def get_log_level() -> str:
    return os.getenv("NETSNIFFER_LOG_LEVEL", "INFO")


def get_host() -> str:
    return os.getenv("NETSNIFFER_HOST", DEFAULT_HOST)


def get_port() -> int:
    return _get_int("NETSNIFFER_PORT", DEFAULT_PORT)


def get_max_request_bytes() -> int:
    return _get_int("NETSNIFFER_MAX_REQUEST_BYTES", DEFAULT_MAX_REQUEST_BYTES)


def get_observer_queue_size() -> int:
    return _get_int("NETSNIFFER_OBSERVER_QUEUE_SIZE", DEFAULT_OBSERVER_QUEUE_SIZE)


def get_base_url() -> str:
    """Return the ingestion server URL used by clients and the CLI."""
    configured = os.getenv("NETSNIFFER_URL", "").strip()
    if configured:
        return configured.rstrip("/")
    return f"http://{DEFAULT_HOST}:{DEFAULT_PORT}"


@dataclass(frozen=True)
class Settings:
    """Resolved server settings."""

    db_path: str
    log_level: str
    host: str
    port: int
    max_request_bytes: int
    observer_queue_size: int

    @classmethod
    def from_env(cls) -> Settings:
        return cls(
            db_path=get_db_path(),
            log_level=get_log_level(),
            host=get_host(),
            port=get_port(),
            max_request_bytes=get_max_request_bytes(),
            observer_queue_size=get_observer_queue_size(),
        )
