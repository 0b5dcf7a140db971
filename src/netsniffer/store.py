"""Append-only event storage using SQLite."""

from __future__ import annotations

import sqlite3
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager, suppress
from pathlib import Path
from threading import Lock
from types import TracebackType

from netsniffer.errors import EventNotFoundError, StorageError
from netsniffer.events import record_from_row
from netsniffer.models import (
    ERRORS_CATEGORY,
    PHASES,
    STATUS_CATEGORIES,
    TIME_RANGES_MS,
    CanonicalEvent,
    EventFilters,
    EventRecord,
)

MigrationStep = tuple[int, str, Callable[[], None]]

_EVENT_COLUMNS = (
    "ts",
    "ts_ms",
    "phase",
    "method",
    "url",
    "host",
    "path",
    "status",
    "duration_ms",
    "service",
    "runtime",
    "trace_id",
    "request_id",
    "req_headers_json",
    "res_headers_json",
    "request_body_json",
    "response_body_json",
    "error_message",
    "truncated",
)


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def build_where_clause(
    filters: EventFilters,
    *,
    now_ms: int,
) -> tuple[str, list[object]]:
    """Translate retrieval filters into a SQL WHERE clause and parameters.

    ``status_category`` takes precedence over an exact ``status``: when a
    category is supplied the exact status is ignored, even if the category
    itself is not recognized.
    """
    clauses: list[str] = []
    params: list[object] = []

    window_ms = TIME_RANGES_MS.get(filters.time_range or "")
    if window_ms is not None:
        clauses.append("ts_ms >= ?")
        params.append(now_ms - window_ms)

    if filters.method:
        clauses.append("method = ?")
        params.append(filters.method.upper())

    if filters.phase in PHASES:
        clauses.append("phase = ?")
        params.append(filters.phase)

    if filters.host:
        clauses.append("host = ?")
        params.append(filters.host)

    if filters.status_category is not None:
        bounds = STATUS_CATEGORIES.get(filters.status_category)
        if bounds is not None:
            clauses.append("status >= ? AND status < ?")
            params.extend(bounds)
        elif filters.status_category == ERRORS_CATEGORY:
            clauses.append("(error_message IS NOT NULL OR status >= 400)")
    elif filters.status is not None:
        clauses.append("status = ?")
        params.append(filters.status)

    if filters.search:
        pattern = f"%{_escape_like(filters.search)}%"
        clauses.append("(url LIKE ? ESCAPE '\\' OR error_message LIKE ? ESCAPE '\\')")
        params.extend([pattern, pattern])

    where = " AND ".join(clauses)
    return (f" WHERE {where}" if where else ""), params


class EventStore:
    """Durable event table keyed by a monotonically increasing id.

    A single SQLite connection is shared across threads and guarded by a
    lock, so every insert is one atomic unit and readers never observe a
    partially written row. ``AUTOINCREMENT`` keeps ids unique for the whole
    life of the database file, including after :meth:`clear_all`.
    """

    def __init__(self, db_path: str) -> None:
        if db_path != ":memory:" and not db_path.startswith("file:"):
            Path(db_path).expanduser().parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = sqlite3.connect(db_path, check_same_thread=False)
        except sqlite3.Error as exc:
            raise StorageError(f"Could not open event database at {db_path}") from exc
        conn.row_factory = sqlite3.Row
        self.conn = conn
        self.db_path = db_path
        self._lock = Lock()
        self._closed = False
        self._init_schema()

    def close(self) -> None:
        """Close the underlying SQLite connection."""
        with self._lock:
            if self._closed:
                return
            self.conn.close()
            self._closed = True

    def __enter__(self) -> EventStore:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def __del__(self) -> None:  # pragma: no cover - best-effort cleanup
        with suppress(Exception):
            self.close()

    @contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        """Serialize access and surface engine failures as StorageError."""
        with self._lock:
            try:
                yield
            except (sqlite3.Error, OverflowError) as exc:
                with suppress(sqlite3.Error):
                    self.conn.rollback()
                raise StorageError(f"Event store {operation} failed: {exc}") from exc

    def _init_schema(self) -> None:
        """Initialize and migrate the event schema to the latest version."""
        with self._guard("initialization"):
            self.conn.execute("PRAGMA journal_mode=WAL")
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_migrations (
                    version INTEGER PRIMARY KEY,
                    name TEXT NOT NULL,
                    applied_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            self.conn.commit()
        self._apply_migrations()

    def _build_migrations(self) -> list[MigrationStep]:
        return [
            (1, "bootstrap_events", self._migration_bootstrap_events),
            (2, "events_recency_index", self._migration_recency_index),
        ]

    def _applied_migration_versions(self) -> set[int]:
        with self._guard("migration lookup"):
            rows = self.conn.execute(
                "SELECT version FROM schema_migrations ORDER BY version ASC"
            ).fetchall()
        return {int(row["version"]) for row in rows}

    def _apply_migrations(self) -> None:
        migrations = self._build_migrations()
        versions = [version for version, _, _ in migrations]
        if versions != sorted(versions):
            raise RuntimeError("Event schema migrations must be ordered by version.")
        if len(versions) != len(set(versions)):
            raise RuntimeError("Event schema migrations contain duplicate versions.")

        applied_versions = self._applied_migration_versions()
        for version, name, handler in migrations:
            if version in applied_versions:
                continue
            self._apply_migration(version, name, handler)
            applied_versions.add(version)

    def _apply_migration(
        self,
        version: int,
        name: str,
        handler: Callable[[], None],
    ) -> None:
        savepoint = f"event_schema_migration_v{version}"
        with self._lock:
            self.conn.execute(f"SAVEPOINT {savepoint}")
        try:
            handler()
            with self._lock:
                self.conn.execute(
                    "INSERT INTO schema_migrations (version, name) VALUES (?, ?)",
                    (version, name),
                )
                self.conn.execute(f"RELEASE SAVEPOINT {savepoint}")
                self.conn.commit()
        except Exception as exc:
            with self._lock:
                with suppress(Exception):
                    self.conn.execute(f"ROLLBACK TO SAVEPOINT {savepoint}")
                    self.conn.execute(f"RELEASE SAVEPOINT {savepoint}")
                with suppress(Exception):
                    self.conn.rollback()
            raise StorageError(
                f"Failed event schema migration v{version} ({name})."
            ) from exc

    def _migration_bootstrap_events(self) -> None:
        """Create the events table and its lookup indexes."""
        with self._lock:
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    ts TEXT NOT NULL,
                    ts_ms INTEGER NOT NULL,
                    phase TEXT NOT NULL,
                    method TEXT,
                    url TEXT NOT NULL,
                    host TEXT,
                    path TEXT,
                    status INTEGER,
                    duration_ms INTEGER,
                    service TEXT,
                    runtime TEXT,
                    trace_id TEXT,
                    request_id TEXT,
                    req_headers_json TEXT,
                    res_headers_json TEXT,
                    request_body_json TEXT,
                    response_body_json TEXT,
                    error_message TEXT,
                    truncated INTEGER DEFAULT 0
                )
                """
            )
            for column in ("ts_ms", "host", "status", "phase", "trace_id", "method"):
                self.conn.execute(
                    f"CREATE INDEX IF NOT EXISTS idx_{column} ON events({column})"
                )

    def _migration_recency_index(self) -> None:
        """Index the retrieval ordering (newest first, ties by id)."""
        with self._lock:
            self.conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_events_recency ON events(ts_ms DESC, id DESC)"
            )

    def insert(self, event: CanonicalEvent) -> int:
        """Append one event and return its assigned id (committed)."""
        values = event.model_dump()
        values["truncated"] = 1 if event.truncated else 0
        placeholders = ", ".join("?" for _ in _EVENT_COLUMNS)
        with self._guard("insert"):
            cursor = self.conn.execute(
                f"INSERT INTO events ({', '.join(_EVENT_COLUMNS)}) VALUES ({placeholders})",
                tuple(values[column] for column in _EVENT_COLUMNS),
            )
            self.conn.commit()
            event_id = cursor.lastrowid
        if event_id is None:
            raise StorageError("Event store insert did not assign an id")
        return int(event_id)

    def query(
        self,
        filters: EventFilters | None = None,
        page: int = 1,
        page_size: int = 100,
        *,
        now_ms: int | None = None,
    ) -> tuple[list[EventRecord], int]:
        """Return one page of matching events (newest first) and the match count."""
        where, params = build_where_clause(
            filters or EventFilters(),
            now_ms=now_ms if now_ms is not None else int(time.time() * 1000),
        )
        offset = (page - 1) * page_size
        with self._guard("query"):
            count_row = self.conn.execute(
                f"SELECT COUNT(*) AS count FROM events{where}", params
            ).fetchone()
            rows = self.conn.execute(
                f"SELECT * FROM events{where} ORDER BY ts_ms DESC, id DESC LIMIT ? OFFSET ?",
                [*params, page_size, offset],
            ).fetchall()
        total = int(count_row["count"]) if count_row is not None else 0
        return [record_from_row(row) for row in rows], total

    def get(self, event_id: int) -> EventRecord:
        """Fetch one event by id."""
        with self._guard("lookup"):
            row = self.conn.execute(
                "SELECT * FROM events WHERE id = ?", (event_id,)
            ).fetchone()
        if row is None:
            raise EventNotFoundError(event_id)
        return record_from_row(row)

    def list_hosts(self) -> list[str]:
        """List distinct non-null hosts in ascending order."""
        with self._guard("host listing"):
            rows = self.conn.execute(
                "SELECT DISTINCT host FROM events WHERE host IS NOT NULL ORDER BY host ASC"
            ).fetchall()
        return [str(row["host"]) for row in rows]

    def count(self) -> int:
        """Return the number of stored events."""
        with self._guard("count"):
            row = self.conn.execute("SELECT COUNT(*) AS count FROM events").fetchone()
        return int(row["count"]) if row is not None else 0

    def clear_all(self) -> int:
        """Delete every event and return how many rows were removed.

        The id sequence is not reset.
        """
        with self._guard("clear"):
            cursor = self.conn.execute("DELETE FROM events")
            self.conn.commit()
        return max(cursor.rowcount, 0)

