"""SQLite session store.

Persists sessions in a single ``sessions`` table. Every call runs in a worker
thread via ``asyncio.to_thread`` so the event loop keeps forwarding terminal
output while the database is busy. Calls on one store are serialized by a
lock; the sqlite3 connection is not safe for concurrent use.

Rows are validated into typed models at this boundary. All sqlite errors are
re-raised as ``StoreError``; a lost insert race surfaces as
``SessionConflictError``.
"""

import asyncio
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Callable, Optional, TypeVar

from .errors import SessionConflictError, StoreError
from .models import (
    DailyUsageRow,
    HourCountRow,
    SessionRow,
    WeekdayCountRow,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    start_time INTEGER NOT NULL,
    end_time INTEGER NOT NULL,
    total_tokens INTEGER DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_start_time ON sessions(start_time);
CREATE INDEX IF NOT EXISTS idx_end_time ON sessions(end_time);
CREATE INDEX IF NOT EXISTS idx_total_tokens ON sessions(total_tokens);
CREATE INDEX IF NOT EXISTS idx_start_time_tokens ON sessions(start_time, total_tokens);
"""

SESSION_COLUMNS = "id, start_time, end_time, total_tokens"


class SessionStore:
    """CRUD and aggregate queries over the ``sessions`` table."""

    def __init__(self, db_path: str | Path) -> None:
        """Initialize the store.

        Args:
            db_path: Database file, or ``":memory:"`` for a private in-memory DB
        """
        self.db_path = str(db_path)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

    async def initialize(self) -> None:
        """Open the database and create the schema if needed."""
        await asyncio.to_thread(self._open)
        logger.debug(f"Session store ready at {self.db_path}")

    def _open(self) -> None:
        try:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

            conn = sqlite3.connect(
                self.db_path,
                check_same_thread=False,
                isolation_level=None,
                timeout=5.0,
            )
            conn.row_factory = sqlite3.Row
            if self.db_path != ":memory:":
                conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(SCHEMA)
            self._conn = conn
        except (sqlite3.Error, OSError) as e:
            raise StoreError(f"Failed to open session store {self.db_path}: {e}") from e

    async def close(self) -> None:
        if self._conn is not None:
            conn, self._conn = self._conn, None
            await asyncio.to_thread(conn.close)

    async def _run(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        def call() -> T:
            with self._lock:
                if self._conn is None:
                    raise StoreError("Session store is not initialized")
                try:
                    return fn(self._conn)
                except sqlite3.IntegrityError as e:
                    raise SessionConflictError(str(e)) from e
                except sqlite3.Error as e:
                    raise StoreError(str(e)) from e

        return await asyncio.to_thread(call)

    # -------------------------------------------------------------------------
    # Point lookups and writes
    # -------------------------------------------------------------------------

    async def find_active(self, now_ms: int) -> Optional[SessionRow]:
        """Return the most recently started session whose window contains ``now_ms``."""

        def query(conn: sqlite3.Connection) -> Optional[SessionRow]:
            row = conn.execute(
                f"SELECT {SESSION_COLUMNS} FROM sessions "
                "WHERE start_time <= ? AND end_time > ? "
                "ORDER BY start_time DESC LIMIT 1",
                (now_ms, now_ms),
            ).fetchone()
            return SessionRow(**dict(row)) if row else None

        return await self._run(query)

    async def insert_if_no_active(self, row: SessionRow, now_ms: int) -> None:
        """Insert ``row`` unless another session already covers ``now_ms``.

        The existence check and the insert are one statement, so two
        processes sharing the database cannot both open a window.

        Raises:
            SessionConflictError: Duplicate id, or an active session exists
            StoreError: Any other database failure
        """

        def insert(conn: sqlite3.Connection) -> None:
            cursor = conn.execute(
                "INSERT INTO sessions (id, start_time, end_time, total_tokens) "
                "SELECT ?, ?, ?, ? "
                "WHERE NOT EXISTS ("
                "  SELECT 1 FROM sessions WHERE start_time <= ? AND end_time > ?"
                ")",
                (
                    row.id,
                    row.start_time,
                    row.end_time,
                    row.total_tokens or 0,
                    now_ms,
                    now_ms,
                ),
            )
            if cursor.rowcount == 0:
                raise SessionConflictError(
                    f"An active session already exists; {row.id} not inserted"
                )

        await self._run(insert)

    async def increment_tokens(self, session_id: str, delta: int) -> int:
        """Add ``delta`` to a session's total. Returns the number of rows updated."""

        def update(conn: sqlite3.Connection) -> int:
            return conn.execute(
                "UPDATE sessions SET total_tokens = COALESCE(total_tokens, 0) + ? "
                "WHERE id = ?",
                (delta, session_id),
            ).rowcount

        return await self._run(update)

    async def set_tokens(self, session_id: str, total: int) -> int:
        def update(conn: sqlite3.Connection) -> int:
            return conn.execute(
                "UPDATE sessions SET total_tokens = ? WHERE id = ?",
                (total, session_id),
            ).rowcount

        return await self._run(update)

    async def delete_not_in_latest(self, keep: int) -> int:
        """Delete every session except the ``keep`` most recently started."""

        def delete(conn: sqlite3.Connection) -> int:
            return conn.execute(
                "DELETE FROM sessions WHERE id NOT IN ("
                "  SELECT id FROM sessions ORDER BY start_time DESC LIMIT ?"
                ")",
                (keep,),
            ).rowcount

        return await self._run(delete)

    # -------------------------------------------------------------------------
    # Aggregates
    # -------------------------------------------------------------------------

    async def count_since(self, since_ms: int) -> int:
        def query(conn: sqlite3.Connection) -> int:
            row = conn.execute(
                "SELECT COUNT(*) AS count FROM sessions WHERE start_time >= ?",
                (since_ms,),
            ).fetchone()
            return int(row["count"] or 0)

        return await self._run(query)

    async def sum_tokens_since(self, since_ms: int) -> int:
        def query(conn: sqlite3.Connection) -> int:
            row = conn.execute(
                "SELECT COALESCE(SUM(total_tokens), 0) AS total_tokens "
                "FROM sessions WHERE start_time >= ?",
                (since_ms,),
            ).fetchone()
            return int(row["total_tokens"] or 0)

        return await self._run(query)

    async def recent(self, limit: int) -> list[SessionRow]:
        def query(conn: sqlite3.Connection) -> list[SessionRow]:
            rows = conn.execute(
                f"SELECT {SESSION_COLUMNS} FROM sessions "
                "ORDER BY start_time DESC LIMIT ?",
                (limit,),
            ).fetchall()
            return [SessionRow(**dict(row)) for row in rows]

        return await self._run(query)

    async def hour_histogram_since(self, since_ms: int) -> list[HourCountRow]:
        """Session starts per local hour of day, busiest first, then earliest hour."""

        def query(conn: sqlite3.Connection) -> list[HourCountRow]:
            rows = conn.execute(
                "SELECT CAST(strftime('%H', start_time / 1000, 'unixepoch', 'localtime') "
                "AS INTEGER) AS hour, COUNT(*) AS count "
                "FROM sessions WHERE start_time >= ? "
                "GROUP BY hour ORDER BY count DESC, hour ASC",
                (since_ms,),
            ).fetchall()
            return [HourCountRow(**dict(row)) for row in rows]

        return await self._run(query)

    async def weekday_histogram_since(self, since_ms: int) -> list[WeekdayCountRow]:
        """Session starts per local weekday (0 = Sunday), busiest first, then earliest day."""

        def query(conn: sqlite3.Connection) -> list[WeekdayCountRow]:
            rows = conn.execute(
                "SELECT CAST(strftime('%w', start_time / 1000, 'unixepoch', 'localtime') "
                "AS INTEGER) AS weekday, COUNT(*) AS count "
                "FROM sessions WHERE start_time >= ? "
                "GROUP BY weekday ORDER BY count DESC, weekday ASC",
                (since_ms,),
            ).fetchall()
            return [WeekdayCountRow(**dict(row)) for row in rows]

        return await self._run(query)

    async def daily_usage_since(self, since_ms: int) -> list[DailyUsageRow]:
        def query(conn: sqlite3.Connection) -> list[DailyUsageRow]:
            rows = conn.execute(
                "SELECT date(start_time / 1000, 'unixepoch', 'localtime') AS date, "
                "COUNT(*) AS sessions, COALESCE(SUM(total_tokens), 0) AS total_tokens "
                "FROM sessions WHERE start_time >= ? "
                "GROUP BY date ORDER BY date DESC",
                (since_ms,),
            ).fetchall()
            return [DailyUsageRow(**dict(row)) for row in rows]

        return await self._run(query)

    def __repr__(self) -> str:
        return f"SessionStore({self.db_path!r})"
