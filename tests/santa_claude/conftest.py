"""Pytest configuration and fixtures for santa-claude tests."""

import sqlite3
from datetime import datetime
from pathlib import Path
from typing import AsyncGenerator, Awaitable, Callable

import pytest
import pytest_asyncio

from santa_claude.cache import TTLCache
from santa_claude.models import SessionRow
from santa_claude.session_manager import SessionWindowManager
from santa_claude.store import SessionStore

HOUR_MS = 60 * 60 * 1000


class FakeClock:
    """Manually advanced clock returning epoch seconds."""

    def __init__(self, start: float) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def ms(self) -> int:
        return int(self.now * 1000)


class FakeConfig:
    """Stands in for ConfigStore's session length."""

    def __init__(self, hours: float = 5.0) -> None:
        self.hours = hours

    def session_length_ms(self) -> int:
        return int(self.hours * HOUR_MS)


@pytest.fixture
def clock() -> FakeClock:
    """Wednesday 2026-10-14 12:00 local time."""
    return FakeClock(datetime(2026, 10, 14, 12, 0).timestamp())


@pytest.fixture
def make_clock() -> Callable[[float], FakeClock]:
    return FakeClock


@pytest_asyncio.fixture
async def store(tmp_path: Path) -> AsyncGenerator[SessionStore, None]:
    session_store = SessionStore(tmp_path / "sessions.db")
    await session_store.initialize()
    yield session_store
    await session_store.close()


@pytest.fixture
def cache(clock: FakeClock) -> TTLCache:
    return TTLCache(clock=clock)


@pytest.fixture
def config() -> FakeConfig:
    return FakeConfig(hours=5.0)


@pytest.fixture
def manager(
    store: SessionStore, cache: TTLCache, config: FakeConfig, clock: FakeClock
) -> SessionWindowManager:
    return SessionWindowManager(store, cache, config, clock=clock)


@pytest.fixture
def read_sessions() -> Callable[[SessionStore], dict[str, int]]:
    """Read ``{id: total_tokens}`` straight from a store's database file."""

    def read(session_store: SessionStore) -> dict[str, int]:
        conn = sqlite3.connect(session_store.db_path)
        try:
            return dict(conn.execute("SELECT id, total_tokens FROM sessions").fetchall())
        finally:
            conn.close()

    return read


@pytest.fixture
def add_session(store: SessionStore) -> Callable[..., Awaitable[SessionRow]]:
    """Insert a finished or historical session directly into the store.

    Bypasses the active-window check by inserting "as of" the epoch.
    """

    async def add(
        session_id: str, start: datetime, hours: float = 5.0, tokens: int = 0
    ) -> SessionRow:
        start_ms = int(start.timestamp() * 1000)
        row = SessionRow(
            id=session_id,
            start_time=start_ms,
            end_time=start_ms + int(hours * HOUR_MS) - 60_000,
            total_tokens=tokens,
        )
        await store.insert_if_no_active(row, now_ms=0)
        return row

    return add
