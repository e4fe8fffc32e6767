"""Pydantic data models for santa-claude.

This module defines the data structures shared across the package:
- Settings: Tunable constants tied to the wrapped program's rendering
- Session: Domain entity for one fixed-length usage window
- SessionRow and friends: Typed rows returned by the SQLite store
- TimeRemaining, UsageStats, DailyUsage, DetailedAnalytics: Query results

All timestamps stored in the database are epoch milliseconds. The domain
``Session`` keeps them as integers and exposes aware datetimes for display.
"""

import re
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Identifiers
# =============================================================================

SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9-]+$")
SESSION_ID_MAX_LENGTH = 100

WEEKDAY_NAMES = [
    "Sunday",
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
]


# =============================================================================
# Settings
# =============================================================================


class Settings(BaseModel):
    """Tunable constants.

    The resume threshold and the whitespace run width depend on how the
    wrapped program currently renders its status line. They are not a
    stable contract, so every component takes them from here instead of
    hard-coding them.
    """

    model_config = ConfigDict(frozen=True)

    # Token Usage Monitor
    resume_jump_threshold: int = Field(
        default=2000, ge=0, description="Jump from zero above this is a resumed session"
    )

    # Terminal Status Injector
    min_whitespace_run: int = Field(
        default=50, ge=1, description="Minimum blank run before the token counter"
    )
    status_left_padding: int = Field(default=2, ge=0)
    status_min_gap: int = Field(default=5, ge=0)
    partial_redraw_min_length: int = Field(
        default=80, ge=0, description="Chunks without a line break no longer than this are skipped"
    )
    status_refresh_interval_sec: float = Field(default=5.0, gt=0)
    token_change_throttle_sec: float = Field(default=0.5, ge=0)
    injection_dedup_window_sec: float = Field(default=0.5, ge=0)
    status_label: str = Field(default="🎅")
    status_color: str = Field(default="#787C7F")

    # Session Window Manager
    active_session_ttl_sec: float = Field(default=10.0, gt=0)
    aggregate_ttl_sec: float = Field(default=30.0, gt=0)
    session_safety_margin_ms: int = Field(default=60_000, ge=0)
    max_purge_keep: int = Field(default=10_000, ge=0)

    # TTL Cache
    cache_default_ttl_sec: float = Field(default=60.0, gt=0)
    cache_sweep_interval_sec: float = Field(default=60.0, gt=0)


DEFAULT_SETTINGS = Settings()


# =============================================================================
# Domain entities
# =============================================================================


def ms_to_datetime(value: int) -> datetime:
    """Convert epoch milliseconds to an aware UTC datetime."""
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


class Session(BaseModel):
    """One activity window.

    ``start_time`` and ``end_time`` are fixed at creation; ``end_time`` is
    never extended by continued activity. The window is half-open:
    ``start_time <= now < end_time``.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, max_length=SESSION_ID_MAX_LENGTH)
    start_time: int = Field(..., description="Window start, epoch ms")
    end_time: int = Field(..., description="Window end (exclusive), epoch ms")
    total_tokens: int = Field(default=0, ge=0)

    @property
    def started_at(self) -> datetime:
        return ms_to_datetime(self.start_time)

    @property
    def ends_at(self) -> datetime:
        return ms_to_datetime(self.end_time)

    def is_active(self, now_ms: int) -> bool:
        """Return True if the window contains ``now_ms``."""
        return self.start_time <= now_ms < self.end_time


class TimeRemaining(BaseModel):
    """Whole hours and minutes left in the active window."""

    hours: int = Field(..., ge=0)
    minutes: int = Field(..., ge=0, lt=60)

    def __str__(self) -> str:
        return f"{self.hours}h {self.minutes}m"


class UsageStats(BaseModel):
    """Session count and token sum over a time window."""

    session_count: int = 0
    total_tokens: int = 0


class DailyUsage(BaseModel):
    """Sessions started and tokens used on one local calendar day."""

    date: str = Field(..., description="Local date, YYYY-MM-DD")
    sessions: int
    total_tokens: int


class DetailedAnalytics(BaseModel):
    """Usage patterns for the current month and the trailing week.

    Ties between equally busy hours resolve to the earliest hour, ties
    between weekdays to the earliest weekday counting from Sunday.
    """

    most_active_hour: Optional[int] = Field(default=None, ge=0, le=23)
    most_active_day: Optional[str] = None
    daily_usage: list[DailyUsage] = Field(default_factory=list)


# =============================================================================
# Typed store rows
# =============================================================================


class SessionRow(BaseModel):
    """A row of the ``sessions`` table as returned by sqlite3."""

    model_config = ConfigDict(extra="forbid")

    id: str
    start_time: int
    end_time: int
    total_tokens: Optional[int] = None

    def to_session(self) -> Session:
        return Session(
            id=self.id,
            start_time=self.start_time,
            end_time=self.end_time,
            total_tokens=self.total_tokens or 0,
        )


class HourCountRow(BaseModel):
    hour: int = Field(..., ge=0, le=23)
    count: int


class WeekdayCountRow(BaseModel):
    weekday: int = Field(..., ge=0, le=6)
    count: int


class DailyUsageRow(BaseModel):
    date: str
    sessions: int
    total_tokens: Optional[int] = None

    def to_daily_usage(self) -> DailyUsage:
        return DailyUsage(
            date=self.date,
            sessions=self.sessions,
            total_tokens=self.total_tokens or 0,
        )
