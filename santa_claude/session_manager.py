"""Session window manager.

Owns the lifecycle of usage windows ("sessions") and the aggregate queries
built on top of them.

A session opens on the first detected activity when no other window covers
the current instant, and closes at a fixed ``end_time`` computed once at
creation (``start + session length - safety margin``). Continued activity
never extends a window. At most one window is active at any instant:

    no active session ──create_session──▶ active ──end_time passes──▶ closed
                              │
                              └─ active exists ─▶ join (return existing)

Several wrapper processes can share one database. Creation is optimistic:
the insert is rejected by the store if another window is already active,
and the loser re-reads and joins the winner's window.

Read paths never raise store errors; they log and degrade to "no session",
zero or empty results so the wrapped program is never held up by the
database. Write paths raise ``StoreError`` for the caller to log.
"""

import calendar
import logging
import time
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, Protocol, TypeVar

from .cache import MISSING, TTLCache
from .errors import SessionConflictError, StoreError, ValidationError
from .models import (
    DEFAULT_SETTINGS,
    SESSION_ID_MAX_LENGTH,
    SESSION_ID_PATTERN,
    WEEKDAY_NAMES,
    DetailedAnalytics,
    Session,
    SessionRow,
    Settings,
    TimeRemaining,
    UsageStats,
)
from .store import SessionStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

ACTIVE_SESSION_KEY = "active_session"

MS_PER_MINUTE = 60 * 1000
MS_PER_HOUR = 60 * MS_PER_MINUTE
MS_PER_DAY = 24 * MS_PER_HOUR


class SessionLengthSource(Protocol):
    """Anything that knows the configured window length (``ConfigStore``)."""

    def session_length_ms(self) -> int: ...


# =============================================================================
# Validation
# =============================================================================


def validate_session_id(session_id: str) -> str:
    """Reject ids that are empty, longer than 100 chars or not ``[A-Za-z0-9-]+``."""
    if not isinstance(session_id, str) or not session_id:
        raise ValidationError("Session id must be a non-empty string")
    if len(session_id) > SESSION_ID_MAX_LENGTH:
        raise ValidationError(
            f"Session id must be at most {SESSION_ID_MAX_LENGTH} characters"
        )
    if not SESSION_ID_PATTERN.match(session_id):
        raise ValidationError(
            f"Session id may only contain letters, digits and '-': {session_id!r}"
        )
    return session_id


def validate_renewal_day(day: int) -> int:
    if isinstance(day, bool) or not isinstance(day, int) or not 1 <= day <= 31:
        raise ValidationError(f"Renewal day must be an integer between 1 and 31, got {day!r}")
    return day


def validate_count(value: int, name: str, maximum: int) -> int:
    """Require a non-negative integer no larger than ``maximum``."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer, got {value!r}")
    if not 0 <= value <= maximum:
        raise ValidationError(f"{name} must be between 0 and {maximum}, got {value}")
    return value


def validate_token_amount(value: int, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer, got {value!r}")
    if value < 0:
        raise ValidationError(f"{name} must not be negative, got {value}")
    return value


# =============================================================================
# Calendar windows (local time)
# =============================================================================


def start_of_day(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def start_of_month(now: datetime) -> datetime:
    return start_of_day(now).replace(day=1)


def start_of_week(now: datetime) -> datetime:
    """Midnight of the most recent Sunday (weeks start on Sunday)."""
    days_since_sunday = (now.weekday() + 1) % 7
    return start_of_day(now) - timedelta(days=days_since_sunday)


def billing_cycle_start(now: datetime, renewal_day: int) -> datetime:
    """Start of the billing cycle that contains ``now``.

    The cycle starts on ``renewal_day`` of this month once that day has been
    reached, otherwise on ``renewal_day`` of the previous month. In months
    shorter than ``renewal_day`` the cycle starts on the month's last day.
    """
    validate_renewal_day(renewal_day)

    year, month = now.year, now.month
    if now.day < renewal_day:
        month -= 1
        if month == 0:
            year, month = year - 1, 12

    last_day = calendar.monthrange(year, month)[1]
    return datetime(year, month, min(renewal_day, last_day))


def to_epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


# =============================================================================
# Manager
# =============================================================================


class SessionWindowManager:
    """Creates, joins and reports on session windows.

    Collaborators are injected: the store, the cache that fronts it, and the
    source of the configured window length.
    """

    def __init__(
        self,
        store: SessionStore,
        cache: TTLCache,
        config: SessionLengthSource,
        settings: Settings = DEFAULT_SETTINGS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the manager.

        Args:
            store: Session store adapter
            cache: Cache for the active session and aggregate counts
            config: Provides ``session_length_ms()``
            settings: Cache TTLs, safety margin and limits
            clock: Wall clock in epoch seconds, injectable for tests
        """
        self.store = store
        self.cache = cache
        self.config = config
        self.settings = settings
        self._clock = clock
        self._aggregate_keys: set[str] = set()

    def now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _now_local(self) -> datetime:
        return datetime.fromtimestamp(self._clock())

    # -------------------------------------------------------------------------
    # Active session
    # -------------------------------------------------------------------------

    async def get_active_session(self) -> Optional[Session]:
        """Return the session whose window contains now, or None.

        A cached session is re-checked against the clock because it may have
        ended since it was cached. "No active session" is cached as well.
        """
        now_ms = self.now_ms()
        cached = self.cache.get(ACTIVE_SESSION_KEY, MISSING)
        if cached is not MISSING:
            if cached is None:
                return None
            if cached.is_active(now_ms):
                return cached
            logger.debug(f"Cached session {cached.id} has ended, re-querying")
            self.cache.delete(ACTIVE_SESSION_KEY)

        try:
            session = await self._query_active(now_ms)
        except StoreError as e:
            logger.warning(f"Active session lookup failed, assuming none: {e}")
            session = None

        self.cache.set(ACTIVE_SESSION_KEY, session, self.settings.active_session_ttl_sec)
        return session

    async def _query_active(self, now_ms: int) -> Optional[Session]:
        row = await self.store.find_active(now_ms)
        return row.to_session() if row else None

    async def create_session(self, candidate_id: str) -> Session:
        """Open a window with ``candidate_id``, or join the active one.

        Returns the active session, which may carry a different id than the
        one requested.

        Raises:
            ValidationError: ``candidate_id`` is malformed
            StoreError: The insert failed for a reason other than a lost race
        """
        validate_session_id(candidate_id)

        active = await self.get_active_session()
        if active is not None:
            logger.info(
                f"Joining active session {active.id} started at "
                f"{active.started_at.astimezone():%H:%M:%S}"
            )
            return active

        now_ms = self.now_ms()
        window_ms = self.config.session_length_ms() - self.settings.session_safety_margin_ms
        row = SessionRow(
            id=candidate_id,
            start_time=now_ms,
            end_time=now_ms + window_ms,
            total_tokens=0,
        )

        try:
            await self.store.insert_if_no_active(row, now_ms)
        except SessionConflictError as conflict:
            winner = await self._query_active(self.now_ms())
            if winner is None:
                raise
            logger.info(f"Session {candidate_id} lost creation race to {winner.id}: {conflict}")
            self.cache.set(ACTIVE_SESSION_KEY, winner, self.settings.active_session_ttl_sec)
            return winner

        session = row.to_session()
        self.invalidate_aggregates()
        self.cache.set(ACTIVE_SESSION_KEY, session, self.settings.active_session_ttl_sec)
        logger.info(f"Created session {session.id} ending {session.ends_at.astimezone():%H:%M}")
        return session

    async def get_session_time_remaining(self) -> Optional[TimeRemaining]:
        """Hours and minutes left in the active window, or None without one."""
        session = await self.get_active_session()
        if session is None:
            return None

        remaining_ms = max(session.end_time - self.now_ms(), 0)
        return TimeRemaining(
            hours=remaining_ms // MS_PER_HOUR,
            minutes=(remaining_ms % MS_PER_HOUR) // MS_PER_MINUTE,
        )

    # -------------------------------------------------------------------------
    # Token counters
    # -------------------------------------------------------------------------

    async def increment_session_tokens(self, session_id: str, delta: int) -> int:
        """Add ``delta`` tokens to a session. Returns the number of rows updated."""
        validate_session_id(session_id)
        validate_token_amount(delta, "delta")
        updated = await self.store.increment_tokens(session_id, delta)
        if updated == 0:
            logger.warning(f"Token increment for unknown session {session_id}")
        return updated

    async def set_session_tokens(self, session_id: str, total: int) -> int:
        """Overwrite a session's token total (administrative correction)."""
        validate_session_id(session_id)
        validate_token_amount(total, "total")
        return await self.store.set_tokens(session_id, total)

    # -------------------------------------------------------------------------
    # Retention
    # -------------------------------------------------------------------------

    async def purge_keeping_latest(self, keep: int) -> int:
        """Delete all but the ``keep`` most recently started sessions.

        Returns:
            Number of sessions deleted
        """
        validate_count(keep, "keep", self.settings.max_purge_keep)
        deleted = await self.store.delete_not_in_latest(keep)
        self.cache.delete(ACTIVE_SESSION_KEY)
        self.invalidate_aggregates()
        logger.info(f"Purged {deleted} session(s), kept latest {keep}")
        return deleted

    # -------------------------------------------------------------------------
    # Aggregates
    # -------------------------------------------------------------------------

    def invalidate_aggregates(self) -> None:
        for key in self._aggregate_keys:
            self.cache.delete(key)
        self._aggregate_keys.clear()

    async def _aggregate(self, key: str, compute: Callable[[], Awaitable[T]], empty: T) -> T:
        self._aggregate_keys.add(key)
        try:
            return await self.cache.get_or_compute(key, compute, self.settings.aggregate_ttl_sec)
        except StoreError as e:
            logger.warning(f"Aggregate query {key} failed: {e}")
            return empty

    async def _stats_since(self, since_ms: int) -> UsageStats:
        return UsageStats(
            session_count=await self.store.count_since(since_ms),
            total_tokens=await self.store.sum_tokens_since(since_ms),
        )

    async def monthly_session_count(self) -> int:
        since = to_epoch_ms(start_of_month(self._now_local()))
        return await self._aggregate(
            f"monthly_count:{since}", lambda: self.store.count_since(since), 0
        )

    async def weekly_session_count(self) -> int:
        since = to_epoch_ms(start_of_week(self._now_local()))
        return await self._aggregate(
            f"weekly_count:{since}", lambda: self.store.count_since(since), 0
        )

    async def billing_cycle_session_count(self, renewal_day: int) -> int:
        since = to_epoch_ms(billing_cycle_start(self._now_local(), renewal_day))
        return await self._aggregate(
            f"billing_count:{since}", lambda: self.store.count_since(since), 0
        )

    async def thirty_day_stats(self) -> UsageStats:
        since = self.now_ms() - 30 * MS_PER_DAY
        # The 30 day window slides every millisecond; key it by minute.
        bucket = since // MS_PER_MINUTE
        return await self._aggregate(
            f"stats_30d:{bucket}", lambda: self._stats_since(since), UsageStats()
        )

    async def weekly_stats(self) -> UsageStats:
        since = to_epoch_ms(start_of_week(self._now_local()))
        return await self._aggregate(
            f"stats_weekly:{since}", lambda: self._stats_since(since), UsageStats()
        )

    async def billing_cycle_stats(self, renewal_day: int) -> UsageStats:
        since = to_epoch_ms(billing_cycle_start(self._now_local(), renewal_day))
        return await self._aggregate(
            f"stats_billing:{since}", lambda: self._stats_since(since), UsageStats()
        )

    async def thirty_day_token_total(self) -> int:
        return (await self.thirty_day_stats()).total_tokens

    async def weekly_token_total(self) -> int:
        return (await self.weekly_stats()).total_tokens

    async def billing_cycle_token_total(self, renewal_day: int) -> int:
        return (await self.billing_cycle_stats(renewal_day)).total_tokens

    async def get_sessions_with_stats(self, limit: int = 10) -> list[Session]:
        """Most recently started sessions, newest first."""
        validate_count(limit, "limit", self.settings.max_purge_keep)
        try:
            rows = await self.store.recent(limit)
        except StoreError as e:
            logger.warning(f"Recent sessions query failed: {e}")
            return []
        return [row.to_session() for row in rows]

    async def detailed_analytics(self) -> DetailedAnalytics:
        """Busiest hour and weekday this month, plus the last 7 days per day."""
        month_start = to_epoch_ms(start_of_month(self._now_local()))
        week_ago = self.now_ms() - 7 * MS_PER_DAY

        try:
            hours = await self.store.hour_histogram_since(month_start)
            weekdays = await self.store.weekday_histogram_since(month_start)
            daily = await self.store.daily_usage_since(week_ago)
        except StoreError as e:
            logger.warning(f"Analytics query failed: {e}")
            return DetailedAnalytics()

        return DetailedAnalytics(
            most_active_hour=hours[0].hour if hours else None,
            most_active_day=WEEKDAY_NAMES[weekdays[0].weekday] if weekdays else None,
            daily_usage=[row.to_daily_usage() for row in daily],
        )
