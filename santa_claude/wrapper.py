"""Wrapped-run orchestration and usage reports.

``ClaudeWrapper`` wires the components together for one command:

    TerminalBridge ──chunk──▶ TerminalStatusInjector ──rewritten chunk──▶ terminal
                     └──────▶ TokenUsageMonitor ──increments──▶ SessionWindowManager

and renders the launch/exit banners and the ``stats``, ``sessions`` and
``status`` reports with Rich.
"""

import logging
import uuid
from datetime import datetime
from pathlib import Path
from typing import Optional

import psutil
from rich.console import Console
from rich.table import Table

from .bridge import TerminalBridge
from .cache import TTLCache
from .config import ConfigPaths, ConfigStore
from .errors import ProcessError, StoreError
from .log_manager import LogManager
from .models import DEFAULT_SETTINGS, Settings
from .session_manager import ACTIVE_SESSION_KEY, SessionWindowManager
from .status_injector import TerminalStatusInjector
from .store import SessionStore
from .token_monitor import TokenUsageMonitor

logger = logging.getLogger(__name__)

WRAPPED_PROGRAM = "claude"


def ordinal_suffix(day: int) -> str:
    if 11 <= day % 100 <= 13:
        return "th"
    return {1: "st", 2: "nd", 3: "rd"}.get(day % 10, "th")


def format_date(value: datetime) -> str:
    """Format as ``M/D/YYYY h:mmam`` in local time."""
    local = value.astimezone()
    hour = local.hour % 12 or 12
    ampm = "pm" if local.hour >= 12 else "am"
    return f"{local.month}/{local.day}/{local.year} {hour}:{local.minute:02d}{ampm}"


def build_command(args: list[str]) -> list[str]:
    """Command line for the wrapped program; ``--verbose`` exposes the token counter."""
    command = [WRAPPED_PROGRAM, *args]
    if "--verbose" not in args:
        command.append("--verbose")
    return command


class ClaudeWrapper:
    """Owns the store, cache and manager for one CLI invocation."""

    def __init__(
        self,
        config: Optional[ConfigStore] = None,
        store: Optional[SessionStore] = None,
        settings: Settings = DEFAULT_SETTINGS,
        console: Optional[Console] = None,
        log_dir: Optional[Path] = None,
    ) -> None:
        self.settings = settings
        self.config = config or ConfigStore()
        self.store = store or SessionStore(ConfigPaths.database())
        self.cache = TTLCache(
            default_ttl=settings.cache_default_ttl_sec,
            sweep_interval=settings.cache_sweep_interval_sec,
        )
        self.manager = SessionWindowManager(self.store, self.cache, self.config, settings)
        self.console = console or Console()
        self.log_dir = log_dir or ConfigPaths.LOG_DIR

    async def initialize(self, require_store: bool = True) -> None:
        """Open the store and start the cache sweep.

        Args:
            require_store: Raise if the store cannot be opened. When False the
                wrapper runs untracked: every store call fails and the
                manager degrades to "no session".
        """
        try:
            await self.store.initialize()
        except StoreError as e:
            if require_store:
                raise
            logger.warning(f"Session tracking unavailable, running untracked: {e}")
        self.cache.start()

    async def close(self) -> None:
        await self.cache.stop()
        await self.store.close()

    # -------------------------------------------------------------------------
    # Wrapped run
    # -------------------------------------------------------------------------

    async def run_session(self, args: list[str], session_id: Optional[str] = None) -> int:
        """Run the wrapped program with tracking.

        Returns:
            The wrapped program's exit code (0)

        Raises:
            ProcessError: The wrapped program exited non-zero
        """
        active = await self.manager.get_active_session()
        requested_id = active.id if active else (session_id or str(uuid.uuid4()))

        await self.show_session_start()
        LogManager(self.log_dir).cleanup_old_logs()

        monitor = TokenUsageMonitor(requested_id, self.manager, self.settings, self.log_dir)
        injector = TerminalStatusInjector(self.manager, self.settings)
        await injector.start()

        def on_output(data: bytes) -> bytes:
            rewritten = injector.process_chunk(data)
            monitor.process_chunk(data)
            return rewritten

        bridge = TerminalBridge(build_command(args), on_output)
        try:
            exit_code = await bridge.run()
        finally:
            injector.close()
            monitor.close()
            await monitor.wait_idle()

        await self.show_session_end()

        if exit_code != 0:
            raise ProcessError(f"{WRAPPED_PROGRAM} exited with code {exit_code}", exit_code)
        return exit_code

    async def show_session_start(self) -> None:
        remaining = await self.manager.get_session_time_remaining()
        weekly = await self.manager.weekly_session_count()
        renewal_day = self.config.subscription_renewal_day()

        window = f"({remaining} remaining in current session)" if remaining else "(no active session)"
        self.console.print(f"\n🎅 Santa Claude launching Claude Code instance... {window}", style="bright_black")

        if renewal_day:
            cycle = await self.manager.billing_cycle_session_count(renewal_day)
            self.console.print(
                f"   {cycle} sessions used so far in current billing cycle "
                f"(renews {renewal_day}{ordinal_suffix(renewal_day)} of the month)",
                style="dim",
            )
        else:
            monthly = await self.manager.monthly_session_count()
            self.console.print(
                f"   {monthly} sessions used so far in {datetime.now():%B}", style="dim"
            )

        self.console.print(f"   {weekly} sessions used so far this week\n", style="dim")

        if not renewal_day:
            self.console.print(
                "   Your Claude Code subscription renewal date is not set. "
                "To set it, see --help for instructions\n",
                style="bright_black",
            )

    async def show_session_end(self) -> None:
        # The window may have been opened during this run
        self.cache.delete(ACTIVE_SESSION_KEY)
        remaining = await self.manager.get_session_time_remaining()
        if remaining:
            self.console.print(f"\n👋🎅 Current session time remaining: {remaining}\n", style="bright_black")
        else:
            self.console.print("\n👋🎅 Session ended\n", style="bright_black")

    # -------------------------------------------------------------------------
    # Reports
    # -------------------------------------------------------------------------

    async def show_stats(self) -> None:
        remaining = await self.manager.get_session_time_remaining()
        thirty_day = await self.manager.thirty_day_stats()
        weekly = await self.manager.weekly_stats()
        renewal_day = self.config.subscription_renewal_day()

        self.console.print("\n📊 Claude Usage Stats\n", style="cyan")
        self.console.print("⏱️  Current Session:", style="yellow")
        if remaining:
            self.console.print(f"   Time remaining: {remaining}")
        else:
            self.console.print("   No active Claude Code session")

        table = Table(title="📅 Session Usage", show_header=True, header_style="bold green")
        table.add_column("Period")
        table.add_column("Sessions used", justify="right")
        table.add_column("Tokens used", justify="right")

        def tokens(value: int) -> str:
            return f"{value:,}" if value > 0 else "-"

        table.add_row("Last 30 days", str(thirty_day.session_count), tokens(thirty_day.total_tokens))
        table.add_row("This week", str(weekly.session_count), tokens(weekly.total_tokens))
        if renewal_day:
            cycle = await self.manager.billing_cycle_stats(renewal_day)
            table.add_row("This billing cycle", str(cycle.session_count), tokens(cycle.total_tokens))
        else:
            table.add_row("This billing cycle", "0", "-", style="bright_black")
        self.console.print(table)
        if not renewal_day:
            self.console.print("   (renewal date not set)", style="bright_black")

        analytics = await self.manager.detailed_analytics()
        self.console.print("\n📈 Detailed Analytics:\n", style="cyan")
        if analytics.most_active_hour is not None:
            self.console.print(f"Hour most sessions started: {analytics.most_active_hour}:00")
        if analytics.most_active_day:
            self.console.print(f"Day most sessions started: {analytics.most_active_day}")
        if analytics.daily_usage:
            self.console.print("\nLast 7 days:")
            for day in analytics.daily_usage:
                suffix = f", {day.total_tokens:,} tokens" if day.total_tokens > 0 else ""
                self.console.print(f"  {day.date}: {day.sessions} sessions{suffix}")

    async def list_recent_sessions(self, limit: int = 10) -> None:
        sessions = await self.manager.get_sessions_with_stats(limit)

        self.console.print(f"\n📋 Recent Sessions (last {limit}):\n", style="cyan")
        if not sessions:
            self.console.print("No sessions recorded yet")
            return

        ranges = [f"{format_date(s.started_at)} - {format_date(s.ends_at)}" for s in sessions]
        width = max(len(r) for r in ranges)
        for date_range, session in zip(ranges, sessions):
            self.console.print(f"{date_range.ljust(width)} | {session.total_tokens:,} tokens")

    async def show_status(self, running_instances: Optional[int]) -> None:
        self.console.print("\n🎅 Santa Claude Status\n", style="cyan")
        if running_instances is None:
            self.console.print("Santa Claude instances running: Unable to check")
        else:
            self.console.print(f"Santa Claude instances running: {running_instances}")

        remaining = await self.manager.get_session_time_remaining()
        if remaining:
            self.console.print(f"\nActive session: [yellow]{remaining}[/yellow] remaining")
        else:
            self.console.print("\nNo active session")


def count_running_instances() -> int:
    """Number of running wrapped-program processes."""
    count = 0
    for proc in psutil.process_iter(["name"]):
        if proc.info.get("name") == WRAPPED_PROGRAM:
            count += 1
    return count
