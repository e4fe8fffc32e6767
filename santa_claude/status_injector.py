"""Terminal status injector.

Superimposes a short status label ("🎅 3h 12m remaining") onto the wrapped
program's own status line by rewriting output chunks in place.

The wrapped program right-aligns its token counter behind a long run of
blanks, optionally followed by SGR color sequences:

    <50+ blanks><ESC[..m ...><digits> tokens

The injector spends part of that blank run on the label and pads the rest,
so the counter keeps its column and the existing color sequences are
written back untouched. Chunks are left alone when the run is too narrow
to hold the label, when they look like a partial redraw, or when the same
count was injected moments ago.

The label text is cached and refreshed from the session manager on a timer
and, throttled, whenever the token count changes.
"""

import asyncio
import logging
import re
import time
from typing import Callable, Optional

from rich.cells import cell_len
from rich.color import ColorSystem
from rich.style import Style

from .models import DEFAULT_SETTINGS, Settings, TimeRemaining
from .session_manager import SessionWindowManager
from .token_monitor import parse_token_count

logger = logging.getLogger(__name__)


def format_status(label: str, remaining: Optional[TimeRemaining]) -> str:
    if remaining is None:
        return f"{label} no active session"
    return f"{label} {remaining.hours}h {remaining.minutes}m remaining"


def status_line_pattern(min_whitespace_run: int) -> re.Pattern[bytes]:
    """Space run, then optional SGR sequences, then the token counter."""
    return re.compile(
        rb"( {%d,})((?:\x1b\[[0-9;]*m)*)(\d+\s+tokens?)" % min_whitespace_run
    )


class TerminalStatusInjector:
    """Rewrites output chunks to show the time left in the active session.

    Chunks must be fed one at a time; a call that arrives while a
    replacement is being built returns its chunk unchanged.
    """

    def __init__(
        self,
        manager: SessionWindowManager,
        settings: Settings = DEFAULT_SETTINGS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.manager = manager
        self.settings = settings
        self._clock = clock
        self._pattern = status_line_pattern(settings.min_whitespace_run)
        self._style = Style(color=settings.status_color)

        self.status_text = ""
        self._current_count: Optional[int] = None
        self._last_refresh_request = float("-inf")
        self._last_injected_count: Optional[int] = None
        self._last_injected_at = float("-inf")
        self._replacing = False

        self._refresh_task: Optional[asyncio.Task] = None
        self._pending_refresh: Optional[asyncio.Task] = None

    # -------------------------------------------------------------------------
    # Status text
    # -------------------------------------------------------------------------

    async def refresh(self) -> str:
        """Re-read the time remaining and update the cached label."""
        remaining = await self.manager.get_session_time_remaining()
        self.status_text = format_status(self.settings.status_label, remaining)
        return self.status_text

    async def start(self) -> None:
        """Load the label once, then keep it fresh in the background."""
        await self.refresh()
        self._refresh_task = asyncio.create_task(self._refresh_loop())

    async def _refresh_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.status_refresh_interval_sec)
            try:
                await self.refresh()
            except Exception as e:
                logger.error(f"Status refresh failed: {e}")

    def close(self) -> None:
        """Cancel the refresh timer."""
        for task in (self._refresh_task, self._pending_refresh):
            if task is not None:
                task.cancel()
        self._refresh_task = None
        self._pending_refresh = None

    def _note_count(self, count: int, now: float) -> None:
        if count == self._current_count:
            return
        self._current_count = count

        if now - self._last_refresh_request < self.settings.token_change_throttle_sec:
            return
        if self._pending_refresh is not None and not self._pending_refresh.done():
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._last_refresh_request = now
        self._pending_refresh = loop.create_task(self.refresh())

    # -------------------------------------------------------------------------
    # Chunk rewriting
    # -------------------------------------------------------------------------

    def process_chunk(self, data: bytes) -> bytes:
        """Return ``data`` with the status label injected, or unchanged."""
        count = parse_token_count(data)
        if count is None:
            return data

        now = self._clock()
        self._note_count(count, now)

        if not self.status_text:
            return data

        has_line_break = b"\n" in data or b"\r" in data
        if not has_line_break and len(data) <= self.settings.partial_redraw_min_length:
            return data

        if (
            count == self._last_injected_count
            and now - self._last_injected_at < self.settings.injection_dedup_window_sec
        ):
            return data

        if self._replacing:
            return data

        self._replacing = True
        try:
            result = self._inject(data)
        finally:
            self._replacing = False

        if result is not data:
            self._last_injected_count = count
            self._last_injected_at = now
        return result

    def _inject(self, data: bytes) -> bytes:
        match = self._pattern.search(data)
        if match is None:
            return data

        blanks, sgr, counter = match.groups()
        padding = self.settings.status_left_padding
        width = cell_len(self.status_text)

        if len(blanks) <= width + padding + self.settings.status_min_gap:
            return data

        label = self._style.render(
            self.status_text, color_system=ColorSystem.TRUECOLOR
        ).encode("utf-8")
        fill = len(blanks) - width - padding

        replacement = b" " * padding + label + b" " * fill + sgr + counter
        return data[: match.start()] + replacement + data[match.end() :]
