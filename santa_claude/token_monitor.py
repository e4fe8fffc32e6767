"""Token usage monitor.

Watches the wrapped program's output for its rendered token counter
("12345 tokens") and turns increases into additive updates of the active
session's ``total_tokens``.

State Machine (one per wrapped-program run):
    IDLE → STARTED: first strictly larger count seen; baseline chosen and
        a single session creation request is issued
    STARTED → TRACKING: the session manager returned the session to use
    TRACKING: each further increase reports ``contribution - last_reported``

The counter belongs to the wrapped program's conversation, not to this run.
A resumed conversation shows its old total in one jump from zero, so a jump
above ``resume_jump_threshold`` becomes the baseline instead of usage.

Updates are single-flight: while one increment is in flight, further
increases are not queued; the next increase after it completes reports the
accumulated delta. ``last_reported_delta`` is advanced before the write and
is not rolled back if the write fails.
"""

import asyncio
import logging
import re
import time
import uuid
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from .errors import StoreError, ValidationError
from .models import DEFAULT_SETTINGS, Settings
from .session_manager import SessionWindowManager

logger = logging.getLogger(__name__)

TOKEN_COUNT_PATTERN = re.compile(rb"(\d+)\s+tokens?")


def parse_token_count(data: bytes) -> Optional[int]:
    """Return the first ``<digits> token(s)`` count in ``data``, if any."""
    match = TOKEN_COUNT_PATTERN.search(data)
    return int(match.group(1)) if match else None


class MonitorState(str, Enum):
    IDLE = "idle"
    STARTED = "started"
    TRACKING = "tracking"


class TokenUsageMonitor:
    """Per-run token counter reconciliation."""

    def __init__(
        self,
        session_id: str,
        manager: Optional[SessionWindowManager] = None,
        settings: Settings = DEFAULT_SETTINGS,
        log_dir: Optional[Path] = None,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        """Initialize the monitor.

        Args:
            session_id: Id to request when this run opens a session
            manager: Session manager; without one the monitor only logs
            settings: Resume threshold
            log_dir: Directory for this run's log file (None: no file)
            id_factory: Produces ids for windows opened after a rollover
        """
        self.session_id = session_id
        self.manager = manager
        self.settings = settings
        self._id_factory = id_factory

        self.last_observed_count = 0
        self.instance_baseline = 0
        self.last_reported_delta = 0
        self.resolved_session_id: Optional[str] = None

        self._started = False
        self._closed = False
        self._session_task: Optional[asyncio.Task] = None
        self._update_task: Optional[asyncio.Task] = None

        self._log = logger.getChild(session_id[:8] or "run")
        self._file_handler: Optional[logging.FileHandler] = None
        self.log_file: Optional[Path] = None
        if log_dir is not None:
            self._open_log_file(log_dir)

    def _open_log_file(self, log_dir: Path) -> None:
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            self.log_file = log_dir / f"session-{self.session_id[:8]}-{int(time.time() * 1000)}.log"
            handler = logging.FileHandler(self.log_file, encoding="utf-8")
        except OSError as e:
            logger.warning(f"Cannot open monitor log in {log_dir}: {e}")
            self.log_file = None
            return

        handler.setFormatter(logging.Formatter("[%(asctime)s] %(message)s"))
        handler.setLevel(logging.DEBUG)
        self._file_handler = handler
        self._log.addHandler(handler)
        self._log.setLevel(logging.DEBUG)

    @property
    def state(self) -> MonitorState:
        if not self._started:
            return MonitorState.IDLE
        if self.resolved_session_id is None:
            return MonitorState.STARTED
        return MonitorState.TRACKING

    @property
    def contribution(self) -> int:
        """Tokens attributed to this run so far."""
        if not self._started:
            return 0
        return max(self.last_observed_count - self.instance_baseline, 0)

    def process_chunk(self, data: bytes) -> None:
        """Inspect one output chunk. Never blocks; store work runs as tasks."""
        if self._closed:
            return

        count = parse_token_count(data)
        if count is None or count <= self.last_observed_count:
            return

        prior = self.last_observed_count
        if not self._started:
            self._start(prior, count)
        elif self.resolved_session_id is not None:
            self._report(count)

        self.last_observed_count = count
        self._log.debug(f"Token count increased to {count}")

    def _start(self, prior: int, count: int) -> None:
        self._started = True

        if prior == 0 and count > self.settings.resume_jump_threshold:
            self.instance_baseline = count
            self._log.info(
                f"Detected session resume with {count} existing tokens (treating as baseline)"
            )
        else:
            self.instance_baseline = prior
            self._log.info(
                f"Session started with first token activity: {count} tokens "
                f"(instance started from {prior})"
            )

        if self.manager is not None and self._session_task is None:
            self._session_task = asyncio.create_task(self._create_session())

    async def _create_session(self) -> None:
        try:
            session = await self.manager.create_session(self.session_id)
        except (StoreError, ValidationError) as e:
            self._log.warning(f"Failed to create session: {e}")
            return

        self.resolved_session_id = session.id
        self._log.info(f"Using session in database: {session.id} (requested: {self.session_id})")

    def _report(self, count: int) -> None:
        contribution = count - self.instance_baseline
        delta = contribution - self.last_reported_delta
        if delta <= 0:
            return

        if self._update_task is not None and not self._update_task.done():
            self._log.debug(f"Update in flight, deferring {delta} tokens")
            return

        self.last_reported_delta = contribution
        self._update_task = asyncio.create_task(self._push_delta(delta))

    async def _push_delta(self, delta: int) -> None:
        try:
            target = await self._current_session_id()
            await self.manager.increment_session_tokens(target, delta)
        except (StoreError, ValidationError) as e:
            self._log.warning(f"Failed to update token count: {e}")

    async def _current_session_id(self) -> str:
        """Id of the window now active, opening a new one if the last has ended."""
        active = await self.manager.get_active_session()
        if active is None:
            active = await self.manager.create_session(self._id_factory())

        if active.id != self.resolved_session_id:
            self._log.info(f"Session rolled over from {self.resolved_session_id} to {active.id}")
            self.resolved_session_id = active.id
        return active.id

    async def wait_idle(self) -> None:
        """Wait for the pending session request and token update, if any."""
        pending = [t for t in (self._session_task, self._update_task) if t is not None]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def close(self) -> None:
        """Write the final log line and stop reacting to output.

        In-flight store writes are left to finish on their own.
        """
        if self._closed:
            return
        self._closed = True
        self._log.info(f"Session monitor closing. Total tokens used: {self.last_observed_count}")

        if self._file_handler is not None:
            self._log.removeHandler(self._file_handler)
            self._file_handler.close()
            self._file_handler = None
