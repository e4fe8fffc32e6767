"""Tests for the token usage monitor."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from santa_claude.errors import StoreError
from santa_claude.models import Session
from santa_claude.token_monitor import MonitorState, TokenUsageMonitor, parse_token_count

FAR_FUTURE = 10**15


def session(session_id):
    return Session(id=session_id, start_time=0, end_time=FAR_FUTURE)


@pytest.fixture
def fake_manager():
    manager = MagicMock()
    manager.create_session = AsyncMock(side_effect=lambda sid: session(sid))
    manager.get_active_session = AsyncMock(return_value=None)
    manager.increment_session_tokens = AsyncMock(return_value=1)
    return manager


def tokens(n):
    return f"\x1b[2m{n} tokens\x1b[0m\r\n".encode()


async def settle(monitor):
    await asyncio.sleep(0)
    await monitor.wait_idle()


class TestParseTokenCount:
    """Counter extraction from raw output."""

    @pytest.mark.parametrize(
        "data,expected",
        [
            (b"12345 tokens", 12345),
            (b"1 token", 1),
            (b"  \x1b[2m987  tokens\x1b[0m", 987),
            (b"first 10 tokens then 20 tokens", 10),
            (b"no counter here", None),
            (b"tokens 12", None),
        ],
    )
    def test_parse(self, data, expected):
        assert parse_token_count(data) == expected


class TestBaseline:
    """Choosing the baseline on the first increase."""

    def test_output_without_counter_stays_idle(self):
        monitor = TokenUsageMonitor("run-1")
        monitor.process_chunk(b"hello world\r\n")

        assert monitor.state is MonitorState.IDLE
        assert monitor.contribution == 0

    def test_resume_jump_becomes_baseline(self):
        """0 -> 5000 is a resumed conversation, not usage."""
        monitor = TokenUsageMonitor("run-1")
        monitor.process_chunk(tokens(5000))

        assert monitor.instance_baseline == 5000
        assert monitor.contribution == 0

    def test_small_first_jump_counts_as_usage(self):
        monitor = TokenUsageMonitor("run-1")
        monitor.process_chunk(tokens(1500))

        assert monitor.instance_baseline == 0
        assert monitor.contribution == 1500

    def test_jump_at_threshold_counts_as_usage(self):
        monitor = TokenUsageMonitor("run-1")
        monitor.process_chunk(tokens(2000))

        assert monitor.instance_baseline == 0

    def test_non_increasing_counts_ignored(self):
        monitor = TokenUsageMonitor("run-1")
        monitor.process_chunk(tokens(100))
        monitor.process_chunk(tokens(100))
        monitor.process_chunk(tokens(50))

        assert monitor.last_observed_count == 100
        assert monitor.contribution == 100


class TestSessionResolution:
    """One session request per run."""

    @pytest.mark.asyncio
    async def test_single_create_request(self, fake_manager):
        release = asyncio.Event()

        async def slow_create(sid):
            await release.wait()
            return session("existing")

        fake_manager.create_session = AsyncMock(side_effect=slow_create)
        monitor = TokenUsageMonitor("run-1", fake_manager)

        monitor.process_chunk(tokens(10))
        monitor.process_chunk(tokens(20))
        monitor.process_chunk(tokens(30))
        await asyncio.sleep(0)
        assert monitor.state is MonitorState.STARTED

        release.set()
        await settle(monitor)

        fake_manager.create_session.assert_awaited_once_with("run-1")
        assert monitor.resolved_session_id == "existing"
        assert monitor.state is MonitorState.TRACKING
        fake_manager.increment_session_tokens.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_create_failure_is_logged(self, fake_manager):
        fake_manager.create_session = AsyncMock(side_effect=StoreError("locked"))
        monitor = TokenUsageMonitor("run-1", fake_manager)

        monitor.process_chunk(tokens(10))
        await settle(monitor)

        assert monitor.resolved_session_id is None
        assert monitor.state is MonitorState.STARTED


class TestReporting:
    """Additive deltas once the session is known."""

    @pytest.mark.asyncio
    async def test_reports_full_contribution_after_resolution(self, fake_manager):
        fake_manager.get_active_session.return_value = session("run-1")
        monitor = TokenUsageMonitor("run-1", fake_manager)

        monitor.process_chunk(tokens(1500))
        await settle(monitor)
        monitor.process_chunk(tokens(1800))
        await settle(monitor)

        fake_manager.increment_session_tokens.assert_awaited_once_with("run-1", 1800)
        assert monitor.last_reported_delta == 1800

    @pytest.mark.asyncio
    async def test_resume_reports_only_new_usage(self, fake_manager):
        fake_manager.get_active_session.return_value = session("run-1")
        monitor = TokenUsageMonitor("run-1", fake_manager)

        monitor.process_chunk(tokens(5000))
        await settle(monitor)
        monitor.process_chunk(tokens(5300))
        await settle(monitor)
        monitor.process_chunk(tokens(5350))
        await settle(monitor)

        deltas = [c.args[1] for c in fake_manager.increment_session_tokens.await_args_list]
        assert deltas == [300, 50]

    @pytest.mark.asyncio
    async def test_single_flight_accumulates(self, fake_manager):
        """Increases during an in-flight update are folded into the next one."""
        fake_manager.get_active_session.return_value = session("run-1")
        release = asyncio.Event()

        async def slow_increment(sid, delta):
            await release.wait()
            return 1

        fake_manager.increment_session_tokens = AsyncMock(side_effect=slow_increment)
        monitor = TokenUsageMonitor("run-1", fake_manager)

        monitor.process_chunk(tokens(100))
        await settle(monitor)
        monitor.process_chunk(tokens(200))
        await asyncio.sleep(0)
        monitor.process_chunk(tokens(300))
        monitor.process_chunk(tokens(400))

        release.set()
        await settle(monitor)
        monitor.process_chunk(tokens(450))
        await settle(monitor)

        deltas = [c.args[1] for c in fake_manager.increment_session_tokens.await_args_list]
        assert deltas == [200, 250]
        assert sum(deltas) == monitor.contribution

    @pytest.mark.asyncio
    async def test_failed_update_is_not_retried(self, fake_manager):
        fake_manager.get_active_session.return_value = session("run-1")
        fake_manager.increment_session_tokens = AsyncMock(side_effect=[StoreError("busy"), 1])
        monitor = TokenUsageMonitor("run-1", fake_manager)

        monitor.process_chunk(tokens(100))
        await settle(monitor)
        monitor.process_chunk(tokens(200))
        await settle(monitor)
        monitor.process_chunk(tokens(250))
        await settle(monitor)

        deltas = [c.args[1] for c in fake_manager.increment_session_tokens.await_args_list]
        assert deltas == [200, 50]
        assert monitor.last_reported_delta == 250

    @pytest.mark.asyncio
    async def test_rollover_to_new_window(self, fake_manager):
        """After the window ends a new one is opened for further usage."""
        monitor = TokenUsageMonitor("run-1", fake_manager, id_factory=lambda: "next-window")

        monitor.process_chunk(tokens(100))
        await settle(monitor)
        assert monitor.resolved_session_id == "run-1"

        fake_manager.get_active_session.return_value = None
        monitor.process_chunk(tokens(150))
        await settle(monitor)

        fake_manager.create_session.assert_awaited_with("next-window")
        fake_manager.increment_session_tokens.assert_awaited_once_with("next-window", 150)
        assert monitor.resolved_session_id == "next-window"

    @pytest.mark.asyncio
    async def test_joins_window_opened_by_another_process(self, fake_manager):
        fake_manager.get_active_session.return_value = session("run-1")
        monitor = TokenUsageMonitor("run-1", fake_manager)
        monitor.process_chunk(tokens(100))
        await settle(monitor)

        fake_manager.get_active_session.return_value = session("other")
        monitor.process_chunk(tokens(130))
        await settle(monitor)

        fake_manager.increment_session_tokens.assert_awaited_once_with("other", 130)


class TestEndToEnd:
    """Monitor against a real manager and store."""

    @pytest.mark.asyncio
    async def test_tokens_accumulate_in_store(self, manager, store, read_sessions):
        monitor = TokenUsageMonitor("run-1", manager)

        for count in (500, 900, 1400):
            monitor.process_chunk(tokens(count))
            await settle(monitor)

        assert read_sessions(store)["run-1"] == 1400

    @pytest.mark.asyncio
    async def test_two_runs_share_window_additively(self, manager, store, read_sessions):
        first = TokenUsageMonitor("run-1", manager)
        second = TokenUsageMonitor("run-2", manager)

        first.process_chunk(tokens(100))
        second.process_chunk(tokens(40))
        await settle(first)
        await settle(second)
        first.process_chunk(tokens(300))
        second.process_chunk(tokens(90))
        await settle(first)
        await settle(second)

        shared = first.resolved_session_id
        assert shared is not None
        assert second.resolved_session_id == shared
        assert read_sessions(store) == {shared: 390}


class TestLogFile:
    """Per-run log file."""

    def test_writes_log_and_final_line(self, tmp_path):
        monitor = TokenUsageMonitor("abcdef123456", log_dir=tmp_path)
        monitor.process_chunk(tokens(100))
        monitor.close()

        assert monitor.log_file.parent == tmp_path
        assert monitor.log_file.name.startswith("session-abcdef12-")
        text = monitor.log_file.read_text()
        assert "Session started with first token activity: 100 tokens" in text
        assert "Total tokens used: 100" in text

    def test_closed_monitor_ignores_output(self, tmp_path):
        monitor = TokenUsageMonitor("run-1", log_dir=tmp_path)
        monitor.close()
        monitor.process_chunk(tokens(100))

        assert monitor.last_observed_count == 0
        assert monitor.state is MonitorState.IDLE
