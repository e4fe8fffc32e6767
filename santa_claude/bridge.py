"""PTY bridge to the wrapped program.

Runs the wrapped program on a pseudo-terminal so it keeps its interactive
UI, forwards raw keystrokes to it, and hands every output chunk to a filter
callback before writing the (possibly rewritten) chunk to the real terminal.

Everything runs on the event loop: both file descriptors are watched with
``loop.add_reader`` and the filter must not block.
"""

import asyncio
import fcntl
import logging
import os
import pty
import shutil
import signal
import struct
import sys
import termios
import tty
from typing import Callable, Optional

logger = logging.getLogger(__name__)

READ_SIZE = 4096


def write_all(fd: int, data: bytes) -> None:
    """Write every byte of ``data`` to ``fd``."""
    view = memoryview(data)
    while view:
        try:
            written = os.write(fd, view)
        except BlockingIOError:
            continue
        view = view[written:]


def set_window_size(fd: int) -> None:
    """Copy the controlling terminal's size onto the PTY behind ``fd``."""
    size = shutil.get_terminal_size(fallback=(80, 24))
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", size.lines, size.columns, 0, 0))


class TerminalBridge:
    """Spawns ``command`` on a PTY and pumps bytes in both directions."""

    def __init__(
        self,
        command: list[str],
        on_output: Callable[[bytes], bytes],
        stdin_fd: Optional[int] = None,
        stdout_fd: Optional[int] = None,
    ) -> None:
        """Initialize the bridge.

        Args:
            command: Program and arguments to run
            on_output: Called with each raw output chunk; returns the chunk
                to forward to the terminal
            stdin_fd: Keyboard input (default: sys.stdin)
            stdout_fd: Terminal output (default: sys.stdout)
        """
        self.command = command
        self.on_output = on_output
        self.stdin_fd = sys.stdin.fileno() if stdin_fd is None else stdin_fd
        self.stdout_fd = sys.stdout.fileno() if stdout_fd is None else stdout_fd
        self._master_fd: Optional[int] = None
        self._eof: Optional[asyncio.Event] = None

    async def run(self) -> int:
        """Run the program to completion and return its exit code."""
        loop = asyncio.get_running_loop()
        self._eof = asyncio.Event()

        pid, master_fd = pty.fork()
        if pid == 0:
            try:
                os.execvp(self.command[0], self.command)
            except OSError as e:
                os.write(2, f"Failed to start {self.command[0]}: {e}\n".encode())
            os._exit(127)

        self._master_fd = master_fd
        logger.debug(f"Started {self.command[0]} (pid {pid})")

        interactive = os.isatty(self.stdin_fd)
        saved_attrs = None
        try:
            if interactive:
                set_window_size(master_fd)
                saved_attrs = termios.tcgetattr(self.stdin_fd)
                tty.setraw(self.stdin_fd)
                loop.add_signal_handler(signal.SIGWINCH, self._resize)

            loop.add_reader(master_fd, self._on_master_readable)
            loop.add_reader(self.stdin_fd, self._on_stdin_readable)

            await self._eof.wait()
            _, status = await asyncio.to_thread(os.waitpid, pid, 0)
        finally:
            loop.remove_reader(master_fd)
            loop.remove_reader(self.stdin_fd)
            if interactive:
                loop.remove_signal_handler(signal.SIGWINCH)
            if saved_attrs is not None:
                termios.tcsetattr(self.stdin_fd, termios.TCSAFLUSH, saved_attrs)
            os.close(master_fd)
            self._master_fd = None

        exit_code = os.waitstatus_to_exitcode(status)
        logger.debug(f"{self.command[0]} exited with {exit_code}")
        return exit_code

    def _resize(self) -> None:
        if self._master_fd is not None:
            set_window_size(self._master_fd)

    def _on_master_readable(self) -> None:
        try:
            data = os.read(self._master_fd, READ_SIZE)
        except OSError:
            # EIO once the child closes its side of the PTY
            data = b""

        if not data:
            asyncio.get_running_loop().remove_reader(self._master_fd)
            self._eof.set()
            return

        write_all(self.stdout_fd, self.on_output(data))

    def _on_stdin_readable(self) -> None:
        try:
            data = os.read(self.stdin_fd, READ_SIZE)
        except OSError:
            data = b""

        if not data:
            asyncio.get_running_loop().remove_reader(self.stdin_fd)
            return

        if self._master_fd is not None:
            write_all(self._master_fd, data)
