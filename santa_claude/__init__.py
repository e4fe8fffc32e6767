"""Session and token usage tracker for Claude Code.

This package wraps the interactive ``claude`` CLI in a pseudo-terminal,
watches its rendered output for the token counter, and keeps a local record
of fixed-length usage windows ("sessions") together with cumulative token
totals. A short status label with the time left in the current window is
injected next to the counter on the wrapped program's own screen.

Modules:
    - models: Pydantic models, typed store rows and tunable settings
    - cache: Expiring key/value cache used for session and aggregate lookups
    - config: JSON-backed user configuration
    - store: SQLite session store
    - session_manager: Session window lifecycle and aggregate statistics
    - token_monitor: Token counter parsing and usage reconciliation
    - status_injector: In-place status label injection into output chunks
    - log_manager: Retention of per-session log files
    - bridge: PTY bridge to the wrapped program
    - wrapper: Orchestration of one wrapped run plus report rendering
"""

import logging

__version__ = "1.0.0"

__all__ = [
    "__version__",
    "configure_logging",
]


def configure_logging(
    level: str = "WARNING",
    format_string: str | None = None,
) -> logging.Logger:
    """Configure package-level logging.

    Logs always go to stderr; stdout belongs to the wrapped program.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format_string: Custom format string. Defaults to standard format
            with timestamp, level, module, and message.

    Returns:
        Configured logger instance for the santa_claude package.
    """
    if format_string is None:
        format_string = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"

    logger = logging.getLogger("santa_claude")
    logger.setLevel(getattr(logging, level.upper(), logging.WARNING))

    # Remove existing handlers to avoid duplicates
    logger.handlers.clear()

    handler = logging.StreamHandler()
    handler.setLevel(logger.level)
    handler.setFormatter(logging.Formatter(format_string))
    logger.addHandler(handler)

    return logger

