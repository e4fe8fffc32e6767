"""Exception hierarchy for santa-claude."""


class SantaClaudeError(Exception):
    """Base class for all santa-claude errors."""


class ValidationError(SantaClaudeError, ValueError):
    """Input rejected before any store access (bad id, day, limit, delta)."""


class ConfigError(SantaClaudeError):
    """Configuration could not be persisted or holds invalid values."""


class StoreError(SantaClaudeError):
    """The session store failed (connection, I/O, SQL error)."""


class SessionConflictError(StoreError):
    """An insert lost the race against another writer.

    Raised when the candidate id already exists or when another session
    already covers the current instant. Callers treat this as a signal to
    re-read the active session, not as a failure.
    """


class ProcessError(SantaClaudeError):
    """The wrapped program exited with a non-zero status."""

    def __init__(self, message: str, exit_code: int) -> None:
        super().__init__(message)
        self.exit_code = exit_code
