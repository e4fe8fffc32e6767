"""Configuration paths and user configuration for santa-claude.

The user configuration lives in ``~/.santa-claude/config.json``. A missing
or unreadable file falls back to defaults, which are written back so the
user has a file to edit.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Final, Optional

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from .errors import ConfigError, ValidationError

logger = logging.getLogger(__name__)


def _base_dir() -> Path:
    override = os.environ.get("SANTA_CLAUDE_HOME")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".santa-claude"


class ConfigPaths:
    """Default file locations.

    ``SANTA_CLAUDE_HOME`` relocates everything; ``SANTA_CLAUDE_DB`` points
    the store somewhere else (``:memory:`` is accepted).
    """

    BASE_DIR: Final[Path] = _base_dir()
    CONFIG_FILE: Final[Path] = BASE_DIR / "config.json"
    LOG_DIR: Final[Path] = BASE_DIR / "logs"
    DB_FILE: Final[Path] = BASE_DIR / "sessions.db"

    @classmethod
    def database(cls) -> str:
        return os.environ.get("SANTA_CLAUDE_DB") or str(cls.DB_FILE)


class AppConfig(BaseModel):
    """Persisted user configuration."""

    session_length_hours: float = Field(
        default=5.0, gt=0, description="Length of one usage window in hours"
    )
    subscription_renewal_day: Optional[int] = Field(
        default=None, ge=1, le=31, description="Day of month the subscription renews"
    )


class ConfigStore:
    """JSON file backed configuration.

    The loaded config is cached in memory; every write goes through an
    atomic temp-file rename.
    """

    def __init__(self, config_file: Optional[Path] = None) -> None:
        self.config_file = config_file or ConfigPaths.CONFIG_FILE
        self._config: Optional[AppConfig] = None

    def load(self) -> AppConfig:
        """Load the configuration, falling back to defaults."""
        if self._config is not None:
            return self._config

        try:
            with open(self.config_file) as f:
                data = json.load(f)
            self._config = AppConfig.model_validate(data)
            logger.debug(f"Loaded config from {self.config_file}")
        except FileNotFoundError:
            logger.info(f"No config at {self.config_file}, writing defaults")
            self._config = AppConfig()
            self._try_save()
        except (json.JSONDecodeError, PydanticValidationError, OSError) as e:
            logger.warning(f"Invalid config {self.config_file}: {e}; using defaults")
            self._config = AppConfig()
            self._try_save()

        return self._config

    def save(self) -> None:
        """Write the current configuration (atomic write).

        Raises:
            ConfigError: If the file cannot be written
        """
        config = self._config or AppConfig()
        try:
            self.config_file.parent.mkdir(parents=True, exist_ok=True)
            fd, temp_path = tempfile.mkstemp(
                dir=self.config_file.parent, prefix=".config-", suffix=".json"
            )
            try:
                with os.fdopen(fd, "w") as f:
                    json.dump(config.model_dump(mode="json"), f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(temp_path, self.config_file)
            except BaseException:
                if os.path.exists(temp_path):
                    os.unlink(temp_path)
                raise
        except OSError as e:
            raise ConfigError(f"Failed to save config to {self.config_file}: {e}") from e

    def _try_save(self) -> None:
        try:
            self.save()
        except ConfigError as e:
            logger.warning(str(e))

    def session_length_hours(self) -> float:
        return self.load().session_length_hours

    def session_length_ms(self) -> int:
        return int(self.session_length_hours() * 60 * 60 * 1000)

    def update_session_length(self, hours: float) -> None:
        if hours <= 0:
            raise ValidationError("Session length must be greater than 0 hours")
        self._config = self.load().model_copy(update={"session_length_hours": hours})
        self.save()

    def subscription_renewal_day(self) -> Optional[int]:
        return self.load().subscription_renewal_day

    def set_subscription_renewal_day(self, day: Optional[int]) -> None:
        if day is not None and (isinstance(day, bool) or not 1 <= day <= 31):
            raise ValidationError("Subscription renewal day must be between 1 and 31")
        self._config = self.load().model_copy(update={"subscription_renewal_day": day})
        self.save()
