"""Tests for the JSON configuration store."""

import json
from pathlib import Path

import pytest

from santa_claude.config import AppConfig, ConfigPaths, ConfigStore
from santa_claude.errors import ConfigError, ValidationError


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    return tmp_path / "santa" / "config.json"


class TestLoad:
    """Loading with fallback to defaults."""

    def test_missing_file_writes_defaults(self, config_file):
        store = ConfigStore(config_file)

        config = store.load()

        assert config == AppConfig()
        assert json.loads(config_file.read_text()) == {
            "session_length_hours": 5.0,
            "subscription_renewal_day": None,
        }

    def test_reads_existing_file(self, config_file):
        config_file.parent.mkdir(parents=True)
        config_file.write_text(json.dumps({"session_length_hours": 2.5, "subscription_renewal_day": 9}))

        store = ConfigStore(config_file)

        assert store.session_length_hours() == 2.5
        assert store.session_length_ms() == 9_000_000
        assert store.subscription_renewal_day() == 9

    @pytest.mark.parametrize(
        "content",
        [
            "{not json",
            json.dumps({"session_length_hours": -1}),
            json.dumps({"subscription_renewal_day": 40}),
        ],
    )
    def test_invalid_file_falls_back_to_defaults(self, config_file, content):
        config_file.parent.mkdir(parents=True)
        config_file.write_text(content)

        assert ConfigStore(config_file).load() == AppConfig()
        assert json.loads(config_file.read_text())["session_length_hours"] == 5.0

    def test_loaded_config_is_cached(self, config_file):
        store = ConfigStore(config_file)
        store.load()
        config_file.write_text(json.dumps({"session_length_hours": 1.0}))

        assert store.session_length_hours() == 5.0

        assert ConfigStore(config_file).session_length_hours() == 1.0


class TestUpdates:
    """Validated writes."""

    def test_update_session_length_persists(self, config_file):
        ConfigStore(config_file).update_session_length(2.5)

        assert ConfigStore(config_file).session_length_hours() == 2.5

    @pytest.mark.parametrize("hours", [0, -3])
    def test_update_session_length_rejects_non_positive(self, config_file, hours):
        with pytest.raises(ValidationError):
            ConfigStore(config_file).update_session_length(hours)

    def test_set_subscription_renewal_day_persists(self, config_file):
        store = ConfigStore(config_file)
        store.update_session_length(3)
        store.set_subscription_renewal_day(15)

        reloaded = ConfigStore(config_file)
        assert reloaded.subscription_renewal_day() == 15
        assert reloaded.session_length_hours() == 3

    @pytest.mark.parametrize("day", [0, 32, True])
    def test_set_subscription_renewal_day_rejects_out_of_range(self, config_file, day):
        with pytest.raises(ValidationError):
            ConfigStore(config_file).set_subscription_renewal_day(day)

    def test_clear_subscription_renewal_day(self, config_file):
        store = ConfigStore(config_file)
        store.set_subscription_renewal_day(15)
        store.set_subscription_renewal_day(None)

        assert ConfigStore(config_file).subscription_renewal_day() is None

    def test_save_leaves_no_temp_files(self, config_file):
        ConfigStore(config_file).update_session_length(4)

        assert [p.name for p in config_file.parent.iterdir()] == ["config.json"]

    def test_unwritable_location_raises_config_error(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("")
        store = ConfigStore(blocker / "config.json")

        with pytest.raises(ConfigError):
            store.update_session_length(2)


class TestPaths:
    """Environment overrides."""

    def test_database_override(self, monkeypatch):
        monkeypatch.setenv("SANTA_CLAUDE_DB", ":memory:")
        assert ConfigPaths.database() == ":memory:"

    def test_database_default(self, monkeypatch):
        monkeypatch.delenv("SANTA_CLAUDE_DB", raising=False)
        assert ConfigPaths.database() == str(ConfigPaths.BASE_DIR / "sessions.db")
