"""Tests for the office-messaging command line."""

import json
import logging
from unittest.mock import AsyncMock

import pytest
from click.testing import CliRunner

from office_messaging import config, storage
from office_messaging.cache import ClientCacheManager
from office_messaging.cli import cli
from office_messaging.storage import MemoryStore
from office_messaging.version import __version__


class BrokenStore(MemoryStore):
    def set(self, key, value):
        raise OSError("read-only file system")


@pytest.fixture(autouse=True)
def restore_logger():
    """configure_logging() attaches handlers bound to the runner's streams."""
    pkg_logger = logging.getLogger("office_messaging")
    handlers = list(pkg_logger.handlers)
    level = pkg_logger.level
    yield
    for handler in list(pkg_logger.handlers):
        if handler not in handlers:
            pkg_logger.removeHandler(handler)
    pkg_logger.setLevel(level)


@pytest.fixture
def runner():
    return CliRunner()


def settings_json(runner):
    result = runner.invoke(cli, ["settings", "show", "--json"])
    assert result.exit_code == 0
    return json.loads(result.output)


class TestCli:
    def test_version(self, runner):
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_help_lists_commands(self, runner):
        result = runner.invoke(cli, ["-h"])
        assert result.exit_code == 0
        for command in ("listen", "cache", "settings", "status"):
            assert command in result.output

    def test_listen_requires_user(self, runner):
        result = runner.invoke(cli, ["listen"])
        assert result.exit_code == 2
        assert "--user-id" in result.output


class TestSettingsCommands:
    def test_show_defaults(self, runner):
        result = runner.invoke(cli, ["settings", "show"])
        assert result.exit_code == 0
        assert "Notifications: on" in result.output
        assert "Preview: full" in result.output
        assert "Quiet hours: off" in result.output

    def test_quiet_hours(self, runner):
        result = runner.invoke(cli, ["settings", "quiet-hours", "22:00", "07:00"])
        assert result.exit_code == 0
        assert "✓ Quiet hours set to 22:00-07:00" in result.output

        assert settings_json(runner)["quietHours"] == {
            "enabled": True, "start": "22:00", "end": "07:00",
        }
        assert "Quiet hours: 22:00-07:00" in runner.invoke(cli, ["settings", "show"]).output

    def test_quiet_hours_invalid_time(self, runner):
        result = runner.invoke(cli, ["settings", "quiet-hours", "25:00", "07:00"])
        assert result.exit_code == 2
        assert "Invalid time of day" in result.output
        assert settings_json(runner)["quietHours"]["enabled"] is False

    def test_quiet_hours_same_start_and_end(self, runner):
        result = runner.invoke(cli, ["settings", "quiet-hours", "08:00", "08:00"])
        assert result.exit_code == 0
        assert "never be active" in result.output

    def test_quiet_hours_off(self, runner):
        runner.invoke(cli, ["settings", "quiet-hours", "21:00", "06:00"])
        result = runner.invoke(cli, ["settings", "quiet-hours-off"])

        assert result.exit_code == 0
        quiet = settings_json(runner)["quietHours"]
        assert quiet == {"enabled": False, "start": "21:00", "end": "06:00"}

    def test_mute_and_unmute(self, runner):
        result = runner.invoke(cli, ["settings", "mute", "C1"])
        assert result.exit_code == 0
        assert "✓ Muted C1" in result.output
        assert "C1: muted" in runner.invoke(cli, ["settings", "show"]).output

        result = runner.invoke(cli, ["settings", "unmute", "C1"])
        assert result.exit_code == 0
        assert settings_json(runner)["conversations"] == {}

    def test_grouping(self, runner):
        result = runner.invoke(cli, ["settings", "grouping", "off"])
        assert result.exit_code == 0
        assert settings_json(runner)["grouping"] is False

    def test_grouping_rejects_other_values(self, runner):
        result = runner.invoke(cli, ["settings", "grouping", "maybe"])
        assert result.exit_code == 2

    def test_save_failure(self, runner, monkeypatch):
        monkeypatch.setattr(storage, "_default_store", BrokenStore())

        result = runner.invoke(cli, ["settings", "mute", "C1"])

        assert result.exit_code == 1
        assert "Error: Failed to save notification settings" in result.output

    def test_settings_survive_between_runs(self, runner, monkeypatch):
        runner.invoke(cli, ["settings", "grouping", "off"])
        monkeypatch.setattr(storage, "_default_store", None)

        assert settings_json(runner)["grouping"] is False


class TestCacheCommands:
    def test_keys_empty(self, runner):
        result = runner.invoke(cli, ["cache", "keys"])
        assert result.exit_code == 0
        assert "Cache is empty" in result.output

    def test_keys_and_stats(self, runner):
        ClientCacheManager().set("classes", [{"id": "7B"}])

        result = runner.invoke(cli, ["cache", "keys"])
        assert result.output.strip() == "classes"

        result = runner.invoke(cli, ["cache", "stats"])
        assert result.exit_code == 0
        assert "Entries" in result.output
        assert "1.0.0" in result.output

    def test_clear(self, runner):
        manager = ClientCacheManager()
        manager.set("a", 1)
        manager.set("b", 2)

        result = runner.invoke(cli, ["cache", "clear", "-y"])

        assert result.exit_code == 0
        assert "✓ Removed 2 entries" in result.output
        assert manager.keys() == []

    def test_clear_asks_first(self, runner):
        manager = ClientCacheManager()
        manager.set("a", 1)

        result = runner.invoke(cli, ["cache", "clear"], input="n\n")

        assert result.exit_code == 0
        assert manager.keys() == ["a"]

    def test_cleanup(self, runner):
        ClientCacheManager().set("fresh", 2)
        store = storage.get_store()
        store.set(config.CACHE_PREFIX + "old", json.dumps({
            "data": 1, "timestamp": 1.0, "expiresAt": 2.0, "version": config.CACHE_VERSION,
        }))

        result = runner.invoke(cli, ["cache", "cleanup"])

        assert result.exit_code == 0
        assert "✓ Removed 1 expired entries, evicted 0" in result.output
        assert ClientCacheManager().keys() == ["fresh"]


class TestStatusCommand:
    def test_status_online(self, runner):
        result = runner.invoke(cli, ["status"])
        assert result.exit_code == 0
        assert "Network: online" in result.output
        assert "Was offline: no" in result.output
        assert config.REACHABILITY_URL in result.output

    def test_status_check_offline(self, runner, monkeypatch):
        monkeypatch.setattr("office_messaging.offline.http_probe", AsyncMock(return_value=False))

        result = runner.invoke(cli, ["status", "--check"])

        assert result.exit_code == 0
        assert "Network: offline" in result.output
        assert "Was offline: yes" in result.output
        assert "Offline since:" in result.output

    def test_status_remembers_last_check(self, runner, monkeypatch):
        monkeypatch.setattr("office_messaging.offline.http_probe", AsyncMock(return_value=False))
        runner.invoke(cli, ["status", "--check"])

        result = runner.invoke(cli, ["status"])

        assert result.exit_code == 0
        assert "Network: offline (last known)" in result.output
        assert "Offline since:" in result.output
