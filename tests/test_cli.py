"""Unit tests for CLI commands."""

import io
from unittest import mock
from unittest.mock import AsyncMock, MagicMock

import pytest
from click.testing import CliRunner

from roomlink import config as config_module
from roomlink.cli import _handle_command, cli, run_join


@pytest.fixture
def runner():
    """Create a CLI runner for testing."""
    return CliRunner()


@pytest.fixture
def clean_config(tmp_path, monkeypatch):
    """Load configuration from an empty directory without env overrides."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    for var in ("ROOMLINK_ENV", "ROOMLINK_SIGNALING_WS", "ROOMLINK_CALL_API_URL"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setattr(config_module, "_config", None)


class TestHelp:
    @pytest.mark.parametrize("command", [[], ["serve"], ["join"], ["config"]])
    def test_help(self, runner, command):
        result = runner.invoke(cli, command + ["--help"])
        assert result.exit_code == 0
        assert "Usage" in result.output

    def test_invalid_log_level(self, runner):
        result = runner.invoke(cli, ["--log-level", "LOUD", "config"])
        assert result.exit_code != 0


class TestConfigCommand:
    def test_shows_defaults(self, runner, clean_config):
        result = runner.invoke(cli, ["config"])

        assert result.exit_code == 0
        assert "ws://localhost:8765" in result.output
        assert "http://localhost:3001" in result.output
        assert "disabled" in result.output

    def test_env_override_shown(self, runner, clean_config, monkeypatch):
        monkeypatch.setenv("ROOMLINK_SIGNALING_WS", "ws://elsewhere:9000")

        result = runner.invoke(cli, ["config"])

        assert "ws://elsewhere:9000" in result.output


class TestJoinCommand:
    def test_join_runs_session(self, runner, clean_config):
        with mock.patch("roomlink.cli.run_join", new=AsyncMock()) as run_join:
            result = runner.invoke(
                cli, ["join", "--name", "alice", "--room", "r1", "--server", "ws://x:1"]
            )

        assert result.exit_code == 0
        config, name, room, media, call_id = run_join.await_args.args
        assert config.signaling_websocket == "ws://x:1"
        assert (name, room, media, call_id) == ("alice", "r1", False, None)

    def test_join_failure_exits_nonzero(self, runner, clean_config):
        failing = AsyncMock(side_effect=RuntimeError("unreachable"))
        with mock.patch("roomlink.cli.run_join", new=failing):
            result = runner.invoke(cli, ["join"])

        assert result.exit_code == 1


class TestInteractiveCommands:
    @pytest.fixture
    def manager(self):
        manager = MagicMock()
        manager.switch_room = AsyncMock()
        manager.change_identity = AsyncMock()
        manager.send_file = AsyncMock(return_value=None)
        manager.peers = []
        return manager

    @pytest.mark.asyncio
    async def test_plain_text_is_chat(self, manager):
        assert await _handle_command(manager, "hello there")
        manager.send_application_message.assert_called_once_with("hello there")

    @pytest.mark.asyncio
    async def test_quit(self, manager):
        assert not await _handle_command(manager, "/quit")

    @pytest.mark.asyncio
    async def test_room_switch(self, manager):
        await _handle_command(manager, "/room standup")
        await _handle_command(manager, "/room")

        assert [c.args for c in manager.switch_room.await_args_list] == [
            ("standup",),
            (None,),
        ]

    @pytest.mark.asyncio
    async def test_media_toggles(self, manager):
        await _handle_command(manager, "/audio off")
        await _handle_command(manager, "/video on")

        manager.toggle_local_audio.assert_called_once_with(False)
        manager.toggle_local_video.assert_called_once_with(True)

    @pytest.mark.asyncio
    async def test_file_send_error_is_reported(self, manager):
        manager.send_file.side_effect = FileNotFoundError("missing.txt")

        assert await _handle_command(manager, "/file missing.txt")

    @pytest.mark.asyncio
    async def test_run_join_reads_stdin_until_quit(self, manager, monkeypatch):
        manager.start = AsyncMock()
        manager.shutdown = AsyncMock()
        monkeypatch.setattr("sys.stdin", io.StringIO("hello\n/quit\nignored\n"))

        with mock.patch("roomlink.session.SessionManager", return_value=manager):
            await run_join(MagicMock(), "alice", "r1", False, "call-1")

        manager.start.assert_awaited_once_with("alice", "r1")
        manager.send_application_message.assert_called_once_with("hello")
        manager.shutdown.assert_awaited_once()
        assert manager.active_call_id == "call-1"
