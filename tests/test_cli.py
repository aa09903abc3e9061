"""Tests for yotoctl.cli."""

from __future__ import annotations

import json
from datetime import time
from unittest.mock import AsyncMock, patch

import pytest
from typer.testing import CliRunner

from yotoctl.cli import _parse_days, app
from yotoctl.commands import PlayCard, SetAmbientLight, SetNightLight
from yotoctl.connection import ConnectionManager
from yotoctl.exceptions import AuthError, NotConnectedError
from yotoctl.schedules import RepeatMode, ScheduleStore
from yotoctl.tokens import SavedTokenProvider

runner = CliRunner()


@pytest.fixture
def schedule_file(tmp_path):
    path = tmp_path / "schedules.json"
    with patch("yotoctl.cli.SCHEDULE_FILE", path):
        yield path


@pytest.fixture
def saved_tokens(tmp_path):
    provider = SavedTokenProvider({"accessToken": "tok"}, path=tmp_path / "tokens.json")
    with patch.object(SavedTokenProvider, "from_saved", return_value=provider):
        yield provider


@pytest.fixture
def manager_mocks():
    with (
        patch.object(ConnectionManager, "connect", AsyncMock()) as connect,
        patch.object(ConnectionManager, "publish", AsyncMock()) as publish,
        patch.object(ConnectionManager, "disconnect", AsyncMock()) as disconnect,
    ):
        yield connect, publish, disconnect


class TestLogin:
    def test_saves_tokens(self, tmp_path):
        path = tmp_path / "tokens.json"
        with patch("yotoctl.cli.TOKEN_FILE", path):
            result = runner.invoke(app, ["login"], input="access-1\nrefresh-1\n")

        assert result.exit_code == 0
        assert "Tokens saved" in result.output
        saved = json.loads(path.read_text())
        assert saved["accessToken"] == "access-1"
        assert saved["refreshToken"] == "refresh-1"


class TestDeviceCommands:
    def test_play(self, saved_tokens, manager_mocks):
        connect, publish, disconnect = manager_mocks
        result = runner.invoke(app, ["play", "abc", "https://yoto.io/xyz", "--chapter", "02"])

        assert result.exit_code == 0
        assert "Command sent to abc." in result.output
        connect.assert_awaited_once_with("abc")
        publish.assert_awaited_once_with("abc", PlayCard("https://yoto.io/xyz", chapter_key="02"))
        disconnect.assert_awaited_once_with("abc")

    def test_light_from_colour(self, saved_tokens, manager_mocks):
        _, publish, _ = manager_mocks
        result = runner.invoke(app, ["light", "abc", "--color", "#FFFFFF", "-b", "50"])

        assert result.exit_code == 0
        publish.assert_awaited_once_with("abc", SetAmbientLight(128, 128, 128))

    def test_light_raw_channels(self, saved_tokens, manager_mocks):
        _, publish, _ = manager_mocks
        result = runner.invoke(app, ["light", "abc", "255", "0", "10"])

        assert result.exit_code == 0
        publish.assert_awaited_once_with("abc", SetAmbientLight(255, 0, 10))

    def test_light_off(self, saved_tokens, manager_mocks):
        _, publish, _ = manager_mocks
        result = runner.invoke(app, ["light", "abc", "--off"])

        assert result.exit_code == 0
        publish.assert_awaited_once_with("abc", SetAmbientLight(0, 0, 0))

    def test_light_needs_a_colour(self, saved_tokens, manager_mocks):
        _, publish, _ = manager_mocks
        result = runner.invoke(app, ["light", "abc"])

        assert result.exit_code == 1
        assert "--color" in result.output
        publish.assert_not_awaited()

    def test_light_invalid_hex(self, saved_tokens, manager_mocks):
        result = runner.invoke(app, ["light", "abc", "--color", "zz"])
        assert result.exit_code == 1
        assert "Invalid colour" in result.output

    def test_night_light(self, saved_tokens, manager_mocks):
        _, publish, _ = manager_mocks
        result = runner.invoke(app, ["night-light", "abc", "on", "-b", "40"])

        assert result.exit_code == 0
        publish.assert_awaited_once_with("abc", SetNightLight(True, 40))

    def test_night_light_invalid_state(self, saved_tokens, manager_mocks):
        result = runner.invoke(app, ["night-light", "abc", "dim"])
        assert result.exit_code == 1
        assert "Expected: on | off" in result.output

    def test_auth_failure_shows_hint(self, saved_tokens, manager_mocks):
        connect, _, _ = manager_mocks
        connect.side_effect = AuthError("abc", "The broker rejected the credential.")
        result = runner.invoke(app, ["pause", "abc"])

        assert result.exit_code == 1
        assert "rejected the credential" in result.output
        assert "yotoctl login" in result.output

    def test_publish_failure_disconnects(self, saved_tokens, manager_mocks):
        _, publish, disconnect = manager_mocks
        publish.side_effect = NotConnectedError("abc", "Not connected to abc.")
        result = runner.invoke(app, ["stop", "abc"])

        assert result.exit_code == 1
        disconnect.assert_awaited_once_with("abc")

    def test_missing_tokens(self, tmp_path):
        with patch("yotoctl.cli.TOKEN_FILE", tmp_path / "missing.json"):
            result = runner.invoke(app, ["resume", "abc"])

        assert result.exit_code == 1
        assert "yotoctl login" in result.output


class TestWatch:
    def test_exits_when_no_player_connects(self, saved_tokens, manager_mocks):
        connect, _, _ = manager_mocks
        connect.side_effect = AuthError("abc", "Token expired.")
        result = runner.invoke(app, ["watch", "abc"])

        assert result.exit_code == 1
        assert "abc: Token expired." in result.output


class TestParseDays:
    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("daily", set(range(7))),
            ("weekdays", {1, 2, 3, 4, 5}),
            ("Weekends", {0, 6}),
            ("mon,wed", {1, 3}),
            ("monday, friday", {1, 5}),
            ("0,6", {0, 6}),
        ],
    )
    def test_valid(self, text, expected):
        assert _parse_days(text) == expected

    def test_invalid(self):
        with pytest.raises(ValueError, match="Invalid day"):
            _parse_days("someday")


class TestSchedules:
    def test_add(self, schedule_file):
        result = runner.invoke(
            app,
            [
                "schedule", "add", "abc", "https://yoto.io/xyz",
                "--at", "07:30", "--days", "weekdays", "--once", "--title", "Wake up",
            ],
        )

        assert result.exit_code == 0
        assert "Created schedule" in result.output
        [schedule] = ScheduleStore(schedule_file).list()
        assert schedule.time_of_day == time(7, 30)
        assert schedule.days_of_week == frozenset({1, 2, 3, 4, 5})
        assert schedule.repeat_mode is RepeatMode.NONE
        assert schedule.card_title == "Wake up"

    def test_add_invalid_time(self, schedule_file):
        result = runner.invoke(app, ["schedule", "add", "abc", "u", "--at", "7pm"])
        assert result.exit_code == 1
        assert "Expected HH:MM" in result.output
        assert not schedule_file.exists()

    def test_list_empty(self, schedule_file):
        result = runner.invoke(app, ["schedule", "list"])
        assert result.exit_code == 0
        assert "No schedules." in result.output

    def test_list(self, schedule_file):
        runner.invoke(app, ["schedule", "add", "abc", "u", "--at", "08:00", "--title", "Songs"])
        result = runner.invoke(app, ["schedule", "list"])

        assert result.exit_code == 0
        assert "Songs" in result.output
        assert "Every day" in result.output

    def test_list_json(self, schedule_file):
        runner.invoke(app, ["schedule", "add", "abc", "u", "--at", "08:00"])
        runner.invoke(app, ["schedule", "add", "def", "u", "--at", "09:00"])
        result = runner.invoke(app, ["schedule", "list", "--device", "def", "--json"])

        assert result.exit_code == 0
        [item] = json.loads(result.output)
        assert item["deviceId"] == "def"
        assert item["timeOfDay"] == "09:00"

    def test_disable_enable_remove(self, schedule_file):
        runner.invoke(app, ["schedule", "add", "abc", "u", "--at", "08:00"])
        [schedule] = ScheduleStore(schedule_file).list()

        result = runner.invoke(app, ["schedule", "disable", schedule.id])
        assert result.exit_code == 0
        assert ScheduleStore(schedule_file).get(schedule.id).enabled is False

        result = runner.invoke(app, ["schedule", "next", schedule.id])
        assert "Will not run again." in result.output

        result = runner.invoke(app, ["schedule", "enable", schedule.id])
        assert f"Schedule {schedule.id} enabled." in result.output

        result = runner.invoke(app, ["schedule", "remove", schedule.id])
        assert result.exit_code == 0
        assert len(ScheduleStore(schedule_file)) == 0

    def test_unknown_id(self, schedule_file):
        for command in ("remove", "enable", "next"):
            result = runner.invoke(app, ["schedule", command, "nope"])
            assert result.exit_code == 1
            assert "No schedule with id 'nope'." in result.output
