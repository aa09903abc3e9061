"""Tests for yotoctl.commands."""

from __future__ import annotations

import json

import pytest

from yotoctl.commands import (
    DEFAULT_NIGHT_LIGHT_BRIGHTNESS,
    Pause,
    PlayCard,
    RequestStatus,
    Resume,
    SetAmbientLight,
    SetNightLight,
    Stop,
    decode,
    encode,
    hex_to_rgb,
)


class TestEncode:
    def test_ambient_light_topic_and_payload(self):
        topic, payload = encode("abc", SetAmbientLight(255, 0, 0))
        assert topic == "device/abc/command/ambients"
        assert payload == '{"r":255,"g":0,"b":0}'

    def test_ambient_light_clamps_channels(self):
        _, payload = encode("abc", SetAmbientLight(300, -5, 128))
        assert json.loads(payload) == {"r": 255, "g": 0, "b": 128}

    def test_ambient_light_swap_red_blue(self):
        _, payload = encode("abc", SetAmbientLight(255, 10, 0), swap_red_blue=True)
        assert json.loads(payload) == {"r": 0, "g": 10, "b": 255}

    def test_play_card_minimal(self):
        topic, payload = encode("abc", PlayCard("https://yoto.io/xyz"))
        assert topic == "device/abc/command/card/start"
        assert json.loads(payload) == {"uri": "https://yoto.io/xyz"}

    def test_play_card_all_options(self):
        _, payload = encode(
            "abc",
            PlayCard(
                "https://yoto.io/xyz",
                chapter_key="01",
                track_key="02",
                seconds_in=0,
                cut_off=30,
                any_button_stop=False,
            ),
        )
        assert json.loads(payload) == {
            "uri": "https://yoto.io/xyz",
            "chapterKey": "01",
            "trackKey": "02",
            "secondsIn": 0,
            "cutOff": 30,
            "anyButtonStop": False,
        }

    @pytest.mark.parametrize(
        ("command", "suffix"),
        [(Pause(), "card/pause"), (Resume(), "card/resume"), (Stop(), "card/stop")],
    )
    def test_playback_controls(self, command, suffix):
        topic, payload = encode("abc", command)
        assert topic == f"device/abc/command/{suffix}"
        assert payload == "{}"

    def test_night_light_enable(self):
        topic, payload = encode("abc", SetNightLight(True, 40))
        assert topic == "device/abc/command/night-light/enable"
        assert json.loads(payload) == {"brightness": 40}

    def test_night_light_enable_default_brightness(self):
        _, payload = encode("abc", SetNightLight(True))
        assert json.loads(payload) == {"brightness": DEFAULT_NIGHT_LIGHT_BRIGHTNESS}

    def test_night_light_disable(self):
        topic, payload = encode("abc", SetNightLight(False, 40))
        assert topic == "device/abc/command/night-light/disable"
        assert payload == "{}"

    def test_request_status(self):
        assert encode("abc", RequestStatus()) == ("device/abc/command/events", "")

    def test_no_spaces_in_json(self):
        _, payload = encode("abc", PlayCard("u", chapter_key="01"))
        assert " " not in payload

    def test_unsupported_command(self):
        with pytest.raises(TypeError, match="Unsupported command"):
            encode("abc", object())  # type: ignore[arg-type]


class TestBrightness:
    def test_half_white_rounds_up(self):
        assert SetAmbientLight.from_brightness(50, "#FFFFFF") == SetAmbientLight(128, 128, 128)

    def test_full_brightness_keeps_colour(self):
        assert SetAmbientLight.from_brightness(100, "#FF8000") == SetAmbientLight(255, 128, 0)

    def test_brightness_is_clamped(self):
        assert SetAmbientLight.from_brightness(150, "#102030") == SetAmbientLight(16, 32, 48)
        assert SetAmbientLight.from_brightness(-10, "#FFFFFF") == SetAmbientLight(0, 0, 0)

    def test_hex_without_hash(self):
        assert hex_to_rgb("00ff7f") == (0, 255, 127)

    def test_invalid_hex(self):
        with pytest.raises(ValueError, match="Invalid colour"):
            SetAmbientLight.from_brightness(50, "#FFF")

    def test_off(self):
        assert SetAmbientLight.off() == SetAmbientLight(0, 0, 0)


class TestDecode:
    @pytest.mark.parametrize(
        "command",
        [
            PlayCard("https://yoto.io/xyz"),
            PlayCard("https://yoto.io/xyz", chapter_key="03", seconds_in=12, any_button_stop=True),
            Pause(),
            Resume(),
            Stop(),
            SetAmbientLight(12, 34, 56),
            SetNightLight(True, 60),
            SetNightLight(False),
            RequestStatus(),
        ],
    )
    def test_decodes_what_encode_produces(self, command):
        topic, payload = encode("abc", command)
        assert decode(topic, payload) == ("abc", command)

    def test_night_light_default_brightness_is_explicit_after_decode(self):
        topic, payload = encode("abc", SetNightLight(True))
        assert decode(topic, payload) == (
            "abc",
            SetNightLight(True, DEFAULT_NIGHT_LIGHT_BRIGHTNESS),
        )

    def test_swapped_channels_decode_back(self):
        command = SetAmbientLight(200, 100, 0)
        topic, payload = encode("abc", command, swap_red_blue=True)
        assert decode(topic, payload, swap_red_blue=True) == ("abc", command)

    def test_non_command_topic(self):
        assert decode("device/abc/events", "{}") is None

    def test_unknown_action(self):
        assert decode("device/abc/command/volume", '{"volume": 3}') is None

    def test_bad_payload(self):
        assert decode("device/abc/command/ambients", "not json") is None
        assert decode("device/abc/command/ambients", '{"r": 1}') is None
        assert decode("device/abc/command/card/start", "{}") is None
