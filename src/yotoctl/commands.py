"""Device command definitions and their MQTT wire encoding.

Each command is an immutable value.  :func:`encode` maps it to the
``(topic, payload)`` pair published on the broker and :func:`decode`
reverses the mapping::

    from yotoctl.commands import SetAmbientLight, encode

    topic, payload = encode("abc", SetAmbientLight(255, 0, 0))
    # ("device/abc/command/ambients", '{"r":255,"g":0,"b":0}')
"""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass
from typing import Union

DEFAULT_NIGHT_LIGHT_BRIGHTNESS = 20

_HEX_COLOR = re.compile(r"^#?([0-9a-fA-F]{2})([0-9a-fA-F]{2})([0-9a-fA-F]{2})$")


@dataclass(frozen=True)
class PlayCard:
    """Start a card, optionally at a given chapter/track/offset."""

    uri: str
    chapter_key: str | None = None
    track_key: str | None = None
    seconds_in: int | None = None
    cut_off: int | None = None
    any_button_stop: bool | None = None


@dataclass(frozen=True)
class Pause:
    pass


@dataclass(frozen=True)
class Resume:
    pass


@dataclass(frozen=True)
class Stop:
    pass


@dataclass(frozen=True)
class SetAmbientLight:
    """Set the ambient light colour.

    Channels outside ``0..255`` are clamped when encoded.  Use
    :meth:`from_brightness` to build one from a brightness percentage and
    a hex colour.
    """

    r: int
    g: int
    b: int

    @classmethod
    def from_brightness(cls, brightness: float, hex_color: str) -> SetAmbientLight:
        """Scale *hex_color* by *brightness* percent (clamped to ``0..100``).

        Raises :class:`ValueError` if *hex_color* is not ``#RRGGBB``.
        """
        r, g, b = hex_to_rgb(hex_color)
        scale = max(0.0, min(100.0, float(brightness))) / 100
        return cls(_round_half_up(r * scale), _round_half_up(g * scale), _round_half_up(b * scale))

    @classmethod
    def off(cls) -> SetAmbientLight:
        return cls(0, 0, 0)


@dataclass(frozen=True)
class SetNightLight:
    enabled: bool
    brightness: int | None = None


@dataclass(frozen=True)
class RequestStatus:
    """Ask the device to push its current state on the events topic."""


Command = Union[PlayCard, Pause, Resume, Stop, SetAmbientLight, SetNightLight, RequestStatus]


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


def command_topic(device_id: str, suffix: str) -> str:
    return f"device/{device_id}/command/{suffix}"


def encode(device_id: str, command: Command, *, swap_red_blue: bool = False) -> tuple[str, str]:
    """Return the ``(topic, payload)`` pair for *command*.

    *swap_red_blue* sends ambient colours in BGR order.  Some firmware
    revisions are reported to interpret the channels that way; it is off
    by default until confirmed against a real device.
    """
    if isinstance(command, PlayCard):
        body: dict[str, object] = {"uri": command.uri}
        if command.chapter_key:
            body["chapterKey"] = command.chapter_key
        if command.track_key:
            body["trackKey"] = command.track_key
        if command.seconds_in is not None:
            body["secondsIn"] = command.seconds_in
        if command.cut_off is not None:
            body["cutOff"] = command.cut_off
        if command.any_button_stop is not None:
            body["anyButtonStop"] = command.any_button_stop
        return command_topic(device_id, "card/start"), _dumps(body)
    if isinstance(command, Pause):
        return command_topic(device_id, "card/pause"), _dumps({})
    if isinstance(command, Resume):
        return command_topic(device_id, "card/resume"), _dumps({})
    if isinstance(command, Stop):
        return command_topic(device_id, "card/stop"), _dumps({})
    if isinstance(command, SetAmbientLight):
        r, g, b = _clamp_channel(command.r), _clamp_channel(command.g), _clamp_channel(command.b)
        if swap_red_blue:
            r, b = b, r
        return command_topic(device_id, "ambients"), _dumps({"r": r, "g": g, "b": b})
    if isinstance(command, SetNightLight):
        if command.enabled:
            brightness = command.brightness
            if brightness is None:
                brightness = DEFAULT_NIGHT_LIGHT_BRIGHTNESS
            return command_topic(device_id, "night-light/enable"), _dumps({"brightness": brightness})
        return command_topic(device_id, "night-light/disable"), _dumps({})
    if isinstance(command, RequestStatus):
        return command_topic(device_id, "events"), ""
    raise TypeError(f"Unsupported command: {command!r}")


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------

_COMMAND_TOPIC = re.compile(r"^device/(?P<device>[^/]+)/command/(?P<action>.+)$")


def decode(
    topic: str, payload: str | bytes, *, swap_red_blue: bool = False
) -> tuple[str, Command] | None:
    """Parse a command topic and payload back into ``(device_id, command)``.

    Returns ``None`` if *topic* is not a known command topic or the
    payload does not fit the command.  ``SetNightLight(True)`` goes out
    with the default brightness, so it decodes as
    ``SetNightLight(True, DEFAULT_NIGHT_LIGHT_BRIGHTNESS)``.
    """
    match = _COMMAND_TOPIC.match(topic)
    if match is None:
        return None
    device_id = match.group("device")
    action = match.group("action")

    if action == "events":
        return device_id, RequestStatus()

    try:
        body = json.loads(payload) if payload else {}
    except (json.JSONDecodeError, TypeError, UnicodeDecodeError):
        return None
    if not isinstance(body, dict):
        return None

    if action == "card/start":
        uri = body.get("uri")
        if not isinstance(uri, str):
            return None
        return device_id, PlayCard(
            uri=uri,
            chapter_key=body.get("chapterKey"),
            track_key=body.get("trackKey"),
            seconds_in=body.get("secondsIn"),
            cut_off=body.get("cutOff"),
            any_button_stop=body.get("anyButtonStop"),
        )
    if action == "card/pause":
        return device_id, Pause()
    if action == "card/resume":
        return device_id, Resume()
    if action == "card/stop":
        return device_id, Stop()
    if action == "ambients":
        try:
            r, g, b = int(body["r"]), int(body["g"]), int(body["b"])
        except (KeyError, TypeError, ValueError):
            return None
        if swap_red_blue:
            r, b = b, r
        return device_id, SetAmbientLight(r, g, b)
    if action == "night-light/enable":
        return device_id, SetNightLight(True, body.get("brightness"))
    if action == "night-light/disable":
        return device_id, SetNightLight(False)
    return None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def hex_to_rgb(hex_color: str) -> tuple[int, int, int]:
    """Convert ``#RRGGBB`` (leading ``#`` optional) to an ``(r, g, b)`` tuple."""
    match = _HEX_COLOR.match(hex_color.strip())
    if match is None:
        raise ValueError(f"Invalid colour '{hex_color}'. Expected #RRGGBB.")
    r, g, b = (int(part, 16) for part in match.groups())
    return r, g, b


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def _clamp_channel(value: int) -> int:
    return max(0, min(255, int(value)))


def _dumps(body: dict[str, object]) -> str:
    return json.dumps(body, separators=(",", ":"))
