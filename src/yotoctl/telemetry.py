"""Best-effort telemetry classification.

The device does not publish a documented schema and the message shape
varies by firmware and topic, so battery and playback readings are found
heuristically.  Every event records the field it was taken from in
:attr:`TelemetryEvent.source_field` so misclassification can be spotted.
Treat the output as a best guess, not a guaranteed decode.

The rules applied by :class:`HeuristicClassifier`, per topic suffix:

``/events``
    A direct battery field (``battery``, ``batteryLevel``, ``batteryPercent``,
    ``power``, ``powerLevel``) wins.  Otherwise the first numeric field in
    ``0..100`` whose name is not excluded (volume, position, track length,
    timestamps) is taken as the battery level.
``/status``
    ``status.batteryLevel`` or ``status.battery``.
``/battery``
    The payload is passed through as the battery reading.

``playbackStatus`` (top level or under ``status``) yields a playback
event on any topic.
"""

from __future__ import annotations

import enum
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

logger = logging.getLogger(__name__)

DIRECT_BATTERY_FIELDS: tuple[str, ...] = (
    "battery",
    "batteryLevel",
    "batteryPercent",
    "power",
    "powerLevel",
)

# Substrings (case-insensitive) of numeric fields that are never a battery level.
EXCLUDED_FIELDS: tuple[str, ...] = (
    "volume",
    "position",
    "trackLength",
    "eventUtc",
    "timestamp",
    "secondsIn",
)

_CHARGING_FIELDS = ("charging", "isCharging", "pluggedIn")


class TelemetryKind(str, enum.Enum):
    BATTERY_LEVEL = "BatteryLevel"
    PLAYBACK_STATE = "PlaybackState"
    UNKNOWN = "Unknown"


@dataclass(frozen=True)
class TelemetryEvent:
    """A single normalized reading from a device."""

    device_id: str
    kind: TelemetryKind
    value: object
    observed_at: datetime
    source_field: str
    """Where the value came from, e.g. ``events.batteryLevel``."""

    attributes: dict[str, object] = field(default_factory=dict, compare=False)
    """Extra context such as ``charging`` or ``cardId``."""


class TelemetryClassifier(Protocol):
    """Strategy turning one raw message into zero or more events."""

    def classify(
        self, device_id: str, topic: str, payload: object, observed_at: datetime
    ) -> list[TelemetryEvent]: ...


class HeuristicClassifier:
    """Default field-recognition strategy (see module docstring)."""

    def classify(
        self, device_id: str, topic: str, payload: object, observed_at: datetime
    ) -> list[TelemetryEvent]:
        channel = topic.rstrip("/").rsplit("/", 1)[-1]
        events: list[TelemetryEvent] = []

        def add(kind: TelemetryKind, value: object, source: str, **attrs: object) -> None:
            events.append(TelemetryEvent(device_id, kind, value, observed_at, source, attrs))

        if channel == "battery":
            add(TelemetryKind.BATTERY_LEVEL, payload, "battery")
            return events

        if not isinstance(payload, dict):
            return events

        if channel == "events":
            found = _battery_from_events(payload)
            if found is not None:
                name, level = found
                add(
                    TelemetryKind.BATTERY_LEVEL,
                    level,
                    f"events.{name}",
                    charging=_charging(payload),
                )
        elif channel == "status":
            status = payload.get("status")
            if isinstance(status, dict):
                for name in ("batteryLevel", "battery"):
                    if status.get(name) is not None:
                        add(
                            TelemetryKind.BATTERY_LEVEL,
                            status[name],
                            f"status.{name}",
                            charging=bool(status.get("charging", False)),
                        )
                        break

        playback = _playback(payload)
        if playback is not None:
            source, state, card_id = playback
            add(TelemetryKind.PLAYBACK_STATE, state, source, cardId=card_id)

        return events


def _battery_from_events(data: dict[str, object]) -> tuple[str, object] | None:
    for name in DIRECT_BATTERY_FIELDS:
        value = data.get(name)
        if value is None:
            continue
        if _is_number(value):
            return name, max(0, min(100, value))  # type: ignore[type-var]
        return name, value

    for name, value in data.items():
        if not _is_number(value) or not 0 <= value <= 100:  # type: ignore[operator]
            continue
        lowered = name.lower()
        if any(excluded.lower() in lowered for excluded in EXCLUDED_FIELDS):
            continue
        return name, value
    return None


def _playback(data: dict[str, object]) -> tuple[str, object, str | None] | None:
    for prefix, container in (("", data), ("status.", data.get("status"))):
        if isinstance(container, dict) and container.get("playbackStatus") is not None:
            card = container.get("cardId")
            card_id = None if card in (None, "none") else str(card)
            return f"{prefix}playbackStatus", container["playbackStatus"], card_id
    return None


def _charging(data: dict[str, object]) -> bool:
    return any(bool(data.get(name)) for name in _CHARGING_FIELDS)


def _is_number(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class TelemetryIngestor:
    """Decode raw broker messages and run them through a classifier.

    Messages that parse as a JSON object but yield no reading produce a
    single ``Unknown`` event carrying the raw payload.  Payloads that are
    not JSON are dropped.
    """

    def __init__(self, classifier: TelemetryClassifier | None = None) -> None:
        self.classifier: TelemetryClassifier = classifier or HeuristicClassifier()

    def ingest(
        self,
        device_id: str,
        topic: str,
        payload: bytes | bytearray | str,
        observed_at: datetime | None = None,
    ) -> list[TelemetryEvent]:
        observed_at = observed_at or datetime.now()
        try:
            data = json.loads(payload) if payload else None
        except (json.JSONDecodeError, TypeError, UnicodeDecodeError):
            logger.debug("Ignoring non-JSON payload on %s", topic)
            return []
        if data is None:
            return []

        events = self.classifier.classify(device_id, topic, data, observed_at)
        if not events and isinstance(data, dict):
            events = [
                TelemetryEvent(device_id, TelemetryKind.UNKNOWN, data, observed_at, topic)
            ]
        for event in events:
            logger.debug(
                "%s %s=%r (from %s)", device_id, event.kind.value, event.value, event.source_field
            )
        return events
