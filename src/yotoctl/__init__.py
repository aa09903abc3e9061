"""Remote control, telemetry and scheduled playback for Yoto players."""

from yotoctl.commands import (
    Command,
    Pause,
    PlayCard,
    RequestStatus,
    Resume,
    SetAmbientLight,
    SetNightLight,
    Stop,
)
from yotoctl.connection import ConnectionManager, ConnectionState, ConnectionStatus, DeviceSession
from yotoctl.exceptions import (
    AuthError,
    ConnectTimeoutError,
    DeviceConnectionError,
    NotConnectedError,
    PublishError,
    TransportError,
    TransportRejectedError,
    YotoError,
)
from yotoctl.scheduler import NotificationSink, SchedulerClock
from yotoctl.schedules import RepeatMode, Schedule, ScheduleStore, next_execution_time
from yotoctl.telemetry import TelemetryEvent, TelemetryIngestor, TelemetryKind
from yotoctl.tokens import SavedTokenProvider, TokenProvider

__all__ = [
    "AuthError",
    "Command",
    "ConnectTimeoutError",
    "ConnectionManager",
    "ConnectionState",
    "ConnectionStatus",
    "DeviceConnectionError",
    "DeviceSession",
    "NotConnectedError",
    "NotificationSink",
    "Pause",
    "PlayCard",
    "PublishError",
    "RepeatMode",
    "RequestStatus",
    "Resume",
    "SavedTokenProvider",
    "Schedule",
    "ScheduleStore",
    "SchedulerClock",
    "SetAmbientLight",
    "SetNightLight",
    "Stop",
    "TelemetryEvent",
    "TelemetryIngestor",
    "TelemetryKind",
    "TokenProvider",
    "TransportError",
    "TransportRejectedError",
    "YotoError",
    "next_execution_time",
]
