"""Error taxonomy shared by the connection, publish and scheduling paths.

Every error carries a :attr:`~YotoError.hint` telling the user what to do
next, so an expired authorization never reads the same as a flaky network.
"""

from __future__ import annotations


class YotoError(Exception):
    """Base class for all yotoctl errors."""

    hint = "See the log for details."


# ---------------------------------------------------------------------------
# Connection
# ---------------------------------------------------------------------------


class DeviceConnectionError(YotoError, ConnectionError):
    """Raised by :meth:`ConnectionManager.connect` when no session could be opened."""

    def __init__(self, device_id: str, message: str) -> None:
        super().__init__(message)
        self.device_id = device_id


class ConnectTimeoutError(DeviceConnectionError):
    """The broker did not acknowledge the connection in time."""

    hint = "The player or network may be slow. Check the connection and retry."


class AuthError(DeviceConnectionError):
    """The broker rejected the credential."""

    hint = "Your authorization has expired or was revoked. Sign in again with `yotoctl login`."


class TokenUnavailableError(AuthError):
    """The token provider could not supply a valid token."""


class TransportError(DeviceConnectionError):
    """Any other failure to reach the broker."""

    hint = "Could not reach the broker. Check the network and retry."


# ---------------------------------------------------------------------------
# Publish
# ---------------------------------------------------------------------------


class PublishError(YotoError):
    """Raised by :meth:`ConnectionManager.publish`."""

    def __init__(self, device_id: str, message: str) -> None:
        super().__init__(message)
        self.device_id = device_id


class NotConnectedError(PublishError):
    """No connected session exists for the device.

    Commands are never queued; the caller must connect again.
    """

    hint = "Connect to the player first."


class TransportRejectedError(PublishError):
    """The broker or transport refused the publish.

    ``auth_failure`` is ``True`` when the cause was an authorization
    rejection, in which case retrying with the same token is pointless.
    """

    def __init__(self, device_id: str, message: str, *, auth_failure: bool = False) -> None:
        super().__init__(device_id, message)
        self.auth_failure = auth_failure

    @property
    def hint(self) -> str:  # type: ignore[override]
        if self.auth_failure:
            return AuthError.hint
        return "The command was not delivered. Check the network and retry."


# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------


class ScheduleExecutionError(YotoError):
    """A due schedule could not be carried out."""

    def __init__(self, schedule_id: str, message: str) -> None:
        super().__init__(message)
        self.schedule_id = schedule_id


class DispatchFailedError(ScheduleExecutionError):
    """Publishing the scheduled command failed."""


class DeviceOfflineError(ScheduleExecutionError):
    """No connected session existed for the scheduled device."""
