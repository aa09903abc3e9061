"""Per-device broker sessions.

:class:`ConnectionManager` owns one :class:`DeviceSession` per device,
keyed by device ID.  Sessions are opened with :meth:`~ConnectionManager.connect`
and closed with :meth:`~ConnectionManager.disconnect`; commands go out
through :meth:`~ConnectionManager.publish`::

    manager = ConnectionManager(token_provider=SavedTokenProvider.from_saved())
    manager.telemetry.subscribe(print)

    await manager.connect("abc123")
    await manager.publish("abc123", PlayCard("https://yoto.io/xyz"))
    await manager.disconnect("abc123")

The manager never reconnects on its own.  Broker credentials are
short-lived tokens, so a dropped session stays in ``Offline`` or
``Error`` until the caller fetches a fresh token and calls
:meth:`~ConnectionManager.connect` again.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
import ssl
from dataclasses import dataclass, field
from datetime import datetime

import aiomqtt

from yotoctl._constants import (
    CONNECT_TIMEOUT,
    DEVICE_TOPICS,
    HEALTH_CHECK_INTERVAL,
    MQTT_AUTHORIZER,
    MQTT_CLIENT_PREFIX,
    MQTT_HOST,
    MQTT_KEEPALIVE,
    MQTT_PORT,
    MQTT_WEBSOCKET_PATH,
    STATUS_POLL_INTERVAL,
)
from yotoctl.commands import Command, RequestStatus, encode
from yotoctl.events import EventChannel
from yotoctl.exceptions import (
    AuthError,
    ConnectTimeoutError,
    DeviceConnectionError,
    NotConnectedError,
    TokenUnavailableError,
    TransportError,
    TransportRejectedError,
)
from yotoctl.telemetry import TelemetryEvent, TelemetryIngestor
from yotoctl.tokens import TokenProvider

logger = logging.getLogger(__name__)

# CONNACK codes meaning the credential was refused (MQTT 3.1.1 and 5).
_AUTH_REASON_CODES = frozenset({4, 5, 134, 135})


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "Disconnected"
    CONNECTING = "Connecting"
    CONNECTED = "Connected"
    RECONNECTING = "Reconnecting"
    OFFLINE = "Offline"
    ERROR = "Error"


@dataclass(frozen=True)
class ConnectionStatus:
    """One entry on the connection-status stream."""

    device_id: str
    state: ConnectionState
    at: datetime
    error: Exception | None = None


@dataclass
class DeviceSession:
    """Live session for one device.  Owned by :class:`ConnectionManager`."""

    device_id: str
    state: ConnectionState = ConnectionState.DISCONNECTED
    session_started_at: datetime | None = None
    last_health_check_at: datetime | None = None
    healthy: bool = False

    _client: aiomqtt.Client | None = field(default=None, repr=False)
    _reader: asyncio.Task[None] | None = field(default=None, repr=False)
    _loops: list[asyncio.Task[None]] = field(default_factory=list, repr=False)

    @property
    def transport_open(self) -> bool:
        return self._client is not None and self._reader is not None and not self._reader.done()


class ConnectionManager:
    """Registry of device sessions plus the status and telemetry streams.

    Args:
        token_provider: Used by :meth:`connect` when no token is passed.
        ingestor: Telemetry classifier front end.
        swap_red_blue: Send ambient light colours in BGR order.
        connect_timeout: Seconds to wait for the broker acknowledgment.
        health_check_interval: Seconds between health checks.
        status_poll_interval: Seconds between status requests.
    """

    def __init__(
        self,
        *,
        token_provider: TokenProvider | None = None,
        ingestor: TelemetryIngestor | None = None,
        swap_red_blue: bool = False,
        connect_timeout: float = CONNECT_TIMEOUT,
        health_check_interval: float = HEALTH_CHECK_INTERVAL,
        status_poll_interval: float = STATUS_POLL_INTERVAL,
    ) -> None:
        self._token_provider = token_provider
        self._ingestor = ingestor or TelemetryIngestor()
        self._swap_red_blue = swap_red_blue
        self._connect_timeout = connect_timeout
        self._health_check_interval = health_check_interval
        self._status_poll_interval = status_poll_interval
        self._sessions: dict[str, DeviceSession] = {}

        self.status: EventChannel[ConnectionStatus] = EventChannel("status")
        self.telemetry: EventChannel[TelemetryEvent] = EventChannel("telemetry")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def session(self, device_id: str) -> DeviceSession | None:
        return self._sessions.get(device_id)

    def state(self, device_id: str) -> ConnectionState:
        session = self._sessions.get(device_id)
        return session.state if session else ConnectionState.DISCONNECTED

    def is_connected(self, device_id: str) -> bool:
        return self.state(device_id) is ConnectionState.CONNECTED

    def is_healthy(self, device_id: str) -> bool:
        """True only for a ``Connected`` session whose transport is still open."""
        session = self._sessions.get(device_id)
        return (
            session is not None
            and session.state is ConnectionState.CONNECTED
            and session.transport_open
        )

    @property
    def device_ids(self) -> list[str]:
        return list(self._sessions)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self, device_id: str, token: str | None = None) -> None:
        """Open a session for *device_id* and subscribe to its topics.

        If *token* is omitted it is taken from the token provider.  An
        existing session for the device is torn down first.

        Raises:
            TokenUnavailableError: No token was given and none could be obtained.
            ConnectTimeoutError: The broker did not acknowledge in time.
            AuthError: The broker rejected the credential.
            TransportError: Any other connection failure.
        """
        if token is None and self._token_provider is not None:
            token = await self._token_provider.get_valid_token()
        if not token:
            raise TokenUnavailableError(device_id, "No valid access token is available.")

        previous = self._sessions.get(device_id)
        if previous is not None:
            if previous.state is not ConnectionState.CONNECTED:
                self._set_state(previous, ConnectionState.RECONNECTING)
            await self.disconnect(device_id)

        session = DeviceSession(device_id)
        self._sessions[device_id] = session
        self._set_state(session, ConnectionState.CONNECTING)
        logger.info("Connecting to %s", device_id)

        ready: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        session._reader = asyncio.create_task(
            self._run_session(
                session, _mqtt_params(device_id, token, timeout=self._connect_timeout), ready
            )
        )

        try:
            async with asyncio.timeout(self._connect_timeout):
                await asyncio.shield(ready)
        except TimeoutError:
            error: DeviceConnectionError = ConnectTimeoutError(
                device_id, f"No acknowledgment from the broker within {self._connect_timeout:g}s."
            )
            await self._fail_connect(session, error, ready)
            raise error from None
        except aiomqtt.MqttError as e:
            error = _connection_error(device_id, e)
            await self._fail_connect(session, error, ready)
            raise error from e
        except OSError as e:
            error = TransportError(device_id, f"Could not reach the broker: {e}")
            await self._fail_connect(session, error, ready)
            raise error from e
        except (Exception, asyncio.CancelledError) as e:
            await self._fail_connect(
                session, TransportError(device_id, f"Connection attempt aborted: {e!r}"), ready
            )
            raise

        session._loops = [
            asyncio.create_task(self._health_check_loop(session)),
            asyncio.create_task(self._status_poll_loop(session)),
        ]
        await self._request_status(session)

    async def disconnect(self, device_id: str) -> None:
        """Close the session for *device_id*.  Safe to call repeatedly.

        Both periodic loops and the message reader are stopped before
        this returns.
        """
        session = self._sessions.pop(device_id, None)
        if session is None:
            return
        await _cancel_all([*session._loops, session._reader])
        session._loops = []
        session._client = None
        session.healthy = False
        self._set_state(session, ConnectionState.DISCONNECTED)
        logger.info("Disconnected from %s", device_id)

    async def close(self) -> None:
        """Disconnect every session."""
        for device_id in list(self._sessions):
            await self.disconnect(device_id)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def publish(self, device_id: str, command: Command) -> None:
        """Send *command* to *device_id*.

        Commands are never queued: without a ``Connected`` session this
        fails immediately.

        Raises:
            NotConnectedError: No connected session for the device.
            TransportRejectedError: The broker refused the publish.
        """
        session = self._sessions.get(device_id)
        if session is None or session.state is not ConnectionState.CONNECTED:
            raise NotConnectedError(device_id, f"Not connected to {device_id}.")
        client = session._client
        if client is None:
            raise NotConnectedError(device_id, f"Not connected to {device_id}.")

        topic, payload = encode(device_id, command, swap_red_blue=self._swap_red_blue)
        logger.debug("Publishing to %s: %s", topic, payload)
        try:
            await client.publish(topic, payload, qos=1)
        except aiomqtt.MqttError as e:
            auth_failure = _is_auth_failure(e)
            if auth_failure:
                message = "The broker refused the command (not authorized). The token may have expired."
            else:
                message = f"The broker refused the command: {e}"
            raise TransportRejectedError(device_id, message, auth_failure=auth_failure) from e

    # ------------------------------------------------------------------
    # Private
    # ------------------------------------------------------------------

    async def _run_session(
        self,
        session: DeviceSession,
        params: dict[str, object],
        ready: asyncio.Future[None],
    ) -> None:
        """Hold the broker connection open and feed inbound messages to the ingestor.

        *ready* resolves once the connection is acknowledged and all
        device topics are subscribed, or carries the connection error.
        A drop after that leaves the session ``Offline`` (broker gone)
        or ``Error`` (anything unexpected); nothing is retried here.
        """
        device_id = session.device_id
        try:
            async with aiomqtt.Client(**params) as client:  # type: ignore[arg-type]
                for topic in device_topics(device_id):
                    await client.subscribe(topic, qos=1)
                session._client = client
                session.session_started_at = datetime.now()
                session.healthy = True
                self._set_state(session, ConnectionState.CONNECTED)
                logger.info("Connected to %s", device_id)
                ready.set_result(None)
                async for message in client.messages:
                    self._handle_message(session, str(message.topic), message.payload)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if not ready.done():
                ready.set_exception(e)
                return
            session._client = None
            if isinstance(e, aiomqtt.MqttError):
                logger.warning("Session for %s dropped: %s", device_id, e)
                self._set_state(session, ConnectionState.OFFLINE, e)
            else:
                logger.exception("Session for %s failed", device_id)
                self._set_state(session, ConnectionState.ERROR, e)
            return
        finally:
            session._client = None

        # Message stream ended without an error: the broker closed the session.
        if not ready.done():
            ready.set_exception(aiomqtt.MqttError("Connection closed before acknowledgment"))
            return
        logger.warning("Broker closed the session for %s", device_id)
        self._set_state(session, ConnectionState.OFFLINE)

    def _handle_message(self, session: DeviceSession, topic: str, payload: object) -> None:
        if not isinstance(payload, (bytes, bytearray, str)):
            return
        events = self._ingestor.ingest(session.device_id, topic, payload)
        for event in events:
            self.telemetry.emit(event)

    async def _health_check_loop(self, session: DeviceSession) -> None:
        """Record session health periodically.  Never attempts recovery."""
        while True:
            await asyncio.sleep(self._health_check_interval)
            session.last_health_check_at = datetime.now()
            healthy = self.is_healthy(session.device_id)
            session.healthy = healthy
            if healthy:
                logger.debug("Health check passed for %s", session.device_id)
            elif session.state is ConnectionState.CONNECTED:
                logger.warning("Health check failed for %s", session.device_id)
                self._set_state(session, ConnectionState.OFFLINE)

    async def _status_poll_loop(self, session: DeviceSession) -> None:
        while True:
            await asyncio.sleep(self._status_poll_interval)
            if self.is_healthy(session.device_id):
                await self._request_status(session)

    async def _request_status(self, session: DeviceSession) -> None:
        try:
            await self.publish(session.device_id, RequestStatus())
        except (NotConnectedError, TransportRejectedError) as e:
            logger.warning("Status request for %s failed: %s", session.device_id, e)

    async def _fail_connect(
        self, session: DeviceSession, error: DeviceConnectionError, ready: asyncio.Future[None]
    ) -> None:
        logger.error("Connection to %s failed: %s", session.device_id, error)
        self._set_state(session, ConnectionState.ERROR, error)
        if self._sessions.get(session.device_id) is session:
            del self._sessions[session.device_id]
        await _cancel_all([session._reader])
        # The reader may have failed the future after connect() stopped waiting on it.
        if not ready.done():
            ready.cancel()
        elif not ready.cancelled():
            ready.exception()
        session._client = None
        self._set_state(session, ConnectionState.DISCONNECTED)

    def _set_state(
        self, session: DeviceSession, state: ConnectionState, error: Exception | None = None
    ) -> None:
        if session.state is state and error is None:
            return
        session.state = state
        if state is not ConnectionState.CONNECTED:
            session.healthy = False
        self.status.emit(ConnectionStatus(session.device_id, state, datetime.now(), error))


# ---------------------------------------------------------------------------
# Private helpers
# ---------------------------------------------------------------------------


def device_topics(device_id: str) -> list[str]:
    """Topics subscribed for every device session."""
    return [f"device/{device_id}/{suffix}" for suffix in DEVICE_TOPICS]


def _mqtt_params(
    device_id: str, token: str, *, timeout: float = CONNECT_TIMEOUT
) -> dict[str, object]:
    """Derive aiomqtt.Client constructor kwargs for a device session.

    *timeout* bounds the wait for the broker acknowledgment inside aiomqtt,
    so it must be at least the manager's own connect timeout.
    """
    return {
        "hostname": MQTT_HOST,
        "port": MQTT_PORT,
        "identifier": f"{MQTT_CLIENT_PREFIX}{device_id.replace('-', '')}",
        "username": f"{device_id}?x-amz-customauthorizer-name={MQTT_AUTHORIZER}",
        "password": token,
        "transport": "websockets",
        "websocket_path": MQTT_WEBSOCKET_PATH,
        "tls_context": ssl.create_default_context(),
        "keepalive": MQTT_KEEPALIVE,
        "timeout": timeout,
        "logger": logger,
    }


def _reason_code(error: aiomqtt.MqttError) -> int | None:
    rc = getattr(error, "rc", None)
    value = getattr(rc, "value", rc)
    return value if isinstance(value, int) else None


def _is_auth_failure(error: Exception) -> bool:
    if isinstance(error, aiomqtt.MqttError) and _reason_code(error) in _AUTH_REASON_CODES:
        return True
    text = str(error).lower()
    return "not authorized" in text or "403" in text or "bad user name or password" in text


def _connection_error(device_id: str, error: aiomqtt.MqttError) -> DeviceConnectionError:
    if _is_auth_failure(error):
        return AuthError(device_id, f"The broker rejected the credential: {error}")
    if "timed out" in str(error).lower():
        return ConnectTimeoutError(device_id, f"The broker did not respond: {error}")
    return TransportError(device_id, f"Could not connect to the broker: {error}")


async def _cancel_all(tasks: list[asyncio.Task[None] | None]) -> None:
    pending = [t for t in tasks if t is not None and t is not asyncio.current_task()]
    for task in pending:
        task.cancel()
    for task in pending:
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await task
