"""Internal constants for the Yoto cloud broker and OAuth endpoints."""

from __future__ import annotations

from pathlib import Path

MQTT_HOST = "aqrphjqbp3u2z-ats.iot.eu-west-2.amazonaws.com"
MQTT_PORT = 443
MQTT_WEBSOCKET_PATH = "/mqtt"
MQTT_AUTHORIZER = "PublicJWTAuthorizer"
MQTT_CLIENT_PREFIX = "YOTOCTL"
MQTT_KEEPALIVE = 300

CONNECT_TIMEOUT = 30  # seconds to wait for the broker CONNACK
HEALTH_CHECK_INTERVAL = 30
STATUS_POLL_INTERVAL = 30
SCHEDULER_TICK_INTERVAL = 60

AUTH_TOKEN_URL = "https://login.yotoplay.com/oauth/token"
AUTH_AUDIENCE = "https://api.yotoplay.com"
AUTH_SCOPE = "offline_access read:devices write:devices"
AUTH_CLIENT_ID = "NJ4lW4Y3FrBcpR4R6YlkKs30gTxPjvC4"

CONFIG_DIR = Path.home() / ".config" / "yotoctl"
TOKEN_FILE = CONFIG_DIR / "tokens.json"
SCHEDULE_FILE = CONFIG_DIR / "schedules.json"

# Device topics subscribed on every session.
DEVICE_TOPICS: tuple[str, ...] = ("events", "status", "response", "battery", "state")
