"""Bearer-token supply for broker sessions.

The browser authorization-code flow happens elsewhere; this module only
holds the resulting tokens and keeps the access token fresh using the
OAuth refresh-token grant.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import time
from pathlib import Path
from typing import Protocol

import aiohttp

from yotoctl._constants import (
    AUTH_AUDIENCE,
    AUTH_CLIENT_ID,
    AUTH_SCOPE,
    AUTH_TOKEN_URL,
    TOKEN_FILE,
)

logger = logging.getLogger(__name__)

_TOKEN_EXPIRY_BUFFER = 300  # seconds before expiry to trigger proactive refresh


class TokenProvider(Protocol):
    """Anything that can hand out a currently valid bearer token."""

    async def get_valid_token(self) -> str | None:
        """Return a valid access token, or ``None`` if none can be obtained."""
        ...


class StaticTokenProvider:
    """Always returns the same token.  Handy for scripts and tests."""

    def __init__(self, token: str | None) -> None:
        self._token = token

    async def get_valid_token(self) -> str | None:
        return self._token


class SavedTokenProvider:
    """Token provider backed by ``~/.config/yotoctl/tokens.json``.

    Use :meth:`from_saved` to load previously imported tokens.  The access
    token is refreshed when it is within five minutes of its ``exp``
    claim; the refreshed pair is written back to disk.
    """

    def __init__(
        self,
        tokens: dict[str, object],
        *,
        path: Path = TOKEN_FILE,
        client_id: str = AUTH_CLIENT_ID,
    ) -> None:
        self._tokens = tokens
        self._path = path
        self._client_id = client_id
        self._refresh_lock = asyncio.Lock()

    @classmethod
    def from_saved(cls, path: Path = TOKEN_FILE) -> SavedTokenProvider:
        """Load tokens from *path*.

        Raises :class:`FileNotFoundError` if no token file exists.
        """
        if not path.exists():
            raise FileNotFoundError(f"No saved tokens at {path}. Run `yotoctl login` first.")
        return cls(json.loads(path.read_text()), path=path)

    @property
    def access_token(self) -> str:
        return str(self._tokens.get("accessToken") or "")

    @property
    def refresh_token(self) -> str:
        return str(self._tokens.get("refreshToken") or "")

    def set_tokens(self, access_token: str, refresh_token: str | None = None) -> None:
        self._tokens["accessToken"] = access_token
        if refresh_token:
            self._tokens["refreshToken"] = refresh_token
        self._tokens["tokenExp"] = _decode_jwt_exp(access_token)

    def save(self) -> None:
        """Persist tokens with owner-only permissions."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(self._tokens, indent=2))
        self._path.chmod(0o600)

    def _is_fresh(self) -> bool:
        if not self.access_token:
            return False
        exp = self._tokens.get("tokenExp")
        if exp is None:
            exp = _decode_jwt_exp(self.access_token)
        if exp is None:
            # Opaque token without an expiry claim: trust it.
            return True
        return time.time() < float(str(exp)) - _TOKEN_EXPIRY_BUFFER

    async def get_valid_token(self) -> str | None:
        if self._is_fresh():
            return self.access_token
        if not self.refresh_token:
            logger.warning("Access token expired and no refresh token is stored")
            return None

        async with self._refresh_lock:
            # Another task may have refreshed while we were waiting.
            if self._is_fresh():
                return self.access_token
            try:
                access, refresh = await _refresh_access_token(self.refresh_token, self._client_id)
            except (aiohttp.ClientError, asyncio.TimeoutError, KeyError, ValueError) as e:
                logger.error("Token refresh failed: %s", e)
                return None
            self.set_tokens(access, refresh or self.refresh_token)
            self.save()
            logger.info("Refreshed access token")
            return self.access_token


# ---------------------------------------------------------------------------
# Private helpers
# ---------------------------------------------------------------------------


def _decode_jwt_exp(token: str) -> float | None:
    """Extract the ``exp`` claim from a JWT without verifying the signature.

    Returns the expiry as a Unix timestamp (float), or ``None`` if the token
    cannot be decoded (e.g. not a JWT, malformed base64, missing claim).
    """
    try:
        parts = token.split(".")
        if len(parts) != 3:
            return None
        padded = parts[1] + "=" * (-len(parts[1]) % 4)
        payload = json.loads(base64.urlsafe_b64decode(padded))
        return float(payload["exp"])
    except Exception:
        return None


async def _refresh_access_token(refresh_token: str, client_id: str) -> tuple[str, str | None]:
    """Exchange *refresh_token* for a new ``(access_token, refresh_token)`` pair.

    The returned refresh token is ``None`` when the server keeps the old one.
    """
    async with aiohttp.ClientSession() as session:
        async with session.post(
            AUTH_TOKEN_URL,
            data={
                "grant_type": "refresh_token",
                "client_id": client_id,
                "refresh_token": refresh_token,
                "audience": AUTH_AUDIENCE,
                "scope": AUTH_SCOPE,
            },
            timeout=aiohttp.ClientTimeout(total=15),
        ) as resp:
            resp.raise_for_status()
            body = await resp.json()
    return str(body["access_token"]), body.get("refresh_token")
