"""Bearer token providers.

The bridge treats tokens as opaque. Providers cache a token until shortly
before it expires and refresh on demand; `invalidate()` forces the next call
to fetch a fresh one (used after a 401).
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Protocol, runtime_checkable

import httpx


logger = logging.getLogger(__name__)


class TokenError(Exception):
    """Raised when a token cannot be obtained."""

    def __init__(self, message: str, transient: bool = True):
        super().__init__(message)
        self.transient = transient


@runtime_checkable
class TokenProvider(Protocol):
    async def get_token(self) -> str | None: ...

    def invalidate(self) -> None: ...


class StaticTokenProvider:
    """Fixed token (or none). Used for tests and pre-issued service tokens."""

    def __init__(self, token: str | None = None):
        self._token = token

    async def get_token(self) -> str | None:
        return self._token

    def invalidate(self) -> None:
        pass


class _CachingTokenProvider:
    def __init__(
        self,
        client: httpx.AsyncClient,
        refresh_margin_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._client = client
        self._refresh_margin = refresh_margin_seconds
        self._clock = clock
        self._token: str | None = None
        self._expires_at = 0.0
        self._lock = asyncio.Lock()

    async def get_token(self) -> str | None:
        if self._token and self._clock() < self._expires_at - self._refresh_margin:
            return self._token
        async with self._lock:
            if self._token and self._clock() < self._expires_at - self._refresh_margin:
                return self._token
            token, expires_in = await self._fetch()
            self._token = token
            self._expires_at = self._clock() + expires_in
            return token

    def invalidate(self) -> None:
        self._token = None
        self._expires_at = 0.0

    async def _fetch(self) -> tuple[str, float]:
        raise NotImplementedError

    async def _post(self, url: str, **kwargs) -> dict:
        try:
            response = await self._client.post(url, **kwargs)
        except httpx.TransportError as e:
            raise TokenError(f"Token request to {url} failed: {e}") from e
        if response.status_code >= 500:
            raise TokenError(f"Token endpoint returned {response.status_code}")
        if response.status_code != 200:
            raise TokenError(
                f"Token endpoint rejected credentials ({response.status_code})",
                transient=False,
            )
        return response.json()


class LegacyLoginTokenProvider(_CachingTokenProvider):
    """Logs in to the legacy platform (`POST /api/auth/login`) and caches the JWT."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        username: str,
        password: str,
        refresh_margin_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(client, refresh_margin_seconds, clock)
        self._url = f"{base_url.rstrip('/')}/api/auth/login"
        self._username = username
        self._password = password

    async def _fetch(self) -> tuple[str, float]:
        data = await self._post(self._url, json={"username": self._username, "password": self._password})
        token = data.get("token")
        if not token:
            raise TokenError("Login response has no token", transient=False)
        # expiresIn is seconds; default to one hour when the platform omits it
        expires_in = float(data.get("expiresIn") or 3600)
        logger.info(f"Authenticated with legacy platform as {self._username}")
        return token, expires_in


class OidcPasswordTokenProvider(_CachingTokenProvider):
    """Resource-owner password grant against an OIDC realm."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        realm_url: str,
        client_id: str,
        username: str,
        password: str,
        refresh_margin_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(client, refresh_margin_seconds, clock)
        self._url = f"{realm_url.rstrip('/')}/protocol/openid-connect/token"
        self._form = {
            "grant_type": "password",
            "client_id": client_id,
            "username": username,
            "password": password,
        }

    async def _fetch(self) -> tuple[str, float]:
        data = await self._post(self._url, data=self._form)
        token = data.get("access_token")
        if not token:
            raise TokenError("Token response has no access_token", transient=False)
        return token, float(data.get("expires_in") or 300)
