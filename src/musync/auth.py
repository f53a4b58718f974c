"""Access-token management for the remote platforms.

The reconciliation engine only needs two things from here: a bearer token
for a platform, and a way to force a fresh one after the remote side has
rejected the current token.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import httpx
import structlog

if TYPE_CHECKING:
    from musync.config import AppConfig

log = structlog.get_logger(__name__)

SPOTIFY_TOKEN_URL = "https://accounts.spotify.com/api/token"  # noqa: S105
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"  # noqa: S105
_EXPIRY_MARGIN = 60


class CredentialError(Exception):
    """Raised when no usable credential is configured or a refresh fails."""


class CredentialProvider(Protocol):
    async def get_token(self, platform: str) -> str | None:
        """Return a bearer token, or None when only an API key is available."""
        ...

    async def refresh(self, platform: str) -> str | None:
        """Discard the cached token and obtain a new one."""
        ...


@dataclass
class _CachedToken:
    value: str
    expires_at: float


class OAuthCredentialProvider:
    """Exchanges configured refresh tokens for short-lived access tokens."""

    def __init__(
        self,
        config: AppConfig,
        *,
        clock: Callable[[], float] = time.time,
        _transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._clock = clock
        self._transport = _transport
        self._tokens: dict[str, _CachedToken] = {}
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> OAuthCredentialProvider:
        kw: dict = {"timeout": 30.0}
        if self._transport is not None:
            kw["transport"] = self._transport
        self._client = httpx.AsyncClient(**kw)
        return self

    async def __aexit__(self, *exc: object) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def _grant(self, platform: str) -> tuple[str, dict[str, str]] | None:
        if platform == "spotify":
            cfg = self._config.spotify
            url = SPOTIFY_TOKEN_URL
        elif platform == "youtube":
            cfg = self._config.youtube
            url = GOOGLE_TOKEN_URL
        else:
            raise CredentialError(f"Unknown platform: {platform}")

        refresh_token = cfg.refresh_token.get_secret_value()
        if not (refresh_token and cfg.client_id and cfg.client_secret.get_secret_value()):
            return None
        return url, {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": cfg.client_id,
            "client_secret": cfg.client_secret.get_secret_value(),
        }

    def _has_api_key(self, platform: str) -> bool:
        return platform == "youtube" and bool(self._config.youtube.api_key.get_secret_value())

    async def get_token(self, platform: str) -> str | None:
        cached = self._tokens.get(platform)
        if cached and self._clock() < cached.expires_at - _EXPIRY_MARGIN:
            return cached.value
        return await self.refresh(platform)

    async def refresh(self, platform: str) -> str | None:
        self._tokens.pop(platform, None)
        grant = self._grant(platform)
        if grant is None:
            if self._has_api_key(platform):
                return None
            raise CredentialError(
                f"No {platform} credentials configured. "
                f"Set {platform}.client_id, client_secret and refresh_token in config.toml"
            )

        assert self._client is not None  # noqa: S101
        url, data = grant
        try:
            resp = await self._client.post(url, data=data)
        except httpx.TransportError as exc:
            raise CredentialError(f"{platform} token refresh failed: {exc}") from exc

        if resp.status_code != 200:
            log.warning("token_refresh_failed", platform=platform, status=resp.status_code)
            if self._has_api_key(platform):
                return None
            raise CredentialError(f"{platform} token refresh failed: {resp.status_code} {resp.text}")

        payload = resp.json()
        token = _CachedToken(
            value=payload["access_token"],
            expires_at=self._clock() + payload.get("expires_in", 3600),
        )
        self._tokens[platform] = token
        log.debug("token_refreshed", platform=platform)
        return token.value
