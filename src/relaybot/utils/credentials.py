"""
Bearer credential provider.

Supplies short-lived Twitch access tokens for three authorities:
- APP: client-credentials grant (chat sends, webhook subscriptions)
- BROADCASTER: channel-owner refresh-token grant (shout-outs, channel topics)
- BOT: bot-account refresh-token grant (moderation, announcements, follows)

Each token is cached independently and refreshed 120 seconds before it
expires. Concurrent callers for the same authority share one refresh.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Protocol

import aiohttp

from relaybot.errors import CredentialError
from relaybot.utils.logging import add_secret, get_logger

logger = get_logger(__name__)

TOKEN_URL = "https://id.twitch.tv/oauth2/token"
REQUEST_TIMEOUT = aiohttp.ClientTimeout(total=15)

# Refresh this long before the platform-declared expiry
EXPIRY_MARGIN_SECONDS = 120


class Authority(Enum):
    """Credential scope used for a REST call or an EventSub session."""

    APP = "app"
    BROADCASTER = "broadcaster"
    BOT = "bot"


class CredentialProvider(Protocol):
    """Anything that can hand out a valid bearer token per authority."""

    client_id: str

    async def acquire(self, kind: Authority) -> str: ...

    def invalidate(self, kind: Authority) -> None: ...


@dataclass
class _CachedToken:
    access_token: str
    expires_at: float


class TwitchCredentialProvider:
    """
    Mints and caches tokens against the Twitch OAuth endpoint.

    Attributes:
        client_id: Application client ID (sent as Client-Id on Helix calls)
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        client_id: str,
        client_secret: str,
        refresh_tokens: dict[Authority, str],
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize the provider.

        Args:
            session: Shared aiohttp session
            client_id: Application client ID
            client_secret: Application client secret
            refresh_tokens: Refresh token per user authority
            clock: Returns the current time in seconds
        """
        self._session = session
        self.client_id = client_id
        self._client_secret = client_secret
        self._refresh_tokens = dict(refresh_tokens)
        self._clock = clock
        self._cache: dict[Authority, _CachedToken] = {}
        self._locks: dict[Authority, asyncio.Lock] = {kind: asyncio.Lock() for kind in Authority}

    async def acquire(self, kind: Authority) -> str:
        """
        Get a valid access token.

        Args:
            kind: Authority to act as

        Returns:
            str: Bearer token

        Raises:
            CredentialError: If the token could not be minted
        """
        cached = self._cache.get(kind)
        if cached and cached.expires_at - self._clock() > EXPIRY_MARGIN_SECONDS:
            return cached.access_token

        async with self._locks[kind]:
            # Another caller may have refreshed while we waited
            cached = self._cache.get(kind)
            if cached and cached.expires_at - self._clock() > EXPIRY_MARGIN_SECONDS:
                return cached.access_token

            if kind is Authority.APP:
                form = {
                    "client_id": self.client_id,
                    "client_secret": self._client_secret,
                    "grant_type": "client_credentials",
                }
            else:
                refresh_token = self._refresh_tokens.get(kind)
                if not refresh_token:
                    raise CredentialError(f"No refresh token configured for {kind.value}")
                form = {
                    "client_id": self.client_id,
                    "client_secret": self._client_secret,
                    "grant_type": "refresh_token",
                    "refresh_token": refresh_token,
                }

            data = await self._request_token(kind, form)
            token = data.get("access_token")
            if not token:
                raise CredentialError(f"Token response for {kind.value} had no access_token")

            add_secret(token)
            rotated = data.get("refresh_token")
            if rotated and kind is not Authority.APP:
                add_secret(rotated)
                self._refresh_tokens[kind] = rotated

            expires_in = float(data.get("expires_in") or 0)
            self._cache[kind] = _CachedToken(token, self._clock() + expires_in)
            logger.info("Minted %s token (expires in %ds)", kind.value, int(expires_in))
            return token

    async def _request_token(self, kind: Authority, form: dict[str, str]) -> dict[str, Any]:
        try:
            async with self._session.post(TOKEN_URL, data=form, timeout=REQUEST_TIMEOUT) as resp:
                if resp.status != 200:
                    text = await resp.text()
                    raise CredentialError(
                        f"Token request for {kind.value} failed", status=resp.status, body=text
                    )
                return await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise CredentialError(f"Token request for {kind.value} failed: {e}") from e

    def invalidate(self, kind: Authority) -> None:
        """Drop a cached token so the next acquire mints a fresh one."""
        if self._cache.pop(kind, None) is not None:
            logger.info("Invalidated %s token", kind.value)
