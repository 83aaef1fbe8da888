"""
Helix REST client.

Thin wrapper over the Twitch Helix API covering the calls the bot makes:
- EventSub subscription management
- Chat messages, announcements and shout-outs
- Chat message deletion (moderation)
- User and stream lookups

Every call picks the authority whose token the endpoint needs. Any
non-2xx status raises UpstreamError; a 401 also drops the cached token.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Optional

import aiohttp

from relaybot.errors import UpstreamError
from relaybot.utils.credentials import Authority, CredentialProvider
from relaybot.utils.logging import get_logger

logger = get_logger(__name__)

HELIX_URL = "https://api.twitch.tv/helix"
REQUEST_TIMEOUT = aiohttp.ClientTimeout(total=15)

# Twitch rejects chat messages longer than this
MAX_CHAT_LENGTH = 500


class HelixClient:
    """
    Helix API accessor bound to one channel and one bot account.

    Attributes:
        broadcaster_id: Channel the bot serves
        bot_id: Bot account user ID (sender and moderator identity)
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        credentials: CredentialProvider,
        broadcaster_id: str,
        bot_id: str,
        base_url: str = HELIX_URL,
    ) -> None:
        self._session = session
        self._credentials = credentials
        self.broadcaster_id = broadcaster_id
        self.bot_id = bot_id
        self._base_url = base_url.rstrip("/")

    async def request(
        self,
        method: str,
        path: str,
        authority: Authority,
        params: Optional[dict[str, Any]] = None,
        json_body: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """
        Perform a Helix request.

        Args:
            method: HTTP method
            path: Path below the Helix root (e.g. "/chat/messages")
            authority: Whose token to send
            params: Query parameters
            json_body: JSON request body

        Returns:
            dict: Decoded JSON response ({} for empty bodies)

        Raises:
            CredentialError: If no token could be acquired
            UpstreamError: If the request failed or returned non-2xx
        """
        token = await self._credentials.acquire(authority)
        headers = {
            "Client-Id": self._credentials.client_id,
            "Authorization": f"Bearer {token}",
        }
        url = f"{self._base_url}{path}"

        try:
            async with self._session.request(
                method, url, headers=headers, params=params, json=json_body, timeout=REQUEST_TIMEOUT
            ) as resp:
                text = await resp.text()
                status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise UpstreamError(f"{method} {path} failed: {e}") from e

        if status == 401:
            self._credentials.invalidate(authority)
        if not 200 <= status < 300:
            raise UpstreamError(f"{method} {path} failed", status=status, body=text)
        if not text:
            return {}
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise UpstreamError(f"{method} {path} returned invalid JSON", status=status, body=text) from e

    # ==================== EventSub ====================

    async def create_eventsub_subscription(
        self,
        topic_type: str,
        version: str,
        condition: dict[str, str],
        transport: dict[str, str],
        authority: Authority,
    ) -> dict[str, Any]:
        """Create one EventSub subscription and return its record."""
        data = await self.request(
            "POST",
            "/eventsub/subscriptions",
            authority,
            json_body={
                "type": topic_type,
                "version": version,
                "condition": condition,
                "transport": transport,
            },
        )
        items = data.get("data") or [{}]
        return items[0]

    async def list_eventsub_subscriptions(
        self,
        authority: Authority = Authority.APP,
        topic_type: Optional[str] = None,
        status: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        """List EventSub subscriptions visible to an authority."""
        params: dict[str, Any] = {}
        if topic_type:
            params["type"] = topic_type
        if status:
            params["status"] = status
        data = await self.request("GET", "/eventsub/subscriptions", authority, params=params)
        return list(data.get("data") or [])

    # ==================== Chat ====================

    async def send_chat_message(self, message: str, reply_parent_message_id: Optional[str] = None) -> dict[str, Any]:
        """
        Send a chat message as the bot using the app token.

        Returns:
            dict: The message record ({"message_id", "is_sent", "drop_reason"})
        """
        body: dict[str, Any] = {
            "broadcaster_id": self.broadcaster_id,
            "sender_id": self.bot_id,
            "message": message[:MAX_CHAT_LENGTH],
        }
        if reply_parent_message_id:
            body["reply_parent_message_id"] = reply_parent_message_id
        data = await self.request("POST", "/chat/messages", Authority.APP, json_body=body)
        items = data.get("data") or [{}]
        return items[0]

    async def delete_chat_message(self, message_id: str) -> None:
        """Delete a chat message with the bot's moderator rights."""
        await self.request(
            "DELETE",
            "/moderation/chat",
            Authority.BOT,
            params={
                "broadcaster_id": self.broadcaster_id,
                "moderator_id": self.bot_id,
                "message_id": message_id,
            },
        )

    async def send_announcement(self, message: str, color: str = "primary") -> None:
        """Post a highlighted announcement as the bot."""
        await self.request(
            "POST",
            "/chat/announcements",
            Authority.BOT,
            params={"broadcaster_id": self.broadcaster_id, "moderator_id": self.bot_id},
            json_body={"message": message[:MAX_CHAT_LENGTH], "color": color or "primary"},
        )

    async def send_shoutout(self, to_broadcaster_id: str) -> None:
        """Issue an official shout-out from the channel owner."""
        await self.request(
            "POST",
            "/chat/shoutouts",
            Authority.BROADCASTER,
            params={
                "from_broadcaster_id": self.broadcaster_id,
                "to_broadcaster_id": to_broadcaster_id,
                "moderator_id": self.broadcaster_id,
            },
        )

    # ==================== Lookups ====================

    async def get_user(self, login: Optional[str] = None, user_id: Optional[str] = None) -> Optional[dict[str, Any]]:
        """Look up a user by login or ID. Returns None if not found."""
        params: dict[str, Any] = {}
        if login:
            params["login"] = login.lstrip("@").lower()
        if user_id:
            params["id"] = user_id
        if not params:
            return None
        data = await self.request("GET", "/users", Authority.APP, params=params)
        items = data.get("data") or []
        return items[0] if items else None

    async def get_stream(self, user_id: Optional[str] = None) -> Optional[dict[str, Any]]:
        """Get the live stream for a user (the channel by default). None if offline."""
        data = await self.request(
            "GET", "/streams", Authority.APP, params={"user_id": user_id or self.broadcaster_id}
        )
        items = data.get("data") or []
        return items[0] if items else None

    async def get_channel(self, broadcaster_id: str) -> Optional[dict[str, Any]]:
        """Get channel information (title, last game)."""
        data = await self.request(
            "GET", "/channels", Authority.APP, params={"broadcaster_id": broadcaster_id}
        )
        items = data.get("data") or []
        return items[0] if items else None


class Messenger:
    """
    Posts chat lines as the bot.

    Sending is never fatal: failures are logged and reported as False.
    """

    def __init__(self, helix: HelixClient) -> None:
        self._helix = helix

    async def say(self, text: str) -> bool:
        """Send a plain channel message."""
        return await self._send(text, None)

    async def reply(self, text: str, parent_id: str) -> bool:
        """Send a threaded reply to a chat message."""
        if not parent_id:
            return await self._send(text, None)
        return await self._send(text, parent_id)

    async def _send(self, text: str, parent_id: Optional[str]) -> bool:
        if not text or not text.strip():
            return False
        try:
            result = await self._helix.send_chat_message(text, reply_parent_message_id=parent_id)
        except UpstreamError as e:
            logger.warning("Chat send failed: %s", e)
            return False
        if result.get("is_sent") is False:
            drop = result.get("drop_reason") or {}
            logger.warning("Chat message dropped: %s", drop.get("message") or drop.get("code") or "unknown")
            return False
        logger.debug("Chat sent (%d chars, reply=%s)", len(text), bool(parent_id))
        return True
