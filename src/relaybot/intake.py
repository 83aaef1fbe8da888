"""
Internal intake surface.

Receives chat notifications forwarded by the webhook ingress and puts them
on the bot's inbound queue. Only reachable on the loopback interface and
guarded by a pre-shared secret.
"""

from __future__ import annotations

import asyncio
import hmac
import json
from typing import Optional

from aiohttp import web

from relaybot.events import ChatMessage, InboundEvent, normalize_chat
from relaybot.utils.logging import get_logger
from relaybot.webhook import INTAKE_SECRET_HEADER, MESSAGE_TIMESTAMP_HEADER

logger = get_logger(__name__)

INTAKE_PATH = "/_intake/chat"


class IntakeServer:
    """
    HTTP intake for forwarded chat notifications.

    Responds 204 on success, 403 on a wrong or missing secret and 400 when
    the body is not a JSON chat event.
    """

    def __init__(
        self,
        secret: str,
        queue: asyncio.Queue[InboundEvent],
        host: str = "127.0.0.1",
        port: int = 18082,
    ) -> None:
        self._secret = secret
        self._queue = queue
        self.host = host
        self.port = port
        self._runner: Optional[web.AppRunner] = None
        self.received = 0

        self.app = web.Application()
        self.app.router.add_post(INTAKE_PATH, self.handle_chat)

    def _authorized(self, presented: str) -> bool:
        if not self._secret:
            return False
        return hmac.compare_digest(presented.encode("utf-8"), self._secret.encode("utf-8"))

    async def handle_chat(self, request: web.Request) -> web.Response:
        if not self._authorized(request.headers.get(INTAKE_SECRET_HEADER, "")):
            logger.warning("Intake rejected request from %s: bad secret", request.remote)
            return web.Response(status=403, text="forbidden")

        raw = await request.read()
        try:
            body = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return web.Response(status=400, text="bad-json")
        if not isinstance(body, dict):
            return web.Response(status=400, text="bad-json")

        event = body.get("event") if isinstance(body.get("event"), dict) else body
        try:
            message: ChatMessage = normalize_chat(event, request.headers.get(MESSAGE_TIMESTAMP_HEADER))
        except (AttributeError, TypeError, ValueError) as e:
            logger.warning("Intake dropped malformed chat event: %s", e)
            return web.Response(status=400, text="bad-event")
        if not message.channel_id or not message.user_login:
            logger.warning("Intake dropped chat event without channel or chatter")
            return web.Response(status=400, text="bad-event")

        await self._queue.put(message)
        self.received += 1
        logger.debug("Intake queued chat message %s from %s", message.message_id, message.user_login)
        return web.Response(status=204)

    async def start(self) -> None:
        self._runner = web.AppRunner(self.app, access_log=None)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info("Intake listening on %s:%d%s", self.host, self.port, INTAKE_PATH)

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            logger.info("Intake stopped")
