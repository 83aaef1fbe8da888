"""
EventSub webhook ingress.

A small public aiohttp server that:
- Verifies the HMAC-SHA256 signature of every delivery (403 on mismatch)
- Answers the subscription handshake by echoing the challenge
- Acknowledges revocations
- Acknowledges notifications at once, then forwards the raw body to the
  bot's intake surface with a shared secret header

Run it as its own process with ``relaybot-webhook`` (or run_webhook.py).
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import os
import signal
import socket
import time
from collections import OrderedDict
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Awaitable, Callable, Optional

import aiohttp
from aiohttp import web

from relaybot.config import WebhookConfig, load_webhook_config
from relaybot.errors import AuthenticationError, UpstreamError
from relaybot.events import parse_timestamp
from relaybot.utils.credentials import Authority
from relaybot.utils.logging import get_logger, setup_logging

if TYPE_CHECKING:
    from relaybot.utils.helix import HelixClient

logger = get_logger(__name__)

MESSAGE_ID_HEADER = "Twitch-Eventsub-Message-Id"
MESSAGE_TIMESTAMP_HEADER = "Twitch-Eventsub-Message-Timestamp"
MESSAGE_SIGNATURE_HEADER = "Twitch-Eventsub-Message-Signature"
MESSAGE_TYPE_HEADER = "Twitch-Eventsub-Message-Type"
SUBSCRIPTION_TYPE_HEADER = "Twitch-Eventsub-Subscription-Type"
INTAKE_SECRET_HEADER = "X-Intake-Secret"
HMAC_PREFIX = "sha256="

# Deliveries older than this are treated as replays
MAX_MESSAGE_AGE_SECONDS = 600
# Notification ids remembered for deduplication
DEDUPE_CAPACITY = 2048

Forwarder = Callable[[bytes, dict[str, str]], Awaitable[None]]


def compute_signature(secret: str, message_id: str, timestamp: str, body: bytes) -> str:
    """
    Compute the EventSub signature header value.

    Returns:
        str: "sha256=" followed by the hex HMAC of id + timestamp + body
    """
    message = message_id.encode("utf-8") + timestamp.encode("utf-8") + body
    digest = hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()
    return HMAC_PREFIX + digest


def verify_signature(secret: str, message_id: str, timestamp: str, body: bytes, signature: str) -> None:
    """
    Check a delivery's signature in constant time.

    Raises:
        AuthenticationError: If the signature is missing or wrong
    """
    if not signature or not message_id or not timestamp:
        raise AuthenticationError("missing signature headers")
    expected = compute_signature(secret, message_id, timestamp, body)
    if not hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8")):
        raise AuthenticationError("signature mismatch", {"message_id": message_id})


def check_freshness(timestamp: str, now: Optional[float] = None, max_age: float = MAX_MESSAGE_AGE_SECONDS) -> None:
    """
    Reject deliveries whose timestamp is too old to be a first delivery.

    Raises:
        AuthenticationError: If the timestamp is unparseable or stale
    """
    sent_at = parse_timestamp(timestamp)
    if sent_at is None:
        raise AuthenticationError("invalid message timestamp", {"timestamp": timestamp})
    current = time.time() if now is None else now
    if current - sent_at > max_age:
        raise AuthenticationError("stale message", {"age": int(current - sent_at)})


class WebhookIngress:
    """
    Webhook HTTP surface.

    Attributes:
        app: The aiohttp application (usable directly with a test client)
    """

    def __init__(
        self,
        config: WebhookConfig,
        forwarder: Optional[Forwarder] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self._forwarder = forwarder
        self._clock = clock
        self._session: Optional[aiohttp.ClientSession] = None
        self._runner: Optional[web.AppRunner] = None
        self._tasks: set[asyncio.Task[None]] = set()
        self._seen: OrderedDict[str, None] = OrderedDict()

        self.started_at = datetime.now(timezone.utc)
        self.last_event_at: Optional[datetime] = None
        self.events_received = 0

        self.app = web.Application()
        self.app.router.add_get("/healthz", self.handle_healthz)
        self.app.router.add_post(config.path, self.handle_callback)
        self.app.on_cleanup.append(self._on_cleanup)

    # ==================== Handlers ====================

    async def handle_healthz(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "pid": os.getpid(),
            "hostname": socket.gethostname(),
            "uptimeSec": int((datetime.now(timezone.utc) - self.started_at).total_seconds()),
            "startedAt": self.started_at.isoformat(),
            "lastEventAt": self.last_event_at.isoformat() if self.last_event_at else None,
            "eventsReceived": self.events_received,
        })

    async def handle_callback(self, request: web.Request) -> web.Response:
        raw = await request.read()
        headers = request.headers
        message_id = headers.get(MESSAGE_ID_HEADER, "")
        timestamp = headers.get(MESSAGE_TIMESTAMP_HEADER, "")
        message_type = headers.get(MESSAGE_TYPE_HEADER, "")
        subscription_type = headers.get(SUBSCRIPTION_TYPE_HEADER, "-")

        try:
            verify_signature(self.config.secret, message_id, timestamp, raw, headers.get(MESSAGE_SIGNATURE_HEADER, ""))
            check_freshness(timestamp, now=self._clock())
        except AuthenticationError as e:
            logger.warning("403 %s (type=%s sub=%s len=%d)", e, message_type or "-", subscription_type, len(raw))
            return web.Response(status=403, text="bad-signature")

        try:
            body = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.warning("400 unparseable body (type=%s)", message_type)
            return web.Response(status=400, text="bad-json")
        if not isinstance(body, dict):
            return web.Response(status=400, text="bad-json")

        if message_type == "webhook_callback_verification":
            challenge = str(body.get("challenge") or "")
            logger.info("Verified subscription %s (%s)", (body.get("subscription") or {}).get("id", "-"), subscription_type)
            return web.Response(status=200, text=challenge)

        if message_type == "revocation":
            subscription = body.get("subscription") or {}
            logger.warning("Subscription revoked: %s (%s)", subscription_type, subscription.get("status", "?"))
            return web.Response(status=200, text="ok")

        if message_type == "notification":
            self.last_event_at = datetime.now(timezone.utc)
            self.events_received += 1
            if self._remember(message_id):
                self._spawn_forward(raw, {MESSAGE_TIMESTAMP_HEADER: timestamp, MESSAGE_ID_HEADER: message_id})
                logger.debug("Notification %s (%s) queued for intake", message_id, subscription_type)
            else:
                logger.info("Duplicate notification %s acknowledged", message_id)
            return web.Response(status=200, text="ok")

        logger.warning("400 unknown message type %r", message_type)
        return web.Response(status=400, text="bad-type")

    # ==================== Forwarding ====================

    def _remember(self, message_id: str) -> bool:
        """Record a notification id. Returns False if it was already seen."""
        if not message_id:
            return True
        if message_id in self._seen:
            self._seen.move_to_end(message_id)
            return False
        self._seen[message_id] = None
        while len(self._seen) > DEDUPE_CAPACITY:
            self._seen.popitem(last=False)
        return True

    def _spawn_forward(self, raw: bytes, extra_headers: dict[str, str]) -> None:
        task = asyncio.create_task(self._forward(raw, extra_headers))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _forward(self, raw: bytes, extra_headers: dict[str, str]) -> None:
        if self._forwarder is not None:
            try:
                await self._forwarder(raw, extra_headers)
            except Exception as e:
                logger.error("Intake forward failed: %s", e)
            return

        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        headers = {"Content-Type": "application/json", **extra_headers}
        if self.config.intake_secret:
            headers[INTAKE_SECRET_HEADER] = self.config.intake_secret
        try:
            async with self._session.post(self.config.intake_url, data=raw, headers=headers) as resp:
                if resp.status >= 300:
                    logger.warning("Intake forward returned HTTP %d", resp.status)
                else:
                    logger.debug("Intake forward HTTP %d", resp.status)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("Intake forward failed: %s", e)

    async def drain(self) -> None:
        """Wait for in-flight forwards to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _on_cleanup(self, app: web.Application) -> None:
        await self.drain()
        if self._session and not self._session.closed:
            await self._session.close()

    # ==================== Server ====================

    async def start(self) -> None:
        self._runner = web.AppRunner(self.app, access_log=None)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.config.host, self.config.port)
        await site.start()
        logger.info("Webhook ingress listening on %s:%d%s", self.config.host, self.config.port, self.config.path)

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            logger.info("Webhook ingress stopped")


async def ensure_chat_webhook(
    helix: HelixClient,
    callback_url: str,
    secret: str,
    broadcaster_id: str,
    bot_id: str,
) -> Optional[str]:
    """
    Make sure a channel.chat.message webhook subscription exists.

    Reuses an enabled subscription pointing at the same callback and
    condition; otherwise creates one with the app credential.

    Returns:
        str | None: Subscription id, or None if it could not be created
    """
    try:
        existing = await helix.list_eventsub_subscriptions(Authority.APP, topic_type="channel.chat.message")
    except UpstreamError as e:
        logger.warning("Could not list chat webhook subscriptions: %s", e)
        existing = []

    for sub in existing:
        transport = sub.get("transport") or {}
        condition = sub.get("condition") or {}
        if (
            transport.get("method") == "webhook"
            and transport.get("callback") == callback_url
            and condition.get("broadcaster_user_id") == broadcaster_id
            and condition.get("user_id") == bot_id
            and sub.get("status") == "enabled"
        ):
            logger.info("Chat webhook subscription %s already enabled", sub.get("id"))
            return str(sub.get("id"))

    try:
        created = await helix.create_eventsub_subscription(
            "channel.chat.message",
            "1",
            {"broadcaster_user_id": broadcaster_id, "user_id": bot_id},
            {"method": "webhook", "callback": callback_url, "secret": secret},
            Authority.APP,
        )
    except UpstreamError as e:
        logger.error("Could not create chat webhook subscription: %s %s", e, e.body)
        return None
    logger.info("Created chat webhook subscription %s (%s)", created.get("id", "-"), created.get("status", "-"))
    return str(created.get("id")) if created.get("id") else None


async def _serve(config: WebhookConfig) -> None:
    ingress = WebhookIngress(config)
    await ingress.start()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows
            pass

    try:
        await stop_event.wait()
    finally:
        await ingress.stop()


def main() -> None:
    """Entry point for the webhook ingress process."""
    try:
        config = load_webhook_config()
    except ValueError as e:
        print(f"Configuration error: {e}")
        print("\nPlease check your .env file and ensure WEBHOOK_SECRET is set.")
        raise SystemExit(1)

    setup_logging(config)
    logger.info("Starting webhook ingress (secret length %d)", len(config.secret))

    try:
        asyncio.run(_serve(config))
    except KeyboardInterrupt:
        logger.info("Shutdown requested")


if __name__ == "__main__":
    main()
