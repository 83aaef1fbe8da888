"""
EventSub WebSocket sessions.

Each EventSubSession keeps one connection alive for one authority:
- On welcome: record the session, reset backoff, create every topic
  subscription at once. Topics the platform rejects stay out of the live
  set until the next fresh connection.
- On reconnect: open the supplied URL, wait for its welcome, then close the
  old socket. Subscriptions move with the session, so none are recreated.
- On notification: drop duplicates, normalize, put on the inbound queue.
- On revocation: log and drop the topic from the live set.
- On any close we did not ask for (or keepalive silence): wait with
  exponential backoff plus jitter and connect again, forever.
"""

from __future__ import annotations

import asyncio
import json
import random
import time
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, Protocol

import aiohttp

from relaybot.errors import ConnectivityError, CredentialError, UpstreamError
from relaybot.events import InboundEvent, normalize_notification
from relaybot.utils.logging import get_logger

if TYPE_CHECKING:
    from relaybot.eventsub.topics import Topic
    from relaybot.utils.credentials import Authority
    from relaybot.utils.helix import HelixClient

logger = get_logger(__name__)

DEFAULT_WS_URL = "wss://eventsub.wss.twitch.tv/ws"

# Silence tolerated past the platform's keepalive interval
KEEPALIVE_GRACE_SECONDS = 5.0
# How long a fresh socket may take to send its welcome
WELCOME_TIMEOUT_SECONDS = 15.0
# Notification ids remembered for deduplication
DEDUPE_TTL_SECONDS = 600.0

_CLOSED_TYPES = (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR)


class SessionState(Enum):
    CONNECTING = "connecting"
    WELCOMED = "welcomed"
    SUBSCRIBING = "subscribing"
    LIVE = "live"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


class WebSocketLike(Protocol):
    """The part of aiohttp's ClientWebSocketResponse a session uses."""

    closed: bool

    async def receive(self, timeout: Optional[float] = None) -> Any: ...

    async def close(self) -> Any: ...


class Backoff:
    """
    Exponential reconnect delay with additive jitter.

    The base delay doubles after every failed attempt up to the cap and
    goes back to the base after a successful welcome.
    """

    def __init__(
        self,
        base: float = 1.0,
        cap: float = 15.0,
        jitter: float = 0.25,
        random_fn: Callable[[], float] = random.random,
    ) -> None:
        self.base = max(0.0, base)
        self.cap = max(self.base, cap)
        self.jitter = max(0.0, jitter)
        self._random = random_fn
        self._current = self.base

    @property
    def current(self) -> float:
        """Delay (without jitter) the next attempt will use."""
        return min(self._current, self.cap)

    def next_delay(self) -> float:
        delay = self.current + self._random() * self.jitter
        self._current = min(max(self._current, 0.001) * 2, self.cap)
        return delay

    def reset(self) -> None:
        self._current = self.base


class EventSubSession:
    """
    One persistent EventSub connection bound to one authority.

    Attributes:
        label: Name used in log lines
        authority: Credential the topic subscriptions are created with
        topics: Topics to subscribe on every fresh connection
        state: Current lifecycle state
        session_id: Platform session id (None when not connected)
        live_topics: Topic types accepted on the current session
    """

    def __init__(
        self,
        label: str,
        authority: Authority,
        topics: list[Topic],
        helix: HelixClient,
        queue: asyncio.Queue[InboundEvent],
        connect: Callable[[str], Awaitable[WebSocketLike]],
        url: str = DEFAULT_WS_URL,
        backoff: Optional[Backoff] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.label = label
        self.authority = authority
        self.topics = list(topics)
        self.backoff = backoff or Backoff()
        self.state = SessionState.CLOSED
        self.session_id: Optional[str] = None
        self.keepalive_timeout: Optional[float] = None
        self.live_topics: set[str] = set()
        self.reconnects = 0

        self._helix = helix
        self._queue = queue
        self._connect = connect
        self._url = url
        self._clock = clock
        self._sleep = sleep
        self._ws: Optional[WebSocketLike] = None
        self._stopping = False
        self._seen: dict[str, float] = {}

    # ==================== Lifecycle ====================

    async def run(self) -> None:
        """Connect and keep reconnecting until stop() is called."""
        while not self._stopping:
            self.state = SessionState.CONNECTING
            try:
                self._ws = await self._connect(self._url)
                logger.info("[%s] connected to %s", self.label, self._url)
                await self._pump()
            except ConnectivityError as e:
                if not self._stopping:
                    logger.warning("[%s] %s", self.label, e)
            except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
                if not self._stopping:
                    logger.warning("[%s] connection failed: %s", self.label, e)
            finally:
                await self._close_socket()

            if self._stopping:
                break

            self.state = SessionState.RECONNECTING
            self.session_id = None
            self.live_topics = set()
            self.reconnects += 1
            delay = self.backoff.next_delay()
            logger.info("[%s] reconnecting in %.2fs", self.label, delay)
            await self._sleep(delay)

        self.state = SessionState.CLOSED
        logger.info("[%s] stopped", self.label)

    async def stop(self) -> None:
        """Close the connection without scheduling a reconnect."""
        self._stopping = True
        await self._close_socket()

    async def _close_socket(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None and not ws.closed:
            await ws.close()

    async def _receive(self, ws: WebSocketLike) -> Optional[str]:
        """Wait for the next text frame; raises ConnectivityError when the link is dead."""
        if self.keepalive_timeout is not None:
            timeout = self.keepalive_timeout + KEEPALIVE_GRACE_SECONDS
        else:
            timeout = WELCOME_TIMEOUT_SECONDS
        try:
            msg = await ws.receive(timeout=timeout)
        except asyncio.TimeoutError as e:
            raise ConnectivityError("no message within keepalive window", {"timeout": timeout}) from e
        if msg.type in _CLOSED_TYPES:
            raise ConnectivityError("connection closed", {"code": getattr(ws, "close_code", None)})
        if msg.type != aiohttp.WSMsgType.TEXT:
            return None
        return msg.data

    async def _pump(self) -> None:
        self.keepalive_timeout = None
        while not self._stopping and self._ws is not None:
            raw = await self._receive(self._ws)
            if raw is None:
                continue
            reconnect_url = await self.handle_message(raw)
            if reconnect_url:
                await self._handoff(reconnect_url)

    async def _handoff(self, url: str) -> None:
        """Move to the platform-supplied URL, closing the old socket only after the new welcome."""
        self.state = SessionState.RECONNECTING
        old_session = self.session_id
        try:
            new_ws = await self._connect(url)
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
            raise ConnectivityError("reconnect handoff failed", {"error": str(e)}) from e

        previous_keepalive = self.keepalive_timeout
        self.keepalive_timeout = None
        try:
            while True:
                raw = await self._receive(new_ws)
                if raw is None:
                    continue
                message = self._decode(raw)
                if message and message["type"] == "session_welcome":
                    self._on_welcome(message["payload"])
                    break
        except ConnectivityError:
            self.keepalive_timeout = previous_keepalive
            if not new_ws.closed:
                await new_ws.close()
            raise

        old_ws, self._ws = self._ws, new_ws
        if old_ws is not None and not old_ws.closed:
            await old_ws.close()
        self.state = SessionState.LIVE
        logger.info("[%s] handed off session %s -> %s", self.label, old_session, self.session_id)

    # ==================== Messages ====================

    @staticmethod
    def _decode(raw: str) -> Optional[dict[str, Any]]:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return None
        if not isinstance(data, dict):
            return None
        metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
        payload = data.get("payload") if isinstance(data.get("payload"), dict) else {}
        return {
            "type": str(metadata.get("message_type", "")),
            "id": str(metadata.get("message_id", "")),
            "timestamp": metadata.get("message_timestamp"),
            "metadata": metadata,
            "payload": payload,
        }

    async def handle_message(self, raw: str) -> Optional[str]:
        """
        Process one frame.

        Returns:
            str | None: The reconnect URL when the platform asks us to move
        """
        message = self._decode(raw)
        if message is None:
            logger.warning("[%s] ignoring undecodable frame", self.label)
            return None

        message_type = message["type"]
        payload = message["payload"]

        if message_type == "session_welcome":
            self._on_welcome(payload)
            await self.subscribe_all()
            return None

        if message_type == "session_keepalive":
            return None

        if message_type == "session_reconnect":
            session = payload.get("session") or {}
            url = session.get("reconnect_url")
            logger.info("[%s] platform requested reconnect", self.label)
            if not url:
                raise ConnectivityError("reconnect message without URL")
            return str(url)

        if message_type == "notification":
            await self._on_notification(message)
            return None

        if message_type == "revocation":
            subscription = payload.get("subscription") or {}
            topic_type = str(subscription.get("type", ""))
            self.live_topics.discard(topic_type)
            logger.warning(
                "[%s] subscription revoked: %s (%s)", self.label, topic_type, subscription.get("status", "?")
            )
            return None

        logger.debug("[%s] unhandled message type %s", self.label, message_type)
        return None

    def _on_welcome(self, payload: dict[str, Any]) -> None:
        session = payload.get("session") or {}
        self.session_id = str(session.get("id") or "") or None
        try:
            self.keepalive_timeout = float(session.get("keepalive_timeout_seconds") or 10)
        except (TypeError, ValueError):
            self.keepalive_timeout = 10.0
        self.backoff.reset()
        self.state = SessionState.WELCOMED
        logger.info("[%s] welcome, session %s", self.label, self.session_id)

    async def _on_notification(self, message: dict[str, Any]) -> None:
        if self._is_duplicate(message["id"]):
            logger.debug("[%s] duplicate notification %s", self.label, message["id"])
            return
        payload = message["payload"]
        subscription = payload.get("subscription") or {}
        event = payload.get("event") or {}
        normalized = normalize_notification(str(subscription.get("type", "")), event, message["timestamp"])
        if normalized is not None:
            await self._queue.put(normalized)

    def _is_duplicate(self, message_id: str) -> bool:
        if not message_id:
            return False
        now = self._clock()
        stale = [key for key, seen_at in self._seen.items() if now - seen_at > DEDUPE_TTL_SECONDS]
        for key in stale:
            del self._seen[key]
        if message_id in self._seen:
            return True
        self._seen[message_id] = now
        return False

    # ==================== Subscriptions ====================

    async def subscribe_all(self) -> set[str]:
        """
        Create every topic subscription on the current session at once.

        Returns:
            set[str]: Topic types the platform accepted
        """
        session_id = self.session_id
        if not session_id:
            return set()
        self.state = SessionState.SUBSCRIBING
        results = await asyncio.gather(*(self._subscribe(topic, session_id) for topic in self.topics))
        self.live_topics = {topic.type for topic, ok in zip(self.topics, results) if ok}
        self.state = SessionState.LIVE
        logger.info("[%s] live with %d/%d topics", self.label, len(self.live_topics), len(self.topics))
        return set(self.live_topics)

    async def _subscribe(self, topic: Topic, session_id: str) -> bool:
        try:
            record = await self._helix.create_eventsub_subscription(
                topic.type,
                topic.version,
                dict(topic.condition),
                {"method": "websocket", "session_id": session_id},
                topic.authority,
            )
        except CredentialError as e:
            logger.warning("[%s] no credential for %s: %s", self.label, topic.type, e)
            return False
        except UpstreamError as e:
            logger.warning("[%s] subscribe %s failed: %s %s", self.label, topic.type, e, e.body)
            return False
        logger.debug("[%s] subscribed %s (%s)", self.label, topic.type, record.get("id", "?"))
        return True


class SessionManager:
    """Starts, supervises and stops a group of EventSub sessions."""

    def __init__(self, sessions: list[EventSubSession]) -> None:
        self.sessions = list(sessions)
        self._tasks: list[asyncio.Task[None]] = []
        self._stopping = False

    async def start(self) -> None:
        self._stopping = False
        for session in self.sessions:
            self._tasks.append(asyncio.create_task(self._supervise(session), name=f"eventsub-{session.label}"))
        logger.info("Started %d EventSub sessions", len(self.sessions))

    async def _supervise(self, session: EventSubSession) -> None:
        while not self._stopping:
            try:
                await session.run()
                return
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("[%s] session crashed, restarting", session.label)
                await asyncio.sleep(session.backoff.next_delay())

    async def stop(self) -> None:
        self._stopping = True
        for session in self.sessions:
            await session.stop()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("EventSub sessions stopped")

    def states(self) -> dict[str, str]:
        return {session.label: session.state.value for session in self.sessions}
