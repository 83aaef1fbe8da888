"""
Main RelayBot class.

This module contains the RelayBot class which handles:
- Building the credential provider, Helix client and ledger
- Starting the EventSub sessions and the chat intake
- Dispatching inbound events to the link guard, router and event messages
- Graceful shutdown
"""

from __future__ import annotations

import asyncio
import sqlite3
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

import aiohttp

from relaybot.commands import CommandRegistry, builtin_commands
from relaybot.config import Config, load_document
from relaybot.errors import RelayBotError
from relaybot.events import ChatMessage, InboundEvent, StreamOffline, StreamOnline
from relaybot.eventsub import Backoff, EventSubSession, SessionManager, build_topics
from relaybot.features import AnnouncementScheduler, EventMessages, Greeter, GreetingSettings, parse_announcements
from relaybot.intake import IntakeServer
from relaybot.moderation import LinkGuard, LinkGuardSettings, PermitStore
from relaybot.router import CommandRouter
from relaybot.utils.credentials import Authority, CredentialProvider, TwitchCredentialProvider
from relaybot.utils.database import Ledger
from relaybot.utils.helix import HelixClient, Messenger
from relaybot.utils.logging import get_logger
from relaybot.utils.permissions import CooldownStore
from relaybot.webhook import ensure_chat_webhook

logger = get_logger(__name__)


def _section(document: Mapping[str, Any], *keys: str) -> Optional[Mapping[str, Any]]:
    node: Any = document
    for key in keys:
        if not isinstance(node, Mapping):
            return None
        node = node.get(key)
    return node if isinstance(node, Mapping) else None


class RelayBot:
    """
    Chat automation service for one channel.

    Attributes:
        config: Process configuration
        general: General settings document
        ledger: Durable usage/permit/moderation store
        permits: Link permits
        registry: Resolved command table
        start_time: Process start timestamp for uptime tracking
    """

    def __init__(
        self,
        config: Config,
        commands_document: Optional[Mapping[str, Any]] = None,
        general_document: Optional[Mapping[str, Any]] = None,
    ) -> None:
        """
        Initialize the bot.

        Args:
            config: Bot configuration object
            commands_document: Command policy (read from config.commands_config if omitted)
            general_document: General settings (read from config.general_config if omitted)

        Raises:
            ValueError: If the command table is inconsistent
        """
        self.config = config
        self.start_time = datetime.now(timezone.utc)
        self.general: Mapping[str, Any] = (
            general_document if general_document is not None else load_document(config.general_config)
        )
        commands_document = (
            commands_document if commands_document is not None else load_document(config.commands_config)
        )

        self.ledger = Ledger(config.database_path)
        self.permits = PermitStore(ledger=self.ledger)
        self.registry = CommandRegistry(builtin_commands(), commands_document)
        self.cooldowns = CooldownStore()
        self.queue: asyncio.Queue[InboundEvent] = asyncio.Queue()

        self._http: Optional[aiohttp.ClientSession] = None
        self.credentials: Optional[CredentialProvider] = None
        self.helix: Optional[HelixClient] = None
        self.messenger: Optional[Messenger] = None
        self.link_guard: Optional[LinkGuard] = None
        self.router: Optional[CommandRouter] = None
        self.event_messages: Optional[EventMessages] = None
        self.announcements: Optional[AnnouncementScheduler] = None
        self.greeter: Optional[Greeter] = None
        self.sessions: Optional[SessionManager] = None
        self.intake: Optional[IntakeServer] = None

        self._dispatcher: Optional[asyncio.Task[None]] = None
        self._stop_event = asyncio.Event()

        logger.info(
            "Bot initialized for channel %s with %d commands",
            config.broadcaster_user_id,
            len(self.registry),
        )

    # ==================== Wiring ====================

    def wire(self, helix: HelixClient, credentials: CredentialProvider, messenger: Optional[Messenger] = None) -> None:
        """Build the components that talk to the platform."""
        self.helix = helix
        self.credentials = credentials
        self.messenger = messenger or Messenger(helix)

        guard_settings = LinkGuardSettings.from_dict(_section(self.general, "moderation", "linkGuard"))
        self.link_guard = LinkGuard(
            guard_settings,
            self.permits,
            self.messenger,
            helix,
            self.ledger,
            prefix=self.config.prefix,
        )
        self.router = CommandRouter(
            self.registry,
            self.ledger,
            self.messenger,
            helix,
            credentials,
            self.permits,
            general=self.general,
            prefix=self.config.prefix,
            cooldowns=self.cooldowns,
        )
        self.event_messages = EventMessages(self.messenger, helix, self.general)
        self.announcements = AnnouncementScheduler(
            helix,
            self.messenger,
            self.config.broadcaster_user_id,
            parse_announcements(self.general.get("announcements")),
        )
        self.greeter = Greeter(
            self.messenger,
            self.ledger,
            GreetingSettings.from_dict(_section(self.general, "greeting")),
        )

    def _build_sessions(self) -> SessionManager:
        assert self.helix is not None
        topics = build_topics(
            self.config.broadcaster_user_id,
            self.config.bot_user_id,
            self.config.chat_transport,
        )
        sessions = [
            EventSubSession(
                label=authority.value,
                authority=authority,
                topics=authority_topics,
                helix=self.helix,
                queue=self.queue,
                connect=self._ws_connect,
                url=self.config.eventsub_ws_url,
                backoff=Backoff(self.config.reconnect_base_seconds, self.config.reconnect_cap_seconds),
            )
            for authority, authority_topics in topics.items()
            if authority_topics
        ]
        return SessionManager(sessions)

    async def _ws_connect(self, url: str) -> aiohttp.ClientWebSocketResponse:
        assert self._http is not None
        return await self._http.ws_connect(url, autoping=True)

    # ==================== Lifecycle ====================

    async def start(self) -> None:
        """Open connections and start every background task."""
        self._http = aiohttp.ClientSession()
        credentials = TwitchCredentialProvider(
            self._http,
            self.config.client_id,
            self.config.client_secret,
            {
                Authority.BROADCASTER: self.config.broadcaster_refresh_token,
                Authority.BOT: self.config.bot_refresh_token,
            },
        )
        helix = HelixClient(
            self._http,
            credentials,
            self.config.broadcaster_user_id,
            self.config.bot_user_id,
        )
        self.wire(helix, credentials)

        abandoned = self.ledger.expire_pending_usage()
        if abandoned:
            logger.warning("Marked %d unfinished command attempts as abandoned", abandoned)
        restored = self.permits.restore()
        if restored:
            logger.info("Restored %d active permits", restored)
        await self.sync_stream_state()

        if self.config.chat_transport == "webhook":
            self.intake = IntakeServer(
                self.config.intake_secret,
                self.queue,
                host=self.config.intake_host,
                port=self.config.intake_port,
            )
            await self.intake.start()
            if self.config.webhook_callback_url and self.config.webhook_secret:
                await ensure_chat_webhook(
                    helix,
                    self.config.webhook_callback_url,
                    self.config.webhook_secret,
                    self.config.broadcaster_user_id,
                    self.config.bot_user_id,
                )
            else:
                logger.warning("WEBHOOK_CALLBACK_URL/WEBHOOK_SECRET not set; chat webhook subscription not checked")

        self._dispatcher = asyncio.create_task(self._dispatch_loop(), name="dispatcher")
        self.sessions = self._build_sessions()
        await self.sessions.start()
        assert self.announcements is not None
        self.announcements.start()
        assert self.greeter is not None
        self.greeter.start()
        logger.info("Bot is ready!")

    async def run(self) -> None:
        """Start, then block until stop() is called."""
        await self.start()
        try:
            await self._stop_event.wait()
        finally:
            await self.close()

    def stop(self) -> None:
        self._stop_event.set()

    async def close(self) -> None:
        """Stop background tasks and release connections."""
        logger.info("Shutting down...")
        if self.greeter:
            await self.greeter.stop()
        if self.announcements:
            await self.announcements.stop()
        if self.sessions:
            await self.sessions.stop()
        if self.intake:
            await self.intake.stop()
        if self._dispatcher:
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
            self._dispatcher = None
        if self._http and not self._http.closed:
            await self._http.close()
        logger.info("Bot shutdown complete")

    # ==================== Dispatch ====================

    async def _dispatch_loop(self) -> None:
        while True:
            event = await self.queue.get()
            try:
                await self.dispatch(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception("Error dispatching %s event: %s", event.kind, e)
            finally:
                self.queue.task_done()

    async def dispatch(self, event: InboundEvent) -> None:
        """
        Handle one inbound event.

        Chat lines go through the link guard first; a line the guard acted
        on is not routed as a command.
        """
        if isinstance(event, ChatMessage):
            if event.user_id and event.user_id == self.config.bot_user_id:
                return
            assert self.link_guard is not None and self.router is not None
            if await self.link_guard.check_and_handle(event):
                return
            await self.router.dispatch(event)
            return

        if isinstance(event, StreamOnline):
            stream_id = self.ledger.begin_stream(event.channel_id, event.started_at or None)
            logger.info("Stream online (stream %d)", stream_id)
            return

        if isinstance(event, StreamOffline):
            self.ledger.end_stream(event.channel_id)
            logger.info("Stream offline")
            return

        assert self.event_messages is not None
        await self.event_messages.handle(event)

    async def sync_stream_state(self) -> None:
        """Open or close the ledger's stream record to match the channel's live state."""
        assert self.helix is not None
        channel_id = self.config.broadcaster_user_id
        try:
            stream = await self.helix.get_stream(channel_id)
        except RelayBotError as e:
            logger.warning("Could not read live state at startup: %s", e)
            return

        try:
            current = self.ledger.current_stream_id(channel_id)
            if stream and not current:
                self.ledger.begin_stream(channel_id, stream.get("started_at"))
                logger.info("Channel already live, opened stream record")
            elif not stream and current:
                self.ledger.end_stream(channel_id)
                logger.info("Channel offline, closed stale stream record")
        except sqlite3.Error as e:
            logger.error("Failed to sync stream state: %s", e)

    @property
    def uptime(self) -> float:
        """Get bot uptime in seconds."""
        return (datetime.now(timezone.utc) - self.start_time).total_seconds()
