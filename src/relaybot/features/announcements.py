"""
Timed announcements.

Each entry in the general settings ``announcements`` list posts on its own
interval:
- text: message text
- everyMin: repeat interval in minutes
- initialDelayMin: delay before the first post (defaults to everyMin)
- jitterSec: up to this many random seconds added to every wait
- type: "chat" or "announcement"
- liveOnly: skip posts while the channel is offline (default true)
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterable, Mapping, Optional

from relaybot.errors import UpstreamError
from relaybot.utils.logging import get_logger

if TYPE_CHECKING:
    from relaybot.utils.helix import HelixClient, Messenger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Announcement:
    text: str
    every_minutes: float
    initial_delay_minutes: float
    jitter_seconds: float = 0.0
    type: str = "chat"
    live_only: bool = True

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Optional["Announcement"]:
        """Build an entry, or None if it has no text or no interval."""
        text = str(data.get("text") or data.get("message") or "").strip()
        try:
            every = float(data.get("everyMin") or 0)
            initial = float(data.get("initialDelayMin", every) or 0)
            jitter = float(data.get("jitterSec") or 0)
        except (TypeError, ValueError):
            return None
        if not text or every <= 0:
            return None
        kind = str(data.get("type") or "chat").lower()
        if kind not in ("chat", "announcement"):
            kind = "chat"
        return cls(
            text=text,
            every_minutes=every,
            initial_delay_minutes=max(0.0, initial),
            jitter_seconds=max(0.0, jitter),
            type=kind,
            live_only=bool(data.get("liveOnly", True)),
        )


def parse_announcements(entries: Any) -> list[Announcement]:
    if not isinstance(entries, list):
        return []
    parsed = []
    for entry in entries:
        if not isinstance(entry, Mapping):
            continue
        announcement = Announcement.from_dict(entry)
        if announcement is None:
            logger.warning("Skipping announcement without text or interval: %r", entry)
            continue
        parsed.append(announcement)
    return parsed


class AnnouncementScheduler:
    """Runs one posting loop per announcement."""

    def __init__(
        self,
        helix: HelixClient,
        messenger: Messenger,
        broadcaster_id: str,
        announcements: Iterable[Announcement],
        random_fn: Callable[[], float] = random.random,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._helix = helix
        self._messenger = messenger
        self._broadcaster_id = broadcaster_id
        self.announcements = list(announcements)
        self._random = random_fn
        self._sleep = sleep
        self._tasks: list[asyncio.Task[None]] = []

    def _jitter(self, announcement: Announcement) -> float:
        return self._random() * announcement.jitter_seconds

    async def is_live(self) -> bool:
        try:
            return await self._helix.get_stream(self._broadcaster_id) is not None
        except UpstreamError as e:
            logger.warning("Live check failed: %s", e)
            return False

    async def post(self, announcement: Announcement) -> bool:
        """
        Post one announcement now.

        Returns:
            bool: True if it was sent
        """
        if announcement.live_only and not await self.is_live():
            logger.debug("Channel offline, skipping announcement")
            return False

        if announcement.type == "announcement":
            try:
                await self._helix.send_announcement(announcement.text)
            except UpstreamError as e:
                logger.warning("Announcement failed: %s", e)
                return False
            return True

        return await self._messenger.say(announcement.text)

    async def _run(self, announcement: Announcement) -> None:
        await self._sleep(announcement.initial_delay_minutes * 60 + self._jitter(announcement))
        while True:
            try:
                await self.post(announcement)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Error posting announcement: %s", e)
            await self._sleep(announcement.every_minutes * 60 + self._jitter(announcement))

    def start(self) -> None:
        for announcement in self.announcements:
            self._tasks.append(asyncio.create_task(self._run(announcement)))
        logger.info("Announcements started: %d timers", len(self._tasks))

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("Announcements stopped")
