"""
Startup greeting.

The general settings ``greeting`` section:
- enabled: send one chat line after the bot connects (default false)
- message: the line to send
- delayMs: wait before sending (default 1500)
- minIntervalSec: stay quiet if the last greeting is more recent than this (default 900)

The last greeting instant is kept in the ledger so quick restarts do not
greet the channel again.
"""

from __future__ import annotations

import asyncio
import sqlite3
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping, Optional

from relaybot.utils.logging import get_logger

if TYPE_CHECKING:
    from relaybot.utils.database import Ledger
    from relaybot.utils.helix import Messenger

logger = get_logger(__name__)

GREETING_STATE_KEY = "greeting.last_sent"


def _seconds(value: Any, default: float, scale: float = 1.0) -> float:
    try:
        return max(0.0, float(value) / scale)
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class GreetingSettings:
    enabled: bool = False
    message: str = "I am online"
    delay_seconds: float = 1.5
    min_interval_seconds: float = 900.0

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "GreetingSettings":
        if not data:
            return cls()
        return cls(
            enabled=bool(data.get("enabled", False)),
            message=str(data.get("message") or cls.message).strip(),
            delay_seconds=_seconds(data.get("delayMs", 1500), cls.delay_seconds, scale=1000.0),
            min_interval_seconds=_seconds(data.get("minIntervalSec", 900), cls.min_interval_seconds),
        )


class Greeter:
    """Sends the startup greeting once, throttled across restarts."""

    def __init__(
        self,
        messenger: Messenger,
        ledger: Ledger,
        settings: GreetingSettings,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._messenger = messenger
        self._ledger = ledger
        self.settings = settings
        self._clock = clock
        self._sleep = sleep
        self._task: Optional[asyncio.Task[bool]] = None

    def last_sent(self) -> float:
        """Get the epoch second of the last greeting, or 0 if never sent."""
        try:
            return float(self._ledger.get_state(GREETING_STATE_KEY, "0"))
        except (sqlite3.Error, TypeError, ValueError) as e:
            logger.warning("Could not read greeting state: %s", e)
            return 0.0

    def is_due(self) -> bool:
        interval = self.settings.min_interval_seconds
        return not interval or self._clock() - self.last_sent() >= interval

    async def run(self) -> bool:
        """
        Wait the configured delay, then greet unless throttled.

        Returns:
            bool: True if the greeting was sent
        """
        if not self.settings.enabled:
            return False
        if not self.is_due():
            logger.info("Greeting suppressed, last sent %ds ago", int(self._clock() - self.last_sent()))
            return False

        await self._sleep(self.settings.delay_seconds)
        if not await self._messenger.say(self.settings.message):
            logger.warning("Greeting was not sent")
            return False

        try:
            self._ledger.set_state(GREETING_STATE_KEY, int(self._clock()))
        except sqlite3.Error as e:
            logger.error("Failed to record greeting time: %s", e)
        logger.info("Greeting sent")
        return True

    def start(self) -> None:
        if self.settings.enabled:
            self._task = asyncio.create_task(self.run(), name="greeting")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
