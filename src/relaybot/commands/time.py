"""!time: current time in the configured IANA timezone."""

from __future__ import annotations

from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from relaybot.commands.base import Command, CommandContext, CommandResult
from relaybot.utils.logging import get_logger

logger = get_logger(__name__)


class TimeCommand(Command):
    name = "time"
    defaults = {
        "response": "Time: {time}",
        "timezone": "Europe/London",
        "cooldownSeconds": 5,
        "replyToUser": True,
    }

    async def execute(self, ctx: CommandContext, args: list[str]) -> CommandResult:
        tz_name = str(ctx.options.get("timezone") or "Europe/London")
        try:
            zone = ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Unknown timezone %r for !time, using UTC", tz_name)
            tz_name = "UTC"
            zone = timezone.utc

        now = datetime.now(zone)
        return CommandResult(
            vars={
                "time": now.strftime("%H:%M"),
                "date": now.strftime("%d %b %Y"),
                "tz": tz_name,
            }
        )
