"""!ping: reply with the delay between the chat message and the bot seeing it."""

from __future__ import annotations

import time

from relaybot.commands.base import Command, CommandContext, CommandResult


class PingCommand(Command):
    name = "ping"
    defaults = {
        "response": "Pong! ({latency}ms)",
        "cooldownSeconds": 3,
        "replyToUser": True,
    }

    async def execute(self, ctx: CommandContext, args: list[str]) -> CommandResult:
        latency = 0
        if ctx.sent_at is not None:
            latency = max(0, int(round((time.time() - ctx.sent_at) * 1000)))
        return CommandResult(vars={"latency": latency, "out": f"Pong! ({latency}ms)"})
