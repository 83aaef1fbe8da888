"""
!so <channel>

Looks up another channel, requests an official shout-out and renders a
follow plug naming the game they are (or were last) playing.

Options:
- doShoutout: issue the official shout-out (default true)
- announce: post the plug as an announcement instead of a chat line
"""

from __future__ import annotations

import re
from typing import Any, Optional

from relaybot.commands.base import Announce, Command, CommandContext, CommandResult, Shoutout
from relaybot.errors import UpstreamError
from relaybot.utils.logging import get_logger
from relaybot.utils.templates import render

logger = get_logger(__name__)

TWITCH_URL_PATTERN = re.compile(r"twitch\.tv/([^/\s]+)", re.IGNORECASE)

DEFAULT_FRAGMENTS = {
    "none": "- they are very cool and deserve your support: ",
    "currently": "- they are currently streaming some {GAME_UPPER}. They are very cool and deserve your support: ",
    "last": "- they were last seen streaming some {GAME_UPPER}. They are very cool and deserve your support: ",
}


def to_login(raw: str) -> str:
    """Normalise "@Name", "name" or a twitch.tv URL to a login."""
    value = (raw or "").strip().lstrip("@")
    match = TWITCH_URL_PATTERN.search(value)
    if match:
        value = match.group(1)
    return value.lower()


class ShoutoutCommand(Command):
    name = "so"
    defaults = {
        "aliases": ["shoutout"],
        "roles": ["mod"],
        "cooldownSeconds": 15,
        "failSilently": True,
        "doShoutout": True,
        "announce": False,
        "response": "Please go and give the lovely {displayName} a follow {gameFragment}https://twitch.tv/{userLogin}",
        "templates": {
            "usage": "Usage: !so <channel>",
            "notFound": "Could not find channel {target}.",
            "fragments": DEFAULT_FRAGMENTS,
        },
    }

    def _fail(self, ctx: CommandContext, text: str) -> CommandResult:
        if ctx.options.get("failSilently"):
            return CommandResult(suppress=True)
        return CommandResult(message=text, reply=True)

    async def _best_game(self, ctx: CommandContext, user_id: str) -> tuple[str, str]:
        """Return (game name, fragment key)."""
        try:
            stream = await ctx.helix.get_stream(user_id)
            if stream and stream.get("game_name"):
                return str(stream["game_name"]), "currently"
            channel = await ctx.helix.get_channel(user_id)
            if channel and channel.get("game_name"):
                return str(channel["game_name"]), "last"
        except UpstreamError as e:
            logger.warning("Game lookup for %s failed: %s", user_id, e)
        return "", "none"

    async def execute(self, ctx: CommandContext, args: list[str]) -> CommandResult:
        target = to_login(args[0]) if args else ""
        if not target:
            return self._fail(ctx, ctx.template("usage", "Usage: !so <channel>"))

        user: Optional[dict[str, Any]] = await ctx.helix.get_user(login=target)
        if not user:
            text = render(ctx.template("notFound", "Could not find channel {target}."), {"target": target})
            return self._fail(ctx, text)

        game, mode = await self._best_game(ctx, str(user["id"]))
        fragments = ctx.templates.get("fragments") or {}
        fragment = render(fragments.get(mode) or DEFAULT_FRAGMENTS[mode], {"GAME_UPPER": game.upper()})

        display = str(user.get("display_name") or user.get("login"))
        values = {
            "displayName": display,
            "userDisplayName": display,
            "userLogin": str(user.get("login")),
            "target": str(user.get("login")),
            "gameName": game,
            "GAME_UPPER": game.upper(),
            "gameFragment": fragment,
        }

        result = CommandResult(vars=values)
        if ctx.options.get("doShoutout", True) is not False:
            result.actions.append(Shoutout(to_broadcaster_id=str(user["id"])))
        if ctx.options.get("announce"):
            text = render(str(ctx.options.get("response") or ""), values)
            if text.strip():
                result.actions.append(Announce(message=text, color=str(ctx.options.get("color") or "primary")))
                result.suppress = True
        return result
