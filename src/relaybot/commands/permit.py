"""
!permit <user> [seconds|off]

Grants a chatter a temporary exemption from the link guard. The duration
defaults to moderation.linkGuard.permitTtlSec and is clamped to one hour.
A duration of 0 or "off" revokes the permit instead.
"""

from __future__ import annotations

from relaybot.commands.base import Command, CommandContext, CommandResult
from relaybot.moderation.permit_store import DEFAULT_PERMIT_TTL, clamp_ttl
from relaybot.utils.logging import get_logger

logger = get_logger(__name__)

REVOKE_WORDS = ("0", "off", "revoke")


class PermitCommand(Command):
    name = "permit"
    defaults = {
        "roles": ["mod", "owner"],
        "cooldownSeconds": 1,
        "replyToUser": True,
        "failSilently": False,
        "response": "Permitted {login} for {ttl}s.",
        "templates": {
            "usage": "Usage: !permit <user> [seconds|off]",
            "ok": "Permitted {login} for {ttl}s.",
            "revoked": "Link permit for {login} removed.",
        },
    }

    def _default_ttl(self, ctx: CommandContext) -> int:
        moderation = ctx.general.get("moderation") or {}
        link_guard = moderation.get("linkGuard") or {}
        return clamp_ttl(link_guard.get("permitTtlSec"), DEFAULT_PERMIT_TTL)

    async def execute(self, ctx: CommandContext, args: list[str]) -> CommandResult:
        target = args[0].lstrip("@").strip().lower() if args else ""
        if not target:
            return CommandResult(
                template=ctx.template("usage", "Usage: {prefix}permit <user> [seconds|off]"),
                vars={"prefix": ctx.prefix},
                reply=True,
            )

        if len(args) > 1 and args[1].strip().lower() in REVOKE_WORDS:
            held = ctx.permits.revoke(ctx.channel_id, target)
            logger.info("Permit for %s revoked by %s (held=%s)", target, ctx.user_login, held)
            return CommandResult(
                vars={"login": target, "revoked": held},
                template=ctx.template("revoked", "Link permit for {login} removed."),
            )

        requested = None
        if len(args) > 1:
            try:
                requested = int(args[1])
            except ValueError:
                requested = None
        ttl = clamp_ttl(requested if requested and requested > 0 else None, self._default_ttl(ctx))

        ctx.permits.grant(ctx.channel_id, target, ttl, granted_by=ctx.user_login)
        return CommandResult(
            vars={"login": target, "ttl": ttl},
            template=ctx.template("ok") or None,
        )
