"""
Command router.

Dispatches one chat message to at most one command, in strict order:
1. Prefix check (no prefix: ignored, nothing logged)
2. Resolve name or alias (unknown: ignored, nothing logged)
3. Role check            -> reason "forbidden"
4. Global cooldown check -> reason "cooldown"
5. Quota reservation     -> reason "limit-user" / "limit-stream"
6. Execute               -> reason "error" on exception
7. Run declared side effects (best effort)
8. Render and send the response
9. Start the cooldown and mark the usage record successful

Every attempt past stage 2 leaves exactly one usage record.
"""

from __future__ import annotations

import math
import sqlite3
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Mapping, Optional

from relaybot.commands.base import Action, Announce, CommandContext, CommandResult, Shoutout
from relaybot.errors import AuthorizationError, ExecutionError, RelayBotError, ThrottleError
from relaybot.utils.logging import get_logger
from relaybot.utils.permissions import CooldownStore, Role, has_role
from relaybot.utils.templates import render

if TYPE_CHECKING:
    from relaybot.commands.registry import CommandDescriptor, CommandRegistry
    from relaybot.events import ChatMessage
    from relaybot.moderation.permit_store import PermitStore
    from relaybot.utils.credentials import CredentialProvider
    from relaybot.utils.database import Ledger
    from relaybot.utils.helix import HelixClient, Messenger

logger = get_logger(__name__)

DENIAL_DEFAULTS = {
    "forbidden": "Not allowed.",
    "forbiddenMod": "Mods only.",
    "cooldown": "Command on cooldown, wait {seconds}s.",
    "limitUser": "You've hit the per-user limit.",
    "limitStream": "Stream limit reached.",
}

LIMIT_TEMPLATE_KEYS = {"limit-user": "limitUser", "limit-stream": "limitStream"}


@dataclass(frozen=True)
class ActionOutcome:
    """Result of one best-effort side effect."""

    kind: str
    ok: bool
    error: Optional[str] = None


async def run_actions(actions: list[Action], helix: HelixClient) -> list[ActionOutcome]:
    """
    Run declared side effects in order.

    Failures never raise; each one becomes an ActionOutcome with ok=False.

    Args:
        actions: Actions returned by an executor
        helix: Helix client to act through

    Returns:
        list[ActionOutcome]: One outcome per action
    """
    outcomes: list[ActionOutcome] = []
    for action in actions or []:
        try:
            if isinstance(action, Announce):
                await helix.send_announcement(action.message, action.color)
            elif isinstance(action, Shoutout):
                await helix.send_shoutout(action.to_broadcaster_id)
            else:
                outcomes.append(ActionOutcome(kind=type(action).__name__, ok=False, error="unknown action"))
                continue
        except RelayBotError as e:
            outcomes.append(ActionOutcome(kind=action.kind, ok=False, error=str(e)))
            continue
        outcomes.append(ActionOutcome(kind=action.kind, ok=True))
    return outcomes


class CommandRouter:
    """
    Turns chat messages into command executions.

    The cooldown store is owned by the router; quota counts always come
    fresh from the ledger.
    """

    def __init__(
        self,
        registry: CommandRegistry,
        ledger: Ledger,
        messenger: Messenger,
        helix: HelixClient,
        credentials: CredentialProvider,
        permits: PermitStore,
        general: Optional[Mapping[str, Any]] = None,
        prefix: str = "!",
        cooldowns: Optional[CooldownStore] = None,
    ) -> None:
        self.registry = registry
        self.cooldowns = cooldowns or CooldownStore()
        self._ledger = ledger
        self._messenger = messenger
        self._helix = helix
        self._credentials = credentials
        self._permits = permits
        self._general = general or {}
        self.prefix = prefix

    async def dispatch(self, event: ChatMessage) -> bool:
        """
        Route one chat message.

        Args:
            event: Normalized chat message

        Returns:
            bool: True if the message was consumed as a command attempt
        """
        text = (event.text or "").strip()
        if not text.startswith(self.prefix):
            return False

        tokens = text[len(self.prefix):].split()
        if not tokens:
            return False
        descriptor = self.registry.resolve(tokens[0])
        if descriptor is None:
            return False
        args = tokens[1:]
        name = descriptor.name

        stream_id = self._ledger.current_stream_id(event.channel_id)

        # Role
        try:
            self._check_role(descriptor, event)
        except AuthorizationError as e:
            logger.info("%s denied for %s: %s", name, event.user_login, e)
            self._log(descriptor, event, stream_id, ok=False, reason="forbidden")
            await self._deny(descriptor, event, self._forbidden_text(descriptor), {})
            return True

        # Cooldown
        left = self.cooldowns.remaining(name)
        if left > 0:
            seconds = max(1, math.ceil(left))
            logger.debug("%s on cooldown (%ds left), %s ignored", name, seconds, event.user_login)
            self._log(descriptor, event, stream_id, ok=False, reason="cooldown")
            await self._deny(descriptor, event, self._denial(descriptor, "cooldown"), {"seconds": seconds, "left": seconds})
            return True

        # Quotas
        try:
            usage_id = self._reserve(descriptor, event, stream_id)
        except ThrottleError as e:
            logger.info("%s rejected for %s: %s", name, event.user_login, e.reason)
            await self._deny(descriptor, event, self._denial(descriptor, LIMIT_TEMPLATE_KEYS[e.reason]), {})
            return True

        # Execute
        ctx = self._context(descriptor, event)
        try:
            result = await descriptor.executor.execute(ctx, args)
        except Exception as e:
            error = ExecutionError(f"Command {name} failed", {"error": repr(e)})
            logger.exception("%s", error)
            self._complete(usage_id, ok=False, reason="error")
            return True
        if result is None:
            result = CommandResult()

        # Side effects
        for outcome in await run_actions(result.actions, self._helix):
            if not outcome.ok:
                logger.warning("%s: %s action failed: %s", name, outcome.kind, outcome.error)

        # Render and send
        rendered = self.render(descriptor, event, result)
        if not result.suppress:
            if rendered.strip():
                reply = result.reply if result.reply is not None else descriptor.reply_to_user
                if reply and event.message_id:
                    await self._messenger.reply(rendered, event.message_id)
                else:
                    await self._messenger.say(rendered)
            else:
                logger.warning("Empty render for command %s", name)

        self.cooldowns.start(name, descriptor.cooldown_seconds)
        self._complete(usage_id, ok=True)
        logger.info("%s run by %s", name, event.user_login)
        return True

    @staticmethod
    def render(descriptor: CommandDescriptor, event: ChatMessage, result: CommandResult) -> str:
        """
        Build the response text for a finished command.

        An explicit message wins; otherwise the per-run template (or the
        configured response) is filled from vars over the base identity
        tokens. An empty render falls back to vars["out"].
        """
        if result.message:
            return result.message

        values: dict[str, Any] = {
            "login": event.user_login,
            "displayName": event.user_name,
            "channelLogin": event.channel_login,
        }
        values.update(result.vars or {})

        template = result.template if isinstance(result.template, str) and result.template else descriptor.response
        rendered = render(template, values)
        if not rendered.strip() and (result.vars or {}).get("out") is not None:
            rendered = str(result.vars["out"])
        return rendered

    # ==================== Stages ====================

    @staticmethod
    def _check_role(descriptor: CommandDescriptor, event: ChatMessage) -> None:
        if not has_role(descriptor.roles, event.is_mod, event.is_broadcaster):
            raise AuthorizationError(
                "missing role",
                {"required": ",".join(r.value for r in descriptor.roles)},
            )

    def _reserve(self, descriptor: CommandDescriptor, event: ChatMessage, stream_id: int) -> int:
        usage_id, reason = self._ledger.reserve_usage(
            descriptor.name,
            event.user_id,
            event.user_login,
            message_id=event.message_id,
            stream_id=stream_id,
            limit_per_user=descriptor.limit_per_user,
            limit_per_stream=descriptor.limit_per_stream,
        )
        if usage_id is None:
            raise ThrottleError(f"{descriptor.name} over quota", reason or "limit-stream")
        return usage_id

    def _context(self, descriptor: CommandDescriptor, event: ChatMessage) -> CommandContext:
        return CommandContext(
            command=descriptor.name,
            user_id=event.user_id,
            user_login=event.user_login,
            user_name=event.user_name,
            channel_id=event.channel_id,
            channel_login=event.channel_login,
            message_id=event.message_id,
            is_mod=event.is_mod,
            is_broadcaster=event.is_broadcaster,
            prefix=self.prefix,
            options=descriptor.options,
            templates=descriptor.templates,
            general=self._general,
            helix=self._helix,
            credentials=self._credentials,
            permits=self._permits,
            sent_at=event.sent_at,
        )

    # ==================== Helpers ====================

    @staticmethod
    def _denial(descriptor: CommandDescriptor, key: str) -> str:
        value = descriptor.templates.get(key)
        return value if isinstance(value, str) and value else DENIAL_DEFAULTS[key]

    def _forbidden_text(self, descriptor: CommandDescriptor) -> str:
        value = descriptor.templates.get("forbidden")
        if isinstance(value, str) and value:
            return value
        if Role.MOD in descriptor.roles:
            return DENIAL_DEFAULTS["forbiddenMod"]
        return DENIAL_DEFAULTS["forbidden"]

    async def _deny(self, descriptor: CommandDescriptor, event: ChatMessage, template: str, values: dict[str, Any]) -> None:
        if descriptor.fail_silently:
            return
        text = render(template, {"login": event.user_login, "command": descriptor.name, **values})
        if not text.strip():
            return
        if event.message_id:
            await self._messenger.reply(text, event.message_id)
        else:
            await self._messenger.say(text)

    def _log(self, descriptor: CommandDescriptor, event: ChatMessage, stream_id: int, ok: bool, reason: Optional[str]) -> None:
        try:
            self._ledger.log_usage(
                descriptor.name,
                event.user_id,
                event.user_login,
                ok=ok,
                reason=reason,
                message_id=event.message_id,
                stream_id=stream_id,
            )
        except sqlite3.Error as e:
            logger.error("Failed to record usage of %s: %s", descriptor.name, e)

    def _complete(self, usage_id: int, ok: bool, reason: Optional[str] = None) -> None:
        try:
            self._ledger.complete_usage(usage_id, ok=ok, reason=reason)
        except sqlite3.Error as e:
            logger.error("Failed to finalise usage record %d: %s", usage_id, e)
