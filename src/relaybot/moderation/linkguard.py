"""
Link guard for non-command chat lines.

Flow for each chat line:
- Skip moderators, the broadcaster and command lines
- Extract host-like substrings (scheme optional)
- Pass if every host is whitelisted or the author holds a permit
- Otherwise warn (threaded reply, falling back to a mention), delete the
  message and record a moderation event
"""

from __future__ import annotations

import re
import sqlite3
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Iterable, Mapping, Optional

from relaybot.errors import UpstreamError
from relaybot.moderation.permit_store import DEFAULT_PERMIT_TTL, PermitStore, clamp_ttl
from relaybot.utils.logging import get_logger
from relaybot.utils.templates import render

if TYPE_CHECKING:
    from relaybot.events import ChatMessage
    from relaybot.utils.database import Ledger
    from relaybot.utils.helix import HelixClient, Messenger

logger = get_logger(__name__)

DEFAULT_WARN_TEMPLATE = "@{login} links aren't allowed. Ask a mod for !permit."

# Scheme-optional host matcher; the last label must be alphabetic
HOST_PATTERN = re.compile(
    r"(?<![\w.@-])(?:https?://)?((?:[a-z0-9](?:[-a-z0-9]*[a-z0-9])?\.)+[a-z]{2,63})(?![\w-])",
    re.IGNORECASE,
)


def extract_hosts(text: str) -> list[str]:
    """
    Find every host-like substring in a chat line.

    Hosts are lower-cased with a leading "www." removed. Order is kept and
    duplicates are dropped.
    """
    hosts: list[str] = []
    for match in HOST_PATTERN.finditer(text or ""):
        host = match.group(1).lower()
        if host.startswith("www."):
            host = host[4:]
        if host and host not in hosts:
            hosts.append(host)
    return hosts


def host_is_whitelisted(host: str, whitelist: Iterable[str]) -> bool:
    """Exact match or subdomain of a whitelisted host."""
    host = host.lower()
    for allowed in whitelist:
        allowed = allowed.lower().strip()
        if allowed.startswith("www."):
            allowed = allowed[4:]
        if not allowed:
            continue
        if host == allowed or host.endswith("." + allowed):
            return True
    return False


@dataclass
class LinkGuardSettings:
    """
    Link guard policy from the general settings document.

    Attributes:
        enabled: Guard is active
        whitelist_hosts: Hosts (and their subdomains) that are always allowed
        warn_template: Warning text; {login} is the author
        permit_ttl_seconds: Default duration for !permit
        delete_messages: Delete offending messages (warn only when False)
    """

    enabled: bool = False
    whitelist_hosts: list[str] = field(default_factory=list)
    warn_template: str = DEFAULT_WARN_TEMPLATE
    permit_ttl_seconds: int = DEFAULT_PERMIT_TTL
    delete_messages: bool = True

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "LinkGuardSettings":
        """Build settings from moderation.linkGuard. A missing section disables the guard."""
        if not isinstance(data, Mapping):
            return cls(enabled=False)
        hosts = data.get("whitelistHosts") or []
        return cls(
            enabled=data.get("enabled", True) is not False,
            whitelist_hosts=[str(h).lower() for h in hosts if h],
            warn_template=str(data.get("warnTemplate") or DEFAULT_WARN_TEMPLATE),
            permit_ttl_seconds=clamp_ttl(data.get("permitTtlSec"), DEFAULT_PERMIT_TTL),
            delete_messages=data.get("deleteMessages", True) is not False,
        )


class LinkGuard:
    """Evaluates chat lines for disallowed links and acts on them."""

    def __init__(
        self,
        settings: LinkGuardSettings,
        permits: PermitStore,
        messenger: Messenger,
        helix: HelixClient,
        ledger: Ledger,
        prefix: str = "!",
    ) -> None:
        self.settings = settings
        self.permits = permits
        self._messenger = messenger
        self._helix = helix
        self._ledger = ledger
        self._prefix = prefix

    def find_violation(self, event: ChatMessage) -> Optional[str]:
        """
        Decide whether a chat line breaks the link policy.

        Returns:
            str | None: The first non-whitelisted host, or None to let it pass
        """
        if not self.settings.enabled:
            return None
        if event.is_broadcaster or event.is_mod:
            return None
        text = event.text or ""
        if not text.strip() or text.startswith(self._prefix):
            return None

        hosts = extract_hosts(text)
        if not hosts:
            return None
        blocked = [h for h in hosts if not host_is_whitelisted(h, self.settings.whitelist_hosts)]
        if not blocked:
            return None
        if self.permits.is_permitted(event.channel_id, event.user_login):
            logger.debug("Permit bypass for %s", event.user_login)
            return None
        return blocked[0]

    async def check_and_handle(self, event: ChatMessage) -> bool:
        """
        Apply the link policy to one chat line.

        Args:
            event: Normalized chat message

        Returns:
            bool: True if the guard acted (the line must not be routed further)
        """
        host = self.find_violation(event)
        if host is None:
            return False

        login = event.user_login
        logger.info("Link from %s flagged (host=%s)", login, host)

        warned = await self._warn(event)

        deleted = False
        if self.settings.delete_messages and event.message_id:
            try:
                await self._helix.delete_chat_message(event.message_id)
                deleted = True
            except UpstreamError as e:
                logger.warning("Failed to delete message %s from %s: %s", event.message_id, login, e)

        try:
            self._ledger.log_moderation_event(
                "link",
                "delete" if deleted else "warn-only",
                channel_id=event.channel_id,
                user_id=event.user_id,
                login=login,
                message_id=event.message_id,
                reason=f"host={host}" + ("" if warned else "; warning not sent"),
            )
        except sqlite3.Error as e:
            logger.error("Failed to record moderation event for %s: %s", login, e)
        return True

    async def _warn(self, event: ChatMessage) -> bool:
        login = event.user_login
        message = render(self.settings.warn_template, {"login": login})
        # A threaded reply already names the author
        threaded = re.sub(rf"^@{re.escape(login)}\b\s*", "", message, flags=re.IGNORECASE)

        if event.message_id and await self._messenger.reply(threaded or message, event.message_id):
            return True
        if await self._messenger.say(f"@{login} {threaded}".strip()):
            return True
        logger.warning("Could not warn %s about a link", login)
        return False
