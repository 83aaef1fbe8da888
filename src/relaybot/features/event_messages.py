"""
Chat messages for channel events.

Announces events in chat:
- Follow (optionally anonymised)
- Sub, resub and gifted subs
- Bits
- Raids (with an optional automatic official shout-out)
- Ad breaks

Each kind is switched on under ``events.<kind>.enabled`` in the general
settings document and rendered from ``templates.<kind>``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Mapping, Optional

from relaybot.errors import UpstreamError
from relaybot.events import AdBreak, Cheer, Follow, InboundEvent, Raid, Resub, SubGift, Subscribe
from relaybot.utils.logging import get_logger
from relaybot.utils.templates import render

if TYPE_CHECKING:
    from relaybot.utils.helix import HelixClient, Messenger

logger = get_logger(__name__)


# Default event messages
DEFAULT_TEMPLATES = {
    "follow": "Thanks for the follow, {user}!",
    "sub": "Thanks for the {tier} sub, {user}!",
    "resub": "Thanks for resubbing, {user}! {months} months strong.",
    "subgift": "{user} gifted {count} subs, thank you!",
    "bits": "Thanks for the {bitsAmount} bits, {user}!",
    "raid": "Welcome {viewers} raiders from {user}!",
    "ad": "Ad break for {minutes} minutes. Stick around!",
}

ANONYMOUS_NAME = "Anonymous"
FALLBACK_NAME = "friend"

_TIERS = {
    "prime": "Prime",
    "amazonprime": "Prime",
    "primegaming": "Prime",
    "1000": "Tier 1",
    "tier1": "Tier 1",
    "1": "Tier 1",
    "tier 1": "Tier 1",
    "2000": "Tier 2",
    "tier2": "Tier 2",
    "2": "Tier 2",
    "tier 2": "Tier 2",
    "3000": "Tier 3",
    "tier3": "Tier 3",
    "3": "Tier 3",
    "tier 3": "Tier 3",
}


def map_tier(raw: Any) -> str:
    """Turn a platform tier code ("1000", "prime", ...) into a display name."""
    text = "" if raw is None else str(raw)
    return _TIERS.get(text.strip().lower(), text)


class EventMessages:
    """Renders and posts chat lines for non-chat events."""

    def __init__(
        self,
        messenger: Messenger,
        helix: HelixClient,
        general: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self._messenger = messenger
        self._helix = helix
        self.general: Mapping[str, Any] = general or {}

    def _event_settings(self, key: str) -> Mapping[str, Any]:
        events = self.general.get("events")
        if not isinstance(events, Mapping):
            return {}
        settings = events.get(key)
        return settings if isinstance(settings, Mapping) else {}

    def _template(self, key: str) -> str:
        templates = self.general.get("templates")
        if isinstance(templates, Mapping):
            value = templates.get(key)
            if isinstance(value, str) and value:
                return value
        return DEFAULT_TEMPLATES[key]

    def tokens_for(self, event: InboundEvent) -> Optional[tuple[str, dict[str, Any]]]:
        """
        Map an event to its template key and render tokens.

        Returns:
            tuple | None: (template key, tokens), or None for kinds with no message
        """
        if isinstance(event, Follow):
            follow = self._event_settings("follow")
            if follow.get("anonymous"):
                user = str(follow.get("anonymousName") or FALLBACK_NAME)
            else:
                user = event.user_login or event.user_name or FALLBACK_NAME
            return "follow", {"user": user, "displayName": event.user_name}

        if isinstance(event, Subscribe):
            return "sub", {
                "user": event.user_login or event.user_name or FALLBACK_NAME,
                "tier": map_tier(event.tier),
                "isGift": event.is_gift,
            }

        if isinstance(event, Resub):
            return "resub", {
                "user": event.user_login or event.user_name or FALLBACK_NAME,
                "months": event.months or "",
                "streak": event.streak or "",
                "tier": map_tier(event.tier),
                "message": event.message,
            }

        if isinstance(event, SubGift):
            user = ANONYMOUS_NAME if event.is_anonymous else (event.user_login or event.user_name or FALLBACK_NAME)
            return "subgift", {"user": user, "count": event.total or "", "tier": map_tier(event.tier)}

        if isinstance(event, Cheer):
            user = ANONYMOUS_NAME if event.is_anonymous else (event.user_login or event.user_name or FALLBACK_NAME)
            return "bits", {"user": user, "bitsAmount": event.bits or "", "bits": event.bits, "message": event.message}

        if isinstance(event, Raid):
            return "raid", {
                "user": event.from_broadcaster_login or event.from_broadcaster_name or FALLBACK_NAME,
                "displayName": event.from_broadcaster_name,
                "viewers": event.viewers or "",
            }

        if isinstance(event, AdBreak):
            minutes = max(1, round(event.duration_seconds / 60)) if event.duration_seconds else ""
            return "ad", {
                "duration": event.duration_seconds,
                "minutes": minutes,
                "automatic": event.is_automatic,
            }

        return None

    async def handle(self, event: InboundEvent) -> bool:
        """
        Post the chat line for an event, if its kind is enabled.

        Returns:
            bool: True if a message was sent
        """
        if isinstance(event, Raid):
            await self._maybe_auto_shoutout(event)

        mapped = self.tokens_for(event)
        if mapped is None:
            return False
        key, tokens = mapped

        if not self._event_settings(key).get("enabled"):
            logger.debug("Event message %s disabled", key)
            return False

        text = render(self._template(key), tokens)
        if not text.strip():
            return False
        return await self._messenger.say(text)

    async def _maybe_auto_shoutout(self, event: Raid) -> None:
        if not self._event_settings("raid").get("autoShoutout", True):
            return
        if not event.from_broadcaster_id:
            return
        try:
            await self._helix.send_shoutout(event.from_broadcaster_id)
        except UpstreamError as e:
            logger.warning("Auto shout-out for raid from %s failed: %s", event.from_broadcaster_login, e)
            return
        logger.info("Shouted out raider %s", event.from_broadcaster_login)
