"""
Normalized inbound events.

Both ingress paths (EventSub WebSocket sessions and the webhook intake)
turn platform payloads into one of the frozen dataclasses below and put it
on the bot's inbound queue. The set of event kinds is closed; anything
else is dropped at normalization time.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, ClassVar, Mapping, Optional, Union

from relaybot.utils.logging import get_logger

logger = get_logger(__name__)

_FRACTION = re.compile(r"\.(\d+)")


def parse_timestamp(value: Any) -> Optional[float]:
    """
    Parse an RFC3339 timestamp as sent by EventSub.

    Twitch sends nanosecond precision, which datetime cannot hold, so the
    fraction is cut to microseconds first.

    Returns:
        float | None: Epoch seconds, or None if unparseable
    """
    if not value or not isinstance(value, str):
        return None
    text = value.strip().replace("Z", "+00:00")
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


@dataclass(frozen=True)
class ChatMessage:
    """A chat line in the channel."""

    kind: ClassVar[str] = "chat"

    channel_id: str
    channel_login: str
    user_id: str
    user_login: str
    user_name: str
    text: str
    is_mod: bool = False
    is_broadcaster: bool = False
    message_id: str = ""
    reply_parent_id: Optional[str] = None
    sent_at: Optional[float] = None
    extra: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Follow:
    kind: ClassVar[str] = "follow"

    channel_id: str
    user_id: str
    user_login: str
    user_name: str


@dataclass(frozen=True)
class Subscribe:
    kind: ClassVar[str] = "sub"

    channel_id: str
    user_id: str
    user_login: str
    user_name: str
    tier: str = ""
    is_gift: bool = False


@dataclass(frozen=True)
class Resub:
    kind: ClassVar[str] = "resub"

    channel_id: str
    user_id: str
    user_login: str
    user_name: str
    tier: str = ""
    months: int = 0
    streak: int = 0
    message: str = ""


@dataclass(frozen=True)
class SubGift:
    kind: ClassVar[str] = "subgift"

    channel_id: str
    user_id: str
    user_login: str
    user_name: str
    total: int = 0
    tier: str = ""
    is_anonymous: bool = False


@dataclass(frozen=True)
class Cheer:
    kind: ClassVar[str] = "cheer"

    channel_id: str
    user_id: str
    user_login: str
    user_name: str
    bits: int = 0
    message: str = ""
    is_anonymous: bool = False


@dataclass(frozen=True)
class Raid:
    kind: ClassVar[str] = "raid"

    channel_id: str
    from_broadcaster_id: str
    from_broadcaster_login: str
    from_broadcaster_name: str
    viewers: int = 0


@dataclass(frozen=True)
class AdBreak:
    kind: ClassVar[str] = "ad"

    channel_id: str
    duration_seconds: int = 0
    is_automatic: bool = False


@dataclass(frozen=True)
class StreamOnline:
    kind: ClassVar[str] = "stream_online"

    channel_id: str
    started_at: str = ""


@dataclass(frozen=True)
class StreamOffline:
    kind: ClassVar[str] = "stream_offline"

    channel_id: str


InboundEvent = Union[
    ChatMessage,
    Follow,
    Subscribe,
    Resub,
    SubGift,
    Cheer,
    Raid,
    AdBreak,
    StreamOnline,
    StreamOffline,
]


def _str(value: Any) -> str:
    return "" if value is None else str(value)


def _int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def normalize_chat(event: Mapping[str, Any], message_timestamp: Optional[str] = None) -> ChatMessage:
    """
    Build a ChatMessage from a channel.chat.message event body.

    Moderator status comes from an explicit is_moderator flag or the
    moderator badge; the broadcaster is recognised by badge or by the
    chatter being the channel itself.
    """
    message = event.get("message") or {}
    if not isinstance(message, Mapping):
        message = {"text": message}
    badges = event.get("badges") if isinstance(event.get("badges"), list) else []
    badge_set = {str(b.get("set_id") or b.get("id") or "").lower() for b in badges if isinstance(b, Mapping)}

    chatter_id = _str(event.get("chatter_user_id"))
    channel_id = _str(event.get("broadcaster_user_id"))
    is_broadcaster = "broadcaster" in badge_set or (bool(chatter_id) and chatter_id == channel_id)
    is_mod = bool(event.get("is_moderator")) or "moderator" in badge_set

    reply = message.get("reply") or event.get("reply")
    if not isinstance(reply, Mapping):
        reply = {}
    reply_parent = reply.get("parent_message_id") or event.get("reply_parent_message_id")

    extra: dict[str, Any] = {}
    if event.get("color"):
        extra["color"] = event["color"]
    if badge_set:
        extra["badges"] = sorted(badge_set)

    return ChatMessage(
        channel_id=channel_id,
        channel_login=_str(event.get("broadcaster_user_login")),
        user_id=chatter_id,
        user_login=_str(event.get("chatter_user_login")).lower(),
        user_name=_str(event.get("chatter_user_name")),
        text=_str(message.get("text")),
        is_mod=is_mod,
        is_broadcaster=is_broadcaster,
        message_id=_str(event.get("message_id") or message.get("message_id") or message.get("id")),
        reply_parent_id=_str(reply_parent) or None,
        sent_at=parse_timestamp(message_timestamp),
        extra=extra,
    )


def normalize_notification(
    subscription_type: str,
    event: Mapping[str, Any],
    message_timestamp: Optional[str] = None,
) -> Optional[InboundEvent]:
    """
    Translate an EventSub notification into an inbound event.

    Args:
        subscription_type: EventSub topic type (e.g. "channel.follow")
        event: The notification's event object
        message_timestamp: Envelope timestamp, used for chat latency

    Returns:
        InboundEvent | None: Normalized event, or None for unknown topics
    """
    channel_id = _str(event.get("broadcaster_user_id"))

    if subscription_type == "channel.chat.message":
        return normalize_chat(event, message_timestamp)

    if subscription_type == "channel.follow":
        return Follow(
            channel_id=channel_id,
            user_id=_str(event.get("user_id")),
            user_login=_str(event.get("user_login")),
            user_name=_str(event.get("user_name")),
        )

    if subscription_type == "channel.subscribe":
        return Subscribe(
            channel_id=channel_id,
            user_id=_str(event.get("user_id")),
            user_login=_str(event.get("user_login")),
            user_name=_str(event.get("user_name")),
            tier=_str(event.get("tier")),
            is_gift=bool(event.get("is_gift")),
        )

    if subscription_type == "channel.subscription.message":
        message = event.get("message") or {}
        return Resub(
            channel_id=channel_id,
            user_id=_str(event.get("user_id")),
            user_login=_str(event.get("user_login")),
            user_name=_str(event.get("user_name")),
            tier=_str(event.get("tier")),
            months=_int(event.get("cumulative_months")),
            streak=_int(event.get("streak_months")),
            message=_str(message.get("text") if isinstance(message, dict) else message),
        )

    if subscription_type == "channel.subscription.gift":
        return SubGift(
            channel_id=channel_id,
            user_id=_str(event.get("user_id")),
            user_login=_str(event.get("user_login")),
            user_name=_str(event.get("user_name")),
            total=_int(event.get("total")),
            tier=_str(event.get("tier")),
            is_anonymous=bool(event.get("is_anonymous")),
        )

    if subscription_type == "channel.cheer":
        return Cheer(
            channel_id=channel_id,
            user_id=_str(event.get("user_id")),
            user_login=_str(event.get("user_login")),
            user_name=_str(event.get("user_name")),
            bits=_int(event.get("bits")),
            message=_str(event.get("message")),
            is_anonymous=bool(event.get("is_anonymous")),
        )

    if subscription_type == "channel.raid":
        return Raid(
            channel_id=_str(event.get("to_broadcaster_user_id")),
            from_broadcaster_id=_str(event.get("from_broadcaster_user_id")),
            from_broadcaster_login=_str(event.get("from_broadcaster_user_login")),
            from_broadcaster_name=_str(event.get("from_broadcaster_user_name")),
            viewers=_int(event.get("viewers")),
        )

    if subscription_type == "channel.ad_break.begin":
        return AdBreak(
            channel_id=channel_id,
            duration_seconds=_int(event.get("duration_seconds")),
            is_automatic=bool(event.get("is_automatic")),
        )

    if subscription_type == "stream.online":
        return StreamOnline(channel_id=channel_id, started_at=_str(event.get("started_at")))

    if subscription_type == "stream.offline":
        return StreamOffline(channel_id=channel_id)

    logger.debug("No normalizer for topic %s", subscription_type)
    return None
