"""
EventSub subscription topics.

Each topic is bound to the least-privileged authority that can create it:
channel topics (subs, bits, ads, raids, stream state) need the channel
owner; follows are read through the bot's moderator rights; chat over
WebSocket is read as the bot.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping

from relaybot.utils.credentials import Authority


@dataclass(frozen=True)
class Topic:
    """
    One subscription to create on a session.

    Attributes:
        type: EventSub subscription type
        version: Subscription version
        condition: Condition filter sent with the subscription
        authority: Whose token creates the subscription
    """

    type: str
    version: str
    condition: Mapping[str, str] = field(default_factory=dict)
    authority: Authority = Authority.BROADCASTER


BROADCASTER_TOPIC_TYPES = (
    "channel.subscribe",
    "channel.subscription.message",
    "channel.subscription.gift",
    "channel.cheer",
    "channel.ad_break.begin",
    "stream.online",
    "stream.offline",
)


def build_topics(broadcaster_id: str, bot_id: str, chat_transport: str = "webhook") -> dict[Authority, list[Topic]]:
    """
    Build the topic set for each session authority.

    Args:
        broadcaster_id: Channel user ID
        bot_id: Bot account user ID (moderator scope for follows)
        chat_transport: "websocket" adds channel.chat.message to the bot
                        session; "webhook" leaves chat to the webhook ingress

    Returns:
        dict: Topics keyed by the authority of the session that owns them
    """
    channel = {"broadcaster_user_id": broadcaster_id}

    broadcaster_topics = [
        Topic(topic_type, "1", dict(channel), Authority.BROADCASTER)
        for topic_type in BROADCASTER_TOPIC_TYPES
    ]
    broadcaster_topics.append(
        Topic("channel.raid", "1", {"to_broadcaster_user_id": broadcaster_id}, Authority.BROADCASTER)
    )

    bot_topics = [
        Topic(
            "channel.follow",
            "2",
            {"broadcaster_user_id": broadcaster_id, "moderator_user_id": bot_id},
            Authority.BOT,
        )
    ]
    if chat_transport == "websocket":
        bot_topics.append(
            Topic(
                "channel.chat.message",
                "1",
                {"broadcaster_user_id": broadcaster_id, "user_id": bot_id},
                Authority.BOT,
            )
        )

    return {Authority.BROADCASTER: broadcaster_topics, Authority.BOT: bot_topics}
