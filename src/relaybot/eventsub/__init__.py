"""EventSub WebSocket sessions and their subscription topics."""

from relaybot.eventsub.session import Backoff, EventSubSession, SessionManager, SessionState
from relaybot.eventsub.topics import Topic, build_topics

__all__ = [
    "Backoff",
    "EventSubSession",
    "SessionManager",
    "SessionState",
    "Topic",
    "build_topics",
]
