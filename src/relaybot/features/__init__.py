"""Event chat lines, timed announcements and the startup greeting."""

from relaybot.features.announcements import Announcement, AnnouncementScheduler, parse_announcements
from relaybot.features.event_messages import EventMessages, map_tier
from relaybot.features.greeting import Greeter, GreetingSettings

__all__ = [
    "Announcement",
    "AnnouncementScheduler",
    "EventMessages",
    "Greeter",
    "GreetingSettings",
    "map_tier",
    "parse_announcements",
]
