"""Chat moderation: link guard and permits."""

from relaybot.moderation.linkguard import (
    LinkGuard,
    LinkGuardSettings,
    extract_hosts,
    host_is_whitelisted,
)
from relaybot.moderation.permit_store import PermitStore, clamp_ttl

__all__ = [
    "LinkGuard",
    "LinkGuardSettings",
    "PermitStore",
    "clamp_ttl",
    "extract_hosts",
    "host_is_whitelisted",
]
