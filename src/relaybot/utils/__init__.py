"""
Utility modules for RelayBot.

Provides:
- logging: Logging setup with secret filtering
- permissions: Role checks and the command cooldown store
- database: SQLite ledger for usage, permits, moderation and streams
- credentials: Bearer token minting and caching
- helix: Helix REST client and chat messenger
- templates: {token} placeholder rendering
"""

from relaybot.utils.logging import get_logger, setup_logging
from relaybot.utils.permissions import CooldownStore, Role, has_role, parse_roles
from relaybot.utils.database import Ledger
from relaybot.utils.credentials import Authority, CredentialProvider, TwitchCredentialProvider
from relaybot.utils.helix import HelixClient, Messenger
from relaybot.utils.templates import render

__all__ = [
    "get_logger",
    "setup_logging",
    "CooldownStore",
    "Role",
    "has_role",
    "parse_roles",
    "Ledger",
    "Authority",
    "CredentialProvider",
    "TwitchCredentialProvider",
    "HelixClient",
    "Messenger",
    "render",
]
