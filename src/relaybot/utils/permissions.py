"""
Role checks and cooldown management for chat commands.

Provides:
- Role levels a command can require (everyone, mod, owner)
- A role check against a chatter's identity flags
- The global per-command cooldown store used by the router
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Callable, Iterable

from relaybot.utils.logging import get_logger

logger = get_logger(__name__)


class Role(Enum):
    """Role levels a command may require."""

    EVERYONE = "everyone"
    MOD = "mod"
    OWNER = "owner"

    @classmethod
    def parse(cls, value: str) -> "Role | None":
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


def parse_roles(values: Iterable[str]) -> list[Role]:
    """
    Parse role names from a policy document.

    Unknown role names are logged and ignored. An empty result means
    everyone may run the command.

    Args:
        values: Role names as written in the document

    Returns:
        list[Role]: Parsed roles
    """
    roles: list[Role] = []
    for value in values:
        role = Role.parse(value)
        if role is None:
            logger.warning("Ignoring unknown role %r", value)
            continue
        if role not in roles:
            roles.append(role)
    return roles


def has_role(roles: Iterable[Role], is_mod: bool, is_broadcaster: bool) -> bool:
    """
    Check whether a chatter satisfies a command's role list.

    Listing MOD or OWNER restricts the command to moderators and the
    broadcaster, even when EVERYONE is listed too. Both elevated roles are
    satisfied by either.

    Args:
        roles: Roles the command accepts (empty means everyone)
        is_mod: Chatter carries the moderator flag
        is_broadcaster: Chatter is the channel owner

    Returns:
        bool: True if the chatter may run the command
    """
    if any(role in (Role.MOD, Role.OWNER) for role in roles):
        return is_mod or is_broadcaster
    return True


class CooldownStore:
    """
    Global per-command cooldowns.

    Tracks the earliest instant each canonical command may run again.
    The clock is injectable so tests can drive time by hand.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        """
        Initialize the cooldown store.

        Args:
            clock: Returns the current time in seconds
        """
        self._clock = clock
        # Structure: {command_name: earliest_next_invocation}
        self._ready_at: dict[str, float] = {}

    def remaining(self, command_name: str) -> float:
        """
        Get the seconds left before a command may run again.

        Args:
            command_name: Canonical command name

        Returns:
            float: Remaining seconds, 0 when ready
        """
        ready_at = self._ready_at.get(command_name)
        if ready_at is None:
            return 0.0
        left = ready_at - self._clock()
        if left <= 0:
            self._ready_at.pop(command_name, None)
            return 0.0
        return left

    def start(self, command_name: str, seconds: float) -> None:
        """
        Start the cooldown for a command.

        Args:
            command_name: Canonical command name
            seconds: Cooldown duration; 0 or less clears it
        """
        if seconds <= 0:
            self._ready_at.pop(command_name, None)
            return
        self._ready_at[command_name] = self._clock() + seconds
