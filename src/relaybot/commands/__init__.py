"""
Chat commands.

Built-in executors are listed here once; the registry combines them with
the commands document at startup.
"""

from relaybot.commands.base import (
    Action,
    Announce,
    Command,
    CommandContext,
    CommandResult,
    Shoutout,
    StaticCommand,
)
from relaybot.commands.permit import PermitCommand
from relaybot.commands.ping import PingCommand
from relaybot.commands.registry import CommandDescriptor, CommandRegistry
from relaybot.commands.shoutout import ShoutoutCommand
from relaybot.commands.time import TimeCommand


def builtin_commands() -> list[Command]:
    """Get a fresh instance of every built-in executor."""
    return [PingCommand(), PermitCommand(), ShoutoutCommand(), TimeCommand()]


__all__ = [
    "Action",
    "Announce",
    "Command",
    "CommandContext",
    "CommandDescriptor",
    "CommandRegistry",
    "CommandResult",
    "PermitCommand",
    "PingCommand",
    "Shoutout",
    "ShoutoutCommand",
    "StaticCommand",
    "TimeCommand",
    "builtin_commands",
]
