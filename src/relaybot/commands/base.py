"""
Command execution contract.

An executor receives a read-only CommandContext plus the argument tokens
and returns a CommandResult. The router owns everything else: role,
cooldown and quota checks, rendering, side effects and usage logging.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar, Mapping, Optional, Union

if TYPE_CHECKING:
    from relaybot.moderation.permit_store import PermitStore
    from relaybot.utils.credentials import CredentialProvider
    from relaybot.utils.helix import HelixClient


@dataclass(frozen=True)
class Announce:
    """Post a highlighted chat announcement as the bot."""

    message: str
    color: str = "primary"

    kind: ClassVar[str] = "announce"


@dataclass(frozen=True)
class Shoutout:
    """Issue an official shout-out to another channel."""

    to_broadcaster_id: str

    kind: ClassVar[str] = "shoutout"


Action = Union[Announce, Shoutout]


@dataclass
class CommandResult:
    """
    What an executor hands back to the router.

    Attributes:
        vars: Template values (merged over login/displayName/channelLogin)
        reply: Send as threaded reply; None uses the command's replyToUser
        template: Template for this invocation only
        message: Exact text to send, bypassing templating
        actions: Side effects to run before the response is sent
        suppress: Send nothing
    """

    vars: dict[str, Any] = field(default_factory=dict)
    reply: Optional[bool] = None
    template: Optional[str] = None
    message: Optional[str] = None
    actions: list[Action] = field(default_factory=list)
    suppress: bool = False


@dataclass(frozen=True)
class CommandContext:
    """Read-only view of one invocation handed to an executor."""

    command: str
    user_id: str
    user_login: str
    user_name: str
    channel_id: str
    channel_login: str
    message_id: str
    is_mod: bool
    is_broadcaster: bool
    prefix: str
    options: Mapping[str, Any]
    templates: Mapping[str, Any]
    general: Mapping[str, Any]
    helix: HelixClient
    credentials: CredentialProvider
    permits: PermitStore
    sent_at: Optional[float] = None

    def template(self, key: str, default: str = "") -> str:
        """Get a named template for this command."""
        value = self.templates.get(key)
        return value if isinstance(value, str) and value else default


class Command(ABC):
    """
    Base class for built-in command executors.

    Subclasses set ``name`` and ``defaults``; the defaults use the same keys
    as a block in the commands document and are overridden by it.
    """

    name: ClassVar[str]
    defaults: ClassVar[dict[str, Any]] = {}

    @abstractmethod
    async def execute(self, ctx: CommandContext, args: list[str]) -> CommandResult:
        """Run the command."""


class StaticCommand(Command):
    """Config-only command: the router renders its response text."""

    def __init__(self, name: str) -> None:
        self.name = name  # type: ignore[misc]

    async def execute(self, ctx: CommandContext, args: list[str]) -> CommandResult:
        return CommandResult()
