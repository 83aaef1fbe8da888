"""
Static command registry.

Built once at startup from the built-in executors and the commands
document. Each canonical name maps to one CommandDescriptor; aliases
resolve to exactly one canonical name.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional

from relaybot.commands.base import Command, StaticCommand
from relaybot.utils.logging import get_logger
from relaybot.utils.permissions import Role, parse_roles

logger = get_logger(__name__)

# Policy values used when neither the executor nor the document sets them
BASE_DEFAULTS: dict[str, Any] = {
    "aliases": [],
    "roles": ["everyone"],
    "cooldownSeconds": 0,
    "limitPerUser": 0,
    "limitPerStream": 0,
    "replyToUser": False,
    "failSilently": True,
    "response": "{out}",
    "templates": {},
}


def _populated(value: Any) -> bool:
    return value is not None and value != ""


def merge_block(defaults: Mapping[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    """
    Merge a command block over its defaults.

    Populated override fields win; nested mappings (templates) merge key
    by key.
    """
    merged: dict[str, Any] = dict(defaults)
    for key, value in override.items():
        if not _populated(value):
            continue
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = merge_block(current, value)
        else:
            merged[key] = value
    return merged


def _non_negative_int(value: Any, name: str, command: str) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        logger.warning("Command %s: %s=%r is not a number, using 0", command, name, value)
        return 0
    return max(0, number)


@dataclass(frozen=True)
class CommandDescriptor:
    """
    Fully merged policy and executor for one canonical command.

    Attributes:
        name: Canonical command name
        aliases: Extra lower-case names resolving to this command
        roles: Roles allowed to run it (empty means everyone)
        cooldown_seconds: Global cooldown after a successful run
        limit_per_user: Max successful runs per user per stream (0 = off)
        limit_per_stream: Max successful runs per stream (0 = off)
        reply_to_user: Send the response as a threaded reply
        fail_silently: Suppress denial messages
        response: Default response template
        templates: Named templates (denials and executor branches)
        options: The whole merged block, for executor-specific keys
        executor: The capability that runs the command
    """

    name: str
    aliases: tuple[str, ...]
    roles: tuple[Role, ...]
    cooldown_seconds: float
    limit_per_user: int
    limit_per_stream: int
    reply_to_user: bool
    fail_silently: bool
    response: str
    templates: Mapping[str, Any]
    options: Mapping[str, Any]
    executor: Command = field(compare=False)

    @classmethod
    def build(cls, name: str, block: Mapping[str, Any], executor: Command) -> "CommandDescriptor":
        templates = block.get("templates") if isinstance(block.get("templates"), Mapping) else {}
        aliases = block.get("aliases") or []
        if isinstance(aliases, str):
            aliases = [aliases]
        roles = block.get("roles") or []
        if isinstance(roles, str):
            roles = [roles]
        try:
            cooldown = max(0.0, float(block.get("cooldownSeconds") or 0))
        except (TypeError, ValueError):
            logger.warning("Command %s: invalid cooldownSeconds, using 0", name)
            cooldown = 0.0
        return cls(
            name=name,
            aliases=tuple(str(a).strip().lower() for a in aliases if str(a).strip()),
            roles=tuple(parse_roles(roles)),
            cooldown_seconds=cooldown,
            limit_per_user=_non_negative_int(block.get("limitPerUser"), "limitPerUser", name),
            limit_per_stream=_non_negative_int(block.get("limitPerStream"), "limitPerStream", name),
            reply_to_user=bool(block.get("replyToUser")),
            fail_silently=bool(block.get("failSilently")),
            response=str(block.get("response") or "{out}"),
            templates=dict(templates),
            options=dict(block),
            executor=executor,
        )


class CommandRegistry:
    """
    Canonical name and alias table.

    Raises ValueError at construction when names collide, so a bad
    commands document stops the bot at startup rather than at dispatch.
    """

    def __init__(self, executors: Iterable[Command], document: Optional[Mapping[str, Any]] = None) -> None:
        """
        Build the registry.

        Args:
            executors: Built-in command executors
            document: Commands document (name -> policy block, optionally
                      nested under a "commands" key)

        Raises:
            ValueError: On duplicate names or alias conflicts
        """
        self._commands: dict[str, CommandDescriptor] = {}
        self._aliases: dict[str, str] = {}

        blocks = self._blocks(document or {})
        builtins: dict[str, Command] = {}
        for executor in executors:
            name = executor.name.strip().lower()
            if name in builtins:
                raise ValueError(f"Duplicate command executor: {name}")
            builtins[name] = executor

        for name, executor in builtins.items():
            block = merge_block(merge_block(BASE_DEFAULTS, executor.defaults), blocks.get(name, {}))
            if block.get("enabled") is False:
                logger.info("Command %s disabled by config", name)
                continue
            self._commands[name] = CommandDescriptor.build(name, block, executor)

        for name, override in blocks.items():
            if name in builtins:
                continue
            kind = str(override.get("kind") or "").lower()
            if kind != "static" and not isinstance(override.get("response"), str):
                logger.warning("Command %s has no implementation and no response, skipping", name)
                continue
            if override.get("enabled") is False:
                continue
            block = merge_block(BASE_DEFAULTS, override)
            self._commands[name] = CommandDescriptor.build(name, block, StaticCommand(name))

        self._build_aliases()
        logger.info("Registered %d commands (%d aliases)", len(self._commands), len(self._aliases))

    @staticmethod
    def _blocks(document: Mapping[str, Any]) -> dict[str, Mapping[str, Any]]:
        source = document.get("commands") if isinstance(document.get("commands"), Mapping) else document
        blocks: dict[str, Mapping[str, Any]] = {}
        for raw_name, block in source.items():
            if not isinstance(block, Mapping):
                logger.warning("Command block %r is not an object, skipping", raw_name)
                continue
            name = str(raw_name).strip().lower()
            if name in blocks:
                raise ValueError(f"Duplicate command name: {name}")
            blocks[name] = block
        return blocks

    def _build_aliases(self) -> None:
        for name, descriptor in self._commands.items():
            for alias in descriptor.aliases:
                if alias == name:
                    continue
                if alias in self._commands:
                    raise ValueError(f"Alias '{alias}' of {name} shadows command '{alias}'")
                owner = self._aliases.get(alias)
                if owner is not None and owner != name:
                    raise ValueError(f"Alias '{alias}' used by both {owner} and {name}")
                self._aliases[alias] = name

    def resolve(self, token: str) -> Optional[CommandDescriptor]:
        """Resolve a command name or alias (case-insensitive)."""
        key = token.strip().lower()
        name = self._aliases.get(key, key)
        return self._commands.get(name)

    def get(self, name: str) -> Optional[CommandDescriptor]:
        return self._commands.get(name.strip().lower())

    @property
    def names(self) -> list[str]:
        return sorted(self._commands)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.resolve(name) is not None

    def __len__(self) -> int:
        return len(self._commands)
