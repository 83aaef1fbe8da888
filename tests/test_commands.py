"""
Tests for the command registry and built-in executors.

Tests:
- Default and override merging
- Alias and name conflicts
- ping, permit, so and time executors
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from conftest import FakeClock


class TestMergeBlock:
    """Tests for policy merging."""

    def test_populated_override_wins(self) -> None:
        from relaybot.commands.registry import merge_block

        merged = merge_block(
            {"cooldownSeconds": 3, "response": "a", "replyToUser": True},
            {"cooldownSeconds": 10, "response": "", "replyToUser": False},
        )
        assert merged == {"cooldownSeconds": 10, "response": "a", "replyToUser": False}

    def test_none_does_not_override(self) -> None:
        from relaybot.commands.registry import merge_block

        assert merge_block({"response": "a"}, {"response": None}) == {"response": "a"}

    def test_templates_merge_per_key(self) -> None:
        from relaybot.commands.registry import merge_block

        merged = merge_block(
            {"templates": {"usage": "u", "ok": "o"}},
            {"templates": {"ok": "custom"}},
        )
        assert merged["templates"] == {"usage": "u", "ok": "custom"}


class TestRegistry:
    """Tests for CommandRegistry."""

    def test_builtins_registered_with_defaults(self) -> None:
        from relaybot.commands import CommandRegistry, builtin_commands
        from relaybot.utils.permissions import Role

        registry = CommandRegistry(builtin_commands())

        assert registry.names == ["permit", "ping", "so", "time"]
        ping = registry.get("ping")
        assert ping.cooldown_seconds == 3
        assert ping.reply_to_user is True
        assert ping.fail_silently is True
        assert registry.get("permit").roles == (Role.MOD, Role.OWNER)
        assert registry.resolve("shoutout").name == "so"

    def test_document_overrides_and_wrapper(self) -> None:
        from relaybot.commands import CommandRegistry, builtin_commands

        document = {"commands": {"ping": {"cooldownSeconds": 10, "aliases": ["p"], "limitPerUser": "2"}}}
        registry = CommandRegistry(builtin_commands(), document)

        ping = registry.resolve("P")
        assert ping.name == "ping"
        assert ping.cooldown_seconds == 10
        assert ping.limit_per_user == 2
        assert ping.response == "Pong! ({latency}ms)"

    def test_static_commands(self) -> None:
        from relaybot.commands import CommandRegistry, StaticCommand

        document = {
            "discord": {"response": "Join!"},
            "rules": {"kind": "static"},
            "broken": {"cooldownSeconds": 5},
            "notanobject": "hello",
        }
        registry = CommandRegistry([], document)

        assert isinstance(registry.get("discord").executor, StaticCommand)
        assert "rules" in registry
        assert "broken" not in registry
        assert "notanobject" not in registry

    def test_disabled_builtin(self) -> None:
        from relaybot.commands import CommandRegistry, builtin_commands

        registry = CommandRegistry(builtin_commands(), {"time": {"enabled": False}})
        assert "time" not in registry
        assert len(registry) == 3

    def test_alias_shadowing_canonical_name_fails(self) -> None:
        from relaybot.commands import CommandRegistry, builtin_commands

        with pytest.raises(ValueError, match="shadows"):
            CommandRegistry(builtin_commands(), {"ping": {"aliases": ["time"]}})

    def test_alias_claimed_twice_fails(self) -> None:
        from relaybot.commands import CommandRegistry

        document = {
            "a": {"response": "a", "aliases": ["x"]},
            "b": {"response": "b", "aliases": ["X"]},
        }
        with pytest.raises(ValueError, match="used by both"):
            CommandRegistry([], document)

    def test_duplicate_names_fail(self) -> None:
        from relaybot.commands import CommandRegistry, PingCommand

        with pytest.raises(ValueError, match="Duplicate"):
            CommandRegistry([PingCommand(), PingCommand()])

        with pytest.raises(ValueError, match="Duplicate"):
            CommandRegistry([], {"Hi": {"response": "a"}, "hi": {"response": "b"}})

    def test_invalid_numbers_fall_back_to_zero(self) -> None:
        from relaybot.commands import CommandRegistry

        registry = CommandRegistry([], {"x": {"response": "x", "cooldownSeconds": "soon", "limitPerStream": -4}})
        descriptor = registry.get("x")
        assert descriptor.cooldown_seconds == 0
        assert descriptor.limit_per_stream == 0


def make_context(name: str, helix=None, permits=None, options=None, templates=None, general=None, sent_at=None):
    from relaybot.commands import CommandContext

    return CommandContext(
        command=name,
        user_id="200",
        user_login="mod",
        user_name="Mod",
        channel_id="100",
        channel_login="streamer",
        message_id="msg-1",
        is_mod=True,
        is_broadcaster=False,
        prefix="!",
        options=options or {},
        templates=templates or {},
        general=general or {},
        helix=helix if helix is not None else MagicMock(),
        credentials=MagicMock(),
        permits=permits if permits is not None else MagicMock(),
        sent_at=sent_at,
    )


class TestPing:
    def test_latency_from_message_timestamp(self) -> None:
        import time

        from relaybot.commands import PingCommand

        result = asyncio.run(PingCommand().execute(make_context("ping", sent_at=time.time() - 0.25), []))
        assert result.vars["latency"] >= 250
        assert result.vars["out"] == f"Pong! ({result.vars['latency']}ms)"

    def test_missing_timestamp(self) -> None:
        from relaybot.commands import PingCommand

        result = asyncio.run(PingCommand().execute(make_context("ping"), []))
        assert result.vars["latency"] == 0


class TestPermit:
    """Tests for !permit."""

    def test_grant_uses_configured_default(self) -> None:
        from relaybot.commands import PermitCommand
        from relaybot.moderation import PermitStore

        clock = FakeClock()
        permits = PermitStore(clock=clock)
        general = {"moderation": {"linkGuard": {"permitTtlSec": 300}}}
        ctx = make_context("permit", permits=permits, general=general, templates=PermitCommand.defaults["templates"])

        result = asyncio.run(PermitCommand().execute(ctx, ["@SomeUser"]))

        assert result.vars == {"login": "someuser", "ttl": 300}
        assert permits.expires_at("100", "someuser") == clock.now + 300

    def test_ttl_is_clamped(self) -> None:
        from relaybot.commands import PermitCommand
        from relaybot.moderation import PermitStore

        clock = FakeClock()
        permits = PermitStore(clock=clock)
        ctx = make_context("permit", permits=permits)

        result = asyncio.run(PermitCommand().execute(ctx, ["someone", "99999"]))
        assert result.vars["ttl"] == 3600
        assert permits.expires_at("100", "someone") == clock.now + 3600

        result = asyncio.run(PermitCommand().execute(ctx, ["someone", "abc"]))
        assert result.vars["ttl"] == 120
        assert permits.expires_at("100", "someone") == clock.now + 120

    @pytest.mark.parametrize("word", ["0", "off", "OFF"])
    def test_revoke(self, word: str) -> None:
        from relaybot.commands import PermitCommand
        from relaybot.moderation import PermitStore

        permits = PermitStore(clock=FakeClock())
        permits.grant("100", "someone", 600)
        ctx = make_context("permit", permits=permits, templates=PermitCommand.defaults["templates"])

        result = asyncio.run(PermitCommand().execute(ctx, ["@SomeOne", word]))

        assert result.vars == {"login": "someone", "revoked": True}
        assert result.template == "Link permit for {login} removed."
        assert permits.is_permitted("100", "someone") is False

    def test_revoke_without_permit(self) -> None:
        from relaybot.commands import PermitCommand
        from relaybot.moderation import PermitStore

        permits = PermitStore(clock=FakeClock())
        ctx = make_context("permit", permits=permits)

        result = asyncio.run(PermitCommand().execute(ctx, ["someone", "off"]))

        assert result.vars["revoked"] is False
        assert len(permits) == 0

    def test_usage_without_target(self) -> None:
        from relaybot.commands import PermitCommand

        ctx = make_context("permit", templates={"usage": "Usage: {prefix}permit <user>"})
        result = asyncio.run(PermitCommand().execute(ctx, []))

        assert result.template == "Usage: {prefix}permit <user>"
        assert result.vars == {"prefix": "!"}


class TestShoutout:
    """Tests for !so."""

    def test_to_login(self) -> None:
        from relaybot.commands.shoutout import to_login

        assert to_login("@SomeOne") == "someone"
        assert to_login("https://www.twitch.tv/Another/videos") == "another"
        assert to_login("  plain ") == "plain"

    def test_shoutout_with_current_game(self, helix) -> None:
        from relaybot.commands import Shoutout, ShoutoutCommand

        helix.get_user.return_value = {"id": "555", "login": "friend", "display_name": "Friend"}
        helix.get_stream.return_value = {"game_name": "Celeste"}
        ctx = make_context("so", helix=helix, options={"doShoutout": True})

        result = asyncio.run(ShoutoutCommand().execute(ctx, ["@friend"]))

        assert result.actions == [Shoutout(to_broadcaster_id="555")]
        assert "CELESTE" in result.vars["gameFragment"]
        assert result.vars["userLogin"] == "friend"
        helix.get_channel.assert_not_awaited()

    def test_shoutout_falls_back_to_last_game(self, helix) -> None:
        from relaybot.commands import ShoutoutCommand

        helix.get_user.return_value = {"id": "555", "login": "friend", "display_name": "Friend"}
        helix.get_channel.return_value = {"game_name": "Tetris"}
        ctx = make_context("so", helix=helix)

        result = asyncio.run(ShoutoutCommand().execute(ctx, ["friend"]))
        assert result.vars["gameFragment"].startswith("- they were last seen streaming some TETRIS")

    def test_announce_suppresses_chat(self, helix) -> None:
        from relaybot.commands import Announce, ShoutoutCommand

        helix.get_user.return_value = {"id": "555", "login": "friend", "display_name": "Friend"}
        options = {"announce": True, "doShoutout": False, "response": "Go follow {displayName}"}
        ctx = make_context("so", helix=helix, options=options)

        result = asyncio.run(ShoutoutCommand().execute(ctx, ["friend"]))

        assert result.suppress is True
        assert result.actions == [Announce(message="Go follow Friend")]

    def test_unknown_channel(self, helix) -> None:
        from relaybot.commands import ShoutoutCommand

        ctx = make_context("so", helix=helix, options={"failSilently": False})
        result = asyncio.run(ShoutoutCommand().execute(ctx, ["ghost"]))
        assert result.message == "Could not find channel ghost."

        ctx = make_context("so", helix=helix, options={"failSilently": True})
        result = asyncio.run(ShoutoutCommand().execute(ctx, ["ghost"]))
        assert result.suppress is True


class TestTime:
    def test_known_zone(self) -> None:
        from relaybot.commands import TimeCommand

        result = asyncio.run(TimeCommand().execute(make_context("time", options={"timezone": "UTC"}), []))
        assert result.vars["tz"] == "UTC"
        assert len(result.vars["time"]) == 5

    def test_unknown_zone_falls_back_to_utc(self) -> None:
        from relaybot.commands import TimeCommand

        result = asyncio.run(TimeCommand().execute(make_context("time", options={"timezone": "Mars/Olympus"}), []))
        assert result.vars["tz"] == "UTC"
