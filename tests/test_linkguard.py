"""
Tests for the link guard and permit store.

Tests:
- Host extraction and whitelist matching
- Warning, deletion and moderation events
- Permit grants, expiry boundary, restore and revoke
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from conftest import FakeClock, make_chat


class TestExtractHosts:
    """Tests for host extraction."""

    @pytest.mark.parametrize(
        "text,expected",
        [
            ("check this out www.spam.example/x", ["spam.example"]),
            ("https://Clips.Twitch.tv/abc and youtube.com", ["clips.twitch.tv", "youtube.com"]),
            ("same.com twice same.com", ["same.com"]),
            ("no links here", []),
            ("version 1.2.3 is out", []),
            ("mail me at someone@example.com", []),
            ("", []),
        ],
    )
    def test_extract(self, text: str, expected: list) -> None:
        from relaybot.moderation import extract_hosts

        assert extract_hosts(text) == expected

    def test_whitelist_matches_subdomains(self) -> None:
        from relaybot.moderation import host_is_whitelisted

        whitelist = ["twitch.tv", "www.youtube.com"]
        assert host_is_whitelisted("twitch.tv", whitelist)
        assert host_is_whitelisted("clips.twitch.tv", whitelist)
        assert host_is_whitelisted("youtube.com", whitelist)
        assert not host_is_whitelisted("nottwitch.tv", whitelist)
        assert not host_is_whitelisted("twitch.tv.evil.example", whitelist)


class TestSettings:
    def test_missing_section_disables(self) -> None:
        from relaybot.moderation import LinkGuardSettings

        assert LinkGuardSettings.from_dict(None).enabled is False

    def test_from_dict(self) -> None:
        from relaybot.moderation import LinkGuardSettings

        settings = LinkGuardSettings.from_dict(
            {"whitelistHosts": ["YouTube.com", ""], "permitTtlSec": 0, "deleteMessages": False}
        )
        assert settings.enabled is True
        assert settings.whitelist_hosts == ["youtube.com"]
        assert settings.permit_ttl_seconds == 1
        assert settings.delete_messages is False


@pytest.fixture
def guard_parts(helix, messenger, ledger):
    from relaybot.moderation import LinkGuard, LinkGuardSettings, PermitStore

    clock = FakeClock()
    permits = PermitStore(clock=clock, ledger=ledger)
    settings = LinkGuardSettings.from_dict({"whitelistHosts": ["twitch.tv"]})
    guard = LinkGuard(settings, permits, messenger, helix, ledger)
    return guard, permits, clock


class TestLinkGuard:
    """Tests for LinkGuard.check_and_handle."""

    def test_blocked_link_is_deleted_and_warned(self, guard_parts, helix, ledger) -> None:
        guard, _, _ = guard_parts
        event = make_chat("check this out www.spam.example/x", message_id="m-42")

        acted = asyncio.run(guard.check_and_handle(event))

        assert acted is True
        helix.delete_chat_message.assert_awaited_once_with("m-42")
        helix.send_chat_message.assert_awaited_once()
        args, kwargs = helix.send_chat_message.call_args
        assert kwargs["reply_parent_message_id"] == "m-42"
        assert "links aren't allowed" in args[0]
        assert not args[0].startswith("@viewer")

        events = ledger.get_moderation_events()
        assert len(events) == 1
        assert events[0]["action"] == "delete"
        assert events[0]["type"] == "link"
        assert events[0]["login"] == "viewer"
        assert "spam.example" in events[0]["reason"]

    def test_whitelisted_link_passes(self, guard_parts, helix) -> None:
        guard, _, _ = guard_parts

        assert asyncio.run(guard.check_and_handle(make_chat("watch clips.twitch.tv/abc"))) is False
        helix.delete_chat_message.assert_not_awaited()

    def test_mixed_links_are_blocked(self, guard_parts) -> None:
        guard, _, _ = guard_parts

        assert guard.find_violation(make_chat("twitch.tv/x and evil.example")) == "evil.example"

    @pytest.mark.parametrize("overrides", [{"is_mod": True}, {"is_broadcaster": True}])
    def test_privileged_chatters_skip(self, guard_parts, overrides) -> None:
        guard, _, _ = guard_parts

        assert guard.find_violation(make_chat("spam.example", **overrides)) is None

    def test_command_lines_skip(self, guard_parts) -> None:
        guard, _, _ = guard_parts

        assert guard.find_violation(make_chat("!so spam.example")) is None

    def test_disabled_guard(self, helix, messenger, ledger) -> None:
        from relaybot.moderation import LinkGuard, LinkGuardSettings, PermitStore

        guard = LinkGuard(LinkGuardSettings(enabled=False), PermitStore(), messenger, helix, ledger)
        assert guard.find_violation(make_chat("spam.example")) is None

    def test_permit_boundary(self, guard_parts) -> None:
        guard, permits, clock = guard_parts
        expires_at = permits.grant("100", "Viewer", 60)

        clock.now = expires_at - 0.001
        assert guard.find_violation(make_chat("spam.example")) is None

        clock.now = expires_at
        assert guard.find_violation(make_chat("spam.example")) == "spam.example"

    def test_delete_failure_still_warns(self, guard_parts, helix, ledger) -> None:
        from relaybot.errors import UpstreamError

        guard, _, _ = guard_parts
        helix.delete_chat_message.side_effect = UpstreamError("forbidden", status=403)

        assert asyncio.run(guard.check_and_handle(make_chat("spam.example"))) is True

        helix.send_chat_message.assert_awaited_once()
        assert ledger.get_moderation_events()[0]["action"] == "warn-only"

    def test_reply_failure_falls_back_to_mention(self, guard_parts, helix) -> None:
        guard, _, _ = guard_parts
        helix.send_chat_message.side_effect = [
            {"is_sent": False, "drop_reason": {"code": "msg_duplicate"}},
            {"message_id": "sent-2", "is_sent": True},
        ]

        asyncio.run(guard.check_and_handle(make_chat("spam.example")))

        assert helix.send_chat_message.await_count == 2
        args, kwargs = helix.send_chat_message.call_args
        assert args[0].startswith("@viewer ")
        assert kwargs["reply_parent_message_id"] is None


class TestPermitStore:
    """Tests for PermitStore."""

    @pytest.mark.parametrize(
        "requested,expected",
        [(None, 120), (0, 1), (-5, 1), (30, 30), (3600, 3600), (7200, 3600), ("45", 45), ("x", 120)],
    )
    def test_clamp_ttl(self, requested, expected) -> None:
        from relaybot.moderation import clamp_ttl

        assert clamp_ttl(requested) == expected

    def test_grant_is_case_insensitive(self) -> None:
        from relaybot.moderation import PermitStore

        clock = FakeClock()
        permits = PermitStore(clock=clock)
        expires_at = permits.grant("100", "@SomeOne", 30)

        assert expires_at == clock.now + 30
        assert permits.is_permitted("100", "someone")
        assert not permits.is_permitted("999", "someone")

    def test_regrant_extends(self) -> None:
        from relaybot.moderation import PermitStore

        clock = FakeClock()
        permits = PermitStore(clock=clock)
        permits.grant("100", "a", 10)
        clock.advance(8)
        permits.grant("100", "a", 10)
        clock.advance(5)

        assert permits.is_permitted("100", "a")

    def test_expired_entries_dropped_on_lookup(self) -> None:
        from relaybot.moderation import PermitStore

        clock = FakeClock()
        permits = PermitStore(clock=clock)
        permits.grant("100", "a", 10)
        permits.grant("100", "b", 100)
        clock.advance(10)

        assert len(permits) == 2
        assert permits.is_permitted("100", "a") is False
        assert len(permits) == 1
        assert permits.expires_at("100", "b") == clock.now + 90

    def test_restore_from_ledger(self, ledger) -> None:
        from relaybot.moderation import PermitStore

        clock = FakeClock()
        PermitStore(clock=clock, ledger=ledger).grant("100", "a", 60, granted_by="mod")

        restored = PermitStore(clock=clock, ledger=ledger)
        assert restored.restore() == 1
        assert restored.is_permitted("100", "a")

    def test_restore_skips_expired(self, ledger) -> None:
        from relaybot.moderation import PermitStore

        clock = FakeClock()
        PermitStore(clock=clock, ledger=ledger).grant("100", "a", 60)
        clock.advance(61)

        assert PermitStore(clock=clock, ledger=ledger).restore() == 0

    def test_revoke_removes_stored_rows(self, ledger) -> None:
        from relaybot.moderation import PermitStore

        clock = FakeClock()
        permits = PermitStore(clock=clock, ledger=ledger)
        permits.grant("100", "a", 60)

        assert permits.revoke("100", "A") is True
        assert permits.revoke("100", "a") is False
        assert PermitStore(clock=clock, ledger=ledger).restore() == 0
