"""
Tests for event normalization and response templates.
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


class TestParseTimestamp:
    def test_nanosecond_precision(self) -> None:
        from relaybot.events import parse_timestamp

        assert parse_timestamp("2026-01-01T00:00:00.123456789Z") == pytest.approx(1767225600.123456)

    def test_without_fraction(self) -> None:
        from relaybot.events import parse_timestamp

        assert parse_timestamp("2026-01-01T00:00:00Z") == 1767225600.0

    @pytest.mark.parametrize("value", [None, "", "yesterday", 12345])
    def test_invalid(self, value) -> None:
        from relaybot.events import parse_timestamp

        assert parse_timestamp(value) is None


class TestNormalizeChat:
    """Tests for chat normalization."""

    def _event(self, **overrides) -> dict:
        event = {
            "broadcaster_user_id": "100",
            "broadcaster_user_login": "streamer",
            "chatter_user_id": "200",
            "chatter_user_login": "Viewer",
            "chatter_user_name": "Viewer",
            "message_id": "m-1",
            "message": {"text": "!ping"},
            "badges": [{"set_id": "subscriber", "id": "12"}],
        }
        event.update(overrides)
        return event

    def test_plain_viewer(self) -> None:
        from relaybot.events import normalize_chat

        message = normalize_chat(self._event(), "2026-01-01T00:00:00Z")

        assert message.user_login == "viewer"
        assert message.text == "!ping"
        assert message.message_id == "m-1"
        assert message.is_mod is False
        assert message.is_broadcaster is False
        assert message.sent_at == 1767225600.0
        assert message.extra["badges"] == ["subscriber"]

    def test_moderator_badge(self) -> None:
        from relaybot.events import normalize_chat

        message = normalize_chat(self._event(badges=[{"set_id": "moderator"}]))
        assert message.is_mod is True

    def test_broadcaster_by_identity(self) -> None:
        from relaybot.events import normalize_chat

        message = normalize_chat(self._event(chatter_user_id="100", badges=[]))
        assert message.is_broadcaster is True

    def test_reply_parent(self) -> None:
        from relaybot.events import normalize_chat

        message = normalize_chat(self._event(reply={"parent_message_id": "m-0"}))
        assert message.reply_parent_id == "m-0"
        assert normalize_chat(self._event()).reply_parent_id is None

    @pytest.mark.parametrize("reply", ["oops", ["m-0"], 7])
    def test_non_object_reply(self, reply) -> None:
        from relaybot.events import normalize_chat

        message = normalize_chat(self._event(message={"text": "hi", "reply": reply}))
        assert message.text == "hi"
        assert message.reply_parent_id is None

    def test_non_object_message_and_badges(self) -> None:
        from relaybot.events import normalize_chat

        message = normalize_chat(self._event(message="hi", badges=["moderator", None]))
        assert message.text == "hi"
        assert message.is_mod is False
        assert "badges" not in message.extra


class TestNormalizeNotification:
    """Tests for the topic to event mapping."""

    def test_follow(self) -> None:
        from relaybot.events import Follow, normalize_notification

        event = normalize_notification(
            "channel.follow",
            {"broadcaster_user_id": "100", "user_id": "9", "user_login": "fan", "user_name": "Fan"},
        )
        assert event == Follow("100", "9", "fan", "Fan")

    def test_resub(self) -> None:
        from relaybot.events import Resub, normalize_notification

        event = normalize_notification(
            "channel.subscription.message",
            {
                "broadcaster_user_id": "100",
                "user_login": "fan",
                "tier": "1000",
                "cumulative_months": "12",
                "streak_months": None,
                "message": {"text": "hi"},
            },
        )
        assert isinstance(event, Resub)
        assert event.months == 12
        assert event.streak == 0
        assert event.message == "hi"

    def test_raid_uses_target_channel(self) -> None:
        from relaybot.events import Raid, normalize_notification

        event = normalize_notification(
            "channel.raid",
            {
                "from_broadcaster_user_id": "555",
                "from_broadcaster_user_login": "raider",
                "from_broadcaster_user_name": "Raider",
                "to_broadcaster_user_id": "100",
                "viewers": 42,
            },
        )
        assert event == Raid("100", "555", "raider", "Raider", 42)

    def test_stream_state(self) -> None:
        from relaybot.events import StreamOffline, StreamOnline, normalize_notification

        online = normalize_notification("stream.online", {"broadcaster_user_id": "100", "started_at": "x"})
        assert online == StreamOnline("100", "x")
        assert normalize_notification("stream.offline", {"broadcaster_user_id": "100"}) == StreamOffline("100")

    def test_unknown_topic(self) -> None:
        from relaybot.events import normalize_notification

        assert normalize_notification("channel.poll.begin", {}) is None


class TestRender:
    """Tests for {token} substitution."""

    @pytest.mark.parametrize(
        "template,values,expected",
        [
            ("Pong! ({latency}ms)", {"latency": 42}, "Pong! (42ms)"),
            ("Hi {user}{missing}!", {"user": "a"}, "Hi a!"),
            ("{flag} {none}", {"flag": True, "none": None}, "true "),
            ("{nested.key} {not a token} {}", {"nested": "x"}, "{nested.key} {not a token} {}"),
            ("", {"a": 1}, ""),
            (None, {}, ""),
        ],
    )
    def test_render(self, template, values, expected: str) -> None:
        from relaybot.utils.templates import render

        assert render(template, values) == expected

    def test_values_are_not_reexpanded(self) -> None:
        from relaybot.utils.templates import render

        assert render("{a}", {"a": "{b}", "b": "no"}) == "{b}"
