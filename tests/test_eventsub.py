"""
Tests for EventSub topics and WebSocket sessions.

Tests:
- Topic sets per authority
- Welcome, subscription results and the live topic set
- Notification dedupe and revocation
- Keepalive silence, reconnect backoff and session handoff
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from types import SimpleNamespace

import pytest
from aiohttp import WSMsgType

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from conftest import FakeClock


class FakeWebSocket:
    """Scripted socket: returns queued frames, then reports a close."""

    def __init__(self, frames=None) -> None:
        self.frames = list(frames or [])
        self.closed = False
        self.close_code = None
        self.timeouts: list = []

    async def receive(self, timeout=None):
        self.timeouts.append(timeout)
        if self.closed or not self.frames:
            return SimpleNamespace(type=WSMsgType.CLOSED, data=None)
        frame = self.frames.pop(0)
        if isinstance(frame, BaseException):
            raise frame
        return SimpleNamespace(type=WSMsgType.TEXT, data=json.dumps(frame))

    async def close(self) -> None:
        self.closed = True


def welcome(session_id: str = "sess-1", keepalive: int = 10) -> dict:
    return {
        "metadata": {"message_id": f"w-{session_id}", "message_type": "session_welcome"},
        "payload": {"session": {"id": session_id, "keepalive_timeout_seconds": keepalive}},
    }


def reconnect(url: str) -> dict:
    return {
        "metadata": {"message_id": "r-1", "message_type": "session_reconnect"},
        "payload": {"session": {"id": "sess-1", "reconnect_url": url}},
    }


def follow_notification(message_id: str = "n-1") -> dict:
    return {
        "metadata": {
            "message_id": message_id,
            "message_type": "notification",
            "message_timestamp": "2026-01-01T12:00:00Z",
        },
        "payload": {
            "subscription": {"type": "channel.follow"},
            "event": {"broadcaster_user_id": "100", "user_id": "9", "user_login": "fan", "user_name": "Fan"},
        },
    }


def revocation(topic_type: str) -> dict:
    return {
        "metadata": {"message_id": "rv-1", "message_type": "revocation"},
        "payload": {"subscription": {"type": topic_type, "status": "authorization_revoked"}},
    }


def make_session(helix, topics=None, sockets=None, backoff=None, clock=None, sleep=None):
    """Build a session whose connect hands out the given sockets in order."""
    from relaybot.eventsub import Backoff, EventSubSession, build_topics
    from relaybot.utils.credentials import Authority

    queue: asyncio.Queue = asyncio.Queue()
    urls: list = []
    pending = list(sockets or [])

    async def connect(url):
        urls.append(url)
        return pending.pop(0) if pending else FakeWebSocket()

    if topics is None:
        topics = build_topics("100", "300", "websocket")[Authority.BOT]

    session = EventSubSession(
        "bot",
        Authority.BOT,
        topics,
        helix,
        queue,
        connect,
        backoff=backoff or Backoff(base=1, cap=4, jitter=0),
        clock=clock or FakeClock(),
        sleep=sleep or (lambda _delay: asyncio.sleep(0)),
    )
    return session, queue, urls


class TestTopics:
    def test_webhook_transport_leaves_chat_out(self) -> None:
        from relaybot.eventsub import build_topics
        from relaybot.utils.credentials import Authority

        topics = build_topics("100", "300", "webhook")

        broadcaster_types = [t.type for t in topics[Authority.BROADCASTER]]
        assert "channel.raid" in broadcaster_types
        assert "stream.online" in broadcaster_types
        assert all(t.authority is Authority.BROADCASTER for t in topics[Authority.BROADCASTER])
        assert [t.type for t in topics[Authority.BOT]] == ["channel.follow"]

    def test_websocket_transport_reads_chat_as_bot(self) -> None:
        from relaybot.eventsub import build_topics
        from relaybot.utils.credentials import Authority

        bot_topics = build_topics("100", "300", "websocket")[Authority.BOT]

        chat = [t for t in bot_topics if t.type == "channel.chat.message"][0]
        assert chat.condition == {"broadcaster_user_id": "100", "user_id": "300"}
        follow = [t for t in bot_topics if t.type == "channel.follow"][0]
        assert follow.version == "2"
        assert follow.condition["moderator_user_id"] == "300"

    def test_raid_condition_targets_channel(self) -> None:
        from relaybot.eventsub import build_topics
        from relaybot.utils.credentials import Authority

        raid = [t for t in build_topics("100", "300")[Authority.BROADCASTER] if t.type == "channel.raid"][0]
        assert raid.condition == {"to_broadcaster_user_id": "100"}


class TestBackoff:
    def test_doubles_up_to_cap(self) -> None:
        from relaybot.eventsub import Backoff

        backoff = Backoff(base=1, cap=8, jitter=0)
        assert [backoff.next_delay() for _ in range(6)] == [1, 2, 4, 8, 8, 8]

    def test_reset(self) -> None:
        from relaybot.eventsub import Backoff

        backoff = Backoff(base=0.5, cap=8, jitter=0)
        backoff.next_delay()
        backoff.next_delay()
        backoff.reset()
        assert backoff.current == 0.5

    def test_jitter_is_additive(self) -> None:
        from relaybot.eventsub import Backoff

        backoff = Backoff(base=2, cap=8, jitter=1.0, random_fn=lambda: 0.5)
        assert backoff.next_delay() == 2.5

    def test_cap_below_base(self) -> None:
        from relaybot.eventsub import Backoff

        backoff = Backoff(base=5, cap=1, jitter=0)
        assert backoff.next_delay() == 5
        assert backoff.next_delay() == 5


class TestSessionMessages:
    """Tests for EventSubSession.handle_message."""

    def test_welcome_subscribes_every_topic(self, helix) -> None:
        from relaybot.eventsub import SessionState

        session, _, _ = make_session(helix)
        helix.create_eventsub_subscription.return_value = {"id": "sub", "status": "enabled"}

        asyncio.run(session.handle_message(json.dumps(welcome("abc"))))

        assert session.session_id == "abc"
        assert session.keepalive_timeout == 10
        assert session.state is SessionState.LIVE
        assert session.live_topics == {"channel.follow", "channel.chat.message"}
        assert helix.create_eventsub_subscription.await_count == 2
        transport = helix.create_eventsub_subscription.call_args.args[3]
        assert transport == {"method": "websocket", "session_id": "abc"}

    def test_rejected_topics_stay_out_of_live_set(self, helix) -> None:
        from relaybot.errors import CredentialError, UpstreamError

        session, _, _ = make_session(helix)

        def create(topic_type, *args):
            if topic_type == "channel.follow":
                raise UpstreamError("forbidden", status=403, body='{"message":"missing scope"}')
            return {"id": "chat-sub"}

        helix.create_eventsub_subscription.side_effect = create
        asyncio.run(session.handle_message(json.dumps(welcome())))
        assert session.live_topics == {"channel.chat.message"}

        helix.create_eventsub_subscription.side_effect = CredentialError("refresh failed")
        asyncio.run(session.handle_message(json.dumps(welcome("sess-2"))))
        assert session.live_topics == set()

    def test_keepalive_is_ignored(self, helix) -> None:
        session, queue, _ = make_session(helix)
        keepalive = {"metadata": {"message_type": "session_keepalive"}, "payload": {}}

        assert asyncio.run(session.handle_message(json.dumps(keepalive))) is None
        assert queue.empty()

    def test_reconnect_returns_url(self, helix) -> None:
        from relaybot.errors import ConnectivityError

        session, _, _ = make_session(helix)

        url = asyncio.run(session.handle_message(json.dumps(reconnect("wss://next.example/ws"))))
        assert url == "wss://next.example/ws"

        with pytest.raises(ConnectivityError):
            asyncio.run(session.handle_message(json.dumps(reconnect(""))))

    def test_notification_is_normalized_and_deduplicated(self, helix) -> None:
        from relaybot.events import Follow

        clock = FakeClock()
        session, queue, _ = make_session(helix, clock=clock)

        for _ in range(2):
            asyncio.run(session.handle_message(json.dumps(follow_notification("n-1"))))
        assert queue.qsize() == 1
        event = queue.get_nowait()
        assert isinstance(event, Follow)
        assert event.user_login == "fan"

        clock.advance(601)
        asyncio.run(session.handle_message(json.dumps(follow_notification("n-1"))))
        assert queue.qsize() == 1

    def test_revocation_drops_topic(self, helix) -> None:
        session, _, _ = make_session(helix)
        session.live_topics = {"channel.follow", "channel.chat.message"}

        asyncio.run(session.handle_message(json.dumps(revocation("channel.follow"))))

        assert session.live_topics == {"channel.chat.message"}

    @pytest.mark.parametrize("raw", ["not json", "[1]", json.dumps({"metadata": {"message_type": "other"}})])
    def test_unusable_frames_are_ignored(self, helix, raw: str) -> None:
        session, queue, _ = make_session(helix)

        assert asyncio.run(session.handle_message(raw)) is None
        assert queue.empty()


class TestSessionLifecycle:
    """Tests for EventSubSession.run."""

    def test_backoff_grows_and_resets_after_welcome(self, helix) -> None:
        from relaybot.eventsub import SessionState

        delays: list = []
        sockets = [FakeWebSocket(), FakeWebSocket(), FakeWebSocket(), FakeWebSocket(),
                   FakeWebSocket([welcome()]), FakeWebSocket()]
        holder: dict = {}

        async def sleep(delay):
            delays.append(delay)
            if len(delays) == 6:
                await holder["session"].stop()

        session, _, urls = make_session(helix, topics=[], sockets=sockets, sleep=sleep)
        holder["session"] = session

        asyncio.run(session.run())

        assert delays == [1, 2, 4, 4, 1, 2]
        assert len(urls) == 6
        assert session.reconnects == 6
        assert session.state is SessionState.CLOSED
        assert all(ws.closed for ws in sockets)

    def test_keepalive_silence_triggers_reconnect(self, helix) -> None:
        silent = FakeWebSocket([welcome(keepalive=30), asyncio.TimeoutError()])
        holder: dict = {}

        async def sleep(delay):
            await holder["session"].stop()

        session, _, urls = make_session(helix, topics=[], sockets=[silent], sleep=sleep)
        holder["session"] = session

        asyncio.run(session.run())

        assert silent.timeouts == [15.0, 35.0]
        assert silent.closed
        assert session.session_id is None
        assert session.live_topics == set()

    def test_handoff_keeps_subscriptions(self, helix) -> None:
        from relaybot.events import Follow

        helix.create_eventsub_subscription.return_value = {"id": "sub"}
        old = FakeWebSocket([welcome("old"), reconnect("wss://next.example/ws")])
        new = FakeWebSocket([welcome("new"), follow_notification("n-7")])
        holder: dict = {}

        async def sleep(delay):
            await holder["session"].stop()

        session, queue, urls = make_session(helix, sockets=[old, new], sleep=sleep)
        holder["session"] = session

        asyncio.run(session.run())

        assert urls[:2] == ["wss://eventsub.wss.twitch.tv/ws", "wss://next.example/ws"]
        assert old.closed
        # Only the first welcome creates subscriptions
        assert helix.create_eventsub_subscription.await_count == len(session.topics)
        assert isinstance(queue.get_nowait(), Follow)

    def test_failed_handoff_falls_back_to_fresh_connection(self, helix) -> None:
        old = FakeWebSocket([welcome("old"), reconnect("wss://next.example/ws")])
        broken = FakeWebSocket()
        holder: dict = {}

        async def sleep(delay):
            await holder["session"].stop()

        session, _, urls = make_session(helix, topics=[], sockets=[old, broken], sleep=sleep)
        holder["session"] = session

        asyncio.run(session.run())

        assert old.closed
        assert broken.closed
        assert session.reconnects == 1


class TestSessionManager:
    def test_start_and_stop(self, helix) -> None:
        from relaybot.eventsub import SessionManager

        session, _, _ = make_session(helix, topics=[])
        manager = SessionManager([session])

        async def scenario():
            await manager.start()
            await manager.stop()

        asyncio.run(scenario())

        assert manager.states() == {"bot": "closed"}
