"""
Shared fixtures for RelayBot tests.

Provides:
- A temporary SQLite ledger
- A Helix client mock whose async methods are AsyncMocks
- A hand-driven clock
"""

from __future__ import annotations

import os
import sys
import tempfile
from pathlib import Path
from unittest.mock import MagicMock

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_chat(text: str, **overrides):
    """Build a ChatMessage from a plain viewer unless overridden."""
    from relaybot.events import ChatMessage

    fields = {
        "channel_id": "100",
        "channel_login": "streamer",
        "user_id": "200",
        "user_login": "viewer",
        "user_name": "Viewer",
        "text": text,
        "message_id": "msg-1",
    }
    fields.update(overrides)
    return ChatMessage(**fields)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ledger():
    """Create a temporary ledger for testing."""
    from relaybot.utils.database import Ledger

    with tempfile.TemporaryDirectory() as tmp:
        yield Ledger(os.path.join(tmp, "ledger.db"))


@pytest.fixture
def helix():
    """Helix client mock; chat sends succeed by default."""
    from relaybot.utils.helix import HelixClient

    mock = MagicMock(spec=HelixClient)
    mock.broadcaster_id = "100"
    mock.bot_id = "300"
    mock.send_chat_message.return_value = {"message_id": "sent-1", "is_sent": True}
    mock.delete_chat_message.return_value = None
    mock.send_announcement.return_value = None
    mock.send_shoutout.return_value = None
    mock.get_stream.return_value = None
    mock.get_user.return_value = None
    mock.get_channel.return_value = None
    return mock


@pytest.fixture
def messenger(helix):
    from relaybot.utils.helix import Messenger

    return Messenger(helix)
