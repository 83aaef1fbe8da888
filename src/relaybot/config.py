"""
Configuration management for RelayBot.

Loads process settings from environment variables and .env files,
validates required fields, and provides type-safe access. Also reads the
two JSON policy documents (command policy and general settings).
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from relaybot.utils.logging import get_logger

logger = get_logger(__name__)

CHAT_TRANSPORTS = ("webhook", "websocket")
DEFAULT_EVENTSUB_WS_URL = "wss://eventsub.wss.twitch.tv/ws"


@dataclass(frozen=True)
class Config:
    """
    Immutable configuration for the bot process.

    Attributes:
        client_id: Twitch application client ID
        client_secret: Twitch application client secret
        broadcaster_user_id: Channel owner's user ID
        bot_user_id: Bot account's user ID
        broadcaster_refresh_token: Refresh token for the channel-owner authority
        bot_refresh_token: Refresh token for the bot-account authority
        prefix: Command prefix (default: !)
        log_level: Logging level (default: INFO)
        log_file: Optional log file path
        database_path: SQLite ledger location
        commands_config: Path to the command policy document
        general_config: Path to the general settings document
        intake_host: Bind address of the internal intake surface
        intake_port: Port of the internal intake surface
        intake_secret: Pre-shared value expected in X-Intake-Secret
        chat_transport: "webhook" or "websocket" delivery for chat messages
        webhook_callback_url: Public callback for the chat webhook subscription
        webhook_secret: Shared HMAC secret for webhook subscriptions
        eventsub_ws_url: EventSub WebSocket endpoint
        reconnect_base_seconds: First reconnect delay
        reconnect_cap_seconds: Reconnect delay ceiling
    """

    # Required fields
    client_id: str
    client_secret: str
    broadcaster_user_id: str
    bot_user_id: str
    broadcaster_refresh_token: str
    bot_refresh_token: str

    # Optional fields with defaults
    prefix: str = "!"
    log_level: str = "INFO"
    log_file: str | None = None
    database_path: str = "data/relaybot.db"
    commands_config: str = "config/commands.json"
    general_config: str = "config/general.json"
    intake_host: str = "127.0.0.1"
    intake_port: int = 18082
    intake_secret: str = ""
    chat_transport: str = "webhook"
    webhook_callback_url: str = ""
    webhook_secret: str = ""
    eventsub_ws_url: str = DEFAULT_EVENTSUB_WS_URL
    reconnect_base_seconds: float = 1.0
    reconnect_cap_seconds: float = 15.0

    _secrets: list[str] = field(default_factory=list, repr=False)

    def __post_init__(self) -> None:
        secrets = [
            self.client_secret,
            self.broadcaster_refresh_token,
            self.bot_refresh_token,
            self.intake_secret,
            self.webhook_secret,
        ]
        # Frozen dataclass
        object.__setattr__(self, "_secrets", [s for s in secrets if s])

    @property
    def secrets(self) -> list[str]:
        """Get list of secret values that should be filtered from logs."""
        return self._secrets


@dataclass(frozen=True)
class WebhookConfig:
    """
    Immutable configuration for the webhook ingress process.

    Attributes:
        secret: Shared HMAC secret registered with the subscription
        host: Bind address
        port: Bind port
        path: Callback path the platform posts to
        intake_url: Internal intake surface to forward notifications to
        intake_secret: Value sent in X-Intake-Secret
        log_level: Logging level
        log_file: Optional log file path
    """

    secret: str
    host: str = "127.0.0.1"
    port: int = 18081
    path: str = "/hooks/eventsub"
    intake_url: str = "http://127.0.0.1:18082/_intake/chat"
    intake_secret: str = ""
    log_level: str = "INFO"
    log_file: str | None = None

    @property
    def secrets(self) -> list[str]:
        return [s for s in (self.secret, self.intake_secret) if s]


def _parse_int(value: str | None, default: int) -> int:
    """Parse an integer from environment variable string."""
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _parse_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _parse_log_level(value: str | None) -> str:
    level = (value or "INFO").upper()
    if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
        return "INFO"
    return level


def _require(name: str, errors: list[str]) -> str:
    value = os.getenv(name, "").strip()
    if not value:
        errors.append(f"{name} is required")
    return value


def load_config(env_file: str | Path | None = None) -> Config:
    """
    Load bot configuration from environment variables and .env file.

    Args:
        env_file: Optional path to .env file. If not provided,
                  looks for .env in current directory and parent directories.

    Returns:
        Config: Validated configuration object

    Raises:
        ValueError: If required configuration is missing or invalid
    """
    if env_file:
        load_dotenv(env_file)
    else:
        load_dotenv()

    errors: list[str] = []

    client_id = _require("TWITCH_CLIENT_ID", errors)
    client_secret = _require("TWITCH_CLIENT_SECRET", errors)
    broadcaster_user_id = _require("BROADCASTER_USER_ID", errors)
    bot_user_id = _require("BOT_USER_ID", errors)
    broadcaster_refresh_token = _require("BROADCASTER_REFRESH_TOKEN", errors)
    bot_refresh_token = _require("BOT_REFRESH_TOKEN", errors)

    chat_transport = os.getenv("CHAT_TRANSPORT", "webhook").strip().lower()
    if chat_transport not in CHAT_TRANSPORTS:
        errors.append(f"CHAT_TRANSPORT must be one of: {', '.join(CHAT_TRANSPORTS)}")

    intake_secret = os.getenv("INTAKE_SECRET", "")
    if chat_transport == "webhook" and not intake_secret:
        errors.append("INTAKE_SECRET is required when CHAT_TRANSPORT=webhook")

    if errors:
        error_msg = "Configuration errors:\n" + "\n".join(f"  - {e}" for e in errors)
        raise ValueError(error_msg)

    base = _parse_float(os.getenv("RECONNECT_BASE_SECONDS"), 1.0)
    cap = _parse_float(os.getenv("RECONNECT_CAP_SECONDS"), 15.0)

    return Config(
        client_id=client_id,
        client_secret=client_secret,
        broadcaster_user_id=broadcaster_user_id,
        bot_user_id=bot_user_id,
        broadcaster_refresh_token=broadcaster_refresh_token,
        bot_refresh_token=bot_refresh_token,
        prefix=os.getenv("BOT_PREFIX", "!") or "!",
        log_level=_parse_log_level(os.getenv("LOG_LEVEL")),
        log_file=os.getenv("LOG_FILE") or None,
        database_path=os.getenv("DATABASE_PATH", "data/relaybot.db"),
        commands_config=os.getenv("COMMANDS_CONFIG", "config/commands.json"),
        general_config=os.getenv("GENERAL_CONFIG", "config/general.json"),
        intake_host=os.getenv("INTAKE_HOST", "127.0.0.1"),
        intake_port=_parse_int(os.getenv("INTAKE_PORT"), 18082),
        intake_secret=intake_secret,
        chat_transport=chat_transport,
        webhook_callback_url=os.getenv("WEBHOOK_CALLBACK_URL", ""),
        webhook_secret=os.getenv("WEBHOOK_SECRET", ""),
        eventsub_ws_url=os.getenv("EVENTSUB_WS_URL", DEFAULT_EVENTSUB_WS_URL),
        reconnect_base_seconds=max(0.1, base),
        reconnect_cap_seconds=max(base, cap),
    )


def load_webhook_config(env_file: str | Path | None = None) -> WebhookConfig:
    """
    Load webhook ingress configuration.

    Raises:
        ValueError: If WEBHOOK_SECRET is missing or shorter than 16 characters
    """
    if env_file:
        load_dotenv(env_file)
    else:
        load_dotenv()

    secret = os.getenv("WEBHOOK_SECRET", "")
    if len(secret) < 16:
        raise ValueError("Configuration errors:\n  - WEBHOOK_SECRET is required (at least 16 characters)")

    return WebhookConfig(
        secret=secret,
        host=os.getenv("WEBHOOK_HOST", "127.0.0.1"),
        port=_parse_int(os.getenv("WEBHOOK_PORT"), 18081),
        path=os.getenv("WEBHOOK_PATH", "/hooks/eventsub"),
        intake_url=os.getenv("INTAKE_URL", "http://127.0.0.1:18082/_intake/chat"),
        intake_secret=os.getenv("INTAKE_SECRET", ""),
        log_level=_parse_log_level(os.getenv("LOG_LEVEL")),
        log_file=os.getenv("LOG_FILE") or None,
    )


def load_document(path: str | Path) -> dict[str, Any]:
    """
    Read a JSON policy document.

    A missing or unreadable document yields an empty mapping so the bot
    keeps running on declared defaults.

    Args:
        path: Location of the JSON file

    Returns:
        dict: Parsed document, or {} on failure
    """
    doc_path = Path(path)
    if not doc_path.exists():
        logger.warning("Config document %s not found, using defaults", doc_path)
        return {}
    try:
        data = json.loads(doc_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.error("Failed to load %s: %s", doc_path, e)
        return {}
    if not isinstance(data, dict):
        logger.error("Config document %s must be a JSON object", doc_path)
        return {}
    return data
