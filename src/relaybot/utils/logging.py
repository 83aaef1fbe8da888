"""
Logging setup for both RelayBot processes.

Every handler carries one shared SecretFilter. Client secrets and refresh
tokens are registered at setup; bearer tokens are added as they are minted.
"""

from __future__ import annotations

import logging
import re
import sys
from pathlib import Path
from typing import Any, Iterable, Protocol

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
REDACTED = "[REDACTED]"

# aiohttp loggers routed through our handlers at WARNING
AIOHTTP_LOGGERS = ("aiohttp.access", "aiohttp.client", "aiohttp.server", "aiohttp.web")


class LoggingSettings(Protocol):
    log_level: str
    log_file: str | None

    @property
    def secrets(self) -> list[str]: ...


class SecretFilter(logging.Filter):
    """Rewrites log records so no registered secret reaches a handler."""

    def __init__(self, secrets: Iterable[str] = ()) -> None:
        super().__init__()
        self._secrets: list[str] = []
        self._pattern: re.Pattern[str] | None = None
        for secret in secrets:
            self.add(secret)

    @property
    def secrets(self) -> list[str]:
        return list(self._secrets)

    def add(self, secret: str) -> None:
        # Very short values would redact ordinary words
        if not secret or len(secret) <= 3 or secret in self._secrets:
            return
        self._secrets.append(secret)
        self._pattern = re.compile("|".join(map(re.escape, self._secrets)), re.IGNORECASE)

    def redact(self, value: Any) -> Any:
        if self._pattern is None or not isinstance(value, str):
            return value
        return self._pattern.sub(REDACTED, value)

    def filter(self, record: logging.LogRecord) -> bool:
        if self._pattern is None:
            return True
        record.msg = self.redact(record.msg)
        if isinstance(record.args, dict):
            record.args = {key: self.redact(value) for key, value in record.args.items()}
        elif isinstance(record.args, tuple):
            record.args = tuple(self.redact(arg) for arg in record.args)
        return True


class ColoredFormatter(logging.Formatter):
    """Colors the level name when writing to a terminal."""

    COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[41m",
    }
    RESET = "\033[0m"

    def __init__(self, fmt: str = LOG_FORMAT) -> None:
        super().__init__(fmt)
        self.use_colors = sys.stderr.isatty()

    def formatMessage(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelno) if self.use_colors else None
        if not color:
            return super().formatMessage(record)
        plain = record.levelname
        record.levelname = f"{color}{plain:<8}{self.RESET}"
        try:
            return super().formatMessage(record)
        finally:
            record.levelname = plain


_secret_filter: SecretFilter | None = None


def setup_logging(config: LoggingSettings) -> None:
    """
    Configure the ``relaybot`` logger for the bot or the webhook process.

    Logs go to stderr and, when ``config.log_file`` is set, to that file.

    Args:
        config: Config or WebhookConfig
    """
    global _secret_filter

    logger = logging.getLogger("relaybot")
    logger.setLevel(getattr(logging, config.log_level, logging.INFO))
    logger.handlers.clear()
    _secret_filter = SecretFilter(config.secrets)

    handlers: list[tuple[logging.Handler, logging.Formatter]] = [
        (logging.StreamHandler(sys.stderr), ColoredFormatter()),
    ]
    if config.log_file:
        log_path = Path(config.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append((logging.FileHandler(log_path, encoding="utf-8"), logging.Formatter(LOG_FORMAT)))

    for handler, formatter in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(_secret_filter)
        logger.addHandler(handler)

    for name in AIOHTTP_LOGGERS:
        lib_logger = logging.getLogger(name)
        lib_logger.setLevel(logging.WARNING)
        lib_logger.handlers = list(logger.handlers)

    logger.debug("Logging initialized with level %s", config.log_level)


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the relaybot namespace."""
    if not name.startswith("relaybot"):
        name = f"relaybot.{name}"
    return logging.getLogger(name)


def add_secret(secret: str) -> None:
    """Redact a value minted after setup (access tokens, rotated refresh tokens)."""
    if _secret_filter is not None:
        _secret_filter.add(secret)
