"""
Error taxonomy for RelayBot.

Every failure the core can observe maps onto one of these classes:
- AuthenticationError: webhook delivery failed signature verification
- AuthorizationError: chatter lacks the role a command requires
- ThrottleError: command on cooldown or over its usage quota
- UpstreamError: platform REST call returned a non-2xx status
- CredentialError: a bearer credential could not be minted
- ExecutionError: a command executor raised
- ConnectivityError: an EventSub connection dropped or went silent

None of these are allowed to escape to the top of the process; call sites
convert them into a log line and "no side effect".
"""

from __future__ import annotations

from typing import Any, Optional


class RelayBotError(Exception):
    """
    Base exception for all RelayBot errors.

    Args:
        message: Human-readable error message
        details: Additional structured context for logging
    """

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = dict(details or {})

    def __str__(self) -> str:
        if self.details:
            extra = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({extra})"
        return self.message


class AuthenticationError(RelayBotError):
    """Inbound delivery could not be authenticated."""


class AuthorizationError(RelayBotError):
    """Chatter is not allowed to run a command."""


class ThrottleError(RelayBotError):
    """Command rejected by cooldown or quota."""

    def __init__(self, message: str, reason: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message, details)
        self.reason = reason


class UpstreamError(RelayBotError):
    """
    Platform REST call failed.

    Attributes:
        status: HTTP status code (0 when the request never completed)
        body: Response body text, truncated
    """

    def __init__(self, message: str, status: int = 0, body: str = "") -> None:
        super().__init__(message, {"status": status} if status else None)
        self.status = status
        self.body = body[:500]


class CredentialError(UpstreamError):
    """Bearer credential could not be acquired or refreshed."""


class ExecutionError(RelayBotError):
    """Command executor raised an exception."""


class ConnectivityError(RelayBotError):
    """EventSub connection lost; always recovered by reconnecting."""
