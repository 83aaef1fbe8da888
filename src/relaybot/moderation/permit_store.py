"""
Time-bounded link permits.

A permit lets one chatter post links in one channel until it expires.
Permits live in memory for lookups and are written through to the ledger
so a restart does not forget grants that are still running.
"""

from __future__ import annotations

import sqlite3
import time
from typing import TYPE_CHECKING, Callable, Optional

from relaybot.utils.logging import get_logger

if TYPE_CHECKING:
    from relaybot.utils.database import Ledger

logger = get_logger(__name__)

MIN_PERMIT_TTL = 1
MAX_PERMIT_TTL = 3600
DEFAULT_PERMIT_TTL = 120


def clamp_ttl(seconds: Optional[float], default: int = DEFAULT_PERMIT_TTL) -> int:
    """
    Clamp a permit duration to the allowed window.

    Args:
        seconds: Requested duration (None or unparseable uses default)
        default: Fallback duration

    Returns:
        int: Duration between MIN_PERMIT_TTL and MAX_PERMIT_TTL
    """
    try:
        value = int(seconds) if seconds is not None else int(default)
    except (TypeError, ValueError):
        value = int(default)
    return max(MIN_PERMIT_TTL, min(MAX_PERMIT_TTL, value))


class PermitStore:
    """
    Channel-scoped permit map keyed by (channel_id, login).

    Expired entries are dropped lazily on lookup. The clock is wall time
    because expiries are persisted.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        ledger: Optional[Ledger] = None,
    ) -> None:
        self._clock = clock
        self._ledger = ledger
        self._permits: dict[tuple[str, str], float] = {}

    @staticmethod
    def _key(channel_id: str, login: str) -> tuple[str, str]:
        return str(channel_id), str(login).lstrip("@").strip().lower()

    def grant(self, channel_id: str, login: str, ttl_seconds: Optional[float] = None, granted_by: str = "") -> float:
        """
        Grant or extend a permit.

        Args:
            channel_id: Channel the permit applies to
            login: Chatter login (case-insensitive, leading @ ignored)
            ttl_seconds: Requested duration, clamped to [1, 3600]
            granted_by: Login of the moderator granting it

        Returns:
            float: Expiry instant (epoch seconds)
        """
        key = self._key(channel_id, login)
        ttl = clamp_ttl(ttl_seconds)
        expires_at = self._clock() + ttl
        self._permits[key] = expires_at
        logger.info("Permit granted to %s in %s for %ds by %s", key[1], key[0], ttl, granted_by or "?")

        if self._ledger is not None:
            try:
                self._ledger.record_permit(key[0], key[1], expires_at, granted_by)
            except sqlite3.Error as e:
                logger.error("Failed to persist permit for %s: %s", key[1], e)
        return expires_at

    def is_permitted(self, channel_id: str, login: str) -> bool:
        """
        Check for a live permit.

        A permit is live strictly before its expiry instant.
        """
        key = self._key(channel_id, login)
        expires_at = self._permits.get(key)
        if expires_at is None:
            return False
        if self._clock() < expires_at:
            return True
        del self._permits[key]
        return False

    def expires_at(self, channel_id: str, login: str) -> Optional[float]:
        """Get the expiry of a live permit, or None."""
        if not self.is_permitted(channel_id, login):
            return None
        return self._permits[self._key(channel_id, login)]

    def revoke(self, channel_id: str, login: str) -> bool:
        """Remove a permit. Returns True if one was held."""
        key = self._key(channel_id, login)
        held = self._permits.pop(key, None) is not None
        if self._ledger is not None:
            try:
                self._ledger.delete_permits(key[0], key[1])
            except sqlite3.Error as e:
                logger.error("Failed to remove stored permit for %s: %s", key[1], e)
        return held

    def restore(self) -> int:
        """
        Load still-running permits from the ledger.

        Returns:
            int: Number of permits restored
        """
        if self._ledger is None:
            return 0
        now = self._clock()
        self._ledger.cleanup_expired_permits(now)
        rows = self._ledger.get_active_permits(now)
        for row in rows:
            key = self._key(row["channel_id"], row["login"])
            self._permits[key] = max(self._permits.get(key, 0.0), float(row["expires_at"]))
        if rows:
            logger.info("Restored %d active permits", len(rows))
        return len(rows)

    def __len__(self) -> int:
        return len(self._permits)
