"""
SQLite ledger for RelayBot.

Handles:
- Command usage history (append-only audit trail and quota source)
- Moderation permits (write-through copy of the in-memory permit store)
- Moderation event log
- Stream sessions (quota reset boundary)
- Small persisted bot state (greeting throttle)
"""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Generator, Optional

from relaybot.utils.logging import get_logger

logger = get_logger(__name__)

SCHEMA_VERSION = 2

# Reservation rows hold a quota slot while the executor runs
PENDING_REASON = "pending"

# stream_id used when no live stream is known
NO_STREAM = 0


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Ledger:
    """
    Durable ledger backed by a single SQLite file.

    The ledger is the only source of truth for quota counts; nothing here
    is cached in memory, so counts stay correct across restarts.
    """

    def __init__(self, db_path: str = "data/relaybot.db") -> None:
        """
        Initialize the ledger.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_database()
        logger.info("Ledger initialized at %s", self.db_path)

    @contextmanager
    def get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Get a database connection with automatic cleanup.

        Yields:
            sqlite3.Connection: Database connection
        """
        conn = sqlite3.connect(str(self.db_path), timeout=5.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 5000")
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except Exception as e:
            conn.rollback()
            logger.error("Database error: %s", e)
            raise
        finally:
            conn.close()

    def _init_database(self) -> None:
        """Initialize database tables and pragmas."""
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("PRAGMA journal_mode = WAL")
            cursor.execute("PRAGMA synchronous = NORMAL")

            check = cursor.execute("PRAGMA quick_check").fetchone()
            if check is None or str(check[0]).lower() != "ok":
                raise sqlite3.DatabaseError(f"Ledger integrity check failed: {check[0] if check else '?'}")

            version = cursor.execute("PRAGMA user_version").fetchone()[0]

            # Command usage ledger
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS command_usage (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    ts TEXT NOT NULL,
                    stream_id INTEGER NOT NULL DEFAULT 0,
                    user_id TEXT,
                    login TEXT,
                    command TEXT NOT NULL,
                    ok INTEGER,
                    reason TEXT,
                    message_id TEXT
                )
            """)
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_usage_quota ON command_usage(stream_id, command, user_id)"
            )

            # Permits
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS permits (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    channel_id TEXT NOT NULL,
                    login TEXT NOT NULL,
                    expires_at REAL NOT NULL,
                    granted_by TEXT,
                    created_at TEXT NOT NULL
                )
            """)
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_permits_expires ON permits(expires_at)"
            )

            # Moderation event log
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS moderation_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    ts TEXT NOT NULL,
                    type TEXT NOT NULL,
                    channel_id TEXT,
                    user_id TEXT,
                    login TEXT,
                    message_id TEXT,
                    action TEXT NOT NULL,
                    reason TEXT
                )
            """)
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_mod_events_ts ON moderation_events(ts)"
            )

            # Stream sessions
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS streams (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    channel_id TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    ended_at TEXT
                )
            """)

            # Key/value bot state
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS bot_state (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            if version < SCHEMA_VERSION:
                cursor.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
                logger.info("Ledger schema migrated %d -> %d", version, SCHEMA_VERSION)

    # ==================== Usage Methods ====================

    def log_usage(
        self,
        command: str,
        user_id: str,
        login: str,
        ok: bool,
        reason: Optional[str] = None,
        message_id: str = "",
        stream_id: int = NO_STREAM,
    ) -> int:
        """
        Append a finished usage record.

        Returns:
            int: Row id of the new record
        """
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO command_usage (ts, stream_id, user_id, login, command, ok, reason, message_id)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (_now_iso(), stream_id, user_id, login, command, 1 if ok else 0, reason, message_id),
            )
            return int(cursor.lastrowid)

    def reserve_usage(
        self,
        command: str,
        user_id: str,
        login: str,
        message_id: str = "",
        stream_id: int = NO_STREAM,
        limit_per_user: int = 0,
        limit_per_stream: int = 0,
    ) -> tuple[Optional[int], Optional[str]]:
        """
        Atomically check quotas and claim a usage slot.

        The count and the insert happen inside one IMMEDIATE transaction, so
        two overlapping dispatches can never both take the last slot. On
        rejection the failed usage record is written in the same transaction.

        Args:
            command: Canonical command name
            user_id: Invoking user's ID
            login: Invoking user's login
            message_id: Triggering chat message ID
            stream_id: Current stream session (0 when offline)
            limit_per_user: Max successful uses per user per stream (0 = off)
            limit_per_stream: Max successful uses per stream (0 = off)

        Returns:
            tuple: (reservation row id, None) when admitted,
                   (None, "limit-user" | "limit-stream") when rejected
        """
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("BEGIN IMMEDIATE")

            reason: Optional[str] = None
            if limit_per_user > 0:
                used = self._count_usage(cursor, command, stream_id, user_id)
                if used >= limit_per_user:
                    reason = "limit-user"
            if reason is None and limit_per_stream > 0:
                used = self._count_usage(cursor, command, stream_id)
                if used >= limit_per_stream:
                    reason = "limit-stream"

            if reason is not None:
                cursor.execute(
                    """
                    INSERT INTO command_usage (ts, stream_id, user_id, login, command, ok, reason, message_id)
                    VALUES (?, ?, ?, ?, ?, 0, ?, ?)
                    """,
                    (_now_iso(), stream_id, user_id, login, command, reason, message_id),
                )
                return None, reason

            cursor.execute(
                """
                INSERT INTO command_usage (ts, stream_id, user_id, login, command, ok, reason, message_id)
                VALUES (?, ?, ?, ?, ?, NULL, ?, ?)
                """,
                (_now_iso(), stream_id, user_id, login, command, PENDING_REASON, message_id),
            )
            return int(cursor.lastrowid), None

    def complete_usage(self, usage_id: int, ok: bool, reason: Optional[str] = None) -> None:
        """Finalise a reservation made by reserve_usage."""
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "UPDATE command_usage SET ok = ?, reason = ?, ts = ? WHERE id = ?",
                (1 if ok else 0, reason, _now_iso(), usage_id),
            )

    @staticmethod
    def _count_usage(
        cursor: sqlite3.Cursor,
        command: str,
        stream_id: int,
        user_id: Optional[str] = None,
    ) -> int:
        # Pending reservations count as used
        query = (
            "SELECT COUNT(*) FROM command_usage "
            "WHERE stream_id = ? AND command = ? AND (ok = 1 OR ok IS NULL)"
        )
        params: list[Any] = [stream_id, command]
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        cursor.execute(query, params)
        return int(cursor.fetchone()[0])

    def get_usage(self, command: Optional[str] = None, limit: int = 50) -> list[dict[str, Any]]:
        """Get most recent usage records, newest first."""
        with self.get_connection() as conn:
            cursor = conn.cursor()
            if command:
                cursor.execute(
                    "SELECT * FROM command_usage WHERE command = ? ORDER BY id DESC LIMIT ?",
                    (command, limit),
                )
            else:
                cursor.execute("SELECT * FROM command_usage ORDER BY id DESC LIMIT ?", (limit,))
            return [dict(row) for row in cursor.fetchall()]

    def expire_pending_usage(self) -> int:
        """Mark reservations left behind by a crashed process as failed."""
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "UPDATE command_usage SET ok = 0, reason = 'abandoned' WHERE ok IS NULL"
            )
            if cursor.rowcount:
                logger.warning("Marked %d abandoned usage reservations", cursor.rowcount)
            return cursor.rowcount

    # ==================== Permit Methods ====================

    def record_permit(self, channel_id: str, login: str, expires_at: float, granted_by: str = "") -> None:
        """Persist a granted permit."""
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO permits (channel_id, login, expires_at, granted_by, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (channel_id, login.lower(), expires_at, granted_by, _now_iso()),
            )

    def get_active_permits(self, now: float) -> list[dict[str, Any]]:
        """Get permits that have not yet expired, latest grant per identity."""
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT channel_id, login, MAX(expires_at) AS expires_at
                FROM permits
                WHERE expires_at > ?
                GROUP BY channel_id, login
                """,
                (now,),
            )
            return [dict(row) for row in cursor.fetchall()]

    def delete_permits(self, channel_id: str, login: str) -> int:
        """Remove every stored permit for one identity."""
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "DELETE FROM permits WHERE channel_id = ? AND login = ?",
                (channel_id, login.lower()),
            )
            return cursor.rowcount

    def cleanup_expired_permits(self, now: float) -> int:
        """Remove expired permits."""
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("DELETE FROM permits WHERE expires_at <= ?", (now,))
            return cursor.rowcount

    # ==================== Moderation Event Methods ====================

    def log_moderation_event(
        self,
        event_type: str,
        action: str,
        channel_id: str = "",
        user_id: str = "",
        login: str = "",
        message_id: str = "",
        reason: str = "",
    ) -> None:
        """Append a moderation event (independent of command usage)."""
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO moderation_events (ts, type, channel_id, user_id, login, message_id, action, reason)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (_now_iso(), event_type, channel_id, user_id, login, message_id, action, reason[:500]),
            )

    def get_moderation_events(self, limit: int = 10, channel_id: Optional[str] = None) -> list[dict[str, Any]]:
        """Get recent moderation events, newest first."""
        with self.get_connection() as conn:
            cursor = conn.cursor()
            if channel_id:
                cursor.execute(
                    "SELECT * FROM moderation_events WHERE channel_id = ? ORDER BY id DESC LIMIT ?",
                    (channel_id, limit),
                )
            else:
                cursor.execute("SELECT * FROM moderation_events ORDER BY id DESC LIMIT ?", (limit,))
            return [dict(row) for row in cursor.fetchall()]

    # ==================== Stream Session Methods ====================

    def begin_stream(self, channel_id: str, started_at: Optional[str] = None) -> int:
        """
        Open a new stream session, closing any session left open.

        Returns:
            int: New stream id
        """
        now = _now_iso()
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "UPDATE streams SET ended_at = ? WHERE channel_id = ? AND ended_at IS NULL",
                (now, channel_id),
            )
            cursor.execute(
                "INSERT INTO streams (channel_id, started_at) VALUES (?, ?)",
                (channel_id, started_at or now),
            )
            stream_id = int(cursor.lastrowid)
        logger.info("Stream %d started for channel %s", stream_id, channel_id)
        return stream_id

    def end_stream(self, channel_id: str) -> bool:
        """Close the open stream session. Returns False if none was open."""
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "UPDATE streams SET ended_at = ? WHERE channel_id = ? AND ended_at IS NULL",
                (_now_iso(), channel_id),
            )
            ended = cursor.rowcount > 0
        if ended:
            logger.info("Stream ended for channel %s", channel_id)
        return ended

    def current_stream_id(self, channel_id: str) -> int:
        """Get the open stream id for a channel, or NO_STREAM."""
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT id FROM streams WHERE channel_id = ? AND ended_at IS NULL ORDER BY id DESC LIMIT 1",
                (channel_id,),
            )
            row = cursor.fetchone()
            return int(row["id"]) if row else NO_STREAM

    # ==================== Bot State Methods ====================

    def get_state(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """Get a stored state value, or default."""
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT value FROM bot_state WHERE key = ?", (key,))
            row = cursor.fetchone()
            return row["value"] if row else default

    def set_state(self, key: str, value: Any) -> None:
        """Store a state value, replacing any previous one."""
        with self.get_connection() as conn:
            conn.execute(
                """
                INSERT INTO bot_state (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """,
                (key, str(value), _now_iso()),
            )
