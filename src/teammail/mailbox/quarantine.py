"""Dead-letter store for messages that could not be parsed.

The sync watermark advances past an unparsable message so one bad MIME
blob cannot stall a mailbox forever. Its raw bytes are parked here, keyed
by ``(connection_id, uid)``, so an operator can inspect and reprocess it.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, List, Optional

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 1000


@dataclass
class QuarantinedMessage:
    """A parked message with its failure context."""

    connection_id: str
    uid: int
    raw_message: bytes
    error_message: str
    quarantined_at: datetime
    retry_count: int = 0

    @property
    def size(self) -> int:
        return len(self.raw_message)


QUARANTINE_SCHEMA = """
CREATE TABLE IF NOT EXISTS quarantined_messages (
    connection_id TEXT NOT NULL,
    uid INTEGER NOT NULL,
    raw_message BLOB NOT NULL,
    error_message TEXT NOT NULL,
    quarantined_at TEXT NOT NULL,
    retry_count INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (connection_id, uid)
);

CREATE INDEX IF NOT EXISTS idx_quarantine_timestamp ON quarantined_messages(quarantined_at);
"""


class QuarantineStore:
    """SQLite-backed persistent storage for unparsable messages.

    Each method acquires the same connection-level lock, so a store can be
    shared across concurrently syncing connections.
    """

    def __init__(self, path: Path) -> None:
        """Initialize quarantine store with SQLite database.

        Args:
            path: Path to SQLite database file
        """
        self._path = path
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._path), check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(QUARANTINE_SCHEMA)
        self._lock = threading.Lock()

    def close(self) -> None:
        with self._lock:
            self._conn.commit()
            self._conn.close()

    def park(
        self,
        *,
        connection_id: str,
        uid: int,
        raw_message: bytes,
        error_message: str,
    ) -> QuarantinedMessage:
        """Park a message. Re-parking the same UID bumps its retry count."""
        now = datetime.now(timezone.utc)
        error_message = error_message[:MAX_ERROR_LENGTH]
        with self._lock:
            with self._conn:
                self._conn.execute(
                    """
                    INSERT INTO quarantined_messages(
                        connection_id, uid, raw_message, error_message, quarantined_at
                    ) VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(connection_id, uid) DO UPDATE SET
                        raw_message=excluded.raw_message,
                        error_message=excluded.error_message,
                        retry_count=retry_count + 1
                    """,
                    (connection_id, uid, sqlite3.Binary(raw_message), error_message, now.isoformat()),
                )
        logger.warning(
            "Parked unparsable message",
            extra={"connection_id": connection_id, "uid": uid, "size": len(raw_message)},
        )
        return self.get(connection_id, uid)  # type: ignore[return-value]

    def list(
        self,
        *,
        connection_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[QuarantinedMessage]:
        """List parked messages, newest first."""
        query = """
            SELECT connection_id, uid, raw_message, error_message, quarantined_at, retry_count
            FROM quarantined_messages
        """
        params: List[Any] = []
        if connection_id is not None:
            query += " WHERE connection_id = ?"
            params.append(connection_id)
        query += " ORDER BY quarantined_at DESC, uid DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            rows = cur.fetchall()
        return [self._row_to_message(row) for row in rows]

    def get(self, connection_id: str, uid: int) -> Optional[QuarantinedMessage]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                """
                SELECT connection_id, uid, raw_message, error_message, quarantined_at, retry_count
                FROM quarantined_messages
                WHERE connection_id = ? AND uid = ?
                """,
                (connection_id, uid),
            )
            row = cur.fetchone()
        if row is None:
            return None
        return self._row_to_message(row)

    def release(self, connection_id: str, uid: int) -> bool:
        """Remove a message after manual reprocessing. Returns whether it existed."""
        with self._lock:
            with self._conn:
                cur = self._conn.execute(
                    "DELETE FROM quarantined_messages WHERE connection_id = ? AND uid = ?",
                    (connection_id, uid),
                )
        return cur.rowcount > 0

    def count(self, connection_id: Optional[str] = None) -> int:
        with self._lock:
            cur = self._conn.cursor()
            if connection_id is None:
                cur.execute("SELECT COUNT(*) FROM quarantined_messages")
            else:
                cur.execute(
                    "SELECT COUNT(*) FROM quarantined_messages WHERE connection_id = ?",
                    (connection_id,),
                )
            return int(cur.fetchone()[0])

    def purge_old(self, days: int = 30) -> int:
        """Remove parked messages older than ``days``.

        Returns:
            Number of messages removed
        """
        cutoff = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()
        with self._lock:
            with self._conn:
                cur = self._conn.execute(
                    "DELETE FROM quarantined_messages WHERE quarantined_at < ?",
                    (cutoff,),
                )
                return cur.rowcount

    @staticmethod
    def _row_to_message(row: Any) -> QuarantinedMessage:
        return QuarantinedMessage(
            connection_id=row[0],
            uid=row[1],
            raw_message=bytes(row[2]),
            error_message=row[3],
            quarantined_at=datetime.fromisoformat(row[4]),
            retry_count=row[5],
        )


__all__ = ["QuarantineStore", "QuarantinedMessage"]
