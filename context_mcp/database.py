"""
SQLite connection helpers shared by the stores.
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union
import json
import logging
import sqlite3
import threading

logger = logging.getLogger(__name__)


class LockedConnection(sqlite3.Connection):
    """A connection carrying the one lock every store sharing it must hold."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.lock = threading.RLock()


def connect(path: Union[str, Path]) -> LockedConnection:
    """Open a WAL-mode connection usable from worker threads."""
    conn = sqlite3.connect(
        str(path), check_same_thread=False, timeout=30.0, factory=LockedConnection
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA wal_autocheckpoint=500;")
    # FULL makes committed WAL frames durable across power loss
    conn.execute("PRAGMA synchronous=FULL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    conn.commit()
    return conn


def to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def parse_iso(raw: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp; corrupt values are logged and read as None."""
    if not raw:
        return None
    try:
        dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except (ValueError, TypeError) as exc:
        logger.warning("Invalid timestamp %r: %s", raw, exc)
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def dumps(value) -> str:
    return json.dumps(value, ensure_ascii=False)


def loads(raw: Optional[str], default):
    if not raw:
        return default
    try:
        return json.loads(raw)
    except (ValueError, TypeError):
        logger.warning("Unreadable JSON column value %r", raw[:80])
        return default


class SQLiteRepository:
    """
    Base for the SQLite-backed stores.

    Several repositories may share one connection. They then share its lock,
    so statement sequences from concurrent requests never interleave inside
    a transaction, whichever store issues them. The lock is only ever held
    around SQL, never around embedding or network calls.
    """

    schema: str = ""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self._lock = getattr(conn, "lock", None) or threading.RLock()
        if self.schema:
            with self._lock:
                self.conn.executescript(self.schema)
                self.conn.commit()

    def close(self):
        try:
            self.conn.commit()
        except sqlite3.Error as e:
            logger.warning("Commit on close failed: %s", e)
