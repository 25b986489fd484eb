"""
Audit sink.

``record`` hands the event to a single background worker and returns at
once. The worker writes through its own SQLite connection, so an audit
transaction can neither block nor roll back the operation being audited.
Failures are logged and dropped.
"""

from concurrent.futures import ThreadPoolExecutor, wait
from pathlib import Path
from typing import List, Optional, Dict, Any
import logging
import threading

from .database import connect, to_iso, dumps, loads
from .models import AuditEvent

logger = logging.getLogger(__name__)

CONTEXT_INJECTION = "context_injection"
MEMORY_CREATED = "memory_created"
MEMORY_UPDATED = "memory_updated"
MEMORY_DELETED = "memory_deleted"
RELATIONSHIP_CREATED = "relationship_created"
NOTE_CREATED = "note_created"
CONTEXT_COMPRESSED = "context_compressed"
SESSION_ANALYZED = "session_analyzed"
ERROR = "error"

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS audit_log (
        id TEXT PRIMARY KEY,
        event_type TEXT NOT NULL,
        tenant_id TEXT,
        actor TEXT,
        session_id TEXT,
        user_request TEXT,
        decision TEXT,  -- JSON object
        outcome TEXT,
        latency_ms INTEGER,
        llm_calls INTEGER,
        memories_accessed TEXT,  -- JSON array
        error_message TEXT,
        timestamp TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_audit_tenant ON audit_log(tenant_id, timestamp);
"""


class AuditSink:
    def __init__(self, db_path: Path, enabled: bool = True):
        self.db_path = Path(db_path)
        self.enabled = enabled
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="audit")
        self._pending = set()
        self._pending_lock = threading.Lock()
        self._conn = None
        self._closed = False

    def _connection(self):
        # Only ever touched from the single worker thread
        if self._conn is None:
            self._conn = connect(self.db_path)
            self._conn.executescript(_SCHEMA)
            self._conn.commit()
        return self._conn

    def record(self, event: AuditEvent) -> None:
        """Queue ``event`` for writing. Never raises, never waits."""
        if not self.enabled or self._closed:
            return
        try:
            future = self._executor.submit(self._write, event)
        except RuntimeError as e:
            logger.warning("Audit event %s dropped: %s", event.event_type, e)
            return
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._discard)

    def _discard(self, future) -> None:
        with self._pending_lock:
            self._pending.discard(future)

    def _write(self, event: AuditEvent) -> None:
        try:
            conn = self._connection()
            with conn:
                conn.execute(
                    """
                    INSERT INTO audit_log
                    (id, event_type, tenant_id, actor, session_id, user_request,
                     decision, outcome, latency_ms, llm_calls, memories_accessed,
                     error_message, timestamp)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        event.id,
                        event.event_type,
                        event.tenant_id,
                        event.actor,
                        event.session_id,
                        event.user_request,
                        dumps(event.decision),
                        event.outcome,
                        event.latency_ms,
                        event.llm_calls,
                        dumps(event.memories_accessed),
                        event.error_message,
                        to_iso(event.timestamp),
                    ),
                )
        except Exception as e:
            logger.warning("Failed to write audit event %s: %s", event.event_type, e)

    def record_error(self, tenant_id: Optional[str], operation: str, error: Exception,
                     session_id: Optional[str] = None) -> None:
        self.record(
            AuditEvent(
                event_type=ERROR,
                tenant_id=tenant_id,
                session_id=session_id,
                user_request=operation,
                outcome="failed",
                error_message=str(error),
            )
        )

    def flush(self, timeout: Optional[float] = None) -> None:
        """Wait for queued events to be written."""
        with self._pending_lock:
            pending = list(self._pending)
        if pending:
            wait(pending, timeout=timeout)

    def _read(self, tenant_id: str, limit: int) -> List[Dict[str, Any]]:
        conn = self._connection()
        rows = conn.execute(
            "SELECT * FROM audit_log WHERE tenant_id = ? ORDER BY timestamp DESC LIMIT ?",
            (tenant_id, limit),
        ).fetchall()
        events = []
        for row in rows:
            event = dict(row)
            event["decision"] = loads(event["decision"], {})
            event["memories_accessed"] = loads(event["memories_accessed"], [])
            events.append(event)
        return events

    def recent(self, tenant_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        """Most recent events of a tenant, read on the audit worker."""
        if self._closed:
            return []
        return self._executor.submit(self._read, tenant_id, limit).result()

    def close(self, timeout: Optional[float] = None) -> None:
        if self._closed:
            return
        self.flush(timeout)
        self._closed = True
        self._executor.submit(self._close_connection)
        self._executor.shutdown(wait=True)

    def _close_connection(self) -> None:
        if self._conn is not None:
            try:
                self._conn.close()
            except Exception as e:
                logger.warning("Closing audit connection failed: %s", e)
            self._conn = None
