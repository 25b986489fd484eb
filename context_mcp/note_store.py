"""
Hindsight note storage.

A hindsight note records a failure, how it was resolved, and a regex that
recognises the same failure next time. Observing a failure that already has a
note bumps that note's occurrence count instead of creating a duplicate.
"""

from typing import Optional, List, Sequence
import logging
import sqlite3

from .database import SQLiteRepository, to_iso, parse_iso, dumps, loads
from .errors import NotFoundError, ValidationError
from .models import HindsightNote, NoteSeverity, normalize_tags, utcnow

logger = logging.getLogger(__name__)

SIMILAR_MESSAGE_PREFIX = 50


class NoteStore(SQLiteRepository):
    schema = """
        CREATE TABLE IF NOT EXISTS hindsight_notes (
            id TEXT PRIMARY KEY,
            tenant_id TEXT NOT NULL,
            session_id TEXT,
            title TEXT NOT NULL,
            error_type TEXT,
            error_message TEXT,
            error_pattern TEXT,
            error_context TEXT,
            severity TEXT NOT NULL DEFAULT 'MEDIUM',
            resolution TEXT,
            resolution_steps TEXT,  -- JSON array
            lessons_learned TEXT,
            prevention_strategy TEXT,
            tags TEXT,  -- JSON array
            related_memory_ids TEXT,  -- JSON array
            occurrence_count INTEGER NOT NULL DEFAULT 1,
            reference_count INTEGER NOT NULL DEFAULT 0,
            prevention_success_count INTEGER NOT NULL DEFAULT 0,
            access_count INTEGER NOT NULL DEFAULT 0,
            auto_generated INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT,
            last_occurrence_at TEXT,
            last_accessed_at TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_notes_tenant ON hindsight_notes(tenant_id);
        CREATE INDEX IF NOT EXISTS idx_notes_error_type ON hindsight_notes(tenant_id, error_type);
    """

    @staticmethod
    def _row_to_note(row: sqlite3.Row) -> HindsightNote:
        return HindsightNote(
            id=row["id"],
            tenant_id=row["tenant_id"],
            session_id=row["session_id"],
            title=row["title"],
            error_type=row["error_type"],
            error_message=row["error_message"],
            error_pattern=row["error_pattern"],
            error_context=row["error_context"],
            severity=NoteSeverity[row["severity"]],
            resolution=row["resolution"],
            resolution_steps=loads(row["resolution_steps"], []),
            lessons_learned=row["lessons_learned"],
            prevention_strategy=row["prevention_strategy"],
            tags=loads(row["tags"], []),
            related_memory_ids=loads(row["related_memory_ids"], []),
            occurrence_count=row["occurrence_count"],
            reference_count=row["reference_count"],
            prevention_success_count=row["prevention_success_count"],
            access_count=row["access_count"],
            auto_generated=bool(row["auto_generated"]),
            created_at=parse_iso(row["created_at"]) or utcnow(),
            updated_at=parse_iso(row["updated_at"]),
            last_occurrence_at=parse_iso(row["last_occurrence_at"]),
            last_accessed_at=parse_iso(row["last_accessed_at"]),
        )

    def save(self, note: HindsightNote) -> HindsightNote:
        with self._lock:
            self.conn.execute(
                """
                INSERT OR REPLACE INTO hindsight_notes
                (id, tenant_id, session_id, title, error_type, error_message,
                 error_pattern, error_context, severity, resolution,
                 resolution_steps, lessons_learned, prevention_strategy, tags,
                 related_memory_ids, occurrence_count, reference_count,
                 prevention_success_count, access_count, auto_generated,
                 created_at, updated_at, last_occurrence_at, last_accessed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    note.id,
                    note.tenant_id,
                    note.session_id,
                    note.title,
                    note.error_type,
                    note.error_message,
                    note.error_pattern,
                    note.error_context,
                    note.severity.name,
                    note.resolution,
                    dumps(note.resolution_steps),
                    note.lessons_learned,
                    note.prevention_strategy,
                    dumps(note.tags),
                    dumps(note.related_memory_ids),
                    note.occurrence_count,
                    note.reference_count,
                    note.prevention_success_count,
                    note.access_count,
                    int(note.auto_generated),
                    to_iso(note.created_at),
                    to_iso(note.updated_at),
                    to_iso(note.last_occurrence_at),
                    to_iso(note.last_accessed_at),
                ),
            )
            self.conn.commit()
        return note

    def _select(self, where: str, params: Sequence) -> List[HindsightNote]:
        with self._lock:
            rows = self.conn.execute(
                f"SELECT * FROM hindsight_notes WHERE {where} ORDER BY created_at DESC",
                list(params),
            ).fetchall()
        return [self._row_to_note(row) for row in rows]

    def find_by_id(self, note_id: str, tenant_id: str) -> Optional[HindsightNote]:
        found = self._select("id = ? AND tenant_id = ?", (note_id, tenant_id))
        return found[0] if found else None

    def find_by_tenant(self, tenant_id: str) -> List[HindsightNote]:
        return self._select("tenant_id = ?", (tenant_id,))

    def find_by_session(self, session_id: str, tenant_id: str) -> List[HindsightNote]:
        return self._select("tenant_id = ? AND session_id = ?", (tenant_id, session_id))

    def find_by_error_type(self, error_type: str, tenant_id: str) -> List[HindsightNote]:
        return self._select(
            "tenant_id = ? AND lower(error_type) = lower(?)", (tenant_id, error_type)
        )

    def find_similar(self, tenant_id: str, error_type: Optional[str],
                     message_prefix: str) -> Optional[HindsightNote]:
        """Same error type and an error message containing ``message_prefix``."""
        if error_type:
            type_clause, params = "lower(error_type) = lower(?)", [tenant_id, error_type]
        else:
            type_clause, params = "error_type IS NULL", [tenant_id]
        params.append(message_prefix or "")
        found = self._select(
            f"tenant_id = ? AND {type_clause} AND instr(COALESCE(error_message, ''), ?) > 0",
            params,
        )
        return found[0] if found else None

    def delete(self, note_id: str, tenant_id: str) -> bool:
        with self._lock:
            cursor = self.conn.execute(
                "DELETE FROM hindsight_notes WHERE id = ? AND tenant_id = ?",
                (note_id, tenant_id),
            )
            self.conn.commit()
        return cursor.rowcount > 0

    def record_note(
        self,
        tenant_id: str,
        title: str,
        error_type: Optional[str] = None,
        error_message: Optional[str] = None,
        error_pattern: Optional[str] = None,
        severity="MEDIUM",
        resolution: Optional[str] = None,
        prevention_strategy: Optional[str] = None,
        lessons_learned: Optional[str] = None,
        error_context: Optional[str] = None,
        resolution_steps: Optional[List[str]] = None,
        tags: Optional[List[str]] = None,
        related_memory_ids: Optional[List[str]] = None,
        session_id: Optional[str] = None,
        auto_generated: bool = False,
    ) -> HindsightNote:
        """
        Record a failure. If the tenant already has a note for it (same error
        type and message prefix, or a pattern matching the message), that
        note's occurrence is recorded and returned instead.
        """
        if not title or not title.strip():
            raise ValidationError("Note title is required")
        severity = NoteSeverity.parse(severity)

        existing = None
        if error_message:
            existing = self.find_similar(
                tenant_id, error_type, error_message[:SIMILAR_MESSAGE_PREFIX]
            )
            if existing is None:
                existing = next(
                    (n for n in self.find_by_tenant(tenant_id) if n.matches_error(error_message)),
                    None,
                )

        if existing is not None:
            existing.record_occurrence()
            if resolution:
                existing.resolution = resolution
            if prevention_strategy:
                existing.prevention_strategy = prevention_strategy
            if lessons_learned:
                existing.lessons_learned = lessons_learned
            self.save(existing)
            logger.info(
                "Repeat occurrence of note %s (occurrences=%d)",
                existing.id,
                existing.occurrence_count,
            )
            return existing

        now = utcnow()
        note = HindsightNote(
            tenant_id=tenant_id,
            session_id=session_id,
            title=title.strip(),
            error_type=error_type,
            error_message=error_message,
            error_pattern=error_pattern,
            error_context=error_context,
            severity=severity,
            resolution=resolution,
            resolution_steps=list(resolution_steps or []),
            lessons_learned=lessons_learned,
            prevention_strategy=prevention_strategy,
            tags=normalize_tags(tags),
            related_memory_ids=list(related_memory_ids or []),
            auto_generated=auto_generated,
            created_at=now,
            updated_at=now,
            last_occurrence_at=now,
        )
        self.save(note)
        logger.info("Hindsight note created: %s (%s)", note.id, note.title)
        return note

    def record_reference(self, note: HindsightNote) -> None:
        """Count one use of the note in retrieved context."""
        note.record_reference()
        with self._lock:
            self.conn.execute(
                "UPDATE hindsight_notes SET access_count = access_count + 1, "
                "reference_count = reference_count + 1, last_accessed_at = ? "
                "WHERE id = ? AND tenant_id = ?",
                (to_iso(note.last_accessed_at), note.id, note.tenant_id),
            )
            self.conn.commit()

    def record_prevention_success(self, note_id: str, tenant_id: str) -> HindsightNote:
        note = self.find_by_id(note_id, tenant_id)
        if note is None:
            raise NotFoundError("Note", note_id)
        note.prevention_success_count += 1
        note.updated_at = utcnow()
        self.save(note)
        return note

    def frequent_errors(self, tenant_id: str) -> List[HindsightNote]:
        notes = [n for n in self.find_by_tenant(tenant_id) if n.occurrence_count > 1]
        notes.sort(key=lambda n: n.occurrence_count, reverse=True)
        return notes

    def critical_errors(self, tenant_id: str) -> List[HindsightNote]:
        return [
            n for n in self.find_by_tenant(tenant_id)
            if n.severity in (NoteSeverity.CRITICAL, NoteSeverity.HIGH)
        ]

    def count(self, tenant_id: str) -> int:
        with self._lock:
            return self.conn.execute(
                "SELECT COUNT(*) FROM hindsight_notes WHERE tenant_id = ?", (tenant_id,)
            ).fetchone()[0]
