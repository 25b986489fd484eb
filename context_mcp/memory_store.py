"""
Memory storage.

Memories are written through an ordered pipeline of backends: SQLite is the
primary (structured queries, counters, version history) and must succeed;
ChromaDB is the secondary vector index and a failure there is only logged.
Every read takes an explicit tenant id and filters on it.
"""

from pathlib import Path
from typing import Optional, List, Dict, Any, Sequence, Tuple
import logging
import sqlite3

import chromadb
from chromadb.config import Settings
import numpy as np

from .config import CHROMA_COLLECTION_NAME
from .database import SQLiteRepository, to_iso, parse_iso, dumps, loads
from .errors import PersistenceError
from .models import (
    Memory,
    MemoryVersion,
    MemoryCategory,
    ImportanceLevel,
    utcnow,
)

logger = logging.getLogger(__name__)


class MemoryBackend:
    """One destination of the write pipeline."""

    name = "backend"

    def save(self, memory: Memory) -> None:
        raise NotImplementedError

    def remove(self, memory_id: str, tenant_id: str) -> None:
        raise NotImplementedError


class SQLiteMemoryBackend(SQLiteRepository, MemoryBackend):
    """Primary store: the source of truth for memories and their history."""

    name = "sqlite"

    schema = """
        CREATE TABLE IF NOT EXISTS memories (
            id TEXT PRIMARY KEY,
            tenant_id TEXT NOT NULL,
            content TEXT NOT NULL,
            summary TEXT,
            category TEXT NOT NULL,
            importance TEXT NOT NULL,
            embedding TEXT,  -- JSON array
            tags TEXT,  -- JSON array
            metadata TEXT,  -- JSON object
            version INTEGER NOT NULL DEFAULT 1,
            access_count INTEGER NOT NULL DEFAULT 0,
            injection_count INTEGER NOT NULL DEFAULT 0,
            helpful_count INTEGER NOT NULL DEFAULT 0,
            not_helpful_count INTEGER NOT NULL DEFAULT 0,
            source_type TEXT,
            source_reference TEXT,
            created_by TEXT,
            code_example TEXT,
            programming_language TEXT,
            token_count INTEGER DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT,
            last_accessed_at TEXT,
            deleted_at TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_memories_tenant ON memories(tenant_id);
        CREATE INDEX IF NOT EXISTS idx_memories_category ON memories(tenant_id, category);
        CREATE INDEX IF NOT EXISTS idx_memories_importance ON memories(tenant_id, importance);

        CREATE TABLE IF NOT EXISTS memory_versions (
            id TEXT PRIMARY KEY,
            memory_id TEXT NOT NULL,
            tenant_id TEXT NOT NULL,
            version INTEGER NOT NULL,
            content TEXT NOT NULL,
            summary TEXT,
            category TEXT,
            importance TEXT,
            tags TEXT,
            metadata TEXT,
            code_example TEXT,
            change_type TEXT,
            change_reason TEXT,
            changed_by TEXT,
            created_at TEXT NOT NULL
        );

        CREATE UNIQUE INDEX IF NOT EXISTS uq_versions_memory
            ON memory_versions(tenant_id, memory_id, version);
    """

    _LIVE = "deleted_at IS NULL"

    def save(self, memory: Memory) -> None:
        with self._lock:
            self._upsert(memory)
            self.conn.commit()

    def save_with_version(self, memory: Memory, version: MemoryVersion) -> None:
        """Archive the prior state and write the new one in a single transaction."""
        with self._lock:
            try:
                self._insert_version(version)
                self._upsert(memory)
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                raise

    def _upsert(self, memory: Memory) -> None:
        # ON CONFLICT only updates a row owned by the same tenant
        self.conn.execute(
            """
            INSERT INTO memories
            (id, tenant_id, content, summary, category, importance, embedding,
             tags, metadata, version, access_count, injection_count,
             helpful_count, not_helpful_count, source_type, source_reference,
             created_by, code_example, programming_language, token_count,
             created_at, updated_at, last_accessed_at, deleted_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                content = excluded.content,
                summary = excluded.summary,
                category = excluded.category,
                importance = excluded.importance,
                embedding = excluded.embedding,
                tags = excluded.tags,
                metadata = excluded.metadata,
                version = excluded.version,
                helpful_count = excluded.helpful_count,
                not_helpful_count = excluded.not_helpful_count,
                source_type = excluded.source_type,
                source_reference = excluded.source_reference,
                code_example = excluded.code_example,
                programming_language = excluded.programming_language,
                token_count = excluded.token_count,
                updated_at = excluded.updated_at,
                last_accessed_at = excluded.last_accessed_at,
                deleted_at = excluded.deleted_at
            WHERE memories.tenant_id = excluded.tenant_id
            """,
            (
                memory.id,
                memory.tenant_id,
                memory.content,
                memory.summary,
                memory.category.name,
                memory.importance.name,
                dumps(list(memory.embedding)),
                dumps(list(memory.tags)),
                dumps(memory.metadata),
                memory.version,
                memory.access_count,
                memory.injection_count,
                memory.helpful_count,
                memory.not_helpful_count,
                memory.source_type,
                memory.source_reference,
                memory.created_by,
                memory.code_example,
                memory.programming_language,
                memory.token_count,
                to_iso(memory.created_at),
                to_iso(memory.updated_at),
                to_iso(memory.last_accessed_at),
                to_iso(memory.deleted_at),
            ),
        )

    def remove(self, memory_id: str, tenant_id: str) -> None:
        now_iso = to_iso(utcnow())
        with self._lock:
            self.conn.execute(
                "UPDATE memories SET deleted_at = ?, updated_at = ? "
                "WHERE id = ? AND tenant_id = ? AND deleted_at IS NULL",
                (now_iso, now_iso, memory_id, tenant_id),
            )
            self.conn.commit()

    def _row_to_memory(self, row: sqlite3.Row) -> Memory:
        return Memory(
            id=row["id"],
            tenant_id=row["tenant_id"],
            content=row["content"],
            summary=row["summary"] or "",
            category=MemoryCategory[row["category"]],
            importance=ImportanceLevel[row["importance"]],
            embedding=loads(row["embedding"], []),
            tags=loads(row["tags"], []),
            metadata=loads(row["metadata"], {}),
            version=row["version"],
            access_count=row["access_count"],
            injection_count=row["injection_count"],
            helpful_count=row["helpful_count"],
            not_helpful_count=row["not_helpful_count"],
            source_type=row["source_type"],
            source_reference=row["source_reference"],
            created_by=row["created_by"],
            code_example=row["code_example"],
            programming_language=row["programming_language"],
            token_count=row["token_count"] or 0,
            created_at=parse_iso(row["created_at"]) or utcnow(),
            updated_at=parse_iso(row["updated_at"]),
            last_accessed_at=parse_iso(row["last_accessed_at"]),
            deleted_at=parse_iso(row["deleted_at"]),
        )

    def _select(self, where: str, params: Sequence[Any], limit: Optional[int] = None,
                order: str = "created_at DESC") -> List[Memory]:
        query = f"SELECT * FROM memories WHERE {where} ORDER BY {order}"
        params = list(params)
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return [self._row_to_memory(row) for row in rows]

    def find_by_id(self, memory_id: str, tenant_id: str,
                   include_deleted: bool = False) -> Optional[Memory]:
        where = "id = ? AND tenant_id = ?"
        if not include_deleted:
            where += f" AND {self._LIVE}"
        found = self._select(where, (memory_id, tenant_id))
        return found[0] if found else None

    def find_many(self, memory_ids: Sequence[str], tenant_id: str) -> Dict[str, Memory]:
        if not memory_ids:
            return {}
        placeholders = ",".join("?" for _ in memory_ids)
        found = self._select(
            f"id IN ({placeholders}) AND tenant_id = ? AND {self._LIVE}",
            [*memory_ids, tenant_id],
        )
        return {m.id: m for m in found}

    def find_by_tenant(self, tenant_id: str, limit: Optional[int] = None) -> List[Memory]:
        return self._select(f"tenant_id = ? AND {self._LIVE}", (tenant_id,), limit)

    def find_by_category(self, category: MemoryCategory, tenant_id: str,
                         limit: Optional[int] = None) -> List[Memory]:
        return self._select(
            f"tenant_id = ? AND category = ? AND {self._LIVE}",
            (tenant_id, category.name),
            limit,
        )

    def find_by_importance(self, importance: ImportanceLevel, tenant_id: str,
                           limit: Optional[int] = None) -> List[Memory]:
        return self._select(
            f"tenant_id = ? AND importance = ? AND {self._LIVE}",
            (tenant_id, importance.name),
            limit,
        )

    def find_by_tags(self, tags: Sequence[str], tenant_id: str,
                     limit: Optional[int] = None) -> List[Memory]:
        if not tags:
            return []
        # Any of the tags; tags are stored as a JSON array of strings
        placeholders = ", ".join("?" for _ in tags)
        return self._select(
            f"tenant_id = ? AND {self._LIVE} AND EXISTS "
            f"(SELECT 1 FROM json_each(memories.tags) WHERE json_each.value IN ({placeholders}))",
            [tenant_id, *tags],
            limit,
        )

    def search_text(self, query: str, tenant_id: str, limit: int = 10) -> List[Memory]:
        pattern = f"%{query.strip()}%"
        return self._select(
            f"tenant_id = ? AND {self._LIVE} AND (content LIKE ? OR summary LIKE ?)",
            (tenant_id, pattern, pattern),
            limit,
        )

    def embeddings_for_tenant(self, tenant_id: str) -> List[Tuple[str, List[float]]]:
        with self._lock:
            rows = self.conn.execute(
                f"SELECT id, embedding FROM memories WHERE tenant_id = ? AND {self._LIVE}",
                (tenant_id,),
            ).fetchall()
        return [(row["id"], loads(row["embedding"], [])) for row in rows]

    def iter_batches(self, batch_size: int = 128):
        """Yield every live memory across tenants, oldest first, in batches."""
        offset = 0
        while True:
            with self._lock:
                rows = self.conn.execute(
                    f"SELECT * FROM memories WHERE {self._LIVE} "
                    "ORDER BY created_at ASC, id ASC LIMIT ? OFFSET ?",
                    (batch_size, offset),
                ).fetchall()
            if not rows:
                return
            yield [self._row_to_memory(row) for row in rows]
            offset += len(rows)

    def increment(self, memory_id: str, tenant_id: str, column: str,
                  touch: bool = True) -> None:
        """Atomically bump one usage counter (and last_accessed_at)."""
        if column not in ("access_count", "injection_count",
                          "helpful_count", "not_helpful_count"):
            raise ValueError(f"Not a counter column: {column}")
        assignments = f"{column} = {column} + 1"
        params: List[Any] = []
        if touch:
            assignments += ", last_accessed_at = ?"
            params.append(to_iso(utcnow()))
        params.extend([memory_id, tenant_id])
        with self._lock:
            self.conn.execute(
                f"UPDATE memories SET {assignments} WHERE id = ? AND tenant_id = ?",
                params,
            )
            self.conn.commit()

    def _insert_version(self, version: MemoryVersion) -> None:
        self.conn.execute(
            """
            INSERT INTO memory_versions
            (id, memory_id, tenant_id, version, content, summary, category,
             importance, tags, metadata, code_example, change_type,
             change_reason, changed_by, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                version.id,
                version.memory_id,
                version.tenant_id,
                version.version,
                version.content,
                version.summary,
                version.category.name,
                version.importance.name,
                dumps(version.tags),
                dumps(version.metadata),
                version.code_example,
                version.change_type,
                version.change_reason,
                version.changed_by,
                to_iso(version.created_at),
            ),
        )

    def versions(self, memory_id: str, tenant_id: str) -> List[MemoryVersion]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM memory_versions WHERE memory_id = ? AND tenant_id = ? "
                "ORDER BY version DESC",
                (memory_id, tenant_id),
            ).fetchall()
        return [
            MemoryVersion(
                id=row["id"],
                memory_id=row["memory_id"],
                tenant_id=row["tenant_id"],
                version=row["version"],
                content=row["content"],
                summary=row["summary"] or "",
                category=MemoryCategory[row["category"]],
                importance=ImportanceLevel[row["importance"]],
                tags=loads(row["tags"], []),
                metadata=loads(row["metadata"], {}),
                code_example=row["code_example"],
                change_type=row["change_type"] or "UPDATE",
                change_reason=row["change_reason"],
                changed_by=row["changed_by"],
                created_at=parse_iso(row["created_at"]) or utcnow(),
            )
            for row in rows
        ]

    def statistics(self, tenant_id: str) -> Dict[str, Any]:
        with self._lock:
            total = self.conn.execute(
                f"SELECT COUNT(*) AS n, COALESCE(SUM(token_count), 0) AS tokens "
                f"FROM memories WHERE tenant_id = ? AND {self._LIVE}",
                (tenant_id,),
            ).fetchone()
            by_category = self.conn.execute(
                f"SELECT category, COUNT(*) AS n FROM memories "
                f"WHERE tenant_id = ? AND {self._LIVE} GROUP BY category",
                (tenant_id,),
            ).fetchall()
            by_importance = self.conn.execute(
                f"SELECT importance, COUNT(*) AS n FROM memories "
                f"WHERE tenant_id = ? AND {self._LIVE} GROUP BY importance",
                (tenant_id,),
            ).fetchall()
        return {
            "total_memories": total["n"],
            "total_tokens": total["tokens"],
            "by_category": {
                MemoryCategory[r["category"]].value: r["n"] for r in by_category
            },
            "by_importance": {
                ImportanceLevel[r["importance"]].value: r["n"] for r in by_importance
            },
        }

    def count_live(self) -> int:
        with self._lock:
            return self.conn.execute(
                f"SELECT COUNT(*) FROM memories WHERE {self._LIVE}"
            ).fetchone()[0]


class ChromaMemoryBackend(MemoryBackend):
    """Secondary store: the cosine-space vector index."""

    name = "chroma"

    def __init__(self, chroma_path: Path, collection_name: str = CHROMA_COLLECTION_NAME):
        self.collection_name = collection_name
        self.client = chromadb.PersistentClient(
            path=str(chroma_path),
            settings=Settings(anonymized_telemetry=False, allow_reset=True),
        )
        self.collection = self._open_collection()

    def _open_collection(self):
        return self.client.get_or_create_collection(
            name=self.collection_name,
            metadata={
                "description": "Context Sentry memories",
                "hnsw:space": "cosine",
            },
            embedding_function=None,  # embeddings are always passed in
        )

    @staticmethod
    def _metadata(memory: Memory) -> Dict[str, Any]:
        return {
            "tenant_id": memory.tenant_id,
            "category": memory.category.name,
            "importance": memory.importance.name,
            "version": memory.version,
        }

    def save(self, memory: Memory) -> None:
        if not memory.embedding:
            raise ValueError(f"Memory {memory.id} has no embedding")
        self.collection.upsert(
            ids=[memory.id],
            embeddings=[list(memory.embedding)],
            documents=[memory.summary or memory.content],
            metadatas=[self._metadata(memory)],
        )

    def remove(self, memory_id: str, tenant_id: str) -> None:
        self.collection.delete(ids=[memory_id], where={"tenant_id": tenant_id})

    def query(self, vector: Sequence[float], k: int, tenant_id: str) -> List[Tuple[str, float]]:
        if k <= 0 or self.collection.count() == 0:
            return []
        results = self.collection.query(
            query_embeddings=[list(vector)],
            n_results=k,
            where={"tenant_id": tenant_id},
            include=["distances"],
        )
        ids = results["ids"][0] if results.get("ids") else []
        distances = results["distances"][0] if results.get("distances") else []
        # cosine distance = 1 - similarity
        return [(mid, 1.0 - dist) for mid, dist in zip(ids, distances)]

    def count(self) -> int:
        return self.collection.count()

    def reset(self) -> None:
        try:
            self.client.delete_collection(self.collection_name)
        except Exception as e:
            logger.warning("Chroma drop collection warning: %s", e)
        self.collection = None
        self.collection = self._open_collection()

    def add_batch(self, memories: Sequence[Memory]) -> None:
        if not memories:
            return
        self.collection.add(
            ids=[m.id for m in memories],
            embeddings=[list(m.embedding) for m in memories],
            documents=[m.summary or m.content for m in memories],
            metadatas=[self._metadata(m) for m in memories],
        )


class MemoryStore:
    """
    Tenant-scoped memory storage over a primary and an optional vector backend.

    Writes run primary first. A primary failure raises PersistenceError; a
    secondary failure is logged and the index can be resynced later with
    ``rebuild_vector_index``.
    """

    def __init__(self, primary: SQLiteMemoryBackend,
                 vector_index: Optional[ChromaMemoryBackend] = None):
        self.primary = primary
        self.vector_index = vector_index
        self._pipeline: List[MemoryBackend] = [primary]
        if vector_index is not None:
            self._pipeline.append(vector_index)

    def _run_pipeline(self, action: str, *args) -> None:
        primary, secondaries = self._pipeline[0], self._pipeline[1:]
        try:
            getattr(primary, action)(*args)
        except Exception as e:
            logger.error("Primary store %s %s failed: %s", primary.name, action, e)
            raise PersistenceError(f"{action} failed in {primary.name}: {e}") from e
        for backend in secondaries:
            try:
                getattr(backend, action)(*args)
            except Exception as e:
                logger.warning(
                    "Secondary store %s %s failed (index will be stale): %s",
                    backend.name,
                    action,
                    e,
                )

    def save(self, memory: Memory) -> Memory:
        self._run_pipeline("save", memory)
        return memory

    def delete(self, memory_id: str, tenant_id: str) -> None:
        self._run_pipeline("remove", memory_id, tenant_id)

    def find_by_id(self, memory_id: str, tenant_id: str) -> Optional[Memory]:
        return self.primary.find_by_id(memory_id, tenant_id)

    def find_by_tenant(self, tenant_id: str, limit: Optional[int] = None) -> List[Memory]:
        return self.primary.find_by_tenant(tenant_id, limit)

    def find_by_category(self, category: MemoryCategory, tenant_id: str,
                         limit: Optional[int] = None) -> List[Memory]:
        return self.primary.find_by_category(category, tenant_id, limit)

    def find_by_importance(self, importance: ImportanceLevel, tenant_id: str,
                           limit: Optional[int] = None) -> List[Memory]:
        return self.primary.find_by_importance(importance, tenant_id, limit)

    def find_by_tags(self, tags: Sequence[str], tenant_id: str,
                     limit: Optional[int] = None) -> List[Memory]:
        return self.primary.find_by_tags(tags, tenant_id, limit)

    def search_text(self, query: str, tenant_id: str, limit: int = 10) -> List[Memory]:
        return self.primary.search_text(query, tenant_id, limit)

    def vector_search_scored(self, vector: Sequence[float], k: int,
                             tenant_id: str) -> List[Tuple[Memory, float]]:
        """Nearest live memories of the tenant with their cosine similarity."""
        if k <= 0:
            return []
        hits: Optional[List[Tuple[str, float]]] = None
        if self.vector_index is not None:
            try:
                hits = self.vector_index.query(vector, k, tenant_id)
            except Exception as e:
                logger.warning("Vector index query failed, scanning SQLite: %s", e)
        if hits is None:
            hits = self._scan(vector, k, tenant_id)

        # Re-read through the primary so only live rows of this tenant survive
        found = self.primary.find_many([mid for mid, _ in hits], tenant_id)
        return [(found[mid], score) for mid, score in hits if mid in found]

    def vector_search(self, vector: Sequence[float], k: int, tenant_id: str) -> List[Memory]:
        return [memory for memory, _ in self.vector_search_scored(vector, k, tenant_id)]

    def _scan(self, vector: Sequence[float], k: int, tenant_id: str) -> List[Tuple[str, float]]:
        rows = [(mid, emb) for mid, emb in self.primary.embeddings_for_tenant(tenant_id)
                if len(emb) == len(vector)]
        if not rows:
            return []
        query = np.asarray(vector, dtype=np.float64)
        matrix = np.asarray([emb for _, emb in rows], dtype=np.float64)
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        dots = matrix @ query
        scores = np.divide(dots, norms, out=np.zeros_like(dots), where=norms > 0)
        order = np.argsort(-scores)[:k]
        return [(rows[i][0], float(scores[i])) for i in order]

    def record_access(self, memory_id: str, tenant_id: str) -> None:
        self.primary.increment(memory_id, tenant_id, "access_count")

    def record_injection(self, memory_id: str, tenant_id: str) -> None:
        self.primary.increment(memory_id, tenant_id, "injection_count")

    def record_feedback(self, memory_id: str, tenant_id: str, helpful: bool) -> None:
        column = "helpful_count" if helpful else "not_helpful_count"
        self.primary.increment(memory_id, tenant_id, column, touch=False)

    def save_new_version(self, previous: MemoryVersion, memory: Memory) -> Memory:
        """
        Persist ``memory`` as a new version, archiving ``previous`` with it.

        Both rows are written in one primary transaction, so a failure leaves
        neither the archive row nor the new state behind.
        """
        try:
            self.primary.save_with_version(memory, previous)
        except Exception as e:
            logger.error("Primary store versioned save of %s failed: %s", memory.id, e)
            raise PersistenceError(
                f"Could not save {memory.id} v{memory.version}: {e}"
            ) from e
        for backend in self._pipeline[1:]:
            try:
                backend.save(memory)
            except Exception as e:
                logger.warning(
                    "Secondary store %s save failed (index will be stale): %s",
                    backend.name,
                    e,
                )
        return memory

    def versions(self, memory_id: str, tenant_id: str) -> List[MemoryVersion]:
        return self.primary.versions(memory_id, tenant_id)

    def statistics(self, tenant_id: str) -> Dict[str, Any]:
        return self.primary.statistics(tenant_id)

    def rebuild_vector_index(self, embed_batch, batch_size: int = 128) -> int:
        """
        Drop the vector collection and re-index every live memory.

        ``embed_batch`` re-embeds each batch so a model switch takes effect.
        Returns the number of memories indexed.
        """
        if self.vector_index is None:
            return 0
        self.vector_index.reset()
        indexed = 0
        for batch in self.primary.iter_batches(batch_size):
            vectors = embed_batch([m.content for m in batch])
            for memory, vector in zip(batch, vectors):
                memory.embedding = vector
                self.primary.save(memory)
            self.vector_index.add_batch(batch)
            indexed += len(batch)
        return indexed

    def integrity_check(self) -> Dict[str, int]:
        sqlite_count = self.primary.count_live()
        chroma_count = self.vector_index.count() if self.vector_index else sqlite_count
        if sqlite_count != chroma_count:
            logger.warning(
                "Record count mismatch between SQLite (%d) and ChromaDB (%d). "
                "Run rebuild_vector_index to resync.",
                sqlite_count,
                chroma_count,
            )
        else:
            logger.info("Integrity check: SQLite=%s, ChromaDB=%s", sqlite_count, chroma_count)
        return {"sqlite": sqlite_count, "chroma": chroma_count}
