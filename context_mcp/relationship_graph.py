"""
Relationship graph between memories.

Directed, typed, weighted edges stored in SQLite, one row per ordered pair
per tenant. Every statement is parameterized; ids and content are data only.
"""

from collections import deque
from typing import Optional, List, Callable
import logging
import sqlite3

from .config import (
    RELATIONSHIP_DEFAULT_STRENGTH,
    RELATIONSHIP_DETECTION_CANDIDATES,
    RELATIONSHIP_DETECTION_CONFIDENCE,
    SYSTEM_PROMPT,
)
from .database import SQLiteRepository, to_iso, parse_iso
from .errors import NotFoundError, ValidationError, ExternalServiceDegraded
from .llm_parsing import LLMFields
from .models import (
    Memory,
    MemoryRelationship,
    Neighbor,
    RelationshipType,
    utcnow,
)

logger = logging.getLogger(__name__)


class RelationshipGraph(SQLiteRepository):
    """
    Edge storage and traversal.

    ``memory_exists(memory_id, tenant_id)`` is supplied by the owner so that
    edges can only be created between memories the tenant actually has.
    """

    schema = """
        CREATE TABLE IF NOT EXISTS memory_relationships (
            id TEXT PRIMARY KEY,
            tenant_id TEXT NOT NULL,
            from_id TEXT NOT NULL,
            to_id TEXT NOT NULL,
            type TEXT NOT NULL,
            frequency INTEGER NOT NULL DEFAULT 1,
            strength REAL NOT NULL DEFAULT 0.5,
            created_at TEXT NOT NULL,
            last_used_at TEXT NOT NULL,
            UNIQUE (tenant_id, from_id, to_id)
        );

        CREATE INDEX IF NOT EXISTS idx_relationships_from
            ON memory_relationships(tenant_id, from_id);
        CREATE INDEX IF NOT EXISTS idx_relationships_to
            ON memory_relationships(tenant_id, to_id);
    """

    def __init__(self, conn: sqlite3.Connection,
                 memory_exists: Optional[Callable[[str, str], bool]] = None):
        super().__init__(conn)
        self._memory_exists = memory_exists

    @staticmethod
    def _row_to_edge(row: sqlite3.Row) -> MemoryRelationship:
        return MemoryRelationship(
            id=row["id"],
            tenant_id=row["tenant_id"],
            from_id=row["from_id"],
            to_id=row["to_id"],
            type=RelationshipType[row["type"]],
            frequency=row["frequency"],
            strength=row["strength"],
            created_at=parse_iso(row["created_at"]) or utcnow(),
            last_used_at=parse_iso(row["last_used_at"]) or utcnow(),
        )

    def _check_memory(self, memory_id: str, tenant_id: str) -> None:
        if self._memory_exists is not None and not self._memory_exists(memory_id, tenant_id):
            raise NotFoundError("Memory", memory_id)

    def find_edge(self, from_id: str, to_id: str, tenant_id: str) -> Optional[MemoryRelationship]:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM memory_relationships "
                "WHERE tenant_id = ? AND from_id = ? AND to_id = ?",
                (tenant_id, from_id, to_id),
            ).fetchone()
        return self._row_to_edge(row) if row else None

    def get_edge(self, edge_id: str, tenant_id: str) -> Optional[MemoryRelationship]:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM memory_relationships WHERE id = ? AND tenant_id = ?",
                (edge_id, tenant_id),
            ).fetchone()
        return self._row_to_edge(row) if row else None

    def create_edge(self, from_id: str, to_id: str, rel_type, tenant_id: str) -> MemoryRelationship:
        """
        Create the edge from_id -> to_id, or reinforce it if it already exists.

        Reinforcing bumps frequency and last_used_at; strength and type stay.
        """
        rel_type = RelationshipType.parse(rel_type)
        if from_id == to_id:
            raise ValidationError("A memory cannot be related to itself")
        self._check_memory(from_id, tenant_id)
        self._check_memory(to_id, tenant_id)

        edge = MemoryRelationship(
            from_id=from_id,
            to_id=to_id,
            type=rel_type,
            tenant_id=tenant_id,
            strength=RELATIONSHIP_DEFAULT_STRENGTH,
        )
        with self._lock:
            self.conn.execute(
                """
                INSERT INTO memory_relationships
                (id, tenant_id, from_id, to_id, type, frequency, strength,
                 created_at, last_used_at)
                VALUES (?, ?, ?, ?, ?, 1, ?, ?, ?)
                ON CONFLICT(tenant_id, from_id, to_id) DO UPDATE SET
                    frequency = frequency + 1,
                    last_used_at = excluded.last_used_at
                """,
                (
                    edge.id,
                    tenant_id,
                    from_id,
                    to_id,
                    rel_type.name,
                    edge.strength,
                    to_iso(edge.created_at),
                    to_iso(edge.last_used_at),
                ),
            )
            self.conn.commit()
            stored = self.find_edge(from_id, to_id, tenant_id)

        if stored.frequency == 1:
            logger.info("Relationship created: %s -[%s]-> %s", from_id, rel_type.name, to_id)
        else:
            logger.info(
                "Relationship %s -> %s reinforced (frequency=%d)",
                from_id,
                to_id,
                stored.frequency,
            )
        return stored

    def create_bidirectional(self, first_id: str, second_id: str, rel_type,
                             tenant_id: str) -> List[MemoryRelationship]:
        return [
            self.create_edge(first_id, second_id, rel_type, tenant_id),
            self.create_edge(second_id, first_id, rel_type, tenant_id),
        ]

    def outgoing(self, memory_id: str, tenant_id: str) -> List[MemoryRelationship]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM memory_relationships WHERE tenant_id = ? AND from_id = ? "
                "ORDER BY strength DESC, frequency DESC, to_id ASC",
                (tenant_id, memory_id),
            ).fetchall()
        return [self._row_to_edge(row) for row in rows]

    def incoming(self, memory_id: str, tenant_id: str) -> List[MemoryRelationship]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM memory_relationships WHERE tenant_id = ? AND to_id = ? "
                "ORDER BY strength DESC",
                (tenant_id, memory_id),
            ).fetchall()
        return [self._row_to_edge(row) for row in rows]

    def neighbors(self, memory_id: str, tenant_id: str,
                  min_strength: float = 0.0) -> List[Neighbor]:
        """Outgoing neighbors with strength >= min_strength, strongest first."""
        return [
            Neighbor(edge.to_id, edge.type, edge.strength)
            for edge in self.outgoing(memory_id, tenant_id)
            if edge.strength >= min_strength
        ]

    def expand(self, memory_id: str, tenant_id: str, min_strength: float = 0.0,
               depth: int = 1) -> List[Neighbor]:
        """
        Breadth-first expansion up to ``depth`` hops.

        Each id is reported once, at the first hop it is reached. The start id
        is never reported, so cycles terminate. Within a hop, results keep the
        strength-descending order of each node's neighbor list.
        """
        if depth < 1:
            return []
        visited = {memory_id}
        result: List[Neighbor] = []
        frontier = deque([memory_id])
        for _ in range(depth):
            next_frontier = deque()
            while frontier:
                current = frontier.popleft()
                for neighbor in self.neighbors(current, tenant_id, min_strength):
                    if neighbor.memory_id in visited:
                        continue
                    visited.add(neighbor.memory_id)
                    result.append(neighbor)
                    next_frontier.append(neighbor.memory_id)
            if not next_frontier:
                break
            frontier = next_frontier
        return result

    def delete_edge(self, from_id: str, to_id: str, tenant_id: str) -> bool:
        with self._lock:
            cursor = self.conn.execute(
                "DELETE FROM memory_relationships WHERE tenant_id = ? AND from_id = ? AND to_id = ?",
                (tenant_id, from_id, to_id),
            )
            self.conn.commit()
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Relationship deleted: %s -> %s", from_id, to_id)
        return deleted

    def delete_for_memory(self, memory_id: str, tenant_id: str) -> int:
        with self._lock:
            cursor = self.conn.execute(
                "DELETE FROM memory_relationships WHERE tenant_id = ? AND (from_id = ? OR to_id = ?)",
                (tenant_id, memory_id, memory_id),
            )
            self.conn.commit()
        return cursor.rowcount

    def update_strength(self, edge_id: str, strength: float, tenant_id: str) -> MemoryRelationship:
        """Set an edge's strength. Values outside [0, 1] are rejected, not clamped."""
        edge = self.get_edge(edge_id, tenant_id)
        if edge is None:
            raise NotFoundError("Relationship", edge_id)
        try:
            value = float(strength)
        except (TypeError, ValueError):
            raise ValidationError(f"Strength must be a number, got {strength!r}")
        if not 0.0 <= value <= 1.0:
            raise ValidationError(f"Strength must be between 0.0 and 1.0, got {value}")

        now = utcnow()
        with self._lock:
            self.conn.execute(
                "UPDATE memory_relationships SET strength = ?, last_used_at = ? "
                "WHERE id = ? AND tenant_id = ?",
                (value, to_iso(now), edge_id, tenant_id),
            )
            self.conn.commit()
        edge.strength = value
        edge.last_used_at = now
        return edge

    def count(self, tenant_id: str) -> int:
        with self._lock:
            return self.conn.execute(
                "SELECT COUNT(*) FROM memory_relationships WHERE tenant_id = ?",
                (tenant_id,),
            ).fetchone()[0]


class RelationshipDetector:
    """
    Suggests edges for a new memory by asking the completion service about
    its nearest neighbors. Edges are created only above a confidence bar.
    """

    def __init__(self, graph: RelationshipGraph, memory_store, completion,
                 candidates: int = RELATIONSHIP_DETECTION_CANDIDATES,
                 min_confidence: float = RELATIONSHIP_DETECTION_CONFIDENCE):
        self.graph = graph
        self.memory_store = memory_store
        self.completion = completion
        self.candidates = candidates
        self.min_confidence = min_confidence

    def _analyze(self, first: Memory, second: Memory) -> Optional[LLMFields]:
        prompt = f"""Analyze if these two pieces of development knowledge are related.

Memory 1: {first.content[:500]}

Memory 2: {second.content[:500]}

Return JSON:
{{
  "hasRelationship": true/false,
  "type": "USED_WITH|CONFLICTS_WITH|SUPERSEDES|RELATED_TO|REQUIRES|PART_OF",
  "confidence": 0.0-1.0,
  "reasoning": "brief explanation"
}}"""
        try:
            text = self.completion.complete(SYSTEM_PROMPT, prompt, 300)
        except ExternalServiceDegraded as e:
            logger.warning("Relationship analysis degraded: %s", e)
            return None
        return LLMFields.from_text(text)

    def detect(self, memory: Memory) -> List[MemoryRelationship]:
        if not memory.embedding:
            return []
        created = []
        similar = self.memory_store.vector_search(
            memory.embedding, self.candidates + 1, memory.tenant_id
        )
        for other in similar:
            if other.id == memory.id:
                continue
            fields = self._analyze(memory, other)
            if fields is None or not fields.flag("hasRelationship"):
                continue
            confidence = fields.number("confidence", 0.0)
            if confidence < self.min_confidence:
                continue
            try:
                rel_type = RelationshipType.parse(fields.text("type"))
            except ValidationError:
                rel_type = RelationshipType.RELATED_TO
            created.append(
                self.graph.create_edge(memory.id, other.id, rel_type, memory.tenant_id)
            )
        if created:
            logger.info("Detected %d relationships for %s", len(created), memory.id)
        return created
