"""
Retrieval and ranking.

Given a prompt, finds the tenant's nearest important memories and the
hindsight notes that describe the failure the prompt talks about, ranks the
notes by severity, recency and use, and caps both lists. Graph expansion for
explicit "related" requests lives here too.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional
import logging
import re

from .config import (
    RETRIEVAL_TOP_K,
    RETRIEVAL_MAX_MEMORIES,
    RETRIEVAL_MAX_NOTES,
    ERROR_KEYWORDS,
)
from .models import HindsightNote, ImportanceLevel, Memory, Neighbor

logger = logging.getLogger(__name__)

INJECTABLE_IMPORTANCE = (ImportanceLevel.CRITICAL, ImportanceLevel.IMPORTANT)

# First match wins
_ERROR_TYPE_RULES = (
    (re.compile(r"null\s?pointer"), "NullPointerException"),
    (re.compile(r"timeout|timed out"), "TimeoutException"),
    (re.compile(r"\bsql|database"), "SQLException"),
    (re.compile(r"\bio\b|i/o|ioexception"), "IOException"),
    (re.compile(r"runtime"), "RuntimeException"),
)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def has_error_keywords(prompt: str) -> bool:
    lowered = (prompt or "").lower()
    return any(keyword in lowered for keyword in ERROR_KEYWORDS)


def infer_error_type(prompt: Optional[str]) -> str:
    lowered = (prompt or "").lower()
    for pattern, error_type in _ERROR_TYPE_RULES:
        if pattern.search(lowered):
            return error_type
    return "UNKNOWN"


def rank_notes(notes: List[HindsightNote]) -> List[HindsightNote]:
    """Severity first (Critical > High > Medium > Low), then most recent
    occurrence (missing last), then most accessed."""
    return sorted(
        notes,
        key=lambda n: (
            -n.severity.weight,
            n.last_occurrence_at is None,
            -(n.last_occurrence_at or _EPOCH).timestamp(),
            -n.access_count,
        ),
    )


@dataclass
class RetrievalResult:
    memories: List[Memory] = field(default_factory=list)
    notes: List[HindsightNote] = field(default_factory=list)
    similarities: Dict[str, float] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.memories and not self.notes


class RetrievalEngine:
    def __init__(self, embedder, memory_store, note_store, graph,
                 top_k: int = RETRIEVAL_TOP_K,
                 max_memories: int = RETRIEVAL_MAX_MEMORIES,
                 max_notes: int = RETRIEVAL_MAX_NOTES):
        self.embedder = embedder
        self.memory_store = memory_store
        self.note_store = note_store
        self.graph = graph
        self.top_k = top_k
        self.max_memories = max_memories
        self.max_notes = max_notes

    def search_memories(self, prompt: str, tenant_id: str,
                        top_k: Optional[int] = None) -> List[tuple]:
        """Nearest Critical/Important memories as (memory, similarity) pairs."""
        vector = self.embedder.embed_query(prompt)
        hits = self.memory_store.vector_search_scored(
            vector, top_k or self.top_k, tenant_id
        )
        selected = [
            (memory, score) for memory, score in hits
            if memory.importance in INJECTABLE_IMPORTANCE
        ]
        return selected[: self.max_memories]

    def search_hindsight_notes(self, error_message: str, error_type: Optional[str],
                               tenant_id: str) -> List[HindsightNote]:
        """Pattern match first, error type second; ranked."""
        notes = self.note_store.find_by_tenant(tenant_id)
        matched = [n for n in notes if n.matches_error(error_message)]
        if not matched and error_type:
            matched = [n for n in notes if n.matches_error_type(error_type)]
        return rank_notes(matched)

    def relevant_notes(self, query: str, tenant_id: str, limit: int) -> List[HindsightNote]:
        """Notes whose title or message contains any word of the query."""
        keywords = [k for k in (query or "").lower().split() if len(k) >= 3]
        if not keywords:
            return []
        found = []
        for note in self.note_store.find_by_tenant(tenant_id):
            combined = f"{(note.title or '').lower()} {(note.error_message or '').lower()}"
            if any(keyword in combined for keyword in keywords):
                found.append(note)
                if len(found) >= limit:
                    break
        return found

    def retrieve(self, prompt: str, tenant_id: str, top_k: Optional[int] = None) -> RetrievalResult:
        scored = self.search_memories(prompt, tenant_id, top_k)
        memories = [memory for memory, _ in scored]

        notes: List[HindsightNote] = []
        if has_error_keywords(prompt):
            notes = self.search_hindsight_notes(prompt, infer_error_type(prompt), tenant_id)

        if not memories or not notes:
            seen = {n.id for n in notes}
            for note in self.relevant_notes(prompt, tenant_id, self.max_notes):
                if note.id not in seen:
                    notes.append(note)
                    seen.add(note.id)

        notes = rank_notes(notes)[: self.max_notes]
        logger.info(
            "Retrieved %d memories and %d notes for tenant %s",
            len(memories),
            len(notes),
            tenant_id,
        )
        return RetrievalResult(
            memories=memories,
            notes=notes,
            similarities={memory.id: score for memory, score in scored},
        )

    def mark_injected(self, memories: List[Memory], notes: List[HindsightNote],
                      tenant_id: str) -> None:
        """Usage counters for what actually went into a prompt. Best effort."""
        for memory in memories:
            try:
                self.memory_store.record_injection(memory.id, tenant_id)
            except Exception as e:
                logger.warning("Could not count injection of %s: %s", memory.id, e)
        for note in notes:
            try:
                self.note_store.record_reference(note)
            except Exception as e:
                logger.warning("Could not count reference to note %s: %s", note.id, e)

    def related(self, memory_id: str, tenant_id: str, min_strength: float = 0.0,
                depth: int = 1) -> List[Neighbor]:
        return self.graph.expand(memory_id, tenant_id, min_strength, depth)
