"""
Core context system module.

Contains the ContextMemorySystem class that wires the stores (SQLite +
ChromaDB), the embedder, the completion service and the audit sink, and
exposes memory, note and relationship operations plus prompt interception
and conversation compression.
"""

from pathlib import Path
from typing import Optional, List, Dict, Any
import logging
from logging.handlers import TimedRotatingFileHandler

# Third-party imports
import tiktoken

# Local imports
from .assembler import ContextAssembler
from .audit import (
    AuditSink,
    CONTEXT_COMPRESSED,
    MEMORY_CREATED,
    MEMORY_DELETED,
    MEMORY_UPDATED,
    NOTE_CREATED,
    RELATIONSHIP_CREATED,
    SESSION_ANALYZED,
)
from .completion import CompletionService
from .compression import CompressionEngine, SummaryStore, identify_critical, should_compress
from .config import (
    AUDIT_ENABLED,
    AUDIT_FLUSH_TIMEOUT_SECONDS,
    AUTO_DETECT_RELATIONSHIPS,
    COMPRESSION_TOKEN_THRESHOLD,
    DATA_FOLDER,
    RELATIONSHIP_MIN_STRENGTH,
    SESSION_SOURCE_TYPE,
    SYSTEM_PROMPT,
)
from .database import connect
from .embedder import Embedder, build_embedder
from .errors import (
    ContextSentryError,
    EmbeddingError,
    ExternalServiceDegraded,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from .interception import InterceptionService
from .llm_parsing import LLMFields
from .memory_store import ChromaMemoryBackend, MemoryStore, SQLiteMemoryBackend
from .models import (
    AuditEvent,
    CompressedResult,
    ImportanceLevel,
    InterceptResult,
    Memory,
    MemoryVersion,
    MemoryCategory,
    Message,
    Result,
    new_id,
    normalize_tags,
    utcnow,
)
from .note_store import NoteStore
from .relationship_graph import RelationshipDetector, RelationshipGraph
from .relevance import RelevanceGate
from .retrieval import RetrievalEngine
from .session_analysis import SessionAnalyzer, render_markdown


class ContextMemorySystem:
    """
    Context engine combining:
    1. SQLite for memories, notes, relationships, versions and summaries
    2. ChromaDB for tenant-scoped vector search
    3. A completion service for relevance, classification and summaries
    """

    def __init__(
        self,
        data_folder: Path = DATA_FOLDER,
        embedder: Optional[Embedder] = None,
        completion=None,
        enable_vector_index: bool = True,
        audit_enabled: bool = AUDIT_ENABLED,
        auto_detect_relationships: bool = AUTO_DETECT_RELATIONSHIPS,
    ):
        self.data_folder = Path(data_folder)
        self.db_folder = self.data_folder / "context_db"
        self.sqlite_path = self.db_folder / "context.db"
        self.audit_path = self.db_folder / "audit.db"
        self.db_folder.mkdir(parents=True, exist_ok=True)

        self.logger = None
        self.sqlite_conn = None
        self.tokenizer: Optional[object] = None
        self.auto_detect_relationships = auto_detect_relationships

        self._setup_logging()
        self._init_tokenizer()

        try:
            self.sqlite_conn = connect(self.sqlite_path)
            primary = SQLiteMemoryBackend(self.sqlite_conn)
            vector_index = (
                ChromaMemoryBackend(self.db_folder / "chroma_db")
                if enable_vector_index
                else None
            )
            self.memory_store = MemoryStore(primary, vector_index)
            self.graph = RelationshipGraph(
                self.sqlite_conn,
                memory_exists=lambda mid, tid: primary.find_by_id(mid, tid) is not None,
            )
            self.note_store = NoteStore(self.sqlite_conn)
            self.summary_store = SummaryStore(self.sqlite_conn)
            self.logger.info("Storage initialized at %s", self.db_folder)
        except Exception as e:
            self.logger.error("Failed to initialize storage: %s", e)
            raise

        self.embedder = embedder or build_embedder()
        self.completion = completion or CompletionService()
        self.audit = AuditSink(self.audit_path, enabled=audit_enabled)

        self.gate = RelevanceGate(self.completion)
        self.retrieval = RetrievalEngine(
            self.embedder, self.memory_store, self.note_store, self.graph
        )
        self.assembler = ContextAssembler()
        self.interception = InterceptionService(
            self.gate, self.retrieval, self.assembler, self.audit
        )
        self.compression = CompressionEngine(self.completion, self.summary_store)
        self.detector = RelationshipDetector(self.graph, self.memory_store, self.completion)
        self.session_analyzer = SessionAnalyzer(self.completion)

        self._integrity_check()

    def _setup_logging(self):
        """Setup logging for debugging and monitoring"""
        log_file = self.data_folder / "context_sentry.log"

        # Daily rotation, keep 30 days
        file_handler = TimedRotatingFileHandler(
            log_file, when="midnight", interval=1, backupCount=30, utc=False
        )
        file_handler.setLevel(logging.INFO)

        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging.WARNING)  # stdout is the MCP channel

        formatter = logging.Formatter("%(asctime)s - %(levelname)s - %(message)s")
        file_handler.setFormatter(formatter)
        console_handler.setFormatter(formatter)

        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s - %(levelname)s - %(message)s",
            handlers=[file_handler, console_handler],
        )

        self.logger = logging.getLogger(__name__)

    def _init_tokenizer(self):
        """Initialize tiktoken tokenizer for token counting"""
        try:
            self.tokenizer = tiktoken.get_encoding("cl100k_base")
            self.logger.info("Tiktoken tokenizer initialized successfully")
        except Exception as e:
            self.logger.error("Failed to load tiktoken tokenizer: %s", e)
            self.tokenizer = None

    def _count_tokens(self, text: str) -> int:
        """Count tokens in text using tiktoken"""
        try:
            if self.tokenizer:
                return len(self.tokenizer.encode(text))
            return int(len(text.split()) * 1.3)
        except Exception as e:
            self.logger.warning("Token counting failed, using estimation: %s", e)
            return int(len(text.split()) * 1.3)

    def _integrity_check(self):
        """Check SQLite page integrity and the SQLite/ChromaDB record counts"""
        try:
            ic_result = self.sqlite_conn.execute("PRAGMA integrity_check;").fetchone()
            if ic_result and ic_result[0] != "ok":
                self.logger.error("SQLite integrity_check FAILED: %s", ic_result[0])
            else:
                self.logger.info("SQLite integrity_check passed")
            self.memory_store.integrity_check()
        except Exception as e:
            self.logger.error("Integrity check failed: %s", e)

    def _audit(self, event_type: str, tenant_id: str, **fields):
        self.audit.record(AuditEvent(event_type=event_type, tenant_id=tenant_id, **fields))

    # ── Memories ────────────────────────────────────────────────────────────

    def _classify(self, content: str):
        """Ask the completion service for category, importance and summary."""
        prompt = f"""Analyze this development knowledge and classify it.

Content: "{content[:2000]}"

Return JSON:
{{
  "shouldRemember": true/false,
  "importance": "CRITICAL|IMPORTANT|MINOR",
  "category": "INSIGHT|DECISION|WARNING|KNOWLEDGE|ACTION|CONTEXT|REFERENCE",
  "summary": "one-line summary",
  "reasoning": "brief explanation"
}}"""
        category, importance, summary = MemoryCategory.INSIGHT, ImportanceLevel.MINOR, ""
        try:
            fields = LLMFields.from_text(
                self.completion.complete(SYSTEM_PROMPT, prompt, 500)
            )
        except ExternalServiceDegraded as e:
            self.logger.warning("Classification degraded, using defaults: %s", e)
            return category, importance, summary

        try:
            category = MemoryCategory.parse(fields.text("category", "INSIGHT"))
        except ValidationError:
            pass
        try:
            importance = ImportanceLevel.parse(fields.text("importance", "MINOR"))
        except ValidationError:
            pass
        return category, importance, fields.text("summary")

    def create_memory(
        self,
        content: str,
        tenant_id: str,
        summary: Optional[str] = None,
        category: Optional[str] = None,
        importance: Optional[str] = None,
        tags: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        code_example: Optional[str] = None,
        programming_language: Optional[str] = None,
        source_type: Optional[str] = None,
        source_reference: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> Result:
        """
        Store a new memory. Missing category or importance is filled in by
        the completion service (falling back to Insight/Minor).
        """
        try:
            if not content or not content.strip():
                return Result(success=False, reason="Content is required")
            if not tenant_id:
                return Result(success=False, reason="Tenant id is required")

            parsed_category = MemoryCategory.parse(category) if category else None
            parsed_importance = ImportanceLevel.parse(importance) if importance else None
            if parsed_category is None or parsed_importance is None:
                auto_category, auto_importance, auto_summary = self._classify(content)
                parsed_category = parsed_category or auto_category
                parsed_importance = parsed_importance or auto_importance
                summary = summary or auto_summary

            now = utcnow()
            memory = Memory(
                id=new_id("mem"),
                content=content,
                tenant_id=tenant_id,
                summary=(summary or content[:200]).strip(),
                category=parsed_category,
                importance=parsed_importance,
                tags=normalize_tags(tags),
                metadata=dict(metadata or {}),
                created_at=now,
                updated_at=now,
                source_type=source_type,
                source_reference=source_reference,
                created_by=created_by,
                code_example=code_example,
                programming_language=programming_language,
                token_count=self._count_tokens(content),
            )
            memory.embedding = self.embedder.embed(content)
            self.memory_store.save(memory)

            self.logger.info("Memory stored successfully: %s", memory.id)
            self._audit(MEMORY_CREATED, tenant_id, actor=created_by,
                        memories_accessed=[memory.id],
                        decision={"category": memory.category.value,
                                  "importance": memory.importance.value})

            if self.auto_detect_relationships:
                self._detect_quietly(memory)
            return Result(success=True, data=[memory.to_dict()])

        except ValidationError as e:
            return Result(success=False, reason=str(e))
        except (EmbeddingError, PersistenceError) as e:
            self.logger.error("Failed to store memory: %s", e)
            self.audit.record_error(tenant_id, "create_memory", e)
            return Result(success=False, reason=f"Storage error: {e}")
        except Exception as e:
            self.logger.error("Failed to store memory: %s", e)
            return Result(success=False, reason=f"Storage error: {str(e)}")

    def _detect_quietly(self, memory: Memory):
        try:
            for edge in self.detector.detect(memory):
                self._audit(RELATIONSHIP_CREATED, memory.tenant_id,
                            memories_accessed=[edge.from_id, edge.to_id],
                            decision=edge.to_dict())
        except Exception as e:
            self.logger.warning("Relationship detection failed for %s: %s", memory.id, e)

    def get_memory(self, memory_id: str, tenant_id: str) -> Result:
        """Fetch one memory and count the access."""
        try:
            memory = self.memory_store.find_by_id(memory_id, tenant_id)
            if memory is None:
                return Result(success=False, reason="Memory not found")
            self.memory_store.record_access(memory_id, tenant_id)
            memory.access_count += 1
            memory.last_accessed_at = utcnow()
            return Result(success=True, data=[memory.to_dict()])
        except Exception as e:
            self.logger.error("Failed to get memory: %s", e)
            return Result(success=False, reason=f"Read error: {str(e)}")

    def update_memory(
        self,
        memory_id: str,
        tenant_id: str,
        content: Optional[str] = None,
        summary: Optional[str] = None,
        category: Optional[str] = None,
        importance: Optional[str] = None,
        tags: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        code_example: Optional[str] = None,
        programming_language: Optional[str] = None,
        change_reason: Optional[str] = None,
        changed_by: Optional[str] = None,
        change_type: str = "UPDATE",
    ) -> Result:
        """
        Update a memory. The prior state is archived together with the new
        one, the version goes up by one, and the embedding is recomputed when
        the content changed.
        """
        try:
            memory = self.memory_store.find_by_id(memory_id, tenant_id)
            if memory is None:
                return Result(success=False, reason="Memory not found")

            changes = {}
            if content is not None and content != memory.content:
                if not content.strip():
                    return Result(success=False, reason="Content cannot be empty")
                changes["content"] = content
            if summary is not None and summary != memory.summary:
                changes["summary"] = summary
            if category is not None:
                parsed = MemoryCategory.parse(category)
                if parsed != memory.category:
                    changes["category"] = parsed
            if importance is not None:
                parsed = ImportanceLevel.parse(importance)
                if parsed != memory.importance:
                    changes["importance"] = parsed
            if tags is not None and normalize_tags(tags) != memory.tags:
                changes["tags"] = normalize_tags(tags)
            if metadata is not None and metadata != memory.metadata:
                changes["metadata"] = dict(metadata)
            if code_example is not None and code_example != memory.code_example:
                changes["code_example"] = code_example
            if (programming_language is not None
                    and programming_language != memory.programming_language):
                changes["programming_language"] = programming_language

            if not changes:
                return Result(success=True, data=[memory.to_dict()])

            # Embed before touching storage so a failure leaves no archive row
            embedding = None
            if "content" in changes:
                embedding = self.embedder.embed(changes["content"])

            previous = MemoryVersion.snapshot(
                memory, change_type=change_type, change_reason=change_reason,
                changed_by=changed_by,
            )
            for key, value in changes.items():
                setattr(memory, key, value)
            if embedding is not None:
                memory.embedding = embedding
                memory.token_count = self._count_tokens(memory.content)
            memory.version += 1
            memory.updated_at = utcnow()
            self.memory_store.save_new_version(previous, memory)

            self.logger.info("Memory updated successfully: %s (v%d)", memory_id, memory.version)
            self._audit(MEMORY_UPDATED, tenant_id, actor=changed_by,
                        memories_accessed=[memory_id],
                        decision={"fields": sorted(changes), "version": memory.version})
            return Result(success=True, data=[memory.to_dict()])

        except ValidationError as e:
            return Result(success=False, reason=str(e))
        except Exception as e:
            self.logger.error("Failed to update memory: %s", e)
            return Result(success=False, reason=f"Update error: {str(e)}")

    def delete_memory(self, memory_id: str, tenant_id: str) -> Result:
        """Soft delete: the row stays for history but leaves every query."""
        try:
            memory = self.memory_store.find_by_id(memory_id, tenant_id)
            if memory is None:
                return Result(success=False, reason="Memory not found")
            self.memory_store.delete(memory_id, tenant_id)
            self.logger.info("Memory deleted successfully: %s", memory_id)
            self._audit(MEMORY_DELETED, tenant_id, memories_accessed=[memory_id])
            return Result(success=True, data=[{"id": memory_id, "deleted": True}])
        except Exception as e:
            self.logger.error("Failed to delete memory: %s", e)
            return Result(success=False, reason=f"Delete error: {str(e)}")

    def record_feedback(self, memory_id: str, tenant_id: str, helpful: bool) -> Result:
        try:
            if self.memory_store.find_by_id(memory_id, tenant_id) is None:
                return Result(success=False, reason="Memory not found")
            self.memory_store.record_feedback(memory_id, tenant_id, helpful)
            memory = self.memory_store.find_by_id(memory_id, tenant_id)
            return Result(success=True, data=[memory.to_dict()])
        except Exception as e:
            self.logger.error("Failed to record feedback: %s", e)
            return Result(success=False, reason=f"Feedback error: {str(e)}")

    def search_memories(self, query: str, tenant_id: str, limit: int = 10) -> Result:
        """Vector search, falling back to full-text LIKE search."""
        if not query or not query.strip():
            return Result(success=False, reason="Query cannot be empty")
        results = []
        match_type = "semantic"
        try:
            vector = self.embedder.embed_query(query)
            for memory, score in self.memory_store.vector_search_scored(vector, limit, tenant_id):
                item = memory.to_dict()
                item["similarity"] = round(score, 4)
                results.append(item)
        except Exception as e:
            self.logger.warning("Semantic search failed, using text search: %s", e)

        try:
            if not results:
                match_type = "text"
                results = [m.to_dict() for m in self.memory_store.search_text(query, tenant_id, limit)]
        except Exception as e:
            self.logger.error("Text search failed: %s", e)
            return Result(success=False, reason=f"Search error: {str(e)}")

        for item in results:
            item["match_type"] = match_type
        self.logger.info("Search returned %d results (%s)", len(results), match_type)
        return Result(success=True, data=results)

    def memories_by_category(self, category: str, tenant_id: str, limit: int = 50) -> Result:
        try:
            parsed = MemoryCategory.parse(category)
            found = self.memory_store.find_by_category(parsed, tenant_id, limit)
            return Result(success=True, data=[m.to_dict() for m in found])
        except ValidationError as e:
            return Result(success=False, reason=str(e))

    def memories_by_importance(self, importance: str, tenant_id: str, limit: int = 50) -> Result:
        try:
            parsed = ImportanceLevel.parse(importance)
            found = self.memory_store.find_by_importance(parsed, tenant_id, limit)
            return Result(success=True, data=[m.to_dict() for m in found])
        except ValidationError as e:
            return Result(success=False, reason=str(e))

    def memories_by_tags(self, tags: List[str], tenant_id: str, limit: int = 50) -> Result:
        found = self.memory_store.find_by_tags(normalize_tags(tags), tenant_id, limit)
        return Result(success=True, data=[m.to_dict() for m in found])

    def memory_history(self, memory_id: str, tenant_id: str) -> Result:
        versions = self.memory_store.versions(memory_id, tenant_id)
        return Result(success=True, data=[v.to_dict() for v in versions])

    def rollback_memory(self, memory_id: str, version: int, tenant_id: str,
                        changed_by: Optional[str] = None) -> Result:
        """Restore the content of an archived version as a new version."""
        target = next(
            (v for v in self.memory_store.versions(memory_id, tenant_id) if v.version == version),
            None,
        )
        if target is None:
            return Result(success=False, reason=f"Version {version} not found")
        return self.update_memory(
            memory_id,
            tenant_id,
            content=target.content,
            summary=target.summary,
            category=target.category.name,
            importance=target.importance.name,
            tags=target.tags,
            metadata=target.metadata,
            code_example=target.code_example,
            change_reason=f"Rollback to version {version}",
            changed_by=changed_by,
            change_type="ROLLBACK",
        )

    _COMPARED_FIELDS = ("content", "summary", "category", "importance", "tags",
                        "metadata", "code_example")

    def compare_versions(self, memory_id: str, from_version: int, to_version: int,
                         tenant_id: str) -> Result:
        """
        Field-level diff between two versions of a memory. The live state
        counts as its current version number.
        """
        memory = self.memory_store.find_by_id(memory_id, tenant_id)
        if memory is None:
            return Result(success=False, reason="Memory not found")

        states = {v.version: v for v in self.memory_store.versions(memory_id, tenant_id)}
        states[memory.version] = MemoryVersion.snapshot(memory)
        missing = [v for v in (from_version, to_version) if v not in states]
        if missing:
            return Result(
                success=False,
                reason=f"Version(s) not found: {', '.join(str(v) for v in missing)}",
            )

        before = states[from_version].to_dict()
        after = states[to_version].to_dict()
        changes = {
            name: {"from": before[name], "to": after[name]}
            for name in self._COMPARED_FIELDS
            if before[name] != after[name]
        }
        return Result(success=True, data=[{
            "memory_id": memory_id,
            "from_version": from_version,
            "to_version": to_version,
            "changed_fields": sorted(changes),
            "changes": changes,
        }])

    # ── Hindsight notes ─────────────────────────────────────────────────────

    def record_hindsight_note(self, tenant_id: str, title: str, **fields) -> Result:
        """Create a note, or count a repeat occurrence of an existing one."""
        try:
            note = self.note_store.record_note(tenant_id, title, **fields)
            self._audit(NOTE_CREATED, tenant_id, session_id=fields.get("session_id"),
                        decision={"note_id": note.id,
                                  "occurrences": note.occurrence_count})
            return Result(success=True, data=[note.to_dict()])
        except ValidationError as e:
            return Result(success=False, reason=str(e))
        except Exception as e:
            self.logger.error("Failed to record note: %s", e)
            return Result(success=False, reason=f"Note error: {str(e)}")

    def record_prevention_success(self, note_id: str, tenant_id: str) -> Result:
        try:
            note = self.note_store.record_prevention_success(note_id, tenant_id)
            return Result(success=True, data=[note.to_dict()])
        except NotFoundError as e:
            return Result(success=False, reason=str(e))

    def search_notes(self, error_message: str, tenant_id: str,
                     error_type: Optional[str] = None) -> Result:
        notes = self.retrieval.search_hindsight_notes(error_message, error_type, tenant_id)
        return Result(success=True, data=[n.to_dict() for n in notes])

    def frequent_errors(self, tenant_id: str) -> Result:
        return Result(success=True, data=[n.to_dict() for n in self.note_store.frequent_errors(tenant_id)])

    def critical_errors(self, tenant_id: str) -> Result:
        return Result(success=True, data=[n.to_dict() for n in self.note_store.critical_errors(tenant_id)])

    # ── Relationships ───────────────────────────────────────────────────────

    def create_edge(self, from_id: str, to_id: str, rel_type: str, tenant_id: str) -> Result:
        try:
            edge = self.graph.create_edge(from_id, to_id, rel_type, tenant_id)
            if edge.frequency == 1:
                self._audit(RELATIONSHIP_CREATED, tenant_id,
                            memories_accessed=[from_id, to_id], decision=edge.to_dict())
            return Result(success=True, data=[edge.to_dict()])
        except ContextSentryError as e:
            return Result(success=False, reason=str(e))

    def neighbors(self, memory_id: str, tenant_id: str, min_strength: float = 0.0) -> Result:
        found = self.graph.neighbors(memory_id, tenant_id, min_strength)
        return Result(success=True, data=[
            {"memory_id": n.memory_id, "type": n.type.value, "strength": n.strength}
            for n in found
        ])

    def related_memories(self, memory_id: str, tenant_id: str,
                         min_strength: float = RELATIONSHIP_MIN_STRENGTH, depth: int = 1) -> Result:
        """Graph expansion from a memory, restricted to live memories."""
        try:
            if self.memory_store.find_by_id(memory_id, tenant_id) is None:
                return Result(success=False, reason="Memory not found")
            found = self.retrieval.related(memory_id, tenant_id, min_strength, depth)
            live = self.memory_store.primary.find_many([n.memory_id for n in found], tenant_id)
            return Result(success=True, data=[
                {
                    "memory_id": n.memory_id,
                    "type": n.type.value,
                    "strength": n.strength,
                    "summary": live[n.memory_id].summary,
                }
                for n in found
                if n.memory_id in live
            ])
        except Exception as e:
            self.logger.error("Related memory lookup failed: %s", e)
            return Result(success=False, reason=f"Graph error: {str(e)}")

    def delete_edge(self, from_id: str, to_id: str, tenant_id: str) -> Result:
        deleted = self.graph.delete_edge(from_id, to_id, tenant_id)
        if not deleted:
            return Result(success=False, reason="Relationship not found")
        return Result(success=True, data=[{"from_id": from_id, "to_id": to_id, "deleted": True}])

    def update_strength(self, edge_id: str, strength: float, tenant_id: str) -> Result:
        try:
            edge = self.graph.update_strength(edge_id, strength, tenant_id)
            return Result(success=True, data=[edge.to_dict()])
        except ContextSentryError as e:
            return Result(success=False, reason=str(e))

    def detect_relationships(self, memory_id: str, tenant_id: str) -> Result:
        memory = self.memory_store.find_by_id(memory_id, tenant_id)
        if memory is None:
            return Result(success=False, reason="Memory not found")
        edges = self.detector.detect(memory)
        return Result(success=True, data=[e.to_dict() for e in edges])

    # ── Interception & compression ──────────────────────────────────────────

    def intercept(self, prompt: str, session_id: Optional[str], tenant_id: str,
                  max_tokens: Optional[int] = None,
                  force_deep_analysis: bool = False) -> InterceptResult:
        return self.interception.intercept(
            prompt, session_id, tenant_id, max_tokens, force_deep_analysis
        )

    def compress(self, messages: List, token_threshold: Optional[int] = None,
                 session_id: Optional[str] = None,
                 tenant_id: Optional[str] = None) -> CompressedResult:
        result = self.compression.compress(messages, token_threshold, session_id, tenant_id)
        if result.compressed:
            self._audit(
                CONTEXT_COMPRESSED,
                tenant_id,
                session_id=session_id,
                decision={
                    "original_tokens": result.original_token_count,
                    "compressed_tokens": result.compressed_token_count,
                    "ratio": round(result.compression_ratio, 4),
                },
                llm_calls=1,
            )
        return result

    def should_compress(self, messages: List,
                        threshold: int = COMPRESSION_TOKEN_THRESHOLD) -> bool:
        return should_compress(messages, threshold)

    def identify_critical(self, messages: List,
                          keywords: Optional[List[str]] = None) -> List[Message]:
        return identify_critical(messages, keywords)

    def compression_history(self, session_id: str, tenant_id: str) -> Result:
        summaries = self.compression.summaries_for_session(session_id, tenant_id)
        return Result(success=True, data=[s.to_dict() for s in summaries])

    # ── Session analysis ────────────────────────────────────────────────────

    def analyze_session(self, messages, session_id: str, tenant_id: str,
                        include_failures: bool = True, persist: bool = True) -> Result:
        """
        Extract what a session taught. With ``persist``, decisions and
        insights become memories tagged ``session:<id>`` and failures become
        hindsight notes, so later prompts can retrieve them.
        """
        try:
            analysis = self.session_analyzer.analyze(
                messages, session_id, tenant_id, include_failures
            )
        except ValidationError as e:
            return Result(success=False, reason=str(e))
        except ExternalServiceDegraded as e:
            self.logger.warning("Session analysis degraded: %s", e)
            return Result(success=False, reason=f"Completion service unavailable: {e}")

        out = analysis.to_dict()
        out["memory_ids"], out["note_ids"] = [], []
        if persist:
            session_tag = f"session:{session_id}"
            drafts = [
                (d.to_content(), d.title, MemoryCategory.DECISION,
                 ImportanceLevel.IMPORTANT, [session_tag, "decision"])
                for d in analysis.decisions
            ] + [
                (i.content, i.content[:100], i.category, i.importance,
                 [session_tag, i.category.name.lower()])
                for i in analysis.insights
            ]
            for content, summary, category, importance, tags in drafts:
                res = self.create_memory(
                    content, tenant_id, summary=summary, category=category.name,
                    importance=importance.name, tags=tags,
                    source_type=SESSION_SOURCE_TYPE,
                    source_reference=f"Session: {session_id}",
                )
                if res.success:
                    out["memory_ids"].append(res.data[0]["id"])
                else:
                    self.logger.warning("Could not store session memory: %s", res.reason)

            for failure in analysis.failures:
                res = self.record_hindsight_note(
                    tenant_id,
                    f"Hindsight: {failure.error_type}",
                    error_type=failure.error_type,
                    error_message=failure.error_message or None,
                    error_context=failure.context or None,
                    resolution=failure.resolution or None,
                    lessons_learned=failure.lessons_learned or None,
                    prevention_strategy=failure.prevention_hint or None,
                    tags=[session_tag],
                    session_id=session_id,
                    auto_generated=True,
                )
                if res.success:
                    out["note_ids"].append(res.data[0]["id"])
                else:
                    self.logger.warning("Could not store session note: %s", res.reason)

        self._audit(SESSION_ANALYZED, tenant_id, session_id=session_id, llm_calls=1,
                    memories_accessed=out["memory_ids"],
                    decision={"decisions": len(analysis.decisions),
                              "insights": len(analysis.insights),
                              "failures": len(analysis.failures),
                              "persisted": persist})
        return Result(success=True, data=[out])

    def session_summary_markdown(self, session_id: str, tenant_id: str) -> Result:
        """Markdown digest of the memories, notes and compressions of a session."""
        try:
            memories = [
                m.to_dict()
                for m in self.memory_store.find_by_tags([f"session:{session_id}"], tenant_id)
            ]
            decisions = [m for m in memories if m["category"] == MemoryCategory.DECISION.value]
            insights = [m for m in memories if m["category"] != MemoryCategory.DECISION.value]
            notes = [n.to_dict() for n in self.note_store.find_by_session(session_id, tenant_id)]
            summaries = [
                s.to_dict()
                for s in self.compression.summaries_for_session(session_id, tenant_id)
            ]
        except Exception as e:
            self.logger.error("Failed to build session summary: %s", e)
            return Result(success=False, reason=f"Read error: {str(e)}")
        markdown = render_markdown(session_id, decisions, insights, notes, summaries)
        return Result(success=True, data=[{"session_id": session_id, "markdown": markdown}])

    # ── Maintenance ─────────────────────────────────────────────────────────

    def get_statistics(self, tenant_id: str) -> Result:
        try:
            stats = self.memory_store.statistics(tenant_id)
            stats["total_notes"] = self.note_store.count(tenant_id)
            stats["total_relationships"] = self.graph.count(tenant_id)
            stats["total_compressions"] = self.summary_store.count(tenant_id)
            stats["sqlite_size_mb"] = round(
                (self.sqlite_path.stat().st_size if self.sqlite_path.exists() else 0)
                / 1024 / 1024,
                2,
            )
            return Result(success=True, data=[stats])
        except Exception as e:
            self.logger.error("Failed to get statistics: %s", e)
            return Result(success=False, reason=f"Statistics error: {str(e)}")

    def recent_audit_events(self, tenant_id: str, limit: int = 50) -> Result:
        self.audit.flush(AUDIT_FLUSH_TIMEOUT_SECONDS)
        return Result(success=True, data=self.audit.recent(tenant_id, limit))

    def rebuild_vector_index(self, batch_size: int = 128) -> Result:
        """
        Rebuilds the ChromaDB vector index from all live SQLite memories,
        re-embedding them in parallel batches.
        """
        try:
            count = self.memory_store.rebuild_vector_index(self.embedder.embed_batch, batch_size)
            return Result(success=True, data=[{"reindexed": True, "count": count}])
        except Exception as e:
            self.logger.error("Reindex failed: %s", e)
            return Result(success=False, reason=str(e))

    def close(self):
        """Clean shutdown: drain the audit queue, checkpoint the WAL, close clients"""
        try:
            self.audit.close(AUDIT_FLUSH_TIMEOUT_SECONDS)
        except Exception as e:
            self.logger.warning("Audit shutdown failed: %s", e)

        if self.sqlite_conn is not None:
            try:
                with self.sqlite_conn.lock:
                    self.sqlite_conn.commit()
                    # TRUNCATE leaves no stale WAL behind for the next start
                    self.sqlite_conn.execute("PRAGMA wal_checkpoint(TRUNCATE);")
                    self.sqlite_conn.close()
            except Exception as e:
                self.logger.warning("SQLite shutdown failed: %s", e)
            self.sqlite_conn = None

        close_completion = getattr(self.completion, "close", None)
        if callable(close_completion):
            try:
                close_completion()
            except Exception as e:
                self.logger.warning("Completion client shutdown failed: %s", e)

        self.logger.info("Context system closed successfully")
