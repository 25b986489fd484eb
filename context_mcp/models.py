"""
Data models for the context engine.

Contains the enums, the dataclass records persisted by the stores, and the
result containers returned by interception, compression and the MCP tools.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any, NamedTuple
import math
import re
import uuid

from .errors import ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def normalize_tags(tags) -> List[str]:
    """Strip, drop blanks and de-duplicate while keeping first-seen order."""
    seen = []
    for tag in tags or []:
        tag = str(tag).strip()
        if tag and tag not in seen:
            seen.append(tag)
    return seen


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class MemoryCategory(Enum):
    """What kind of knowledge a memory holds."""

    INSIGHT = "Insight"
    DECISION = "Decision"
    WARNING = "Warning"
    KNOWLEDGE = "Knowledge"
    ACTION = "Action"
    CONTEXT = "Context"
    REFERENCE = "Reference"

    @classmethod
    def parse(cls, value) -> "MemoryCategory":
        if isinstance(value, cls):
            return value
        key = str(value or "").strip().upper().replace("-", "").replace(" ", "_")
        if key in cls.__members__:
            return cls[key]
        if key in _LEGACY_CATEGORIES:
            return _LEGACY_CATEGORIES[key]
        raise ValidationError(f"Unknown memory category: {value!r}")


# Categories used by older clients, folded onto the current set
_LEGACY_CATEGORIES = {
    "PATTERN": MemoryCategory.INSIGHT,
    "OPTIMIZATION": MemoryCategory.INSIGHT,
    "ANTIPATTERN": MemoryCategory.WARNING,
    "BUG": MemoryCategory.WARNING,
    "BUG_FIX": MemoryCategory.WARNING,
    "DOMAIN": MemoryCategory.KNOWLEDGE,
    "DOMAIN_KNOWLEDGE": MemoryCategory.KNOWLEDGE,
    "INTEGRATION": MemoryCategory.REFERENCE,
    "INTEGRATION_DETAIL": MemoryCategory.REFERENCE,
}


class ImportanceLevel(Enum):
    """How strongly a memory should weigh when building context."""

    CRITICAL = "Critical"
    IMPORTANT = "Important"
    MINOR = "Minor"

    @classmethod
    def parse(cls, value) -> "ImportanceLevel":
        if isinstance(value, cls):
            return value
        key = str(value or "").strip().upper()
        if key in cls.__members__:
            return cls[key]
        raise ValidationError(f"Unknown importance level: {value!r}")


class RelationshipType(Enum):
    USED_WITH = "USED_WITH"
    CONFLICTS_WITH = "CONFLICTS_WITH"
    SUPERSEDES = "SUPERSEDES"
    RELATED_TO = "RELATED_TO"
    REQUIRES = "REQUIRES"
    PART_OF = "PART_OF"

    @classmethod
    def parse(cls, value) -> "RelationshipType":
        if isinstance(value, cls):
            return value
        key = str(value or "").strip().upper().replace("-", "_").replace(" ", "_")
        if key in cls.__members__:
            return cls[key]
        raise ValidationError(f"Unknown relationship type: {value!r}")


class NoteSeverity(Enum):
    """Severity of a hindsight note. ``weight`` gives the ranking order."""

    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"

    @property
    def weight(self) -> int:
        return _SEVERITY_WEIGHT[self]

    @classmethod
    def parse(cls, value) -> "NoteSeverity":
        if isinstance(value, cls):
            return value
        key = str(value or "").strip().upper()
        if key in cls.__members__:
            return cls[key]
        raise ValidationError(f"Unknown note severity: {value!r}")


_SEVERITY_WEIGHT = {
    NoteSeverity.CRITICAL: 4,
    NoteSeverity.HIGH: 3,
    NoteSeverity.MEDIUM: 2,
    NoteSeverity.LOW: 1,
}


@dataclass
class Memory:
    """
    A unit of retrievable knowledge.

    Attributes:
        id (str): ``mem_`` followed by 12 hex characters.
        content (str): Full text.
        tenant_id (str): Owning tenant, never changes after creation.
        summary (str): One-line summary used in injected context.
        category (MemoryCategory)
        importance (ImportanceLevel)
        embedding (List[float]): Unit-normalized vector.
        tags (List[str]): Ordered, de-duplicated.
        version (int): Incremented by one on every content-affecting update.
        access_count / injection_count / helpful_count / not_helpful_count:
            Best-effort usage counters.
    """

    id: str
    content: str
    tenant_id: str
    summary: str = ""
    category: MemoryCategory = MemoryCategory.INSIGHT
    importance: ImportanceLevel = ImportanceLevel.MINOR
    embedding: List[float] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    version: int = 1
    access_count: int = 0
    injection_count: int = 0
    helpful_count: int = 0
    not_helpful_count: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    last_accessed_at: Optional[datetime] = None
    source_type: Optional[str] = None
    source_reference: Optional[str] = None
    created_by: Optional[str] = None
    code_example: Optional[str] = None
    programming_language: Optional[str] = None
    token_count: int = 0
    deleted_at: Optional[datetime] = None

    @property
    def helpfulness_rate(self) -> float:
        total = self.helpful_count + self.not_helpful_count
        if total == 0:
            return 0.0
        return self.helpful_count / total

    @property
    def relevance_score(self) -> float:
        # Unbounded above: the log terms keep growing with usage.
        usage = (math.log1p(self.access_count) + math.log1p(self.injection_count)) / 10
        return 0.3 * usage + 0.4 * self.helpfulness_rate

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def to_dict(self, include_embedding: bool = False) -> Dict[str, Any]:
        out = {
            "id": self.id,
            "content": self.content,
            "summary": self.summary,
            "category": self.category.value,
            "importance": self.importance.value,
            "tags": list(self.tags),
            "metadata": dict(self.metadata),
            "tenant_id": self.tenant_id,
            "version": self.version,
            "access_count": self.access_count,
            "injection_count": self.injection_count,
            "helpful_count": self.helpful_count,
            "not_helpful_count": self.not_helpful_count,
            "helpfulness_rate": self.helpfulness_rate,
            "relevance_score": self.relevance_score,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "last_accessed_at": _iso(self.last_accessed_at),
            "source_type": self.source_type,
            "source_reference": self.source_reference,
            "created_by": self.created_by,
            "code_example": self.code_example,
            "programming_language": self.programming_language,
            "token_count": self.token_count,
        }
        if include_embedding:
            out["embedding"] = list(self.embedding)
        return out


@dataclass
class MemoryVersion:
    """Snapshot of a memory taken right before it was changed."""

    memory_id: str
    version: int
    tenant_id: str
    content: str
    summary: str
    category: MemoryCategory
    importance: ImportanceLevel
    tags: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    code_example: Optional[str] = None
    change_type: str = "UPDATE"
    change_reason: Optional[str] = None
    changed_by: Optional[str] = None
    id: str = field(default_factory=lambda: new_id("ver"))
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def snapshot(
        cls,
        memory: Memory,
        change_type: str = "UPDATE",
        change_reason: Optional[str] = None,
        changed_by: Optional[str] = None,
    ) -> "MemoryVersion":
        return cls(
            memory_id=memory.id,
            version=memory.version,
            tenant_id=memory.tenant_id,
            content=memory.content,
            summary=memory.summary,
            category=memory.category,
            importance=memory.importance,
            tags=list(memory.tags),
            metadata=dict(memory.metadata),
            code_example=memory.code_example,
            change_type=change_type,
            change_reason=change_reason,
            changed_by=changed_by,
        )

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["category"] = self.category.value
        out["importance"] = self.importance.value
        out["created_at"] = _iso(self.created_at)
        return out


@dataclass
class MemoryRelationship:
    """
    Directed, typed, weighted edge between two memories of one tenant.

    At most one row exists per (from_id, to_id, tenant_id); creating it again
    bumps ``frequency`` and ``last_used_at`` instead.
    """

    from_id: str
    to_id: str
    type: RelationshipType
    tenant_id: str
    frequency: int = 1
    strength: float = 0.5
    id: str = field(default_factory=lambda: new_id("rel"))
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "from_id": self.from_id,
            "to_id": self.to_id,
            "type": self.type.value,
            "tenant_id": self.tenant_id,
            "frequency": self.frequency,
            "strength": self.strength,
            "created_at": _iso(self.created_at),
            "last_used_at": _iso(self.last_used_at),
        }


class Neighbor(NamedTuple):
    memory_id: str
    type: RelationshipType
    strength: float


@dataclass
class HindsightNote:
    """
    A documented failure and how it was resolved.

    ``error_pattern`` is a regular expression matched (full match) against
    future error messages. A blank or invalid pattern never matches.
    """

    tenant_id: str
    title: str
    error_type: Optional[str] = None
    error_message: Optional[str] = None
    error_pattern: Optional[str] = None
    error_context: Optional[str] = None
    severity: NoteSeverity = NoteSeverity.MEDIUM
    resolution: Optional[str] = None
    resolution_steps: List[str] = field(default_factory=list)
    lessons_learned: Optional[str] = None
    prevention_strategy: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    related_memory_ids: List[str] = field(default_factory=list)
    session_id: Optional[str] = None
    occurrence_count: int = 1
    reference_count: int = 0
    prevention_success_count: int = 0
    access_count: int = 0
    auto_generated: bool = False
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    last_occurrence_at: Optional[datetime] = None
    last_accessed_at: Optional[datetime] = None

    @property
    def prevention_effectiveness(self) -> float:
        if self.occurrence_count <= 0:
            return 0.0
        return self.prevention_success_count / self.occurrence_count

    @property
    def is_frequent(self) -> bool:
        return self.occurrence_count > 3

    @property
    def is_prevention_effective(self) -> bool:
        return self.prevention_effectiveness > 0.5

    def matches_error(self, message: Optional[str]) -> bool:
        if not self.error_pattern or not self.error_pattern.strip() or message is None:
            return False
        try:
            return re.fullmatch(self.error_pattern, message) is not None
        except re.error:
            return False

    def matches_error_type(self, error_type: Optional[str]) -> bool:
        if not self.error_type or not error_type:
            return False
        return self.error_type.lower() == error_type.lower()

    def record_occurrence(self) -> None:
        now = utcnow()
        self.occurrence_count += 1
        self.last_occurrence_at = now
        self.updated_at = now

    def record_reference(self) -> None:
        now = utcnow()
        self.reference_count += 1
        self.access_count += 1
        self.last_accessed_at = now

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["severity"] = self.severity.value
        for key in ("created_at", "updated_at", "last_occurrence_at", "last_accessed_at"):
            out[key] = _iso(getattr(self, key))
        out["prevention_effectiveness"] = self.prevention_effectiveness
        out["is_frequent"] = self.is_frequent
        return out


@dataclass
class Message:
    """One conversation message handed to the compression engine."""

    role: str
    content: str
    timestamp: Optional[int] = None
    is_summary: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        return cls(
            role=str(data.get("role") or "user"),
            content=str(data.get("content") or ""),
            timestamp=data.get("timestamp"),
            is_summary=bool(data.get("is_summary", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CriticalError:
    error_type: str = ""
    description: str = ""
    resolution: str = ""


@dataclass
class StructuredSummary:
    """Structured digest of a compressed conversation."""

    task_goal: str = ""
    key_decisions: List[str] = field(default_factory=list)
    open_todos: List[str] = field(default_factory=list)
    critical_errors: List[CriticalError] = field(default_factory=list)
    important_file_changes: List[str] = field(default_factory=list)
    additional_context: str = ""

    def is_empty(self) -> bool:
        return not (
            self.task_goal
            or self.key_decisions
            or self.open_todos
            or self.critical_errors
            or self.important_file_changes
            or self.additional_context
        )

    def to_text(self) -> str:
        """Render the summary as the message that replaces the old history."""
        lines = []
        if self.task_goal:
            lines.append(f"Goal: {self.task_goal}")
        if self.key_decisions:
            lines.append("Decisions:")
            lines.extend(f"- {d}" for d in self.key_decisions)
        if self.critical_errors:
            lines.append("Errors:")
            for err in self.critical_errors:
                line = f"- {err.error_type}: {err.description}".rstrip(": ")
                if err.resolution:
                    line += f" (resolved: {err.resolution})"
                lines.append(line)
        if self.open_todos:
            lines.append("TODOs:")
            lines.extend(f"- {t}" for t in self.open_todos)
        if self.important_file_changes:
            lines.append("Files:")
            lines.extend(f"- {f}" for f in self.important_file_changes)
        if self.additional_context:
            lines.append(f"Context: {self.additional_context}")
        return "\n".join(lines)


@dataclass
class ContextSummary:
    """
    Audit record of one compression event. Written once, never mutated.

    ``compression_ratio`` is ``compressed / original`` and never exceeds 1.0.
    """

    tenant_id: str
    session_id: str
    original_token_count: int
    compressed_token_count: int
    compression_ratio: float
    summary: str
    goals: List[str] = field(default_factory=list)
    decisions: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    todos: List[str] = field(default_factory=list)
    recent_window_size: int = 0
    model_used: Optional[str] = None
    compression_method: str = "LLM"
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)

    @property
    def token_savings(self) -> int:
        return self.original_token_count - self.compressed_token_count

    @property
    def percentage_reduction(self) -> float:
        if self.original_token_count == 0:
            return 0.0
        return self.token_savings / self.original_token_count * 100.0

    @property
    def is_effective(self) -> bool:
        return self.percentage_reduction > 25.0

    @property
    def is_target_achieved(self) -> bool:
        return self.compression_ratio < 0.5

    @property
    def information_preservation_score(self) -> int:
        if self.compression_ratio <= 0.3:
            return 95
        if self.compression_ratio <= 0.5:
            return 90
        if self.compression_ratio <= 0.7:
            return 75
        return 50

    def to_markdown(self) -> str:
        sections = [("Goal", self.goals), ("Decisions", self.decisions),
                    ("Errors", self.errors), ("TODOs", self.todos)]
        parts = []
        for title, items in sections:
            if items:
                parts.append(f"## {title}\n" + "\n".join(f"- {i}" for i in items))
        return "\n\n".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["created_at"] = _iso(self.created_at)
        out["token_savings"] = self.token_savings
        out["percentage_reduction"] = round(self.percentage_reduction, 2)
        out["is_effective"] = self.is_effective
        out["is_target_achieved"] = self.is_target_achieved
        return out


@dataclass
class CompressedResult:
    """Outcome of ``compress``. With ``compressed=False`` the messages are untouched."""

    compressed: bool
    original_message_count: int
    compressed_message_count: int
    original_token_count: int
    compressed_token_count: int
    compression_ratio: float
    summary: Optional[StructuredSummary] = None
    preserved_messages: List[Message] = field(default_factory=list)
    summary_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AuditEvent:
    """One recorded decision. Handed to the audit sink, never read back on the hot path."""

    event_type: str
    tenant_id: Optional[str] = None
    actor: Optional[str] = None
    session_id: Optional[str] = None
    user_request: Optional[str] = None
    decision: Dict[str, Any] = field(default_factory=dict)
    outcome: str = "success"
    latency_ms: Optional[int] = None
    llm_calls: int = 0
    memories_accessed: List[str] = field(default_factory=list)
    error_message: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class MemoryReference:
    id: str
    summary: str
    category: str
    importance: str
    relevance_score: float
    excerpt: str


@dataclass
class NoteReference:
    id: str
    title: str
    severity: str
    excerpt: str
    type: str = "HINDSIGHT"


@dataclass
class InterceptResult:
    """What ``intercept`` hands back to the caller."""

    enhanced: bool
    original_prompt: str
    enhanced_prompt: str
    context_injected: Optional[str] = None
    memories_used: List[MemoryReference] = field(default_factory=list)
    notes_used: List[NoteReference] = field(default_factory=list)
    latency_ms: int = 0
    reasoning: str = ""
    confidence: float = 0.0
    tokens_injected: int = 0
    llm_calls: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Result:
    """
    Standard result container for facade operations.

    Attributes:
        success (bool): Whether the operation succeeded.
        reason (str, optional): Explanation when the operation fails.
        data (list of dict, optional): Operation-specific payload.
    """

    success: bool
    reason: Optional[str] = None
    data: Optional[List[Dict]] = None
