"""
Conversation compression.

When a message history grows past the token threshold, the completion
service condenses it into a structured summary and the last few messages are
kept verbatim. Any failure leaves the history untouched: the caller gets
``compressed=False`` and the original messages back.
"""

from typing import Iterable, List, Optional, Sequence
import logging
import sqlite3

from .config import (
    CHARS_PER_TOKEN,
    COMPRESSION_TOKEN_THRESHOLD,
    COMPRESSION_RECENT_WINDOW,
    COMPRESSION_MESSAGE_PREVIEW_CHARS,
    COMPRESSION_MAX_TOKENS,
    SYSTEM_PROMPT,
)
from .database import SQLiteRepository, to_iso, parse_iso, dumps, loads
from .errors import ExternalServiceDegraded
from .llm_parsing import LLMFields, text_lines
from .models import (
    CompressedResult,
    ContextSummary,
    CriticalError,
    Message,
    StructuredSummary,
    utcnow,
)

logger = logging.getLogger(__name__)

CRITICAL_ROLES = ("error", "system")


def as_messages(messages: Iterable) -> List[Message]:
    return [m if isinstance(m, Message) else Message.from_dict(m) for m in messages or []]


def estimate_tokens(messages: Sequence[Message]) -> int:
    """Total characters of all contents divided by four."""
    return sum(len(m.content or "") for m in messages) // CHARS_PER_TOKEN


def should_compress(messages, threshold: int = COMPRESSION_TOKEN_THRESHOLD) -> bool:
    """True when the estimate reaches the threshold (at the threshold counts)."""
    return estimate_tokens(as_messages(messages)) >= threshold


def identify_critical(messages, keywords: Optional[Sequence[str]] = None) -> List[Message]:
    """
    Messages with role error/system, or whose content contains any keyword
    (case-insensitive). Input order is kept.
    """
    lowered = [k.lower() for k in (keywords or []) if k]
    out = []
    for message in as_messages(messages):
        if (message.role or "").lower() in CRITICAL_ROLES:
            out.append(message)
            continue
        content = (message.content or "").lower()
        if any(keyword in content for keyword in lowered):
            out.append(message)
    return out


class SummaryStore(SQLiteRepository):
    """Archive of compression events."""

    schema = """
        CREATE TABLE IF NOT EXISTS context_summaries (
            id TEXT PRIMARY KEY,
            tenant_id TEXT NOT NULL,
            session_id TEXT NOT NULL,
            original_token_count INTEGER NOT NULL,
            compressed_token_count INTEGER NOT NULL,
            compression_ratio REAL NOT NULL,
            summary TEXT,
            goals TEXT,
            decisions TEXT,
            errors TEXT,
            todos TEXT,
            recent_window_size INTEGER,
            model_used TEXT,
            compression_method TEXT,
            created_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_summaries_session
            ON context_summaries(tenant_id, session_id);
    """

    def save(self, summary: ContextSummary) -> ContextSummary:
        with self._lock:
            self.conn.execute(
                """
                INSERT INTO context_summaries
                (id, tenant_id, session_id, original_token_count,
                 compressed_token_count, compression_ratio, summary, goals,
                 decisions, errors, todos, recent_window_size, model_used,
                 compression_method, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    summary.id,
                    summary.tenant_id,
                    summary.session_id,
                    summary.original_token_count,
                    summary.compressed_token_count,
                    summary.compression_ratio,
                    summary.summary,
                    dumps(summary.goals),
                    dumps(summary.decisions),
                    dumps(summary.errors),
                    dumps(summary.todos),
                    summary.recent_window_size,
                    summary.model_used,
                    summary.compression_method,
                    to_iso(summary.created_at),
                ),
            )
            self.conn.commit()
        return summary

    def for_session(self, session_id: str, tenant_id: str) -> List[ContextSummary]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM context_summaries WHERE tenant_id = ? AND session_id = ? "
                "ORDER BY created_at DESC",
                (tenant_id, session_id),
            ).fetchall()
        return [self._row_to_summary(row) for row in rows]

    @staticmethod
    def _row_to_summary(row: sqlite3.Row) -> ContextSummary:
        return ContextSummary(
            id=row["id"],
            tenant_id=row["tenant_id"],
            session_id=row["session_id"],
            original_token_count=row["original_token_count"],
            compressed_token_count=row["compressed_token_count"],
            compression_ratio=row["compression_ratio"],
            summary=row["summary"] or "",
            goals=loads(row["goals"], []),
            decisions=loads(row["decisions"], []),
            errors=loads(row["errors"], []),
            todos=loads(row["todos"], []),
            recent_window_size=row["recent_window_size"] or 0,
            model_used=row["model_used"],
            compression_method=row["compression_method"] or "LLM",
            created_at=parse_iso(row["created_at"]) or utcnow(),
        )

    def count(self, tenant_id: str) -> int:
        with self._lock:
            return self.conn.execute(
                "SELECT COUNT(*) FROM context_summaries WHERE tenant_id = ?", (tenant_id,)
            ).fetchone()[0]


class CompressionEngine:
    def __init__(self, completion, summary_store: Optional[SummaryStore] = None,
                 default_threshold: int = COMPRESSION_TOKEN_THRESHOLD,
                 recent_window: int = COMPRESSION_RECENT_WINDOW):
        self.completion = completion
        self.summary_store = summary_store
        self.default_threshold = default_threshold
        self.recent_window = recent_window

    def tail_size(self, message_count: int) -> int:
        return min(self.recent_window, message_count // 3)

    def _build_prompt(self, messages: List[Message], target_tokens: int, keep: int) -> str:
        lines = [
            f"Compress this conversation history to fit within {target_tokens} tokens.",
            "",
            "PRESERVE:",
            "- Task goals and objectives",
            "- Key decisions made (with rationale)",
            "- Critical errors and their resolutions",
            "- Open TODOs and next steps",
            "- Important file changes",
            "",
            "OMIT:",
            "- Redundant tool outputs",
            "- Verbose logs",
            "- Intermediate failed attempts",
            "",
            "Conversation:",
        ]
        for message in messages:
            content = message.content or ""
            if len(content) > COMPRESSION_MESSAGE_PREVIEW_CHARS:
                content = content[:COMPRESSION_MESSAGE_PREVIEW_CHARS] + "..."
            lines.append(f"[{message.role}]: {content}")
        lines += [
            "",
            f"The last {keep} messages are kept verbatim; summarize everything else.",
            "Return JSON:",
            "{",
            '  "taskGoal": "...",',
            '  "keyDecisions": ["..."],',
            '  "openTodos": ["..."],',
            '  "criticalErrors": [{"errorType": "...", "description": "...", "resolution": "..."}],',
            '  "importantFileChanges": ["..."],',
            '  "additionalContext": "..."',
            "}",
        ]
        return "\n".join(lines)

    @staticmethod
    def parse_summary(text: str) -> StructuredSummary:
        """Every field defaults on its own; non-JSON text becomes context lines."""
        fields = LLMFields.from_text(text)
        if not fields.parsed:
            return StructuredSummary(additional_context="\n".join(text_lines(text)))
        errors = [
            CriticalError(
                error_type=str(item.get("errorType") or ""),
                description=str(item.get("description") or ""),
                resolution=str(item.get("resolution") or ""),
            )
            for item in fields.records("criticalErrors")
        ]
        return StructuredSummary(
            task_goal=fields.text("taskGoal"),
            key_decisions=fields.items("keyDecisions"),
            open_todos=fields.items("openTodos"),
            critical_errors=errors,
            important_file_changes=fields.items("importantFileChanges"),
            additional_context=fields.text("additionalContext"),
        )

    @staticmethod
    def _unchanged(messages: List[Message], tokens: int) -> CompressedResult:
        return CompressedResult(
            compressed=False,
            original_message_count=len(messages),
            compressed_message_count=len(messages),
            original_token_count=tokens,
            compressed_token_count=tokens,
            compression_ratio=1.0,
            summary=None,
            preserved_messages=list(messages),
        )

    def compress(self, messages, token_threshold: Optional[int] = None,
                 session_id: Optional[str] = None,
                 tenant_id: Optional[str] = None) -> CompressedResult:
        messages = as_messages(messages)
        threshold = token_threshold if token_threshold is not None else self.default_threshold
        original_tokens = estimate_tokens(messages)

        if not messages or original_tokens < threshold:
            return self._unchanged(messages, original_tokens)

        keep = self.tail_size(len(messages))
        prompt = self._build_prompt(messages, threshold, keep)
        try:
            text = self.completion.complete(SYSTEM_PROMPT, prompt, COMPRESSION_MAX_TOKENS)
        except ExternalServiceDegraded as e:
            logger.warning("Compression skipped, summarization degraded: %s", e)
            return self._unchanged(messages, original_tokens)

        summary = self.parse_summary(text)
        if summary.is_empty():
            logger.warning("Compression skipped, summary came back empty")
            return self._unchanged(messages, original_tokens)

        tail = messages[len(messages) - keep:] if keep else []
        summary_message = Message(role="system", content=summary.to_text(), is_summary=True)
        preserved = [summary_message] + tail
        compressed_tokens = estimate_tokens(preserved)
        if compressed_tokens >= original_tokens:
            logger.info(
                "Compression skipped, summary (%d tokens) is not smaller than history (%d)",
                compressed_tokens,
                original_tokens,
            )
            return self._unchanged(messages, original_tokens)

        ratio = compressed_tokens / original_tokens if original_tokens else 1.0
        result = CompressedResult(
            compressed=True,
            original_message_count=len(messages),
            compressed_message_count=len(preserved),
            original_token_count=original_tokens,
            compressed_token_count=compressed_tokens,
            compression_ratio=ratio,
            summary=summary,
            preserved_messages=preserved,
        )
        logger.info(
            "Compressed %d messages: %d -> %d tokens (ratio %.2f)",
            len(messages),
            original_tokens,
            compressed_tokens,
            ratio,
        )

        if session_id and tenant_id:
            result.summary_id = self._archive(result, session_id, tenant_id, keep)
        return result

    def _archive(self, result: CompressedResult, session_id: str, tenant_id: str,
                 keep: int) -> Optional[str]:
        if self.summary_store is None:
            return None
        summary = result.summary
        record = ContextSummary(
            tenant_id=tenant_id,
            session_id=session_id,
            original_token_count=result.original_token_count,
            compressed_token_count=result.compressed_token_count,
            compression_ratio=result.compression_ratio,
            summary=summary.to_text(),
            goals=[summary.task_goal] if summary.task_goal else [],
            decisions=list(summary.key_decisions),
            errors=[
                f"{e.error_type}: {e.description}".strip(": ")
                for e in summary.critical_errors
            ],
            todos=list(summary.open_todos),
            recent_window_size=keep,
            model_used=getattr(self.completion, "model", None),
        )
        try:
            self.summary_store.save(record)
        except Exception as e:
            logger.error("Failed to save compression summary for %s: %s", session_id, e)
            return None
        return record.id

    def summaries_for_session(self, session_id: str, tenant_id: str) -> List[ContextSummary]:
        if self.summary_store is None:
            return []
        return self.summary_store.for_session(session_id, tenant_id)
