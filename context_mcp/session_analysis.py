"""
Session analysis: turn a finished conversation into durable knowledge.

One completion call reads the session and returns the decisions taken, the
insights worth keeping and the failures hit along the way. This module only
extracts; the memory system decides what gets persisted.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List
import logging

from .compression import as_messages
from .config import (
    SESSION_ANALYSIS_MAX_TOKENS,
    SESSION_MAX_INSIGHTS,
    SESSION_MESSAGE_PREVIEW_CHARS,
    SYSTEM_PROMPT,
)
from .errors import ValidationError
from .llm_parsing import LLMFields
from .models import ImportanceLevel, MemoryCategory, utcnow

logger = logging.getLogger(__name__)


@dataclass
class SessionDecision:
    title: str
    description: str = ""
    rationale: str = ""
    context: str = ""

    def to_content(self) -> str:
        lines = [self.title]
        if self.description:
            lines.append(self.description)
        if self.rationale:
            lines.append(f"Rationale: {self.rationale}")
        if self.context:
            lines.append(f"Context: {self.context}")
        return "\n".join(lines)


@dataclass
class SessionInsight:
    content: str
    category: MemoryCategory = MemoryCategory.INSIGHT
    importance: ImportanceLevel = ImportanceLevel.IMPORTANT
    related_to: str = ""


@dataclass
class SessionFailure:
    error_type: str
    error_message: str = ""
    context: str = ""
    resolution: str = ""
    lessons_learned: str = ""
    prevention_hint: str = ""


@dataclass
class SessionAnalysis:
    session_id: str
    tenant_id: str
    decisions: List[SessionDecision] = field(default_factory=list)
    insights: List[SessionInsight] = field(default_factory=list)
    failures: List[SessionFailure] = field(default_factory=list)
    analyzed_at: datetime = field(default_factory=utcnow)

    def is_empty(self) -> bool:
        return not (self.decisions or self.insights or self.failures)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "tenant_id": self.tenant_id,
            "analyzed_at": self.analyzed_at.isoformat(),
            "total_decisions": len(self.decisions),
            "total_insights": len(self.insights),
            "total_failures": len(self.failures),
            "decisions": [asdict(d) for d in self.decisions],
            "insights": [
                {
                    "content": i.content,
                    "category": i.category.value,
                    "importance": i.importance.value,
                    "related_to": i.related_to,
                }
                for i in self.insights
            ],
            "failures": [asdict(f) for f in self.failures],
        }


def _category(value) -> MemoryCategory:
    try:
        return MemoryCategory.parse(value)
    except ValidationError:
        return MemoryCategory.INSIGHT


def _importance(value) -> ImportanceLevel:
    # Models answer on a HIGH/MEDIUM/LOW scale as often as on ours
    scale = {"HIGH": "CRITICAL", "MEDIUM": "IMPORTANT", "LOW": "MINOR"}
    key = str(value or "").strip().upper()
    try:
        return ImportanceLevel.parse(scale.get(key, key))
    except ValidationError:
        return ImportanceLevel.IMPORTANT


def _text(item: Dict[str, Any], key: str) -> str:
    value = item.get(key)
    if value is None or isinstance(value, (dict, list)):
        return ""
    return str(value).strip()


class SessionAnalyzer:
    def __init__(self, completion, max_insights: int = SESSION_MAX_INSIGHTS):
        self.completion = completion
        self.max_insights = max_insights

    def _build_prompt(self, messages, include_failures: bool) -> str:
        lines = [
            "Analyze this agent session and extract:",
            "1. Key decisions made (what, why, context)",
            "2. Insights and patterns (category, content, importance)",
        ]
        if include_failures:
            lines.append("3. Failures and errors (type, message, resolution, prevention)")
        lines += ["", "Session Activity:"]
        for message in messages:
            content = message.content or ""
            if len(content) > SESSION_MESSAGE_PREVIEW_CHARS:
                content = content[:SESSION_MESSAGE_PREVIEW_CHARS] + "..."
            lines.append(f"- [{message.role}] {content}")
        lines += [
            "",
            "Return JSON:",
            "{",
            '  "decisions": [{"title": "...", "description": "...", "rationale": "...", "context": "..."}],',
            '  "insights": [{"category": "INSIGHT|WARNING|KNOWLEDGE|...", "content": "...",'
            ' "importance": "CRITICAL|IMPORTANT|MINOR", "relatedTo": "..."}],',
            '  "failures": [{"errorType": "...", "errorMessage": "...", "context": "...",'
            ' "resolution": "...", "lessonsLearned": "...", "preventionHint": "..."}]',
            "}",
        ]
        return "\n".join(lines)

    def parse_analysis(self, text: str, session_id: str, tenant_id: str,
                       include_failures: bool = True) -> SessionAnalysis:
        """Entries missing their key field are skipped; other fields default."""
        fields = LLMFields.from_text(text)
        analysis = SessionAnalysis(session_id=session_id, tenant_id=tenant_id)
        if not fields.parsed:
            return analysis

        for item in fields.records("decisions"):
            title = _text(item, "title") or _text(item, "description")
            if title:
                analysis.decisions.append(SessionDecision(
                    title=title,
                    description=_text(item, "description") if _text(item, "title") else "",
                    rationale=_text(item, "rationale"),
                    context=_text(item, "context"),
                ))

        for item in fields.records("insights"):
            content = _text(item, "content")
            if content:
                analysis.insights.append(SessionInsight(
                    content=content,
                    category=_category(item.get("category")),
                    importance=_importance(item.get("importance")),
                    related_to=_text(item, "relatedTo"),
                ))
        analysis.insights = analysis.insights[:self.max_insights]

        if include_failures:
            for item in fields.records("failures"):
                error_type = _text(item, "errorType")
                error_message = _text(item, "errorMessage")
                if error_type or error_message:
                    analysis.failures.append(SessionFailure(
                        error_type=error_type or "UnknownError",
                        error_message=error_message,
                        context=_text(item, "context"),
                        resolution=_text(item, "resolution"),
                        lessons_learned=_text(item, "lessonsLearned"),
                        prevention_hint=_text(item, "preventionHint"),
                    ))
        return analysis

    def analyze(self, messages, session_id: str, tenant_id: str,
                include_failures: bool = True) -> SessionAnalysis:
        """
        Extract decisions, insights and failures from a session.

        Raises ValidationError for an empty session and lets
        ExternalServiceDegraded through, since without the completion
        service there is nothing to extract.
        """
        messages = as_messages(messages)
        if not session_id or not session_id.strip():
            raise ValidationError("Session id is required")
        if not any((m.content or "").strip() for m in messages):
            raise ValidationError("Session has no messages to analyze")

        prompt = self._build_prompt(messages, include_failures)
        text = self.completion.complete(SYSTEM_PROMPT, prompt, SESSION_ANALYSIS_MAX_TOKENS)
        analysis = self.parse_analysis(text, session_id, tenant_id, include_failures)
        logger.info(
            "Session %s analyzed: %d decisions, %d insights, %d failures",
            session_id,
            len(analysis.decisions),
            len(analysis.insights),
            len(analysis.failures),
        )
        return analysis


def render_markdown(session_id: str, decisions: List[Dict[str, Any]],
                    insights: List[Dict[str, Any]], notes: List[Dict[str, Any]],
                    summaries: List[Dict[str, Any]]) -> str:
    """Markdown digest of what a session left behind in the stores."""
    lines = [f"# Session {session_id}", "", "## Overview", ""]
    lines.append(
        f"{len(decisions)} decisions, {len(insights)} insights, "
        f"{len(notes)} failures recorded, {len(summaries)} compressions."
    )

    lines += ["", "## Key Decisions", ""]
    lines += [f"- {d.get('summary') or d.get('content')}" for d in decisions] or ["- None"]

    lines += ["", "## Insights", ""]
    lines += [
        f"- **{i.get('category')}** ({i.get('importance')}): {i.get('summary') or i.get('content')}"
        for i in insights
    ] or ["- None"]

    lines += ["", "## Failures & Learnings", ""]
    if not notes:
        lines.append("- None")
    for note in notes:
        heading = note.get("error_type") or note.get("title")
        lines.append(f"### {heading}: {note.get('error_message') or note.get('title')}")
        lines.append(f"- **Resolution**: {note.get('resolution') or 'Unresolved'}")
        if note.get("prevention_strategy"):
            lines.append(f"- **Prevention**: {note['prevention_strategy']}")
        lines.append("")

    open_todos: List[str] = []
    for summary in summaries:
        for todo in summary.get("todos") or []:
            if todo not in open_todos:
                open_todos.append(todo)
    if open_todos:
        lines += ["", "## Open TODOs", ""]
        lines += [f"- {todo}" for todo in open_todos]

    return "\n".join(lines).rstrip() + "\n"
