"""
Prompt interception.

prompt -> relevance gate -> retrieval & ranking -> context assembly ->
enhanced prompt, with the decision audited in the background. Anything going
wrong after the gate passes the prompt through untouched.
"""

from typing import Optional
import logging
import time

from .assembler import ContextAssembler
from .audit import AuditSink, CONTEXT_INJECTION
from .config import REFERENCE_EXCERPT_CHARS
from .models import (
    AuditEvent,
    HindsightNote,
    InterceptResult,
    Memory,
    MemoryReference,
    NoteReference,
)
from .relevance import RelevanceGate
from .retrieval import RetrievalEngine

logger = logging.getLogger(__name__)


def _excerpt(text: Optional[str]) -> str:
    text = text or ""
    if len(text) <= REFERENCE_EXCERPT_CHARS:
        return text
    return text[:REFERENCE_EXCERPT_CHARS] + "..."


def memory_reference(memory: Memory) -> MemoryReference:
    return MemoryReference(
        id=memory.id,
        summary=memory.summary,
        category=memory.category.value,
        importance=memory.importance.value,
        relevance_score=memory.relevance_score,
        excerpt=_excerpt(memory.content),
    )


def note_reference(note: HindsightNote) -> NoteReference:
    return NoteReference(
        id=note.id,
        title=note.title,
        severity=note.severity.value,
        excerpt=_excerpt(note.resolution or note.error_message),
    )


class InterceptionService:
    def __init__(self, gate: RelevanceGate, engine: RetrievalEngine,
                 assembler: ContextAssembler, audit: Optional[AuditSink] = None):
        self.gate = gate
        self.engine = engine
        self.assembler = assembler
        self.audit = audit

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return max(0, int((time.monotonic() - started) * 1000))

    def _passthrough(self, prompt: str, started: float, reasoning: str,
                     confidence: float, llm_calls: int) -> InterceptResult:
        return InterceptResult(
            enhanced=False,
            original_prompt=prompt,
            enhanced_prompt=prompt,
            latency_ms=self._elapsed_ms(started),
            reasoning=reasoning,
            confidence=confidence,
            llm_calls=llm_calls,
        )

    def intercept(self, prompt: str, session_id: Optional[str], tenant_id: str,
                  max_tokens: Optional[int] = None, force_deep_analysis: bool = False,
                  actor: Optional[str] = None) -> InterceptResult:
        started = time.monotonic()
        prompt = prompt or ""
        result = None
        error = None
        try:
            result = self._intercept(prompt, tenant_id, max_tokens, force_deep_analysis, started)
        except Exception as e:
            logger.error("Interception failed, passing prompt through: %s", e)
            error = e
            result = self._passthrough(prompt, started, f"Enrichment failed: {e}", 0.0, 0)

        self._audit(result, prompt, session_id, tenant_id, actor, error)
        return result

    def _intercept(self, prompt: str, tenant_id: str, max_tokens: Optional[int],
                   force: bool, started: float) -> InterceptResult:
        decision = self.gate.should_inject(prompt, force=force)
        if not decision.needed:
            return self._passthrough(
                prompt, started, decision.reasoning, decision.confidence, decision.llm_calls
            )

        retrieved = self.engine.retrieve(prompt, tenant_id)
        if retrieved.is_empty:
            return self._passthrough(
                prompt,
                started,
                "No relevant memories or notes found",
                decision.confidence,
                decision.llm_calls,
            )

        assembled = self.assembler.assemble(
            prompt, retrieved.memories, retrieved.notes, max_tokens
        )
        if not assembled.enhanced:
            return self._passthrough(
                prompt,
                started,
                "Relevant context does not fit the token budget",
                decision.confidence,
                decision.llm_calls,
            )

        self.engine.mark_injected(assembled.memories, assembled.notes, tenant_id)
        return InterceptResult(
            enhanced=True,
            original_prompt=prompt,
            enhanced_prompt=assembled.enhanced_prompt,
            context_injected=assembled.injected_block,
            memories_used=[memory_reference(m) for m in assembled.memories],
            notes_used=[note_reference(n) for n in assembled.notes],
            latency_ms=self._elapsed_ms(started),
            reasoning=(
                f"Found {len(assembled.memories)} memories and "
                f"{len(assembled.notes)} notes"
            ),
            confidence=decision.confidence,
            tokens_injected=assembled.estimated_tokens,
            llm_calls=decision.llm_calls,
        )

    def _audit(self, result: InterceptResult, prompt: str, session_id: Optional[str],
               tenant_id: str, actor: Optional[str], error: Optional[Exception]) -> None:
        if self.audit is None:
            return
        self.audit.record(
            AuditEvent(
                event_type=CONTEXT_INJECTION,
                tenant_id=tenant_id,
                actor=actor,
                session_id=session_id,
                user_request=prompt,
                decision={
                    "enhanced": result.enhanced,
                    "reasoning": result.reasoning,
                    "confidence": result.confidence,
                    "tokens_injected": result.tokens_injected,
                },
                outcome="failed" if error else "success",
                latency_ms=result.latency_ms,
                llm_calls=result.llm_calls,
                memories_accessed=[m.id for m in result.memories_used],
                error_message=str(error) if error else None,
            )
        )
