"""
Relevance gate: does this prompt deserve injected context?

Stage one is a lexical scan against a fixed trigger list and costs nothing.
Stage two asks the completion service for a judgment. A degraded or
unreadable answer means "no injection", never an error.
"""

from dataclasses import dataclass, field
from typing import List, Sequence
import logging

from .config import (
    RELEVANCE_TRIGGERS,
    RELEVANCE_MIN_PROMPT_LENGTH,
    RELEVANCE_MAX_TOKENS,
    SYSTEM_PROMPT,
)
from .errors import ExternalServiceDegraded
from .llm_parsing import LLMFields

logger = logging.getLogger(__name__)


@dataclass
class RelevanceDecision:
    needed: bool
    reasoning: str
    confidence: float
    categories: List[str] = field(default_factory=list)
    llm_calls: int = 0


class RelevanceGate:
    def __init__(self, completion, triggers: Sequence[str] = RELEVANCE_TRIGGERS,
                 min_length: int = RELEVANCE_MIN_PROMPT_LENGTH):
        self.completion = completion
        self.triggers = tuple(t.lower() for t in triggers)
        self.min_length = min_length

    def quick_check(self, prompt: str) -> bool:
        """True when the prompt is long enough and contains a trigger."""
        if not prompt or len(prompt) < self.min_length:
            return False
        lowered = prompt.lower()
        return any(trigger in lowered for trigger in self.triggers)

    def should_inject(self, prompt: str, context: str = "", force: bool = False) -> RelevanceDecision:
        if not prompt or len(prompt) < self.min_length:
            return RelevanceDecision(False, "Quick check: Prompt too short", 0.0)
        if not force and not self.quick_check(prompt):
            return RelevanceDecision(
                False, "Quick check: No relevant keywords detected", 0.0
            )

        user_prompt = f"""Analyze if this developer prompt needs additional context from memory.

Prompt: "{prompt}"
"""
        if context:
            user_prompt += f"\nContext: {context}\n"
        user_prompt += """
Consider:
- Does it involve creating/modifying code?
- Does it reference patterns, architecture, or decisions?
- Would past knowledge help?

Return JSON:
{
  "needsContext": true/false,
  "reasoning": "brief explanation",
  "confidence": 0.0-1.0,
  "categories": ["PATTERN", "DECISION", ...]
}"""

        try:
            text = self.completion.complete(SYSTEM_PROMPT, user_prompt, RELEVANCE_MAX_TOKENS)
        except ExternalServiceDegraded as e:
            logger.warning("Relevance analysis degraded: %s", e)
            return RelevanceDecision(False, "Error during analysis", 0.0, llm_calls=1)

        fields = LLMFields.from_text(text)
        if not fields.parsed:
            return RelevanceDecision(False, "Parse error", 0.0, llm_calls=1)

        confidence = min(1.0, max(0.0, fields.number("confidence", 0.0)))
        return RelevanceDecision(
            needed=fields.flag("needsContext", False),
            reasoning=fields.text("reasoning"),
            confidence=confidence,
            categories=fields.items("categories"),
            llm_calls=1,
        )
