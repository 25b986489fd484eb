"""
Context assembly: turns ranked memories and notes into the block that is
prepended to the prompt. Order is kept exactly as received.
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence
import math

from .config import (
    CHARS_PER_TOKEN,
    CONTEXT_MAX_CHARS,
    CODE_EXCERPT_MAX_CHARS,
    LESSON_MAX_CHARS,
)
from .models import HindsightNote, Memory

HEADER = (
    "<system_context>\n"
    "The following relevant patterns and decisions were found:\n\n"
)
NOTES_HEADER = "## Past Learnings (Hindsight Notes)\n\n"
FOOTER = "</system_context>"


def estimate_tokens(text: str) -> int:
    """Four characters per token, rounded up."""
    return math.ceil(len(text or "") / CHARS_PER_TOKEN)


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: max(0, limit - 3)] + "..."


@dataclass
class AssembledContext:
    enhanced: bool
    enhanced_prompt: str
    injected_block: Optional[str]
    estimated_tokens: int
    memories: List[Memory]
    notes: List[HindsightNote]


class ContextAssembler:
    def __init__(self, max_chars: int = CONTEXT_MAX_CHARS):
        self.max_chars = max_chars

    @staticmethod
    def format_memory(index: int, memory: Memory) -> str:
        out = f"[{index}] {memory.importance.value} - {memory.category.value}\n"
        out += f"    {memory.summary or _truncate(memory.content, 200)}\n"
        if memory.code_example:
            language = memory.programming_language or ""
            code = _truncate(memory.code_example, CODE_EXCERPT_MAX_CHARS)
            out += f"    ```{language}\n{code}\n    ```\n"
        return out + "\n"

    @staticmethod
    def format_note(note: HindsightNote) -> str:
        out = f"- [{note.severity.value}] {note.title}"
        if note.resolution:
            out += f": {note.resolution}"
        out += "\n"
        if note.prevention_strategy:
            out += f"  Lesson: {_truncate(note.prevention_strategy, LESSON_MAX_CHARS)}\n"
        return out

    def _render(self, memories: Sequence[Memory], notes: Sequence[HindsightNote]) -> str:
        block = HEADER
        for index, memory in enumerate(memories, start=1):
            block += self.format_memory(index, memory)
        if notes:
            block += NOTES_HEADER
            for note in notes:
                block += self.format_note(note)
            block += "\n"
        return block + FOOTER

    def _fit(self, memories: List[Memory], notes: List[HindsightNote],
             max_chars: int):
        """Drop entries from the tail (notes first, then memories) until it fits."""
        block = self._render(memories, notes)
        while len(block) > max_chars and (memories or notes):
            if notes:
                notes = notes[:-1]
            else:
                memories = memories[:-1]
            block = self._render(memories, notes)
        return memories, notes, block

    def assemble(self, prompt: str, memories: Sequence[Memory],
                 notes: Sequence[HindsightNote],
                 max_tokens: Optional[int] = None) -> AssembledContext:
        """
        Build the injected block and the enhanced prompt.

        ``max_tokens`` tightens the character budget for this call. If nothing
        survives, the prompt is returned unchanged with ``enhanced=False``.
        """
        memories, notes = list(memories), list(notes)
        budget = self.max_chars
        if max_tokens is not None and max_tokens >= 0:
            budget = min(budget, max_tokens * CHARS_PER_TOKEN)

        if memories or notes:
            memories, notes, block = self._fit(memories, notes, budget)
        if not memories and not notes:
            return AssembledContext(False, prompt, None, 0, [], [])

        return AssembledContext(
            enhanced=True,
            enhanced_prompt=f"{block}\n\n{prompt}",
            injected_block=block,
            estimated_tokens=estimate_tokens(block),
            memories=memories,
            notes=notes,
        )
