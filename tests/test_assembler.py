"""Tests for context assembly."""
from context_mcp.assembler import FOOTER, HEADER, NOTES_HEADER, ContextAssembler, estimate_tokens
from context_mcp.models import (
    HindsightNote,
    ImportanceLevel,
    Memory,
    MemoryCategory,
    NoteSeverity,
)


def _memory(i, summary="Use optimistic locking on orders", **kwargs):
    return Memory(
        id=f"mem_{i}",
        content=f"content {i}",
        tenant_id="t",
        summary=summary,
        category=MemoryCategory.DECISION,
        importance=ImportanceLevel.CRITICAL,
        **kwargs,
    )


def _note(title="NPE in PaymentService", **kwargs):
    return HindsightNote(tenant_id="t", title=title, severity=NoteSeverity.HIGH, **kwargs)


class TestFormatting:

    def test_memory_block(self):
        text = ContextAssembler.format_memory(1, _memory(1))
        assert text.startswith("[1] Critical - Decision\n")
        assert "    Use optimistic locking on orders\n" in text

    def test_memory_with_code(self):
        text = ContextAssembler.format_memory(
            2, _memory(2, code_example="repo.save(order)", programming_language="java")
        )
        assert "```java\nrepo.save(order)\n    ```" in text

    def test_note_line_and_lesson(self):
        note = _note(resolution="Validate the card token", prevention_strategy="x" * 150)
        text = ContextAssembler.format_note(note)
        first, second = text.splitlines()
        assert first == "- [HIGH] NPE in PaymentService: Validate the card token"
        assert second.startswith("  Lesson: ")
        assert len(second) == len("  Lesson: ") + 100


class TestAssemble:

    def test_layout(self):
        assembled = ContextAssembler().assemble(
            "How do I save orders?", [_memory(1), _memory(2)], [_note(resolution="guard")]
        )
        block = assembled.injected_block
        assert assembled.enhanced
        assert block.startswith(HEADER)
        assert block.endswith(FOOTER)
        assert block.index("[1]") < block.index("[2]") < block.index(NOTES_HEADER)
        assert assembled.enhanced_prompt == f"{block}\n\nHow do I save orders?"
        assert assembled.estimated_tokens == estimate_tokens(block)

    def test_notes_header_only_with_notes(self):
        assembled = ContextAssembler().assemble("prompt", [_memory(1)], [])
        assert NOTES_HEADER not in assembled.injected_block

    def test_nothing_to_inject(self):
        assembled = ContextAssembler().assemble("prompt", [], [])
        assert not assembled.enhanced
        assert assembled.enhanced_prompt == "prompt"
        assert assembled.injected_block is None

    def test_budget_drops_notes_before_memories(self):
        memories = [_memory(i) for i in range(1, 4)]
        notes = [_note(title=f"note {i}", resolution="r" * 200) for i in range(3)]
        full = ContextAssembler().assemble("p", memories, notes)
        small = ContextAssembler(max_chars=len(full.injected_block) - 1).assemble("p", memories, notes)
        assert len(small.memories) == 3
        assert len(small.notes) == 2

    def test_tiny_budget_passes_prompt_through(self):
        assembled = ContextAssembler().assemble("p", [_memory(1)], [_note()], max_tokens=1)
        assert not assembled.enhanced
        assert assembled.enhanced_prompt == "p"

    def test_token_estimate_rounds_up(self):
        assert estimate_tokens("abcde") == 2
        assert estimate_tokens("") == 0
