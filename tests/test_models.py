"""Tests for the context models: scoring, parsing and note matching."""
import math

import pytest

from context_mcp.errors import ValidationError
from context_mcp.models import (
    ContextSummary,
    HindsightNote,
    ImportanceLevel,
    Memory,
    MemoryCategory,
    NoteSeverity,
    RelationshipType,
    StructuredSummary,
    CriticalError,
)


class TestMemoryScoring:

    def test_fresh_memory_scores_zero(self):
        m = Memory(id="mem_1", content="x", tenant_id="t")
        assert m.helpfulness_rate == 0.0
        assert m.relevance_score == 0.0

    def test_helpfulness_rate(self):
        m = Memory(id="mem_1", content="x", tenant_id="t",
                   helpful_count=3, not_helpful_count=1)
        assert m.helpfulness_rate == pytest.approx(0.75)
        assert m.relevance_score == pytest.approx(0.3)

    def test_usage_term_uses_log1p(self):
        m = Memory(id="mem_1", content="x", tenant_id="t",
                   access_count=9, injection_count=4)
        expected = 0.3 * (math.log1p(9) + math.log1p(4)) / 10
        assert m.relevance_score == pytest.approx(expected)

    def test_score_is_unbounded_with_heavy_usage(self):
        m = Memory(id="mem_1", content="x", tenant_id="t",
                   access_count=10**9, injection_count=10**9,
                   helpful_count=1)
        assert m.relevance_score > 1.0


class TestEnumParsing:

    def test_category_by_name_and_value(self):
        assert MemoryCategory.parse("decision") is MemoryCategory.DECISION
        assert MemoryCategory.parse("Warning") is MemoryCategory.WARNING

    @pytest.mark.parametrize("legacy,expected", [
        ("PATTERN", MemoryCategory.INSIGHT),
        ("ANTIPATTERN", MemoryCategory.WARNING),
        ("BUG", MemoryCategory.WARNING),
        ("DOMAIN_KNOWLEDGE", MemoryCategory.KNOWLEDGE),
        ("INTEGRATION", MemoryCategory.REFERENCE),
    ])
    def test_legacy_categories(self, legacy, expected):
        assert MemoryCategory.parse(legacy) is expected

    def test_unknown_category_rejected(self):
        with pytest.raises(ValidationError):
            MemoryCategory.parse("GOSSIP")

    def test_importance(self):
        assert ImportanceLevel.parse("critical") is ImportanceLevel.CRITICAL
        with pytest.raises(ValidationError):
            ImportanceLevel.parse("urgent")

    def test_relationship_type(self):
        assert RelationshipType.parse("used-with") is RelationshipType.USED_WITH
        with pytest.raises(ValidationError):
            RelationshipType.parse("LIKES")

    def test_severity_weights_order(self):
        weights = [s.weight for s in (NoteSeverity.CRITICAL, NoteSeverity.HIGH,
                                      NoteSeverity.MEDIUM, NoteSeverity.LOW)]
        assert weights == sorted(weights, reverse=True)

    def test_bad_severity_rejected(self):
        with pytest.raises(ValidationError):
            NoteSeverity.parse("SEVERE")


class TestHindsightNote:

    def _note(self, **kwargs):
        return HindsightNote(tenant_id="t", title="NPE in payment", **kwargs)

    def test_pattern_must_match_whole_message(self):
        note = self._note(error_pattern=r"NullPointerException.*")
        assert note.matches_error("NullPointerException at PaymentService:42")
        assert not note.matches_error("Caused by NullPointerException")

    def test_invalid_pattern_never_matches(self):
        note = self._note(error_pattern="([unclosed")
        assert note.matches_error("([unclosed") is False

    def test_blank_pattern_or_missing_message(self):
        assert self._note(error_pattern="   ").matches_error("anything") is False
        assert self._note(error_pattern=".*").matches_error(None) is False

    def test_error_type_is_case_insensitive(self):
        note = self._note(error_type="NullPointerException")
        assert note.matches_error_type("nullpointerexception")
        assert not note.matches_error_type(None)

    def test_prevention_effectiveness(self):
        note = self._note(occurrence_count=4, prevention_success_count=3)
        assert note.prevention_effectiveness == pytest.approx(0.75)
        assert note.is_prevention_effective
        assert note.is_frequent is True

    def test_not_frequent_at_three(self):
        assert self._note(occurrence_count=3).is_frequent is False

    def test_record_occurrence(self):
        note = self._note()
        note.record_occurrence()
        assert note.occurrence_count == 2
        assert note.last_occurrence_at is not None


class TestContextSummary:

    def _summary(self, original, compressed):
        return ContextSummary(
            tenant_id="t",
            session_id="s",
            original_token_count=original,
            compressed_token_count=compressed,
            compression_ratio=compressed / original if original else 1.0,
            summary="",
        )

    def test_savings_and_reduction(self):
        s = self._summary(1000, 300)
        assert s.token_savings == 700
        assert s.percentage_reduction == pytest.approx(70.0)
        assert s.is_effective
        assert s.is_target_achieved

    def test_zero_original_tokens(self):
        s = self._summary(0, 0)
        assert s.percentage_reduction == 0.0
        assert not s.is_effective

    @pytest.mark.parametrize("compressed,score", [(300, 95), (500, 90), (700, 75), (900, 50)])
    def test_information_preservation_bands(self, compressed, score):
        assert self._summary(1000, compressed).information_preservation_score == score

    def test_markdown_sections(self):
        s = self._summary(1000, 100)
        s.goals = ["Ship the importer"]
        s.todos = ["Write docs"]
        md = s.to_markdown()
        assert "## Goal\n- Ship the importer" in md
        assert "## TODOs\n- Write docs" in md
        assert "## Decisions" not in md


class TestStructuredSummary:

    def test_empty(self):
        assert StructuredSummary().is_empty()

    def test_text_rendering(self):
        s = StructuredSummary(
            task_goal="Fix login",
            key_decisions=["Use JWT"],
            critical_errors=[CriticalError("AuthError", "token expired", "refresh")],
        )
        text = s.to_text()
        assert text.startswith("Goal: Fix login")
        assert "- Use JWT" in text
        assert "- AuthError: token expired (resolved: refresh)" in text
