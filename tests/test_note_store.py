"""Tests for hindsight notes: recording, de-duplication and ranking."""
from datetime import timedelta

import pytest

from context_mcp.errors import NotFoundError, ValidationError
from context_mcp.models import HindsightNote, NoteSeverity, utcnow
from context_mcp.note_store import NoteStore
from context_mcp.retrieval import infer_error_type, rank_notes


@pytest.fixture
def notes(conn):
    return NoteStore(conn)


class TestRecordNote:

    def test_new_note(self, notes):
        note = notes.record_note(
            "t1", "NPE in PaymentService",
            error_type="NullPointerException",
            error_message="NullPointerException at PaymentService.charge",
            severity="high",
            resolution="Guard against missing card token",
            tags=["payments", "payments", " npe "],
        )
        stored = notes.find_by_id(note.id, "t1")
        assert stored.severity is NoteSeverity.HIGH
        assert stored.occurrence_count == 1
        assert stored.tags == ["payments", "npe"]
        assert stored.last_occurrence_at is not None

    def test_default_severity_is_medium(self, notes):
        assert notes.record_note("t1", "Flaky test").severity is NoteSeverity.MEDIUM

    def test_title_required(self, notes):
        with pytest.raises(ValidationError):
            notes.record_note("t1", "   ")

    def test_bad_severity_is_rejected(self, notes):
        with pytest.raises(ValidationError):
            notes.record_note("t1", "Disk full", severity="APOCALYPTIC")
        assert notes.count("t1") == 0

    def test_same_failure_counts_an_occurrence(self, notes):
        message = "TimeoutException calling inventory service after 30000 ms"
        first = notes.record_note("t1", "Inventory timeout", error_type="TimeoutException",
                                  error_message=message)
        again = notes.record_note("t1", "Inventory timeout again", error_type="timeoutexception",
                                  error_message=message, resolution="Raise pool size")
        assert again.id == first.id
        assert again.occurrence_count == 2
        assert notes.find_by_id(first.id, "t1").resolution == "Raise pool size"
        assert notes.count("t1") == 1

    def test_pattern_match_counts_an_occurrence(self, notes):
        first = notes.record_note("t1", "Deadlock", error_pattern=r"Deadlock found.*",
                                  error_message="Deadlock found when trying to get lock")
        again = notes.record_note("t1", "Deadlock", error_type="SQLException",
                                  error_message="Deadlock found on table orders")
        assert again.id == first.id

    def test_other_tenant_never_deduplicates(self, notes):
        message = "Connection reset by peer"
        notes.record_note("t1", "Reset", error_message=message)
        other = notes.record_note("t2", "Reset", error_message=message)
        assert other.occurrence_count == 1
        assert notes.count("t2") == 1


class TestCounters:

    def test_record_reference(self, notes):
        note = notes.record_note("t1", "Stale cache")
        notes.record_reference(note)
        stored = notes.find_by_id(note.id, "t1")
        assert stored.reference_count == 1
        assert stored.access_count == 1
        assert stored.last_accessed_at is not None

    def test_prevention_success(self, notes):
        note = notes.record_note("t1", "Stale cache")
        updated = notes.record_prevention_success(note.id, "t1")
        assert updated.prevention_success_count == 1
        assert updated.prevention_effectiveness == pytest.approx(1.0)

    def test_prevention_success_unknown_note(self, notes):
        with pytest.raises(NotFoundError):
            notes.record_prevention_success("missing", "t1")

    def test_frequent_and_critical(self, notes):
        msg = "OutOfMemoryError in report export"
        notes.record_note("t1", "OOM", error_message=msg, severity="CRITICAL")
        notes.record_note("t1", "OOM", error_message=msg)
        notes.record_note("t1", "Typo", severity="LOW")
        assert [n.title for n in notes.frequent_errors("t1")] == ["OOM"]
        assert [n.title for n in notes.critical_errors("t1")] == ["OOM"]


class TestRanking:

    def _note(self, title, severity, minutes_ago=None, access=0):
        note = HindsightNote(tenant_id="t", title=title, severity=severity, access_count=access)
        if minutes_ago is not None:
            note.last_occurrence_at = utcnow() - timedelta(minutes=minutes_ago)
        return note

    def test_severity_then_recency_then_access(self):
        ranked = rank_notes([
            self._note("low", NoteSeverity.LOW, minutes_ago=1),
            self._note("high-old", NoteSeverity.HIGH, minutes_ago=60),
            self._note("high-new", NoteSeverity.HIGH, minutes_ago=5),
            self._note("critical", NoteSeverity.CRITICAL, minutes_ago=600),
        ])
        assert [n.title for n in ranked] == ["critical", "high-new", "high-old", "low"]

    def test_missing_occurrence_sorts_last(self):
        ranked = rank_notes([
            self._note("never", NoteSeverity.MEDIUM),
            self._note("seen", NoteSeverity.MEDIUM, minutes_ago=30),
        ])
        assert [n.title for n in ranked] == ["seen", "never"]

    def test_access_breaks_ties(self):
        when = utcnow()
        a = self._note("a", NoteSeverity.MEDIUM, access=1)
        b = self._note("b", NoteSeverity.MEDIUM, access=7)
        a.last_occurrence_at = b.last_occurrence_at = when
        assert [n.title for n in rank_notes([a, b])] == ["b", "a"]


class TestErrorTypeInference:

    @pytest.mark.parametrize("prompt,expected", [
        ("Got a null pointer in the mapper", "NullPointerException"),
        ("The request timed out", "TimeoutException"),
        ("SQL syntax error near ORDER", "SQLException"),
        ("I/O failure reading the file", "IOException"),
        ("runtime crash on startup", "RuntimeException"),
        ("the button is blue", "UNKNOWN"),
    ])
    def test_rules(self, prompt, expected):
        assert infer_error_type(prompt) == expected

    def test_io_needs_word_boundary(self):
        assert infer_error_type("the ratio is off") == "UNKNOWN"
