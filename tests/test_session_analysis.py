"""Tests for session analysis: extraction, persistence and the markdown digest."""
import pytest

from context_mcp.audit import SESSION_ANALYZED
from context_mcp.errors import ExternalServiceDegraded, ValidationError
from context_mcp.models import ImportanceLevel, MemoryCategory
from context_mcp.session_analysis import SessionAnalyzer

SESSION = [
    {"role": "user", "content": "Orders are double-charged when the payment call times out"},
    {"role": "assistant", "content": "Added an idempotency key to POST /charge"},
    {"role": "error", "content": "TimeoutException: payment gateway did not answer in 5s"},
    {"role": "user", "content": "Let's keep retries at the queue level only"},
]

ANALYSIS = {
    "decisions": [
        {"title": "Retries live in the queue consumer",
         "description": "HTTP clients never retry payment calls",
         "rationale": "A client retry double-charges"},
        {"description": "   "},
    ],
    "insights": [
        {"category": "WARNING", "content": "Payment calls must carry an idempotency key",
         "importance": "HIGH"},
        {"category": "GOSSIP", "content": "Gateway latency spikes at midnight",
         "importance": "whatever"},
        {"category": "INSIGHT"},
    ],
    "failures": [
        {"errorType": "TimeoutException",
         "errorMessage": "payment gateway did not answer in 5s",
         "resolution": "Raised the timeout and moved retries to the queue",
         "lessonsLearned": "Never retry non-idempotent calls",
         "preventionHint": "Always send an idempotency key"},
    ],
}


class TestSessionAnalyzer:

    def test_parse_is_field_tolerant(self, completion):
        completion.queue_json(ANALYSIS)
        analysis = SessionAnalyzer(completion).analyze(SESSION, "s-1", "tenant-a")

        assert [d.title for d in analysis.decisions] == ["Retries live in the queue consumer"]
        assert "Rationale: A client retry double-charges" in analysis.decisions[0].to_content()

        assert len(analysis.insights) == 2
        warning, unknown = analysis.insights
        assert warning.category is MemoryCategory.WARNING
        assert warning.importance is ImportanceLevel.CRITICAL
        assert unknown.category is MemoryCategory.INSIGHT
        assert unknown.importance is ImportanceLevel.IMPORTANT

        assert analysis.failures[0].error_type == "TimeoutException"
        assert analysis.failures[0].prevention_hint == "Always send an idempotency key"

    def test_prompt_carries_session_activity(self, completion):
        completion.queue_json({})
        SessionAnalyzer(completion).analyze(SESSION, "s-1", "tenant-a", include_failures=False)
        prompt = completion.prompts[0]
        assert "[error] TimeoutException" in prompt
        assert "Failures and errors" not in prompt

    def test_failures_skipped_when_not_requested(self, completion):
        completion.queue_json(ANALYSIS)
        analysis = SessionAnalyzer(completion).analyze(SESSION, "s-1", "tenant-a",
                                                       include_failures=False)
        assert analysis.failures == []

    def test_insights_are_capped(self, completion):
        completion.queue_json({"insights": [{"content": f"insight {i}"} for i in range(15)]})
        analysis = SessionAnalyzer(completion, max_insights=4).analyze(SESSION, "s-1", "t")
        assert len(analysis.insights) == 4

    def test_non_json_reply_is_empty_analysis(self, completion):
        completion.queue("The session went fine.")
        analysis = SessionAnalyzer(completion).analyze(SESSION, "s-1", "tenant-a")
        assert analysis.is_empty()

    def test_empty_session_rejected(self, completion):
        with pytest.raises(ValidationError):
            SessionAnalyzer(completion).analyze([{"role": "user", "content": "  "}], "s-1", "t")
        assert completion.calls == 0

    def test_degraded_service_propagates(self, completion):
        with pytest.raises(ExternalServiceDegraded):
            SessionAnalyzer(completion).analyze(SESSION, "s-1", "tenant-a")


class TestAnalyzeSession:

    def test_persists_memories_and_notes(self, system, completion):
        completion.queue_json(ANALYSIS)
        res = system.analyze_session(SESSION, "s-1", "tenant-a")
        assert res.success
        out = res.data[0]
        assert out["total_decisions"] == 1
        assert out["total_insights"] == 2
        assert out["total_failures"] == 1
        assert len(out["memory_ids"]) == 3
        assert len(out["note_ids"]) == 1

        stored = system.memories_by_tags(["session:s-1"], "tenant-a").data
        assert {m["id"] for m in stored} == set(out["memory_ids"])
        decision = next(m for m in stored if m["category"] == "Decision")
        assert decision["summary"] == "Retries live in the queue consumer"
        assert decision["source_type"] == "SESSION_ANALYSIS"

        notes = system.search_notes("payment gateway did not answer in 5s", "tenant-a",
                                    error_type="TimeoutException").data
        assert notes[0]["session_id"] == "s-1"
        assert notes[0]["auto_generated"] is True
        assert notes[0]["prevention_strategy"] == "Always send an idempotency key"

    def test_preview_stores_nothing(self, system, completion):
        completion.queue_json(ANALYSIS)
        out = system.analyze_session(SESSION, "s-1", "tenant-a", persist=False).data[0]
        assert out["memory_ids"] == [] and out["note_ids"] == []
        assert system.get_statistics("tenant-a").data[0]["total_memories"] == 0

    def test_is_audited(self, system, completion):
        completion.queue_json(ANALYSIS)
        system.analyze_session(SESSION, "s-1", "tenant-a", persist=False)
        events = system.recent_audit_events("tenant-a").data
        analyzed = [e for e in events if e["event_type"] == SESSION_ANALYZED]
        assert analyzed[0]["session_id"] == "s-1"
        assert analyzed[0]["decision"]["failures"] == 1

    def test_degraded_service_is_a_failed_result(self, system):
        res = system.analyze_session(SESSION, "s-1", "tenant-a")
        assert not res.success
        assert "unavailable" in res.reason

    def test_markdown_digest(self, system, completion):
        completion.queue_json(ANALYSIS)
        system.analyze_session(SESSION, "s-1", "tenant-a")
        markdown = system.session_summary_markdown("s-1", "tenant-a").data[0]["markdown"]

        assert markdown.startswith("# Session s-1\n")
        assert "1 decisions, 2 insights, 1 failures recorded, 0 compressions." in markdown
        assert "- Retries live in the queue consumer" in markdown
        assert "### TimeoutException: payment gateway did not answer in 5s" in markdown
        assert "- **Prevention**: Always send an idempotency key" in markdown

    def test_markdown_for_unknown_session(self, system):
        markdown = system.session_summary_markdown("nope", "tenant-a").data[0]["markdown"]
        assert "0 decisions, 0 insights, 0 failures recorded, 0 compressions." in markdown
        assert "## Failures & Learnings\n\n- None" in markdown
