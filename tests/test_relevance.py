"""Tests for the relevance gate."""
import pytest

from context_mcp.errors import ExternalServiceDegraded
from context_mcp.relevance import RelevanceGate


@pytest.fixture
def gate(completion):
    return RelevanceGate(completion)


class TestQuickCheck:

    def test_short_prompt_never_reaches_the_model(self, gate, completion):
        decision = gate.should_inject("fix it", force=True)
        assert decision.needed is False
        assert decision.reasoning == "Quick check: Prompt too short"
        assert decision.confidence == 0.0
        assert completion.calls == 0

    def test_no_trigger_skips_the_model(self, gate, completion):
        decision = gate.should_inject("What time is it in Tokyo right now?")
        assert decision.needed is False
        assert decision.reasoning == "Quick check: No relevant keywords detected"
        assert decision.llm_calls == 0
        assert completion.calls == 0

    def test_triggers_are_case_insensitive(self, gate):
        assert gate.quick_check("Please IMPLEMENT the billing Controller")

    def test_force_bypasses_trigger_scan(self, gate, completion):
        completion.queue_json({"needsContext": True, "reasoning": "forced", "confidence": 0.6})
        decision = gate.should_inject("What time is it in Tokyo right now?", force=True)
        assert decision.needed is True
        assert completion.calls == 1


class TestModelJudgment:

    def test_positive_decision(self, gate, completion):
        completion.queue(
            '```json\n{"needsContext": true, "reasoning": "touches payments",'
            ' "confidence": 0.85, "categories": ["PATTERN", "DECISION"]}\n```'
        )
        decision = gate.should_inject("How should I fix the payment service error?")
        assert decision.needed is True
        assert decision.reasoning == "touches payments"
        assert decision.confidence == pytest.approx(0.85)
        assert decision.categories == ["PATTERN", "DECISION"]
        assert decision.llm_calls == 1

    def test_confidence_is_clamped(self, gate, completion):
        completion.queue_json({"needsContext": True, "confidence": 7})
        assert gate.should_inject("create a new repository class").confidence == 1.0

    def test_degraded_service_means_no_injection(self, gate, completion):
        completion.queue(ExternalServiceDegraded("timeout"))
        decision = gate.should_inject("implement the order service")
        assert decision.needed is False
        assert decision.reasoning == "Error during analysis"
        assert decision.confidence == 0.0
        assert decision.llm_calls == 1

    def test_unparseable_answer(self, gate, completion):
        completion.queue("Sure! I think it probably needs context.")
        decision = gate.should_inject("implement the order service")
        assert decision.needed is False
        assert decision.reasoning == "Parse error"

    def test_context_is_forwarded(self, gate, completion):
        completion.queue_json({"needsContext": False})
        gate.should_inject("implement the order service", context="file: OrderService.java")
        assert "file: OrderService.java" in completion.prompts[-1]
