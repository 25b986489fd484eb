"""Tests for the background audit sink."""
from context_mcp.audit import CONTEXT_INJECTION, ERROR, AuditSink
from context_mcp.models import AuditEvent


class TestAuditSink:

    def test_record_and_read_back(self, tmp_path):
        sink = AuditSink(tmp_path / "audit.db")
        sink.record(AuditEvent(event_type=CONTEXT_INJECTION, tenant_id="t1",
                               session_id="s1", decision={"enhanced": True},
                               memories_accessed=["mem_1"], llm_calls=1))
        sink.record(AuditEvent(event_type=CONTEXT_INJECTION, tenant_id="t2"))
        sink.flush(5)

        events = sink.recent("t1")
        assert len(events) == 1
        assert events[0]["decision"] == {"enhanced": True}
        assert events[0]["memories_accessed"] == ["mem_1"]
        sink.close(5)

    def test_record_error(self, tmp_path):
        sink = AuditSink(tmp_path / "audit.db")
        sink.record_error("t1", "create_memory", RuntimeError("boom"))
        events = sink.recent("t1")
        assert events[0]["event_type"] == ERROR
        assert events[0]["outcome"] == "failed"
        assert events[0]["error_message"] == "boom"
        sink.close(5)

    def test_disabled_sink_writes_nothing(self, tmp_path):
        sink = AuditSink(tmp_path / "audit.db", enabled=False)
        sink.record(AuditEvent(event_type=CONTEXT_INJECTION, tenant_id="t1"))
        assert sink.recent("t1") == []
        sink.close(5)

    def test_record_after_close_is_dropped(self, tmp_path):
        sink = AuditSink(tmp_path / "audit.db")
        sink.close(5)
        sink.record(AuditEvent(event_type=CONTEXT_INJECTION, tenant_id="t1"))
        assert sink.recent("t1") == []

    def test_unwritable_event_does_not_raise(self, tmp_path):
        sink = AuditSink(tmp_path / "audit.db")
        sink.record(AuditEvent(event_type=CONTEXT_INJECTION, tenant_id="t1",
                               decision={"bad": object()}))
        sink.flush(5)
        assert sink.recent("t1") == []
        sink.close(5)
