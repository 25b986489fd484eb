"""Tests for the ContextMemorySystem facade: memory lifecycle, graph, stats."""
import sqlite3
import threading

import pytest

from context_mcp.audit import CONTEXT_COMPRESSED, MEMORY_CREATED
from context_mcp.embedder import HashEmbedder
from context_mcp.errors import EmbeddingError, PersistenceError
from context_mcp.memory_system import ContextMemorySystem


class TestCreateMemory:

    def test_explicit_classification_skips_the_model(self, system, completion):
        res = system.create_memory("Use UUIDv7 for order ids", "tenant-a",
                                   category="DECISION", importance="IMPORTANT",
                                   tags=["ids", "orders"])
        assert res.success
        memory = res.data[0]
        assert memory["category"] == "Decision"
        assert memory["importance"] == "Important"
        assert memory["tags"] == ["ids", "orders"]
        assert memory["version"] == 1
        assert memory["token_count"] > 0
        assert completion.calls == 0

    def test_model_classifies_when_missing(self, system, completion):
        completion.queue_json({"importance": "CRITICAL", "category": "WARNING",
                               "summary": "Never retry non-idempotent POSTs"})
        res = system.create_memory("Retrying POST /charge double-bills customers", "tenant-a")
        memory = res.data[0]
        assert memory["category"] == "Warning"
        assert memory["importance"] == "Critical"
        assert memory["summary"] == "Never retry non-idempotent POSTs"

    def test_degraded_model_uses_defaults(self, system):
        res = system.create_memory("Some note about caching", "tenant-a")
        assert res.success
        assert res.data[0]["category"] == "Insight"
        assert res.data[0]["importance"] == "Minor"

    def test_validation(self, system):
        assert not system.create_memory("   ", "tenant-a").success
        assert not system.create_memory("content", "").success
        bad = system.create_memory("content", "tenant-a", category="GOSSIP", importance="MINOR")
        assert not bad.success
        assert "category" in bad.reason

    def test_primary_failure_is_reported(self, system, monkeypatch):
        def fail(memory):
            raise PersistenceError("disk full")

        monkeypatch.setattr(system.memory_store, "save", fail)
        res = system.create_memory("x", "tenant-a", category="INSIGHT", importance="MINOR")
        assert not res.success
        assert "disk full" in res.reason

    def test_creation_is_audited(self, system, memory_factory):
        memory = memory_factory("Audit me")
        events = system.recent_audit_events("tenant-a").data
        created = [e for e in events if e["event_type"] == MEMORY_CREATED]
        assert created[0]["memories_accessed"] == [memory["id"]]


class TestReadUpdateDelete:

    def test_get_counts_access(self, system, memory_factory):
        memory = memory_factory("Cache TTL is 5 minutes")
        system.get_memory(memory["id"], "tenant-a")
        again = system.get_memory(memory["id"], "tenant-a").data[0]
        assert again["access_count"] == 2

    def test_get_other_tenant(self, system, memory_factory):
        memory = memory_factory("Cache TTL is 5 minutes")
        assert not system.get_memory(memory["id"], "tenant-b").success

    def test_update_archives_previous_version(self, system, memory_factory):
        memory = memory_factory("Cache TTL is 5 minutes")
        res = system.update_memory(memory["id"], "tenant-a",
                                   content="Cache TTL is 10 minutes",
                                   change_reason="load test results")
        assert res.data[0]["version"] == 2

        history = system.memory_history(memory["id"], "tenant-a").data
        assert [v["version"] for v in history] == [1]
        assert history[0]["content"] == "Cache TTL is 5 minutes"
        assert history[0]["change_reason"] == "load test results"

    def test_update_without_changes_keeps_version(self, system, memory_factory):
        memory = memory_factory("Cache TTL is 5 minutes")
        res = system.update_memory(memory["id"], "tenant-a", content="Cache TTL is 5 minutes")
        assert res.data[0]["version"] == 1
        assert system.memory_history(memory["id"], "tenant-a").data == []

    def test_failed_embedding_leaves_history_untouched(self, system, memory_factory,
                                                       monkeypatch):
        memory = memory_factory("Cache TTL is 5 minutes")

        def fail(text):
            raise EmbeddingError("model offline")

        monkeypatch.setattr(system.embedder, "embed", fail)
        res = system.update_memory(memory["id"], "tenant-a", content="Cache TTL is 7 minutes")
        assert not res.success
        assert system.memory_history(memory["id"], "tenant-a").data == []

        monkeypatch.undo()
        res = system.update_memory(memory["id"], "tenant-a", content="Cache TTL is 10 minutes")
        assert res.data[0]["version"] == 2
        history = system.memory_history(memory["id"], "tenant-a").data
        assert [v["version"] for v in history] == [1]

    def test_failed_save_rolls_back_archive_row(self, system, memory_factory, monkeypatch):
        memory = memory_factory("Cache TTL is 5 minutes")

        def fail(m):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(system.memory_store.primary, "_upsert", fail)
        res = system.update_memory(memory["id"], "tenant-a", content="Cache TTL is 7 minutes")
        assert not res.success
        monkeypatch.undo()

        assert system.memory_history(memory["id"], "tenant-a").data == []
        current = system.get_memory(memory["id"], "tenant-a").data[0]
        assert current["version"] == 1
        assert current["content"] == "Cache TTL is 5 minutes"

    def test_compare_versions(self, system, memory_factory):
        memory = memory_factory("Cache TTL is 5 minutes", tags=["cache"])
        system.update_memory(memory["id"], "tenant-a", content="Cache TTL is 10 minutes",
                             importance="IMPORTANT")

        diff = system.compare_versions(memory["id"], 1, 2, "tenant-a").data[0]
        assert diff["changed_fields"] == ["content", "importance"]
        assert diff["changes"]["content"] == {"from": "Cache TTL is 5 minutes",
                                              "to": "Cache TTL is 10 minutes"}
        assert diff["changes"]["importance"] == {"from": "Critical", "to": "Important"}

        assert system.compare_versions(memory["id"], 2, 2, "tenant-a").data[0]["changes"] == {}
        missing = system.compare_versions(memory["id"], 1, 9, "tenant-a")
        assert not missing.success
        assert "9" in missing.reason
        assert not system.compare_versions(memory["id"], 1, 2, "tenant-b").success

    def test_rollback(self, system, memory_factory):
        memory = memory_factory("v1 text")
        system.update_memory(memory["id"], "tenant-a", content="v2 text")
        res = system.rollback_memory(memory["id"], 1, "tenant-a")
        assert res.success
        assert res.data[0]["content"] == "v1 text"
        assert res.data[0]["version"] == 3
        assert not system.rollback_memory(memory["id"], 42, "tenant-a").success

    def test_soft_delete_hides_memory(self, system, memory_factory):
        memory = memory_factory("Deprecated: use the v1 API")
        assert system.delete_memory(memory["id"], "tenant-a").success
        assert not system.get_memory(memory["id"], "tenant-a").success
        search = system.search_memories("Deprecated v1 API", "tenant-a").data
        assert memory["id"] not in [m["id"] for m in search]
        assert not system.delete_memory(memory["id"], "tenant-a").success

    def test_feedback(self, system, memory_factory):
        memory = memory_factory("Feedback target")
        system.record_feedback(memory["id"], "tenant-a", True)
        res = system.record_feedback(memory["id"], "tenant-a", False)
        assert res.data[0]["helpful_count"] == 1
        assert res.data[0]["not_helpful_count"] == 1
        assert res.data[0]["helpfulness_rate"] == pytest.approx(0.5)


class TestSearch:

    def test_semantic_search_ranks_overlap_first(self, system, memory_factory):
        close = memory_factory("kafka consumer lag alerting thresholds")
        memory_factory("css grid layout for dashboards")
        res = system.search_memories("kafka consumer lag", "tenant-a", limit=2)
        assert res.data[0]["id"] == close["id"]
        assert res.data[0]["match_type"] == "semantic"

    def test_text_fallback_when_vectors_fail(self, system, memory_factory, monkeypatch):
        memory = memory_factory("Flyway migrations run on startup")

        def fail(*args, **kwargs):
            raise RuntimeError("vector search down")

        monkeypatch.setattr(system.memory_store, "vector_search_scored", fail)
        res = system.search_memories("Flyway", "tenant-a")
        assert [m["id"] for m in res.data] == [memory["id"]]
        assert res.data[0]["match_type"] == "text"

    def test_empty_query(self, system):
        assert not system.search_memories("  ", "tenant-a").success

    def test_structured_filters(self, system, memory_factory):
        memory_factory("decision one", category="DECISION", importance="CRITICAL", tags=["db"])
        memory_factory("warning one", category="WARNING", importance="MINOR", tags=["ui"])
        assert len(system.memories_by_category("decision", "tenant-a").data) == 1
        assert len(system.memories_by_importance("minor", "tenant-a").data) == 1
        assert [m["content"] for m in system.memories_by_tags(["ui"], "tenant-a").data] == [
            "warning one"
        ]
        assert not system.memories_by_category("nonsense", "tenant-a").success

    def test_tag_match_is_exact(self, system, memory_factory):
        exact = memory_factory("underscore tag", tags=["a_b"])
        memory_factory("lookalike tag", tags=["axb"])
        memory_factory("percent tag", tags=["50%"])
        found = system.memories_by_tags(["a_b"], "tenant-a").data
        assert [m["id"] for m in found] == [exact["id"]]
        assert [m["content"] for m in system.memories_by_tags(["50%"], "tenant-a").data] == [
            "percent tag"
        ]
        assert system.memories_by_tags(["%"], "tenant-a").data == []


class TestGraphOperations:

    def test_edge_lifecycle(self, system, memory_factory):
        a = memory_factory("A")["id"]
        b = memory_factory("B")["id"]
        edge = system.create_edge(a, b, "REQUIRES", "tenant-a").data[0]

        neighbors = system.neighbors(a, "tenant-a").data
        assert neighbors == [{"memory_id": b, "type": "REQUIRES", "strength": 0.5}]

        bad = system.update_strength(edge["id"], 1.5, "tenant-a")
        assert not bad.success
        assert system.neighbors(a, "tenant-a").data[0]["strength"] == 0.5

        assert system.delete_edge(a, b, "tenant-a").success
        assert not system.delete_edge(a, b, "tenant-a").success

    def test_edge_to_unknown_memory(self, system, memory_factory):
        a = memory_factory("A")["id"]
        res = system.create_edge(a, "mem_missing", "RELATED_TO", "tenant-a")
        assert not res.success
        assert "not found" in res.reason

    def test_related_memories_skip_deleted(self, system, memory_factory):
        a = memory_factory("A")["id"]
        b = memory_factory("B")["id"]
        c = memory_factory("C")["id"]
        system.create_edge(a, b, "USED_WITH", "tenant-a")
        system.create_edge(b, c, "USED_WITH", "tenant-a")
        system.delete_memory(b, "tenant-a")

        related = system.related_memories(a, "tenant-a", depth=2).data
        assert [r["memory_id"] for r in related] == [c]


class TestCompressionAndStats:

    def test_compression_is_audited(self, system, completion):
        completion.queue_json({"taskGoal": "ship", "keyDecisions": ["x"]})
        messages = [{"role": "user", "content": "z" * 1000} for _ in range(30)]
        result = system.compress(messages, token_threshold=1000,
                                 session_id="s1", tenant_id="tenant-a")
        assert result.compressed
        events = system.recent_audit_events("tenant-a").data
        assert any(e["event_type"] == CONTEXT_COMPRESSED for e in events)
        assert len(system.compression_history("s1", "tenant-a").data) == 1

    def test_should_compress_and_critical(self, system):
        messages = [{"role": "error", "content": "a" * 8}]
        assert system.should_compress(messages, threshold=2)
        assert len(system.identify_critical(messages)) == 1

    def test_statistics(self, system, memory_factory):
        a = memory_factory("one", category="DECISION")["id"]
        b = memory_factory("two", category="WARNING")["id"]
        system.create_edge(a, b, "RELATED_TO", "tenant-a")
        system.record_hindsight_note("tenant-a", "A failure")

        stats = system.get_statistics("tenant-a").data[0]
        assert stats["total_memories"] == 2
        assert stats["total_notes"] == 1
        assert stats["total_relationships"] == 1
        assert stats["by_category"] == {"Decision": 1, "Warning": 1}


class TestVectorIndex:

    def test_chroma_backed_search_and_rebuild(self, tmp_path, completion):
        system = ContextMemorySystem(
            data_folder=tmp_path / "chroma-data",
            embedder=HashEmbedder(),
            completion=completion,
        )
        try:
            memory = system.create_memory(
                "grpc deadline propagation across services", "tenant-a",
                category="KNOWLEDGE", importance="IMPORTANT",
            ).data[0]
            system.create_memory("other tenant data", "tenant-b",
                                 category="KNOWLEDGE", importance="IMPORTANT")

            res = system.search_memories("grpc deadline", "tenant-a")
            assert [m["id"] for m in res.data] == [memory["id"]]

            rebuilt = system.rebuild_vector_index().data[0]
            assert rebuilt["count"] == 2
            assert system.memory_store.integrity_check()["chroma"] == 2
        finally:
            system.close()


class TestConcurrentAccess:

    def test_stores_share_the_connection_lock(self, system):
        stores = (system.memory_store.primary, system.graph,
                  system.note_store, system.summary_store)
        assert all(store._lock is system.sqlite_conn.lock for store in stores)

    def test_writes_from_several_stores_do_not_interfere(self, system, memory_factory):
        a = memory_factory("A")["id"]
        b = memory_factory("B")["id"]
        rounds = 100
        errors = []

        def notes():
            for i in range(rounds):
                system.note_store.record_note("tenant-a", f"Failure {i}",
                                              error_type=f"Error{i}",
                                              error_message=f"boom number {i}")

        def edges():
            for _ in range(rounds):
                system.graph.create_edge(a, b, "USED_WITH", "tenant-a")
                system.graph.neighbors(a, "tenant-a")

        def counters():
            for _ in range(rounds):
                system.memory_store.record_access(b, "tenant-a")

        def run(fn):
            try:
                fn()
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=run, args=(fn,)) for fn in (notes, edges, counters)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert system.note_store.count("tenant-a") == rounds
        assert system.graph.find_edge(a, b, "tenant-a").frequency == rounds
        assert system.memory_store.find_by_id(b, "tenant-a").access_count == rounds
