"""
MCP tool handlers module.

Contains all FastMCP tool definitions that wrap the context system operations.
"""

from datetime import datetime
from typing import List, Optional

from .config import RELATIONSHIP_MIN_STRENGTH
from .models import Result


def jsonify_result(res: Result) -> dict:
    """
    Convert Result dataclass to JSON-serializable dict.

    Normalizes datetime objects to ISO strings and ensures all fields are JSON-safe.
    """
    out = {"success": res.success}
    if res.reason is not None:
        out["reason"] = res.reason
    if res.data is not None:
        data = []
        for item in res.data:
            # Ensure we have a plain dict to mutate safely
            obj = dict(item)
            for key, value in obj.items():
                if isinstance(value, datetime):
                    obj[key] = value.isoformat()
            data.append(obj)
        out["data"] = data
    return out


def _split_csv(value: str) -> List[str]:
    return [part.strip() for part in value.split(",") if part.strip()] if value else []


def register_tools(mcp, context_system, default_tenant: str):
    """
    Register all MCP tools with the FastMCP instance.

    Args:
        mcp: FastMCP instance
        context_system: ContextMemorySystem instance
        default_tenant: tenant used when a tool call does not name one
    """

    def tenant(tenant_id: Optional[str]) -> str:
        return tenant_id or default_tenant

    # ── Interception & compression ──────────────────────────────────────

    @mcp.tool
    def intercept_prompt(
        prompt: str,
        session_id: str = "",
        tenant_id: str = "",
        max_tokens: int = 0,
        force_deep_analysis: bool = False,
    ) -> dict:
        """
        Enrich a prompt with relevant stored knowledge before it reaches the model.

        When to use:
        - Before answering a coding request that may depend on earlier decisions,
          known bugs, or project conventions.
        - Whenever the prompt mentions errors, patterns, or "how do we ...".

        Args:
        - prompt (str): The user's prompt.
        - session_id (str, optional): Conversation identifier for auditing.
        - tenant_id (str, optional): Tenant scope. Defaults to the server tenant.
        - max_tokens (int, optional): Budget for injected context. 0 = default budget.
        - force_deep_analysis (bool, optional): Skip the keyword pre-check.

        Returns:
            dict: Dictionary with the following keys:
                - enhanced (bool): Whether context was injected.
                - original_prompt / enhanced_prompt (str)
                - context_injected (str, optional): The injected block.
                - memories_used / notes_used (list): References to what was injected.
                - latency_ms, reasoning, confidence, tokens_injected, llm_calls

        Example triggers:
        - "How should I fix this NullPointerException in the payment service?"
        - "What pattern do we use for retries?"
        """
        result = context_system.intercept(
            prompt,
            session_id or None,
            tenant(tenant_id),
            max_tokens if max_tokens > 0 else None,
            force_deep_analysis,
        )
        return result.to_dict()

    @mcp.tool
    def compress_context(
        messages: List[dict],
        token_threshold: int = 0,
        session_id: str = "",
        tenant_id: str = "",
    ) -> dict:
        """
        Compress a long conversation into a structured summary plus recent messages.

        When to use:
        - The conversation is approaching the context window limit.
        - should_compress_context returned true.

        Args:
        - messages (list): Messages as {"role": ..., "content": ...} objects, oldest first.
        - token_threshold (int, optional): Compress only at or above this estimate.
          0 = server default.
        - session_id (str, optional): When given with a tenant, the summary is archived.
        - tenant_id (str, optional): Tenant scope.

        Returns:
            dict: compressed flag, message and token counts, compression_ratio,
            summary (structured), preserved_messages (summary message + recent tail).
        """
        result = context_system.compress(
            messages,
            token_threshold if token_threshold > 0 else None,
            session_id or None,
            tenant(tenant_id),
        )
        return result.to_dict()

    @mcp.tool
    def should_compress_context(messages: List[dict], threshold: int = 100000) -> dict:
        """
        Check whether a conversation has reached the compression threshold.

        Args:
        - messages (list): Messages as {"role": ..., "content": ...} objects.
        - threshold (int, optional): Token threshold (default 100000).

        Returns:
            dict: {"success": True, "should_compress": bool}
        """
        return {
            "success": True,
            "should_compress": context_system.should_compress(messages, threshold),
        }

    @mcp.tool
    def identify_critical_messages(messages: List[dict], keywords: str = "") -> dict:
        """
        Pick out the messages that must survive compression: error and system
        messages, plus any message containing one of the keywords.

        Args:
        - messages (list): Messages as {"role": ..., "content": ...} objects.
        - keywords (str, optional): Comma-separated keywords, matched case-insensitively.
        """
        critical = context_system.identify_critical(messages, _split_csv(keywords))
        return {"success": True, "data": [m.to_dict() for m in critical]}

    # ── Memories ────────────────────────────────────────────────────────

    @mcp.tool
    def remember_knowledge(
        content: str,
        summary: str = "",
        category: str = "",
        importance: str = "",
        tags: str = "",
        code_example: str = "",
        programming_language: str = "",
        tenant_id: str = "",
    ) -> dict:
        """
        Store a piece of development knowledge (decision, pattern, warning, reference).

        When to use:
        - A design decision was made and its rationale should be kept.
        - A bug was understood and others should be warned about it.
        - The user says "remember this" about code or architecture.

        Args:
        - content (str): Full text to store.
        - summary (str, optional): One-line summary. Generated when omitted.
        - category (str, optional): INSIGHT, DECISION, WARNING, KNOWLEDGE, ACTION,
          CONTEXT or REFERENCE. Classified automatically when omitted.
        - importance (str, optional): CRITICAL, IMPORTANT or MINOR. Classified
          automatically when omitted.
        - tags (str, optional): Comma-separated tags.
        - code_example (str, optional): Code snippet shown with the memory.
        - programming_language (str, optional): Language of the code snippet.
        - tenant_id (str, optional): Tenant scope.

        Returns:
            dict: Dictionary with the following keys:
                - success (bool): Whether the operation succeeded.
                - reason (str, optional): Explanation when the operation fails.
                - data (list, optional): The stored memory.

        Example triggers:
        - "We decided to use optimistic locking for orders because ..."
        - "Remember: never call the billing API without an idempotency key."
        """
        res = context_system.create_memory(
            content,
            tenant(tenant_id),
            summary=summary or None,
            category=category or None,
            importance=importance or None,
            tags=_split_csv(tags),
            code_example=code_example or None,
            programming_language=programming_language or None,
            source_type="mcp",
        )
        return jsonify_result(res)

    @mcp.tool
    def get_memory(memory_id: str, tenant_id: str = "") -> dict:
        """Fetch one memory by id (counts as an access)."""
        return jsonify_result(context_system.get_memory(memory_id, tenant(tenant_id)))

    @mcp.tool
    def update_memory(
        memory_id: str,
        content: Optional[str] = None,
        summary: Optional[str] = None,
        category: Optional[str] = None,
        importance: Optional[str] = None,
        tags: Optional[str] = None,
        change_reason: str = "",
        tenant_id: str = "",
    ) -> dict:
        """
        Update an existing memory. Only provided fields are changed; the previous
        state is kept as a version.

        Args:
        - memory_id (str): ID of the memory to update.
        - content / summary / category / importance (str, optional): New values.
        - tags (str, optional): Comma-separated replacement tags.
        - change_reason (str, optional): Why the memory changed.
        - tenant_id (str, optional): Tenant scope.

        Example triggers:
        - "Actually, we switched from Redis to Memcached, update that decision."
        """
        res = context_system.update_memory(
            memory_id,
            tenant(tenant_id),
            content=content,
            summary=summary,
            category=category,
            importance=importance,
            tags=_split_csv(tags) if tags is not None else None,
            change_reason=change_reason or None,
        )
        return jsonify_result(res)

    @mcp.tool
    def delete_memory(memory_id: str, tenant_id: str = "") -> dict:
        """
        Delete a memory. It disappears from search and injection; its version
        history is kept.

        Example triggers:
        - "Forget that note about the old deploy script."
        """
        return jsonify_result(context_system.delete_memory(memory_id, tenant(tenant_id)))

    @mcp.tool
    def memory_feedback(memory_id: str, helpful: bool, tenant_id: str = "") -> dict:
        """
        Record whether an injected memory helped. Feeds the helpfulness part of
        the relevance score.
        """
        res = context_system.record_feedback(memory_id, tenant(tenant_id), helpful)
        return jsonify_result(res)

    @mcp.tool
    def search_memories(query: str, limit: int = 10, tenant_id: str = "") -> dict:
        """
        Search memories using natural language queries.

        When to use:
        - The user asks what is known about a component, bug, or decision.
        - Default search when no category, importance, or tags are mentioned.

        Args:
        - query (str): Natural language search query.
        - limit (int, optional): Max results to return (default 10).
        - tenant_id (str, optional): Tenant scope.

        Returns:
            dict: success, reason, and data (memories with similarity and match_type).

        Example triggers:
        - "What do we know about the checkout timeout?"
        - "Did we decide anything about pagination?"
        """
        res = context_system.search_memories(query, tenant(tenant_id), limit)
        return jsonify_result(res)

    @mcp.tool
    def search_by_category(category: str, limit: int = 20, tenant_id: str = "") -> dict:
        """
        List memories of one category (INSIGHT, DECISION, WARNING, KNOWLEDGE,
        ACTION, CONTEXT, REFERENCE).

        Example triggers:
        - "Show me all our architecture decisions."
        - "List the warnings we have recorded."
        """
        res = context_system.memories_by_category(category, tenant(tenant_id), limit)
        return jsonify_result(res)

    @mcp.tool
    def search_by_importance(importance: str, limit: int = 20, tenant_id: str = "") -> dict:
        """List memories of one importance level (CRITICAL, IMPORTANT, MINOR)."""
        res = context_system.memories_by_importance(importance, tenant(tenant_id), limit)
        return jsonify_result(res)

    @mcp.tool
    def search_by_tags(tags: str, limit: int = 20, tenant_id: str = "") -> dict:
        """
        Find memories carrying any of the given tags.

        Args:
        - tags (str): Comma-separated tags, e.g., "database, migration".
        - limit (int, optional): Max results to return (default 20).
        """
        res = context_system.memories_by_tags(_split_csv(tags), tenant(tenant_id), limit)
        return jsonify_result(res)

    @mcp.tool
    def memory_history(memory_id: str, tenant_id: str = "") -> dict:
        """Archived versions of a memory, newest first."""
        return jsonify_result(context_system.memory_history(memory_id, tenant(tenant_id)))

    @mcp.tool
    def rollback_memory(memory_id: str, version: int, tenant_id: str = "") -> dict:
        """
        Restore an earlier version of a memory. The rollback is itself recorded
        as a new version.
        """
        res = context_system.rollback_memory(memory_id, version, tenant(tenant_id))
        return jsonify_result(res)

    @mcp.tool
    def compare_memory_versions(memory_id: str, from_version: int, to_version: int,
                                tenant_id: str = "") -> dict:
        """
        Field-level differences between two versions of a memory.

        Args:
        - memory_id (str): The memory.
        - from_version / to_version (int): Archived versions or the current one.

        Returns:
            dict: changed_fields plus {"from": ..., "to": ...} per changed field.
        """
        res = context_system.compare_versions(
            memory_id, from_version, to_version, tenant(tenant_id)
        )
        return jsonify_result(res)

    # ── Hindsight notes ─────────────────────────────────────────────────

    @mcp.tool
    def record_hindsight_note(
        title: str,
        error_type: str = "",
        error_message: str = "",
        error_pattern: str = "",
        severity: str = "MEDIUM",
        resolution: str = "",
        prevention_strategy: str = "",
        lessons_learned: str = "",
        tags: str = "",
        session_id: str = "",
        tenant_id: str = "",
    ) -> dict:
        """
        Record a failure and how it was fixed so it can be prevented next time.

        When to use:
        - An error was resolved after debugging.
        - The same mistake happened again (the existing note's count goes up).

        Args:
        - title (str): Short description of the failure.
        - error_type (str, optional): e.g., "NullPointerException", "timeout".
        - error_message (str, optional): The observed message.
        - error_pattern (str, optional): Regex matching the whole message.
        - severity (str, optional): CRITICAL, HIGH, MEDIUM (default) or LOW.
        - resolution (str, optional): What fixed it.
        - prevention_strategy (str, optional): How to avoid it next time.
        - lessons_learned (str, optional): Free text.
        - tags (str, optional): Comma-separated tags.
        - session_id (str, optional): Conversation identifier.
        - tenant_id (str, optional): Tenant scope.

        Example triggers:
        - "That deadlock was caused by nested transactions, note it down."
        """
        res = context_system.record_hindsight_note(
            tenant(tenant_id),
            title,
            error_type=error_type or None,
            error_message=error_message or None,
            error_pattern=error_pattern or None,
            severity=severity,
            resolution=resolution or None,
            prevention_strategy=prevention_strategy or None,
            lessons_learned=lessons_learned or None,
            tags=_split_csv(tags),
            session_id=session_id or None,
        )
        return jsonify_result(res)

    @mcp.tool
    def search_hindsight_notes(error_message: str, error_type: str = "",
                               tenant_id: str = "") -> dict:
        """
        Find notes for an error, most severe and most recent first.

        Example triggers:
        - "Have we seen 'connection reset by peer' before?"
        """
        res = context_system.search_notes(error_message, tenant(tenant_id), error_type or None)
        return jsonify_result(res)

    @mcp.tool
    def note_prevented_error(note_id: str, tenant_id: str = "") -> dict:
        """Record that following a note's prevention strategy avoided the error."""
        res = context_system.record_prevention_success(note_id, tenant(tenant_id))
        return jsonify_result(res)

    @mcp.tool
    def frequent_errors(tenant_id: str = "") -> dict:
        """Notes that occurred more than once, most frequent first."""
        return jsonify_result(context_system.frequent_errors(tenant(tenant_id)))

    @mcp.tool
    def critical_errors(tenant_id: str = "") -> dict:
        """Notes with CRITICAL or HIGH severity."""
        return jsonify_result(context_system.critical_errors(tenant(tenant_id)))

    # ── Relationships ───────────────────────────────────────────────────

    @mcp.tool
    def create_relationship(from_id: str, to_id: str, relationship_type: str,
                            tenant_id: str = "") -> dict:
        """
        Link two memories. Creating an existing link again reinforces it.

        Args:
        - from_id (str): Source memory ID.
        - to_id (str): Target memory ID.
        - relationship_type (str): USED_WITH, CONFLICTS_WITH, SUPERSEDES,
          RELATED_TO, REQUIRES or PART_OF.
        - tenant_id (str, optional): Tenant scope.
        """
        res = context_system.create_edge(from_id, to_id, relationship_type, tenant(tenant_id))
        return jsonify_result(res)

    @mcp.tool
    def get_neighbors(memory_id: str, min_strength: float = 0.0, tenant_id: str = "") -> dict:
        """Memories linked from this one, strongest first."""
        res = context_system.neighbors(memory_id, tenant(tenant_id), min_strength)
        return jsonify_result(res)

    @mcp.tool
    def related_memories(memory_id: str, min_strength: float = RELATIONSHIP_MIN_STRENGTH,
                         depth: int = 1, tenant_id: str = "") -> dict:
        """
        Walk the relationship graph from a memory.

        Args:
        - memory_id (str): Starting memory.
        - min_strength (float, optional): Ignore weaker links (default 0.3,
          RELATIONSHIP_MIN_STRENGTH).
        - depth (int, optional): How many hops to follow (default 1).
        """
        res = context_system.related_memories(memory_id, tenant(tenant_id), min_strength, depth)
        return jsonify_result(res)

    @mcp.tool
    def delete_relationship(from_id: str, to_id: str, tenant_id: str = "") -> dict:
        """Remove the link from_id -> to_id."""
        return jsonify_result(context_system.delete_edge(from_id, to_id, tenant(tenant_id)))

    @mcp.tool
    def update_relationship_strength(relationship_id: str, strength: float,
                                     tenant_id: str = "") -> dict:
        """Set a link's strength (0.0 to 1.0)."""
        res = context_system.update_strength(relationship_id, strength, tenant(tenant_id))
        return jsonify_result(res)

    @mcp.tool
    def detect_relationships(memory_id: str, tenant_id: str = "") -> dict:
        """Ask the model which similar memories relate to this one and link them."""
        return jsonify_result(context_system.detect_relationships(memory_id, tenant(tenant_id)))

    # ── Maintenance ─────────────────────────────────────────────────────

    @mcp.tool
    def get_statistics(tenant_id: str = "") -> dict:
        """
        Get counts and storage details for a tenant.

        Returns:
            dict: success, and data with total_memories, total_tokens,
            by_category, by_importance, total_notes, total_relationships,
            total_compressions and sqlite_size_mb.
        """
        return jsonify_result(context_system.get_statistics(tenant(tenant_id)))

    @mcp.tool
    def recent_audit_events(limit: int = 50, tenant_id: str = "") -> dict:
        """Most recent audit events (injections, writes, compressions, errors)."""
        return jsonify_result(context_system.recent_audit_events(tenant(tenant_id), limit))

    @mcp.tool
    def compression_history(session_id: str, tenant_id: str = "") -> dict:
        """Archived compression summaries of a conversation, newest first."""
        return jsonify_result(context_system.compression_history(session_id, tenant(tenant_id)))

    # ── Session analysis ────────────────────────────────────────────────

    @mcp.tool
    def analyze_session(
        messages: List[dict],
        session_id: str,
        include_failures: bool = True,
        persist: bool = True,
        tenant_id: str = "",
    ) -> dict:
        """
        Extract decisions, insights and failures from a finished session.

        When to use:
        - At the end of a working session, to keep what was learned.
        - Before discarding a long conversation.

        Args:
        - messages (list): Messages as {"role": ..., "content": ...} objects, oldest first.
        - session_id (str): Session the knowledge is attributed to.
        - include_failures (bool, optional): Also extract failures as hindsight notes.
        - persist (bool, optional): Store the results (default true). False = preview only.
        - tenant_id (str, optional): Tenant scope.

        Returns:
            dict: decisions, insights, failures with totals, plus the ids of the
            memories and notes created.

        Example triggers:
        - "Wrap up this session and remember what we learned"
        - "What did we decide today?"
        """
        res = context_system.analyze_session(
            messages, session_id, tenant(tenant_id), include_failures, persist
        )
        return jsonify_result(res)

    @mcp.tool
    def session_summary(session_id: str, tenant_id: str = "") -> dict:
        """Markdown digest of the memories, notes and compressions of a session."""
        return jsonify_result(context_system.session_summary_markdown(session_id, tenant(tenant_id)))

    @mcp.tool
    def rebuild_vector_index() -> dict:
        """
        Rebuild the vector index from SQLite, re-embedding every memory.

        When to use:
        - After switching the embedding model.
        - When startup logs report a SQLite/ChromaDB count mismatch.
        """
        return jsonify_result(context_system.rebuild_vector_index())
