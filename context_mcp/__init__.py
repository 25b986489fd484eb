"""
Context Sentry MCP package.

Memory-augmented context engine for coding assistants: decides when a prompt
needs stored knowledge, retrieves and ranks it, injects it, and compresses
long conversations.
"""

from .config import (
    DATA_FOLDER,
    CHROMA_COLLECTION_NAME,
    DEFAULT_TENANT_ID,
    EMBEDDING_MODEL,
    EMBEDDING_MODEL_CONFIG,
    EMBEDDING_MODEL_PRESETS,
)
from .errors import (
    ContextSentryError,
    NotFoundError,
    ValidationError,
    ExternalServiceDegraded,
    PersistenceError,
    EmbeddingError,
)
from .models import (
    Memory,
    HindsightNote,
    MemoryRelationship,
    Message,
    InterceptResult,
    CompressedResult,
    Result,
)
from .memory_system import ContextMemorySystem
from .mcp_tools import register_tools, jsonify_result

__all__ = [
    "DATA_FOLDER",
    "CHROMA_COLLECTION_NAME",
    "DEFAULT_TENANT_ID",
    "EMBEDDING_MODEL",
    "EMBEDDING_MODEL_CONFIG",
    "EMBEDDING_MODEL_PRESETS",
    "ContextSentryError",
    "NotFoundError",
    "ValidationError",
    "ExternalServiceDegraded",
    "PersistenceError",
    "EmbeddingError",
    "Memory",
    "HindsightNote",
    "MemoryRelationship",
    "Message",
    "InterceptResult",
    "CompressedResult",
    "Result",
    "ContextMemorySystem",
    "register_tools",
    "jsonify_result",
]
