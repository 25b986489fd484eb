"""
Configuration module for the Context Sentry MCP server.

Contains all configuration constants for storage, embeddings, the completion
service, retrieval limits and compression thresholds.
"""

from pathlib import Path
import os
import warnings


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        warnings.warn(
            f"Invalid {name}={raw!r}, expected an integer. Using {default}.",
            stacklevel=2,
        )
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        warnings.warn(
            f"Invalid {name}={raw!r}, expected a number. Using {default}.",
            stacklevel=2,
        )
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# Data Storage Configuration
# Override the data folder with the CONTEXT_SENTRY_DATA_DIR environment variable.
# Example (bash): export CONTEXT_SENTRY_DATA_DIR="$HOME/.context_sentry"

DATA_FOLDER = Path(
    os.environ.get(
        "CONTEXT_SENTRY_DATA_DIR", str(Path.home() / ".context_sentry")
    )
)

# ChromaDB collection name, shared by every module that touches the vector index
CHROMA_COLLECTION_NAME = "context_sentry_memories"

# Tenant used by the MCP server when a tool call does not name one
DEFAULT_TENANT_ID = os.environ.get("CONTEXT_SENTRY_TENANT", "default")


# ── Embedding Model Configuration ──────────────────────────────────────────
#
# Set MEMORY_EMBEDDING_MODEL to switch presets. Different models produce
# incompatible embedding spaces, so switching requires rebuild_vector_index().
#
# MEMORY_EMBEDDER selects the implementation:
#   "sentence-transformers" (default) -> semantic model from the preset below
#   "hash"                            -> deterministic hash pseudo-embedding,
#                                        no model download, no semantics

EMBEDDING_MODEL_PRESETS = {
    "bge-small-en-v1.5": {
        "model_name": "BAAI/bge-small-en-v1.5",
        "dimensions": 384,
        "max_tokens": 512,
        "query_prefix": "Represent this sentence for searching relevant passages: ",
        "description": "Best quality/size ratio for short technical notes",
    },
    "all-MiniLM-L6-v2": {
        "model_name": "sentence-transformers/all-MiniLM-L6-v2",
        "dimensions": 384,
        "max_tokens": 256,
        "query_prefix": "",
        "description": "Fastest inference, smallest download",
    },
    "all-MiniLM-L12-v2": {
        "model_name": "sentence-transformers/all-MiniLM-L12-v2",
        "dimensions": 384,
        "max_tokens": 256,
        "query_prefix": "",
        "description": "General purpose SBERT model",
    },
    "bge-base-en-v1.5": {
        "model_name": "BAAI/bge-base-en-v1.5",
        "dimensions": 768,
        "max_tokens": 512,
        "query_prefix": "Represent this sentence for searching relevant passages: ",
        "description": "Higher quality, 768 dims, needs a vector rebuild",
    },
    "nomic-embed-text-v1.5": {
        "model_name": "nomic-ai/nomic-embed-text-v1.5",
        "dimensions": 768,
        "max_tokens": 8192,
        "query_prefix": "search_query: ",
        "description": "Long token window for code-heavy memories",
    },
}

EMBEDDING_MODEL = os.environ.get("MEMORY_EMBEDDING_MODEL", "bge-small-en-v1.5")

if EMBEDDING_MODEL not in EMBEDDING_MODEL_PRESETS:
    warnings.warn(
        f"Unknown MEMORY_EMBEDDING_MODEL={EMBEDDING_MODEL!r}. "
        f"Valid options: {list(EMBEDDING_MODEL_PRESETS)}. "
        f"Falling back to 'bge-small-en-v1.5'.",
        stacklevel=2,
    )
    EMBEDDING_MODEL = "bge-small-en-v1.5"
EMBEDDING_MODEL_CONFIG = EMBEDDING_MODEL_PRESETS[EMBEDDING_MODEL]

_REQUIRED_CONFIG_KEYS = {"model_name", "dimensions", "max_tokens", "query_prefix"}
_missing = _REQUIRED_CONFIG_KEYS - set(EMBEDDING_MODEL_CONFIG)
if _missing:
    raise ValueError(
        f"EMBEDDING_MODEL_CONFIG for {EMBEDDING_MODEL!r} is missing keys: {_missing}. "
        f"Each preset must define: {_REQUIRED_CONFIG_KEYS}"
    )

EMBEDDER_KINDS = ("sentence-transformers", "hash")
EMBEDDER_KIND = os.environ.get("MEMORY_EMBEDDER", "sentence-transformers")
if EMBEDDER_KIND not in EMBEDDER_KINDS:
    warnings.warn(
        f"Unknown MEMORY_EMBEDDER={EMBEDDER_KIND!r}. "
        f"Valid options: {list(EMBEDDER_KINDS)}. Falling back to 'sentence-transformers'.",
        stacklevel=2,
    )
    EMBEDDER_KIND = "sentence-transformers"

# Dimensions of the hash pseudo-embedding
HASH_EMBEDDING_DIMENSIONS = _env_int("HASH_EMBEDDING_DIMENSIONS", 384)

# Worker pool for embed_batch and the embedding cache size
EMBEDDING_BATCH_WORKERS = _env_int("EMBEDDING_BATCH_WORKERS", 4)
EMBEDDING_CACHE_SIZE = _env_int("EMBEDDING_CACHE_SIZE", 1024)


# ── Completion Service (OpenAI-compatible chat completions) ────────────────
COMPLETION_API_KEY = os.environ.get("OPENROUTER_API_KEY", "")
COMPLETION_MODEL = os.environ.get("OPENROUTER_MODEL", "x-ai/grok-4-fast")
COMPLETION_BASE_URL = os.environ.get(
    "OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1"
)
COMPLETION_TEMPERATURE = _env_float("OPENROUTER_TEMPERATURE", 0.3)
COMPLETION_TIMEOUT_SECONDS = _env_float("COMPLETION_TIMEOUT_SECONDS", 30.0)
COMPLETION_MAX_TOKENS = 4000

SYSTEM_PROMPT = (
    "You are a technical analysis assistant for developers. "
    "Respond only with valid JSON."
)


# ── Relevance Gate ─────────────────────────────────────────────────────────
# Lowercase substrings that make a prompt worth a deeper look
RELEVANCE_TRIGGERS = (
    "agent",
    "service",
    "repository",
    "controller",
    "component",
    "class",
    "create",
    "implement",
    "add",
    "fix",
    "bug",
    "error",
    "pattern",
    "decision",
    "use",
)
RELEVANCE_MIN_PROMPT_LENGTH = 10
RELEVANCE_MAX_TOKENS = 300


# ── Retrieval & Ranking ────────────────────────────────────────────────────
RETRIEVAL_TOP_K = _env_int("RETRIEVAL_TOP_K", 5)
RETRIEVAL_MAX_MEMORIES = 3
RETRIEVAL_MAX_NOTES = 3
ERROR_KEYWORDS = (
    "error",
    "exception",
    "failed",
    "failure",
    "bug",
    "issue",
    "nullpointer",
    "runtime",
    "timeout",
)

# Relationship defaults
RELATIONSHIP_DEFAULT_STRENGTH = 0.5
RELATIONSHIP_MIN_STRENGTH = _env_float("RELATIONSHIP_MIN_STRENGTH", 0.3)
RELATIONSHIP_DETECTION_CANDIDATES = 10
RELATIONSHIP_DETECTION_CONFIDENCE = 0.7
AUTO_DETECT_RELATIONSHIPS = _env_bool("AUTO_DETECT_RELATIONSHIPS", False)


# ── Context Assembly ───────────────────────────────────────────────────────
CHARS_PER_TOKEN = 4
CONTEXT_MAX_CHARS = _env_int("CONTEXT_MAX_CHARS", 8000)
CODE_EXCERPT_MAX_CHARS = 1200
LESSON_MAX_CHARS = 100
REFERENCE_EXCERPT_CHARS = 100


# ── Compression ────────────────────────────────────────────────────────────
COMPRESSION_TOKEN_THRESHOLD = _env_int("COMPRESSION_TOKEN_THRESHOLD", 100_000)
COMPRESSION_RECENT_WINDOW = 10
COMPRESSION_MESSAGE_PREVIEW_CHARS = 500
COMPRESSION_MAX_TOKENS = COMPLETION_MAX_TOKENS


# ── Session Analysis ───────────────────────────────────────────────────────
SESSION_ANALYSIS_MAX_TOKENS = 2000
SESSION_MAX_INSIGHTS = 10
SESSION_MESSAGE_PREVIEW_CHARS = 300
SESSION_SOURCE_TYPE = "SESSION_ANALYSIS"


# ── Audit ──────────────────────────────────────────────────────────────────
AUDIT_ENABLED = _env_bool("AUDIT_ENABLED", True)
AUDIT_FLUSH_TIMEOUT_SECONDS = 5.0
