"""
Error taxonomy for the context engine.

Components raise these; the facade turns them into failed Result objects,
while the retrieval and compression paths recover from the degraded ones.
"""


class ContextSentryError(Exception):
    """Base class for every error raised by the package."""


class NotFoundError(ContextSentryError):
    """A referenced memory, note or relationship does not exist in the tenant."""

    def __init__(self, kind: str, identifier: str):
        super().__init__(f"{kind} not found: {identifier}")
        self.kind = kind
        self.identifier = identifier


class ValidationError(ContextSentryError):
    """Input rejected up front (out-of-range strength, unknown severity, ...)."""


class ExternalServiceDegraded(ContextSentryError):
    """The completion service timed out, failed, or answered with garbage."""


class PersistenceError(ContextSentryError):
    """A write to a primary store did not happen."""


class EmbeddingError(ContextSentryError):
    """Embedding a text (or one text of a batch) failed."""
