"""Error kinds surfaced to callers.

Every error carries a stable machine-readable ``code`` and a short reason.
Underlying causes stay attached via ``raise ... from`` for logs, but are
never rendered by ``to_dict``.
"""
from typing import Any, Dict


class DocGraphError(Exception):
    """Base class for all user-visible failures."""

    code = "UNEXPECTED_ERROR"
    default_reason = "An unexpected error occurred"

    def __init__(self, reason: str = None):
        self.reason = reason or self.default_reason
        super().__init__(self.reason)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.reason}


class EmptyInputError(DocGraphError):
    code = "EMPTY_INPUT"
    default_reason = "Input must not be empty"


class EmbeddingFailedError(DocGraphError):
    code = "EMBEDDING_FAILED"
    default_reason = "Failed to generate embedding"


class SearchFailedError(DocGraphError):
    code = "SEARCH_FAILED"
    default_reason = "Vector search failed"


class SynthesisFailedError(DocGraphError):
    code = "SYNTHESIS_FAILED"
    default_reason = "Failed to synthesize an answer"


class BackendUnavailableError(DocGraphError):
    """Backend is temporarily unavailable (circuit open or retries exhausted)."""

    code = "BACKEND_UNAVAILABLE"
    default_reason = "Backend temporarily unavailable"

    def __init__(self, reason: str = None, backend: str = None):
        super().__init__(reason)
        self.backend = backend


class CircuitOpenError(BackendUnavailableError):
    """Raised without calling the backend while its circuit is open."""


class OperationCancelledError(DocGraphError):
    code = "OPERATION_CANCELLED"
    default_reason = "Operation was cancelled"


class UnexpectedError(DocGraphError):
    code = "UNEXPECTED_ERROR"
    default_reason = "An unexpected error occurred"


class IndexingFailedError(DocGraphError):
    code = "INDEXING_FAILED"
    default_reason = "Failed to index document"
