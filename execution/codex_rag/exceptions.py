"""
Error taxonomy for the CodexAI RAG core.

ValidationError and AccessError are surfaced to the caller without retry.
EmbeddingServiceError is retryable by the caller. DimensionMismatchError is
raised per candidate during ranking and is recovered by skipping it.
"""

from typing import Optional


class RAGError(Exception):
    """Base class for all RAG core errors."""


class ValidationError(RAGError):
    """Malformed input: wrong embedding dimension, empty text, bad parameters."""


class EmbeddingServiceError(RAGError):
    """Upstream embedding service was unreachable or returned malformed output."""

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.provider = provider


class AccessError(RAGError):
    """Tenant-scope violation. Never retried."""

    def __init__(
        self,
        message: str,
        source_type: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.source_type = source_type
        self.tenant_id = tenant_id


class DimensionMismatchError(RAGError):
    """Query vector and candidate embedding have different lengths."""

    def __init__(self, expected: int, actual: int, chunk_id: Optional[str] = None):
        target = f" for chunk {chunk_id}" if chunk_id else ""
        super().__init__(f"Dimension mismatch{target}: expected {expected}, got {actual}")
        self.expected = expected
        self.actual = actual
        self.chunk_id = chunk_id


class RAGTimeoutError(RAGError):
    """An ingestion or search call exceeded its configured timeout."""

    def __init__(self, operation: str, timeout_seconds: float):
        super().__init__(f"{operation} timed out after {timeout_seconds}s")
        self.operation = operation
        self.timeout_seconds = timeout_seconds
