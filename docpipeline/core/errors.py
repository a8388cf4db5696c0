"""
Domain exceptions shared by the pipeline, its collaborators and the API.

The pipeline converts these into job-state transitions at job granularity;
the API layer maps the request-facing ones to HTTP status codes in main.py.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for every error raised by docpipeline."""

    retryable: bool = True


class ExtractionServiceError(PipelineError):
    """The extraction service rejected or failed a request."""

    def __init__(self, message: str, *, code: str = "", retryable: bool = True) -> None:
        super().__init__(message)
        self.code = code
        self.retryable = retryable


class PageLimitExceeded(ExtractionServiceError):
    """
    The service refused the document because of its size or page count.

    Not retryable as-is: the same request fails the same way. From the
    synchronous endpoint it means "use batch instead".
    """

    def __init__(self, message: str, *, code: str = "") -> None:
        super().__init__(message, code=code, retryable=False)


class StorageError(PipelineError):
    """Object storage call failed for a reason other than a missing key."""


class VectorStoreError(PipelineError):
    """Vector index write or delete failed."""


class EmbeddingError(PipelineError):
    """No chunk of a document could be embedded."""


class ServiceUnavailable(PipelineError):
    """A circuit breaker is open for the named service."""

    def __init__(self, service: str, retry_in: float) -> None:
        super().__init__(f"{service} unavailable (circuit open, retry in {retry_in:.0f}s)")
        self.service = service
        self.retry_in = retry_in


class DocumentNotFound(PipelineError):
    retryable = False

    def __init__(self, document_id) -> None:
        super().__init__(f"Document not found: {document_id}")
        self.document_id = document_id


class DocumentNotReady(PipelineError):
    """Raised when an operation needs a completed document."""

    retryable = False

    def __init__(self, document_id, status: str) -> None:
        super().__init__(f"Document {document_id} is not completed (status={status})")
        self.document_id = document_id
        self.status = status
