"""
Pipeline — Enums and Pydantic Request/Response Schemas

Covers:
  - Status enums shared by the ORM CHECK constraints, the Job Record Store
    and the HTTP layer
  - Scheduler tick summary (GET|POST /api/v1/cron/process-jobs)
  - Metadata repair request/summary (POST /api/v1/admin/reprocess-metadata)
  - In-flight batch listing (GET /api/v1/admin/batch-status)
  - Structured error bodies
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# State machines
# ---------------------------------------------------------------------------

class DocumentStatus(str, Enum):
    """
    Maps to documents.status.
    Transitions: uploading → queued → processing → completed, any → error
    """
    UPLOADING   = "uploading"
    QUEUED      = "queued"
    PROCESSING  = "processing"
    COMPLETED   = "completed"
    ERROR       = "error"


class JobStatus(str, Enum):
    """
    Maps to document_jobs.status.
    Transitions: queued → processing → completed | failed, processing → queued on retry
    """
    QUEUED      = "queued"
    PROCESSING  = "processing"
    COMPLETED   = "completed"
    FAILED      = "failed"


class ProcessingMethod(str, Enum):
    SYNC  = "sync"
    BATCH = "batch"


class ProcessorVariant(str, Enum):
    """Which extraction processor handles a document."""
    FORM = "form"    # key/value pairs + tables
    OCR  = "ocr"     # plain text detection


# ---------------------------------------------------------------------------
# Scheduler tick
# ---------------------------------------------------------------------------

class TickSummaryResponse(BaseModel):
    """Counts for one scheduler tick."""
    success:   bool = True
    message:   str
    claimed:   int = Field(0, description="Queued jobs claimed this tick")
    submitted: int = Field(0, description="Batch operations submitted this tick")
    completed: int = Field(0, description="Jobs completed this tick (sync or batch)")
    requeued:  int = Field(0, description="Jobs returned to the queue for another attempt")
    failed:    int = Field(0, description="Jobs that exhausted their attempts this tick")
    running:   int = Field(0, description="Batch operations still running")
    errors:    list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Metadata repair
# ---------------------------------------------------------------------------

class ReprocessMetadataRequest(BaseModel):
    document_id: UUID | None = Field(
        None,
        description="Repair one document; omit to repair every completed document with metadata",
    )


class RepairCounts(BaseModel):
    total:   int = 0
    success: int = 0
    errors:  int = 0


class ReprocessMetadataResponse(BaseModel):
    success:             bool
    message:             str
    documents_processed: int
    vectors_updated:     int = 0
    vectors_failed:      int = 0
    errors:              list[str] = Field(default_factory=list)
    summary:             RepairCounts = Field(default_factory=RepairCounts)


# ---------------------------------------------------------------------------
# Batch status listing
# ---------------------------------------------------------------------------

class BatchOperationInfo(BaseModel):
    job_id:             UUID
    document_id:        UUID
    batch_operation_id: str
    attempts:           int
    max_attempts:       int
    started_at:         datetime | None = None
    last_status:        str | None = None


class BatchStatusResponse(BaseModel):
    success:            bool = True
    pending_operations: int
    operations:         list[BatchOperationInfo] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error: may appear in a list."""
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str         = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    Clients should check `error_code` for programmatic handling.
    """
    error_code: str               = Field(..., description="Stable machine-readable code")
    message:    str               = Field(..., description="Human-readable summary")
    details:    list[ErrorDetail] = Field(default_factory=list)
    request_id: str | None        = Field(None, description="Trace ID for log correlation")


class PipelineErrors:
    """Factories for the documented error cases."""

    @staticmethod
    def unauthorized() -> ErrorResponse:
        return ErrorResponse(
            error_code="UNAUTHORIZED",
            message="Missing or invalid scheduler credentials.",
        )

    @staticmethod
    def document_not_found(document_id) -> ErrorResponse:
        return ErrorResponse(
            error_code="DOCUMENT_NOT_FOUND",
            message=f"Document {document_id} does not exist.",
            details=[ErrorDetail(field="document_id", message="Unknown document", code="DOCUMENT_NOT_FOUND")],
        )

    @staticmethod
    def document_not_ready(document_id, status: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="DOCUMENT_NOT_READY",
            message=f"Document {document_id} must be completed before its metadata can be repaired.",
            details=[
                ErrorDetail(
                    field="document_id",
                    message=f"Current status is '{status}'.",
                    code="DOCUMENT_NOT_READY",
                )
            ],
        )

    @staticmethod
    def service_unavailable(message: str) -> ErrorResponse:
        return ErrorResponse(error_code="SERVICE_UNAVAILABLE", message=message)

    @staticmethod
    def internal_error(request_id: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="An unexpected error occurred.",
            request_id=request_id,
        )
