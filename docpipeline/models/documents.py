"""
SQLAlchemy ORM Models — Documents, Jobs & Embeddings

Using SQLAlchemy mapped classes (2.x style) for full async support.

Status columns are plain TEXT guarded by CHECK constraints; the allowed
values mirror the enums in docpipeline.schemas.pipeline. The pipeline never
writes these rows blindly: every status change goes through a conditional
UPDATE in docpipeline.pipeline.store.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# ---------------------------------------------------------------------------
# Declarative base: shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Document model: documents
# ---------------------------------------------------------------------------

class Document(Base):
    """
    One uploaded file, from upload → extraction → vector indexing.

    State machine (status column):
        uploading:  bytes still being written to object storage
        queued:     a DocumentJob exists, no tick has claimed it yet
        processing: extraction or reconciliation in progress
        completed:  text extracted, chunks embedded and indexed
        error:      terminal failure (see processing_error)

    doc_metadata carries the open-ended business metadata (law_firm,
    fund_manager, jurisdiction, ...) plus the embeddings_skipped /
    embeddings_error flags written by the reconciler.
    """

    __tablename__ = "documents"
    __table_args__ = (
        CheckConstraint(
            "status IN ('uploading', 'queued', 'processing', 'completed', 'error')",
            name="documents_status_check",
        ),
        Index("idx_documents_user_id", "user_id"),
        Index("idx_documents_status",  "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)

    title:     Mapped[str] = mapped_column(Text, nullable=False)
    filename:  Mapped[str] = mapped_column(Text, nullable=False)
    file_path: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Object storage key of the uploaded bytes",
    )
    file_size:    Mapped[int] = mapped_column(BigInteger, nullable=False)
    content_type: Mapped[str] = mapped_column(
        Text, nullable=False, default="application/pdf", server_default="application/pdf",
    )

    status: Mapped[str] = mapped_column(
        Text, nullable=False, default="uploading", server_default="uploading",
    )
    processing_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    processing_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    extracted_text:   Mapped[Optional[str]]  = mapped_column(Text, nullable=True)
    extracted_fields: Mapped[Optional[dict]] = mapped_column(JSONB(none_as_null=True), nullable=True)
    page_count:       Mapped[Optional[int]]  = mapped_column(Integer, nullable=True)

    doc_metadata: Mapped[Optional[dict]] = mapped_column(
        "metadata",                 # PostgreSQL column name stays 'metadata'
        JSONB(none_as_null=True),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return f"<Document id={self.id} status={self.status} file={self.filename!r}>"


# ---------------------------------------------------------------------------
# DocumentJob model: document_jobs
# ---------------------------------------------------------------------------

class DocumentJob(Base):
    """
    One processing attempt for a Document.

    batch_operation_id is only set for batch jobs whose submission was
    durably recorded. lease_acquired_at marks a batch job whose finished
    operation is being reconciled right now; it keeps two overlapping
    ticks from reconciling the same output.
    """

    __tablename__ = "document_jobs"
    __table_args__ = (
        CheckConstraint(
            "status IN ('queued', 'processing', 'completed', 'failed')",
            name="document_jobs_status_check",
        ),
        CheckConstraint(
            "processing_method IS NULL OR processing_method IN ('sync', 'batch')",
            name="document_jobs_method_check",
        ),
        Index("idx_document_jobs_status",      "status", "priority", "created_at"),
        Index("idx_document_jobs_document_id", "document_id"),
        # At most one processing job per document; claim() checks this first
        Index(
            "uq_document_jobs_processing",
            "document_id",
            unique=True,
            postgresql_where=text("status = 'processing'"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    document_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)

    status: Mapped[str] = mapped_column(
        Text, nullable=False, default="queued", server_default="queued",
    )
    job_type: Mapped[str] = mapped_column(
        Text, nullable=False, default="process_document", server_default="process_document",
    )
    priority:     Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    attempts:     Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3, server_default="3")

    error_message:      Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    processing_method:  Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    batch_operation_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    job_metadata: Mapped[dict] = mapped_column(
        "metadata",
        JSONB,
        nullable=False,
        default=dict,
        server_default="{}",
        comment="input/output locations, processor, last raw operation status",
    )

    started_at:        Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at:      Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    lease_acquired_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<DocumentJob id={self.id} document={self.document_id} "
            f"status={self.status} method={self.processing_method} attempts={self.attempts}>"
        )


# ---------------------------------------------------------------------------
# DocumentEmbedding model: document_embeddings
# ---------------------------------------------------------------------------

class DocumentEmbedding(Base):
    """
    One indexed text chunk. vector_id is the key of the mirrored entry in
    the vector index: "<document_id>_chunk_<chunk_index>".
    """

    __tablename__ = "document_embeddings"
    __table_args__ = (
        UniqueConstraint("document_id", "chunk_index", name="uq_document_embeddings_position"),
        UniqueConstraint("vector_id", name="uq_document_embeddings_vector_id"),
        Index("idx_document_embeddings_document_id", "document_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    document_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    vector_id:   Mapped[str]         = mapped_column(Text, nullable=False)
    embedding:   Mapped[list[float]] = mapped_column(ARRAY(Float), nullable=False)
    chunk_text:  Mapped[str]         = mapped_column(Text, nullable=False)
    chunk_index: Mapped[int]         = mapped_column(Integer, nullable=False)
    page_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(),
    )


# ---------------------------------------------------------------------------
# ExtractedField model: extracted_fields
# ---------------------------------------------------------------------------

class ExtractedField(Base):
    """A form field pulled out of a document by the form processor."""

    __tablename__ = "extracted_fields"
    __table_args__ = (
        CheckConstraint(
            "field_type IN ('text', 'number', 'date', 'checkbox')",
            name="extracted_fields_type_check",
        ),
        Index("idx_extracted_fields_document_id", "document_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    document_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    field_name:  Mapped[str]             = mapped_column(Text, nullable=False)
    field_value: Mapped[Optional[str]]   = mapped_column(Text, nullable=True)
    field_type:  Mapped[str]             = mapped_column(Text, nullable=False, default="text")
    confidence:  Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    page_number: Mapped[Optional[int]]   = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(),
    )


# ---------------------------------------------------------------------------
# ProcessingStatusEvent model: processing_status
# ---------------------------------------------------------------------------

class ProcessingStatusEvent(Base):
    """
    Append-only progress feed read by the dashboard.
    progress is a percentage (0-100).
    """

    __tablename__ = "processing_status"
    __table_args__ = (
        CheckConstraint(
            "status IN ('queued', 'processing', 'completed', 'error')",
            name="processing_status_status_check",
        ),
        CheckConstraint("progress BETWEEN 0 AND 100", name="processing_status_progress_check"),
        Index("idx_processing_status_document_id", "document_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    document_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    status:   Mapped[str]           = mapped_column(Text, nullable=False)
    progress: Mapped[int]           = mapped_column(Integer, nullable=False, default=0)
    message:  Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(),
    )
