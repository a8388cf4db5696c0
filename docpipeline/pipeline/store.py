"""
Job Record Store — the single arbitration point for pipeline concurrency.

Every state change is a conditional UPDATE guarded by the state the caller
expects to find ("compare and swap"). When the guard does not match, zero
rows come back and the caller treats the step as already done by another
tick. There is no in-process bookkeeping of "jobs I am working on".

Attempt accounting:
  - claim() consumes an attempt (queued → processing, attempts + 1). It
    refuses while another job of the same document is processing.
  - A failure on a claimed job returns it to queued, or to failed once
    attempts >= max_attempts (release_for_retry).
  - A reconciliation failure on a finished batch operation keeps the job in
    processing with its operation handle, consuming one more attempt
    (release_lease), so the next tick retries from the same output.
  - A job that reaches failed takes its document to error in the same
    transaction.

JobStore is the interface; SqlJobStore is the PostgreSQL implementation.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable
from uuid import UUID

from sqlalchemy import and_, case, delete, exists, null, or_, select, true, update
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from docpipeline.models.documents import (
    Document,
    DocumentEmbedding,
    DocumentJob,
    ExtractedField,
    ProcessingStatusEvent,
)
from docpipeline.schemas.pipeline import DocumentStatus, JobStatus, ProcessingMethod

logger = logging.getLogger(__name__)

# Document statuses from which each target status may be reached
_DOCUMENT_PREDECESSORS: dict[DocumentStatus, tuple[str, ...]] = {
    DocumentStatus.PROCESSING: ("uploading", "queued", "processing"),
    DocumentStatus.COMPLETED:  ("queued", "processing"),
}


def datetime_now() -> datetime:
    """Timezone-aware UTC now; the single clock used for job timestamps."""
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Records: plain snapshots handed to pipeline components
# ---------------------------------------------------------------------------

@dataclass
class DocumentRecord:
    id:               UUID
    user_id:          UUID
    filename:         str
    file_path:        str
    file_size:        int
    status:           str
    title:            str = ""
    content_type:     str = "application/pdf"
    page_count:       int | None = None
    metadata:         dict | None = None
    extracted_text:   str | None = None
    processing_error: str | None = None
    processing_notes: str | None = None


@dataclass
class JobRecord:
    id:                 UUID
    document_id:        UUID
    status:             str
    attempts:           int = 0
    max_attempts:       int = 3
    priority:           int = 0
    processing_method:  str | None = None
    batch_operation_id: str | None = None
    metadata:           dict = field(default_factory=dict)
    error_message:      str | None = None
    started_at:         datetime | None = None
    completed_at:       datetime | None = None
    lease_acquired_at:  datetime | None = None
    created_at:         datetime | None = None

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts


@dataclass
class EmbeddingRow:
    vector_id:   str
    chunk_index: int
    chunk_text:  str
    embedding:   list[float]
    page_number: int | None = None


@dataclass
class FieldRow:
    name:        str
    value:       str | None
    field_type:  str = "text"
    confidence:  float | None = None
    page_number: int | None = None


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------

class JobStore(ABC):
    """Durable job/document state with conditional transitions."""

    # -- jobs ---------------------------------------------------------------

    @abstractmethod
    async def get_job(self, job_id: UUID) -> JobRecord | None: ...

    @abstractmethod
    async def list_queued(self, limit: int) -> list[JobRecord]:
        """Queued jobs, highest priority first, then oldest first."""

    @abstractmethod
    async def list_in_flight_batches(self) -> list[JobRecord]:
        """processing + batch + operation handle recorded."""

    @abstractmethod
    async def list_stale_sync(self, started_before: datetime) -> list[JobRecord]:
        """processing jobs without an operation handle claimed before the cutoff."""

    @abstractmethod
    async def claim(self, job_id: UUID) -> JobRecord | None:
        """
        queued → processing; consumes an attempt.

        None if another tick won, or while another job of the same document
        is processing (at most one processing job per document).
        """

    @abstractmethod
    async def set_processing_method(self, job_id: UUID, method: ProcessingMethod) -> bool: ...

    @abstractmethod
    async def record_submission(self, job_id: UUID, operation_id: str, metadata: dict) -> bool:
        """Store the operation handle; only succeeds while no handle is recorded."""

    @abstractmethod
    async def note_operation_status(self, job_id: UUID, operation_id: str, raw_status: str) -> bool: ...

    @abstractmethod
    async def acquire_lease(
        self, job_id: UUID, operation_id: str, stale_before: datetime,
    ) -> JobRecord | None:
        """Reserve a finished batch job for reconciliation."""

    @abstractmethod
    async def release_lease(
        self, job_id: UUID, error: str, *, lease: datetime | None = None,
    ) -> JobRecord | None:
        """Reconciliation failed: consume an attempt, keep the handle. lease as in complete_job."""

    @abstractmethod
    async def release_for_retry(
        self,
        job_id: UUID,
        error: str,
        *,
        expected_operation: str | None = None,
        consume_attempt: bool = False,
        terminal: bool = False,
    ) -> JobRecord | None:
        """
        processing → queued (handle cleared) or → failed when exhausted.

        terminal=True fails the job regardless of remaining attempts.
        """

    @abstractmethod
    async def complete_job(
        self,
        job_id: UUID,
        document_id: UUID,
        notes: str | None = None,
        *,
        lease: datetime | None = None,
    ) -> bool:
        """
        processing → completed for the job and its document, atomically.

        With lease set, only while the job still holds that reconciliation lease.
        """

    # -- documents ----------------------------------------------------------

    @abstractmethod
    async def get_document(self, document_id: UUID) -> DocumentRecord | None: ...

    @abstractmethod
    async def mark_document_processing(self, document_id: UUID) -> bool: ...

    @abstractmethod
    async def set_page_count(self, document_id: UUID, page_count: int) -> None: ...

    @abstractmethod
    async def save_extraction(
        self,
        document_id: UUID,
        *,
        text: str,
        fields: dict | None,
        page_count: int | None,
        field_rows: list[FieldRow],
    ) -> None: ...

    @abstractmethod
    async def merge_document_metadata(self, document_id: UUID, patch: dict) -> dict:
        """Shallow-merge patch into the document metadata; returns the result."""

    @abstractmethod
    async def drop_document_metadata_keys(self, document_id: UUID, keys: Iterable[str]) -> dict | None:
        """Remove keys from the document metadata; returns the result."""

    @abstractmethod
    async def list_repairable_documents(self) -> list[DocumentRecord]:
        """Completed documents whose metadata is not null."""

    # -- embeddings ---------------------------------------------------------

    @abstractmethod
    async def replace_embeddings(self, document_id: UUID, rows: list[EmbeddingRow]) -> list[str]:
        """Swap the document's embedding rows; returns the previous vector ids."""

    @abstractmethod
    async def list_embeddings(self, document_id: UUID) -> list[EmbeddingRow]: ...

    # -- progress feed ------------------------------------------------------

    @abstractmethod
    async def record_progress(
        self, document_id: UUID, status: str, progress: int, message: str | None = None,
    ) -> None: ...


# ---------------------------------------------------------------------------
# PostgreSQL implementation
# ---------------------------------------------------------------------------

def _job_record(row: DocumentJob) -> JobRecord:
    return JobRecord(
        id=row.id,
        document_id=row.document_id,
        status=row.status,
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        priority=row.priority,
        processing_method=row.processing_method,
        batch_operation_id=row.batch_operation_id,
        metadata=dict(row.job_metadata or {}),
        error_message=row.error_message,
        started_at=row.started_at,
        completed_at=row.completed_at,
        lease_acquired_at=row.lease_acquired_at,
        created_at=row.created_at,
    )


def _document_record(row: Document) -> DocumentRecord:
    return DocumentRecord(
        id=row.id,
        user_id=row.user_id,
        filename=row.filename,
        file_path=row.file_path,
        file_size=row.file_size,
        status=row.status,
        title=row.title,
        content_type=row.content_type,
        page_count=row.page_count,
        metadata=dict(row.doc_metadata) if row.doc_metadata is not None else None,
        extracted_text=row.extracted_text,
        processing_error=row.processing_error,
        processing_notes=row.processing_notes,
    )


class SqlJobStore(JobStore):
    """
    JobStore over SQLAlchemy async sessions.

    session_factory returns an async context manager yielding a session
    inside an open transaction (docpipeline.db.session.get_session).
    Each method is its own transaction.
    """

    def __init__(self, session_factory: Callable) -> None:
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    async def _update_job(session: AsyncSession, stmt) -> JobRecord | None:
        result = await session.execute(
            stmt.returning(DocumentJob).execution_options(synchronize_session=False)
        )
        row = result.scalars().first()
        return _job_record(row) if row is not None else None

    @staticmethod
    async def _fail_document(session: AsyncSession, document_id: UUID, error: str) -> None:
        await session.execute(
            update(Document)
            .where(Document.id == document_id, Document.status != DocumentStatus.COMPLETED.value)
            .values(status=DocumentStatus.ERROR.value, processing_error=error)
            .execution_options(synchronize_session=False)
        )
        session.add(ProcessingStatusEvent(
            document_id=document_id,
            status=DocumentStatus.ERROR.value,
            progress=100,
            message=error,
        ))

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def get_job(self, job_id: UUID) -> JobRecord | None:
        async with self._session_factory() as session:
            row = await session.get(DocumentJob, job_id)
            return _job_record(row) if row is not None else None

    async def list_queued(self, limit: int) -> list[JobRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(DocumentJob)
                .where(DocumentJob.status == JobStatus.QUEUED.value)
                .order_by(DocumentJob.priority.desc(), DocumentJob.created_at.asc())
                .limit(limit)
            )
            return [_job_record(r) for r in result.scalars().all()]

    async def list_in_flight_batches(self) -> list[JobRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(DocumentJob)
                .where(
                    DocumentJob.status == JobStatus.PROCESSING.value,
                    DocumentJob.processing_method == ProcessingMethod.BATCH.value,
                    DocumentJob.batch_operation_id.is_not(None),
                )
                .order_by(DocumentJob.started_at.asc())
            )
            return [_job_record(r) for r in result.scalars().all()]

    async def list_stale_sync(self, started_before: datetime) -> list[JobRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(DocumentJob).where(
                    DocumentJob.status == JobStatus.PROCESSING.value,
                    DocumentJob.batch_operation_id.is_(None),
                    DocumentJob.started_at < started_before,
                )
            )
            return [_job_record(r) for r in result.scalars().all()]

    async def claim(self, job_id: UUID) -> JobRecord | None:
        sibling = aliased(DocumentJob, name="sibling")
        sibling_processing = exists().where(
            sibling.document_id == DocumentJob.document_id,
            sibling.status == JobStatus.PROCESSING.value,
        )
        try:
            async with self._session_factory() as session:
                record = await self._update_job(
                    session,
                    update(DocumentJob)
                    .where(
                        DocumentJob.id == job_id,
                        DocumentJob.status == JobStatus.QUEUED.value,
                        ~sibling_processing,
                    )
                    .values(
                        status=JobStatus.PROCESSING.value,
                        attempts=DocumentJob.attempts + 1,
                        started_at=datetime_now(),
                        lease_acquired_at=None,
                    ),
                )
        except IntegrityError:
            # uq_document_jobs_processing: a concurrent claim for the same document committed first
            logger.info("Claim lost | job=%s another job of the document is processing", job_id)
            return None
        if record is None:
            logger.debug("Claim lost | job=%s", job_id)
        return record

    async def set_processing_method(self, job_id: UUID, method: ProcessingMethod) -> bool:
        async with self._session_factory() as session:
            record = await self._update_job(
                session,
                update(DocumentJob)
                .where(
                    DocumentJob.id == job_id,
                    DocumentJob.status == JobStatus.PROCESSING.value,
                    DocumentJob.batch_operation_id.is_(None),
                )
                .values(processing_method=method.value),
            )
        return record is not None

    async def record_submission(self, job_id: UUID, operation_id: str, metadata: dict) -> bool:
        async with self._session_factory() as session:
            record = await self._update_job(
                session,
                update(DocumentJob)
                .where(
                    DocumentJob.id == job_id,
                    DocumentJob.status == JobStatus.PROCESSING.value,
                    DocumentJob.batch_operation_id.is_(None),
                )
                .values(
                    processing_method=ProcessingMethod.BATCH.value,
                    batch_operation_id=operation_id,
                    job_metadata=DocumentJob.job_metadata.op("||", return_type=JSONB)(metadata),
                    error_message=None,
                ),
            )
        return record is not None

    async def note_operation_status(self, job_id: UUID, operation_id: str, raw_status: str) -> bool:
        async with self._session_factory() as session:
            record = await self._update_job(
                session,
                update(DocumentJob)
                .where(
                    DocumentJob.id == job_id,
                    DocumentJob.status == JobStatus.PROCESSING.value,
                    DocumentJob.batch_operation_id == operation_id,
                )
                .values(job_metadata=DocumentJob.job_metadata.op("||", return_type=JSONB)({"operation_status": raw_status})),
            )
        return record is not None

    async def acquire_lease(
        self, job_id: UUID, operation_id: str, stale_before: datetime,
    ) -> JobRecord | None:
        async with self._session_factory() as session:
            return await self._update_job(
                session,
                update(DocumentJob)
                .where(
                    DocumentJob.id == job_id,
                    DocumentJob.status == JobStatus.PROCESSING.value,
                    DocumentJob.batch_operation_id == operation_id,
                    or_(
                        DocumentJob.lease_acquired_at.is_(None),
                        DocumentJob.lease_acquired_at < stale_before,
                    ),
                )
                .values(lease_acquired_at=datetime_now()),
            )

    async def release_lease(
        self, job_id: UUID, error: str, *, lease: datetime | None = None,
    ) -> JobRecord | None:
        exhausted = DocumentJob.attempts + 1 >= DocumentJob.max_attempts
        held = (
            DocumentJob.lease_acquired_at == lease if lease is not None
            else DocumentJob.lease_acquired_at.is_not(None)
        )
        async with self._session_factory() as session:
            record = await self._update_job(
                session,
                update(DocumentJob)
                .where(
                    DocumentJob.id == job_id,
                    DocumentJob.status == JobStatus.PROCESSING.value,
                    held,
                )
                .values(
                    attempts=DocumentJob.attempts + 1,
                    status=case((exhausted, JobStatus.FAILED.value), else_=JobStatus.PROCESSING.value),
                    completed_at=case((exhausted, datetime_now()), else_=null()),
                    lease_acquired_at=None,
                    error_message=error,
                ),
            )
            if record is not None and record.status == JobStatus.FAILED.value:
                await self._fail_document(session, record.document_id, error)
        return record

    async def release_for_retry(
        self,
        job_id: UUID,
        error: str,
        *,
        expected_operation: str | None = None,
        consume_attempt: bool = False,
        terminal: bool = False,
    ) -> JobRecord | None:
        increment = 1 if consume_attempt else 0
        exhausted = true() if terminal else DocumentJob.attempts + increment >= DocumentJob.max_attempts
        guards = [DocumentJob.id == job_id, DocumentJob.status == JobStatus.PROCESSING.value]
        if expected_operation is not None:
            guards.append(DocumentJob.batch_operation_id == expected_operation)

        async with self._session_factory() as session:
            record = await self._update_job(
                session,
                update(DocumentJob)
                .where(and_(*guards))
                .values(
                    attempts=DocumentJob.attempts + increment,
                    status=case((exhausted, JobStatus.FAILED.value), else_=JobStatus.QUEUED.value),
                    batch_operation_id=case((exhausted, DocumentJob.batch_operation_id), else_=null()),
                    completed_at=case((exhausted, datetime_now()), else_=null()),
                    lease_acquired_at=None,
                    error_message=error,
                ),
            )
            if record is not None and record.status == JobStatus.FAILED.value:
                await self._fail_document(session, record.document_id, error)
        return record

    async def complete_job(
        self,
        job_id: UUID,
        document_id: UUID,
        notes: str | None = None,
        *,
        lease: datetime | None = None,
    ) -> bool:
        guards = [DocumentJob.id == job_id, DocumentJob.status == JobStatus.PROCESSING.value]
        if lease is not None:
            guards.append(DocumentJob.lease_acquired_at == lease)
        async with self._session_factory() as session:
            record = await self._update_job(
                session,
                update(DocumentJob)
                .where(and_(*guards))
                .values(
                    status=JobStatus.COMPLETED.value,
                    completed_at=datetime_now(),
                    lease_acquired_at=None,
                    error_message=None,
                ),
            )
            if record is None:
                return False
            await session.execute(
                update(Document)
                .where(
                    Document.id == document_id,
                    Document.status.in_(_DOCUMENT_PREDECESSORS[DocumentStatus.COMPLETED]),
                )
                .values(
                    status=DocumentStatus.COMPLETED.value,
                    processing_error=None,
                    processing_notes=notes,
                )
                .execution_options(synchronize_session=False)
            )
        return True

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    async def get_document(self, document_id: UUID) -> DocumentRecord | None:
        async with self._session_factory() as session:
            row = await session.get(Document, document_id)
            return _document_record(row) if row is not None else None

    async def mark_document_processing(self, document_id: UUID) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                update(Document)
                .where(
                    Document.id == document_id,
                    Document.status.in_(_DOCUMENT_PREDECESSORS[DocumentStatus.PROCESSING]),
                )
                .values(status=DocumentStatus.PROCESSING.value)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def set_page_count(self, document_id: UUID, page_count: int) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(Document)
                .where(Document.id == document_id)
                .values(page_count=page_count)
                .execution_options(synchronize_session=False)
            )

    async def save_extraction(
        self,
        document_id: UUID,
        *,
        text: str,
        fields: dict | None,
        page_count: int | None,
        field_rows: list[FieldRow],
    ) -> None:
        values: dict = {"extracted_text": text, "extracted_fields": fields}
        if page_count:
            values["page_count"] = page_count
        async with self._session_factory() as session:
            await session.execute(
                update(Document)
                .where(Document.id == document_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.execute(
                delete(ExtractedField).where(ExtractedField.document_id == document_id)
            )
            session.add_all([
                ExtractedField(
                    document_id=document_id,
                    field_name=f.name,
                    field_value=f.value,
                    field_type=f.field_type,
                    confidence=f.confidence,
                    page_number=f.page_number,
                )
                for f in field_rows
            ])

    async def merge_document_metadata(self, document_id: UUID, patch: dict) -> dict:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Document).where(Document.id == document_id).with_for_update()
            )
            row = result.scalars().first()
            if row is None:
                return {}
            merged = {**(row.doc_metadata or {}), **patch}
            row.doc_metadata = merged
            return merged

    async def drop_document_metadata_keys(self, document_id: UUID, keys: Iterable[str]) -> dict | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Document).where(Document.id == document_id).with_for_update()
            )
            row = result.scalars().first()
            if row is None or row.doc_metadata is None:
                return None
            drop = set(keys)
            if drop.isdisjoint(row.doc_metadata):
                return dict(row.doc_metadata)
            remaining = {k: v for k, v in row.doc_metadata.items() if k not in drop}
            row.doc_metadata = remaining
            return remaining

    async def list_repairable_documents(self) -> list[DocumentRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Document)
                .where(
                    Document.status == DocumentStatus.COMPLETED.value,
                    Document.doc_metadata.is_not(None),
                )
                .order_by(Document.created_at.asc())
            )
            return [_document_record(r) for r in result.scalars().all()]

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------

    async def replace_embeddings(self, document_id: UUID, rows: list[EmbeddingRow]) -> list[str]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(DocumentEmbedding.vector_id).where(DocumentEmbedding.document_id == document_id)
            )
            previous = list(result.scalars().all())
            await session.execute(
                delete(DocumentEmbedding).where(DocumentEmbedding.document_id == document_id)
            )
            session.add_all([
                DocumentEmbedding(
                    document_id=document_id,
                    vector_id=r.vector_id,
                    embedding=r.embedding,
                    chunk_text=r.chunk_text,
                    chunk_index=r.chunk_index,
                    page_number=r.page_number,
                )
                for r in rows
            ])
        return previous

    async def list_embeddings(self, document_id: UUID) -> list[EmbeddingRow]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(DocumentEmbedding)
                .where(DocumentEmbedding.document_id == document_id)
                .order_by(DocumentEmbedding.chunk_index.asc())
            )
            return [
                EmbeddingRow(
                    vector_id=r.vector_id,
                    chunk_index=r.chunk_index,
                    chunk_text=r.chunk_text,
                    embedding=list(r.embedding),
                    page_number=r.page_number,
                )
                for r in result.scalars().all()
            ]

    # ------------------------------------------------------------------
    # Progress feed
    # ------------------------------------------------------------------

    async def record_progress(
        self, document_id: UUID, status: str, progress: int, message: str | None = None,
    ) -> None:
        async with self._session_factory() as session:
            session.add(ProcessingStatusEvent(
                document_id=document_id,
                status=status,
                progress=max(0, min(100, progress)),
                message=message,
            ))
