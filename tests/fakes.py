"""
In-memory collaborators for pipeline tests.

InMemoryJobStore follows the same conditional-update contract as
SqlJobStore: every transition checks the state it expects and returns
None / False when the check fails. None of its methods await between the
check and the write, so interleaved coroutines see the same atomicity a
single UPDATE gives.
"""

from __future__ import annotations

import dataclasses
import json
import uuid
from datetime import datetime, timedelta
from uuid import UUID

from docpipeline.core.errors import ExtractionServiceError, VectorStoreError
from docpipeline.extraction.base import (
    ExtractedDocument,
    ExtractionClient,
    FormField,
    OperationState,
    OperationStatus,
    PageText,
)
from docpipeline.pipeline.store import (
    DocumentRecord,
    EmbeddingRow,
    FieldRow,
    JobRecord,
    JobStore,
    datetime_now,
)
from docpipeline.processing.embeddings import EmbeddingResult
from docpipeline.schemas.pipeline import ProcessingMethod, ProcessorVariant
from docpipeline.storage.s3 import S3Object
from docpipeline.vectorstore.base import QueryResult, VectorRecord, VectorStoreBase

KB = 1024
MB = 1024 * 1024


def make_extracted(
    pages: int,
    *,
    words_per_page: int = 60,
    processor: ProcessorVariant = ProcessorVariant.OCR,
    fields: list[FormField] | None = None,
) -> ExtractedDocument:
    """Extraction result with one short paragraph per page."""
    return ExtractedDocument(
        pages=[
            PageText(
                page_number=n,
                text=" ".join(f"page{n}word{i}." if i % 12 == 11 else f"page{n}word{i}" for i in range(words_per_page)),
            )
            for n in range(1, pages + 1)
        ],
        processor=processor,
        fields=fields or [],
        page_count=pages,
    )


# ---------------------------------------------------------------------------
# Job Record Store
# ---------------------------------------------------------------------------

class InMemoryJobStore(JobStore):

    def __init__(self) -> None:
        self.documents:  dict[UUID, DocumentRecord] = {}
        self.jobs:       dict[UUID, JobRecord] = {}
        self.embeddings: dict[UUID, list[EmbeddingRow]] = {}
        self.field_rows: dict[UUID, list[FieldRow]] = {}
        self.structured: dict[UUID, dict | None] = {}
        self.progress:   list[tuple[UUID, str, int, str | None]] = []
        self._clock = 0

    # -- seeding ------------------------------------------------------------

    def add_document(
        self,
        *,
        filename: str = "quarterly_report.pdf",
        file_size: int = 500 * KB,
        page_count: int | None = None,
        metadata: dict | None = None,
        status: str = "queued",
    ) -> DocumentRecord:
        doc_id = uuid.uuid4()
        doc = DocumentRecord(
            id=doc_id,
            user_id=uuid.uuid4(),
            filename=filename,
            file_path=f"uploads/{doc_id}/{filename}",
            file_size=file_size,
            status=status,
            title=filename,
            page_count=page_count,
            metadata=metadata,
        )
        self.documents[doc_id] = doc
        return doc

    def add_job(self, document_id: UUID, *, max_attempts: int = 3, priority: int = 0) -> JobRecord:
        self._clock += 1
        job = JobRecord(
            id=uuid.uuid4(),
            document_id=document_id,
            status="queued",
            max_attempts=max_attempts,
            priority=priority,
            created_at=datetime(2024, 1, 1) + timedelta(seconds=self._clock),
        )
        self.jobs[job.id] = job
        return job

    def _copy(self, job: JobRecord) -> JobRecord:
        return dataclasses.replace(job, metadata=dict(job.metadata))

    def _fail_document(self, document_id: UUID, error: str) -> None:
        doc = self.documents.get(document_id)
        if doc is not None and doc.status != "completed":
            doc.status = "error"
            doc.processing_error = error
        self.progress.append((document_id, "error", 100, error))

    # -- jobs ---------------------------------------------------------------

    async def get_job(self, job_id):
        job = self.jobs.get(job_id)
        return self._copy(job) if job else None

    async def list_queued(self, limit):
        queued = [j for j in self.jobs.values() if j.status == "queued"]
        queued.sort(key=lambda j: (-j.priority, j.created_at))
        return [self._copy(j) for j in queued[:limit]]

    async def list_in_flight_batches(self):
        return [
            self._copy(j) for j in self.jobs.values()
            if j.status == "processing" and j.processing_method == "batch" and j.batch_operation_id
        ]

    async def list_stale_sync(self, started_before):
        return [
            self._copy(j) for j in self.jobs.values()
            if j.status == "processing" and j.batch_operation_id is None
            and j.started_at is not None and j.started_at < started_before
        ]

    async def claim(self, job_id):
        job = self.jobs.get(job_id)
        if job is None or job.status != "queued":
            return None
        if any(j.document_id == job.document_id and j.status == "processing" for j in self.jobs.values()):
            return None
        job.status = "processing"
        job.attempts += 1
        job.started_at = datetime_now()
        job.lease_acquired_at = None
        return self._copy(job)

    async def set_processing_method(self, job_id, method: ProcessingMethod):
        job = self.jobs.get(job_id)
        if job is None or job.status != "processing" or job.batch_operation_id is not None:
            return False
        job.processing_method = method.value
        return True

    async def record_submission(self, job_id, operation_id, metadata):
        job = self.jobs.get(job_id)
        if job is None or job.status != "processing" or job.batch_operation_id is not None:
            return False
        job.processing_method = "batch"
        job.batch_operation_id = operation_id
        job.metadata = {**job.metadata, **metadata}
        job.error_message = None
        return True

    async def note_operation_status(self, job_id, operation_id, raw_status):
        job = self.jobs.get(job_id)
        if job is None or job.status != "processing" or job.batch_operation_id != operation_id:
            return False
        job.metadata = {**job.metadata, "operation_status": raw_status}
        return True

    async def acquire_lease(self, job_id, operation_id, stale_before):
        job = self.jobs.get(job_id)
        if job is None or job.status != "processing" or job.batch_operation_id != operation_id:
            return None
        if job.lease_acquired_at is not None and job.lease_acquired_at >= stale_before:
            return None
        job.lease_acquired_at = datetime_now()
        return self._copy(job)

    async def release_lease(self, job_id, error, *, lease=None):
        job = self.jobs.get(job_id)
        if job is None or job.status != "processing" or job.lease_acquired_at is None:
            return None
        if lease is not None and job.lease_acquired_at != lease:
            return None
        job.attempts += 1
        job.lease_acquired_at = None
        job.error_message = error
        if job.attempts >= job.max_attempts:
            job.status = "failed"
            job.completed_at = datetime_now()
            self._fail_document(job.document_id, error)
        return self._copy(job)

    async def release_for_retry(self, job_id, error, *, expected_operation=None, consume_attempt=False, terminal=False):
        job = self.jobs.get(job_id)
        if job is None or job.status != "processing":
            return None
        if expected_operation is not None and job.batch_operation_id != expected_operation:
            return None
        job.attempts += 1 if consume_attempt else 0
        job.lease_acquired_at = None
        job.error_message = error
        if terminal or job.attempts >= job.max_attempts:
            job.status = "failed"
            job.completed_at = datetime_now()
            self._fail_document(job.document_id, error)
        else:
            job.status = "queued"
            job.batch_operation_id = None
        return self._copy(job)

    async def complete_job(self, job_id, document_id, notes=None, *, lease=None):
        job = self.jobs.get(job_id)
        if job is None or job.status != "processing":
            return False
        if lease is not None and job.lease_acquired_at != lease:
            return False
        job.status = "completed"
        job.completed_at = datetime_now()
        job.lease_acquired_at = None
        job.error_message = None
        doc = self.documents[document_id]
        if doc.status in ("queued", "processing"):
            doc.status = "completed"
            doc.processing_error = None
            doc.processing_notes = notes
        return True

    # -- documents ----------------------------------------------------------

    async def get_document(self, document_id):
        doc = self.documents.get(document_id)
        if doc is None:
            return None
        return dataclasses.replace(doc, metadata=dict(doc.metadata) if doc.metadata is not None else None)

    async def mark_document_processing(self, document_id):
        doc = self.documents.get(document_id)
        if doc is None or doc.status not in ("uploading", "queued", "processing"):
            return False
        doc.status = "processing"
        return True

    async def set_page_count(self, document_id, page_count):
        self.documents[document_id].page_count = page_count

    async def save_extraction(self, document_id, *, text, fields, page_count, field_rows):
        doc = self.documents[document_id]
        doc.extracted_text = text
        if page_count:
            doc.page_count = page_count
        self.structured[document_id] = fields
        self.field_rows[document_id] = list(field_rows)

    async def merge_document_metadata(self, document_id, patch):
        doc = self.documents.get(document_id)
        if doc is None:
            return {}
        doc.metadata = {**(doc.metadata or {}), **patch}
        return dict(doc.metadata)

    async def drop_document_metadata_keys(self, document_id, keys):
        doc = self.documents.get(document_id)
        if doc is None or doc.metadata is None:
            return None
        doc.metadata = {k: v for k, v in doc.metadata.items() if k not in set(keys)}
        return dict(doc.metadata)

    async def list_repairable_documents(self):
        return [
            await self.get_document(d.id) for d in self.documents.values()
            if d.status == "completed" and d.metadata is not None
        ]

    # -- embeddings ---------------------------------------------------------

    async def replace_embeddings(self, document_id, rows):
        previous = [r.vector_id for r in self.embeddings.get(document_id, [])]
        self.embeddings[document_id] = list(rows)
        return previous

    async def list_embeddings(self, document_id):
        return sorted(self.embeddings.get(document_id, []), key=lambda r: r.chunk_index)

    # -- progress -----------------------------------------------------------

    async def record_progress(self, document_id, status, progress, message=None):
        self.progress.append((document_id, status, progress, message))


# ---------------------------------------------------------------------------
# Object storage
# ---------------------------------------------------------------------------

class FakeStorage:
    """Dict-backed stand-in for S3StorageService."""

    def __init__(self, bucket: str = "test-bucket") -> None:
        self.bucket = bucket
        self.objects: dict[str, bytes] = {}
        self.fail_deletes = False
        self.fail_gets: set[str] = set()

    def uri(self, key: str) -> str:
        return f"s3://{self.bucket}/{key}"

    async def put_object(self, key, body, content_type=None, metadata=None):
        self.objects[key] = body
        return S3Object(
            key=key, bucket=self.bucket, size_bytes=len(body),
            content_type=content_type or "application/octet-stream", etag="etag",
        )

    async def get_object(self, key):
        if key in self.fail_gets:
            raise ConnectionError(f"network error reading {key}")
        if key not in self.objects:
            raise FileNotFoundError(f"Object not found: {key}")
        return self.objects[key]

    async def list_objects(self, prefix):
        return [{"Key": k, "Size": len(v)} for k, v in sorted(self.objects.items()) if k.startswith(prefix)]

    async def delete_prefix(self, prefix):
        if self.fail_deletes:
            raise ConnectionError("delete failed")
        keys = [k for k in self.objects if k.startswith(prefix)]
        for k in keys:
            del self.objects[k]
        return len(keys)

    def keys_under(self, prefix: str) -> list[str]:
        return [k for k in self.objects if k.startswith(prefix)]


# ---------------------------------------------------------------------------
# Extraction service
# ---------------------------------------------------------------------------

class FakeExtractionClient(ExtractionClient):
    """
    sync_result        : ExtractedDocument or exception returned by process()
    batch_result       : ExtractedDocument returned by load_batch_output()
    operation_script   : states each new operation reports, one per poll;
                         the last state repeats
    """

    def __init__(self) -> None:
        self.sync_result: ExtractedDocument | Exception = make_extracted(5)
        self.batch_result: ExtractedDocument = make_extracted(45)
        self.operation_script: list[OperationState] = [OperationState.RUNNING, OperationState.SUCCEEDED]
        self.submit_error: Exception | None = None
        self.process_calls = 0
        self.submit_calls: list[dict] = []
        self.status_calls: list[str] = []
        self.loaded_prefixes: list[str] = []
        self._ops_by_token: dict[str, str] = {}
        self._scripts: dict[str, list[OperationState]] = {}
        self._storage: FakeStorage | None = None

    def attach(self, storage: FakeStorage) -> "FakeExtractionClient":
        """Write result files into storage on submission, as the real service does."""
        self._storage = storage
        return self

    @property
    def operations(self) -> list[str]:
        return list(self._scripts)

    async def process(self, document_bytes, processor):
        self.process_calls += 1
        if isinstance(self.sync_result, Exception):
            raise self.sync_result
        return self.sync_result

    async def submit_batch(self, *, bucket, input_key, output_prefix, processor, idempotency_token):
        self.submit_calls.append({
            "bucket": bucket, "input_key": input_key, "output_prefix": output_prefix,
            "processor": processor, "token": idempotency_token,
        })
        if self.submit_error is not None:
            raise self.submit_error
        if idempotency_token in self._ops_by_token:
            return self._ops_by_token[idempotency_token]
        op_id = f"op-{len(self._ops_by_token) + 1}"
        self._ops_by_token[idempotency_token] = op_id
        self._scripts[op_id] = list(self.operation_script)
        if self._storage is not None:
            self._storage.objects[f"{output_prefix}{op_id}/.s3_access_check"] = b""
            self._storage.objects[f"{output_prefix}{op_id}/1"] = json.dumps({"Blocks": []}).encode()
        return op_id

    async def get_operation(self, operation_id, processor):
        self.status_calls.append(operation_id)
        script = self._scripts[operation_id]
        state = script.pop(0) if len(script) > 1 else script[0]
        raw = {"RUNNING": "IN_PROGRESS", "SUCCEEDED": "SUCCEEDED", "FAILED": "FAILED"}[state.value]
        return OperationStatus(
            state=state,
            raw_status=raw,
            error="Textract job failed: InvalidImageFormat" if state is OperationState.FAILED else None,
        )

    async def load_batch_output(self, storage, output_prefix, processor):
        self.loaded_prefixes.append(output_prefix)
        if not await storage.list_objects(output_prefix):
            raise ExtractionServiceError(f"No batch output found under {output_prefix}")
        return self.batch_result


# ---------------------------------------------------------------------------
# Embeddings and vector index
# ---------------------------------------------------------------------------

class FakeEmbedder:
    """Deterministic vectors; chunks whose provisional index is in fail_indices fail."""

    def __init__(self, fail_indices: set[int] | None = None, fail_all: bool = False) -> None:
        self.fail_indices = fail_indices or set()
        self.fail_all = fail_all
        self.calls = 0

    async def embed_chunks(self, chunks):
        self.calls += 1
        result = EmbeddingResult(embedded=[])
        for chunk in chunks:
            if self.fail_all or chunk.chunk_index in self.fail_indices:
                result.failed.append(chunk.chunk_index)
                result.errors.append(f"chunk {chunk.chunk_index}: BadRequestError: input rejected")
            else:
                result.embedded.append((chunk, [float(chunk.chunk_index), 0.5, 1.0]))
        return result


class FakeVectorStore(VectorStoreBase):

    def __init__(self) -> None:
        self.records: dict[str, VectorRecord] = {}
        self.fail_ids: set[str] = set()
        self.fail_all = False
        self.upsert_calls = 0
        self.deleted: list[str] = []

    async def upsert(self, records, batch_size=100):
        self.upsert_calls += 1
        if self.fail_all:
            raise VectorStoreError("index unavailable")
        for rec in records:
            if rec.id in self.fail_ids:
                raise VectorStoreError(f"upsert rejected for {rec.id}")
        for rec in records:
            self.records[rec.id] = VectorRecord(id=rec.id, vector=list(rec.vector), metadata=dict(rec.metadata))
        return len(records)

    async def query(self, vector, top_k=5, filter=None):
        results = []
        for rec in self.records.values():
            if filter and any(
                (rec.metadata.get(k) not in v) if isinstance(v, list) else rec.metadata.get(k) != v
                for k, v in filter.items()
            ):
                continue
            results.append(QueryResult(id=rec.id, score=1.0, metadata=rec.metadata))
        return results[:top_k]

    async def delete(self, ids):
        for vid in ids:
            self.records.pop(vid, None)
            self.deleted.append(vid)

    def for_document(self, document_id) -> list[VectorRecord]:
        return sorted(
            (r for r in self.records.values() if r.metadata.get("document_id") == str(document_id)),
            key=lambda r: r.metadata["chunk_index"],
        )
