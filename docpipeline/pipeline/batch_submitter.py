"""
Batch Submitter — stage the document and start a long-running extraction.

Each step is safe to repeat:
  1. copy the source upload to input/<document_id>/<filename>; a retry
     overwrites the same key
  2. start the operation with an idempotency token derived from
     (document id, attempt); a repeated call within the service's token
     window returns the same operation handle
  3. record the handle with a conditional update that only matches while no
     handle is stored, so at most one handle is ever kept for an attempt

A job is only "in flight" once step 3 succeeded. A failure in step 1 or 2
returns the job to the queue through the ordinary retry transition.
"""

from __future__ import annotations

import logging
import uuid

from docpipeline.core.resilience import get_breaker
from docpipeline.extraction.base import ExtractionClient
from docpipeline.pipeline.outcomes import JobOutcome, StepResult, retry_after_failure
from docpipeline.pipeline.store import DocumentRecord, JobRecord, JobStore
from docpipeline.schemas.pipeline import DocumentStatus, JobStatus, ProcessingMethod, ProcessorVariant
from docpipeline.storage.s3 import S3StorageService, batch_input_key, batch_output_prefix

logger = logging.getLogger(__name__)

_TOKEN_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "docpipeline/batch-submission")


def idempotency_token(document_id, attempt: int) -> str:
    """Stable per (document, attempt); 36 chars, within Textract's 64-char limit."""
    return str(uuid.uuid5(_TOKEN_NAMESPACE, f"{document_id}:{attempt}"))


class BatchSubmitter:

    def __init__(
        self,
        store: JobStore,
        storage: S3StorageService,
        client: ExtractionClient,
    ) -> None:
        self._store = store
        self._storage = storage
        self._client = client
        self._breaker = get_breaker("extraction")

    async def submit(
        self,
        job: JobRecord,
        document: DocumentRecord,
        processor: ProcessorVariant,
    ) -> StepResult:
        current = await self._store.get_job(job.id)
        if current is None or current.status != JobStatus.PROCESSING.value:
            logger.info("Submit skipped | job=%s no longer processing", job.id)
            return StepResult(JobOutcome.SKIPPED)
        if current.batch_operation_id:
            logger.info("Submit skipped | job=%s already has operation %s", job.id, current.batch_operation_id)
            return StepResult(JobOutcome.SKIPPED)

        await self._store.set_processing_method(job.id, ProcessingMethod.BATCH)

        input_key = batch_input_key(document.id, document.filename)
        output_prefix = batch_output_prefix(document.id)
        token = idempotency_token(document.id, current.attempts)
        try:
            body = await self._storage.get_object(document.file_path)
            await self._storage.put_object(input_key, body, content_type=document.content_type)
            operation_id = await self._breaker.call(
                self._client.submit_batch,
                bucket=self._storage.bucket,
                input_key=input_key,
                output_prefix=output_prefix,
                processor=processor,
                idempotency_token=token,
            )
        except Exception as exc:
            logger.warning("Batch submission failed | job=%s doc=%s error=%s", job.id, document.id, exc)
            return await retry_after_failure(self._store, current, exc)

        recorded = await self._store.record_submission(job.id, operation_id, {
            "input_key":        input_key,
            "input_uri":        self._storage.uri(input_key),
            "output_prefix":    output_prefix,
            "output_uri":       self._storage.uri(output_prefix),
            "processor":        processor.value,
            "operation_status": "SUBMITTED",
        })
        if not recorded:
            logger.info("Submission already recorded by another tick | job=%s operation=%s", job.id, operation_id)
            return StepResult(JobOutcome.SKIPPED)

        await self._store.record_progress(
            document.id, DocumentStatus.PROCESSING.value, 25, "Submitted for batch extraction",
        )
        logger.info(
            "Batch submitted | job=%s doc=%s operation=%s processor=%s attempt=%d/%d",
            job.id, document.id, operation_id, processor.value, current.attempts, current.max_attempts,
        )
        return StepResult(JobOutcome.SUBMITTED)
