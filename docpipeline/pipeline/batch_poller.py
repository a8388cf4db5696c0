"""
Batch Poller — advance in-flight batch operations, one tick at a time.

For each job in processing with a recorded operation handle:

    running    → record the raw status, nothing else
    failed     → release for retry (handle cleared) or fail when exhausted
    succeeded  → take the reconciliation lease, load the output, reconcile

The lease is a conditional update on lease_acquired_at, so two overlapping
ticks that both see "succeeded" reconcile the operation once: the loser gets
no row back and moves on. A reconciliation failure gives the lease back and
consumes an attempt while keeping the handle, so a later tick reconciles
again from the same output without resubmitting.
A lease older than reconcile_lease_seconds may be taken over; the holder it
was taken from can then no longer complete the job.

A job still processing after max_poll_seconds since it was claimed is
treated as a failed operation.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from docpipeline.core.config import settings
from docpipeline.core.errors import DocumentNotFound, ExtractionServiceError
from docpipeline.core.resilience import get_breaker
from docpipeline.extraction.base import ExtractionClient, OperationState
from docpipeline.pipeline.outcomes import JobOutcome, StepResult, describe, retry_after_failure
from docpipeline.pipeline.reconciler import ResultReconciler
from docpipeline.pipeline.store import JobRecord, JobStore, datetime_now
from docpipeline.schemas.pipeline import JobStatus, ProcessorVariant
from docpipeline.storage.s3 import S3StorageService, batch_output_prefix

logger = logging.getLogger(__name__)


class BatchPoller:

    def __init__(
        self,
        store: JobStore,
        storage: S3StorageService,
        client: ExtractionClient,
        reconciler: ResultReconciler,
        *,
        max_poll_seconds: int | None = None,
        lease_seconds: int | None = None,
    ) -> None:
        self._store = store
        self._storage = storage
        self._client = client
        self._reconciler = reconciler
        self._max_poll = timedelta(seconds=max_poll_seconds or settings.batch_max_poll_seconds)
        self._lease = timedelta(seconds=lease_seconds or settings.reconcile_lease_seconds)
        self._breaker = get_breaker("extraction")

    async def poll(self, job: JobRecord) -> StepResult:
        operation_id = job.batch_operation_id
        if not operation_id:
            return StepResult(JobOutcome.SKIPPED)
        processor = ProcessorVariant(job.metadata.get("processor", ProcessorVariant.OCR.value))

        if job.started_at is not None and datetime_now() - job.started_at > self._max_poll:
            exc = ExtractionServiceError(
                f"Batch operation {operation_id} still running after "
                f"{int(self._max_poll.total_seconds())}s",
                code="PollTimeout",
            )
            logger.warning("Batch deadline exceeded | job=%s operation=%s", job.id, operation_id)
            return await retry_after_failure(self._store, job, exc, expected_operation=operation_id)

        try:
            status = await self._breaker.call(self._client.get_operation, operation_id, processor)
        except Exception as exc:
            # Status checks are free to repeat; the deadline bounds them
            logger.warning("Batch status check failed | job=%s operation=%s error=%s", job.id, operation_id, exc)
            return StepResult(JobOutcome.RUNNING, describe(exc))

        if status.state is OperationState.RUNNING:
            if job.metadata.get("operation_status") != status.raw_status:
                await self._store.note_operation_status(job.id, operation_id, status.raw_status)
            logger.debug("Batch running | job=%s operation=%s status=%s", job.id, operation_id, status.raw_status)
            return StepResult(JobOutcome.RUNNING)

        if status.state is OperationState.FAILED:
            exc = ExtractionServiceError(status.error or f"Batch operation {operation_id} failed", code=status.raw_status)
            logger.warning("Batch failed | job=%s operation=%s error=%s", job.id, operation_id, exc)
            return await retry_after_failure(self._store, job, exc, expected_operation=operation_id)

        return await self._reconcile(job, operation_id, processor)

    async def _reconcile(self, job: JobRecord, operation_id: str, processor: ProcessorVariant) -> StepResult:
        leased = await self._store.acquire_lease(job.id, operation_id, datetime_now() - self._lease)
        if leased is None:
            logger.info("Batch reconcile skipped | job=%s operation=%s lease held elsewhere", job.id, operation_id)
            return StepResult(JobOutcome.SKIPPED)

        try:
            document = await self._store.get_document(leased.document_id)
            if document is None:
                raise DocumentNotFound(leased.document_id)
            # Textract writes under <output_prefix>/<JobId>/; earlier attempts used other JobIds
            output_prefix = f"{batch_output_prefix(document.id)}{operation_id}/"
            extracted = await self._client.load_batch_output(self._storage, output_prefix, processor)
            return await self._reconciler.reconcile(leased, document, extracted, cleanup=True)
        except Exception as exc:
            error = describe(exc)
            logger.error(
                "Batch reconcile failed | job=%s operation=%s error=%s",
                job.id, operation_id, error, exc_info=True,
            )
            record = await self._store.release_lease(job.id, error, lease=leased.lease_acquired_at)
            if record is None:
                logger.info("Batch reconcile lease lost | job=%s operation=%s", job.id, operation_id)
                return StepResult(JobOutcome.SKIPPED, error)
            if record.status == JobStatus.FAILED.value:
                return StepResult(JobOutcome.FAILED, error)
            return StepResult(JobOutcome.REQUEUED, error)
