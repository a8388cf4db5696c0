"""
Synchronous Extractor — small documents, extracted within the tick.

The source upload is read from object storage and sent to the extraction
service inline. A result is reconciled immediately. When the service refuses
the document for its size (PageLimitExceeded) the job is handed back to the
runner as SWITCHED so it continues as a batch job in the same tick, on the
same attempt.

A result that comes back with more pages than the batch threshold is still
reconciled: the work is already done. Its page count is stored, so the
router sees the real value if the document is ever processed again.
"""

from __future__ import annotations

import logging

from docpipeline.core.errors import PageLimitExceeded
from docpipeline.core.resilience import get_breaker
from docpipeline.extraction.base import ExtractionClient
from docpipeline.pipeline.outcomes import JobOutcome, StepResult, describe, retry_after_failure
from docpipeline.pipeline.reconciler import ResultReconciler
from docpipeline.pipeline.router import Router
from docpipeline.pipeline.store import DocumentRecord, JobRecord, JobStore
from docpipeline.schemas.pipeline import ProcessingMethod, ProcessorVariant
from docpipeline.storage.s3 import S3StorageService

logger = logging.getLogger(__name__)


class SyncExtractor:

    def __init__(
        self,
        store: JobStore,
        storage: S3StorageService,
        client: ExtractionClient,
        reconciler: ResultReconciler,
        router: Router,
    ) -> None:
        self._store = store
        self._storage = storage
        self._client = client
        self._reconciler = reconciler
        self._router = router
        self._breaker = get_breaker("extraction")

    async def run(
        self,
        job: JobRecord,
        document: DocumentRecord,
        processor: ProcessorVariant,
    ) -> StepResult:
        if not await self._store.set_processing_method(job.id, ProcessingMethod.SYNC):
            logger.info("Sync skipped | job=%s no longer processing", job.id)
            return StepResult(JobOutcome.SKIPPED)

        logger.info(
            "Sync extraction | job=%s doc=%s processor=%s size=%d attempt=%d/%d",
            job.id, document.id, processor.value, document.file_size, job.attempts, job.max_attempts,
        )
        try:
            body = await self._storage.get_object(document.file_path)
            extracted = await self._breaker.call(self._client.process, body, processor)
        except PageLimitExceeded as exc:
            logger.info("Sync refused, switching to batch | job=%s doc=%s reason=%s", job.id, document.id, exc)
            return StepResult(JobOutcome.SWITCHED, describe(exc))
        except Exception as exc:
            logger.warning("Sync extraction failed | job=%s doc=%s error=%s", job.id, document.id, exc)
            return await retry_after_failure(self._store, job, exc)

        if extracted.page_count:
            await self._store.set_page_count(document.id, extracted.page_count)
            confirmed = self._router.confirm(ProcessingMethod.SYNC, extracted.page_count, document.file_size)
            if confirmed is ProcessingMethod.BATCH:
                logger.info(
                    "Sync result over batch threshold, reconciling anyway | doc=%s pages=%d",
                    document.id, extracted.page_count,
                )

        try:
            return await self._reconciler.reconcile(job, document, extracted)
        except Exception as exc:
            logger.error("Sync reconcile failed | job=%s doc=%s error=%s", job.id, document.id, exc, exc_info=True)
            return await retry_after_failure(self._store, job, exc)
