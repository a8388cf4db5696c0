"""
Pipeline Runner — one scheduler tick.

A tick is stateless and safe to overlap with another tick:

  1. recover sync claims abandoned by a crashed tick
  2. claim up to batch_size queued jobs (priority desc, oldest first),
     route each one and run it synchronously or submit it as a batch
  3. poll every in-flight batch operation not submitted in this tick

Each job is handled in its own try block; one job's failure becomes a retry
transition for that job and never aborts the rest of the tick.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta

from docpipeline.core.config import settings
from docpipeline.core.errors import DocumentNotFound
from docpipeline.pipeline.batch_poller import BatchPoller
from docpipeline.pipeline.batch_submitter import BatchSubmitter
from docpipeline.pipeline.outcomes import JobOutcome, StepResult, retry_after_failure
from docpipeline.pipeline.processors import KeywordProcessorSelector, ProcessorSelector
from docpipeline.pipeline.reconciler import ResultReconciler
from docpipeline.pipeline.router import Router
from docpipeline.pipeline.store import JobRecord, JobStore, SqlJobStore, datetime_now
from docpipeline.pipeline.sync_extractor import SyncExtractor
from docpipeline.schemas.pipeline import DocumentStatus, ProcessingMethod, TickSummaryResponse

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Tick summary
# ---------------------------------------------------------------------------

@dataclass
class TickSummary:
    claimed:   int = 0
    submitted: int = 0
    completed: int = 0
    requeued:  int = 0
    failed:    int = 0
    running:   int = 0
    errors:    list[str] = field(default_factory=list)
    elapsed_ms: float = 0.0

    def record(self, job: JobRecord, result: StepResult) -> None:
        if result.outcome is JobOutcome.COMPLETED:
            self.completed += 1
        elif result.outcome is JobOutcome.SUBMITTED:
            self.submitted += 1
        elif result.outcome is JobOutcome.RUNNING:
            self.running += 1
        elif result.outcome is JobOutcome.REQUEUED:
            self.requeued += 1
        elif result.outcome is JobOutcome.FAILED:
            self.failed += 1
        if result.error and result.outcome in (JobOutcome.REQUEUED, JobOutcome.FAILED):
            self.errors.append(f"job {job.id}: {result.error}")

    def to_response(self) -> TickSummaryResponse:
        return TickSummaryResponse(
            message=(
                f"Claimed {self.claimed}, completed {self.completed}, submitted {self.submitted}, "
                f"running {self.running}, requeued {self.requeued}, failed {self.failed}"
            ),
            claimed=self.claimed,
            submitted=self.submitted,
            completed=self.completed,
            requeued=self.requeued,
            failed=self.failed,
            running=self.running,
            errors=self.errors,
        )


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

class PipelineRunner:

    def __init__(
        self,
        store: JobStore,
        router: Router,
        selector: ProcessorSelector,
        sync_extractor: SyncExtractor,
        submitter: BatchSubmitter,
        poller: BatchPoller,
        *,
        batch_size: int | None = None,
        sync_stale_seconds: int | None = None,
    ) -> None:
        self.store = store
        self._router = router
        self._selector = selector
        self._sync = sync_extractor
        self._submitter = submitter
        self._poller = poller
        self._batch_size = batch_size or settings.cron_batch_size
        self._sync_stale = timedelta(seconds=sync_stale_seconds or settings.sync_stale_seconds)

    async def tick(self) -> TickSummary:
        t0 = time.monotonic()
        summary = TickSummary()

        await self._recover_stale_sync(summary)

        submitted_now: set = set()
        for job in await self.store.list_queued(self._batch_size):
            result = await self._process_queued(job, summary)
            if result is not None and result.outcome is JobOutcome.SUBMITTED:
                submitted_now.add(job.id)

        for job in await self.store.list_in_flight_batches():
            if job.id in submitted_now:
                continue
            try:
                result = await self._poller.poll(job)
            except Exception as exc:
                logger.error("Poll crashed | job=%s error=%s", job.id, exc, exc_info=True)
                summary.errors.append(f"job {job.id}: {exc}")
                continue
            summary.record(job, result)

        summary.elapsed_ms = (time.monotonic() - t0) * 1000
        logger.info(
            "Tick done | claimed=%d completed=%d submitted=%d running=%d requeued=%d failed=%d elapsed_ms=%.0f",
            summary.claimed, summary.completed, summary.submitted, summary.running,
            summary.requeued, summary.failed, summary.elapsed_ms,
        )
        return summary

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _recover_stale_sync(self, summary: TickSummary) -> None:
        cutoff = datetime_now() - self._sync_stale
        for job in await self.store.list_stale_sync(cutoff):
            logger.warning("Recovering stale sync claim | job=%s started_at=%s", job.id, job.started_at)
            exc = TimeoutError(f"Claim abandoned: processing since {job.started_at}")
            try:
                summary.record(job, await retry_after_failure(self.store, job, exc))
            except Exception as err:
                logger.error("Stale recovery failed | job=%s error=%s", job.id, err, exc_info=True)
                summary.errors.append(f"job {job.id}: {err}")

    async def _process_queued(self, job: JobRecord, summary: TickSummary) -> StepResult | None:
        claimed = await self.store.claim(job.id)
        if claimed is None:
            return None
        summary.claimed += 1

        try:
            result = await self._run_claimed(claimed)
        except Exception as exc:
            logger.error("Job crashed | job=%s error=%s", claimed.id, exc, exc_info=True)
            result = await retry_after_failure(self.store, claimed, exc)

        summary.record(claimed, result)
        return result

    async def _run_claimed(self, job: JobRecord) -> StepResult:
        document = await self.store.get_document(job.document_id)
        if document is None:
            raise DocumentNotFound(job.document_id)

        if not await self.store.mark_document_processing(document.id):
            # completed and error are final for this job; the document row is left untouched
            logger.warning(
                "Job skipped | job=%s doc=%s document already %s; closing without reprocessing",
                job.id, document.id, document.status,
            )
            await self.store.complete_job(job.id, document.id)
            return StepResult(JobOutcome.SKIPPED)

        await self.store.record_progress(document.id, DocumentStatus.PROCESSING.value, 10, "Processing started")

        processor = self._selector.select(document.filename)
        method = self._router.precheck(document.page_count, document.file_size)
        logger.info(
            "Job claimed | job=%s doc=%s method=%s processor=%s pages=%s size=%d attempt=%d/%d",
            job.id, document.id, method.value, processor.value, document.page_count,
            document.file_size, job.attempts, job.max_attempts,
        )

        if method is ProcessingMethod.SYNC:
            result = await self._sync.run(job, document, processor)
            if result.outcome is not JobOutcome.SWITCHED:
                return result

        return await self._submitter.submit(job, document, processor)


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------

def build_pipeline(store: JobStore | None = None) -> PipelineRunner:
    """Production wiring: PostgreSQL, S3, Textract, OpenAI, Pinecone."""
    from docpipeline.db.session import get_session
    from docpipeline.extraction.textract import TextractExtractionClient
    from docpipeline.processing.chunking import TextChunker
    from docpipeline.processing.embeddings import EmbeddingPipeline
    from docpipeline.storage.s3 import S3StorageService
    from docpipeline.vectorstore import get_vector_store

    store = store or SqlJobStore(get_session)
    storage = S3StorageService()
    client = TextractExtractionClient()
    router = Router.from_settings()
    reconciler = ResultReconciler(
        store,
        storage,
        EmbeddingPipeline(),
        get_vector_store(),
        TextChunker(settings.chunk_size, settings.chunk_overlap),
    )
    return PipelineRunner(
        store,
        router,
        KeywordProcessorSelector(),
        SyncExtractor(store, storage, client, reconciler, router),
        BatchSubmitter(store, storage, client),
        BatchPoller(store, storage, client, reconciler),
    )
