"""
Per-job step results and the shared failure transition.

Every pipeline component reports what it did to a job as a StepResult; the
runner only counts them. Failures are never raised past a component: they
become a release_for_retry() transition here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from docpipeline.core.errors import PipelineError
from docpipeline.pipeline.store import JobRecord, JobStore
from docpipeline.schemas.pipeline import JobStatus

logger = logging.getLogger(__name__)

# processing_error / error_message are shown in the dashboard
MAX_ERROR_LENGTH = 1000


class JobOutcome(str, Enum):
    COMPLETED = "completed"   # job and document completed
    SUBMITTED = "submitted"   # batch operation handle recorded
    RUNNING   = "running"     # batch operation still in flight
    SWITCHED  = "switched"    # sync refused the document; continue as batch
    REQUEUED  = "requeued"    # failure, attempts remain
    FAILED    = "failed"      # failure, job failed and document in error
    SKIPPED   = "skipped"     # another tick got there first; nothing done


@dataclass
class StepResult:
    outcome: JobOutcome
    error:   str | None = None


def describe(exc: BaseException) -> str:
    message = str(exc) or type(exc).__name__
    return message[:MAX_ERROR_LENGTH]


async def retry_after_failure(
    store: JobStore,
    job: JobRecord,
    exc: BaseException,
    *,
    expected_operation: str | None = None,
) -> StepResult:
    """
    Return a failed job to the queue, or fail it when its attempts are spent
    or the error is unrecoverable. The attempt was already consumed by claim().
    """
    error = describe(exc)
    terminal = isinstance(exc, PipelineError) and not exc.retryable
    record = await store.release_for_retry(
        job.id, error, expected_operation=expected_operation, terminal=terminal,
    )
    if record is None:
        logger.info("Failure transition lost | job=%s error=%s", job.id, error)
        return StepResult(JobOutcome.SKIPPED, error)

    if record.status == JobStatus.FAILED.value:
        logger.error(
            "Job failed | job=%s doc=%s attempts=%d/%d terminal=%s error=%s",
            record.id, record.document_id, record.attempts, record.max_attempts, terminal, error,
        )
        return StepResult(JobOutcome.FAILED, error)

    logger.warning(
        "Job requeued | job=%s doc=%s attempts=%d/%d error=%s",
        record.id, record.document_id, record.attempts, record.max_attempts, error,
    )
    await store.record_progress(record.document_id, JobStatus.QUEUED.value, 0, f"Retrying: {error}")
    return StepResult(JobOutcome.REQUEUED, error)
