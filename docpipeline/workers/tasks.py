"""
Celery Tasks — Pipeline Entry Points

Task: pipeline.tick
  One scheduler tick (same code path as GET|POST /api/v1/cron/process-jobs).

Task: pipeline.repair_metadata
  Re-sync vector metadata for one document, or for every completed document
  with metadata when document_id is omitted.

Tasks only carry ids; document bytes never travel through the broker.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any

from docpipeline.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    try:
        loop = asyncio.get_event_loop()
        if loop.is_running():
            import concurrent.futures
            with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
                future = pool.submit(asyncio.run, coro)
                return future.result()
        return loop.run_until_complete(coro)
    except RuntimeError:
        return asyncio.run(coro)


async def _dispose_engine() -> None:
    # Pooled asyncpg connections are bound to the loop that opened them
    from docpipeline.db.session import engine
    await engine.dispose()


# ---------------------------------------------------------------------------
# Scheduler tick
# ---------------------------------------------------------------------------

@celery_app.task(name="pipeline.tick", bind=False)
def run_pipeline_tick() -> dict[str, Any]:
    return run_async(_run_pipeline_tick_async())


async def _run_pipeline_tick_async() -> dict[str, Any]:
    from docpipeline.pipeline.runner import build_pipeline

    try:
        summary = await build_pipeline().tick()
    finally:
        await _dispose_engine()
    return summary.to_response().model_dump(mode="json")


# ---------------------------------------------------------------------------
# Metadata repair
# ---------------------------------------------------------------------------

@celery_app.task(name="pipeline.repair_metadata", bind=False, soft_time_limit=3600, time_limit=3660)
def repair_metadata(document_id: str | None = None) -> dict[str, Any]:
    return run_async(_repair_metadata_async(uuid.UUID(document_id) if document_id else None))


async def _repair_metadata_async(document_id: uuid.UUID | None) -> dict[str, Any]:
    from docpipeline.db.session import get_session
    from docpipeline.pipeline.repair import MetadataRepairTool
    from docpipeline.pipeline.store import SqlJobStore
    from docpipeline.vectorstore import get_vector_store

    tool = MetadataRepairTool(SqlJobStore(get_session), get_vector_store())
    try:
        if document_id is not None:
            summary = await tool.repair_document(document_id)
        else:
            summary = await tool.repair_all()
    finally:
        await _dispose_engine()

    logger.info(
        "Repair task done | doc=%s documents=%d vectors_updated=%d vectors_failed=%d",
        document_id or "all", summary.documents_processed, summary.vectors_updated, summary.vectors_failed,
    )
    return summary.to_response().model_dump(mode="json")
