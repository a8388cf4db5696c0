"""
Pipeline Administration Router

POST /api/v1/admin/reprocess-metadata
  Re-sync vector metadata mirrors for one document, or for every completed
  document with metadata when no id is given. Per-vector failures are
  reported in the body; the call itself succeeds.

GET /api/v1/admin/batch-status
  In-flight batch operations, oldest first.
"""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, Body, Query

from docpipeline.api.dependencies import CronAuth, RepairTool, Store
from docpipeline.schemas.pipeline import (
    BatchOperationInfo,
    BatchStatusResponse,
    ErrorResponse,
    ReprocessMetadataRequest,
    ReprocessMetadataResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/admin",
    tags=["Administration"],
    dependencies=[CronAuth],
)


@router.post(
    "/reprocess-metadata",
    response_model=ReprocessMetadataResponse,
    summary="Re-upsert vector metadata from current document metadata",
    responses={
        401: {"model": ErrorResponse},
        404: {"model": ErrorResponse, "description": "Unknown document"},
        409: {"model": ErrorResponse, "description": "Document not completed yet"},
        503: {"model": ErrorResponse, "description": "Vector index unavailable"},
    },
)
async def reprocess_metadata(
    repair: RepairTool,
    body: ReprocessMetadataRequest | None = Body(None),
    document_id: UUID | None = Query(None, description="Alternative to the body field"),
) -> ReprocessMetadataResponse:
    if body is not None and body.document_id is not None:
        document_id = body.document_id
    if document_id is not None:
        logger.info("Metadata repair requested | doc=%s", document_id)
        summary = await repair.repair_document(document_id)
    else:
        logger.info("Bulk metadata repair requested")
        summary = await repair.repair_all()
    return summary.to_response()


@router.get(
    "/batch-status",
    response_model=BatchStatusResponse,
    summary="List in-flight batch operations",
    responses={401: {"model": ErrorResponse}},
)
async def batch_status(store: Store) -> BatchStatusResponse:
    jobs = await store.list_in_flight_batches()
    return BatchStatusResponse(
        pending_operations=len(jobs),
        operations=[
            BatchOperationInfo(
                job_id=job.id,
                document_id=job.document_id,
                batch_operation_id=job.batch_operation_id,
                attempts=job.attempts,
                max_attempts=job.max_attempts,
                started_at=job.started_at,
                last_status=job.metadata.get("operation_status"),
            )
            for job in jobs
        ],
    )
