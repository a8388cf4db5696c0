"""
Scheduler Trigger Router
GET|POST /api/v1/cron/process-jobs

Invoked by the external timer roughly every two minutes and on demand for
manual runs. One call runs one pipeline tick and reports its counts. Job
failures are part of the summary, not HTTP errors.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, status

from docpipeline.api.dependencies import CronAuth, Pipeline
from docpipeline.schemas.pipeline import ErrorResponse, TickSummaryResponse

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/cron",
    tags=["Scheduler"],
    dependencies=[CronAuth],
)


@router.api_route(
    "/process-jobs",
    methods=["GET", "POST"],
    response_model=TickSummaryResponse,
    status_code=status.HTTP_200_OK,
    summary="Run one pipeline tick",
    responses={
        200: {"model": TickSummaryResponse, "description": "Tick finished; see counts"},
        401: {"model": ErrorResponse, "description": "Missing or invalid scheduler secret"},
        500: {"model": ErrorResponse, "description": "Job store unreachable"},
    },
)
async def process_jobs(pipeline: Pipeline) -> TickSummaryResponse:
    summary = await pipeline.tick()
    return summary.to_response()
