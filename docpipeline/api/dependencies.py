"""
Composed FastAPI Dependencies

Route handlers import from here; the pipeline objects are built once per
process and can be swapped in tests via app.dependency_overrides.
"""

from __future__ import annotations

import secrets
from functools import lru_cache
from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from docpipeline.core.config import settings
from docpipeline.pipeline.repair import MetadataRepairTool
from docpipeline.pipeline.runner import PipelineRunner, build_pipeline
from docpipeline.pipeline.store import JobStore
from docpipeline.schemas.pipeline import PipelineErrors

bearer_scheme = HTTPBearer(auto_error=False)


# ---------------------------------------------------------------------------
# 1. Scheduler credentials
#    Authorization: Bearer <CRON_SECRET>; open when no secret is configured
# ---------------------------------------------------------------------------

async def verify_cron_secret(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
) -> None:
    if not settings.cron_secret:
        return
    if credentials is None or not secrets.compare_digest(credentials.credentials, settings.cron_secret):
        raise HTTPException(
            status.HTTP_401_UNAUTHORIZED,
            detail=PipelineErrors.unauthorized().model_dump(mode="json"),
        )


# ---------------------------------------------------------------------------
# 2. Pipeline objects
# ---------------------------------------------------------------------------

@lru_cache(maxsize=1)
def get_pipeline() -> PipelineRunner:
    return build_pipeline()


def get_job_store(pipeline: Annotated[PipelineRunner, Depends(get_pipeline)]) -> JobStore:
    return pipeline.store


def get_repair_tool(store: Annotated[JobStore, Depends(get_job_store)]) -> MetadataRepairTool:
    from docpipeline.vectorstore import get_vector_store
    return MetadataRepairTool(store, get_vector_store())


# ---------------------------------------------------------------------------
# Type aliases for cleaner route signatures
# ---------------------------------------------------------------------------

CronAuth   = Depends(verify_cron_secret)
Pipeline   = Annotated[PipelineRunner,     Depends(get_pipeline)]
Store      = Annotated[JobStore,           Depends(get_job_store)]
RepairTool = Annotated[MetadataRepairTool, Depends(get_repair_tool)]
