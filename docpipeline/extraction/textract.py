"""
AWS Textract extraction client.

Processor variants map onto Textract APIs:

                 synchronous              long-running
    form   →  AnalyzeDocument        StartDocumentAnalysis / GetDocumentAnalysis
    ocr    →  DetectDocumentText     StartDocumentTextDetection / GetDocumentTextDetection

The form variant requests FORMS and TABLES features.

Synchronous calls reject documents that are too large or have too many
pages (UnsupportedDocumentException / DocumentTooLargeException); those are
raised as PageLimitExceeded so the pipeline can move the job to batch.

Long-running operations write numbered JSON result files under
<output_prefix>/<JobId>/ (OutputConfig). load_batch_output() reads them all
back, so a finished operation can be reconciled again from the same output
without resubmitting it.

IAM permissions required on the worker role:
  textract:AnalyzeDocument, textract:DetectDocumentText
  textract:StartDocumentAnalysis, textract:GetDocumentAnalysis
  textract:StartDocumentTextDetection, textract:GetDocumentTextDetection
  s3:GetObject on input/*, s3:PutObject on output/*
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import TYPE_CHECKING

import aioboto3
from botocore.exceptions import ClientError

from docpipeline.core.config import settings
from docpipeline.core.errors import ExtractionServiceError, PageLimitExceeded
from docpipeline.extraction.base import (
    ExtractedDocument,
    ExtractionClient,
    OperationState,
    OperationStatus,
)
from docpipeline.extraction.parsing import parse_blocks
from docpipeline.schemas.pipeline import ProcessorVariant

if TYPE_CHECKING:
    from docpipeline.storage.s3 import S3StorageService

logger = logging.getLogger(__name__)

_FORM_FEATURES = ["FORMS", "TABLES"]

_PAGE_LIMIT_CODES = frozenset({"UnsupportedDocumentException", "DocumentTooLargeException"})
_UNRECOVERABLE_CODES = frozenset({
    "InvalidParameterException",
    "AccessDeniedException",
    "BadDocumentException",
    "InvalidS3ObjectException",
})

_JOB_STATES = {
    "IN_PROGRESS":     OperationState.RUNNING,
    "SUCCEEDED":       OperationState.SUCCEEDED,
    "PARTIAL_SUCCESS": OperationState.SUCCEEDED,
    "FAILED":          OperationState.FAILED,
}


def _translate(exc: ClientError, action: str) -> ExtractionServiceError:
    error = exc.response.get("Error", {})
    code = error.get("Code", "")
    message = error.get("Message", str(exc))
    if code in _PAGE_LIMIT_CODES or "exceed the limit" in message.lower():
        return PageLimitExceeded(f"Textract {action} refused document: {code} {message}", code=code)
    return ExtractionServiceError(
        f"Textract {action} failed: {code} {message}",
        code=code,
        retryable=code not in _UNRECOVERABLE_CODES,
    )


class TextractExtractionClient(ExtractionClient):

    def __init__(self, region: str | None = None, timeout_seconds: float | None = None) -> None:
        self._region = region or settings.aws_region
        self._timeout = timeout_seconds or settings.textract_timeout_seconds
        self._session = aioboto3.Session()

    def _client(self):
        return self._session.client("textract", region_name=self._region)

    # ------------------------------------------------------------------
    # Synchronous
    # ------------------------------------------------------------------

    async def process(self, document_bytes: bytes, processor: ProcessorVariant) -> ExtractedDocument:
        t0 = time.monotonic()
        async with self._client() as textract:
            try:
                if processor is ProcessorVariant.FORM:
                    call = textract.analyze_document(
                        Document={"Bytes": document_bytes},
                        FeatureTypes=_FORM_FEATURES,
                    )
                else:
                    call = textract.detect_document_text(Document={"Bytes": document_bytes})
                response = await asyncio.wait_for(call, timeout=self._timeout)
            except ClientError as exc:
                raise _translate(exc, "sync") from exc
            except asyncio.TimeoutError as exc:
                raise ExtractionServiceError(
                    f"Textract sync call timed out after {self._timeout}s", code="Timeout",
                ) from exc

        result = parse_blocks(
            response.get("Blocks", []),
            processor,
            page_count=response.get("DocumentMetadata", {}).get("Pages"),
        )
        logger.info(
            "Textract sync | processor=%s pages=%d chars=%d elapsed_ms=%.0f",
            processor.value, result.page_count, len(result.text), (time.monotonic() - t0) * 1000,
        )
        return result

    # ------------------------------------------------------------------
    # Long-running operations
    # ------------------------------------------------------------------

    async def submit_batch(
        self,
        *,
        bucket: str,
        input_key: str,
        output_prefix: str,
        processor: ProcessorVariant,
        idempotency_token: str,
    ) -> str:
        params = {
            "DocumentLocation": {"S3Object": {"Bucket": bucket, "Name": input_key}},
            "OutputConfig": {"S3Bucket": bucket, "S3Prefix": output_prefix.rstrip("/")},
            # Same token within Textract's window returns the same JobId
            "ClientRequestToken": idempotency_token,
        }
        async with self._client() as textract:
            try:
                if processor is ProcessorVariant.FORM:
                    resp = await textract.start_document_analysis(FeatureTypes=_FORM_FEATURES, **params)
                else:
                    resp = await textract.start_document_text_detection(**params)
            except ClientError as exc:
                raise _translate(exc, "batch submit") from exc

        job_id = resp["JobId"]
        logger.info(
            "Textract batch submitted | job=%s processor=%s input=s3://%s/%s",
            job_id, processor.value, bucket, input_key,
        )
        return job_id

    async def get_operation(self, operation_id: str, processor: ProcessorVariant) -> OperationStatus:
        async with self._client() as textract:
            try:
                if processor is ProcessorVariant.FORM:
                    resp = await textract.get_document_analysis(JobId=operation_id, MaxResults=1)
                else:
                    resp = await textract.get_document_text_detection(JobId=operation_id, MaxResults=1)
            except ClientError as exc:
                raise _translate(exc, "status") from exc

        raw = resp.get("JobStatus", "IN_PROGRESS")
        state = _JOB_STATES.get(raw, OperationState.RUNNING)
        error = resp.get("StatusMessage") if state is OperationState.FAILED else None
        if raw == "PARTIAL_SUCCESS":
            logger.warning("Textract partial success | job=%s message=%s", operation_id, resp.get("StatusMessage"))
        return OperationStatus(
            state=state,
            raw_status=raw,
            error=error or (f"Textract job {operation_id} failed" if state is OperationState.FAILED else None),
            page_count=resp.get("DocumentMetadata", {}).get("Pages"),
        )

    async def load_batch_output(
        self,
        storage: "S3StorageService",
        output_prefix: str,
        processor: ProcessorVariant,
    ) -> ExtractedDocument:
        objects = [
            o for o in await storage.list_objects(output_prefix)
            if not o["Key"].endswith(".s3_access_check")
        ]
        if not objects:
            raise ExtractionServiceError(f"No batch output found under {output_prefix}")

        def _order(obj: dict) -> tuple[str, int]:
            head, _, tail = obj["Key"].rpartition("/")
            return (head, int(tail) if tail.isdigit() else 0)

        blocks: list[dict] = []
        page_count = 0
        for obj in sorted(objects, key=_order):
            payload = json.loads(await storage.get_object(obj["Key"]))
            blocks.extend(payload.get("Blocks", []))
            page_count = max(page_count, payload.get("DocumentMetadata", {}).get("Pages", 0) or 0)

        result = parse_blocks(blocks, processor, page_count=page_count)
        logger.info(
            "Textract batch output loaded | prefix=%s files=%d pages=%d chars=%d",
            output_prefix, len(objects), result.page_count, len(result.text),
        )
        return result
