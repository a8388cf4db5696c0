"""
S3 Storage Service — uploads and batch staging

Layout inside the single bucket:

    <file_path>                        original upload (written by the upload flow)
    input/<document_id>/<filename>     copy handed to a batch extraction operation
    output/<document_id>/...           JSON written by the extraction service

The staging keys are derived from the document id alone, so a retried
submission overwrites its own namespace instead of adding to it, and one
document's artifacts can never collide with another's.
"""

from __future__ import annotations

import logging
import mimetypes
from dataclasses import dataclass
from uuid import UUID

import aioboto3
from botocore.exceptions import ClientError

from docpipeline.core.config import settings
from docpipeline.core.errors import StorageError

logger = logging.getLogger(__name__)

# S3 DeleteObjects accepts at most 1000 keys per call
_DELETE_BATCH = 1000


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class S3Object:
    """Represents a stored object: returned by put_object."""
    key:          str
    bucket:       str
    size_bytes:   int
    content_type: str
    etag:         str

    @property
    def uri(self) -> str:
        return f"s3://{self.bucket}/{self.key}"


# ---------------------------------------------------------------------------
# Key layout
# ---------------------------------------------------------------------------

def batch_input_prefix(document_id: UUID | str) -> str:
    return f"{settings.batch_input_prefix}/{document_id}/"


def batch_output_prefix(document_id: UUID | str) -> str:
    return f"{settings.batch_output_prefix}/{document_id}/"


def batch_input_key(document_id: UUID | str, filename: str) -> str:
    # Strip directory components from the client-supplied name
    safe_name = filename.replace("\\", "/").rsplit("/", 1)[-1].replace("..", "_") or "document.pdf"
    return f"{batch_input_prefix(document_id)}{safe_name}"


# ---------------------------------------------------------------------------
# S3 Service
# ---------------------------------------------------------------------------

class S3StorageService:
    """Async S3 operations against the pipeline bucket."""

    def __init__(self, bucket: str | None = None) -> None:
        self._bucket = bucket or settings.s3_bucket
        self._session = aioboto3.Session()

    @property
    def bucket(self) -> str:
        return self._bucket

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _client(self):
        """Return a scoped async S3 client context manager."""
        return self._session.client("s3", region_name=settings.aws_region)

    def uri(self, key: str) -> str:
        return f"s3://{self._bucket}/{key}"

    @staticmethod
    def _raise_for(exc: ClientError, key: str):
        code = exc.response.get("Error", {}).get("Code", "")
        if code in ("NoSuchKey", "404", "NotFound"):
            raise FileNotFoundError(f"Object not found: {key}") from exc
        raise StorageError(f"S3 {code or 'error'} for {key}: {exc}") from exc

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def put_object(
        self,
        key: str,
        body: bytes,
        content_type: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> S3Object:
        ct = content_type or mimetypes.guess_type(key)[0] or "application/octet-stream"
        async with self._client() as s3:
            try:
                resp = await s3.put_object(
                    Bucket=self._bucket,
                    Key=key,
                    Body=body,
                    ContentType=ct,
                    Metadata=metadata or {},
                )
            except ClientError as exc:
                self._raise_for(exc, key)

        logger.info("S3 upload ok | key=%s size=%d", key, len(body))
        return S3Object(
            key=key,
            bucket=self._bucket,
            size_bytes=len(body),
            content_type=ct,
            etag=resp.get("ETag", "").strip('"'),
        )

    async def get_object(self, key: str) -> bytes:
        async with self._client() as s3:
            try:
                resp = await s3.get_object(Bucket=self._bucket, Key=key)
                return await resp["Body"].read()
            except ClientError as exc:
                self._raise_for(exc, key)

    async def list_objects(self, prefix: str) -> list[dict]:
        """All objects under prefix, following continuation tokens."""
        objects: list[dict] = []
        async with self._client() as s3:
            paginator = s3.get_paginator("list_objects_v2")
            try:
                async for page in paginator.paginate(Bucket=self._bucket, Prefix=prefix):
                    objects.extend(page.get("Contents", []))
            except ClientError as exc:
                self._raise_for(exc, prefix)
        return objects

    async def delete_prefix(self, prefix: str) -> int:
        """Delete every object under prefix; returns the number of keys removed."""
        if not prefix or not prefix.endswith("/"):
            raise ValueError(f"Refusing to delete a non-directory prefix: {prefix!r}")

        keys = [obj["Key"] for obj in await self.list_objects(prefix)]
        if not keys:
            return 0

        async with self._client() as s3:
            for i in range(0, len(keys), _DELETE_BATCH):
                batch = keys[i : i + _DELETE_BATCH]
                try:
                    resp = await s3.delete_objects(
                        Bucket=self._bucket,
                        Delete={"Objects": [{"Key": k} for k in batch], "Quiet": True},
                    )
                except ClientError as exc:
                    self._raise_for(exc, prefix)
                errors = resp.get("Errors", [])
                if errors:
                    raise StorageError(
                        f"S3 delete failed for {len(errors)} object(s) under {prefix}: "
                        f"{errors[0].get('Code')} {errors[0].get('Message')}"
                    )

        logger.info("S3 prefix deleted | prefix=%s objects=%d", prefix, len(keys))
        return len(keys)
