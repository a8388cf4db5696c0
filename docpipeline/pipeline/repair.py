"""
Metadata Repair Tool — rewrite vector metadata mirrors after business
metadata changed, without re-extracting or re-embedding.

The stored embedding rows are re-upserted under their existing vector keys,
so the vector itself is unchanged and only the metadata payload is replaced.
Failures are collected per vector; a bulk run always goes through every
document.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from uuid import UUID

from docpipeline.core.errors import DocumentNotFound, DocumentNotReady
from docpipeline.core.resilience import get_breaker
from docpipeline.pipeline.metadata import build_vector_metadata
from docpipeline.pipeline.store import DocumentRecord, JobStore
from docpipeline.schemas.pipeline import DocumentStatus, RepairCounts, ReprocessMetadataResponse
from docpipeline.vectorstore.base import VectorRecord, VectorStoreBase

logger = logging.getLogger(__name__)


@dataclass
class RepairSummary:
    documents_processed: int = 0
    documents_failed:    int = 0
    vectors_updated:     int = 0
    vectors_failed:      int = 0
    errors:              list[str] = field(default_factory=list)

    def to_response(self) -> ReprocessMetadataResponse:
        ok = self.documents_processed - self.documents_failed
        return ReprocessMetadataResponse(
            success=self.documents_failed == 0,
            message=(
                f"Reprocessed {self.documents_processed} document(s): "
                f"{self.vectors_updated} vectors updated, {self.vectors_failed} failed"
            ),
            documents_processed=self.documents_processed,
            vectors_updated=self.vectors_updated,
            vectors_failed=self.vectors_failed,
            errors=self.errors,
            summary=RepairCounts(total=self.documents_processed, success=ok, errors=self.documents_failed),
        )


class MetadataRepairTool:

    def __init__(self, store: JobStore, vector_store: VectorStoreBase) -> None:
        self._store = store
        self._vectors = vector_store
        self._breaker = get_breaker("vectorstore")

    async def repair_document(self, document_id: UUID) -> RepairSummary:
        document = await self._store.get_document(document_id)
        if document is None:
            raise DocumentNotFound(document_id)
        if document.status != DocumentStatus.COMPLETED.value:
            raise DocumentNotReady(document_id, document.status)

        summary = RepairSummary()
        await self._repair(document, summary)
        return summary

    async def repair_all(self) -> RepairSummary:
        """Every completed document whose metadata is not null."""
        summary = RepairSummary()
        documents = await self._store.list_repairable_documents()
        logger.info("Metadata repair | documents=%d", len(documents))
        for document in documents:
            await self._repair(document, summary)
        logger.info(
            "Metadata repair done | documents=%d failed=%d vectors_updated=%d vectors_failed=%d",
            summary.documents_processed, summary.documents_failed,
            summary.vectors_updated, summary.vectors_failed,
        )
        return summary

    async def _repair(self, document: DocumentRecord, summary: RepairSummary) -> None:
        summary.documents_processed += 1
        rows = await self._store.list_embeddings(document.id)
        if not rows:
            summary.documents_failed += 1
            summary.errors.append(f"Document {document.id}: no embeddings found")
            return

        failed = 0
        for row in rows:
            record = VectorRecord(
                id=row.vector_id,
                vector=row.embedding,
                metadata=build_vector_metadata(
                    document.id, row.chunk_index, row.chunk_text, row.page_number, document.metadata,
                ),
            )
            try:
                await self._breaker.call(self._vectors.upsert, [record])
            except Exception as exc:
                failed += 1
                summary.errors.append(f"Document {document.id} vector {row.vector_id}: {exc}")
                logger.warning("Metadata repair upsert failed | vector=%s error=%s", row.vector_id, exc)
                continue
            summary.vectors_updated += 1

        summary.vectors_failed += failed
        if failed:
            summary.documents_failed += 1
        logger.info(
            "Metadata repaired | doc=%s vectors=%d failed=%d",
            document.id, len(rows) - failed, failed,
        )
