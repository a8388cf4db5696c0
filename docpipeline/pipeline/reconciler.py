"""
Result Reconciler — extraction output → chunks → embeddings → index → completed.

Order of effects for one job:
  1. chunk the extracted pages (global, provisional chunk_index)
  2. embed every chunk; failed chunks are dropped, survivors re-numbered
     0..N-1 so stored indices stay contiguous
  3. upsert vectors with the metadata mirror, delete vectors whose keys are
     no longer used by this document, then replace the embedding rows
  4. persist extracted text / fields; set the embedding skip flags on a
     partial failure, clear them otherwise
  5. complete job + document in one conditional update (batch jobs: only
     while still holding their reconciliation lease)
  6. delete batch staging objects (best effort)

Any exception before step 5 leaves the job in processing, so the caller can
retry from the same extraction output. A document is never completed
with zero embeddings unless there was no text to embed.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from docpipeline.core.errors import EmbeddingError
from docpipeline.core.resilience import get_breaker
from docpipeline.extraction.base import ExtractedDocument
from docpipeline.pipeline.metadata import PIPELINE_FLAGS, build_vector_metadata
from docpipeline.pipeline.outcomes import JobOutcome, StepResult
from docpipeline.pipeline.store import (
    DocumentRecord,
    EmbeddingRow,
    FieldRow,
    JobRecord,
    JobStore,
)
from docpipeline.processing.chunking import TextChunker
from docpipeline.processing.embeddings import EmbeddingPipeline
from docpipeline.schemas.pipeline import DocumentStatus
from docpipeline.storage.s3 import S3StorageService, batch_input_prefix, batch_output_prefix
from docpipeline.vectorstore.base import VectorRecord, VectorStoreBase, vector_key

logger = logging.getLogger(__name__)

NO_TEXT_NOTE = "No extractable text found; document completed without embeddings"


@dataclass
class ReconcileStats:
    chunks:     int = 0
    embedded:   int = 0
    skipped:    int = 0
    removed:    int = 0    # stale vectors deleted from the index
    cleaned_up: int = 0    # staging objects deleted


class ResultReconciler:

    def __init__(
        self,
        store: JobStore,
        storage: S3StorageService,
        embedder: EmbeddingPipeline,
        vector_store: VectorStoreBase,
        chunker: TextChunker,
    ) -> None:
        self._store = store
        self._storage = storage
        self._embedder = embedder
        self._vectors = vector_store
        self._chunker = chunker
        self._breaker = get_breaker("vectorstore")

    async def reconcile(
        self,
        job: JobRecord,
        document: DocumentRecord,
        extracted: ExtractedDocument,
        *,
        cleanup: bool = False,
    ) -> StepResult:
        """
        Index an extraction result and complete the job.

        Raises on any failure before completion; returns SKIPPED when the
        job was already moved out of processing by someone else.
        """
        t0 = time.monotonic()
        stats = ReconcileStats()
        await self._store.record_progress(
            document.id, DocumentStatus.PROCESSING.value, 60,
            f"Extraction complete ({extracted.page_count} pages)",
        )

        notes: str | None = None
        if extracted.has_text:
            notes = await self._index(document, extracted, stats)
        else:
            logger.warning("Reconcile | doc=%s no extractable text", document.id)
            await self._swap_embeddings(document, [], stats)
            await self._store.drop_document_metadata_keys(document.id, PIPELINE_FLAGS)
            notes = NO_TEXT_NOTE

        await self._store.save_extraction(
            document.id,
            text=extracted.text,
            fields=extracted.structured_fields(),
            page_count=extracted.page_count or None,
            field_rows=[
                FieldRow(
                    name=f.name,
                    value=f.value,
                    field_type=f.field_type,
                    confidence=f.confidence,
                    page_number=f.page_number,
                )
                for f in extracted.fields
            ],
        )

        # A batch job completes only while it still holds the lease it was reconciled under
        if not await self._store.complete_job(job.id, document.id, notes=notes, lease=job.lease_acquired_at):
            logger.info("Reconcile | job=%s already left processing; result discarded", job.id)
            return StepResult(JobOutcome.SKIPPED)

        await self._store.record_progress(document.id, DocumentStatus.COMPLETED.value, 100, notes or "Completed")
        if cleanup:
            stats.cleaned_up = await self._cleanup(document)

        logger.info(
            "Reconcile done | job=%s doc=%s chunks=%d embedded=%d skipped=%d removed=%d "
            "cleaned=%d elapsed_ms=%.0f",
            job.id, document.id, stats.chunks, stats.embedded, stats.skipped,
            stats.removed, stats.cleaned_up, (time.monotonic() - t0) * 1000,
        )
        return StepResult(JobOutcome.COMPLETED)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _index(
        self,
        document: DocumentRecord,
        extracted: ExtractedDocument,
        stats: ReconcileStats,
    ) -> str | None:
        chunks = self._chunker.chunk_pages(extracted.pages)
        stats.chunks = len(chunks)
        result = await self._embedder.embed_chunks(chunks)
        if chunks and not result.embedded:
            raise EmbeddingError(
                f"No chunk could be embedded ({len(chunks)} chunks): "
                f"{result.errors[0] if result.errors else 'unknown error'}"
            )

        rows = [
            EmbeddingRow(
                vector_id=vector_key(document.id, index),
                chunk_index=index,
                chunk_text=chunk.text,
                embedding=vector,
                page_number=chunk.page_number,
            )
            for index, (chunk, vector) in enumerate(result.embedded)
        ]
        stats.embedded = len(rows)
        stats.skipped = len(result.failed)

        await self._store.record_progress(
            document.id, DocumentStatus.PROCESSING.value, 80, f"Indexing {len(rows)} chunks",
        )
        await self._swap_embeddings(document, rows, stats)

        if not result.failed:
            # Flags from an earlier, partially embedded run no longer apply
            await self._store.drop_document_metadata_keys(document.id, PIPELINE_FLAGS)
            return None

        await self._store.merge_document_metadata(document.id, {
            "embeddings_skipped": True,
            "embeddings_error": result.errors[0],
        })
        logger.warning(
            "Reconcile | doc=%s skipped %d of %d chunks; first error: %s",
            document.id, len(result.failed), len(chunks), result.errors[0],
        )
        return f"{len(result.failed)} of {len(chunks)} chunks could not be embedded and were skipped"

    async def _swap_embeddings(
        self,
        document: DocumentRecord,
        rows: list[EmbeddingRow],
        stats: ReconcileStats,
    ) -> None:
        # Rows are swapped last so a failed attempt still knows the old keys
        previous = [row.vector_id for row in await self._store.list_embeddings(document.id)]

        records = [
            VectorRecord(
                id=row.vector_id,
                vector=row.embedding,
                metadata=build_vector_metadata(
                    document.id, row.chunk_index, row.chunk_text, row.page_number, document.metadata,
                ),
            )
            for row in rows
        ]
        if records:
            await self._breaker.call(self._vectors.upsert, records)

        # Keys past the new last index belonged to an earlier, longer result
        current = {row.vector_id for row in rows}
        stale = [vid for vid in previous if vid not in current]
        if stale:
            await self._breaker.call(self._vectors.delete, stale)
            stats.removed = len(stale)

        await self._store.replace_embeddings(document.id, rows)

    async def _cleanup(self, document: DocumentRecord) -> int:
        removed = 0
        for prefix in (batch_input_prefix(document.id), batch_output_prefix(document.id)):
            try:
                removed += await self._storage.delete_prefix(prefix)
            except Exception as exc:
                logger.warning(
                    "Staging cleanup failed | doc=%s prefix=%s error=%s",
                    document.id, prefix, exc,
                )
        return removed
