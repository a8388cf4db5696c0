"""
Unit Tests — Metadata Repair Tool
══════════════════════════════════
Tests for docpipeline/pipeline/repair.py
"""

from __future__ import annotations

import uuid

import pytest

from docpipeline.core.errors import DocumentNotFound, DocumentNotReady
from docpipeline.pipeline.repair import MetadataRepairTool
from docpipeline.pipeline.store import EmbeddingRow
from docpipeline.vectorstore.base import vector_key


@pytest.fixture
def repair_tool(job_store, vector_store) -> MetadataRepairTool:
    return MetadataRepairTool(job_store, vector_store)


@pytest.fixture
def completed_document(job_store):
    """
    Factory fixture: completed document with n stored embedding rows.

    Usage:
        doc = await completed_document(metadata={"fund_manager": "Acme"}, chunks=3)
    """
    async def _build(*, metadata: dict | None = None, chunks: int = 3, status: str = "completed"):
        doc = job_store.add_document(metadata=metadata, status=status)
        await job_store.replace_embeddings(doc.id, [
            EmbeddingRow(
                vector_id=vector_key(doc.id, i),
                chunk_index=i,
                chunk_text=f"chunk {i}",
                embedding=[float(i), 1.0],
                page_number=i + 1,
            )
            for i in range(chunks)
        ])
        return doc

    return _build


@pytest.mark.unit
class TestRepairDocument:

    async def test_mirrors_current_metadata(self, repair_tool, vector_store, completed_document):
        doc = await completed_document(metadata={
            "fund_manager": "Acme Capital",
            "jurisdiction": None,
            "investor_types": ["institutional", None],
            "embeddings_skipped": True,
        })

        summary = await repair_tool.repair_document(doc.id)

        assert (summary.documents_processed, summary.vectors_updated, summary.vectors_failed) == (1, 3, 0)
        records = vector_store.for_document(doc.id)
        assert [r.id for r in records] == [vector_key(doc.id, i) for i in range(3)]
        for i, record in enumerate(records):
            assert record.vector == [float(i), 1.0]
            assert record.metadata == {
                "fund_manager": "Acme Capital",
                "investor_types": ["institutional"],
                "document_id": str(doc.id),
                "chunk_index": i,
                "text": f"chunk {i}",
                "page_number": i + 1,
            }

    async def test_repair_is_repeatable(self, repair_tool, vector_store, completed_document):
        doc = await completed_document(metadata={"fund_manager": "Acme"})
        await repair_tool.repair_document(doc.id)
        first = {r.id: r.metadata for r in vector_store.for_document(doc.id)}

        await repair_tool.repair_document(doc.id)

        assert {r.id: r.metadata for r in vector_store.for_document(doc.id)} == first

    async def test_per_vector_failures_collected(self, repair_tool, vector_store, completed_document):
        doc = await completed_document(metadata={"fund_manager": "Acme"})
        vector_store.fail_ids = {vector_key(doc.id, 1)}

        summary = await repair_tool.repair_document(doc.id)

        assert (summary.vectors_updated, summary.vectors_failed) == (2, 1)
        assert summary.documents_failed == 1
        assert vector_key(doc.id, 1) in summary.errors[0]
        response = summary.to_response()
        assert response.success is False
        assert response.summary.errors == 1

    async def test_unknown_document(self, repair_tool):
        with pytest.raises(DocumentNotFound):
            await repair_tool.repair_document(uuid.uuid4())

    async def test_document_not_completed(self, repair_tool, completed_document):
        doc = await completed_document(status="processing")
        with pytest.raises(DocumentNotReady) as exc_info:
            await repair_tool.repair_document(doc.id)
        assert exc_info.value.status == "processing"

    async def test_document_without_embeddings(self, repair_tool, completed_document):
        doc = await completed_document(metadata={"a": 1}, chunks=0)
        summary = await repair_tool.repair_document(doc.id)
        assert summary.documents_failed == 1
        assert "no embeddings" in summary.errors[0]


@pytest.mark.unit
class TestRepairAll:

    async def test_only_completed_documents_with_metadata(self, repair_tool, vector_store, completed_document):
        eligible = await completed_document(metadata={"fund_manager": "Acme"})
        await completed_document(metadata=None)
        await completed_document(metadata={"fund_manager": "Globex"}, status="processing")

        summary = await repair_tool.repair_all()

        assert summary.documents_processed == 1
        assert {r.metadata["document_id"] for r in vector_store.records.values()} == {str(eligible.id)}

    async def test_continues_after_failing_document(self, repair_tool, vector_store, completed_document):
        broken = await completed_document(metadata={"a": 1}, chunks=1)
        healthy = await completed_document(metadata={"a": 2}, chunks=2)
        vector_store.fail_ids = {vector_key(broken.id, 0)}

        summary = await repair_tool.repair_all()

        assert summary.documents_processed == 2
        assert summary.documents_failed == 1
        assert len(vector_store.for_document(healthy.id)) == 2

    async def test_empty_run(self, repair_tool):
        response = (await repair_tool.repair_all()).to_response()
        assert response.success is True
        assert response.documents_processed == 0
