"""
Pinecone Vector Store

One index, one configured namespace (empty string = Pinecone's default
namespace). The pinecone client is synchronous; calls run in a worker
thread so the event loop keeps serving other jobs in the tick.

Metadata is re-flattened on the way in as a last guard: None values are
dropped, nested dicts are stored as JSON strings, and lists keep only their
non-null items as strings.
"""

from __future__ import annotations

import asyncio
import json
import logging

from pinecone import Pinecone
from pinecone.exceptions import PineconeException

from docpipeline.core.config import settings
from docpipeline.core.errors import VectorStoreError
from docpipeline.vectorstore.base import QueryResult, VectorRecord, VectorStoreBase

logger = logging.getLogger(__name__)


def flatten_metadata(metadata: dict) -> dict:
    """Coerce a payload into Pinecone's metadata types, dropping None."""
    flat: dict = {}
    for key, value in metadata.items():
        if value is None:
            continue
        if isinstance(value, (str, bool, int, float)):
            flat[key] = value
        elif isinstance(value, (list, tuple, set)):
            flat[key] = [str(v) for v in value if v is not None]
        elif isinstance(value, dict):
            flat[key] = json.dumps(value, sort_keys=True, default=str)
        else:
            flat[key] = str(value)
    return flat


def build_filter(filters: dict | None) -> dict | None:
    """{"a": 1, "b": [x, y]} → {"$and": [{"a": {"$eq": 1}}, {"b": {"$in": [x, y]}}]}"""
    if not filters:
        return None
    clauses = []
    for key, value in filters.items():
        if value is None:
            continue
        if isinstance(value, (list, tuple, set)):
            clauses.append({key: {"$in": list(value)}})
        else:
            clauses.append({key: {"$eq": value}})
    if not clauses:
        return None
    return clauses[0] if len(clauses) == 1 else {"$and": clauses}


class PineconeVectorStore(VectorStoreBase):

    def __init__(self, index=None, namespace: str | None = None) -> None:
        if index is None:
            pc = Pinecone(api_key=settings.pinecone_api_key)
            index = pc.Index(settings.pinecone_index_name)
        self._index = index
        self._namespace = settings.pinecone_namespace if namespace is None else namespace

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def upsert(self, records: list[VectorRecord], batch_size: int = 100) -> int:
        """
        Upsert in batches to stay within Pinecone's 2MB request limit.
        A failing batch raises VectorStoreError; earlier batches stay written
        (ids are deterministic, so a retry overwrites them).
        """
        total = 0
        for i in range(0, len(records), batch_size):
            batch = records[i : i + batch_size]
            vectors = [
                {"id": rec.id, "values": rec.vector, "metadata": flatten_metadata(rec.metadata)}
                for rec in batch
            ]
            try:
                await asyncio.to_thread(self._index.upsert, vectors=vectors, namespace=self._namespace)
            except PineconeException as exc:
                raise VectorStoreError(f"Pinecone upsert failed at batch {i // batch_size}: {exc}") from exc
            total += len(batch)
            logger.debug(
                "Pinecone upsert | namespace=%s batch=%d total=%d",
                self._namespace or "<default>", len(batch), total,
            )
        return total

    async def query(
        self,
        vector: list[float],
        top_k: int = 5,
        filter: dict | None = None,
    ) -> list[QueryResult]:
        top_k = min(top_k, 100)
        try:
            resp = await asyncio.to_thread(
                self._index.query,
                vector=vector,
                top_k=top_k,
                namespace=self._namespace,
                filter=build_filter(filter),
                include_metadata=True,
                include_values=False,
            )
        except PineconeException as exc:
            raise VectorStoreError(f"Pinecone query failed: {exc}") from exc

        results = []
        for match in resp.get("matches", []):
            meta = match.get("metadata") or {}
            results.append(QueryResult(id=match["id"], score=match["score"], metadata=meta))
        return results

    async def delete(self, ids: list[str]) -> None:
        if not ids:
            return
        try:
            await asyncio.to_thread(self._index.delete, ids=ids, namespace=self._namespace)
        except PineconeException as exc:
            raise VectorStoreError(f"Pinecone delete failed: {exc}") from exc
        logger.info("Pinecone delete | namespace=%s count=%d", self._namespace or "<default>", len(ids))
