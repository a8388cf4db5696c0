"""
Vector Store — Abstract Base

Every concrete vector index backend implements this interface; the pipeline
only speaks this protocol.

Metadata contract (enforced by ALL implementations):
  - Values are flat: str, int, float, bool or list[str].
  - None is never written. A key whose value is None is dropped, so a
    filter on that key simply does not match the vector.
  - Filters are equality / inclusion only:
        {"jurisdiction": "Delaware"}                → field == value
        {"fund_manager": ["Acme", "Globex"]}        → field ∈ {values}
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

@dataclass
class VectorRecord:
    """A single embedding record to upsert into the vector index."""
    id:        str              # deterministic: "<document_id>_chunk_<chunk_index>"
    vector:    list[float]
    metadata:  dict             # flat, None-free payload stored alongside the vector


@dataclass
class QueryResult:
    """One result returned from a similarity search."""
    id:         str
    score:      float
    metadata:   dict
    text:       str = field(default="")   # convenience alias for metadata["text"]

    def __post_init__(self) -> None:
        if not self.text and "text" in self.metadata:
            self.text = self.metadata["text"]


def vector_key(document_id, chunk_index: int) -> str:
    """Deterministic vector id; re-indexing a chunk overwrites its entry."""
    return f"{document_id}_chunk_{chunk_index}"


# ---------------------------------------------------------------------------
# Abstract interface
# ---------------------------------------------------------------------------

class VectorStoreBase(ABC):

    @abstractmethod
    async def upsert(self, records: list[VectorRecord], batch_size: int = 100) -> int:
        """Insert or overwrite records by id. Returns the number of vectors upserted."""

    @abstractmethod
    async def query(
        self,
        vector: list[float],
        top_k: int = 5,
        filter: dict | None = None,
    ) -> list[QueryResult]:
        """Nearest-neighbour search with an optional equality/inclusion filter."""

    @abstractmethod
    async def delete(self, ids: list[str]) -> None:
        """Delete vectors by id."""
