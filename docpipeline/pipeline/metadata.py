"""
Vector metadata mirror.

Business metadata is an open-ended mapping edited by users after upload.
Every vector of a document carries a flattened copy of it next to the
pipeline's own keys, so similarity search can filter on it. The same merge
is used at reconciliation time and by the repair tool, which keeps the two
paths from drifting apart.
"""

from __future__ import annotations

from typing import Any, Mapping
from uuid import UUID

# Flags the pipeline itself writes into Document.metadata; not business data
PIPELINE_FLAGS: frozenset[str] = frozenset({"embeddings_skipped", "embeddings_error"})

# Keys owned by the pipeline; business metadata cannot override them
RESERVED_KEYS: frozenset[str] = frozenset({"document_id", "chunk_index", "text", "page_number"})


def business_fields(metadata: Mapping[str, Any] | None) -> dict[str, Any]:
    """Non-null business attributes, without pipeline flags or reserved keys."""
    if not metadata:
        return {}
    return {
        key: value
        for key, value in metadata.items()
        if value is not None
        and key not in PIPELINE_FLAGS
        and key not in RESERVED_KEYS
        and not (isinstance(value, (list, tuple)) and not any(v is not None for v in value))
    }


def build_vector_metadata(
    document_id: UUID | str,
    chunk_index: int,
    text: str,
    page_number: int | None,
    business_metadata: Mapping[str, Any] | None,
) -> dict[str, Any]:
    """
    Payload stored alongside one vector.

    page_number is only present when known; None never appears as a value.
    List values keep their non-null items.
    """
    payload: dict[str, Any] = {}
    for key, value in business_fields(business_metadata).items():
        if isinstance(value, (list, tuple)):
            value = [v for v in value if v is not None]
        payload[key] = value

    payload["document_id"] = str(document_id)
    payload["chunk_index"] = chunk_index
    payload["text"] = text
    if page_number is not None:
        payload["page_number"] = page_number
    return payload
