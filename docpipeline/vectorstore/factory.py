"""
Vector Store Factory

The rest of the app only imports get_vector_store(); it never touches the
concrete class directly. One client per process, created on first use.
"""

from __future__ import annotations

from functools import lru_cache

from docpipeline.vectorstore.base import VectorStoreBase


@lru_cache
def get_vector_store() -> VectorStoreBase:
    from docpipeline.vectorstore.pinecone_store import PineconeVectorStore
    return PineconeVectorStore()
