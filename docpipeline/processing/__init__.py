"""
Document Processing Package
════════════════════════════

Text and vector steps shared by the synchronous and batch paths:

  Extracted pages → Chunking → Embedding

Modules
───────
  chunking.py   Character chunker with boundary snapping and page tagging
  embeddings.py Batched OpenAI embeddings with per-chunk failure isolation

Both components are stateless and injected into the Result Reconciler.
"""

from docpipeline.processing.chunking import ChunkResult, TextChunker
from docpipeline.processing.embeddings import EmbeddingPipeline, EmbeddingResult

__all__ = [
    "ChunkResult",
    "TextChunker",
    "EmbeddingPipeline",
    "EmbeddingResult",
]
