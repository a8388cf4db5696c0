"""
Text Chunker  —  Bounded Windows with Boundary Snapping
═════════════════════════════════════════════════════════

Chunks are character windows of at most CHUNK_SIZE characters that overlap
their predecessor by CHUNK_OVERLAP characters. A window's end is pulled back
to the last sentence end (. ! ? or newline) inside it, or failing that to
the last space, but only when that boundary lies in the second half of the
window; otherwise the window is cut at full length.

Paged mode chunks each page on its own, so every chunk carries the 1-based
page it came from, while chunk_index runs globally across pages (0, 1, 2 …).

The reconciler may drop chunks whose embedding failed; it re-numbers the
survivors, so chunk_index here is provisional.
"""

from __future__ import annotations

import logging
import re
import unicodedata
from dataclasses import dataclass
from typing import Iterable

from docpipeline.extraction.base import PageText

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration constants
# ---------------------------------------------------------------------------

CHUNK_SIZE    = 1000
CHUNK_OVERLAP = 200

# A boundary is only used if it falls past this fraction of the window
MIN_BOUNDARY_RATIO = 0.5

_SENTENCE_ENDS = (".", "!", "?", "\n")


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------

@dataclass
class ChunkResult:
    """A single chunk ready for embedding."""
    chunk_index: int
    text:        str
    page_number: int | None = None

    @property
    def char_count(self) -> int:
        return len(self.text)


def _normalize_text(text: str) -> str:
    text = unicodedata.normalize("NFKC", text)
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    return re.sub(r"[ \t]+\n", "\n", text)


# ---------------------------------------------------------------------------
# Core chunker
# ---------------------------------------------------------------------------

class TextChunker:
    """
    Stateless chunker.

    Usage:
        chunker = TextChunker()
        chunks = chunker.chunk_pages(extracted.pages)
    """

    def __init__(self, chunk_size: int = CHUNK_SIZE, overlap: int = CHUNK_OVERLAP) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if not 0 <= overlap < chunk_size:
            raise ValueError("overlap must be in [0, chunk_size)")
        self.chunk_size = chunk_size
        self.overlap = overlap

    def split(self, text: str) -> list[str]:
        """Split text into windows; returns stripped, non-empty pieces."""
        text = _normalize_text(text)
        pieces: list[str] = []
        start = 0
        length = len(text)

        while start < length:
            end = min(start + self.chunk_size, length)
            if end < length:
                end = start + self._snap(text[start:end])

            piece = text[start:end].strip()
            if piece:
                pieces.append(piece)
            if end >= length:
                break
            # Always advance, even when the overlap would swallow the window
            start = max(start + 1, end - self.overlap)

        return pieces

    def _snap(self, window: str) -> int:
        """Length to keep from a full window after boundary snapping."""
        floor = len(window) * MIN_BOUNDARY_RATIO
        last_sentence = max(window.rfind(ch) for ch in _SENTENCE_ENDS)
        if last_sentence > floor:
            return last_sentence + 1
        last_space = window.rfind(" ")
        if last_space > floor:
            return last_space + 1
        return len(window)

    def chunk_text(self, text: str, page_number: int | None = None) -> list[ChunkResult]:
        return [
            ChunkResult(chunk_index=i, text=piece, page_number=page_number)
            for i, piece in enumerate(self.split(text))
        ]

    def chunk_pages(self, pages: Iterable[PageText]) -> list[ChunkResult]:
        """Chunk page by page with a global chunk_index."""
        results: list[ChunkResult] = []
        for page in sorted(pages, key=lambda p: p.page_number):
            for piece in self.split(page.text):
                results.append(ChunkResult(
                    chunk_index=len(results),
                    text=piece,
                    page_number=page.page_number,
                ))

        logger.info(
            "TextChunker | chunks=%d avg_chars=%.0f",
            len(results), sum(c.char_count for c in results) / max(1, len(results)),
        )
        return results
