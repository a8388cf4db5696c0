"""
Embedding Pipeline  —  Per-Chunk Failure Isolation
════════════════════════════════════════════════════

Chunks are sent to OpenAI in batches of EMBEDDING_BATCH_SIZE. When a batch
still fails after its retries, each of its chunks is retried on its own so
one bad chunk (oversized input, content filter, ...) costs only that chunk.
Chunks that cannot be embedded are reported in EmbeddingResult.failed and
EmbeddingResult.errors; embed_chunks() itself never raises for them.

Retry policy (per call):
  RateLimitError / APIConnectionError / 5xx → wait RETRY_BASE_DELAY × 2^attempt
  AuthenticationError / BadRequestError     → fail immediately

All calls go through the "embeddings" circuit breaker.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Sequence

from openai import AsyncOpenAI

from docpipeline.core.config import settings
from docpipeline.core.errors import ServiceUnavailable
from docpipeline.core.resilience import get_breaker
from docpipeline.processing.chunking import ChunkResult

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

EMBEDDING_BATCH_SIZE   = 100    # texts per OpenAI API call
MAX_CONCURRENT_CALLS   = 4
RETRY_BASE_DELAY       = 2.0    # seconds: doubles each retry
RETRY_MAX_DELAY        = 60.0   # cap

_NON_RETRYABLE = ("AuthenticationError", "BadRequestError", "PermissionDeniedError", "NotFoundError")


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------

@dataclass
class EmbeddingResult:
    """
    embedded : (chunk, vector) pairs in chunk order
    failed   : provisional chunk_index of every chunk that could not be embedded
    errors   : one message per failed chunk
    """
    embedded:   list[tuple[ChunkResult, list[float]]]
    failed:     list[int] = field(default_factory=list)
    errors:     list[str] = field(default_factory=list)
    elapsed_ms: float = 0.0

    @property
    def total_chunks(self) -> int:
        return len(self.embedded) + len(self.failed)


# ---------------------------------------------------------------------------
# Core embedding pipeline
# ---------------------------------------------------------------------------

class EmbeddingPipeline:
    """
    Usage:
        pipeline = EmbeddingPipeline()
        result   = await pipeline.embed_chunks(chunks)
    """

    def __init__(
        self,
        model:       str | None = None,
        dimensions:  int | None = None,
        api_key:     str | None = None,
        max_retries: int | None = None,
        client:      AsyncOpenAI | None = None,
    ) -> None:
        self._model       = model or settings.embedding_model
        self._dimensions  = dimensions or settings.embedding_dimensions
        self._max_retries = settings.embedding_max_retries if max_retries is None else max_retries
        self._client      = client or AsyncOpenAI(api_key=api_key or settings.openai_api_key)
        self._breaker     = get_breaker("embeddings")

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    async def embed_chunks(self, chunks: Sequence[ChunkResult]) -> EmbeddingResult:
        if not chunks:
            return EmbeddingResult(embedded=[])

        t0 = time.monotonic()
        batches = [
            list(chunks[i : i + EMBEDDING_BATCH_SIZE])
            for i in range(0, len(chunks), EMBEDDING_BATCH_SIZE)
        ]
        semaphore = asyncio.Semaphore(MAX_CONCURRENT_CALLS)
        outcomes = await asyncio.gather(*(self._embed_batch(b, semaphore) for b in batches))

        result = EmbeddingResult(embedded=[])
        for outcome in outcomes:
            for chunk, vector, error in outcome:
                if vector is not None:
                    result.embedded.append((chunk, vector))
                else:
                    result.failed.append(chunk.chunk_index)
                    result.errors.append(f"chunk {chunk.chunk_index}: {error}")
        result.embedded.sort(key=lambda pair: pair[0].chunk_index)
        result.elapsed_ms = (time.monotonic() - t0) * 1000

        logger.info(
            "EmbeddingPipeline done | chunks=%d embedded=%d failed=%d model=%s elapsed_ms=%.0f",
            len(chunks), len(result.embedded), len(result.failed), self._model, result.elapsed_ms,
        )
        return result

    # ------------------------------------------------------------------
    # Batch → per-chunk fallback
    # ------------------------------------------------------------------

    async def _embed_batch(
        self,
        batch:     list[ChunkResult],
        semaphore: asyncio.Semaphore,
    ) -> list[tuple[ChunkResult, list[float] | None, str | None]]:
        async with semaphore:
            try:
                vectors = await self._call_with_retry(
                    [c.text for c in batch], label=f"batch@{batch[0].chunk_index}",
                )
                return [(c, v, None) for c, v in zip(batch, vectors)]
            except Exception as exc:
                if len(batch) == 1:
                    logger.error("Chunk embedding failed | chunk=%d error=%s", batch[0].chunk_index, exc)
                    return [(batch[0], None, f"{type(exc).__name__}: {exc}")]
                logger.warning(
                    "Embedding batch failed, isolating chunks | first=%d size=%d error=%s",
                    batch[0].chunk_index, len(batch), exc,
                )

            outcomes: list[tuple[ChunkResult, list[float] | None, str | None]] = []
            for chunk in batch:
                try:
                    vector = (await self._call_with_retry([chunk.text], label=f"chunk@{chunk.chunk_index}"))[0]
                    outcomes.append((chunk, vector, None))
                except Exception as exc:
                    logger.error("Chunk embedding failed | chunk=%d error=%s", chunk.chunk_index, exc)
                    outcomes.append((chunk, None, f"{type(exc).__name__}: {exc}"))
            return outcomes

    async def _call_with_retry(self, texts: list[str], label: str) -> list[list[float]]:
        last_error: Exception | None = None

        for attempt in range(self._max_retries + 1):
            if attempt > 0:
                delay = min(RETRY_BASE_DELAY * (2 ** (attempt - 1)), RETRY_MAX_DELAY)
                logger.warning(
                    "Embedding retry | call=%s attempt=%d delay=%.1fs error=%s",
                    label, attempt, delay, last_error,
                )
                await asyncio.sleep(delay)
            try:
                return await self._breaker.call(self._call_openai, texts)
            except Exception as exc:
                last_error = exc
                if isinstance(exc, ServiceUnavailable) or type(exc).__name__ in _NON_RETRYABLE:
                    raise

        raise last_error or RuntimeError(f"Embedding call {label} failed")

    async def _call_openai(self, texts: list[str]) -> list[list[float]]:
        response = await self._client.embeddings.create(
            model=self._model,
            input=texts,
            dimensions=self._dimensions,
        )
        vectors = [item.embedding for item in sorted(response.data, key=lambda d: d.index)]
        if len(vectors) != len(texts):
            raise ValueError(f"Expected {len(texts)} embeddings, got {len(vectors)}")
        return vectors
