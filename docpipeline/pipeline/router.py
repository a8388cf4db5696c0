"""
Extraction Router — sync vs. batch decision.

route() is a pure function of its inputs. It is evaluated up to twice per
document: once before the first extraction call, with the page count
estimated from the byte size when it is not yet known, and again when the
extraction service reports the real page count. The second evaluation may
upgrade sync to batch; an in-flight batch operation is never downgraded
(see Router.confirm).
"""

from __future__ import annotations

import math
from dataclasses import dataclass

from docpipeline.core.config import settings
from docpipeline.schemas.pipeline import ProcessingMethod

PAGE_THRESHOLD = 30
BYTE_THRESHOLD = 2 * 1024 * 1024
BYTES_PER_PAGE_ESTIMATE = 50 * 1024


def route(
    page_count: int,
    byte_size: int,
    *,
    page_threshold: int = PAGE_THRESHOLD,
    byte_threshold: int = BYTE_THRESHOLD,
) -> ProcessingMethod:
    """batch if page_count > page_threshold or byte_size > byte_threshold, else sync."""
    if page_count > page_threshold or byte_size > byte_threshold:
        return ProcessingMethod.BATCH
    return ProcessingMethod.SYNC


def estimate_page_count(byte_size: int, bytes_per_page: int = BYTES_PER_PAGE_ESTIMATE) -> int:
    """Rough page estimate for PDFs whose page count is still unknown."""
    if byte_size <= 0:
        return 0
    return math.ceil(byte_size / bytes_per_page)


@dataclass(frozen=True)
class Router:
    """route() bound to configured thresholds."""

    page_threshold: int = PAGE_THRESHOLD
    byte_threshold: int = BYTE_THRESHOLD
    bytes_per_page: int = BYTES_PER_PAGE_ESTIMATE

    @classmethod
    def from_settings(cls) -> "Router":
        return cls(
            page_threshold=settings.batch_page_threshold,
            byte_threshold=settings.batch_byte_threshold,
            bytes_per_page=settings.estimated_bytes_per_page,
        )

    def precheck(self, page_count: int | None, byte_size: int) -> ProcessingMethod:
        pages = page_count if page_count else estimate_page_count(byte_size, self.bytes_per_page)
        return route(
            pages, byte_size,
            page_threshold=self.page_threshold,
            byte_threshold=self.byte_threshold,
        )

    def confirm(
        self,
        current: ProcessingMethod,
        page_count: int,
        byte_size: int,
    ) -> ProcessingMethod:
        """Re-evaluate once the real page count is known; batch stays batch."""
        if current is ProcessingMethod.BATCH:
            return current
        return route(
            page_count, byte_size,
            page_threshold=self.page_threshold,
            byte_threshold=self.byte_threshold,
        )
