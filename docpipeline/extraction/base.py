"""
Extraction service contract and shared result types.

Two entry points, mirroring what managed extraction services offer:

  process()        synchronous; returns text and fields in the same call,
                   limited to small documents
  submit_batch()   long-running operation over an object-storage input,
                   polled with get_operation() and collected from the
                   output prefix with load_batch_output()

Callers never see provider payloads, only ExtractedDocument.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from docpipeline.schemas.pipeline import ProcessorVariant

if TYPE_CHECKING:
    from docpipeline.storage.s3 import S3StorageService


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

@dataclass
class PageText:
    """
    Text extracted from a single page.

    page_number : 1-based page index
    text        : lines joined by newlines (may be empty for image-only pages)
    confidence  : mean word confidence (0.0–1.0); -1.0 = not reported
    """
    page_number: int
    text:        str
    confidence:  float = -1.0


@dataclass
class FormField:
    name:        str
    value:       str | None
    field_type:  str = "text"         # text | number | date | checkbox
    confidence:  float | None = None
    page_number: int | None = None


@dataclass
class TableData:
    page_number: int | None
    rows:        list[list[str]]


@dataclass
class ExtractedDocument:
    """Normalised extraction output, independent of sync/batch origin."""
    pages:      list[PageText]
    processor:  ProcessorVariant
    fields:     list[FormField] = field(default_factory=list)
    tables:     list[TableData] = field(default_factory=list)
    page_count: int = 0

    def __post_init__(self) -> None:
        if not self.page_count:
            self.page_count = max((p.page_number for p in self.pages), default=0)

    @property
    def text(self) -> str:
        """All non-empty pages joined by blank lines."""
        return "\n\n".join(p.text for p in self.pages if p.text.strip())

    @property
    def has_text(self) -> bool:
        return any(p.text.strip() for p in self.pages)

    def structured_fields(self) -> dict | None:
        """JSON form stored on documents.extracted_fields; None when nothing was found."""
        if not self.fields and not self.tables:
            return None
        return {
            "processor": self.processor.value,
            "form_fields": [
                {
                    "name":        f.name,
                    "value":       f.value,
                    "type":        f.field_type,
                    "confidence":  f.confidence,
                    "page_number": f.page_number,
                }
                for f in self.fields
            ],
            "tables": [
                {"page_number": t.page_number, "rows": t.rows}
                for t in self.tables
            ],
        }


class OperationState(str, Enum):
    RUNNING   = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED    = "FAILED"


@dataclass
class OperationStatus:
    state:      OperationState
    raw_status: str
    error:      str | None = None
    page_count: int | None = None

    @property
    def done(self) -> bool:
        return self.state is not OperationState.RUNNING


# ---------------------------------------------------------------------------
# Abstract client
# ---------------------------------------------------------------------------

class ExtractionClient(ABC):
    """
    Extraction service binding.

    Errors surface as docpipeline.core.errors.ExtractionServiceError
    (PageLimitExceeded when the sync endpoint refuses a document for its
    size); the pipeline decides what they mean for the job.
    """

    @abstractmethod
    async def process(self, document_bytes: bytes, processor: ProcessorVariant) -> ExtractedDocument:
        """Synchronous extraction."""

    @abstractmethod
    async def submit_batch(
        self,
        *,
        bucket: str,
        input_key: str,
        output_prefix: str,
        processor: ProcessorVariant,
        idempotency_token: str,
    ) -> str:
        """Start a long-running operation; returns its handle."""

    @abstractmethod
    async def get_operation(self, operation_id: str, processor: ProcessorVariant) -> OperationStatus:
        """Current state of a long-running operation."""

    @abstractmethod
    async def load_batch_output(
        self,
        storage: "S3StorageService",
        output_prefix: str,
        processor: ProcessorVariant,
    ) -> ExtractedDocument:
        """Combine every result file under output_prefix into one document."""
