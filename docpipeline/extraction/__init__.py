from docpipeline.extraction.base import (
    ExtractedDocument,
    ExtractionClient,
    FormField,
    OperationState,
    OperationStatus,
    PageText,
    TableData,
)

__all__ = [
    "ExtractedDocument",
    "ExtractionClient",
    "FormField",
    "OperationState",
    "OperationStatus",
    "PageText",
    "TableData",
]
