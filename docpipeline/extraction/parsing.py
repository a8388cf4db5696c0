"""
Textract block parsing.

Textract returns a flat list of blocks linked by id. This module turns that
list into PageText / FormField / TableData:

  LINE               → page text, in reading order, grouped by Page
  KEY_VALUE_SET      → form fields (KEY block → VALUE block → WORD / SELECTION_ELEMENT)
  TABLE → CELL       → table rows, ordered by RowIndex / ColumnIndex

Field values are typed: SELECTION_ELEMENT → checkbox, parseable date →
date, numeric (currency and thousands separators allowed) → number,
anything else → text.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Iterable

from docpipeline.extraction.base import ExtractedDocument, FormField, PageText, TableData
from docpipeline.schemas.pipeline import ProcessorVariant

_DATE_FORMATS = (
    "%m/%d/%Y", "%m/%d/%y", "%d/%m/%Y", "%Y-%m-%d", "%d-%m-%Y", "%m-%d-%Y",
    "%B %d, %Y", "%b %d, %Y", "%d %B %Y", "%d %b %Y", "%B %Y",
)
_NUMBER_RE = re.compile(r"^\(?[-+]?[$€£]?\s*\d[\d,]*(\.\d+)?\s*%?\)?$")


def infer_field_type(value: str | None, *, is_selection: bool = False) -> str:
    if is_selection:
        return "checkbox"
    if not value:
        return "text"
    candidate = value.strip()
    for fmt in _DATE_FORMATS:
        try:
            datetime.strptime(candidate, fmt)
            return "date"
        except ValueError:
            continue
    if _NUMBER_RE.match(candidate):
        return "number"
    return "text"


def _children(block: dict, by_id: dict[str, dict], rel_type: str = "CHILD") -> list[dict]:
    out: list[dict] = []
    for rel in block.get("Relationships", []) or []:
        if rel.get("Type") != rel_type:
            continue
        out.extend(by_id[i] for i in rel.get("Ids", []) if i in by_id)
    return out


def _text_of(block: dict, by_id: dict[str, dict]) -> tuple[str, bool]:
    """Concatenate child words; report whether a selection element was involved."""
    words: list[str] = []
    is_selection = False
    for child in _children(block, by_id):
        if child["BlockType"] == "WORD":
            words.append(child.get("Text", ""))
        elif child["BlockType"] == "SELECTION_ELEMENT":
            is_selection = True
            words.append(child.get("SelectionStatus", "NOT_SELECTED"))
    return " ".join(w for w in words if w).strip(), is_selection


def _pages(blocks: Iterable[dict]) -> list[PageText]:
    lines: dict[int, list[str]] = {}
    confidences: dict[int, list[float]] = {}
    for block in blocks:
        if block["BlockType"] != "LINE":
            continue
        page_num = block.get("Page", 1)
        lines.setdefault(page_num, []).append(block.get("Text", ""))
        if "Confidence" in block:
            confidences.setdefault(page_num, []).append(block["Confidence"] / 100.0)

    pages = []
    for pn in sorted(lines):
        conf = confidences.get(pn)
        pages.append(PageText(
            page_number=pn,
            text="\n".join(lines[pn]),
            confidence=round(sum(conf) / len(conf), 3) if conf else -1.0,
        ))
    return pages


def _form_fields(blocks: list[dict], by_id: dict[str, dict]) -> list[FormField]:
    fields: list[FormField] = []
    for block in blocks:
        if block["BlockType"] != "KEY_VALUE_SET" or "KEY" not in block.get("EntityTypes", []):
            continue
        name, _ = _text_of(block, by_id)
        if not name:
            continue
        value_text: str | None = None
        is_selection = False
        for value_block in _children(block, by_id, rel_type="VALUE"):
            value_text, is_selection = _text_of(value_block, by_id)
        fields.append(FormField(
            name=name.rstrip(":").strip(),
            value=value_text or None,
            field_type=infer_field_type(value_text, is_selection=is_selection),
            confidence=round(block["Confidence"] / 100.0, 3) if "Confidence" in block else None,
            page_number=block.get("Page"),
        ))
    return fields


def _tables(blocks: list[dict], by_id: dict[str, dict]) -> list[TableData]:
    tables: list[TableData] = []
    for block in blocks:
        if block["BlockType"] != "TABLE":
            continue
        cells: dict[tuple[int, int], str] = {}
        n_rows = n_cols = 0
        for cell in _children(block, by_id):
            if cell["BlockType"] != "CELL":
                continue
            r, c = cell.get("RowIndex", 1), cell.get("ColumnIndex", 1)
            cells[(r, c)], _ = _text_of(cell, by_id)
            n_rows, n_cols = max(n_rows, r), max(n_cols, c)
        rows = [[cells.get((r, c), "") for c in range(1, n_cols + 1)] for r in range(1, n_rows + 1)]
        tables.append(TableData(page_number=block.get("Page"), rows=rows))
    return tables


def parse_blocks(
    blocks: list[dict],
    processor: ProcessorVariant,
    page_count: int | None = None,
) -> ExtractedDocument:
    by_id = {b["Id"]: b for b in blocks if "Id" in b}
    fields: list[FormField] = []
    tables: list[TableData] = []
    if processor is ProcessorVariant.FORM:
        fields = _form_fields(blocks, by_id)
        tables = _tables(blocks, by_id)
    return ExtractedDocument(
        pages=_pages(blocks),
        processor=processor,
        fields=fields,
        tables=tables,
        page_count=page_count or 0,
    )
