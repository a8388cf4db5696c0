"""
Processor selection — form parser vs. general OCR.

The heuristic only looks at the filename, so it is approximate by nature.
It sits behind ProcessorSelector so a content-based selector can replace it
without touching the job state machine.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from pathlib import PurePosixPath

from docpipeline.schemas.pipeline import ProcessorVariant

FORM_KEYWORDS: frozenset[str] = frozenset({
    "application", "form", "questionnaire", "survey", "registration",
    "enrollment", "contract", "agreement", "lp", "l.p.", "subscription",
    "documents", "document", "fund",
})

TEXT_HEAVY_KEYWORDS: frozenset[str] = frozenset({
    "prospectus", "disclosure", "memorandum", "offering", "circular",
    "supplement", "report",
})

_TOKEN_RE = re.compile(r"[a-z0-9]+(?:\.[a-z0-9]+)*\.?")


class ProcessorSelector(ABC):

    @abstractmethod
    def select(self, filename: str) -> ProcessorVariant:
        """Pick the extraction processor for a document."""


class KeywordProcessorSelector(ProcessorSelector):
    """
    Form processor when a form keyword appears and no text-heavy keyword
    does; OCR otherwise. Keywords match whole tokens of the filename stem,
    so "lp" matches "Acme_LP_Agreement" but not "help".
    """

    def __init__(
        self,
        form_keywords: frozenset[str] = FORM_KEYWORDS,
        text_heavy_keywords: frozenset[str] = TEXT_HEAVY_KEYWORDS,
    ) -> None:
        self._form = form_keywords
        self._text_heavy = text_heavy_keywords

    @staticmethod
    def _tokens(filename: str) -> set[str]:
        stem = PurePosixPath(filename.replace("\\", "/")).stem.lower()
        tokens: set[str] = set()
        for match in _TOKEN_RE.findall(stem):
            tokens.add(match)
            tokens.add(match.rstrip("."))
        return tokens

    def select(self, filename: str) -> ProcessorVariant:
        tokens = self._tokens(filename)
        if tokens & self._text_heavy:
            return ProcessorVariant.OCR
        if tokens & self._form:
            return ProcessorVariant.FORM
        return ProcessorVariant.OCR
