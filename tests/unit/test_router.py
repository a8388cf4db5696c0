"""
Unit Tests — Extraction Router and Processor Selection
═══════════════════════════════════════════════════════
Tests for docpipeline/pipeline/router.py and docpipeline/pipeline/processors.py

Coverage:
  ✅ route() thresholds: > 30 pages or > 2 MiB → batch, else sync
  ✅ Boundaries are exclusive (exactly 30 pages / exactly 2 MiB stay sync)
  ✅ precheck() estimates pages from byte size when unknown
  ✅ confirm() upgrades sync → batch and never downgrades batch
  ✅ Keyword selection: form keywords → FORM, text-heavy wins over form
  ✅ Keywords match whole tokens ("lp" ≠ "help")
"""

from __future__ import annotations

import pytest

from docpipeline.pipeline.processors import KeywordProcessorSelector
from docpipeline.pipeline.router import BYTE_THRESHOLD, Router, estimate_page_count, route
from docpipeline.schemas.pipeline import ProcessingMethod, ProcessorVariant

KB = 1024
MB = 1024 * 1024


@pytest.mark.unit
class TestRoute:

    def test_many_pages_go_to_batch(self):
        assert route(31, 1 * MB) is ProcessingMethod.BATCH

    def test_large_file_goes_to_batch(self):
        assert route(10, 3 * MB) is ProcessingMethod.BATCH

    def test_small_document_stays_sync(self):
        assert route(10, 1 * MB) is ProcessingMethod.SYNC

    def test_thresholds_are_exclusive(self):
        assert route(30, BYTE_THRESHOLD) is ProcessingMethod.SYNC
        assert route(30, BYTE_THRESHOLD + 1) is ProcessingMethod.BATCH

    def test_same_inputs_same_answer(self):
        assert {route(31, 10) for _ in range(5)} == {ProcessingMethod.BATCH}

    def test_custom_thresholds(self):
        assert route(6, 10, page_threshold=5) is ProcessingMethod.BATCH
        assert route(6, 10, page_threshold=50) is ProcessingMethod.SYNC


@pytest.mark.unit
class TestRouter:

    def test_estimate_rounds_up(self):
        assert estimate_page_count(0) == 0
        assert estimate_page_count(1) == 1
        assert estimate_page_count(50 * KB + 1) == 2

    def test_precheck_uses_known_page_count(self):
        assert Router().precheck(45, 500 * KB) is ProcessingMethod.BATCH
        assert Router().precheck(5, 500 * KB) is ProcessingMethod.SYNC

    def test_precheck_estimates_unknown_page_count(self):
        # 1.9 MiB at 50 KiB per page → 39 estimated pages
        assert Router().precheck(None, int(1.9 * MB)) is ProcessingMethod.BATCH
        assert Router().precheck(None, 500 * KB) is ProcessingMethod.SYNC

    def test_confirm_upgrades_sync(self):
        assert Router().confirm(ProcessingMethod.SYNC, 45, 500 * KB) is ProcessingMethod.BATCH

    def test_confirm_never_downgrades_batch(self):
        assert Router().confirm(ProcessingMethod.BATCH, 2, 10 * KB) is ProcessingMethod.BATCH

    def test_from_settings_reads_thresholds(self, monkeypatch):
        from docpipeline.core.config import settings
        monkeypatch.setattr(settings, "batch_page_threshold", 10)
        assert Router.from_settings().precheck(11, 1) is ProcessingMethod.BATCH


@pytest.mark.unit
class TestKeywordProcessorSelector:

    @pytest.mark.parametrize("filename", [
        "Subscription_Agreement.pdf",
        "Acme Fund LP - Application Form.pdf",
        "investor-questionnaire.pdf",
        "Registration.PDF",
    ])
    def test_form_keywords_select_form(self, filename):
        assert KeywordProcessorSelector().select(filename) is ProcessorVariant.FORM

    @pytest.mark.parametrize("filename", [
        "Private Placement Memorandum.pdf",
        "Fund Prospectus 2024.pdf",
        "Offering Circular - Subscription Documents.pdf",
        "annual_report.pdf",
    ])
    def test_text_heavy_keywords_select_ocr(self, filename):
        assert KeywordProcessorSelector().select(filename) is ProcessorVariant.OCR

    def test_no_keyword_defaults_to_ocr(self):
        assert KeywordProcessorSelector().select("scan_0001.pdf") is ProcessorVariant.OCR

    def test_keywords_match_whole_tokens(self):
        assert KeywordProcessorSelector().select("helpdesk_notes.pdf") is ProcessorVariant.OCR
        assert KeywordProcessorSelector().select("Acme_L.P._notes.pdf") is ProcessorVariant.FORM

    def test_directory_components_ignored(self):
        assert KeywordProcessorSelector().select("forms/scan.pdf") is ProcessorVariant.OCR
