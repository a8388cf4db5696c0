"""
Unit Tests — Celery Tasks
══════════════════════════
Tests for docpipeline/workers/celery_app.py and docpipeline/workers/tasks.py

Tasks are called directly (synchronously); the pipeline and the database
engine are patched so no broker or database is needed.
"""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from docpipeline.pipeline.repair import RepairSummary
from docpipeline.pipeline.runner import TickSummary


@pytest.mark.unit
class TestCeleryApp:

    def test_routes_and_beat_schedule(self):
        from docpipeline.core.config import settings
        from docpipeline.workers.celery_app import celery_app

        conf = celery_app.conf
        assert conf.task_routes["pipeline.tick"] == {"queue": "pipeline.tick"}
        assert conf.task_routes["pipeline.repair_metadata"] == {"queue": "pipeline.admin"}
        beat = conf.beat_schedule["pipeline-tick"]
        assert beat["task"] == "pipeline.tick"
        assert beat["schedule"] == settings.tick_interval_seconds
        assert conf.accept_content == ["json"]


@pytest.mark.unit
class TestTasks:

    def test_tick_task_returns_summary(self):
        from docpipeline.workers.tasks import run_pipeline_tick

        runner = MagicMock()
        runner.tick = AsyncMock(return_value=TickSummary(claimed=2, completed=1, requeued=1))
        with patch("docpipeline.pipeline.runner.build_pipeline", return_value=runner), \
             patch("docpipeline.workers.tasks._dispose_engine", new=AsyncMock()) as dispose:
            result = run_pipeline_tick()

        assert result["claimed"] == 2
        assert result["completed"] == 1
        assert result["requeued"] == 1
        dispose.assert_awaited_once()

    def test_tick_task_disposes_engine_on_error(self):
        from docpipeline.workers.tasks import run_pipeline_tick

        runner = MagicMock()
        runner.tick = AsyncMock(side_effect=ConnectionError("database unreachable"))
        with patch("docpipeline.pipeline.runner.build_pipeline", return_value=runner), \
             patch("docpipeline.workers.tasks._dispose_engine", new=AsyncMock()) as dispose:
            with pytest.raises(ConnectionError):
                run_pipeline_tick()

        dispose.assert_awaited_once()

    @pytest.mark.parametrize("document_id", [None, "cccccccc-cccc-cccc-cccc-cccccccccccc"])
    def test_repair_task(self, document_id):
        from docpipeline.workers.tasks import repair_metadata

        tool = MagicMock()
        tool.repair_document = AsyncMock(return_value=RepairSummary(documents_processed=1, vectors_updated=4))
        tool.repair_all = AsyncMock(return_value=RepairSummary(documents_processed=3, vectors_updated=9))
        with patch("docpipeline.pipeline.repair.MetadataRepairTool", return_value=tool), \
             patch("docpipeline.vectorstore.get_vector_store"), \
             patch("docpipeline.workers.tasks._dispose_engine", new=AsyncMock()):
            result = repair_metadata(document_id)

        if document_id is None:
            tool.repair_all.assert_awaited_once()
            assert result["documents_processed"] == 3
        else:
            tool.repair_document.assert_awaited_once_with(uuid.UUID(document_id))
            assert result["vectors_updated"] == 4
        assert result["success"] is True
