"""
Asynchronous document-processing job pipeline.

  store.py            Job Record Store (conditional state transitions)
  router.py           sync vs. batch decision
  processors.py       form vs. OCR processor selection
  sync_extractor.py   inline extraction for small documents
  batch_submitter.py  staging + long-running operation submission
  batch_poller.py     per-tick status checks and reconciliation lease
  reconciler.py       chunks → embeddings → vector index → completed
  repair.py           vector metadata mirror repair
  runner.py           one scheduler tick over all of the above
"""

from docpipeline.pipeline.outcomes import JobOutcome, StepResult
from docpipeline.pipeline.repair import MetadataRepairTool, RepairSummary
from docpipeline.pipeline.router import Router, route
from docpipeline.pipeline.runner import PipelineRunner, TickSummary, build_pipeline

__all__ = [
    "JobOutcome",
    "StepResult",
    "MetadataRepairTool",
    "RepairSummary",
    "Router",
    "route",
    "PipelineRunner",
    "TickSummary",
    "build_pipeline",
]
