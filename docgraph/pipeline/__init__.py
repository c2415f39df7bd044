"""Pipeline orchestrators for task runs."""

from docgraph.pipeline.extraction_runner import ExtractionRunner, RunResult, SourceDocument
from docgraph.pipeline.level_orchestrator import LevelOrchestrator

__all__ = ["ExtractionRunner", "LevelOrchestrator", "RunResult", "SourceDocument"]
