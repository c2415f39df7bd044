"""Extraction package exports."""

from docgraph.extraction.classification import ClassificationEngine
from docgraph.extraction.duplicate_matcher import DuplicateMatcher
from docgraph.extraction.field_extraction import FieldExtractionEngine
from docgraph.extraction.fragment_selector import FragmentPathResolver
from docgraph.extraction.identity_resolution import IdentityResolutionEngine
from docgraph.extraction.inference import InferenceService
from docgraph.extraction.models import ExtractionPlan, FindCandidatesResult, ResolutionResult
from docgraph.extraction.planning import ExtractionPlanningEngine
from docgraph.extraction.rollup import RollupEngine
from docgraph.extraction.schema_hierarchy import SchemaHierarchyExtractor

__all__ = [
    "ClassificationEngine",
    "DuplicateMatcher",
    "ExtractionPlan",
    "ExtractionPlanningEngine",
    "FieldExtractionEngine",
    "FindCandidatesResult",
    "FragmentPathResolver",
    "IdentityResolutionEngine",
    "InferenceService",
    "ResolutionResult",
    "RollupEngine",
    "SchemaHierarchyExtractor",
]
