"""Shared data models for the extraction engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

SearchMode = Literal["skim", "exhaustive"]


class ObjectTypeNode(BaseModel):
    """One object type found in a schema definition."""

    model_config = ConfigDict(extra="forbid")

    name: str
    path: str = ""
    level: int = 0
    parent_type: Optional[str] = None
    is_array: bool = False
    # field key -> {"title": ..., "description": ...}
    simple_fields: Dict[str, Dict[str, str]] = Field(default_factory=dict)


class ExtractionGroup(BaseModel):
    """Fields of one object type extracted together."""

    model_config = ConfigDict(extra="ignore")

    name: str
    object_type: str
    description: str = ""
    fragment_selector: Dict[str, Any] = Field(default_factory=dict)
    search_mode: SearchMode = "skim"
    key: str
    level: int = 0
    parent_type: Optional[str] = None
    is_array: bool = False


class IdentityGroup(ExtractionGroup):
    identity_fields: List[str] = Field(default_factory=list)
    skim_fields: List[str] = Field(default_factory=list)


class RemainingGroup(ExtractionGroup):
    search_mode: SearchMode = "exhaustive"
    fields: List[str] = Field(default_factory=list)


class PlanLevel(BaseModel):
    level: int
    identities: List[IdentityGroup] = Field(default_factory=list)
    remaining: List[RemainingGroup] = Field(default_factory=list)


class ExtractionPlan(BaseModel):
    """Compiled multi-level extraction plan."""

    levels: List[PlanLevel] = Field(default_factory=list)

    @property
    def max_level(self) -> int:
        return max((lvl.level for lvl in self.levels), default=0)

    def get_level(self, level: int) -> Optional[PlanLevel]:
        for plan_level in self.levels:
            if plan_level.level == level:
                return plan_level
        return None

    def groups(self) -> List[ExtractionGroup]:
        ordered: List[ExtractionGroup] = []
        for plan_level in self.levels:
            ordered.extend(plan_level.identities)
            ordered.extend(plan_level.remaining)
        return ordered

    def categories(self) -> Dict[str, str]:
        """Classification category key -> description, in plan order."""
        categories: Dict[str, str] = {}
        for group in self.groups():
            categories.setdefault(group.key, group.description or "")
        return categories


class CoverageReport(BaseModel):
    """Result of checking extraction groups against the fields they must cover."""

    model_config = ConfigDict(frozen=True)

    covered: List[str] = Field(default_factory=list)
    missing: List[str] = Field(default_factory=list)
    duplicates: List[str] = Field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return not self.missing


class InferenceResult(BaseModel):
    """Outcome of one inference call."""

    completed: bool
    json_data: Optional[Dict[str, Any]] = Field(default=None, alias="json")
    error: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def success(cls, data: Dict[str, Any]) -> "InferenceResult":
        return cls(completed=True, json_data=data)

    @classmethod
    def failure(cls, error: str) -> "InferenceResult":
        return cls(completed=False, error=error)


class ResolutionResult(BaseModel):
    """LLM-assisted duplicate decision."""

    is_duplicate: bool
    existing_object_id: Optional[int] = None
    explanation: str = ""
    confidence: float = 0.0


@dataclass
class FindCandidatesResult:
    """Candidates found for an extracted instance.

    ``candidates`` holds ``ResolvedObject`` rows from the active session.
    """

    candidates: List[Any] = field(default_factory=list)
    exact_match_id: Optional[int] = None

    @property
    def has_exact_match(self) -> bool:
        return self.exact_match_id is not None


@dataclass
class FieldConflict:
    """Two batches disagreeing on a field with equal confidence."""

    field_name: str
    existing_value: Any
    new_value: Any
    existing_page: Optional[int] = None
    new_page: Optional[int] = None


@dataclass
class FieldExtractionResult:
    """Values for a field group plus the page each value came from."""

    data: Dict[str, Any] = field(default_factory=dict)
    confidence: Dict[str, int] = field(default_factory=dict)
    page_sources: Dict[str, int] = field(default_factory=dict)
    conflicts: List[FieldConflict] = field(default_factory=list)
    resolved_fields: List[str] = field(default_factory=list)
