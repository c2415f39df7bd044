"""Candidate search and duplicate resolution for extracted object instances.

Search queries are tried in order from loosest to most specific. Each query is a
mapping of field name to criteria; how a criterion is applied depends on the
field's schema type:

- string: a LIKE pattern, or a list of keywords that must all appear
- date / date-time: a LIKE pattern (dates normalized to ``YYYY-MM-DD``) or an
  ``{"operator", "value", "value2"}`` comparison
- number / integer: an exact value, a LIKE pattern, or an operator comparison
- boolean: ``true``/``false`` (``1``/``yes`` count as true, ``%`` wildcards ignored)

``name``, ``date``, ``description`` and ``url`` are matched against the object's
own columns; every other field is matched against its stored attribute.
"""

from __future__ import annotations

import json
from typing import Any, Callable, Dict, List, Optional, Sequence

from loguru import logger
from sqlalchemy import Float, String, and_, cast, exists, func, select
from sqlalchemy.orm import Session

from docgraph.extraction.field_types import FieldType, resolve_field_type
from docgraph.extraction.inference import InferenceService
from docgraph.extraction.models import FindCandidatesResult, ResolutionResult
from docgraph.extraction.objects import candidate_data, is_blank
from docgraph.extraction.prompts import PromptLibrary
from docgraph.storage.models import ObjectAttribute, ResolvedObject
from docgraph.utils.config import ExtractionRunnerConfig, clamp_timeout
from docgraph.utils.dates import normalize_date, normalize_date_pattern

MAX_QUERY_RESULTS = 50
MAX_CANDIDATES = 20
OPTIMAL_MIN_RESULTS = 1
OPTIMAL_MAX_RESULTS = 5

TRUTHY_LITERALS = ("true", "1", "yes")
COMPARISON_OPERATORS = ("=", ">", ">=", "<", "<=", "between")

_NATIVE_COLUMNS = {
    "name": ResolvedObject.name,
    "date": ResolvedObject.date,
    "description": ResolvedObject.description,
    "url": ResolvedObject.url,
}

DUPLICATE_RESOLUTION_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "is_duplicate": {"type": "boolean"},
        "matching_record_id": {"type": ["integer", "null"]},
        "confidence": {"type": "number", "minimum": 0, "maximum": 1},
        "explanation": {"type": "string"},
    },
    "required": ["is_duplicate", "matching_record_id", "confidence", "explanation"],
}


def _compare(column: Any, operator: str, value: Any, value2: Any = None) -> Any:
    if operator == "between":
        if value2 is None:
            return None
        return column.between(value, value2)
    comparisons: Dict[str, Callable[[Any, Any], Any]] = {
        "=": lambda c, v: c == v,
        ">": lambda c, v: c > v,
        ">=": lambda c, v: c >= v,
        "<": lambda c, v: c < v,
        "<=": lambda c, v: c <= v,
    }
    compare = comparisons.get(operator)
    return compare(column, value) if compare else None


def _to_float(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class DuplicateMatcher:
    """Finds existing objects matching an extracted instance and resolves ambiguity."""

    def __init__(
        self,
        session: Session,
        inference: Optional[InferenceService] = None,
        prompts: Optional[PromptLibrary] = None,
        config: Optional[ExtractionRunnerConfig] = None,
        *,
        team_id: int = 1,
        schema: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.session = session
        self.inference = inference
        self.prompts = prompts
        self.config = config or ExtractionRunnerConfig()
        self.team_id = team_id
        self.schema = schema or {}

        # Criteria strategies keyed by field type. Each returns a SQL predicate on
        # the given text column, or None when the criteria cannot be applied.
        self._strategies: Dict[FieldType, Callable[[Any, Any, bool], Any]] = {
            FieldType.STRING: self._string_predicate,
            FieldType.DATE: self._date_predicate,
            FieldType.DATETIME: self._date_predicate,
            FieldType.NUMBER: self._numeric_predicate,
            FieldType.INTEGER: self._numeric_predicate,
            FieldType.BOOLEAN: self._boolean_predicate,
        }

    # -----------------------
    # Public API
    # -----------------------
    def find_candidates(
        self,
        object_type: str,
        search_queries: Sequence[Dict[str, Any]],
        *,
        root_object_id: Optional[int] = None,
        schema_definition_id: Optional[int] = None,
        extracted_data: Optional[Dict[str, Any]] = None,
        identity_fields: Optional[Sequence[str]] = None,
    ) -> FindCandidatesResult:
        """Search for existing objects that may be the extracted instance.

        Args:
            object_type: Type of the extracted instance
            search_queries: Queries ordered from loosest to most specific
            root_object_id: Restricts candidates to one root scope
            schema_definition_id: Restricts candidates to one schema
            extracted_data: The instance's extracted values
            identity_fields: Fields compared for exact-match refinement

        Returns:
            Up to 20 candidates; ``exact_match_id`` is set when a same-name object or
            exactly one candidate agrees on every identity field.
        """
        extracted = extracted_data or {}
        scope = dict(
            object_type=object_type,
            root_object_id=root_object_id,
            schema_definition_id=schema_definition_id,
        )

        name = extracted.get("name")
        if isinstance(name, str) and name.strip():
            stmt = self._scoped(**scope).where(
                func.lower(ResolvedObject.name) == name.strip().lower()
            )
            # Without identity fields every extracted field must agree.
            fields = list(identity_fields or []) or [
                key for key in extracted if key not in ("id", "type") and not key.startswith("_")
            ]
            name_matches = list(self.session.scalars(stmt.order_by(ResolvedObject.id)))
            for candidate in name_matches:
                if self.is_exact_match(candidate, extracted, fields):
                    logger.debug(
                        "Exact name match for {object_type}",
                        object_type=object_type,
                        object_id=candidate.id,
                    )
                    return FindCandidatesResult(candidates=[candidate], exact_match_id=candidate.id)
            if name_matches:
                logger.debug(
                    "Name matches for {object_type} differ on identity fields",
                    object_type=object_type,
                    name_matches=len(name_matches),
                    identity_fields=fields,
                )

        queries = [q for q in search_queries or [] if isinstance(q, dict)]
        if not queries:
            candidates = self.execute_search_query({}, **scope)
        else:
            candidates = []
            for index, query in enumerate(queries):
                results = self.execute_search_query(query, **scope)
                logger.debug(
                    "Search query {index} returned {count} candidates",
                    index=index,
                    count=len(results),
                    query=query,
                )
                if not results:
                    continue
                candidates = results
                if OPTIMAL_MIN_RESULTS <= len(results) <= OPTIMAL_MAX_RESULTS:
                    break

        candidates = candidates[:MAX_CANDIDATES]

        exact_match_id = None
        if identity_fields and candidates:
            matches = [c for c in candidates if self.is_exact_match(c, extracted, identity_fields)]
            if len(matches) == 1:
                exact_match_id = matches[0].id

        return FindCandidatesResult(candidates=candidates, exact_match_id=exact_match_id)

    def execute_search_query(
        self,
        query: Dict[str, Any],
        *,
        object_type: str,
        root_object_id: Optional[int] = None,
        schema_definition_id: Optional[int] = None,
    ) -> List[ResolvedObject]:
        """Run one query inside the scope; newest objects first, at most 50."""
        stmt = self._scoped(object_type, root_object_id, schema_definition_id)
        for field, criteria in query.items():
            if criteria is None or criteria == "" or criteria == []:
                continue
            predicate = self._field_predicate(field, criteria)
            if predicate is not None:
                stmt = stmt.where(predicate)

        stmt = stmt.order_by(ResolvedObject.created_at.desc(), ResolvedObject.id.desc())
        return list(self.session.scalars(stmt.limit(MAX_QUERY_RESULTS)))

    def is_exact_match(
        self, candidate: ResolvedObject, extracted: Dict[str, Any], identity_fields: Sequence[str]
    ) -> bool:
        """True when the candidate agrees with ``extracted`` on every identity field.

        Two empty values are equal; one empty value is not.
        """
        stored = candidate_data(candidate)
        for field in identity_fields:
            left, right = extracted.get(field), stored.get(field)
            if is_blank(left) and is_blank(right):
                continue
            if is_blank(left) or is_blank(right):
                return False
            field_type = resolve_field_type(field, self.schema)
            if self._comparable(left, field_type) != self._comparable(right, field_type):
                return False
        return True

    def resolve_duplicate(
        self, candidates: Sequence[ResolvedObject], extracted_data: Dict[str, Any]
    ) -> Optional[ResolutionResult]:
        """Ask the model which candidate, if any, is the extracted instance.

        Returns:
            The decision, or None when the inference call did not complete.
        """
        if not candidates:
            return ResolutionResult(
                is_duplicate=False, explanation="No candidates to compare", confidence=1.0
            )
        if self.inference is None or self.prompts is None:
            raise RuntimeError("Duplicate resolution requires an inference service and prompts")

        records = [{"id": c.id, **candidate_data(c)} for c in candidates]
        system, user = self.prompts.render(
            "duplicate_resolution",
            {
                "object_type": candidates[0].type,
                "extracted_json": json.dumps(extracted_data, indent=2, default=str),
                "candidates_json": json.dumps(records, indent=2, default=str),
            },
        )
        result = self.inference.submit(
            user,
            response_schema=DUPLICATE_RESOLUTION_SCHEMA,
            timeout=clamp_timeout(self.config.duplicate_resolution_timeout, 60),
            system=system,
        )
        if not result.completed or result.json_data is None:
            logger.warning("Duplicate resolution did not complete", error=result.error)
            return None

        data = result.json_data
        explanation = str(data.get("explanation") or "")
        confidence = _to_float(data.get("confidence")) or 0.0
        confidence = min(1.0, max(0.0, confidence))

        if not data.get("is_duplicate"):
            return ResolutionResult(is_duplicate=False, explanation=explanation, confidence=confidence)

        matching_id = data.get("matching_record_id")
        valid_ids = {c.id for c in candidates}
        try:
            matching_id = int(matching_id)
        except (TypeError, ValueError):
            matching_id = None
        if matching_id not in valid_ids:
            logger.warning(
                "Duplicate resolution returned an unknown record id",
                matching_record_id=data.get("matching_record_id"),
            )
            return ResolutionResult(
                is_duplicate=False,
                explanation=f"Model specified invalid record ID: {data.get('matching_record_id')}",
                confidence=0.0,
            )

        return ResolutionResult(
            is_duplicate=True,
            existing_object_id=matching_id,
            explanation=explanation,
            confidence=confidence,
        )

    # -----------------------
    # Query building
    # -----------------------
    def _scoped(
        self,
        object_type: str,
        root_object_id: Optional[int] = None,
        schema_definition_id: Optional[int] = None,
    ):
        stmt = select(ResolvedObject).where(
            ResolvedObject.team_id == self.team_id,
            ResolvedObject.type == object_type,
        )
        if root_object_id is not None:
            stmt = stmt.where(ResolvedObject.root_object_id == root_object_id)
        if schema_definition_id is not None:
            stmt = stmt.where(ResolvedObject.schema_definition_id == schema_definition_id)
        return stmt

    def _field_predicate(self, field: str, criteria: Any) -> Any:
        field_type = resolve_field_type(field, self.schema)
        strategy = self._strategies.get(field_type, self._string_predicate)

        if field in _NATIVE_COLUMNS:
            column = _NATIVE_COLUMNS[field]
            if field == "date":
                column = cast(column, String)
            return strategy(column, criteria, True)

        predicate = strategy(ObjectAttribute.text_value, criteria, False)
        if predicate is None:
            return None
        return exists().where(
            ObjectAttribute.object_id == ResolvedObject.id,
            ObjectAttribute.name == field,
            predicate,
        )

    def _string_predicate(self, column: Any, criteria: Any, native: bool) -> Any:
        if isinstance(criteria, list):
            keywords = [str(k).strip() for k in criteria if isinstance(k, (str, int, float)) and str(k).strip()]
            if not keywords:
                return None
            return and_(*[column.ilike(f"%{keyword}%") for keyword in keywords])
        if isinstance(criteria, dict):
            return None
        if isinstance(criteria, bool):
            criteria = "true" if criteria else "false"
        return column.like(str(criteria))

    def _date_predicate(self, column: Any, criteria: Any, native: bool) -> Any:
        if isinstance(criteria, dict):
            operator = str(criteria.get("operator") or "=")
            if operator not in COMPARISON_OPERATORS:
                logger.warning("Ignoring unsupported date operator {operator}", operator=operator)
                return None
            value = normalize_date(criteria.get("value"))
            value2 = normalize_date(criteria.get("value2"))
            if value is None:
                return None
            return _compare(column, operator, value, value2)

        if not isinstance(criteria, str):
            return None
        pattern = normalize_date_pattern(criteria)
        if pattern is None:
            if not native:
                logger.debug("Skipping unparseable date pattern {pattern}", pattern=criteria)
                return None
            pattern = criteria
        return column.like(pattern)

    def _numeric_predicate(self, column: Any, criteria: Any, native: bool) -> Any:
        numeric = cast(column, Float)
        if isinstance(criteria, dict):
            operator = str(criteria.get("operator") or "=")
            if operator not in COMPARISON_OPERATORS:
                logger.warning("Ignoring unsupported numeric operator {operator}", operator=operator)
                return None
            value = _to_float(criteria.get("value"))
            value2 = _to_float(criteria.get("value2"))
            if value is None:
                return None
            return _compare(numeric, operator, value, value2)
        if isinstance(criteria, bool):
            return None
        if isinstance(criteria, (int, float)):
            return numeric == float(criteria)
        return column.like(str(criteria))

    def _boolean_predicate(self, column: Any, criteria: Any, native: bool) -> Any:
        if isinstance(criteria, (list, dict)):
            return None
        if isinstance(criteria, bool):
            truthy = criteria
        else:
            # LIKE wildcards around a boolean literal carry no meaning.
            truthy = str(criteria).strip().strip("%").strip().lower() in TRUTHY_LITERALS
        return column == ("true" if truthy else "false")

    # -----------------------
    # Comparison
    # -----------------------
    @staticmethod
    def _comparable(value: Any, field_type: FieldType) -> str:
        if field_type.is_date:
            iso = normalize_date(value)
            if iso is not None:
                return iso
        if field_type == FieldType.BOOLEAN or isinstance(value, bool):
            if isinstance(value, bool):
                return "true" if value else "false"
            return "true" if str(value).strip().lower() in TRUTHY_LITERALS else "false"
        if field_type.is_numeric:
            number = _to_float(value)
            if number is not None:
                return str(int(number)) if number.is_integer() else repr(number)
        return str(value).strip().lower()
