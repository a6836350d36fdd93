# app/agents/quality.py
"""
Sample quality assessment.

Scores a small sample of records against the agent's required fields and
the dataset's declared schema. Pure function, no I/O.

Component scores, each in [0, 1]:
- completeness: share of non-empty values in the first record
- schema_match: share of declared schema fields present in the first record
- data_quality: 0.8 for a consistent key set across records (0.5 otherwise),
  minus 0.2 when more than 30% of values are empty on average
- required fields present: 1 or 0

overall = 0.30 * completeness + 0.20 * schema_match
        + 0.30 * data_quality + 0.20 * required_fields_present
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

COMPLETENESS_WEIGHT = 0.30
SCHEMA_MATCH_WEIGHT = 0.20
DATA_QUALITY_WEIGHT = 0.30
REQUIRED_FIELDS_WEIGHT = 0.20

LOW_COMPLETENESS = 0.8
LOW_SCHEMA_MATCH = 0.9
HIGH_EMPTY_RATIO = 0.3

CONSISTENT_STRUCTURE_SCORE = 0.8
INCONSISTENT_STRUCTURE_SCORE = 0.5
EMPTY_VALUE_PENALTY = 0.2


@dataclass
class QualityAssessment:
    completeness: float
    schema_match: float
    data_quality: float
    required_fields_present: bool
    overall_score: float
    issues: List[str] = field(default_factory=list)

    def passes(self, threshold: float) -> bool:
        return self.overall_score >= threshold


def _is_missing(value: Any) -> bool:
    return value is None or value == ""


def _is_empty(value: Any) -> bool:
    if _is_missing(value):
        return True
    if isinstance(value, (list, tuple, dict)) and len(value) == 0:
        return True
    return False


def declared_fields(schema: Optional[Dict[str, Any]]) -> List[str]:
    """
    Field names declared by a dataset schema.

    Accepts an array schema ({"items": {"properties": ...}}) or an object
    schema ({"properties": ...}). Anything else declares no fields.
    """
    if not isinstance(schema, dict):
        return []
    items = schema.get("items")
    if isinstance(items, dict) and isinstance(items.get("properties"), dict):
        return list(items["properties"].keys())
    if isinstance(schema.get("properties"), dict):
        return list(schema["properties"].keys())
    return []


def _percent(value: float) -> str:
    return f"{value * 100:.0f}%"


def assess(
    sample: Sequence[Dict[str, Any]],
    required_fields: Optional[Sequence[str]] = None,
    schema: Optional[Dict[str, Any]] = None,
) -> QualityAssessment:
    """
    Assess a sample of records.

    Args:
        sample: Records (dicts) returned by the sample endpoint
        required_fields: Fields the agent cannot do without
        schema: The dataset's declared JSON schema, if any

    Returns:
        QualityAssessment with component scores, the weighted overall score
        and human-readable issues
    """
    issues: List[str] = []
    required_fields = list(required_fields or [])
    first = sample[0] if sample else {}
    first_keys = list(first.keys())

    # Required fields
    required_fields_present = True
    if required_fields:
        missing = [f for f in required_fields if f not in first]
        if missing:
            required_fields_present = False
            issues.append(f"Missing required fields: {', '.join(missing)}")

    # Completeness
    completeness = 0.0
    if sample and first_keys:
        filled = sum(1 for v in first.values() if not _is_missing(v))
        completeness = filled / len(first_keys)
    if sample and completeness < LOW_COMPLETENESS:
        issues.append(f"Low completeness: {_percent(completeness)}")

    # Schema match
    schema_fields = declared_fields(schema)
    if schema_fields:
        matching = [f for f in schema_fields if f in first]
        schema_match = len(matching) / len(schema_fields)
        if schema_match < LOW_SCHEMA_MATCH:
            issues.append(f"Schema mismatch: {_percent(1 - schema_match)} fields don't match")
    else:
        schema_match = 1.0

    # Structural consistency and empty values
    first_key_set = set(first_keys)
    if all(set(record.keys()) == first_key_set for record in sample):
        data_quality = CONSISTENT_STRUCTURE_SCORE
    else:
        data_quality = INCONSISTENT_STRUCTURE_SCORE
        issues.append("Inconsistent data structure across records")

    if sample:
        ratios = []
        for record in sample:
            if not record:
                ratios.append(1.0)
                continue
            empty = sum(1 for v in record.values() if _is_empty(v))
            ratios.append(empty / len(record))
        empty_ratio = sum(ratios) / len(ratios)
        if empty_ratio > HIGH_EMPTY_RATIO:
            issues.append(f"High empty value ratio: {_percent(empty_ratio)}")
            data_quality = max(0.0, data_quality - EMPTY_VALUE_PENALTY)

    overall_score = (
        COMPLETENESS_WEIGHT * completeness
        + SCHEMA_MATCH_WEIGHT * schema_match
        + DATA_QUALITY_WEIGHT * data_quality
        + REQUIRED_FIELDS_WEIGHT * (1.0 if required_fields_present else 0.0)
    )
    overall_score = min(1.0, max(0.0, overall_score))

    return QualityAssessment(
        completeness=completeness,
        schema_match=schema_match,
        data_quality=data_quality,
        required_fields_present=required_fields_present,
        overall_score=overall_score,
        issues=issues,
    )
