"""Evaluation criteria loading and the weighted quality gate."""

from __future__ import annotations

import json
import logging
import math
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from proposal_engine.workflow.backend.base import ContentEvaluator
from proposal_engine.workflow.models import EvaluationResult, InvalidResponseFormatError

logger = logging.getLogger(__name__)

DEFAULT_CRITERIA_PATH = (
    Path(__file__).resolve().parent / "resources" / "evaluation_criteria.json"
)
DEFAULT_CONTENT_TYPE = "default"


@dataclass(frozen=True, slots=True)
class EvaluationCriterion:
    criterion_id: str
    name: str
    description: str
    weight: float
    is_critical: bool = False
    passing_threshold: float = 0.0


@dataclass(frozen=True, slots=True)
class EvaluationCriteria:
    """Criteria for one content type; read-only once loaded."""

    content_type: str
    criteria: tuple[EvaluationCriterion, ...]
    passing_threshold: float

    @property
    def criterion_ids(self) -> tuple[str, ...]:
        return tuple(item.criterion_id for item in self.criteria)


class CriteriaCatalog:
    """Evaluation criteria keyed by content type with a `default` fallback."""

    def __init__(self, by_content_type: Mapping[str, EvaluationCriteria]) -> None:
        if DEFAULT_CONTENT_TYPE not in by_content_type:
            raise ValueError("Evaluation criteria must define a 'default' content type")
        self._by_content_type = dict(by_content_type)

    def for_content_type(self, content_type: str) -> EvaluationCriteria:
        return self._by_content_type.get(content_type) or self._by_content_type[
            DEFAULT_CONTENT_TYPE
        ]

    @property
    def content_types(self) -> tuple[str, ...]:
        return tuple(self._by_content_type)


def load_evaluation_criteria(path: Path | None = None) -> CriteriaCatalog:
    """Load and validate the criteria file (bundled default when `path` is None)."""

    source = path or DEFAULT_CRITERIA_PATH
    try:
        raw = json.loads(source.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as error:
        raise ValueError(f"Failed to load evaluation criteria from {source}: {error}") from error
    if not isinstance(raw, dict):
        raise ValueError(f"Evaluation criteria in {source} must be a JSON object")
    catalog = CriteriaCatalog(
        {
            content_type: _parse_criteria(content_type, payload, source=source)
            for content_type, payload in raw.items()
        },
    )
    logger.info(
        "Evaluation criteria loaded from %s: %s",
        source,
        ", ".join(catalog.content_types),
    )
    return catalog


def _parse_criteria(content_type: str, payload: Any, *, source: Path) -> EvaluationCriteria:
    if not isinstance(payload, dict):
        raise ValueError(f"Criteria for {content_type!r} in {source} must be an object")
    items = payload.get("criteria")
    if not isinstance(items, list) or not items:
        raise ValueError(f"Criteria for {content_type!r} in {source} must be a non-empty list")
    threshold = _unit_interval(payload.get("passing_threshold"), f"{content_type}.passing_threshold")
    criteria: list[EvaluationCriterion] = []
    for index, item in enumerate(items):
        if not isinstance(item, dict) or not item.get("id"):
            raise ValueError(f"Criterion #{index} for {content_type!r} must have an id")
        weight = item.get("weight")
        if not isinstance(weight, int | float) or weight < 0:
            raise ValueError(f"Criterion {item['id']!r} weight must be a non-negative number")
        criteria.append(
            EvaluationCriterion(
                criterion_id=str(item["id"]),
                name=str(item.get("name") or item["id"]),
                description=str(item.get("description", "")),
                weight=float(weight),
                is_critical=bool(item.get("is_critical", False)),
                passing_threshold=_unit_interval(
                    item.get("passing_threshold", 0.0),
                    f"{content_type}.{item['id']}.passing_threshold",
                ),
            ),
        )
    return EvaluationCriteria(
        content_type=content_type,
        criteria=tuple(criteria),
        passing_threshold=threshold,
    )


def _unit_interval(value: Any, label: str) -> float:
    if not isinstance(value, int | float) or not 0 <= value <= 1:
        raise ValueError(f"{label} must be a number between 0 and 1")
    return float(value)


def calculate_overall_score(
    scores: Mapping[str, float],
    criteria: EvaluationCriteria,
) -> float:
    """Weighted mean of criterion scores; plain mean when all weights are zero."""

    total_weight = sum(item.weight for item in criteria.criteria)
    if total_weight <= 0:
        return sum(scores[item.criterion_id] for item in criteria.criteria) / len(
            criteria.criteria,
        )
    weighted = sum(scores[item.criterion_id] * item.weight for item in criteria.criteria)
    return weighted / total_weight


def evaluate_content(
    content: str,
    *,
    content_type: str,
    criteria: EvaluationCriteria,
    evaluator: ContentEvaluator,
) -> EvaluationResult:
    """Score content and decide pass/fail.

    The evaluator must return a number in [0, 1] for every criterion, otherwise
    `InvalidResponseFormatError` is raised. A critical criterion scoring below
    its own threshold fails the gate regardless of the overall score.
    """

    raw_scores = evaluator.score(
        content,
        content_type=content_type,
        criteria=criteria.criterion_ids,
    )
    scores = _validated_scores(raw_scores, criteria)
    overall = round(calculate_overall_score(scores, criteria), 4)
    failed_critical = [
        item.criterion_id
        for item in criteria.criteria
        if item.is_critical and scores[item.criterion_id] < item.passing_threshold
    ]
    passed = overall >= criteria.passing_threshold and not failed_critical
    if passed:
        feedback = f"Passed with score {overall:.2f} (threshold {criteria.passing_threshold:.2f})."
    elif failed_critical:
        feedback = (
            f"Critical criteria below threshold: {', '.join(failed_critical)} "
            f"(overall {overall:.2f})."
        )
    else:
        weakest = min(criteria.criteria, key=lambda item: scores[item.criterion_id])
        feedback = (
            f"Score {overall:.2f} is below threshold {criteria.passing_threshold:.2f}; "
            f"weakest criterion: {weakest.name}."
        )
    return EvaluationResult(
        score=overall,
        passed=passed,
        feedback=feedback,
        criteria_scores=scores,
    )


def _validated_scores(
    raw_scores: Mapping[str, Any] | Any,
    criteria: EvaluationCriteria,
) -> dict[str, float]:
    if not isinstance(raw_scores, Mapping):
        raise InvalidResponseFormatError(
            f"Evaluator returned {type(raw_scores).__name__}, expected a mapping of scores",
        )
    scores: dict[str, float] = {}
    for criterion_id in criteria.criterion_ids:
        value = raw_scores.get(criterion_id)
        if isinstance(value, bool) or not isinstance(value, int | float):
            raise InvalidResponseFormatError(
                f"Evaluator score for {criterion_id!r} is missing or not numeric: {value!r}",
            )
        if math.isnan(value) or not 0 <= value <= 1:
            raise InvalidResponseFormatError(
                f"Evaluator score for {criterion_id!r} is outside [0, 1]: {value!r}",
            )
        scores[criterion_id] = float(value)
    return scores
