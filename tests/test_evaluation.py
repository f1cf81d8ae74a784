from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

import allure
import pytest

from proposal_engine.workflow.evaluation import (
    EvaluationCriteria,
    EvaluationCriterion,
    calculate_overall_score,
    evaluate_content,
    load_evaluation_criteria,
)
from proposal_engine.workflow.models import InvalidResponseFormatError

pytestmark = [
    allure.epic("Workflow Runtime"),
    allure.feature("Quality Gate"),
]


class _FixedEvaluator:
    def __init__(self, scores: Any) -> None:
        self.scores = scores
        self.requests: list[tuple[str, tuple[str, ...]]] = []

    def score(
        self,
        content: str,
        *,
        content_type: str,
        criteria: Sequence[str],
    ) -> Mapping[str, float]:
        self.requests.append((content_type, tuple(criteria)))
        return self.scores


@pytest.fixture(scope="module")
def default_criteria() -> EvaluationCriteria:
    return load_evaluation_criteria().for_content_type("default")


def test_unknown_content_type_falls_back_to_default() -> None:
    catalog = load_evaluation_criteria()

    assert catalog.for_content_type("budget").content_type == "default"
    assert catalog.for_content_type("research").criterion_ids == ("funder_alignment", "coverage")
    assert {"default", "research", "solution", "connections", "section"} <= set(
        catalog.content_types,
    )


def test_passing_content(default_criteria: EvaluationCriteria) -> None:
    evaluator = _FixedEvaluator({"relevance": 0.8, "completeness": 0.8, "clarity": 0.8})

    result = evaluate_content(
        "draft",
        content_type="budget",
        criteria=default_criteria,
        evaluator=evaluator,
    )

    assert result.passed
    assert result.score == pytest.approx(0.8)
    assert result.criteria_scores == {"relevance": 0.8, "completeness": 0.8, "clarity": 0.8}
    assert result.feedback.startswith("Passed with score 0.80")
    assert evaluator.requests == [("budget", ("relevance", "completeness", "clarity"))]


def test_weighted_score_below_threshold_names_weakest_criterion(
    default_criteria: EvaluationCriteria,
) -> None:
    evaluator = _FixedEvaluator({"relevance": 0.9, "completeness": 0.5, "clarity": 0.5})

    result = evaluate_content(
        "draft",
        content_type="default",
        criteria=default_criteria,
        evaluator=evaluator,
    )

    assert not result.passed
    assert result.score == pytest.approx(0.66)
    assert "weakest criterion: Completeness" in result.feedback


def test_critical_criterion_fails_gate_despite_high_overall_score(
    default_criteria: EvaluationCriteria,
) -> None:
    evaluator = _FixedEvaluator({"relevance": 0.5, "completeness": 1.0, "clarity": 1.0})

    result = evaluate_content(
        "draft",
        content_type="default",
        criteria=default_criteria,
        evaluator=evaluator,
    )

    assert result.score == pytest.approx(0.8)
    assert not result.passed
    assert "Critical criteria below threshold: relevance" in result.feedback


@pytest.mark.parametrize(
    "scores",
    [
        {"relevance": 0.8, "completeness": 0.8},
        {"relevance": 1.5, "completeness": 0.8, "clarity": 0.8},
        {"relevance": True, "completeness": 0.8, "clarity": 0.8},
        {"relevance": float("nan"), "completeness": 0.8, "clarity": 0.8},
        [0.8, 0.8, 0.8],
    ],
)
def test_malformed_evaluator_output_is_invalid_response(
    default_criteria: EvaluationCriteria,
    scores: Any,
) -> None:
    with pytest.raises(InvalidResponseFormatError):
        evaluate_content(
            "draft",
            content_type="default",
            criteria=default_criteria,
            evaluator=_FixedEvaluator(scores),
        )


def test_zero_weights_fall_back_to_plain_mean() -> None:
    criteria = EvaluationCriteria(
        content_type="default",
        criteria=(
            EvaluationCriterion("a", "A", "", weight=0.0),
            EvaluationCriterion("b", "B", "", weight=0.0),
        ),
        passing_threshold=0.5,
    )
    assert calculate_overall_score({"a": 0.2, "b": 0.6}, criteria) == pytest.approx(0.4)


def test_criteria_file_requires_default_content_type(tmp_path: Path) -> None:
    path = tmp_path / "criteria.json"
    path.write_text(
        json.dumps(
            {
                "research": {
                    "passing_threshold": 0.7,
                    "criteria": [{"id": "coverage", "weight": 1.0}],
                },
            },
        ),
        encoding="utf-8",
    )

    with pytest.raises(ValueError, match="'default'"):
        load_evaluation_criteria(path)


@pytest.mark.parametrize(
    "payload",
    [
        {"default": {"passing_threshold": 1.2, "criteria": [{"id": "a", "weight": 1}]}},
        {"default": {"passing_threshold": 0.7, "criteria": []}},
        {"default": {"passing_threshold": 0.7, "criteria": [{"id": "a", "weight": -1}]}},
        {"default": {"passing_threshold": 0.7, "criteria": [{"weight": 1}]}},
    ],
)
def test_criteria_file_validation(tmp_path: Path, payload: dict) -> None:
    path = tmp_path / "criteria.json"
    path.write_text(json.dumps(payload), encoding="utf-8")

    with pytest.raises(ValueError):
        load_evaluation_criteria(path)
