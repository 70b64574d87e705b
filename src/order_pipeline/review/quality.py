"""Deterministic quality scoring of an execution result against a policy."""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any

from order_pipeline.orders.models import ExecutionResult
from order_pipeline.review.models import QualityEvaluation, QualityPolicy

MISSING_FIELD_PENALTY = 10
FORMAT_PENALTY = 5
CONTENT_PENALTY = 5
ERROR_LOG_PENALTY = 15


def evaluate_quality(result: ExecutionResult, policy: QualityPolicy) -> QualityEvaluation:
    """Score ``result.output`` from 100 down; empty policies pass vacuously."""

    feedback: list[str] = []
    missing_fields: list[str] = []
    score = 100

    present = set(extract_fields(result.output))
    for name in policy.required_fields:
        if name not in present:
            missing_fields.append(name)
            score -= MISSING_FIELD_PENALTY
            feedback.append(f"Missing required field: {name}")

    if policy.format_requirements:
        format_errors = _check_format(result.output, policy.format_requirements)
        score -= len(format_errors) * FORMAT_PENALTY
        feedback.extend(format_errors)

    if policy.content_requirements:
        content_errors = _check_content(result.output, policy.content_requirements)
        score -= len(content_errors) * CONTENT_PENALTY
        feedback.extend(content_errors)

    error_count = len(result.error_logs())
    if error_count:
        score -= error_count * ERROR_LOG_PENALTY
        feedback.append(f"Execution had {error_count} error(s)")

    score = max(0, min(100, score))
    meets_criteria = score >= policy.min_score
    if not meets_criteria:
        feedback.append(f"Quality score {score} is below minimum {policy.min_score}")

    return QualityEvaluation(
        score=score,
        meets_criteria=meets_criteria,
        feedback=feedback,
        missing_fields=missing_fields,
    )


def extract_fields(output: Any) -> list[str]:
    """Field names of a mapping, or of the first element of a list."""

    if isinstance(output, Mapping):
        return [str(key) for key in output]
    if isinstance(output, list | tuple):
        return extract_fields(output[0]) if output else []
    return []


def serialize_output(output: Any) -> str:
    return json.dumps(output, ensure_ascii=False, separators=(",", ":"), default=str)


def _check_format(output: Any, requirements: Mapping[str, str]) -> list[str]:
    if not isinstance(output, Mapping):
        return ["Output must be an object"]

    errors: list[str] = []
    for key, expected in requirements.items():
        if key not in output:
            errors.append(f"Format requirement not met: missing field {key}")
            continue
        if not _matches_type(output[key], expected):
            errors.append(f"Format requirement not met: {key} must be {expected}")
    return errors


def _matches_type(value: Any, expected: str) -> bool:  # noqa: PLR0911
    if expected == "string":
        return isinstance(value, str)
    if expected == "number":
        return isinstance(value, int | float) and not isinstance(value, bool)
    if expected == "boolean":
        return isinstance(value, bool)
    if expected == "object":
        return isinstance(value, Mapping)
    if expected == "array":
        return isinstance(value, list | tuple)
    # Unknown type names are not enforced.
    return True


def _check_content(output: Any, requirements: tuple[str, ...]) -> list[str]:
    haystack = serialize_output(output).lower()
    return [
        f'Content requirement not met: missing "{requirement}"'
        for requirement in requirements
        if requirement.lower() not in haystack
    ]
