"""Risk assessment of execution results against configured risk checks."""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping

from order_pipeline.orders.models import ExecutionResult
from order_pipeline.review.models import (
    RiskAssessment,
    RiskCheck,
    RiskCheckKind,
    RiskFactor,
    RiskLevel,
    RiskThresholds,
)
from order_pipeline.review.quality import serialize_output

CustomRiskCheck = Callable[[ExecutionResult, RiskCheck], bool]

LONG_EXECUTION_MS = 60_000
AGENT_TIMEOUT_MS = 300_000
MANY_ERRORS = 3
OVERSIZED_OUTPUT_CHARS = 1_000_000

_SENSITIVE_PATTERNS: tuple[str, ...] = (
    "password",
    "api_key",
    "secret",
    "token",
    "credential",
)


def assess_risk(
    result: ExecutionResult,
    checks: tuple[RiskCheck, ...] | list[RiskCheck],
    *,
    thresholds: RiskThresholds | None = None,
    custom_checks: Mapping[str, CustomRiskCheck] | None = None,
) -> RiskAssessment:
    """Run every check; overall risk is the highest finding severity."""

    thresholds = thresholds or RiskThresholds()
    factors: list[RiskFactor] = []
    for check in checks:
        factor = _run_check(result, check, thresholds=thresholds, custom_checks=custom_checks)
        if factor is not None:
            factors.append(factor)

    overall = max(
        (factor.severity for factor in factors),
        key=lambda level: level.rank,
        default=RiskLevel.LOW,
    )
    requires_review = overall in {RiskLevel.HIGH, RiskLevel.CRITICAL} or any(
        factor.severity == RiskLevel.CRITICAL for factor in factors
    )
    return RiskAssessment(
        overall_risk=overall,
        risk_factors=factors,
        recommendations=_recommendations(factors, overall),
        requires_human_review=requires_review,
    )


def calculate_risk_value(result: ExecutionResult) -> float:
    """Risk in [0, 1] from errors, slow runs, null output and oversized output."""

    value = 0.0
    if result.error_logs():
        value += 0.3
    if result.elapsed_ms > AGENT_TIMEOUT_MS:
        value += 0.2
    if result.output is None:
        value += 0.4
    if len(serialize_output(result.output)) > OVERSIZED_OUTPUT_CHARS:
        value += 0.1
    return min(1.0, round(value, 6))


def severity_for(value: float, thresholds: RiskThresholds) -> RiskLevel:
    if value >= thresholds.critical:
        return RiskLevel.CRITICAL
    if value >= thresholds.high:
        return RiskLevel.HIGH
    if value >= thresholds.medium:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def _run_check(
    result: ExecutionResult,
    check: RiskCheck,
    *,
    thresholds: RiskThresholds,
    custom_checks: Mapping[str, CustomRiskCheck] | None,
) -> RiskFactor | None:
    if check.kind == RiskCheckKind.PATTERN:
        detected = _check_pattern(result, check)
    elif check.kind == RiskCheckKind.HEURISTIC:
        detected = _check_heuristic(result, check)
    else:
        predicate = (custom_checks or {}).get(check.name)
        detected = predicate(result, check) if predicate is not None else False

    if not detected:
        return None
    value = calculate_risk_value(result)
    if value < check.threshold:
        return None
    return RiskFactor(
        check_name=check.name,
        severity=severity_for(value, thresholds),
        description=check.description,
        risk_value=value,
    )


def _check_pattern(result: ExecutionResult, check: RiskCheck) -> bool:
    if check.pattern:
        regex = re.compile(check.pattern, re.IGNORECASE)
        if regex.search(serialize_output(result.output)):
            return True
        return any(regex.search(log.message) for log in result.logs)

    name = check.name.lower()
    if "error" in name or "exception" in name:
        return bool(result.error_logs())
    if "timeout" in name:
        limit = AGENT_TIMEOUT_MS if result.agent_type else LONG_EXECUTION_MS
        return result.elapsed_ms > limit
    if "sensitive" in name:
        haystack = serialize_output(result.output).lower()
        return any(pattern in haystack for pattern in _SENSITIVE_PATTERNS)
    return False


def _check_heuristic(result: ExecutionResult, check: RiskCheck) -> bool:
    name = check.name.lower()
    if "long_execution" in name:
        return result.elapsed_ms > LONG_EXECUTION_MS
    if "many_errors" in name:
        return len(result.error_logs()) > MANY_ERRORS
    if "unexpected_output" in name:
        return result.output is None
    return False


def _recommendations(factors: list[RiskFactor], overall: RiskLevel) -> list[str]:
    recommendations: list[str] = []
    if overall in {RiskLevel.HIGH, RiskLevel.CRITICAL}:
        recommendations.append("Requires manual review before deployment")
        recommendations.append("Consider running additional tests")

    names = [factor.check_name.lower() for factor in factors]
    if any("error" in name for name in names):
        recommendations.append("Review and fix errors before proceeding")
    if any("timeout" in name for name in names):
        recommendations.append("Optimize execution time or increase timeout limits")
    if any("sensitive" in name for name in names):
        recommendations.append("Review output for sensitive information leakage")
    return recommendations
