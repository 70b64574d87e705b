"""Decision engine turning an execution result and a review policy into a verdict.

The verdict itself is a pure function of ``(result, policy, human_decision)``;
only the record identity (``approval_id``, ``decided_at``) is generated.

Precedence:

1. a human decision wins unconditionally;
2. auto-approval of low-risk results that meet quality, when the policy allows it;
3. unmet quality criteria require improvement;
4. high/critical risk requires improvement (human review) when the policy asks for it;
5. met quality with low or medium risk is approved;
6. anything else requires improvement.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from uuid import uuid4

from order_pipeline.orders.models import ExecutionResult
from order_pipeline.review.models import (
    ApprovalDecision,
    ApprovalRecord,
    ApprovalResult,
    DecisionSource,
    QualityEvaluation,
    ReviewPolicy,
    RiskAssessment,
    RiskLevel,
)
from order_pipeline.review.quality import evaluate_quality
from order_pipeline.review.risk import CustomRiskCheck, assess_risk
from order_pipeline.storage.common import utc_now


def decide(
    quality: QualityEvaluation,
    risk: RiskAssessment,
    policy: ReviewPolicy,
    human_decision: ApprovalDecision | None = None,
) -> ApprovalDecision:
    """Apply the decision precedence to already computed evaluations."""

    if human_decision is not None:
        return human_decision
    if (
        policy.auto_approve_low_risk
        and quality.meets_criteria
        and risk.overall_risk == RiskLevel.LOW
    ):
        return ApprovalDecision.APPROVED
    if not quality.meets_criteria:
        return ApprovalDecision.REQUIRES_IMPROVEMENT
    if policy.require_human_approval_for_high_risk and risk.requires_human_review:
        return ApprovalDecision.REQUIRES_IMPROVEMENT
    if risk.overall_risk in {RiskLevel.LOW, RiskLevel.MEDIUM}:
        return ApprovalDecision.APPROVED
    return ApprovalDecision.REQUIRES_IMPROVEMENT


def evaluate_approval(  # noqa: PLR0913
    result: ExecutionResult,
    policy: ReviewPolicy,
    *,
    human_decision: ApprovalDecision | None = None,
    human_feedback: str | None = None,
    supersedes: str | None = None,
    custom_checks: Mapping[str, CustomRiskCheck] | None = None,
    decided_at: datetime | None = None,
    approval_id: str | None = None,
) -> ApprovalResult:
    """Score ``result`` and produce a new immutable approval record."""

    quality = evaluate_quality(result, policy.quality)
    risk = assess_risk(
        result,
        policy.risk_checks,
        thresholds=policy.thresholds,
        custom_checks=custom_checks,
    )
    for recommendation in policy.recommendations:
        if recommendation not in risk.recommendations:
            risk.recommendations.append(recommendation)

    decision = decide(quality, risk, policy, human_decision)
    feedback = build_feedback(quality, risk)
    if human_feedback:
        feedback = f"{feedback}. Reviewer: {human_feedback.strip()}"
    requirements: tuple[str, ...] = ()
    if decision != ApprovalDecision.APPROVED:
        requirements = tuple(build_improvement_requirements(quality, risk))

    record = ApprovalRecord(
        approval_id=approval_id or str(uuid4()),
        result_id=result.result_id,
        decision=decision,
        decided_by=DecisionSource.HUMAN if human_decision is not None else DecisionSource.AUTOMATED,
        decided_at=decided_at or utc_now(),
        feedback=feedback,
        improvement_requirements=requirements,
        quality_score=quality.score,
        overall_risk=risk.overall_risk,
        supersedes=supersedes,
    )
    return ApprovalResult(record=record, quality=quality, risk=risk)


def handle_feedback_loop(
    previous: ApprovalRecord,
    improved_result: ExecutionResult,
    policy: ReviewPolicy,
    *,
    custom_checks: Mapping[str, CustomRiskCheck] | None = None,
) -> ApprovalResult:
    """Re-review an improved result; the previous record is left untouched."""

    return evaluate_approval(
        improved_result,
        policy,
        supersedes=previous.approval_id,
        custom_checks=custom_checks,
    )


def build_feedback(quality: QualityEvaluation, risk: RiskAssessment) -> str:
    parts: list[str] = []
    if quality.meets_criteria:
        parts.append(f"Quality score: {quality.score}/100 (meets criteria)")
    else:
        parts.append(f"Quality score: {quality.score}/100 (below threshold)")
        if quality.missing_fields:
            parts.append(f"Missing fields: {', '.join(quality.missing_fields)}")
        if quality.feedback:
            parts.append(f"Issues: {'; '.join(quality.feedback)}")

    parts.append(f"Risk level: {risk.overall_risk.value}")
    if risk.risk_factors:
        parts.append(
            "Risk factors: "
            + "; ".join(
                f"{factor.check_name} ({factor.severity.value}): {factor.description}"
                for factor in risk.risk_factors
            ),
        )
    if risk.recommendations:
        parts.append(f"Recommendations: {'; '.join(risk.recommendations)}")
    return ". ".join(parts)


def build_improvement_requirements(
    quality: QualityEvaluation,
    risk: RiskAssessment,
) -> list[str]:
    requirements: list[str] = []
    if not quality.meets_criteria:
        if quality.missing_fields:
            requirements.append(
                f"Add missing required fields: {', '.join(quality.missing_fields)}",
            )
        requirements.extend(
            item for item in quality.feedback if not item.startswith("Missing required field")
        )

    if risk.overall_risk in {RiskLevel.HIGH, RiskLevel.CRITICAL}:
        requirements.append(
            "Address high-risk issues: "
            + ", ".join(factor.description for factor in risk.risk_factors),
        )
    requirements.extend(risk.recommendations)
    return requirements
