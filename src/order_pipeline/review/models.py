"""Policies, evaluations and approval records used by the review stage."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class ApprovalDecision(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    REQUIRES_IMPROVEMENT = "requires_improvement"


class DecisionSource(str, Enum):
    AUTOMATED = "automated"
    HUMAN = "human"


class RiskLevel(str, Enum):
    """Severity ladder; ``rank`` gives the ordering used for max-severity."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]


_RISK_RANK = {
    RiskLevel.LOW: 0,
    RiskLevel.MEDIUM: 1,
    RiskLevel.HIGH: 2,
    RiskLevel.CRITICAL: 3,
}


class RiskCheckKind(str, Enum):
    PATTERN = "pattern"
    HEURISTIC = "heuristic"
    CUSTOM = "custom"


@dataclass(slots=True, frozen=True)
class QualityPolicy:
    """Minimum score plus required fields, formats and content keywords."""

    min_score: int = 70
    required_fields: tuple[str, ...] = ()
    format_requirements: dict[str, str] | None = None
    content_requirements: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class RiskCheck:
    name: str
    kind: RiskCheckKind
    threshold: float
    description: str
    pattern: str | None = None


@dataclass(slots=True, frozen=True)
class RiskThresholds:
    """Boundaries mapping a 0..1 risk value to a severity."""

    low: float = 0.3
    medium: float = 0.5
    high: float = 0.7
    critical: float = 0.9


@dataclass(slots=True, frozen=True)
class ReviewPolicy:
    """Everything the decision engine needs besides the execution result."""

    quality: QualityPolicy = field(default_factory=QualityPolicy)
    risk_checks: tuple[RiskCheck, ...] = ()
    thresholds: RiskThresholds = field(default_factory=RiskThresholds)
    auto_approve_low_risk: bool = False
    require_human_approval_for_high_risk: bool = True
    recommendations: tuple[str, ...] = ()


@dataclass(slots=True)
class QualityEvaluation:
    score: int
    meets_criteria: bool
    feedback: list[str] = field(default_factory=list)
    missing_fields: list[str] = field(default_factory=list)


@dataclass(slots=True)
class RiskFactor:
    """One detected risk check."""

    check_name: str
    severity: RiskLevel
    description: str
    risk_value: float


@dataclass(slots=True)
class RiskAssessment:
    overall_risk: RiskLevel
    risk_factors: list[RiskFactor] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    requires_human_review: bool = False


@dataclass(slots=True, frozen=True)
class ApprovalRecord:
    """Immutable verdict for one execution result.

    Re-evaluation creates a new record pointing at the old one through
    ``supersedes``; records are never updated in place.
    """

    approval_id: str
    result_id: str
    decision: ApprovalDecision
    decided_by: DecisionSource
    decided_at: datetime
    feedback: str
    improvement_requirements: tuple[str, ...]
    quality_score: int
    overall_risk: RiskLevel
    supersedes: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "approval_id": self.approval_id,
            "result_id": self.result_id,
            "decision": self.decision.value,
            "decided_by": self.decided_by.value,
            "decided_at": self.decided_at.isoformat(),
            "feedback": self.feedback,
            "improvement_requirements": list(self.improvement_requirements),
            "quality_score": self.quality_score,
            "overall_risk": self.overall_risk.value,
            "supersedes": self.supersedes,
        }


@dataclass(slots=True)
class ApprovalResult:
    """Decision engine output: the record plus the evaluations behind it."""

    record: ApprovalRecord
    quality: QualityEvaluation
    risk: RiskAssessment

    @property
    def decision(self) -> ApprovalDecision:
        return self.record.decision

    @property
    def approved(self) -> bool:
        return self.record.decision == ApprovalDecision.APPROVED
