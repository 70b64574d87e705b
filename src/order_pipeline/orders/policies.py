"""Review policy resolution for claimed orders.

Policies normally come from an agent/playbook registry; the pipeline only
needs something that maps an order to a ``ReviewPolicy``.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, replace
from typing import Protocol

from order_pipeline.config import ReviewSettings
from order_pipeline.orders.classifier import KeywordOrderClassifier, OrderClassifier
from order_pipeline.orders.models import OrderView
from order_pipeline.review.models import (
    QualityPolicy,
    ReviewPolicy,
    RiskCheck,
    RiskCheckKind,
    RiskThresholds,
)

DEFAULT_RISK_CHECKS: tuple[RiskCheck, ...] = (
    RiskCheck(
        name="Error Check",
        kind=RiskCheckKind.PATTERN,
        threshold=0.5,
        description="Check for errors",
    ),
)


@dataclass(slots=True)
class ResolvedPolicy:
    agent_type: str
    policy: ReviewPolicy


class PolicyResolver(Protocol):
    def resolve(self, order: OrderView) -> ResolvedPolicy:
        """Return the agent type and review policy for ``order``."""


class DefaultPolicyResolver:
    """Classifies the order and applies the default playbook policy.

    ``overrides`` replaces the whole policy for specific agent types.
    """

    def __init__(
        self,
        settings: ReviewSettings | None = None,
        *,
        classifier: OrderClassifier | None = None,
        overrides: Mapping[str, ReviewPolicy] | None = None,
    ) -> None:
        self.settings = settings or ReviewSettings()
        self.classifier = classifier or KeywordOrderClassifier()
        self.overrides = dict(overrides or {})
        self.default_policy = build_default_policy(self.settings)

    def resolve(self, order: OrderView) -> ResolvedPolicy:
        agent_type = self.classifier.classify(order.description)
        policy = self.overrides.get(agent_type, self.default_policy)
        return ResolvedPolicy(agent_type=agent_type, policy=policy)


def build_default_policy(settings: ReviewSettings) -> ReviewPolicy:
    return ReviewPolicy(
        quality=QualityPolicy(min_score=settings.min_quality_score, required_fields=("result",)),
        risk_checks=DEFAULT_RISK_CHECKS,
        thresholds=thresholds_from_settings(settings),
        auto_approve_low_risk=settings.auto_approve_low_risk,
        require_human_approval_for_high_risk=settings.require_human_approval_for_high_risk,
    )


def thresholds_from_settings(settings: ReviewSettings) -> RiskThresholds:
    return RiskThresholds(
        low=settings.risk_threshold_low,
        medium=settings.risk_threshold_medium,
        high=settings.risk_threshold_high,
        critical=settings.risk_threshold_critical,
    )


def with_min_score(policy: ReviewPolicy, min_score: int) -> ReviewPolicy:
    """Copy of ``policy`` with a different quality threshold."""

    return replace(policy, quality=replace(policy.quality, min_score=min_score))
