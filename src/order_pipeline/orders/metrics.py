"""Execution and review metrics over the persisted order history."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass

from order_pipeline.orders.models import OrderResultRecord, OrderStatus
from order_pipeline.review.models import ApprovalRecord, DecisionSource, RiskLevel

SUCCESS_EVENT = "completed"
FAILURE_EVENTS = ("retry_scheduled", "failed_terminal")


@dataclass(slots=True)
class OrderMetricsSnapshot:
    """Aggregated metrics used by the ``orders metrics`` command."""

    status_counts: dict[str, int]
    total_executions: int
    successful_executions: int
    failed_executions: int
    average_execution_ms: int
    average_quality_score: float
    risk_distribution: dict[str, int]
    reviewed_results: int
    approval_rate: float

    @property
    def success_rate(self) -> float:
        return _percent(self.successful_executions, self.total_executions)


def build_order_metrics(
    *,
    status_counts: dict[str, int],
    event_counts: dict[str, int],
    results: list[OrderResultRecord],
    approvals: list[ApprovalRecord],
) -> OrderMetricsSnapshot:
    """Build one snapshot from store aggregates.

    Executions are counted from the audit trail: a ``completed`` event is a
    successful attempt, a retry or terminal failure is a failed one. Quality
    and risk come from automated review records, the approval rate from the
    current verdict of every reviewed result.
    """

    successful = event_counts.get(SUCCESS_EVENT, 0)
    failed = sum(event_counts.get(name, 0) for name in FAILURE_EVENTS)

    elapsed = [record.result.elapsed_ms for record in results if record.result is not None]
    automated = [record for record in approvals if record.decided_by == DecisionSource.AUTOMATED]
    risk_counts = Counter(record.overall_risk.value for record in automated)
    reviewed = [record for record in results if record.decision is not None]
    approved = sum(1 for record in reviewed if record.approved)

    return OrderMetricsSnapshot(
        status_counts={status.value: status_counts.get(status.value, 0) for status in OrderStatus},
        total_executions=successful + failed,
        successful_executions=successful,
        failed_executions=failed,
        average_execution_ms=round(sum(elapsed) / len(elapsed)) if elapsed else 0,
        average_quality_score=(
            round(sum(record.quality_score for record in automated) / len(automated), 2)
            if automated
            else 0.0
        ),
        risk_distribution={level.value: risk_counts.get(level.value, 0) for level in RiskLevel},
        reviewed_results=len(reviewed),
        approval_rate=_percent(approved, len(reviewed)),
    )


def render_metrics_lines(snapshot: OrderMetricsSnapshot) -> list[str]:
    return [
        f"Orders: {_fmt_key_value(snapshot.status_counts)}",
        (
            f"Executions: total={snapshot.total_executions} "
            f"successful={snapshot.successful_executions} "
            f"failed={snapshot.failed_executions} "
            f"success_rate={snapshot.success_rate:.2f}%"
        ),
        f"Average execution time: {snapshot.average_execution_ms} ms",
        f"Average quality score: {snapshot.average_quality_score:.2f}",
        f"Risk distribution: {_fmt_key_value(snapshot.risk_distribution)}",
        (
            f"Approval rate: {snapshot.approval_rate:.2f}% "
            f"({snapshot.reviewed_results} reviewed result(s))"
        ),
    ]


def _percent(numerator: int, denominator: int) -> float:
    if denominator == 0:
        return 0.0
    return round(numerator / denominator * 100, 2)


def _fmt_key_value(values: dict[str, int]) -> str:
    return " ".join(f"{key}={value}" for key, value in values.items())
