"""Owner-facing use cases: order submission, status and human review."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from order_pipeline.orders.errors import OrderNotFoundError
from order_pipeline.orders.metrics import OrderMetricsSnapshot, build_order_metrics
from order_pipeline.orders.models import OrderCreate, OrderStatus, OrderView
from order_pipeline.orders.policies import PolicyResolver
from order_pipeline.orders.repository import OrderStore
from order_pipeline.review.approval import evaluate_approval
from order_pipeline.review.models import ApprovalDecision, ApprovalRecord
from order_pipeline.storage.common import now_ms

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class OrderStatusView:
    """Order state plus a summary of its latest result."""

    order_id: str
    description: str
    status: OrderStatus
    attempt_count: int
    last_error: str | None
    next_attempt_at: int | None
    created_at: datetime
    updated_at: datetime
    approved: bool | None = None
    result_id: str | None = None
    approval_record_id: str | None = None
    decision: str | None = None

    @property
    def status_label(self) -> str:
        if self.status == OrderStatus.FAILED:
            return "failed (retry scheduled)"
        if self.status == OrderStatus.FAILED_TERMINAL:
            return "failed (terminal, no further retries)"
        return self.status.value


class OrderService:
    """Entry points used by the CLI and by embedding applications."""

    def __init__(
        self,
        *,
        store: OrderStore,
        policy_resolver: PolicyResolver,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.store = store
        self.policy_resolver = policy_resolver
        self.clock = clock

    def submit_order(
        self,
        description: str,
        metadata: dict[str, Any] | None = None,
        *,
        order_id: str | None = None,
    ) -> OrderView:
        """Create a pending order that is due immediately."""

        description = description.strip()
        if not description:
            raise ValueError("Order description must not be empty.")
        order = self.store.create_order(
            OrderCreate(
                description=description,
                order_id=order_id,
                metadata=dict(metadata or {}),
                next_attempt_at=self.clock(),
            ),
        )
        logger.info("Order %s submitted", order.order_id)
        return order

    def get_order_status(self, order_id: str) -> OrderStatusView:
        order = self.store.get_order(order_id)
        if order is None:
            raise OrderNotFoundError(f"Order not found: {order_id}")
        view = OrderStatusView(
            order_id=order.order_id,
            description=order.description,
            status=order.status,
            attempt_count=order.attempt_count,
            last_error=order.last_error,
            next_attempt_at=order.next_attempt_at,
            created_at=order.created_at,
            updated_at=order.updated_at,
        )
        result = self.store.get_result(order_id)
        if result is not None:
            view.approved = result.approved
            view.result_id = result.result_id
            view.approval_record_id = result.approval_record_id
            view.decision = result.decision
        return view

    def record_human_decision(
        self,
        result_id: str,
        decision: ApprovalDecision,
        feedback: str | None = None,
    ) -> ApprovalRecord:
        """Apply a reviewer verdict to the result carrying ``result_id``.

        ``approved`` completes the order; any other verdict sends it back to
        ``pending`` so it is executed again.
        """

        stored = self.store.find_result_by_result_id(result_id)
        if stored is None or stored.result is None:
            raise OrderNotFoundError(f"Result not found: {result_id}")
        order = self.store.get_order(stored.order_id)
        if order is None:
            raise OrderNotFoundError(f"Order not found: {stored.order_id}")

        resolved = self.policy_resolver.resolve(order)
        review = evaluate_approval(
            stored.result,
            resolved.policy,
            human_decision=decision,
            human_feedback=feedback,
            supersedes=stored.approval_record_id,
        )
        if review.approved:
            status, next_attempt_at = OrderStatus.COMPLETED, None
        else:
            status, next_attempt_at = OrderStatus.PENDING, self.clock()
        self.store.apply_review_decision(
            order.order_id,
            review.record,
            status=status,
            next_attempt_at=next_attempt_at,
        )
        logger.info(
            "Human decision %s recorded for result %s (order %s)",
            decision.value,
            result_id,
            order.order_id,
        )
        return review.record

    def retry_order(self, order_id: str) -> OrderView:
        """Re-queue a terminally failed order with a fresh attempt budget."""

        order = self.store.retry_order(order_id, now=self.clock())
        logger.info("Order %s re-queued manually", order_id)
        return order

    def get_metrics(self) -> OrderMetricsSnapshot:
        return build_order_metrics(
            status_counts=self.store.count_orders_by_status(),
            event_counts=self.store.count_events_by_type(),
            results=self.store.list_results(),
            approvals=self.store.list_approvals(),
        )
