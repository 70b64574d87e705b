from __future__ import annotations

import allure
import pytest

from order_pipeline.orders.errors import ExecutorError, OrderNotFoundError, OrderStateError
from order_pipeline.orders.executor import EchoExecutor, FunctionExecutor
from order_pipeline.orders.models import OrderStatus, OrderView
from order_pipeline.orders.policies import DefaultPolicyResolver
from order_pipeline.orders.processor import OrderProcessor
from order_pipeline.orders.repository import OrderStore
from order_pipeline.orders.services import OrderService
from order_pipeline.review.models import (
    ApprovalDecision,
    DecisionSource,
    QualityPolicy,
    ReviewPolicy,
)

pytestmark = [
    allure.epic("Order Pipeline"),
    allure.feature("Owner-Facing Boundary"),
]

STRICT_POLICY = ReviewPolicy(quality=QualityPolicy(min_score=100, required_fields=("summary",)))


def _run_once(store: OrderStore, clock, resolver: DefaultPolicyResolver, executor=None) -> None:
    processor = OrderProcessor(
        store=store,
        executor=executor or EchoExecutor(),
        policy_resolver=resolver,
        worker_id="worker-a",
        clock=clock,
    )
    try:
        processor.tick()
    finally:
        processor.close()


def test_submit_order_rejects_empty_description(store: OrderStore, clock) -> None:
    service = OrderService(store=store, policy_resolver=DefaultPolicyResolver(), clock=clock)

    with pytest.raises(ValueError, match="must not be empty"):
        service.submit_order("   ")


def test_submit_order_is_pending_and_due_now(store: OrderStore, clock) -> None:
    service = OrderService(store=store, policy_resolver=DefaultPolicyResolver(), clock=clock)

    order = service.submit_order("  summarize the incident  ", {"ticket": "INC-1"})

    assert order.description == "summarize the incident"
    assert order.status == OrderStatus.PENDING
    assert order.next_attempt_at == clock.now
    assert order.metadata == {"ticket": "INC-1"}
    assert [item.order_id for item in store.get_due_orders(clock.now)] == [order.order_id]


def test_order_status_includes_result_summary(store: OrderStore, clock) -> None:
    resolver = DefaultPolicyResolver()
    service = OrderService(store=store, policy_resolver=resolver, clock=clock)
    order = service.submit_order("plain task")

    before = service.get_order_status(order.order_id)
    assert before.status_label == "pending"
    assert before.result_id is None
    assert before.approved is None

    _run_once(store, clock, resolver)
    after = service.get_order_status(order.order_id)

    assert after.status == OrderStatus.COMPLETED
    assert after.approved is True
    assert after.decision == ApprovalDecision.APPROVED.value
    assert after.result_id is not None
    assert after.approval_record_id is not None

    with pytest.raises(OrderNotFoundError):
        service.get_order_status("missing")


def test_human_approval_overrides_automated_verdict(store: OrderStore, clock) -> None:
    resolver = DefaultPolicyResolver(overrides={"code": STRICT_POLICY})
    service = OrderService(store=store, policy_resolver=resolver, clock=clock)
    order = service.submit_order("plain task")
    _run_once(store, clock, resolver)
    automated = service.get_order_status(order.order_id)
    assert automated.approved is False
    assert automated.decision == ApprovalDecision.REQUIRES_IMPROVEMENT.value

    record = service.record_human_decision(
        automated.result_id,
        ApprovalDecision.APPROVED,
        "summary not needed here",
    )

    assert record.decided_by == DecisionSource.HUMAN
    assert record.supersedes == automated.approval_record_id
    status = service.get_order_status(order.order_id)
    assert status.status == OrderStatus.COMPLETED
    assert status.approved is True
    assert status.approval_record_id == record.approval_id
    history = store.list_approvals(result_id=automated.result_id)
    assert [item.decided_by for item in history] == [DecisionSource.AUTOMATED, DecisionSource.HUMAN]


def test_human_rejection_requeues_order(store: OrderStore, clock) -> None:
    resolver = DefaultPolicyResolver()
    service = OrderService(store=store, policy_resolver=resolver, clock=clock)
    order = service.submit_order("plain task")
    _run_once(store, clock, resolver)
    result_id = service.get_order_status(order.order_id).result_id
    clock.advance(5_000)

    record = service.record_human_decision(result_id, ApprovalDecision.REJECTED, "wrong tone")

    assert record.decision == ApprovalDecision.REJECTED
    status = service.get_order_status(order.order_id)
    assert status.status == OrderStatus.PENDING
    assert status.next_attempt_at == clock.now
    assert status.approved is False
    assert status.decision == ApprovalDecision.REJECTED.value

    _run_once(store, clock, resolver)
    rerun = service.get_order_status(order.order_id)
    assert rerun.status == OrderStatus.COMPLETED
    assert rerun.attempt_count == 2
    assert rerun.result_id != result_id


def test_human_decision_for_unknown_result(store: OrderStore, clock) -> None:
    service = OrderService(store=store, policy_resolver=DefaultPolicyResolver(), clock=clock)

    with pytest.raises(OrderNotFoundError, match="Result not found"):
        service.record_human_decision("exec-missing", ApprovalDecision.APPROVED)


def test_manual_retry_of_terminal_order(store: OrderStore, clock) -> None:
    resolver = DefaultPolicyResolver()
    service = OrderService(store=store, policy_resolver=resolver, clock=clock)
    order = service.submit_order("plain task")

    def _refuse(order: OrderView):
        raise ExecutorError("unsupported order", transient=False)

    _run_once(store, clock, resolver, executor=FunctionExecutor(_refuse))
    failed = service.get_order_status(order.order_id)
    assert failed.status == OrderStatus.FAILED_TERMINAL
    assert failed.status_label == "failed (terminal, no further retries)"

    retried = service.retry_order(order.order_id)

    assert retried.status == OrderStatus.PENDING
    assert retried.attempt_count == 0
    assert retried.next_attempt_at == clock.now
    with pytest.raises(OrderStateError):
        service.retry_order(order.order_id)
