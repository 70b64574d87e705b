from __future__ import annotations

import allure

from order_pipeline.orders.errors import ExecutorError
from order_pipeline.orders.executor import FunctionExecutor
from order_pipeline.orders.metrics import render_metrics_lines
from order_pipeline.orders.models import ExecutionResult, OrderCreate, OrderView
from order_pipeline.orders.policies import DefaultPolicyResolver
from order_pipeline.orders.processor import OrderProcessor
from order_pipeline.orders.repository import OrderStore
from order_pipeline.orders.services import OrderService
from order_pipeline.review.models import ApprovalDecision

pytestmark = [
    allure.epic("Order Pipeline"),
    allure.feature("Metrics"),
]


def _execute(order: OrderView) -> ExecutionResult:
    if order.order_id == "flaky":
        raise ExecutorError("temporary outage")
    if order.order_id == "broken":
        raise ExecutorError("unsupported order", transient=False)
    return ExecutionResult(
        order_id=order.order_id,
        success=True,
        output={"result": "ok"},
        elapsed_ms=200 if order.order_id == "quick" else 400,
    )


def test_empty_store_reports_zero_metrics(store: OrderStore, clock) -> None:
    service = OrderService(store=store, policy_resolver=DefaultPolicyResolver(), clock=clock)

    snapshot = service.get_metrics()

    assert snapshot.total_executions == 0
    assert snapshot.success_rate == 0.0
    assert snapshot.average_execution_ms == 0
    assert snapshot.average_quality_score == 0.0
    assert snapshot.approval_rate == 0.0
    assert snapshot.status_counts == {
        "pending": 0,
        "in_progress": 0,
        "completed": 0,
        "failed": 0,
        "failed_terminal": 0,
    }
    assert snapshot.risk_distribution == {"low": 0, "medium": 0, "high": 0, "critical": 0}


def test_metrics_aggregate_executions_reviews_and_decisions(store: OrderStore, clock) -> None:
    resolver = DefaultPolicyResolver()
    service = OrderService(store=store, policy_resolver=resolver, clock=clock)
    for order_id in ("quick", "slow", "flaky", "broken"):
        store.create_order(
            OrderCreate(description="plain task", order_id=order_id, next_attempt_at=clock()),
        )
    processor = OrderProcessor(
        store=store,
        executor=FunctionExecutor(_execute),
        policy_resolver=resolver,
        worker_id="worker-a",
        clock=clock,
    )
    try:
        processor.tick()
    finally:
        processor.close()
    slow_result = service.get_order_status("slow").result_id
    service.record_human_decision(slow_result, ApprovalDecision.REJECTED, "redo")

    snapshot = service.get_metrics()

    assert snapshot.total_executions == 4
    assert snapshot.successful_executions == 2
    assert snapshot.failed_executions == 2
    assert snapshot.success_rate == 50.0
    assert snapshot.average_execution_ms == 300
    assert snapshot.average_quality_score == 100.0
    assert snapshot.risk_distribution["low"] == 2
    assert snapshot.reviewed_results == 2
    assert snapshot.approval_rate == 50.0
    assert snapshot.status_counts["completed"] == 1
    assert snapshot.status_counts["pending"] == 1
    assert snapshot.status_counts["failed"] == 1
    assert snapshot.status_counts["failed_terminal"] == 1

    lines = render_metrics_lines(snapshot)
    assert "Executions: total=4 successful=2 failed=2 success_rate=50.00%" in lines
    assert "Average execution time: 300 ms" in lines
    assert "Approval rate: 50.00% (2 reviewed result(s))" in lines
