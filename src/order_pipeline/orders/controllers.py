"""Controllers for order pipeline CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from order_pipeline.config import Settings
from order_pipeline.orders.executor import EchoExecutor
from order_pipeline.orders.metrics import render_metrics_lines
from order_pipeline.orders.models import OrderStatus
from order_pipeline.orders.policies import DefaultPolicyResolver
from order_pipeline.orders.processor import OrderProcessor, TickSummary
from order_pipeline.orders.repository import OrderStore
from order_pipeline.orders.services import OrderService
from order_pipeline.review.models import ApprovalDecision
from order_pipeline.storage.common import datetime_from_ms


@dataclass(slots=True)
class OrderSubmitCommand:
    """CLI input for order submission."""

    db_path: Path | None
    description: str


@dataclass(slots=True)
class OrderListCommand:
    """CLI input for order listing."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class OrderInspectCommand:
    """CLI input for order inspection."""

    db_path: Path | None
    order_id: str


@dataclass(slots=True)
class OrderRetryCommand:
    """CLI input for manual retry of a terminally failed order."""

    db_path: Path | None
    order_id: str


@dataclass(slots=True)
class HumanDecisionCommand:
    """CLI input for a reviewer verdict on an execution result."""

    db_path: Path | None
    result_id: str
    decision: str
    feedback: str | None


@dataclass(slots=True)
class OrderWorkerCommand:
    """CLI input for processor execution."""

    db_path: Path | None
    once: bool
    max_ticks: int | None


@dataclass(slots=True)
class OrderMetricsCommand:
    """CLI input for execution and review metrics."""

    db_path: Path | None


class OrderCliController:
    """Coordinates submission, inspection, review and worker CLI operations."""

    def submit(self, command: OrderSubmitCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _store(settings) as store:
            order = _service(store, settings).submit_order(command.description)
        return [f"Order submitted: order_id={order.order_id} status={order.status.value}"]

    def list_orders(self, command: OrderListCommand) -> list[str]:
        settings = _settings(command.db_path)
        status_filter = _parse_status(command.status)
        with _store(settings) as store:
            orders = store.list_orders(status=status_filter, limit=command.limit)

        lines = [f"Orders: {len(orders)}"]
        for order in orders:
            lines.append(
                f"  {order.order_id} status={order.status.value} "
                f"attempts={order.attempt_count} "
                f"next_attempt_at={_format_ms(order.next_attempt_at)}",
            )
        return lines

    def inspect(self, command: OrderInspectCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _store(settings) as store:
            details = store.get_order_details(command.order_id)
            if details is None:
                return [f"Order not found: {command.order_id}"]
            status = _service(store, settings).get_order_status(command.order_id)
            approvals = (
                store.list_approvals(result_id=status.result_id) if status.result_id else []
            )

        lines = [
            f"Order: {status.order_id}",
            f"Description: {status.description}",
            f"Status: {status.status_label}",
            f"Attempts: {status.attempt_count}",
            f"Error: {status.last_error or '-'}",
            f"Next attempt: {_format_ms(status.next_attempt_at)}",
            f"Result: {status.result_id or '-'}",
            f"Decision: {status.decision or '-'}",
            f"Approved: {'-' if status.approved is None else status.approved}",
            f"Approval records: {len(approvals)}",
            f"Events: {len(details.events)}",
        ]
        for record in approvals:
            lines.append(
                f"  approval {record.approval_id} {record.decision.value} "
                f"by={record.decided_by.value} quality={record.quality_score} "
                f"risk={record.overall_risk.value} supersedes={record.supersedes or '-'}",
            )
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def retry(self, command: OrderRetryCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _store(settings) as store:
            order = _service(store, settings).retry_order(command.order_id)
        return [f"Order re-queued: {order.order_id}"]

    def record_decision(self, command: HumanDecisionCommand) -> list[str]:
        settings = _settings(command.db_path)
        decision = ApprovalDecision(command.decision.strip().lower())
        with _store(settings) as store:
            record = _service(store, settings).record_human_decision(
                command.result_id,
                decision,
                command.feedback,
            )
        return [
            f"Decision recorded: approval_id={record.approval_id} "
            f"result_id={record.result_id} decision={record.decision.value}",
            f"Feedback: {record.feedback}",
        ]

    def metrics(self, command: OrderMetricsCommand) -> list[str]:
        """Show execution totals, review quality and approval rate."""

        settings = _settings(command.db_path)
        with _store(settings) as store:
            snapshot = _service(store, settings).get_metrics()
        return render_metrics_lines(snapshot)

    def run_worker(self, command: OrderWorkerCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _store(settings) as store:
            processor = OrderProcessor.from_settings(
                store=store,
                executor=EchoExecutor(),
                policy_resolver=DefaultPolicyResolver(settings.review),
                settings=settings.processor,
            )
            try:
                summary = (
                    processor.tick()
                    if command.once
                    else processor.run_loop(max_ticks=command.max_ticks)
                )
            finally:
                processor.close()
        return [_format_summary(processor.worker_id, summary)]


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _service(store: OrderStore, settings: Settings) -> OrderService:
    return OrderService(store=store, policy_resolver=DefaultPolicyResolver(settings.review))


def _parse_status(value: str | None) -> OrderStatus | None:
    if value is None:
        return None
    return OrderStatus(value.strip().lower())


def _format_ms(value: int | None) -> str:
    if value is None:
        return "-"
    return datetime_from_ms(value).isoformat()


def _format_summary(worker_id: str, summary: TickSummary) -> str:
    return (
        f"Worker summary ({worker_id}): "
        f"due={summary.due} claimed={summary.claimed} completed={summary.completed} "
        f"retried={summary.retried} failed_terminal={summary.failed_terminal} "
        f"lease_lost={summary.lease_lost} errors={summary.errors} skipped={summary.skipped} "
        f"timed_out={summary.timed_out} deferred={summary.deferred}"
    )


@contextmanager
def _store(settings: Settings) -> Iterator[OrderStore]:
    store = OrderStore(settings.db_path, lock_timeout_ms=settings.lock_timeout_ms)
    store.init_schema()
    try:
        yield store
    finally:
        store.close()
