"""Executor interface for order execution."""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Protocol

from order_pipeline.orders.errors import ExecutorError
from order_pipeline.orders.models import ExecutionLog, ExecutionResult, LogLevel, OrderView
from order_pipeline.storage.common import utc_now


class OrderExecutor(Protocol):
    """Protocol implemented by "do the work" callbacks.

    Implementations raise (or return ``success=False``) on failure and must be
    safe to invoke again for the same order: a worker crash after the attempt
    was counted re-runs the executor once the lease expires.
    """

    def execute(self, order: OrderView) -> ExecutionResult:
        """Perform the order and return the attempt result."""


class FunctionExecutor:
    """Adapts a plain ``order -> ExecutionResult`` function to the protocol."""

    def __init__(self, func: Callable[[OrderView], ExecutionResult]) -> None:
        self._func = func

    def execute(self, order: OrderView) -> ExecutionResult:
        return self._func(order)


class EchoExecutor:
    """Deterministic demo executor used by the CLI worker.

    Echoes the description back as the result payload. Descriptions containing
    ``[fail]`` raise a transient error, ``[fatal]`` a non-retryable one.
    """

    def execute(self, order: OrderView) -> ExecutionResult:
        started = time.monotonic()
        description = order.description
        lowered = description.lower()
        if "[fatal]" in lowered:
            raise ExecutorError(f"Echo executor refused order {order.order_id}", transient=False)
        if "[fail]" in lowered:
            raise ExecutorError(f"Echo executor failed order {order.order_id}")
        return ExecutionResult(
            order_id=order.order_id,
            success=True,
            output={
                "result": description,
                "order_id": order.order_id,
                "attempt": order.attempt_count,
            },
            logs=[
                ExecutionLog(
                    timestamp=utc_now(),
                    level=LogLevel.INFO,
                    message=f"Execution started for order: {description}",
                ),
            ],
            elapsed_ms=int((time.monotonic() - started) * 1000),
            environment="staging",
        )
