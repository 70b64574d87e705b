"""Polling order processor driving the lease/retry state machine."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from contextlib import contextmanager
from dataclasses import dataclass

from order_pipeline.config import ProcessorSettings, default_worker_id
from order_pipeline.orders.errors import (
    ExecutorError,
    ExecutorTimeoutError,
    LeaseLostError,
    StoreLockTimeoutError,
)
from order_pipeline.orders.executor import OrderExecutor
from order_pipeline.orders.models import ExecutionResult, OrderResultRecord, OrderView
from order_pipeline.orders.policies import PolicyResolver
from order_pipeline.orders.repository import OrderStore
from order_pipeline.review.approval import evaluate_approval
from order_pipeline.review.models import ApprovalResult
from order_pipeline.review.risk import CustomRiskCheck
from order_pipeline.storage.common import now_ms

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TickSummary:
    """Per-tick (or aggregated) processor counters."""

    due: int = 0
    claimed: int = 0
    completed: int = 0
    retried: int = 0
    failed_terminal: int = 0
    lease_lost: int = 0
    errors: int = 0
    skipped: int = 0
    timed_out: int = 0
    deferred: int = 0

    def merge(self, other: TickSummary) -> None:
        self.due += other.due
        self.claimed += other.claimed
        self.completed += other.completed
        self.retried += other.retried
        self.failed_terminal += other.failed_terminal
        self.lease_lost += other.lease_lost
        self.errors += other.errors
        self.skipped += other.skipped
        self.timed_out += other.timed_out
        self.deferred += other.deferred


class _ExecutionStillRunning(Exception):
    """Executor timed out but its thread could not be cancelled."""


def compute_backoff_ms(attempt: int, *, base_ms: int, max_ms: int) -> int:
    """Exponential backoff for the given 1-based attempt number, capped at ``max_ms``."""

    return min(max_ms, base_ms * (2 ** max(attempt - 1, 0)))


class OrderProcessor:
    """Claims due orders, runs the executor and records the reviewed outcome.

    Any number of processors may share one store; the lease protocol of
    ``OrderStore`` guarantees a single live owner per order. Ticks run one at a
    time per processor and handle claimed orders sequentially.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: OrderStore,
        executor: OrderExecutor,
        policy_resolver: PolicyResolver,
        worker_id: str | None = None,
        poll_interval_ms: int = 250,
        lease_ms: int = 30_000,
        retry_base_ms: int = 1_500,
        retry_max_ms: int = 30_000,
        max_attempts: int = 10,
        executor_timeout_ms: int = 300_000,
        execution_threads: int = 4,
        clock: Callable[[], int] = now_ms,
        custom_checks: Mapping[str, CustomRiskCheck] | None = None,
    ) -> None:
        self.store = store
        self.executor = executor
        self.policy_resolver = policy_resolver
        self.worker_id = worker_id or default_worker_id()
        self.poll_interval_ms = poll_interval_ms
        self.lease_ms = lease_ms
        self.retry_base_ms = retry_base_ms
        self.retry_max_ms = retry_max_ms
        self.max_attempts = max_attempts
        self.executor_timeout_ms = executor_timeout_ms
        self.clock = clock
        self.custom_checks = dict(custom_checks or {})
        self.execution_threads = execution_threads
        self._pool = ThreadPoolExecutor(
            max_workers=execution_threads,
            thread_name_prefix=f"{self.worker_id}-exec",
        )
        self._tick_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._stop_signal_name: str | None = None
        self._thread: threading.Thread | None = None
        # Timed-out executions whose thread is still running, keyed by order id.
        self._abandoned: dict[str, threading.Thread] = {}
        self._abandoned_lock = threading.Lock()

    @classmethod
    def from_settings(
        cls,
        *,
        store: OrderStore,
        executor: OrderExecutor,
        policy_resolver: PolicyResolver,
        settings: ProcessorSettings,
    ) -> OrderProcessor:
        return cls(
            store=store,
            executor=executor,
            policy_resolver=policy_resolver,
            worker_id=settings.worker_id,
            poll_interval_ms=settings.poll_interval_ms,
            lease_ms=settings.lease_ms,
            retry_base_ms=settings.retry_base_ms,
            retry_max_ms=settings.retry_max_ms,
            max_attempts=settings.max_attempts,
            executor_timeout_ms=settings.executor_timeout_ms,
        )

    # -- polling -----------------------------------------------------------------

    def tick(self) -> TickSummary:
        """Run one poll cycle; returns immediately when a cycle is already in flight."""

        if not self._tick_lock.acquire(blocking=False):
            return TickSummary(skipped=1)
        try:
            return self._run_tick()
        finally:
            self._tick_lock.release()

    def run_loop(self, *, max_ticks: int | None = None) -> TickSummary:
        """Tick at a fixed interval until stopped or ``max_ticks`` reached.

        The first tick runs immediately; slots missed by a slow tick are
        skipped rather than queued.
        """

        aggregate = TickSummary()
        interval = self.poll_interval_ms / 1000
        ticks = 0
        next_slot = time.monotonic()
        with self._signal_handlers():
            while not self._stop_event.is_set():
                aggregate.merge(self.tick())
                ticks += 1
                if max_ticks is not None and ticks >= max_ticks:
                    break
                next_slot += interval
                current = time.monotonic()
                if next_slot < current:
                    missed = int((current - next_slot) // interval) + 1
                    next_slot += missed * interval
                self._sleep_with_stop(next_slot - time.monotonic())
        if self._stop_signal_name is not None:
            logger.info("Processor %s stopped by %s", self.worker_id, self._stop_signal_name)
        return aggregate

    def start(self) -> None:
        """Run the poll loop on a background daemon thread."""

        if self._thread is not None and self._thread.is_alive():
            raise RuntimeError(f"Processor {self.worker_id} is already running.")
        self._stop_event.clear()
        self._stop_signal_name = None
        self._thread = threading.Thread(
            target=self.run_loop,
            name=f"{self.worker_id}-loop",
            daemon=True,
        )
        self._thread.start()

    def stop(self, *, timeout: float | None = None) -> None:
        """Request a graceful stop and wait for the background loop, if any."""

        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
            if not thread.is_alive():
                self._thread = None

    def drain(self, *, timeout: float | None = None) -> bool:
        """Wait for timed-out executions to return and their failure to be recorded.

        Returns ``False`` when some are still running after ``timeout`` seconds.
        """

        deadline = None if timeout is None else time.monotonic() + timeout
        with self._abandoned_lock:
            watchers = list(self._abandoned.values())
        for watcher in watchers:
            remaining = None if deadline is None else max(deadline - time.monotonic(), 0)
            watcher.join(timeout=remaining)
        with self._abandoned_lock:
            return not self._abandoned

    def close(self, *, timeout: float | None = None) -> None:
        """Stop the loop, wait for timed-out executions, then release the thread pool."""

        self.stop()
        self.drain(timeout=timeout)
        self._pool.shutdown(wait=False, cancel_futures=True)

    # -- one tick ----------------------------------------------------------------

    def _run_tick(self) -> TickSummary:
        summary = TickSummary()
        try:
            due = self.store.get_due_orders(self.clock())
        except StoreLockTimeoutError as error:
            logger.warning("Skipping tick, order store busy: %s", error)
            summary.errors += 1
            return summary

        summary.due = len(due)
        for order in due:
            if self._stop_event.is_set():
                break
            with self._abandoned_lock:
                running = len(self._abandoned)
                own = order.order_id in self._abandoned
            if own:
                continue
            if running >= self.execution_threads:
                # No free execution thread; a call submitted now would start late.
                logger.warning(
                    "All %d execution threads busy with timed-out orders, deferring %s",
                    self.execution_threads,
                    order.order_id,
                )
                summary.deferred += 1
                continue
            try:
                self._process_due_order(order.order_id, summary)
            except StoreLockTimeoutError as error:
                logger.warning("Ending tick early, order store busy: %s", error)
                summary.errors += 1
                break
            except Exception:
                logger.exception("Unexpected error while processing order %s", order.order_id)
                summary.errors += 1
        return summary

    def _process_due_order(self, order_id: str, summary: TickSummary) -> None:
        leased = self.store.acquire_lease(order_id, self.worker_id, self.lease_ms, self.clock())
        if leased is None:
            logger.debug("Order %s was claimed elsewhere", order_id)
            return
        summary.claimed += 1

        if leased.attempt_count >= self.max_attempts:
            # Reclaimed after a crash during the final attempt.
            error = leased.last_error or "Attempt limit reached before the last attempt finished"
            if self.store.fail_order_terminal(order_id, self.worker_id, error=error):
                summary.failed_terminal += 1
                logger.error("Order %s failed terminally: %s", order_id, error)
            else:
                summary.lease_lost += 1
            return

        order = self.store.start_attempt(order_id, self.worker_id)
        if order is None:
            summary.lease_lost += 1
            return
        logger.info(
            "Order %s claimed by %s (attempt %d/%d)",
            order_id,
            self.worker_id,
            order.attempt_count,
            self.max_attempts,
        )

        try:
            result = self._execute(order)
            review = self._review(order, result)
        except StoreLockTimeoutError:
            raise
        except LeaseLostError:
            logger.warning("Lease on order %s lost during execution", order_id)
            summary.lease_lost += 1
            return
        except _ExecutionStillRunning as error:
            logger.warning("%s for order %s, holding lease until it returns", error, order_id)
            summary.timed_out += 1
            return
        except Exception as error:
            self._handle_failure(order, error, summary)
            return

        record = OrderResultRecord(
            order_id=order_id,
            result=result,
            approved=review.approved,
            decision=review.decision.value,
            approval_record_id=review.record.approval_id,
        )
        if not self.store.complete_order(
            order_id,
            self.worker_id,
            result=record,
            approval=review.record,
        ):
            logger.warning("Lease on order %s lost before completion", order_id)
            summary.lease_lost += 1
            return
        summary.completed += 1
        logger.info(
            "Order %s completed, review decision %s (quality %d, risk %s)",
            order_id,
            review.decision.value,
            review.quality.score,
            review.risk.overall_risk.value,
        )

    def _handle_failure(self, order: OrderView, error: Exception, summary: TickSummary) -> None:
        message = str(error) or type(error).__name__
        attempt = order.attempt_count
        transient = not isinstance(error, ExecutorError) or error.transient

        if attempt >= self.max_attempts or not transient:
            if self.store.fail_order_terminal(order.order_id, self.worker_id, error=message):
                summary.failed_terminal += 1
                logger.error(
                    "Order %s failed terminally after %d attempt(s): %s",
                    order.order_id,
                    attempt,
                    message,
                )
            else:
                summary.lease_lost += 1
            return

        backoff_ms = compute_backoff_ms(
            attempt,
            base_ms=self.retry_base_ms,
            max_ms=self.retry_max_ms,
        )
        if self.store.schedule_retry(
            order.order_id,
            self.worker_id,
            error=message,
            next_attempt_at=self.clock() + backoff_ms,
        ):
            summary.retried += 1
            logger.warning(
                "Order %s failed (attempt %d/%d), retrying in %d ms: %s",
                order.order_id,
                attempt,
                self.max_attempts,
                backoff_ms,
                message,
            )
        else:
            summary.lease_lost += 1

    def _execute(self, order: OrderView) -> ExecutionResult:
        """Run the executor off-thread, renewing the lease until it returns."""

        future: Future[ExecutionResult] = self._pool.submit(self.executor.execute, order)
        deadline = time.monotonic() + self.executor_timeout_ms / 1000
        renew_every = self._renew_every_seconds()
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                message = f"Executor timed out after {self.executor_timeout_ms} ms"
                if future.cancel():
                    raise ExecutorTimeoutError(message)
                self._hold_until_finished(order, future, message)
                raise _ExecutionStillRunning(message)
            try:
                result = future.result(timeout=min(renew_every, remaining))
                break
            except FutureTimeoutError:
                if not self.store.renew_lease(
                    order.order_id,
                    self.worker_id,
                    self.lease_ms,
                    self.clock(),
                ):
                    future.cancel()
                    raise LeaseLostError(f"Lease on order {order.order_id} expired") from None

        if not result.success:
            raise ExecutorError(_failure_message(result))
        return result

    def _review(self, order: OrderView, result: ExecutionResult) -> ApprovalResult:
        resolved = self.policy_resolver.resolve(order)
        if result.agent_type is None:
            result.agent_type = resolved.agent_type
        return evaluate_approval(result, resolved.policy, custom_checks=self.custom_checks)

    def _renew_every_seconds(self) -> float:
        return max(self.lease_ms / 3, 1) / 1000

    def _hold_until_finished(
        self,
        order: OrderView,
        future: Future[ExecutionResult],
        message: str,
    ) -> None:
        """Keep the lease of a timed-out order until its executor thread returns.

        The timeout failure is recorded only then, so the order cannot be claimed
        and executed again while the abandoned call is still running.
        """

        watcher = threading.Thread(
            target=self._finish_timed_out,
            args=(order, future, message),
            name=f"{self.worker_id}-timeout-{order.order_id}",
            daemon=True,
        )
        with self._abandoned_lock:
            self._abandoned[order.order_id] = watcher
        watcher.start()

    def _finish_timed_out(
        self,
        order: OrderView,
        future: Future[ExecutionResult],
        message: str,
    ) -> None:
        try:
            while not future.done():
                try:
                    future.exception(timeout=self._renew_every_seconds())
                except FutureTimeoutError:
                    if not self.store.renew_lease(
                        order.order_id,
                        self.worker_id,
                        self.lease_ms,
                        self.clock(),
                    ):
                        logger.warning(
                            "Lease on timed-out order %s lost while its executor was running",
                            order.order_id,
                        )
                        return
            self._handle_failure(order, ExecutorTimeoutError(message), TickSummary())
        except Exception:
            logger.exception("Could not record timeout of order %s", order.order_id)
        finally:
            with self._abandoned_lock:
                self._abandoned.pop(order.order_id, None)

    # -- lifecycle helpers -------------------------------------------------------

    def _sleep_with_stop(self, seconds: float) -> None:
        if seconds > 0:
            self._stop_event.wait(seconds)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if threading.current_thread() is not threading.main_thread():
            # Signal handlers can only be installed in main thread.
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self._request_stop(signal_name=name)

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)

    def _request_stop(self, *, signal_name: str) -> None:
        self._stop_signal_name = signal_name
        self._stop_event.set()


def _failure_message(result: ExecutionResult) -> str:
    errors = [log.message for log in result.error_logs()]
    if errors:
        return "; ".join(errors)
    return f"Executor reported failure for order {result.order_id}"
