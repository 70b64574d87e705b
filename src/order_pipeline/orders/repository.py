"""Persistent order store with lease-based claiming, backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import and_, func, or_
from sqlalchemy import update as sa_update
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlmodel import Session, col, select

from order_pipeline.orders.errors import (
    OrderNotFoundError,
    OrderStateError,
    StoreInitError,
    StoreLockTimeoutError,
)
from order_pipeline.orders.models import (
    ExecutionResult,
    OrderCreate,
    OrderDetails,
    OrderEventView,
    OrderResultRecord,
    OrderStatus,
    OrderView,
)
from order_pipeline.review.models import (
    ApprovalDecision,
    ApprovalRecord,
    DecisionSource,
    RiskLevel,
)
from order_pipeline.storage.alembic_runner import upgrade_head
from order_pipeline.storage.common import (
    build_sqlite_engine,
    is_lock_timeout,
    now_ms,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from order_pipeline.storage.sqlmodel_models import (
    OrderApprovalRow,
    OrderEventRow,
    OrderResultRow,
    OrderRow,
)

logger = logging.getLogger(__name__)

_TERMINAL_VALUES = (OrderStatus.COMPLETED.value, OrderStatus.FAILED_TERMINAL.value)
_WAITING_VALUES = (OrderStatus.PENDING.value, OrderStatus.FAILED.value)


class OrderStore:
    """Single source of truth for orders, results and approval records.

    Every mutation is one SQLite write transaction; SQLite's database write lock
    is the exclusive lock shared by all processes using the same file. Lease
    transitions are conditional updates checked by ``rowcount``, which makes
    them compare-and-set operations.
    """

    def __init__(self, db_path: Path, *, lock_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.lock_timeout_ms = lock_timeout_ms
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=lock_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Create the database file if needed and apply migrations."""

        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            upgrade_head(self.db_path)
        except (OSError, SQLAlchemyError) as error:
            raise StoreInitError(
                f"Cannot initialize order store at {self.db_path}: {error}",
            ) from error

    # -- whole-record access ---------------------------------------------------

    def create_order(self, payload: OrderCreate) -> OrderView:
        """Insert a new pending order."""

        now = utc_now()
        order_id = payload.order_id or str(uuid4())
        with self._session() as session:
            row = OrderRow(
                order_id=order_id,
                description=payload.description,
                status=OrderStatus.PENDING.value,
                attempt_count=0,
                last_error=None,
                next_attempt_at=(
                    payload.next_attempt_at if payload.next_attempt_at is not None else now_ms()
                ),
                locked_by=None,
                locked_until=None,
                metadata_json=_dump_json(payload.metadata),
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            # Events reference orders.order_id; the order row must be inserted first.
            session.flush()
            self._add_event(
                session=session,
                order_id=order_id,
                event_type="submitted",
                status_from=None,
                status_to=OrderStatus.PENDING,
                details={},
            )
            session.commit()
            session.refresh(row)
            return _to_order_view(row)

    def update_order(self, order: OrderView) -> OrderView:
        """Write the whole record back (upsert); bumps ``updated_at``.

        The store does not merge fields: the caller is responsible for having
        read the latest version.
        """

        now = utc_now()
        values = _order_values(order, updated_at=now)
        with self._session() as session:
            result = session.exec(
                sa_update(OrderRow)
                .where(col(OrderRow.order_id) == order.order_id)
                .values(**values),
            )
            if result.rowcount != 1:
                session.add(
                    OrderRow(
                        order_id=order.order_id,
                        created_at=to_db_datetime(order.created_at),
                        **values,
                    ),
                )
            session.commit()
            return self._require_order(session=session, order_id=order.order_id)

    def get_order(self, order_id: str) -> OrderView | None:
        with self._session() as session:
            row = session.get(OrderRow, order_id)
            return _to_order_view(row) if row is not None else None

    def list_orders(
        self,
        *,
        status: OrderStatus | None = None,
        limit: int | None = None,
    ) -> list[OrderView]:
        """List orders, newest first, optionally filtered by status."""

        with self._session() as session:
            statement = select(OrderRow).order_by(col(OrderRow.created_at).desc())
            if status is not None:
                statement = statement.where(OrderRow.status == status.value)
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
        return [_to_order_view(row) for row in rows]

    def get_due_orders(self, now: int) -> list[OrderView]:
        """Orders eligible for claiming at ``now`` (epoch ms).

        Waiting orders (pending/failed) whose backoff elapsed and whose lease is
        absent or expired, plus in-progress orders whose lease expired, which is
        what a crashed worker leaves behind.
        """

        lease_expired = or_(
            col(OrderRow.locked_until).is_(None),
            col(OrderRow.locked_until) <= now,
        )
        with self._session() as session:
            rows = session.exec(
                select(OrderRow)
                .where(
                    or_(
                        and_(
                            col(OrderRow.status).in_(_WAITING_VALUES),
                            func.coalesce(col(OrderRow.next_attempt_at), 0) <= now,
                            lease_expired,
                        ),
                        and_(
                            col(OrderRow.status) == OrderStatus.IN_PROGRESS.value,
                            lease_expired,
                        ),
                    ),
                )
                .order_by(
                    func.coalesce(col(OrderRow.next_attempt_at), 0).asc(),
                    col(OrderRow.created_at).asc(),
                ),
            ).all()
        return [_to_order_view(row) for row in rows]

    # -- lease manager -----------------------------------------------------------

    def acquire_lease(
        self,
        order_id: str,
        holder_id: str,
        lease_ms: int,
        now: int,
    ) -> OrderView | None:
        """Claim exclusive ownership of an order.

        Returns ``None`` when the order is missing, terminal, or leased by a
        live holder.
        """

        with self._session() as session:
            result = session.exec(
                sa_update(OrderRow)
                .where(
                    col(OrderRow.order_id) == order_id,
                    col(OrderRow.status).not_in(_TERMINAL_VALUES),
                    or_(
                        col(OrderRow.locked_until).is_(None),
                        col(OrderRow.locked_until) <= now,
                    ),
                )
                .values(
                    status=OrderStatus.IN_PROGRESS.value,
                    locked_by=holder_id,
                    locked_until=now + lease_ms,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            self._add_event(
                session=session,
                order_id=order_id,
                event_type="lease_acquired",
                status_from=None,
                status_to=OrderStatus.IN_PROGRESS,
                details={"holder_id": holder_id, "locked_until": now + lease_ms},
            )
            session.commit()
            return self._require_order(session=session, order_id=order_id)

    def renew_lease(self, order_id: str, holder_id: str, lease_ms: int, now: int) -> bool:
        """Extend a lease still held by ``holder_id``."""

        with self._session() as session:
            result = session.exec(
                sa_update(OrderRow)
                .where(
                    col(OrderRow.order_id) == order_id,
                    col(OrderRow.locked_by) == holder_id,
                    col(OrderRow.status) == OrderStatus.IN_PROGRESS.value,
                )
                .values(locked_until=now + lease_ms, updated_at=to_db_datetime(utc_now())),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def release_lease(self, order_id: str, *, holder_id: str | None = None) -> bool:
        """Clear lease fields without touching the status."""

        with self._session() as session:
            statement = sa_update(OrderRow).where(col(OrderRow.order_id) == order_id)
            if holder_id is not None:
                statement = statement.where(col(OrderRow.locked_by) == holder_id)
            result = session.exec(
                statement.values(
                    locked_by=None,
                    locked_until=None,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                order_id=order_id,
                event_type="lease_released",
                status_from=None,
                status_to=None,
                details={"holder_id": holder_id} if holder_id is not None else {},
            )
            session.commit()
            return True

    # -- fenced attempt transitions ---------------------------------------------

    def start_attempt(self, order_id: str, holder_id: str) -> OrderView | None:
        """Count one execution attempt for the current lease holder."""

        with self._session() as session:
            result = session.exec(
                sa_update(OrderRow)
                .where(*_held_by(order_id, holder_id))
                .values(
                    attempt_count=col(OrderRow.attempt_count) + 1,
                    last_error=None,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            order = self._require_order(session=session, order_id=order_id)
            self._add_event(
                session=session,
                order_id=order_id,
                event_type="attempt_started",
                status_from=OrderStatus.IN_PROGRESS,
                status_to=OrderStatus.IN_PROGRESS,
                details={"holder_id": holder_id, "attempt_count": order.attempt_count},
            )
            session.commit()
            return order

    def complete_order(
        self,
        order_id: str,
        holder_id: str,
        *,
        result: OrderResultRecord | None = None,
        approval: ApprovalRecord | None = None,
    ) -> bool:
        """Mark a leased order completed, storing its result and verdict atomically."""

        with self._session() as session:
            updated = session.exec(
                sa_update(OrderRow)
                .where(*_held_by(order_id, holder_id))
                .values(
                    status=OrderStatus.COMPLETED.value,
                    last_error=None,
                    next_attempt_at=None,
                    locked_by=None,
                    locked_until=None,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if updated.rowcount != 1:
                session.rollback()
                return False
            if approval is not None:
                session.add(_to_approval_row(order_id=order_id, record=approval))
            if result is not None:
                self._upsert_result(session=session, record=result)
            self._add_event(
                session=session,
                order_id=order_id,
                event_type="completed",
                status_from=OrderStatus.IN_PROGRESS,
                status_to=OrderStatus.COMPLETED,
                details={
                    "result_id": result.result_id if result is not None else None,
                    "decision": approval.decision.value if approval is not None else None,
                },
            )
            session.commit()
            return True

    def schedule_retry(
        self,
        order_id: str,
        holder_id: str,
        *,
        error: str,
        next_attempt_at: int,
    ) -> bool:
        """Move a leased order to ``failed`` and make it due again after backoff."""

        with self._session() as session:
            updated = session.exec(
                sa_update(OrderRow)
                .where(*_held_by(order_id, holder_id))
                .values(
                    status=OrderStatus.FAILED.value,
                    last_error=error,
                    next_attempt_at=next_attempt_at,
                    locked_by=None,
                    locked_until=None,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if updated.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                order_id=order_id,
                event_type="retry_scheduled",
                status_from=OrderStatus.IN_PROGRESS,
                status_to=OrderStatus.FAILED,
                details={"next_attempt_at": next_attempt_at, "error": error},
            )
            session.commit()
            return True

    def fail_order_terminal(self, order_id: str, holder_id: str, *, error: str) -> bool:
        """Give up on a leased order; no further automatic retries."""

        with self._session() as session:
            updated = session.exec(
                sa_update(OrderRow)
                .where(*_held_by(order_id, holder_id))
                .values(
                    status=OrderStatus.FAILED_TERMINAL.value,
                    last_error=error,
                    next_attempt_at=None,
                    locked_by=None,
                    locked_until=None,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if updated.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                order_id=order_id,
                event_type="failed_terminal",
                status_from=OrderStatus.IN_PROGRESS,
                status_to=OrderStatus.FAILED_TERMINAL,
                details={"error": error},
            )
            session.commit()
            return True

    def retry_order(self, order_id: str, *, now: int) -> OrderView:
        """Manual operator retry of a terminally failed order."""

        with self._session() as session:
            updated = session.exec(
                sa_update(OrderRow)
                .where(
                    col(OrderRow.order_id) == order_id,
                    col(OrderRow.status) == OrderStatus.FAILED_TERMINAL.value,
                )
                .values(
                    status=OrderStatus.PENDING.value,
                    attempt_count=0,
                    last_error=None,
                    next_attempt_at=now,
                    locked_by=None,
                    locked_until=None,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if updated.rowcount != 1:
                session.rollback()
                current = session.get(OrderRow, order_id)
                if current is None:
                    raise OrderNotFoundError(f"Order not found: {order_id}")
                raise OrderStateError(
                    f"Only failed_terminal orders can be retried manually, got {current.status}.",
                )
            self._add_event(
                session=session,
                order_id=order_id,
                event_type="manual_retry",
                status_from=OrderStatus.FAILED_TERMINAL,
                status_to=OrderStatus.PENDING,
                details={},
            )
            session.commit()
            return self._require_order(session=session, order_id=order_id)

    # -- results and approvals ---------------------------------------------------

    def set_result(self, order_id: str, record: OrderResultRecord) -> None:
        if record.order_id != order_id:
            raise ValueError(f"Result belongs to {record.order_id}, not {order_id}")
        with self._session() as session:
            self._upsert_result(session=session, record=record)
            session.commit()

    def get_result(self, order_id: str) -> OrderResultRecord | None:
        with self._session() as session:
            row = session.get(OrderResultRow, order_id)
            return _to_result_record(row) if row is not None else None

    def find_result_by_result_id(self, result_id: str) -> OrderResultRecord | None:
        with self._session() as session:
            row = session.exec(
                select(OrderResultRow).where(OrderResultRow.result_id == result_id),
            ).one_or_none()
            return _to_result_record(row) if row is not None else None

    def add_approval(self, order_id: str, record: ApprovalRecord) -> None:
        with self._session() as session:
            session.add(_to_approval_row(order_id=order_id, record=record))
            session.commit()

    def list_approvals(self, *, result_id: str | None = None) -> list[ApprovalRecord]:
        """Approval history for one result (or all results), oldest first."""

        with self._session() as session:
            statement = select(OrderApprovalRow).order_by(col(OrderApprovalRow.decided_at).asc())
            if result_id is not None:
                statement = statement.where(OrderApprovalRow.result_id == result_id)
            rows = session.exec(statement).all()
        return [_to_approval_record(row) for row in rows]

    def list_results(self) -> list[OrderResultRecord]:
        """Latest result of every order that has one."""

        with self._session() as session:
            rows = session.exec(
                select(OrderResultRow).order_by(col(OrderResultRow.updated_at).asc()),
            ).all()
        return [_to_result_record(row) for row in rows]

    def count_orders_by_status(self) -> dict[str, int]:
        with self._session() as session:
            rows = session.exec(
                select(OrderRow.status, func.count()).group_by(OrderRow.status),
            ).all()
        return {str(status): int(count) for status, count in rows}

    def count_events_by_type(self) -> dict[str, int]:
        """Audit trail totals, e.g. how many attempts completed or failed."""

        with self._session() as session:
            rows = session.exec(
                select(OrderEventRow.event_type, func.count()).group_by(
                    OrderEventRow.event_type,
                ),
            ).all()
        return {str(event_type): int(count) for event_type, count in rows}

    def apply_review_decision(
        self,
        order_id: str,
        record: ApprovalRecord,
        *,
        status: OrderStatus,
        next_attempt_at: int | None,
    ) -> OrderView:
        """Persist a re-review verdict and move the order accordingly.

        Refused while a worker holds the order in progress.
        """

        approved = record.decision == ApprovalDecision.APPROVED
        with self._session() as session:
            updated = session.exec(
                sa_update(OrderRow)
                .where(
                    col(OrderRow.order_id) == order_id,
                    col(OrderRow.status) != OrderStatus.IN_PROGRESS.value,
                )
                .values(
                    status=status.value,
                    next_attempt_at=next_attempt_at,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if updated.rowcount != 1:
                session.rollback()
                current = session.get(OrderRow, order_id)
                if current is None:
                    raise OrderNotFoundError(f"Order not found: {order_id}")
                raise OrderStateError(
                    f"Order {order_id} is being executed; retry the decision later.",
                )
            previous = session.get(OrderResultRow, order_id)
            if previous is None:
                raise OrderNotFoundError(f"No result stored for order {order_id}")
            previous.approved = approved
            previous.decision = record.decision.value
            previous.approval_record_id = record.approval_id
            previous.updated_at = to_db_datetime(utc_now())
            session.add(previous)
            session.add(_to_approval_row(order_id=order_id, record=record))
            self._add_event(
                session=session,
                order_id=order_id,
                event_type="review_decision",
                status_from=None,
                status_to=status,
                details={
                    "approval_id": record.approval_id,
                    "decision": record.decision.value,
                    "decided_by": record.decided_by.value,
                },
            )
            session.commit()
            return self._require_order(session=session, order_id=order_id)

    # -- audit trail -------------------------------------------------------------

    def add_order_event(
        self,
        *,
        order_id: str,
        event_type: str,
        status_from: OrderStatus | None = None,
        status_to: OrderStatus | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        with self._session() as session:
            self._add_event(
                session=session,
                order_id=order_id,
                event_type=event_type,
                status_from=status_from,
                status_to=status_to,
                details=details or {},
            )
            session.commit()

    def get_order_details(self, order_id: str) -> OrderDetails | None:
        """Return order with its event stream."""

        with self._session() as session:
            row = session.get(OrderRow, order_id)
            if row is None:
                return None
            event_rows = session.exec(
                select(OrderEventRow)
                .where(OrderEventRow.order_id == order_id)
                .order_by(col(OrderEventRow.created_at).asc(), col(OrderEventRow.id).asc()),
            ).all()
            order = _to_order_view(row)

        events = [
            OrderEventView(
                event_id=event.id or 0,
                order_id=event.order_id,
                event_type=event.event_type,
                status_from=OrderStatus(event.status_from) if event.status_from else None,
                status_to=OrderStatus(event.status_to) if event.status_to else None,
                created_at=to_utc_aware_datetime(event.created_at),
                details=_load_json_dict(event.details_json),
            )
            for event in event_rows
        ]
        return OrderDetails(order=order, events=events)

    # -- internals ---------------------------------------------------------------

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self.engine) as session:
                yield session
        except OperationalError as error:
            if is_lock_timeout(error):
                logger.warning("Order store lock wait exceeded %d ms", self.lock_timeout_ms)
                raise StoreLockTimeoutError(
                    f"Order store lock timeout after {self.lock_timeout_ms} ms",
                ) from error
            raise

    def _require_order(self, *, session: Session, order_id: str) -> OrderView:
        row = session.exec(select(OrderRow).where(OrderRow.order_id == order_id)).one_or_none()
        if row is None:
            raise OrderNotFoundError(f"Order not found: {order_id}")
        session.refresh(row)
        return _to_order_view(row)

    def _upsert_result(self, *, session: Session, record: OrderResultRecord) -> None:
        row = session.get(OrderResultRow, record.order_id)
        if row is None:
            row = OrderResultRow(order_id=record.order_id, updated_at=to_db_datetime(utc_now()))
        row.result_id = record.result_id
        row.approved = record.approved
        row.decision = record.decision
        row.approval_record_id = record.approval_record_id
        row.result_json = (
            _dump_json(record.result.to_payload()) if record.result is not None else None
        )
        row.updated_at = to_db_datetime(utc_now())
        session.add(row)

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        order_id: str,
        event_type: str,
        status_from: OrderStatus | None,
        status_to: OrderStatus | None,
        details: dict[str, Any],
    ) -> None:
        session.add(
            OrderEventRow(
                order_id=order_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=_dump_json(details) if details else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _held_by(order_id: str, holder_id: str) -> tuple[Any, ...]:
    return (
        col(OrderRow.order_id) == order_id,
        col(OrderRow.locked_by) == holder_id,
        col(OrderRow.status) == OrderStatus.IN_PROGRESS.value,
    )


def _dump_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True, default=str)


def _load_json_dict(value: str | None) -> dict[str, Any]:
    if not value:
        return {}
    parsed = json.loads(value)
    return parsed if isinstance(parsed, dict) else {}


def _order_values(order: OrderView, *, updated_at: datetime) -> dict[str, Any]:
    return {
        "description": order.description,
        "status": order.status.value,
        "attempt_count": order.attempt_count,
        "last_error": order.last_error,
        "next_attempt_at": order.next_attempt_at,
        "locked_by": order.locked_by,
        "locked_until": order.locked_until,
        "metadata_json": _dump_json(order.metadata),
        "updated_at": to_db_datetime(updated_at),
    }


def _to_order_view(row: OrderRow) -> OrderView:
    return OrderView(
        order_id=row.order_id,
        description=row.description,
        status=OrderStatus(row.status),
        attempt_count=row.attempt_count,
        last_error=row.last_error,
        next_attempt_at=row.next_attempt_at,
        locked_by=row.locked_by,
        locked_until=row.locked_until,
        metadata=_load_json_dict(row.metadata_json),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_result_record(row: OrderResultRow) -> OrderResultRecord:
    result = None
    if row.result_json:
        result = ExecutionResult.from_payload(json.loads(row.result_json))
    return OrderResultRecord(
        order_id=row.order_id,
        result=result,
        approved=row.approved,
        decision=row.decision,
        approval_record_id=row.approval_record_id,
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_approval_row(*, order_id: str, record: ApprovalRecord) -> OrderApprovalRow:
    return OrderApprovalRow(
        approval_id=record.approval_id,
        order_id=order_id,
        result_id=record.result_id,
        decision=record.decision.value,
        decided_by=record.decided_by.value,
        feedback=record.feedback,
        improvement_requirements_json=_dump_json(list(record.improvement_requirements)),
        quality_score=record.quality_score,
        overall_risk=record.overall_risk.value,
        supersedes=record.supersedes,
        decided_at=to_db_datetime(record.decided_at),
    )


def _to_approval_record(row: OrderApprovalRow) -> ApprovalRecord:
    requirements = json.loads(row.improvement_requirements_json or "[]")
    return ApprovalRecord(
        approval_id=row.approval_id,
        result_id=row.result_id,
        decision=ApprovalDecision(row.decision),
        decided_by=DecisionSource(row.decided_by),
        decided_at=to_utc_aware_datetime(row.decided_at),
        feedback=row.feedback,
        improvement_requirements=tuple(str(item) for item in requirements),
        quality_score=row.quality_score,
        overall_risk=RiskLevel(row.overall_risk),
        supersedes=row.supersedes,
    )
