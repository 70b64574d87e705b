"""Domain models for the order queue and execution results."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from order_pipeline.storage.common import utc_now


class OrderStatus(str, Enum):
    """Durable order lifecycle states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    FAILED_TERMINAL = "failed_terminal"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({OrderStatus.COMPLETED, OrderStatus.FAILED_TERMINAL})


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


@dataclass(slots=True)
class OrderCreate:
    """Input payload for submitting an order."""

    description: str
    order_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    next_attempt_at: int | None = None


@dataclass(slots=True)
class OrderView:
    """Whole order record as read from (and written back to) the store.

    ``next_attempt_at`` and ``locked_until`` are epoch milliseconds.
    """

    order_id: str
    description: str
    status: OrderStatus
    attempt_count: int
    last_error: str | None
    next_attempt_at: int | None
    locked_by: str | None
    locked_until: int | None
    metadata: dict[str, Any]
    created_at: datetime
    updated_at: datetime

    def lease_expired(self, now_ms: int) -> bool:
        return self.locked_until is None or self.locked_until <= now_ms


@dataclass(slots=True)
class OrderEventView:
    """Order event entry for audit trail."""

    event_id: int
    order_id: str
    event_type: str
    status_from: OrderStatus | None
    status_to: OrderStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class OrderDetails:
    """Order with its event stream."""

    order: OrderView
    events: list[OrderEventView]


@dataclass(slots=True)
class ExecutionLog:
    timestamp: datetime
    level: LogLevel
    message: str

    def to_payload(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level.value,
            "message": self.message,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> ExecutionLog:
        return cls(
            timestamp=datetime.fromisoformat(str(payload["timestamp"])),
            level=LogLevel(payload["level"]),
            message=str(payload.get("message", "")),
        )


@dataclass(slots=True)
class ExecutionResult:
    """Output of one executor attempt.

    ``output`` is an arbitrary JSON-compatible payload; review code only ever
    treats it as a mapping of field name to value (or a list of such mappings).
    """

    order_id: str
    success: bool
    output: Any
    logs: list[ExecutionLog] = field(default_factory=list)
    elapsed_ms: int = 0
    environment: str = "staging"
    agent_type: str | None = None
    result_id: str = field(default_factory=lambda: f"exec-{uuid4()}")
    created_at: datetime = field(default_factory=utc_now)

    def error_logs(self) -> list[ExecutionLog]:
        return [log for log in self.logs if log.level == LogLevel.ERROR]

    def to_payload(self) -> dict[str, Any]:
        return {
            "result_id": self.result_id,
            "order_id": self.order_id,
            "success": self.success,
            "output": self.output,
            "logs": [log.to_payload() for log in self.logs],
            "elapsed_ms": self.elapsed_ms,
            "environment": self.environment,
            "agent_type": self.agent_type,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> ExecutionResult:
        return cls(
            result_id=str(payload["result_id"]),
            order_id=str(payload["order_id"]),
            success=bool(payload.get("success", False)),
            output=payload.get("output"),
            logs=[ExecutionLog.from_payload(item) for item in payload.get("logs", [])],
            elapsed_ms=int(payload.get("elapsed_ms", 0)),
            environment=str(payload.get("environment", "staging")),
            agent_type=payload.get("agent_type"),
            created_at=datetime.fromisoformat(str(payload["created_at"])),
        )


@dataclass(slots=True)
class OrderResultRecord:
    """Latest execution result of an order and its approval outcome."""

    order_id: str
    result: ExecutionResult | None
    approved: bool
    decision: str | None = None
    approval_record_id: str | None = None
    updated_at: datetime | None = None

    @property
    def result_id(self) -> str | None:
        return self.result.result_id if self.result is not None else None
