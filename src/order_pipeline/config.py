"""Runtime configuration for the order pipeline."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from uuid import uuid4


def default_worker_id() -> str:
    return f"order-worker-{os.getpid()}-{uuid4().hex[:6]}"


@dataclass(slots=True)
class ProcessorSettings:
    """Polling, lease and retry tunables (milliseconds)."""

    worker_id: str = field(default_factory=default_worker_id)
    poll_interval_ms: int = 250
    lease_ms: int = 30_000
    retry_base_ms: int = 1_500
    retry_max_ms: int = 30_000
    max_attempts: int = 10
    executor_timeout_ms: int = 300_000


@dataclass(slots=True)
class ReviewSettings:
    """Quality standards and risk thresholds for automated review."""

    min_quality_score: int = 70
    auto_approve_low_risk: bool = False
    require_human_approval_for_high_risk: bool = True
    risk_threshold_low: float = 0.3
    risk_threshold_medium: float = 0.5
    risk_threshold_high: float = 0.7
    risk_threshold_critical: float = 0.9


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".order_pipeline.db")
    lock_timeout_ms: int = 5_000
    processor: ProcessorSettings = field(default_factory=ProcessorSettings)
    review: ReviewSettings = field(default_factory=ReviewSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("ORDER_PIPELINE_DB_PATH", ".order_pipeline.db")),
            lock_timeout_ms=int(os.getenv("ORDER_PIPELINE_LOCK_TIMEOUT_MS", "5000")),
            processor=ProcessorSettings(
                worker_id=os.getenv("ORDER_PIPELINE_WORKER_ID") or default_worker_id(),
                poll_interval_ms=int(os.getenv("ORDER_PIPELINE_POLL_INTERVAL_MS", "250")),
                lease_ms=int(os.getenv("ORDER_PIPELINE_LEASE_MS", "30000")),
                retry_base_ms=int(os.getenv("ORDER_PIPELINE_RETRY_BASE_MS", "1500")),
                retry_max_ms=int(os.getenv("ORDER_PIPELINE_RETRY_MAX_MS", "30000")),
                max_attempts=int(os.getenv("ORDER_PIPELINE_MAX_ATTEMPTS", "10")),
                executor_timeout_ms=int(
                    os.getenv("ORDER_PIPELINE_EXECUTOR_TIMEOUT_MS", "300000"),
                ),
            ),
            review=ReviewSettings(
                min_quality_score=int(os.getenv("ORDER_PIPELINE_MIN_QUALITY_SCORE", "70")),
                auto_approve_low_risk=_env_bool(
                    "ORDER_PIPELINE_AUTO_APPROVE_LOW_RISK",
                    default=False,
                ),
                require_human_approval_for_high_risk=_env_bool(
                    "ORDER_PIPELINE_REQUIRE_HUMAN_APPROVAL_FOR_HIGH_RISK",
                    default=True,
                ),
                risk_threshold_low=float(os.getenv("ORDER_PIPELINE_RISK_THRESHOLD_LOW", "0.3")),
                risk_threshold_medium=float(
                    os.getenv("ORDER_PIPELINE_RISK_THRESHOLD_MEDIUM", "0.5"),
                ),
                risk_threshold_high=float(os.getenv("ORDER_PIPELINE_RISK_THRESHOLD_HIGH", "0.7")),
                risk_threshold_critical=float(
                    os.getenv("ORDER_PIPELINE_RISK_THRESHOLD_CRITICAL", "0.9"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the pipeline cannot run with."""

        if self.lock_timeout_ms <= 0:
            raise ValueError("ORDER_PIPELINE_LOCK_TIMEOUT_MS must be > 0.")
        processor = self.processor
        for name, value in (
            ("ORDER_PIPELINE_POLL_INTERVAL_MS", processor.poll_interval_ms),
            ("ORDER_PIPELINE_LEASE_MS", processor.lease_ms),
            ("ORDER_PIPELINE_RETRY_BASE_MS", processor.retry_base_ms),
            ("ORDER_PIPELINE_EXECUTOR_TIMEOUT_MS", processor.executor_timeout_ms),
        ):
            if value <= 0:
                raise ValueError(f"{name} must be > 0.")
        if processor.retry_max_ms < processor.retry_base_ms:
            raise ValueError(
                "ORDER_PIPELINE_RETRY_MAX_MS must be >= ORDER_PIPELINE_RETRY_BASE_MS.",
            )
        if processor.max_attempts < 1:
            raise ValueError("ORDER_PIPELINE_MAX_ATTEMPTS must be >= 1.")

        review = self.review
        if not 0 <= review.min_quality_score <= 100:
            raise ValueError("ORDER_PIPELINE_MIN_QUALITY_SCORE must be within 0..100.")
        thresholds = (
            review.risk_threshold_low,
            review.risk_threshold_medium,
            review.risk_threshold_high,
            review.risk_threshold_critical,
        )
        if any(not 0.0 <= value <= 1.0 for value in thresholds):
            raise ValueError("Risk thresholds must be within 0..1.")
        if list(thresholds) != sorted(thresholds):
            raise ValueError(
                "Risk thresholds must be ascending: low <= medium <= high <= critical.",
            )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
