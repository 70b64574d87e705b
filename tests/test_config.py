from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import allure
import pytest

from order_pipeline.config import ProcessorSettings, ReviewSettings, Settings
from order_pipeline.orders.classifier import KeywordOrderClassifier
from order_pipeline.orders.models import OrderStatus, OrderView
from order_pipeline.orders.policies import DefaultPolicyResolver, with_min_score
from order_pipeline.review.models import ReviewPolicy, RiskCheckKind
from order_pipeline.storage.common import utc_now

pytestmark = [
    allure.epic("Order Pipeline"),
    allure.feature("Configuration & Policies"),
]


def _order(description: str) -> OrderView:
    now = utc_now()
    return OrderView(
        order_id="o-1",
        description=description,
        status=OrderStatus.PENDING,
        attempt_count=0,
        last_error=None,
        next_attempt_at=0,
        locked_by=None,
        locked_until=None,
        metadata={},
        created_at=now,
        updated_at=now,
    )


def test_from_env_defaults() -> None:
    settings = Settings.from_env()

    assert settings.db_path == Path(".order_pipeline.db")
    assert settings.lock_timeout_ms == 5_000
    assert settings.processor.poll_interval_ms == 250
    assert settings.processor.lease_ms == 30_000
    assert settings.processor.retry_base_ms == 1_500
    assert settings.processor.retry_max_ms == 30_000
    assert settings.processor.max_attempts == 10
    assert settings.processor.worker_id.startswith("order-worker-")
    assert settings.review == ReviewSettings()
    settings.validate()


def test_from_env_reads_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("ORDER_PIPELINE_DB_PATH", str(tmp_path / "env.db"))
    monkeypatch.setenv("ORDER_PIPELINE_WORKER_ID", "worker-env")
    monkeypatch.setenv("ORDER_PIPELINE_MAX_ATTEMPTS", "3")
    monkeypatch.setenv("ORDER_PIPELINE_AUTO_APPROVE_LOW_RISK", "yes")
    monkeypatch.setenv("ORDER_PIPELINE_REQUIRE_HUMAN_APPROVAL_FOR_HIGH_RISK", "off")
    monkeypatch.setenv("ORDER_PIPELINE_RISK_THRESHOLD_HIGH", "0.8")

    settings = Settings.from_env()

    assert settings.db_path == tmp_path / "env.db"
    assert settings.processor.worker_id == "worker-env"
    assert settings.processor.max_attempts == 3
    assert settings.review.auto_approve_low_risk is True
    assert settings.review.require_human_approval_for_high_risk is False
    assert settings.review.risk_threshold_high == 0.8


def test_explicit_db_path_wins_over_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("ORDER_PIPELINE_DB_PATH", str(tmp_path / "env.db"))

    assert Settings.from_env(db_path=tmp_path / "cli.db").db_path == tmp_path / "cli.db"


def test_invalid_boolean_env_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ORDER_PIPELINE_AUTO_APPROVE_LOW_RISK", "maybe")

    with pytest.raises(ValueError, match="ORDER_PIPELINE_AUTO_APPROVE_LOW_RISK"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(lock_timeout_ms=0), "LOCK_TIMEOUT_MS"),
        (Settings(processor=ProcessorSettings(lease_ms=0)), "LEASE_MS"),
        (
            Settings(processor=ProcessorSettings(retry_base_ms=5_000, retry_max_ms=1_000)),
            "RETRY_MAX_MS",
        ),
        (Settings(processor=ProcessorSettings(max_attempts=0)), "MAX_ATTEMPTS"),
        (Settings(review=ReviewSettings(min_quality_score=101)), "MIN_QUALITY_SCORE"),
        (Settings(review=ReviewSettings(risk_threshold_critical=1.5)), "within 0..1"),
        (Settings(review=ReviewSettings(risk_threshold_medium=0.8)), "ascending"),
    ],
)
def test_validate_rejects_unusable_values(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()


@pytest.mark.parametrize(
    ("description", "expected"),
    [
        ("Deploy the billing service", "execution"),
        ("Investigate flaky login", "research"),
        ("Weekly metrics report", "analysis"),
        ("Draft an email to the customer", "communication"),
        ("Refactor the parser", "code"),
    ],
)
def test_keyword_classifier(description: str, expected: str) -> None:
    assert KeywordOrderClassifier().classify(description) == expected


def test_default_policy_follows_review_settings() -> None:
    settings = ReviewSettings(
        min_quality_score=80,
        auto_approve_low_risk=True,
        require_human_approval_for_high_risk=False,
        risk_threshold_low=0.1,
    )

    resolved = DefaultPolicyResolver(settings).resolve(_order("Refactor the parser"))

    assert resolved.agent_type == "code"
    policy = resolved.policy
    assert policy.quality.min_score == 80
    assert policy.quality.required_fields == ("result",)
    assert [check.name for check in policy.risk_checks] == ["Error Check"]
    assert policy.risk_checks[0].kind == RiskCheckKind.PATTERN
    assert policy.thresholds.low == 0.1
    assert policy.auto_approve_low_risk is True
    assert policy.require_human_approval_for_high_risk is False


def test_policy_overrides_per_agent_type() -> None:
    custom = with_min_score(ReviewPolicy(), 95)
    resolver = DefaultPolicyResolver(overrides={"analysis": custom})

    assert resolver.resolve(_order("metrics report")).policy is custom
    assert resolver.resolve(_order("Refactor the parser")).policy == resolver.default_policy
    assert replace(custom.quality, min_score=70) == ReviewPolicy().quality
