from __future__ import annotations

import re
from pathlib import Path

import allure
from click.testing import CliRunner

from order_pipeline.main import order_pipeline

pytestmark = [
    allure.epic("Order Pipeline"),
    allure.feature("CLI Ops"),
]


def _invoke(runner: CliRunner, *args: str):
    return runner.invoke(order_pipeline, list(args))


def _submit(runner: CliRunner, db_path: Path, description: str) -> str:
    result = _invoke(runner, "orders", "submit", "--db-path", str(db_path), description)
    assert result.exit_code == 0, result.output
    match = re.search(r"order_id=(\S+)", result.output)
    assert match is not None
    return match.group(1)


def test_cli_submit_worker_inspect_and_review(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()
    order_id = _submit(runner, db_path, "write the release summary")

    listed = _invoke(runner, "orders", "list", "--db-path", str(db_path), "--status", "pending")
    assert listed.exit_code == 0, listed.output
    assert "Orders: 1" in listed.output
    assert f"{order_id} status=pending attempts=0" in listed.output

    worker = _invoke(runner, "orders", "worker", "--db-path", str(db_path), "--once")
    assert worker.exit_code == 0, worker.output
    assert "due=1 claimed=1 completed=1" in worker.output

    inspected = _invoke(runner, "orders", "inspect", "--db-path", str(db_path), order_id)
    assert inspected.exit_code == 0, inspected.output
    assert "Status: completed" in inspected.output
    assert "Decision: approved" in inspected.output
    assert "Approval records: 1" in inspected.output
    result_match = re.search(r"Result: (exec-\S+)", inspected.output)
    assert result_match is not None

    rejected = _invoke(
        runner,
        "orders",
        "approve",
        "--db-path",
        str(db_path),
        result_match.group(1),
        "--decision",
        "rejected",
        "--feedback",
        "needs numbers",
    )
    assert rejected.exit_code == 0, rejected.output
    assert "decision=rejected" in rejected.output
    assert "Reviewer: needs numbers" in rejected.output

    requeued = _invoke(runner, "orders", "inspect", "--db-path", str(db_path), order_id)
    assert "Status: pending" in requeued.output
    assert "Approval records: 2" in requeued.output

    metrics = _invoke(runner, "orders", "metrics", "--db-path", str(db_path))
    assert metrics.exit_code == 0, metrics.output
    assert "Executions: total=1 successful=1 failed=0" in metrics.output
    assert "Approval rate: 0.00% (1 reviewed result(s))" in metrics.output


def test_cli_worker_loop_respects_max_ticks(tmp_path: Path, monkeypatch) -> None:
    db_path = tmp_path / "cli.db"
    monkeypatch.setenv("ORDER_PIPELINE_POLL_INTERVAL_MS", "10")
    monkeypatch.setenv("ORDER_PIPELINE_WORKER_ID", "cli-worker")
    runner = CliRunner()
    _submit(runner, db_path, "plain task [fatal]")

    worker = _invoke(
        runner,
        "orders",
        "worker",
        "--db-path",
        str(db_path),
        "--loop",
        "--max-ticks",
        "2",
    )

    assert worker.exit_code == 0, worker.output
    assert "Worker summary (cli-worker)" in worker.output
    assert "failed_terminal=1" in worker.output


def test_cli_retry_and_error_reporting(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()
    order_id = _submit(runner, db_path, "plain task [fatal]")

    not_terminal = _invoke(runner, "orders", "retry", "--db-path", str(db_path), order_id)
    assert not_terminal.exit_code == 1
    assert "Only failed_terminal orders can be retried" in not_terminal.output

    _invoke(runner, "orders", "worker", "--db-path", str(db_path), "--once")
    failed = _invoke(runner, "orders", "inspect", "--db-path", str(db_path), order_id)
    assert "Status: failed (terminal, no further retries)" in failed.output
    assert "Echo executor refused order" in failed.output

    retried = _invoke(runner, "orders", "retry", "--db-path", str(db_path), order_id)
    assert retried.exit_code == 0, retried.output
    assert f"Order re-queued: {order_id}" in retried.output

    missing = _invoke(runner, "orders", "inspect", "--db-path", str(db_path), "missing")
    assert "Order not found: missing" in missing.output

    unknown_result = _invoke(
        runner,
        "orders",
        "approve",
        "--db-path",
        str(db_path),
        "exec-missing",
        "--decision",
        "approved",
    )
    assert unknown_result.exit_code == 1
    assert "Result not found" in unknown_result.output


def test_cli_submit_rejects_blank_description(tmp_path: Path) -> None:
    runner = CliRunner()

    result = _invoke(runner, "orders", "submit", "--db-path", str(tmp_path / "x.db"), " ")

    assert result.exit_code == 1
    assert "must not be empty" in result.output
