"""CLI entrypoint for order-pipeline."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import rich_click as click

from order_pipeline import __version__
from order_pipeline.orders.controllers import (
    HumanDecisionCommand,
    OrderCliController,
    OrderInspectCommand,
    OrderListCommand,
    OrderMetricsCommand,
    OrderRetryCommand,
    OrderSubmitCommand,
    OrderWorkerCommand,
)
from order_pipeline.orders.errors import OrderStoreError

click.rich_click.USE_MARKDOWN = True
ORDERS_CONTROLLER = OrderCliController()

DB_PATH_HELP = "SQLite DB path (defaults to ORDER_PIPELINE_DB_PATH)."


@click.group()
@click.version_option(version=__version__, prog_name="order-pipeline")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity.",
)
def order_pipeline(log_level: str) -> None:
    """Order pipeline CLI."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@order_pipeline.group()
def orders() -> None:
    """Order queue commands."""


@orders.command("submit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.argument("description")
def orders_submit(db_path: Path | None, description: str) -> None:
    """Submit a new order for execution."""

    with _cli_errors():
        _emit_lines(
            ORDERS_CONTROLLER.submit(
                OrderSubmitCommand(
                    db_path=db_path,
                    description=description,
                ),
            ),
        )


@orders.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option(
    "--status",
    type=click.Choice(
        ["pending", "in_progress", "completed", "failed", "failed_terminal"],
        case_sensitive=False,
    ),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max orders to print.",
)
def orders_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List orders, newest first."""

    with _cli_errors():
        _emit_lines(
            ORDERS_CONTROLLER.list_orders(
                OrderListCommand(
                    db_path=db_path,
                    status=status,
                    limit=limit,
                ),
            ),
        )


@orders.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.argument("order_id")
def orders_inspect(db_path: Path | None, order_id: str) -> None:
    """Inspect one order with its result, approvals and event history."""

    with _cli_errors():
        _emit_lines(
            ORDERS_CONTROLLER.inspect(
                OrderInspectCommand(
                    db_path=db_path,
                    order_id=order_id,
                ),
            ),
        )


@orders.command("retry")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.argument("order_id")
def orders_retry(db_path: Path | None, order_id: str) -> None:
    """Manually re-queue a terminally failed order."""

    with _cli_errors():
        _emit_lines(
            ORDERS_CONTROLLER.retry(
                OrderRetryCommand(
                    db_path=db_path,
                    order_id=order_id,
                ),
            ),
        )


@orders.command("approve")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.argument("result_id")
@click.option(
    "--decision",
    type=click.Choice(["approved", "rejected", "requires_improvement"], case_sensitive=False),
    required=True,
    help="Reviewer verdict; overrides the automated decision.",
)
@click.option("--feedback", default=None, help="Optional reviewer feedback.")
def orders_approve(
    db_path: Path | None,
    result_id: str,
    decision: str,
    feedback: str | None,
) -> None:
    """Record a human review decision for an execution result."""

    with _cli_errors():
        _emit_lines(
            ORDERS_CONTROLLER.record_decision(
                HumanDecisionCommand(
                    db_path=db_path,
                    result_id=result_id,
                    decision=decision,
                    feedback=feedback,
                ),
            ),
        )


@orders.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Run a single poll tick or keep polling until interrupted.",
)
@click.option(
    "--max-ticks",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for poll ticks in loop mode.",
)
def orders_worker(db_path: Path | None, once: bool, max_ticks: int | None) -> None:
    """Run the order processor with the demo echo executor."""

    with _cli_errors():
        _emit_lines(
            ORDERS_CONTROLLER.run_worker(
                OrderWorkerCommand(
                    db_path=db_path,
                    once=once,
                    max_ticks=max_ticks,
                ),
            ),
        )


@orders.command("metrics")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
def orders_metrics(db_path: Path | None) -> None:
    """Show execution totals, average quality and approval rate."""

    with _cli_errors():
        _emit_lines(ORDERS_CONTROLLER.metrics(OrderMetricsCommand(db_path=db_path)))


@contextmanager
def _cli_errors() -> Iterator[None]:
    try:
        yield
    except (OrderStoreError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    order_pipeline()
