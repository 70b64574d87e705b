import sqlite3
from pathlib import Path

import allure

from order_pipeline.orders.repository import OrderStore

pytestmark = [
    allure.epic("Order Pipeline"),
    allure.feature("Order Store & Leases"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    db_path = tmp_path / "nested" / "migrations.db"
    store = OrderStore(db_path)
    store.init_schema()
    store.init_schema()
    assert store.list_orders() == []
    store.close()

    connection = sqlite3.connect(db_path)
    try:
        version = connection.execute("SELECT version_num FROM alembic_version").fetchall()
        tables = connection.execute(
            """
            SELECT name
            FROM sqlite_master
            WHERE type = 'table' AND name NOT LIKE 'sqlite_%'
            ORDER BY name
            """
        ).fetchall()
        journal_mode = connection.execute("PRAGMA journal_mode").fetchone()
    finally:
        connection.close()

    assert version == [("20261019_0001",)]
    assert [row[0] for row in tables] == [
        "alembic_version",
        "order_approvals",
        "order_events",
        "order_results",
        "orders",
    ]
    assert journal_mode[0] == "wal"
