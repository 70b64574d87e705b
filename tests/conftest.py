"""Shared test fixtures."""

from __future__ import annotations

import os
from collections.abc import Iterator
from pathlib import Path

import pytest

from order_pipeline.orders.repository import OrderStore


class FakeClock:
    """Injectable epoch-ms clock advanced explicitly by tests."""

    def __init__(self, now: int = 1_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "orders.db"


@pytest.fixture()
def store(db_path: Path) -> Iterator[OrderStore]:
    order_store = OrderStore(db_path)
    order_store.init_schema()
    yield order_store
    order_store.close()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(autouse=True)
def _clean_pipeline_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep developer ``ORDER_PIPELINE_*`` variables out of tests."""

    for name in list(os.environ):
        if name.startswith("ORDER_PIPELINE_"):
            monkeypatch.delenv(name, raising=False)
