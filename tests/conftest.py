from __future__ import annotations

import sqlite3

import pytest

from checkout_service.database import apply_schema
from checkout_service.repository import PaymentOrderRepository


@pytest.fixture()
def connection_factory(tmp_path):
    db_path = tmp_path / "checkout.db"

    def factory():
        conn = sqlite3.connect(db_path)
        conn.row_factory = sqlite3.Row
        return conn

    with factory() as conn:
        apply_schema(conn)

    return factory


@pytest.fixture()
def repo(connection_factory):
    return PaymentOrderRepository(connection_factory=connection_factory)


@pytest.fixture()
def no_sleep():
    return lambda seconds: None
