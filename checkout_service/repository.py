from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import psycopg

from .database import ConnectionFactory, placeholder
from .errors import PersistenceError

PENDING = "pending"
COMPLETED = "completed"
FAILED = "failed"

_COLUMNS = """
    order_id, payment_id, amount, amount_paid, currency, status, customer_email,
    service_name, payment_gateway, payment_method, receipt, notes_json,
    failure_reason, verified, verified_at, created_at, updated_at
"""


@dataclass(frozen=True)
class PaymentOrderRecord:
    order_id: str
    payment_id: Optional[str]
    amount: Optional[int]
    amount_paid: Optional[int]
    currency: str
    status: str
    customer_email: Optional[str]
    service_name: Optional[str]
    payment_gateway: str
    payment_method: Optional[str]
    receipt: Optional[str]
    notes: Optional[dict]
    failure_reason: Optional[str]
    verified: bool
    verified_at: Optional[str]
    created_at: str
    updated_at: str


class PaymentOrderRepository:
    """Data-access layer for the payment_orders table, keyed by gateway order id.

    A row leaves ``pending`` at most once: every write below is guarded so
    that a repeated or concurrent verification converges on the first
    terminal record and nothing rewrites it afterwards.
    """

    def __init__(self, connection_factory: ConnectionFactory):
        self._connection_factory = connection_factory

    @contextmanager
    def _connection(self):
        try:
            conn = self._connection_factory()
        except (sqlite3.Error, psycopg.Error) as exc:
            raise PersistenceError(f"Database unavailable: {exc}") from exc
        try:
            yield conn
        except (sqlite3.Error, psycopg.Error) as exc:
            raise PersistenceError(f"Database error: {exc}") from exc
        finally:
            conn.close()

    def record_pending(
        self,
        order_id: str,
        *,
        gateway: str,
        amount: int,
        currency: str,
        service_name: str | None = None,
        customer_email: str | None = None,
        receipt: str | None = None,
        notes: dict | None = None,
    ) -> None:
        now = _now()
        with self._connection() as conn:
            p = placeholder(conn)
            conn.execute(
                f"""
                INSERT INTO payment_orders ({_COLUMNS})
                VALUES ({p}, NULL, {p}, NULL, {p}, '{PENDING}', {p}, {p}, {p}, NULL,
                        {p}, {p}, NULL, 0, NULL, {p}, {p})
                ON CONFLICT(order_id) DO NOTHING;
                """,
                (
                    order_id,
                    amount,
                    currency,
                    customer_email,
                    service_name,
                    gateway,
                    receipt,
                    json.dumps(notes) if notes is not None else None,
                    now,
                    now,
                ),
            )
            conn.commit()

    def record_completed(
        self,
        order_id: str,
        *,
        gateway: str,
        currency: str,
        payment_id: str | None,
        verified_at: str,
        amount: int | None = None,
        amount_paid: int | None = None,
        payment_method: str | None = None,
        customer_email: str | None = None,
        service_name: str | None = None,
    ) -> PaymentOrderRecord:
        now = _now()
        with self._connection() as conn:
            p = placeholder(conn)
            conn.execute(
                f"""
                INSERT INTO payment_orders ({_COLUMNS})
                VALUES ({p}, {p}, {p}, {p}, {p}, '{COMPLETED}', {p}, {p}, {p}, {p},
                        NULL, NULL, NULL, 1, {p}, {p}, {p})
                ON CONFLICT(order_id) DO UPDATE SET
                    payment_id = excluded.payment_id,
                    amount = COALESCE(payment_orders.amount, excluded.amount),
                    amount_paid = COALESCE(excluded.amount_paid, payment_orders.amount_paid),
                    status = excluded.status,
                    customer_email = COALESCE(excluded.customer_email, payment_orders.customer_email),
                    service_name = COALESCE(excluded.service_name, payment_orders.service_name),
                    payment_method = COALESCE(excluded.payment_method, payment_orders.payment_method),
                    verified = 1,
                    verified_at = excluded.verified_at,
                    updated_at = excluded.updated_at
                WHERE payment_orders.status = '{PENDING}';
                """,
                (
                    order_id,
                    payment_id,
                    amount,
                    amount_paid,
                    currency,
                    customer_email,
                    service_name,
                    gateway,
                    payment_method,
                    verified_at,
                    now,
                    now,
                ),
            )
            conn.commit()
            record = self._fetch(conn, order_id)
        if record is None:
            raise PersistenceError(f"Order {order_id} missing after write")
        return record

    def record_failed(
        self,
        order_id: str,
        *,
        gateway: str,
        reason: str,
        payment_id: str | None = None,
    ) -> PaymentOrderRecord | None:
        """Move this gateway's pending order to ``failed``; unknown ids are left alone."""
        with self._connection() as conn:
            p = placeholder(conn)
            conn.execute(
                f"""
                UPDATE payment_orders
                SET status = '{FAILED}',
                    payment_id = COALESCE({p}, payment_id),
                    failure_reason = {p},
                    updated_at = {p}
                WHERE order_id = {p}
                  AND payment_gateway = {p}
                  AND status = '{PENDING}';
                """,
                (payment_id, reason, _now(), order_id, gateway),
            )
            conn.commit()
            return self._fetch(conn, order_id)

    def get_order(self, order_id: str) -> PaymentOrderRecord | None:
        with self._connection() as conn:
            return self._fetch(conn, order_id)

    def list_orders(self, limit: int = 50) -> list[PaymentOrderRecord]:
        with self._connection() as conn:
            p = placeholder(conn)
            rows = conn.execute(
                f"""
                SELECT {_COLUMNS}
                FROM payment_orders
                ORDER BY updated_at DESC
                LIMIT {p};
                """,
                (limit,),
            ).fetchall()
        return [_to_record(row) for row in rows]

    def _fetch(self, conn, order_id: str) -> PaymentOrderRecord | None:
        p = placeholder(conn)
        row = conn.execute(
            f"""
            SELECT {_COLUMNS}
            FROM payment_orders
            WHERE order_id = {p};
            """,
            (order_id,),
        ).fetchone()
        if row is None:
            return None
        return _to_record(row)


def _to_record(row) -> PaymentOrderRecord:
    return PaymentOrderRecord(
        order_id=row["order_id"],
        payment_id=row["payment_id"],
        amount=row["amount"],
        amount_paid=row["amount_paid"],
        currency=row["currency"],
        status=row["status"],
        customer_email=row["customer_email"],
        service_name=row["service_name"],
        payment_gateway=row["payment_gateway"],
        payment_method=row["payment_method"],
        receipt=row["receipt"],
        notes=json.loads(row["notes_json"]) if row["notes_json"] else None,
        failure_reason=row["failure_reason"],
        verified=bool(row["verified"]),
        verified_at=row["verified_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()
