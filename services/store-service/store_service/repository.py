from __future__ import annotations

import json
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Sequence

from .database import atomic, placeholder

PENDING = "pending"
SUCCESS = "success"
FAILED = "failed"
EXPIRED = "expired"
REFUND = "refund"

CLOSED_STATUSES = {FAILED, EXPIRED}

STOCK_READY = "ready"
STOCK_RESERVED = "reserved"
STOCK_SOLD = "sold"

_TRANSACTION_COLUMNS = """
    id, order_id, user_id, product_id, quantity, price, total_amount,
    payment_method, status, assigned_stocks, created_at, expired_at, updated_at
"""

_DEPOSIT_COLUMNS = """
    id, ref_id, user_id, amount, payment_channel, status, paid_at, created_at, updated_at
"""


@dataclass(frozen=True)
class TransactionRecord:
    id: int
    order_id: str
    user_id: Optional[int]
    product_id: Optional[int]
    quantity: int
    price: float
    total_amount: Optional[float]
    payment_method: Optional[str]
    status: str
    assigned_stocks: Optional[list]
    created_at: str
    expired_at: Optional[str]
    updated_at: str

    @property
    def amount(self) -> float:
        return self.total_amount if self.total_amount is not None else self.price


@dataclass(frozen=True)
class DepositRecord:
    id: int
    ref_id: str
    user_id: Optional[int]
    amount: float
    payment_channel: Optional[str]
    status: str
    paid_at: Optional[str]
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class UserRecord:
    id: int
    username: str
    balance: float


@dataclass(frozen=True)
class StockRecord:
    id: int
    product_id: int
    code: str
    status: str
    sold_to: Optional[int]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str:
    value = value or utcnow()
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


class PaymentRepository:
    """Data access for transactions, deposits and the stock they reserve."""

    def __init__(self, connection_factory):
        self._connection_factory = connection_factory

    @contextmanager
    def _connection(self):
        conn = self._connection_factory()
        try:
            yield conn
        finally:
            conn.close()

    # -- reads -------------------------------------------------------------

    def list_pending_transactions(
        self, limit: int = 50, created_before: datetime | None = None
    ) -> list[TransactionRecord]:
        return [
            _transaction_from_row(row)
            for row in self._list_pending("transactions", _TRANSACTION_COLUMNS, limit, created_before)
        ]

    def list_pending_deposits(
        self, limit: int = 50, created_before: datetime | None = None
    ) -> list[DepositRecord]:
        return [
            _deposit_from_row(row)
            for row in self._list_pending("deposits", _DEPOSIT_COLUMNS, limit, created_before)
        ]

    def _list_pending(self, table: str, columns: str, limit: int, created_before: datetime | None):
        with self._connection() as conn:
            ph = placeholder(conn)
            params: list = [PENDING]
            age_filter = ""
            if created_before is not None:
                age_filter = f"AND created_at < {ph}"
                params.append(_iso(created_before))
            params.append(limit)
            return conn.execute(
                f"""
                SELECT {columns}
                FROM {table}
                WHERE status = {ph} {age_filter}
                ORDER BY created_at ASC, id ASC
                LIMIT {ph};
                """,
                tuple(params),
            ).fetchall()

    def get_transaction(self, order_id: str) -> TransactionRecord | None:
        return self._get_one("transactions", _TRANSACTION_COLUMNS, "order_id", order_id, _transaction_from_row)

    def get_transaction_by_id(self, transaction_id: int) -> TransactionRecord | None:
        return self._get_one("transactions", _TRANSACTION_COLUMNS, "id", transaction_id, _transaction_from_row)

    def get_deposit(self, ref_id: str) -> DepositRecord | None:
        return self._get_one("deposits", _DEPOSIT_COLUMNS, "ref_id", ref_id, _deposit_from_row)

    def get_deposit_by_id(self, deposit_id: int) -> DepositRecord | None:
        return self._get_one("deposits", _DEPOSIT_COLUMNS, "id", deposit_id, _deposit_from_row)

    def get_user(self, user_id: int) -> UserRecord | None:
        return self._get_one("users", "id, username, balance", "id", user_id, _user_from_row)

    def get_stock(self, stock_id: int) -> StockRecord | None:
        return self._get_one(
            "stocks", "id, product_id, code, status, sold_to", "id", stock_id, _stock_from_row
        )

    def queued_stock_ids(self, transaction_id: int) -> list[int]:
        with self._connection() as conn:
            ph = placeholder(conn)
            rows = conn.execute(
                f"SELECT stock_id FROM transaction_queues WHERE transaction_id = {ph} ORDER BY stock_id;",
                (transaction_id,),
            ).fetchall()
        return [row["stock_id"] for row in rows]

    def _get_one(self, table: str, columns: str, key: str, value, mapper):
        with self._connection() as conn:
            ph = placeholder(conn)
            row = conn.execute(
                f"SELECT {columns} FROM {table} WHERE {key} = {ph};",
                (value,),
            ).fetchone()
        if row is None:
            return None
        return mapper(row)

    # -- terminal transitions ---------------------------------------------

    def complete_transaction(self, transaction_id: int) -> bool:
        """Mark a pending transaction paid and hand its reserved stock over.

        Returns ``False`` when the row was no longer pending, in which case
        nothing is changed.
        """
        now = _iso(None)
        with self._connection() as conn, atomic(conn):
            ph = placeholder(conn)
            claimed = conn.execute(
                f"""
                UPDATE transactions SET status = {ph}, updated_at = {ph}
                WHERE id = {ph} AND status = {ph};
                """,
                (SUCCESS, now, transaction_id, PENDING),
            ).rowcount
            if claimed != 1:
                return False

            stocks = conn.execute(
                f"""
                SELECT s.id, s.code
                FROM transaction_queues q
                JOIN stocks s ON s.id = q.stock_id
                WHERE q.transaction_id = {ph}
                ORDER BY s.id;
                """,
                (transaction_id,),
            ).fetchall()
            stock_ids = [row["id"] for row in stocks]
            codes = [row["code"] for row in stocks]

            conn.execute(
                f"UPDATE transactions SET assigned_stocks = {ph} WHERE id = {ph};",
                (json.dumps(codes), transaction_id),
            )
            if stock_ids:
                conn.execute(
                    f"""
                    UPDATE stocks SET status = {ph}, updated_at = {ph}
                    WHERE id IN ({_in_list(ph, stock_ids)});
                    """,
                    (STOCK_SOLD, now, *stock_ids),
                )
            conn.execute(
                f"DELETE FROM transaction_queues WHERE transaction_id = {ph};",
                (transaction_id,),
            )
        return True

    def close_transaction(self, transaction_id: int, status: str) -> bool:
        """Fail or expire a pending transaction and release its reserved stock."""
        if status not in CLOSED_STATUSES:
            raise ValueError(f"cannot close a transaction as {status!r}")
        now = _iso(None)
        with self._connection() as conn, atomic(conn):
            ph = placeholder(conn)
            claimed = conn.execute(
                f"""
                UPDATE transactions SET status = {ph}, updated_at = {ph}
                WHERE id = {ph} AND status = {ph};
                """,
                (status, now, transaction_id, PENDING),
            ).rowcount
            if claimed != 1:
                return False

            stock_ids = [
                row["stock_id"]
                for row in conn.execute(
                    f"SELECT stock_id FROM transaction_queues WHERE transaction_id = {ph};",
                    (transaction_id,),
                ).fetchall()
            ]
            if stock_ids:
                conn.execute(
                    f"""
                    UPDATE stocks SET status = {ph}, sold_to = NULL, updated_at = {ph}
                    WHERE id IN ({_in_list(ph, stock_ids)});
                    """,
                    (STOCK_READY, now, *stock_ids),
                )
            conn.execute(
                f"DELETE FROM transaction_queues WHERE transaction_id = {ph};",
                (transaction_id,),
            )
        return True

    def refund_transaction(self, transaction_id: int) -> bool:
        now = _iso(None)
        with self._connection() as conn, atomic(conn):
            ph = placeholder(conn)
            updated = conn.execute(
                f"""
                UPDATE transactions SET status = {ph}, updated_at = {ph}
                WHERE id = {ph} AND status = {ph};
                """,
                (REFUND, now, transaction_id, SUCCESS),
            ).rowcount
        return updated == 1

    def complete_deposit(self, deposit_id: int) -> bool:
        """Mark a pending deposit paid and credit the owner's balance."""
        now = _iso(None)
        with self._connection() as conn, atomic(conn):
            ph = placeholder(conn)
            claimed = conn.execute(
                f"""
                UPDATE deposits SET status = {ph}, paid_at = {ph}, updated_at = {ph}
                WHERE id = {ph} AND status = {ph};
                """,
                (SUCCESS, now, now, deposit_id, PENDING),
            ).rowcount
            if claimed != 1:
                return False

            row = conn.execute(
                f"SELECT user_id, amount FROM deposits WHERE id = {ph};",
                (deposit_id,),
            ).fetchone()
            if row["user_id"] is not None:
                conn.execute(
                    f"UPDATE users SET balance = balance + {ph} WHERE id = {ph};",
                    (row["amount"], row["user_id"]),
                )
        return True

    def close_deposit(self, deposit_id: int, status: str) -> bool:
        if status not in CLOSED_STATUSES:
            raise ValueError(f"cannot close a deposit as {status!r}")
        now = _iso(None)
        with self._connection() as conn, atomic(conn):
            ph = placeholder(conn)
            updated = conn.execute(
                f"""
                UPDATE deposits SET status = {ph}, updated_at = {ph}
                WHERE id = {ph} AND status = {ph};
                """,
                (status, now, deposit_id, PENDING),
            ).rowcount
        return updated == 1

    # -- seeding -----------------------------------------------------------

    def create_user(self, username: str, balance: float = 0.0) -> UserRecord:
        with self._connection() as conn, atomic(conn):
            ph = placeholder(conn)
            user_id = _insert(
                conn,
                f"INSERT INTO users (username, balance, created_at) VALUES ({ph}, {ph}, {ph})",
                (username, balance, _iso(None)),
            )
        return UserRecord(id=user_id, username=username, balance=balance)

    def add_stock(self, product_id: int, code: str) -> StockRecord:
        now = _iso(None)
        with self._connection() as conn, atomic(conn):
            ph = placeholder(conn)
            stock_id = _insert(
                conn,
                f"""
                INSERT INTO stocks (product_id, code, status, created_at, updated_at)
                VALUES ({ph}, {ph}, {ph}, {ph}, {ph})
                """,
                (product_id, code, STOCK_READY, now, now),
            )
        return StockRecord(id=stock_id, product_id=product_id, code=code, status=STOCK_READY, sold_to=None)

    def create_transaction(
        self,
        order_id: str,
        price: float,
        *,
        user_id: int | None = None,
        product_id: int | None = None,
        quantity: int = 1,
        total_amount: float | None = None,
        payment_method: str | None = None,
        stock_ids: Sequence[int] = (),
        created_at: datetime | None = None,
        expired_at: datetime | None = None,
    ) -> TransactionRecord:
        """Insert a pending transaction and reserve ``stock_ids`` for it."""
        created = _iso(created_at)
        with self._connection() as conn, atomic(conn):
            ph = placeholder(conn)
            transaction_id = _insert(
                conn,
                f"""
                INSERT INTO transactions (
                    order_id, user_id, product_id, quantity, price, total_amount,
                    payment_method, status, created_at, expired_at, updated_at
                ) VALUES ({ph}, {ph}, {ph}, {ph}, {ph}, {ph}, {ph}, {ph}, {ph}, {ph}, {ph})
                """,
                (
                    order_id,
                    user_id,
                    product_id,
                    quantity,
                    price,
                    total_amount,
                    payment_method,
                    PENDING,
                    created,
                    _iso(expired_at) if expired_at else None,
                    created,
                ),
            )
            for stock_id in stock_ids:
                conn.execute(
                    f"INSERT INTO transaction_queues (transaction_id, stock_id) VALUES ({ph}, {ph});",
                    (transaction_id, stock_id),
                )
            if stock_ids:
                conn.execute(
                    f"""
                    UPDATE stocks SET status = {ph}, sold_to = {ph}, updated_at = {ph}
                    WHERE id IN ({_in_list(ph, stock_ids)});
                    """,
                    (STOCK_RESERVED, user_id, created, *stock_ids),
                )
        record = self.get_transaction_by_id(transaction_id)
        assert record is not None
        return record

    def create_deposit(
        self,
        ref_id: str,
        amount: float,
        *,
        user_id: int | None = None,
        payment_channel: str | None = None,
        created_at: datetime | None = None,
    ) -> DepositRecord:
        created = _iso(created_at)
        with self._connection() as conn, atomic(conn):
            ph = placeholder(conn)
            deposit_id = _insert(
                conn,
                f"""
                INSERT INTO deposits (
                    ref_id, user_id, amount, payment_channel, status, created_at, updated_at
                ) VALUES ({ph}, {ph}, {ph}, {ph}, {ph}, {ph}, {ph})
                """,
                (ref_id, user_id, amount, payment_channel, PENDING, created, created),
            )
        record = self.get_deposit_by_id(deposit_id)
        assert record is not None
        return record


def _insert(conn, sql: str, params: tuple) -> int:
    if "psycopg" in conn.__class__.__module__:
        return conn.execute(sql + " RETURNING id;", params).fetchone()["id"]
    return conn.execute(sql + ";", params).lastrowid


def _in_list(ph: str, values: Sequence) -> str:
    return ", ".join([ph] * len(values))


def _transaction_from_row(row) -> TransactionRecord:
    return TransactionRecord(
        id=row["id"],
        order_id=row["order_id"],
        user_id=row["user_id"],
        product_id=row["product_id"],
        quantity=row["quantity"],
        price=row["price"],
        total_amount=row["total_amount"],
        payment_method=row["payment_method"],
        status=row["status"],
        assigned_stocks=json.loads(row["assigned_stocks"]) if row["assigned_stocks"] else None,
        created_at=row["created_at"],
        expired_at=row["expired_at"],
        updated_at=row["updated_at"],
    )


def _deposit_from_row(row) -> DepositRecord:
    return DepositRecord(
        id=row["id"],
        ref_id=row["ref_id"],
        user_id=row["user_id"],
        amount=row["amount"],
        payment_channel=row["payment_channel"],
        status=row["status"],
        paid_at=row["paid_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _user_from_row(row) -> UserRecord:
    return UserRecord(id=row["id"], username=row["username"], balance=row["balance"])


def _stock_from_row(row) -> StockRecord:
    return StockRecord(
        id=row["id"],
        product_id=row["product_id"],
        code=row["code"],
        status=row["status"],
        sold_to=row["sold_to"],
    )
