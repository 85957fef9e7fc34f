from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from store_service.database import apply_schema
from store_service.repository import PaymentRepository

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture()
def repo(tmp_path):
    db_path = tmp_path / "store.db"

    def connection_factory():
        conn = sqlite3.connect(db_path)
        conn.row_factory = sqlite3.Row
        return conn

    with connection_factory() as conn:
        apply_schema(conn)

    return PaymentRepository(connection_factory=connection_factory)


def test_create_transaction_reserves_stock(repo):
    user = repo.create_user("alice")
    stock = repo.add_stock(product_id=7, code="CODE-1")

    record = repo.create_transaction("ORD-1", 25000.0, user_id=user.id, stock_ids=[stock.id])

    assert record.status == "pending"
    assert record.amount == 25000.0
    assert repo.queued_stock_ids(record.id) == [stock.id]
    reserved = repo.get_stock(stock.id)
    assert reserved.status == "reserved"
    assert reserved.sold_to == user.id


def test_complete_transaction_sells_reserved_stock(repo):
    first = repo.add_stock(product_id=7, code="CODE-1")
    second = repo.add_stock(product_id=7, code="CODE-2")
    record = repo.create_transaction("ORD-2", 50000.0, quantity=2, stock_ids=[first.id, second.id])

    assert repo.complete_transaction(record.id) is True

    updated = repo.get_transaction("ORD-2")
    assert updated.status == "success"
    assert updated.assigned_stocks == ["CODE-1", "CODE-2"]
    assert repo.get_stock(first.id).status == "sold"
    assert repo.get_stock(second.id).status == "sold"
    assert repo.queued_stock_ids(record.id) == []


def test_terminal_transition_happens_once(repo):
    record = repo.create_transaction("ORD-3", 10000.0)

    assert repo.complete_transaction(record.id) is True
    assert repo.complete_transaction(record.id) is False
    assert repo.close_transaction(record.id, "expired") is False
    assert repo.get_transaction("ORD-3").status == "success"


def test_close_transaction_releases_stock(repo):
    user = repo.create_user("bob")
    stock = repo.add_stock(product_id=3, code="CODE-9")
    record = repo.create_transaction("ORD-4", 10000.0, user_id=user.id, stock_ids=[stock.id])

    assert repo.close_transaction(record.id, "expired") is True

    assert repo.get_transaction("ORD-4").status == "expired"
    released = repo.get_stock(stock.id)
    assert released.status == "ready"
    assert released.sold_to is None
    assert repo.queued_stock_ids(record.id) == []


def test_close_transaction_rejects_non_terminal_status(repo):
    record = repo.create_transaction("ORD-5", 10000.0)
    with pytest.raises(ValueError):
        repo.close_transaction(record.id, "success")


def test_refund_only_from_success(repo):
    record = repo.create_transaction("ORD-6", 10000.0)

    assert repo.refund_transaction(record.id) is False
    repo.complete_transaction(record.id)
    assert repo.refund_transaction(record.id) is True
    assert repo.get_transaction("ORD-6").status == "refund"


def test_complete_deposit_credits_balance_once(repo):
    user = repo.create_user("carol", balance=1000.0)
    deposit = repo.create_deposit("DEP-1", 50000.0, user_id=user.id, payment_channel="qris")

    assert repo.complete_deposit(deposit.id) is True
    assert repo.complete_deposit(deposit.id) is False

    assert repo.get_user(user.id).balance == 51000.0
    paid = repo.get_deposit("DEP-1")
    assert paid.status == "success"
    assert paid.paid_at is not None


def test_close_deposit(repo):
    deposit = repo.create_deposit("DEP-2", 20000.0)

    assert repo.close_deposit(deposit.id, "failed") is True
    assert repo.get_deposit_by_id(deposit.id).status == "failed"


def test_list_pending_orders_oldest_first_and_filters_age(repo):
    repo.create_transaction("ORD-new", 1.0, created_at=T0)
    repo.create_transaction("ORD-old", 1.0, created_at=T0 - timedelta(minutes=10))
    done = repo.create_transaction("ORD-done", 1.0, created_at=T0 - timedelta(minutes=20))
    repo.complete_transaction(done.id)

    pending = repo.list_pending_transactions(limit=10)
    assert [record.order_id for record in pending] == ["ORD-old", "ORD-new"]

    older = repo.list_pending_transactions(limit=10, created_before=T0 - timedelta(minutes=5))
    assert [record.order_id for record in older] == ["ORD-old"]

    assert len(repo.list_pending_transactions(limit=1)) == 1


def test_list_pending_deposits(repo):
    repo.create_deposit("DEP-a", 1.0, created_at=T0)
    closed = repo.create_deposit("DEP-b", 1.0, created_at=T0)
    repo.close_deposit(closed.id, "expired")

    assert [record.ref_id for record in repo.list_pending_deposits()] == ["DEP-a"]
