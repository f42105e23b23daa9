import sqlite3
from datetime import datetime
from decimal import Decimal
from uuid import UUID, uuid4

import pytest
from fastapi import HTTPException
from sqlalchemy import create_engine, text
from sqlalchemy.pool import StaticPool

from budget_tracker.persistence import PostgresPersistence
from budget_tracker.schemas import CategoryCreate, TransactionCreate, TransactionType

# sqlite3 has no Decimal adapter; timestamps are stored as fixed-width text so range filters compare correctly
sqlite3.register_adapter(Decimal, str)
sqlite3.register_adapter(datetime, lambda value: value.strftime("%Y-%m-%d %H:%M:%S.%f"))

SCHEMA = [
    "create table user_settings (user_id text primary key, currency char(3) not null default 'USD')",
    """
    create table categories (
      user_id text not null,
      name text not null,
      icon text not null default '',
      type text not null,
      created_at timestamp not null default current_timestamp,
      unique (user_id, name, type)
    )
    """,
    """
    create table transactions (
      id text primary key,
      user_id text not null,
      amount numeric(14,2) not null,
      transaction_at timestamp not null,
      description text not null default '',
      type text not null,
      category text not null,
      category_icon text not null default '',
      created_at timestamp not null default current_timestamp,
      updated_at timestamp not null default current_timestamp
    )
    """,
    """
    create table month_history (
      user_id text not null,
      day integer not null,
      month integer not null,
      year integer not null,
      income numeric(14,2) not null default 0,
      expense numeric(14,2) not null default 0,
      primary key (day, month, year, user_id)
    )
    """,
    """
    create table year_history (
      user_id text not null,
      month integer not null,
      year integer not null,
      income numeric(14,2) not null default 0,
      expense numeric(14,2) not null default 0,
      primary key (month, year, user_id)
    )
    """,
]


def _engine(schema: list[str]):
    engine = create_engine("sqlite://", poolclass=StaticPool, connect_args={"check_same_thread": False})
    with engine.begin() as conn:
        for statement in schema:
            conn.execute(text(statement))
    return engine


def _count(engine, table: str) -> int:
    with engine.connect() as conn:
        return conn.execute(text(f"select count(*) from {table}")).scalar_one()


@pytest.fixture
def db() -> PostgresPersistence:
    return PostgresPersistence(engine=_engine(SCHEMA))


def _tx(amount: str, when: datetime, tx_type: str = "expense", category: str = "Food") -> TransactionCreate:
    return TransactionCreate(amount=Decimal(amount), date=when, category=category, type=tx_type)


def test_user_settings_default_and_currency_upsert(db) -> None:
    assert db.get_user_settings("user_a")["currency"] == "USD"
    assert db.update_currency("user_a", "EUR")["currency"] == "EUR"
    assert db.get_user_settings("user_a")["currency"] == "EUR"
    assert db.update_currency("user_b", "CZK") == {"user_id": "user_b", "currency": "CZK"}


def test_categories_conflict_and_missing_delete(db) -> None:
    db.create_category("user_a", CategoryCreate(name="Food", icon="🍔", type="expense"))
    db.create_category("user_a", CategoryCreate(name="Bills", icon="🧾", type="expense"))
    db.create_category("user_a", CategoryCreate(name="Salary", icon="💰", type="income"))

    with pytest.raises(HTTPException) as exc:
        db.create_category("user_a", CategoryCreate(name="Food", icon="x", type="expense"))
    assert exc.value.status_code == 409

    assert [row["name"] for row in db.list_categories("user_a")] == ["Bills", "Food", "Salary"]
    assert [row["name"] for row in db.list_categories("user_a", TransactionType.income)] == ["Salary"]
    assert db.list_categories("user_b") == []

    db.delete_category("user_a", "Bills", TransactionType.expense)
    with pytest.raises(HTTPException) as exc:
        db.delete_category("user_a", "Bills", TransactionType.expense)
    assert exc.value.status_code == 404


def test_transactions_keep_history_in_sync(db) -> None:
    db.create_category("user_a", CategoryCreate(name="Food", icon="🍔", type="expense"))
    db.create_category("user_a", CategoryCreate(name="Salary", icon="💰", type="income"))
    first = db.create_transaction("user_a", _tx("40.5", datetime(2025, 3, 4, 12, 0)))
    db.create_transaction("user_a", _tx("12.25", datetime(2025, 3, 4, 18, 0)))
    db.create_transaction("user_a", _tx("100", datetime(2025, 3, 20, 9, 0), "income", "Salary"))

    march = db.month_history("user_a", 2025, 3)
    assert march[3]["expense"] == Decimal("52.75")
    assert march[19]["income"] == Decimal("100")
    assert db.year_history("user_a", 2025)[2]["expense"] == Decimal("52.75")
    assert db.history_periods("user_a") == [2025]

    db.delete_transaction("user_a", UUID(str(first["id"])))

    assert db.month_history("user_a", 2025, 3)[3]["expense"] == Decimal("12.25")
    year = db.year_history("user_a", 2025)[2]
    assert year["expense"] == Decimal("12.25")
    assert year["income"] == Decimal("100")
    assert _count(db.engine, "transactions") == 2


def test_transaction_requires_category_and_owner(db) -> None:
    with pytest.raises(HTTPException) as exc:
        db.create_transaction("user_a", _tx("5", datetime(2025, 3, 4)))
    assert exc.value.status_code == 404

    db.create_category("user_a", CategoryCreate(name="Food", icon="🍔", type="expense"))
    row = db.create_transaction("user_a", _tx("5", datetime(2025, 3, 4)))

    with pytest.raises(HTTPException) as exc:
        db.delete_transaction("user_b", UUID(str(row["id"])))
    assert exc.value.status_code == 404
    with pytest.raises(HTTPException) as exc:
        db.delete_transaction("user_a", uuid4())
    assert exc.value.status_code == 404
    assert db.month_history("user_a", 2025, 3)[3]["expense"] == Decimal("5")


def test_stats_queries(db) -> None:
    db.create_category("user_a", CategoryCreate(name="Food", icon="🍔", type="expense"))
    db.create_category("user_a", CategoryCreate(name="Gifts", icon="🎁", type="income"))
    db.create_transaction("user_a", _tx("40.5", datetime(2025, 3, 4, 12, 0)))
    db.create_transaction("user_a", _tx("9.5", datetime(2025, 4, 1, 8, 0)))
    start, end = datetime(2025, 3, 1), datetime(2025, 3, 31, 23, 59, 59, 999000)

    assert db.balance_stats("user_a", start, end) == {"income": Decimal("0"), "expense": Decimal("40.5")}

    stats = {row["category"]: float(row["amount"]) for row in db.category_stats("user_a", start, end)}
    assert stats == {"Food": 40.5, "Gifts": 0.0}

    listed = db.list_transactions("user_a", start, datetime(2025, 4, 30, 23, 59, 59))
    assert [float(row["amount"]) for row in listed] == [9.5, 40.5]


def test_failed_history_upsert_rolls_back_transaction() -> None:
    db = PostgresPersistence(engine=_engine(SCHEMA[:-1]))
    db.create_category("user_a", CategoryCreate(name="Food", icon="🍔", type="expense"))

    with pytest.raises(HTTPException) as exc:
        db.create_transaction("user_a", _tx("40.5", datetime(2025, 3, 4, 12, 0)))

    assert exc.value.status_code == 500
    assert exc.value.detail == "database error: OperationalError"
    assert _count(db.engine, "transactions") == 0
    assert _count(db.engine, "month_history") == 0
