from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

import structlog
from fastapi import HTTPException
from sqlalchemy import DateTime, create_engine, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from .config import settings
from .schemas import CategoryCreate, TransactionCreate, TransactionType
from .services.aggregates import (
    ZERO,
    HistoryDelta,
    fill_month_days,
    fill_year_months,
    group_monthly,
    history_delta,
    month_history_key,
    year_history_key,
)
from .store import store

logger = structlog.get_logger(__name__)


class Persistence:
    def get_user_settings(self, user_id: str) -> dict[str, Any]:
        raise NotImplementedError

    def update_currency(self, user_id: str, currency: str) -> dict[str, Any]:
        raise NotImplementedError

    def list_categories(self, user_id: str, category_type: TransactionType | None = None) -> list[dict[str, Any]]:
        raise NotImplementedError

    def create_category(self, user_id: str, payload: CategoryCreate) -> dict[str, Any]:
        raise NotImplementedError

    def delete_category(self, user_id: str, name: str, category_type: TransactionType) -> None:
        raise NotImplementedError

    def list_transactions(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
        category: str | None = None,
        tx_type: TransactionType | None = None,
    ) -> list[dict[str, Any]]:
        raise NotImplementedError

    def create_transaction(self, user_id: str, payload: TransactionCreate) -> dict[str, Any]:
        raise NotImplementedError

    def delete_transaction(self, user_id: str, transaction_id: UUID) -> None:
        raise NotImplementedError

    def balance_stats(self, user_id: str, start: datetime, end: datetime) -> dict[str, Decimal]:
        raise NotImplementedError

    def category_stats(self, user_id: str, start: datetime, end: datetime) -> list[dict[str, Any]]:
        raise NotImplementedError

    def monthly_stats(self, user_id: str, start: datetime, end: datetime) -> list[dict[str, Any]]:
        raise NotImplementedError

    def history_periods(self, user_id: str) -> list[int]:
        raise NotImplementedError

    def month_history(self, user_id: str, year: int, month: int) -> list[dict[str, Any]]:
        raise NotImplementedError

    def year_history(self, user_id: str, year: int) -> list[dict[str, Any]]:
        raise NotImplementedError


class InMemoryPersistence(Persistence):
    def get_user_settings(self, user_id: str) -> dict[str, Any]:
        row = store.user_settings.get(user_id)
        if row is None:
            row = {"user_id": user_id, "currency": settings.default_currency}
            store.user_settings[user_id] = row
        return row

    def update_currency(self, user_id: str, currency: str) -> dict[str, Any]:
        row = self.get_user_settings(user_id)
        row["currency"] = currency
        return row

    def list_categories(self, user_id: str, category_type: TransactionType | None = None) -> list[dict[str, Any]]:
        rows = [
            row
            for (owner, _, row_type), row in store.categories.items()
            if owner == user_id and (category_type is None or row_type == category_type.value)
        ]
        return sorted(rows, key=lambda r: r["name"])

    def create_category(self, user_id: str, payload: CategoryCreate) -> dict[str, Any]:
        key = (user_id, payload.name, payload.type.value)
        if key in store.categories:
            raise HTTPException(status_code=409, detail=f"category already exists: {payload.name}")
        row = {
            "user_id": user_id,
            "name": payload.name,
            "icon": payload.icon,
            "type": payload.type.value,
            "created_at": store.now(),
        }
        store.categories[key] = row
        return row

    def delete_category(self, user_id: str, name: str, category_type: TransactionType) -> None:
        key = (user_id, name, category_type.value)
        if key not in store.categories:
            raise HTTPException(status_code=404, detail=f"category not found: {name}")
        del store.categories[key]

    def list_transactions(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
        category: str | None = None,
        tx_type: TransactionType | None = None,
    ) -> list[dict[str, Any]]:
        rows = [
            tx
            for tx in self._in_range(user_id, start, end)
            if (category is None or tx["category"] == category) and (tx_type is None or tx["type"] == tx_type.value)
        ]
        return sorted(rows, key=lambda tx: tx["transaction_at"], reverse=True)

    def create_transaction(self, user_id: str, payload: TransactionCreate) -> dict[str, Any]:
        category = store.categories.get((user_id, payload.category, payload.type.value))
        if category is None:
            raise HTTPException(status_code=404, detail=f"category not found: {payload.category}")
        now = store.now()
        row = {
            "id": store.make_id(),
            "user_id": user_id,
            "amount": payload.amount,
            "transaction_at": payload.date,
            "description": payload.description or "",
            "type": payload.type.value,
            "category": category["name"],
            "category_icon": category["icon"],
            "created_at": now,
            "updated_at": now,
        }
        self._apply_history(user_id, row["transaction_at"], history_delta(row["type"], row["amount"]))
        store.transactions[row["id"]] = row
        return row

    def delete_transaction(self, user_id: str, transaction_id: UUID) -> None:
        row = store.transactions.get(transaction_id)
        if not row or row["user_id"] != user_id:
            raise HTTPException(status_code=404, detail=f"transaction not found: {transaction_id}")
        self._apply_history(user_id, row["transaction_at"], history_delta(row["type"], row["amount"]).reversed())
        del store.transactions[transaction_id]

    def balance_stats(self, user_id: str, start: datetime, end: datetime) -> dict[str, Decimal]:
        totals = {"income": ZERO, "expense": ZERO}
        for tx in self._in_range(user_id, start, end):
            totals[tx["type"]] += Decimal(tx["amount"])
        return totals

    def category_stats(self, user_id: str, start: datetime, end: datetime) -> list[dict[str, Any]]:
        sums: dict[tuple[str, str], Decimal] = {}
        for tx in self._in_range(user_id, start, end):
            key = (tx["category"], tx["type"])
            sums[key] = sums.get(key, ZERO) + Decimal(tx["amount"])
        return [
            {
                "category": row["name"],
                "category_icon": row["icon"],
                "type": row["type"],
                "amount": sums.get((row["name"], row["type"]), ZERO),
            }
            for row in self.list_categories(user_id)
        ]

    def monthly_stats(self, user_id: str, start: datetime, end: datetime) -> list[dict[str, Any]]:
        return group_monthly(
            (tx["transaction_at"].year, tx["transaction_at"].month, tx["type"], tx["amount"])
            for tx in self._in_range(user_id, start, end)
        )

    def history_periods(self, user_id: str) -> list[int]:
        return sorted({year for (owner, _, year) in store.year_history if owner == user_id})

    def month_history(self, user_id: str, year: int, month: int) -> list[dict[str, Any]]:
        rows = [
            row
            for (owner, _, row_month, row_year), row in store.month_history.items()
            if owner == user_id and row_month == month and row_year == year
        ]
        return fill_month_days(year, month, rows)

    def year_history(self, user_id: str, year: int) -> list[dict[str, Any]]:
        rows = [row for (owner, _, row_year), row in store.year_history.items() if owner == user_id and row_year == year]
        return fill_year_months(year, rows)

    def _in_range(self, user_id: str, start: datetime, end: datetime) -> Iterator[dict[str, Any]]:
        for tx in store.transactions.values():
            if tx["user_id"] == user_id and start <= tx["transaction_at"] <= end:
                yield tx

    def _apply_history(self, user_id: str, when: datetime, delta: HistoryDelta) -> None:
        day, month, year = month_history_key(when)
        month_key = (user_id, day, month, year)
        year_key = (user_id, month, year)
        month_row = dict(store.month_history.get(month_key) or {"user_id": user_id, "day": day, "month": month, "year": year, "income": ZERO, "expense": ZERO})
        year_row = dict(store.year_history.get(year_key) or {"user_id": user_id, "month": month, "year": year, "income": ZERO, "expense": ZERO})
        for row in (month_row, year_row):
            row["income"] += delta.income
            row["expense"] += delta.expense
        store.month_history[month_key] = month_row
        store.year_history[year_key] = year_row


MONTH_HISTORY_UPSERT = """
insert into month_history (user_id, day, month, year, income, expense)
values (:user_id, :day, :month, :year, :income, :expense)
on conflict (day, month, year, user_id)
do update set income = month_history.income + excluded.income,
              expense = month_history.expense + excluded.expense
"""

YEAR_HISTORY_UPSERT = """
insert into year_history (user_id, month, year, income, expense)
values (:user_id, :month, :year, :income, :expense)
on conflict (month, year, user_id)
do update set income = year_history.income + excluded.income,
              expense = year_history.expense + excluded.expense
"""


class PostgresPersistence(Persistence):
    def __init__(self, database_url: str | None = None, engine: Engine | None = None) -> None:
        if engine is None:
            engine = create_engine(database_url or settings.database_url, future=True, pool_pre_ping=True)
        self.engine: Engine = engine

    @contextmanager
    def _transaction(self) -> Iterator[Connection]:
        try:
            with self.engine.begin() as conn:
                yield conn
        except SQLAlchemyError as exc:
            logger.error("database_error", error=exc.__class__.__name__, exc_info=True)
            raise HTTPException(status_code=500, detail=f"database error: {exc.__class__.__name__}") from exc

    @staticmethod
    def _fetch(
        conn: Connection,
        sql: str,
        params: dict[str, Any] | None = None,
        column_types: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        stmt = text(sql)
        if column_types:
            stmt = stmt.columns(**column_types)
        result = conn.execute(stmt, params or {})
        if result.returns_rows:
            return [dict(row._mapping) for row in result.fetchall()]
        return []

    def _run(self, sql: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        with self._transaction() as conn:
            return self._fetch(conn, sql, params)

    def _apply_history(self, conn: Connection, user_id: str, when: datetime, delta: HistoryDelta) -> None:
        day, month, year = month_history_key(when)
        amounts = {"income": delta.income, "expense": delta.expense}
        self._fetch(conn, MONTH_HISTORY_UPSERT, {"user_id": user_id, "day": day, "month": month, "year": year, **amounts})
        month, year = year_history_key(when)
        self._fetch(conn, YEAR_HISTORY_UPSERT, {"user_id": user_id, "month": month, "year": year, **amounts})

    def get_user_settings(self, user_id: str) -> dict[str, Any]:
        with self._transaction() as conn:
            self._fetch(
                conn,
                "insert into user_settings (user_id, currency) values (:user_id, :currency) on conflict (user_id) do nothing",
                {"user_id": user_id, "currency": settings.default_currency},
            )
            return self._fetch(conn, "select user_id, currency from user_settings where user_id = :user_id", {"user_id": user_id})[0]

    def update_currency(self, user_id: str, currency: str) -> dict[str, Any]:
        rows = self._run(
            """
            insert into user_settings (user_id, currency)
            values (:user_id, :currency)
            on conflict (user_id) do update set currency = excluded.currency
            returning user_id, currency
            """,
            {"user_id": user_id, "currency": currency},
        )
        return rows[0]

    def list_categories(self, user_id: str, category_type: TransactionType | None = None) -> list[dict[str, Any]]:
        sql = "select user_id, name, icon, type, created_at from categories where user_id = :user_id"
        params: dict[str, Any] = {"user_id": user_id}
        if category_type is not None:
            sql += " and type = :type"
            params["type"] = category_type.value
        return self._run(sql + " order by name asc", params)

    def create_category(self, user_id: str, payload: CategoryCreate) -> dict[str, Any]:
        rows = self._run(
            """
            insert into categories (user_id, name, icon, type)
            values (:user_id, :name, :icon, :type)
            on conflict (user_id, name, type) do nothing
            returning user_id, name, icon, type, created_at
            """,
            {"user_id": user_id, "name": payload.name, "icon": payload.icon, "type": payload.type.value},
        )
        if not rows:
            raise HTTPException(status_code=409, detail=f"category already exists: {payload.name}")
        return rows[0]

    def delete_category(self, user_id: str, name: str, category_type: TransactionType) -> None:
        rows = self._run(
            "delete from categories where user_id = :user_id and name = :name and type = :type returning name",
            {"user_id": user_id, "name": name, "type": category_type.value},
        )
        if not rows:
            raise HTTPException(status_code=404, detail=f"category not found: {name}")

    def list_transactions(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
        category: str | None = None,
        tx_type: TransactionType | None = None,
    ) -> list[dict[str, Any]]:
        sql = """
            select id, user_id, amount, transaction_at, description, type, category, category_icon, created_at, updated_at
            from transactions
            where user_id = :user_id and transaction_at between :start and :end
        """
        params: dict[str, Any] = {"user_id": user_id, "start": start, "end": end}
        if category is not None:
            sql += " and category = :category"
            params["category"] = category
        if tx_type is not None:
            sql += " and type = :type"
            params["type"] = tx_type.value
        return self._run(sql + " order by transaction_at desc", params)

    def create_transaction(self, user_id: str, payload: TransactionCreate) -> dict[str, Any]:
        with self._transaction() as conn:
            category = self._fetch(
                conn,
                "select name, icon from categories where user_id = :user_id and name = :name and type = :type",
                {"user_id": user_id, "name": payload.category, "type": payload.type.value},
            )
            if not category:
                raise HTTPException(status_code=404, detail=f"category not found: {payload.category}")
            row = self._fetch(
                conn,
                """
                insert into transactions (id, user_id, amount, transaction_at, description, type, category, category_icon)
                values (:id, :user_id, :amount, :transaction_at, :description, :type, :category, :category_icon)
                returning id, user_id, amount, transaction_at, description, type, category, category_icon, created_at, updated_at
                """,
                {
                    "id": str(uuid4()),
                    "user_id": user_id,
                    "amount": payload.amount,
                    "transaction_at": payload.date,
                    "description": payload.description or "",
                    "type": payload.type.value,
                    "category": category[0]["name"],
                    "category_icon": category[0]["icon"],
                },
            )[0]
            self._apply_history(conn, user_id, payload.date, history_delta(payload.type.value, payload.amount))
            return row

    def delete_transaction(self, user_id: str, transaction_id: UUID) -> None:
        with self._transaction() as conn:
            rows = self._fetch(
                conn,
                "delete from transactions where id = :id and user_id = :user_id returning transaction_at, type, amount",
                {"id": str(transaction_id), "user_id": user_id},
                column_types={"transaction_at": DateTime()},
            )
            if not rows:
                raise HTTPException(status_code=404, detail=f"transaction not found: {transaction_id}")
            row = rows[0]
            delta = history_delta(row["type"], Decimal(row["amount"])).reversed()
            self._apply_history(conn, user_id, row["transaction_at"], delta)

    def balance_stats(self, user_id: str, start: datetime, end: datetime) -> dict[str, Decimal]:
        rows = self._run(
            """
            select type, coalesce(sum(amount), 0) as total
            from transactions
            where user_id = :user_id and transaction_at between :start and :end
            group by type
            """,
            {"user_id": user_id, "start": start, "end": end},
        )
        totals = {"income": ZERO, "expense": ZERO}
        for row in rows:
            totals[row["type"]] = Decimal(row["total"])
        return totals

    def category_stats(self, user_id: str, start: datetime, end: datetime) -> list[dict[str, Any]]:
        return self._run(
            """
            select c.name as category, c.icon as category_icon, c.type, coalesce(sum(t.amount), 0) as amount
            from categories c
            left join transactions t
              on t.user_id = c.user_id
             and t.category = c.name
             and t.type = c.type
             and t.transaction_at between :start and :end
            where c.user_id = :user_id
            group by c.name, c.icon, c.type
            order by c.name asc
            """,
            {"user_id": user_id, "start": start, "end": end},
        )

    def monthly_stats(self, user_id: str, start: datetime, end: datetime) -> list[dict[str, Any]]:
        rows = self._run(
            """
            select cast(extract(year from transaction_at) as integer) as year,
                   cast(extract(month from transaction_at) as integer) as month,
                   type,
                   sum(amount) as total
            from transactions
            where user_id = :user_id and transaction_at between :start and :end
            group by 1, 2, 3
            """,
            {"user_id": user_id, "start": start, "end": end},
        )
        return group_monthly((row["year"], row["month"], row["type"], row["total"]) for row in rows)

    def history_periods(self, user_id: str) -> list[int]:
        rows = self._run("select distinct year from year_history where user_id = :user_id order by year asc", {"user_id": user_id})
        return [int(row["year"]) for row in rows]

    def month_history(self, user_id: str, year: int, month: int) -> list[dict[str, Any]]:
        rows = self._run(
            "select day, income, expense from month_history where user_id = :user_id and year = :year and month = :month",
            {"user_id": user_id, "year": year, "month": month},
        )
        return fill_month_days(year, month, rows)

    def year_history(self, user_id: str, year: int) -> list[dict[str, Any]]:
        rows = self._run(
            "select month, income, expense from year_history where user_id = :user_id and year = :year",
            {"user_id": user_id, "year": year},
        )
        return fill_year_months(year, rows)


def get_persistence() -> Persistence:
    if settings.storage_backend == "postgres":
        return PostgresPersistence(settings.database_url)
    return InMemoryPersistence()
