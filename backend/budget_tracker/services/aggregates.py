from calendar import monthrange
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

ZERO = Decimal("0")


@dataclass(frozen=True)
class HistoryDelta:
    income: Decimal = ZERO
    expense: Decimal = ZERO

    def reversed(self) -> "HistoryDelta":
        return HistoryDelta(income=-self.income, expense=-self.expense)


def history_delta(tx_type: str, amount: Decimal) -> HistoryDelta:
    if tx_type == "income":
        return HistoryDelta(income=amount)
    return HistoryDelta(expense=amount)


def month_history_key(when: datetime) -> tuple[int, int, int]:
    return when.day, when.month, when.year


def year_history_key(when: datetime) -> tuple[int, int]:
    return when.month, when.year


def group_monthly(entries: Iterable[tuple[int, int, str, Decimal]]) -> list[dict]:
    """Fold (year, month, type, amount) entries into chronological month rows."""
    totals: dict[tuple[int, int], dict[str, Decimal]] = {}
    for year, month, tx_type, amount in entries:
        bucket = totals.setdefault((year, month), {"income": ZERO, "expense": ZERO})
        if tx_type == "income":
            bucket["income"] += Decimal(amount)
        else:
            bucket["expense"] += Decimal(amount)
    return [
        {"month": f"{month}/{year}", "year": year, "income": bucket["income"], "expense": bucket["expense"]}
        for (year, month), bucket in sorted(totals.items())
    ]


def fill_month_days(year: int, month: int, rows: Iterable[dict]) -> list[dict]:
    by_day = {int(row["day"]): row for row in rows}
    filled = []
    for day in range(1, monthrange(year, month)[1] + 1):
        row = by_day.get(day, {})
        filled.append(
            {
                "year": year,
                "month": month,
                "day": day,
                "income": Decimal(row.get("income", ZERO)),
                "expense": Decimal(row.get("expense", ZERO)),
            }
        )
    return filled


def fill_year_months(year: int, rows: Iterable[dict]) -> list[dict]:
    by_month = {int(row["month"]): row for row in rows}
    filled = []
    for month in range(1, 13):
        row = by_month.get(month, {})
        filled.append(
            {
                "year": year,
                "month": month,
                "day": None,
                "income": Decimal(row.get("income", ZERO)),
                "expense": Decimal(row.get("expense", ZERO)),
            }
        )
    return filled
