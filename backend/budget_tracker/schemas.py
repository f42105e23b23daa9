from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .config import settings
from .services.date_range import check_span, clamp_to_days, to_utc_naive


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"


class HistoryTimeframe(str, Enum):
    month = "month"
    year = "year"


class ApiErrorDetail(BaseModel):
    field: str
    message: str


class ApiErrorPayload(BaseModel):
    code: str
    message: str
    details: list[ApiErrorDetail] = Field(default_factory=list)


class ApiErrorResponse(BaseModel):
    error: ApiErrorPayload


class HealthResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")
    status: str


class CategoryCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=3, max_length=20)
    icon: str = Field(max_length=20)
    type: TransactionType


class CategoryResponse(BaseModel):
    name: str
    icon: str
    type: TransactionType
    createdAt: datetime


class TransactionCreate(BaseModel):
    amount: Decimal = Field(gt=Decimal("0"), max_digits=14, decimal_places=2)
    date: datetime
    description: Optional[str] = Field(default=None, max_length=255)
    category: str = Field(min_length=1, max_length=20)
    type: TransactionType

    @field_validator("date")
    @classmethod
    def normalize_date(cls, value: datetime) -> datetime:
        return to_utc_naive(value)

    @field_validator("category")
    @classmethod
    def strip_category(cls, value: str) -> str:
        return value.strip()


class TransactionResponse(BaseModel):
    id: UUID
    amount: float
    date: datetime
    description: str
    type: TransactionType
    category: str
    categoryIcon: str
    createdAt: datetime


class DateRangeQuery(BaseModel):
    """Inclusive range clamped to whole UTC days."""

    model_config = ConfigDict(populate_by_name=True)

    from_: datetime = Field(alias="from")
    to: datetime

    @model_validator(mode="after")
    def clamp_and_bound(self) -> "DateRangeQuery":
        start, end = clamp_to_days(self.from_, self.to)
        check_span(start, end, settings.max_date_range_days)
        self.from_ = start
        self.to = end
        return self


class BalanceStatsResponse(BaseModel):
    income: float
    expense: float


class CategoryStatsItem(BaseModel):
    category: str
    categoryIcon: str
    type: TransactionType
    amount: float


class MonthlyStatsItem(BaseModel):
    month: str
    income: float
    expense: float


class HistoryQuery(BaseModel):
    timeframe: HistoryTimeframe
    year: int = Field(ge=1900, le=2999)
    month: Optional[int] = Field(default=None, ge=1, le=12)

    @model_validator(mode="after")
    def require_month(self) -> "HistoryQuery":
        if self.timeframe == HistoryTimeframe.month and self.month is None:
            raise ValueError("month is required for the month timeframe")
        return self


class HistoryItem(BaseModel):
    year: int
    month: int
    day: Optional[int] = None
    income: float
    expense: float


class HistoryPeriodsResponse(BaseModel):
    years: list[int]


class UserSettingsResponse(BaseModel):
    userId: str
    currency: str


class CurrencyUpdate(BaseModel):
    currency: str

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, value: str) -> str:
        up = value.strip().upper()
        if len(up) != 3 or not up.isalpha():
            raise ValueError("must be 3-letter ISO code")
        return up
