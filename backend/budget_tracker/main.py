from datetime import datetime, timezone
from decimal import Decimal
from typing import Any
from uuid import UUID

import structlog
from fastapi import Cookie, Depends, FastAPI, Header, HTTPException, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import ValidationError

from .auth_utils import verify_session_token
from .config import settings
from .logging_setup import configure_logging
from .persistence import get_persistence
from .schemas import (
    ApiErrorDetail,
    ApiErrorPayload,
    ApiErrorResponse,
    BalanceStatsResponse,
    CategoryCreate,
    CategoryResponse,
    CategoryStatsItem,
    CurrencyUpdate,
    DateRangeQuery,
    HealthResponse,
    HistoryItem,
    HistoryPeriodsResponse,
    HistoryQuery,
    HistoryTimeframe,
    MonthlyStatsItem,
    TransactionCreate,
    TransactionResponse,
    TransactionType,
    UserSettingsResponse,
)

configure_logging()
logger = structlog.get_logger(__name__)

app = FastAPI(
    title="Budget Tracker API",
    version="0.1.0",
    description="Income/expense tracking with categories, dashboard stats and precomputed month/year history.",
)

persistence = get_persistence()
SESSION_COOKIE_NAME = settings.session_cookie_name
PUBLIC_API = {"/api/health"}
# Page-style endpoints send unauthenticated callers to the sign-in page instead of a 401.
SIGN_IN_REDIRECT_PREFIXES = ("/api/stats/", "/api/history", "/api/user-settings")


def _to_float(value: Decimal | None) -> float:
    return float(value) if value is not None else 0.0


def _select_token(authorization: str | None, session_token: str | None) -> str | None:
    # a Bearer header wins; any other Authorization scheme falls back to the cookie
    if authorization:
        parts = authorization.split(" ", 1)
        if len(parts) == 2 and parts[0].lower() == "bearer":
            return parts[1].strip()
    return session_token


def _extract_token_from_request(request: Request) -> str | None:
    return _select_token(request.headers.get("Authorization"), request.cookies.get(SESSION_COOKIE_NAME))


def _get_session_user_id(token: str | None) -> str | None:
    if not token:
        return None
    return verify_session_token(token, settings.identity_provider_secret)


def _details_from_errors(errors: list[dict[str, Any]], default_field: str = "body") -> list[ApiErrorDetail]:
    details: list[ApiErrorDetail] = []
    for err in errors:
        loc = ".".join(str(item) for item in err.get("loc", []) if item != "body")
        details.append(ApiErrorDetail(field=loc or default_field, message=err.get("msg", "validation error")))
    return details


def build_error_response(details: list[ApiErrorDetail], message: str = "Invalid request payload") -> JSONResponse:
    payload = ApiErrorResponse(
        error=ApiErrorPayload(code="VALIDATION_ERROR", message=message, details=details)
    )
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=payload.model_dump())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return build_error_response(_details_from_errors(exc.errors()))


@app.exception_handler(ValidationError)
async def model_validation_exception_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return build_error_response(_details_from_errors(exc.errors(), default_field="query"))


@app.exception_handler(ValueError)
async def value_error_exception_handler(request: Request, exc: ValueError) -> JSONResponse:
    return build_error_response([ApiErrorDetail(field="body", message=str(exc))])


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("unhandled_exception", path=request.url.path, error=exc.__class__.__name__, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Internal Server Error"})


@app.middleware("http")
async def auth_middleware(request: Request, call_next):
    path = request.url.path
    if path.startswith("/api") and path not in PUBLIC_API:
        if _get_session_user_id(_extract_token_from_request(request)) is None:
            logger.info("auth_rejected", path=path)
            if path.startswith(SIGN_IN_REDIRECT_PREFIXES):
                return RedirectResponse(url=settings.sign_in_url, status_code=302)
            return JSONResponse(status_code=401, content={"detail": "authentication required"})
    return await call_next(request)


def _require_user(authorization: str | None = None, session_token: str | None = None) -> str:
    token = _select_token(authorization, session_token)
    if not token:
        raise HTTPException(status_code=401, detail="missing session token")
    user_id = _get_session_user_id(token)
    if user_id is None:
        raise HTTPException(status_code=401, detail="invalid or expired token")
    return user_id


def date_range(
    from_: datetime = Query(alias="from"),
    to: datetime = Query(),
) -> DateRangeQuery:
    return DateRangeQuery.model_validate({"from": from_, "to": to})


def history_query(
    timeframe: HistoryTimeframe = Query(),
    year: int = Query(),
    month: int | None = Query(default=None),
) -> HistoryQuery:
    return HistoryQuery(timeframe=timeframe, year=year, month=month)


def _category_response(row: dict[str, Any]) -> CategoryResponse:
    return CategoryResponse(name=row["name"], icon=row["icon"], type=row["type"], createdAt=row["created_at"])


def _transaction_response(row: dict[str, Any]) -> TransactionResponse:
    return TransactionResponse(
        id=row["id"],
        amount=_to_float(row["amount"]),
        date=row["transaction_at"],
        description=row["description"],
        type=row["type"],
        category=row["category"],
        categoryIcon=row["category_icon"],
        createdAt=row["created_at"],
    )


@app.get("/api/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    return HealthResponse(status="ok")


@app.get("/api/user-settings", response_model=UserSettingsResponse)
async def get_user_settings(
    authorization: str | None = Header(default=None),
    session_token: str | None = Cookie(default=None, alias=SESSION_COOKIE_NAME),
) -> UserSettingsResponse:
    user_id = _require_user(authorization, session_token)
    row = persistence.get_user_settings(user_id)
    return UserSettingsResponse(userId=row["user_id"], currency=row["currency"])


@app.put("/api/settings/currency", response_model=UserSettingsResponse)
async def update_currency(
    payload: CurrencyUpdate,
    authorization: str | None = Header(default=None),
    session_token: str | None = Cookie(default=None, alias=SESSION_COOKIE_NAME),
) -> UserSettingsResponse:
    user_id = _require_user(authorization, session_token)
    row = persistence.update_currency(user_id, payload.currency)
    logger.info("currency_updated", user_id=user_id, currency=row["currency"])
    return UserSettingsResponse(userId=row["user_id"], currency=row["currency"])


@app.get("/api/categories", response_model=list[CategoryResponse])
async def list_categories(
    type: TransactionType | None = Query(default=None),
    authorization: str | None = Header(default=None),
    session_token: str | None = Cookie(default=None, alias=SESSION_COOKIE_NAME),
) -> list[CategoryResponse]:
    user_id = _require_user(authorization, session_token)
    return [_category_response(row) for row in persistence.list_categories(user_id, type)]


@app.post("/api/categories", response_model=CategoryResponse, status_code=201)
async def create_category(
    payload: CategoryCreate,
    authorization: str | None = Header(default=None),
    session_token: str | None = Cookie(default=None, alias=SESSION_COOKIE_NAME),
) -> CategoryResponse:
    user_id = _require_user(authorization, session_token)
    row = persistence.create_category(user_id, payload)
    logger.info("category_created", user_id=user_id, name=row["name"], type=row["type"])
    return _category_response(row)


@app.delete("/api/categories/{category_id}", status_code=204)
async def delete_category(
    category_id: str,
    authorization: str | None = Header(default=None),
    session_token: str | None = Cookie(default=None, alias=SESSION_COOKIE_NAME),
) -> Response:
    user_id = _require_user(authorization, session_token)
    # category ids are "<name>|<type>"; names may themselves contain "|"
    name, _, raw_type = category_id.rpartition("|")
    if not name or raw_type not in {t.value for t in TransactionType}:
        return build_error_response(
            [ApiErrorDetail(field="categoryId", message="expected <name>|<income|expense>")],
            message="Invalid category ID format",
        )
    persistence.delete_category(user_id, name, TransactionType(raw_type))
    logger.info("category_deleted", user_id=user_id, name=name, type=raw_type)
    return Response(status_code=204)


@app.get("/api/transactions", response_model=list[TransactionResponse])
async def list_transactions(
    period: DateRangeQuery = Depends(date_range),
    category: str | None = Query(default=None),
    type: TransactionType | None = Query(default=None),
    authorization: str | None = Header(default=None),
    session_token: str | None = Cookie(default=None, alias=SESSION_COOKIE_NAME),
) -> list[TransactionResponse]:
    user_id = _require_user(authorization, session_token)
    rows = persistence.list_transactions(user_id, period.from_, period.to, category or None, type)
    return [_transaction_response(row) for row in rows]


@app.post("/api/transactions", response_model=TransactionResponse, status_code=201)
async def create_transaction(
    payload: TransactionCreate,
    authorization: str | None = Header(default=None),
    session_token: str | None = Cookie(default=None, alias=SESSION_COOKIE_NAME),
) -> TransactionResponse:
    user_id = _require_user(authorization, session_token)
    row = persistence.create_transaction(user_id, payload)
    logger.info("transaction_created", user_id=user_id, transaction_id=str(row["id"]), type=row["type"])
    return _transaction_response(row)


@app.delete("/api/transactions/{transaction_id}", status_code=204)
async def delete_transaction(
    transaction_id: UUID,
    authorization: str | None = Header(default=None),
    session_token: str | None = Cookie(default=None, alias=SESSION_COOKIE_NAME),
) -> Response:
    user_id = _require_user(authorization, session_token)
    persistence.delete_transaction(user_id, transaction_id)
    logger.info("transaction_deleted", user_id=user_id, transaction_id=str(transaction_id))
    return Response(status_code=204)


@app.get("/api/stats/balance", response_model=BalanceStatsResponse)
async def balance_stats(
    period: DateRangeQuery = Depends(date_range),
    authorization: str | None = Header(default=None),
    session_token: str | None = Cookie(default=None, alias=SESSION_COOKIE_NAME),
) -> BalanceStatsResponse:
    user_id = _require_user(authorization, session_token)
    totals = persistence.balance_stats(user_id, period.from_, period.to)
    return BalanceStatsResponse(income=_to_float(totals["income"]), expense=_to_float(totals["expense"]))


@app.get("/api/stats/categories", response_model=list[CategoryStatsItem])
async def category_stats(
    period: DateRangeQuery = Depends(date_range),
    authorization: str | None = Header(default=None),
    session_token: str | None = Cookie(default=None, alias=SESSION_COOKIE_NAME),
) -> list[CategoryStatsItem]:
    user_id = _require_user(authorization, session_token)
    return [
        CategoryStatsItem(
            category=row["category"],
            categoryIcon=row["category_icon"],
            type=row["type"],
            amount=_to_float(row["amount"]),
        )
        for row in persistence.category_stats(user_id, period.from_, period.to)
    ]


@app.get("/api/stats/monthly", response_model=list[MonthlyStatsItem])
async def monthly_stats(
    period: DateRangeQuery = Depends(date_range),
    authorization: str | None = Header(default=None),
    session_token: str | None = Cookie(default=None, alias=SESSION_COOKIE_NAME),
) -> list[MonthlyStatsItem]:
    user_id = _require_user(authorization, session_token)
    return [
        MonthlyStatsItem(month=row["month"], income=_to_float(row["income"]), expense=_to_float(row["expense"]))
        for row in persistence.monthly_stats(user_id, period.from_, period.to)
    ]


@app.get("/api/history/periods", response_model=HistoryPeriodsResponse)
async def history_periods(
    authorization: str | None = Header(default=None),
    session_token: str | None = Cookie(default=None, alias=SESSION_COOKIE_NAME),
) -> HistoryPeriodsResponse:
    user_id = _require_user(authorization, session_token)
    years = persistence.history_periods(user_id)
    return HistoryPeriodsResponse(years=years or [datetime.now(timezone.utc).year])


@app.get("/api/history", response_model=list[HistoryItem])
async def history_data(
    query: HistoryQuery = Depends(history_query),
    authorization: str | None = Header(default=None),
    session_token: str | None = Cookie(default=None, alias=SESSION_COOKIE_NAME),
) -> list[HistoryItem]:
    user_id = _require_user(authorization, session_token)
    if query.timeframe == HistoryTimeframe.month:
        rows = persistence.month_history(user_id, query.year, query.month)
    else:
        rows = persistence.year_history(user_id, query.year)
    return [
        HistoryItem(
            year=row["year"],
            month=row["month"],
            day=row["day"],
            income=_to_float(row["income"]),
            expense=_to_float(row["expense"]),
        )
        for row in rows
    ]
