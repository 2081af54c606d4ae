from __future__ import annotations

import logging
import os
from dataclasses import replace
from datetime import date, datetime
from decimal import Decimal

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from budgetwise import ledger
from budgetwise.advice import GeminiTextProvider, get_budget_advice
from budgetwise.budget_engine import Summary, TransactionType
from budgetwise.csv_export import ExportRow, render_transactions_csv
from budgetwise.currency_conversion import (
    CompositeRateProvider,
    ExchangeRateApiProvider,
    StaticRateProvider,
    normalize_currency,
)
from budgetwise.dashboard import compose_dashboard
from budgetwise.errors import AuthorizationError, IdentityConflict, NotFoundError, ValidationError
from budgetwise.ledger import BudgetView, Principal, SavingsView
from budgetwise.tables import create_ledger_engine, metadata

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def get_ledger_currency() -> str:
    raw = os.getenv("LEDGER_CURRENCY", "INR")
    try:
        return normalize_currency(raw)
    except ValueError:
        return "INR"


LEDGER_CURRENCY = get_ledger_currency()
FX_PROVIDER = CompositeRateProvider(
    primary=ExchangeRateApiProvider(
        base_url=os.getenv("EXCHANGE_RATE_API_URL", "https://open.er-api.com/v6/latest"),
    ),
    fallback=StaticRateProvider(ledger_currency=LEDGER_CURRENCY),
)
TEXT_PROVIDER = GeminiTextProvider(
    api_key=os.getenv("GEMINI_API_KEY"),
    model=os.getenv("GEMINI_MODEL", "gemini-2.5-flash"),
)

app = FastAPI(title="BudgetWise API")

frontend_origin = os.getenv("FRONTEND_ORIGIN", "http://localhost:5173")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

database_url = os.getenv("DATABASE_URL", "sqlite:///./budgetwise.db")
engine = create_ledger_engine(database_url)


@app.on_event("startup")
def init_db() -> None:
    metadata.create_all(engine)


@app.exception_handler(ValidationError)
async def handle_validation_error(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(AuthorizationError)
async def handle_authorization_error(request: Request, exc: AuthorizationError) -> JSONResponse:
    return JSONResponse(status_code=403, content={"detail": str(exc)})


@app.exception_handler(NotFoundError)
async def handle_not_found(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(IdentityConflict)
async def handle_identity_conflict(request: Request, exc: IdentityConflict) -> JSONResponse:
    logger.error("Identity conflict: %s", exc)
    return JSONResponse(status_code=409, content={"detail": str(exc)})


class UserSyncPayload(BaseModel):
    email: str | None = None
    name: str | None = None


class UserProfilePayload(BaseModel):
    name: str | None = None


class UserResponse(BaseModel):
    id: int
    external_id: str
    email: str
    name: str
    created_at: datetime | None = None


class TransactionPayload(BaseModel):
    type: str
    category: str
    amount: Decimal | None = None
    original_amount: Decimal | None = None
    original_currency: str | None = None
    date: date
    description: str | None = None

    @classmethod
    def validate_payload(cls, payload: "TransactionPayload") -> "TransactionPayload":
        payload.type = TransactionType.validate(payload.type)
        payload.category = payload.category.strip()
        if not payload.category:
            raise ValueError("Category required.")
        if payload.original_amount is None:
            payload.original_amount = payload.amount
        if payload.original_amount is None:
            raise ValueError("Amount required.")
        if payload.original_amount <= 0:
            raise ValueError("Amount must be greater than zero.")
        payload.original_currency = (
            normalize_currency(payload.original_currency) if payload.original_currency else None
        )
        payload.description = payload.description.strip() if payload.description else None
        return payload


class TransactionResponse(BaseModel):
    id: int
    user_id: int
    type: str
    category: str
    amount: Decimal
    original_amount: Decimal
    original_currency: str
    conversion_rate: Decimal | None = None
    date: date
    description: str | None = None


class BudgetPayload(BaseModel):
    category: str | None = None
    limit_amount: Decimal | None = None
    month: int | None = None
    year: int | None = None


class BudgetResponse(BaseModel):
    id: int
    user_id: int
    category: str
    limit_amount: Decimal | None = None
    spent_amount: Decimal
    month: int
    year: int


class SavingsPayload(BaseModel):
    target_amount: Decimal | None = None
    month: int | None = None
    year: int | None = None


class SavingsResponse(BaseModel):
    id: int
    user_id: int
    target_amount: Decimal | None = None
    progress_amount: Decimal
    month: int
    year: int


class DashboardResponse(BaseModel):
    total_income: Decimal
    total_expense: Decimal
    balance: Decimal
    expense_by_category: dict[str, Decimal]
    monthly_income: Decimal
    monthly_expense: Decimal
    monthly_balance: Decimal
    monthly_expense_by_category: dict[str, Decimal]
    budgets: list[BudgetResponse]
    monthly_savings: SavingsResponse | None = None


class AdviceResponse(BaseModel):
    advice: str


def get_principal(
    x_user_id: str | None = Header(None, alias="x-user-id"),
    x_user_email: str | None = Header(None, alias="x-user-email"),
    x_user_name: str | None = Header(None, alias="x-user-name"),
) -> Principal:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing user identity.")
    return Principal(
        external_id=x_user_id.strip(),
        email=x_user_email.strip() if x_user_email else None,
        name=x_user_name.strip() if x_user_name else None,
    )


def to_user_response(row: dict) -> UserResponse:
    return UserResponse(
        id=row["id"],
        external_id=row["external_id"],
        email=row["email"],
        name=row["name"],
        created_at=row["created_at"],
    )


def to_transaction_response(row: dict) -> TransactionResponse:
    return TransactionResponse(
        id=row["id"],
        user_id=row["user_id"],
        type=row["type"],
        category=row["category"],
        amount=row["amount"],
        original_amount=row["original_amount"],
        original_currency=row["original_currency"],
        conversion_rate=row["conversion_rate"],
        date=row["date"],
        description=row["description"],
    )


def to_budget_response(view: BudgetView) -> BudgetResponse:
    return BudgetResponse(
        id=view.id,
        user_id=view.user_id,
        category=view.category,
        limit_amount=view.limit_amount,
        spent_amount=view.spent_amount,
        month=view.month,
        year=view.year,
    )


def to_savings_response(view: SavingsView) -> SavingsResponse:
    return SavingsResponse(
        id=view.id,
        user_id=view.user_id,
        target_amount=view.target_amount,
        progress_amount=view.progress_amount,
        month=view.month,
        year=view.year,
    )


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.post("/api/users/sync", response_model=UserResponse)
def sync_user(
    payload: UserSyncPayload,
    principal: Principal = Depends(get_principal),
) -> UserResponse:
    principal = replace(
        principal,
        email=principal.email or (payload.email or "").strip() or None,
        name=principal.name or (payload.name or "").strip() or None,
    )
    with engine.begin() as conn:
        row = ledger.sync_user(conn, principal)
    return to_user_response(row)


@app.get("/api/users/me", response_model=UserResponse)
def get_current_user(principal: Principal = Depends(get_principal)) -> UserResponse:
    with engine.begin() as conn:
        row = ledger.get_or_create_user(conn, principal).user
    return to_user_response(row)


@app.put("/api/users/profile", response_model=UserResponse)
def update_profile(
    payload: UserProfilePayload,
    principal: Principal = Depends(get_principal),
) -> UserResponse:
    with engine.begin() as conn:
        row = ledger.update_profile(conn, principal, payload.name)
    return to_user_response(row)


@app.post("/api/transactions", response_model=TransactionResponse)
def create_transaction(
    payload: TransactionPayload,
    principal: Principal = Depends(get_principal),
) -> TransactionResponse:
    try:
        payload = TransactionPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        user_id = ledger.resolve_user_id(conn, principal)
        row = ledger.create_transaction(
            conn,
            user_id,
            type=payload.type,
            category=payload.category,
            original_amount=payload.original_amount,
            original_currency=payload.original_currency,
            txn_date=payload.date,
            description=payload.description,
            ledger_currency=LEDGER_CURRENCY,
            rate_provider=FX_PROVIDER,
        )
    return to_transaction_response(row)


@app.get("/api/transactions", response_model=list[TransactionResponse])
def list_transactions(principal: Principal = Depends(get_principal)) -> list[TransactionResponse]:
    with engine.begin() as conn:
        user_id = ledger.resolve_user_id(conn, principal)
        rows = ledger.list_transactions(conn, user_id)
    return [to_transaction_response(row) for row in rows]


@app.delete("/api/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int,
    principal: Principal = Depends(get_principal),
) -> dict:
    with engine.begin() as conn:
        user_id = ledger.resolve_user_id(conn, principal)
        ledger.delete_transaction(conn, user_id, transaction_id)
    return {"status": "deleted"}


@app.post("/api/budgets", response_model=BudgetResponse)
@app.put("/api/budgets", response_model=BudgetResponse)
def upsert_budget(
    payload: BudgetPayload,
    principal: Principal = Depends(get_principal),
) -> BudgetResponse:
    with engine.begin() as conn:
        user_id = ledger.resolve_user_id(conn, principal)
        view = ledger.upsert_budget(
            conn,
            user_id,
            category=payload.category,
            limit_amount=payload.limit_amount,
            month=payload.month,
            year=payload.year,
        )
    return to_budget_response(view)


@app.get("/api/budgets", response_model=list[BudgetResponse])
def list_budgets(
    category: str | None = Query(None),
    month: int | None = Query(None),
    year: int | None = Query(None),
    principal: Principal = Depends(get_principal),
) -> list[BudgetResponse]:
    with engine.begin() as conn:
        user_id = ledger.resolve_user_id(conn, principal)
        views = ledger.list_budgets(conn, user_id, category=category, month=month, year=year)
    return [to_budget_response(view) for view in views]


@app.delete("/api/budgets/{budget_id}")
def delete_budget(
    budget_id: int,
    principal: Principal = Depends(get_principal),
) -> dict:
    with engine.begin() as conn:
        user_id = ledger.resolve_user_id(conn, principal)
        ledger.delete_budget(conn, user_id, budget_id)
    return {"status": "deleted"}


@app.post("/api/savings", response_model=SavingsResponse)
@app.put("/api/savings", response_model=SavingsResponse)
def upsert_savings(
    payload: SavingsPayload,
    principal: Principal = Depends(get_principal),
) -> SavingsResponse:
    with engine.begin() as conn:
        user_id = ledger.resolve_user_id(conn, principal)
        view = ledger.upsert_savings(
            conn,
            user_id,
            target_amount=payload.target_amount,
            month=payload.month,
            year=payload.year,
        )
    return to_savings_response(view)


@app.get("/api/savings", response_model=list[SavingsResponse])
def list_savings(
    month: int | None = Query(None),
    year: int | None = Query(None),
    principal: Principal = Depends(get_principal),
) -> list[SavingsResponse]:
    with engine.begin() as conn:
        user_id = ledger.resolve_user_id(conn, principal)
        views = ledger.list_savings(conn, user_id, month=month, year=year)
    return [to_savings_response(view) for view in views]


@app.delete("/api/savings/{savings_id}")
def delete_savings(
    savings_id: int,
    principal: Principal = Depends(get_principal),
) -> dict:
    with engine.begin() as conn:
        user_id = ledger.resolve_user_id(conn, principal)
        ledger.delete_savings(conn, user_id, savings_id)
    return {"status": "deleted"}


@app.get("/api/dashboard", response_model=DashboardResponse)
def get_dashboard(principal: Principal = Depends(get_principal)) -> DashboardResponse:
    with engine.begin() as conn:
        user_id = ledger.resolve_user_id(conn, principal)
        dashboard = compose_dashboard(conn, user_id)
    total: Summary = dashboard.total
    monthly: Summary = dashboard.monthly
    return DashboardResponse(
        total_income=total.income,
        total_expense=total.expense,
        balance=total.balance,
        expense_by_category=total.expense_by_category,
        monthly_income=monthly.income,
        monthly_expense=monthly.expense,
        monthly_balance=monthly.balance,
        monthly_expense_by_category=monthly.expense_by_category,
        budgets=[to_budget_response(view) for view in dashboard.budgets],
        monthly_savings=(
            to_savings_response(dashboard.monthly_savings) if dashboard.monthly_savings else None
        ),
    )


@app.post("/api/ai/advice", response_model=AdviceResponse)
def get_advice(principal: Principal = Depends(get_principal)) -> AdviceResponse:
    with engine.begin() as conn:
        user_id = ledger.resolve_user_id(conn, principal)
        dashboard = compose_dashboard(conn, user_id)
    return AdviceResponse(advice=get_budget_advice(dashboard, TEXT_PROVIDER))


@app.get("/api/export/csv")
def export_csv(principal: Principal = Depends(get_principal)) -> Response:
    with engine.begin() as conn:
        user_id = ledger.resolve_user_id(conn, principal)
        rows = ledger.list_transactions(conn, user_id)
    contents = render_transactions_csv(
        ExportRow(
            date=row["date"],
            type=row["type"],
            category=row["category"],
            amount=row["amount"],
            original_amount=row["original_amount"],
            original_currency=row["original_currency"],
            description=row["description"],
        )
        for row in rows
    )
    return Response(
        content=contents,
        media_type="text/csv",
        headers={"Content-Disposition": "attachment; filename=transactions.csv"},
    )
