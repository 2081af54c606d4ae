from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum
import logging
from typing import Optional

from sqlalchemy import insert, select, update
from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from budgetwise.budget_engine import (
    BudgetPeriod,
    SavingsPeriod,
    Transaction,
    TransactionType,
    month_window,
    progress_for_savings,
    spent_for_budget,
)
from budgetwise.currency_conversion import LEDGER_CURRENCY, RateProvider, normalize_amount
from budgetwise.errors import AuthorizationError, IdentityConflict, NotFoundError, ValidationError
from budgetwise.tables import budgets, savings, transactions, users

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
MIN_YEAR = 2000
MAX_YEAR = 2100


@dataclass(frozen=True)
class Principal:
    """Already-authenticated caller identity plus optional profile claims."""

    external_id: str
    email: Optional[str] = None
    name: Optional[str] = None


class UserOutcome(Enum):
    CREATED = "created"
    FOUND_EXISTING = "found_existing"
    CONFLICT_RESOLVED = "conflict_resolved"


@dataclass(frozen=True)
class UserResolution:
    user: dict
    outcome: UserOutcome


@dataclass(frozen=True)
class BudgetView:
    id: int
    user_id: int
    category: str
    limit_amount: Optional[Decimal]
    spent_amount: Decimal
    month: int
    year: int


@dataclass(frozen=True)
class SavingsView:
    id: int
    user_id: int
    target_amount: Optional[Decimal]
    progress_amount: Decimal
    month: int
    year: int


# Users


def find_user(conn: Connection, external_id: str) -> Optional[dict]:
    row = conn.execute(select(users).where(users.c.external_id == external_id)).mappings().first()
    return dict(row) if row else None


def get_or_create_user(conn: Connection, principal: Principal) -> UserResolution:
    existing = find_user(conn, principal.external_id)
    if existing:
        return UserResolution(existing, UserOutcome.FOUND_EXISTING)
    return insert_or_resolve_user(conn, principal)


def insert_or_resolve_user(conn: Connection, principal: Principal) -> UserResolution:
    """Insert a new user; a uniqueness violation means another request won the race."""
    if not principal.email or not principal.name:
        raise ValidationError(
            f"Email and name must be provided for new user creation: {principal.external_id}"
        )
    try:
        with conn.begin_nested():
            conn.execute(
                insert(users).values(
                    external_id=principal.external_id,
                    email=principal.email,
                    name=principal.name,
                )
            )
    except IntegrityError:
        winner = find_user(conn, principal.external_id)
        if not winner:
            raise IdentityConflict(
                f"Unexpected error retrieving user {principal.external_id} after integrity violation"
            )
        logger.warning("Resolved concurrent creation of user %s", principal.external_id)
        return UserResolution(winner, UserOutcome.CONFLICT_RESOLVED)

    logger.info("Created user %s (%s)", principal.external_id, principal.email)
    return UserResolution(find_user(conn, principal.external_id), UserOutcome.CREATED)


def resolve_user_id(conn: Connection, principal: Principal) -> int:
    return get_or_create_user(conn, principal).user["id"]


def sync_user(conn: Connection, principal: Principal) -> dict:
    if not principal.email or not principal.name:
        logger.warning("User sync called with incomplete identity for %s", principal.external_id)
    user = get_or_create_user(conn, principal).user
    changes = {}
    if principal.email is not None and principal.email != user["email"]:
        changes["email"] = principal.email
    if principal.name is not None and principal.name != user["name"]:
        changes["name"] = principal.name
    if not changes:
        return user
    try:
        with conn.begin_nested():
            conn.execute(update(users).where(users.c.id == user["id"]).values(**changes))
    except IntegrityError as exc:
        raise IdentityConflict(f"Email already in use: {principal.email}") from exc
    return {**user, **changes}


def update_profile(conn: Connection, principal: Principal, name: Optional[str]) -> dict:
    user = get_or_create_user(conn, principal).user
    if name is None:
        return user
    conn.execute(update(users).where(users.c.id == user["id"]).values(name=name))
    return {**user, "name": name}


# Transactions


def create_transaction(
    conn: Connection,
    user_id: int,
    *,
    type: str,
    category: str,
    original_amount: Decimal,
    original_currency: Optional[str],
    txn_date: date,
    description: Optional[str] = None,
    ledger_currency: str = LEDGER_CURRENCY,
    rate_provider: Optional[RateProvider] = None,
) -> dict:
    txn_type = TransactionType.validate(type)
    conversion = normalize_amount(
        original_amount,
        original_currency,
        ledger_currency=ledger_currency,
        rate_provider=rate_provider,
    )
    stmt = (
        insert(transactions)
        .values(
            user_id=user_id,
            type=txn_type,
            category=category,
            amount=conversion.amount,
            original_amount=conversion.original_amount,
            original_currency=conversion.original_currency,
            conversion_rate=conversion.rate,
            date=txn_date,
            description=description,
        )
        .returning(transactions.c.id)
    )
    transaction_id = conn.execute(stmt).scalar_one()
    row = conn.execute(select(transactions).where(transactions.c.id == transaction_id)).mappings().one()
    return dict(row)


def list_transactions(conn: Connection, user_id: int) -> list[dict]:
    rows = conn.execute(
        select(transactions)
        .where(transactions.c.user_id == user_id)
        .order_by(transactions.c.date.desc(), transactions.c.id.desc())
    ).mappings().all()
    return [dict(row) for row in rows]


def load_transactions(
    conn: Connection,
    user_id: int,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
) -> list[Transaction]:
    stmt = select(
        transactions.c.amount,
        transactions.c.type,
        transactions.c.date,
        transactions.c.category,
    ).where(transactions.c.user_id == user_id)
    if start_date is not None:
        stmt = stmt.where(transactions.c.date >= start_date)
    if end_date is not None:
        stmt = stmt.where(transactions.c.date <= end_date)
    return [
        Transaction(
            amount=row["amount"],
            type=row["type"],
            date=row["date"],
            category=row["category"],
        )
        for row in conn.execute(stmt).mappings()
    ]


def delete_transaction(conn: Connection, user_id: int, transaction_id: int) -> None:
    _delete_owned(conn, transactions, transaction_id, user_id, "Transaction")


# Budgets and savings


def resolve_period(
    month: Optional[int],
    year: Optional[int],
    today: Optional[date] = None,
) -> tuple[int, int]:
    today = today or date.today()
    month = month if month is not None else today.month
    year = year if year is not None else today.year
    if not 1 <= month <= 12:
        raise ValidationError("Month must be between 1 and 12")
    if not MIN_YEAR <= year <= MAX_YEAR:
        raise ValidationError(f"Year must be a reasonable value between {MIN_YEAR} and {MAX_YEAR}")
    return month, year


def validate_non_negative(amount: Optional[Decimal], label: str) -> None:
    if amount is not None and amount < ZERO:
        raise ValidationError(f"{label} cannot be negative")


def validate_budget_category(category: Optional[str]) -> str:
    normalized = (category or "").strip()
    if normalized.casefold() == "income":
        raise ValidationError("Budgets can only be created for expense categories")
    if not normalized:
        raise ValidationError("Budget category required")
    return normalized


def upsert_budget(
    conn: Connection,
    user_id: int,
    *,
    category: Optional[str],
    limit_amount: Optional[Decimal],
    month: Optional[int] = None,
    year: Optional[int] = None,
    today: Optional[date] = None,
) -> BudgetView:
    """Create the budget for (user, category, month, year) or overwrite its limit.

    Two concurrent upserts for the same key resolve last-write-wins.
    """
    category = validate_budget_category(category)
    month, year = resolve_period(month, year, today)
    validate_non_negative(limit_amount, "Limit amount")

    key = (
        budgets.c.user_id == user_id,
        budgets.c.category == category,
        budgets.c.month == month,
        budgets.c.year == year,
    )
    budget_id = conn.execute(select(budgets.c.id).where(*key)).scalar_one_or_none()
    if budget_id is None:
        try:
            with conn.begin_nested():
                budget_id = conn.execute(
                    insert(budgets)
                    .values(
                        user_id=user_id,
                        category=category,
                        limit_amount=limit_amount,
                        month=month,
                        year=year,
                    )
                    .returning(budgets.c.id)
                ).scalar_one()
        except IntegrityError:
            budget_id = conn.execute(select(budgets.c.id).where(*key)).scalar_one()
            conn.execute(update(budgets).where(budgets.c.id == budget_id).values(limit_amount=limit_amount))
    else:
        conn.execute(update(budgets).where(budgets.c.id == budget_id).values(limit_amount=limit_amount))

    row = conn.execute(select(budgets).where(budgets.c.id == budget_id)).mappings().one()
    return _budget_view(conn, row)


def list_budgets(
    conn: Connection,
    user_id: int,
    category: Optional[str] = None,
    month: Optional[int] = None,
    year: Optional[int] = None,
) -> list[BudgetView]:
    stmt = select(budgets).where(budgets.c.user_id == user_id)
    if category is not None and month is not None and year is not None:
        stmt = stmt.where(
            budgets.c.category == category.strip(),
            budgets.c.month == month,
            budgets.c.year == year,
        )
    rows = conn.execute(stmt.order_by(budgets.c.year, budgets.c.month, budgets.c.id)).mappings().all()
    return [_budget_view(conn, row) for row in rows]


def delete_budget(conn: Connection, user_id: int, budget_id: int) -> None:
    _delete_owned(conn, budgets, budget_id, user_id, "Budget")


def upsert_savings(
    conn: Connection,
    user_id: int,
    *,
    target_amount: Optional[Decimal],
    month: Optional[int] = None,
    year: Optional[int] = None,
    today: Optional[date] = None,
) -> SavingsView:
    """Create the single savings goal for (user, month, year) or overwrite its target."""
    month, year = resolve_period(month, year, today)
    validate_non_negative(target_amount, "Target amount")

    key = (savings.c.user_id == user_id, savings.c.month == month, savings.c.year == year)
    savings_id = conn.execute(select(savings.c.id).where(*key)).scalar_one_or_none()
    if savings_id is None:
        try:
            with conn.begin_nested():
                savings_id = conn.execute(
                    insert(savings)
                    .values(user_id=user_id, target_amount=target_amount, month=month, year=year)
                    .returning(savings.c.id)
                ).scalar_one()
        except IntegrityError:
            savings_id = conn.execute(select(savings.c.id).where(*key)).scalar_one()
            conn.execute(update(savings).where(savings.c.id == savings_id).values(target_amount=target_amount))
    else:
        conn.execute(update(savings).where(savings.c.id == savings_id).values(target_amount=target_amount))

    row = conn.execute(select(savings).where(savings.c.id == savings_id)).mappings().one()
    return _savings_view(conn, row)


def list_savings(
    conn: Connection,
    user_id: int,
    month: Optional[int] = None,
    year: Optional[int] = None,
) -> list[SavingsView]:
    stmt = select(savings).where(savings.c.user_id == user_id)
    if month is not None and year is not None:
        stmt = stmt.where(savings.c.month == month, savings.c.year == year)
    rows = conn.execute(stmt.order_by(savings.c.year, savings.c.month, savings.c.id)).mappings().all()
    return [_savings_view(conn, row) for row in rows]


def delete_savings(conn: Connection, user_id: int, savings_id: int) -> None:
    _delete_owned(conn, savings, savings_id, user_id, "Savings record")


def _month_transactions(conn: Connection, user_id: int, month: int, year: int) -> list[Transaction]:
    try:
        start, end = month_window(month, year)
    except (TypeError, ValueError):
        return []
    return load_transactions(conn, user_id, start, end)


def _budget_view(conn: Connection, row) -> BudgetView:
    period = BudgetPeriod(category=row["category"], month=row["month"], year=row["year"])
    month_txns = _month_transactions(conn, row["user_id"], row["month"], row["year"])
    return BudgetView(
        id=row["id"],
        user_id=row["user_id"],
        category=row["category"],
        limit_amount=row["limit_amount"],
        spent_amount=spent_for_budget(period, month_txns),
        month=row["month"],
        year=row["year"],
    )


def _savings_view(conn: Connection, row) -> SavingsView:
    period = SavingsPeriod(month=row["month"], year=row["year"])
    month_txns = _month_transactions(conn, row["user_id"], row["month"], row["year"])
    return SavingsView(
        id=row["id"],
        user_id=row["user_id"],
        target_amount=row["target_amount"],
        progress_amount=progress_for_savings(period, month_txns),
        month=row["month"],
        year=row["year"],
    )


def _delete_owned(conn: Connection, table, record_id: int, user_id: int, label: str) -> None:
    owner_id = conn.execute(
        select(table.c.user_id).where(table.c.id == record_id)
    ).scalar_one_or_none()
    if owner_id is None:
        raise NotFoundError(f"{label} not found")
    if owner_id != user_id:
        raise AuthorizationError(f"Unauthorized to delete this {label.lower()}")
    conn.execute(table.delete().where(table.c.id == record_id))
