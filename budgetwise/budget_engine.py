from __future__ import annotations

from calendar import monthrange
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
import logging
from typing import Callable, Iterable, Optional

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
INCOME = "INCOME"
EXPENSE = "EXPENSE"


class TransactionType:
    values = {INCOME, EXPENSE}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in cls.values:
            raise ValueError("Transaction type must be INCOME or EXPENSE.")
        return normalized


@dataclass(frozen=True)
class Transaction:
    amount: Decimal
    type: str
    date: date
    category: Optional[str] = None


@dataclass(frozen=True)
class BudgetPeriod:
    category: Optional[str]
    month: Optional[int]
    year: Optional[int]


@dataclass(frozen=True)
class SavingsPeriod:
    month: Optional[int]
    year: Optional[int]


@dataclass(frozen=True)
class Summary:
    income: Decimal = ZERO
    expense: Decimal = ZERO
    expense_by_category: dict[str, Decimal] = field(default_factory=dict)

    @property
    def balance(self) -> Decimal:
        return self.income - self.expense


@dataclass(frozen=True)
class AggregateOutcome:
    """Result of a read-side aggregation.

    Aggregations never fail a read: an internal fault is captured in `error`
    and `value` is zero.
    """

    value: Decimal
    error: Optional[str] = None

    @property
    def degraded(self) -> bool:
        return self.error is not None


def summarize(
    transactions: Iterable[Transaction],
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
) -> Summary:
    """Totals income and expense over an inclusive window; no bounds means all time."""
    income = ZERO
    expense = ZERO
    by_category: dict[str, Decimal] = {}
    for txn in _in_window(transactions, start_date, end_date):
        txn_type = txn.type.strip().upper()
        amount = _coerce_amount(txn.amount)
        if txn_type == INCOME:
            income += amount
        elif txn_type == EXPENSE:
            expense += amount
            by_category[txn.category] = by_category.get(txn.category, ZERO) + amount
    return Summary(income=income, expense=expense, expense_by_category=by_category)


def month_window(month: int, year: int) -> tuple[date, date]:
    if month is None or year is None:
        raise ValueError("month and year are required.")
    if not 1 <= month <= 12:
        raise ValueError(f"Invalid month: {month}")
    start = date(year, month, 1)
    end = date(year, month, monthrange(year, month)[1])
    return start, end


def budget_spent(budget: BudgetPeriod, transactions: Iterable[Transaction]) -> AggregateOutcome:
    def compute() -> Decimal:
        if budget.month is None or budget.year is None or not 1 <= budget.month <= 12:
            return ZERO
        start, end = month_window(budget.month, budget.year)
        window = _in_window(transactions, start, end)
        return _sum_expenses(window, category=budget.category)

    return _guarded("budget spent", compute)


def savings_progress(savings: SavingsPeriod, transactions: Iterable[Transaction]) -> AggregateOutcome:
    def compute() -> Decimal:
        start, end = month_window(savings.month, savings.year)
        window = list(_in_window(transactions, start, end))
        return _sum_income(window) - _sum_expenses(window)

    return _guarded("savings progress", compute)


def spent_for_budget(budget: BudgetPeriod, transactions: Iterable[Transaction]) -> Decimal:
    return budget_spent(budget, transactions).value


def progress_for_savings(savings: SavingsPeriod, transactions: Iterable[Transaction]) -> Decimal:
    return savings_progress(savings, transactions).value


def _guarded(label: str, compute: Callable[[], Decimal]) -> AggregateOutcome:
    try:
        return AggregateOutcome(value=compute())
    except Exception as exc:
        logger.warning("Error calculating %s; reporting zero", label, exc_info=True)
        return AggregateOutcome(value=ZERO, error=str(exc) or type(exc).__name__)


def _in_window(
    transactions: Iterable[Transaction],
    start_date: Optional[date],
    end_date: Optional[date],
) -> Iterable[Transaction]:
    for txn in transactions:
        if start_date is not None and txn.date < start_date:
            continue
        if end_date is not None and txn.date > end_date:
            continue
        yield txn


def _sum_expenses(
    transactions: Iterable[Transaction],
    *,
    category: Optional[str] = None,
) -> Decimal:
    total = ZERO
    wanted = category.casefold() if category is not None else None
    for txn in transactions:
        if txn.type.strip().upper() != EXPENSE:
            continue
        if wanted is not None and (txn.category or "").casefold() != wanted:
            continue
        total += _coerce_amount(txn.amount)
    return total


def _sum_income(transactions: Iterable[Transaction]) -> Decimal:
    total = ZERO
    for txn in transactions:
        if txn.type.strip().upper() != INCOME:
            continue
        total += _coerce_amount(txn.amount)
    return total


def _coerce_amount(amount: Decimal) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
