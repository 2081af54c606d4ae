from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Optional

from sqlalchemy.engine import Connection

from budgetwise.budget_engine import Summary, month_window, summarize
from budgetwise.ledger import BudgetView, SavingsView, list_budgets, list_savings, load_transactions


@dataclass(frozen=True)
class Dashboard:
    total: Summary
    monthly: Summary
    budgets: list[BudgetView] = field(default_factory=list)
    monthly_savings: Optional[SavingsView] = None

    @property
    def monthly_income(self) -> Decimal:
        return self.monthly.income

    @property
    def monthly_expense(self) -> Decimal:
        return self.monthly.expense

    @property
    def monthly_balance(self) -> Decimal:
        return self.monthly.balance


def compose_dashboard(conn: Connection, user_id: int, today: Optional[date] = None) -> Dashboard:
    today = today or date.today()
    all_transactions = load_transactions(conn, user_id)
    start, end = month_window(today.month, today.year)

    current_savings = list_savings(conn, user_id, month=today.month, year=today.year)
    return Dashboard(
        total=summarize(all_transactions),
        monthly=summarize(all_transactions, start, end),
        budgets=list_budgets(conn, user_id),
        monthly_savings=current_savings[0] if current_savings else None,
    )
