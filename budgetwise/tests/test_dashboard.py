import unittest
from datetime import date
from decimal import Decimal

from budgetwise import ledger
from budgetwise.dashboard import compose_dashboard
from budgetwise.ledger import Principal
from budgetwise.tables import create_ledger_engine, metadata


class DashboardTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_ledger_engine("sqlite://")
        metadata.create_all(self.engine)
        with self.engine.begin() as conn:
            self.user_id = ledger.resolve_user_id(conn, Principal("user_1", "one@example.com", "One"))
            for txn_type, category, amount, txn_date in (
                ("INCOME", "Salary", "1000", date(2024, 6, 2)),
                ("EXPENSE", "Food", "300", date(2024, 6, 5)),
                ("EXPENSE", "Food", "50", date(2024, 7, 1)),
                ("EXPENSE", "Travel", "25.75", date(2024, 5, 20)),
            ):
                ledger.create_transaction(
                    conn,
                    self.user_id,
                    type=txn_type,
                    category=category,
                    original_amount=Decimal(amount),
                    original_currency=None,
                    txn_date=txn_date,
                )

    def tearDown(self) -> None:
        self.engine.dispose()

    def test_combines_all_time_and_monthly_views(self) -> None:
        with self.engine.begin() as conn:
            ledger.upsert_budget(conn, self.user_id, category="Food", limit_amount=Decimal("400"), month=6, year=2024)
            ledger.upsert_savings(conn, self.user_id, target_amount=Decimal("500"), month=6, year=2024)
            dashboard = compose_dashboard(conn, self.user_id, today=date(2024, 6, 15))

        self.assertEqual(dashboard.total.income, Decimal("1000"))
        self.assertEqual(dashboard.total.expense, Decimal("375.75"))
        self.assertEqual(dashboard.total.balance, Decimal("624.25"))
        self.assertEqual(
            dashboard.total.expense_by_category,
            {"Food": Decimal("350"), "Travel": Decimal("25.75")},
        )
        self.assertEqual(dashboard.monthly_income, Decimal("1000"))
        self.assertEqual(dashboard.monthly_expense, Decimal("300"))
        self.assertEqual(dashboard.monthly_balance, Decimal("700"))
        self.assertEqual([budget.spent_amount for budget in dashboard.budgets], [Decimal("300")])
        self.assertEqual(dashboard.monthly_savings.progress_amount, Decimal("700"))

    def test_savings_only_for_current_month(self) -> None:
        with self.engine.begin() as conn:
            ledger.upsert_savings(conn, self.user_id, target_amount=Decimal("500"), month=6, year=2024)
            dashboard = compose_dashboard(conn, self.user_id, today=date(2024, 7, 3))

        self.assertIsNone(dashboard.monthly_savings)
        self.assertEqual(dashboard.monthly.expense_by_category, {"Food": Decimal("50")})


if __name__ == "__main__":
    unittest.main()
