import io
import json
import unittest
from decimal import Decimal
from unittest import mock
from urllib.error import HTTPError

from budgetwise.advice import (
    API_ERROR_MESSAGE,
    QUOTA_MESSAGE,
    UNEXPECTED_MESSAGE,
    GeminiTextProvider,
    build_advice_prompt,
    get_budget_advice,
)
from budgetwise.budget_engine import Summary
from budgetwise.dashboard import Dashboard
from budgetwise.errors import QuotaExceeded, TextProviderError
from budgetwise.ledger import BudgetView, SavingsView


class StubProvider:
    def __init__(self, reply=None, error=None) -> None:
        self.reply = reply
        self.error = error
        self.prompts = []

    def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.reply


def sample_dashboard(savings=None) -> Dashboard:
    return Dashboard(
        total=Summary(),
        monthly=Summary(
            income=Decimal("1000"),
            expense=Decimal("300"),
            expense_by_category={"Food": Decimal("300")},
        ),
        budgets=[
            BudgetView(
                id=1,
                user_id=1,
                category="Food",
                limit_amount=Decimal("400"),
                spent_amount=Decimal("300"),
                month=6,
                year=2024,
            )
        ],
        monthly_savings=savings,
    )


class AdvicePromptTests(unittest.TestCase):
    def test_prompt_includes_monthly_figures_and_budgets(self) -> None:
        prompt = build_advice_prompt(sample_dashboard())

        self.assertIn("Monthly Income: ₹1000", prompt)
        self.assertIn("Monthly Balance: ₹700", prompt)
        self.assertIn("- Food: spent ₹300 / limit ₹400", prompt)
        self.assertIn("No savings target set for this month.", prompt)
        self.assertIn("under 200 words", prompt)

    def test_savings_status_behind_and_ahead(self) -> None:
        behind = SavingsView(1, 1, Decimal("900"), Decimal("700"), 6, 2024)
        ahead = SavingsView(1, 1, Decimal("500"), Decimal("700"), 6, 2024)

        self.assertIn("Status: Behind by ₹200", build_advice_prompt(sample_dashboard(behind)))
        self.assertIn("Status: Ahead/Achieved", build_advice_prompt(sample_dashboard(ahead)))


class AdviceFallbackTests(unittest.TestCase):
    def test_returns_generated_text(self) -> None:
        provider = StubProvider(reply="Spend less on food.")

        self.assertEqual(get_budget_advice(sample_dashboard(), provider), "Spend less on food.")
        self.assertEqual(len(provider.prompts), 1)

    def test_quota_signal_maps_to_busy_message(self) -> None:
        provider = StubProvider(error=QuotaExceeded("slow down", status_code=429))

        self.assertEqual(get_budget_advice(sample_dashboard(), provider), QUOTA_MESSAGE)

    def test_api_error_maps_to_api_message(self) -> None:
        provider = StubProvider(error=TextProviderError("bad request", status_code=400))

        self.assertEqual(get_budget_advice(sample_dashboard(), provider), API_ERROR_MESSAGE)

    def test_unexpected_error_maps_to_generic_message(self) -> None:
        provider = StubProvider(error=KeyError("boom"))

        self.assertEqual(get_budget_advice(sample_dashboard(), provider), UNEXPECTED_MESSAGE)


class GeminiTextProviderTests(unittest.TestCase):
    def test_missing_api_key_is_an_api_error(self) -> None:
        with self.assertRaises(TextProviderError):
            GeminiTextProvider(api_key=None).generate("hello")

    def test_http_429_raises_quota_exceeded(self) -> None:
        error = HTTPError("https://gemini.test", 429, "Too Many Requests", {}, io.BytesIO(b"{}"))
        with mock.patch("budgetwise.advice.urlopen", side_effect=error):
            with self.assertRaises(QuotaExceeded):
                GeminiTextProvider(api_key="key").generate("hello")

    def test_joins_candidate_text_parts(self) -> None:
        payload = {"candidates": [{"content": {"parts": [{"text": "Save "}, {"text": "more."}]}}]}
        response = io.BytesIO(json.dumps(payload).encode("utf-8"))
        with mock.patch("budgetwise.advice.urlopen", return_value=response) as urlopen:
            text = GeminiTextProvider(api_key="key", model="gemini-test").generate("hello")

        request = urlopen.call_args[0][0]
        self.assertEqual(text, "Save more.")
        self.assertTrue(request.full_url.endswith("/models/gemini-test:generateContent"))
        self.assertEqual(request.get_method(), "POST")


if __name__ == "__main__":
    unittest.main()
