from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from typing import Protocol
from urllib.error import HTTPError, URLError
from urllib.parse import quote
from urllib.request import Request, urlopen

from budgetwise.dashboard import Dashboard
from budgetwise.errors import QuotaExceeded, TextProviderError

logger = logging.getLogger(__name__)

QUOTA_MESSAGE = "Our AI advisor is currently busy (Quota Exceeded). Please try again later."
API_ERROR_MESSAGE = "Unable to generate advice at this time due to an API error."
UNEXPECTED_MESSAGE = "An unexpected error occurred while fetching advice."
NO_SAVINGS_TEXT = "No savings target set for this month."


class TextProvider(Protocol):
    def generate(self, prompt: str) -> str:
        ...


@dataclass
class GeminiTextProvider:
    api_key: str | None
    model: str = "gemini-2.5-flash"
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    timeout_seconds: float = 30

    def generate(self, prompt: str) -> str:
        if not self.api_key:
            raise TextProviderError("Gemini API key is not configured.")

        url = f"{self.base_url.rstrip('/')}/models/{quote(self.model)}:generateContent"
        body = json.dumps({"contents": [{"parts": [{"text": prompt}]}]}).encode("utf-8")
        request = Request(
            url,
            data=body,
            method="POST",
            headers={"Content-Type": "application/json", "x-goog-api-key": self.api_key},
        )
        try:
            with urlopen(request, timeout=self.timeout_seconds) as response:
                payload = json.load(response)
        except HTTPError as exc:
            if exc.code == 429:
                raise QuotaExceeded("Gemini quota exceeded", status_code=429) from exc
            raise TextProviderError(f"Gemini API error {exc.code}", status_code=exc.code) from exc
        except (URLError, TimeoutError, json.JSONDecodeError) as exc:
            raise TextProviderError("Gemini API unavailable") from exc

        try:
            parts = payload["candidates"][0]["content"]["parts"]
        except (KeyError, IndexError, TypeError) as exc:
            raise TextProviderError("Gemini response missing candidates") from exc
        return "".join(part.get("text", "") for part in parts if isinstance(part, dict))


def build_advice_prompt(dashboard: Dashboard) -> str:
    budgets_text = "\n".join(
        f"- {budget.category}: spent ₹{budget.spent_amount} / limit ₹{budget.limit_amount}"
        for budget in dashboard.budgets
    )

    savings_text = NO_SAVINGS_TEXT
    goal = dashboard.monthly_savings
    if goal is not None:
        target = goal.target_amount if goal.target_amount is not None else 0
        diff = target - goal.progress_amount
        status = "Ahead/Achieved" if diff <= 0 else f"Behind by ₹{diff}"
        savings_text = (
            "Monthly Savings:\n"
            f"- Target: ₹{goal.target_amount}\n"
            f"- Current Progress: ₹{goal.progress_amount}\n"
            f"- Status: {status}"
        )

    return (
        "I am a user of a budget app. Here is my financial summary for the current month:\n"
        f"Monthly Income: ₹{dashboard.monthly_income}\n"
        f"Monthly Expenses: ₹{dashboard.monthly_expense}\n"
        f"Monthly Balance: ₹{dashboard.monthly_balance}\n"
        f"Budgets vs Spent:\n{budgets_text}\n\n"
        f"{savings_text}\n\n"
        "Please provide brief, actionable budget advice and insights based on this monthly data. "
        "Focus on controlling spending this month, improving savings, and avoiding exceeding budgets. "
        "Please also consider the user's savings goals and progress when giving advice. "
        "All monetary values must be shown in INR and formatted using the ₹ symbol. "
        "Avoid using $, USD, or other currencies in responses. "
        "Keep the advice under 200 words."
    )


def get_budget_advice(dashboard: Dashboard, provider: TextProvider) -> str:
    """Ask the provider for advice; failures degrade to a fixed user-facing message."""
    prompt = build_advice_prompt(dashboard)
    try:
        return provider.generate(prompt)
    except QuotaExceeded:
        logger.warning("Advice provider quota exceeded")
        return QUOTA_MESSAGE
    except TextProviderError as exc:
        logger.warning("Advice provider API error: %s", exc)
        return API_ERROR_MESSAGE
    except Exception:
        logger.exception("Unexpected error while fetching advice")
        return UNEXPECTED_MESSAGE
