import io
import json
import unittest
from decimal import Decimal
from unittest import mock
from urllib.error import URLError

from budgetwise.currency_conversion import (
    CompositeRateProvider,
    ExchangeRateApiProvider,
    StaticRateProvider,
    normalize_amount,
)
from budgetwise.errors import RateProviderUnavailable


class UnavailableProvider:
    def get_rate(self, source_currency: str, target_currency: str) -> Decimal:
        raise RateProviderUnavailable("Down")


class ExplodingProvider:
    def get_rate(self, source_currency: str, target_currency: str) -> Decimal:
        raise AssertionError("rate provider should not be consulted")


def fake_response(payload: dict) -> io.BytesIO:
    return io.BytesIO(json.dumps(payload).encode("utf-8"))


class NormalizeAmountTests(unittest.TestCase):
    def setUp(self) -> None:
        self.provider = CompositeRateProvider(
            primary=UnavailableProvider(),
            fallback=StaticRateProvider(),
        )

    def test_missing_currency_keeps_original_amount(self) -> None:
        result = normalize_amount(Decimal("12.50"), None, "INR", rate_provider=ExplodingProvider())

        self.assertEqual(result.amount, Decimal("12.50"))
        self.assertEqual(result.rate, Decimal("1"))
        self.assertEqual(result.original_currency, "INR")

    def test_ledger_currency_never_consults_provider(self) -> None:
        result = normalize_amount(Decimal("40"), " inr ", "INR", rate_provider=ExplodingProvider())

        self.assertEqual(result.amount, Decimal("40"))
        self.assertEqual(result.rate, Decimal("1"))

    def test_falls_back_to_static_table_when_live_lookup_fails(self) -> None:
        usd = normalize_amount(Decimal("10"), "usd", "INR", rate_provider=self.provider)
        eur = normalize_amount(Decimal("2"), "EUR", "INR", rate_provider=self.provider)
        gbp = normalize_amount(Decimal("1.5"), "GBP", "INR", rate_provider=self.provider)

        self.assertEqual(usd.amount, Decimal("850.0"))
        self.assertEqual(usd.rate, Decimal("85.0"))
        self.assertEqual(eur.amount, Decimal("184.0"))
        self.assertEqual(gbp.amount, Decimal("162.00"))

    def test_unknown_currency_falls_back_to_neutral_rate(self) -> None:
        result = normalize_amount(Decimal("7"), "JPY", "INR", rate_provider=self.provider)

        self.assertEqual(result.rate, Decimal("1"))
        self.assertEqual(result.amount, Decimal("7"))

    def test_amount_is_exact_product_of_original_and_rate(self) -> None:
        provider = StaticRateProvider(rates={"USD": Decimal("83.1234")})

        result = normalize_amount(Decimal("0.10"), "USD", "INR", rate_provider=provider)

        self.assertEqual(result.amount, Decimal("8.312340"))
        self.assertEqual(result.amount, result.original_amount * result.rate)

    def test_long_rate_is_rounded_to_eight_places_before_multiplying(self) -> None:
        provider = StaticRateProvider(rates={"USD": Decimal("83.123456789")})

        result = normalize_amount(Decimal("10.01"), "USD", "INR", rate_provider=provider)

        self.assertEqual(result.rate, Decimal("83.12345679"))
        self.assertEqual(result.amount, Decimal("832.0658024679"))
        self.assertEqual(result.amount, result.original_amount * result.rate)

    def test_original_amount_is_limited_to_six_places(self) -> None:
        result = normalize_amount(Decimal("1.23456789"), None, "INR")

        self.assertEqual(result.original_amount, Decimal("1.234568"))
        self.assertEqual(result.amount, Decimal("1.234568"))

    def test_float_amounts_are_rejected(self) -> None:
        with self.assertRaises(TypeError):
            normalize_amount(0.1, "USD", "INR", rate_provider=self.provider)

    def test_invalid_currency_code_raises(self) -> None:
        with self.assertRaises(ValueError):
            normalize_amount(Decimal("5"), "DOLLARS", "INR", rate_provider=self.provider)


class ExchangeRateApiProviderTests(unittest.TestCase):
    def setUp(self) -> None:
        self.provider = ExchangeRateApiProvider(base_url="https://rates.test/v6/latest")

    def test_reads_rate_from_success_payload(self) -> None:
        payload = {"result": "success", "rates": {"INR": 83.25, "USD": 1}}
        with mock.patch(
            "budgetwise.currency_conversion.urlopen",
            return_value=fake_response(payload),
        ) as urlopen:
            rate = self.provider.get_rate("usd", "INR")

        self.assertEqual(rate, Decimal("83.25"))
        self.assertEqual(urlopen.call_args[0][0], "https://rates.test/v6/latest/USD")

    def test_non_success_result_is_unavailable(self) -> None:
        payload = {"result": "error", "error-type": "unsupported-code"}
        with mock.patch(
            "budgetwise.currency_conversion.urlopen",
            return_value=fake_response(payload),
        ):
            with self.assertRaises(RateProviderUnavailable):
                self.provider.get_rate("XYZ", "INR")

    def test_missing_target_currency_is_unavailable(self) -> None:
        payload = {"result": "success", "rates": {"EUR": 0.9}}
        with mock.patch(
            "budgetwise.currency_conversion.urlopen",
            return_value=fake_response(payload),
        ):
            with self.assertRaises(RateProviderUnavailable):
                self.provider.get_rate("USD", "INR")

    def test_non_numeric_rate_is_unavailable(self) -> None:
        payload = {"result": "success", "rates": {"INR": "83"}}
        with mock.patch(
            "budgetwise.currency_conversion.urlopen",
            return_value=fake_response(payload),
        ):
            with self.assertRaises(RateProviderUnavailable):
                self.provider.get_rate("USD", "INR")

    def test_network_error_is_unavailable(self) -> None:
        with mock.patch(
            "budgetwise.currency_conversion.urlopen",
            side_effect=URLError("offline"),
        ):
            with self.assertRaises(RateProviderUnavailable):
                self.provider.get_rate("USD", "INR")

    def test_composite_uses_fallback_table_after_network_error(self) -> None:
        provider = CompositeRateProvider(primary=self.provider, fallback=StaticRateProvider())
        with mock.patch(
            "budgetwise.currency_conversion.urlopen",
            side_effect=URLError("offline"),
        ):
            result = normalize_amount(Decimal("3"), "USD", "INR", rate_provider=provider)

        self.assertEqual(result.rate, Decimal("85.0"))
        self.assertEqual(result.amount, Decimal("255.0"))


if __name__ == "__main__":
    unittest.main()
