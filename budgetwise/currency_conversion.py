from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, localcontext
import json
import logging
from typing import Mapping, Protocol
from urllib.error import HTTPError, URLError
from urllib.parse import quote
from urllib.request import urlopen

from budgetwise.errors import RateProviderUnavailable

logger = logging.getLogger(__name__)

LEDGER_CURRENCY = "INR"
ONE = Decimal("1")
# Stored scales: original amounts keep at most 6 places and rates at most 8, so
# their product fits the 14-place ledger amount exactly.
AMOUNT_PLACES = Decimal("0.000001")
RATE_PLACES = Decimal("0.00000001")

# Rupees per unit of foreign currency, used when the live lookup fails.
FALLBACK_RATES: dict[str, Decimal] = {
    "USD": Decimal("85.0"),
    "EUR": Decimal("92.0"),
    "GBP": Decimal("108.0"),
}


class RateProvider(Protocol):
    def get_rate(self, source_currency: str, target_currency: str) -> Decimal:
        ...


@dataclass(frozen=True)
class StaticRateProvider:
    """Deterministic, in-memory FX rates into the ledger currency.

    Unknown currencies resolve to a neutral rate of 1.
    """

    rates: Mapping[str, Decimal] = None
    ledger_currency: str = LEDGER_CURRENCY

    def __post_init__(self) -> None:
        object.__setattr__(self, "rates", dict(self.rates or FALLBACK_RATES))

    def get_rate(self, source_currency: str, target_currency: str) -> Decimal:
        source = normalize_currency(source_currency)
        target = normalize_currency(target_currency)
        if source == target:
            return ONE
        if target != normalize_currency(self.ledger_currency):
            return ONE
        return self.rates.get(source, ONE)


@dataclass
class ExchangeRateApiProvider:
    """Live rates from the open ExchangeRate-API `latest/{base}` endpoint.

    Every failure mode (network, non-success result, malformed payload, missing
    target currency) raises RateProviderUnavailable. Rates are not cached.
    """

    base_url: str = "https://open.er-api.com/v6/latest"
    timeout_seconds: float = 8

    def get_rate(self, source_currency: str, target_currency: str) -> Decimal:
        source = normalize_currency(source_currency)
        target = normalize_currency(target_currency)
        if source == target:
            return ONE

        payload = self._fetch_payload(source)
        if str(payload.get("result", "")).lower() != "success":
            raise RateProviderUnavailable(f"Rate lookup for {source} did not succeed")
        rates = payload.get("rates")
        if not isinstance(rates, dict) or target not in rates:
            raise RateProviderUnavailable(f"Rate response for {source} missing {target}")

        value = rates[target]
        if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
            raise RateProviderUnavailable(f"Rate for {source}->{target} is not a number")
        return _coerce_rate(value)

    def _fetch_payload(self, source: str) -> dict:
        url = f"{self.base_url.rstrip('/')}/{quote(source)}"
        try:
            with urlopen(url, timeout=self.timeout_seconds) as response:
                payload = json.load(response, parse_float=Decimal)
        except (HTTPError, URLError, TimeoutError, OSError, json.JSONDecodeError) as exc:
            raise RateProviderUnavailable("Exchange rate API unavailable") from exc
        if not isinstance(payload, dict):
            raise RateProviderUnavailable("Exchange rate response is not an object")
        return payload


@dataclass(frozen=True)
class CompositeRateProvider:
    primary: RateProvider
    fallback: StaticRateProvider

    def get_rate(self, source_currency: str, target_currency: str) -> Decimal:
        try:
            return self.primary.get_rate(source_currency, target_currency)
        except RateProviderUnavailable as exc:
            logger.warning(
                "Live rate lookup %s->%s failed (%s); using fallback table",
                source_currency,
                target_currency,
                exc,
            )
            return self.fallback.get_rate(source_currency, target_currency)


@dataclass(frozen=True)
class Conversion:
    amount: Decimal
    rate: Decimal
    original_amount: Decimal
    original_currency: str


def normalize_amount(
    original_amount: Decimal | int | str,
    original_currency: str | None,
    ledger_currency: str = LEDGER_CURRENCY,
    rate_provider: RateProvider | None = None,
) -> Conversion:
    """Convert an original amount into the ledger currency.

    A missing currency means the amount is already in the ledger currency.
    Amounts beyond 6 decimal places and rates beyond 8 are rounded half-even
    first; the product itself is exact.
    """
    ledger = normalize_currency(ledger_currency)
    coerced_amount = _limit_scale(_coerce_amount(original_amount), AMOUNT_PLACES)
    if not original_currency or not original_currency.strip():
        return Conversion(coerced_amount, ONE, coerced_amount, ledger)

    source = normalize_currency(original_currency)
    if source == ledger:
        return Conversion(coerced_amount, ONE, coerced_amount, source)

    provider = rate_provider or StaticRateProvider(ledger_currency=ledger)
    rate = _limit_scale(provider.get_rate(source, ledger), RATE_PLACES)
    with localcontext() as ctx:
        ctx.prec = 50
        amount = coerced_amount * rate
    return Conversion(amount, rate, coerced_amount, source)


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def _coerce_amount(amount: Decimal | int | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    if isinstance(amount, float):
        raise TypeError("Monetary amounts must not be binary floats.")
    try:
        return Decimal(str(amount))
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount: {amount!r}") from exc


def _coerce_rate(value: Decimal | int | float) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _limit_scale(value: Decimal, places: Decimal) -> Decimal:
    if value.is_finite() and value.as_tuple().exponent < places.as_tuple().exponent:
        return value.quantize(places)
    return value
