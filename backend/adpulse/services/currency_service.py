"""
Currency Service: converts native ad-account money into the reporting currency.

Rates are USD-based (1 USD = rate units). Live rates come from
EXCHANGE_RATE_URL and are cached for EXCHANGE_RATE_TTL_SECONDS; the
built-in table below is used whenever the fetch fails. A missing rate
never aborts a sync: the amount is kept unconverted and flagged.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

import httpx

from adpulse.config import Settings, get_settings

logger = logging.getLogger(__name__)

FALLBACK_RATES: dict[str, float] = {
    "USD": 1.0,
    "EUR": 0.92,
    "GBP": 0.79,
    "AUD": 1.52,
    "CAD": 1.36,
    "CHF": 0.88,
    "JPY": 149.50,
    "CNY": 7.24,
    "INR": 83.12,
    "BRL": 4.97,
    "MXN": 17.05,
    "SGD": 1.35,
    "HKD": 7.82,
    "NOK": 10.64,
    "SEK": 10.36,
    "DKK": 6.85,
    "PLN": 4.01,
    "CZK": 22.58,
    "HUF": 358.45,
    "RON": 4.57,
    "TRY": 32.98,
    "NZD": 1.64,
    "ZAR": 18.46,
    "AED": 3.67,
    "SAR": 3.75,
    "ILS": 3.73,
    "THB": 35.23,
    "IDR": 15462,
    "MYR": 4.64,
    "PHP": 55.89,
    "TWD": 31.95,
    "VND": 25345,
    "KRW": 1330.0,
    "COP": 4378,
    "CLP": 964,
    "ARS": 967,
    "NGN": 1580,
    "KES": 129.15,
    "EGP": 48.35,
    "PKR": 278.45,
}


class UnknownCurrencyError(ValueError):
    def __init__(self, currency: str):
        super().__init__(f"no rate for {currency}")
        self.currency = currency


def convert(amount: float, from_currency: str, to_currency: str, rates: dict[str, float]) -> float:
    """Pure conversion through USD. Raises UnknownCurrencyError for a missing rate."""
    from_currency = (from_currency or "").upper()
    to_currency = (to_currency or "").upper()
    if from_currency == to_currency:
        return amount

    from_rate = rates.get(from_currency)
    if not from_rate:
        raise UnknownCurrencyError(from_currency or "<empty>")
    to_rate = rates.get(to_currency)
    if not to_rate:
        raise UnknownCurrencyError(to_currency or "<empty>")

    return amount / from_rate * to_rate


@dataclass
class Money:
    amount: Optional[float]
    currency: str
    original_amount: Optional[float]
    original_currency: str
    converted: bool = True
    note: Optional[str] = None

    def metadata(self) -> dict:
        """Traceability fields merged into entity metadata."""
        data = {
            "original_amount": self.original_amount,
            "original_currency": self.original_currency,
        }
        if self.note:
            data["currency_note"] = self.note
        return data


class CurrencyService:
    """
    Holds the rate table for one process (or one test).
    Passing `rates` pins the table and disables fetching.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        rates: Optional[dict[str, float]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or get_settings()
        self._pinned = rates is not None
        self._rates: dict[str, float] = dict(rates) if rates is not None else {}
        self._fetched_at: Optional[float] = None
        self._http = http_client
        self._clock = clock
        self.source = "pinned" if self._pinned else "none"

    def _cache_valid(self) -> bool:
        if self._pinned:
            return True
        if self._fetched_at is None:
            return False
        return self._clock() - self._fetched_at < self.settings.exchange_rate_ttl_seconds

    async def _fetch_rates(self) -> dict[str, float]:
        if self._http is not None:
            response = await self._http.get(self.settings.exchange_rate_url)
        else:
            async with httpx.AsyncClient(timeout=10) as client:
                response = await client.get(self.settings.exchange_rate_url)
        response.raise_for_status()
        rates = response.json().get("rates")
        if not isinstance(rates, dict) or "USD" not in rates:
            raise ValueError("exchange rate response has no USD-based rates")
        return {code.upper(): float(rate) for code, rate in rates.items() if rate}

    async def get_rates(self) -> dict[str, float]:
        if self._cache_valid():
            return self._rates
        try:
            self._rates = await self._fetch_rates()
            self.source = "live"
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Exchange rate fetch failed, using fallback table: {e}")
            self._rates = dict(FALLBACK_RATES)
            self.source = "fallback"
        self._fetched_at = self._clock()
        return self._rates

    async def convert_money(
        self,
        amount: Optional[float],
        from_currency: Optional[str],
        to_currency: str,
    ) -> Money:
        """Convert, or return the amount unconverted with a note when a rate is missing."""
        source_currency = (from_currency or to_currency).upper()
        target_currency = to_currency.upper()
        if amount is None:
            return Money(None, target_currency, None, source_currency)

        rates = await self.get_rates()
        try:
            value = convert(float(amount), source_currency, target_currency, rates)
        except UnknownCurrencyError as e:
            logger.warning(f"Currency conversion {source_currency}->{target_currency} skipped: {e}")
            return Money(
                amount=float(amount),
                currency=source_currency,
                original_amount=float(amount),
                original_currency=source_currency,
                converted=False,
                note=str(e),
            )
        return Money(
            amount=round(value, 2),
            currency=target_currency,
            original_amount=float(amount),
            original_currency=source_currency,
        )
