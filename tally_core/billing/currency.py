"""
Currency Conversion

Rate cache with provider fallback, and minor-unit conversion across fiat and
crypto currencies.
"""

import asyncio
import logging
import time
from decimal import Decimal, InvalidOperation, localcontext
from typing import Callable, Dict, Optional

import httpx

from .base import (
    BillingError,
    CurrencyRateProvider,
    Number,
    NoRateAvailableError,
    RateFetchError,
    UnsupportedCurrencyError,
    round_minor,
    to_decimal,
)


logger = logging.getLogger(__name__)


# Minor units per major unit
DEFAULT_CURRENCY_SCALES: Dict[str, int] = {
    "USD": 100,
    "EUR": 100,
    "GBP": 100,
    "JPY": 100,
    "AUD": 100,
    "CAD": 100,
    "USDT": 100,
    "BTC": 100_000_000,  # satoshi
    "ETH": 10 ** 18,  # wei
}

# Significant digits; wei amounts times fiat rates need more than the default 28
CONVERSION_PRECISION = 60


def _pair_key(from_currency: str, to_currency: str) -> str:
    return f"{from_currency}_{to_currency}"


class CurrencyConversionService:
    """
    Converts minor-unit amounts between currencies.

    Rates are target major units per one source major unit. Rates set
    directly or fetched from the provider are cached for the lifetime of
    the service instance.
    """

    def __init__(
        self,
        initial_rates: Optional[Dict[str, Number]] = None,
        provider: Optional[CurrencyRateProvider] = None,
        scales: Optional[Dict[str, int]] = None,
    ):
        """Initialize conversion service.

        Args:
            initial_rates: Seed rates keyed as "FROM_TO"
            provider: Fallback provider for uncached pairs
            scales: Extra or overriding minor-unit scales by currency code
        """
        self._rates: Dict[str, Decimal] = {}
        self._provider = provider
        self._scales: Dict[str, int] = dict(DEFAULT_CURRENCY_SCALES)

        for code, scale in (scales or {}).items():
            self.register_currency(code, scale)

        for key, rate in (initial_rates or {}).items():
            from_currency, _, to_currency = key.partition("_")
            self.set_rate(from_currency, to_currency, rate)

    @property
    def provider(self) -> Optional[CurrencyRateProvider]:
        return self._provider

    def register_currency(self, code: str, scale: int) -> None:
        """Add or override the minor-unit scale of a currency."""
        if scale <= 0:
            raise ValueError(f"scale must be > 0 for {code}")
        self._scales[code.upper()] = int(scale)

    def scale_for(self, currency: str) -> int:
        """Get minor units per major unit."""
        scale = self._scales.get(currency.upper())
        if scale is None:
            raise UnsupportedCurrencyError(currency)
        return scale

    def set_rate(self, from_currency: str, to_currency: str, rate: Number) -> None:
        """Store a direct rate."""
        value = to_decimal(rate)
        if value <= 0:
            raise ValueError(f"rate must be > 0 for {from_currency}_{to_currency}")
        self._rates[_pair_key(from_currency.upper(), to_currency.upper())] = value

    async def get_rate(self, from_currency: str, to_currency: str) -> Decimal:
        """Get a cached rate, asking the provider on a miss."""
        from_currency = from_currency.upper()
        to_currency = to_currency.upper()
        key = _pair_key(from_currency, to_currency)

        cached = self._rates.get(key)
        if cached is not None:
            return cached

        if self._provider is None:
            raise NoRateAvailableError(from_currency, to_currency)

        try:
            fetched = await self._provider.get_rate(from_currency, to_currency)
        except BillingError:
            raise
        except Exception as e:
            raise RateFetchError(f"Rate provider failed for {key}: {e}") from e

        if fetched is None:
            raise NoRateAvailableError(
                from_currency,
                to_currency,
                f"Rate provider returned no rate for {key}",
            )

        rate = to_decimal(fetched)
        if not rate.is_finite() or rate <= 0:
            raise NoRateAvailableError(
                from_currency,
                to_currency,
                f"Rate provider returned invalid rate {rate} for {key}",
            )

        self._rates[key] = rate
        logger.debug(f"Cached rate {key}={rate}")
        return rate

    async def convert(self, amount_minor: Number, from_currency: str, to_currency: str) -> int:
        """
        Convert an amount in minor units.

        The amount is scaled to major units, multiplied by the rate and scaled
        to the target's minor units, rounding once at the end.
        """
        if from_currency.upper() == to_currency.upper():
            return round_minor(to_decimal(amount_minor))

        from_scale = self.scale_for(from_currency)
        to_scale = self.scale_for(to_currency)
        rate = await self.get_rate(from_currency, to_currency)

        with localcontext() as ctx:
            ctx.prec = CONVERSION_PRECISION
            amount_major = to_decimal(amount_minor) / from_scale
            target_minor = amount_major * rate * to_scale
            return round_minor(target_minor)


class CoinbaseRateProvider(CurrencyRateProvider):
    """
    Rate provider backed by the Coinbase public exchange-rates API.

    Features:
    - TTL cache per currency pair
    - Retries with linear backoff
    - Inverse rates from a cached or fetched reverse pair
    - Every pair returned by one fetch is cached in both directions
    """

    API_URL = "https://api.coinbase.com/v2/exchange-rates"

    def __init__(
        self,
        ttl_seconds: float = 300.0,
        max_retries: int = 3,
        backoff_seconds: float = 0.2,
        client: Optional[httpx.AsyncClient] = None,
        api_url: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_retries < 1:
            raise ValueError("max_retries must be >= 1")

        self.ttl_seconds = ttl_seconds
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.api_url = api_url or self.API_URL

        self._client = client
        self._owns_client = client is None
        self._clock = clock

        # key -> (rate, expires_at)
        self._cache: Dict[str, tuple] = {}

    async def close(self) -> None:
        """Close the HTTP client if this provider created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(10.0, connect=5.0))
        return self._client

    def _get_cached(self, key: str) -> Optional[Decimal]:
        entry = self._cache.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() > expires_at:
            del self._cache[key]
            return None
        return value

    def _set_cached(self, key: str, value: Decimal) -> None:
        self._cache[key] = (value, self._clock() + self.ttl_seconds)

    async def get_rate(self, from_currency: str, to_currency: str) -> Decimal:
        """Get the rate for a pair, fetching on a cache miss."""
        if from_currency == to_currency:
            return Decimal("1")

        key = _pair_key(from_currency, to_currency)
        cached = self._get_cached(key)
        if cached is not None:
            return cached

        inverse = self._get_cached(_pair_key(to_currency, from_currency))
        if inverse is not None:
            value = Decimal("1") / inverse
            self._set_cached(key, value)
            return value

        rates = await self._fetch_rates_for(from_currency)
        value = rates.get(to_currency)
        if value is not None:
            self._set_cached(key, value)
            return value

        to_rates = await self._fetch_rates_for(to_currency)
        reverse = to_rates.get(from_currency)
        if reverse is None:
            raise NoRateAvailableError(
                from_currency,
                to_currency,
                f"Rate not available for {from_currency}->{to_currency}",
            )
        value = Decimal("1") / reverse
        self._set_cached(key, value)
        return value

    async def _fetch_rates_for(self, base: str) -> Dict[str, Decimal]:
        """Fetch the rate table for a base currency with retries."""
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_retries + 1):
            try:
                response = await self._get_client().get(
                    self.api_url,
                    params={"currency": base},
                )
                response.raise_for_status()
                payload = response.json()
                data = payload.get("data") if isinstance(payload, dict) else None
                raw = data.get("rates") if isinstance(data, dict) else None
                if not isinstance(raw, dict):
                    raise ValueError("Invalid payload: missing data.rates")
                return self._store_rates(base, raw)

            except (httpx.HTTPError, ValueError) as e:
                last_error = e
                logger.warning(
                    f"Rate fetch for {base} failed "
                    f"(attempt {attempt}/{self.max_retries}): {e}"
                )
                if attempt < self.max_retries:
                    await asyncio.sleep(self.backoff_seconds * attempt)

        raise RateFetchError(f"Failed to fetch rates for {base}: {last_error}")

    def _store_rates(self, base: str, raw: Dict[str, object]) -> Dict[str, Decimal]:
        normalized: Dict[str, Decimal] = {}
        for code, value in raw.items():
            try:
                rate = Decimal(str(value))
            except InvalidOperation:
                continue
            if not rate.is_finite() or rate <= 0:
                continue

            normalized[code] = rate
            self._set_cached(_pair_key(base, code), rate)
            self._set_cached(_pair_key(code, base), Decimal("1") / rate)

        return normalized
