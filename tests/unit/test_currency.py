"""Unit tests for currency conversion."""

import pytest
import httpx
from decimal import Decimal
from unittest.mock import AsyncMock


def rates_handler(tables, calls=None):
    """Build a MockTransport handler serving rate tables by base currency."""

    def handler(request: httpx.Request) -> httpx.Response:
        base = request.url.params.get("currency")
        if calls is not None:
            calls.append(base)
        if base not in tables:
            return httpx.Response(200, json={"data": {"currency": base, "rates": {}}})
        return httpx.Response(200, json={"data": {"currency": base, "rates": tables[base]}})

    return handler


class TestCurrencyConversionService:
    """Tests for minor-unit conversion."""

    @pytest.mark.asyncio
    async def test_btc_to_usd(self):
        """Test satoshi to cents conversion."""
        from tally_core.billing.currency import CurrencyConversionService

        service = CurrencyConversionService(initial_rates={"BTC_USD": 50000})

        assert await service.convert(25_000_000, "BTC", "USD") == 1_250_000

    @pytest.mark.asyncio
    async def test_usdt_to_usd(self):
        """Test stablecoin conversion at parity."""
        from tally_core.billing.currency import CurrencyConversionService

        service = CurrencyConversionService(initial_rates={"USDT_USD": 1})

        assert await service.convert(12345, "USDT", "USD") == 12345

    @pytest.mark.asyncio
    async def test_eth_wei_precision(self):
        """Test that wei amounts keep full precision."""
        from tally_core.billing.currency import CurrencyConversionService

        service = CurrencyConversionService(initial_rates={"ETH_USD": "3000.5"})

        # 1.5 ETH
        assert await service.convert(1_500_000_000_000_000_000, "ETH", "USD") == 450075

    @pytest.mark.asyncio
    async def test_same_currency_is_identity(self):
        """Test that same-currency conversion needs no rate."""
        from tally_core.billing.currency import CurrencyConversionService

        assert await CurrencyConversionService().convert(999, "USD", "USD") == 999

    @pytest.mark.asyncio
    async def test_no_rate_without_provider(self):
        """Test that a missing rate without a provider fails."""
        from tally_core.billing.base import NoRateAvailableError
        from tally_core.billing.currency import CurrencyConversionService

        with pytest.raises(NoRateAvailableError):
            await CurrencyConversionService().convert(100, "EUR", "USD")

    @pytest.mark.asyncio
    async def test_unknown_currency(self):
        """Test that currencies without a scale are rejected."""
        from tally_core.billing.base import UnsupportedCurrencyError
        from tally_core.billing.currency import CurrencyConversionService

        service = CurrencyConversionService(initial_rates={"DOGE_USD": "0.1"})

        with pytest.raises(UnsupportedCurrencyError):
            await service.convert(100, "DOGE", "USD")

    @pytest.mark.asyncio
    async def test_register_currency(self):
        """Test adding a currency scale."""
        from tally_core.billing.currency import CurrencyConversionService

        service = CurrencyConversionService(initial_rates={"SOL_USD": 150}, scales={"SOL": 10 ** 9})

        assert await service.convert(2 * 10 ** 9, "SOL", "USD") == 30000

    @pytest.mark.asyncio
    async def test_provider_rate_is_cached(self):
        """Test that provider rates are fetched once."""
        from tally_core.billing.base import CurrencyRateProvider
        from tally_core.billing.currency import CurrencyConversionService

        provider = AsyncMock(spec=CurrencyRateProvider)
        provider.get_rate.return_value = Decimal("1.1")
        service = CurrencyConversionService(provider=provider)

        assert await service.convert(1000, "EUR", "USD") == 1100
        assert await service.convert(2000, "EUR", "USD") == 2200
        provider.get_rate.assert_awaited_once_with("EUR", "USD")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("bad_rate", [0, -2, Decimal("NaN")])
    async def test_invalid_provider_rate_rejected(self, bad_rate):
        """Test that non-positive provider rates fail and are not cached."""
        from tally_core.billing.base import CurrencyRateProvider, NoRateAvailableError
        from tally_core.billing.currency import CurrencyConversionService

        provider = AsyncMock(spec=CurrencyRateProvider)
        provider.get_rate.return_value = bad_rate
        service = CurrencyConversionService(provider=provider)

        with pytest.raises(NoRateAvailableError):
            await service.convert(10000, "EUR", "USD")

        provider.get_rate.return_value = Decimal("1.1")
        assert await service.convert(10000, "EUR", "USD") == 11000
        assert provider.get_rate.await_count == 2

    @pytest.mark.asyncio
    async def test_provider_failure_is_wrapped(self):
        """Test that unexpected provider errors become RateFetchError."""
        from tally_core.billing.base import CurrencyRateProvider, RateFetchError
        from tally_core.billing.currency import CurrencyConversionService

        provider = AsyncMock(spec=CurrencyRateProvider)
        provider.get_rate.side_effect = RuntimeError("boom")

        with pytest.raises(RateFetchError):
            await CurrencyConversionService(provider=provider).get_rate("EUR", "USD")

    def test_invalid_rate(self):
        """Test that non-positive rates are rejected."""
        from tally_core.billing.currency import CurrencyConversionService

        with pytest.raises(ValueError):
            CurrencyConversionService(initial_rates={"EUR_USD": 0})


class TestCoinbaseRateProvider:
    """Tests for the HTTP rate provider."""

    @pytest.mark.asyncio
    async def test_fetch_and_cache(self, clock):
        """Test that one fetch serves later lookups."""
        from tally_core.billing.currency import CoinbaseRateProvider

        calls = []
        client = httpx.AsyncClient(transport=httpx.MockTransport(rates_handler({"BTC": {"USD": "50000"}}, calls)))
        provider = CoinbaseRateProvider(client=client, clock=clock)

        assert await provider.get_rate("BTC", "USD") == Decimal("50000")
        assert await provider.get_rate("BTC", "USD") == Decimal("50000")
        assert await provider.get_rate("USD", "BTC") == Decimal("1") / Decimal("50000")
        assert calls == ["BTC"]

        await client.aclose()

    @pytest.mark.asyncio
    async def test_cache_expires(self, clock):
        """Test that rates are refetched after the TTL."""
        from tally_core.billing.currency import CoinbaseRateProvider

        calls = []
        client = httpx.AsyncClient(transport=httpx.MockTransport(rates_handler({"BTC": {"USD": "50000"}}, calls)))
        provider = CoinbaseRateProvider(client=client, ttl_seconds=300, clock=clock)

        await provider.get_rate("BTC", "USD")
        clock.advance(301)
        await provider.get_rate("BTC", "USD")

        assert calls == ["BTC", "BTC"]
        await client.aclose()

    @pytest.mark.asyncio
    async def test_falls_back_to_target_table(self, clock):
        """Test inverting the target's table when the source lacks the pair."""
        from tally_core.billing.currency import CoinbaseRateProvider

        calls = []
        client = httpx.AsyncClient(transport=httpx.MockTransport(rates_handler({"USD": {"XAU": "0.0005"}}, calls)))
        provider = CoinbaseRateProvider(client=client, clock=clock)

        assert await provider.get_rate("XAU", "USD") == Decimal("2000")
        assert calls == ["XAU", "USD"]
        await client.aclose()

    @pytest.mark.asyncio
    async def test_no_rate_available(self, clock):
        """Test that a pair missing from both tables fails."""
        from tally_core.billing.base import NoRateAvailableError
        from tally_core.billing.currency import CoinbaseRateProvider

        client = httpx.AsyncClient(transport=httpx.MockTransport(rates_handler({})))
        provider = CoinbaseRateProvider(client=client, clock=clock)

        with pytest.raises(NoRateAvailableError):
            await provider.get_rate("AAA", "BBB")
        await client.aclose()

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self, clock):
        """Test that transient failures are retried."""
        from tally_core.billing.currency import CoinbaseRateProvider

        attempts = []

        def handler(request):
            attempts.append(1)
            if len(attempts) < 3:
                return httpx.Response(503)
            return httpx.Response(200, json={"data": {"rates": {"USD": "1.08"}}})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        provider = CoinbaseRateProvider(client=client, backoff_seconds=0, clock=clock)

        assert await provider.get_rate("EUR", "USD") == Decimal("1.08")
        assert len(attempts) == 3
        await client.aclose()

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, clock):
        """Test that persistent failures raise RateFetchError."""
        from tally_core.billing.base import RateFetchError
        from tally_core.billing.currency import CoinbaseRateProvider

        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
        provider = CoinbaseRateProvider(client=client, max_retries=2, backoff_seconds=0, clock=clock)

        with pytest.raises(RateFetchError):
            await provider.get_rate("EUR", "USD")
        await client.aclose()

    @pytest.mark.asyncio
    async def test_malformed_payload(self, clock):
        """Test that a payload without rates is treated as a failure."""
        from tally_core.billing.base import RateFetchError
        from tally_core.billing.currency import CoinbaseRateProvider

        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, json=["nope"])))
        provider = CoinbaseRateProvider(client=client, max_retries=1, clock=clock)

        with pytest.raises(RateFetchError):
            await provider.get_rate("EUR", "USD")
        await client.aclose()

    @pytest.mark.asyncio
    async def test_as_conversion_provider(self, clock):
        """Test the HTTP provider behind the conversion service."""
        from tally_core.billing.currency import CoinbaseRateProvider, CurrencyConversionService

        client = httpx.AsyncClient(transport=httpx.MockTransport(rates_handler({"BTC": {"USD": "50000"}})))
        service = CurrencyConversionService(provider=CoinbaseRateProvider(client=client, clock=clock))

        assert await service.convert(25_000_000, "BTC", "USD") == 1_250_000
        await client.aclose()

    def test_invalid_retries(self):
        """Test that at least one attempt is required."""
        from tally_core.billing.currency import CoinbaseRateProvider

        with pytest.raises(ValueError):
            CoinbaseRateProvider(max_retries=0)
