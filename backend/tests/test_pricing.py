"""Tests for price oracles."""

from datetime import datetime
from unittest.mock import AsyncMock, Mock

import aiohttp
import pytest

from rotator.services import (
    CoinGeckoPriceOracle,
    ExchangePriceOracle,
    ExchangeService,
    FallbackPriceOracle,
    PriceQuote,
    PriceUnavailableError,
    Ticker,
)


def ticker(symbol, last):
    return Ticker(symbol=symbol, bid=last, ask=last, last=last, timestamp=datetime(2025, 6, 1))


@pytest.fixture
def exchange():
    service = Mock(spec=ExchangeService)
    service.exchange_id = "mexc"
    service.get_ticker = AsyncMock(return_value=None)
    return service


class TestExchangePriceOracle:
    """Prices from exchange tickers."""

    @pytest.mark.asyncio
    async def test_direct_pair(self, exchange):
        exchange.get_ticker.return_value = ticker("BTC/USDT", 50000.0)

        quote = await ExchangePriceOracle(exchange).get_price("BTC", "USDT")

        assert quote.price == 50000.0
        assert quote.source == "mexc"
        exchange.get_ticker.assert_awaited_once_with("BTC/USDT")

    @pytest.mark.asyncio
    async def test_inverse_pair(self, exchange):
        exchange.get_ticker.side_effect = [None, ticker("USDT/EUR", 0.5)]

        quote = await ExchangePriceOracle(exchange).get_price("EUR", "USDT")

        assert quote.price == pytest.approx(2.0)
        assert quote.source == "mexc_inverse"

    @pytest.mark.asyncio
    async def test_identity(self, exchange):
        quote = await ExchangePriceOracle(exchange).get_price("USDT", "USDT")

        assert quote.price == 1.0
        exchange.get_ticker.assert_not_called()

    @pytest.mark.asyncio
    async def test_unavailable(self, exchange):
        with pytest.raises(PriceUnavailableError) as exc_info:
            await ExchangePriceOracle(exchange).get_price("FOO", "USDT")

        assert exc_info.value.coin == "FOO"


class FakeResponse:
    def __init__(self, status, payload):
        self.status = status
        self.payload = payload

    async def json(self):
        return self.payload

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    """Stands in for aiohttp.ClientSession, answering every GET the same way."""

    requests = []
    response = FakeResponse(200, {})

    def __init__(self, *args, **kwargs):
        pass

    def get(self, url, params=None):
        FakeSession.requests.append((url, params))
        if isinstance(FakeSession.response, Exception):
            raise FakeSession.response
        return FakeSession.response

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


@pytest.fixture
def fake_http(monkeypatch):
    FakeSession.requests = []
    monkeypatch.setattr(aiohttp, "ClientSession", FakeSession)
    return FakeSession


class TestCoinGeckoPriceOracle:
    """Prices from the CoinGecko simple price API."""

    @pytest.mark.asyncio
    async def test_price(self, fake_http):
        fake_http.response = FakeResponse(200, {"bitcoin": {"usd": 50123.0}})

        quote = await CoinGeckoPriceOracle().get_price("BTC", "USDT")

        assert quote.price == 50123.0
        assert quote.source == "coingecko"
        assert fake_http.requests[0][1] == {"ids": "bitcoin", "vs_currencies": "usd"}

    @pytest.mark.asyncio
    async def test_unsupported_pair(self, fake_http):
        with pytest.raises(PriceUnavailableError):
            await CoinGeckoPriceOracle().get_price("NOTACOIN", "USDT")
        assert fake_http.requests == []

    @pytest.mark.asyncio
    async def test_custom_coin_ids(self, fake_http):
        fake_http.response = FakeResponse(200, {"pepe": {"usd": 0.00001}})

        quote = await CoinGeckoPriceOracle(coin_ids={"PEPE": "pepe"}).get_price("PEPE", "USD")

        assert quote.price == pytest.approx(0.00001)

    @pytest.mark.asyncio
    async def test_http_error(self, fake_http):
        fake_http.response = FakeResponse(429, {})

        with pytest.raises(PriceUnavailableError, match="429"):
            await CoinGeckoPriceOracle().get_price("BTC", "USDT")

    @pytest.mark.asyncio
    async def test_connection_error(self, fake_http):
        fake_http.response = aiohttp.ClientConnectionError("connection refused")

        with pytest.raises(PriceUnavailableError, match="request failed"):
            await CoinGeckoPriceOracle().get_price("BTC", "USDT")

    @pytest.mark.asyncio
    async def test_missing_price_in_payload(self, fake_http):
        fake_http.response = FakeResponse(200, {})

        with pytest.raises(PriceUnavailableError):
            await CoinGeckoPriceOracle().get_price("BTC", "USDT")


class TestFallbackPriceOracle:
    """Primary source with a secondary fallback."""

    @pytest.mark.asyncio
    async def test_primary_answers(self):
        primary = Mock(get_price=AsyncMock(return_value=PriceQuote(price=10.0, source="mexc")))
        secondary = Mock(get_price=AsyncMock())

        quote = await FallbackPriceOracle(primary, secondary).get_price("SOL", "USDT")

        assert quote.price == 10.0
        secondary.get_price.assert_not_called()

    @pytest.mark.asyncio
    async def test_secondary_used_when_primary_fails(self):
        primary = Mock(get_price=AsyncMock(side_effect=PriceUnavailableError("SOL", "USDT", "no ticker")))
        secondary = Mock(get_price=AsyncMock(return_value=PriceQuote(price=11.0, source="coingecko")))

        quote = await FallbackPriceOracle(primary, secondary).get_price("SOL", "USDT")

        assert quote.price == 11.0
        assert quote.source == "coingecko_fallback"

    @pytest.mark.asyncio
    async def test_both_fail(self):
        failing = Mock(get_price=AsyncMock(side_effect=PriceUnavailableError("SOL", "USDT")))

        with pytest.raises(PriceUnavailableError):
            await FallbackPriceOracle(failing, failing).get_price("SOL", "USDT")
