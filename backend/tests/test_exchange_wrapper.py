"""Unit tests for exchange wrapper service.

Tests the boundary between the rotation engine and the CCXT library.
All CCXT interactions are mocked - no real exchange calls.
"""

from datetime import datetime
from unittest.mock import AsyncMock, Mock, patch

import ccxt.async_support as ccxt
import pytest

from rotator.services import ExchangeService, OrderSide


def create_mock_ccxt_order(
    order_id: str = "12345",
    symbol: str = "BTC/USDT",
    side: str = "sell",
    amount: float = 1.0,
    price: float = 50000.0,
    cost: float = 50000.0,
    status: str = "closed",
    filled: float = None,
    fee_cost: float = 50.0,
    fee_currency: str = "USDT",
) -> dict:
    """Create a mock CCXT order response."""
    if filled is None:
        filled = amount if status == "closed" else 0.0

    return {
        "id": order_id,
        "symbol": symbol,
        "side": side,
        "type": "market",
        "amount": amount,
        "price": price,
        "average": price,
        "cost": cost,
        "filled": filled,
        "status": status,
        "timestamp": int(datetime(2025, 6, 1, 12, 0, 0).timestamp() * 1000),
        "fee": {"cost": fee_cost, "currency": fee_currency},
    }


@pytest.fixture
def connected_service():
    """Exchange service wired to a mocked ccxt exchange."""
    mock_exchange = AsyncMock()
    mock_exchange.markets = {"BTC/USDT": {}, "ETH/USDT": {}}
    mock_exchange.has = {}

    service = ExchangeService(exchange_id="mexc", retry_delay=0)
    service.exchange = mock_exchange
    service._connected = True
    return service, mock_exchange


class TestConnection:
    """Connecting to an exchange."""

    @pytest.mark.asyncio
    async def test_unknown_exchange(self):
        service = ExchangeService(exchange_id="not-an-exchange")
        assert await service.connect() is False
        assert service.is_connected() is False

    @pytest.mark.asyncio
    async def test_connect_loads_markets(self):
        mock_exchange = AsyncMock()
        mock_exchange_class = Mock(return_value=mock_exchange)

        with patch("rotator.services.exchange.ccxt.mexc", mock_exchange_class):
            service = ExchangeService(exchange_id="mexc", api_key="key", api_secret="secret")
            assert await service.connect() is True

        mock_exchange.load_markets.assert_awaited_once()
        assert mock_exchange_class.call_args[0][0]["apiKey"] == "key"
        assert service.is_connected() is True

        await service.disconnect()
        mock_exchange.close.assert_awaited_once()
        assert service.is_connected() is False

    @pytest.mark.asyncio
    async def test_connect_failure(self):
        mock_exchange = AsyncMock()
        mock_exchange.load_markets.side_effect = ccxt.AuthenticationError("bad key")

        with patch("rotator.services.exchange.ccxt.mexc", Mock(return_value=mock_exchange)):
            service = ExchangeService(exchange_id="mexc", retry_delay=0)
            assert await service.connect() is False


class TestMarketData:
    """Tickers and markets."""

    @pytest.mark.asyncio
    async def test_ticker(self, connected_service):
        service, mock_exchange = connected_service
        mock_exchange.fetch_ticker.return_value = {
            "symbol": "BTC/USDT", "bid": 49990.0, "ask": 50010.0, "last": 50000.0, "timestamp": None,
        }

        ticker = await service.get_ticker("BTC/USDT")

        assert ticker.last == 50000.0
        assert ticker.bid == 49990.0

    @pytest.mark.asyncio
    async def test_ticker_retries_network_errors(self, connected_service):
        service, mock_exchange = connected_service
        mock_exchange.fetch_ticker.side_effect = [
            ccxt.NetworkError("timeout"),
            {"symbol": "BTC/USDT", "bid": 1.0, "ask": 1.0, "last": 1.0, "timestamp": None},
        ]

        ticker = await service.get_ticker("BTC/USDT")

        assert ticker.last == 1.0
        assert mock_exchange.fetch_ticker.await_count == 2

    @pytest.mark.asyncio
    async def test_ticker_failure_returns_none(self, connected_service):
        service, mock_exchange = connected_service
        mock_exchange.fetch_ticker.side_effect = ccxt.BadSymbol("no such market")

        assert await service.get_ticker("FOO/BAR") is None

    @pytest.mark.asyncio
    async def test_ticker_when_disconnected(self):
        assert await ExchangeService().get_ticker("BTC/USDT") is None

    def test_has_market(self, connected_service):
        service, _ = connected_service
        assert service.has_market("BTC/USDT") is True
        assert service.has_market("BTC/ETH") is False


class TestBalances:
    """Account balances."""

    @pytest.mark.asyncio
    async def test_balance(self, connected_service):
        service, mock_exchange = connected_service
        mock_exchange.fetch_balance.return_value = {
            "BTC": {"free": 0.75, "used": 0.25, "total": 1.0},
            "free": {"BTC": 0.75},
        }

        balance = await service.get_balance("BTC")

        assert balance.currency == "BTC"
        assert balance.free == 0.75
        assert balance.used == 0.25
        assert balance.total == 1.0

    @pytest.mark.asyncio
    async def test_missing_currency_is_zero(self, connected_service):
        service, mock_exchange = connected_service
        mock_exchange.fetch_balance.return_value = {"BTC": {"free": 1.0, "used": 0.0, "total": 1.0}}

        balance = await service.get_balance("SOL")

        assert balance.free == 0
        assert balance.total == 0

    @pytest.mark.asyncio
    async def test_balance_failure_returns_none(self, connected_service):
        service, mock_exchange = connected_service
        mock_exchange.fetch_balance.side_effect = ccxt.AuthenticationError("invalid api key")

        assert await service.get_balance("BTC") is None

    @pytest.mark.asyncio
    async def test_balance_when_disconnected(self):
        assert await ExchangeService().get_balance("BTC") is None


class TestOrders:
    """Order placement."""

    @pytest.mark.asyncio
    async def test_market_sell_forwards_client_order_id(self, connected_service):
        service, mock_exchange = connected_service
        mock_exchange.create_order.return_value = create_mock_ccxt_order(order_id="sell1")

        order = await service.place_market_order("BTC/USDT", OrderSide.SELL, 1.0, client_order_id="abc-1")

        args = mock_exchange.create_order.call_args[0]
        assert args[:4] == ("BTC/USDT", "market", "sell", 1.0)
        assert args[5] == {"clientOrderId": "abc-1"}
        assert order.id == "sell1"
        assert order.client_order_id == "abc-1"
        assert order.filled == 1.0
        assert order.cost == 50000.0
        assert order.fee == 50.0
        assert order.fee_currency == "USDT"

    @pytest.mark.asyncio
    async def test_exchange_error_is_not_retried(self, connected_service):
        service, mock_exchange = connected_service
        mock_exchange.create_order.side_effect = ccxt.InsufficientFunds("balance too low")

        with pytest.raises(ccxt.InsufficientFunds):
            await service.place_market_order("BTC/USDT", OrderSide.SELL, 1.0)

        assert mock_exchange.create_order.await_count == 1

    @pytest.mark.asyncio
    async def test_order_when_disconnected(self):
        with pytest.raises(ConnectionError):
            await ExchangeService().place_market_order("BTC/USDT", OrderSide.SELL, 1.0)

    @pytest.mark.asyncio
    async def test_buy_with_cost_native(self, connected_service):
        service, mock_exchange = connected_service
        mock_exchange.has = {"createMarketBuyOrderWithCost": True}
        mock_exchange.create_market_buy_order_with_cost.return_value = create_mock_ccxt_order(
            symbol="ETH/USDT", side="buy", amount=25.0, price=2000.0, cost=50000.0,
        )

        order = await service.place_market_buy_with_cost("ETH/USDT", 50000.0, client_order_id="abc-2")

        mock_exchange.create_market_buy_order_with_cost.assert_awaited_once_with(
            "ETH/USDT", 50000.0, {"clientOrderId": "abc-2"}
        )
        assert order.filled == 25.0

    @pytest.mark.asyncio
    async def test_buy_with_cost_sized_from_ticker(self, connected_service):
        service, mock_exchange = connected_service
        mock_exchange.fetch_ticker.return_value = {
            "symbol": "ETH/USDT", "bid": 1990.0, "ask": 2000.0, "last": 1995.0, "timestamp": None,
        }
        mock_exchange.create_order.return_value = create_mock_ccxt_order(symbol="ETH/USDT", side="buy", amount=25.0)

        await service.place_market_buy_with_cost("ETH/USDT", 50000.0)

        args = mock_exchange.create_order.call_args[0]
        assert args[2] == "buy"
        assert args[3] == pytest.approx(25.0)
