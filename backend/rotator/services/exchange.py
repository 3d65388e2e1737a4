"""Exchange service for interacting with crypto exchanges via ccxt."""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any
from dataclasses import dataclass, field
from enum import Enum

import ccxt.async_support as ccxt

from ..models import utcnow

logger = logging.getLogger(__name__)


class OrderSide(str, Enum):
    """Order side enumeration."""
    BUY = "buy"
    SELL = "sell"


@dataclass
class ExchangeOrder:
    """Exchange order result."""
    id: str
    client_order_id: Optional[str]
    symbol: str
    side: str
    amount: float
    price: float
    cost: float
    fee: float
    fee_currency: str
    status: str
    timestamp: datetime
    filled: float
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Ticker:
    """Market ticker data."""
    symbol: str
    bid: float
    ask: float
    last: float
    timestamp: datetime


@dataclass
class Balance:
    """Account balance of one currency."""
    currency: str
    free: float
    used: float
    total: float


def _from_millis(timestamp_ms: Optional[int]) -> datetime:
    """ccxt millisecond timestamp as naive UTC, now if missing."""
    if not timestamp_ms:
        return utcnow()
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).replace(tzinfo=None)


class ExchangeService:
    """Service for interacting with a crypto exchange."""

    def __init__(
        self,
        exchange_id: str = "mexc",
        api_key: str = "",
        api_secret: str = "",
        sandbox: bool = False,
        retry_count: int = 3,
        retry_delay: float = 1.0,
    ):
        """Initialize the exchange service.

        Args:
            exchange_id: The exchange identifier (e.g., 'mexc', 'binance')
            api_key: API key, empty for public endpoints only
            api_secret: API secret
            sandbox: Use the exchange's sandbox environment
            retry_count: Attempts for rate limit and network errors
            retry_delay: Base delay between attempts in seconds
        """
        self.exchange_id = exchange_id
        self.exchange: Optional[ccxt.Exchange] = None
        self._api_key = api_key
        self._api_secret = api_secret
        self._sandbox = sandbox
        self._connected = False
        self._retry_count = retry_count
        self._retry_delay = retry_delay

    async def connect(self) -> bool:
        """Connect to the exchange and load its markets.

        Returns:
            True if connection successful, False otherwise.
        """
        try:
            exchange_class = getattr(ccxt, self.exchange_id, None)
            if not exchange_class:
                logger.error(f"Exchange {self.exchange_id} not supported by ccxt")
                return False

            self.exchange = exchange_class({
                "apiKey": self._api_key,
                "secret": self._api_secret,
                "enableRateLimit": True,
                "options": {
                    "defaultType": "spot",
                }
            })
            if self._sandbox:
                self.exchange.set_sandbox_mode(True)

            await self._execute_with_retry(self.exchange.load_markets)
            self._connected = True
            logger.info(f"Connected to {self.exchange_id} exchange")
            return True

        except Exception as e:
            logger.error(f"Failed to connect to {self.exchange_id}: {e}")
            self._connected = False
            return False

    async def disconnect(self) -> None:
        """Disconnect from the exchange."""
        if self.exchange:
            await self.exchange.close()
            self.exchange = None
            self._connected = False
            logger.info(f"Disconnected from {self.exchange_id}")

    def is_connected(self) -> bool:
        """Check if connected to exchange."""
        return self._connected and self.exchange is not None

    async def _execute_with_retry(self, func, *args, **kwargs):
        """Execute a function with retry logic.

        Rate limit and network errors are retried with a growing delay;
        exchange errors are business errors and are raised straight away.

        Raises:
            The last exception if all retries fail
        """
        last_exception = None

        for attempt in range(self._retry_count):
            try:
                return await func(*args, **kwargs)
            except ccxt.RateLimitExceeded as e:
                logger.warning(f"Rate limit exceeded, waiting... (attempt {attempt + 1})")
                await asyncio.sleep(self._retry_delay * (attempt + 1) * 2)
                last_exception = e
            except ccxt.NetworkError as e:
                logger.warning(f"Network error, retrying... (attempt {attempt + 1}): {e}")
                await asyncio.sleep(self._retry_delay * (attempt + 1))
                last_exception = e
            except ccxt.ExchangeError as e:
                logger.error(f"Exchange error: {e}")
                raise

        raise last_exception

    def has_market(self, symbol: str) -> bool:
        """Whether the exchange lists a spot market for the symbol."""
        if not self.is_connected() or not self.exchange.markets:
            return False
        return symbol in self.exchange.markets

    async def get_ticker(self, symbol: str) -> Optional[Ticker]:
        """Get current ticker for a symbol.

        Args:
            symbol: Trading pair symbol (e.g., 'BTC/USDT')

        Returns:
            Ticker data or None if failed
        """
        if not self.is_connected():
            logger.error("Not connected to exchange")
            return None

        try:
            ticker = await self._execute_with_retry(
                self.exchange.fetch_ticker, symbol
            )
            return Ticker(
                symbol=ticker["symbol"],
                bid=ticker.get("bid", 0) or 0,
                ask=ticker.get("ask", 0) or 0,
                last=ticker.get("last", 0) or 0,
                timestamp=_from_millis(ticker.get("timestamp")),
            )
        except Exception as e:
            logger.error(f"Failed to get ticker for {symbol}: {e}")
            return None

    async def get_balance(self, currency: str) -> Optional[Balance]:
        """Get the account balance of a currency.

        Returns:
            Balance, or None if not connected or the request failed
        """
        if not self.is_connected():
            logger.error("Not connected to exchange")
            return None

        try:
            balance = await self._execute_with_retry(self.exchange.fetch_balance)
            currency_balance = balance.get(currency, {}) or {}
            return Balance(
                currency=currency,
                free=currency_balance.get("free", 0) or 0,
                used=currency_balance.get("used", 0) or 0,
                total=currency_balance.get("total", 0) or 0,
            )
        except Exception as e:
            logger.error(f"Failed to get balance for {currency}: {e}")
            return None

    async def place_market_order(
        self,
        symbol: str,
        side: OrderSide,
        amount: float,
        client_order_id: Optional[str] = None,
    ) -> ExchangeOrder:
        """Place a market order for an amount of the base currency.

        Args:
            symbol: Trading pair symbol
            side: Buy or sell
            amount: Amount to trade (in base currency)
            client_order_id: Idempotency key forwarded to the exchange

        Returns:
            Order result

        Raises:
            ccxt.BaseError: If the exchange refuses the order or stays unreachable
            ConnectionError: If the service is not connected
        """
        if not self.is_connected():
            raise ConnectionError(f"Not connected to {self.exchange_id}")

        params = {"clientOrderId": client_order_id} if client_order_id else {}
        order = await self._execute_with_retry(
            self.exchange.create_order,
            symbol,
            "market",
            side.value,
            amount,
            None,
            params,
        )
        return self._parse_order(order, client_order_id)

    async def place_market_buy_with_cost(
        self,
        symbol: str,
        cost: float,
        client_order_id: Optional[str] = None,
    ) -> ExchangeOrder:
        """Buy the base currency spending an amount of the quote currency.

        Raises:
            ccxt.BaseError: If the exchange refuses the order or stays unreachable
            ConnectionError: If the service is not connected
        """
        if not self.is_connected():
            raise ConnectionError(f"Not connected to {self.exchange_id}")

        params = {"clientOrderId": client_order_id} if client_order_id else {}
        if self.exchange.has.get("createMarketBuyOrderWithCost"):
            order = await self._execute_with_retry(
                self.exchange.create_market_buy_order_with_cost, symbol, cost, params
            )
            return self._parse_order(order, client_order_id)

        ticker = await self.get_ticker(symbol)
        if not ticker or not (ticker.ask or ticker.last):
            raise ccxt.ExchangeError(f"No price available to size a market buy on {symbol}")
        amount = cost / (ticker.ask or ticker.last)
        return await self.place_market_order(symbol, OrderSide.BUY, amount, client_order_id)

    def _parse_order(self, order: Dict[str, Any], client_order_id: Optional[str] = None) -> ExchangeOrder:
        """Parse ccxt order response to ExchangeOrder."""
        fee = order.get("fee", {}) or {}
        filled = order.get("filled", 0) or 0
        price = order.get("average", 0) or order.get("price", 0) or 0
        return ExchangeOrder(
            id=str(order.get("id", "")),
            client_order_id=order.get("clientOrderId") or client_order_id,
            symbol=order.get("symbol", ""),
            side=order.get("side", ""),
            amount=order.get("amount", 0) or 0,
            price=price,
            cost=order.get("cost", 0) or filled * price,
            fee=fee.get("cost", 0) or 0,
            fee_currency=fee.get("currency", "") or "",
            status=order.get("status", "unknown") or "unknown",
            timestamp=_from_millis(order.get("timestamp")),
            filled=filled,
            raw=order,
        )
