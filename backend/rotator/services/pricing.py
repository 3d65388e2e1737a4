"""Price oracles.

Every oracle answers the same question: how many units of the quote coin
one unit of a coin is worth right now. Oracles are side-effect free from
the caller's point of view; failures raise PriceUnavailableError.

Sources:
- ExchangePriceOracle: last trade price from the connected exchange
- CoinGeckoPriceOracle: CoinGecko public simple price API
- FallbackPriceOracle: primary source, secondary when the primary fails
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional

import aiohttp

from ..models import utcnow
from .exchange import ExchangeService

logger = logging.getLogger(__name__)


class PriceUnavailableError(Exception):
    """A price could not be obtained from any source."""

    def __init__(self, coin: str, quote: str, detail: str = ""):
        self.coin = coin
        self.quote = quote
        message = f"Price of {coin} in {quote} unavailable"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


@dataclass
class PriceQuote:
    """A price and where it came from."""
    price: float
    source: str
    timestamp: datetime = field(default_factory=utcnow)


class PriceOracle(ABC):
    """Source of current coin prices."""

    @abstractmethod
    async def get_price(self, coin: str, quote: str) -> PriceQuote:
        """Price of one unit of coin expressed in quote.

        Raises:
            PriceUnavailableError: If no price can be produced
        """
        pass


class ExchangePriceOracle(PriceOracle):
    """Prices from the exchange ticker, trying the inverse pair as well."""

    def __init__(self, exchange: ExchangeService):
        self.exchange = exchange

    async def get_price(self, coin: str, quote: str) -> PriceQuote:
        if coin == quote:
            return PriceQuote(price=1.0, source="identity")

        ticker = await self.exchange.get_ticker(f"{coin}/{quote}")
        if ticker and ticker.last > 0:
            return PriceQuote(price=ticker.last, source=self.exchange.exchange_id)

        inverse = await self.exchange.get_ticker(f"{quote}/{coin}")
        if inverse and inverse.last > 0:
            return PriceQuote(price=1 / inverse.last, source=f"{self.exchange.exchange_id}_inverse")

        raise PriceUnavailableError(coin, quote, f"no ticker on {self.exchange.exchange_id}")


# CoinGecko asset ids for common symbols
COINGECKO_IDS = {
    "BTC": "bitcoin",
    "ETH": "ethereum",
    "BNB": "binancecoin",
    "SOL": "solana",
    "XRP": "ripple",
    "ADA": "cardano",
    "DOGE": "dogecoin",
    "DOT": "polkadot",
    "AVAX": "avalanche-2",
    "LINK": "chainlink",
    "LTC": "litecoin",
    "TRX": "tron",
    "MATIC": "matic-network",
    "USDT": "tether",
    "USDC": "usd-coin",
}

# Quote symbols CoinGecko can price directly as vs_currencies
COINGECKO_VS_CURRENCIES = {
    "USD": "usd",
    "USDT": "usd",
    "USDC": "usd",
    "EUR": "eur",
    "BTC": "btc",
    "ETH": "eth",
}


class CoinGeckoPriceOracle(PriceOracle):
    """Prices from the CoinGecko simple price endpoint."""

    def __init__(
        self,
        api_url: str = "https://api.coingecko.com/api/v3",
        timeout_seconds: float = 10.0,
        coin_ids: Optional[Dict[str, str]] = None,
    ):
        self.api_url = api_url
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.coin_ids = dict(COINGECKO_IDS)
        if coin_ids:
            self.coin_ids.update(coin_ids)

    async def get_price(self, coin: str, quote: str) -> PriceQuote:
        if coin == quote:
            return PriceQuote(price=1.0, source="identity")

        coin_id = self.coin_ids.get(coin)
        vs_currency = COINGECKO_VS_CURRENCIES.get(quote)
        if not coin_id or not vs_currency:
            raise PriceUnavailableError(coin, quote, "pair not supported by coingecko")

        params = {"ids": coin_id, "vs_currencies": vs_currency}
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.get(f"{self.api_url}/simple/price", params=params) as resp:
                    if resp.status != 200:
                        raise PriceUnavailableError(coin, quote, f"coingecko returned {resp.status}")
                    data = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise PriceUnavailableError(coin, quote, f"coingecko request failed: {e}") from e

        price = (data.get(coin_id) or {}).get(vs_currency)
        if not price or price <= 0:
            raise PriceUnavailableError(coin, quote, "coingecko returned no price")

        return PriceQuote(price=float(price), source="coingecko")


class FallbackPriceOracle(PriceOracle):
    """Tries a primary oracle and falls back to a secondary one."""

    def __init__(self, primary: PriceOracle, secondary: PriceOracle):
        self.primary = primary
        self.secondary = secondary

    async def get_price(self, coin: str, quote: str) -> PriceQuote:
        try:
            return await self.primary.get_price(coin, quote)
        except PriceUnavailableError as e:
            logger.warning(f"Primary price source failed for {coin}/{quote}, trying fallback: {e}")

        quote_result = await self.secondary.get_price(coin, quote)
        return PriceQuote(
            price=quote_result.price,
            source=f"{quote_result.source}_fallback",
            timestamp=quote_result.timestamp,
        )
