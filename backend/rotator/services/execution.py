"""Exchange executors - turn a rotation into exchange legs.

A rotation from one coin to another is either a direct market order or
two legs through the preferred stablecoin. Settlement asks the executor
for the route, then executes it one leg at a time so each leg becomes a
TradeStep. Every leg carries a client order id derived from the
settlement attempt, so resubmitting a leg is idempotent on the exchange.
"""

import logging
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

import ccxt.async_support as ccxt

from .exchange import ExchangeService, ExchangeOrder, OrderSide
from .pricing import PriceOracle, PriceUnavailableError

logger = logging.getLogger(__name__)

Leg = Tuple[str, str]


class ExecutionError(Exception):
    """The leg was not filled and no funds moved (rejected order, missing market, not connected)."""

    def __init__(self, from_coin: str, to_coin: str, detail: str, raw: Optional[Dict[str, Any]] = None):
        self.from_coin = from_coin
        self.to_coin = to_coin
        self.detail = detail
        self.raw = raw or {}
        super().__init__(f"{from_coin}->{to_coin} rejected: {detail}")


class ExecutionOutcomeUnknownError(Exception):
    """The order may or may not have filled: the exchange stopped answering after it was sent."""

    def __init__(self, from_coin: str, to_coin: str, client_order_id: str, detail: str):
        self.from_coin = from_coin
        self.to_coin = to_coin
        self.client_order_id = client_order_id
        self.detail = detail
        super().__init__(f"{from_coin}->{to_coin} order {client_order_id} outcome unknown: {detail}")


@dataclass
class LegFill:
    """Result of one executed leg.

    executed_price is units of to_coin per unit of from_coin; commission is
    valued in the reference coin.
    """
    from_coin: str
    to_coin: str
    from_amount: float
    executed_amount: float
    executed_price: float
    commission: float
    external_trade_id: str
    status: str = "completed"
    raw: Dict[str, Any] = field(default_factory=dict)


class ExchangeExecutor(ABC):
    """Capability to convert holdings on an exchange account."""

    @abstractmethod
    async def route(self, from_coin: str, to_coin: str) -> List[Leg]:
        """Ordered legs that convert from_coin into to_coin."""
        pass

    @abstractmethod
    async def execute(
        self,
        account_id: str,
        from_coin: str,
        to_coin: str,
        amount: float,
        client_order_id: str,
        reference_coin: str = "USDT",
    ) -> LegFill:
        """Execute one leg.

        Raises:
            ExecutionError: If the leg was not filled
            ExecutionOutcomeUnknownError: If the order was sent but its fill cannot be confirmed
        """
        pass

    async def available_balance(self, account_id: str, coin: str) -> Optional[float]:
        """Free balance of a coin on the account, None when the executor has no account to ask.

        Raises:
            ExecutionError: If the balance cannot be fetched
        """
        return None


def stablecoin_route(from_coin: str, to_coin: str, stablecoin: str, direct: bool) -> List[Leg]:
    """Direct leg when either side is the stablecoin or a direct market exists."""
    if direct or stablecoin in (from_coin, to_coin):
        return [(from_coin, to_coin)]
    return [(from_coin, stablecoin), (stablecoin, to_coin)]


class SimulatedExchangeExecutor(ExchangeExecutor):
    """Dry-run executor filling legs at oracle prices minus a fee.

    Recent fills are remembered by client order id so a resubmitted leg gets
    the same fill back. Only the most recent max_remembered_fills are kept.
    """

    def __init__(
        self,
        oracle: PriceOracle,
        preferred_stablecoin: str = "USDT",
        fee_rate: float = 0.001,
        direct_pairs: Optional[Set[Leg]] = None,
        max_remembered_fills: int = 1000,
    ):
        """Initialize simulated executor.

        Args:
            oracle: Price source for fills
            preferred_stablecoin: Intermediate coin for indirect routes
            fee_rate: Fee charged per leg as a fraction of the leg value
            direct_pairs: Coin pairs tradable directly, in either direction
            max_remembered_fills: Fills kept for idempotent resubmission
        """
        self.oracle = oracle
        self.preferred_stablecoin = preferred_stablecoin
        self.fee_rate = fee_rate
        self.direct_pairs = set(direct_pairs or set())
        self.max_remembered_fills = max_remembered_fills
        self._fills: "OrderedDict[str, LegFill]" = OrderedDict()
        self._counter = 0

    def _remember(self, client_order_id: str, fill: LegFill) -> None:
        self._fills[client_order_id] = fill
        while len(self._fills) > self.max_remembered_fills:
            self._fills.popitem(last=False)

    async def route(self, from_coin: str, to_coin: str) -> List[Leg]:
        direct = (from_coin, to_coin) in self.direct_pairs or (to_coin, from_coin) in self.direct_pairs
        return stablecoin_route(from_coin, to_coin, self.preferred_stablecoin, direct)

    async def execute(
        self,
        account_id: str,
        from_coin: str,
        to_coin: str,
        amount: float,
        client_order_id: str,
        reference_coin: str = "USDT",
    ) -> LegFill:
        if client_order_id in self._fills:
            logger.info(f"Simulated leg {client_order_id} already filled, returning previous fill")
            self._fills.move_to_end(client_order_id)
            return self._fills[client_order_id]

        if amount <= 0:
            raise ExecutionError(from_coin, to_coin, f"amount must be positive, got {amount}")

        try:
            from_price = (await self.oracle.get_price(from_coin, reference_coin)).price
            to_price = (await self.oracle.get_price(to_coin, reference_coin)).price
        except PriceUnavailableError as e:
            raise ExecutionError(from_coin, to_coin, str(e)) from e

        value = amount * from_price
        fee_value = value * self.fee_rate
        executed_amount = (value - fee_value) / to_price

        self._counter += 1
        fill = LegFill(
            from_coin=from_coin,
            to_coin=to_coin,
            from_amount=amount,
            executed_amount=executed_amount,
            executed_price=from_price / to_price,
            commission=fee_value,
            external_trade_id=f"sim_{self._counter}",
            raw={
                "simulated": True,
                "account_id": account_id,
                "client_order_id": client_order_id,
                "from_price": from_price,
                "to_price": to_price,
                "reference_coin": reference_coin,
            },
        )
        self._remember(client_order_id, fill)
        logger.info(
            f"Simulated {amount:.8f} {from_coin} -> {executed_amount:.8f} {to_coin} "
            f"(fee {fee_value:.8f} {reference_coin})"
        )
        return fill


class CcxtExchangeExecutor(ExchangeExecutor):
    """Executor placing market orders through ccxt."""

    def __init__(self, exchange: ExchangeService, oracle: PriceOracle, preferred_stablecoin: str = "USDT"):
        self.exchange = exchange
        self.oracle = oracle
        self.preferred_stablecoin = preferred_stablecoin

    async def route(self, from_coin: str, to_coin: str) -> List[Leg]:
        direct = (
            self.exchange.has_market(f"{from_coin}/{to_coin}")
            or self.exchange.has_market(f"{to_coin}/{from_coin}")
        )
        return stablecoin_route(from_coin, to_coin, self.preferred_stablecoin, direct)

    async def execute(
        self,
        account_id: str,
        from_coin: str,
        to_coin: str,
        amount: float,
        client_order_id: str,
        reference_coin: str = "USDT",
    ) -> LegFill:
        sell_symbol = f"{from_coin}/{to_coin}"
        buy_symbol = f"{to_coin}/{from_coin}"

        try:
            if self.exchange.has_market(sell_symbol):
                order = await self.exchange.place_market_order(
                    sell_symbol, OrderSide.SELL, amount, client_order_id=client_order_id
                )
                from_amount = order.filled
                to_amount = order.cost
                price = order.price
            elif self.exchange.has_market(buy_symbol):
                order = await self.exchange.place_market_buy_with_cost(
                    buy_symbol, amount, client_order_id=client_order_id
                )
                from_amount = order.cost
                to_amount = order.filled
                price = 1 / order.price if order.price else 0.0
            else:
                raise ExecutionError(from_coin, to_coin, f"no market for {sell_symbol} or {buy_symbol}")
        except ccxt.NetworkError as e:
            # Timeouts included: the order may have reached the exchange
            raise ExecutionOutcomeUnknownError(from_coin, to_coin, client_order_id, str(e)) from e
        except (ccxt.BaseError, ConnectionError) as e:
            raise ExecutionError(from_coin, to_coin, str(e)) from e

        if order.filled <= 0:
            raise ExecutionError(
                from_coin, to_coin, f"order {order.id} not filled (status {order.status})", order.raw
            )

        if order.fee_currency == to_coin:
            to_amount -= order.fee

        return LegFill(
            from_coin=from_coin,
            to_coin=to_coin,
            from_amount=from_amount,
            executed_amount=to_amount,
            executed_price=price,
            commission=await self._fee_value(order, reference_coin),
            external_trade_id=order.id,
            status="completed",
            raw=order.raw,
        )

    async def available_balance(self, account_id: str, coin: str) -> Optional[float]:
        balance = await self.exchange.get_balance(coin)
        if balance is None:
            raise ExecutionError(coin, coin, f"could not fetch {coin} balance of account {account_id}")
        return balance.free

    async def _fee_value(self, order: ExchangeOrder, reference_coin: str) -> float:
        """Value an order's fee in the reference coin."""
        if not order.fee or not order.fee_currency:
            return 0.0
        try:
            quote = await self.oracle.get_price(order.fee_currency, reference_coin)
        except PriceUnavailableError as e:
            logger.warning(f"Could not value fee of order {order.id} in {reference_coin}: {e}")
            return 0.0
        return order.fee * quote.price
