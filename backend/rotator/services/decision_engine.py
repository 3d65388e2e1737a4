"""Decision engine - decides on each tick whether a bot should rotate coins.

Stages run in order and stop at the first blocking condition:

1. Price fetch: current coin and every candidate, in the bot's reference coin
2. Deviation scoring: relative performance of each candidate since its
   snapshot baseline, compared with the held coin's; the highest deviation
   above the threshold wins, ties go to the lexically smallest symbol
3. Unit gain: units of the target obtainable now versus the most ever held
4. Global protection: net value against the floor derived from the peak
5. Take-profit: a large enough unit gain overrides global protection

Exactly one BotSwapDecision is written per tick. NoSwap decisions are
persisted here; an ApprovedSwap carries its unsaved record to settlement,
which persists it together with the settlement outcome.
Every scored candidate is also recorded as a CoinDeviation row.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Union

from ..models import Bot, BotSwapDecision, CoinDeviation, CoinSnapshot, DecisionOutcome, utcnow
from ..repositories import Repositories, RepositoryProvider
from .global_protection import GlobalProtectionTracker, ProtectionAssessment
from .missed_trades import MissedTradeReason, build_missed_trade
from .pricing import PriceOracle, PriceUnavailableError
from .snapshot_store import SnapshotStore

logger = logging.getLogger(__name__)


class BotNotFoundError(Exception):
    """The bot to evaluate does not exist."""

    def __init__(self, bot_id: int):
        self.bot_id = bot_id
        super().__init__(f"Bot {bot_id} not found")


@dataclass
class CandidateScore:
    """Deviation of one candidate coin against the held coin."""
    coin: str
    price: float
    snapshot_price: float
    deviation_percent: float


@dataclass
class NoSwap:
    """The tick ended without a swap."""
    bot_id: int
    outcome: DecisionOutcome
    reason: str
    record: BotSwapDecision

    @property
    def is_swap(self) -> bool:
        return False


@dataclass
class ApprovedSwap:
    """A swap approved for settlement."""
    bot_id: int
    account_id: str
    from_coin: str
    to_coin: str
    amount: float
    from_price: float
    to_price: float
    deviation_percent: float
    reasoning: List[str]
    record: BotSwapDecision
    take_profit_triggered: bool = False
    is_dry_run: bool = True
    reference_coin: str = "USDT"
    commission_rate: float = 0.0
    # Reference coin value the swap may sell at most, None for no limit
    manual_budget: Optional[float] = None
    metadata: Dict[str, float] = field(default_factory=dict)

    @property
    def is_swap(self) -> bool:
        return True

    @property
    def reason(self) -> str:
        return "; ".join(self.reasoning)


SwapDecision = Union[NoSwap, ApprovedSwap]


def deviation_percent(
    current_price: float,
    current_snapshot_price: float,
    target_price: float,
    target_snapshot_price: float,
) -> float:
    """Relative performance of the target since its baseline versus the held coin's.

    (target/target_snapshot - current/current_snapshot) / (current/current_snapshot) * 100
    """
    current_ratio = current_price / current_snapshot_price
    target_ratio = target_price / target_snapshot_price
    return (target_ratio - current_ratio) / current_ratio * 100


def unit_gain_percent(
    units: float,
    current_price: float,
    target_price: float,
    commission_rate: float,
    target_snapshot: Optional[CoinSnapshot],
) -> Optional[float]:
    """Gain in target units versus the most units of the target ever held.

    None when the target was never held in this epoch: there is no unit
    baseline to compare against.
    """
    if target_snapshot is None or not target_snapshot.was_ever_held:
        return None
    if not target_snapshot.max_units_reached or target_snapshot.max_units_reached <= 0:
        return None

    potential_units = units * current_price / target_price * (1 - commission_rate)
    return (potential_units / target_snapshot.max_units_reached - 1) * 100


def rank_candidates(
    current_coin: str,
    prices: Dict[str, float],
    snapshots: Dict[str, CoinSnapshot],
) -> List[CandidateScore]:
    """Score every candidate coin, best first; ties ordered by symbol."""
    current_snapshot = snapshots.get(current_coin)
    if current_snapshot is None or not current_snapshot.initial_price:
        return []

    scores = []
    for coin, price in prices.items():
        if coin == current_coin:
            continue
        snapshot = snapshots.get(coin)
        if snapshot is None or not snapshot.initial_price or snapshot.initial_price <= 0:
            continue
        scores.append(CandidateScore(
            coin=coin,
            price=price,
            snapshot_price=snapshot.initial_price,
            deviation_percent=deviation_percent(
                prices[current_coin], current_snapshot.initial_price, price, snapshot.initial_price
            ),
        ))

    scores.sort(key=lambda s: (-s.deviation_percent, s.coin))
    return scores


class DecisionEngine:
    """Evaluates bots and produces swap decisions."""

    def __init__(
        self,
        provider: RepositoryProvider,
        oracle: PriceOracle,
        protection: Optional[GlobalProtectionTracker] = None,
        clock: Callable = utcnow,
    ):
        self._provider = provider
        self._oracle = oracle
        self._protection = protection or GlobalProtectionTracker()
        self._clock = clock

    async def evaluate(self, bot_id: int) -> SwapDecision:
        """Run one evaluation tick for a bot.

        Args:
            bot_id: Bot to evaluate

        Returns:
            NoSwap (already persisted) or ApprovedSwap (record pending settlement)

        Raises:
            BotNotFoundError: If the bot does not exist
        """
        async with self._provider.transaction() as repos:
            bot = await repos.bots.get(bot_id)
            if bot is None:
                raise BotNotFoundError(bot_id)
            coins = self._coins_to_price(bot)
            reference_coin = bot.reference_coin

        # === STEP 1: Price fetch (outside any transaction) ===
        prices: Dict[str, float] = {}
        try:
            for coin in coins:
                quote = await self._oracle.get_price(coin, reference_coin)
                prices[coin] = quote.price
        except PriceUnavailableError as e:
            return await self._record_price_unavailable(bot_id, e)

        async with self._provider.transaction() as repos:
            bot = await repos.bots.get(bot_id)
            if bot is None:
                raise BotNotFoundError(bot_id)
            decision = await self._evaluate_with_prices(repos, bot, prices)
            bot.last_check_time = self._clock()

        if decision.is_swap:
            logger.info(
                f"Bot {bot_id}: Swap approved {decision.from_coin} -> {decision.to_coin} "
                f"({decision.deviation_percent:.2f}%)"
            )
        else:
            logger.info(f"Bot {bot_id}: No swap ({decision.outcome.value}): {decision.reason}")
        return decision

    def _coins_to_price(self, bot: Bot) -> List[str]:
        coins = bot.get_coins()
        held = bot.current_coin or bot.initial_coin
        if held and held not in coins:
            coins.append(held)
        return coins

    async def _evaluate_with_prices(
        self, repos: Repositories, bot: Bot, prices: Dict[str, float]
    ) -> SwapDecision:
        store = SnapshotStore(repos)

        if bot.current_coin is None:
            await self._initialize(bot, store, prices)

        snapshots = await store.ensure_baselines(bot, prices)
        current_coin = bot.current_coin
        current_price = prices[current_coin]
        units = await store.units_held(bot, current_coin)

        # Peak ratchet runs every tick, before any stage can short-circuit
        net_value = self._protection.net_value(bot, units, current_price)
        assessment = self._protection.assess(bot, net_value)
        if not assessment.triggered:
            self._protection.ratchet(bot, net_value)

        record = self._new_record(bot, current_coin, current_price, snapshots.get(current_coin), assessment)
        threshold = bot.threshold_percentage or 0.0

        # === STEP 2: Deviation scoring ===
        ranked = rank_candidates(current_coin, prices, snapshots)
        await self._record_deviations(repos, bot, current_coin, current_price, ranked)
        best = ranked[0] if ranked else None
        if best is not None:
            record.to_coin = best.coin
            record.to_coin_price = best.price
            record.to_coin_snapshot = best.snapshot_price
            record.price_deviation_percent = best.deviation_percent

        if best is None or best.deviation_percent <= threshold:
            if best is None:
                reason = f"No candidate with a baseline to compare against {current_coin}"
            else:
                reason = (
                    f"Best candidate {best.coin} deviates {best.deviation_percent:.2f}% "
                    f"from {current_coin}, threshold {threshold:.2f}%"
                )
            missed = None
            if best is not None and best.deviation_percent > 0:
                missed = build_missed_trade(
                    bot.id, MissedTradeReason.BELOW_THRESHOLD, reason,
                    from_coin=current_coin, to_coin=best.coin,
                    deviation_percentage=best.deviation_percent, threshold=threshold,
                )
            return await self._no_swap(repos, bot, record, DecisionOutcome.NOT_TRIGGERED, reason, missed)

        record.deviation_triggered = True
        reasoning = [
            f"{best.coin} outperformed {current_coin} by {best.deviation_percent:.2f}% "
            f"(threshold {threshold:.2f}%)"
        ]

        if units <= 0:
            reason = f"No {current_coin} units held"
            missed = build_missed_trade(
                bot.id, MissedTradeReason.INSUFFICIENT_FUNDS, reason,
                from_coin=current_coin, to_coin=best.coin,
                deviation_percentage=best.deviation_percent, threshold=threshold,
            )
            return await self._no_swap(repos, bot, record, DecisionOutcome.INSUFFICIENT_BALANCE, reason, missed)

        # === STEP 3: Unit gain ===
        target_snapshot = snapshots.get(best.coin)
        gain = unit_gain_percent(units, current_price, best.price, bot.commission_rate or 0.0, target_snapshot)
        record.unit_gain_percent = gain
        tolerance = bot.unit_gain_tolerance_percent or 0.0

        if gain is None:
            reasoning.append(f"{best.coin} not held before in this epoch, no unit baseline")
        elif gain < -tolerance:
            reason = (
                f"Swapping to {best.coin} yields {gain:.2f}% units versus the "
                f"{target_snapshot.max_units_reached:.8f} previously held (tolerance {tolerance:.2f}%)"
            )
            missed = build_missed_trade(
                bot.id, MissedTradeReason.INSUFFICIENT_UNIT_GAIN, reason,
                from_coin=current_coin, to_coin=best.coin,
                deviation_percentage=best.deviation_percent, threshold=threshold,
            )
            return await self._no_swap(repos, bot, record, DecisionOutcome.UNIT_GAIN_BLOCKED, reason, missed)
        else:
            reasoning.append(f"Unit gain {gain:.2f}% on {best.coin}")

        # === STEP 4 + 5: Global protection with take-profit override ===
        take_profit = (
            bool(bot.use_take_profit)
            and bot.take_profit_percentage is not None
            and gain is not None
            and gain > bot.take_profit_percentage
        )
        record.take_profit_triggered = take_profit

        if assessment.triggered:
            record.global_protection_triggered = True
            protection_reason = (
                f"Net value {assessment.net_value:.8f} {bot.reference_coin} is below the floor "
                f"{assessment.floor:.8f} ({bot.global_threshold_percentage:.2f}% under peak {assessment.prior_peak:.8f})"
            )
            if not take_profit:
                missed = build_missed_trade(
                    bot.id, MissedTradeReason.PROTECTION_TRIGGERED, protection_reason,
                    from_coin=current_coin, to_coin=best.coin,
                    deviation_percentage=best.deviation_percent, threshold=threshold,
                )
                return await self._no_swap(
                    repos, bot, record, DecisionOutcome.PROTECTION_BLOCKED, protection_reason, missed
                )
            reasoning.append(
                f"Take-profit {gain:.2f}% > {bot.take_profit_percentage:.2f}% overrides protection: {protection_reason}"
            )
        elif take_profit:
            reasoning.append(f"Take-profit reached: {gain:.2f}% > {bot.take_profit_percentage:.2f}%")

        record.reason = "; ".join(reasoning)
        return ApprovedSwap(
            bot_id=bot.id,
            account_id=bot.account_id,
            from_coin=current_coin,
            to_coin=best.coin,
            amount=units,
            from_price=current_price,
            to_price=best.price,
            deviation_percent=best.deviation_percent,
            reasoning=reasoning,
            record=record,
            take_profit_triggered=take_profit,
            reference_coin=bot.reference_coin,
            is_dry_run=bool(bot.is_dry_run),
            commission_rate=bot.commission_rate or 0.0,
            manual_budget=bot.manual_budget_amount,
            metadata={"net_value": assessment.net_value, "floor": assessment.floor},
        )

    async def liquidation_swap(self, bot_id: int) -> Optional[ApprovedSwap]:
        """Swap selling the bot's whole holding into its preferred stablecoin.

        Used before a reset. None when there is nothing to sell: the bot was
        never initialized, already holds the stablecoin, or holds no units.

        Raises:
            BotNotFoundError: If the bot does not exist
            PriceUnavailableError: If either side cannot be priced
        """
        async with self._provider.transaction() as repos:
            bot = await repos.bots.get(bot_id)
            if bot is None:
                raise BotNotFoundError(bot_id)
            from_coin = bot.current_coin
            stablecoin = bot.preferred_stablecoin
            reference_coin = bot.reference_coin
            if from_coin is None or from_coin == stablecoin:
                logger.info(f"Bot {bot_id}: Nothing to sell to {stablecoin}, holding {from_coin}")
                return None
            units = await SnapshotStore(repos).units_held(bot, from_coin)
            if units <= 0:
                logger.info(f"Bot {bot_id}: No {from_coin} units to sell to {stablecoin}")
                return None

        from_price = (await self._oracle.get_price(from_coin, reference_coin)).price
        to_price = (await self._oracle.get_price(stablecoin, reference_coin)).price

        reason = f"Sell {units:.8f} {from_coin} to {stablecoin} before reset"
        record = BotSwapDecision(
            bot_id=bot.id,
            reset_epoch=bot.reset_epoch,
            from_coin=from_coin,
            to_coin=stablecoin,
            from_coin_price=from_price,
            to_coin_price=to_price,
            price_threshold=bot.threshold_percentage,
            global_peak_value=bot.global_peak_value,
            current_global_peak_value=bot.global_peak_value,
            reason=reason,
            created_at=self._clock(),
        )
        return ApprovedSwap(
            bot_id=bot.id,
            account_id=bot.account_id,
            from_coin=from_coin,
            to_coin=stablecoin,
            amount=units,
            from_price=from_price,
            to_price=to_price,
            deviation_percent=0.0,
            reasoning=[reason],
            record=record,
            reference_coin=reference_coin,
            is_dry_run=bool(bot.is_dry_run),
            commission_rate=bot.commission_rate or 0.0,
        )

    async def _record_deviations(
        self,
        repos: Repositories,
        bot: Bot,
        current_coin: str,
        current_price: float,
        ranked: List[CandidateScore],
    ) -> None:
        if not ranked:
            return
        now = self._clock()
        await repos.audit.add_deviations([
            CoinDeviation(
                bot_id=bot.id,
                reset_epoch=bot.reset_epoch,
                base_coin=current_coin,
                target_coin=score.coin,
                base_price=current_price,
                target_price=score.price,
                target_snapshot_price=score.snapshot_price,
                deviation_percent=score.deviation_percent,
                timestamp=now,
            )
            for score in ranked
        ])

    async def _initialize(self, bot: Bot, store: SnapshotStore, prices: Dict[str, float]) -> None:
        """Put a fresh (or hard reset) bot on its initial coin."""
        coin = bot.initial_coin
        bot.current_coin = coin
        await store.record_units(bot, coin, bot.initial_units or 0.0, prices[coin])
        logger.info(f"Bot {bot.id}: Initialized with {bot.initial_units} {coin} at {prices[coin]:.8f}")

    def _new_record(
        self,
        bot: Bot,
        current_coin: str,
        current_price: float,
        current_snapshot: Optional[CoinSnapshot],
        assessment: ProtectionAssessment,
    ) -> BotSwapDecision:
        return BotSwapDecision(
            bot_id=bot.id,
            reset_epoch=bot.reset_epoch,
            from_coin=current_coin,
            from_coin_price=current_price,
            from_coin_snapshot=current_snapshot.initial_price if current_snapshot else None,
            price_threshold=bot.threshold_percentage,
            deviation_triggered=False,
            reference_equivalent_value=assessment.net_value,
            min_reference_equivalent=assessment.floor,
            global_peak_value=assessment.prior_peak,
            current_global_peak_value=bot.global_peak_value,
            global_protection_triggered=False,
            take_profit_triggered=False,
            swap_performed=False,
            reason="",
            created_at=self._clock(),
        )

    async def _no_swap(
        self,
        repos: Repositories,
        bot: Bot,
        record: BotSwapDecision,
        outcome: DecisionOutcome,
        reason: str,
        missed=None,
    ) -> NoSwap:
        record.outcome = outcome
        record.reason = reason
        record.swap_performed = False
        await repos.audit.add_decision(record)
        if missed is not None:
            await repos.audit.add_missed_trade(missed)
        return NoSwap(bot_id=bot.id, outcome=outcome, reason=reason, record=record)

    async def _record_price_unavailable(self, bot_id: int, error: PriceUnavailableError) -> NoSwap:
        """Audit a tick aborted by a missing price. No other state changes."""
        logger.warning(f"Bot {bot_id}: Tick aborted, {error}")
        async with self._provider.transaction() as repos:
            bot = await repos.bots.get(bot_id)
            if bot is None:
                raise BotNotFoundError(bot_id)
            record = BotSwapDecision(
                bot_id=bot.id,
                reset_epoch=bot.reset_epoch,
                from_coin=bot.current_coin,
                to_coin=error.coin if error.coin != bot.current_coin else None,
                price_threshold=bot.threshold_percentage,
                current_global_peak_value=bot.global_peak_value,
                global_peak_value=bot.global_peak_value,
                created_at=self._clock(),
            )
            missed = build_missed_trade(
                bot.id, MissedTradeReason.PRICE_UNAVAILABLE, str(error),
                from_coin=bot.current_coin, to_coin=record.to_coin,
            )
            return await self._no_swap(
                repos, bot, record, DecisionOutcome.PRICE_UNAVAILABLE, str(error), missed
            )
