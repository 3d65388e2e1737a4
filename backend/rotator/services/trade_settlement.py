"""Trade settlement - executes an approved swap and records it atomically.

Settlement flow:

1. Lock the source coin in the bot's exchange account for the full holding
2. Re-read the bot: the decision is dropped if the bot no longer holds the
   source coin in the same reset epoch
3. Size the first leg: never more than the account's free balance, and no
   more than the bot's manual budget when one is set
4. Ask the executor for the route and issue the legs in order, stopping at
   the first failed leg; each leg is sent with client order id
   "{attempt_id}-{step}" so a resubmitted leg is idempotent on the exchange
5. Persist the Trade, its TradeSteps, the decision record and (on success)
   the bot, snapshot and unit tracker changes in one transaction
6. Release the lock on every exit path

The exchange and the database cannot commit together. A crash between the
two is recovered by reconciliation keyed on the attempt id.

Whatever stops a settlement, the decision record that came with the
ApprovedSwap is written exactly once.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import make_transient

from ..models import Bot, DecisionOutcome, Trade, TradeStatus, TradeStep, utcnow
from ..repositories import RepositoryProvider
from .asset_locks import AlreadyLockedError, AssetLockManager, LockScope
from .decision_engine import ApprovedSwap
from .email import EmailService
from .execution import ExchangeExecutor, ExecutionError, ExecutionOutcomeUnknownError, LegFill
from .global_protection import GlobalProtectionTracker
from .missed_trades import MissedTradeReason, build_missed_trade
from .snapshot_store import SnapshotStore

logger = logging.getLogger(__name__)

DEFAULT_SETTLEMENT_LOCK_TTL = timedelta(seconds=300)

Route = List[Tuple[str, str]]


class SettlementError(Exception):
    """Base class for settlement failures."""

    def __init__(self, message: str, bot_id: int, attempt_id: Optional[str] = None, trade_id: Optional[int] = None):
        self.bot_id = bot_id
        self.attempt_id = attempt_id
        self.trade_id = trade_id
        super().__init__(message)


class LockContentionError(SettlementError):
    """Another bot holds the source coin. Retried on the next tick."""
    pass


class StaleDecisionError(SettlementError):
    """The bot changed between decision and settlement; nothing was executed."""
    pass


class ExchangeRejectedError(SettlementError):
    """The first leg was not filled; no funds moved."""
    pass


class ReconciliationRequiredError(SettlementError):
    """Funds may have moved on the exchange without the bot state following."""
    pass


class PartialMultiStepFailureError(ReconciliationRequiredError):
    """Some legs filled and a later one failed."""
    pass


class OutcomeUnknownError(ReconciliationRequiredError):
    """A leg was sent but its fill could not be confirmed."""
    pass


class PersistenceFailureError(SettlementError):
    """Legs were executed but the settlement transaction did not commit."""
    pass


@dataclass
class LegResult:
    """Outcome of issuing one leg."""
    step_number: int
    from_coin: str
    to_coin: str
    from_amount: float
    client_order_id: str
    fill: Optional[LegFill] = None
    error: Optional[str] = None
    # True when the executor failed in a way that leaves the fill unknown
    outcome_unknown: bool = False
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def completed(self) -> bool:
        return self.fill is not None and self.fill.status == "completed"


@dataclass
class LegRun:
    """Route and leg results of one settlement attempt."""
    route: Route
    results: List[LegResult]
    # Units of the source coin deliberately left unsold by the manual budget
    kept_units: float = 0.0


class TradeSettlement:
    """Turns approved swaps into settled trades."""

    def __init__(
        self,
        provider: RepositoryProvider,
        lock_manager: AssetLockManager,
        executor: ExchangeExecutor,
        protection: Optional[GlobalProtectionTracker] = None,
        lock_ttl: timedelta = DEFAULT_SETTLEMENT_LOCK_TTL,
        alerts: Optional[EmailService] = None,
        dry_run_executor: Optional[ExchangeExecutor] = None,
        clock: Callable = utcnow,
    ):
        """Initialize trade settlement.

        Args:
            provider: Repository provider for the settlement transaction
            lock_manager: Lock manager guarding the source coin
            executor: Executes exchange legs
            protection: Peak tracker ratcheted after a settled swap
            lock_ttl: Lease length of the source coin lock
            alerts: Email service for operator alerts
            dry_run_executor: Executor for dry-run bots, defaults to executor
            clock: Returns the current naive UTC time
        """
        self._provider = provider
        self._locks = lock_manager
        self._executor = executor
        self._dry_run_executor = dry_run_executor or executor
        self._protection = protection or GlobalProtectionTracker()
        self._lock_ttl = lock_ttl
        self._alerts = alerts or EmailService()
        self._clock = clock

    async def settle(self, bot_id: int, decision: ApprovedSwap) -> Trade:
        """Execute and record an approved swap.

        Args:
            bot_id: Bot the swap belongs to
            decision: Approved swap from the decision engine

        Returns:
            The completed Trade

        Raises:
            LockContentionError: If the source coin is locked by another bot
            StaleDecisionError: If the bot no longer holds the source coin
            ExchangeRejectedError: If no leg was filled
            PartialMultiStepFailureError: If a later leg failed after earlier ones filled
            OutcomeUnknownError: If a leg was sent but its fill is unknown
            ReconciliationRequiredError: If the legs filled but the bot changed meanwhile
            PersistenceFailureError: If the settlement could not be recorded
        """
        scope = LockScope(account_id=decision.account_id, bot_id=bot_id)
        attempt_id = uuid.uuid4().hex
        recorded = False

        try:
            try:
                async with self._locks.hold(
                    scope, decision.from_coin, decision.amount, reason="swap_execution", ttl=self._lock_ttl
                ):
                    await self._check_still_current(bot_id, decision)
                    run = await self._execute_legs(bot_id, decision, attempt_id)
                    trade = await self._persist(bot_id, decision, attempt_id, run)
                    recorded = True
            except AlreadyLockedError as e:
                await self._record_lock_contention(bot_id, decision, e)
                recorded = True
                raise LockContentionError(str(e), bot_id=bot_id, attempt_id=attempt_id) from e
        except BaseException as e:
            if not recorded:
                await self._record_unsettled(bot_id, decision, attempt_id, e)
            raise

        return self._check_outcome(bot_id, decision, trade, run)

    async def _check_still_current(self, bot_id: int, decision: ApprovedSwap) -> None:
        async with self._provider.transaction() as repos:
            bot = await repos.bots.get(bot_id)
            if not _holds(bot, decision):
                held = f"{bot.current_coin} in epoch {bot.reset_epoch}" if bot else "nothing (bot deleted)"
                logger.warning(
                    f"Bot {bot_id}: Dropping swap {decision.from_coin} -> {decision.to_coin}, bot now holds {held}"
                )
                raise StaleDecisionError(
                    f"Bot {bot_id} holds {held}, decision was for {decision.from_coin} "
                    f"in epoch {decision.record.reset_epoch}",
                    bot_id=bot_id,
                )

    async def _tradable_amount(
        self, bot_id: int, executor: ExchangeExecutor, decision: ApprovedSwap
    ) -> Tuple[float, float]:
        """Amount of the source coin to sell, and the units the manual budget keeps back."""
        amount = decision.amount

        available = await executor.available_balance(decision.account_id, decision.from_coin)
        if available is not None and available < amount:
            logger.warning(
                f"Bot {bot_id}: Tracks {amount:.8f} {decision.from_coin} but account "
                f"{decision.account_id} has {available:.8f} free, selling {available:.8f}"
            )
            amount = available

        budget = decision.manual_budget
        if budget and decision.from_price > 0 and amount * decision.from_price > budget:
            limited = budget / decision.from_price
            logger.info(
                f"Bot {bot_id}: Manual budget {budget:.2f} {decision.reference_coin} limits the swap "
                f"to {limited:.8f} {decision.from_coin}"
            )
            return limited, amount - limited

        return amount, 0.0

    async def _execute_legs(self, bot_id: int, decision: ApprovedSwap, attempt_id: str) -> LegRun:
        """Issue legs in order. The first failed leg stops further issuance."""
        executor = self._dry_run_executor if decision.is_dry_run else self._executor
        route = await executor.route(decision.from_coin, decision.to_coin)
        run = LegRun(route=route, results=[])

        try:
            amount, run.kept_units = await self._tradable_amount(bot_id, executor, decision)
        except ExecutionError as e:
            run.results.append(self._unissued_leg(bot_id, route, attempt_id, decision.amount, str(e)))
            return run
        if amount <= 0:
            error = f"no {decision.from_coin} available on account {decision.account_id}"
            run.results.append(self._unissued_leg(bot_id, route, attempt_id, decision.amount, error))
            return run

        for step_number, (leg_from, leg_to) in enumerate(route, start=1):
            result = LegResult(
                step_number=step_number,
                from_coin=leg_from,
                to_coin=leg_to,
                from_amount=amount,
                client_order_id=f"{attempt_id}-{step_number}",
            )
            run.results.append(result)

            try:
                result.fill = await executor.execute(
                    decision.account_id,
                    leg_from,
                    leg_to,
                    amount,
                    result.client_order_id,
                    reference_coin=decision.reference_coin,
                )
            except ExecutionError as e:
                result.error = str(e)
                result.raw = e.raw
                logger.error(f"Bot {bot_id}: Step {step_number} {leg_from} -> {leg_to} rejected: {e.detail}")
                break
            except ExecutionOutcomeUnknownError as e:
                result.error = str(e)
                result.outcome_unknown = True
                logger.critical(f"Bot {bot_id}: Step {step_number} {leg_from} -> {leg_to} {e}")
                break
            except Exception as e:
                result.error = f"unexpected executor failure: {e}"
                result.outcome_unknown = True
                logger.exception(
                    f"Bot {bot_id}: Step {step_number} {leg_from} -> {leg_to} failed with unknown outcome"
                )
                break

            if not result.completed:
                result.error = f"leg returned status {result.fill.status}"
                logger.error(f"Bot {bot_id}: Step {step_number} {leg_from} -> {leg_to} {result.error}")
                break

            logger.info(
                f"Bot {bot_id}: Step {step_number} filled {amount:.8f} {leg_from} -> "
                f"{result.fill.executed_amount:.8f} {leg_to} (order {result.fill.external_trade_id})"
            )
            amount = result.fill.executed_amount

        return run

    def _unissued_leg(self, bot_id: int, route: Route, attempt_id: str, amount: float, error: str) -> LegResult:
        """First leg that was never sent because it could not be sized."""
        leg_from, leg_to = route[0]
        logger.error(f"Bot {bot_id}: Step 1 {leg_from} -> {leg_to} not sent: {error}")
        return LegResult(
            step_number=1,
            from_coin=leg_from,
            to_coin=leg_to,
            from_amount=amount,
            client_order_id=f"{attempt_id}-1",
            error=error,
        )

    def _build_trade(self, bot_id: int, decision: ApprovedSwap, attempt_id: str, run: LegRun) -> Trade:
        now = self._clock()
        results = run.results
        completed = [r for r in results if r.completed]
        all_completed = len(completed) == len(run.route)
        needs_reconciliation = (bool(completed) and not all_completed) or any(r.outcome_unknown for r in results)
        failure = next((r for r in results if not r.completed), None)
        to_amount = completed[-1].fill.executed_amount if completed else None
        sold = completed[0].fill.from_amount if completed else results[0].from_amount

        trade = Trade(
            bot_id=bot_id,
            attempt_id=attempt_id,
            exchange_trade_id="-".join(r.fill.external_trade_id for r in completed) or None,
            from_coin=decision.from_coin,
            to_coin=decision.to_coin,
            from_amount=sold,
            to_amount=to_amount,
            from_price=decision.from_price,
            to_price=decision.to_price,
            commission_rate=decision.commission_rate,
            commission_amount=sum(r.fill.commission for r in completed),
            price_change=(
                to_amount * decision.to_price - sold * decision.from_price
                if all_completed else None
            ),
            deviation_percentage=decision.deviation_percent,
            decision_reason=decision.reason,
            status=TradeStatus.COMPLETED if all_completed else TradeStatus.FAILED,
            is_multi_step=len(run.route) > 1,
            needs_reconciliation=needs_reconciliation,
            error=failure.error if failure else None,
            executed_at=now,
            completed_at=now if all_completed else None,
        )
        trade.steps = [
            TradeStep(
                step_number=r.step_number,
                client_order_id=r.client_order_id,
                exchange_trade_id=r.fill.external_trade_id if r.fill else None,
                from_coin=r.from_coin,
                to_coin=r.to_coin,
                from_amount=r.fill.from_amount if r.fill else r.from_amount,
                to_amount=r.fill.executed_amount if r.fill else None,
                price=r.fill.executed_price if r.fill else None,
                commission_amount=r.fill.commission if r.fill else 0.0,
                status=TradeStatus.COMPLETED if r.completed else TradeStatus.FAILED,
                error=r.error,
                raw_trade_data=r.fill.raw if r.fill else (r.raw or None),
                executed_at=now,
                completed_at=now if r.completed else None,
            )
            for r in results
        ]
        return trade

    async def _persist(self, bot_id: int, decision: ApprovedSwap, attempt_id: str, run: LegRun) -> Trade:
        """Record the trade, its steps, the decision and the bot state in one transaction."""
        trade = self._build_trade(bot_id, decision, attempt_id, run)
        record = decision.record

        try:
            async with self._provider.transaction() as repos:
                bot = await repos.bots.get(bot_id)
                if trade.status == TradeStatus.COMPLETED and not _holds(bot, decision):
                    # Filled on the exchange, but someone else moved the bot on
                    trade.needs_reconciliation = True
                    trade.error = "bot state changed during settlement, holdings not moved"

                await repos.trades.add(trade)
                record.trade = trade

                if trade.status == TradeStatus.COMPLETED and not trade.needs_reconciliation:
                    store = SnapshotStore(repos)
                    await store.record_units(bot, decision.from_coin, run.kept_units, decision.from_price)
                    await store.record_units(bot, decision.to_coin, trade.to_amount, decision.to_price)
                    bot.current_coin = decision.to_coin
                    bot.total_commissions_paid = (bot.total_commissions_paid or 0.0) + trade.commission_amount
                    self._protection.ratchet(
                        bot, self._protection.net_value(bot, trade.to_amount, decision.to_price)
                    )
                    record.swap_performed = True
                    record.outcome = DecisionOutcome.PERFORMED
                    record.current_global_peak_value = bot.global_peak_value
                else:
                    record.swap_performed = False
                    record.outcome = DecisionOutcome.SETTLEMENT_FAILED
                    record.reason = f"{record.reason}; settlement failed: {trade.error}"
                    await repos.audit.add_missed_trade(build_missed_trade(
                        bot_id, MissedTradeReason.EXCHANGE_ERROR, trade.error or "",
                        from_coin=decision.from_coin, to_coin=decision.to_coin,
                        deviation_percentage=decision.deviation_percent,
                        threshold=record.price_threshold,
                    ))

                await repos.audit.add_decision(record)
        except SQLAlchemyError as e:
            logger.critical(
                f"Bot {bot_id}: Settlement {attempt_id} executed "
                f"{sum(1 for r in run.results if r.completed)} leg(s) but could not be recorded: {e}"
            )
            self._alerts.send_persistence_failure_alert(
                bot_id, attempt_id, decision.from_coin, decision.to_coin, str(e)
            )
            raise PersistenceFailureError(
                f"Settlement {attempt_id} could not be recorded: {e}", bot_id=bot_id, attempt_id=attempt_id
            ) from e

        return trade

    def _check_outcome(self, bot_id: int, decision: ApprovedSwap, trade: Trade, run: LegRun) -> Trade:
        total = len(run.route)
        completed = sum(1 for r in run.results if r.completed)

        if trade.status == TradeStatus.COMPLETED and not trade.needs_reconciliation:
            logger.info(
                f"Bot {bot_id}: Settled trade {trade.id} {trade.from_amount:.8f} {trade.from_coin} -> "
                f"{trade.to_amount:.8f} {trade.to_coin} in {total} step(s), "
                f"commission {trade.commission_amount:.8f} {decision.reference_coin}"
            )
            return trade

        if not trade.needs_reconciliation:
            logger.error(f"Bot {bot_id}: Trade {trade.id} rejected: {trade.error}")
            raise ExchangeRejectedError(
                f"Trade {trade.id} rejected: {trade.error}",
                bot_id=bot_id, attempt_id=trade.attempt_id, trade_id=trade.id,
            )

        logger.critical(
            f"Bot {bot_id}: Trade {trade.id} stopped after {completed}/{total} step(s), "
            f"needs reconciliation (attempt {trade.attempt_id}): {trade.error}"
        )
        self._alerts.send_reconciliation_alert(
            bot_id, trade.id, trade.attempt_id, trade.from_coin, trade.to_coin,
            completed, total, trade.error or "",
        )

        ids = dict(bot_id=bot_id, attempt_id=trade.attempt_id, trade_id=trade.id)
        if any(r.outcome_unknown for r in run.results):
            raise OutcomeUnknownError(
                f"Trade {trade.id} has a leg with unknown outcome after {completed} of {total} steps: {trade.error}",
                **ids,
            )
        if trade.status == TradeStatus.COMPLETED:
            raise ReconciliationRequiredError(f"Trade {trade.id} filled but was not applied: {trade.error}", **ids)
        raise PartialMultiStepFailureError(
            f"Trade {trade.id} completed {completed} of {total} steps: {trade.error}", **ids
        )

    async def _record_lock_contention(self, bot_id: int, decision: ApprovedSwap, error: AlreadyLockedError) -> None:
        """Audit a swap abandoned because the coin was locked. Nothing else changes."""
        record = decision.record
        record.swap_performed = False
        record.outcome = DecisionOutcome.SETTLEMENT_FAILED
        record.reason = f"{record.reason}; {error}"

        async with self._provider.transaction() as repos:
            await repos.audit.add_decision(record)
            await repos.audit.add_missed_trade(build_missed_trade(
                bot_id, MissedTradeReason.LOCK_CONTENTION, str(error),
                from_coin=decision.from_coin, to_coin=decision.to_coin,
                deviation_percentage=decision.deviation_percent,
                threshold=record.price_threshold,
            ))

    async def _record_unsettled(
        self, bot_id: int, decision: ApprovedSwap, attempt_id: str, error: BaseException
    ) -> None:
        """Write the pending decision of a settlement that stopped before recording it.

        The original error is what the caller sees, so a failure here is only logged.
        """
        record = decision.record
        # Detach from any rolled back session so it inserts as a new row
        make_transient(record)
        record.id = None
        record.trade = None
        record.trade_id = None
        record.swap_performed = False
        record.outcome = DecisionOutcome.SETTLEMENT_FAILED
        record.reason = f"{record.reason}; settlement {attempt_id} stopped: {type(error).__name__}: {error}"

        try:
            async with self._provider.transaction() as repos:
                await repos.audit.add_decision(record)
        except SQLAlchemyError as db_error:
            logger.error(f"Bot {bot_id}: Could not record the decision of settlement {attempt_id}: {db_error}")


def _holds(bot: Optional[Bot], decision: ApprovedSwap) -> bool:
    """Whether the bot still holds the decision's source coin in the decision's epoch."""
    return (
        bot is not None
        and bot.current_coin == decision.from_coin
        and bot.reset_epoch == decision.record.reset_epoch
    )
