"""Bot scheduler - runs evaluation ticks per bot and expires stale locks.

Each running bot has one asyncio task looping tick -> wait(check interval).
A per-bot asyncio.Lock serializes the loop with manual ticks and resets, so
two ticks of the same bot never overlap. Different bots run concurrently;
the asset locks are what keeps them off each other's coins.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from ..models import BotResetEvent, BotStatus, ResetType, Trade, utcnow
from ..repositories import RepositoryProvider
from .asset_locks import AssetLockManager
from .decision_engine import ApprovedSwap, BotNotFoundError, DecisionEngine
from .email import EmailService
from .logging_service import BotLoggingService, TradeLogEntry, get_bot_logging_service
from .snapshot_store import SnapshotStore
from .trade_settlement import (
    ExchangeRejectedError,
    LockContentionError,
    PersistenceFailureError,
    ReconciliationRequiredError,
    SettlementError,
    StaleDecisionError,
    TradeSettlement,
)

logger = logging.getLogger(__name__)


class InvalidResetError(Exception):
    """The requested reset cannot be applied to the bot as configured."""
    pass


class SchedulerRegistry:
    """In-process state of the scheduler: bot tasks, stop signals and tick locks."""

    def __init__(self):
        self.tasks: Dict[int, asyncio.Task] = {}
        self.stop_events: Dict[int, asyncio.Event] = {}
        self.bot_loggers: Dict[int, BotLoggingService] = {}
        self._tick_locks: Dict[int, asyncio.Lock] = {}

    def tick_lock(self, bot_id: int) -> asyncio.Lock:
        lock = self._tick_locks.get(bot_id)
        if lock is None:
            lock = self._tick_locks[bot_id] = asyncio.Lock()
        return lock

    def is_running(self, bot_id: int) -> bool:
        task = self.tasks.get(bot_id)
        return task is not None and not task.done()

    def running_bot_ids(self) -> List[int]:
        return sorted(bot_id for bot_id in self.tasks if self.is_running(bot_id))


@dataclass
class TickResult:
    """Summary of one tick."""
    bot_id: int
    outcome: str
    swap_performed: bool = False
    trade_id: Optional[int] = None
    reason: str = ""
    error: Optional[str] = None


class BotScheduler:
    """Starts, stops and ticks bots."""

    def __init__(
        self,
        provider: RepositoryProvider,
        engine: DecisionEngine,
        settlement: TradeSettlement,
        lock_manager: AssetLockManager,
        registry: Optional[SchedulerRegistry] = None,
        alerts: Optional[EmailService] = None,
        default_interval_seconds: float = 300,
        lock_cleanup_interval_seconds: float = 60,
        log_dir: Optional[str] = None,
        stop_timeout_seconds: float = 10.0,
    ):
        self._provider = provider
        self._engine = engine
        self._settlement = settlement
        self._locks = lock_manager
        self.registry = registry or SchedulerRegistry()
        self._alerts = alerts or EmailService()
        self._default_interval = default_interval_seconds
        self._cleanup_interval = lock_cleanup_interval_seconds
        self._log_dir = log_dir
        self._stop_timeout = stop_timeout_seconds
        self._cleanup_task: Optional[asyncio.Task] = None
        self._cleanup_stop = asyncio.Event()

    @property
    def lock_manager(self) -> AssetLockManager:
        return self._locks

    async def run_tick(self, bot_id: int) -> TickResult:
        """Evaluate a bot once and settle the swap if one is approved.

        Waits for an in-flight tick of the same bot to finish first.

        Raises:
            BotNotFoundError: If the bot does not exist
        """
        async with self.registry.tick_lock(bot_id):
            return await self._tick(bot_id)

    async def _tick(self, bot_id: int) -> TickResult:
        decision = await self._engine.evaluate(bot_id)
        bot_logger = await self._bot_logger(bot_id)

        if not decision.is_swap:
            bot_logger.log_activity(f"No swap ({decision.outcome.value}): {decision.reason}")
            return TickResult(bot_id=bot_id, outcome=decision.outcome.value, reason=decision.reason)

        bot_logger.log_activity(
            f"Swap approved {decision.from_coin} -> {decision.to_coin}: {decision.reason}"
        )

        try:
            trade = await self._settlement.settle(bot_id, decision)
        except (LockContentionError, StaleDecisionError) as e:
            logger.warning(f"Bot {bot_id}: {e}, retrying next tick")
            bot_logger.log_activity(f"Swap skipped: {e}", level="WARNING")
            return TickResult(bot_id=bot_id, outcome="settlement_failed", reason=decision.reason, error=str(e))
        except ExchangeRejectedError as e:
            bot_logger.log_activity(f"Swap rejected by exchange: {e}", level="ERROR")
            await self._log_failed_trade(bot_id, bot_logger, e.trade_id)
            return TickResult(
                bot_id=bot_id, outcome="settlement_failed", trade_id=e.trade_id,
                reason=decision.reason, error=str(e),
            )
        except (ReconciliationRequiredError, PersistenceFailureError) as e:
            bot_logger.log_activity(f"Settlement needs reconciliation: {e}", level="CRITICAL")
            await self._log_failed_trade(bot_id, bot_logger, e.trade_id)
            await self._pause_bot(bot_id, f"Settlement needs reconciliation: {e}")
            return TickResult(
                bot_id=bot_id, outcome="settlement_failed", trade_id=e.trade_id,
                reason=decision.reason, error=str(e),
            )

        self._log_trade(bot_id, bot_logger, trade)
        bot_logger.log_activity(
            f"Rotated {trade.from_amount:.8f} {trade.from_coin} -> {trade.to_amount:.8f} {trade.to_coin} "
            f"(trade {trade.id})"
        )
        return TickResult(
            bot_id=bot_id, outcome="performed", swap_performed=True, trade_id=trade.id, reason=decision.reason,
        )

    async def reset_bot(
        self, bot_id: int, reset_type: ResetType = ResetType.SOFT, sell_to_stablecoin: bool = False
    ) -> BotResetEvent:
        """Start a new snapshot epoch for a bot, serialized with its ticks.

        With sell_to_stablecoin the held coin is first settled into the bot's
        preferred stablecoin like any other swap. The reset only happens if
        that sale settles; its errors propagate unchanged.

        Raises:
            BotNotFoundError: If the bot does not exist
            InvalidResetError: If a soft reset would sell to a coin the bot does not rotate
            SettlementError: If the sale to the stablecoin did not settle
        """
        async with self.registry.tick_lock(bot_id):
            trade = None
            if sell_to_stablecoin:
                if reset_type == ResetType.SOFT:
                    await self._check_stablecoin_rotated(bot_id)
                swap = await self._engine.liquidation_swap(bot_id)
                if swap is not None:
                    trade = await self._settle_liquidation(bot_id, await self._bot_logger(bot_id), swap)

            async with self._provider.transaction() as repos:
                bot = await repos.bots.get(bot_id)
                if bot is None:
                    raise BotNotFoundError(bot_id)
                event = await SnapshotStore(repos).reset_all(bot, reset_type)
                event.sold_to_stablecoin = sell_to_stablecoin
                event.liquidation_trade_id = trade.id if trade else None

        sold = f", sold to stablecoin (trade {event.liquidation_trade_id})" if sell_to_stablecoin else ""
        (await self._bot_logger(bot_id)).log_activity(f"{reset_type.value.capitalize()} reset{sold}")
        return event

    async def _check_stablecoin_rotated(self, bot_id: int) -> None:
        """A soft reset keeps the held coin, so it must be one the bot rotates."""
        async with self._provider.transaction() as repos:
            bot = await repos.bots.get(bot_id)
            if bot is None:
                raise BotNotFoundError(bot_id)
            if bot.preferred_stablecoin not in bot.get_coins():
                raise InvalidResetError(
                    f"Bot {bot_id}: a soft reset can only sell to {bot.preferred_stablecoin} "
                    f"if it is one of the bot's coins"
                )

    async def _settle_liquidation(self, bot_id: int, bot_logger: BotLoggingService, swap: ApprovedSwap) -> Trade:
        try:
            trade = await self._settlement.settle(bot_id, swap)
        except (ReconciliationRequiredError, PersistenceFailureError) as e:
            bot_logger.log_activity(f"Sale to {swap.to_coin} needs reconciliation: {e}", level="CRITICAL")
            await self._pause_bot(bot_id, f"Sale to {swap.to_coin} before reset needs reconciliation: {e}")
            raise
        except SettlementError as e:
            bot_logger.log_activity(f"Sale to {swap.to_coin} before reset failed: {e}", level="ERROR")
            raise

        self._log_trade(bot_id, bot_logger, trade)
        bot_logger.log_activity(
            f"Sold {trade.from_amount:.8f} {trade.from_coin} -> {trade.to_amount:.8f} {trade.to_coin} "
            f"before reset (trade {trade.id})"
        )
        return trade

    async def start_bot(self, bot_id: int) -> bool:
        """Start a bot's tick loop.

        Returns:
            True if started, False if already running or not startable

        Raises:
            BotNotFoundError: If the bot does not exist
        """
        if self.registry.is_running(bot_id):
            logger.warning(f"Bot {bot_id} is already running")
            return False

        async with self._provider.transaction() as repos:
            bot = await repos.bots.get(bot_id)
            if bot is None:
                raise BotNotFoundError(bot_id)
            if not bot.enabled:
                logger.warning(f"Bot {bot_id} is disabled")
                return False

            bot.status = BotStatus.RUNNING
            bot.started_at = utcnow()
            name = bot.name

        self._launch(bot_id)
        (await self._bot_logger(bot_id)).log_activity("Bot started")
        logger.info(f"Started bot {bot_id} ({name})")
        return True

    async def stop_bot(self, bot_id: int, status: BotStatus = BotStatus.STOPPED) -> bool:
        """Stop a bot's tick loop, letting an in-flight tick finish.

        Returns:
            True if the bot existed
        """
        await self._halt_loop(bot_id)

        async with self._provider.transaction() as repos:
            bot = await repos.bots.get(bot_id)
            if bot is None:
                return False
            bot.status = status

        (await self._bot_logger(bot_id)).log_activity(f"Bot {status.value}")
        logger.info(f"Bot {bot_id}: {status.value}")
        return True

    def _launch(self, bot_id: int) -> None:
        self.registry.stop_events[bot_id] = asyncio.Event()
        self.registry.tasks[bot_id] = asyncio.create_task(self._run_bot_loop(bot_id))

    async def _halt_loop(self, bot_id: int) -> None:
        event = self.registry.stop_events.get(bot_id)
        if event is not None:
            event.set()

        task = self.registry.tasks.pop(bot_id, None)
        if task is None or task is asyncio.current_task():
            return
        try:
            await asyncio.wait_for(task, timeout=self._stop_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Bot {bot_id}: Loop did not stop within {self._stop_timeout}s, cancelled")

    async def _pause_bot(self, bot_id: int, reason: str) -> None:
        """Pause a bot from within its own tick and alert the operator."""
        event = self.registry.stop_events.get(bot_id)
        if event is not None:
            event.set()

        async with self._provider.transaction() as repos:
            bot = await repos.bots.get(bot_id)
            if bot is None:
                return
            bot.status = BotStatus.PAUSED
            name = bot.name

        logger.warning(f"Bot {bot_id}: Paused, {reason}")
        self._alerts.send_bot_paused_alert(bot_id=bot_id, bot_name=name, reason=reason)

    async def _run_bot_loop(self, bot_id: int) -> None:
        """Main bot loop: tick, then wait for the bot's interval or a stop signal."""
        logger.info(f"Bot {bot_id}: Starting execution loop")
        stop = self.registry.stop_events[bot_id]

        while not stop.is_set():
            interval = self._default_interval
            try:
                async with self._provider.transaction() as repos:
                    bot = await repos.bots.get(bot_id)
                    if not bot or bot.status != BotStatus.RUNNING or not bot.enabled:
                        logger.info(f"Bot {bot_id}: No longer running, stopping loop")
                        break
                    interval = bot.check_interval_seconds or self._default_interval

                await self.run_tick(bot_id)

            except BotNotFoundError:
                logger.info(f"Bot {bot_id}: Deleted, stopping loop")
                break
            except SQLAlchemyError as e:
                logger.error(f"Bot {bot_id}: Database error in execution loop: {e}")
            except Exception as e:
                logger.error(f"Bot {bot_id}: Error in execution loop: {e}", exc_info=True)

            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

        logger.info(f"Bot {bot_id}: Execution loop ended")

    def start_lock_cleanup(self) -> None:
        """Start the expired lock cleanup loop."""
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return
        self._cleanup_stop = asyncio.Event()
        self._cleanup_task = asyncio.create_task(self._run_lock_cleanup_loop())

    async def stop_lock_cleanup(self) -> None:
        self._cleanup_stop.set()
        if self._cleanup_task is not None:
            try:
                await asyncio.wait_for(self._cleanup_task, timeout=self._stop_timeout)
            except asyncio.TimeoutError:
                logger.warning("Lock cleanup loop did not stop in time, cancelled")
            self._cleanup_task = None

    async def _run_lock_cleanup_loop(self) -> None:
        logger.info(f"Lock cleanup loop started (every {self._cleanup_interval}s)")
        while not self._cleanup_stop.is_set():
            try:
                await self._locks.cleanup_expired()
            except SQLAlchemyError as e:
                logger.error(f"Lock cleanup failed: {e}")

            try:
                await asyncio.wait_for(self._cleanup_stop.wait(), timeout=self._cleanup_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Lock cleanup loop ended")

    async def resume_bots_on_startup(self) -> int:
        """Restart the loops of bots left in RUNNING status by the previous process.

        Returns:
            Number of bots resumed
        """
        async with self._provider.transaction() as repos:
            bots = await repos.bots.list_all(status=BotStatus.RUNNING)
            bot_ids = [bot.id for bot in bots if bot.enabled]

        if not bot_ids:
            logger.info("No bots to resume on startup")
            return 0

        for bot_id in bot_ids:
            if self.registry.is_running(bot_id):
                continue
            self._launch(bot_id)
            (await self._bot_logger(bot_id)).log_activity("Bot resumed after server restart")

        logger.info(f"Resumed {len(bot_ids)} bot(s) on startup")
        return len(bot_ids)

    async def graceful_shutdown(self) -> int:
        """Stop every loop but keep RUNNING status so the bots resume on next start.

        Returns:
            Number of bot loops shut down
        """
        await self.stop_lock_cleanup()

        bot_ids = list(self.registry.tasks.keys())
        if not bot_ids:
            logger.info("No running bots to shut down")
            return 0

        logger.info(f"Shutting down {len(bot_ids)} bot(s)")
        for bot_id in bot_ids:
            self.registry.stop_events[bot_id].set()

        tasks = list(self.registry.tasks.values())
        try:
            await asyncio.wait_for(asyncio.gather(*tasks, return_exceptions=True), timeout=self._stop_timeout)
        except asyncio.TimeoutError:
            logger.warning("Timeout waiting for bot tasks, cancelling...")
            for task in tasks:
                task.cancel()

        self.registry.tasks.clear()
        self.registry.stop_events.clear()
        logger.info(f"Graceful shutdown complete for {len(bot_ids)} bot(s)")
        return len(bot_ids)

    async def _bot_logger(self, bot_id: int) -> BotLoggingService:
        bot_logger = self.registry.bot_loggers.get(bot_id)
        if bot_logger is None:
            async with self._provider.transaction() as repos:
                bot = await repos.bots.get(bot_id)
                name = bot.name if bot else ""
                is_dry_run = bool(bot.is_dry_run) if bot else False
            bot_logger = get_bot_logging_service(bot_id, name, is_dry_run, base_dir=self._log_dir)
            self.registry.bot_loggers[bot_id] = bot_logger
        return bot_logger

    def _log_trade(self, bot_id: int, bot_logger: BotLoggingService, trade: Trade, reason: str = "") -> None:
        bot_logger.log_trade(TradeLogEntry(
            timestamp=trade.executed_at or utcnow(),
            bot_id=bot_id,
            bot_name=bot_logger.bot_name,
            trade_id=trade.id,
            attempt_id=trade.attempt_id,
            from_coin=trade.from_coin,
            to_coin=trade.to_coin,
            from_amount=trade.from_amount,
            to_amount=trade.to_amount,
            steps=len(trade.steps),
            commission=trade.commission_amount,
            status=trade.status.value,
            is_simulated=bot_logger.is_dry_run,
            reason=reason or (trade.decision_reason or ""),
        ))

    async def _log_failed_trade(self, bot_id: int, bot_logger: BotLoggingService, trade_id: Optional[int]) -> None:
        if trade_id is None:
            return
        async with self._provider.transaction() as repos:
            trade = await repos.trades.get(trade_id)
        if trade is not None:
            self._log_trade(bot_id, bot_logger, trade, reason=trade.error or "")
