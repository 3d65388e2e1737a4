"""Snapshot store - per coin baselines, units held and high-water marks.

Every write of units goes through record_units(), which updates the coin's
unit tracker and its snapshot in the current reset epoch together, so the
two never disagree once the surrounding transaction commits.

Caller owns the transaction: the store works on a Repositories bundle and
never commits.
"""

import logging
from typing import Dict, Optional

from ..models import (
    Bot,
    BotResetEvent,
    CoinSnapshot,
    CoinUnitTracker,
    ResetType,
    utcnow,
)
from ..repositories import Repositories

logger = logging.getLogger(__name__)


class SnapshotStore:
    """Reads and writes coin snapshots and unit trackers for a bot."""

    def __init__(self, repos: Repositories):
        self.repos = repos

    async def get_snapshot(self, bot: Bot, coin: str) -> Optional[CoinSnapshot]:
        """Snapshot of a coin in the bot's current epoch."""
        return await self.repos.snapshots.get_snapshot(bot.id, coin, bot.reset_epoch)

    async def current_snapshots(self, bot: Bot) -> Dict[str, CoinSnapshot]:
        snapshots = await self.repos.snapshots.list_snapshots(bot.id, reset_epoch=bot.reset_epoch)
        return {snapshot.coin: snapshot for snapshot in snapshots}

    async def units_held(self, bot: Bot, coin: str) -> float:
        tracker = await self.repos.snapshots.get_tracker(bot.id, coin)
        return tracker.units if tracker else 0.0

    async def valuation(self, bot: Bot, coin: str, price: float) -> float:
        """Value of the bot's holding of a coin in reference coin units."""
        return await self.units_held(bot, coin) * price

    async def ensure_baselines(self, bot: Bot, prices: Dict[str, float]) -> Dict[str, CoinSnapshot]:
        """Create current-epoch snapshots for coins that have none yet.

        New baselines use this tick's price and start from the units the
        tracker currently holds.

        Args:
            bot: Bot whose coins need baselines
            prices: Current price per coin in the bot's reference coin

        Returns:
            All current-epoch snapshots keyed by coin
        """
        snapshots = await self.current_snapshots(bot)
        now = utcnow()

        for coin in bot.get_coins():
            if coin in snapshots or coin not in prices:
                continue

            units = await self.units_held(bot, coin)
            snapshots[coin] = await self.repos.snapshots.add_snapshot(CoinSnapshot(
                bot_id=bot.id,
                coin=coin,
                reset_epoch=bot.reset_epoch,
                initial_price=prices[coin],
                snapshot_timestamp=now,
                units_held=units,
                reference_equivalent_value=units * prices[coin],
                was_ever_held=units > 0,
                max_units_reached=units,
                is_retired=False,
            ))
            logger.info(
                f"Bot {bot.id}: Baseline for {coin} at {prices[coin]:.8f} "
                f"(epoch {bot.reset_epoch}, units {units:.8f})"
            )

        return snapshots

    async def record_units(self, bot: Bot, coin: str, units: float, price: float) -> CoinSnapshot:
        """Set the units held of a coin in both the tracker and the snapshot.

        Args:
            bot: Owning bot
            coin: Coin symbol
            units: Units now held
            price: Current price in reference coin units, used for the valuation
                and as baseline when the epoch has no snapshot for the coin yet

        Returns:
            The updated snapshot
        """
        if units < 0:
            raise ValueError(f"Units held cannot be negative, got {units} {coin}")

        now = utcnow()

        tracker = await self.repos.snapshots.get_tracker(bot.id, coin)
        if tracker is None:
            tracker = await self.repos.snapshots.add_tracker(
                CoinUnitTracker(bot_id=bot.id, coin=coin, units=units, last_updated=now)
            )
        else:
            tracker.units = units
            tracker.last_updated = now

        snapshot = await self.get_snapshot(bot, coin)
        if snapshot is None:
            snapshot = await self.repos.snapshots.add_snapshot(CoinSnapshot(
                bot_id=bot.id,
                coin=coin,
                reset_epoch=bot.reset_epoch,
                initial_price=price,
                snapshot_timestamp=now,
                units_held=0.0,
                max_units_reached=0.0,
                was_ever_held=False,
                is_retired=False,
            ))

        snapshot.units_held = units
        snapshot.reference_equivalent_value = units * price
        if units > 0:
            snapshot.was_ever_held = True
        snapshot.max_units_reached = max(snapshot.max_units_reached or 0.0, units)

        logger.debug(
            f"Bot {bot.id}: {coin} units={units:.8f} max={snapshot.max_units_reached:.8f}"
        )
        return snapshot

    async def reset_all(self, bot: Bot, reset_type: ResetType = ResetType.SOFT) -> BotResetEvent:
        """Start a new reset epoch for the bot.

        The current epoch's snapshots are retired (kept for audit) and the
        global peak is zeroed. A soft reset keeps the held coin and its
        units; a hard reset clears the current coin and every unit tracker
        so the next evaluation re-initializes from the initial coin.

        Returns:
            The recorded reset event
        """
        event = await self.repos.audit.add_reset_event(BotResetEvent(
            bot_id=bot.id,
            reset_type=reset_type,
            previous_coin=bot.current_coin,
            previous_global_peak=bot.global_peak_value or 0.0,
            previous_reset_count=bot.reset_epoch,
            created_at=utcnow(),
        ))

        retired = await self.repos.snapshots.retire_epoch(bot.id, bot.reset_epoch)

        bot.reset_count = bot.reset_epoch + 1
        bot.global_peak_value = 0.0

        if reset_type == ResetType.HARD:
            now = utcnow()
            for tracker in await self.repos.snapshots.list_trackers(bot.id):
                tracker.units = 0.0
                tracker.last_updated = now
            bot.current_coin = None

        logger.info(
            f"Bot {bot.id}: {reset_type.value} reset, retired {retired} snapshot(s), "
            f"now in epoch {bot.reset_count}"
        )
        return event
