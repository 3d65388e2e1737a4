"""Tests for the bot scheduler."""

import asyncio
from datetime import timedelta

import pytest

from rotator.models import BotStatus, ResetType
from rotator.services import BotNotFoundError, ExchangeRejectedError, InvalidResetError, LockScope


async def _wait_for(predicate, timeout: float = 3.0) -> bool:
    """Poll an async predicate until it holds or the timeout passes."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if await predicate():
            return True
        await asyncio.sleep(0.05)
    return False


async def _bot(provider, bot_id):
    async with provider.transaction() as repos:
        return await repos.bots.get(bot_id)


async def _decision_count(provider, bot_id) -> int:
    async with provider.transaction() as repos:
        return len(await repos.audit.list_decisions(bot_id))


class TestRunTick:
    """Manual ticks."""

    @pytest.mark.asyncio
    async def test_tick_without_swap(self, scheduler, sample_bot, tmp_path):
        result = await scheduler.run_tick(sample_bot.id)

        assert result.outcome == "not_triggered"
        assert result.swap_performed is False
        activity = (tmp_path / "logs" / str(sample_bot.id) / "activity.log").read_text()
        assert "[DRY RUN] No swap (not_triggered)" in activity

    @pytest.mark.asyncio
    async def test_tick_with_swap_logs_trade(self, scheduler, oracle, sample_bot, tmp_path):
        await scheduler.run_tick(sample_bot.id)
        oracle.set(ETH=2300.0)

        result = await scheduler.run_tick(sample_bot.id)

        assert result.outcome == "performed"
        assert result.swap_performed is True
        assert result.trade_id is not None
        rows = (tmp_path / "logs" / str(sample_bot.id) / "trades_simulated.csv").read_text().splitlines()
        assert rows[0].startswith("timestamp,bot_id,bot_name,trade_id,attempt_id")
        assert len(rows) == 2
        assert ",BTC,ETH," in rows[1]

    @pytest.mark.asyncio
    async def test_lock_contention_keeps_bot_running(self, scheduler, provider, oracle, lock_manager, make_bot, sample_bot):
        other = await make_bot(name="Neighbour")
        await scheduler.run_tick(sample_bot.id)
        oracle.set(ETH=2300.0)
        await lock_manager.acquire(LockScope("acct-1", other.id), "BTC", 1.0)

        result = await scheduler.run_tick(sample_bot.id)

        assert result.outcome == "settlement_failed"
        assert "locked" in result.error
        assert (await _bot(provider, sample_bot.id)).status == BotStatus.CREATED

    @pytest.mark.asyncio
    async def test_partial_failure_pauses_bot(self, scheduler, provider, oracle, executor, alerts, sample_bot, tmp_path):
        await scheduler.run_tick(sample_bot.id)
        oracle.set(ETH=2300.0)
        executor.failing_legs = {("USDT", "ETH")}

        result = await scheduler.run_tick(sample_bot.id)

        assert result.outcome == "settlement_failed"
        assert result.trade_id is not None
        assert (await _bot(provider, sample_bot.id)).status == BotStatus.PAUSED
        alerts.send_bot_paused_alert.assert_called_once()
        alerts.send_reconciliation_alert.assert_called_once()
        rows = (tmp_path / "logs" / str(sample_bot.id) / "trades_simulated.csv").read_text().splitlines()
        assert ",failed," in rows[1]

    @pytest.mark.asyncio
    async def test_unknown_leg_outcome_pauses_bot(self, scheduler, provider, oracle, executor, alerts, sample_bot):
        await scheduler.run_tick(sample_bot.id)
        oracle.set(ETH=2300.0)
        executor.crashing_legs = {("BTC", "USDT")}

        result = await scheduler.run_tick(sample_bot.id)

        assert result.outcome == "settlement_failed"
        assert "outcome" in result.error
        assert (await _bot(provider, sample_bot.id)).status == BotStatus.PAUSED
        alerts.send_reconciliation_alert.assert_called_once()
        alerts.send_bot_paused_alert.assert_called_once()

    @pytest.mark.asyncio
    async def test_stale_decision_keeps_bot_running(self, scheduler, provider, decision_engine, oracle, sample_bot):
        await scheduler.run_tick(sample_bot.id)
        oracle.set(ETH=2300.0)
        evaluate = decision_engine.evaluate

        async def evaluate_then_reset(bot_id):
            decision = await evaluate(bot_id)
            async with provider.transaction() as repos:
                (await repos.bots.get(bot_id)).reset_count = 1
            return decision

        decision_engine.evaluate = evaluate_then_reset

        result = await scheduler.run_tick(sample_bot.id)

        assert result.outcome == "settlement_failed"
        assert result.swap_performed is False
        assert (await _bot(provider, sample_bot.id)).status == BotStatus.CREATED
        assert await _decision_count(provider, sample_bot.id) == 2

    @pytest.mark.asyncio
    async def test_first_leg_rejection_does_not_pause(self, scheduler, provider, oracle, executor, alerts, sample_bot):
        await scheduler.run_tick(sample_bot.id)
        oracle.set(ETH=2300.0)
        executor.failing_legs = {("BTC", "USDT")}

        result = await scheduler.run_tick(sample_bot.id)

        assert result.outcome == "settlement_failed"
        assert (await _bot(provider, sample_bot.id)).status == BotStatus.CREATED
        alerts.send_bot_paused_alert.assert_not_called()

    @pytest.mark.asyncio
    async def test_ticks_of_one_bot_never_overlap(self, scheduler, decision_engine, make_bot):
        first = await make_bot(name="First")
        second = await make_bot(name="Second")
        active = {}
        peak = {"same_bot": 0, "overall": 0}
        evaluate = decision_engine.evaluate

        async def tracking_evaluate(bot_id):
            active[bot_id] = active.get(bot_id, 0) + 1
            peak["same_bot"] = max(peak["same_bot"], active[bot_id])
            peak["overall"] = max(peak["overall"], sum(active.values()))
            try:
                await asyncio.sleep(0.05)
                return await evaluate(bot_id)
            finally:
                active[bot_id] -= 1

        decision_engine.evaluate = tracking_evaluate

        await asyncio.gather(
            scheduler.run_tick(first.id),
            scheduler.run_tick(first.id),
            scheduler.run_tick(second.id),
        )

        assert peak["same_bot"] == 1
        assert peak["overall"] == 2

    @pytest.mark.asyncio
    async def test_unknown_bot(self, scheduler):
        with pytest.raises(BotNotFoundError):
            await scheduler.run_tick(424242)


class TestLifecycle:
    """Starting, stopping and resuming bot loops."""

    @pytest.mark.asyncio
    async def test_start_runs_loop_until_stopped(self, scheduler, provider, sample_bot):
        assert await scheduler.start_bot(sample_bot.id) is True
        assert scheduler.registry.is_running(sample_bot.id)
        assert (await _bot(provider, sample_bot.id)).status == BotStatus.RUNNING

        async def ticked():
            return await _decision_count(provider, sample_bot.id) >= 1

        assert await _wait_for(ticked)

        assert await scheduler.stop_bot(sample_bot.id) is True
        assert not scheduler.registry.is_running(sample_bot.id)
        assert (await _bot(provider, sample_bot.id)).status == BotStatus.STOPPED

    @pytest.mark.asyncio
    async def test_start_twice(self, scheduler, sample_bot):
        assert await scheduler.start_bot(sample_bot.id) is True
        assert await scheduler.start_bot(sample_bot.id) is False
        await scheduler.stop_bot(sample_bot.id)

    @pytest.mark.asyncio
    async def test_disabled_bot_does_not_start(self, scheduler, make_bot):
        bot = await make_bot(enabled=False)
        assert await scheduler.start_bot(bot.id) is False

    @pytest.mark.asyncio
    async def test_start_unknown_bot(self, scheduler):
        with pytest.raises(BotNotFoundError):
            await scheduler.start_bot(424242)

    @pytest.mark.asyncio
    async def test_resume_and_graceful_shutdown(self, scheduler, provider, make_bot):
        running = await make_bot(name="Was running", status=BotStatus.RUNNING)
        await make_bot(name="Was stopped", status=BotStatus.STOPPED)

        assert await scheduler.resume_bots_on_startup() == 1
        assert scheduler.registry.running_bot_ids() == [running.id]

        assert await scheduler.graceful_shutdown() == 1
        assert scheduler.registry.running_bot_ids() == []
        # Status is kept so the bot resumes on the next start
        assert (await _bot(provider, running.id)).status == BotStatus.RUNNING

    @pytest.mark.asyncio
    async def test_reset_starts_new_epoch(self, scheduler, provider, sample_bot):
        await scheduler.run_tick(sample_bot.id)

        event = await scheduler.reset_bot(sample_bot.id, ResetType.SOFT)

        bot = await _bot(provider, sample_bot.id)
        assert event.reset_type == ResetType.SOFT
        assert bot.reset_epoch == 1
        assert bot.current_coin == "BTC"


class TestLockCleanup:
    """Background expiry of stale locks."""

    @pytest.mark.asyncio
    async def test_cleanup_loop_releases_expired_locks(self, scheduler, provider, lock_manager, sample_bot):
        handle = await lock_manager.acquire(
            LockScope("acct-1", sample_bot.id), "BTC", 1.0, ttl=timedelta(milliseconds=10)
        )
        await asyncio.sleep(0.05)

        scheduler.start_lock_cleanup()

        async def released():
            async with provider.transaction() as repos:
                lock = await repos.locks.get(handle.lock_id)
            return lock.released_at is not None

        try:
            assert await _wait_for(released)
        finally:
            await scheduler.stop_lock_cleanup()


class TestResetWithSale:
    """Resets that first sell the holding to the stablecoin."""

    async def _trackers(self, provider, bot_id):
        async with provider.transaction() as repos:
            return {t.coin: t.units for t in await repos.snapshots.list_trackers(bot_id)}

    @pytest.mark.asyncio
    async def test_soft_reset_sells_to_stablecoin(self, scheduler, provider, make_bot, tmp_path):
        bot = await make_bot(coins=["BTC", "ETH", "USDT"])
        await scheduler.run_tick(bot.id)

        event = await scheduler.reset_bot(bot.id, ResetType.SOFT, sell_to_stablecoin=True)

        after = await _bot(provider, bot.id)
        assert after.current_coin == "USDT"
        assert after.reset_epoch == 1
        assert event.previous_coin == "USDT"
        assert event.sold_to_stablecoin is True
        assert event.liquidation_trade_id is not None
        trackers = await self._trackers(provider, bot.id)
        assert trackers["BTC"] == 0.0
        assert trackers["USDT"] == pytest.approx(50000.0)

        async with provider.transaction() as repos:
            trade = await repos.trades.get(event.liquidation_trade_id)
            decisions = await repos.audit.list_decisions(bot.id)
        assert (trade.from_coin, trade.to_coin) == ("BTC", "USDT")
        assert decisions[0].trade_id == trade.id
        assert "before reset" in decisions[0].reason
        rows = (tmp_path / "logs" / str(bot.id) / "trades_simulated.csv").read_text().splitlines()
        assert len(rows) == 2

    @pytest.mark.asyncio
    async def test_already_on_stablecoin_sells_nothing(self, scheduler, provider, executor, make_bot):
        bot = await make_bot(coins=["BTC", "USDT"], initial_coin="USDT", initial_units=1000.0)
        await scheduler.run_tick(bot.id)

        event = await scheduler.reset_bot(bot.id, ResetType.HARD, sell_to_stablecoin=True)

        assert executor.calls == []
        assert event.sold_to_stablecoin is True
        assert event.liquidation_trade_id is None
        assert (await _bot(provider, bot.id)).current_coin is None

    @pytest.mark.asyncio
    async def test_failed_sale_aborts_reset(self, scheduler, provider, executor, alerts, sample_bot):
        await scheduler.run_tick(sample_bot.id)
        executor.failing_legs = {("BTC", "USDT")}

        with pytest.raises(ExchangeRejectedError):
            await scheduler.reset_bot(sample_bot.id, ResetType.HARD, sell_to_stablecoin=True)

        bot = await _bot(provider, sample_bot.id)
        assert bot.reset_epoch == 0
        assert bot.current_coin == "BTC"
        assert bot.status == BotStatus.CREATED
        alerts.send_bot_paused_alert.assert_not_called()

    @pytest.mark.asyncio
    async def test_soft_reset_needs_stablecoin_among_coins(self, scheduler, provider, executor, sample_bot):
        await scheduler.run_tick(sample_bot.id)

        with pytest.raises(InvalidResetError):
            await scheduler.reset_bot(sample_bot.id, ResetType.SOFT, sell_to_stablecoin=True)

        assert executor.calls == []
        assert (await _bot(provider, sample_bot.id)).reset_epoch == 0
