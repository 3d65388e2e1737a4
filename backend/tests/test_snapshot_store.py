"""Tests for the snapshot store."""

import pytest

from rotator.models import ResetType
from rotator.services import SnapshotStore


async def _in_store(provider, bot_id, action):
    """Run action(store, bot) in one transaction and return its result."""
    async with provider.transaction() as repos:
        bot = await repos.bots.get(bot_id)
        return await action(SnapshotStore(repos), bot)


class TestRecordUnits:
    """Unit writes keep the tracker and the snapshot in step."""

    @pytest.mark.asyncio
    async def test_first_write_creates_tracker_and_snapshot(self, provider, sample_bot):
        async def action(store, bot):
            await store.record_units(bot, "BTC", 1.0, 50000.0)
            return await store.units_held(bot, "BTC"), await store.get_snapshot(bot, "BTC")

        units, snapshot = await _in_store(provider, sample_bot.id, action)

        assert units == 1.0
        assert snapshot.initial_price == 50000.0
        assert snapshot.units_held == 1.0
        assert snapshot.reference_equivalent_value == 50000.0
        assert snapshot.was_ever_held is True
        assert snapshot.max_units_reached == 1.0

    @pytest.mark.asyncio
    async def test_max_units_only_ratchets_up(self, provider, sample_bot):
        async def action(store, bot):
            await store.record_units(bot, "ETH", 2.0, 2000.0)
            await store.record_units(bot, "ETH", 0.5, 2100.0)
            low = (await store.get_snapshot(bot, "ETH")).max_units_reached
            await store.record_units(bot, "ETH", 3.0, 1900.0)
            return low, await store.get_snapshot(bot, "ETH")

        low, snapshot = await _in_store(provider, sample_bot.id, action)

        assert low == 2.0
        assert snapshot.max_units_reached == 3.0
        assert snapshot.units_held == 3.0
        # The baseline stays at the price of the first write
        assert snapshot.initial_price == 2000.0

    @pytest.mark.asyncio
    async def test_zero_units_on_new_coin_is_not_held(self, provider, sample_bot):
        async def action(store, bot):
            return await store.record_units(bot, "SOL", 0.0, 100.0)

        snapshot = await _in_store(provider, sample_bot.id, action)

        assert snapshot.was_ever_held is False
        assert snapshot.max_units_reached == 0.0

    @pytest.mark.asyncio
    async def test_selling_out_keeps_history(self, provider, sample_bot):
        async def action(store, bot):
            await store.record_units(bot, "BTC", 1.0, 50000.0)
            return await store.record_units(bot, "BTC", 0.0, 51000.0)

        snapshot = await _in_store(provider, sample_bot.id, action)

        assert snapshot.units_held == 0.0
        assert snapshot.was_ever_held is True
        assert snapshot.max_units_reached == 1.0

    @pytest.mark.asyncio
    async def test_negative_units_rejected(self, provider, sample_bot):
        async def action(store, bot):
            await store.record_units(bot, "BTC", -0.1, 50000.0)

        with pytest.raises(ValueError):
            await _in_store(provider, sample_bot.id, action)


class TestBaselines:
    """Baselines for coins without a snapshot in the current epoch."""

    @pytest.mark.asyncio
    async def test_missing_baselines_are_created(self, provider, sample_bot):
        async def action(store, bot):
            return await store.ensure_baselines(bot, {"BTC": 50000.0, "ETH": 2000.0, "SOL": 100.0})

        snapshots = await _in_store(provider, sample_bot.id, action)

        assert sorted(snapshots) == ["BTC", "ETH", "SOL"]
        assert snapshots["ETH"].initial_price == 2000.0
        assert snapshots["ETH"].was_ever_held is False

    @pytest.mark.asyncio
    async def test_existing_baselines_are_left_alone(self, provider, sample_bot):
        async def action(store, bot):
            await store.ensure_baselines(bot, {"BTC": 50000.0, "ETH": 2000.0})
            return await store.ensure_baselines(bot, {"BTC": 60000.0, "ETH": 2500.0, "SOL": 120.0})

        snapshots = await _in_store(provider, sample_bot.id, action)

        assert snapshots["BTC"].initial_price == 50000.0
        assert snapshots["ETH"].initial_price == 2000.0
        assert snapshots["SOL"].initial_price == 120.0

    @pytest.mark.asyncio
    async def test_coins_without_price_are_skipped(self, provider, sample_bot):
        async def action(store, bot):
            return await store.ensure_baselines(bot, {"BTC": 50000.0})

        snapshots = await _in_store(provider, sample_bot.id, action)

        assert list(snapshots) == ["BTC"]


class TestReset:
    """Soft and hard resets."""

    async def _hold_btc(self, provider, bot_id):
        async def action(store, bot):
            bot.current_coin = "BTC"
            bot.global_peak_value = 50000.0
            await store.ensure_baselines(bot, {"BTC": 50000.0, "ETH": 2000.0})
            await store.record_units(bot, "BTC", 1.0, 50000.0)

        await _in_store(provider, bot_id, action)

    @pytest.mark.asyncio
    async def test_soft_reset_starts_new_epoch_and_keeps_units(self, provider, sample_bot):
        await self._hold_btc(provider, sample_bot.id)

        async def reset(store, bot):
            return await store.reset_all(bot, ResetType.SOFT)

        event = await _in_store(provider, sample_bot.id, reset)

        async def inspect(store, bot):
            retired = await store.repos.snapshots.list_snapshots(bot.id, reset_epoch=0, include_retired=True)
            current = await store.current_snapshots(bot)
            rebased = await store.ensure_baselines(bot, {"BTC": 55000.0, "ETH": 2200.0})
            return bot, retired, current, rebased, await store.units_held(bot, "BTC")

        bot, retired, current, rebased, btc_units = await _in_store(provider, sample_bot.id, inspect)

        assert event.previous_global_peak == 50000.0
        assert event.previous_coin == "BTC"
        assert bot.reset_epoch == 1
        assert bot.global_peak_value == 0.0
        assert bot.current_coin == "BTC"
        assert all(s.is_retired for s in retired)
        assert len(retired) == 2
        assert current == {}
        assert btc_units == 1.0
        assert rebased["BTC"].initial_price == 55000.0
        assert rebased["BTC"].was_ever_held is True
        assert rebased["BTC"].max_units_reached == 1.0
        assert rebased["ETH"].was_ever_held is False

    @pytest.mark.asyncio
    async def test_hard_reset_clears_holdings(self, provider, sample_bot):
        await self._hold_btc(provider, sample_bot.id)

        async def reset(store, bot):
            await store.reset_all(bot, ResetType.HARD)

        await _in_store(provider, sample_bot.id, reset)

        async def inspect(store, bot):
            return bot, await store.units_held(bot, "BTC")

        bot, btc_units = await _in_store(provider, sample_bot.id, inspect)

        assert bot.current_coin is None
        assert bot.reset_epoch == 1
        assert btc_units == 0.0
