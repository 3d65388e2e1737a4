"""Pytest configuration and fixtures.

Every test gets its own file-backed SQLite database, so concurrent sessions
go through SQLite's real locking instead of sharing one in-memory connection.
"""

from datetime import datetime, timedelta
from typing import Dict, Optional, Set, Tuple
from unittest.mock import Mock

import pytest
from httpx import AsyncClient, ASGITransport

from rotator.main import app
from rotator.models import Base, Bot, BotStatus, create_engine_and_session_maker, get_session
from rotator.repositories import SqlRepositoryProvider
from rotator.services import (
    AssetLockManager,
    BotScheduler,
    DecisionEngine,
    EmailService,
    ExecutionError,
    GlobalProtectionTracker,
    LegFill,
    PriceOracle,
    PriceQuote,
    PriceUnavailableError,
    SimulatedExchangeExecutor,
    TradeSettlement,
)


class MutableClock:
    """Test clock: returns a fixed naive UTC time that tests move forward."""

    def __init__(self, now: Optional[datetime] = None):
        self.now = now or datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class StubPriceOracle(PriceOracle):
    """Oracle answering from a mutable price table, quoted in any reference coin."""

    def __init__(self, prices: Optional[Dict[str, float]] = None):
        self.prices = dict(prices or {})
        self.unavailable: Set[str] = set()

    def set(self, **prices: float) -> None:
        self.prices.update(prices)

    async def get_price(self, coin: str, quote: str) -> PriceQuote:
        if coin == quote:
            return PriceQuote(price=1.0, source="identity")
        if coin in self.unavailable or coin not in self.prices:
            raise PriceUnavailableError(coin, quote, "stub has no price")
        return PriceQuote(price=self.prices[coin], source="stub")


class ScriptedExecutor(SimulatedExchangeExecutor):
    """Simulated executor whose legs can be scripted to fail."""

    def __init__(self, oracle: PriceOracle, fee_rate: float = 0.0):
        super().__init__(oracle, preferred_stablecoin="USDT", fee_rate=fee_rate)
        self.failing_legs: Set[Tuple[str, str]] = set()
        self.crashing_legs: Set[Tuple[str, str]] = set()
        self.calls = []

    async def execute(self, account_id, from_coin, to_coin, amount, client_order_id, reference_coin="USDT") -> LegFill:
        self.calls.append((from_coin, to_coin, amount, client_order_id))
        if (from_coin, to_coin) in self.failing_legs:
            raise ExecutionError(from_coin, to_coin, "insufficient liquidity", {"code": "scripted"})
        if (from_coin, to_coin) in self.crashing_legs:
            raise RuntimeError("connection reset while waiting for fill")
        return await super().execute(account_id, from_coin, to_coin, amount, client_order_id, reference_coin)


@pytest.fixture
def clock():
    return MutableClock()


@pytest.fixture
async def db(tmp_path):
    """Engine and session factory on a fresh database file."""
    engine, session_maker = create_engine_and_session_maker(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine, session_maker

    await engine.dispose()


@pytest.fixture
def session_maker(db):
    return db[1]


@pytest.fixture
def provider(session_maker):
    return SqlRepositoryProvider(session_maker)


@pytest.fixture
def oracle():
    return StubPriceOracle({"BTC": 50000.0, "ETH": 2000.0, "SOL": 100.0})


@pytest.fixture
def make_executor(oracle):
    """Factory for scripted executors with a chosen fee rate."""

    def _make_executor(fee_rate: float = 0.0) -> ScriptedExecutor:
        return ScriptedExecutor(oracle, fee_rate=fee_rate)

    return _make_executor


@pytest.fixture
def executor(make_executor):
    return make_executor()


@pytest.fixture
def alerts():
    return Mock(spec=EmailService)


@pytest.fixture
def lock_manager(provider):
    return AssetLockManager(provider)


@pytest.fixture
def decision_engine(provider, oracle):
    return DecisionEngine(provider, oracle, protection=GlobalProtectionTracker())


@pytest.fixture
def settlement(provider, lock_manager, executor, alerts):
    return TradeSettlement(provider, lock_manager, executor, alerts=alerts)


@pytest.fixture
def scheduler(provider, decision_engine, settlement, lock_manager, alerts, tmp_path):
    return BotScheduler(
        provider,
        decision_engine,
        settlement,
        lock_manager,
        alerts=alerts,
        default_interval_seconds=1,
        lock_cleanup_interval_seconds=1,
        log_dir=str(tmp_path / "logs"),
        stop_timeout_seconds=2.0,
    )


@pytest.fixture
def make_bot(provider):
    """Factory creating a bot; keyword arguments override the defaults."""

    async def _make_bot(**overrides) -> Bot:
        fields = dict(
            name="Rotator",
            account_id="acct-1",
            coins=["BTC", "ETH", "SOL"],
            initial_coin="BTC",
            initial_units=1.0,
            reference_coin="USDT",
            preferred_stablecoin="USDT",
            threshold_percentage=10.0,
            global_threshold_percentage=10.0,
            use_take_profit=False,
            unit_gain_tolerance_percent=0.0,
            commission_rate=0.0,
            check_interval_seconds=1,
            is_dry_run=True,
            enabled=True,
            status=BotStatus.CREATED,
        )
        fields.update(overrides)
        async with provider.transaction() as repos:
            bot = await repos.bots.add(Bot(**fields))
        return bot

    return _make_bot


@pytest.fixture
async def sample_bot(make_bot):
    return await make_bot()


@pytest.fixture
async def client(session_maker, scheduler, lock_manager):
    """Test client on the test database, with the engine on app.state."""

    async def override_get_session():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.state.scheduler = scheduler
    app.state.lock_manager = lock_manager

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    await scheduler.graceful_shutdown()
    app.dependency_overrides.clear()
