"""SQLAlchemy implementation of the repository interfaces."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models import (
    AssetLock,
    Bot,
    BotResetEvent,
    BotStatus,
    BotSwapDecision,
    CoinDeviation,
    CoinSnapshot,
    CoinUnitTracker,
    LockStatus,
    MissedTrade,
    Trade,
)
from .base import (
    ActiveLockExistsError,
    AuditRepository,
    BotRepository,
    LockRepository,
    Repositories,
    RepositoryProvider,
    SnapshotRepository,
    TradeRepository,
)

logger = logging.getLogger(__name__)


class SqlBotRepository(BotRepository):

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, bot_id: int) -> Optional[Bot]:
        result = await self.session.execute(select(Bot).where(Bot.id == bot_id))
        return result.scalar_one_or_none()

    async def list_all(self, status: Optional[BotStatus] = None) -> List[Bot]:
        query = select(Bot).order_by(Bot.id)
        if status is not None:
            query = query.where(Bot.status == status)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def add(self, bot: Bot) -> Bot:
        self.session.add(bot)
        await self.session.flush()
        return bot


class SqlSnapshotRepository(SnapshotRepository):

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_snapshot(self, bot_id: int, coin: str, reset_epoch: int) -> Optional[CoinSnapshot]:
        result = await self.session.execute(
            select(CoinSnapshot).where(
                CoinSnapshot.bot_id == bot_id,
                CoinSnapshot.coin == coin,
                CoinSnapshot.reset_epoch == reset_epoch,
            )
        )
        return result.scalar_one_or_none()

    async def list_snapshots(
        self, bot_id: int, reset_epoch: Optional[int] = None, include_retired: bool = False
    ) -> List[CoinSnapshot]:
        query = select(CoinSnapshot).where(CoinSnapshot.bot_id == bot_id)
        if reset_epoch is not None:
            query = query.where(CoinSnapshot.reset_epoch == reset_epoch)
        if not include_retired:
            query = query.where(CoinSnapshot.is_retired.is_(False))
        query = query.order_by(CoinSnapshot.reset_epoch, CoinSnapshot.coin)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def add_snapshot(self, snapshot: CoinSnapshot) -> CoinSnapshot:
        self.session.add(snapshot)
        await self.session.flush()
        return snapshot

    async def retire_epoch(self, bot_id: int, reset_epoch: int) -> int:
        result = await self.session.execute(
            update(CoinSnapshot)
            .where(
                CoinSnapshot.bot_id == bot_id,
                CoinSnapshot.reset_epoch == reset_epoch,
                CoinSnapshot.is_retired.is_(False),
            )
            .values(is_retired=True)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount

    async def get_tracker(self, bot_id: int, coin: str) -> Optional[CoinUnitTracker]:
        result = await self.session.execute(
            select(CoinUnitTracker).where(
                CoinUnitTracker.bot_id == bot_id,
                CoinUnitTracker.coin == coin,
            )
        )
        return result.scalar_one_or_none()

    async def list_trackers(self, bot_id: int) -> List[CoinUnitTracker]:
        result = await self.session.execute(
            select(CoinUnitTracker)
            .where(CoinUnitTracker.bot_id == bot_id)
            .order_by(CoinUnitTracker.coin)
        )
        return list(result.scalars().all())

    async def add_tracker(self, tracker: CoinUnitTracker) -> CoinUnitTracker:
        self.session.add(tracker)
        await self.session.flush()
        return tracker


class SqlLockRepository(LockRepository):
    """Lock persistence.

    Every statement that changes a lock is a single conditional UPDATE or an
    INSERT guarded by the partial unique index, so concurrent callers in
    other processes never observe a half-applied transition.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def insert_active(self, lock: AssetLock) -> AssetLock:
        lock.status = LockStatus.LOCKED.value
        self.session.add(lock)
        try:
            await self.session.flush()
        except IntegrityError as e:
            raise ActiveLockExistsError(lock.account_id, lock.coin) from e
        return lock

    async def release_expired(self, now: datetime, account_id: Optional[str] = None,
                              coin: Optional[str] = None) -> int:
        stmt = update(AssetLock).where(
            AssetLock.status == LockStatus.LOCKED.value,
            AssetLock.expires_at < now,
        )
        if account_id is not None:
            stmt = stmt.where(AssetLock.account_id == account_id)
        if coin is not None:
            stmt = stmt.where(AssetLock.coin == coin)
        stmt = stmt.values(
            status=LockStatus.RELEASED.value,
            released_at=now,
        ).execution_options(synchronize_session=False)

        result = await self.session.execute(stmt)
        return result.rowcount

    async def get(self, lock_id: int) -> Optional[AssetLock]:
        result = await self.session.execute(select(AssetLock).where(AssetLock.id == lock_id))
        return result.scalar_one_or_none()

    async def find_active(self, account_id: str, coin: str, now: datetime) -> Optional[AssetLock]:
        result = await self.session.execute(
            select(AssetLock).where(
                AssetLock.account_id == account_id,
                AssetLock.coin == coin,
                AssetLock.status == LockStatus.LOCKED.value,
                AssetLock.expires_at >= now,
            )
        )
        return result.scalar_one_or_none()

    async def mark_released(self, lock_id: int, now: datetime) -> int:
        result = await self.session.execute(
            update(AssetLock)
            .where(AssetLock.id == lock_id, AssetLock.status == LockStatus.LOCKED.value)
            .values(status=LockStatus.RELEASED.value, released_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def extend(self, lock_id: int, expires_at: datetime, now: datetime) -> int:
        result = await self.session.execute(
            update(AssetLock)
            .where(
                AssetLock.id == lock_id,
                AssetLock.status == LockStatus.LOCKED.value,
                AssetLock.expires_at >= now,
            )
            .values(expires_at=expires_at)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def list_active(self, now: datetime, account_id: Optional[str] = None) -> List[AssetLock]:
        query = select(AssetLock).where(
            AssetLock.status == LockStatus.LOCKED.value,
            AssetLock.expires_at >= now,
        )
        if account_id is not None:
            query = query.where(AssetLock.account_id == account_id)
        result = await self.session.execute(query.order_by(AssetLock.id))
        return list(result.scalars().all())


class SqlTradeRepository(TradeRepository):

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, trade: Trade) -> Trade:
        self.session.add(trade)
        await self.session.flush()
        return trade

    async def get(self, trade_id: int) -> Optional[Trade]:
        result = await self.session.execute(select(Trade).where(Trade.id == trade_id))
        return result.scalar_one_or_none()

    async def get_by_attempt(self, attempt_id: str) -> Optional[Trade]:
        result = await self.session.execute(select(Trade).where(Trade.attempt_id == attempt_id))
        return result.scalar_one_or_none()

    async def list_for_bot(self, bot_id: int, limit: int = 100) -> List[Trade]:
        result = await self.session.execute(
            select(Trade).where(Trade.bot_id == bot_id).order_by(Trade.id.desc()).limit(limit)
        )
        return list(result.scalars().all())

    async def list_needing_reconciliation(self) -> List[Trade]:
        result = await self.session.execute(
            select(Trade).where(Trade.needs_reconciliation.is_(True)).order_by(Trade.id)
        )
        return list(result.scalars().all())


class SqlAuditRepository(AuditRepository):

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add_decision(self, decision: BotSwapDecision) -> BotSwapDecision:
        self.session.add(decision)
        await self.session.flush()
        return decision

    async def list_decisions(self, bot_id: int, limit: int = 100) -> List[BotSwapDecision]:
        result = await self.session.execute(
            select(BotSwapDecision)
            .where(BotSwapDecision.bot_id == bot_id)
            .order_by(BotSwapDecision.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def add_missed_trade(self, missed: MissedTrade) -> MissedTrade:
        self.session.add(missed)
        await self.session.flush()
        return missed

    async def list_missed_trades(self, bot_id: int, limit: int = 100) -> List[MissedTrade]:
        result = await self.session.execute(
            select(MissedTrade)
            .where(MissedTrade.bot_id == bot_id)
            .order_by(MissedTrade.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def add_reset_event(self, event: BotResetEvent) -> BotResetEvent:
        self.session.add(event)
        await self.session.flush()
        return event

    async def add_deviations(self, deviations: List[CoinDeviation]) -> None:
        self.session.add_all(deviations)
        await self.session.flush()

    async def list_deviations(
        self, bot_id: int, target_coin: Optional[str] = None, limit: int = 100
    ) -> List[CoinDeviation]:
        query = select(CoinDeviation).where(CoinDeviation.bot_id == bot_id)
        if target_coin:
            query = query.where(CoinDeviation.target_coin == target_coin)
        result = await self.session.execute(query.order_by(CoinDeviation.id.desc()).limit(limit))
        return list(result.scalars().all())


def build_repositories(session: AsyncSession) -> Repositories:
    """Bind every SQL repository to one session."""
    return Repositories(
        bots=SqlBotRepository(session),
        snapshots=SqlSnapshotRepository(session),
        locks=SqlLockRepository(session),
        trades=SqlTradeRepository(session),
        audit=SqlAuditRepository(session),
    )


class SqlRepositoryProvider(RepositoryProvider):
    """Repository provider backed by an async session factory."""

    def __init__(self, session_maker: async_sessionmaker):
        self.session_maker = session_maker

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Repositories]:
        async with self.session_maker() as session:
            async with session.begin():
                yield build_repositories(session)
