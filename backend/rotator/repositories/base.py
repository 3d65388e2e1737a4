"""Repository interfaces used by the rotation core.

The decision engine, lock manager and settlement only talk to these
interfaces. A RepositoryProvider hands out one Repositories bundle per
transaction; everything written through a bundle commits or rolls back
together.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncContextManager, List, Optional

from ..models import (
    AssetLock,
    Bot,
    BotResetEvent,
    BotStatus,
    BotSwapDecision,
    CoinDeviation,
    CoinSnapshot,
    CoinUnitTracker,
    MissedTrade,
    Trade,
)


class RepositoryError(Exception):
    """Base class for repository level errors."""
    pass


class ActiveLockExistsError(RepositoryError):
    """An active lock already exists for the account and coin."""

    def __init__(self, account_id: str, coin: str):
        self.account_id = account_id
        self.coin = coin
        super().__init__(f"Active lock already exists for {coin} in account {account_id}")


class BotRepository(ABC):
    """Access to bots."""

    @abstractmethod
    async def get(self, bot_id: int) -> Optional[Bot]:
        pass

    @abstractmethod
    async def list_all(self, status: Optional[BotStatus] = None) -> List[Bot]:
        pass

    @abstractmethod
    async def add(self, bot: Bot) -> Bot:
        pass


class SnapshotRepository(ABC):
    """Access to coin snapshots and unit trackers."""

    @abstractmethod
    async def get_snapshot(self, bot_id: int, coin: str, reset_epoch: int) -> Optional[CoinSnapshot]:
        pass

    @abstractmethod
    async def list_snapshots(
        self, bot_id: int, reset_epoch: Optional[int] = None, include_retired: bool = False
    ) -> List[CoinSnapshot]:
        pass

    @abstractmethod
    async def add_snapshot(self, snapshot: CoinSnapshot) -> CoinSnapshot:
        pass

    @abstractmethod
    async def retire_epoch(self, bot_id: int, reset_epoch: int) -> int:
        """Mark every snapshot of an epoch as retired. Returns the row count."""
        pass

    @abstractmethod
    async def get_tracker(self, bot_id: int, coin: str) -> Optional[CoinUnitTracker]:
        pass

    @abstractmethod
    async def list_trackers(self, bot_id: int) -> List[CoinUnitTracker]:
        pass

    @abstractmethod
    async def add_tracker(self, tracker: CoinUnitTracker) -> CoinUnitTracker:
        pass


class LockRepository(ABC):
    """Access to asset locks."""

    @abstractmethod
    async def insert_active(self, lock: AssetLock) -> AssetLock:
        """Insert a lock in the locked state.

        Raises:
            ActiveLockExistsError: If the account already holds an active lock on the coin.
        """
        pass

    @abstractmethod
    async def release_expired(self, now: datetime, account_id: Optional[str] = None,
                              coin: Optional[str] = None) -> int:
        """Release locked rows whose expiry has passed. Returns the row count."""
        pass

    @abstractmethod
    async def get(self, lock_id: int) -> Optional[AssetLock]:
        pass

    @abstractmethod
    async def find_active(self, account_id: str, coin: str, now: datetime) -> Optional[AssetLock]:
        """Locked, unexpired lock on the coin, if any."""
        pass

    @abstractmethod
    async def mark_released(self, lock_id: int, now: datetime) -> int:
        """Release a lock if it is still locked. Returns the row count."""
        pass

    @abstractmethod
    async def extend(self, lock_id: int, expires_at: datetime, now: datetime) -> int:
        """Move the expiry of a locked, unexpired lock. Returns the row count."""
        pass

    @abstractmethod
    async def list_active(self, now: datetime, account_id: Optional[str] = None) -> List[AssetLock]:
        pass


class TradeRepository(ABC):
    """Access to trades and their steps."""

    @abstractmethod
    async def add(self, trade: Trade) -> Trade:
        pass

    @abstractmethod
    async def get(self, trade_id: int) -> Optional[Trade]:
        pass

    @abstractmethod
    async def get_by_attempt(self, attempt_id: str) -> Optional[Trade]:
        pass

    @abstractmethod
    async def list_for_bot(self, bot_id: int, limit: int = 100) -> List[Trade]:
        pass

    @abstractmethod
    async def list_needing_reconciliation(self) -> List[Trade]:
        pass


class AuditRepository(ABC):
    """Append-only audit rows: decisions, deviations, missed trades, reset events."""

    @abstractmethod
    async def add_decision(self, decision: BotSwapDecision) -> BotSwapDecision:
        pass

    @abstractmethod
    async def list_decisions(self, bot_id: int, limit: int = 100) -> List[BotSwapDecision]:
        pass

    @abstractmethod
    async def add_missed_trade(self, missed: MissedTrade) -> MissedTrade:
        pass

    @abstractmethod
    async def list_missed_trades(self, bot_id: int, limit: int = 100) -> List[MissedTrade]:
        pass

    @abstractmethod
    async def add_reset_event(self, event: BotResetEvent) -> BotResetEvent:
        pass

    @abstractmethod
    async def add_deviations(self, deviations: List[CoinDeviation]) -> None:
        pass

    @abstractmethod
    async def list_deviations(
        self, bot_id: int, target_coin: Optional[str] = None, limit: int = 100
    ) -> List[CoinDeviation]:
        pass


@dataclass
class Repositories:
    """Repositories bound to a single transaction."""
    bots: BotRepository
    snapshots: SnapshotRepository
    locks: LockRepository
    trades: TradeRepository
    audit: AuditRepository


class RepositoryProvider(ABC):
    """Hands out transaction-scoped repository bundles."""

    @abstractmethod
    def transaction(self) -> AsyncContextManager[Repositories]:
        """Async context manager yielding repositories for one transaction.

        Commits when the block exits normally, rolls back on any exception.
        """
        pass
