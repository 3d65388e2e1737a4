"""Asset lock manager - lease based mutual exclusion over coins.

Bots that share an exchange account share its balances, so exclusion is
per (account, coin), not per bot. A lock is a lease: if a settlement dies
while holding one, the lock expires and cleanup returns the coin.

Acquisition is one transaction that first releases expired leases on the
coin and then inserts the new lease. The partial unique index on active
locks makes the insert the arbiter: when several bots race for the same
coin, exactly one insert succeeds.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import AsyncIterator, Callable, List, Optional

from ..models import AssetLock, utcnow
from ..repositories import ActiveLockExistsError, RepositoryProvider

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TTL = timedelta(minutes=5)


class LockError(Exception):
    """Base class for asset lock errors."""
    pass


class AlreadyLockedError(LockError):
    """An unexpired lock already exists for the coin in this account."""

    def __init__(self, account_id: str, coin: str, holder_bot_id: Optional[int] = None):
        self.account_id = account_id
        self.coin = coin
        self.holder_bot_id = holder_bot_id
        holder = f" by bot {holder_bot_id}" if holder_bot_id is not None else ""
        super().__init__(f"{coin} is already locked{holder} in account {account_id}")


class NotOwnerError(LockError):
    """The caller does not own the lock it tried to change."""

    def __init__(self, lock_id: int, owner_bot_id: int, caller_bot_id: int):
        self.lock_id = lock_id
        self.owner_bot_id = owner_bot_id
        self.caller_bot_id = caller_bot_id
        super().__init__(
            f"Lock {lock_id} is owned by bot {owner_bot_id}, not bot {caller_bot_id}"
        )


class LockNotFoundError(LockError):
    """No lock with the given id exists."""

    def __init__(self, lock_id: int):
        self.lock_id = lock_id
        super().__init__(f"Lock {lock_id} not found")


@dataclass(frozen=True)
class LockScope:
    """Who is asking: the shared exchange account and the bot within it."""
    account_id: str
    bot_id: int


@dataclass(frozen=True)
class LockHandle:
    """Handle to an acquired lock."""
    lock_id: int
    account_id: str
    bot_id: int
    coin: str
    amount: float
    reason: str
    expires_at: datetime


@dataclass
class LockAvailability:
    """Result of an advisory availability check."""
    allowed: bool
    reason: str
    holder_bot_id: Optional[int] = None
    expires_at: Optional[datetime] = None


class AssetLockManager:
    """Acquires, releases, extends and expires asset locks."""

    def __init__(
        self,
        provider: RepositoryProvider,
        default_ttl: timedelta = DEFAULT_LOCK_TTL,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the lock manager.

        Args:
            provider: Repository provider; every operation runs in its own transaction
            default_ttl: Lease length used when acquire() is not given one
            clock: Returns the current naive UTC time
        """
        self._provider = provider
        self._default_ttl = default_ttl
        self._clock = clock

    async def acquire(
        self,
        scope: LockScope,
        coin: str,
        amount: float,
        reason: str = "swap_execution",
        ttl: Optional[timedelta] = None,
    ) -> LockHandle:
        """Atomically acquire a lock on a coin.

        Args:
            scope: Account and bot requesting the lock
            coin: Coin symbol to lock
            amount: Amount being committed (informational)
            reason: Why the coin is locked
            ttl: Lease length, defaults to the manager's default TTL

        Returns:
            Handle of the new lock

        Raises:
            AlreadyLockedError: If an unexpired lock on the coin exists in the account
        """
        now = self._clock()
        expires_at = now + (ttl or self._default_ttl)

        try:
            async with self._provider.transaction() as repos:
                # Write first: the expired-lease release takes the write lock
                # before anything is read in this transaction.
                expired = await repos.locks.release_expired(now, account_id=scope.account_id, coin=coin)
                if expired:
                    logger.info(f"Released {expired} expired lock(s) on {coin} in account {scope.account_id}")

                lock = await repos.locks.insert_active(AssetLock(
                    bot_id=scope.bot_id,
                    account_id=scope.account_id,
                    coin=coin,
                    amount=amount,
                    reason=reason,
                    expires_at=expires_at,
                    created_at=now,
                ))
                handle = LockHandle(
                    lock_id=lock.id,
                    account_id=scope.account_id,
                    bot_id=scope.bot_id,
                    coin=coin,
                    amount=amount,
                    reason=reason,
                    expires_at=expires_at,
                )
        except ActiveLockExistsError as e:
            holder = await self._find_holder(scope.account_id, coin)
            logger.warning(
                f"Bot {scope.bot_id}: Lock on {coin} refused, "
                f"held by bot {holder if holder is not None else 'unknown'}"
            )
            raise AlreadyLockedError(scope.account_id, coin, holder) from e

        logger.info(
            f"Bot {scope.bot_id}: Locked {amount} {coin} (lock {handle.lock_id}, "
            f"reason={reason}, expires {expires_at.isoformat()})"
        )
        return handle

    async def release(self, lock_id: int, scope: LockScope) -> bool:
        """Release a lock.

        Releasing a lock that is already released or expired is not an error.

        Args:
            lock_id: Lock to release
            scope: Account and bot that own the lock

        Returns:
            True if this call moved the lock to released

        Raises:
            LockNotFoundError: If the lock does not exist
            NotOwnerError: If the lock belongs to another bot or account
        """
        now = self._clock()
        async with self._provider.transaction() as repos:
            lock = await repos.locks.get(lock_id)
            if lock is None:
                raise LockNotFoundError(lock_id)
            if lock.bot_id != scope.bot_id or lock.account_id != scope.account_id:
                raise NotOwnerError(lock_id, lock.bot_id, scope.bot_id)

            released = await repos.locks.mark_released(lock_id, now)

        if released:
            logger.info(f"Bot {scope.bot_id}: Released lock {lock_id} on {lock.coin}")
        else:
            logger.debug(f"Bot {scope.bot_id}: Lock {lock_id} was already released")
        return bool(released)

    async def can_acquire(self, scope: LockScope, coin: str, amount: float = 0.0) -> LockAvailability:
        """Advisory, read-only check whether a coin could be locked now.

        The answer can be stale by the time the caller acts on it; callers
        must still call acquire() and handle AlreadyLockedError.
        """
        now = self._clock()
        async with self._provider.transaction() as repos:
            active = await repos.locks.find_active(scope.account_id, coin, now)

        if active is None:
            return LockAvailability(allowed=True, reason=f"{coin} is available")

        if active.bot_id == scope.bot_id:
            reason = f"{coin} is already locked by this bot (lock {active.id})"
        else:
            reason = f"{coin} is locked by bot {active.bot_id} until {active.expires_at.isoformat()}"
        return LockAvailability(
            allowed=False,
            reason=reason,
            holder_bot_id=active.bot_id,
            expires_at=active.expires_at,
        )

    async def extend(self, lock_id: int, scope: LockScope, additional: timedelta) -> datetime:
        """Push out the expiry of an active lock the caller owns.

        Returns:
            The new expiry time

        Raises:
            LockNotFoundError: If the lock does not exist
            NotOwnerError: If the lock belongs to another bot or account
            LockError: If the lock is no longer active
        """
        now = self._clock()
        async with self._provider.transaction() as repos:
            lock = await repos.locks.get(lock_id)
            if lock is None:
                raise LockNotFoundError(lock_id)
            if lock.bot_id != scope.bot_id or lock.account_id != scope.account_id:
                raise NotOwnerError(lock_id, lock.bot_id, scope.bot_id)

            new_expiry = lock.expires_at + additional
            extended = await repos.locks.extend(lock_id, new_expiry, now)
            if not extended:
                raise LockError(f"Lock {lock_id} is no longer active and cannot be extended")

        logger.info(f"Bot {scope.bot_id}: Extended lock {lock_id} until {new_expiry.isoformat()}")
        return new_expiry

    async def cleanup_expired(self) -> int:
        """Release every expired lock.

        A single conditional UPDATE, so concurrent cleanups never release the
        same lock twice.

        Returns:
            Number of locks released by this call
        """
        now = self._clock()
        async with self._provider.transaction() as repos:
            count = await repos.locks.release_expired(now)

        if count:
            logger.info(f"Cleaned up {count} expired asset lock(s)")
        return count

    async def list_active(self, account_id: Optional[str] = None) -> List[AssetLock]:
        """Unexpired locks, optionally limited to one account."""
        async with self._provider.transaction() as repos:
            return await repos.locks.list_active(self._clock(), account_id=account_id)

    @asynccontextmanager
    async def hold(
        self,
        scope: LockScope,
        coin: str,
        amount: float,
        reason: str = "swap_execution",
        ttl: Optional[timedelta] = None,
    ) -> AsyncIterator[LockHandle]:
        """Acquire a lock for the duration of a block.

        The lock is released on every exit path, including exceptions and
        task cancellation. A failed release is logged; the lease expiry
        covers it.
        """
        handle = await self.acquire(scope, coin, amount, reason=reason, ttl=ttl)
        try:
            yield handle
        finally:
            try:
                await self.release(handle.lock_id, scope)
            except Exception as e:
                logger.error(
                    f"Bot {scope.bot_id}: Failed to release lock {handle.lock_id} on {coin}, "
                    f"it will expire at {handle.expires_at.isoformat()}: {e}"
                )

    async def _find_holder(self, account_id: str, coin: str) -> Optional[int]:
        async with self._provider.transaction() as repos:
            active = await repos.locks.find_active(account_id, coin, self._clock())
        return active.bot_id if active else None
