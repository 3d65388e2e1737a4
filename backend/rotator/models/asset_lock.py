"""Asset lock model - leases over a coin within an exchange account.

CRITICAL: at most one lock with status 'locked' may exist for a coin within an
account. This is enforced by a partial unique index, so two concurrent
acquisitions resolve in the database with exactly one winner.
"""

from enum import Enum
from sqlalchemy import Column, Integer, String, Float, DateTime, ForeignKey, Index, text

from .database import Base, utcnow


class LockStatus(str, Enum):
    """Asset lock status."""
    LOCKED = "locked"
    RELEASED = "released"


class AssetLock(Base):
    """Time-bounded exclusive claim on a coin."""
    __tablename__ = "asset_locks"
    __table_args__ = (
        Index(
            "uq_asset_locks_active_coin",
            "account_id",
            "coin",
            unique=True,
            sqlite_where=text("status = 'locked'"),
            postgresql_where=text("status = 'locked'"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    bot_id = Column(Integer, ForeignKey("bots.id"), nullable=False, index=True)
    account_id = Column(String(100), nullable=False)
    coin = Column(String(20), nullable=False)
    amount = Column(Float, nullable=False)

    # Plain string so the partial index predicate matches the stored value
    status = Column(String(20), nullable=False, default=LockStatus.LOCKED.value)
    reason = Column(String(100), nullable=False, default="swap_execution")

    expires_at = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow)
    released_at = Column(DateTime, nullable=True)

    @property
    def is_locked(self) -> bool:
        return self.status == LockStatus.LOCKED.value

    def is_expired(self, now) -> bool:
        return self.expires_at < now

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "bot_id": self.bot_id,
            "account_id": self.account_id,
            "coin": self.coin,
            "amount": self.amount,
            "status": self.status,
            "reason": self.reason,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "released_at": self.released_at.isoformat() if self.released_at else None,
        }

    def __repr__(self):
        return (
            f"<AssetLock(id={self.id}, account={self.account_id}, coin={self.coin}, "
            f"bot_id={self.bot_id}, status={self.status})>"
        )
