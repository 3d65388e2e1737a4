"""Per-coin baselines and unit tracking for a bot.

A CoinSnapshot belongs to one reset epoch. Resets retire the rows of the old
epoch instead of deleting them so every run of a bot can be audited on its own.
CoinUnitTracker is the fast-path copy of the units held and is always written
together with the snapshot of the current epoch.
"""

from sqlalchemy import Column, Integer, String, Float, Boolean, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship

from .database import Base, utcnow


class CoinSnapshot(Base):
    """Baseline price and unit high-water mark for one coin in one epoch."""
    __tablename__ = "coin_snapshots"
    __table_args__ = (
        UniqueConstraint("bot_id", "coin", "reset_epoch", name="uq_coin_snapshots_bot_coin_epoch"),
    )

    id = Column(Integer, primary_key=True, index=True)
    bot_id = Column(Integer, ForeignKey("bots.id"), nullable=False, index=True)
    coin = Column(String(20), nullable=False)
    reset_epoch = Column(Integer, nullable=False, default=0)

    initial_price = Column(Float, nullable=False)
    snapshot_timestamp = Column(DateTime, default=utcnow)

    units_held = Column(Float, nullable=False, default=0.0)
    reference_equivalent_value = Column(Float, nullable=False, default=0.0)
    was_ever_held = Column(Boolean, nullable=False, default=False)
    max_units_reached = Column(Float, nullable=False, default=0.0)
    is_retired = Column(Boolean, nullable=False, default=False)

    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    bot = relationship("Bot", back_populates="snapshots")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "bot_id": self.bot_id,
            "coin": self.coin,
            "reset_epoch": self.reset_epoch,
            "initial_price": self.initial_price,
            "snapshot_timestamp": self.snapshot_timestamp.isoformat() if self.snapshot_timestamp else None,
            "units_held": self.units_held,
            "reference_equivalent_value": self.reference_equivalent_value,
            "was_ever_held": self.was_ever_held,
            "max_units_reached": self.max_units_reached,
            "is_retired": self.is_retired,
        }

    def __repr__(self):
        return (
            f"<CoinSnapshot(bot_id={self.bot_id}, coin={self.coin}, epoch={self.reset_epoch}, "
            f"units={self.units_held}, max={self.max_units_reached})>"
        )


class CoinUnitTracker(Base):
    """Units of a coin currently held by a bot."""
    __tablename__ = "coin_unit_trackers"
    __table_args__ = (
        UniqueConstraint("bot_id", "coin", name="uq_coin_unit_trackers_bot_coin"),
    )

    id = Column(Integer, primary_key=True, index=True)
    bot_id = Column(Integer, ForeignKey("bots.id"), nullable=False, index=True)
    coin = Column(String(20), nullable=False)
    units = Column(Float, nullable=False, default=0.0)
    last_updated = Column(DateTime, default=utcnow, onupdate=utcnow)

    bot = relationship("Bot", back_populates="unit_trackers")

    def __repr__(self):
        return f"<CoinUnitTracker(bot_id={self.bot_id}, coin={self.coin}, units={self.units})>"
