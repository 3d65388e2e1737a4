"""Swap decision audit model.

One row is written for every evaluation tick, whether or not a swap happened.
Rows are append-only: they are never updated after being inserted.
"""

from enum import Enum
from sqlalchemy import Column, Integer, String, Float, Boolean, DateTime, Text, ForeignKey, Enum as SQLEnum
from sqlalchemy.orm import relationship

from .database import Base, utcnow


class DecisionOutcome(str, Enum):
    """How an evaluation tick ended."""
    PRICE_UNAVAILABLE = "price_unavailable"
    NOT_TRIGGERED = "not_triggered"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    UNIT_GAIN_BLOCKED = "unit_gain_blocked"
    PROTECTION_BLOCKED = "protection_blocked"
    PERFORMED = "performed"
    SETTLEMENT_FAILED = "settlement_failed"


class BotSwapDecision(Base):
    """Full reasoning trail of one evaluation tick."""
    __tablename__ = "bot_swap_decisions"

    id = Column(Integer, primary_key=True, index=True)
    bot_id = Column(Integer, ForeignKey("bots.id"), nullable=False, index=True)
    reset_epoch = Column(Integer, nullable=False, default=0)

    from_coin = Column(String(20), nullable=True)
    to_coin = Column(String(20), nullable=True)

    # Prices at evaluation time and the snapshot baselines they were compared to
    from_coin_price = Column(Float, nullable=True)
    to_coin_price = Column(Float, nullable=True)
    from_coin_snapshot = Column(Float, nullable=True)
    to_coin_snapshot = Column(Float, nullable=True)

    # Deviation stage
    price_deviation_percent = Column(Float, nullable=True)
    price_threshold = Column(Float, nullable=True)
    deviation_triggered = Column(Boolean, nullable=False, default=False)

    # Unit gain stage
    unit_gain_percent = Column(Float, nullable=True)

    # Global protection stage (reference coin units)
    reference_equivalent_value = Column(Float, nullable=True)
    min_reference_equivalent = Column(Float, nullable=True)
    global_peak_value = Column(Float, nullable=True)  # peak before this tick
    current_global_peak_value = Column(Float, nullable=True)  # peak after this tick
    global_protection_triggered = Column(Boolean, nullable=False, default=False)
    take_profit_triggered = Column(Boolean, nullable=False, default=False)

    swap_performed = Column(Boolean, nullable=False, default=False)
    outcome = Column(SQLEnum(DecisionOutcome), nullable=False)
    reason = Column(Text, nullable=False, default="")
    trade_id = Column(Integer, ForeignKey("trades.id"), nullable=True, index=True)

    created_at = Column(DateTime, default=utcnow, index=True)

    bot = relationship("Bot", back_populates="swap_decisions")
    trade = relationship("Trade")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "bot_id": self.bot_id,
            "reset_epoch": self.reset_epoch,
            "from_coin": self.from_coin,
            "to_coin": self.to_coin,
            "from_coin_price": self.from_coin_price,
            "to_coin_price": self.to_coin_price,
            "from_coin_snapshot": self.from_coin_snapshot,
            "to_coin_snapshot": self.to_coin_snapshot,
            "price_deviation_percent": self.price_deviation_percent,
            "price_threshold": self.price_threshold,
            "deviation_triggered": self.deviation_triggered,
            "unit_gain_percent": self.unit_gain_percent,
            "reference_equivalent_value": self.reference_equivalent_value,
            "min_reference_equivalent": self.min_reference_equivalent,
            "global_peak_value": self.global_peak_value,
            "current_global_peak_value": self.current_global_peak_value,
            "global_protection_triggered": self.global_protection_triggered,
            "take_profit_triggered": self.take_profit_triggered,
            "swap_performed": self.swap_performed,
            "outcome": self.outcome.value if self.outcome else None,
            "reason": self.reason,
            "trade_id": self.trade_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return (
            f"<BotSwapDecision(id={self.id}, bot_id={self.bot_id}, {self.from_coin}->{self.to_coin}, "
            f"outcome={self.outcome.value if self.outcome else None})>"
        )


class CoinDeviation(Base):
    """Deviation of one candidate against the held coin at one tick.

    Written for every scored candidate, so a coin's relative performance can
    be charted over time even when it never won.
    """
    __tablename__ = "coin_deviations"

    id = Column(Integer, primary_key=True, index=True)
    bot_id = Column(Integer, ForeignKey("bots.id"), nullable=False, index=True)
    reset_epoch = Column(Integer, nullable=False, default=0)
    base_coin = Column(String(20), nullable=False)
    target_coin = Column(String(20), nullable=False, index=True)
    base_price = Column(Float, nullable=False)
    target_price = Column(Float, nullable=False)
    target_snapshot_price = Column(Float, nullable=True)
    deviation_percent = Column(Float, nullable=False)
    timestamp = Column(DateTime, default=utcnow, index=True)

    bot = relationship("Bot", back_populates="coin_deviations")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "bot_id": self.bot_id,
            "reset_epoch": self.reset_epoch,
            "base_coin": self.base_coin,
            "target_coin": self.target_coin,
            "base_price": self.base_price,
            "target_price": self.target_price,
            "target_snapshot_price": self.target_snapshot_price,
            "deviation_percent": self.deviation_percent,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }
