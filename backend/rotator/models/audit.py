"""Diagnostic audit models: missed trades and bot resets."""

from enum import Enum
from sqlalchemy import Column, Integer, String, Float, Boolean, DateTime, Text, ForeignKey, Enum as SQLEnum
from sqlalchemy.orm import relationship

from .database import Base, utcnow


class MissedTrade(Base):
    """A rotation that was numerically favorable but did not happen.

    Read-only diagnostic trail; decision logic never reads these rows.
    """
    __tablename__ = "missed_trades"

    id = Column(Integer, primary_key=True, index=True)
    bot_id = Column(Integer, ForeignKey("bots.id"), nullable=False, index=True)
    from_coin = Column(String(20), nullable=True)
    to_coin = Column(String(20), nullable=True)
    reason_code = Column(String(50), nullable=False, index=True)
    reason = Column(Text, nullable=False)
    deviation_percentage = Column(Float, nullable=True)
    threshold = Column(Float, nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)

    bot = relationship("Bot", back_populates="missed_trades")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "bot_id": self.bot_id,
            "from_coin": self.from_coin,
            "to_coin": self.to_coin,
            "reason_code": self.reason_code,
            "reason": self.reason,
            "deviation_percentage": self.deviation_percentage,
            "threshold": self.threshold,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class ResetType(str, Enum):
    """Bot reset type."""
    SOFT = "soft"  # keep the held coin, start a new epoch
    HARD = "hard"  # drop holdings state, re-initialize from the initial coin


class BotResetEvent(Base):
    """Record of a bot reset and the state it discarded."""
    __tablename__ = "bot_reset_events"

    id = Column(Integer, primary_key=True, index=True)
    bot_id = Column(Integer, ForeignKey("bots.id"), nullable=False, index=True)
    reset_type = Column(SQLEnum(ResetType), nullable=False)
    previous_coin = Column(String(20), nullable=True)
    previous_global_peak = Column(Float, nullable=False, default=0.0)
    previous_reset_count = Column(Integer, nullable=False, default=0)
    # Set when the holding was sold to the stablecoin before the reset
    sold_to_stablecoin = Column(Boolean, nullable=False, default=False)
    liquidation_trade_id = Column(Integer, ForeignKey("trades.id"), nullable=True)
    created_at = Column(DateTime, default=utcnow)

    bot = relationship("Bot", back_populates="reset_events")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "bot_id": self.bot_id,
            "reset_type": self.reset_type.value if self.reset_type else None,
            "previous_coin": self.previous_coin,
            "previous_global_peak": self.previous_global_peak,
            "previous_reset_count": self.previous_reset_count,
            "sold_to_stablecoin": self.sold_to_stablecoin,
            "liquidation_trade_id": self.liquidation_trade_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
