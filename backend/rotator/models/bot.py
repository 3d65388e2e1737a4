"""Bot model for coin rotation bots."""

from enum import Enum
from typing import List
from sqlalchemy import Column, Integer, String, Float, Boolean, DateTime, JSON, Enum as SQLEnum
from sqlalchemy.orm import relationship

from .database import Base, utcnow


class BotStatus(str, Enum):
    """Bot status enumeration."""
    CREATED = "created"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


class Bot(Base):
    """Coin rotation bot: configuration plus mutable rotation state.

    Rotation state (current coin, peak value, commissions, reset count) is only
    written by the decision engine, trade settlement and explicit resets.
    """
    __tablename__ = "bots"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)

    # Exchange account shared between bots; asset locks are scoped to it
    account_id = Column(String(100), nullable=False, default="default", index=True)

    # Coin universe
    coins = Column(JSON, nullable=False, default=list)
    initial_coin = Column(String(20), nullable=False)
    initial_units = Column(Float, nullable=False, default=0.0)
    current_coin = Column(String(20), nullable=True)  # null until initialized
    reference_coin = Column(String(20), nullable=False, default="USDT")
    preferred_stablecoin = Column(String(20), nullable=False, default="USDT")

    # Decision parameters
    threshold_percentage = Column(Float, nullable=False, default=10.0)
    global_threshold_percentage = Column(Float, nullable=False, default=10.0)
    use_take_profit = Column(Boolean, default=False)
    take_profit_percentage = Column(Float, nullable=True)
    unit_gain_tolerance_percent = Column(Float, nullable=False, default=0.0)
    commission_rate = Column(Float, nullable=False, default=0.002)

    # Optional cap on the value sold per swap, in reference coin units
    manual_budget_amount = Column(Float, nullable=True)

    # Rotation state
    global_peak_value = Column(Float, nullable=False, default=0.0)
    total_commissions_paid = Column(Float, nullable=False, default=0.0)
    reset_count = Column(Integer, nullable=False, default=0)

    # Scheduling
    check_interval_seconds = Column(Integer, nullable=False, default=300)
    is_dry_run = Column(Boolean, default=True)
    enabled = Column(Boolean, default=True)
    status = Column(SQLEnum(BotStatus), default=BotStatus.CREATED)
    last_check_time = Column(DateTime, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    started_at = Column(DateTime, nullable=True)

    # Relationships
    snapshots = relationship("CoinSnapshot", back_populates="bot", cascade="all, delete-orphan")
    unit_trackers = relationship("CoinUnitTracker", back_populates="bot", cascade="all, delete-orphan")
    swap_decisions = relationship("BotSwapDecision", back_populates="bot", cascade="all, delete-orphan")
    trades = relationship("Trade", back_populates="bot", cascade="all, delete-orphan")
    missed_trades = relationship("MissedTrade", back_populates="bot", cascade="all, delete-orphan")
    reset_events = relationship("BotResetEvent", back_populates="bot", cascade="all, delete-orphan")
    coin_deviations = relationship("CoinDeviation", back_populates="bot", cascade="all, delete-orphan")

    @property
    def reset_epoch(self) -> int:
        """Snapshot epoch the bot is currently evaluating against."""
        return self.reset_count or 0

    def get_coins(self) -> List[str]:
        """Eligible coins, upper-cased and de-duplicated in configured order."""
        seen = []
        for coin in self.coins or []:
            symbol = coin.strip().upper()
            if symbol and symbol not in seen:
                seen.append(symbol)
        return seen

    def __repr__(self):
        return f"<Bot(id={self.id}, name='{self.name}', current_coin={self.current_coin})>"
