"""Trade settlement models.

CRITICAL: a Trade is the settlement record of one rotation.
- Every Trade has at least one TradeStep (one per exchange leg)
- Trade.to_amount equals the to_amount of its last completed step
- A Trade is completed only if every step is completed
- Steps of a failed multi-step trade are kept as executed for reconciliation
"""

from enum import Enum
from sqlalchemy import (
    Column, Integer, String, Float, Boolean, DateTime, Text, JSON, ForeignKey, Enum as SQLEnum,
)
from sqlalchemy.orm import relationship

from .database import Base, utcnow


class TradeStatus(str, Enum):
    """Trade and trade step status."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class Trade(Base):
    """Settlement record for one rotation from one coin to another."""
    __tablename__ = "trades"

    id = Column(Integer, primary_key=True, index=True)
    bot_id = Column(Integer, ForeignKey("bots.id"), nullable=False, index=True)

    # Locally generated idempotency key; step client order ids derive from it
    attempt_id = Column(String(64), nullable=False, unique=True, index=True)
    # Exchange ids of the steps joined with '-'
    exchange_trade_id = Column(String(255), nullable=True)

    from_coin = Column(String(20), nullable=False)
    to_coin = Column(String(20), nullable=False)
    from_amount = Column(Float, nullable=False)
    to_amount = Column(Float, nullable=True)
    from_price = Column(Float, nullable=True)
    to_price = Column(Float, nullable=True)

    commission_rate = Column(Float, nullable=False, default=0.0)
    commission_amount = Column(Float, nullable=False, default=0.0)  # reference coin units
    price_change = Column(Float, nullable=True)
    deviation_percentage = Column(Float, nullable=True)
    decision_reason = Column(Text, nullable=True)

    status = Column(SQLEnum(TradeStatus), nullable=False, default=TradeStatus.PENDING)
    is_multi_step = Column(Boolean, nullable=False, default=False)
    needs_reconciliation = Column(Boolean, nullable=False, default=False)
    error = Column(Text, nullable=True)

    executed_at = Column(DateTime, default=utcnow)
    completed_at = Column(DateTime, nullable=True)

    bot = relationship("Bot", back_populates="trades")
    steps = relationship(
        "TradeStep",
        back_populates="trade",
        cascade="all, delete-orphan",
        order_by="TradeStep.step_number",
        lazy="selectin",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "bot_id": self.bot_id,
            "attempt_id": self.attempt_id,
            "exchange_trade_id": self.exchange_trade_id,
            "from_coin": self.from_coin,
            "to_coin": self.to_coin,
            "from_amount": self.from_amount,
            "to_amount": self.to_amount,
            "from_price": self.from_price,
            "to_price": self.to_price,
            "commission_rate": self.commission_rate,
            "commission_amount": self.commission_amount,
            "price_change": self.price_change,
            "deviation_percentage": self.deviation_percentage,
            "decision_reason": self.decision_reason,
            "status": self.status.value if self.status else None,
            "is_multi_step": self.is_multi_step,
            "needs_reconciliation": self.needs_reconciliation,
            "error": self.error,
            "executed_at": self.executed_at.isoformat() if self.executed_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "steps": [step.to_dict() for step in self.steps],
        }

    def __repr__(self):
        return (
            f"<Trade(id={self.id}, bot_id={self.bot_id}, {self.from_coin}->{self.to_coin}, "
            f"status={self.status.value if self.status else None})>"
        )


class TradeStep(Base):
    """One exchange leg of a trade."""
    __tablename__ = "trade_steps"

    id = Column(Integer, primary_key=True, index=True)
    parent_trade_id = Column(Integer, ForeignKey("trades.id"), nullable=False, index=True)
    step_number = Column(Integer, nullable=False)

    client_order_id = Column(String(100), nullable=False, unique=True)
    exchange_trade_id = Column(String(100), nullable=True)

    from_coin = Column(String(20), nullable=False)
    to_coin = Column(String(20), nullable=False)
    from_amount = Column(Float, nullable=False)
    to_amount = Column(Float, nullable=True)
    price = Column(Float, nullable=True)
    commission_amount = Column(Float, nullable=False, default=0.0)

    status = Column(SQLEnum(TradeStatus), nullable=False)
    error = Column(Text, nullable=True)
    raw_trade_data = Column(JSON, nullable=True)

    executed_at = Column(DateTime, default=utcnow)
    completed_at = Column(DateTime, nullable=True)

    trade = relationship("Trade", back_populates="steps")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "parent_trade_id": self.parent_trade_id,
            "step_number": self.step_number,
            "client_order_id": self.client_order_id,
            "exchange_trade_id": self.exchange_trade_id,
            "from_coin": self.from_coin,
            "to_coin": self.to_coin,
            "from_amount": self.from_amount,
            "to_amount": self.to_amount,
            "price": self.price,
            "commission_amount": self.commission_amount,
            "status": self.status.value if self.status else None,
            "error": self.error,
            "executed_at": self.executed_at.isoformat() if self.executed_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    def __repr__(self):
        return (
            f"<TradeStep(trade={self.parent_trade_id}, step={self.step_number}, "
            f"{self.from_coin}->{self.to_coin}, status={self.status.value if self.status else None})>"
        )
