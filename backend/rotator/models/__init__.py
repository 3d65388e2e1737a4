# Database Models

from .database import (
    Base, engine, async_session_maker, get_session, init_db, utcnow,
    create_engine_and_session_maker,
)
from .bot import Bot, BotStatus
from .snapshot import CoinSnapshot, CoinUnitTracker
from .asset_lock import AssetLock, LockStatus
from .decision import BotSwapDecision, CoinDeviation, DecisionOutcome
from .trade import Trade, TradeStep, TradeStatus
from .audit import MissedTrade, BotResetEvent, ResetType

__all__ = [
    "Base",
    "engine",
    "async_session_maker",
    "get_session",
    "init_db",
    "utcnow",
    "create_engine_and_session_maker",
    "Bot",
    "BotStatus",
    "CoinSnapshot",
    "CoinUnitTracker",
    "AssetLock",
    "LockStatus",
    "BotSwapDecision",
    "DecisionOutcome",
    "CoinDeviation",
    "Trade",
    "TradeStep",
    "TradeStatus",
    "MissedTrade",
    "BotResetEvent",
    "ResetType",
]
