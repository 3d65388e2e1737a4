# Business Logic Services

from .asset_locks import (
    AssetLockManager,
    LockScope,
    LockHandle,
    LockAvailability,
    LockError,
    AlreadyLockedError,
    NotOwnerError,
    LockNotFoundError,
)
from .snapshot_store import SnapshotStore
from .global_protection import (
    GlobalProtectionTracker,
    ProtectionAssessment,
)
from .pricing import (
    PriceOracle,
    PriceQuote,
    PriceUnavailableError,
    ExchangePriceOracle,
    CoinGeckoPriceOracle,
    FallbackPriceOracle,
)
from .exchange import (
    ExchangeService,
    ExchangeOrder,
    Ticker,
    Balance,
    OrderSide,
)
from .execution import (
    ExchangeExecutor,
    SimulatedExchangeExecutor,
    CcxtExchangeExecutor,
    ExecutionError,
    ExecutionOutcomeUnknownError,
    LegFill,
)
from .decision_engine import (
    DecisionEngine,
    NoSwap,
    ApprovedSwap,
    BotNotFoundError,
)
from .trade_settlement import (
    TradeSettlement,
    SettlementError,
    LockContentionError,
    ExchangeRejectedError,
    StaleDecisionError,
    ReconciliationRequiredError,
    PartialMultiStepFailureError,
    OutcomeUnknownError,
    PersistenceFailureError,
)
from .scheduler import (
    BotScheduler,
    InvalidResetError,
    SchedulerRegistry,
    TickResult,
)
from .missed_trades import MissedTradeReason
from .email import EmailService, EmailConfig
from .config import (
    ConfigService,
    ConfigValidationError,
    ConfigValidationException,
    RotatorSettings,
    configure_logging,
    config_service,
)
from .logging_service import BotLoggingService

__all__ = [
    "AssetLockManager",
    "LockScope",
    "LockHandle",
    "LockAvailability",
    "LockError",
    "AlreadyLockedError",
    "NotOwnerError",
    "LockNotFoundError",
    "SnapshotStore",
    "GlobalProtectionTracker",
    "ProtectionAssessment",
    "PriceOracle",
    "PriceQuote",
    "PriceUnavailableError",
    "ExchangePriceOracle",
    "CoinGeckoPriceOracle",
    "FallbackPriceOracle",
    "ExchangeService",
    "ExchangeOrder",
    "Ticker",
    "Balance",
    "OrderSide",
    "ExchangeExecutor",
    "SimulatedExchangeExecutor",
    "CcxtExchangeExecutor",
    "ExecutionError",
    "ExecutionOutcomeUnknownError",
    "LegFill",
    "DecisionEngine",
    "NoSwap",
    "ApprovedSwap",
    "BotNotFoundError",
    "TradeSettlement",
    "SettlementError",
    "LockContentionError",
    "ExchangeRejectedError",
    "StaleDecisionError",
    "ReconciliationRequiredError",
    "PartialMultiStepFailureError",
    "OutcomeUnknownError",
    "PersistenceFailureError",
    "BotScheduler",
    "InvalidResetError",
    "SchedulerRegistry",
    "TickResult",
    "MissedTradeReason",
    "EmailService",
    "EmailConfig",
    "ConfigService",
    "ConfigValidationError",
    "ConfigValidationException",
    "RotatorSettings",
    "configure_logging",
    "config_service",
    "BotLoggingService",
]
