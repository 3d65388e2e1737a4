"""Missed trade reason codes and record construction."""

from enum import Enum
from typing import Optional

from ..models import MissedTrade, utcnow


class MissedTradeReason(str, Enum):
    """Why a favorable rotation did not happen."""
    BELOW_THRESHOLD = "below_threshold"
    INSUFFICIENT_UNIT_GAIN = "insufficient_unit_gain"
    PROTECTION_TRIGGERED = "protection_triggered"
    LOCK_CONTENTION = "lock_contention"
    PRICE_UNAVAILABLE = "price_unavailable"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    EXCHANGE_ERROR = "exchange_error"
    OTHER = "other"


REASON_EXPLANATIONS = {
    MissedTradeReason.BELOW_THRESHOLD: "Best candidate outperformed the held coin, but not by more than the threshold",
    MissedTradeReason.INSUFFICIENT_UNIT_GAIN: "Rotation would yield fewer target units than previously held",
    MissedTradeReason.PROTECTION_TRIGGERED: "Portfolio value is below the global protection floor",
    MissedTradeReason.LOCK_CONTENTION: "Coin is locked by another bot sharing the account",
    MissedTradeReason.PRICE_UNAVAILABLE: "A required price could not be fetched",
    MissedTradeReason.INSUFFICIENT_FUNDS: "No units of the held coin are available to trade",
    MissedTradeReason.EXCHANGE_ERROR: "The exchange rejected the trade",
    MissedTradeReason.OTHER: "Unclassified",
}


def explain(code: MissedTradeReason) -> str:
    return REASON_EXPLANATIONS.get(code, REASON_EXPLANATIONS[MissedTradeReason.OTHER])


def build_missed_trade(
    bot_id: int,
    code: MissedTradeReason,
    detail: str = "",
    from_coin: Optional[str] = None,
    to_coin: Optional[str] = None,
    deviation_percentage: Optional[float] = None,
    threshold: Optional[float] = None,
) -> MissedTrade:
    """Build a MissedTrade row; the reason text always starts with the code's explanation."""
    reason = explain(code)
    if detail:
        reason = f"{reason}: {detail}"
    return MissedTrade(
        bot_id=bot_id,
        from_coin=from_coin,
        to_coin=to_coin,
        reason_code=code.value,
        reason=reason,
        deviation_percentage=deviation_percentage,
        threshold=threshold,
        created_at=utcnow(),
    )
