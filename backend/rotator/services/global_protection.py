"""Global protection - drawdown guard on a bot's peak portfolio value.

All values are in the bot's reference coin and net of commission:
net_value = units * price * (1 - commission_rate). The same definition is
used when assessing a prospective swap and when ratcheting the peak after
a settled one.
"""

import logging
from dataclasses import dataclass

from ..models import Bot

logger = logging.getLogger(__name__)


@dataclass
class ProtectionAssessment:
    """Outcome of comparing a net value against the protection floor."""
    net_value: float
    prior_peak: float
    floor: float
    triggered: bool
    current_peak: float


class GlobalProtectionTracker:
    """Tracks the peak value of a bot and derives its protection floor."""

    def net_value(self, bot: Bot, units: float, price: float) -> float:
        return units * price * (1 - (bot.commission_rate or 0.0))

    def floor(self, bot: Bot) -> float:
        """Minimum acceptable net value derived from the peak."""
        peak = bot.global_peak_value or 0.0
        return peak * (1 - (bot.global_threshold_percentage or 0.0) / 100)

    def assess(self, bot: Bot, net_value: float) -> ProtectionAssessment:
        """Compare a net value with the floor without changing the bot."""
        prior_peak = bot.global_peak_value or 0.0
        floor = self.floor(bot)
        triggered = prior_peak > 0 and net_value < floor
        return ProtectionAssessment(
            net_value=net_value,
            prior_peak=prior_peak,
            floor=floor,
            triggered=triggered,
            current_peak=prior_peak if triggered else max(prior_peak, net_value),
        )

    def ratchet(self, bot: Bot, net_value: float) -> bool:
        """Raise the peak to net_value if it is higher. The peak never decreases here.

        Returns:
            True if the peak moved
        """
        peak = bot.global_peak_value or 0.0
        if net_value <= peak:
            return False

        bot.global_peak_value = net_value
        logger.info(f"Bot {bot.id}: Global peak raised from {peak:.8f} to {net_value:.8f}")
        return True
