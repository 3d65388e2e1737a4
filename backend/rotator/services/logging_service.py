"""Logging service for per-bot activity logs and trade records."""

import csv
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional, Union
from dataclasses import dataclass

from ..models import utcnow

logger = logging.getLogger(__name__)

# Base logs directory
LOGS_BASE_DIR = Path(__file__).parent.parent.parent / "logs"


@dataclass
class TradeLogEntry:
    """Represents a settled (or failed) rotation in the trade log."""
    timestamp: datetime
    bot_id: int
    bot_name: str
    trade_id: int
    attempt_id: str
    from_coin: str
    to_coin: str
    from_amount: float
    to_amount: Optional[float]
    steps: int
    commission: float
    status: str
    is_simulated: bool
    reason: str = ""


class BotLoggingService:
    """Service for managing per-bot log files.

    Failures to write are logged and swallowed: file logs never break trading.
    """

    def __init__(
        self,
        bot_id: int,
        bot_name: str = "",
        is_dry_run: bool = False,
        base_dir: Optional[Union[str, Path]] = None,
    ):
        """Initialize logging service for a bot.

        Args:
            bot_id: The bot ID
            bot_name: The bot name for log entries
            is_dry_run: Whether this is a dry run bot
            base_dir: Root of the per-bot log directories
        """
        self.bot_id = bot_id
        self.bot_name = bot_name
        self.is_dry_run = is_dry_run
        self.bot_log_dir = Path(base_dir or LOGS_BASE_DIR) / str(bot_id)

        self._ensure_log_directory()

    def _ensure_log_directory(self) -> None:
        try:
            self.bot_log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error(f"Bot {self.bot_id}: Failed to create log directory: {e}")

    def get_log_directory(self) -> Path:
        return self.bot_log_dir

    def log_trade(self, entry: TradeLogEntry) -> None:
        """Append a trade to trades.csv, or trades_simulated.csv for dry runs."""
        if entry.is_simulated:
            log_file = self.bot_log_dir / "trades_simulated.csv"
        else:
            log_file = self.bot_log_dir / "trades.csv"

        write_header = not log_file.exists()

        try:
            with open(log_file, 'a', newline='', encoding='utf-8') as f:
                writer = csv.writer(f)

                if write_header:
                    writer.writerow([
                        'timestamp', 'bot_id', 'bot_name', 'trade_id', 'attempt_id',
                        'from_coin', 'to_coin', 'from_amount', 'to_amount', 'steps',
                        'commission', 'status', 'is_simulated', 'reason'
                    ])

                writer.writerow([
                    entry.timestamp.isoformat(),
                    entry.bot_id,
                    entry.bot_name,
                    entry.trade_id,
                    entry.attempt_id,
                    entry.from_coin,
                    entry.to_coin,
                    f"{entry.from_amount:.8f}",
                    f"{entry.to_amount:.8f}" if entry.to_amount is not None else "",
                    entry.steps,
                    f"{entry.commission:.8f}",
                    entry.status,
                    entry.is_simulated,
                    entry.reason,
                ])

            logger.debug(f"Bot {self.bot_id}: Logged trade {entry.trade_id} to {log_file.name}")

        except OSError as e:
            logger.error(f"Bot {self.bot_id}: Failed to log trade: {e}")

    def log_activity(self, message: str, level: str = "INFO") -> None:
        """Log general bot activity to activity log.

        Args:
            message: Log message
            level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        """
        activity_file = self.bot_log_dir / "activity.log"

        try:
            with open(activity_file, 'a', encoding='utf-8') as f:
                prefix = "[DRY RUN] " if self.is_dry_run else ""
                f.write(f"{utcnow().isoformat()} [{level}] {prefix}{message}\n")

        except OSError as e:
            logger.error(f"Bot {self.bot_id}: Failed to log activity: {e}")


def get_bot_logging_service(
    bot_id: int,
    bot_name: str = "",
    is_dry_run: bool = False,
    base_dir: Optional[Union[str, Path]] = None,
) -> BotLoggingService:
    """Get a logging service for a bot."""
    return BotLoggingService(bot_id, bot_name, is_dry_run, base_dir=base_dir)
