"""
Email service for sending SMTP operator alerts.
"""
import smtplib
import logging
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Any, Dict, Optional, List
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class EmailConfig:
    enabled: bool = False
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    from_address: str = ""
    to_addresses: List[str] = field(default_factory=list)
    use_tls: bool = True

    @classmethod
    def from_dict(cls, section: Optional[Dict[str, Any]]) -> "EmailConfig":
        """Build from the `email` section of config.yaml."""
        section = section or {}
        return cls(
            enabled=section.get("enabled", False),
            smtp_host=section.get("smtp_host", ""),
            smtp_port=section.get("smtp_port", 587),
            smtp_user=section.get("smtp_user", ""),
            smtp_password=section.get("smtp_password", ""),
            from_address=section.get("from_address", ""),
            to_addresses=list(section.get("to_addresses", []) or []),
            use_tls=section.get("use_tls", True),
        )


_STYLE = """
            <style>
                body {{ font-family: Arial, sans-serif; background-color: #1f2937; color: #f3f4f6; padding: 20px; }}
                .container {{ max-width: 600px; margin: 0 auto; background-color: #374151; border-radius: 8px; padding: 20px; }}
                .header {{ font-size: 24px; font-weight: bold; color: {color}; margin-bottom: 20px; }}
                .alert-box {{ background-color: #7f1d1d; border-left: 4px solid #ef4444; padding: 15px; margin: 15px 0; border-radius: 4px; }}
                .label {{ color: #9ca3af; width: 140px; display: inline-block; }}
                .value {{ color: #f3f4f6; font-weight: bold; font-family: monospace; }}
            </style>
"""


def _render_alert(title: str, color: str, message: str, rows: Dict[str, Any], footer: str) -> str:
    """HTML body shared by every alert."""
    row_html = "".join(
        f'<div><span class="label">{label}:</span> <span class="value">{value}</span></div>'
        for label, value in rows.items()
    )
    return f"""
        <!DOCTYPE html>
        <html>
        <head>{_STYLE.format(color=color)}</head>
        <body>
            <div class="container">
                <div class="header">{title}</div>
                <div class="alert-box">{message}</div>
                {row_html}
                <p style="margin-top: 20px; color: #9ca3af; font-size: 12px;">{footer}</p>
            </div>
        </body>
        </html>
        """


def _render_text(title: str, message: str, rows: Dict[str, Any], footer: str) -> str:
    lines = "\n".join(f"{label}: {value}" for label, value in rows.items())
    return f"""
{title}

{message}

{lines}

{footer}
        """


class EmailService:
    """Service for sending email notifications."""

    def __init__(self, config: Optional[EmailConfig] = None):
        self.config = config
        self._is_enabled = self.config is not None and self.config.enabled

    @property
    def is_enabled(self) -> bool:
        return self._is_enabled

    def send_email(self, subject: str, body_html: str, body_text: Optional[str] = None) -> bool:
        """
        Send an email notification.

        Args:
            subject: Email subject
            body_html: HTML body content
            body_text: Plain text body (optional)

        Returns:
            True if email was sent successfully, False otherwise
        """
        if not self._is_enabled or not self.config:
            logger.info(f"Email not enabled. Would send: {subject}")
            logger.debug(f"Email body: {body_text or body_html}")
            return False

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = self.config.from_address
            msg["To"] = ", ".join(self.config.to_addresses)

            # Plain text fallback
            if body_text:
                msg.attach(MIMEText(body_text, "plain"))

            msg.attach(MIMEText(body_html, "html"))

            with smtplib.SMTP(self.config.smtp_host, self.config.smtp_port) as server:
                if self.config.use_tls:
                    server.starttls()
                if self.config.smtp_user:
                    server.login(self.config.smtp_user, self.config.smtp_password)
                server.sendmail(
                    self.config.from_address,
                    self.config.to_addresses,
                    msg.as_string()
                )

            logger.info(f"Email sent successfully: {subject}")
            return True

        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send email: {e}")
            return False

    def send_reconciliation_alert(
        self,
        bot_id: int,
        trade_id: Optional[int],
        attempt_id: str,
        from_coin: str,
        to_coin: str,
        completed_steps: int,
        total_steps: int,
        error: str,
    ) -> bool:
        """
        Alert the operator that a trade may have moved funds the ledger does not show.

        Completed or unconfirmed legs may have moved real funds, so the account can hold an
        intermediate coin that the bot state does not reflect.
        """
        subject = f"[CoinRotator Alert] Reconciliation needed: bot {bot_id} {from_coin} -> {to_coin}"
        title = "Trade Needs Reconciliation"
        message = f"<strong>{completed_steps} of {total_steps} steps completed.</strong> {error}"
        rows = {
            "Bot ID": bot_id,
            "Trade ID": trade_id if trade_id is not None else "n/a",
            "Attempt ID": attempt_id,
            "Rotation": f"{from_coin} -> {to_coin}",
        }
        footer = (
            "The bot has been paused and its coin state left unchanged. "
            "Reconcile the account balances before resuming it."
        )
        return self.send_email(
            subject,
            _render_alert(title, "#ef4444", message, rows, footer),
            _render_text(title, f"{completed_steps} of {total_steps} steps completed. {error}", rows, footer),
        )

    def send_persistence_failure_alert(
        self,
        bot_id: int,
        attempt_id: str,
        from_coin: str,
        to_coin: str,
        error: str,
    ) -> bool:
        """
        Alert the operator that executed legs could not be recorded.
        """
        subject = f"[CoinRotator Alert] Settlement not recorded: bot {bot_id} attempt {attempt_id}"
        title = "Settlement Persistence Failure"
        rows = {
            "Bot ID": bot_id,
            "Attempt ID": attempt_id,
            "Rotation": f"{from_coin} -> {to_coin}",
        }
        footer = (
            "Exchange orders carry client order ids prefixed with the attempt id. "
            "Look them up on the exchange to reconcile."
        )
        return self.send_email(
            subject,
            _render_alert(title, "#ef4444", f"<strong>Database error:</strong> {error}", rows, footer),
            _render_text(title, f"Database error: {error}", rows, footer),
        )

    def send_bot_paused_alert(self, bot_id: int, bot_name: str, reason: str) -> bool:
        """
        Send alert when the scheduler pauses a bot.

        Args:
            bot_id: Bot ID
            bot_name: Bot name
            reason: Reason for pause

        Returns:
            True if email was sent successfully
        """
        subject = f"[CoinRotator Alert] Bot Paused: {bot_name}"
        title = "Bot Paused Alert"
        rows = {"Bot Name": bot_name, "Bot ID": bot_id}
        footer = "This is an automated alert from CoinRotator. Review the bot before resuming it."
        return self.send_email(
            subject,
            _render_alert(title, "#f59e0b", f"<strong>Reason:</strong> {reason}", rows, footer),
            _render_text(title, f"Reason: {reason}", rows, footer),
        )
