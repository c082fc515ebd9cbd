"""
Escrow Alert Notifications
Operator-facing messages for releases, manual reviews, reminders and job runs

Delivery is fire-and-forget: an unconfigured channel is a silent no-op and a
delivery failure is logged, never raised into the job that sent it.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional, Protocol, Sequence

import aiohttp
from telegram import Bot
from telegram.error import TelegramError

from config import Config

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def notify(self, message: str) -> None:
        ...


# ============ MESSAGE FORMATTERS ============


def _format_amount(amount) -> str:
    if isinstance(amount, Decimal):
        amount = float(amount)
    return f"€{amount:.2f}"


def _format_timestamp(dt: Optional[datetime]) -> str:
    if dt is None:
        return "unknown"
    return dt.strftime("%Y-%m-%d %H:%M UTC")


def format_manual_review_message(escrow_id: str, actual_rating: float, min_rating: float) -> str:
    return (
        "🚨 *Escrow Manual Review Required*\n\n"
        f"Escrow ID: {escrow_id}\n"
        f"Actual Rating: {actual_rating:.1f}\n"
        f"Minimum Required: {min_rating:.1f}\n\n"
        "This escrow requires manual review before release."
    )


def format_release_success_message(escrow_id: str, amount, reason: str) -> str:
    return (
        "✅ *Escrow Payment Processed Successfully*\n\n"
        f"Escrow ID: {escrow_id}\n"
        f"Amount: {_format_amount(amount)}\n"
        f"Reason: {reason}\n"
        "Status: Released"
    )


def format_release_failure_message(escrow_id: str, amount, error: str) -> str:
    return (
        "❌ *Escrow Payment Processing Failed*\n\n"
        f"Escrow ID: {escrow_id}\n"
        f"Amount: {_format_amount(amount)}\n"
        f"Error: {error}\n"
        "Status: Failed"
    )


def format_job_summary_message(
    validated: int, processed: int, failed: int, total_released, runtime: timedelta
) -> str:
    return (
        "📊 *Automatic Release Job Summary*\n\n"
        f"Escrows Validated: {validated}\n"
        f"Payments Processed: {processed}\n"
        f"Failed: {failed}\n"
        f"Total Released: {_format_amount(total_released)}\n"
        f"Runtime: {runtime.total_seconds():.2f}s"
    )


def format_rating_reminder_message(escrow_id: str, payer_id: str, amount, held_at: datetime) -> str:
    return (
        "⭐ *Rating Reminder*\n\n"
        f"Escrow ID: {escrow_id}\n"
        f"Payer: {payer_id}\n"
        f"Amount: {_format_amount(amount)}\n"
        f"Held Since: {_format_timestamp(held_at)}\n\n"
        "Please rate the service to release the held payment."
    )


def format_dispute_escalation_message(
    escrow_id: str, amount, disputed_at: Optional[datetime], reason: Optional[str], threshold_hours: int
) -> str:
    return (
        "⚠️ *Dispute Escalated*\n\n"
        f"Escrow ID: {escrow_id}\n"
        f"Amount: {_format_amount(amount)}\n"
        f"Disputed Since: {_format_timestamp(disputed_at)}\n"
        f"Reason: {reason or 'not given'}\n\n"
        f"Unresolved for more than {threshold_hours} hours. Admin action required."
    )


# ============ NOTIFIERS ============


class NullNotifier:
    """Drops every message"""

    async def notify(self, message: str) -> None:
        return None


class SlackWebhookNotifier:
    """Posts messages to a Slack incoming webhook"""

    def __init__(self, webhook_url: str, timeout_seconds: float = 10.0):
        self.webhook_url = (webhook_url or "").strip()
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url)

    async def notify(self, message: str) -> None:
        if not self.enabled:
            return

        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(self.webhook_url, json={"text": message}) as response:
                    if response.status >= 400:
                        body = await response.text()
                        logger.error(f"❌ SLACK_WEBHOOK_HTTP_{response.status}: {body[:200]}")
                        return
            logger.debug("✅ SLACK_WEBHOOK_SENT")
        except asyncio.TimeoutError:
            logger.error("❌ SLACK_WEBHOOK_TIMEOUT")
        except aiohttp.ClientError as e:
            logger.error(f"❌ SLACK_WEBHOOK_ERROR: {e}")


# Legacy Markdown specials other than "*", which the formatters use for bold headers
_TELEGRAM_ESCAPE_CHARS = "_`["


def escape_telegram_markdown(text: str) -> str:
    for char in _TELEGRAM_ESCAPE_CHARS:
        text = text.replace(char, f"\\{char}")
    return text


class TelegramAdminNotifier:
    """Sends messages to the admin chat through the Telegram bot as legacy Markdown"""

    def __init__(self, bot_token: str, admin_chat_id: str, bot: Optional[Bot] = None):
        self.admin_chat_id = admin_chat_id
        self.bot = bot or Bot(token=bot_token)

    async def notify(self, message: str) -> None:
        try:
            await self.bot.send_message(
                chat_id=self.admin_chat_id, text=escape_telegram_markdown(message), parse_mode="Markdown"
            )
            logger.debug(f"✅ TELEGRAM_ADMIN_SENT: chat={self.admin_chat_id}")
        except TelegramError as e:
            logger.error(f"❌ TELEGRAM_ADMIN_ERROR: chat={self.admin_chat_id}, error={e}")


class CompositeNotifier:
    """Fans one message out to several channels concurrently"""

    def __init__(self, notifiers: Sequence[Notifier]):
        self.notifiers: List[Notifier] = list(notifiers)

    async def notify(self, message: str) -> None:
        if not self.notifiers:
            return
        results = await asyncio.gather(
            *(notifier.notify(message) for notifier in self.notifiers), return_exceptions=True
        )
        for notifier, result in zip(self.notifiers, results):
            if isinstance(result, Exception):
                logger.error(
                    f"❌ NOTIFIER_FAILED: {type(notifier).__name__}: {result}", exc_info=result
                )


def build_notifier(config=Config) -> Notifier:
    """Pick notification channels from what is configured"""
    channels: List[Notifier] = []
    if config.SLACK_ESCROW_WEBHOOK_URL:
        channels.append(
            SlackWebhookNotifier(config.SLACK_ESCROW_WEBHOOK_URL, timeout_seconds=config.SLACK_TIMEOUT_SECONDS)
        )
    if config.BOT_TOKEN and config.ADMIN_CHAT_ID:
        channels.append(TelegramAdminNotifier(config.BOT_TOKEN, config.ADMIN_CHAT_ID))

    if not channels:
        logger.warning("⚠️ No escrow alert channel configured, notifications are disabled")
        return NullNotifier()
    if len(channels) == 1:
        return channels[0]
    return CompositeNotifier(channels)
