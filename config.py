"""Configuration management for the escrow settlement job service"""

import os
import re
import logging
from datetime import timedelta
from decimal import Decimal, InvalidOperation

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# Local development convenience; real deployments inject the environment directly
load_dotenv()


_BARE_SECONDS = re.compile(r"\d+(?:\.\d+)?")
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h|d)")
_DURATION_UNITS = {
    "ms": timedelta(milliseconds=1),
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
}


def parse_duration(value: str) -> timedelta:
    """
    Parse a duration string into a timedelta.

    Accepts Go-style compound durations ("90s", "15m", "1h30m", "2h") and
    bare numbers, which are read as seconds.

    Raises:
        ValueError: if the string is empty or not a recognised duration
    """
    text = (value or "").strip().lower()
    if not text:
        raise ValueError("empty duration")

    if _BARE_SECONDS.fullmatch(text):
        return timedelta(seconds=float(text))

    position = 0
    total = timedelta()
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            raise ValueError(f"invalid duration: {value!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()

    if position != len(text) or position == 0:
        raise ValueError(f"invalid duration: {value!r}")
    return total


def format_duration(value: timedelta) -> str:
    """Render a timedelta back into the compact "1h30m" form used in env vars"""
    seconds = int(value.total_seconds())
    if seconds <= 0:
        return "0s"
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    parts = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if secs:
        parts.append(f"{secs}s")
    return "".join(parts)


class Config:
    """Application configuration"""

    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    @staticmethod
    def _get_int(env_var: str, default: int) -> int:
        raw = os.getenv(env_var)
        if raw is None or raw.strip() == "":
            return default
        try:
            return int(raw)
        except ValueError:
            logger.error(f"❌ Invalid {env_var} value '{raw}'. Using default {default}")
            return default

    @staticmethod
    def _get_float(env_var: str, default: float) -> float:
        raw = os.getenv(env_var)
        if raw is None or raw.strip() == "":
            return default
        try:
            return float(raw)
        except ValueError:
            logger.error(f"❌ Invalid {env_var} value '{raw}'. Using default {default}")
            return default

    @staticmethod
    def _get_duration(env_var: str, default: timedelta) -> timedelta:
        raw = os.getenv(env_var)
        if raw is None or raw.strip() == "":
            return default
        try:
            duration = parse_duration(raw)
        except ValueError:
            logger.error(f"❌ Invalid {env_var} value '{raw}'. Using default {format_duration(default)}")
            return default
        if duration <= timedelta(0):
            logger.error(f"❌ {env_var}={raw} must be positive. Using default {format_duration(default)}")
            return default
        return duration

    @staticmethod
    def _validate_percentage(env_var: str, default: str, min_val: float, max_val: float) -> Decimal:
        """Validate a percentage setting with bounds checking"""
        value_str = os.getenv(env_var, default)
        try:
            percentage = Decimal(value_str)
        except InvalidOperation:
            logger.error(f"❌ Invalid {env_var} value '{value_str}'. Using default {default}%")
            return Decimal(default)

        if percentage < Decimal(str(min_val)) or percentage > Decimal(str(max_val)):
            logger.error(
                f"❌ {env_var}={percentage}% is outside {min_val}%-{max_val}%. Using default {default}%"
            )
            return Decimal(default)
        return percentage

    @staticmethod
    def _get_decimal(env_var: str, default: str) -> Decimal:
        value_str = os.getenv(env_var, default)
        try:
            return Decimal(value_str)
        except InvalidOperation:
            logger.error(f"❌ Invalid {env_var} value '{value_str}'. Using default {default}")
            return Decimal(default)

    # Fee configuration (percentages, 4 means 4%)
    PLATFORM_FEE_PERCENTAGE = _validate_percentage("PLATFORM_FEE_PERCENTAGE", "4.0", 0.0, 20.0)
    PROCESSING_FEE_PERCENTAGE = _validate_percentage("PROCESSING_FEE_PERCENTAGE", "1.65", 0.0, 10.0)
    PROCESSING_FEE_FIXED = _get_decimal("PROCESSING_FEE_FIXED", "0.25")

    # Payment amount bounds
    MIN_PAYMENT_AMOUNT = _get_decimal("MIN_PAYMENT_AMOUNT", "5.0")
    MAX_PAYMENT_AMOUNT = _get_decimal("MAX_PAYMENT_AMOUNT", "50.0")
    DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "EUR").upper()

    # Escrow timing
    ESCROW_HOLD_HOURS = _get_int("ESCROW_HOLD_HOURS", 24)
    RATING_GRACE_PERIOD_HOURS = _get_int("RATING_GRACE_PERIOD_HOURS", 24)
    RATING_REMINDER_MIN_AGE_HOURS = _get_int("RATING_REMINDER_MIN_AGE_HOURS", 24)

    # Background job schedule
    RATING_REMINDER_INTERVAL = _get_duration("RATING_REMINDER_INTERVAL", timedelta(hours=24))
    AUTO_RELEASE_INTERVAL = _get_duration("AUTO_RELEASE_INTERVAL", timedelta(hours=1))
    DISPUTE_ESCALATION_INTERVAL = _get_duration("DISPUTE_ESCALATION_INTERVAL", timedelta(hours=24))
    RATING_DEADLINE_DAYS = _get_int("RATING_DEADLINE_DAYS", 7)
    MIN_RATING_FOR_AUTO_RELEASE = _get_float("MIN_RATING_FOR_AUTO_RELEASE", 3.0)
    DISPUTE_ESCALATION_HOURS = _get_int("DISPUTE_ESCALATION_HOURS", 72)

    # Notification channels
    SLACK_ESCROW_WEBHOOK_URL = os.getenv("SLACK_ESCROW_WEBHOOK_URL", "").strip()
    SLACK_TIMEOUT_SECONDS = _get_float("SLACK_TIMEOUT_SECONDS", 10.0)
    BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN") or os.getenv("BOT_TOKEN")
    ADMIN_CHAT_ID = os.getenv("ADMIN_CHAT_ID", "").strip()

    # Persistence; unset means the in-memory store
    DATABASE_URL = os.getenv("DATABASE_URL")

    @classmethod
    def escrow_hold_duration(cls) -> timedelta:
        return timedelta(hours=cls.ESCROW_HOLD_HOURS)

    @classmethod
    def rating_grace_period(cls) -> timedelta:
        return timedelta(hours=cls.RATING_GRACE_PERIOD_HOURS)

    @classmethod
    def job_config(cls):
        """Build the fully-resolved job configuration from the environment"""
        from jobs.background_job_manager import JobConfig

        return JobConfig(
            rating_reminder_interval=cls.RATING_REMINDER_INTERVAL,
            auto_release_interval=cls.AUTO_RELEASE_INTERVAL,
            dispute_escalation_interval=cls.DISPUTE_ESCALATION_INTERVAL,
            rating_deadline_days=cls.RATING_DEADLINE_DAYS,
            min_rating_for_auto_release=cls.MIN_RATING_FOR_AUTO_RELEASE,
            dispute_escalation_hours=cls.DISPUTE_ESCALATION_HOURS,
        )

    @classmethod
    def validate_payment_bounds(cls) -> bool:
        """Validate that the configured amount range is usable"""
        if cls.MIN_PAYMENT_AMOUNT <= 0:
            raise ValueError(f"MIN_PAYMENT_AMOUNT must be positive, got {cls.MIN_PAYMENT_AMOUNT}")
        if cls.MAX_PAYMENT_AMOUNT < cls.MIN_PAYMENT_AMOUNT:
            raise ValueError(
                f"MAX_PAYMENT_AMOUNT ({cls.MAX_PAYMENT_AMOUNT}) is below MIN_PAYMENT_AMOUNT ({cls.MIN_PAYMENT_AMOUNT})"
            )
        return True

    @staticmethod
    def log_environment_config():
        """Log current configuration for debugging (never logs secrets)"""
        logger.info("🔧 Escrow Jobs Configuration:")
        logger.info(f"   Environment: {Config.ENVIRONMENT.upper()}")
        logger.info(
            f"   Fees: platform {Config.PLATFORM_FEE_PERCENTAGE}%, "
            f"processing {Config.PROCESSING_FEE_PERCENTAGE}% + {Config.PROCESSING_FEE_FIXED}"
        )
        logger.info(
            f"   Amount range: {Config.MIN_PAYMENT_AMOUNT}-{Config.MAX_PAYMENT_AMOUNT} {Config.DEFAULT_CURRENCY}"
        )
        logger.info(
            f"   Intervals: rating={format_duration(Config.RATING_REMINDER_INTERVAL)}, "
            f"release={format_duration(Config.AUTO_RELEASE_INTERVAL)}, "
            f"dispute={format_duration(Config.DISPUTE_ESCALATION_INTERVAL)}"
        )
        logger.info(f"   Slack alerts: {'✅ Set' if Config.SLACK_ESCROW_WEBHOOK_URL else '❌ Not set'}")
        logger.info(
            f"   Telegram alerts: {'✅ Set' if Config.BOT_TOKEN and Config.ADMIN_CHAT_ID else '❌ Not set'}"
        )
        logger.info(f"   Database: {'✅ Set' if Config.DATABASE_URL else 'in-memory store'}")
