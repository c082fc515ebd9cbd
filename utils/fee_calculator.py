"""Fee calculation utilities for held payments"""

import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import NamedTuple, Optional, Tuple, Union

from config import Config

logger = logging.getLogger(__name__)

Amount = Union[Decimal, float, int, str]


class FeeBreakdown(NamedTuple):
    """Fees derived from a gross payment amount"""

    platform_fee: Decimal
    processing_fee: Decimal
    net_amount: Decimal


def to_decimal(value: Amount) -> Decimal:
    """Convert a money-like value to Decimal without float artefacts"""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


class FeeCalculator:
    """Handles all fee-related calculations with mathematical precision"""

    MONEY_PRECISION = Decimal("0.01")
    HUNDRED = Decimal("100")

    @classmethod
    def quantize(cls, value: Decimal) -> Decimal:
        """Round half away from zero to two decimal places"""
        return value.quantize(cls.MONEY_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def get_platform_fee_percentage(cls) -> Decimal:
        return to_decimal(Config.PLATFORM_FEE_PERCENTAGE)

    @classmethod
    def get_processing_fee_percentage(cls) -> Decimal:
        return to_decimal(Config.PROCESSING_FEE_PERCENTAGE)

    @classmethod
    def get_processing_fee_fixed(cls) -> Decimal:
        return to_decimal(Config.PROCESSING_FEE_FIXED)

    @classmethod
    def calculate_fees(
        cls,
        gross_amount: Amount,
        platform_fee_percentage: Optional[Amount] = None,
        processing_fee_percentage: Optional[Amount] = None,
        processing_fee_fixed: Optional[Amount] = None,
    ) -> FeeBreakdown:
        """
        Split a gross amount into platform fee, processing fee and payee net.

        Each output is rounded to two decimals on its own. The net amount is
        the gross minus the already-rounded platform fee; the processing fee
        is charged on top and does not reduce the payee's net.

        Args:
            gross_amount: Amount the payer is charged (non-negative)
            platform_fee_percentage: Override for the platform rate, e.g. 4 for 4%
            processing_fee_percentage: Override for the processor rate, e.g. 1.65
            processing_fee_fixed: Override for the processor's fixed surcharge

        Returns:
            FeeBreakdown(platform_fee, processing_fee, net_amount)
        """
        gross = to_decimal(gross_amount)
        platform_rate = to_decimal(
            cls.get_platform_fee_percentage() if platform_fee_percentage is None else platform_fee_percentage
        )
        processing_rate = to_decimal(
            cls.get_processing_fee_percentage() if processing_fee_percentage is None else processing_fee_percentage
        )
        fixed = to_decimal(cls.get_processing_fee_fixed() if processing_fee_fixed is None else processing_fee_fixed)

        platform_fee = cls.quantize(gross * platform_rate / cls.HUNDRED)
        processing_fee = cls.quantize(gross * processing_rate / cls.HUNDRED + fixed)
        net_amount = cls.quantize(gross - platform_fee)

        return FeeBreakdown(platform_fee, processing_fee, net_amount)

    @classmethod
    def calculate_total_charge(cls, gross_amount: Amount) -> Decimal:
        """Amount actually collected from the payer (gross plus processing fee)"""
        breakdown = cls.calculate_fees(gross_amount)
        return cls.quantize(to_decimal(gross_amount) + breakdown.processing_fee)

    @classmethod
    def validate_payment_amount(
        cls,
        amount: Amount,
        min_amount: Optional[Amount] = None,
        max_amount: Optional[Amount] = None,
    ) -> Tuple[bool, str]:
        """
        Validate a gross amount against the configured closed range.

        Returns:
            Tuple of (is_valid, error_message)
        """
        try:
            value = to_decimal(amount)
        except ArithmeticError:
            return False, f"Invalid payment amount: {amount!r}"
        if not value.is_finite():
            return False, f"Invalid payment amount: {amount!r}"

        minimum = to_decimal(Config.MIN_PAYMENT_AMOUNT if min_amount is None else min_amount)
        maximum = to_decimal(Config.MAX_PAYMENT_AMOUNT if max_amount is None else max_amount)

        if value < minimum:
            return False, f"minimum payment amount is €{minimum:.2f}"
        if value > maximum:
            return False, f"maximum payment amount is €{maximum:.2f}"
        return True, ""
