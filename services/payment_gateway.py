"""
Payment Gateway Port
Interface to the card processor that collects, holds, releases and refunds funds
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional, Protocol

from models import EscrowTransaction, Payment

logger = logging.getLogger(__name__)

# ============ GATEWAY EXCEPTIONS ============


class PaymentGatewayError(Exception):
    """Raised by gateway adapters when the processor call fails"""

    pass


# ============ DATACLASSES ============


@dataclass
class HeldPaymentResult:
    """Processor handles for a newly created held payment"""

    provider_reference: str
    client_secret: str


class ConfirmationStatus(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class ConfirmationResult:
    """Outcome of asking the processor whether the payer's charge went through"""

    status: ConfirmationStatus
    failure_reason: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == ConfirmationStatus.SUCCEEDED


class PaymentGateway(Protocol):
    """
    Every call is fallible and raises PaymentGatewayError on failure.
    Callers never retry internally; the next scheduled pass is the retry.
    """

    async def create_held_payment(self, payment: Payment, payee_id: str) -> HeldPaymentResult:
        ...

    async def confirm(self, provider_reference: str) -> ConfirmationResult:
        ...

    async def release_funds(self, escrow: EscrowTransaction) -> None:
        ...

    async def refund(self, provider_reference: str, amount: Decimal, reason: str) -> None:
        ...
