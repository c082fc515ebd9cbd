"""
Shared fixtures for the escrow settlement test suites

Provides a controllable clock, fake payment gateway, recording notifier,
an in-memory store and a fully wired EscrowService.
"""

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Optional

import pytest

from jobs.background_job_manager import JobConfig
from models import EscrowStatus, EscrowTransaction, Payment, PaymentStatus
from services.escrow_service import EscrowService
from services.escrow_store import InMemoryEscrowStore
from services.payment_gateway import (
    ConfirmationResult,
    ConfirmationStatus,
    HeldPaymentResult,
    PaymentGatewayError,
)

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FixedClock:
    """Clock that only moves when a test moves it"""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> datetime:
        self.now = self.now + delta
        return self.now


class FakePaymentGateway:
    """In-process stand-in for the card processor"""

    def __init__(self):
        self.created: List[str] = []
        self.released: List[str] = []
        self.refunds: List[tuple] = []
        self.confirm_status = ConfirmationStatus.SUCCEEDED
        self.failure_reason: Optional[str] = None
        self.release_error: Optional[str] = None
        self.refund_error: Optional[str] = None
        self.confirm_calls = 0

    async def create_held_payment(self, payment: Payment, payee_id: str) -> HeldPaymentResult:
        reference = f"pi_{len(self.created) + 1}"
        self.created.append(payment.id)
        return HeldPaymentResult(provider_reference=reference, client_secret=f"{reference}_secret")

    async def confirm(self, provider_reference: str) -> ConfirmationResult:
        self.confirm_calls += 1
        return ConfirmationResult(status=self.confirm_status, failure_reason=self.failure_reason)

    async def release_funds(self, escrow: EscrowTransaction) -> None:
        if self.release_error:
            raise PaymentGatewayError(self.release_error)
        self.released.append(escrow.id)

    async def refund(self, provider_reference: str, amount: Decimal, reason: str) -> None:
        if self.refund_error:
            raise PaymentGatewayError(self.refund_error)
        self.refunds.append((provider_reference, amount, reason))


class RecordingNotifier:
    def __init__(self):
        self.messages: List[str] = []

    async def notify(self, message: str) -> None:
        self.messages.append(message)

    def matching(self, text: str) -> List[str]:
        return [m for m in self.messages if text in m]


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def store():
    return InMemoryEscrowStore()


@pytest.fixture
def gateway():
    return FakePaymentGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def job_config():
    return JobConfig(min_rating_for_auto_release=3.0)


@pytest.fixture
def service(store, gateway, notifier, clock, job_config):
    return EscrowService(
        store=store,
        gateway=gateway,
        notifier=notifier,
        config_provider=lambda: job_config,
        hold_duration=timedelta(hours=24),
        grace_period=timedelta(hours=24),
        min_amount=Decimal("5.00"),
        max_amount=Decimal("50.00"),
        currency="EUR",
        clock=clock,
    )


def make_escrow(
    escrow_id: str = "esc_1",
    held_at: datetime = T0,
    status: EscrowStatus = EscrowStatus.HELD,
    amount: Decimal = Decimal("24.00"),
    hold: timedelta = timedelta(hours=24),
    **overrides,
) -> EscrowTransaction:
    return EscrowTransaction(
        id=escrow_id,
        payment_id=overrides.pop("payment_id", f"pay_{escrow_id}"),
        payer_id=overrides.pop("payer_id", "payer_1"),
        payee_id=overrides.pop("payee_id", "payee_1"),
        amount=amount,
        held_at=held_at,
        release_eligible_at=held_at + hold,
        status=status,
        **overrides,
    )


def make_payment(payment_id: str = "pay_esc_1", status: PaymentStatus = PaymentStatus.CONFIRMED) -> Payment:
    return Payment(
        id=payment_id,
        payer_id="payer_1",
        payee_id="payee_1",
        amount=Decimal("25.00"),
        platform_fee=Decimal("1.00"),
        processing_fee=Decimal("0.66"),
        net_amount=Decimal("24.00"),
        status=status,
        created_at=T0,
        confirmed_at=T0 if status == PaymentStatus.CONFIRMED else None,
        provider_reference="pi_existing",
    )
