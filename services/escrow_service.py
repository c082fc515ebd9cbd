"""
Escrow Service
Payments, escrow holds and their release, refund, rating and dispute flows

Every mutation of one escrow runs under that escrow's asyncio lock and ends in
a compare-and-swap on the store, so a scheduled pass and a manual trigger
evaluating the same escrow cannot both release it.
"""

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional, Tuple

from config import Config
from models import (
    EscrowStatus,
    EscrowTransaction,
    Payment,
    PaymentStatus,
    utc_now,
)
from services.escrow_store import EscrowStore, StoreError
from services.notification_service import (
    NullNotifier,
    Notifier,
    format_dispute_escalation_message,
    format_job_summary_message,
    format_manual_review_message,
    format_rating_reminder_message,
    format_release_failure_message,
    format_release_success_message,
)
from services.payment_gateway import HeldPaymentResult, PaymentGateway, PaymentGatewayError
from utils.escrow_release_rules import ReleaseOutcome, evaluate_escrow
from utils.escrow_state_machine import (
    AWAITING_RELEASE_STATUSES,
    MANUAL_RELEASE_STATUSES,
    OPEN_STATUSES,
    EscrowStateValidator,
)
from utils.fee_calculator import FeeCalculator, to_decimal

logger = logging.getLogger(__name__)

DISPUTE_OUTCOME_RELEASE = "release"
DISPUTE_OUTCOME_REFUND = "refund"
RATING_SCALE_MAX = 5.0


# ============ SERVICE EXCEPTIONS ============


class EscrowServiceError(Exception):
    """Base exception for escrow service errors"""

    pass


class PaymentValidationError(EscrowServiceError):
    """Rejected input such as an out-of-range amount or a missing id"""

    pass


class PaymentNotFoundError(EscrowServiceError):
    pass


class EscrowNotFoundError(EscrowServiceError):
    pass


class InvalidEscrowStateError(EscrowServiceError):
    """The record's current status does not permit the requested operation"""

    def __init__(self, message: str, current_status: Optional[str] = None):
        super().__init__(message)
        self.current_status = current_status


class PaymentFailedError(EscrowServiceError):
    """The processor reported that the payer's charge did not go through"""

    def __init__(self, message: str, failure_reason: Optional[str] = None):
        super().__init__(message)
        self.failure_reason = failure_reason


# ============ RESULT TYPES ============


@dataclass
class AutoReleaseSummary:
    """Counters for one automatic release pass"""

    validated: int = 0
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    manual_review: int = 0
    marked_pending_rating: int = 0
    total_released: Decimal = Decimal("0.00")
    errors: List[str] = field(default_factory=list)
    runtime: timedelta = timedelta(0)

    @property
    def has_errors(self) -> bool:
        return self.failed > 0


@dataclass
class ReminderSummary:
    sent: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass
class EscalationSummary:
    escalated: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)


class EscrowService:
    """Owns the payment and escrow lifecycle on top of the store and gateway ports"""

    def __init__(
        self,
        store: EscrowStore,
        gateway: PaymentGateway,
        notifier: Optional[Notifier] = None,
        config_provider: Optional[Callable[[], Any]] = None,
        hold_duration: Optional[timedelta] = None,
        grace_period: Optional[timedelta] = None,
        min_amount: Optional[Decimal] = None,
        max_amount: Optional[Decimal] = None,
        currency: Optional[str] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.gateway = gateway
        self.notifier = notifier or NullNotifier()
        self.hold_duration = hold_duration or Config.escrow_hold_duration()
        self.grace_period = grace_period or Config.rating_grace_period()
        self.min_amount = to_decimal(Config.MIN_PAYMENT_AMOUNT if min_amount is None else min_amount)
        self.max_amount = to_decimal(Config.MAX_PAYMENT_AMOUNT if max_amount is None else max_amount)
        self.currency = currency or Config.DEFAULT_CURRENCY
        self.clock = clock

        if config_provider is None:
            default_config = Config.job_config()

            def config_provider():
                return default_config

        self.config_provider = config_provider

        self._escrow_locks: Dict[str, asyncio.Lock] = {}
        self._escrow_lock_refs: Dict[str, int] = {}

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _escrow_lock(self, key: str):
        """Serialize mutations of one escrow within this process"""
        lock = self._escrow_locks.get(key)
        if lock is None:
            lock = self._escrow_locks[key] = asyncio.Lock()
        self._escrow_lock_refs[key] = self._escrow_lock_refs.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._escrow_lock_refs[key] -= 1
            if self._escrow_lock_refs[key] == 0:
                del self._escrow_lock_refs[key]
                del self._escrow_locks[key]

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get_payment(self, payment_id: str) -> Payment:
        payment = await self.store.get_payment(payment_id)
        if payment is None:
            raise PaymentNotFoundError(f"payment not found: {payment_id}")
        return payment

    async def get_escrow(self, escrow_id: str) -> EscrowTransaction:
        escrow = await self.store.get_escrow(escrow_id)
        if escrow is None:
            raise EscrowNotFoundError(f"escrow not found: {escrow_id}")
        return escrow

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    async def create_payment(
        self,
        payer_id: str,
        payee_id: str,
        amount,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Payment, HeldPaymentResult]:
        """
        Validate, price and open a held payment with the processor.

        Returns:
            (payment, held) where held carries the processor reference and the
            client secret the payer's client needs to complete the charge.
        """
        if not payer_id:
            raise PaymentValidationError("payer_id is required")
        if not payee_id:
            raise PaymentValidationError("payee_id is required")

        try:
            gross = to_decimal(amount)
        except (InvalidOperation, ValueError) as e:
            raise PaymentValidationError(f"invalid payment amount: {amount!r}") from e

        is_valid, error_message = FeeCalculator.validate_payment_amount(gross, self.min_amount, self.max_amount)
        if not is_valid:
            raise PaymentValidationError(error_message)

        fees = FeeCalculator.calculate_fees(gross)
        payment = Payment(
            id=f"pay_{uuid.uuid4().hex}",
            payer_id=payer_id,
            payee_id=payee_id,
            amount=FeeCalculator.quantize(gross),
            platform_fee=fees.platform_fee,
            processing_fee=fees.processing_fee,
            net_amount=fees.net_amount,
            currency=self.currency,
            status=PaymentStatus.PENDING,
            created_at=self.clock(),
            metadata=dict(metadata or {}),
        )

        held = await self.gateway.create_held_payment(payment, payee_id)
        payment.provider_reference = held.provider_reference
        payment.client_secret = held.client_secret
        await self.store.put_payment(payment)

        logger.info(
            f"💳 Payment {payment.id} created: {payment.amount} {payment.currency} "
            f"(platform fee {payment.platform_fee}, net {payment.net_amount})"
        )
        return payment, held

    async def confirm_payment(self, payment_id: str) -> Tuple[Payment, EscrowTransaction]:
        """
        Ask the processor for the charge outcome and open the escrow hold on success.

        Confirming an already-confirmed payment returns its existing escrow
        without calling the processor again.
        """
        async with self._escrow_lock(f"payment:{payment_id}"):
            payment = await self.get_payment(payment_id)

            if payment.status == PaymentStatus.CONFIRMED:
                existing = await self.store.get_escrow_by_payment(payment_id)
                if existing is not None:
                    return payment, existing
                logger.warning(f"⚠️ Payment {payment_id} confirmed without an escrow, creating it now")
                escrow = self._open_escrow(payment, payment.confirmed_at or self.clock())
                await self.store.put_escrow(escrow)
                return payment, escrow

            if payment.status != PaymentStatus.PENDING:
                raise InvalidEscrowStateError(
                    f"payment cannot be confirmed, current status: {payment.status.value}",
                    current_status=payment.status.value,
                )

            result = await self.gateway.confirm(payment.provider_reference)
            if not result.succeeded:
                payment.status = PaymentStatus.FAILED
                payment.failure_reason = result.failure_reason or "payment failed"
                await self.store.put_payment(payment)
                logger.warning(f"❌ Payment {payment_id} failed: {payment.failure_reason}")
                raise PaymentFailedError(
                    f"payment failed: {payment.failure_reason}", failure_reason=payment.failure_reason
                )

            now = self.clock()
            payment.status = PaymentStatus.CONFIRMED
            payment.confirmed_at = now
            escrow = self._open_escrow(payment, now)

            await self.store.put_payment(payment)
            await self.store.put_escrow(escrow)

        logger.info(
            f"✅ Payment {payment_id} confirmed, escrow {escrow.id} holding {escrow.amount} "
            f"until {escrow.release_eligible_at.isoformat()}"
        )
        return payment, escrow

    def _open_escrow(self, payment: Payment, held_at: datetime) -> EscrowTransaction:
        return EscrowTransaction(
            id=f"esc_{uuid.uuid4().hex}",
            payment_id=payment.id,
            payer_id=payment.payer_id,
            payee_id=payment.payee_id,
            amount=payment.net_amount,
            held_at=held_at,
            release_eligible_at=held_at + self.hold_duration,
            status=EscrowStatus.HELD,
            min_rating_required=float(self.config_provider().min_rating_for_auto_release),
        )

    async def refund(self, payment_id: str, amount=None, reason: str = "requested_by_customer") -> Payment:
        """Refund a confirmed payment; its escrow, if still open, becomes refunded"""
        payment = await self.get_payment(payment_id)
        escrow = await self.store.get_escrow_by_payment(payment_id)
        lock_key = escrow.id if escrow else f"payment:{payment_id}"

        async with self._escrow_lock(lock_key):
            payment = await self.get_payment(payment_id)
            if payment.status != PaymentStatus.CONFIRMED:
                raise InvalidEscrowStateError(
                    f"payment cannot be refunded, current status: {payment.status.value}",
                    current_status=payment.status.value,
                )

            refund_amount = payment.amount if amount is None else to_decimal(amount)
            if refund_amount <= 0 or refund_amount > payment.amount:
                raise PaymentValidationError(
                    f"refund amount must be between 0 and {payment.amount}, got {refund_amount}"
                )

            if escrow is not None:
                escrow = await self.get_escrow(escrow.id)
                if escrow.status not in OPEN_STATUSES:
                    message = f"escrow cannot be refunded, current status: {escrow.status.value}"
                    if escrow.status == EscrowStatus.DISPUTED:
                        message += "; disputed escrows are refunded through resolve_dispute"
                    raise InvalidEscrowStateError(
                        message,
                        current_status=escrow.status.value,
                    )

            await self.gateway.refund(payment.provider_reference, refund_amount, reason)

            now = self.clock()
            payment.status = PaymentStatus.REFUNDED
            payment.refunded_at = now
            payment.refund_amount = refund_amount
            payment.refund_reason = reason
            await self.store.put_payment(payment)

            if escrow is not None:
                swapped = await self.store.transition_escrow_status(
                    escrow.id, OPEN_STATUSES, EscrowStatus.REFUNDED, release_reason="refunded"
                )
                if not swapped:
                    logger.error(
                        f"❌ Payment {payment_id} refunded but escrow {escrow.id} changed status concurrently"
                    )

        logger.info(f"💸 Payment {payment_id} refunded: {refund_amount} ({reason})")
        return payment

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    async def release_escrow(self, escrow_id: str, reason: str = "manual_release") -> EscrowTransaction:
        """Operator release; only held or approved escrows qualify"""
        async with self._escrow_lock(escrow_id):
            escrow = await self.get_escrow(escrow_id)
            if escrow.status not in MANUAL_RELEASE_STATUSES:
                raise InvalidEscrowStateError(
                    f"escrow cannot be released, current status: {escrow.status.value}",
                    current_status=escrow.status.value,
                )

            released = await self._release_locked(escrow, reason, MANUAL_RELEASE_STATUSES)
            if released is None:
                current = await self.get_escrow(escrow_id)
                raise InvalidEscrowStateError(
                    f"escrow cannot be released, current status: {current.status.value}",
                    current_status=current.status.value,
                )

        await self.notifier.notify(format_release_success_message(released.id, released.amount, reason))
        return released

    async def _release_locked(
        self,
        escrow: EscrowTransaction,
        reason: str,
        expected_statuses,
        rating_approved: bool = False,
    ) -> Optional[EscrowTransaction]:
        """
        Move funds and mark the escrow released. Caller holds the escrow lock.

        Returns None when the compare-and-swap finds the escrow already moved
        on (another process released or disputed it first).
        Raises PaymentGatewayError with the escrow untouched if funds did not move.
        """
        if escrow.status not in expected_statuses:
            return None

        await self.gateway.release_funds(escrow)

        fields: Dict[str, Any] = {"released_at": self.clock(), "release_reason": reason}
        if rating_approved:
            fields["rating_approved"] = True
        swapped = await self.store.transition_escrow_status(
            escrow.id, expected_statuses, EscrowStatus.RELEASED, **fields
        )
        if not swapped:
            logger.warning(f"⚠️ Escrow {escrow.id} was settled concurrently, release is a no-op")
            return None

        escrow.status = EscrowStatus.RELEASED
        for name, value in fields.items():
            setattr(escrow, name, value)
        logger.info(f"✅ Escrow {escrow.id} released: {escrow.amount} ({reason})")
        return escrow

    async def process_automatic_releases(self, now: Optional[datetime] = None) -> AutoReleaseSummary:
        """
        One automatic release pass over every escrow past its hold deadline.

        Per-escrow failures are counted and notified, leaving the escrow as it
        was for the next pass. A store failure on the initial query propagates.
        """
        started = time.monotonic()
        now = now or self.clock()
        summary = AutoReleaseSummary()

        candidates = await self.store.query_escrows_eligible_for_release(now)
        logger.info(f"🔄 Automatic release pass: {len(candidates)} escrow(s) past hold deadline")

        for candidate in candidates:
            summary.validated += 1
            await self._process_release_candidate(candidate.id, now, summary)

        summary.runtime = timedelta(seconds=time.monotonic() - started)
        logger.info(
            f"✅ Automatic release pass done: validated={summary.validated} processed={summary.processed} "
            f"failed={summary.failed} manual_review={summary.manual_review} total={summary.total_released}"
        )
        return summary

    async def _process_release_candidate(self, escrow_id: str, now: datetime, summary: AutoReleaseSummary) -> None:
        message: Optional[str] = None

        async with self._escrow_lock(escrow_id):
            try:
                escrow = await self.store.get_escrow(escrow_id)
            except StoreError as e:
                summary.failed += 1
                summary.errors.append(f"{escrow_id}: {e}")
                logger.error(f"❌ Could not load escrow {escrow_id}: {e}")
                return

            if escrow is None:
                summary.skipped += 1
                return

            decision = evaluate_escrow(escrow, now, self.grace_period)

            if decision.needs_manual_review:
                summary.manual_review += 1
                logger.warning(
                    f"🚨 Escrow {escrow.id} needs manual review: rating {escrow.actual_rating} "
                    f"below {escrow.min_rating_required}"
                )
                message = format_manual_review_message(
                    escrow.id, escrow.actual_rating or 0.0, escrow.min_rating_required
                )

            elif decision.outcome == ReleaseOutcome.AWAITING_RATING:
                summary.skipped += 1
                if escrow.status == EscrowStatus.HELD:
                    try:
                        marked = await self.store.transition_escrow_status(
                            escrow.id, {EscrowStatus.HELD}, EscrowStatus.PENDING_RATING
                        )
                    except StoreError as e:
                        logger.error(f"❌ Could not mark escrow {escrow.id} pending rating: {e}")
                        marked = False
                    if marked:
                        summary.marked_pending_rating += 1

            elif not decision.eligible:
                summary.skipped += 1

            else:
                try:
                    released = await self._release_locked(
                        escrow,
                        decision.release_reason,
                        AWAITING_RELEASE_STATUSES,
                        rating_approved=decision.rating_approved,
                    )
                except (PaymentGatewayError, StoreError) as e:
                    summary.failed += 1
                    summary.errors.append(f"{escrow.id}: {e}")
                    logger.error(f"❌ Automatic release of escrow {escrow.id} failed: {e}")
                    message = format_release_failure_message(escrow.id, escrow.amount, str(e))
                else:
                    if released is None:
                        summary.skipped += 1
                    else:
                        summary.processed += 1
                        summary.total_released += released.amount
                        message = format_release_success_message(
                            released.id, released.amount, decision.release_reason
                        )

        if message:
            await self.notifier.notify(message)

    async def send_job_summary(self, summary: AutoReleaseSummary) -> None:
        await self.notifier.notify(
            format_job_summary_message(
                summary.validated, summary.processed, summary.failed, summary.total_released, summary.runtime
            )
        )

    # ------------------------------------------------------------------
    # Ratings
    # ------------------------------------------------------------------

    async def record_rating(self, escrow_id: str, rating: float, reviewer_id: str) -> EscrowTransaction:
        """
        Store the payer's rating. A rating at or above the escrow's minimum
        approves it; anything lower leaves it held for manual review.
        """
        try:
            rating = float(rating)
        except (TypeError, ValueError) as e:
            raise PaymentValidationError(f"invalid rating: {rating!r}") from e
        if not 0.0 <= rating <= RATING_SCALE_MAX:
            raise PaymentValidationError(f"rating must be between 0 and {RATING_SCALE_MAX:g}, got {rating}")
        if not reviewer_id:
            raise PaymentValidationError("reviewer_id is required")

        async with self._escrow_lock(escrow_id):
            escrow = await self.get_escrow(escrow_id)
            if escrow.status not in (EscrowStatus.HELD, EscrowStatus.PENDING_RATING):
                raise InvalidEscrowStateError(
                    f"escrow cannot be rated, current status: {escrow.status.value}",
                    current_status=escrow.status.value,
                )
            if escrow.rating_received:
                raise InvalidEscrowStateError(
                    f"escrow {escrow_id} already has a rating", current_status=escrow.status.value
                )

            approved = rating >= escrow.min_rating_required
            new_status = EscrowStatus.APPROVED if approved else EscrowStatus.HELD
            if new_status != escrow.status and not EscrowStateValidator.is_valid_transition(escrow.status, new_status):
                raise InvalidEscrowStateError(
                    f"escrow cannot move to {new_status.value}, current status: {escrow.status.value}",
                    current_status=escrow.status.value,
                )

            fields = {
                "rating_received": True,
                "actual_rating": rating,
                "reviewed_by": reviewer_id,
                "rating_approved": approved,
            }
            swapped = await self.store.transition_escrow_status(escrow.id, {escrow.status}, new_status, **fields)
            if not swapped:
                current = await self.get_escrow(escrow_id)
                raise InvalidEscrowStateError(
                    f"escrow cannot be rated, current status: {current.status.value}",
                    current_status=current.status.value,
                )

            escrow.status = new_status
            for name, value in fields.items():
                setattr(escrow, name, value)

        if approved:
            logger.info(f"⭐ Escrow {escrow_id} rated {rating:.1f}, approved for release")
        else:
            logger.warning(
                f"⚠️ Escrow {escrow_id} rated {rating:.1f} below {escrow.min_rating_required:.1f}, held for review"
            )
        return escrow

    async def send_rating_reminders(
        self,
        rating_deadline_days: int,
        now: Optional[datetime] = None,
        min_age: timedelta = timedelta(hours=24),
    ) -> ReminderSummary:
        """Remind payers who have not rated an escrow held between min_age and the deadline"""
        now = now or self.clock()
        summary = ReminderSummary()

        escrows = await self.store.query_escrows_awaiting_rating(
            held_after=now - timedelta(days=rating_deadline_days),
            held_before=now - min_age,
        )
        for escrow in escrows:
            try:
                await self.notifier.notify(
                    format_rating_reminder_message(escrow.id, escrow.payer_id, escrow.amount, escrow.held_at)
                )
                summary.sent += 1
            except Exception as e:
                summary.failed += 1
                summary.errors.append(f"{escrow.id}: {e}")
                logger.error(f"❌ Rating reminder for escrow {escrow.id} failed: {e}")

        return summary

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    async def open_dispute(self, escrow_id: str, reason: str) -> EscrowTransaction:
        async with self._escrow_lock(escrow_id):
            escrow = await self.get_escrow(escrow_id)
            if escrow.status not in OPEN_STATUSES:
                raise InvalidEscrowStateError(
                    f"escrow cannot be disputed, current status: {escrow.status.value}",
                    current_status=escrow.status.value,
                )

            fields = {"disputed_at": self.clock(), "dispute_reason": reason}
            swapped = await self.store.transition_escrow_status(
                escrow.id, OPEN_STATUSES, EscrowStatus.DISPUTED, **fields
            )
            if not swapped:
                current = await self.get_escrow(escrow_id)
                raise InvalidEscrowStateError(
                    f"escrow cannot be disputed, current status: {current.status.value}",
                    current_status=current.status.value,
                )

            escrow.status = EscrowStatus.DISPUTED
            for name, value in fields.items():
                setattr(escrow, name, value)

        logger.warning(f"⚠️ Dispute opened on escrow {escrow_id}: {reason}")
        return escrow

    async def resolve_dispute(self, escrow_id: str, outcome: str, notes: Optional[str] = None) -> EscrowTransaction:
        """Settle a dispute in the payee's favour ("release") or the payer's ("refund")"""
        if outcome not in (DISPUTE_OUTCOME_RELEASE, DISPUTE_OUTCOME_REFUND):
            raise PaymentValidationError(
                f"unknown dispute outcome {outcome!r}, expected 'release' or 'refund'"
            )

        async with self._escrow_lock(escrow_id):
            escrow = await self.get_escrow(escrow_id)
            if escrow.status != EscrowStatus.DISPUTED:
                raise InvalidEscrowStateError(
                    f"escrow dispute cannot be resolved, current status: {escrow.status.value}",
                    current_status=escrow.status.value,
                )

            now = self.clock()
            if outcome == DISPUTE_OUTCOME_RELEASE:
                await self.gateway.release_funds(escrow)
                new_status = EscrowStatus.RESOLVED
                fields = {
                    "released_at": now,
                    "release_reason": "dispute_resolved",
                    "dispute_resolution": DISPUTE_OUTCOME_RELEASE,
                }
            else:
                payment = await self.get_payment(escrow.payment_id)
                await self.gateway.refund(payment.provider_reference, escrow.amount, "dispute_resolved")
                payment.status = PaymentStatus.REFUNDED
                payment.refunded_at = now
                payment.refund_amount = escrow.amount
                payment.refund_reason = "dispute_resolved"
                await self.store.put_payment(payment)
                new_status = EscrowStatus.REFUNDED
                fields = {"release_reason": "dispute_refunded", "dispute_resolution": DISPUTE_OUTCOME_REFUND}

            swapped = await self.store.transition_escrow_status(
                escrow.id, {EscrowStatus.DISPUTED}, new_status, **fields
            )
            if not swapped:
                logger.error(f"❌ Escrow {escrow_id} left disputed state during resolution")
                current = await self.get_escrow(escrow_id)
                raise InvalidEscrowStateError(
                    f"escrow dispute cannot be resolved, current status: {current.status.value}",
                    current_status=current.status.value,
                )

            escrow.status = new_status
            for name, value in fields.items():
                setattr(escrow, name, value)

        logger.info(f"⚖️ Dispute on escrow {escrow_id} resolved: {outcome}" + (f" ({notes})" if notes else ""))
        return escrow

    async def escalate_disputes(self, escalation_hours: int, now: Optional[datetime] = None) -> EscalationSummary:
        """Flag disputes open longer than escalation_hours, once each"""
        now = now or self.clock()
        summary = EscalationSummary()

        disputes = await self.store.query_disputes_for_escalation(now - timedelta(hours=escalation_hours))
        for dispute in disputes:
            async with self._escrow_lock(dispute.id):
                try:
                    escalated = await self.store.transition_escrow_status(
                        dispute.id, {EscrowStatus.DISPUTED}, EscrowStatus.DISPUTED,
                        only_if_unset=("escalated_at",), escalated_at=now,
                    )
                except StoreError as e:
                    summary.failed += 1
                    summary.errors.append(f"{dispute.id}: {e}")
                    logger.error(f"❌ Could not escalate dispute on escrow {dispute.id}: {e}")
                    continue
            if not escalated:
                continue

            summary.escalated += 1
            logger.warning(f"⚠️ Dispute on escrow {dispute.id} escalated after {escalation_hours}h")
            await self.notifier.notify(
                format_dispute_escalation_message(
                    dispute.id, dispute.amount, dispute.disputed_at, dispute.dispute_reason, escalation_hours
                )
            )

        return summary
