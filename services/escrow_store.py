"""
Escrow Store
Persistence port for payments and escrow holds, with in-memory and SQL adapters

Every release path goes through transition_escrow_status, a compare-and-swap
on the escrow status, optionally also requiring named fields to be unset.
When two passes race on the same escrow only one swap succeeds and the other
sees False.
"""

import asyncio
import copy
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from database import get_async_session
from models import (
    EscrowRecord,
    EscrowStatus,
    EscrowTransaction,
    Payment,
    PaymentRecord,
    PaymentStatus,
)
from utils.escrow_state_machine import AWAITING_RELEASE_STATUSES

logger = logging.getLogger(__name__)

RATING_REMINDER_STATUSES = frozenset({EscrowStatus.HELD, EscrowStatus.PENDING_RATING})

_MUTABLE_ESCROW_FIELDS = frozenset({
    "released_at", "release_reason", "rating_received", "rating_approved", "min_rating_required",
    "actual_rating", "reviewed_by", "dispute_reason", "disputed_at", "escalated_at", "dispute_resolution",
})


class StoreError(Exception):
    """Raised when the backing store cannot complete a read or write"""

    pass


class EscrowStore(Protocol):
    async def get_payment(self, payment_id: str) -> Optional[Payment]:
        ...

    async def put_payment(self, payment: Payment) -> None:
        ...

    async def get_escrow(self, escrow_id: str) -> Optional[EscrowTransaction]:
        ...

    async def put_escrow(self, escrow: EscrowTransaction) -> None:
        ...

    async def get_escrow_by_payment(self, payment_id: str) -> Optional[EscrowTransaction]:
        ...

    async def transition_escrow_status(
        self,
        escrow_id: str,
        expected_statuses: Iterable[EscrowStatus],
        new_status: EscrowStatus,
        only_if_unset: Iterable[str] = (),
        **fields: Any,
    ) -> bool:
        ...

    async def query_escrows_eligible_for_release(self, now: datetime) -> List[EscrowTransaction]:
        ...

    async def query_escrows_awaiting_rating(
        self, held_after: datetime, held_before: datetime
    ) -> List[EscrowTransaction]:
        ...

    async def query_disputes_for_escalation(self, disputed_before: datetime) -> List[EscrowTransaction]:
        ...


def _check_fields(fields: Dict[str, Any], only_if_unset: Iterable[str] = ()) -> None:
    unknown = (set(fields) | set(only_if_unset)) - _MUTABLE_ESCROW_FIELDS
    if unknown:
        raise StoreError(f"Unknown escrow field(s): {', '.join(sorted(unknown))}")


class InMemoryEscrowStore:
    """Dict-backed store; hands out copies so callers never share live records"""

    def __init__(self):
        self._payments: Dict[str, Payment] = {}
        self._escrows: Dict[str, EscrowTransaction] = {}
        self._lock = asyncio.Lock()

    async def get_payment(self, payment_id: str) -> Optional[Payment]:
        async with self._lock:
            payment = self._payments.get(payment_id)
            return copy.deepcopy(payment) if payment else None

    async def put_payment(self, payment: Payment) -> None:
        async with self._lock:
            self._payments[payment.id] = copy.deepcopy(payment)

    async def get_escrow(self, escrow_id: str) -> Optional[EscrowTransaction]:
        async with self._lock:
            escrow = self._escrows.get(escrow_id)
            return copy.deepcopy(escrow) if escrow else None

    async def put_escrow(self, escrow: EscrowTransaction) -> None:
        async with self._lock:
            self._escrows[escrow.id] = copy.deepcopy(escrow)

    async def get_escrow_by_payment(self, payment_id: str) -> Optional[EscrowTransaction]:
        async with self._lock:
            for escrow in self._escrows.values():
                if escrow.payment_id == payment_id:
                    return copy.deepcopy(escrow)
            return None

    async def transition_escrow_status(
        self,
        escrow_id: str,
        expected_statuses: Iterable[EscrowStatus],
        new_status: EscrowStatus,
        only_if_unset: Iterable[str] = (),
        **fields: Any,
    ) -> bool:
        unset = tuple(only_if_unset)
        _check_fields(fields, unset)
        expected = frozenset(expected_statuses)
        async with self._lock:
            escrow = self._escrows.get(escrow_id)
            if escrow is None or escrow.status not in expected:
                return False
            if any(getattr(escrow, name) is not None for name in unset):
                return False
            escrow.status = new_status
            for name, value in fields.items():
                setattr(escrow, name, value)
            return True

    async def query_escrows_eligible_for_release(self, now: datetime) -> List[EscrowTransaction]:
        async with self._lock:
            matches = [
                copy.deepcopy(e) for e in self._escrows.values()
                if e.status in AWAITING_RELEASE_STATUSES and e.release_eligible_at <= now
            ]
        return sorted(matches, key=lambda e: e.release_eligible_at)

    async def query_escrows_awaiting_rating(
        self, held_after: datetime, held_before: datetime
    ) -> List[EscrowTransaction]:
        async with self._lock:
            matches = [
                copy.deepcopy(e) for e in self._escrows.values()
                if e.status in RATING_REMINDER_STATUSES
                and not e.rating_received
                and held_after <= e.held_at <= held_before
            ]
        return sorted(matches, key=lambda e: e.held_at)

    async def query_disputes_for_escalation(self, disputed_before: datetime) -> List[EscrowTransaction]:
        async with self._lock:
            matches = [
                copy.deepcopy(e) for e in self._escrows.values()
                if e.status == EscrowStatus.DISPUTED
                and e.escalated_at is None
                and e.disputed_at is not None
                and e.disputed_at <= disputed_before
            ]
        return sorted(matches, key=lambda e: e.disputed_at)


# ============ SQL ADAPTER ============


def _payment_from_record(row: PaymentRecord) -> Payment:
    return Payment(
        id=row.id,
        payer_id=row.payer_id,
        payee_id=row.payee_id,
        amount=row.amount,
        platform_fee=row.platform_fee,
        processing_fee=row.processing_fee,
        net_amount=row.net_amount,
        currency=row.currency,
        status=PaymentStatus(row.status),
        created_at=row.created_at,
        confirmed_at=row.confirmed_at,
        failure_reason=row.failure_reason,
        provider_reference=row.provider_reference,
        client_secret=row.client_secret,
        refunded_at=row.refunded_at,
        refund_amount=row.refund_amount,
        refund_reason=row.refund_reason,
        metadata=dict(row.extra_metadata or {}),
    )


def _payment_to_record(payment: Payment) -> PaymentRecord:
    return PaymentRecord(
        id=payment.id,
        payer_id=payment.payer_id,
        payee_id=payment.payee_id,
        amount=payment.amount,
        platform_fee=payment.platform_fee,
        processing_fee=payment.processing_fee,
        net_amount=payment.net_amount,
        currency=payment.currency,
        status=payment.status.value,
        created_at=payment.created_at,
        confirmed_at=payment.confirmed_at,
        failure_reason=payment.failure_reason,
        provider_reference=payment.provider_reference,
        client_secret=payment.client_secret,
        refunded_at=payment.refunded_at,
        refund_amount=payment.refund_amount,
        refund_reason=payment.refund_reason,
        extra_metadata=dict(payment.metadata),
    )


def _escrow_from_record(row: EscrowRecord) -> EscrowTransaction:
    return EscrowTransaction(
        id=row.id,
        payment_id=row.payment_id,
        payer_id=row.payer_id,
        payee_id=row.payee_id,
        amount=row.amount,
        held_at=row.held_at,
        release_eligible_at=row.release_eligible_at,
        status=EscrowStatus(row.status),
        released_at=row.released_at,
        release_reason=row.release_reason,
        rating_received=row.rating_received,
        rating_approved=row.rating_approved,
        min_rating_required=row.min_rating_required,
        actual_rating=row.actual_rating,
        reviewed_by=row.reviewed_by,
        dispute_reason=row.dispute_reason,
        disputed_at=row.disputed_at,
        escalated_at=row.escalated_at,
        dispute_resolution=row.dispute_resolution,
    )


def _escrow_to_record(escrow: EscrowTransaction) -> EscrowRecord:
    return EscrowRecord(
        id=escrow.id,
        payment_id=escrow.payment_id,
        payer_id=escrow.payer_id,
        payee_id=escrow.payee_id,
        amount=escrow.amount,
        status=escrow.status.value,
        held_at=escrow.held_at,
        release_eligible_at=escrow.release_eligible_at,
        released_at=escrow.released_at,
        release_reason=escrow.release_reason,
        rating_received=escrow.rating_received,
        rating_approved=escrow.rating_approved,
        min_rating_required=escrow.min_rating_required,
        actual_rating=escrow.actual_rating,
        reviewed_by=escrow.reviewed_by,
        dispute_reason=escrow.dispute_reason,
        disputed_at=escrow.disputed_at,
        escalated_at=escrow.escalated_at,
        dispute_resolution=escrow.dispute_resolution,
    )


class SqlAlchemyEscrowStore:
    """Async SQLAlchemy store; each call runs in its own short transaction"""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def get_payment(self, payment_id: str) -> Optional[Payment]:
        try:
            async with get_async_session(self.session_factory) as session:
                row = await session.get(PaymentRecord, payment_id)
                return _payment_from_record(row) if row else None
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to load payment {payment_id}: {e}") from e

    async def put_payment(self, payment: Payment) -> None:
        try:
            async with get_async_session(self.session_factory) as session:
                await session.merge(_payment_to_record(payment))
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to save payment {payment.id}: {e}") from e

    async def get_escrow(self, escrow_id: str) -> Optional[EscrowTransaction]:
        try:
            async with get_async_session(self.session_factory) as session:
                row = await session.get(EscrowRecord, escrow_id)
                return _escrow_from_record(row) if row else None
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to load escrow {escrow_id}: {e}") from e

    async def put_escrow(self, escrow: EscrowTransaction) -> None:
        try:
            async with get_async_session(self.session_factory) as session:
                await session.merge(_escrow_to_record(escrow))
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to save escrow {escrow.id}: {e}") from e

    async def get_escrow_by_payment(self, payment_id: str) -> Optional[EscrowTransaction]:
        stmt = select(EscrowRecord).where(EscrowRecord.payment_id == payment_id)
        rows = await self._select_escrows(stmt, f"escrow for payment {payment_id}")
        return rows[0] if rows else None

    async def transition_escrow_status(
        self,
        escrow_id: str,
        expected_statuses: Iterable[EscrowStatus],
        new_status: EscrowStatus,
        only_if_unset: Iterable[str] = (),
        **fields: Any,
    ) -> bool:
        unset = tuple(only_if_unset)
        _check_fields(fields, unset)
        expected = [status.value for status in expected_statuses]
        conditions = [EscrowRecord.id == escrow_id, EscrowRecord.status.in_(expected)]
        conditions.extend(getattr(EscrowRecord, name).is_(None) for name in unset)
        stmt = (
            update(EscrowRecord)
            .where(*conditions)
            .values(status=new_status.value, **fields)
            .execution_options(synchronize_session=False)
        )
        try:
            async with get_async_session(self.session_factory) as session:
                result = await session.execute(stmt)
                return result.rowcount == 1
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to move escrow {escrow_id} to {new_status.value}: {e}") from e

    async def query_escrows_eligible_for_release(self, now: datetime) -> List[EscrowTransaction]:
        stmt = (
            select(EscrowRecord)
            .where(
                EscrowRecord.status.in_([s.value for s in AWAITING_RELEASE_STATUSES]),
                EscrowRecord.release_eligible_at <= now,
            )
            .order_by(EscrowRecord.release_eligible_at)
        )
        return await self._select_escrows(stmt, "escrows eligible for release")

    async def query_escrows_awaiting_rating(
        self, held_after: datetime, held_before: datetime
    ) -> List[EscrowTransaction]:
        stmt = (
            select(EscrowRecord)
            .where(
                EscrowRecord.status.in_([s.value for s in RATING_REMINDER_STATUSES]),
                EscrowRecord.rating_received.is_(False),
                EscrowRecord.held_at >= held_after,
                EscrowRecord.held_at <= held_before,
            )
            .order_by(EscrowRecord.held_at)
        )
        return await self._select_escrows(stmt, "escrows awaiting rating")

    async def query_disputes_for_escalation(self, disputed_before: datetime) -> List[EscrowTransaction]:
        stmt = (
            select(EscrowRecord)
            .where(
                EscrowRecord.status == EscrowStatus.DISPUTED.value,
                EscrowRecord.escalated_at.is_(None),
                EscrowRecord.disputed_at <= disputed_before,
            )
            .order_by(EscrowRecord.disputed_at)
        )
        return await self._select_escrows(stmt, "disputes for escalation")

    async def _select_escrows(self, stmt, description: str) -> List[EscrowTransaction]:
        try:
            async with get_async_session(self.session_factory) as session:
                result = await session.execute(stmt)
                return [_escrow_from_record(row) for row in result.scalars().all()]
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to query {description}: {e}") from e
