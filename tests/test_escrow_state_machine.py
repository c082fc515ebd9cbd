"""
Escrow and payment status transition tests
"""

from datetime import timedelta

import pytest

from conftest import T0, make_escrow
from models import EscrowStatus, PaymentStatus
from utils.escrow_state_machine import (
    AWAITING_RELEASE_STATUSES,
    MANUAL_RELEASE_STATUSES,
    EscrowStateValidator,
    PaymentStateValidator,
)


class TestEscrowStateValidator:
    def test_escrows_start_held(self):
        assert EscrowStateValidator.get_valid_transitions(None) == {EscrowStatus.HELD}

    @pytest.mark.parametrize("status", [EscrowStatus.RELEASED, EscrowStatus.RESOLVED, EscrowStatus.REFUNDED])
    def test_terminal_states(self, status):
        assert EscrowStateValidator.is_terminal_state(status)
        for target in EscrowStatus:
            assert not EscrowStateValidator.is_valid_transition(status, target)

    def test_disputed_cannot_go_straight_to_released(self):
        """A dispute must be resolved, never released directly"""
        assert not EscrowStateValidator.is_valid_transition(EscrowStatus.DISPUTED, EscrowStatus.RELEASED)
        assert EscrowStateValidator.is_valid_transition(EscrowStatus.DISPUTED, EscrowStatus.RESOLVED)
        assert EscrowStateValidator.is_valid_transition(EscrowStatus.DISPUTED, EscrowStatus.REFUNDED)

    def test_low_rating_returns_pending_rating_to_held(self):
        assert EscrowStateValidator.is_valid_transition(EscrowStatus.PENDING_RATING, EscrowStatus.HELD)

    def test_release_status_sets(self):
        assert MANUAL_RELEASE_STATUSES == {EscrowStatus.HELD, EscrowStatus.APPROVED}
        assert AWAITING_RELEASE_STATUSES == {
            EscrowStatus.HELD, EscrowStatus.PENDING_RATING, EscrowStatus.APPROVED
        }
        for status in AWAITING_RELEASE_STATUSES:
            assert EscrowStateValidator.is_valid_transition(status, EscrowStatus.RELEASED)


class TestPaymentStateValidator:
    def test_pending_settles_once(self):
        assert PaymentStateValidator.is_valid_transition(PaymentStatus.PENDING, PaymentStatus.CONFIRMED)
        assert PaymentStateValidator.is_valid_transition(PaymentStatus.PENDING, PaymentStatus.FAILED)
        assert not PaymentStateValidator.is_valid_transition(PaymentStatus.FAILED, PaymentStatus.CONFIRMED)

    def test_only_confirmed_payments_refund(self):
        assert PaymentStateValidator.is_valid_transition(PaymentStatus.CONFIRMED, PaymentStatus.REFUNDED)
        assert not PaymentStateValidator.is_valid_transition(PaymentStatus.PENDING, PaymentStatus.REFUNDED)


class TestEscrowRecordInvariants:
    def test_release_deadline_must_follow_hold(self):
        with pytest.raises(ValueError):
            make_escrow(hold=timedelta(0))

    def test_approved_rating_requires_received_rating(self):
        with pytest.raises(ValueError):
            make_escrow(rating_approved=True, rating_received=False)

    def test_valid_escrow(self):
        escrow = make_escrow()
        assert escrow.release_eligible_at == T0 + timedelta(hours=24)
        assert not escrow.is_settled
